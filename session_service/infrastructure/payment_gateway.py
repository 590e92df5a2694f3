"""
HTTP client for the instant-payment gateway.

Talks to a Mercado Pago style REST API: a PIX payment is created with our
reference as ``external_reference`` and its status is looked up by the
provider's payment id.
"""

from datetime import datetime
from typing import Any, Optional

import httpx

from core.exceptions import PaymentGatewayError
from core.value_objects import GatewayPaymentStatus, Money, PaymentRequest
from infrastructure.settings import GatewaySettings
from loggers import logger


class HttpPaymentGateway:
    """
    Payment gateway adapter over ``httpx.AsyncClient``.

    Every request failure (transport error, timeout, non-2xx status,
    unexpected body) is raised as PaymentGatewayError.
    """

    def __init__(
        self,
        settings: GatewaySettings,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        """
        Initialize the gateway client.

        Args:
            settings: Gateway URL, token and timeout.
            client: Pre-built client (tests pass one with a mock transport).
        """
        self._settings = settings
        self._client = client or httpx.AsyncClient(
            base_url=settings.base_url,
            timeout=settings.timeout_seconds,
        )

    def _headers(self, idempotency_key: Optional[str] = None) -> dict[str, str]:
        headers = {"Authorization": f"Bearer {self._settings.access_token}"}
        if idempotency_key:
            headers["X-Idempotency-Key"] = idempotency_key
        return headers

    async def _request(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = await self._client.request(method, url, **kwargs)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"Payment gateway returned {e.response.status_code} for {url}")
            raise PaymentGatewayError(
                f"Payment gateway returned {e.response.status_code}",
                details={"status_code": e.response.status_code},
            ) from e
        except httpx.HTTPError as e:
            logger.error(f"Payment gateway request failed: {e!r}")
            raise PaymentGatewayError(f"Payment gateway unreachable: {e!r}") from e
        except ValueError as e:
            raise PaymentGatewayError(f"Invalid payment gateway response: {e}") from e

    async def create_payment(
        self,
        amount: int,
        reference: str,
        description: str,
    ) -> PaymentRequest:
        body = {
            "transaction_amount": Money(amount).reais,
            "description": description,
            "payment_method_id": "pix",
            "external_reference": reference,
        }
        data = await self._request(
            "POST",
            "/payments",
            json=body,
            headers=self._headers(idempotency_key=reference),
        )

        try:
            external_id = str(data["id"])
        except KeyError as e:
            raise PaymentGatewayError("Payment gateway response has no payment id") from e

        transaction = (data.get("point_of_interaction") or {}).get("transaction_data") or {}
        expires_at = None
        if data.get("date_of_expiration"):
            expires_at = datetime.fromisoformat(data["date_of_expiration"])

        logger.info(f"Payment {external_id} created for reference {reference}")
        return PaymentRequest(
            reference=reference,
            external_id=external_id,
            amount=amount,
            qr_code=transaction.get("qr_code"),
            expires_at=expires_at,
        )

    async def get_status(self, external_id: str) -> GatewayPaymentStatus:
        data = await self._request(
            "GET",
            f"/payments/{external_id}",
            headers=self._headers(),
        )
        return GatewayPaymentStatus.from_provider(data.get("status"))

    async def aclose(self) -> None:
        await self._client.aclose()
