"""
Payment Reconciliation - Turns gateway notifications into engine events.

Two paths lead to the same engine calls: the gateway pushing a webhook,
and this service polling the gateway for pending payments. Both are
idempotent per reference, and a reference is never handled by both paths
at the same time.
"""

from __future__ import annotations

import asyncio
from typing import Any, Optional

from core.exceptions import MalformedWebhook, PaymentGatewayError, RepositoryError
from core.interfaces import PaymentGateway
from core.value_objects import GatewayPaymentStatus
from infrastructure.redis_repository import PendingPaymentRepository
from application.session_engine import SessionEngine
from loggers import logger


WEBHOOK_CONFIRMED = "confirmed"
WEBHOOK_FAILED = "failed"
WEBHOOK_STATUSES = (WEBHOOK_CONFIRMED, WEBHOOK_FAILED)


def parse_webhook(payload: Any) -> tuple[str, str, int]:
    """
    Validate a webhook payload.

    Returns:
        ``(reference, status, amount)``.

    Raises:
        MalformedWebhook: If any field is missing or invalid.
    """
    if not isinstance(payload, dict):
        raise MalformedWebhook("Webhook payload must be an object")

    reference = payload.get("reference")
    if not isinstance(reference, str) or not reference.strip():
        raise MalformedWebhook("Webhook reference is missing")

    status = payload.get("status")
    if status not in WEBHOOK_STATUSES:
        raise MalformedWebhook(
            f"Unknown webhook status: {status!r}",
            details={"reference": reference},
        )

    amount = payload.get("amount")
    if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
        raise MalformedWebhook(
            f"Invalid webhook amount: {amount!r}",
            details={"reference": reference},
        )
    return reference, status, amount


class PaymentReconciler:
    """Push and pull paths for async payment outcomes."""

    def __init__(
        self,
        engine: SessionEngine,
        pending: PendingPaymentRepository,
        gateway: PaymentGateway,
    ) -> None:
        self._engine = engine
        self._pending = pending
        self._gateway = gateway
        self._in_flight: set[str] = set()

    async def handle_webhook(self, payload: Any) -> dict[str, Any]:
        """
        Apply a gateway notification.

        Malformed payloads and amount mismatches change nothing and are
        reported as unsuccessful. Unknown or already-settled references
        are acknowledged without effect.
        """
        try:
            reference, status, amount = parse_webhook(payload)
        except MalformedWebhook as e:
            logger.warning(f"Rejected webhook {payload!r}: {e.message}")
            return {"success": False, "message": e.message}

        pending = await self._pending.get(reference)
        if pending is None:
            logger.info(f"Webhook for unknown or settled payment {reference} ignored")
            return {"success": True, "message": "Payment already settled or unknown"}

        if amount != pending.amount:
            logger.warning(
                f"Rejected webhook for {reference}: amount {amount} != expected {pending.amount}"
            )
            return {"success": False, "message": "Webhook amount does not match the payment"}

        if reference in self._in_flight:
            return {"success": True, "message": "Payment is already being processed"}

        self._in_flight.add(reference)
        try:
            if status == WEBHOOK_CONFIRMED:
                session = await self._engine.on_payment_confirmed(reference)
            else:
                session = await self._engine.on_payment_failed(reference)
        finally:
            self._in_flight.discard(reference)

        data = {"session_id": session.id, "state": session.state.value} if session else None
        return {"success": True, "message": f"Payment {status}", "data": data}

    async def poll(self, reference: str) -> Optional[GatewayPaymentStatus]:
        """
        Ask the gateway about one pending payment and apply the answer.

        Returns:
            The gateway status, or None if the reference is not pending or
            is already being handled.

        Raises:
            PaymentGatewayError: If the gateway cannot be queried.
        """
        if reference in self._in_flight:
            return None
        pending = await self._pending.get(reference)
        if pending is None or pending.external_id is None:
            return None

        self._in_flight.add(reference)
        try:
            status = await self._gateway.get_status(pending.external_id)
            if status is GatewayPaymentStatus.APPROVED:
                await self._engine.on_payment_confirmed(reference)
            elif status is GatewayPaymentStatus.REJECTED:
                await self._engine.on_payment_failed(reference)
        finally:
            self._in_flight.discard(reference)

        logger.debug(f"Polled payment {reference}: {status.value}")
        return status

    async def poll_pending(self) -> dict[str, GatewayPaymentStatus]:
        """Poll every pending payment; gateway errors skip that payment."""
        results = {}
        for reference in sorted(await self._pending.references()):
            try:
                status = await self.poll(reference)
            except PaymentGatewayError as e:
                logger.error(f"Polling payment {reference} failed: {e.message}")
                continue
            if status is not None:
                results[reference] = status
        return results

    async def run_forever(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.poll_pending()
            except RepositoryError as e:
                logger.error(f"Payment polling failed: {e}")
