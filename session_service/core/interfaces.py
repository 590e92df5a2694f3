"""
Interfaces (Protocols) for the session service.

Defines contracts for the external collaborators of the session engine
using Python's Protocol for structural subtyping (duck typing with type hints).
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional, Protocol, runtime_checkable

from core.value_objects import GatewayPaymentStatus, PaymentRequest


# =============================================================================
# Time
# =============================================================================


@runtime_checkable
class Clock(Protocol):
    """Source of the current time (timezone-aware, UTC)."""

    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall clock."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


# =============================================================================
# Payment Gateway Interface
# =============================================================================


@runtime_checkable
class PaymentGateway(Protocol):
    """Protocol for an external instant-payment (QR / copy-and-paste) provider."""

    async def create_payment(
        self,
        amount: int,
        reference: str,
        description: str,
    ) -> PaymentRequest:
        """
        Request a new payment.

        Args:
            amount: Amount in cents.
            reference: Our reference, echoed back by notifications.
            description: Text shown to the payer.

        Returns:
            The issued payment request.

        Raises:
            PaymentGatewayError: If the provider cannot be reached.
        """
        ...

    async def get_status(self, external_id: str) -> GatewayPaymentStatus:
        """
        Look up the current status of a payment.

        Args:
            external_id: Provider payment id.

        Returns:
            Normalized payment status.
        """
        ...


# =============================================================================
# Device Channel Interface
# =============================================================================


@runtime_checkable
class DeviceChannel(Protocol):
    """Protocol for the publish side of the machine message channel."""

    async def publish(self, topic: str, payload: dict[str, Any]) -> None:
        """
        Publish a message to a machine topic.

        Raises:
            ConnectionError: If the message could not be handed to the broker.
        """
        ...


# =============================================================================
# Session Engine Callbacks
# =============================================================================


@runtime_checkable
class DeviceEventHandler(Protocol):
    """Receiver of device-originated events (implemented by the engine)."""

    async def on_device_ack(self, session_id: str) -> Optional[Any]:
        ...

    async def on_device_heartbeat(self, machine_id: str, seen_at: datetime) -> None:
        ...

    async def on_device_offline_during_session(self, machine_id: str) -> Optional[Any]:
        ...
