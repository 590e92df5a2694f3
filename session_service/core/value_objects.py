"""
Value Objects for the session service.

Immutable objects that represent values in the domain.
Value objects are compared by value, not by identity.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


# =============================================================================
# Enums
# =============================================================================


class GatewayPaymentStatus(str, Enum):
    """Status of an external payment as reported by the gateway."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"

    @classmethod
    def from_provider(cls, status: Optional[str]) -> "GatewayPaymentStatus":
        """Map a provider status string to an internal status."""
        if status == "approved":
            return cls.APPROVED
        if status in ("rejected", "cancelled"):
            return cls.REJECTED
        return cls.PENDING


class LedgerOperation(str, Enum):
    """Kinds of balance ledger operations recorded per session."""

    DEBIT = "debit"
    REFUND = "refund"
    CREDIT = "credit"


# =============================================================================
# Money Value Object
# =============================================================================


@dataclass(frozen=True)
class Money:
    """
    An amount in cents, as stored everywhere in the service.

    Only the payment gateway needs the decimal form.
    """

    cents: int

    def __post_init__(self) -> None:
        if self.cents < 0:
            raise ValueError("Amount cannot be negative")

    @property
    def reais(self) -> float:
        return self.cents / 100


# =============================================================================
# Payment Value Objects
# =============================================================================


@dataclass(frozen=True)
class PaymentRequest:
    """
    An instant-payment request issued by the gateway.

    Attributes:
        reference: Our reference, handed back in webhooks.
        external_id: Provider's payment id, used for status polling.
        amount: Requested amount in cents.
        qr_code: Copy-and-paste / QR payload shown to the user.
        expires_at: Provider-side expiry, if any.
    """

    reference: str
    external_id: str
    amount: int
    qr_code: Optional[str] = None
    expires_at: Optional[datetime] = None


@dataclass(frozen=True)
class BalanceDebit:
    """
    A single ledger operation applied to a user's balance.

    Attributes:
        user_id: Owner of the balance.
        amount: Amount in cents (always positive).
        session_id: Session the operation belongs to (the idempotency key).
        kind: Debit, refund or credit.
        created_at: When it was applied.
    """

    user_id: str
    amount: int
    session_id: str
    kind: LedgerOperation
    created_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "amount": self.amount,
            "session_id": self.session_id,
            "kind": self.kind.value,
            "created_at": self.created_at.timestamp(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BalanceDebit":
        return cls(
            user_id=data["user_id"],
            amount=int(data["amount"]),
            session_id=data["session_id"],
            kind=LedgerOperation(data["kind"]),
            created_at=datetime.fromtimestamp(float(data["created_at"]), tz=timezone.utc),
        )


# =============================================================================
# Real-Time Event Value Object
# =============================================================================


@dataclass(frozen=True)
class SessionUpdate:
    """
    Compact session state payload pushed to observers.

    Attributes:
        session_id: Session the update belongs to.
        machine_id: Machine the session runs on.
        user_id: Session owner.
        state: New state value.
        remaining_seconds: Seconds of paid time left.
        progress_percent: Elapsed share of the paid time, 0-100.
        reason: Failure reason code, if any.
        timestamp: Emission time.
        event: Notice carried without a state change, e.g. ``session_ending``.
    """

    session_id: str
    machine_id: str
    user_id: str
    state: str
    remaining_seconds: int
    progress_percent: float
    reason: Optional[str] = None
    timestamp: Optional[datetime] = None
    event: Optional[str] = None

    @property
    def channels(self) -> tuple[str, ...]:
        """Broadcast channels this update is delivered to."""
        return (
            f"session:{self.session_id}",
            f"user:{self.user_id}",
            f"machine:{self.machine_id}",
        )

    def to_dict(self) -> dict[str, Any]:
        result = {
            "session_id": self.session_id,
            "machine_id": self.machine_id,
            "user_id": self.user_id,
            "state": self.state,
            "remaining_seconds": self.remaining_seconds,
            "progress_percent": self.progress_percent,
        }
        if self.reason:
            result["reason"] = self.reason
        if self.timestamp:
            result["timestamp"] = self.timestamp.isoformat()
        if self.event:
            result["event"] = self.event
        return result
