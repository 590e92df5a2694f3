"""
Session entity - one timed rental of a machine by a user.

Holds the session record, its states and failure reasons, and the
payment method variants a session can be paid with.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, ClassVar, Optional, Union

from core.value_objects import SessionUpdate


# =============================================================================
# States and Reasons
# =============================================================================


class SessionState(str, Enum):
    """Lifecycle states of a session."""

    CREATED = "created"
    AWAITING_PAYMENT = "awaiting_payment"
    ACTIVE = "active"
    COMPLETED = "completed"      # Paid time fully used
    TERMINATED = "terminated"    # Stopped early by the user
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {SessionState.COMPLETED, SessionState.TERMINATED, SessionState.FAILED}
)


class FailureReason(str, Enum):
    """Reason codes recorded on failed sessions."""

    INSUFFICIENT_BALANCE = "InsufficientBalance"
    PAYMENT_FAILED = "PaymentFailed"
    PAYMENT_EXPIRED = "PaymentExpired"
    DEVICE_UNRESPONSIVE = "DeviceUnresponsive"
    DEVICE_LOST_CONNECTION = "DeviceLostConnection"
    SUBSCRIPTION_UNAVAILABLE = "SubscriptionUnavailable"
    CANCELLED = "Cancelled"
    EMERGENCY_STOP = "EmergencyStop"


# =============================================================================
# Payment Method Variants
# =============================================================================


@dataclass(frozen=True)
class BalancePayment:
    """Whole cost debited from the stored balance."""

    kind: ClassVar[str] = "balance"
    amount: int = 0


@dataclass(frozen=True)
class AsyncPayment:
    """Whole cost paid out-of-band through the instant-payment gateway."""

    kind: ClassVar[str] = "async"
    amount: int = 0


@dataclass(frozen=True)
class MixedPayment:
    """Part debited from the balance, the remainder paid through the gateway."""

    kind: ClassVar[str] = "mixed"
    balance_amount: int = 0
    async_amount: int = 0


@dataclass(frozen=True)
class SubscriptionPayment:
    """Covered by an active flat-rate subscription."""

    kind: ClassVar[str] = "subscription"


PaymentMethod = Union[BalancePayment, AsyncPayment, MixedPayment, SubscriptionPayment]

PAYMENT_METHOD_KINDS: tuple[str, ...] = (
    BalancePayment.kind,
    AsyncPayment.kind,
    MixedPayment.kind,
    SubscriptionPayment.kind,
)


def balance_portion(method: PaymentMethod) -> int:
    """Amount of a payment taken from the stored balance."""
    if isinstance(method, BalancePayment):
        return method.amount
    if isinstance(method, MixedPayment):
        return method.balance_amount
    if isinstance(method, (AsyncPayment, SubscriptionPayment)):
        return 0
    raise TypeError(f"Unknown payment method: {method!r}")


def async_portion(method: PaymentMethod) -> int:
    """Amount of a payment collected through the gateway."""
    if isinstance(method, AsyncPayment):
        return method.amount
    if isinstance(method, MixedPayment):
        return method.async_amount
    if isinstance(method, (BalancePayment, SubscriptionPayment)):
        return 0
    raise TypeError(f"Unknown payment method: {method!r}")


def payment_to_dict(method: PaymentMethod) -> dict[str, Any]:
    return {
        "kind": method.kind,
        "balance_amount": balance_portion(method),
        "async_amount": async_portion(method),
    }


def payment_from_dict(data: dict[str, Any]) -> PaymentMethod:
    kind = data.get("kind")
    if kind == BalancePayment.kind:
        return BalancePayment(amount=int(data["balance_amount"]))
    if kind == AsyncPayment.kind:
        return AsyncPayment(amount=int(data["async_amount"]))
    if kind == MixedPayment.kind:
        return MixedPayment(
            balance_amount=int(data["balance_amount"]),
            async_amount=int(data["async_amount"]),
        )
    if kind == SubscriptionPayment.kind:
        return SubscriptionPayment()
    raise ValueError(f"Unknown payment method: {kind}")


# =============================================================================
# Session Entity
# =============================================================================


def _ts(value: Optional[datetime]) -> Optional[float]:
    return value.timestamp() if value else None


def _dt(value: Optional[float]) -> Optional[datetime]:
    return datetime.fromtimestamp(float(value), tz=timezone.utc) if value is not None else None


@dataclass
class Session:
    """
    A single rental of one machine by one user.

    Duration, cost and payment method are fixed at creation. The entity is
    mutated only by the session engine through the state machine and is
    never deleted once stored.
    """

    id: str
    machine_id: str
    user_id: str
    duration_minutes: int
    cost: int
    payment: PaymentMethod
    created_at: datetime
    state: SessionState = SessionState.CREATED
    activated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failure_reason: Optional[FailureReason] = None
    payment_reference: Optional[str] = None
    device_acknowledged: bool = False
    refunded_amount: int = 0
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def duration_seconds(self) -> int:
        return self.duration_minutes * 60

    @property
    def expires_at(self) -> Optional[datetime]:
        """When the paid time runs out, once activated."""
        if self.activated_at is None:
            return None
        return self.activated_at + timedelta(minutes=self.duration_minutes)

    @property
    def balance_portion(self) -> int:
        return balance_portion(self.payment)

    @property
    def async_portion(self) -> int:
        return async_portion(self.payment)

    def elapsed_seconds(self, now: datetime) -> float:
        """Seconds of paid time used so far (frozen once terminal)."""
        if self.activated_at is None:
            return 0.0
        end = self.completed_at if self.completed_at is not None else now
        elapsed = (end - self.activated_at).total_seconds()
        return min(max(elapsed, 0.0), float(self.duration_seconds))

    def elapsed_fraction(self, now: datetime) -> float:
        return self.elapsed_seconds(now) / self.duration_seconds

    def remaining_seconds(self, now: datetime) -> int:
        if self.is_terminal:
            return 0
        if self.activated_at is None:
            return self.duration_seconds
        return int(round(self.duration_seconds - self.elapsed_seconds(now)))

    def progress_percent(self, now: datetime) -> float:
        if self.state is SessionState.COMPLETED:
            return 100.0
        return round(self.elapsed_fraction(now) * 100, 1)

    def to_update(self, now: datetime, event: Optional[str] = None) -> SessionUpdate:
        """Build the real-time payload for this session."""
        return SessionUpdate(
            session_id=self.id,
            machine_id=self.machine_id,
            user_id=self.user_id,
            state=self.state.value,
            remaining_seconds=self.remaining_seconds(now),
            progress_percent=self.progress_percent(now),
            reason=self.failure_reason.value if self.failure_reason else None,
            timestamp=now,
            event=event,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "machine_id": self.machine_id,
            "user_id": self.user_id,
            "duration_minutes": self.duration_minutes,
            "cost": self.cost,
            "payment": payment_to_dict(self.payment),
            "state": self.state.value,
            "created_at": _ts(self.created_at),
            "activated_at": _ts(self.activated_at),
            "completed_at": _ts(self.completed_at),
            "failure_reason": self.failure_reason.value if self.failure_reason else None,
            "payment_reference": self.payment_reference,
            "device_acknowledged": self.device_acknowledged,
            "refunded_amount": self.refunded_amount,
            "extra": self.extra,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Session":
        reason = data.get("failure_reason")
        return cls(
            id=data["id"],
            machine_id=data["machine_id"],
            user_id=data["user_id"],
            duration_minutes=int(data["duration_minutes"]),
            cost=int(data["cost"]),
            payment=payment_from_dict(data["payment"]),
            created_at=_dt(data["created_at"]),
            state=SessionState(data["state"]),
            activated_at=_dt(data.get("activated_at")),
            completed_at=_dt(data.get("completed_at")),
            failure_reason=FailureReason(reason) if reason else None,
            payment_reference=data.get("payment_reference"),
            device_acknowledged=bool(data.get("device_acknowledged", False)),
            refunded_amount=int(data.get("refunded_amount", 0)),
            extra=dict(data.get("extra") or {}),
        )

    def snapshot(self, now: datetime) -> dict[str, Any]:
        """Status-pull view: the stored record plus live progress."""
        result = self.to_dict()
        result.update(self.to_update(now).to_dict())
        result["payment_method"] = self.payment.kind
        return result
