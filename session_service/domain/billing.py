"""
Billing rules - session cost and how a payment method splits it.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional

from core.exceptions import InvalidDuration
from domain.machine import Machine
from domain.session import (
    AsyncPayment,
    BalancePayment,
    MixedPayment,
    PAYMENT_METHOD_KINDS,
    PaymentMethod,
    SubscriptionPayment,
)


@dataclass
class Subscription:
    """Flat-rate subscription: one session per calendar day at no per-session cost."""

    user_id: str
    expires_at: Optional[datetime] = None
    last_use_date: Optional[date] = None

    def is_active(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at > now

    def used_on(self, day: date) -> bool:
        return self.last_use_date == day


def validate_duration(duration_minutes: int, minimum: int, maximum: int) -> int:
    """
    Check a requested duration against the allowed bounds.

    Raises:
        InvalidDuration: If the duration is not a whole number within bounds.
    """
    if isinstance(duration_minutes, bool) or not isinstance(duration_minutes, int):
        raise InvalidDuration(
            f"Duration must be a whole number of minutes, got {duration_minutes!r}"
        )
    if not minimum <= duration_minutes <= maximum:
        raise InvalidDuration(
            f"Invalid duration. Must be between {minimum} and {maximum} minutes.",
            details={"duration_minutes": duration_minutes},
        )
    return duration_minutes


def calculate_cost(machine: Machine, duration_minutes: int, method_kind: str) -> int:
    """Session cost in cents; subscription sessions are covered by the flat rate."""
    if method_kind == SubscriptionPayment.kind:
        return 0
    return machine.cost_for(duration_minutes)


def build_payment(method_kind: str, cost: int, balance: int) -> PaymentMethod:
    """
    Fix the payment split for a new session.

    Args:
        method_kind: One of ``balance``, ``async``, ``mixed``, ``subscription``.
        cost: Session cost in cents.
        balance: User's current balance in cents.

    Raises:
        ValueError: If the method kind is unknown.
    """
    if method_kind == BalancePayment.kind:
        return BalancePayment(amount=cost)
    if method_kind == AsyncPayment.kind:
        return AsyncPayment(amount=cost)
    if method_kind == MixedPayment.kind:
        from_balance = min(max(balance, 0), cost)
        return MixedPayment(balance_amount=from_balance, async_amount=cost - from_balance)
    if method_kind == SubscriptionPayment.kind:
        return SubscriptionPayment()
    raise ValueError(
        f"Unknown payment method: {method_kind}. Expected one of {PAYMENT_METHOD_KINDS}"
    )
