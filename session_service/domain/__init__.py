"""
Domain layer - Business logic and domain models.

Contains:
- Session entity and payment method variants
- Session state machine
- Machine availability and pricing rules
- Billing rules
"""

from .session import (
    AsyncPayment,
    BalancePayment,
    FailureReason,
    MixedPayment,
    PaymentMethod,
    Session,
    SessionState,
    SubscriptionPayment,
)
from .session_state_machine import (
    SessionStateMachine,
    TRANSITIONS,
)
from .machine import (
    Machine,
    MachineStatus,
)
from .billing import (
    Subscription,
    build_payment,
    calculate_cost,
    validate_duration,
)


__all__ = [
    # Session
    "Session",
    "SessionState",
    "FailureReason",
    "PaymentMethod",
    "BalancePayment",
    "AsyncPayment",
    "MixedPayment",
    "SubscriptionPayment",
    # State Machine
    "SessionStateMachine",
    "TRANSITIONS",
    # Machine
    "Machine",
    "MachineStatus",
    # Billing
    "Subscription",
    "build_payment",
    "calculate_cost",
    "validate_duration",
]
