"""
Core module - Foundation layer with no external dependencies.

Contains:
- Exceptions
- Interfaces (Protocols)
- Value Objects
"""

from .exceptions import (
    SessionServiceError,
    SessionNotFound,
    InvalidTransition,
    InvalidDuration,
    NotSessionOwner,
    MachineError,
    MachineUnavailable,
    DeviceUnresponsive,
    DeviceLostConnection,
    PaymentError,
    InsufficientBalance,
    PaymentFailed,
    PaymentExpired,
    SubscriptionUnavailable,
    MalformedWebhook,
    PaymentGatewayError,
    RepositoryError,
    RedisConnectionError,
)
from .interfaces import (
    Clock,
    SystemClock,
    PaymentGateway,
    DeviceChannel,
    DeviceEventHandler,
)
from .value_objects import (
    GatewayPaymentStatus,
    LedgerOperation,
    PaymentRequest,
    BalanceDebit,
    SessionUpdate,
)


__all__ = [
    # Exceptions
    "SessionServiceError",
    "SessionNotFound",
    "InvalidTransition",
    "InvalidDuration",
    "NotSessionOwner",
    "MachineError",
    "MachineUnavailable",
    "DeviceUnresponsive",
    "DeviceLostConnection",
    "PaymentError",
    "InsufficientBalance",
    "PaymentFailed",
    "PaymentExpired",
    "SubscriptionUnavailable",
    "MalformedWebhook",
    "PaymentGatewayError",
    "RepositoryError",
    "RedisConnectionError",
    # Interfaces
    "Clock",
    "SystemClock",
    "PaymentGateway",
    "DeviceChannel",
    "DeviceEventHandler",
    # Value Objects
    "GatewayPaymentStatus",
    "LedgerOperation",
    "PaymentRequest",
    "BalanceDebit",
    "SessionUpdate",
]
