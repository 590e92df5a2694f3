"""
Infrastructure layer - External dependencies and implementations.

Contains:
- Repository implementations (Redis)
- Payment gateway client (HTTP)
- Device command channel (Redis pub/sub)
- Configuration
"""

from .redis_repository import (
    RedisStateRepository,
    MachineRepository,
    BalanceLedgerRepository,
    SessionRepository,
    PendingPayment,
    PendingPaymentRepository,
    SubscriptionRepository,
    TimerRepository,
)
from .payment_gateway import HttpPaymentGateway
from .redis_channel import RedisDeviceChannel
from .settings import (
    Settings,
    get_settings,
)


__all__ = [
    # Repositories
    "RedisStateRepository",
    "MachineRepository",
    "BalanceLedgerRepository",
    "SessionRepository",
    "PendingPayment",
    "PendingPaymentRepository",
    "SubscriptionRepository",
    "TimerRepository",
    # Clients
    "HttpPaymentGateway",
    "RedisDeviceChannel",
    # Settings
    "Settings",
    "get_settings",
]
