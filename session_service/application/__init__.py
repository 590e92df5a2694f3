"""
Application layer - Application services and use cases.

Contains:
- Session lifecycle engine
- Payment reconciliation
- Device command dispatcher
- Expiry scheduler
- Real-time broadcaster
- Command handlers and facade
"""

from .session_locks import KeyedLocks
from .expiry_scheduler import ExpiryScheduler, TimerKind
from .broadcaster import SessionBroadcaster
from .device_dispatcher import DeviceCommandDispatcher
from .session_engine import SessionEngine
from .payment_reconciliation import PaymentReconciler
from .api_facade import SessionServiceFacade
from .command_handler import CommandHandler, CommandResponse


__all__ = [
    "KeyedLocks",
    "ExpiryScheduler",
    "TimerKind",
    "SessionBroadcaster",
    "DeviceCommandDispatcher",
    "SessionEngine",
    "PaymentReconciler",
    "SessionServiceFacade",
    "CommandHandler",
    "CommandResponse",
]
