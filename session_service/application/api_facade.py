"""
API Facade - Unified interface for the session service.

Builds the engine and its collaborators from a Redis client and settings,
owns the background tasks, and exposes one coroutine per command.
"""

import asyncio
from datetime import timedelta
from typing import Any, Optional

from redis.asyncio import Redis

from core.exceptions import MachineUnavailable
from core.interfaces import Clock, DeviceChannel, PaymentGateway, SystemClock
from domain.machine import Machine, MachineStatus
from domain.session import Session
from event_system import EventConsumer, EventPublisher, EventType
from infrastructure.payment_gateway import HttpPaymentGateway
from infrastructure.redis_channel import RedisDeviceChannel
from infrastructure.redis_repository import (
    BalanceLedgerRepository,
    MachineRepository,
    PendingPaymentRepository,
    SessionRepository,
    SubscriptionRepository,
    TimerRepository,
)
from infrastructure.settings import Settings, get_settings
from redis_error_handler import redis_error_handler
from application.broadcaster import (
    SessionBroadcaster,
    relay_machine_status,
    relay_session_update,
)
from application.device_dispatcher import DeviceCommandDispatcher, Sleep
from application.expiry_scheduler import ExpiryScheduler
from application.payment_reconciliation import PaymentReconciler
from application.session_engine import SessionEngine
from loggers import logger


def _session_data(session: Session) -> dict[str, Any]:
    data = {
        "session_id": session.id,
        "machine_id": session.machine_id,
        "state": session.state.value,
        "cost": session.cost,
        "payment_method": session.payment.kind,
    }
    if session.payment_reference:
        data["payment_reference"] = session.payment_reference
    if session.extra.get("qr_code"):
        data["qr_code"] = session.extra["qr_code"]
    if session.failure_reason:
        data["reason"] = session.failure_reason.value
    if session.refunded_amount:
        data["refunded_amount"] = session.refunded_amount
    return data


class SessionServiceFacade:
    """
    Facade for the session service.

    Attributes:
        engine: Session lifecycle engine.
        reconciler: Payment webhook / polling handler.
        dispatcher: Device command dispatcher.
        scheduler: Expiry scheduler.
        broadcaster: Real-time broadcaster.
    """

    def __init__(
        self,
        redis: Redis,
        settings: Optional[Settings] = None,
        *,
        gateway: Optional[PaymentGateway] = None,
        device_channel: Optional[DeviceChannel] = None,
        clock: Optional[Clock] = None,
        device_sleep: Sleep = asyncio.sleep,
    ) -> None:
        """
        Initialize the facade.

        Args:
            redis: Redis client instance (``decode_responses=True``).
            settings: Settings, defaults to the process settings.
            gateway: Payment gateway, defaults to the HTTP client.
            device_channel: Device channel, defaults to Redis pub/sub.
            clock: Time source, defaults to the wall clock.
            device_sleep: Backoff sleep for device command retries.
        """
        self._redis = redis
        self._settings = settings or get_settings()
        self._clock = clock or SystemClock()

        # Event system (feeds the WebSocket relay)
        self._event_queue: asyncio.Queue = asyncio.Queue()
        self._event_consumer = EventConsumer(self._event_queue)
        publisher = (
            EventPublisher(self._event_queue)
            if self._settings.services.forward_to_websocket else None
        )

        # Repositories
        self.machines = MachineRepository(redis)
        self.ledger = BalanceLedgerRepository(redis)
        self.subscriptions = SubscriptionRepository(redis)
        self._pending = PendingPaymentRepository(redis)

        # Components
        self.gateway = gateway or HttpPaymentGateway(self._settings.gateway)
        self.scheduler = ExpiryScheduler(
            TimerRepository(redis),
            self._clock,
            self._settings.session.scheduler_tick_seconds,
            self._settings.session.timer_retry_seconds,
        )
        self.dispatcher = DeviceCommandDispatcher(
            device_channel or RedisDeviceChannel(redis),
            self.machines,
            self._clock,
            self._settings.device,
            event_publisher=publisher,
            sleep=device_sleep,
        )
        self.broadcaster = SessionBroadcaster(event_publisher=publisher)
        self.engine = SessionEngine(
            sessions=SessionRepository(redis),
            machines=self.machines,
            ledger=self.ledger,
            pending=self._pending,
            subscriptions=self.subscriptions,
            scheduler=self.scheduler,
            dispatcher=self.dispatcher,
            gateway=self.gateway,
            broadcaster=self.broadcaster,
            clock=self._clock,
            settings=self._settings.session,
        )
        self.reconciler = PaymentReconciler(self.engine, self._pending, self.gateway)

        self._tasks: list[asyncio.Task] = []

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Recover open sessions and start the background loops."""
        if self._settings.services.forward_to_websocket:
            self._event_consumer.register_handler(EventType.SESSION_UPDATE, relay_session_update)
            self._event_consumer.register_handler(EventType.MACHINE_STATUS, relay_machine_status)
            await self._event_consumer.start_consuming()

        fired = await self.engine.recover()
        logger.info(f"Recovery finished, {fired} overdue timers fired")

        self._tasks = [
            asyncio.create_task(self.scheduler.run_forever()),
            asyncio.create_task(self.dispatcher.listen(self._redis)),
            asyncio.create_task(self.dispatcher.run_offline_monitor()),
            asyncio.create_task(
                self.reconciler.run_forever(self._settings.gateway.poll_interval_seconds)
            ),
        ]

    async def shutdown(self) -> None:
        """Stop background loops and release clients."""
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        await self.engine.close()
        await self._event_consumer.stop_consuming()
        if isinstance(self.gateway, HttpPaymentGateway):
            await self.gateway.aclose()
        logger.info("Session service shut down")

    # =========================================================================
    # Session Commands
    # =========================================================================

    async def create_session(
        self,
        machine_id: str,
        user_id: str,
        duration_minutes: int,
        payment_method: str,
    ) -> dict[str, Any]:
        """
        Create a session and take payment for it.

        Returns:
            Dictionary with the session id, state and, for async payments,
            the payment reference and QR payload.
        """
        session = await self.engine.create(machine_id, user_id, duration_minutes, payment_method)
        session = await self.engine.authorize(session.id)
        return {"success": True, "message": "Session created", "data": _session_data(session)}

    async def authorize_session(self, session_id: str) -> dict[str, Any]:
        session = await self.engine.authorize(session_id)
        return {"success": True, "message": "Session authorized", "data": _session_data(session)}

    async def stop_session(self, session_id: str, user_id: str) -> dict[str, Any]:
        session = await self.engine.request_stop(session_id, user_id=user_id)
        return {"success": True, "message": "Session stopped", "data": _session_data(session)}

    async def cancel_session(
        self,
        session_id: str,
        user_id: Optional[str] = None,
    ) -> dict[str, Any]:
        session = await self.engine.cancel(session_id, user_id=user_id)
        return {"success": True, "message": "Session cancelled", "data": _session_data(session)}

    async def get_session(self, session_id: str) -> dict[str, Any]:
        return {"success": True, "message": "Session found", "data": await self.engine.get_session(session_id)}

    async def get_user_sessions(self, user_id: str) -> dict[str, Any]:
        return {"success": True, "message": "User sessions", "data": await self.engine.user_sessions(user_id)}

    async def get_machine_sessions(self, machine_id: str) -> dict[str, Any]:
        return {"success": True, "message": "Machine sessions", "data": await self.engine.machine_sessions(machine_id)}

    async def get_active_session(self, machine_id: str) -> dict[str, Any]:
        session = await self.engine.active_session(machine_id)
        if session is None:
            return {"success": False, "message": f"No active session on machine {machine_id}"}
        return {"success": True, "message": "Active session", "data": session}

    async def get_active_sessions(self) -> dict[str, Any]:
        return {"success": True, "message": "Active sessions", "data": await self.engine.active_sessions()}

    # =========================================================================
    # Payment Commands
    # =========================================================================

    async def payment_webhook(self, reference: str, status: str, amount: int) -> dict[str, Any]:
        return await self.reconciler.handle_webhook(
            {"reference": reference, "status": status, "amount": amount}
        )

    async def poll_payment(self, reference: str) -> dict[str, Any]:
        status = await self.reconciler.poll(reference)
        if status is None:
            return {"success": False, "message": f"No pending payment {reference}"}
        return {"success": True, "message": "Payment polled", "data": {"status": status.value}}

    # =========================================================================
    # Admin Commands
    # =========================================================================

    @redis_error_handler("Machine registered")
    async def register_machine(
        self,
        machine_id: str,
        price_per_minute: int,
        code: str = "",
        location: str = "",
        operating_start: str = "00:00",
        operating_end: str = "23:59",
        maintenance_interval_minutes: int = 0,
    ) -> dict[str, Any]:
        machine = Machine(
            id=machine_id,
            price_per_minute=int(price_per_minute),
            code=code,
            location=location,
            operating_start=operating_start,
            operating_end=operating_end,
            maintenance_interval_minutes=int(maintenance_interval_minutes),
            status=MachineStatus.ONLINE,
            last_heartbeat=self._clock.now(),
        )
        await self.machines.save(machine)
        logger.info(f"Machine {machine_id} registered at {price_per_minute} cents/min")
        return machine.to_mapping()

    @redis_error_handler("Machine status updated")
    async def set_machine_status(self, machine_id: str, status: str) -> dict[str, Any]:
        await self.machines.set_status(machine_id, MachineStatus(status))
        return {"machine_id": machine_id, "status": status}

    @redis_error_handler("Credit added")
    async def add_credit(self, user_id: str, amount: int) -> dict[str, Any]:
        balance = await self.ledger.add_credit(user_id, int(amount))
        return {"user_id": user_id, "balance": balance}

    @redis_error_handler("Subscription activated")
    async def activate_subscription(self, user_id: str, days: int) -> dict[str, Any]:
        expires_at = self._clock.now() + timedelta(days=int(days))
        await self.subscriptions.activate(user_id, expires_at)
        return {"user_id": user_id, "expires_at": expires_at.isoformat()}

    @redis_error_handler("Machine stopped")
    async def emergency_stop(self, machine_id: str) -> dict[str, Any]:
        session = await self.engine.emergency_stop(machine_id)
        data: dict[str, Any] = {"machine_id": machine_id}
        if session is not None:
            data["session"] = _session_data(session)
        return data

    @redis_error_handler("Status requested")
    async def request_machine_status(self, machine_id: str) -> dict[str, Any]:
        if await self.machines.get(machine_id) is None:
            raise MachineUnavailable(f"Machine not found: {machine_id}", machine_id=machine_id)
        delivered = await self.dispatcher.request_status(machine_id)
        return {"machine_id": machine_id, "delivered": delivered}
