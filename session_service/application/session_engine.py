"""
Session Lifecycle Engine - The authoritative owner of session state.

Turns a purchase intent into a billed, time-boxed machine activation.
Every mutation of a session happens under that session's lock, so
payment confirmations, device events, timers and user requests that race
each other are applied one at a time: the first one wins and the others
observe its result.

Guarantees kept here:
- one non-terminal session per machine (owner token claimed at creation,
  released on every terminal transition)
- a balance portion is debited at most once and refunded at most once
- every non-terminal state has an armed timer that ends it
"""

from __future__ import annotations

import asyncio
import math
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Optional
from zoneinfo import ZoneInfo

from core.exceptions import (
    DeviceUnresponsive,
    InsufficientBalance,
    InvalidTransition,
    MachineUnavailable,
    NotSessionOwner,
    PaymentGatewayError,
    SessionNotFound,
    SubscriptionUnavailable,
)
from core.interfaces import Clock, PaymentGateway
from domain.billing import build_payment, calculate_cost, validate_duration
from domain.session import (
    AsyncPayment,
    BalancePayment,
    FailureReason,
    MixedPayment,
    PAYMENT_METHOD_KINDS,
    Session,
    SessionState,
    SubscriptionPayment,
)
from domain.session_state_machine import SessionStateMachine
from infrastructure.redis_repository import (
    BalanceLedgerRepository,
    MachineRepository,
    PendingPayment,
    PendingPaymentRepository,
    SessionRepository,
    SubscriptionRepository,
)
from infrastructure.settings import SessionSettings
from application.broadcaster import SessionBroadcaster
from application.device_dispatcher import DeviceCommandDispatcher
from application.expiry_scheduler import ExpiryScheduler, TimerKind
from application.session_locks import KeyedLocks
from loggers import logger


SESSION_ENDING_EVENT = "session_ending"


def _new_session_id() -> str:
    return uuid.uuid4().hex


class SessionEngine:
    """
    Drives sessions through ``created -> awaiting_payment -> active ->
    completed`` and their failure, termination and cancel exits.

    Public coroutines take the session lock themselves; ``_``-prefixed
    helpers expect the caller to hold it. ``_activate`` runs as its own
    task and takes the lock once the command is delivered.
    """

    def __init__(
        self,
        *,
        sessions: SessionRepository,
        machines: MachineRepository,
        ledger: BalanceLedgerRepository,
        pending: PendingPaymentRepository,
        subscriptions: SubscriptionRepository,
        scheduler: ExpiryScheduler,
        dispatcher: DeviceCommandDispatcher,
        gateway: PaymentGateway,
        broadcaster: SessionBroadcaster,
        clock: Clock,
        settings: SessionSettings,
        id_factory: Callable[[], str] = _new_session_id,
    ) -> None:
        self._sessions = sessions
        self._machines = machines
        self._ledger = ledger
        self._pending = pending
        self._subscriptions = subscriptions
        self._scheduler = scheduler
        self._dispatcher = dispatcher
        self._gateway = gateway
        self._broadcaster = broadcaster
        self._clock = clock
        self._settings = settings
        self._id_factory = id_factory
        self._timezone = ZoneInfo(settings.timezone)
        self._state_machine = SessionStateMachine()
        self._locks = KeyedLocks()
        self._activations: set[asyncio.Task] = set()

        scheduler.register_handler(TimerKind.PAYMENT, self.on_payment_expired)
        scheduler.register_handler(TimerKind.ACK, self.on_ack_timeout)
        scheduler.register_handler(TimerKind.EXPIRY, self.on_expiry)
        scheduler.register_handler(TimerKind.ENDING, self.on_session_ending)
        dispatcher.set_event_handler(self)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _now(self) -> datetime:
        return self._clock.now()

    def _local_now(self) -> datetime:
        return self._now().astimezone(self._timezone)

    def _payment_deadline(self, start: datetime) -> datetime:
        return start + timedelta(seconds=self._settings.payment_timeout_seconds)

    async def _load(self, session_id: str) -> Session:
        session = await self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    async def _broadcast(self, session: Session) -> None:
        await self._broadcaster.publish(session.to_update(self._now()))

    async def _save(self, session: Session) -> None:
        await self._sessions.save(session)
        await self._broadcast(session)

    async def _settle_terminal(self, session: Session) -> None:
        """Store a session that just became terminal and free what it held."""
        await self._sessions.save(session)
        await self._scheduler.cancel_all(session.id)
        await self._machines.release(session.machine_id, session.id)

        if session.state in (SessionState.COMPLETED, SessionState.TERMINATED):
            used_minutes = math.ceil(session.elapsed_seconds(self._now()) / 60)
            if used_minutes:
                await self._machines.add_operating_minutes(session.machine_id, used_minutes)

        await self._broadcast(session)

    async def _release_settled(self, session: Session) -> None:
        """Finish a settle that stopped after the terminal state was stored."""
        if await self._machines.release(session.machine_id, session.id):
            logger.warning(f"Released machine {session.machine_id} still held by settled session {session.id}")

    async def _fail(
        self,
        session: Session,
        reason: FailureReason,
        *,
        refund: bool = True,
        deactivate: bool = False,
    ) -> Session:
        """
        Fail a session.

        Refunds happen before the failed state is stored. An externally paid
        portion can only be returned once the session had started, and it
        goes back as balance credit.
        """
        now = self._now()
        if refund:
            refunded = await self._ledger.refund(session.user_id, session.id, now)
            if session.activated_at is not None:
                refunded += await self._ledger.credit_session(
                    session.user_id, session.async_portion, session.id, now
                )
            session.refunded_amount += refunded

        if session.payment_reference:
            await self._pending.discard(session.payment_reference)
        if deactivate:
            await self._dispatcher.deactivate(session.machine_id, session.id)

        self._state_machine.transition(session, SessionState.FAILED, now, reason)
        await self._settle_terminal(session)
        return session

    # =========================================================================
    # Creation
    # =========================================================================

    async def create(
        self,
        machine_id: str,
        user_id: str,
        duration_minutes: int,
        payment_method: str,
    ) -> Session:
        """
        Create a session and claim its machine.

        Args:
            machine_id: Machine to rent.
            user_id: Renting user.
            duration_minutes: Paid time.
            payment_method: ``balance``, ``async``, ``mixed`` or ``subscription``.

        Returns:
            The new session in ``created``.

        Raises:
            InvalidDuration: Duration outside the configured bounds.
            MachineUnavailable: Machine unknown, offline, out of hours,
                in maintenance or already in use.
            InsufficientBalance: Balance payment the balance does not cover.
            SubscriptionUnavailable: No active subscription or already used today.
            ValueError: Unknown payment method.
        """
        validate_duration(
            duration_minutes,
            self._settings.min_duration_minutes,
            self._settings.max_duration_minutes,
        )
        if payment_method not in PAYMENT_METHOD_KINDS:
            raise ValueError(
                f"Unknown payment method: {payment_method}. Expected one of {PAYMENT_METHOD_KINDS}"
            )

        machine = await self._machines.get(machine_id)
        if machine is None:
            raise MachineUnavailable(f"Machine not found: {machine_id}", machine_id=machine_id)
        local_now = self._local_now()
        reason = machine.unavailability_reason(local_now)
        if reason:
            raise MachineUnavailable(reason, machine_id=machine_id)

        if payment_method == SubscriptionPayment.kind:
            await self._check_subscription(user_id, local_now)

        cost = calculate_cost(machine, duration_minutes, payment_method)
        session_id = self._id_factory()
        if not await self._machines.claim(machine_id, session_id):
            raise MachineUnavailable("Machine is currently in use", machine_id=machine_id)

        try:
            balance = await self._ledger.get_balance(user_id)
            if payment_method == BalancePayment.kind and balance < cost:
                raise InsufficientBalance(
                    f"Insufficient balance. Required: {cost}, Available: {balance}",
                    required=cost,
                    available=balance,
                )
            now = self._now()
            session = Session(
                id=session_id,
                machine_id=machine_id,
                user_id=user_id,
                duration_minutes=duration_minutes,
                cost=cost,
                payment=build_payment(payment_method, cost, balance),
                created_at=now,
            )
            await self._sessions.create(session)
            # Payment window also bounds the wait for authorization
            await self._scheduler.schedule(
                TimerKind.PAYMENT, session.id, self._payment_deadline(now)
            )
        except Exception:
            await self._machines.release(machine_id, session_id)
            raise

        logger.info(
            f"Session {session.id} created: machine {machine_id}, user {user_id}, "
            f"{duration_minutes} min, {session.cost} cents via {payment_method}"
        )
        await self._broadcast(session)
        return session

    async def _check_subscription(self, user_id: str, local_now: datetime) -> None:
        subscription = await self._subscriptions.get(user_id)
        if subscription is None or not subscription.is_active(self._now()):
            raise SubscriptionUnavailable(f"No active subscription for user {user_id}")
        if subscription.used_on(local_now.date()):
            raise SubscriptionUnavailable("Subscription already used today")

    # =========================================================================
    # Authorization
    # =========================================================================

    async def authorize(self, session_id: str) -> Session:
        """
        Take payment for a created session.

        Safe to repeat: a session that already left ``created`` is
        returned as it is.

        Raises:
            SessionNotFound: Unknown session.
            InsufficientBalance: The debit lost a race; the session is failed.
            SubscriptionUnavailable: Daily use already spent; the session is failed.
            PaymentGatewayError: The payment could not be requested; the session is failed.
        """
        async with self._locks.hold(session_id):
            session = await self._load(session_id)
            if session.state is not SessionState.CREATED:
                return session

            payment = session.payment
            if isinstance(payment, BalancePayment):
                await self._debit_or_fail(session, payment.amount)
                await self._start(session)
            elif isinstance(payment, AsyncPayment):
                await self._request_async_payment(session, payment.amount)
            elif isinstance(payment, MixedPayment):
                await self._debit_or_fail(session, payment.balance_amount)
                if payment.async_amount:
                    await self._request_async_payment(session, payment.async_amount)
                else:
                    await self._start(session)
            elif isinstance(payment, SubscriptionPayment):
                await self._use_subscription_or_fail(session)
                await self._start(session)
            else:
                raise TypeError(f"Unknown payment method: {payment!r}")
            return session

    async def _debit_or_fail(self, session: Session, amount: int) -> None:
        if not amount:
            return
        try:
            await self._ledger.debit(session.user_id, amount, session.id, self._now())
        except InsufficientBalance:
            await self._fail(session, FailureReason.INSUFFICIENT_BALANCE, refund=False)
            raise

    async def _use_subscription_or_fail(self, session: Session) -> None:
        if not await self._subscriptions.mark_used(session.user_id, self._local_now().date()):
            await self._fail(session, FailureReason.SUBSCRIPTION_UNAVAILABLE, refund=False)
            raise SubscriptionUnavailable("Subscription already used today")

    async def _request_async_payment(self, session: Session, amount: int) -> None:
        now = self._now()
        reference = f"ref-{session.id}"
        try:
            request = await self._gateway.create_payment(
                amount,
                reference,
                f"Machine {session.machine_id} - {session.duration_minutes} min",
            )
        except PaymentGatewayError:
            await self._fail(session, FailureReason.PAYMENT_FAILED)
            raise

        deadline = self._payment_deadline(now)
        await self._pending.save(PendingPayment(
            reference=reference,
            session_id=session.id,
            amount=amount,
            created_at=now,
            expires_at=deadline,
            external_id=request.external_id,
            qr_code=request.qr_code,
        ))
        session.payment_reference = reference
        if request.qr_code:
            session.extra["qr_code"] = request.qr_code

        self._state_machine.transition(session, SessionState.AWAITING_PAYMENT, now)
        await self._scheduler.schedule(TimerKind.PAYMENT, session.id, deadline)
        await self._save(session)

    # =========================================================================
    # Activation
    # =========================================================================

    async def _start(self, session: Session) -> None:
        """
        Activate a paid session.

        The session is stored as ``active`` with its timers armed, then the
        activate command is sent from a background task so the caller does
        not wait out the delivery retries while holding the session lock.
        Until delivery settles, the ack timer also covers the retry budget.
        """
        now = self._now()
        self._state_machine.transition(session, SessionState.ACTIVE, now)
        await self._scheduler.cancel(TimerKind.PAYMENT, session.id)
        await self._scheduler.schedule(TimerKind.EXPIRY, session.id, session.expires_at)
        warning = self._settings.ending_warning_seconds
        if session.duration_seconds > warning:
            await self._scheduler.schedule(
                TimerKind.ENDING, session.id, session.expires_at - timedelta(seconds=warning)
            )
        await self._scheduler.schedule(
            TimerKind.ACK,
            session.id,
            now + timedelta(
                seconds=self._settings.device_ack_grace_seconds
                + self._dispatcher.retry_budget_seconds()
            ),
        )
        await self._save(session)

        task = asyncio.create_task(
            self._activate(session.id, session.machine_id, session.duration_minutes)
        )
        self._activations.add(task)
        task.add_done_callback(self._activation_done)

    def _activation_done(self, task: asyncio.Task) -> None:
        self._activations.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Activation task failed: {task.exception()!r}")

    async def _activate(self, session_id: str, machine_id: str, duration_minutes: int) -> None:
        """Deliver the activate command, then apply the outcome under the lock."""
        try:
            await self._dispatcher.activate(machine_id, session_id, duration_minutes)
            delivered = True
        except DeviceUnresponsive as e:
            logger.error(f"Session {session_id} could not be activated: {e.message}")
            delivered = False

        async with self._locks.hold(session_id):
            session = await self._sessions.get(session_id)
            if session is None:
                return
            if not delivered:
                if session.state is SessionState.ACTIVE:
                    await self._fail(session, FailureReason.DEVICE_UNRESPONSIVE, deactivate=True)
            elif session.is_terminal:
                # Ended while the command was in flight
                await self._dispatcher.deactivate(machine_id, session_id)
            elif not session.device_acknowledged:
                await self._scheduler.schedule(
                    TimerKind.ACK,
                    session_id,
                    self._now() + timedelta(seconds=self._settings.device_ack_grace_seconds),
                )

    async def drain(self) -> None:
        """Wait until every in-flight activation has settled."""
        while self._activations:
            await asyncio.gather(*self._activations, return_exceptions=True)

    async def close(self) -> None:
        """Cancel in-flight activations; their ack timers settle the sessions."""
        for task in list(self._activations):
            task.cancel()
        await asyncio.gather(*self._activations, return_exceptions=True)

    async def _acknowledge(self, session: Session) -> None:
        session.device_acknowledged = True
        await self._scheduler.cancel(TimerKind.ACK, session.id)
        await self._sessions.save(session)
        logger.info(f"Machine {session.machine_id} confirmed session {session.id}")

    async def on_device_ack(self, session_id: str) -> Optional[Session]:
        """Device confirmed it started the session."""
        async with self._locks.hold(session_id):
            session = await self._sessions.get(session_id)
            if session is None:
                logger.warning(f"Ack for unknown session {session_id}")
                return None
            if session.state is SessionState.ACTIVE and not session.device_acknowledged:
                await self._acknowledge(session)
            return session

    async def on_device_heartbeat(self, machine_id: str, seen_at: datetime) -> None:
        """A heartbeat after activation counts as the activation ack."""
        session_id = await self._machines.get_owner(machine_id)
        if session_id is None:
            return
        async with self._locks.hold(session_id):
            session = await self._sessions.get(session_id)
            if (
                session is not None
                and session.state is SessionState.ACTIVE
                and not session.device_acknowledged
                and session.activated_at is not None
                and seen_at >= session.activated_at
            ):
                await self._acknowledge(session)

    async def on_ack_timeout(self, session_id: str) -> Optional[Session]:
        """Grace window ran out without an ack or heartbeat."""
        async with self._locks.hold(session_id):
            session = await self._sessions.get(session_id)
            if session is None:
                return None
            if session.is_terminal:
                await self._release_settled(session)
            elif session.state is SessionState.ACTIVE and not session.device_acknowledged:
                logger.warning(f"Machine {session.machine_id} never confirmed session {session_id}")
                await self._fail(session, FailureReason.DEVICE_UNRESPONSIVE, deactivate=True)
            return session

    # =========================================================================
    # Payment Outcomes
    # =========================================================================

    async def on_payment_confirmed(self, reference: str) -> Optional[Session]:
        """
        Gateway confirmed the async portion.

        Unknown and already-settled references are ignored.
        """
        pending = await self._pending.get(reference)
        if pending is None:
            logger.info(f"Confirmation for unknown or settled payment {reference} ignored")
            return None

        async with self._locks.hold(pending.session_id):
            session = await self._load(pending.session_id)
            await self._pending.discard(reference)
            if session.state is not SessionState.AWAITING_PAYMENT:
                return session
            logger.info(f"Payment {reference} confirmed for session {session.id}")
            await self._start(session)
            return session

    async def on_payment_failed(self, reference: str) -> Optional[Session]:
        """Gateway rejected the async portion."""
        pending = await self._pending.get(reference)
        if pending is None:
            logger.info(f"Failure for unknown or settled payment {reference} ignored")
            return None

        async with self._locks.hold(pending.session_id):
            session = await self._load(pending.session_id)
            if session.state is not SessionState.AWAITING_PAYMENT:
                await self._pending.discard(reference)
                return session
            logger.info(f"Payment {reference} rejected for session {session.id}")
            return await self._fail(session, FailureReason.PAYMENT_FAILED)

    async def on_payment_expired(self, session_id: str) -> Optional[Session]:
        """Payment window closed before the session was paid."""
        async with self._locks.hold(session_id):
            session = await self._sessions.get(session_id)
            if session is None:
                return None
            if session.is_terminal:
                await self._release_settled(session)
            if session.state not in (SessionState.CREATED, SessionState.AWAITING_PAYMENT):
                return session
            logger.info(f"Payment window of session {session_id} expired")
            return await self._fail(session, FailureReason.PAYMENT_EXPIRED)

    # =========================================================================
    # Ending a Session
    # =========================================================================

    async def request_stop(self, session_id: str, user_id: Optional[str] = None) -> Session:
        """
        Stop an active session early. Paid time is not refunded.

        Raises:
            SessionNotFound: Unknown session.
            NotSessionOwner: ``user_id`` given and not the session owner.
            InvalidTransition: Session not started yet.
        """
        async with self._locks.hold(session_id):
            session = await self._load(session_id)
            if user_id is not None and session.user_id != user_id:
                raise NotSessionOwner(f"Session {session_id} belongs to another user")
            if session.is_terminal:
                return session
            if session.state is not SessionState.ACTIVE:
                raise InvalidTransition(
                    f"Session {session_id} is {session.state.value} and cannot be stopped",
                    current_state=session.state.value,
                    target_state=SessionState.TERMINATED.value,
                )

            await self._dispatcher.deactivate(session.machine_id, session.id)
            self._state_machine.transition(session, SessionState.TERMINATED, self._now())
            await self._settle_terminal(session)
            return session

    async def on_expiry(self, session_id: str) -> Optional[Session]:
        """Paid time is over."""
        async with self._locks.hold(session_id):
            session = await self._sessions.get(session_id)
            if session is None:
                return None
            if session.is_terminal:
                await self._release_settled(session)
            if session.state is not SessionState.ACTIVE:
                return session

            await self._dispatcher.deactivate(session.machine_id, session.id)
            self._state_machine.transition(session, SessionState.COMPLETED, self._now())
            await self._settle_terminal(session)
            return session

    async def on_session_ending(self, session_id: str) -> Optional[Session]:
        """Paid time is about to run out; tell the observers."""
        session = await self._sessions.get(session_id)
        if session is None:
            return None
        now = self._now()
        if session.state is SessionState.ACTIVE and session.remaining_seconds(now) > 0:
            logger.info(f"Session {session_id} ends in {session.remaining_seconds(now)} s")
            await self._broadcaster.publish(session.to_update(now, event=SESSION_ENDING_EVENT))
        return session

    async def on_device_offline_during_session(self, machine_id: str) -> Optional[Session]:
        """
        Machine stopped sending heartbeats while holding a session.

        Only an active session is failed. The balance portion is refunded
        while less than ``offline_refund_threshold`` of the paid time was used.
        """
        session_id = await self._machines.get_owner(machine_id)
        if session_id is None:
            return None

        async with self._locks.hold(session_id):
            session = await self._sessions.get(session_id)
            if session is None or session.state is not SessionState.ACTIVE:
                return session
            refund = session.elapsed_fraction(self._now()) < self._settings.offline_refund_threshold
            logger.warning(
                f"Machine {machine_id} lost connection during session {session_id}, "
                f"refund={'yes' if refund else 'no'}"
            )
            return await self._fail(
                session,
                FailureReason.DEVICE_LOST_CONNECTION,
                refund=refund,
                deactivate=True,
            )

    async def cancel(self, session_id: str, user_id: Optional[str] = None) -> Session:
        """
        Abandon a session that has not started.

        Raises:
            SessionNotFound: Unknown session.
            NotSessionOwner: ``user_id`` given and not the session owner.
            InvalidTransition: Session already active; stop it instead.
        """
        async with self._locks.hold(session_id):
            session = await self._load(session_id)
            if user_id is not None and session.user_id != user_id:
                raise NotSessionOwner(f"Session {session_id} belongs to another user")
            if session.is_terminal:
                return session
            if session.state is SessionState.ACTIVE:
                raise InvalidTransition(
                    f"Session {session_id} is already active, stop it instead",
                    current_state=session.state.value,
                    target_state=SessionState.FAILED.value,
                )
            logger.info(f"Session {session_id} cancelled by user")
            return await self._fail(session, FailureReason.CANCELLED)

    async def emergency_stop(self, machine_id: str) -> Optional[Session]:
        """
        Admin stop: deactivate a machine whatever it is doing.

        The session holding the machine, if any, is failed with
        ``EmergencyStop`` and its payment refunded. The deactivate command
        goes out even when no session holds the machine.

        Raises:
            MachineUnavailable: Unknown machine.
        """
        if await self._machines.get(machine_id) is None:
            raise MachineUnavailable(f"Machine not found: {machine_id}", machine_id=machine_id)

        session_id = await self._machines.get_owner(machine_id)
        if session_id is None:
            logger.warning(f"Emergency stop of idle machine {machine_id}")
            await self._dispatcher.deactivate(machine_id, None)
            return None

        await self._dispatcher.deactivate(machine_id, session_id)
        async with self._locks.hold(session_id):
            session = await self._sessions.get(session_id)
            if session is None:
                return None
            if session.is_terminal:
                await self._release_settled(session)
                return session
            logger.warning(f"Emergency stop of machine {machine_id} ends session {session_id}")
            return await self._fail(session, FailureReason.EMERGENCY_STOP)

    # =========================================================================
    # Queries and Recovery
    # =========================================================================

    async def get_session(self, session_id: str) -> dict[str, Any]:
        """Status pull: stored record with live remaining time and progress."""
        session = await self._load(session_id)
        return session.snapshot(self._now())

    async def _snapshots(self, session_ids: list[str]) -> list[dict[str, Any]]:
        now = self._now()
        result = []
        for session_id in session_ids:
            session = await self._sessions.get(session_id)
            if session is not None:
                result.append(session.snapshot(now))
        return result

    async def user_sessions(self, user_id: str) -> list[dict[str, Any]]:
        return await self._snapshots(await self._sessions.user_session_ids(user_id))

    async def machine_sessions(self, machine_id: str) -> list[dict[str, Any]]:
        return await self._snapshots(await self._sessions.machine_session_ids(machine_id))

    async def active_session(self, machine_id: str) -> Optional[dict[str, Any]]:
        """The non-terminal session holding a machine, if any."""
        session_id = await self._machines.get_owner(machine_id)
        if session_id is None:
            return None
        session = await self._sessions.get(session_id)
        if session is None or session.is_terminal:
            return None
        return session.snapshot(self._now())

    async def active_sessions(self) -> list[dict[str, Any]]:
        """Sessions running on a machine right now, earliest activation first."""
        running = []
        for session_id in await self._sessions.open_ids():
            session = await self._sessions.get(session_id)
            if session is not None and session.state is SessionState.ACTIVE:
                running.append(session)
        running.sort(key=lambda s: s.activated_at)
        now = self._now()
        return [session.snapshot(now) for session in running]

    async def recover(self) -> int:
        """
        Re-arm missing timers of open sessions, then fire overdue ones.

        Returns:
            Number of timers fired.
        """
        now = self._now()
        for session_id in await self._sessions.open_ids():
            session = await self._sessions.get(session_id)
            if session is None or session.is_terminal:
                continue
            await self._rearm(session, now)
        return await self._scheduler.reconcile(now)

    async def _rearm(self, session: Session, now: datetime) -> None:
        async def ensure(kind: TimerKind, due: datetime) -> None:
            if await self._scheduler.due_at(kind, session.id) is None:
                logger.info(f"Re-arming {kind.value} timer of session {session.id}")
                await self._scheduler.schedule(kind, session.id, due)

        if session.state is SessionState.CREATED:
            await ensure(TimerKind.PAYMENT, self._payment_deadline(session.created_at))
        elif session.state is SessionState.AWAITING_PAYMENT:
            pending = None
            if session.payment_reference:
                pending = await self._pending.get(session.payment_reference)
            deadline = pending.expires_at if pending else self._payment_deadline(session.created_at)
            await ensure(TimerKind.PAYMENT, deadline)
        elif session.state is SessionState.ACTIVE:
            await ensure(TimerKind.EXPIRY, session.expires_at)
            ending_at = session.expires_at - timedelta(seconds=self._settings.ending_warning_seconds)
            if session.duration_seconds > self._settings.ending_warning_seconds and ending_at > now:
                await ensure(TimerKind.ENDING, ending_at)
            if not session.device_acknowledged:
                await ensure(
                    TimerKind.ACK,
                    now + timedelta(seconds=self._settings.device_ack_grace_seconds),
                )
