"""
Expiry Scheduler - Durable, cancelable timers for session deadlines.

Timers live in a Redis sorted set, so they survive a restart. Whoever
removes a due member from the set owns its firing, so two processes
ticking never run the same timer together. A timer whose handler raises
is put back with a short delay and fires again until a handler run
succeeds.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from core.exceptions import RepositoryError
from core.interfaces import Clock
from infrastructure.redis_repository import TimerRepository
from loggers import logger


TimerHandler = Callable[[str], Awaitable[Any]]


class TimerKind(str, Enum):
    """Deadlines a session can have armed."""

    PAYMENT = "payment"  # Authorization / payment window
    ACK = "ack"          # Device acknowledgement grace window
    EXPIRY = "expiry"    # End of paid time
    ENDING = "ending"    # "Ending soon" warning shortly before expiry


def timer_member(kind: TimerKind, session_id: str) -> str:
    return f"{kind.value}:{session_id}"


def parse_member(member: str) -> tuple[TimerKind, str]:
    kind, _, session_id = member.partition(":")
    return TimerKind(kind), session_id


class ExpiryScheduler:
    """
    Schedules and fires session timers.

    Handlers are registered per timer kind and receive the session id.
    A handler must tolerate the session having left the state the timer
    was armed for.
    """

    def __init__(
        self,
        repository: TimerRepository,
        clock: Clock,
        tick_seconds: float = 1.0,
        retry_seconds: float = 5.0,
    ) -> None:
        """
        Initialize the scheduler.

        Args:
            repository: Timer storage.
            clock: Time source.
            tick_seconds: Polling interval of ``run_forever``.
            retry_seconds: Delay before a timer whose handler raised fires again.
        """
        self._repository = repository
        self._clock = clock
        self._tick_seconds = tick_seconds
        self._retry_delay = timedelta(seconds=retry_seconds)
        self._handlers: dict[TimerKind, TimerHandler] = {}

    def register_handler(self, kind: TimerKind, handler: TimerHandler) -> None:
        self._handlers[kind] = handler

    async def schedule(self, kind: TimerKind, session_id: str, due: datetime) -> None:
        """Arm a timer, replacing the due time if it is already armed."""
        await self._repository.schedule(timer_member(kind, session_id), due)
        logger.debug(f"Timer {kind.value} for {session_id} due at {due.isoformat()}")

    async def cancel(self, kind: TimerKind, session_id: str) -> bool:
        return await self._repository.remove(timer_member(kind, session_id))

    async def cancel_all(self, session_id: str) -> None:
        for kind in TimerKind:
            await self.cancel(kind, session_id)

    async def due_at(self, kind: TimerKind, session_id: str) -> Optional[datetime]:
        return await self._repository.due_at(timer_member(kind, session_id))

    async def run_due(self, now: Optional[datetime] = None) -> int:
        """
        Fire every timer due at ``now``.

        A handler that raises gets its timer re-armed at
        ``now + retry_seconds``; the error is logged.

        Returns:
            Number of timers fired by this call, failed handler runs included.
        """
        now = now or self._clock.now()
        fired = 0
        for member in await self._repository.due(now):
            # Lost the race to another ticker or to a cancel
            if not await self._repository.remove(member):
                continue
            try:
                kind, session_id = parse_member(member)
            except ValueError:
                logger.warning(f"Dropping unknown timer {member}")
                continue

            handler = self._handlers.get(kind)
            if handler is None:
                logger.warning(f"No handler for {kind.value} timer of session {session_id}")
                continue

            fired += 1
            try:
                await handler(session_id)
            except Exception as e:
                retry_at = now + self._retry_delay
                logger.exception(f"Timer {member} handler failed, retrying at {retry_at.isoformat()}: {e}")
                await self._repository.schedule(member, retry_at)
        return fired

    async def reconcile(self, now: Optional[datetime] = None) -> int:
        """Fire timers that fell due while the service was down."""
        fired = await self.run_due(now)
        if fired:
            logger.info(f"Fired {fired} overdue timers on startup")
        return fired

    async def run_forever(self) -> None:
        logger.info("Expiry scheduler started")
        while True:
            try:
                await self.run_due()
            except RepositoryError as e:
                logger.error(f"Scheduler tick failed: {e}")
            await asyncio.sleep(self._tick_seconds)
