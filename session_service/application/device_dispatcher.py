"""
Device Command Dispatcher - Talks to machine controllers.

Sends activate / deactivate commands with bounded retries and turns
inbound acks and heartbeats into engine callbacks. Also watches
heartbeats and marks silent machines offline.
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

from redis.asyncio import Redis

from core.exceptions import DeviceUnresponsive, RepositoryError
from core.interfaces import Clock, DeviceChannel, DeviceEventHandler
from domain.machine import MachineStatus
from event_system import EventPublisher, EventType
from infrastructure.redis_repository import MachineRepository
from infrastructure.settings import DeviceSettings
from loggers import logger


Sleep = Callable[[float], Awaitable[Any]]


class DeviceCommandDispatcher:
    """
    Outbound commands and inbound device events for all machines.

    The engine registers itself as the event handler after construction
    (``set_event_handler``), since the engine also depends on the dispatcher.
    """

    def __init__(
        self,
        channel: DeviceChannel,
        machines: MachineRepository,
        clock: Clock,
        settings: DeviceSettings,
        event_publisher: Optional[EventPublisher] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        """
        Initialize the dispatcher.

        Args:
            channel: Publish side of the device message channel.
            machines: Machine registry.
            clock: Time source.
            settings: Topics, retry policy and offline threshold.
            event_publisher: Publisher for machine status events, if any.
            sleep: Backoff sleep (tests pass a no-op).
        """
        self._channel = channel
        self._machines = machines
        self._clock = clock
        self._settings = settings
        self._event_publisher = event_publisher
        self._sleep = sleep
        self._handler: Optional[DeviceEventHandler] = None

    def set_event_handler(self, handler: DeviceEventHandler) -> None:
        self._handler = handler

    # =========================================================================
    # Outbound Commands
    # =========================================================================

    def backoff_delays(self) -> list[float]:
        """Delays between consecutive publish attempts."""
        delays = []
        delay = self._settings.initial_backoff_seconds
        for _ in range(self._settings.publish_attempts - 1):
            delays.append(min(delay, self._settings.max_backoff_seconds))
            delay *= self._settings.backoff_factor
        return delays

    def retry_budget_seconds(self) -> float:
        """Longest time a command can spend in backoff before it gives up."""
        return sum(self.backoff_delays())

    async def _publish_with_retry(self, machine_id: str, payload: dict[str, Any]) -> None:
        topic = self._settings.command_topic(machine_id)
        delays = self.backoff_delays()
        last_error: Optional[Exception] = None

        for attempt in range(1, self._settings.publish_attempts + 1):
            try:
                await self._channel.publish(topic, payload)
                return
            except (ConnectionError, TimeoutError) as e:
                last_error = e
                logger.warning(
                    f"Publishing {payload['type']} to {machine_id} failed "
                    f"(attempt {attempt}/{self._settings.publish_attempts}): {e}"
                )
                if attempt <= len(delays):
                    await self._sleep(delays[attempt - 1])

        raise DeviceUnresponsive(
            f"Machine {machine_id} did not accept {payload['type']}: {last_error}",
            machine_id=machine_id,
        )

    async def activate(self, machine_id: str, session_id: str, duration_minutes: int) -> None:
        """
        Send the activate command.

        Raises:
            DeviceUnresponsive: If every publish attempt failed.
        """
        await self._publish_with_retry(machine_id, {
            "type": "activate",
            "session_id": session_id,
            "duration_minutes": duration_minutes,
            "timestamp": self._clock.now().isoformat(),
        })
        logger.info(f"Activate sent to {machine_id} for session {session_id}")

    async def deactivate(self, machine_id: str, session_id: Optional[str]) -> bool:
        """
        Send the deactivate command.

        ``session_id`` is None when a machine is stopped without an owning
        session (emergency stop of an idle machine).

        Returns:
            False if the command could not be delivered (logged, not raised).
        """
        try:
            await self._publish_with_retry(machine_id, {
                "type": "deactivate",
                "session_id": session_id,
                "timestamp": self._clock.now().isoformat(),
            })
        except DeviceUnresponsive as e:
            logger.error(f"Deactivate to {machine_id} (session {session_id}) not delivered: {e.message}")
            return False
        logger.info(f"Deactivate sent to {machine_id} for session {session_id}")
        return True

    async def request_status(self, machine_id: str) -> bool:
        """
        Ask a machine to report its state.

        The controller answers on its events topic with a heartbeat.

        Returns:
            False if the request could not be delivered.
        """
        try:
            await self._publish_with_retry(machine_id, {
                "type": "status",
                "timestamp": self._clock.now().isoformat(),
            })
        except DeviceUnresponsive as e:
            logger.error(f"Status request to {machine_id} not delivered: {e.message}")
            return False
        logger.info(f"Status requested from {machine_id}")
        return True

    # =========================================================================
    # Inbound Events
    # =========================================================================

    def _machine_id_from_topic(self, topic: str) -> Optional[str]:
        parts = topic.split("/")
        if len(parts) != 3 or parts[0] != self._settings.topic_prefix or parts[2] != "events":
            return None
        return parts[1] or None

    async def handle_message(self, topic: str, raw: Any) -> None:
        """
        Handle one message from a machine's events topic.

        Malformed messages are logged and dropped.
        """
        machine_id = self._machine_id_from_topic(topic)
        if machine_id is None:
            logger.warning(f"Ignoring message on unexpected topic {topic}")
            return

        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning(f"Malformed device message from {machine_id}: {raw!r}")
            return
        if not isinstance(message, dict):
            logger.warning(f"Malformed device message from {machine_id}: {raw!r}")
            return

        message_type = message.get("type")
        if message_type == "ack":
            session_id = message.get("session_id")
            if not isinstance(session_id, str) or not session_id:
                logger.warning(f"Ack without session id from {machine_id}")
                return
            logger.info(f"Ack from {machine_id} for session {session_id}")
            if self._handler is not None:
                await self._handler.on_device_ack(session_id)
        elif message_type == "heartbeat":
            reported = message.get("machine_id")
            if reported is not None and reported != machine_id:
                logger.warning(f"Heartbeat for {reported} arrived on {topic}, dropped")
                return
            await self.record_heartbeat(machine_id)
        else:
            logger.warning(f"Unknown device message type from {machine_id}: {message_type!r}")

    async def record_heartbeat(self, machine_id: str) -> None:
        seen_at = self._clock.now()
        machine = await self._machines.get(machine_id)
        if machine is None:
            logger.warning(f"Heartbeat from unregistered machine {machine_id}")
            return

        await self._machines.record_heartbeat(machine_id, seen_at)
        if machine.status is MachineStatus.OFFLINE:
            logger.info(f"Machine {machine_id} is back online")
            await self._publish_status(machine_id, MachineStatus.ONLINE)
        if self._handler is not None:
            await self._handler.on_device_heartbeat(machine_id, seen_at)

    async def listen(self, redis: Redis) -> None:
        """Consume every machine's events topic until cancelled."""
        pubsub = redis.pubsub()
        await pubsub.psubscribe(self._settings.events_pattern)
        logger.info(f"Listening for device events on {self._settings.events_pattern}")

        try:
            async for message in pubsub.listen():
                if message.get("type") != "pmessage":
                    continue
                try:
                    await self.handle_message(message["channel"], message["data"])
                except RepositoryError as e:
                    logger.error(f"Device event from {message['channel']} not processed: {e}")
        finally:
            await pubsub.aclose()

    # =========================================================================
    # Offline Detection
    # =========================================================================

    async def check_offline_machines(self, now: Optional[datetime] = None) -> list[str]:
        """
        Mark machines with stale heartbeats offline.

        A machine still owned by a session is reported to the engine on
        every check until the engine has settled that session.

        Returns:
            Ids of the machines found silent.
        """
        now = now or self._clock.now()
        threshold = timedelta(seconds=self._settings.offline_threshold_seconds)
        silent = []

        for machine_id in sorted(await self._machines.list_ids()):
            machine = await self._machines.get(machine_id)
            if machine is None:
                continue
            if machine.last_heartbeat is not None and now - machine.last_heartbeat <= threshold:
                continue

            silent.append(machine_id)
            if machine.status is MachineStatus.ONLINE:
                await self._machines.set_status(machine_id, MachineStatus.OFFLINE)
                logger.warning(f"Machine {machine_id} marked offline, last heartbeat {machine.last_heartbeat}")
                await self._publish_status(machine_id, MachineStatus.OFFLINE)
            if machine.owner_session_id and self._handler is not None:
                await self._handler.on_device_offline_during_session(machine_id)

        return silent

    async def run_offline_monitor(self) -> None:
        while True:
            await asyncio.sleep(self._settings.offline_check_interval_seconds)
            try:
                await self.check_offline_machines()
            except RepositoryError as e:
                logger.error(f"Offline check failed: {e}")

    async def _publish_status(self, machine_id: str, status: MachineStatus) -> None:
        if self._event_publisher is not None:
            await self._event_publisher.publish(
                EventType.MACHINE_STATUS,
                data={"machine_id": machine_id, "status": status.value},
            )
