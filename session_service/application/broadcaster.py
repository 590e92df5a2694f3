"""
Real-Time Broadcaster - Pushes session updates to observers.

Subscribers listen on ``session:{id}``, ``user:{uid}`` or ``machine:{mid}``
channels and each own a bounded queue. Delivery never blocks the caller:
an update that does not fit a subscriber's queue is dropped for that
subscriber only.
"""

from __future__ import annotations

import asyncio
from typing import Any, Optional

from core.value_objects import SessionUpdate
from event_system import EventPublisher, EventType
from send_to_ws import send_to_ws
from loggers import logger


DEFAULT_QUEUE_SIZE = 100


class SessionBroadcaster:
    """
    Fan-out of session updates to in-process subscribers.

    When an event publisher is given, every update is also queued as a
    ``session_update`` event for the WebSocket relay.
    """

    def __init__(
        self,
        event_publisher: Optional[EventPublisher] = None,
        queue_size: int = DEFAULT_QUEUE_SIZE,
    ) -> None:
        """
        Initialize the broadcaster.

        Args:
            event_publisher: Publisher feeding the WebSocket relay, if any.
            queue_size: Default capacity of subscriber queues.
        """
        self._event_publisher = event_publisher
        self._queue_size = queue_size
        self._subscribers: dict[str, list[asyncio.Queue]] = {}

    def subscribe(self, channel: str, maxsize: Optional[int] = None) -> asyncio.Queue:
        """
        Subscribe to a channel.

        Args:
            channel: ``session:{id}``, ``user:{uid}`` or ``machine:{mid}``.
            maxsize: Queue capacity, defaults to the broadcaster's.

        Returns:
            The queue updates for this channel are put on.
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize or self._queue_size)
        self._subscribers.setdefault(channel, []).append(queue)
        return queue

    def unsubscribe(self, channel: str, queue: asyncio.Queue) -> None:
        queues = self._subscribers.get(channel, [])
        if queue in queues:
            queues.remove(queue)
        if not queues:
            self._subscribers.pop(channel, None)

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscribers.get(channel, []))

    async def publish(self, update: SessionUpdate) -> int:
        """
        Deliver an update to every subscriber of its channels.

        Returns:
            Number of queues the update was put on.
        """
        payload = update.to_dict()
        delivered = 0
        for channel in update.channels:
            for queue in list(self._subscribers.get(channel, [])):
                try:
                    queue.put_nowait(payload)
                    delivered += 1
                except asyncio.QueueFull:
                    logger.warning(
                        f"Subscriber queue full on {channel}, dropped {update.state} "
                        f"update of session {update.session_id}"
                    )

        if self._event_publisher is not None:
            await self._event_publisher.publish(EventType.SESSION_UPDATE, data=payload)
        return delivered


async def relay_session_update(event: dict[str, Any]) -> None:
    """Event handler forwarding a session update to the WebSocket server."""
    await send_to_ws(event="sessionUpdate", data=event.get("data"))


async def relay_machine_status(event: dict[str, Any]) -> None:
    """Event handler forwarding a machine status change to the WebSocket server."""
    await send_to_ws(event="machineStatus", data=event.get("data"))
