"""
Event system for the session service.

This module provides an in-process publish-subscribe queue that carries
session and machine events away from the code that produced them, so a
slow consumer (the WebSocket relay) never holds up a state transition.
"""

import asyncio
import inspect
from enum import Enum
from typing import Any, Callable, Optional, Union

from loggers import logger


class EventType(str, Enum):
    """
    Enumeration of event types in the session service.

    These events are published after a state change has been stored.
    """

    SESSION_UPDATE = "session_update"
    MACHINE_STATUS = "machine_status"


class EventPublisher:
    """
    Publisher for sending events to the event queue.

    Attributes:
        event_queue: The asyncio queue to publish events to.
    """

    def __init__(self, event_queue: asyncio.Queue) -> None:
        self.event_queue = event_queue

    async def publish(self, event_type: Union[EventType, str], **data: Any) -> None:
        """
        Publish an event to the queue.

        Args:
            event_type: The type of event to publish.
            **data: Event payload as keyword arguments.
        """
        event = {"type": event_type, **data}
        await self.event_queue.put(event)


class EventConsumer:
    """
    Consumer for processing events from the event queue.

    Events are processed one at a time in queue order; the handlers of a
    single event run concurrently.

    Attributes:
        event_queue: The asyncio queue to consume events from.
        handlers: Mapping of event types to their handler functions.
        is_consuming: Flag indicating if the consumer is active.
    """

    def __init__(self, event_queue: asyncio.Queue) -> None:
        self.event_queue = event_queue
        self.handlers: dict[Union[EventType, str], list[Callable]] = {}
        self.is_consuming = False
        self._consume_task: Optional[asyncio.Task] = None

    def register_handler(
        self,
        event_type: Union[EventType, str],
        handler: Callable,
    ) -> None:
        """
        Register a handler for an event type.

        Args:
            event_type: The event type to handle.
            handler: The handler function (sync or async).
        """
        self.handlers.setdefault(event_type, []).append(handler)

    async def process_event(self, event: dict[str, Any]) -> None:
        """
        Process a single event by calling all registered handlers.

        Handler errors are logged and do not reach the consumer loop.
        """
        handlers = self.handlers.get(event.get("type"), [])
        if not handlers:
            return

        async_handlers = [h for h in handlers if inspect.iscoroutinefunction(h)]
        sync_handlers = [h for h in handlers if not inspect.iscoroutinefunction(h)]

        if async_handlers:
            results = await asyncio.gather(
                *(handler(event) for handler in async_handlers),
                return_exceptions=True,
            )
            for result in results:
                if isinstance(result, Exception):
                    logger.error(f"Event handler failed for {event.get('type')}: {result}")

        for handler in sync_handlers:
            try:
                handler(event)
            except Exception as e:
                logger.error(f"Event handler failed for {event.get('type')}: {e}")

    async def _consume_loop(self) -> None:
        while self.is_consuming:
            try:
                event = await asyncio.wait_for(self.event_queue.get(), timeout=0.5)
            except asyncio.TimeoutError:
                continue
            try:
                await self.process_event(event)
            finally:
                self.event_queue.task_done()

    async def start_consuming(self) -> None:
        """Start processing events from the queue in a background task."""
        if self.is_consuming:
            return

        self.is_consuming = True
        self._consume_task = asyncio.create_task(self._consume_loop())

    async def stop_consuming(self) -> None:
        """Stop processing events and cancel the consumption task."""
        self.is_consuming = False

        if self._consume_task:
            self._consume_task.cancel()
            try:
                await self._consume_task
            except asyncio.CancelledError:
                pass
            self._consume_task = None
