"""
WebSocket client for relaying real-time events to the front-end server.

The front-end server fans session updates out to the browsers and
kiosk screens watching a session, a user or a machine.
"""

import json
from typing import Any, Optional

import websockets
from websockets.exceptions import WebSocketException

from configs import WS_URL
from loggers import logger


WS_OPEN_TIMEOUT: float = 5.0


async def send_to_ws(
    event: str,
    data: Optional[dict[str, Any]] = None,
    ws_url: str = WS_URL,
) -> bool:
    """
    Send one event to the WebSocket server.

    Args:
        event: Event name, e.g. ``sessionUpdate``.
        data: Event payload.
        ws_url: WebSocket URL to connect to (default from config).

    Returns:
        True if the message was sent, False otherwise.

    Example:
        await send_to_ws(
            event="sessionUpdate",
            data={"session_id": "3f2a", "state": "active", "remaining_seconds": 600},
        )
    """
    message = {"event": event, "data": data}

    try:
        async with websockets.connect(ws_url, open_timeout=WS_OPEN_TIMEOUT) as ws:
            await ws.send(json.dumps(message))
            logger.debug(f"WebSocket message sent: {event}")
            return True
    except (WebSocketException, OSError, TimeoutError) as e:
        logger.warning(f"WebSocket relay of {event} failed: {e!r}")
        return False
