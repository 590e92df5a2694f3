"""
Session Service - Main entry point.

Wires the session engine to Redis, recovers open sessions, starts the
background loops (timers, device events, offline monitor, payment
polling) and serves commands over Redis pub/sub.
"""

import asyncio
import json
from typing import Any

from redis.asyncio import Redis

from application.api_facade import SessionServiceFacade
from application.command_handler import CommandHandler
from infrastructure.settings import get_settings
from loggers import logger


# =============================================================================
# Redis Command Listener
# =============================================================================


async def listen_to_redis(redis: Redis, handler: CommandHandler) -> None:
    """
    Listen for commands on Redis pub/sub and publish the responses.

    Args:
        redis: Redis client instance.
        handler: Command router.
    """
    settings = get_settings()
    command_channel = settings.commands.command_channel
    response_channel = settings.commands.response_channel

    pubsub = redis.pubsub()
    await pubsub.subscribe(command_channel)
    logger.info(f"Listening for commands on channel: {command_channel}")

    async for message in pubsub.listen():
        if message.get("type") != "message":
            continue

        raw_data = message.get("data")
        if raw_data == "ping":
            continue

        try:
            command: Any = json.loads(raw_data)
        except json.JSONDecodeError as e:
            logger.error(f"Command parsing error: {e}")
            continue
        if not isinstance(command, dict):
            logger.error(f"Command must be a JSON object: {raw_data!r}")
            continue

        logger.info(f"Received command: {command.get('command')} ({command.get('command_id')})")
        response = await handler.execute(command)
        await redis.publish(response_channel, json.dumps(response))
        logger.debug(f"Response sent to {response_channel}: {response}")


# =============================================================================
# Main Entry Point
# =============================================================================


async def main() -> None:
    """
    Main entry point for the session service.

    Connects to Redis, starts the facade and serves commands until
    interrupted.
    """
    settings = get_settings()

    redis = Redis(
        host=settings.redis.host,
        port=settings.redis.port,
        db=settings.redis.db,
        decode_responses=settings.redis.decode_responses,
    )

    api = SessionServiceFacade(redis, settings)
    await api.start()
    try:
        await listen_to_redis(redis, CommandHandler(api))
    finally:
        await api.shutdown()
        await redis.aclose()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Application stopped by user")
