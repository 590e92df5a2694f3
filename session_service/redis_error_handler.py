"""
Redis error handling utilities.

This module provides a decorator for admin operations that talk to Redis
directly, turning connectivity failures into the standard command
response instead of an exception.
"""

from functools import wraps
from typing import Any, Callable, TypeVar

from redis.exceptions import ConnectionError as RedisClientConnectionError
from redis.exceptions import TimeoutError as RedisClientTimeoutError

from core.exceptions import RepositoryError
from loggers import logger


F = TypeVar("F", bound=Callable[..., Any])


def redis_error_handler(success_message: str) -> Callable[[F], F]:
    """
    Decorator for handling Redis errors and providing unified responses.

    Args:
        success_message: The message to return on successful operation.

    Returns:
        Decorated function returning ``{"success", "message"[, "data"]}``.

    Example:
        @redis_error_handler("Credit added")
        async def add_credit(self, user_id: str, amount: int):
            return await self._ledger.add_credit(user_id, amount)
    """
    def decorator(func: F) -> F:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> dict[str, Any]:
            try:
                result = await func(*args, **kwargs)
            except (RepositoryError, RedisClientConnectionError) as e:
                logger.error(f"Redis connection error in {func.__name__}: {e}")
                return {"success": False, "message": f"Redis connection error: {e}"}
            except RedisClientTimeoutError as e:
                logger.error(f"Redis timeout error in {func.__name__}: {e}")
                return {"success": False, "message": f"Redis timeout error: {e}"}

            response: dict[str, Any] = {"success": True, "message": success_message}
            if result is not None:
                response["data"] = result
            return response
        return wrapper  # type: ignore
    return decorator
