"""Async Redis client factory for the stream backends.

Stream clients are bound to the event loop that created them. Celery
tasks run each invocation in a fresh loop, so owners of a client call
``current_loop_id()`` and recreate the client when it changes.
"""

import asyncio

import redis.asyncio as aioredis
import structlog

from orchestrator.core.config import get_settings

logger = structlog.get_logger(__name__)


def current_loop_id() -> int | None:
    """Get the ID of the current event loop, or None if no loop is running."""
    try:
        return id(asyncio.get_running_loop())
    except RuntimeError:
        return None


def create_async_redis_client() -> aioredis.Redis:
    """Create an async Redis client from settings.

    Returns:
        Redis client returning decoded strings.
    """
    redis_url = get_settings().redis_url
    client = aioredis.from_url(
        redis_url,
        decode_responses=True,
        socket_timeout=5.0,
    )
    logger.debug(
        "async_redis_client_initialized",
        url=redis_url[:30] + "..." if len(redis_url) > 30 else redis_url,
    )
    return client
