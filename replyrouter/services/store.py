"""Redis client construction.

One client is built at startup and handed to every store-backed component;
nothing else in the package opens its own connection.
"""

from __future__ import annotations

import logging

import redis

logger = logging.getLogger(__name__)


def create_redis_client(url: str | None) -> redis.Redis | None:
    """Build a client for ``url``, or ``None`` when no store is configured.

    The connection is lazy: an unreachable server surfaces as
    ``redis.RedisError`` on first use, which each component handles.
    """
    if not url:
        logger.warning("REDIS_URL not set; guards fail open and history is not kept")
        return None
    client = redis.Redis.from_url(url, decode_responses=True, socket_timeout=5)
    logger.info("Redis client configured for %s", url.split("@")[-1])
    return client


def close_redis_client(client: redis.Redis | None) -> None:
    if client is not None:
        client.close()
