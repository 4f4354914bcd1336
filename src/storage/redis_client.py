"""
Async Redis client factory.

Redis holds advisory state only (published ranking, feed snapshots, the
content-rules cache, the scoring lock and the pinned announcement). Losing
it degrades freshness, never the system of record in PostgreSQL.
"""

import redis.asyncio as redis

from src.config.settings import get_settings


def create_redis_client(redis_url: str | None = None) -> redis.Redis:
    """Create a decode_responses Redis client for the configured URL.

    Callers own the client and close it with ``aclose()``.
    """
    settings = get_settings()
    return redis.from_url(
        redis_url or str(settings.redis_url),
        encoding="utf-8",
        decode_responses=True,
    )
