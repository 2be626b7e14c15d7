"""ARQ (Async Redis Queue) configuration utilities.

Provides helpers for parsing Redis connection settings from the
application config into ARQ-compatible RedisSettings.
"""

from typing import Optional
from urllib.parse import urlparse

from arq.connections import RedisSettings
from libs.common.config import get_settings


def get_redis_settings(conn_retries: Optional[int] = None) -> RedisSettings:
    """Parse REDIS_URL from application settings into ARQ RedisSettings.

    API processes pass a small ``conn_retries`` so an absent broker is
    detected quickly at startup; workers keep ARQ's default.
    """
    settings = get_settings()
    parsed = urlparse(settings.REDIS_URL)

    redis_settings = RedisSettings(
        host=parsed.hostname or "localhost",
        port=parsed.port or 6379,
        database=int(parsed.path.lstrip("/") or "0"),
        password=parsed.password,
        ssl=parsed.scheme == "rediss",
        conn_timeout=settings.QUEUE_CONNECT_TIMEOUT,
    )
    if conn_retries is not None:
        redis_settings.conn_retries = conn_retries
    return redis_settings
