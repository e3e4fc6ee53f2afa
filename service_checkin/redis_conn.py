from __future__ import annotations

from typing import Optional

import redis

from .config import get_settings


_r: Optional[redis.Redis] = None


def get_redis() -> redis.Redis:
    global _r
    if _r is None:
        settings = get_settings()
        _r = redis.Redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_timeout=settings.checkin_timeout_seconds,
            socket_connect_timeout=settings.checkin_timeout_seconds,
        )
    return _r


def ping_redis() -> bool:
    try:
        return bool(get_redis().ping())
    except redis.RedisError:
        return False
