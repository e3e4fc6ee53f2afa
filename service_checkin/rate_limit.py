from __future__ import annotations

import logging
import threading
import time
from typing import Tuple

import redis
from fastapi import HTTPException, Request, status

from .config import get_settings


logger = logging.getLogger(__name__)

_window_counts: dict[Tuple[str, str, int], int] = {}
_counts_lock = threading.Lock()


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _hit_local(scope: str, ip: str) -> int:
    minute = int(time.time() // 60)
    with _counts_lock:
        # Drop windows from earlier minutes so the table cannot grow without bound
        for key in [k for k in _window_counts if k[2] < minute]:
            del _window_counts[key]
        key = (scope, ip, minute)
        count = _window_counts.get(key, 0) + 1
        _window_counts[key] = count
    return count


def _hit_redis(scope: str, ip: str) -> int:
    from .redis_conn import get_redis

    r = get_redis()
    key = f"rl:{scope}:{ip}:{int(time.time() // 60)}"
    pipe = r.pipeline()
    pipe.incr(key)
    pipe.expire(key, 60)
    count, _ = pipe.execute()
    return int(count)


def rate_limit_check(request: Request, token: str) -> None:
    settings = get_settings()
    if not settings.rate_limit_enabled:
        return
    count = _hit_local(token, _client_ip(request))
    if count > settings.rate_limit_per_minute:
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail="Rate limit exceeded")


def public_rate_limit_check(request: Request, route_key: str) -> None:
    """Per-IP fixed window for unauthenticated routes; shared across instances when Redis is the store."""
    settings = get_settings()
    if not settings.public_rate_limit_enabled:
        return
    ip = _client_ip(request)
    scope = f"public:{route_key}"
    if settings.token_store_backend == "redis":
        try:
            count = _hit_redis(scope, ip)
        except redis.RedisError:
            logger.warning("redis rate limit unavailable, falling back to local window", exc_info=True)
            count = _hit_local(scope, ip)
    else:
        count = _hit_local(scope, ip)
    if count > settings.public_rate_limit_per_minute:
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail="Too many check-in attempts, please wait a minute")
