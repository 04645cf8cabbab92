"""Per-account request quotas backed by Redis, with a process-local fallback."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from typing import Callable, Dict, Tuple

from fastapi import HTTPException, Request
import redis.asyncio as redis

from config import settings

logger = logging.getLogger(__name__)

RATE_KEY_PREFIX = "mcv:rate"

# key -> (hits in window, window end as epoch seconds)
_fallback_windows: Dict[str, Tuple[int, float]] = {}
_fallback_lock = asyncio.Lock()


def quota_subject(request: Request) -> str:
    """Quota per account when the route names one, else per calling host."""
    account_id = request.path_params.get("account_id")
    if account_id:
        return f"account:{account_id}"
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return f"host:{forwarded.split(',')[0].strip()}"
    if request.client and request.client.host:
        return f"host:{request.client.host}"
    return "host:unknown"


async def _hit_redis(key: str, window_seconds: int) -> Tuple[int, int]:
    client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        async with client.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            pipe.expire(key, window_seconds, nx=True)
            pipe.ttl(key)
            hits, _, ttl = await pipe.execute()
    finally:
        await client.aclose()
    return int(hits), max(int(ttl), 0)


async def _hit_fallback(key: str, window_seconds: int) -> Tuple[int, int]:
    now = time.time()
    async with _fallback_lock:
        hits, window_end = _fallback_windows.get(key, (0, now + window_seconds))
        if now >= window_end:
            hits, window_end = 0, now + window_seconds
        hits += 1
        _fallback_windows[key] = (hits, window_end)
    return hits, math.ceil(window_end - now)


def rate_limit(prefix: str, limit: int, window_seconds: int) -> Callable[[Request], None]:
    """Build a FastAPI dependency allowing ``limit`` hits per subject per window."""

    async def _dependency(request: Request):
        if getattr(request.app.state, "disable_rate_limits", False):
            return

        key = f"{RATE_KEY_PREFIX}:{prefix}:{quota_subject(request)}"
        try:
            hits, retry_after = await _hit_redis(key, window_seconds)
        except Exception as exc:
            logger.debug("Redis unavailable for rate limiting (%s); using local window", exc)
            hits, retry_after = await _hit_fallback(key, window_seconds)

        if hits > limit:
            raise HTTPException(
                status_code=429,
                detail=f"Too many {prefix} requests. Try again later.",
                headers={"Retry-After": str(retry_after or window_seconds)},
            )

    return _dependency
