"""Per-client request guards: caller address, IP blacklist and request quotas."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, Tuple

from fastapi import Depends, HTTPException, Request
import redis.asyncio as redis
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from services.security_guard import ACTION_BLOCKED_REQUEST, is_blocked, is_valid_ipv4, log_security_event

logger = logging.getLogger(__name__)

QUOTA_KEY_PREFIX = "cv:quota"

# Fixed windows kept in-process while Redis is unreachable: key -> (hits, window end).
_fallback_windows: Dict[str, Tuple[int, float]] = {}
_fallback_lock = asyncio.Lock()


def client_ip(request: Request) -> str:
    """Caller address used for quotas, the blacklist and security logs."""
    if request.client and request.client.host:
        return request.client.host
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return "unknown"


async def guard_client_ip(request: Request, db: AsyncSession = Depends(get_db)) -> str:
    """Return the caller address, or 403 when it is on the blacklist.

    Addresses that are not dotted-quad IPv4 (IPv6, unix sockets) are not
    tracked by the blacklist and pass through.
    """
    ip = client_ip(request)
    if not is_valid_ipv4(ip):
        return ip
    if await is_blocked(ip, db):
        await log_security_event(db, ACTION_BLOCKED_REQUEST, ip_address=ip, details={"path": request.url.path})
        raise HTTPException(
            status_code=403,
            detail={"reason": "ip_blocked", "message": "Requests from this address are blocked."},
        )
    return ip


async def _fallback_hit(key: str, window_seconds: int) -> int:
    now = time.monotonic()
    async with _fallback_lock:
        hits, window_end = _fallback_windows.get(key, (0, now + window_seconds))
        if now >= window_end:
            hits, window_end = 0, now + window_seconds
        hits += 1
        _fallback_windows[key] = (hits, window_end)
        return hits


async def _record_hit(key: str, window_seconds: int) -> int:
    try:
        client = redis.from_url(settings.REDIS_URL, decode_responses=True)
        try:
            hits = await client.incr(key)
            if hits == 1:
                await client.expire(key, window_seconds)
        finally:
            await client.aclose()
    except (RedisError, OSError) as exc:
        logger.debug("Quota store unavailable for %s, counting in-process: %s", key, exc)
        return await _fallback_hit(key, window_seconds)
    return int(hits)


def rate_limit(scope: str, limit: int, window_seconds: int) -> Callable[[], None]:
    """Dependency allowing ``limit`` requests per client address per window."""

    async def _dependency(request: Request):
        if getattr(request.app.state, "disable_rate_limits", False):
            return

        ip = client_ip(request)
        hits = await _record_hit(f"{QUOTA_KEY_PREFIX}:{scope}:{ip}", window_seconds)
        if hits > limit:
            logger.warning("Quota %s exceeded by %s (%d/%d)", scope, ip, hits, limit)
            raise HTTPException(
                status_code=429,
                detail={
                    "reason": "rate_limited",
                    "message": f"Too many {scope} requests. Try again later.",
                    "retry_after_seconds": window_seconds,
                },
            )

    return _dependency
