"""IP blacklist and security audit log for coupon and admin operations.

The guard is advisory. Store failures are logged and treated as "not
blocked" so an unavailable table never locks legitimate users out of
checkout; the authorization boundary is the session token, not this module.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
import re
from typing import Any, Dict, List, Optional

from fastapi import HTTPException
from sqlalchemy import delete, func, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.ip_blacklist import IPBlacklist
from models.security_log import SecurityLog

logger = logging.getLogger(__name__)

IPV4_PATTERN = re.compile(
    r"^(?:(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)\.){3}(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)$"
)

ACTION_VALIDATION_FAILED = "validation_failed"
ACTION_BLOCKED_BRUTE_FORCE = "blocked_brute_force"
ACTION_DUPLICATE_USAGE = "duplicate_usage_attempt"
ACTION_INVALID_FORMAT = "invalid_format"
ACTION_BLOCKED_REQUEST = "blocked_request"
ACTION_WEBHOOK_SIGNATURE_INVALID = "webhook_signature_invalid"
ACTION_ADMIN_IP_BLOCKED = "admin_ip_blocked"
ACTION_ADMIN_IP_UNBLOCKED = "admin_ip_unblocked"
ACTION_ADMIN_COUPON_CHANGE = "admin_coupon_change"


class InvalidIPAddressError(HTTPException):
    def __init__(self, ip_address: Optional[str]):
        super().__init__(
            status_code=400,
            detail={"reason": "invalid_ip_address", "message": f"Invalid IPv4 address: {ip_address}"},
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def is_valid_ipv4(ip_address: Optional[str]) -> bool:
    return bool(IPV4_PATTERN.match(str(ip_address or "").strip()))


def require_valid_ipv4(ip_address: Optional[str]) -> str:
    candidate = str(ip_address or "").strip()
    if not is_valid_ipv4(candidate):
        raise InvalidIPAddressError(ip_address)
    return candidate


def _block_is_active(entry: IPBlacklist, now: datetime) -> bool:
    if entry.is_permanent:
        return True
    expires_at = _as_utc(entry.expires_at)
    return expires_at is None or expires_at > now


async def log_security_event(
    db: AsyncSession,
    action_type: str,
    *,
    ip_address: Optional[str] = None,
    user_id: Optional[str] = None,
    coupon_code: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> None:
    """Append an audit entry. Never raises; the log is best effort."""
    try:
        db.add(
            SecurityLog(
                ip_address=ip_address,
                user_id=user_id,
                coupon_code=coupon_code,
                action_type=action_type,
                details=details or {},
                created_at=_utcnow(),
            )
        )
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.warning("Security log write failed (%s from %s): %s", action_type, ip_address, exc)


async def is_blocked(ip_address: str, db: AsyncSession) -> bool:
    ip = require_valid_ipv4(ip_address)
    try:
        result = await db.execute(select(IPBlacklist).where(IPBlacklist.ip_address == ip))
        entry = result.scalar_one_or_none()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.warning("IP blacklist lookup failed for %s; allowing request: %s", ip, exc)
        return False
    return entry is not None and _block_is_active(entry, _utcnow())


async def block_ip(
    ip_address: str,
    db: AsyncSession,
    *,
    reason: str,
    actor_id: Optional[str] = None,
    ttl: Optional[timedelta] = None,
    permanent: bool = False,
) -> IPBlacklist:
    """Block an address, extending any existing block."""
    ip = require_valid_ipv4(ip_address)
    now = _utcnow()
    if permanent:
        expires_at = None
    else:
        expires_at = now + (ttl or timedelta(hours=max(int(settings.IP_BLOCK_DEFAULT_TTL_HOURS), 1)))

    for attempt in range(2):
        result = await db.execute(select(IPBlacklist).where(IPBlacklist.ip_address == ip))
        entry = result.scalar_one_or_none()
        if entry is None:
            entry = IPBlacklist(ip_address=ip)
            db.add(entry)
        entry.reason = reason
        entry.blocked_by = actor_id
        entry.blocked_at = now
        entry.expires_at = expires_at
        entry.is_permanent = bool(permanent)
        try:
            await db.commit()
        except IntegrityError:
            # Concurrent insert for the same address; update that row instead.
            await db.rollback()
            if attempt:
                raise
            continue
        break

    await db.refresh(entry)
    logger.info("Blocked IP %s (permanent=%s, by=%s): %s", ip, permanent, actor_id, reason)
    return entry


async def unblock_ip(ip_address: str, db: AsyncSession) -> bool:
    ip = require_valid_ipv4(ip_address)
    result = await db.execute(
        delete(IPBlacklist).where(IPBlacklist.ip_address == ip).execution_options(synchronize_session=False)
    )
    await db.commit()
    removed = bool(result.rowcount)
    if removed:
        logger.info("Unblocked IP %s", ip)
    return removed


async def check_coupon_brute_force(
    ip_address: Optional[str],
    db: AsyncSession,
    *,
    user_id: Optional[str] = None,
    coupon_code: Optional[str] = None,
) -> None:
    """Raise 429 and auto-block when one address keeps failing coupon checks."""
    if not is_valid_ipv4(ip_address):
        return
    window_start = _utcnow() - timedelta(minutes=max(int(settings.COUPON_BRUTE_FORCE_WINDOW_MINUTES), 1))
    try:
        result = await db.execute(
            select(func.count(SecurityLog.id)).where(
                SecurityLog.ip_address == ip_address,
                SecurityLog.action_type == ACTION_VALIDATION_FAILED,
                SecurityLog.created_at >= window_start,
            )
        )
        failures = int(result.scalar() or 0)
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.warning("Brute-force check failed for %s; allowing request: %s", ip_address, exc)
        return

    if failures < max(int(settings.COUPON_BRUTE_FORCE_THRESHOLD), 1):
        return

    await log_security_event(
        db,
        ACTION_BLOCKED_BRUTE_FORCE,
        ip_address=ip_address,
        user_id=user_id,
        coupon_code=coupon_code,
        details={"failed_attempts": failures},
    )
    try:
        await block_ip(ip_address, db, reason=f"Automatic block: {failures} failed coupon validations")
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.warning("Automatic block for %s failed: %s", ip_address, exc)
    raise HTTPException(
        status_code=429,
        detail={"reason": "too_many_attempts", "message": "Too many invalid coupon attempts. Try again later."},
    )


def blacklist_entry_view(entry: IPBlacklist, now: Optional[datetime] = None) -> Dict[str, Any]:
    return {
        "ip_address": entry.ip_address,
        "reason": entry.reason,
        "blocked_by": entry.blocked_by,
        "blocked_at": entry.blocked_at.isoformat() if entry.blocked_at else None,
        "expires_at": entry.expires_at.isoformat() if entry.expires_at else None,
        "is_permanent": bool(entry.is_permanent),
        "active": _block_is_active(entry, now or _utcnow()),
    }


async def list_blacklisted_ips(db: AsyncSession, *, include_expired: bool = False) -> List[Dict[str, Any]]:
    now = _utcnow()
    result = await db.execute(select(IPBlacklist).order_by(IPBlacklist.blocked_at.desc()))
    entries = [blacklist_entry_view(entry, now) for entry in result.scalars().all()]
    if include_expired:
        return entries
    return [entry for entry in entries if entry["active"]]


async def list_security_logs(
    db: AsyncSession,
    *,
    limit: int = 50,
    offset: int = 0,
    action_type: Optional[str] = None,
    ip_address: Optional[str] = None,
) -> Dict[str, Any]:
    filters = []
    if action_type:
        filters.append(SecurityLog.action_type == action_type)
    if ip_address:
        filters.append(SecurityLog.ip_address == require_valid_ipv4(ip_address))

    total = await db.execute(select(func.count(SecurityLog.id)).where(*filters))
    rows = await db.execute(
        select(SecurityLog)
        .where(*filters)
        .order_by(SecurityLog.created_at.desc())
        .limit(max(min(int(limit), 500), 1))
        .offset(max(int(offset), 0))
    )
    return {
        "total": int(total.scalar() or 0),
        "items": [
            {
                "id": log.id,
                "ip_address": log.ip_address,
                "user_id": log.user_id,
                "coupon_code": log.coupon_code,
                "action_type": log.action_type,
                "details": log.details or {},
                "created_at": log.created_at.isoformat() if log.created_at else None,
            }
            for log in rows.scalars().all()
        ],
    }


async def security_stats(db: AsyncSession, *, days: int = 7) -> Dict[str, Any]:
    now = _utcnow()
    since = now - timedelta(days=max(int(days), 1))
    by_action = await db.execute(
        select(SecurityLog.action_type, func.count(SecurityLog.id))
        .where(SecurityLog.created_at >= since)
        .group_by(SecurityLog.action_type)
    )
    counts = {action: int(count) for action, count in by_action.all()}

    top_ips = await db.execute(
        select(SecurityLog.ip_address, func.count(SecurityLog.id).label("events"))
        .where(SecurityLog.created_at >= since, SecurityLog.ip_address.is_not(None))
        .group_by(SecurityLog.ip_address)
        .order_by(func.count(SecurityLog.id).desc())
        .limit(10)
    )
    active_blocks = await db.execute(
        select(func.count(IPBlacklist.id)).where(
            or_(
                IPBlacklist.is_permanent.is_(True),
                IPBlacklist.expires_at.is_(None),
                IPBlacklist.expires_at > now,
            )
        )
    )
    return {
        "period_days": max(int(days), 1),
        "total_events": sum(counts.values()),
        "events_by_type": counts,
        "failed_validations": counts.get(ACTION_VALIDATION_FAILED, 0),
        "brute_force_blocks": counts.get(ACTION_BLOCKED_BRUTE_FORCE, 0),
        "active_blocks": int(active_blocks.scalar() or 0),
        "top_ips": [{"ip_address": ip, "events": int(events)} for ip, events in top_ips.all()],
    }


async def cleanup_security_data(db: AsyncSession) -> Dict[str, int]:
    """Drop expired temporary blocks and logs past the retention window."""
    now = _utcnow()
    expired = await db.execute(
        delete(IPBlacklist).where(
            IPBlacklist.is_permanent.is_(False),
            IPBlacklist.expires_at.is_not(None),
            IPBlacklist.expires_at <= now,
        ).execution_options(synchronize_session=False)
    )
    retention_cutoff = now - timedelta(days=max(int(settings.SECURITY_LOG_RETENTION_DAYS), 1))
    old_logs = await db.execute(
        delete(SecurityLog)
        .where(SecurityLog.created_at < retention_cutoff)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    summary = {
        "expired_blocks_removed": int(expired.rowcount or 0),
        "logs_removed": int(old_logs.rowcount or 0),
    }
    logger.info("Security cleanup: %s", summary)
    return summary
