"""Durable retry queue for failed credit grants (Redis/RQ)."""

from __future__ import annotations

from typing import Any, Dict, List

from redis import Redis
from rq import Queue, Retry
from rq.job import Job
from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.failed_credit_grant import FailedCreditGrant


CREDIT_GRANT_QUEUE_NAME = "credit_grants"


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_credit_grant_queue() -> Queue:
    """Return the configured credit grant retry queue."""
    return Queue(
        name=CREDIT_GRANT_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=300,
    )


def credit_grant_job_id(grant_id: str) -> str:
    # RQ job ids allow only letters, digits, underscores and dashes.
    return f"credit-grant-{grant_id}"


def enqueue_credit_grant_retry(grant_id: str) -> Job:
    """Enqueue a replay of the webhook behind a failed credit grant."""
    queue = get_credit_grant_queue()
    return queue.enqueue(
        "services.webhooks.process_failed_credit_grant_job",
        grant_id,
        job_id=credit_grant_job_id(grant_id),
        retry=Retry(max=5, interval=[60, 300, 900, 3600, 21600]),
        job_timeout=300,
        result_ttl=86400,
        failure_ttl=7 * 86400,
    )


def failed_grant_view(grant: FailedCreditGrant) -> Dict[str, Any]:
    return {
        "id": grant.id,
        "event_id": grant.event_id,
        "checkout_session_id": grant.checkout_session_id,
        "user_id": grant.user_id,
        "credits": grant.credits,
        "error": grant.error,
        "retry_count": grant.retry_count,
        "resolved": bool(grant.resolved),
        "created_at": grant.created_at.isoformat() if grant.created_at else None,
        "resolved_at": grant.resolved_at.isoformat() if grant.resolved_at else None,
    }


async def list_failed_credit_grants(db: AsyncSession, *, include_resolved: bool = False) -> List[Dict[str, Any]]:
    query = select(FailedCreditGrant).order_by(FailedCreditGrant.created_at.desc())
    if not include_resolved:
        query = query.where(FailedCreditGrant.resolved.is_(False))
    result = await db.execute(query)
    return [failed_grant_view(grant) for grant in result.scalars().all()]


async def count_unresolved_credit_grants() -> int:
    """Count paid checkouts still waiting for their credits."""
    async with async_session_maker() as db:
        result = await db.execute(
            select(func.count(FailedCreditGrant.id)).where(FailedCreditGrant.resolved.is_(False))
        )
        return int(result.scalar() or 0)
