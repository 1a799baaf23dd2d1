"""
Health check endpoints.
"""

import asyncio
from typing import Any, Dict, List

from fastapi import APIRouter
from fastapi.responses import JSONResponse
import redis.asyncio as redis
from sqlalchemy import text

from config import settings
from database import engine
from services.credit_grant_queue import count_unresolved_credit_grants, get_credit_grant_queue

router = APIRouter()


async def _database_status() -> str:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        return f"down: {str(e)}"
    return "up"


async def _redis_status() -> str:
    try:
        client = redis.from_url(settings.REDIS_URL)
        try:
            await client.ping()
        finally:
            await client.aclose()
    except Exception as e:
        return f"down: {str(e)}"
    return "up"


def _missing_billing_settings() -> List[str]:
    if not settings.BILLING_ENABLED:
        return []
    required = {
        "STRIPE_SECRET_KEY": settings.STRIPE_SECRET_KEY,
        "STRIPE_WEBHOOK_SECRET": settings.STRIPE_WEBHOOK_SECRET,
    }
    return [name for name, value in required.items() if not (value or "").strip()]


@router.get("/health")
async def health_check():
    """
    Health check endpoint.
    Reports storage, Stripe configuration and the credit grant backlog.
    """
    health_status: Dict[str, Any] = {
        "status": "healthy",
        "api": "up",
        "database": await _database_status(),
        "redis": await _redis_status(),
        "billing_enabled": settings.BILLING_ENABLED,
        "stripe": "missing" if _missing_billing_settings() else "configured",
    }
    if health_status["database"] != "up" or health_status["redis"] != "up":
        health_status["status"] = "degraded"

    # Each unresolved grant is a paid checkout still owed credits.
    if health_status["database"] == "up":
        unresolved = await count_unresolved_credit_grants()
        health_status["unresolved_credit_grants"] = unresolved
        if unresolved:
            health_status["status"] = "degraded"
    if health_status["redis"] == "up":
        queue = get_credit_grant_queue()
        health_status["credit_grant_queue_depth"] = await asyncio.to_thread(len, queue)

    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Kubernetes-style readiness probe."""
    missing = _missing_billing_settings()
    if missing:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": missing},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}
