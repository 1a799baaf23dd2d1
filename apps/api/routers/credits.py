"""Credit balance and consumption router."""

from __future__ import annotations

import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context, require_admin
from routers.client_guard import rate_limit
from services.credits import (
    adjust_credits,
    analysis_cost,
    consume_credit,
    ensure_user_profile,
    get_credit_balance,
    get_credit_summary,
    has_credits,
)

router = APIRouter()
logger = logging.getLogger(__name__)


class ConsumeCreditRequest(BaseModel):
    analysis_id: str = Field(min_length=1, max_length=128)
    amount: Optional[int] = Field(default=None, ge=1, le=100)
    user_id: Optional[str] = None


class CreditAdjustmentRequest(BaseModel):
    user_id: str = Field(min_length=1)
    amount: int = Field(ge=-10000, le=10000)
    transaction_type: Literal["admin_adjustment", "refund"] = "admin_adjustment"
    payment_id: Optional[str] = None
    description: Optional[str] = Field(default=None, max_length=500)


@router.get("")
async def credits_summary(
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    return await get_credit_summary(scoped_user_id, db)


@router.get("/check")
async def check_credits(
    required: Optional[int] = Query(default=None, ge=1),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    needed = required or analysis_cost()
    available = await get_credit_balance(auth.user_id, db)
    return {
        "has_credits": await has_credits(auth.user_id, db, needed),
        "required": needed,
        "available": available,
    }


@router.post("/consume")
async def consume_credits_for_analysis(
    request: ConsumeCreditRequest,
    _rate_limit: None = Depends(rate_limit("credits_consume", limit=60, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    await ensure_user_profile(scoped_user_id, db, email=auth.email)
    balance = await consume_credit(scoped_user_id, db, request.amount, analysis_id=request.analysis_id)
    return {
        "analysis_id": request.analysis_id,
        "cost": request.amount or analysis_cost(),
        "balance_after": balance,
    }


@router.post("/admin/adjust")
async def admin_adjust_credits(
    request: CreditAdjustmentRequest,
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    await ensure_user_profile(request.user_id, db)
    balance = await adjust_credits(
        request.user_id,
        db,
        request.amount,
        transaction_type=request.transaction_type,
        payment_id=request.payment_id,
        description=request.description or f"Adjusted by {admin.user_id}",
    )
    logger.info("Admin %s adjusted credits for %s by %s", admin.user_id, request.user_id, request.amount)
    return {"user_id": request.user_id, "balance_after": balance}
