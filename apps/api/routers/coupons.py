"""Coupon validation and redemption router."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.client_guard import guard_client_ip, rate_limit
from services.bundles import BundleCatalog, get_bundle_catalog
from services.coupons import (
    CouponRejectedError,
    apply_coupon,
    list_public_coupons,
    list_user_usage,
    normalize_coupon_code,
    public_coupon_view,
    validate_coupon,
)
from services.security_guard import (
    ACTION_DUPLICATE_USAGE,
    ACTION_INVALID_FORMAT,
    ACTION_VALIDATION_FAILED,
    check_coupon_brute_force,
    log_security_event,
)

router = APIRouter()
logger = logging.getLogger(__name__)


class ApplyCouponRequest(BaseModel):
    code: str = Field(min_length=1, max_length=64)
    bundle: Optional[str] = None
    amount: Optional[int] = Field(default=None, ge=0)
    payment_id: Optional[str] = None


def _resolve_amount(catalog: BundleCatalog, bundle_id: Optional[str], amount: Optional[int]) -> Optional[int]:
    if bundle_id:
        return catalog.get(bundle_id).price_minor
    return amount


async def _log_rejection(
    db: AsyncSession,
    reason: str,
    *,
    ip: str,
    user_id: str,
    code: str,
) -> None:
    if reason == "invalid_format":
        action = ACTION_INVALID_FORMAT
    elif reason == "already_used_by_user":
        action = ACTION_DUPLICATE_USAGE
    else:
        action = ACTION_VALIDATION_FAILED
    await log_security_event(db, action, ip_address=ip, user_id=user_id, coupon_code=code[:64], details={"reason": reason})


@router.get("/validate/{code}")
async def validate_coupon_code(
    code: str,
    amount: Optional[int] = Query(default=None, ge=0),
    bundle: Optional[str] = Query(default=None),
    _rate_limit: None = Depends(rate_limit("coupon_validate", limit=30, window_seconds=900)),
    ip: str = Depends(guard_client_ip),
    auth: AuthContext = Depends(get_auth_context),
    catalog: BundleCatalog = Depends(get_bundle_catalog),
    db: AsyncSession = Depends(get_db),
):
    normalized = normalize_coupon_code(code)
    await check_coupon_brute_force(ip, db, user_id=auth.user_id, coupon_code=normalized)

    validation = await validate_coupon(
        normalized,
        db,
        user_id=auth.user_id,
        amount=_resolve_amount(catalog, bundle, amount),
    )
    if not validation.valid:
        await _log_rejection(db, validation.reason, ip=ip, user_id=auth.user_id, code=normalized)
        raise CouponRejectedError(validation.reason)

    response = {"valid": True, "coupon": public_coupon_view(validation.coupon)}
    if validation.discount is not None:
        response.update(
            {
                "original_amount": validation.discount.original_amount,
                "discount_amount": validation.discount.discount_amount,
                "final_amount": validation.discount.final_amount,
            }
        )
    return response


@router.post("/apply")
async def apply_coupon_code(
    request: ApplyCouponRequest,
    _rate_limit: None = Depends(rate_limit("coupon_apply", limit=20, window_seconds=900)),
    ip: str = Depends(guard_client_ip),
    auth: AuthContext = Depends(get_auth_context),
    catalog: BundleCatalog = Depends(get_bundle_catalog),
    db: AsyncSession = Depends(get_db),
):
    normalized = normalize_coupon_code(request.code)
    amount = _resolve_amount(catalog, request.bundle, request.amount)
    if amount is None:
        raise HTTPException(status_code=422, detail="Provide either bundle or amount.")
    currency = catalog.get(request.bundle).currency if request.bundle else None

    await check_coupon_brute_force(ip, db, user_id=auth.user_id, coupon_code=normalized)
    try:
        return await apply_coupon(
            normalized,
            db,
            user_id=auth.user_id,
            amount=amount,
            currency=currency,
            payment_id=request.payment_id,
        )
    except CouponRejectedError as exc:
        await _log_rejection(db, exc.reason, ip=ip, user_id=auth.user_id, code=normalized)
        raise


@router.get("/active")
async def active_coupons(db: AsyncSession = Depends(get_db)):
    coupons = await list_public_coupons(db)
    return {"coupons": [public_coupon_view(coupon) for coupon in coupons]}


@router.get("/usage")
async def my_coupon_usage(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return {"usage": await list_user_usage(auth.user_id, db)}
