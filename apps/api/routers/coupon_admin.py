"""Admin router for coupon management and the IP guard."""

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, require_admin
from routers.client_guard import guard_client_ip
from services.coupons import (
    admin_coupon_view,
    coupon_stats,
    create_coupon,
    deactivate_coupon,
    list_coupons,
    update_coupon,
)
from services.security_guard import (
    ACTION_ADMIN_COUPON_CHANGE,
    ACTION_ADMIN_IP_BLOCKED,
    ACTION_ADMIN_IP_UNBLOCKED,
    blacklist_entry_view,
    block_ip,
    cleanup_security_data,
    list_blacklisted_ips,
    list_security_logs,
    log_security_event,
    require_valid_ipv4,
    security_stats,
    unblock_ip,
)
from services.stripe_gateway import StripeGateway, get_optional_stripe_gateway

router = APIRouter()
logger = logging.getLogger(__name__)


class CouponCreateRequest(BaseModel):
    code: str = Field(min_length=3, max_length=20)
    name: str = Field(min_length=1, max_length=120)
    description: Optional[str] = None
    discount_type: Literal["percentage", "fixed_amount"]
    discount_value: Decimal = Field(gt=0)
    currency: str = Field(default="eur", min_length=3, max_length=3)
    minimum_amount: int = Field(default=0, ge=0)
    max_discount_amount: Optional[int] = Field(default=None, ge=0)
    usage_limit: Optional[int] = Field(default=None, ge=1)
    single_use_per_user: bool = True
    is_public: bool = False
    valid_from: Optional[datetime] = None
    expires_at: Optional[datetime] = None


class CouponUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    description: Optional[str] = None
    is_public: Optional[bool] = None
    is_active: Optional[bool] = None
    expires_at: Optional[datetime] = None
    usage_limit: Optional[int] = Field(default=None, ge=0)


class BlockIPRequest(BaseModel):
    ip_address: str
    reason: str = Field(default="Manual block", max_length=500)
    duration_hours: Optional[int] = Field(default=None, ge=1, le=24 * 365)
    permanent: bool = False


class UnblockIPRequest(BaseModel):
    ip_address: str


@router.get("/all")
async def all_coupons(
    include_inactive: bool = Query(default=True),
    _admin: AuthContext = Depends(require_admin),
    _ip: str = Depends(guard_client_ip),
    db: AsyncSession = Depends(get_db),
):
    coupons = await list_coupons(db, include_inactive=include_inactive)
    return {"coupons": [admin_coupon_view(coupon) for coupon in coupons]}


@router.post("/create")
async def create_coupon_endpoint(
    request: CouponCreateRequest,
    admin: AuthContext = Depends(require_admin),
    ip: str = Depends(guard_client_ip),
    gateway: Optional[StripeGateway] = Depends(get_optional_stripe_gateway),
    db: AsyncSession = Depends(get_db),
):
    coupon = await create_coupon(request.model_dump(), db, created_by=admin.user_id, gateway=gateway)
    view = admin_coupon_view(coupon)
    await log_security_event(
        db,
        ACTION_ADMIN_COUPON_CHANGE,
        ip_address=ip,
        user_id=admin.user_id,
        coupon_code=coupon.code,
        details={"action": "create"},
    )
    return {"coupon": view}


@router.post("/update/{coupon_id}")
async def update_coupon_endpoint(
    coupon_id: str,
    request: CouponUpdateRequest,
    admin: AuthContext = Depends(require_admin),
    ip: str = Depends(guard_client_ip),
    db: AsyncSession = Depends(get_db),
):
    changes = request.model_dump(exclude_unset=True)
    coupon = await update_coupon(coupon_id, changes, db)
    view = admin_coupon_view(coupon)
    await log_security_event(
        db,
        ACTION_ADMIN_COUPON_CHANGE,
        ip_address=ip,
        user_id=admin.user_id,
        coupon_code=coupon.code,
        details={"action": "update", "fields": sorted(changes)},
    )
    return {"coupon": view}


@router.post("/delete/{coupon_id}")
async def delete_coupon_endpoint(
    coupon_id: str,
    admin: AuthContext = Depends(require_admin),
    ip: str = Depends(guard_client_ip),
    db: AsyncSession = Depends(get_db),
):
    coupon = await deactivate_coupon(coupon_id, db)
    view = admin_coupon_view(coupon)
    await log_security_event(
        db,
        ACTION_ADMIN_COUPON_CHANGE,
        ip_address=ip,
        user_id=admin.user_id,
        coupon_code=coupon.code,
        details={"action": "deactivate"},
    )
    return {"coupon": view}


@router.get("/{coupon_id}/stats")
async def coupon_stats_endpoint(
    coupon_id: str,
    _admin: AuthContext = Depends(require_admin),
    _ip: str = Depends(guard_client_ip),
    db: AsyncSession = Depends(get_db),
):
    return await coupon_stats(coupon_id, db)


@router.post("/block-ip")
async def block_ip_endpoint(
    request: BlockIPRequest,
    admin: AuthContext = Depends(require_admin),
    ip: str = Depends(guard_client_ip),
    db: AsyncSession = Depends(get_db),
):
    target = require_valid_ipv4(request.ip_address)
    ttl = timedelta(hours=request.duration_hours) if request.duration_hours else None
    entry = await block_ip(target, db, reason=request.reason, actor_id=admin.user_id, ttl=ttl, permanent=request.permanent)
    view = blacklist_entry_view(entry)
    await log_security_event(
        db,
        ACTION_ADMIN_IP_BLOCKED,
        ip_address=ip,
        user_id=admin.user_id,
        details={"target_ip": target, "permanent": request.permanent, "reason": request.reason},
    )
    return {"blocked": view}


@router.post("/unblock-ip")
async def unblock_ip_endpoint(
    request: UnblockIPRequest,
    admin: AuthContext = Depends(require_admin),
    ip: str = Depends(guard_client_ip),
    db: AsyncSession = Depends(get_db),
):
    target = require_valid_ipv4(request.ip_address)
    removed = await unblock_ip(target, db)
    await log_security_event(
        db,
        ACTION_ADMIN_IP_UNBLOCKED,
        ip_address=ip,
        user_id=admin.user_id,
        details={"target_ip": target, "removed": removed},
    )
    return {"ip_address": target, "unblocked": removed}


@router.get("/blacklisted-ips")
async def blacklisted_ips(
    include_expired: bool = Query(default=False),
    _admin: AuthContext = Depends(require_admin),
    _ip: str = Depends(guard_client_ip),
    db: AsyncSession = Depends(get_db),
):
    return {"items": await list_blacklisted_ips(db, include_expired=include_expired)}


@router.get("/security-logs")
async def security_logs(
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    action_type: Optional[str] = Query(default=None),
    ip_address: Optional[str] = Query(default=None),
    _admin: AuthContext = Depends(require_admin),
    _ip: str = Depends(guard_client_ip),
    db: AsyncSession = Depends(get_db),
):
    return await list_security_logs(db, limit=limit, offset=offset, action_type=action_type, ip_address=ip_address)


@router.get("/security-stats")
async def security_stats_endpoint(
    days: int = Query(default=7, ge=1, le=365),
    _admin: AuthContext = Depends(require_admin),
    _ip: str = Depends(guard_client_ip),
    db: AsyncSession = Depends(get_db),
):
    return await security_stats(db, days=days)


@router.post("/cleanup")
async def cleanup_endpoint(
    admin: AuthContext = Depends(require_admin),
    _ip: str = Depends(guard_client_ip),
    db: AsyncSession = Depends(get_db),
):
    summary = await cleanup_security_data(db)
    logger.info("Admin %s ran security cleanup: %s", admin.user_id, summary)
    return summary
