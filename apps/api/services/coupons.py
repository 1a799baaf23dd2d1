"""Coupon validation, discount math, redemption and administration."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
import logging
import re
from typing import Any, Dict, List, Optional

from fastapi import HTTPException
import stripe
from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.coupon import Coupon
from models.coupon_usage import CouponUsage
from services.bundles import round_half_up, to_minor_units

logger = logging.getLogger(__name__)

COUPON_CODE_PATTERN = re.compile(r"^[A-Z0-9]{3,20}$")
DISCOUNT_PERCENTAGE = "percentage"
DISCOUNT_FIXED_AMOUNT = "fixed_amount"
DISCOUNT_TYPES = (DISCOUNT_PERCENTAGE, DISCOUNT_FIXED_AMOUNT)
ANONYMOUS_USER_ID = "anonymous"

REJECTION_MESSAGES = {
    "invalid_format": "Coupon code format is invalid.",
    "not_found": "Coupon not found or no longer active.",
    "expired": "This coupon has expired.",
    "not_yet_valid": "This coupon is not valid yet.",
    "usage_limit_reached": "This coupon has reached its usage limit.",
    "already_used_by_user": "You have already used this coupon.",
    "below_minimum_amount": "The order amount is below this coupon's minimum.",
}

# Fields an admin may change after creation; code and discount terms stay fixed.
MUTABLE_COUPON_FIELDS = ("name", "description", "is_public", "is_active", "expires_at", "usage_limit")


class CouponRejectedError(HTTPException):
    def __init__(self, reason: str, status_code: Optional[int] = None, message: Optional[str] = None):
        if status_code is None:
            status_code = 404 if reason == "not_found" else 400
        super().__init__(
            status_code=status_code,
            detail={"reason": reason, "message": message or REJECTION_MESSAGES.get(reason, reason)},
        )
        self.reason = reason


@dataclass
class DiscountResult:
    original_amount: int
    discount_amount: int
    final_amount: int


@dataclass
class CouponValidation:
    valid: bool
    coupon: Optional[Coupon] = None
    reason: Optional[str] = None
    discount: Optional[DiscountResult] = None

    @property
    def message(self) -> Optional[str]:
        if self.valid:
            return None
        return REJECTION_MESSAGES.get(self.reason or "", self.reason)


def normalize_coupon_code(code: Optional[str]) -> str:
    return str(code or "").strip().upper()


def is_valid_coupon_code(code: str) -> bool:
    return bool(COUPON_CODE_PATTERN.match(code or ""))


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def single_use_key(coupon: Coupon, user_id: Optional[str]) -> Optional[str]:
    if not coupon.single_use_per_user or not user_id or user_id == ANONYMOUS_USER_ID:
        return None
    return f"{coupon.id}:{user_id}"


def compute_discount(coupon: Coupon, amount: int) -> DiscountResult:
    """Apply the coupon to an amount in minor units."""
    amount = int(amount)
    if amount < 0:
        raise ValueError("amount must be >= 0")

    value = Decimal(str(coupon.discount_value))
    if coupon.discount_type == DISCOUNT_PERCENTAGE:
        discount = round_half_up(Decimal(amount) * value / Decimal(100))
        if coupon.max_discount_amount is not None:
            discount = min(discount, int(coupon.max_discount_amount))
    elif coupon.discount_type == DISCOUNT_FIXED_AMOUNT:
        discount = to_minor_units(value, coupon.currency or "eur")
    else:
        raise ValueError(f"Unsupported discount type: {coupon.discount_type}")

    discount = max(0, min(discount, amount))
    return DiscountResult(
        original_amount=amount,
        discount_amount=discount,
        final_amount=max(0, amount - discount),
    )


async def get_coupon_by_code(code: str, db: AsyncSession, *, active_only: bool = True) -> Optional[Coupon]:
    query = select(Coupon).where(Coupon.code == normalize_coupon_code(code))
    if active_only:
        query = query.where(Coupon.is_active.is_(True))
    result = await db.execute(query)
    return result.scalar_one_or_none()


async def _user_has_used_coupon(
    coupon_id: str, user_id: str, db: AsyncSession, *, paid_only: bool = False
) -> bool:
    query = select(CouponUsage.id).where(CouponUsage.coupon_id == coupon_id, CouponUsage.user_id == user_id)
    if paid_only:
        query = query.where(CouponUsage.payment_id.is_not(None))
    result = await db.execute(query.limit(1))
    return result.scalar_one_or_none() is not None


async def _pending_redemption(coupon_id: str, user_id: str, db: AsyncSession) -> Optional[CouponUsage]:
    """Latest redemption made through /apply that no payment has claimed yet."""
    result = await db.execute(
        select(CouponUsage)
        .where(
            CouponUsage.coupon_id == coupon_id,
            CouponUsage.user_id == user_id,
            CouponUsage.payment_id.is_(None),
        )
        .order_by(CouponUsage.used_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def validate_coupon(
    code: Optional[str],
    db: AsyncSession,
    *,
    user_id: Optional[str] = None,
    amount: Optional[int] = None,
    now: Optional[datetime] = None,
    claim_pending: bool = False,
) -> CouponValidation:
    """Check a code for a user and optional amount.

    With ``claim_pending`` (checkout), the user's own unclaimed /apply
    redemption counts as this purchase's redemption rather than a prior use.
    """
    normalized = normalize_coupon_code(code)
    if not is_valid_coupon_code(normalized):
        return CouponValidation(valid=False, reason="invalid_format")

    coupon = await get_coupon_by_code(normalized, db)
    if coupon is None:
        return CouponValidation(valid=False, reason="not_found")

    current = now or datetime.now(timezone.utc)
    expires_at = _as_utc(coupon.expires_at)
    if expires_at is not None and expires_at < current:
        return CouponValidation(valid=False, coupon=coupon, reason="expired")
    valid_from = _as_utc(coupon.valid_from)
    if valid_from is not None and valid_from > current:
        return CouponValidation(valid=False, coupon=coupon, reason="not_yet_valid")
    known_user = bool(user_id) and user_id != ANONYMOUS_USER_ID
    pending = None
    if claim_pending and known_user:
        pending = await _pending_redemption(coupon.id, user_id, db)
    # A pending redemption already holds its slot in usage_count.
    if (
        pending is None
        and coupon.usage_limit is not None
        and int(coupon.usage_count or 0) >= int(coupon.usage_limit)
    ):
        return CouponValidation(valid=False, coupon=coupon, reason="usage_limit_reached")
    if (
        coupon.single_use_per_user
        and known_user
        and await _user_has_used_coupon(coupon.id, user_id, db, paid_only=pending is not None)
    ):
        return CouponValidation(valid=False, coupon=coupon, reason="already_used_by_user")

    discount = None
    if amount is not None:
        if int(amount) < int(coupon.minimum_amount or 0):
            return CouponValidation(valid=False, coupon=coupon, reason="below_minimum_amount")
        discount = compute_discount(coupon, int(amount))
    return CouponValidation(valid=True, coupon=coupon, discount=discount)


async def _increment_usage_count(coupon_id: str, db: AsyncSession, *, enforce_limit: bool) -> bool:
    stmt = update(Coupon).where(Coupon.id == coupon_id)
    if enforce_limit:
        stmt = stmt.where(or_(Coupon.usage_limit.is_(None), Coupon.usage_count < Coupon.usage_limit))
    result = await db.execute(
        stmt.values(usage_count=Coupon.usage_count + 1).execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def apply_coupon(
    code: Optional[str],
    db: AsyncSession,
    *,
    user_id: str,
    amount: int,
    currency: Optional[str] = None,
    payment_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Redeem a coupon for a user and return the discounted amounts.

    The pre-check in ``validate_coupon`` is an optimization only: the unique
    ``single_use_key`` and the conditional ``usage_count`` increment decide
    concurrent redemptions.
    """
    validation = await validate_coupon(code, db, user_id=user_id, amount=amount)
    if not validation.valid:
        raise CouponRejectedError(validation.reason or "not_found")

    coupon = validation.coupon
    discount = validation.discount
    usage = CouponUsage(
        coupon_id=coupon.id,
        user_id=user_id,
        payment_id=payment_id,
        single_use_key=single_use_key(coupon, user_id),
        original_amount=discount.original_amount,
        discount_amount=discount.discount_amount,
        final_amount=discount.final_amount,
        currency=(currency or coupon.currency or "eur").lower(),
    )
    try:
        db.add(usage)
        await db.flush()
        if not await _increment_usage_count(coupon.id, db, enforce_limit=True):
            await db.rollback()
            raise CouponRejectedError("usage_limit_reached")
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise CouponRejectedError("already_used_by_user", status_code=409) from exc

    await db.refresh(coupon)
    return {
        "original_amount": discount.original_amount,
        "discount_amount": discount.discount_amount,
        "final_amount": discount.final_amount,
        "coupon": public_coupon_view(coupon),
    }


async def record_checkout_coupon_usage(
    db: AsyncSession,
    *,
    user_id: Optional[str],
    payment_id: str,
    original_amount: int,
    discount_amount: int,
    final_amount: int,
    currency: Optional[str],
    coupon_id: Optional[str] = None,
    coupon_code: Optional[str] = None,
) -> Optional[CouponUsage]:
    """Bookkeep the coupon behind a paid checkout.

    Runs after the credit grant has committed; the caller treats any failure
    here as non-fatal.
    """
    coupon = None
    if coupon_id:
        result = await db.execute(select(Coupon).where(Coupon.id == coupon_id))
        coupon = result.scalar_one_or_none()
    if coupon is None and coupon_code:
        coupon = await get_coupon_by_code(coupon_code, db, active_only=False)
    if coupon is None:
        logger.warning("Checkout %s references unknown coupon %s/%s", payment_id, coupon_id, coupon_code)
        return None

    existing = await db.execute(
        select(CouponUsage).where(CouponUsage.coupon_id == coupon.id, CouponUsage.payment_id == payment_id)
    )
    usage = existing.scalar_one_or_none()
    if usage is not None:
        return usage

    owner = user_id or ANONYMOUS_USER_ID
    if owner != ANONYMOUS_USER_ID:
        # A redemption made through /apply before checkout is linked, not duplicated.
        usage = await _pending_redemption(coupon.id, owner, db)
        if usage is not None:
            usage.payment_id = payment_id
            usage.original_amount = int(original_amount)
            usage.discount_amount = int(discount_amount)
            usage.final_amount = int(final_amount)
            usage.currency = (currency or usage.currency or "").lower() or None
            await db.commit()
            return usage

    code = coupon.code
    usage = CouponUsage(
        coupon_id=coupon.id,
        user_id=owner,
        payment_id=payment_id,
        single_use_key=single_use_key(coupon, owner),
        original_amount=int(original_amount),
        discount_amount=int(discount_amount),
        final_amount=int(final_amount),
        currency=(currency or coupon.currency or "eur").lower(),
    )
    try:
        db.add(usage)
        await db.flush()
        # Payment already captured, so the global limit is not re-checked here.
        await _increment_usage_count(coupon.id, db, enforce_limit=False)
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.warning(
            "Coupon %s already redeemed by user %s; checkout %s not recorded as a new usage",
            code,
            owner,
            payment_id,
        )
        return None
    return usage


def public_coupon_view(coupon: Coupon) -> Dict[str, Any]:
    return {
        "code": coupon.code,
        "name": coupon.name,
        "description": coupon.description,
        "discount_type": coupon.discount_type,
        "discount_value": float(coupon.discount_value),
        "currency": coupon.currency,
        "minimum_amount": int(coupon.minimum_amount or 0),
        "max_discount_amount": coupon.max_discount_amount,
        "expires_at": coupon.expires_at.isoformat() if coupon.expires_at else None,
    }


def admin_coupon_view(coupon: Coupon) -> Dict[str, Any]:
    view = public_coupon_view(coupon)
    view.update(
        {
            "id": coupon.id,
            "usage_limit": coupon.usage_limit,
            "usage_count": int(coupon.usage_count or 0),
            "single_use_per_user": bool(coupon.single_use_per_user),
            "is_public": bool(coupon.is_public),
            "is_active": bool(coupon.is_active),
            "valid_from": coupon.valid_from.isoformat() if coupon.valid_from else None,
            "stripe_coupon_id": coupon.stripe_coupon_id,
            "created_by": coupon.created_by,
            "created_at": coupon.created_at.isoformat() if coupon.created_at else None,
        }
    )
    return view


async def _mirror_coupon_to_stripe(coupon: Coupon, gateway) -> Optional[str]:
    params: Dict[str, Any] = {
        "name": coupon.name[:40],
        "duration": "once",
        "metadata": {"local_code": coupon.code},
    }
    if coupon.discount_type == DISCOUNT_PERCENTAGE:
        params["percent_off"] = float(coupon.discount_value)
    else:
        params["amount_off"] = to_minor_units(coupon.discount_value, coupon.currency)
        params["currency"] = coupon.currency
    if coupon.usage_limit:
        params["max_redemptions"] = int(coupon.usage_limit)
    try:
        created = await asyncio.to_thread(gateway.create_coupon, coupon.code, params)
    except stripe.StripeError as exc:
        logger.warning("Stripe mirror for coupon %s failed; local coupon kept: %s", coupon.code, exc)
        return None
    return str(created.get("id") or coupon.code)


async def create_coupon(
    data: Dict[str, Any],
    db: AsyncSession,
    *,
    created_by: Optional[str] = None,
    gateway=None,
) -> Coupon:
    code = normalize_coupon_code(data.get("code"))
    if not is_valid_coupon_code(code):
        raise CouponRejectedError("invalid_format")

    discount_type = str(data.get("discount_type") or "")
    if discount_type not in DISCOUNT_TYPES:
        raise HTTPException(status_code=422, detail=f"discount_type must be one of {', '.join(DISCOUNT_TYPES)}")
    try:
        discount_value = Decimal(str(data.get("discount_value")))
    except (InvalidOperation, TypeError) as exc:
        raise HTTPException(status_code=422, detail="discount_value must be a number") from exc
    if discount_value <= 0:
        raise HTTPException(status_code=422, detail="discount_value must be greater than 0")
    if discount_type == DISCOUNT_PERCENTAGE and discount_value > 100:
        raise HTTPException(status_code=422, detail="Percentage discounts cannot exceed 100")

    if await get_coupon_by_code(code, db, active_only=False):
        raise HTTPException(status_code=409, detail="Coupon code already exists.")

    coupon = Coupon(
        code=code,
        name=str(data.get("name") or code),
        description=data.get("description"),
        discount_type=discount_type,
        discount_value=discount_value,
        currency=str(data.get("currency") or "eur").lower(),
        minimum_amount=int(data.get("minimum_amount") or 0),
        max_discount_amount=data.get("max_discount_amount"),
        usage_limit=data.get("usage_limit"),
        usage_count=0,
        single_use_per_user=bool(data.get("single_use_per_user", True)),
        is_public=bool(data.get("is_public", False)),
        is_active=True,
        valid_from=data.get("valid_from"),
        expires_at=data.get("expires_at"),
        created_by=created_by,
    )
    if gateway is not None:
        coupon.stripe_coupon_id = await _mirror_coupon_to_stripe(coupon, gateway)

    db.add(coupon)
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise HTTPException(status_code=409, detail="Coupon code already exists.") from exc
    await db.refresh(coupon)
    logger.info("Coupon %s created by %s", coupon.code, created_by)
    return coupon


async def _get_coupon_or_404(coupon_id: str, db: AsyncSession) -> Coupon:
    result = await db.execute(select(Coupon).where(Coupon.id == coupon_id))
    coupon = result.scalar_one_or_none()
    if coupon is None:
        raise HTTPException(status_code=404, detail="Coupon not found.")
    return coupon


async def update_coupon(coupon_id: str, changes: Dict[str, Any], db: AsyncSession) -> Coupon:
    coupon = await _get_coupon_or_404(coupon_id, db)
    for field in MUTABLE_COUPON_FIELDS:
        if field in changes:
            setattr(coupon, field, changes[field])
    if coupon.usage_limit is not None and int(coupon.usage_limit) < 0:
        raise HTTPException(status_code=422, detail="usage_limit must be >= 0")
    await db.commit()
    await db.refresh(coupon)
    return coupon


async def deactivate_coupon(coupon_id: str, db: AsyncSession) -> Coupon:
    coupon = await _get_coupon_or_404(coupon_id, db)
    coupon.is_active = False
    await db.commit()
    await db.refresh(coupon)
    logger.info("Coupon %s deactivated", coupon.code)
    return coupon


async def list_coupons(db: AsyncSession, *, include_inactive: bool = True) -> List[Coupon]:
    query = select(Coupon).order_by(Coupon.created_at.desc())
    if not include_inactive:
        query = query.where(Coupon.is_active.is_(True))
    result = await db.execute(query)
    return list(result.scalars().all())


async def list_public_coupons(db: AsyncSession, *, now: Optional[datetime] = None) -> List[Coupon]:
    current = now or datetime.now(timezone.utc)
    result = await db.execute(
        select(Coupon)
        .where(Coupon.is_active.is_(True), Coupon.is_public.is_(True))
        .order_by(Coupon.created_at.desc())
    )
    coupons = []
    for coupon in result.scalars().all():
        expires_at = _as_utc(coupon.expires_at)
        if expires_at is not None and expires_at < current:
            continue
        valid_from = _as_utc(coupon.valid_from)
        if valid_from is not None and valid_from > current:
            continue
        if coupon.usage_limit is not None and int(coupon.usage_count or 0) >= int(coupon.usage_limit):
            continue
        coupons.append(coupon)
    return coupons


async def list_user_usage(user_id: str, db: AsyncSession) -> List[Dict[str, Any]]:
    result = await db.execute(
        select(CouponUsage, Coupon.code)
        .join(Coupon, Coupon.id == CouponUsage.coupon_id)
        .where(CouponUsage.user_id == user_id)
        .order_by(CouponUsage.used_at.desc())
    )
    return [
        {
            "coupon_code": code,
            "payment_id": usage.payment_id,
            "original_amount": usage.original_amount,
            "discount_amount": usage.discount_amount,
            "final_amount": usage.final_amount,
            "currency": usage.currency,
            "used_at": usage.used_at.isoformat() if usage.used_at else None,
        }
        for usage, code in result.all()
    ]


async def coupon_stats(coupon_id: str, db: AsyncSession) -> Dict[str, Any]:
    coupon = await _get_coupon_or_404(coupon_id, db)
    totals = await db.execute(
        select(
            func.count(CouponUsage.id),
            func.coalesce(func.sum(CouponUsage.discount_amount), 0),
            func.count(func.distinct(CouponUsage.user_id)),
        ).where(CouponUsage.coupon_id == coupon.id)
    )
    total_usage, total_discount, unique_users = totals.one()
    history = await db.execute(
        select(CouponUsage)
        .where(CouponUsage.coupon_id == coupon.id)
        .order_by(CouponUsage.used_at.desc())
        .limit(100)
    )
    total_usage = int(total_usage or 0)
    total_discount = int(total_discount or 0)
    return {
        "coupon": admin_coupon_view(coupon),
        "total_usage": total_usage,
        "total_discount": total_discount,
        "avg_discount": round(total_discount / total_usage) if total_usage else 0,
        "unique_users": int(unique_users or 0),
        "history": [
            {
                "user_id": usage.user_id,
                "payment_id": usage.payment_id,
                "discount_amount": usage.discount_amount,
                "final_amount": usage.final_amount,
                "used_at": usage.used_at.isoformat() if usage.used_at else None,
            }
            for usage in history.scalars().all()
        ],
    }
