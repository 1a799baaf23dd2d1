"""Stripe Checkout session creation and status lookup."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from typing import Any, Dict, Optional, Tuple

from fastapi import HTTPException
import stripe
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.payment import Payment
from services.bundles import Bundle, BundleCatalog
from services.coupons import ANONYMOUS_USER_ID, normalize_coupon_code, validate_coupon

logger = logging.getLogger(__name__)

LOOKUP_FOUND = "found"
LOOKUP_MISSING = "missing"
LOOKUP_FAILED = "failed"


@dataclass
class CheckoutSessionResult:
    session_id: str
    url: str
    coupon_applied: bool
    original_amount: int
    discount_amount: int
    final_amount: int
    currency: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "url": self.url,
            "coupon_applied": self.coupon_applied,
            "original_amount": self.original_amount,
            "discount_amount": self.discount_amount,
            "final_amount": self.final_amount,
            "currency": self.currency,
        }


def build_session_metadata(bundle: Bundle, user_id: str) -> Dict[str, str]:
    """Metadata Stripe hands back on the webhook; the only link to the purchase."""
    amount = bundle.price_minor
    return {
        "user_id": user_id,
        "bundle_id": bundle.id,
        "credit_count": str(bundle.credits),
        "plan_name": bundle.name,
        "original_amount": str(amount),
        "final_amount": str(amount),
    }


def _line_item(bundle: Bundle, unit_amount: Optional[int] = None) -> Dict[str, Any]:
    if bundle.stripe_price_id and unit_amount is None:
        return {"price": bundle.stripe_price_id, "quantity": 1}
    return {
        "price_data": {
            "currency": bundle.currency,
            "product_data": {"name": bundle.name, "description": bundle.description},
            "unit_amount": bundle.price_minor if unit_amount is None else int(unit_amount),
        },
        "quantity": 1,
    }


async def lookup_processor_coupon(gateway, coupon_id: str) -> Tuple[str, Optional[Dict[str, Any]]]:
    """Fetch a Stripe coupon with a bounded timeout and a few retries."""
    attempts = max(int(settings.STRIPE_COUPON_LOOKUP_ATTEMPTS), 1)
    timeout = max(float(settings.STRIPE_COUPON_LOOKUP_TIMEOUT_SECONDS), 0.1)
    for attempt in range(1, attempts + 1):
        try:
            coupon = await asyncio.wait_for(asyncio.to_thread(gateway.retrieve_coupon, coupon_id), timeout=timeout)
        except (asyncio.TimeoutError, stripe.StripeError) as exc:
            logger.warning(
                "Stripe coupon lookup for %s failed (attempt %d/%d): %r", coupon_id, attempt, attempts, exc
            )
            continue
        if not coupon or coupon.get("valid") is False:
            return LOOKUP_MISSING, None
        return LOOKUP_FOUND, coupon
    return LOOKUP_FAILED, None


async def create_checkout_session(
    bundle_id: str,
    *,
    user_id: Optional[str],
    coupon_code: Optional[str],
    catalog: BundleCatalog,
    gateway,
    db: AsyncSession,
    customer_email: Optional[str] = None,
) -> CheckoutSessionResult:
    """Create a hosted Stripe Checkout session for a bundle.

    A coupon that fails local validation or cannot be resolved on Stripe is
    dropped and the session is created at full price; checkout is never
    blocked on a coupon.
    """
    bundle = catalog.get(bundle_id)
    owner = user_id or ANONYMOUS_USER_ID
    amount = bundle.price_minor
    metadata = build_session_metadata(bundle, owner)
    line_item = _line_item(bundle)
    discounts = None
    discount_amount = 0
    coupon_applied = False

    code = normalize_coupon_code(coupon_code)
    if code:
        validation = await validate_coupon(code, db, user_id=owner, amount=amount, claim_pending=True)
        if not validation.valid:
            logger.info("Checkout for %s continues without coupon %s: %s", owner, code, validation.reason)
        else:
            coupon = validation.coupon
            status, processor_coupon = await lookup_processor_coupon(gateway, coupon.stripe_coupon_id or coupon.code)
            applied = False
            if status == LOOKUP_FOUND:
                discounts = [{"coupon": processor_coupon["id"]}]
                applied = True
            elif status == LOOKUP_MISSING and not bundle.stripe_price_id:
                line_item = _line_item(bundle, unit_amount=validation.discount.final_amount)
                applied = True
            else:
                logger.warning(
                    "Checkout for %s continues without coupon %s (Stripe lookup %s)", owner, code, status
                )
            if applied:
                coupon_applied = True
                discount_amount = validation.discount.discount_amount
                metadata.update(
                    {
                        "coupon_id": coupon.id,
                        "coupon_code": coupon.code,
                        "discount_amount": str(discount_amount),
                        "final_amount": str(validation.discount.final_amount),
                    }
                )

    params: Dict[str, Any] = {
        "mode": "payment",
        "payment_method_types": list(settings.STRIPE_PAYMENT_METHOD_TYPES),
        "line_items": [line_item],
        "success_url": settings.STRIPE_SUCCESS_URL,
        "cancel_url": settings.STRIPE_CANCEL_URL,
        "client_reference_id": owner,
        "metadata": metadata,
        "payment_intent_data": {"metadata": dict(metadata)},
    }
    if discounts:
        params["discounts"] = discounts
    if customer_email:
        params["customer_email"] = customer_email

    try:
        session = await asyncio.to_thread(gateway.create_checkout_session, params)
    except stripe.StripeError as exc:
        logger.error("Stripe checkout session creation failed for %s/%s: %s", owner, bundle.id, exc)
        raise HTTPException(status_code=502, detail="Failed to create checkout session") from exc

    logger.info("Created checkout session %s for user %s bundle %s", session.get("id"), owner, bundle.id)
    return CheckoutSessionResult(
        session_id=str(session.get("id")),
        url=str(session.get("url") or ""),
        coupon_applied=coupon_applied,
        original_amount=amount,
        discount_amount=discount_amount,
        final_amount=amount - discount_amount,
        currency=bundle.currency,
    )


def payment_view(payment: Payment) -> Dict[str, Any]:
    return {
        "id": payment.id,
        "checkout_session_id": payment.stripe_checkout_session_id,
        "payment_intent_id": payment.stripe_payment_intent_id,
        "user_id": payment.user_id,
        "bundle_id": payment.bundle_id,
        "credits_purchased": payment.credits_purchased,
        "amount_total": payment.amount_total,
        "discount_amount": payment.discount_amount,
        "currency": payment.currency,
        "status": payment.status,
        "created_at": payment.created_at.isoformat() if payment.created_at else None,
    }


async def verify_checkout_session(session_id: str, *, gateway, db: AsyncSession) -> Dict[str, Any]:
    """Report a session's status; crediting is left to the webhook."""
    session_id = (session_id or "").strip()
    if not session_id:
        raise HTTPException(status_code=400, detail="session_id is required")
    try:
        session = await asyncio.to_thread(gateway.retrieve_checkout_session, session_id)
    except stripe.InvalidRequestError as exc:
        raise HTTPException(status_code=404, detail="Checkout session not found") from exc
    except stripe.StripeError as exc:
        logger.error("Stripe session lookup failed for %s: %s", session_id, exc)
        raise HTTPException(status_code=502, detail="Failed to verify checkout session") from exc

    result = await db.execute(select(Payment).where(Payment.stripe_checkout_session_id == session_id))
    payment = result.scalar_one_or_none()
    customer_details = session.get("customer_details") or {}
    return {
        "session_id": session_id,
        "status": session.get("status"),
        "payment_status": session.get("payment_status"),
        "customer_email": session.get("customer_email") or customer_details.get("email"),
        "amount_total": session.get("amount_total"),
        "currency": session.get("currency"),
        "metadata": session.get("metadata") or {},
        "payment": payment_view(payment) if payment else None,
    }
