"""Stripe webhook reconciliation: payments, credit grants and coupon bookkeeping."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import logging
from typing import Any, Dict, Optional

from fastapi import HTTPException
import stripe
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.credit_transaction import CreditTransaction
from models.failed_credit_grant import FailedCreditGrant
from models.payment import Payment
from models.stripe_webhook_event import StripeWebhookEvent
from services.bundles import BundleCatalog, build_bundle_catalog
from services.coupons import ANONYMOUS_USER_ID, record_checkout_coupon_usage
from services.credit_grant_queue import enqueue_credit_grant_retry
from services.credits import TRANSACTION_PURCHASE, apply_credit_delta, ensure_user_profile
from services.security_guard import ACTION_WEBHOOK_SIGNATURE_INVALID, log_security_event
from services.webhook_events import (
    CheckoutCompleted,
    CheckoutExpired,
    PaymentFailed,
    PaymentSucceeded,
    UnknownEvent,
    WebhookEvent,
    decode_event,
)

logger = logging.getLogger(__name__)

EVENT_STATUS_PROCESSING = "processing"
EVENT_STATUS_APPLIED = "applied"
EVENT_STATUS_IGNORED = "ignored"
EVENT_STATUS_FAILED = "failed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ack(event: WebhookEvent, status: str, **extra: Any) -> Dict[str, Any]:
    response = {"received": True, "status": status, "event_id": event.event_id, "event_type": event.event_type}
    response.update(extra)
    return response


async def _get_event_record(event_id: str, db: AsyncSession) -> Optional[StripeWebhookEvent]:
    result = await db.execute(select(StripeWebhookEvent).where(StripeWebhookEvent.event_id == event_id))
    return result.scalar_one_or_none()


async def _get_payment(db: AsyncSession, *, session_id: Optional[str] = None, intent_id: Optional[str] = None):
    if session_id:
        query = select(Payment).where(Payment.stripe_checkout_session_id == session_id)
    else:
        query = select(Payment).where(Payment.stripe_payment_intent_id == intent_id)
    result = await db.execute(query)
    return result.scalars().first()


async def _upsert_payment(event: CheckoutCompleted, db: AsyncSession) -> Payment:
    payment = await _get_payment(db, session_id=event.session_id)
    if payment is None:
        payment = Payment(stripe_checkout_session_id=event.session_id, status="pending")
        db.add(payment)
    payment.stripe_payment_intent_id = event.payment_intent_id or payment.stripe_payment_intent_id
    payment.user_id = event.user_id if event.user_id and event.user_id != ANONYMOUS_USER_ID else None
    payment.bundle_id = event.bundle_id
    payment.amount_subtotal = event.amount_subtotal
    payment.amount_total = event.amount_total
    payment.discount_amount = event.discount_amount
    payment.currency = event.currency
    payment.coupon_id = event.coupon_id
    payment.customer_email = event.customer_email
    await db.flush()
    return payment


async def _apply_checkout_completed(
    event: CheckoutCompleted,
    db: AsyncSession,
    catalog: BundleCatalog,
) -> Dict[str, Any]:
    payment = await _upsert_payment(event, db)
    if not event.is_paid:
        logger.info("Checkout %s completed with payment_status=%s; waiting", event.session_id, event.payment_status)
        return {"payment_id": payment.id, "credits_added": 0}

    bundle = catalog.get(event.bundle_id)
    if event.metadata_credit_count is not None and event.metadata_credit_count != bundle.credits:
        logger.warning(
            "Checkout %s metadata credit_count=%s differs from bundle %s (%s); using catalog",
            event.session_id,
            event.metadata_credit_count,
            bundle.id,
            bundle.credits,
        )
    payment.credits_purchased = bundle.credits
    payment.status = "succeeded"
    await db.flush()

    if payment.user_id is None:
        logger.info("Anonymous checkout %s paid; no profile to credit", event.session_id)
        return {"payment_id": payment.id, "credits_added": 0}

    existing = await db.execute(
        select(CreditTransaction.id).where(
            CreditTransaction.payment_id == payment.id,
            CreditTransaction.transaction_type == TRANSACTION_PURCHASE,
        )
    )
    if existing.scalar_one_or_none():
        logger.info("Checkout %s already credited; skipping grant", event.session_id)
        return {"payment_id": payment.id, "credits_added": 0}

    await ensure_user_profile(payment.user_id, db, email=event.customer_email)
    entry = await apply_credit_delta(
        payment.user_id,
        db,
        delta=bundle.credits,
        transaction_type=TRANSACTION_PURCHASE,
        payment_id=payment.id,
        description=f"Purchased {bundle.name}",
    )
    logger.info(
        "Credited %s credits to %s for checkout %s (balance %s)",
        bundle.credits,
        payment.user_id,
        event.session_id,
        entry.balance_after,
    )
    return {"payment_id": payment.id, "credits_added": bundle.credits, "balance_after": entry.balance_after}


async def _apply_checkout_expired(event: CheckoutExpired, db: AsyncSession) -> Dict[str, Any]:
    payment = await _get_payment(db, session_id=event.session_id)
    if payment is not None and payment.status == "pending":
        payment.status = "expired"
    logger.info("Checkout session %s expired", event.session_id)
    return {}


async def _apply_payment_intent(event, db: AsyncSession) -> Dict[str, Any]:
    payment = await _get_payment(db, intent_id=event.payment_intent_id)
    if isinstance(event, PaymentFailed):
        logger.warning("Payment intent %s failed: %s", event.payment_intent_id, event.failure_message)
        if payment is not None and payment.status != "succeeded":
            payment.status = "failed"
    else:
        logger.info("Payment intent %s succeeded (%s %s)", event.payment_intent_id, event.amount, event.currency)
        if payment is not None and payment.status == "pending":
            payment.status = "succeeded"
    return {"payment_id": payment.id if payment is not None else None}


async def _record_failure(event: WebhookEvent, raw: Dict[str, Any], error: str, db: AsyncSession) -> None:
    record = await _get_event_record(event.event_id, db)
    if record is None:
        record = StripeWebhookEvent(event_id=event.event_id, event_type=event.event_type, payload=raw)
        db.add(record)
    record.status = EVENT_STATUS_FAILED
    record.processed = False
    record.error_message = error[:2000]


async def _escalate_credit_grant_failure(
    event: CheckoutCompleted,
    raw: Dict[str, Any],
    exc: Exception,
    db: AsyncSession,
) -> Optional[str]:
    """Dead-letter a paid checkout whose credits could not be granted."""
    logger.critical(
        "Credit grant FAILED for paid checkout %s (event %s, user %s, bundle %s): %r",
        event.session_id,
        event.event_id,
        event.user_id,
        event.bundle_id,
        exc,
    )
    try:
        await _record_failure(event, raw, repr(exc), db)
        grant = FailedCreditGrant(
            event_id=event.event_id,
            checkout_session_id=event.session_id,
            user_id=event.user_id,
            credits=event.metadata_credit_count or 0,
            error=repr(exc)[:2000],
        )
        db.add(grant)
        await db.commit()
        grant_id = grant.id
    except SQLAlchemyError as store_exc:
        await db.rollback()
        logger.critical("Dead-letter write failed for event %s: %r", event.event_id, store_exc)
        return None

    if settings.CREDIT_GRANT_RETRY_ENABLED:
        try:
            enqueue_credit_grant_retry(grant_id)
        except Exception as queue_exc:
            logger.critical("Could not enqueue credit grant retry %s: %r", grant_id, queue_exc)
    return grant_id


async def _record_coupon_usage(event: CheckoutCompleted, payment_id: str, db: AsyncSession) -> None:
    original = event.amount_subtotal if event.amount_subtotal is not None else (event.amount_total or 0)
    try:
        await record_checkout_coupon_usage(
            db,
            user_id=event.user_id,
            payment_id=payment_id,
            original_amount=original,
            discount_amount=event.discount_amount,
            final_amount=event.amount_total if event.amount_total is not None else max(original - event.discount_amount, 0),
            currency=event.currency,
            coupon_id=event.coupon_id,
            coupon_code=event.coupon_code,
        )
    except Exception:
        # Credits are already committed; coupon bookkeeping is secondary.
        await db.rollback()
        logger.exception("Coupon usage bookkeeping failed for checkout %s", event.session_id)


async def process_webhook_event(
    event: WebhookEvent,
    raw: Dict[str, Any],
    *,
    db: AsyncSession,
    catalog: BundleCatalog,
    escalate: bool = True,
) -> Dict[str, Any]:
    """Apply one verified event at most once.

    The event row (UNIQUE event_id) and any credit grant commit in the same
    transaction, so a concurrent redelivery fails on insert and is
    acknowledged as a duplicate instead of crediting twice.
    """
    record = await _get_event_record(event.event_id, db)
    if record is not None and record.processed:
        logger.info("Webhook event %s already processed; skipping", event.event_id)
        return _ack(event, "duplicate")

    if isinstance(event, UnknownEvent):
        if record is None:
            db.add(
                StripeWebhookEvent(
                    event_id=event.event_id,
                    event_type=event.event_type,
                    status=EVENT_STATUS_IGNORED,
                    processed=True,
                    payload=raw,
                    processed_at=_utcnow(),
                )
            )
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                return _ack(event, "duplicate")
        logger.info("Ignoring unhandled webhook event type %s", event.event_type)
        return _ack(event, EVENT_STATUS_IGNORED)

    outcome: Dict[str, Any] = {}
    try:
        if record is None:
            record = StripeWebhookEvent(event_id=event.event_id, event_type=event.event_type, payload=raw)
            db.add(record)
        record.status = EVENT_STATUS_PROCESSING
        record.error_message = None
        await db.flush()

        if isinstance(event, CheckoutCompleted):
            outcome = await _apply_checkout_completed(event, db, catalog)
        elif isinstance(event, CheckoutExpired):
            outcome = await _apply_checkout_expired(event, db)
        elif isinstance(event, (PaymentSucceeded, PaymentFailed)):
            outcome = await _apply_payment_intent(event, db)

        if isinstance(event, CheckoutCompleted) and event.is_paid:
            await db.execute(
                update(FailedCreditGrant)
                .where(FailedCreditGrant.event_id == event.event_id, FailedCreditGrant.resolved.is_(False))
                .values(resolved=True, resolved_at=_utcnow())
                .execution_options(synchronize_session=False)
            )
        record.status = EVENT_STATUS_APPLIED
        record.processed = True
        record.processed_at = _utcnow()
        await db.commit()
    except Exception as exc:
        await db.rollback()
        if isinstance(exc, IntegrityError):
            # Only a processed row from a concurrent delivery makes this a duplicate.
            current = await _get_event_record(event.event_id, db)
            if current is not None and current.processed:
                logger.info("Webhook event %s committed concurrently; treating as duplicate", event.event_id)
                return _ack(event, "duplicate")
        if not escalate:
            await _record_failure(event, raw, repr(exc), db)
            await db.commit()
            raise
        if isinstance(event, CheckoutCompleted) and event.is_paid:
            grant_id = await _escalate_credit_grant_failure(event, raw, exc, db)
            return _ack(event, EVENT_STATUS_FAILED, failed_credit_grant_id=grant_id)
        logger.exception("Webhook event %s (%s) failed", event.event_id, event.event_type)
        await _record_failure(event, raw, repr(exc), db)
        await db.commit()
        return _ack(event, EVENT_STATUS_FAILED)

    if isinstance(event, CheckoutCompleted) and event.is_paid and event.has_coupon:
        await _record_coupon_usage(event, outcome["payment_id"], db)
    return _ack(event, EVENT_STATUS_APPLIED, **outcome)


async def handle_stripe_webhook(
    payload: bytes,
    signature: Optional[str],
    *,
    gateway,
    catalog: BundleCatalog,
    db: AsyncSession,
    client_ip: Optional[str] = None,
) -> Dict[str, Any]:
    try:
        raw = gateway.construct_event(payload, signature)
    except (stripe.SignatureVerificationError, ValueError) as exc:
        logger.warning("Rejected Stripe webhook from %s: %s", client_ip, exc)
        await log_security_event(
            db,
            ACTION_WEBHOOK_SIGNATURE_INVALID,
            ip_address=client_ip,
            details={"error": str(exc)[:200]},
        )
        raise HTTPException(status_code=400, detail="Invalid webhook signature") from exc

    event = decode_event(raw)
    return await process_webhook_event(event, raw, db=db, catalog=catalog)


async def reprocess_webhook_event(event_id: str, db: AsyncSession, catalog: BundleCatalog) -> Dict[str, Any]:
    """Replay a stored event; errors propagate to the caller."""
    record = await _get_event_record(event_id, db)
    if record is None:
        raise HTTPException(status_code=404, detail="Webhook event not found.")
    payload = dict(record.payload or {})
    event = decode_event(payload)
    return await process_webhook_event(event, payload, db=db, catalog=catalog, escalate=False)


async def retry_failed_credit_grant(grant_id: str, db: AsyncSession, catalog: BundleCatalog) -> Dict[str, Any]:
    result = await db.execute(select(FailedCreditGrant).where(FailedCreditGrant.id == grant_id))
    grant = result.scalar_one_or_none()
    if grant is None:
        raise HTTPException(status_code=404, detail="Failed credit grant not found.")
    if grant.resolved:
        return {"id": grant.id, "resolved": True, "status": "already_resolved"}

    event_id = grant.event_id
    try:
        outcome = await reprocess_webhook_event(event_id, db, catalog)
    except Exception as exc:
        await db.rollback()
        await db.execute(
            update(FailedCreditGrant)
            .where(FailedCreditGrant.id == grant_id)
            .values(retry_count=FailedCreditGrant.retry_count + 1, error=repr(exc)[:2000])
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        logger.error("Credit grant retry %s for event %s failed: %r", grant_id, event_id, exc)
        raise

    await db.execute(
        update(FailedCreditGrant)
        .where(FailedCreditGrant.id == grant_id)
        .values(
            retry_count=FailedCreditGrant.retry_count + 1,
            resolved=True,
            resolved_at=_utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    logger.info("Credit grant %s resolved by replaying event %s", grant_id, event_id)
    return {"id": grant_id, "resolved": True, "status": outcome.get("status"), "outcome": outcome}


async def process_failed_credit_grant_job_async(grant_id: str) -> None:
    async with async_session_maker() as db:
        await retry_failed_credit_grant(grant_id, db, build_bundle_catalog(settings))


def process_failed_credit_grant_job(grant_id: str) -> None:
    """RQ worker entrypoint for credit grant retries."""
    asyncio.run(process_failed_credit_grant_job_async(grant_id))
