"""Typed decoding of verified Stripe webhook events."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from fastapi import HTTPException


CHECKOUT_COMPLETED_TYPES = ("checkout.session.completed", "checkout.session.async_payment_succeeded")
CHECKOUT_EXPIRED_TYPES = ("checkout.session.expired", "checkout.session.async_payment_failed")
PAYMENT_SUCCEEDED_TYPES = ("payment_intent.succeeded",)
PAYMENT_FAILED_TYPES = ("payment_intent.payment_failed", "payment_intent.failed")
PAID_STATUSES = ("paid", "no_payment_required")


class MalformedEventError(HTTPException):
    def __init__(self, message: str):
        super().__init__(status_code=400, detail=f"Malformed webhook event: {message}")


@dataclass(frozen=True)
class CheckoutCompleted:
    event_id: str
    event_type: str
    session_id: str
    payment_status: str
    payment_intent_id: Optional[str]
    user_id: Optional[str]
    bundle_id: Optional[str]
    metadata_credit_count: Optional[int]
    amount_subtotal: Optional[int]
    amount_total: Optional[int]
    discount_amount: int
    currency: Optional[str]
    customer_email: Optional[str]
    coupon_id: Optional[str]
    coupon_code: Optional[str]

    @property
    def is_paid(self) -> bool:
        return self.payment_status in PAID_STATUSES

    @property
    def has_coupon(self) -> bool:
        return bool(self.coupon_id or self.coupon_code)


@dataclass(frozen=True)
class CheckoutExpired:
    event_id: str
    event_type: str
    session_id: str


@dataclass(frozen=True)
class PaymentSucceeded:
    event_id: str
    event_type: str
    payment_intent_id: str
    amount: Optional[int]
    currency: Optional[str]


@dataclass(frozen=True)
class PaymentFailed:
    event_id: str
    event_type: str
    payment_intent_id: str
    amount: Optional[int]
    currency: Optional[str]
    failure_message: Optional[str]


@dataclass(frozen=True)
class UnknownEvent:
    event_id: str
    event_type: str


WebhookEvent = Union[CheckoutCompleted, CheckoutExpired, PaymentSucceeded, PaymentFailed, UnknownEvent]


def _optional_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _optional_str(value: Any) -> Optional[str]:
    text = str(value).strip() if value is not None else ""
    return text or None


def _decode_checkout_completed(event_id: str, event_type: str, session: Dict[str, Any]) -> CheckoutCompleted:
    session_id = _optional_str(session.get("id"))
    if not session_id:
        raise MalformedEventError("checkout session id missing")
    metadata = session.get("metadata") or {}
    total_details = session.get("total_details") or {}
    customer_details = session.get("customer_details") or {}

    amount_subtotal = _optional_int(session.get("amount_subtotal"))
    amount_total = _optional_int(session.get("amount_total"))
    discount = _optional_int(total_details.get("amount_discount"))
    if not discount:
        # Discount baked into the line price: Stripe only saw the reduced amount.
        discount = _optional_int(metadata.get("discount_amount")) or 0
        if discount:
            original = _optional_int(metadata.get("original_amount"))
            base = amount_total if amount_total is not None else amount_subtotal
            if original is None and base is not None:
                original = base + discount
            if original is not None:
                amount_subtotal = original

    return CheckoutCompleted(
        event_id=event_id,
        event_type=event_type,
        session_id=session_id,
        payment_status=str(session.get("payment_status") or "unpaid"),
        payment_intent_id=_optional_str(session.get("payment_intent")),
        user_id=_optional_str(metadata.get("user_id")) or _optional_str(session.get("client_reference_id")),
        bundle_id=_optional_str(metadata.get("bundle_id")),
        metadata_credit_count=_optional_int(metadata.get("credit_count")),
        amount_subtotal=amount_subtotal,
        amount_total=amount_total,
        discount_amount=int(discount),
        currency=_optional_str(session.get("currency")),
        customer_email=_optional_str(session.get("customer_email")) or _optional_str(customer_details.get("email")),
        coupon_id=_optional_str(metadata.get("coupon_id")),
        coupon_code=_optional_str(metadata.get("coupon_code")),
    )


def decode_event(raw: Dict[str, Any]) -> WebhookEvent:
    """Turn a verified Stripe event payload into one of the typed events."""
    if not isinstance(raw, dict):
        raise MalformedEventError("payload is not an object")
    event_id = _optional_str(raw.get("id"))
    event_type = _optional_str(raw.get("type"))
    if not event_id or not event_type:
        raise MalformedEventError("event id or type missing")

    data_object = (raw.get("data") or {}).get("object")
    if event_type in CHECKOUT_COMPLETED_TYPES + CHECKOUT_EXPIRED_TYPES + PAYMENT_SUCCEEDED_TYPES + PAYMENT_FAILED_TYPES:
        if not isinstance(data_object, dict):
            raise MalformedEventError("data.object missing")

    if event_type in CHECKOUT_COMPLETED_TYPES:
        return _decode_checkout_completed(event_id, event_type, data_object)
    if event_type in CHECKOUT_EXPIRED_TYPES:
        session_id = _optional_str(data_object.get("id"))
        if not session_id:
            raise MalformedEventError("checkout session id missing")
        return CheckoutExpired(event_id=event_id, event_type=event_type, session_id=session_id)
    if event_type in PAYMENT_SUCCEEDED_TYPES + PAYMENT_FAILED_TYPES:
        intent_id = _optional_str(data_object.get("id"))
        if not intent_id:
            raise MalformedEventError("payment intent id missing")
        amount = _optional_int(data_object.get("amount"))
        currency = _optional_str(data_object.get("currency"))
        if event_type in PAYMENT_SUCCEEDED_TYPES:
            return PaymentSucceeded(
                event_id=event_id,
                event_type=event_type,
                payment_intent_id=intent_id,
                amount=amount,
                currency=currency,
            )
        last_error = data_object.get("last_payment_error") or {}
        return PaymentFailed(
            event_id=event_id,
            event_type=event_type,
            payment_intent_id=intent_id,
            amount=amount,
            currency=currency,
            failure_message=_optional_str(last_error.get("message")),
        )
    return UnknownEvent(event_id=event_id, event_type=event_type)
