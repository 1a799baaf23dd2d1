"""Thin synchronous wrapper around the Stripe SDK.

Every method returns plain dicts so callers and test fakes share one shape.
Async callers run these through ``asyncio.to_thread``.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from fastapi import HTTPException, Request
import stripe

from config import settings

logger = logging.getLogger(__name__)


def _to_dict(obj: Any) -> Dict[str, Any]:
    if obj is None:
        return {}
    if isinstance(obj, stripe.StripeObject):
        return obj.to_dict()
    return dict(obj)


class StripeGateway:
    def __init__(self, api_key: str, webhook_secret: str, tolerance_seconds: int = 300):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.tolerance_seconds = tolerance_seconds
        stripe.api_key = api_key

    def construct_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Verify the Stripe-Signature header and return the decoded event.

        Raises ``stripe.SignatureVerificationError`` when the header is
        missing, stale or does not match the payload.
        """
        if not self.webhook_secret:
            raise stripe.SignatureVerificationError("Webhook secret is not configured", signature)
        if not signature:
            raise stripe.SignatureVerificationError("Missing Stripe-Signature header", signature)
        body = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        stripe.WebhookSignature.verify_header(body, signature, self.webhook_secret, self.tolerance_seconds)
        return json.loads(body)

    def create_checkout_session(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return _to_dict(stripe.checkout.Session.create(**params))

    def retrieve_checkout_session(self, session_id: str) -> Dict[str, Any]:
        return _to_dict(stripe.checkout.Session.retrieve(session_id))

    def retrieve_coupon(self, coupon_id: str) -> Optional[Dict[str, Any]]:
        """Return the Stripe coupon, or None when Stripe has no such id."""
        try:
            coupon = stripe.Coupon.retrieve(coupon_id)
        except stripe.InvalidRequestError as exc:
            if getattr(exc, "http_status", None) == 404:
                return None
            raise
        return _to_dict(coupon)

    def create_coupon(self, coupon_id: str, params: Dict[str, Any]) -> Dict[str, Any]:
        return _to_dict(stripe.Coupon.create(id=coupon_id, **params))

    def retrieve_price(self, price_id: str) -> Dict[str, Any]:
        return _to_dict(stripe.Price.retrieve(price_id))


def build_stripe_gateway() -> Optional[StripeGateway]:
    api_key = (settings.STRIPE_SECRET_KEY or "").strip()
    if not api_key:
        return None
    return StripeGateway(
        api_key=api_key,
        webhook_secret=(settings.STRIPE_WEBHOOK_SECRET or "").strip(),
        tolerance_seconds=int(settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS),
    )


def get_stripe_gateway(request: Request) -> StripeGateway:
    """FastAPI dependency; 503 when billing or Stripe is not configured."""
    if not settings.BILLING_ENABLED:
        raise HTTPException(status_code=503, detail="Billing is disabled. Enable BILLING_ENABLED to use checkout.")
    gateway = getattr(request.app.state, "stripe_gateway", None)
    if gateway is None:
        gateway = build_stripe_gateway()
        if gateway is None:
            raise HTTPException(status_code=503, detail="Stripe is not configured.")
        request.app.state.stripe_gateway = gateway
    return gateway


def get_optional_stripe_gateway(request: Request) -> Optional[StripeGateway]:
    """Gateway for best-effort Stripe mirroring; None when Stripe is unset."""
    gateway = getattr(request.app.state, "stripe_gateway", None)
    if gateway is None:
        gateway = build_stripe_gateway()
        if gateway is not None:
            request.app.state.stripe_gateway = gateway
    return gateway
