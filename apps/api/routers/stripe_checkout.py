"""Stripe checkout, session verification and webhook router."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, ensure_user_scope, get_optional_auth_context, require_admin
from routers.client_guard import client_ip, rate_limit
from services.bundles import BundleCatalog, get_bundle_catalog
from services.checkout import create_checkout_session, verify_checkout_session
from services.credit_grant_queue import list_failed_credit_grants
from services.stripe_gateway import StripeGateway, get_stripe_gateway
from services.webhooks import handle_stripe_webhook, retry_failed_credit_grant

router = APIRouter()
logger = logging.getLogger(__name__)


class CheckoutSessionRequest(BaseModel):
    bundle: str = Field(min_length=1, max_length=64)
    coupon_code: Optional[str] = Field(default=None, max_length=64)
    user_id: Optional[str] = None


@router.get("/bundles")
async def list_bundles(catalog: BundleCatalog = Depends(get_bundle_catalog)):
    return {"bundles": [bundle.to_public_dict() for bundle in catalog.all()]}


@router.post("/create-checkout-session")
async def create_checkout(
    request: CheckoutSessionRequest,
    _rate_limit: None = Depends(rate_limit("stripe_checkout", limit=20, window_seconds=3600)),
    auth: Optional[AuthContext] = Depends(get_optional_auth_context),
    catalog: BundleCatalog = Depends(get_bundle_catalog),
    gateway: StripeGateway = Depends(get_stripe_gateway),
    db: AsyncSession = Depends(get_db),
):
    if auth is not None:
        user_id = ensure_user_scope(auth.user_id, request.user_id)
        email = auth.email
    else:
        # Unauthenticated checkout can only ever be anonymous.
        user_id = None
        email = None

    result = await create_checkout_session(
        request.bundle,
        user_id=user_id,
        coupon_code=request.coupon_code,
        catalog=catalog,
        gateway=gateway,
        db=db,
        customer_email=email,
    )
    return result.to_dict()


@router.get("/verify-session/{session_id}")
async def verify_session(
    session_id: str,
    _rate_limit: None = Depends(rate_limit("stripe_verify", limit=120, window_seconds=3600)),
    gateway: StripeGateway = Depends(get_stripe_gateway),
    db: AsyncSession = Depends(get_db),
):
    return await verify_checkout_session(session_id, gateway=gateway, db=db)


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    gateway: StripeGateway = Depends(get_stripe_gateway),
    catalog: BundleCatalog = Depends(get_bundle_catalog),
    db: AsyncSession = Depends(get_db),
):
    payload = await request.body()
    return await handle_stripe_webhook(
        payload,
        request.headers.get("stripe-signature"),
        gateway=gateway,
        catalog=catalog,
        db=db,
        client_ip=client_ip(request),
    )


@router.get("/admin/failed-credit-grants")
async def failed_credit_grants(
    include_resolved: bool = Query(default=False),
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return {"items": await list_failed_credit_grants(db, include_resolved=include_resolved)}


@router.post("/admin/failed-credit-grants/{grant_id}/retry")
async def retry_credit_grant(
    grant_id: str,
    admin: AuthContext = Depends(require_admin),
    catalog: BundleCatalog = Depends(get_bundle_catalog),
    db: AsyncSession = Depends(get_db),
):
    logger.info("Admin %s retrying failed credit grant %s", admin.user_id, grant_id)
    try:
        return await retry_failed_credit_grant(grant_id, db, catalog)
    except HTTPException:
        raise
    except Exception as exc:
        raise HTTPException(status_code=500, detail=f"Credit grant retry failed: {exc!r}") from exc
