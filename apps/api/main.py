"""
CV Analyzer Billing API - FastAPI Backend
Credit bundles, coupons and Stripe payment reconciliation.
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import logging

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import (
    health,
    stripe_checkout,
    coupons,
    coupon_admin,
    credits,
)
from services.bundles import build_bundle_catalog
from services.credit_grant_queue import count_unresolved_credit_grants
from services.stripe_gateway import build_stripe_gateway

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting CV Analyzer Billing API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")

    catalog = build_bundle_catalog(settings)
    gateway = build_stripe_gateway()
    if gateway is None:
        print("⚠️ STRIPE_SECRET_KEY not set; checkout and webhooks will return 503.")
    elif settings.STRIPE_SYNC_BUNDLE_PRICES:
        catalog = catalog.with_processor_prices(gateway)
        print("💶 Bundle prices synced from Stripe.")
    app.state.bundle_catalog = catalog
    app.state.stripe_gateway = gateway
    print(f"📦 Bundles: {', '.join(f'{b.id}={b.credits}cr/{b.price} {b.currency}' for b in catalog.all())}")

    try:
        unresolved = await count_unresolved_credit_grants()
        if unresolved:
            print(f"🚨 {unresolved} paid checkouts are still waiting for credits (failed_credit_grants).")
    except Exception as exc:
        print(f"⚠️ Failed credit grant check skipped: {exc}")
    yield
    # Shutdown
    print("👋 Shutting down API...")


app = FastAPI(
    title="CV Analyzer Billing API",
    description="Buy analysis credits, redeem coupons and reconcile Stripe payments",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(stripe_checkout.router, prefix="/api/stripe", tags=["Stripe"])
app.include_router(coupon_admin.router, prefix="/api/coupons/admin", tags=["Coupon Admin"])
app.include_router(coupons.router, prefix="/api/coupons", tags=["Coupons"])
app.include_router(credits.router, prefix="/api/credits", tags=["Credits"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "CV Analyzer Billing API",
        "version": "0.1.0",
        "status": "running"
    }
