"""Routers package."""

from . import (
    health,
    stripe_checkout,
    coupons,
    coupon_admin,
    credits,
)
