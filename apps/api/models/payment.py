"""Payment model."""

import uuid

from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.sql import func

from database import Base


class Payment(Base):
    """One row per Stripe checkout session seen by the webhook."""

    __tablename__ = "payments"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    stripe_checkout_session_id = Column(String, unique=True, nullable=False, index=True)
    stripe_payment_intent_id = Column(String, nullable=True, index=True)
    user_id = Column(String, nullable=True, index=True)
    bundle_id = Column(String, nullable=True)
    credits_purchased = Column(Integer, nullable=False, default=0)
    amount_subtotal = Column(Integer, nullable=True)
    amount_total = Column(Integer, nullable=True)
    discount_amount = Column(Integer, nullable=False, default=0)
    currency = Column(String, nullable=True)
    status = Column(String, nullable=False, default="pending")
    coupon_id = Column(String, nullable=True)
    customer_email = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
