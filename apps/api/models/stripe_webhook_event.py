"""StripeWebhookEvent model for webhook idempotency."""

import uuid

from sqlalchemy import Boolean, Column, DateTime, JSON, String, Text
from sqlalchemy.sql import func

from database import Base


class StripeWebhookEvent(Base):
    """Processed-event log keyed by the Stripe event id."""

    __tablename__ = "stripe_webhook_events"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    event_id = Column(String, unique=True, nullable=False, index=True)
    event_type = Column(String, nullable=False)
    status = Column(String, nullable=False, default="processing")
    processed = Column(Boolean, nullable=False, default=False)
    payload = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    received_at = Column(DateTime(timezone=True), server_default=func.now())
    processed_at = Column(DateTime(timezone=True), nullable=True)
