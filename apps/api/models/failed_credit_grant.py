"""FailedCreditGrant model (dead letter for paid but uncredited checkouts)."""

import uuid

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text
from sqlalchemy.sql import func

from database import Base


class FailedCreditGrant(Base):
    """Credit grant that failed after Stripe confirmed payment."""

    __tablename__ = "failed_credit_grants"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    event_id = Column(String, nullable=False, index=True)
    checkout_session_id = Column(String, nullable=True, index=True)
    user_id = Column(String, nullable=True, index=True)
    credits = Column(Integer, nullable=False, default=0)
    error = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    resolved = Column(Boolean, nullable=False, default=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    resolved_at = Column(DateTime(timezone=True), nullable=True)
