"""CouponUsage model."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.sql import func

from database import Base


class CouponUsage(Base):
    """Append-only record of a coupon redemption."""

    __tablename__ = "coupon_usage"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    coupon_id = Column(String, ForeignKey("coupons.id"), nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    payment_id = Column(String, nullable=True, index=True)
    # "<coupon_id>:<user_id>" for single-use coupons, NULL otherwise.
    single_use_key = Column(String, unique=True, nullable=True)
    original_amount = Column(Integer, nullable=False, default=0)
    discount_amount = Column(Integer, nullable=False, default=0)
    final_amount = Column(Integer, nullable=False, default=0)
    currency = Column(String, nullable=True)
    used_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
