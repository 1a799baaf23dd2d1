"""SecurityLog model."""

import uuid

from sqlalchemy import Column, DateTime, JSON, String
from sqlalchemy.sql import func

from database import Base


class SecurityLog(Base):
    """Append-only audit entry for coupon and admin abuse signals."""

    __tablename__ = "coupon_security_log"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    ip_address = Column(String, nullable=True, index=True)
    user_id = Column(String, nullable=True, index=True)
    coupon_code = Column(String, nullable=True)
    action_type = Column(String, nullable=False, index=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
