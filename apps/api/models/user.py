"""User profile model."""

from sqlalchemy import CheckConstraint, Column, DateTime, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class UserProfile(Base):
    """Per-user profile carrying the cached credit balance."""

    __tablename__ = "user_profiles"
    __table_args__ = (CheckConstraint("credits >= 0", name="ck_user_profiles_credits_non_negative"),)

    id = Column(String, primary_key=True)
    email = Column(String, nullable=True, index=True)
    name = Column(String, nullable=True)
    role = Column(String, nullable=False, default="user")
    credits = Column(Integer, nullable=False, default=0)
    total_credits_purchased = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    credit_transactions = relationship(
        "CreditTransaction", back_populates="user", cascade="all, delete-orphan"
    )
