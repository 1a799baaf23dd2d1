"""CreditTransaction model for the append-only credit ledger."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class CreditTransaction(Base):
    """Immutable ledger entry; one row per balance mutation."""

    __tablename__ = "credit_transactions"
    __table_args__ = (
        UniqueConstraint("payment_id", "transaction_type", name="uq_credit_transactions_payment_type"),
        UniqueConstraint(
            "user_id", "analysis_id", "transaction_type", name="uq_credit_transactions_user_analysis_type"
        ),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("user_profiles.id"), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    transaction_type = Column(String, nullable=False)
    payment_id = Column(String, nullable=True)
    analysis_id = Column(String, nullable=True)
    description = Column(String, nullable=True)
    balance_after = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    user = relationship("UserProfile", back_populates="credit_transactions")
