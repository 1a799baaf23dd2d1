"""create billing, coupon and security schema

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 00:00:01.000000
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Sequence, Union
import uuid

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "user_profiles",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("role", sa.String(), nullable=False, server_default="user"),
        sa.Column("credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_credits_purchased", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("credits >= 0", name="ck_user_profiles_credits_non_negative"),
    )
    op.create_index("ix_user_profiles_email", "user_profiles", ["email"], unique=False)

    op.create_table(
        "credit_transactions",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("transaction_type", sa.String(), nullable=False),
        sa.Column("payment_id", sa.String(), nullable=True),
        sa.Column("analysis_id", sa.String(), nullable=True),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["user_profiles.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("payment_id", "transaction_type", name="uq_credit_transactions_payment_type"),
        sa.UniqueConstraint(
            "user_id", "analysis_id", "transaction_type", name="uq_credit_transactions_user_analysis_type"
        ),
    )
    op.create_index("ix_credit_transactions_user_id", "credit_transactions", ["user_id"], unique=False)
    op.create_index("ix_credit_transactions_created_at", "credit_transactions", ["created_at"], unique=False)

    op.create_table(
        "payments",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("stripe_checkout_session_id", sa.String(), nullable=False),
        sa.Column("stripe_payment_intent_id", sa.String(), nullable=True),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("bundle_id", sa.String(), nullable=True),
        sa.Column("credits_purchased", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("amount_subtotal", sa.Integer(), nullable=True),
        sa.Column("amount_total", sa.Integer(), nullable=True),
        sa.Column("discount_amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("coupon_id", sa.String(), nullable=True),
        sa.Column("customer_email", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_payments_stripe_checkout_session_id", "payments", ["stripe_checkout_session_id"], unique=True
    )
    op.create_index("ix_payments_stripe_payment_intent_id", "payments", ["stripe_payment_intent_id"], unique=False)
    op.create_index("ix_payments_user_id", "payments", ["user_id"], unique=False)

    coupons_table = op.create_table(
        "coupons",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("code", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("discount_type", sa.String(), nullable=False),
        sa.Column("discount_value", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(), nullable=False, server_default="eur"),
        sa.Column("minimum_amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_discount_amount", sa.Integer(), nullable=True),
        sa.Column("usage_limit", sa.Integer(), nullable=True),
        sa.Column("usage_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("single_use_per_user", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_public", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("valid_from", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("stripe_coupon_id", sa.String(), nullable=True),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("discount_type IN ('percentage', 'fixed_amount')", name="ck_coupons_discount_type"),
        sa.CheckConstraint("discount_value > 0", name="ck_coupons_discount_value_positive"),
    )
    op.create_index("ix_coupons_code", "coupons", ["code"], unique=True)
    op.create_index("ix_coupons_is_active", "coupons", ["is_active"], unique=False)

    op.create_table(
        "coupon_usage",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("coupon_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("payment_id", sa.String(), nullable=True),
        sa.Column("single_use_key", sa.String(), nullable=True),
        sa.Column("original_amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("discount_amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("final_amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(), nullable=True),
        sa.Column("used_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.ForeignKeyConstraint(["coupon_id"], ["coupons.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("single_use_key"),
    )
    op.create_index("ix_coupon_usage_coupon_id", "coupon_usage", ["coupon_id"], unique=False)
    op.create_index("ix_coupon_usage_user_id", "coupon_usage", ["user_id"], unique=False)
    op.create_index("ix_coupon_usage_payment_id", "coupon_usage", ["payment_id"], unique=False)
    op.create_index("ix_coupon_usage_used_at", "coupon_usage", ["used_at"], unique=False)

    op.create_table(
        "stripe_webhook_events",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("event_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="processing"),
        sa.Column("processed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_stripe_webhook_events_event_id", "stripe_webhook_events", ["event_id"], unique=True)

    op.create_table(
        "failed_credit_grants",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("event_id", sa.String(), nullable=False),
        sa.Column("checkout_session_id", sa.String(), nullable=True),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("resolved", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_failed_credit_grants_event_id", "failed_credit_grants", ["event_id"], unique=False)
    op.create_index(
        "ix_failed_credit_grants_checkout_session_id", "failed_credit_grants", ["checkout_session_id"], unique=False
    )
    op.create_index("ix_failed_credit_grants_user_id", "failed_credit_grants", ["user_id"], unique=False)
    op.create_index("ix_failed_credit_grants_resolved", "failed_credit_grants", ["resolved"], unique=False)

    op.create_table(
        "coupon_security_log",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("ip_address", sa.String(), nullable=True),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("coupon_code", sa.String(), nullable=True),
        sa.Column("action_type", sa.String(), nullable=False),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_coupon_security_log_ip_address", "coupon_security_log", ["ip_address"], unique=False)
    op.create_index("ix_coupon_security_log_user_id", "coupon_security_log", ["user_id"], unique=False)
    op.create_index("ix_coupon_security_log_action_type", "coupon_security_log", ["action_type"], unique=False)
    op.create_index("ix_coupon_security_log_created_at", "coupon_security_log", ["created_at"], unique=False)

    op.create_table(
        "ip_blacklist",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("ip_address", sa.String(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("blocked_by", sa.String(), nullable=True),
        sa.Column("blocked_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_permanent", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_ip_blacklist_ip_address", "ip_blacklist", ["ip_address"], unique=True)

    # Launch coupons; amounts are minor units (cents).
    now = datetime.now(timezone.utc)
    op.bulk_insert(
        coupons_table,
        [
            {
                "id": str(uuid.uuid4()),
                "code": "WELCOME10",
                "name": "Welcome discount",
                "description": "10% off your first credit bundle",
                "discount_type": "percentage",
                "discount_value": Decimal("10"),
                "currency": "eur",
                "minimum_amount": 0,
                "usage_limit": 100,
                "usage_count": 0,
                "single_use_per_user": True,
                "is_public": True,
                "is_active": True,
                "valid_from": now,
                "expires_at": now + timedelta(days=30),
                "created_by": "system",
            },
            {
                "id": str(uuid.uuid4()),
                "code": "SAVE5",
                "name": "Save 5 EUR",
                "description": "5 EUR off orders of 10 EUR or more",
                "discount_type": "fixed_amount",
                "discount_value": Decimal("5.00"),
                "currency": "eur",
                "minimum_amount": 1000,
                "usage_limit": None,
                "usage_count": 0,
                "single_use_per_user": True,
                "is_public": True,
                "is_active": True,
                "valid_from": now,
                "expires_at": now + timedelta(days=60),
                "created_by": "system",
            },
            {
                "id": str(uuid.uuid4()),
                "code": "PREMIUM20",
                "name": "Premium discount",
                "description": "20% off orders of 15 EUR or more",
                "discount_type": "percentage",
                "discount_value": Decimal("20"),
                "currency": "eur",
                "minimum_amount": 1500,
                "usage_limit": 50,
                "usage_count": 0,
                "single_use_per_user": True,
                "is_public": False,
                "is_active": True,
                "valid_from": now,
                "expires_at": now + timedelta(days=90),
                "created_by": "system",
            },
        ],
    )


def downgrade() -> None:
    op.drop_index("ix_ip_blacklist_ip_address", table_name="ip_blacklist")
    op.drop_table("ip_blacklist")

    op.drop_index("ix_coupon_security_log_created_at", table_name="coupon_security_log")
    op.drop_index("ix_coupon_security_log_action_type", table_name="coupon_security_log")
    op.drop_index("ix_coupon_security_log_user_id", table_name="coupon_security_log")
    op.drop_index("ix_coupon_security_log_ip_address", table_name="coupon_security_log")
    op.drop_table("coupon_security_log")

    op.drop_index("ix_failed_credit_grants_resolved", table_name="failed_credit_grants")
    op.drop_index("ix_failed_credit_grants_user_id", table_name="failed_credit_grants")
    op.drop_index("ix_failed_credit_grants_checkout_session_id", table_name="failed_credit_grants")
    op.drop_index("ix_failed_credit_grants_event_id", table_name="failed_credit_grants")
    op.drop_table("failed_credit_grants")

    op.drop_index("ix_stripe_webhook_events_event_id", table_name="stripe_webhook_events")
    op.drop_table("stripe_webhook_events")

    op.drop_index("ix_coupon_usage_used_at", table_name="coupon_usage")
    op.drop_index("ix_coupon_usage_payment_id", table_name="coupon_usage")
    op.drop_index("ix_coupon_usage_user_id", table_name="coupon_usage")
    op.drop_index("ix_coupon_usage_coupon_id", table_name="coupon_usage")
    op.drop_table("coupon_usage")

    op.drop_index("ix_coupons_is_active", table_name="coupons")
    op.drop_index("ix_coupons_code", table_name="coupons")
    op.drop_table("coupons")

    op.drop_index("ix_payments_user_id", table_name="payments")
    op.drop_index("ix_payments_stripe_payment_intent_id", table_name="payments")
    op.drop_index("ix_payments_stripe_checkout_session_id", table_name="payments")
    op.drop_table("payments")

    op.drop_index("ix_credit_transactions_created_at", table_name="credit_transactions")
    op.drop_index("ix_credit_transactions_user_id", table_name="credit_transactions")
    op.drop_table("credit_transactions")

    op.drop_index("ix_user_profiles_email", table_name="user_profiles")
    op.drop_table("user_profiles")
