"""Create claims core tables: customers, deals, claims, transfers, points ledger, deposit events.

Revision ID: 20261017_01
Revises:
Create Date: 2026-10-17
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision: str = "20261017_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


customer_role_enum = postgresql.ENUM("customer", "vendor", "admin", name="customer_role_enum", create_type=False)
deal_status_enum = postgresql.ENUM("draft", "active", "paused", "expired", name="deal_status_enum", create_type=False)
payment_tier_enum = postgresql.ENUM("integrated", "manual", name="payment_tier_enum", create_type=False)
confirmation_source_enum = postgresql.ENUM(
    "webhook", "vendor", "system", name="confirmation_source_enum", create_type=False
)
points_entry_type_enum = postgresql.ENUM(
    "earned", "bonus", "adjustment", "redeemed", "spend_credit", name="points_entry_type_enum", create_type=False
)
deposit_provider_enum = postgresql.ENUM("stripe", "generic", name="deposit_provider_enum", create_type=False)
deposit_event_status_enum = postgresql.ENUM(
    "received",
    "processed",
    "rejected",
    "pending_retry",
    "dead_lettered",
    name="deposit_event_status_enum",
    create_type=False,
)

_ENUMS = (
    customer_role_enum,
    deal_status_enum,
    payment_tier_enum,
    confirmation_source_enum,
    points_entry_type_enum,
    deposit_provider_enum,
    deposit_event_status_enum,
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    for enum in _ENUMS:
        enum.create(bind, checkfirst=True)

    op.create_table(
        "customers",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("role", customer_role_enum, nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_customers_email", "customers", ["email"], unique=True)

    op.create_table(
        "deals",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("vendor_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("customers.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("original_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("deal_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("deposit_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("payment_tier", payment_tier_enum, nullable=False),
        sa.Column("max_claims", sa.Integer(), nullable=True),
        sa.Column("claims_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", deal_status_enum, nullable=False),
        *_timestamps(),
        sa.CheckConstraint("claims_count >= 0", name="ck_deals_claims_count_non_negative"),
        sa.CheckConstraint(
            "max_claims IS NULL OR claims_count <= max_claims",
            name="ck_deals_claims_count_within_capacity",
        ),
    )
    op.create_index("ix_deals_vendor_id", "deals", ["vendor_id"])

    op.create_table(
        "claims",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("deal_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("deals.id", ondelete="RESTRICT"), nullable=False),
        sa.Column(
            "customer_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("customers.id", ondelete="RESTRICT"), nullable=False
        ),
        sa.Column("payment_tier", payment_tier_enum, nullable=False),
        sa.Column("session_token", sa.String(length=64), nullable=False, unique=True),
        sa.Column("deposit_confirmed", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("deposit_confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("confirmed_via", confirmation_source_enum, nullable=True),
        sa.Column("scan_token", sa.String(length=64), nullable=True, unique=True),
        sa.Column("redemption_code", sa.String(length=16), nullable=True, unique=True),
        sa.Column("redeemed", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("redeemed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "redeemed_by_vendor_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("customers.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("checkout_session_id", sa.String(length=255), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_claims_deal_id", "claims", ["deal_id"])
    op.create_index("ix_claims_customer_id", "claims", ["customer_id"])

    op.create_table(
        "claim_transfers",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("claim_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("claims.id", ondelete="RESTRICT"), nullable=False),
        sa.Column(
            "from_customer_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("customers.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column(
            "to_customer_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("customers.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    )
    op.create_index("ix_claim_transfers_claim_id", "claim_transfers", ["claim_id"])

    op.create_table(
        "points_redemptions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("customers.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("points_used", sa.Integer(), nullable=False),
        sa.Column("credit_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.CheckConstraint("points_used > 0", name="ck_points_redemptions_points_positive"),
    )
    op.create_index("ix_points_redemptions_user_id", "points_redemptions", ["user_id"])

    op.create_table(
        "points_ledger",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("customers.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("entry_type", points_entry_type_enum, nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("deal_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("deals.id", ondelete="SET NULL"), nullable=True),
        sa.Column("claim_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("claims.id", ondelete="SET NULL"), nullable=True),
        sa.Column(
            "redemption_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("points_redemptions.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("created_by", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.CheckConstraint("amount <> 0", name="ck_points_ledger_amount_non_zero"),
    )
    op.create_index("ix_points_ledger_user_id", "points_ledger", ["user_id"])
    op.create_index("ix_points_ledger_created_at", "points_ledger", ["created_at"])

    op.create_table(
        "deposit_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("provider", deposit_provider_enum, nullable=False),
        sa.Column("external_id", sa.String(length=255), nullable=False),
        sa.Column("event_type", sa.String(length=128), nullable=True),
        sa.Column("payload_hash", sa.String(length=128), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("session_token", sa.String(length=64), nullable=True),
        sa.Column("claim_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("status", deposit_event_status_enum, nullable=False),
        sa.Column("attempts", sa.Integer(), server_default="0", nullable=False),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.UniqueConstraint("provider", "external_id", name="uq_deposit_event_provider_external"),
    )
    op.create_index("ix_deposit_events_session_token", "deposit_events", ["session_token"])
    op.create_index("ix_deposit_events_status", "deposit_events", ["status"])


def downgrade() -> None:
    op.drop_table("deposit_events")
    op.drop_table("points_ledger")
    op.drop_table("points_redemptions")
    op.drop_table("claim_transfers")
    op.drop_table("claims")
    op.drop_table("deals")
    op.drop_table("customers")

    bind = op.get_bind()
    for enum in reversed(_ENUMS):
        enum.drop(bind, checkfirst=True)
