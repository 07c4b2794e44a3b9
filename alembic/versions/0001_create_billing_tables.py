"""create billing tables

Revision ID: 0001_create_billing_tables
Revises:
Create Date: 2026-09-14 09:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0001_create_billing_tables"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create tenants, webhook ledger, setup tokens and referrals."""
    op.create_table(
        "tenants",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("stripe_customer_id", sa.String(length=255), nullable=True),
        sa.Column("stripe_subscription_id", sa.String(length=255), nullable=True),
        sa.Column("stripe_subscription_status", sa.String(length=50), nullable=True),
        sa.Column("license_tier", sa.String(length=20), nullable=True, server_default="starter"),
        sa.Column("vehicle_allowance", sa.Integer(), nullable=False, server_default="10"),
        sa.Column("grace_overage", sa.Integer(), nullable=True, server_default="3"),
        sa.Column("enforcement_mode", sa.String(length=20), nullable=True, server_default="soft_block"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_tenants_stripe_customer_id"), "tenants", ["stripe_customer_id"], unique=True)

    op.create_table(
        "webhook_events",
        sa.Column("event_key", sa.String(length=255), nullable=False),
        sa.Column("external_event_id", sa.String(length=255), nullable=False),
        sa.Column("event_kind", sa.String(length=100), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("event_key"),
    )
    op.create_index(op.f("ix_webhook_events_external_event_id"), "webhook_events", ["external_event_id"], unique=False)

    op.create_table(
        "account_setup_tokens",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("token", sa.String(length=128), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("stripe_customer_id", sa.String(length=255), nullable=True),
        sa.Column("stripe_subscription_id", sa.String(length=255), nullable=True),
        sa.Column("stripe_checkout_session_id", sa.String(length=255), nullable=True),
        sa.Column("tier", sa.String(length=20), nullable=False),
        sa.Column("vehicle_allowance", sa.Integer(), nullable=False),
        sa.Column("referral_code", sa.String(length=50), nullable=True),
        sa.Column("issued_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("consumed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("stripe_checkout_session_id"),
    )
    op.create_index(op.f("ix_account_setup_tokens_token"), "account_setup_tokens", ["token"], unique=True)
    op.create_index(
        op.f("ix_account_setup_tokens_stripe_subscription_id"),
        "account_setup_tokens",
        ["stripe_subscription_id"],
        unique=False,
    )

    op.create_table(
        "referrals",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("code", sa.String(length=50), nullable=False),
        sa.Column("referrer_tenant_id", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("reward_type", sa.String(length=50), nullable=True),
        sa.Column("reward_value", sa.Integer(), nullable=True),
        sa.Column("reward_claimed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("signed_up_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("converted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rewarded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["referrer_tenant_id"], ["tenants.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_referrals_code"), "referrals", ["code"], unique=True)
    op.create_index(op.f("ix_referrals_referrer_tenant_id"), "referrals", ["referrer_tenant_id"], unique=False)


def downgrade() -> None:
    """Drop billing tables."""
    op.drop_index(op.f("ix_referrals_referrer_tenant_id"), table_name="referrals")
    op.drop_index(op.f("ix_referrals_code"), table_name="referrals")
    op.drop_table("referrals")
    op.drop_index(op.f("ix_account_setup_tokens_stripe_subscription_id"), table_name="account_setup_tokens")
    op.drop_index(op.f("ix_account_setup_tokens_token"), table_name="account_setup_tokens")
    op.drop_table("account_setup_tokens")
    op.drop_index(op.f("ix_webhook_events_external_event_id"), table_name="webhook_events")
    op.drop_table("webhook_events")
    op.drop_index(op.f("ix_tenants_stripe_customer_id"), table_name="tenants")
    op.drop_table("tenants")
