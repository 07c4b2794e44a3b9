"""add tenant subscription event timestamp

Revision ID: 0004_add_tenant_subscription_event_at
Revises: 0003_add_referral_discount_columns
Create Date: 2026-10-19 11:20:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0004_add_tenant_subscription_event_at"
down_revision: str | Sequence[str] | None = "0003_add_referral_discount_columns"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Track the newest applied subscription event so late deliveries can be ignored."""
    with op.batch_alter_table("tenants") as batch_op:
        batch_op.add_column(sa.Column("stripe_subscription_event_at", sa.DateTime(timezone=True), nullable=True))


def downgrade() -> None:
    """Drop subscription event timestamp."""
    with op.batch_alter_table("tenants") as batch_op:
        batch_op.drop_column("stripe_subscription_event_at")
