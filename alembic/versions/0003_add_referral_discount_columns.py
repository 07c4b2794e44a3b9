"""add referral discount grant columns

Revision ID: 0003_add_referral_discount_columns
Revises: 0002_backfill_license_defaults
Create Date: 2026-10-02 15:10:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0003_add_referral_discount_columns"
down_revision: str | Sequence[str] | None = "0002_backfill_license_defaults"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Record which coupon was granted and on which subscription."""
    with op.batch_alter_table("referrals") as batch_op:
        batch_op.add_column(sa.Column("discount_coupon_id", sa.String(length=255), nullable=True))
        batch_op.add_column(sa.Column("discount_subscription_id", sa.String(length=255), nullable=True))


def downgrade() -> None:
    """Drop discount grant columns."""
    with op.batch_alter_table("referrals") as batch_op:
        batch_op.drop_column("discount_subscription_id")
        batch_op.drop_column("discount_coupon_id")
