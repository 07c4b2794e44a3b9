"""backfill license defaults on tenants

Revision ID: 0002_backfill_license_defaults
Revises: 0001_create_billing_tables
Create Date: 2026-09-21 10:30:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0002_backfill_license_defaults"
down_revision: str | Sequence[str] | None = "0001_create_billing_tables"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Normalise legacy tier names and fill missing license fields, then enforce NOT NULL."""
    op.execute("UPDATE tenants SET license_tier = 'starter' WHERE license_tier IS NULL OR license_tier = 'core'")
    op.execute("UPDATE tenants SET license_tier = 'scale' WHERE license_tier = 'operator'")
    op.execute("UPDATE tenants SET grace_overage = 3 WHERE grace_overage IS NULL")
    op.execute("UPDATE tenants SET enforcement_mode = 'soft_block' WHERE enforcement_mode IS NULL")

    with op.batch_alter_table("tenants") as batch_op:
        batch_op.alter_column("license_tier", existing_type=sa.String(length=20), nullable=False)
        batch_op.alter_column("grace_overage", existing_type=sa.Integer(), nullable=False)
        batch_op.alter_column("enforcement_mode", existing_type=sa.String(length=20), nullable=False)


def downgrade() -> None:
    """Relax NOT NULL; backfilled values are kept."""
    with op.batch_alter_table("tenants") as batch_op:
        batch_op.alter_column("enforcement_mode", existing_type=sa.String(length=20), nullable=True)
        batch_op.alter_column("grace_overage", existing_type=sa.Integer(), nullable=True)
        batch_op.alter_column("license_tier", existing_type=sa.String(length=20), nullable=True)
