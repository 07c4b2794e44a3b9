"""Tests for the versioned migration runner."""

import pytest
from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine

from fleet_billing.db.migrations import current_revision, head_revision, migration_chain, run_migrations

pytestmark = pytest.mark.integration


@pytest.fixture
async def bare_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'migrations.db'}")
    yield engine
    await engine.dispose()


def test_chain_is_linear_and_ordered():
    chain = migration_chain()

    assert chain == [
        "0001_create_billing_tables",
        "0002_backfill_license_defaults",
        "0003_add_referral_discount_columns",
        "0004_add_tenant_subscription_event_at",
    ]
    assert head_revision() == chain[-1]


async def test_fresh_database_reaches_head(bare_engine):
    revision = await run_migrations(bare_engine)

    assert revision == head_revision()
    async with bare_engine.connect() as conn:
        columns = {row[1] for row in (await conn.execute(text("PRAGMA table_info(referrals)"))).all()}
    assert {"discount_coupon_id", "discount_subscription_id"} <= columns

    async with bare_engine.connect() as conn:
        tenant_columns = {row[1] for row in (await conn.execute(text("PRAGMA table_info(tenants)"))).all()}
    assert "stripe_subscription_event_at" in tenant_columns


async def test_second_run_is_a_no_op(bare_engine):
    await run_migrations(bare_engine)
    before = await current_revision(bare_engine)

    assert await run_migrations(bare_engine) == before


async def test_backfill_normalizes_legacy_tenants(bare_engine):
    await run_migrations(bare_engine, target="0001_create_billing_tables")
    async with bare_engine.begin() as conn:
        await conn.execute(
            text(
                "INSERT INTO tenants (name, license_tier, vehicle_allowance, grace_overage, enforcement_mode) "
                "VALUES ('Legacy Core', 'core', 10, NULL, NULL), ('Legacy Operator', 'operator', 100, 5, 'hard_block')"
            )
        )

    await run_migrations(bare_engine)

    async with bare_engine.connect() as conn:
        rows = (
            await conn.execute(text("SELECT name, license_tier, grace_overage, enforcement_mode FROM tenants ORDER BY id"))
        ).all()
    assert [tuple(row) for row in rows] == [
        ("Legacy Core", "starter", 3, "soft_block"),
        ("Legacy Operator", "scale", 5, "hard_block"),
    ]
