"""Shared test fixtures for all test groups."""

import os

# Settings are cached on first use; set test values before any app import
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("METRICS_ENABLED", "false")
os.environ.setdefault("SENDGRID_API_KEY", "")
os.environ.setdefault("FRONTEND_URL", "https://app.titanfleet.test")

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from billing_fakes import FIXED_NOW, RecordingEmailSender, StaticTierResolver
from fleet_billing.db.base import Base


@pytest.fixture
async def engine(tmp_path) -> AsyncEngine:
    """SQLite engine with all tables, installed as the global session factory."""
    import fleet_billing.db.base as db_mod
    import fleet_billing.db.models  # noqa: F401

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    db_mod._engine = engine
    db_mod._session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    yield engine

    db_mod._engine = None
    db_mod._session_factory = None
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory) -> AsyncSession:
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_tenant(session_factory):
    """Insert a tenant and return it."""
    from fleet_billing.db.models.tenant import Tenant

    async def _make(**overrides):
        values = {
            "name": "Apex Transport Ltd",
            "stripe_customer_id": "cus_referrer",
            "stripe_subscription_id": "sub_referrer",
            "stripe_subscription_status": "active",
        }
        values.update(overrides)
        async with session_factory() as session:
            tenant = Tenant(**values)
            session.add(tenant)
            await session.commit()
            await session.refresh(tenant)
            return tenant

    return _make


@pytest.fixture
def make_referral(session_factory):
    """Insert a referral for a referrer tenant and return it."""
    from fleet_billing.db.models.referral import Referral

    async def _make(referrer_tenant_id: int, code: str = "APEX-REF-01", **overrides):
        async with session_factory() as session:
            referral = Referral(code=code, referrer_tenant_id=referrer_tenant_id, **overrides)
            session.add(referral)
            await session.commit()
            await session.refresh(referral)
            return referral

    return _make


@pytest.fixture
def load_referral(session_factory):
    from fleet_billing.db.models.referral import Referral

    async def _load(code: str):
        async with session_factory() as session:
            result = await session.execute(select(Referral).where(Referral.code == code))
            return result.scalar_one()

    return _load


@pytest.fixture
def count_rows(session_factory):
    """Count rows of a model, optionally filtered."""
    from sqlalchemy import func

    async def _count(model, *criteria) -> int:
        async with session_factory() as session:
            result = await session.execute(select(func.count()).select_from(model).where(*criteria))
            return result.scalar_one()

    return _count


@pytest.fixture
def email_sender():
    return RecordingEmailSender()


@pytest.fixture
def tier_resolver():
    return StaticTierResolver()


@pytest.fixture
def event_router(session_factory, email_sender, tier_resolver):
    from fleet_billing.services.event_router import EventRouter
    from fleet_billing.services.referral_service import ReferralRewardEngine
    from fleet_billing.services.setup_token_service import AccountSetupTokenIssuer

    referrals = ReferralRewardEngine()
    return EventRouter(
        session_factory=session_factory,
        token_issuer=AccountSetupTokenIssuer(
            tier_resolver=tier_resolver,
            referrals=referrals,
            email_sender=email_sender,
        ),
        referrals=referrals,
        clock=lambda: FIXED_NOW,
    )
