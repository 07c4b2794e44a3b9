"""Keep each tenant's Stripe subscription reference and status current.

Only billing references are written here; license fields belong to the
plan-change flow.

Deliveries can arrive out of order, so two rules keep the newest state:
an event created before the last one applied is ignored, and a subscription
recorded as canceled stays canceled (Stripe never reactivates one).
"""

from datetime import datetime

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fleet_billing.db.models.tenant import Tenant
from fleet_billing.domain.timestamps import as_utc
from fleet_billing.services.events import EventContext, HandlerResult

logger = structlog.get_logger(__name__)

CANCELED = "canceled"


async def _tenant_for_customer(session: AsyncSession, customer_id: str | None) -> Tenant | None:
    if not customer_id:
        return None
    result = await session.execute(select(Tenant).where(Tenant.stripe_customer_id == customer_id))
    return result.scalar_one_or_none()


def _is_older(tenant: Tenant, occurred_at: datetime | None) -> bool:
    if occurred_at is None or tenant.stripe_subscription_event_at is None:
        return False
    return as_utc(occurred_at) < as_utc(tenant.stripe_subscription_event_at)


def _record_event_time(tenant: Tenant, occurred_at: datetime | None) -> None:
    if occurred_at is not None and not _is_older(tenant, occurred_at):
        tenant.stripe_subscription_event_at = occurred_at


async def handle_subscription_updated(session: AsyncSession, subscription: dict, ctx: EventContext) -> HandlerResult:
    """Sync subscription status (active, past_due, trialing, etc.)."""
    customer_id = subscription.get("customer")
    tenant = await _tenant_for_customer(session, customer_id)
    if tenant is None:
        logger.warning("subscription_updated_unknown_customer", event_id=ctx.event_id, customer_id=customer_id)
        return HandlerResult(outcome="unknown_customer")

    subscription_id = subscription.get("id")
    if tenant.stripe_subscription_id == subscription_id and tenant.stripe_subscription_status == CANCELED:
        logger.info("subscription_updated_after_cancel_ignored", tenant_id=tenant.id, subscription_id=subscription_id)
        return HandlerResult(outcome="already_canceled")

    if _is_older(tenant, ctx.occurred_at):
        logger.info(
            "subscription_updated_out_of_order_ignored",
            event_id=ctx.event_id,
            tenant_id=tenant.id,
            subscription_id=subscription_id,
        )
        return HandlerResult(outcome="stale")

    tenant.stripe_subscription_id = subscription_id
    tenant.stripe_subscription_status = subscription.get("status")
    _record_event_time(tenant, ctx.occurred_at)
    logger.info(
        "subscription_status_synced",
        tenant_id=tenant.id,
        status=tenant.stripe_subscription_status,
    )
    return HandlerResult(outcome="synced")


async def handle_subscription_deleted(session: AsyncSession, subscription: dict, ctx: EventContext) -> HandlerResult:
    """Mark the subscription canceled; the tenant can no longer receive discount grants.

    The id is kept so a late update for the same subscription cannot reopen it.
    """
    customer_id = subscription.get("customer")
    tenant = await _tenant_for_customer(session, customer_id)
    if tenant is None:
        logger.warning("subscription_deleted_unknown_customer", event_id=ctx.event_id, customer_id=customer_id)
        return HandlerResult(outcome="unknown_customer")

    # A stale deletion for an older subscription must not cancel the current one
    if tenant.stripe_subscription_id and tenant.stripe_subscription_id != subscription.get("id"):
        logger.info("subscription_deleted_stale", tenant_id=tenant.id, subscription_id=subscription.get("id"))
        return HandlerResult(outcome="stale")

    tenant.stripe_subscription_id = subscription.get("id")
    tenant.stripe_subscription_status = CANCELED
    _record_event_time(tenant, ctx.occurred_at)
    logger.info("subscription_canceled", tenant_id=tenant.id, subscription_id=tenant.stripe_subscription_id)
    return HandlerResult(outcome="canceled")
