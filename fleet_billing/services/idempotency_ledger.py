"""Idempotency ledger over the webhook_events table."""

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from fleet_billing.db.models.webhook_event import WebhookEventRecord

logger = structlog.get_logger(__name__)


def event_key(event_id: str) -> str:
    return f"evt:{event_id}"


def object_key(object_id: str, logical_kind: str) -> str:
    """Key for one logical change that Stripe may report under several event kinds."""
    return f"obj:{object_id}:{logical_kind}"


class IdempotencyLedger:
    """Write-once record of processed idempotency keys."""

    async def seen(self, session: AsyncSession, key: str) -> bool:
        result = await session.execute(select(WebhookEventRecord.event_key).where(WebhookEventRecord.event_key == key))
        return result.scalar_one_or_none() is not None

    async def commit(self, session: AsyncSession, key: str, external_event_id: str, kind: str) -> bool:
        """Insert the ledger row and commit the session's transaction.

        Returns False when a concurrent delivery committed the same key first;
        the whole transaction, including the handler's writes, is rolled back.
        """
        session.add(WebhookEventRecord(event_key=key, external_event_id=external_event_id, event_kind=kind))
        try:
            await session.commit()
            return True
        except IntegrityError:
            await session.rollback()
            logger.info("ledger_commit_lost_race", event_key=key, event_id=external_event_id)
            return False
