"""WebhookEventRecord model: the idempotency ledger."""

from datetime import UTC, datetime

from sqlalchemy import Column, DateTime, String

from fleet_billing.db.base import Base


class WebhookEventRecord(Base):
    """Write-once fence: one row per processed idempotency key.

    The primary key on ``event_key`` is the single serialization point for
    concurrent deliveries of the same event.
    """

    __tablename__ = "webhook_events"

    event_key = Column(String(255), primary_key=True)
    external_event_id = Column(String(255), nullable=False, index=True)
    event_kind = Column(String(100), nullable=False)
    processed_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
