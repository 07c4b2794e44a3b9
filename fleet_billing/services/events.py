"""Supported Stripe event kinds and the types shared by webhook handlers."""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum


class EventKind(StrEnum):
    """Closed set of Stripe event kinds the engine acts on."""

    CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
    INVOICE_PAID = "invoice.paid"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"

    @classmethod
    def parse(cls, raw: str | None) -> "EventKind | None":
        """Return the matching kind, or None for kinds the engine ignores."""
        try:
            return cls(raw)
        except ValueError:
            return None


class DispatchOutcome(StrEnum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


@dataclass(frozen=True)
class EventContext:
    event_id: str
    kind: EventKind
    received_at: datetime
    # When Stripe created the event; orders deliveries that arrive out of sequence
    occurred_at: datetime | None = None


# Best-effort work that runs only after the ledger commit
DeferredEffect = Callable[[], Awaitable[object]]


@dataclass
class HandlerResult:
    outcome: str
    deferred: list[DeferredEffect] = field(default_factory=list)
