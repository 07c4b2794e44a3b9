"""Dispatch verified Stripe events to handlers exactly once.

For each event:
1. compute the idempotency key,
2. return DUPLICATE if the ledger already holds it,
3. run the handler inside a transaction,
4. insert the ledger row and commit; a unique-constraint violation from
   either the handler or the ledger insert means a concurrent delivery got
   there first, so the whole transaction is rolled back and reported as
   DUPLICATE,
5. run the handler's deferred effects (email, metrics) after the commit.

No in-process locks: the ledger's primary key is the serialization point.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import assert_never

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fleet_billing.domain.timestamps import from_epoch
from fleet_billing.services import subscription_sync_service
from fleet_billing.services.events import DeferredEffect, DispatchOutcome, EventContext, EventKind, HandlerResult
from fleet_billing.services.idempotency_ledger import IdempotencyLedger, event_key, object_key
from fleet_billing.services.referral_service import ReferralRewardEngine
from fleet_billing.services.setup_token_service import AccountSetupTokenIssuer

logger = structlog.get_logger(__name__)

Handler = Callable[[AsyncSession, dict, EventContext], Awaitable[HandlerResult]]


class KeyScope(StrEnum):
    EVENT = "event"
    OBJECT = "object"


@dataclass(frozen=True)
class EventRoute:
    handler: Handler
    key_scope: KeyScope = KeyScope.EVENT
    logical_kind: str | None = None


class EventRouter:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        token_issuer: AccountSetupTokenIssuer,
        referrals: ReferralRewardEngine,
        ledger: IdempotencyLedger | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.session_factory = session_factory
        self.token_issuer = token_issuer
        self.referrals = referrals
        self.ledger = ledger or IdempotencyLedger()
        self._clock = clock or (lambda: datetime.now(UTC))

    def route_for(self, kind: EventKind) -> EventRoute:
        match kind:
            case EventKind.CHECKOUT_SESSION_COMPLETED:
                return EventRoute(self.token_issuer.handle_checkout_completed)
            case EventKind.INVOICE_PAID | EventKind.INVOICE_PAYMENT_SUCCEEDED:
                # Stripe reports one successful payment under both kinds
                return EventRoute(
                    self.referrals.handle_invoice_paid,
                    key_scope=KeyScope.OBJECT,
                    logical_kind="invoice_paid",
                )
            case EventKind.SUBSCRIPTION_UPDATED:
                return EventRoute(subscription_sync_service.handle_subscription_updated)
            case EventKind.SUBSCRIPTION_DELETED:
                return EventRoute(subscription_sync_service.handle_subscription_deleted)
            case _:
                assert_never(kind)

    @staticmethod
    def idempotency_key(route: EventRoute, event_id: str, obj: dict) -> str:
        if route.key_scope == KeyScope.OBJECT and obj.get("id"):
            return object_key(obj["id"], route.logical_kind)
        return event_key(event_id)

    async def dispatch(self, envelope: dict) -> DispatchOutcome:
        event_id = envelope.get("id")
        raw_kind = envelope.get("type")
        kind = EventKind.parse(raw_kind)
        if kind is None:
            logger.info("stripe_event_ignored", event_id=event_id, event_type=raw_kind)
            return DispatchOutcome.IGNORED

        obj = (envelope.get("data") or {}).get("object") or {}
        route = self.route_for(kind)
        key = self.idempotency_key(route, event_id, obj)
        ctx = EventContext(
            event_id=event_id,
            kind=kind,
            received_at=self._clock(),
            occurred_at=from_epoch(envelope.get("created")),
        )

        async with self.session_factory() as session:
            if await self.ledger.seen(session, key):
                logger.info("stripe_duplicate_event_ignored", event_id=event_id, event_key=key)
                return DispatchOutcome.DUPLICATE

            try:
                result = await route.handler(session, obj, ctx)
            except IntegrityError:
                # A unique row written by a concurrent delivery of the same event
                await session.rollback()
                logger.info("stripe_event_lost_race", event_id=event_id, event_key=key, stage="handler")
                return DispatchOutcome.DUPLICATE

            if not await self.ledger.commit(session, key, event_id, kind.value):
                return DispatchOutcome.DUPLICATE

        logger.info("stripe_event_processed", event_id=event_id, event_type=kind.value, outcome=str(result.outcome))
        await self._run_deferred(result.deferred, ctx)
        return DispatchOutcome.PROCESSED

    async def _run_deferred(self, effects: list[DeferredEffect], ctx: EventContext) -> None:
        # The event is already committed; failures here are logged, never retried
        for effect in effects:
            try:
                await effect()
            except Exception as e:
                logger.error(
                    "deferred_effect_failed",
                    event_id=ctx.event_id,
                    event_type=ctx.kind.value,
                    effect=getattr(getattr(effect, "func", effect), "__qualname__", repr(effect)),
                    error=str(e),
                    error_type=type(e).__name__,
                )
