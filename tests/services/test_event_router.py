"""Tests for exactly-once dispatch through the idempotency ledger."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import stripe
from sqlalchemy import select

from billing_fakes import (
    FIXED_NOW,
    RecordingEmailSender,
    checkout_completed,
    make_stripe_event,
    paid_invoice,
    stripe_subscription,
)
from fleet_billing.core.exceptions import PlatformLookupError
from fleet_billing.db.models.account_setup_token import AccountSetupToken
from fleet_billing.db.models.tenant import Tenant
from fleet_billing.db.models.webhook_event import WebhookEventRecord
from fleet_billing.services.event_router import EventRouter, KeyScope
from fleet_billing.services.events import DispatchOutcome, EventKind
from fleet_billing.services.idempotency_ledger import IdempotencyLedger
from fleet_billing.services.referral_service import ReferralRewardEngine
from fleet_billing.services.setup_token_service import AccountSetupTokenIssuer

pytestmark = pytest.mark.integration


class BlindLedger(IdempotencyLedger):
    """Never reports a key as seen, as if a concurrent delivery were in flight."""

    async def seen(self, session, key):
        return False


def _router(session_factory, tier_resolver, email_sender, ledger=None) -> EventRouter:
    referrals = ReferralRewardEngine()
    return EventRouter(
        session_factory=session_factory,
        token_issuer=AccountSetupTokenIssuer(
            tier_resolver=tier_resolver,
            referrals=referrals,
            email_sender=email_sender,
        ),
        referrals=referrals,
        ledger=ledger,
        clock=lambda: FIXED_NOW,
    )


# ============================================================================
# Routing table
# ============================================================================


class TestRouting:
    def test_every_kind_has_a_route(self, event_router):
        for kind in EventKind:
            assert event_router.route_for(kind).handler is not None

    def test_invoice_kinds_share_an_object_key(self, event_router):
        invoice = {"id": "in_42"}
        paid = event_router.route_for(EventKind.INVOICE_PAID)
        succeeded = event_router.route_for(EventKind.INVOICE_PAYMENT_SUCCEEDED)

        assert paid.key_scope == KeyScope.OBJECT
        assert EventRouter.idempotency_key(paid, "evt_a", invoice) == "obj:in_42:invoice_paid"
        assert EventRouter.idempotency_key(succeeded, "evt_b", invoice) == "obj:in_42:invoice_paid"

    def test_other_kinds_keyed_by_event_id(self, event_router):
        route = event_router.route_for(EventKind.CHECKOUT_SESSION_COMPLETED)
        assert EventRouter.idempotency_key(route, "evt_1", {"id": "cs_1"}) == "evt:evt_1"

    async def test_unknown_kind_is_ignored(self, event_router, count_rows):
        outcome = await event_router.dispatch(make_stripe_event("evt_x", "customer.created", {"id": "cus_1"}))

        assert outcome == DispatchOutcome.IGNORED
        assert await count_rows(WebhookEventRecord) == 0


# ============================================================================
# Duplicate delivery
# ============================================================================


class TestDuplicateDelivery:
    async def test_redelivered_checkout_has_one_effect(self, event_router, email_sender, count_rows):
        event = make_stripe_event("evt_checkout_1", "checkout.session.completed", checkout_completed())

        first = await event_router.dispatch(event)
        second = await event_router.dispatch(event)

        assert first == DispatchOutcome.PROCESSED
        assert second == DispatchOutcome.DUPLICATE
        assert await count_rows(AccountSetupToken) == 1
        assert await count_rows(WebhookEventRecord, WebhookEventRecord.event_key == "evt:evt_checkout_1") == 1
        assert len(email_sender.sent) == 1

    async def test_ignored_outcomes_are_still_recorded(self, event_router, count_rows):
        event = make_stripe_event("evt_no_email", "checkout.session.completed", checkout_completed(email=None))

        assert await event_router.dispatch(event) == DispatchOutcome.PROCESSED
        assert await event_router.dispatch(event) == DispatchOutcome.DUPLICATE
        assert await count_rows(AccountSetupToken) == 0

    async def test_invoice_paid_and_payment_succeeded_reward_once(
        self, event_router, make_tenant, make_referral, load_referral
    ):
        referrer = await make_tenant()
        await make_referral(referrer.id, status="signed_up")
        invoice = paid_invoice(invoice_id="in_shared")

        with (
            patch(
                "stripe.Subscription.retrieve_async",
                new_callable=AsyncMock,
                return_value=stripe_subscription(referral_code="APEX-REF-01"),
            ),
            patch(
                "stripe.Coupon.create_async",
                new_callable=AsyncMock,
                return_value=MagicMock(id="coupon_1"),
            ) as coupon_create,
            patch("stripe.Subscription.modify_async", new_callable=AsyncMock),
        ):
            first = await event_router.dispatch(make_stripe_event("evt_paid", "invoice.paid", invoice))
            second = await event_router.dispatch(
                make_stripe_event("evt_succeeded", "invoice.payment_succeeded", invoice)
            )

        assert first == DispatchOutcome.PROCESSED
        assert second == DispatchOutcome.DUPLICATE
        assert coupon_create.await_count == 1
        assert (await load_referral("APEX-REF-01")).status == "rewarded"

    async def test_lost_ledger_race_rolls_back_handler_writes(
        self, session_factory, tier_resolver, email_sender, make_tenant
    ):
        tenant = await make_tenant(stripe_customer_id="cus_fleet", stripe_subscription_status="trialing")
        router = _router(session_factory, tier_resolver, email_sender, ledger=BlindLedger())
        active = {"id": "sub_referrer", "customer": "cus_fleet", "status": "active"}
        past_due = {"id": "sub_referrer", "customer": "cus_fleet", "status": "past_due"}

        first = await router.dispatch(make_stripe_event("evt_sub_1", "customer.subscription.updated", active))
        second = await router.dispatch(make_stripe_event("evt_sub_1", "customer.subscription.updated", past_due))

        assert first == DispatchOutcome.PROCESSED
        assert second == DispatchOutcome.DUPLICATE
        async with session_factory() as session:
            stored = await session.get(Tenant, tenant.id)
        assert stored.stripe_subscription_status == "active"

    async def test_concurrent_checkout_loser_reports_duplicate(
        self, session_factory, tier_resolver, email_sender, count_rows
    ):
        router = _router(session_factory, tier_resolver, email_sender, ledger=BlindLedger())
        event = make_stripe_event("evt_race", "checkout.session.completed", checkout_completed())

        first = await router.dispatch(event)
        # Both deliveries pass the pre-checks; the token insert collides instead
        with patch.object(AccountSetupTokenIssuer, "_issued_for_checkout", new_callable=AsyncMock, return_value=False):
            second = await router.dispatch(event)

        assert first == DispatchOutcome.PROCESSED
        assert second == DispatchOutcome.DUPLICATE
        assert await count_rows(AccountSetupToken) == 1
        assert await count_rows(WebhookEventRecord) == 1
        assert len(email_sender.sent) == 1


# ============================================================================
# Commit boundary
# ============================================================================


class TestCommitBoundary:
    async def test_deferred_failure_keeps_commit(self, session_factory, tier_resolver, count_rows):
        failing_sender = RecordingEmailSender(fail_with=RuntimeError("smtp down"))
        router = _router(session_factory, tier_resolver, failing_sender)
        event = make_stripe_event("evt_checkout_2", "checkout.session.completed", checkout_completed())

        outcome = await router.dispatch(event)

        assert outcome == DispatchOutcome.PROCESSED
        assert await count_rows(AccountSetupToken) == 1
        assert await count_rows(WebhookEventRecord) == 1
        assert await router.dispatch(event) == DispatchOutcome.DUPLICATE

    async def test_platform_failure_leaves_event_retryable(
        self, event_router, make_tenant, make_referral, load_referral, count_rows
    ):
        referrer = await make_tenant()
        await make_referral(referrer.id, status="signed_up")
        event = make_stripe_event("evt_paid_retry", "invoice.paid", paid_invoice())

        with (
            patch(
                "stripe.Subscription.retrieve_async",
                new_callable=AsyncMock,
                return_value=stripe_subscription(referral_code="APEX-REF-01"),
            ),
            patch(
                "stripe.Coupon.create_async",
                new_callable=AsyncMock,
                side_effect=[stripe.APIConnectionError("timeout"), MagicMock(id="coupon_2")],
            ),
            patch("stripe.Subscription.modify_async", new_callable=AsyncMock),
        ):
            with pytest.raises(PlatformLookupError):
                await event_router.dispatch(event)

            assert await count_rows(WebhookEventRecord) == 0
            assert (await load_referral("APEX-REF-01")).status == "signed_up"

            retried = await event_router.dispatch(event)

        assert retried == DispatchOutcome.PROCESSED
        assert (await load_referral("APEX-REF-01")).discount_coupon_id == "coupon_2"

    async def test_ledger_records_event_metadata(self, event_router, session_factory):
        event = make_stripe_event("evt_checkout_3", "checkout.session.completed", checkout_completed())

        await event_router.dispatch(event)

        async with session_factory() as session:
            record = (await session.execute(select(WebhookEventRecord))).scalar_one()
        assert record.event_key == "evt:evt_checkout_3"
        assert record.external_event_id == "evt_checkout_3"
        assert record.event_kind == "checkout.session.completed"


# ============================================================================
# Out-of-order subscription events
# ============================================================================


class TestSubscriptionOrdering:
    async def test_late_update_after_delete_keeps_tenant_non_chargeable(
        self, event_router, session_factory, make_tenant
    ):
        tenant = await make_tenant(stripe_customer_id="cus_fleet", stripe_subscription_id="sub_old")
        subscription = {"id": "sub_old", "customer": "cus_fleet"}

        deleted = await event_router.dispatch(
            make_stripe_event(
                "evt_deleted",
                "customer.subscription.deleted",
                {**subscription, "status": "canceled"},
                created=1_760_000_100,
            )
        )
        late = await event_router.dispatch(
            make_stripe_event(
                "evt_late_update",
                "customer.subscription.updated",
                {**subscription, "status": "active"},
                created=1_760_000_000,
            )
        )

        async with session_factory() as session:
            stored = await session.get(Tenant, tenant.id)
        assert deleted == late == DispatchOutcome.PROCESSED
        assert stored.stripe_subscription_status == "canceled"
        assert not stored.has_chargeable_subscription
