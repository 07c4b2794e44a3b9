"""Referral reward state machine.

Transitions are conditional UPDATEs guarded on the current status, so the
database arbitrates concurrent deliveries and no status ever regresses:

    pending --checkout--> signed_up --paid invoice--> converted | rewarded

A paid invoice rewards the referrer with a single-use 100%-off coupon on the
referrer's own subscription. When the referrer has nothing chargeable the
referral is parked in ``converted`` and the grant is withheld.
"""

from datetime import datetime
from enum import StrEnum
from functools import partial

import stripe
import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fleet_billing.core.exceptions import PlatformLookupError
from fleet_billing.core.stripe_client import as_dict, configure_stripe
from fleet_billing.db.models.account_setup_token import AccountSetupToken
from fleet_billing.db.models.referral import Referral
from fleet_billing.db.models.tenant import Tenant
from fleet_billing.domain.referrals import (
    REWARD_TYPE_FREE_PERIOD,
    REWARD_VALUE_FREE_PERIODS,
    ReferralStatus,
    can_advance,
    invoice_subscription_id,
    is_qualifying_invoice,
    statuses_before,
)
from fleet_billing.metrics.cloudwatch import emit_business_event
from fleet_billing.services.events import EventContext, HandlerResult

logger = structlog.get_logger(__name__)


class RewardOutcome(StrEnum):
    REWARDED = "rewarded"
    CONVERTED_REWARD_DEFERRED = "converted_reward_deferred"
    ALREADY_PROCESSED = "already_processed"
    NOT_QUALIFYING = "not_qualifying"
    NO_REFERRAL = "no_referral"


class ReferralRewardEngine:
    async def get_by_code(self, session: AsyncSession, code: str) -> Referral | None:
        result = await session.execute(
            select(Referral).where(Referral.code == code).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def record_signup(self, session: AsyncSession, code: str, now: datetime) -> bool:
        """pending -> signed_up. Any other current status is left untouched."""
        result = await session.execute(
            update(Referral)
            .where(Referral.code == code, Referral.status == ReferralStatus.PENDING.value)
            .values(status=ReferralStatus.SIGNED_UP.value, signed_up_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            logger.info("referral_signed_up", referral_code=code)
            return True

        referral = await self.get_by_code(session, code)
        if referral is None:
            logger.warning("referral_code_unknown", referral_code=code)
        else:
            logger.info("referral_signup_skipped", referral_code=code, status=referral.status)
        return False

    async def handle_invoice_paid(self, session: AsyncSession, invoice: dict, ctx: EventContext) -> HandlerResult:
        if not is_qualifying_invoice(invoice):
            return HandlerResult(outcome=RewardOutcome.NOT_QUALIFYING)

        subscription_id = invoice_subscription_id(invoice)
        referral = await self.resolve_for_subscription(session, subscription_id)
        if referral is None:
            return HandlerResult(outcome=RewardOutcome.NO_REFERRAL)

        # Converted or rewarded: this referral has already been through a paid invoice
        if not can_advance(referral.status, ReferralStatus.CONVERTED):
            logger.info(
                "referral_already_processed",
                event_id=ctx.event_id,
                referral_code=referral.code,
                status=referral.status,
            )
            return HandlerResult(outcome=RewardOutcome.ALREADY_PROCESSED)

        return await self.apply_reward(session, referral, ctx.received_at)

    async def resolve_for_subscription(self, session: AsyncSession, subscription_id: str) -> Referral | None:
        """Find the referral behind a paying subscription.

        The code is read from the subscription's metadata when present,
        otherwise from the setup token snapshotted at checkout for that
        subscription. Stripe failures propagate as PlatformLookupError.
        """
        configure_stripe()
        try:
            subscription = as_dict(await stripe.Subscription.retrieve_async(subscription_id))
        except stripe.StripeError as e:
            raise PlatformLookupError("subscription.retrieve", str(e)) from e

        code = (subscription.get("metadata") or {}).get("referralCode")
        if not code:
            result = await session.execute(
                select(AccountSetupToken.referral_code)
                .where(
                    AccountSetupToken.stripe_subscription_id == subscription_id,
                    AccountSetupToken.referral_code.is_not(None),
                )
                .limit(1)
            )
            code = result.scalar_one_or_none()

        if not code:
            return None

        referral = await self.get_by_code(session, code)
        if referral is None:
            logger.info("referral_not_found_for_code", referral_code=code, subscription_id=subscription_id)
        return referral

    async def apply_reward(self, session: AsyncSession, referral: Referral, now: datetime) -> HandlerResult:
        """Move a referral to rewarded, or to converted when no grant is possible.

        Accepts pending, signed_up and converted referrals; rewarded is terminal.
        """
        if not can_advance(referral.status, ReferralStatus.REWARDED):
            return HandlerResult(outcome=RewardOutcome.ALREADY_PROCESSED)

        referrer = await session.get(Tenant, referral.referrer_tenant_id)
        if referrer is None or not referrer.has_chargeable_subscription:
            return await self._mark_converted(session, referral, now)

        # Claim first: the row lock orders concurrent rewarders and the loser matches nothing
        claimed = await session.execute(
            update(Referral)
            .where(
                Referral.id == referral.id,
                Referral.status.in_([status.value for status in statuses_before(ReferralStatus.REWARDED)]),
            )
            .values(
                status=ReferralStatus.REWARDED.value,
                reward_type=REWARD_TYPE_FREE_PERIOD,
                reward_value=REWARD_VALUE_FREE_PERIODS,
                reward_claimed=True,
                signed_up_at=referral.signed_up_at or now,
                converted_at=now,
                rewarded_at=now,
                discount_subscription_id=referrer.stripe_subscription_id,
            )
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            logger.info("referral_reward_claim_lost", referral_code=referral.code)
            return HandlerResult(outcome=RewardOutcome.ALREADY_PROCESSED)

        coupon_id = await self._grant_discount(referral, referrer)
        await session.execute(
            update(Referral)
            .where(Referral.id == referral.id)
            .values(discount_coupon_id=coupon_id)
            .execution_options(synchronize_session=False)
        )

        logger.info(
            "referral_rewarded",
            referral_code=referral.code,
            referrer_tenant_id=referrer.id,
            coupon_id=coupon_id,
        )
        return HandlerResult(
            outcome=RewardOutcome.REWARDED,
            deferred=[partial(emit_business_event, "referral_rewarded", tenant_id=str(referrer.id))],
        )

    async def _mark_converted(self, session: AsyncSession, referral: Referral, now: datetime) -> HandlerResult:
        result = await session.execute(
            update(Referral)
            .where(
                Referral.id == referral.id,
                Referral.status.in_([status.value for status in statuses_before(ReferralStatus.CONVERTED)]),
            )
            .values(
                status=ReferralStatus.CONVERTED.value,
                signed_up_at=referral.signed_up_at or now,
                converted_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return HandlerResult(outcome=RewardOutcome.ALREADY_PROCESSED)

        logger.warning(
            "referral_converted_reward_deferred",
            referral_code=referral.code,
            referrer_tenant_id=referral.referrer_tenant_id,
            reason="referrer_has_no_chargeable_subscription",
        )
        return HandlerResult(
            outcome=RewardOutcome.CONVERTED_REWARD_DEFERRED,
            deferred=[partial(emit_business_event, "referral_converted", tenant_id=str(referral.referrer_tenant_id))],
        )

    async def _grant_discount(self, referral: Referral, referrer: Tenant) -> str:
        """Create a one-off 100% coupon and apply it to the referrer's subscription.

        Idempotency keys are derived from the referral id so a retried or
        racing delivery reuses the same Stripe objects instead of stacking grants.
        """
        configure_stripe()
        try:
            coupon = await stripe.Coupon.create_async(
                percent_off=100,
                duration="once",
                name=f"Referral Reward - 1 Month Free ({referral.code})",
                metadata={"referralCode": referral.code, "referrerTenantId": str(referrer.id)},
                idempotency_key=f"referral-{referral.id}-coupon",
            )
            await stripe.Subscription.modify_async(
                referrer.stripe_subscription_id,
                discounts=[{"coupon": coupon.id}],
                idempotency_key=f"referral-{referral.id}-apply-{referrer.stripe_subscription_id}",
            )
        except stripe.StripeError as e:
            logger.error(
                "referral_reward_grant_failed",
                referral_code=referral.code,
                referrer_tenant_id=referrer.id,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise PlatformLookupError("referral.grant_discount", str(e)) from e

        return coupon.id
