"""Account setup token issuance for completed checkouts."""

from datetime import datetime
from enum import StrEnum
from functools import partial

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fleet_billing.core.config import get_settings
from fleet_billing.db.models.account_setup_token import AccountSetupToken
from fleet_billing.domain.setup_tokens import generate_setup_token, setup_token_expiry, setup_url
from fleet_billing.integrations.email import SetupEmailSender
from fleet_billing.metrics.cloudwatch import emit_business_event
from fleet_billing.services.events import EventContext, HandlerResult
from fleet_billing.services.referral_service import ReferralRewardEngine
from fleet_billing.services.tier_resolver import TierResolver

logger = structlog.get_logger(__name__)


class IssueOutcome(StrEnum):
    ISSUED = "issued"
    NO_CUSTOMER_EMAIL = "no_customer_email"
    ALREADY_ISSUED = "already_issued"


def checkout_email(checkout: dict) -> str | None:
    """Session-level email first, then the billing details email."""
    email = checkout.get("customer_email") or (checkout.get("customer_details") or {}).get("email")
    return email or None


class AccountSetupTokenIssuer:
    """Turns a completed checkout into a single-use tenant provisioning token."""

    def __init__(
        self,
        tier_resolver: TierResolver,
        referrals: ReferralRewardEngine,
        email_sender: SetupEmailSender,
    ):
        self.tier_resolver = tier_resolver
        self.referrals = referrals
        self.email_sender = email_sender

    async def handle_checkout_completed(
        self, session: AsyncSession, checkout: dict, ctx: EventContext
    ) -> HandlerResult:
        email = checkout_email(checkout)
        if email is None:
            logger.info("checkout_without_customer_email", event_id=ctx.event_id, checkout_id=checkout.get("id"))
            return HandlerResult(outcome=IssueOutcome.NO_CUSTOMER_EMAIL)

        checkout_id = checkout.get("id")
        if checkout_id and await self._issued_for_checkout(session, checkout_id):
            logger.info("setup_token_already_issued", event_id=ctx.event_id, checkout_id=checkout_id)
            return HandlerResult(outcome=IssueOutcome.ALREADY_ISSUED)

        subscription_id = checkout.get("subscription")
        tier = await self.tier_resolver.resolve(subscription_id)
        referral_code = (checkout.get("metadata") or {}).get("referralCode") or None

        issued_at = ctx.received_at
        token = AccountSetupToken(
            token=generate_setup_token(),
            email=email,
            stripe_customer_id=checkout.get("customer"),
            stripe_subscription_id=subscription_id,
            stripe_checkout_session_id=checkout_id,
            tier=tier.tier,
            vehicle_allowance=tier.vehicle_allowance,
            referral_code=referral_code,
            issued_at=issued_at,
            expires_at=setup_token_expiry(issued_at),
        )
        session.add(token)
        await session.flush()

        if referral_code:
            await self.referrals.record_signup(session, referral_code, issued_at)

        logger.info(
            "setup_token_issued",
            event_id=ctx.event_id,
            email=email,
            tier=tier.tier,
            vehicle_allowance=tier.vehicle_allowance,
            referral_code=referral_code,
        )

        link = setup_url(get_settings().frontend_url, token.token)
        return HandlerResult(
            outcome=IssueOutcome.ISSUED,
            deferred=[
                partial(self.email_sender.send_setup_link, email=email, setup_url=link, tier=tier.label),
                partial(emit_business_event, "setup_token_issued"),
            ],
        )

    async def _issued_for_checkout(self, session: AsyncSession, checkout_id: str) -> bool:
        result = await session.execute(
            select(AccountSetupToken.id).where(AccountSetupToken.stripe_checkout_session_id == checkout_id)
        )
        return result.scalar_one_or_none() is not None


async def claim_setup_token(session: AsyncSession, token_value: str, now: datetime) -> AccountSetupToken | None:
    """Consume a token exactly once.

    Used by the provisioning flow: the conditional update only matches an
    unconsumed, unexpired token, so concurrent redemptions cannot both win.
    Returns the claimed row, or None when the token is unknown, used or expired.
    """
    result = await session.execute(
        update(AccountSetupToken)
        .where(
            AccountSetupToken.token == token_value,
            AccountSetupToken.consumed_at.is_(None),
            AccountSetupToken.expires_at > now,
        )
        .values(consumed_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return None

    claimed = await session.execute(
        select(AccountSetupToken).where(AccountSetupToken.token == token_value).execution_options(populate_existing=True)
    )
    return claimed.scalar_one()
