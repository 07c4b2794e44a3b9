"""Referral status ordering.

Pure domain logic. Status only ever moves forward along
pending -> signed_up -> converted -> rewarded; rewarded is terminal.
"""

from enum import StrEnum


class ReferralStatus(StrEnum):
    PENDING = "pending"
    SIGNED_UP = "signed_up"
    CONVERTED = "converted"
    REWARDED = "rewarded"

    @property
    def rank(self) -> int:
        return _RANK[self]


_RANK = {
    ReferralStatus.PENDING: 0,
    ReferralStatus.SIGNED_UP: 1,
    ReferralStatus.CONVERTED: 2,
    ReferralStatus.REWARDED: 3,
}

# Reward granted to the referrer for each converted referral
REWARD_TYPE_FREE_PERIOD = "free_period"
REWARD_VALUE_FREE_PERIODS = 1

# Invoice billing reasons that count as a paying conversion
QUALIFYING_BILLING_REASONS = frozenset({"subscription_create", "subscription_cycle"})


def can_advance(current: ReferralStatus | str, target: ReferralStatus | str) -> bool:
    """True when moving from ``current`` to ``target`` is a strict step forward."""
    return ReferralStatus(target).rank > ReferralStatus(current).rank


def statuses_before(target: ReferralStatus) -> tuple[ReferralStatus, ...]:
    """Statuses from which ``target`` can still be reached."""
    return tuple(status for status in ReferralStatus if status.rank < target.rank)


def is_qualifying_invoice(invoice: dict) -> bool:
    """An invoice converts a referral when it is a paid subscription charge."""
    return (
        invoice_subscription_id(invoice) is not None
        and invoice.get("billing_reason") in QUALIFYING_BILLING_REASONS
        and (invoice.get("amount_paid") or 0) > 0
    )


def invoice_subscription_id(invoice: dict) -> str | None:
    """Subscription id of an invoice across Stripe API versions.

    Older versions expose ``invoice.subscription``; newer ones nest it under
    ``invoice.parent.subscription_details.subscription``.
    """
    subscription = invoice.get("subscription")
    if not subscription:
        parent = invoice.get("parent") or {}
        subscription = (parent.get("subscription_details") or {}).get("subscription")
    if isinstance(subscription, dict):
        subscription = subscription.get("id")
    return subscription or None
