"""Resolve a Stripe subscription to an internal tier and vehicle allowance.

Resolution fails open: a missing subscription, malformed product metadata or
any Stripe error yields the lowest tier so that checkout completion and token
issuance are never blocked by a billing lookup.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import stripe
import structlog

from fleet_billing.core.config import get_settings
from fleet_billing.core.stripe_client import as_dict, configure_stripe
from fleet_billing.domain.cache import CachedValue, is_fresh

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class TierAllowance:
    tier: str
    vehicle_allowance: int

    @property
    def label(self) -> str:
        return TIER_LABELS.get(self.tier, self.tier.title())


TIER_CATALOG: dict[str, TierAllowance] = {
    "starter": TierAllowance("starter", 10),
    "growth": TierAllowance("growth", 25),
    "pro": TierAllowance("pro", 50),
    "scale": TierAllowance("scale", 100),
}

TIER_LABELS = {
    "starter": "Starter",
    "growth": "Growth",
    "pro": "Pro",
    "scale": "Scale",
}

DEFAULT_TIER = TIER_CATALOG["starter"]


def _parse_allowance(raw) -> int | None:
    try:
        allowance = int(raw)
    except (TypeError, ValueError):
        return None
    return allowance if allowance > 0 else None


def tier_from_metadata(metadata: dict | None) -> TierAllowance:
    """Read ``tier`` and ``maxVehicles`` from product metadata.

    Each field falls back independently: a missing tier becomes the default
    tier while keeping a valid ``maxVehicles``, and a malformed allowance uses
    the tier's catalogue allowance.
    """
    metadata = metadata or {}
    tier = str(metadata.get("tier") or "").strip().lower() or DEFAULT_TIER.tier
    allowance = _parse_allowance(metadata.get("maxVehicles"))
    if allowance is None:
        allowance = TIER_CATALOG.get(tier, DEFAULT_TIER).vehicle_allowance

    return TierAllowance(tier=tier, vehicle_allowance=allowance)


class TierResolver:
    """Subscription -> tier lookup with a per-instance product metadata cache."""

    def __init__(
        self,
        product_ttl: timedelta | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        if product_ttl is None:
            product_ttl = timedelta(seconds=get_settings().product_cache_ttl_seconds)
        self.product_ttl = product_ttl
        self._clock = clock or (lambda: datetime.now(UTC))
        self._products: dict[str, CachedValue[dict]] = {}

    async def resolve(self, subscription_id: str | None) -> TierAllowance:
        if not subscription_id:
            return DEFAULT_TIER

        configure_stripe()
        try:
            subscription = as_dict(await stripe.Subscription.retrieve_async(subscription_id))
            product_id = subscription["items"]["data"][0]["price"]["product"]
            metadata = await self._product_metadata(product_id)
        except stripe.StripeError as e:
            logger.warning(
                "tier_lookup_failed_default_applied",
                subscription_id=subscription_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return DEFAULT_TIER
        except (KeyError, IndexError, TypeError) as e:
            logger.warning(
                "tier_metadata_malformed_default_applied",
                subscription_id=subscription_id,
                error=str(e),
            )
            return DEFAULT_TIER

        resolved = tier_from_metadata(metadata)
        if not metadata.get("tier"):
            logger.warning("tier_metadata_missing_default_applied", subscription_id=subscription_id)
        return resolved

    async def _product_metadata(self, product_id: str) -> dict:
        """Product metadata, fetched at most once per TTL window."""
        entry = self._products.get(product_id)
        if is_fresh(entry, self._clock(), self.product_ttl):
            return entry.value

        product = as_dict(await stripe.Product.retrieve_async(product_id))
        metadata = dict(product.get("metadata") or {})
        self._remember(product_id, metadata)
        return metadata

    def _remember(self, product_id: str, metadata: dict) -> None:
        self._products[product_id] = CachedValue(value=metadata, fetched_at=self._clock())
