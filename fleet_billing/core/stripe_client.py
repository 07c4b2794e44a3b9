"""Stripe SDK configuration.

Outbound Stripe calls run inside webhook handlers, before the ledger commit,
so they are bounded by a short HTTP timeout and a single network retry.
"""

import stripe

from fleet_billing.core.config import get_settings

_configured_key: str | None = None


def configure_stripe() -> None:
    """Configure the stripe module with the secret key and a bounded HTTP client."""
    global _configured_key

    settings = get_settings()
    if _configured_key == settings.stripe_secret_key and stripe.default_http_client is not None:
        return

    stripe.api_key = settings.stripe_secret_key
    stripe.max_network_retries = settings.stripe_max_network_retries
    stripe.default_http_client = stripe.HTTPXClient(timeout=settings.stripe_timeout_seconds)
    _configured_key = settings.stripe_secret_key


def as_dict(obj) -> dict:
    """Plain-dict view of a Stripe API object (recursive)."""
    if isinstance(obj, dict):
        return obj
    return obj.to_dict()
