"""Account setup token rules.

Pure domain functions for token generation and redeemability.
"""

import secrets
from datetime import datetime, timedelta

from fleet_billing.domain.timestamps import as_utc

SETUP_TOKEN_TTL = timedelta(hours=48)

# 32 random bytes = 256 bits, hex encoded to 64 characters
SETUP_TOKEN_BYTES = 32


def generate_setup_token() -> str:
    return secrets.token_hex(SETUP_TOKEN_BYTES)


def setup_token_expiry(issued_at: datetime) -> datetime:
    return issued_at + SETUP_TOKEN_TTL


def is_redeemable(expires_at: datetime, consumed_at: datetime | None, now: datetime) -> bool:
    """A token is redeemable while unconsumed and strictly before expiry."""
    if consumed_at is not None:
        return False
    return as_utc(now) < as_utc(expires_at)


def setup_url(frontend_url: str, token: str) -> str:
    return f"{frontend_url.rstrip('/')}/setup-account?token={token}"
