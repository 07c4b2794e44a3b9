"""Explicit cache values with a pure freshness check."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Generic, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class CachedValue(Generic[T]):
    value: T
    fetched_at: datetime


def is_fresh(entry: CachedValue | None, now: datetime, ttl: timedelta) -> bool:
    """True when ``entry`` exists and was fetched less than ``ttl`` before ``now``."""
    if entry is None:
        return False
    return now - entry.fetched_at < ttl
