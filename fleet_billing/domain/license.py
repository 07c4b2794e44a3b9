"""Vehicle license usage evaluation.

Pure domain functions, no I/O. The vehicle-creation path consults
``evaluate`` before adding a vehicle and refuses creation when the tenant is
already over its hard limit.
"""

from dataclasses import asdict, dataclass
from enum import StrEnum

from fleet_billing.core.exceptions import VehicleCapacityExceededError


class LicenseState(StrEnum):
    OK = "ok"
    AT_LIMIT = "at_limit"
    IN_GRACE = "in_grace"
    OVER_HARD_LIMIT = "over_hard_limit"


@dataclass(frozen=True)
class LicenseTerms:
    """License fields attached to a tenant."""

    tier: str
    vehicle_allowance: int
    grace_overage: int
    enforcement_mode: str = "soft_block"

    @property
    def hard_limit(self) -> int:
        return self.vehicle_allowance + self.grace_overage


@dataclass(frozen=True)
class LicenseUsage:
    state: LicenseState
    active_vehicle_count: int
    allowance: int
    grace_overage: int
    hard_limit: int
    remaining_to_soft: int
    remaining_to_hard: int
    percent_used: int

    def to_dict(self) -> dict:
        return asdict(self)


def evaluate(active_vehicle_count: int, allowance: int, grace_overage: int) -> LicenseUsage:
    """Derive the license state for a vehicle count.

    Args:
        active_vehicle_count: Vehicles currently active for the tenant
        allowance: Soft cap granted by the tier
        grace_overage: Buffer above the soft cap

    Returns:
        LicenseUsage with state and headroom figures

    Rules:
        - count < allowance: OK
        - count == allowance: AT_LIMIT
        - allowance < count <= allowance + grace_overage: IN_GRACE
        - count > allowance + grace_overage: OVER_HARD_LIMIT
    """
    if active_vehicle_count < 0 or allowance < 0 or grace_overage < 0:
        raise ValueError("Vehicle count, allowance and grace overage must be non-negative")

    hard_limit = allowance + grace_overage

    if active_vehicle_count < allowance:
        state = LicenseState.OK
    elif active_vehicle_count == allowance:
        state = LicenseState.AT_LIMIT
    elif active_vehicle_count <= hard_limit:
        state = LicenseState.IN_GRACE
    else:
        state = LicenseState.OVER_HARD_LIMIT

    if allowance > 0:
        percent_used = round(active_vehicle_count * 100 / allowance)
    else:
        percent_used = 100

    return LicenseUsage(
        state=state,
        active_vehicle_count=active_vehicle_count,
        allowance=allowance,
        grace_overage=grace_overage,
        hard_limit=hard_limit,
        remaining_to_soft=max(0, allowance - active_vehicle_count),
        remaining_to_hard=max(0, hard_limit - active_vehicle_count),
        percent_used=percent_used,
    )


def evaluate_terms(active_vehicle_count: int, terms: LicenseTerms) -> LicenseUsage:
    return evaluate(active_vehicle_count, terms.vehicle_allowance, terms.grace_overage)


def ensure_vehicle_capacity(usage: LicenseUsage) -> LicenseUsage:
    """Raise VehicleCapacityExceededError when no further vehicle may be added."""
    if usage.state == LicenseState.OVER_HARD_LIMIT:
        raise VehicleCapacityExceededError(usage)
    return usage
