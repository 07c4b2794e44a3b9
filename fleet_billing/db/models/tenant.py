"""Tenant model: billed organisation and its license fields."""

from datetime import UTC, datetime

from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.orm import relationship

from fleet_billing.db.base import Base
from fleet_billing.domain.license import LicenseTerms

# Subscription statuses that can no longer be billed or discounted
NON_CHARGEABLE_STATUSES = frozenset({"canceled", "incomplete_expired"})


class Tenant(Base):
    __tablename__ = "tenants"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)

    # Stripe
    stripe_customer_id = Column(String(255), unique=True, nullable=True, index=True)
    stripe_subscription_id = Column(String(255), nullable=True)
    stripe_subscription_status = Column(String(50), nullable=True)
    # Creation time of the newest subscription event applied to this tenant
    stripe_subscription_event_at = Column(DateTime(timezone=True), nullable=True)

    # License (written by the plan-change flow, read here)
    license_tier = Column(String(20), nullable=False, default="starter")
    vehicle_allowance = Column(Integer, nullable=False, default=10)
    grace_overage = Column(Integer, nullable=False, default=3)
    enforcement_mode = Column(String(20), nullable=False, default="soft_block")

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))

    referrals = relationship("Referral", back_populates="referrer")

    @property
    def hard_limit(self) -> int:
        return self.vehicle_allowance + self.grace_overage

    @property
    def has_chargeable_subscription(self) -> bool:
        return bool(self.stripe_subscription_id) and self.stripe_subscription_status not in NON_CHARGEABLE_STATUSES

    def license_terms(self) -> LicenseTerms:
        return LicenseTerms(
            tier=self.license_tier,
            vehicle_allowance=self.vehicle_allowance,
            grace_overage=self.grace_overage,
            enforcement_mode=self.enforcement_mode,
        )
