"""Referral model: referral code lifecycle from signup to reward."""

from datetime import UTC, datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from fleet_billing.db.base import Base
from fleet_billing.domain.referrals import ReferralStatus


class Referral(Base):
    __tablename__ = "referrals"

    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(50), unique=True, nullable=False, index=True)

    referrer_tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False, index=True)
    referrer = relationship("Tenant", back_populates="referrals")

    # pending -> signed_up -> converted -> rewarded, never backwards
    status = Column(String(20), nullable=False, default=ReferralStatus.PENDING.value)

    reward_type = Column(String(50), nullable=True)
    reward_value = Column(Integer, nullable=True)
    reward_claimed = Column(Boolean, nullable=False, default=False)

    # Discount grant applied on the referrer's subscription
    discount_coupon_id = Column(String(255), nullable=True)
    discount_subscription_id = Column(String(255), nullable=True)

    signed_up_at = Column(DateTime(timezone=True), nullable=True)
    converted_at = Column(DateTime(timezone=True), nullable=True)
    rewarded_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
