"""AccountSetupToken model: single-use tenant provisioning credential."""

from datetime import UTC, datetime

from sqlalchemy import Column, DateTime, Integer, String

from fleet_billing.db.base import Base


class AccountSetupToken(Base):
    __tablename__ = "account_setup_tokens"

    id = Column(Integer, primary_key=True, autoincrement=True)
    token = Column(String(128), unique=True, nullable=False, index=True)
    email = Column(String(255), nullable=False)

    # Stripe references
    stripe_customer_id = Column(String(255), nullable=True)
    stripe_subscription_id = Column(String(255), nullable=True, index=True)
    stripe_checkout_session_id = Column(String(255), unique=True, nullable=True)

    # Snapshot taken at issuance; redemption must not depend on Stripe state
    tier = Column(String(20), nullable=False)
    vehicle_allowance = Column(Integer, nullable=False)
    referral_code = Column(String(50), nullable=True)

    issued_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    expires_at = Column(DateTime(timezone=True), nullable=False)
    consumed_at = Column(DateTime(timezone=True), nullable=True)
