"""Re-export all models so Base.metadata sees them."""

from fleet_billing.db.models.account_setup_token import AccountSetupToken
from fleet_billing.db.models.referral import Referral
from fleet_billing.db.models.tenant import Tenant
from fleet_billing.db.models.webhook_event import WebhookEventRecord

__all__ = [
    "AccountSetupToken",
    "Referral",
    "Tenant",
    "WebhookEventRecord",
]
