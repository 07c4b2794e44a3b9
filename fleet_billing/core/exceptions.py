class FleetBillingError(Exception):
    """Base exception for the billing engine."""

    pass


class WebhookNotConfiguredError(FleetBillingError):
    """Raised when no webhook signing secret is configured."""

    pass


class SignatureInvalidError(FleetBillingError):
    """Raised when a webhook payload cannot be authenticated."""

    pass


class PlatformLookupError(FleetBillingError):
    """Raised when a payment-platform call fails on a fail-closed path.

    The enclosing transaction is rolled back and no ledger entry is written,
    so the vendor's redelivery retries the event.
    """

    def __init__(self, operation: str, detail: str):
        self.operation = operation
        self.detail = detail
        super().__init__(f"Payment platform call '{operation}' failed: {detail}")


class VehicleCapacityExceededError(FleetBillingError):
    """Raised when a tenant is over its hard vehicle limit."""

    def __init__(self, usage):
        self.usage = usage
        super().__init__(
            f"Vehicle capacity exceeded: {usage.active_vehicle_count} active, hard limit {usage.hard_limit}"
        )
