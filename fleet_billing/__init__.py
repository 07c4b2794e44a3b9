"""Fleet billing engine: Stripe webhook reconciliation and license usage."""
