"""Stripe webhook signature verification over the raw request bytes."""

import json

import stripe

from fleet_billing.core.exceptions import SignatureInvalidError, WebhookNotConfiguredError


def verify_webhook(payload: bytes, signature_header: str | None, secret: str) -> dict:
    """Authenticate ``payload`` and return the decoded event envelope.

    The HMAC is checked against the exact bytes received, and the envelope
    is decoded from those same bytes afterwards.

    Raises:
        WebhookNotConfiguredError: no signing secret is configured
        SignatureInvalidError: header missing, signature mismatch, stale
            timestamp, or a body that is not a JSON event
    """
    if not secret:
        raise WebhookNotConfiguredError("Stripe webhook signing secret is not configured")
    if not signature_header:
        raise SignatureInvalidError("Missing stripe-signature header")

    try:
        text = payload.decode("utf-8")
    except UnicodeDecodeError as e:
        raise SignatureInvalidError("Payload is not valid UTF-8") from e

    try:
        stripe.WebhookSignature.verify_header(
            text,
            signature_header,
            secret,
            tolerance=stripe.Webhook.DEFAULT_TOLERANCE,
        )
    except stripe.SignatureVerificationError as e:
        raise SignatureInvalidError("Invalid signature") from e

    try:
        envelope = json.loads(text)
    except json.JSONDecodeError as e:
        raise SignatureInvalidError("Invalid payload") from e

    if not isinstance(envelope, dict) or not envelope.get("id") or not envelope.get("type"):
        raise SignatureInvalidError("Invalid payload")
    return envelope
