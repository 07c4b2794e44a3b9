"""Stripe webhook gateway.

The endpoint declares no body model: FastAPI never decodes the request, and
the signature is verified against the exact bytes Stripe sent.
"""

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request

from fleet_billing.core.config import get_settings
from fleet_billing.core.exceptions import SignatureInvalidError, WebhookNotConfiguredError
from fleet_billing.db.base import get_session_factory
from fleet_billing.integrations.email import SetupEmailSender
from fleet_billing.services.event_router import EventRouter
from fleet_billing.services.referral_service import ReferralRewardEngine
from fleet_billing.services.setup_token_service import AccountSetupTokenIssuer
from fleet_billing.services.tier_resolver import TierResolver
from fleet_billing.services.webhook_verifier import verify_webhook

logger = structlog.get_logger(__name__)

router = APIRouter()


def build_event_router() -> EventRouter:
    referrals = ReferralRewardEngine()
    return EventRouter(
        session_factory=get_session_factory(),
        token_issuer=AccountSetupTokenIssuer(
            tier_resolver=TierResolver(),
            referrals=referrals,
            email_sender=SetupEmailSender(),
        ),
        referrals=referrals,
    )


def get_event_router(request: Request) -> EventRouter:
    """One router per app so the tier resolver's product cache outlives a request."""
    event_router = getattr(request.app.state, "event_router", None)
    if event_router is None:
        event_router = build_event_router()
        request.app.state.event_router = event_router
    return event_router


@router.post("/webhooks/stripe")
async def stripe_webhook(request: Request, event_router: EventRouter = Depends(get_event_router)):
    """Verify, deduplicate and dispatch a Stripe event."""
    settings = get_settings()
    body = await request.body()
    sig_header = request.headers.get("stripe-signature")

    try:
        envelope = verify_webhook(body, sig_header, settings.stripe_webhook_secret)
    except WebhookNotConfiguredError:
        logger.error("stripe_webhook_secret_missing")
        raise HTTPException(status_code=503, detail="Stripe webhook endpoint is not configured")
    except SignatureInvalidError as e:
        logger.warning("stripe_webhook_rejected", reason=str(e))
        raise HTTPException(status_code=400, detail=str(e))

    logger.info("stripe_webhook_received", event_id=envelope["id"], event_type=envelope["type"])
    outcome = await event_router.dispatch(envelope)
    return {"status": "ok", "outcome": outcome.value}
