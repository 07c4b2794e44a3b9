"""Transactional email via SendGrid.

The SendGrid client is blocking, so sends run in a worker thread via
asyncio.to_thread() to keep the event loop free.
"""

import asyncio
from pathlib import Path

import structlog
from jinja2 import Environment, FileSystemLoader
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail

from fleet_billing.core.config import get_settings

logger = structlog.get_logger(__name__)

TEMPLATE_DIR = Path(__file__).parent / "templates"


class SetupEmailSender:
    """Sends the account setup link after a completed checkout."""

    def __init__(self, api_key: str | None = None, from_email: str | None = None, client: SendGridAPIClient | None = None):
        settings = get_settings()
        self.api_key = settings.sendgrid_api_key if api_key is None else api_key
        self.from_email = from_email or settings.email_from_address
        self._client = client
        self.env = Environment(
            loader=FileSystemLoader(str(TEMPLATE_DIR)),
            autoescape=True,
        )

    @property
    def client(self) -> SendGridAPIClient:
        if self._client is None:
            self._client = SendGridAPIClient(self.api_key)
        return self._client

    def render(self, setup_url: str, tier: str) -> tuple[str, str]:
        """Return (subject, html) for the setup email."""
        subject = f"Set Up Your Titan Fleet Account: {tier} Plan"
        html = self.env.get_template("setup_account.html").render(setup_url=setup_url, tier=tier)
        return subject, html

    async def send_setup_link(self, email: str, setup_url: str, tier: str) -> bool:
        """Send the setup link. Returns False when unconfigured or rejected.

        Transport errors propagate to the caller.
        """
        if not self.api_key and self._client is None:
            logger.warning("setup_email_not_configured", email=email)
            return False

        subject, html = self.render(setup_url, tier)
        message = Mail(
            from_email=self.from_email,
            to_emails=email,
            subject=subject,
            html_content=html,
        )

        response = await asyncio.to_thread(self.client.send, message)
        if 200 <= response.status_code < 300:
            logger.info("setup_email_sent", email=email, tier=tier)
            return True

        logger.error("setup_email_rejected", email=email, status_code=response.status_code)
        return False
