"""Outbound email transport using Resend."""

import logging
from typing import Protocol

import resend

from alphamail.core.exceptions import EmailSendError

logger = logging.getLogger(__name__)


class Mailer(Protocol):
    """Outbound send capability: returns the provider message id or raises EmailSendError."""

    async def send(self, to: str, subject: str, html: str, text: str) -> str: ...


class EmailService:
    """Sends email through Resend.

    Without an API key, emails are logged and not sent.
    """

    def __init__(self, api_key: str, from_email: str) -> None:
        """Initialize EmailService.

        Args:
            api_key: Resend API key. Empty disables sending.
            from_email: Sender shown on every message.
        """
        self._api_key = api_key
        self._from_email = from_email
        if not self._api_key:
            logger.warning("RESEND_API_KEY not configured - emails will be logged but not sent")
        else:
            resend.api_key = self._api_key

    async def send(self, to: str, subject: str, html: str, text: str) -> str:
        """Send an email via Resend.

        Args:
            to: Recipient email address.
            subject: Email subject line.
            html: Email HTML content.
            text: Plain-text alternative.

        Returns:
            Email ID from Resend.

        Raises:
            EmailSendError: If sending fails.
        """
        if not self._api_key:
            logger.info(
                "Email not sent (RESEND_API_KEY not configured)",
                extra={"to": to, "subject": subject},
            )
            return "mock_email_id"

        try:
            params: resend.Emails.SendParams = {
                "from": self._from_email,
                "to": [to],
                "subject": subject,
                "html": html,
                "text": text,
            }

            result = resend.Emails.send(params)
            email_id = result.get("id", "")
        except Exception as e:
            logger.exception("Error sending email", extra={"to": to, "subject": subject})
            raise EmailSendError(str(e), to=to) from e

        if not email_id:
            raise EmailSendError("Provider returned no message id", to=to)

        logger.info(
            "Email sent successfully",
            extra={"email_id": email_id, "to": to, "subject": subject},
        )
        return str(email_id)
