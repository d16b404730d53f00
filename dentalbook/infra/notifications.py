"""
Email dispatch client.

Emails are sent through the external email service:
POST {email_service_url}/api/email/send-email

Every call is a side effect of a committed change, so failures surface as
SideEffectFailure and are never allowed to reach the primary path.
"""

import logging
from typing import Any, Optional

import httpx

from dentalbook.config import get_settings
from dentalbook.core.errors import SideEffectFailure

logger = logging.getLogger(__name__)


class EmailClient:
    """Sends transactional emails via the email service."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: float = 10.0,
        enabled: Optional[bool] = None,
    ):
        """Initialize email client.

        Args:
            base_url: Email service base URL (defaults to settings)
            timeout: Request timeout in seconds
            enabled: Whether to send at all (defaults to settings)
        """
        settings = get_settings()
        self.base_url = base_url or settings.email_service_url
        self.timeout = timeout
        self.enabled = settings.email_enabled if enabled is None else enabled
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def send_email(
        self,
        to: str,
        subject: str,
        body: str,
        email_type: str = "appointment_update",
        data: Optional[dict[str, Any]] = None,
    ) -> bool:
        """Send an email.

        Args:
            to: Recipient address
            subject: Email subject
            body: Email body (HTML supported)
            email_type: Template/category tag for the email service
            data: Extra structured fields for the template

        Returns:
            True if sent, False if email is disabled

        Raises:
            SideEffectFailure: the service could not be reached or refused
        """
        if not self.enabled:
            logger.debug(f"Email disabled, skipping '{subject}' to {to}")
            return False

        client = await self._get_client()
        payload = {
            "to": to,
            "subject": subject,
            "html": body,
            "type": email_type,
            "data": data or {},
        }

        try:
            response = await client.post("/api/email/send-email", json=payload)
        except httpx.HTTPError as e:
            raise SideEffectFailure(
                f"Email service unreachable: {e}", code="email_unreachable"
            ) from e

        if response.status_code >= 400:
            raise SideEffectFailure(
                f"Email service returned {response.status_code}",
                code="email_rejected",
            )

        logger.info(f"Email '{subject}' sent to {to}")
        return True


# Singleton
_email_client: Optional[EmailClient] = None


def get_email_client() -> EmailClient:
    """Get singleton EmailClient."""
    global _email_client
    if _email_client is None:
        _email_client = EmailClient()
    return _email_client
