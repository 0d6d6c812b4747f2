"""
Trial-ending notices.

Providers:
- SendGrid (production)
- Logging (no API key configured; development and tests)
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from entitlement_engine.config.settings import EngineSettings
from entitlement_engine.errors import TransientExternalError

logger = logging.getLogger(__name__)

SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"

TRIAL_ENDING_SUBJECT = "Your free trial is ending soon"
TRIAL_ENDING_TEXT = (
    "Your free API trial ends in a few days. Subscribe to a plan or make a "
    "deposit to keep your access key working without interruption."
)


class TrialNotifier(ABC):
    """Sends the one-off notice that a free trial is about to end."""

    @abstractmethod
    async def send_trial_ending_notice(self, contact: str) -> None:
        """
        Send the notice.

        Args:
            contact: Recipient email address

        Raises:
            TransientExternalError: If the provider could not accept it
        """
        pass


class SendGridTrialNotifier(TrialNotifier):
    """SendGrid v3 mail/send over httpx."""

    def __init__(
        self,
        api_key: str,
        from_email: str,
        from_name: Optional[str] = None,
        client: Optional[httpx.Client] = None,
    ):
        self.api_key = api_key
        self.from_email = from_email
        self.from_name = from_name or ""
        self._client = client

    def _post(self, payload: dict) -> httpx.Response:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if self._client is not None:
            return self._client.post(SENDGRID_URL, headers=headers, json=payload)
        with httpx.Client(timeout=30.0) as client:
            return client.post(SENDGRID_URL, headers=headers, json=payload)

    async def send_trial_ending_notice(self, contact: str) -> None:
        payload = {
            "personalizations": [{"to": [{"email": contact}]}],
            "from": {"email": self.from_email, "name": self.from_name},
            "subject": TRIAL_ENDING_SUBJECT,
            "content": [{"type": "text/plain", "value": TRIAL_ENDING_TEXT}],
            "categories": ["trial_ending"],
        }

        try:
            response = self._post(payload)
        except httpx.HTTPError as e:
            logger.error("Failed to reach SendGrid", extra={"error": str(e)})
            raise TransientExternalError(f"SendGrid unreachable: {e}", service="notifications") from e

        if response.status_code not in (200, 202):
            logger.error("SendGrid API error", extra={
                "status_code": response.status_code,
                "response": response.text[:500],
            })
            raise TransientExternalError(
                f"SendGrid returned {response.status_code}",
                service="notifications",
            )

        logger.info("Trial ending notice sent", extra={"to_email": contact})


class LoggingTrialNotifier(TrialNotifier):
    """Logs instead of sending."""

    async def send_trial_ending_notice(self, contact: str) -> None:
        logger.info("Trial ending notice (not sent, no provider configured)", extra={
            "to_email": contact,
        })


def get_trial_notifier(settings: EngineSettings) -> TrialNotifier:
    """SendGrid when a key is configured, otherwise the logging notifier."""
    if settings.sendgrid_api_key:
        return SendGridTrialNotifier(
            api_key=settings.sendgrid_api_key,
            from_email=settings.notification_from_email,
            from_name=settings.notification_from_name,
        )
    logger.warning("SENDGRID_API_KEY not set, trial notices will only be logged")
    return LoggingTrialNotifier()
