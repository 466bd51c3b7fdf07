"""
Human-facing notifications (email/Slack) for onboarding events.

The engine only calls NotificationPort.notify(); delivery is up to the
adapter. Delivery problems are logged here and never reach the engine.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Optional

import httpx
from pydantic import BaseModel, Field

from app.core.config import Settings, settings
from app.logging_config import get_logger
from app.models import OnboardingStage, utcnow

logger = get_logger("app.notifications")


class NotificationKind(str, Enum):
    DOCUMENT_UPLOADED = "document_uploaded"
    DOCUMENT_RECEIVED = "document_received"
    APPROVAL_RECORDED = "approval_recorded"
    STAGE_COMPLETED = "stage_completed"
    STAGE_SKIPPED = "stage_skipped"
    ONBOARDING_COMPLETED = "onboarding_completed"


# Email template per event kind
EMAIL_TEMPLATES = {
    NotificationKind.DOCUMENT_UPLOADED: "Document uploaded notification",
    NotificationKind.DOCUMENT_RECEIVED: "Document uploaded notification",
    NotificationKind.APPROVAL_RECORDED: "Approval required notification",
    NotificationKind.STAGE_COMPLETED: "Stage completed notification",
    NotificationKind.STAGE_SKIPPED: "Stage completed notification",
    NotificationKind.ONBOARDING_COMPLETED: "Onboarding completed notification",
}


class NotificationEvent(BaseModel):
    """What happened, to whom, and which team should hear about it."""
    kind: NotificationKind
    partner_id: str
    partner_name: str
    organization: str
    stage_id: Optional[OnboardingStage] = None
    team: Optional[str] = None
    summary: str
    occurred_at: datetime = Field(default_factory=utcnow)


class NotificationPort(ABC):

    @abstractmethod
    async def notify(self, event: NotificationEvent) -> bool:
        """Deliver the event. Returns False if delivery failed."""


class LoggingNotifier(NotificationPort):
    """Writes events to the log, tagged with the email recipients and template."""

    def __init__(self, recipients: Optional[list[str]] = None):
        self.recipients = recipients if recipients is not None else list(settings.NOTIFY_EMAIL_RECIPIENTS)

    async def notify(self, event: NotificationEvent) -> bool:
        logger.info(
            f"📧 [{EMAIL_TEMPLATES[event.kind]}] to {', '.join(self.recipients) or 'nobody'}: "
            f"{event.partner_name} ({event.organization}) - {event.summary}"
        )
        return True


class SlackWebhookNotifier(NotificationPort):
    """Posts events to a Slack incoming webhook, routed by approving team."""

    def __init__(
        self,
        webhook_url: str,
        channels: Optional[dict] = None,
        default_channel: Optional[str] = None,
        timeout: float = 10.0,
        max_retries: int = 3,
        retry_delay_seconds: float = 1.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.webhook_url = webhook_url
        self.channels = channels if channels is not None else dict(settings.SLACK_CHANNELS)
        self.default_channel = default_channel or settings.SLACK_DEFAULT_CHANNEL
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay_seconds = retry_delay_seconds
        self._client = client

    def channel_for(self, event: NotificationEvent) -> str:
        if event.team and event.team in self.channels:
            return self.channels[event.team]
        return self.default_channel

    def build_payload(self, event: NotificationEvent) -> dict:
        stage = f" [{event.stage_id.value}]" if event.stage_id else ""
        return {
            "channel": self.channel_for(event),
            "text": f"*{event.kind.value}*{stage} {event.partner_name} ({event.organization}): {event.summary}",
        }

    async def _post(self, payload: dict) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(self.webhook_url, json=payload)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(self.webhook_url, json=payload)

    async def notify(self, event: NotificationEvent) -> bool:
        payload = self.build_payload(event)
        last_error = None

        for attempt in range(self.max_retries):
            try:
                response = await self._post(payload)
                response.raise_for_status()
                logger.debug(f"Slack notification sent to {payload['channel']} on attempt {attempt + 1}")
                return True

            except httpx.HTTPStatusError as e:
                last_error = e
                logger.warning(f"Slack HTTP error: {e.response.status_code} - {e.response.text[:200]}")

                if e.response.status_code in [400, 401, 403, 404]:
                    logger.error("Slack rejected the webhook request - not retrying")
                    break

            except httpx.HTTPError as e:
                last_error = e
                logger.warning(f"Slack transport error: {type(e).__name__}: {e}")

            if attempt < self.max_retries - 1:
                delay = self.retry_delay_seconds * (2 ** attempt)
                logger.info(f"Waiting {delay}s before retrying Slack notification...")
                await asyncio.sleep(delay)

        logger.error(f"Slack notification failed after {self.max_retries} attempts. Last error: {last_error}")
        return False


class CompositeNotifier(NotificationPort):
    """Fans an event out to several notifiers; one failing does not stop the rest."""

    def __init__(self, notifiers: list[NotificationPort]):
        self.notifiers = notifiers

    async def notify(self, event: NotificationEvent) -> bool:
        delivered = True
        for notifier in self.notifiers:
            try:
                delivered = await notifier.notify(event) and delivered
            except Exception as e:
                logger.error(f"{type(notifier).__name__} failed for {event.kind.value}: {type(e).__name__}: {e}")
                delivered = False
        return delivered


def create_notifier(current: Settings = settings) -> NotificationPort:
    """Build the notifier stack from settings."""
    notifiers: list[NotificationPort] = []

    if current.NOTIFY_EMAIL_ENABLED:
        notifiers.append(LoggingNotifier(list(current.NOTIFY_EMAIL_RECIPIENTS)))

    if current.SLACK_ENABLED and current.SLACK_WEBHOOK_URL:
        notifiers.append(
            SlackWebhookNotifier(
                current.SLACK_WEBHOOK_URL,
                channels=dict(current.SLACK_CHANNELS),
                default_channel=current.SLACK_DEFAULT_CHANNEL,
                timeout=current.SLACK_TIMEOUT_SECONDS,
                max_retries=current.SLACK_MAX_RETRIES,
            )
        )

    return CompositeNotifier(notifiers)
