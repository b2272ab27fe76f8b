"""Channel senders.

Each sender delivers one alert to one external channel and raises
``DeliveryError`` on any failure. Retries, rate limits, and severity
filtering belong to the dispatcher, not the senders.
"""

import asyncio
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Dict, Optional, Protocol, runtime_checkable

import httpx

from voiceguard.alerting import Alert, ChannelType
from voiceguard.clock import Clock, system_clock, to_datetime

from .config import (
    ChannelConfig,
    DispatcherConfig,
    EmailChannelConfig,
    PagerDutyChannelConfig,
    SlackChannelConfig,
    WebhookChannelConfig,
)
from .formatters import (
    build_email_body,
    build_email_subject,
    build_email_text,
    build_pagerduty_payload,
    build_slack_payload,
    build_webhook_payload,
)

logger = logging.getLogger(__name__)


class DeliveryError(Exception):
    """Raised when a channel rejects or cannot receive a notification."""

    def __init__(self, channel: ChannelType, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.channel = channel
        self.status_code = status_code


@runtime_checkable
class ChannelSender(Protocol):
    """Protocol for channel senders."""

    channel: ChannelType

    async def send(self, alert: Alert, config: ChannelConfig) -> None: ...


class _HttpSender:
    """Shared JSON-over-HTTP delivery for webhook style channels."""

    channel: ChannelType
    label = "HTTP"

    def __init__(self, client: httpx.AsyncClient, config: DispatcherConfig):
        self._client = client
        self._config = config

    async def _request(
        self,
        url: str,
        payload: dict,
        method: str = "POST",
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        try:
            response = await self._client.request(
                method,
                url,
                json=payload,
                headers={"Content-Type": "application/json", **(headers or {})},
                timeout=self._config.request_timeout_seconds,
            )
        except httpx.HTTPError as e:
            raise DeliveryError(self.channel, f"{self.label} request failed: {e}") from e
        if response.is_error:
            raise DeliveryError(
                self.channel,
                f"{self.label} error: {response.status_code} {response.reason_phrase}",
                status_code=response.status_code,
            )
        return response


class SlackSender(_HttpSender):
    channel = ChannelType.SLACK
    label = "Slack API"

    async def send(self, alert: Alert, config: SlackChannelConfig) -> None:
        await self._request(config.webhook_url, build_slack_payload(alert, config, self._config))


class PagerDutySender(_HttpSender):
    channel = ChannelType.PAGERDUTY
    label = "PagerDuty API"

    async def send(self, alert: Alert, config: PagerDutyChannelConfig) -> None:
        await self._request(
            self._config.pagerduty_events_url,
            build_pagerduty_payload(alert, config, self._config),
        )


class WebhookSender(_HttpSender):
    channel = ChannelType.WEBHOOK
    label = "Webhook"

    def __init__(self, client: httpx.AsyncClient, config: DispatcherConfig, clock: Clock = system_clock):
        super().__init__(client, config)
        self._clock = clock

    async def send(self, alert: Alert, config: WebhookChannelConfig) -> None:
        payload = build_webhook_payload(alert, self._config, to_datetime(self._clock()))
        await self._request(config.url, payload, method=config.method.upper(), headers=config.headers)


class EmailSender:
    """Email over SMTP. Without an SMTP host the message is only logged."""

    channel = ChannelType.EMAIL

    def __init__(self, config: DispatcherConfig):
        self._config = config

    async def send(self, alert: Alert, config: EmailChannelConfig) -> None:
        subject = build_email_subject(alert)
        if not config.smtp_host:
            logger.info(
                "Email notification would be sent",
                extra={"extra_data": {
                    "recipients": config.recipients,
                    "subject": subject,
                    "alert_id": alert.alert_id,
                }},
            )
            return
        try:
            await asyncio.to_thread(self._send_sync, alert, config, subject)
        except (smtplib.SMTPException, OSError) as e:
            raise DeliveryError(self.channel, f"SMTP delivery failed: {e}") from e

    def _send_sync(self, alert: Alert, config: EmailChannelConfig, subject: str) -> None:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = config.sender
        msg["To"] = ", ".join(config.recipients)
        msg.attach(MIMEText(build_email_text(alert, self._config), "plain"))
        msg.attach(MIMEText(build_email_body(alert, self._config), "html"))

        with smtplib.SMTP(config.smtp_host, config.smtp_port, timeout=self._config.request_timeout_seconds) as server:
            if config.smtp_secure:
                server.starttls()
            if config.smtp_username and config.smtp_password:
                server.login(config.smtp_username, config.smtp_password)
            server.sendmail(config.sender, config.recipients, msg.as_string())


def default_senders(
    client: httpx.AsyncClient,
    config: DispatcherConfig,
    clock: Clock = system_clock,
) -> Dict[ChannelType, ChannelSender]:
    """Build one sender per supported channel sharing a single HTTP client."""
    return {
        ChannelType.SLACK: SlackSender(client, config),
        ChannelType.PAGERDUTY: PagerDutySender(client, config),
        ChannelType.WEBHOOK: WebhookSender(client, config, clock),
        ChannelType.EMAIL: EmailSender(config),
    }
