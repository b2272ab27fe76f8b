"""Notification dispatcher and per-channel configuration."""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union

from voiceguard.alerting import AlertSeverity, ChannelType
from voiceguard.settings import Settings

PAGERDUTY_EVENTS_URL = "https://events.pagerduty.com/v2/enqueue"


@dataclass
class DispatcherConfig:
    """Global notification dispatcher configuration."""

    enabled: bool = True
    default_channels: List[ChannelType] = field(default_factory=lambda: [ChannelType.SLACK])
    rate_limit_per_minute: int = 10
    max_retries: int = 3
    retry_base_delay_seconds: float = 1.0
    deduplication_window_seconds: float = 300.0
    history_limit: int = 1000
    request_timeout_seconds: float = 10.0
    environment: str = "development"
    service_name: str = "voice-agent-v2"
    dashboard_base_url: str = ""
    pagerduty_events_url: str = PAGERDUTY_EVENTS_URL


@dataclass
class SlackChannelConfig:
    webhook_url: str
    channel_name: str = "#alerts"
    mention_users: List[str] = field(default_factory=list)
    enabled: bool = True
    min_severity: AlertSeverity = AlertSeverity.WARNING

    channel = ChannelType.SLACK


@dataclass
class EmailChannelConfig:
    recipients: List[str]
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_secure: bool = True
    smtp_username: str = ""
    smtp_password: str = ""
    sender: str = "alerts@voice-agent.local"
    enabled: bool = True
    min_severity: AlertSeverity = AlertSeverity.CRITICAL

    channel = ChannelType.EMAIL


@dataclass
class PagerDutyChannelConfig:
    routing_key: str
    service_key: Optional[str] = None
    enabled: bool = True
    min_severity: AlertSeverity = AlertSeverity.CRITICAL

    channel = ChannelType.PAGERDUTY


@dataclass
class WebhookChannelConfig:
    url: str
    method: str = "POST"
    headers: Dict[str, str] = field(default_factory=dict)
    enabled: bool = True
    min_severity: AlertSeverity = AlertSeverity.INFO

    channel = ChannelType.WEBHOOK


ChannelConfig = Union[SlackChannelConfig, EmailChannelConfig, PagerDutyChannelConfig, WebhookChannelConfig]


def dispatcher_config_from_settings(settings: Settings) -> DispatcherConfig:
    return DispatcherConfig(
        enabled=settings.notifications_enabled,
        environment=settings.environment,
        service_name=settings.service_name,
        dashboard_base_url=settings.dashboard_base_url,
    )


def channel_configs_from_settings(settings: Settings) -> List[ChannelConfig]:
    """Build a config for every channel whose credentials are present."""
    configs: List[ChannelConfig] = []
    if settings.slack_webhook_url:
        configs.append(SlackChannelConfig(
            webhook_url=settings.slack_webhook_url,
            channel_name=settings.slack_channel,
            mention_users=Settings.split_list(settings.slack_mention_users),
        ))
    recipients = Settings.split_list(settings.alert_email_recipients)
    if recipients:
        configs.append(EmailChannelConfig(
            recipients=recipients,
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_secure=settings.smtp_secure,
            smtp_username=settings.smtp_username,
            smtp_password=settings.smtp_password,
            sender=settings.email_sender,
        ))
    if settings.pagerduty_routing_key:
        configs.append(PagerDutyChannelConfig(routing_key=settings.pagerduty_routing_key))
    if settings.alert_webhook_url:
        configs.append(WebhookChannelConfig(url=settings.alert_webhook_url))
    return configs
