"""Multi-channel notification dispatch for fired and resolved alerts."""

from .config import (
    PAGERDUTY_EVENTS_URL,
    ChannelConfig,
    DispatcherConfig,
    EmailChannelConfig,
    PagerDutyChannelConfig,
    SlackChannelConfig,
    WebhookChannelConfig,
    channel_configs_from_settings,
    dispatcher_config_from_settings,
)
from .models import RATE_LIMIT_EXCEEDED, DeliveryStatus, NotificationRecord
from .channels import (
    ChannelSender,
    DeliveryError,
    EmailSender,
    PagerDutySender,
    SlackSender,
    WebhookSender,
    default_senders,
)
from .rate_limit import SlidingWindowLimiter
from .dedup import DedupCache
from .dispatcher import NotificationDispatcher
from .queue import DispatchQueue

__all__ = [
    # Config
    "PAGERDUTY_EVENTS_URL",
    "ChannelConfig",
    "DispatcherConfig",
    "EmailChannelConfig",
    "PagerDutyChannelConfig",
    "SlackChannelConfig",
    "WebhookChannelConfig",
    "channel_configs_from_settings",
    "dispatcher_config_from_settings",
    # Models
    "RATE_LIMIT_EXCEEDED",
    "DeliveryStatus",
    "NotificationRecord",
    # Channels
    "ChannelSender",
    "DeliveryError",
    "EmailSender",
    "PagerDutySender",
    "SlackSender",
    "WebhookSender",
    "default_senders",
    # State
    "SlidingWindowLimiter",
    "DedupCache",
    # Dispatch
    "NotificationDispatcher",
    "DispatchQueue",
]
