"""Notification dispatcher: dedup, severity filter, rate limit, retry."""

import asyncio
import json
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Optional

import httpx

from voiceguard.alerting import Alert, ChannelType
from voiceguard.clock import Clock, system_clock, to_datetime

from .channels import ChannelSender, default_senders
from .config import ChannelConfig, DispatcherConfig
from .dedup import DedupCache
from .models import RATE_LIMIT_EXCEEDED, DeliveryStatus, NotificationRecord
from .rate_limit import SlidingWindowLimiter

logger = logging.getLogger(__name__)

Sleeper = Callable[[float], Awaitable[Any]]


class NotificationDispatcher:
    """Delivers alerts to external channels.

    Per call, a notification is dropped entirely if the same
    ``(rule, status, labels)`` was sent within the dedup window. Each
    target channel is then filtered by configuration and minimum
    severity, checked against its per-minute rate limit, and attempted
    up to ``max_retries`` times with exponential backoff. Failures are
    reported in the returned statuses and never raised.

    Example:
        dispatcher = NotificationDispatcher(DispatcherConfig())
        dispatcher.set_channel_config(SlackChannelConfig(webhook_url=url))
        statuses = await dispatcher.send_alert_notification(alert)
    """

    def __init__(
        self,
        config: Optional[DispatcherConfig] = None,
        channel_configs: Optional[Iterable[ChannelConfig]] = None,
        senders: Optional[Dict[ChannelType, ChannelSender]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Clock = system_clock,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self._config = config or DispatcherConfig()
        self._clock = clock
        self._sleep = sleep
        self._client: Optional[httpx.AsyncClient] = None
        if senders is None:
            self._client = http_client or httpx.AsyncClient(timeout=self._config.request_timeout_seconds)
            self._owns_client = http_client is None
            senders = default_senders(self._client, self._config, clock)
        else:
            self._owns_client = False
        self._senders: Dict[ChannelType, ChannelSender] = dict(senders)
        self._channel_configs: Dict[ChannelType, ChannelConfig] = {}
        for channel_config in channel_configs or []:
            self.set_channel_config(channel_config)
        self._dedup = DedupCache(self._config.deduplication_window_seconds, clock)
        self._limiter = SlidingWindowLimiter(self._config.rate_limit_per_minute, 60.0, clock)
        self._history: Deque[NotificationRecord] = deque(maxlen=self._config.history_limit)

    @property
    def config(self) -> DispatcherConfig:
        return self._config

    # ── Channel configuration ─────────────────────────────────────────

    def set_channel_config(self, channel_config: ChannelConfig) -> None:
        """Install or replace the config for a channel kind."""
        self._channel_configs[channel_config.channel] = channel_config
        logger.debug("Channel configured: %s", channel_config.channel.value)

    def get_channel_config(self, channel: ChannelType) -> Optional[ChannelConfig]:
        return self._channel_configs.get(channel)

    def remove_channel_config(self, channel: ChannelType) -> bool:
        return self._channel_configs.pop(channel, None) is not None

    def is_channel_available(self, channel: ChannelType) -> bool:
        channel_config = self._channel_configs.get(channel)
        return channel_config is not None and channel_config.enabled and channel in self._senders

    # ── Dispatch ──────────────────────────────────────────────────────

    @staticmethod
    def dedup_key(alert: Alert) -> str:
        labels = json.dumps(alert.labels, sort_keys=True, separators=(",", ":"))
        return f"{alert.rule_id}:{alert.status.value}:{labels}"

    async def send_alert_notification(
        self,
        alert: Alert,
        channels: Optional[List[ChannelType]] = None,
    ) -> List[DeliveryStatus]:
        """Deliver an alert to the given channels, or the defaults.

        Returns:
            One status per channel that was attempted or rate limited.
            Empty when disabled or deduplicated.
        """
        if not self._config.enabled:
            return []

        key = self.dedup_key(alert)
        if self._dedup.seen_recently(key):
            logger.debug("Notification deduplicated", extra={"extra_data": {"alert_id": alert.alert_id}})
            return []
        self._dedup.mark(key)

        targets = list(dict.fromkeys(channels or self._config.default_channels))
        results: List[DeliveryStatus] = []

        for channel in targets:
            channel_config = self._channel_configs.get(channel)
            if channel_config is None or not channel_config.enabled:
                logger.debug("Channel %s not configured; skipping", channel.value)
                continue
            if alert.severity.rank < channel_config.min_severity.rank:
                continue
            if self._limiter.is_limited(channel):
                logger.warning(
                    "Rate limit exceeded for channel %s",
                    channel.value,
                    extra={"extra_data": {"alert_id": alert.alert_id}},
                )
                results.append(DeliveryStatus(
                    channel=channel,
                    success=False,
                    attempts=0,
                    timestamp=to_datetime(self._clock()),
                    error=RATE_LIMIT_EXCEEDED,
                ))
                continue
            results.append(await self._deliver(alert, channel, channel_config))

        self._history.append(NotificationRecord(
            alert_id=alert.alert_id,
            rule_id=alert.rule_id,
            alert_status=alert.status.value,
            created_at=to_datetime(self._clock()),
            delivery_status=results,
        ))
        return results

    async def _deliver(self, alert: Alert, channel: ChannelType, channel_config: ChannelConfig) -> DeliveryStatus:
        sender = self._senders.get(channel)
        if sender is None:
            return DeliveryStatus(
                channel=channel,
                success=False,
                attempts=0,
                timestamp=to_datetime(self._clock()),
                error=f"No sender registered for {channel.value}",
            )

        max_attempts = max(1, self._config.max_retries)
        last_error = ""
        for attempt in range(1, max_attempts + 1):
            self._limiter.record(channel)
            try:
                await sender.send(alert, channel_config)
                logger.info(
                    "Notification sent via %s",
                    channel.value,
                    extra={"extra_data": {"alert_id": alert.alert_id, "attempts": attempt}},
                )
                return DeliveryStatus(
                    channel=channel,
                    success=True,
                    attempts=attempt,
                    timestamp=to_datetime(self._clock()),
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                last_error = str(e) or type(e).__name__
                logger.warning(
                    "Notification attempt %d/%d via %s failed: %s",
                    attempt,
                    max_attempts,
                    channel.value,
                    last_error,
                )
                if attempt < max_attempts:
                    await self._sleep(self._config.retry_base_delay_seconds * 2 ** (attempt - 1))

        logger.error(
            "Notification delivery failed via %s",
            channel.value,
            extra={"extra_data": {"alert_id": alert.alert_id, "attempts": max_attempts, "error": last_error}},
        )
        return DeliveryStatus(
            channel=channel,
            success=False,
            attempts=max_attempts,
            timestamp=to_datetime(self._clock()),
            error=last_error,
        )

    # ── Queries ───────────────────────────────────────────────────────

    def get_notification_history(self, limit: int = 100) -> List[NotificationRecord]:
        """Return the most recent records, oldest first."""
        if limit <= 0:
            return []
        return list(self._history)[-limit:]

    def get_delivery_stats(self) -> dict:
        total = successful = 0
        by_channel: Dict[str, Dict[str, int]] = {}
        for record in self._history:
            for status in record.delivery_status:
                total += 1
                bucket = by_channel.setdefault(status.channel.value, {"sent": 0, "failed": 0})
                if status.success:
                    successful += 1
                    bucket["sent"] += 1
                else:
                    bucket["failed"] += 1
        return {
            "total": total,
            "successful": successful,
            "failed": total - successful,
            "by_channel": by_channel,
        }

    # ── Housekeeping ──────────────────────────────────────────────────

    def cleanup(self) -> Dict[str, int]:
        """Drop expired dedup keys and idle rate-limit windows."""
        removed = {
            "dedup_keys": self._dedup.sweep(),
            "rate_limit_keys": self._limiter.sweep(),
        }
        if any(removed.values()):
            logger.debug("Notification state swept", extra={"extra_data": removed})
        return removed

    def reset(self) -> None:
        self._history.clear()
        self._dedup.clear()
        self._limiter.reset()

    async def aclose(self) -> None:
        """Close the HTTP client if this dispatcher created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
