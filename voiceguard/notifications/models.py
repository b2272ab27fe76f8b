"""Delivery outcome records."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from voiceguard.alerting import ChannelType

RATE_LIMIT_EXCEEDED = "Rate limit exceeded"


@dataclass(frozen=True)
class DeliveryStatus:
    """Outcome of delivering one alert to one channel."""

    channel: ChannelType
    success: bool
    attempts: int
    timestamp: datetime
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "channel": self.channel.value,
            "success": self.success,
            "attempts": self.attempts,
            "error": self.error,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class NotificationRecord:
    """All channel outcomes for one dispatch of one alert."""

    alert_id: str
    rule_id: str
    alert_status: str
    created_at: datetime
    delivery_status: List[DeliveryStatus] = field(default_factory=list)
    record_id: str = field(default_factory=lambda: f"notif_{uuid.uuid4().hex[:16]}")

    @property
    def delivered(self) -> bool:
        return any(s.success for s in self.delivery_status)

    def to_dict(self) -> dict:
        return {
            "record_id": self.record_id,
            "alert_id": self.alert_id,
            "rule_id": self.rule_id,
            "alert_status": self.alert_status,
            "created_at": self.created_at.isoformat(),
            "delivery_status": [s.to_dict() for s in self.delivery_status],
        }
