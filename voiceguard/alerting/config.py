"""Alert rule engine configuration and enumerations."""

import logging
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)


class AlertSeverity(Enum):
    """Alert severity levels, ordered info < warning < critical."""

    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER[self]


_SEVERITY_ORDER = {
    AlertSeverity.INFO: 0,
    AlertSeverity.WARNING: 1,
    AlertSeverity.CRITICAL: 2,
}


class AlertStatus(Enum):
    """Alert lifecycle status."""

    FIRING = "firing"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


class ComparisonOperator(Enum):
    """Operators a rule condition can apply to a metric value."""

    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    EQ = "eq"
    NEQ = "neq"


class Aggregation(Enum):
    """How a histogram is reduced to a single value."""

    AVG = "avg"
    MAX = "max"
    # Raw observation count, not normalized by time
    RATE = "rate"


class ChannelType(Enum):
    """Notification delivery channel types."""

    SLACK = "slack"
    EMAIL = "email"
    PAGERDUTY = "pagerduty"
    WEBHOOK = "webhook"


@dataclass
class AlertEngineConfig:
    """Alert rule engine configuration."""

    enabled: bool = True
    evaluation_interval_seconds: float = 30.0
    # Minimum quiet period after a resolve before the same key may fire again
    repeat_interval_seconds: float = 300.0
    # Cap on rule-owned alerts; fires beyond it are dropped
    max_active_alerts: int = 100
    # Cap on manual alerts; the oldest is resolved to make room
    max_manual_alerts: int = 100
    # Minimum time between two fires of the same key
    deduplication_window_seconds: float = 60.0
    max_history: int = 1000
    environment: str = "development"
    service_name: str = "voice-agent-v2"
    register_default_rules: bool = True
