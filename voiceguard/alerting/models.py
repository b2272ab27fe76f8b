"""Alert rule engine data model: rules, conditions, alert instances."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from .config import Aggregation, AlertSeverity, AlertStatus, ChannelType, ComparisonOperator

MANUAL_RULE_ID = "manual"


def generate_alert_id() -> str:
    return f"alert_{uuid.uuid4().hex[:16]}"


@dataclass
class AlertCondition:
    """A single metric comparison, optionally aggregated over a window."""

    metric: str
    operator: ComparisonOperator
    threshold: float
    aggregation: Optional[Aggregation] = None
    window_seconds: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "metric": self.metric,
            "operator": self.operator.value,
            "threshold": self.threshold,
            "aggregation": self.aggregation.value if self.aggregation else None,
            "window_seconds": self.window_seconds,
        }


@dataclass
class AlertRule:
    """An operator-defined rule evaluated on every engine tick.

    Leave ``rule_id`` empty to have the engine assign one on add.
    """

    name: str
    condition: AlertCondition
    severity: AlertSeverity = AlertSeverity.WARNING
    description: str = ""
    rule_id: str = ""
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    enabled: bool = True
    notification_channels: List[ChannelType] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "rule_id": self.rule_id,
            "name": self.name,
            "description": self.description,
            "severity": self.severity.value,
            "condition": self.condition.to_dict(),
            "labels": dict(self.labels),
            "annotations": dict(self.annotations),
            "enabled": self.enabled,
            "notification_channels": [c.value for c in self.notification_channels],
        }


@dataclass
class Alert:
    """A fired alert instance.

    At most one firing or acknowledged instance exists per
    ``(rule_id, label set)``. Resolved instances move to history and
    are never modified again.
    """

    rule_id: str
    name: str
    severity: AlertSeverity
    fired_at: datetime
    alert_id: str = field(default_factory=generate_alert_id)
    description: str = ""
    status: AlertStatus = AlertStatus.FIRING
    value: float = 0.0
    threshold: float = 0.0
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    resolved_at: Optional[datetime] = None
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    resolution_reason: Optional[str] = None
    notification_channels: List[ChannelType] = field(default_factory=list, repr=False)
    state_key: str = field(default="", repr=False)

    @property
    def is_active(self) -> bool:
        return self.status in (AlertStatus.FIRING, AlertStatus.ACKNOWLEDGED)

    @property
    def is_manual(self) -> bool:
        return self.rule_id == MANUAL_RULE_ID

    def to_dict(self) -> dict:
        return {
            "alert_id": self.alert_id,
            "rule_id": self.rule_id,
            "name": self.name,
            "description": self.description,
            "severity": self.severity.value,
            "status": self.status.value,
            "value": self.value,
            "threshold": self.threshold,
            "labels": dict(self.labels),
            "annotations": dict(self.annotations),
            "fired_at": self.fired_at.isoformat(),
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "acknowledged_at": self.acknowledged_at.isoformat() if self.acknowledged_at else None,
            "acknowledged_by": self.acknowledged_by,
            "resolution_reason": self.resolution_reason,
        }


@dataclass
class AlertState:
    """Per ``(rule_id, label set)`` bookkeeping used for fire deduplication."""

    last_fired_at: float
    last_resolved_at: Optional[float] = None
    consecutive_firings: int = 0
    acknowledged_at: Optional[float] = None
    acknowledged_by: Optional[str] = None
