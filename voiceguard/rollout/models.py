"""Rollout state, health check results, history, and controller events."""

import enum
import uuid
import zlib
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from voiceguard.alerting import AlertSeverity

from .config import RolloutStage


class IssueType(enum.Enum):
    ERROR_RATE = "error_rate"
    LATENCY = "latency"
    CIRCUIT_BREAKER = "circuit_breaker"
    FAILED_CALLS = "failed_calls"


class RecommendedAction(enum.Enum):
    MONITOR = "monitor"
    INVESTIGATE = "investigate"
    ROLLBACK = "rollback"


class HistoryAction(enum.Enum):
    ADVANCE = "advance"
    ROLLBACK = "rollback"
    ROLLBACK_TENANT = "rollback_tenant"
    ENABLE_TENANT = "enable_tenant"


class RolloutAlertType(enum.Enum):
    HEALTH_DEGRADATION = "health_degradation"
    ROLLBACK_TRIGGERED = "rollback_triggered"
    ROLLBACK_RECOMMENDED = "rollback_recommended"
    STAGE_ADVANCED = "stage_advanced"
    STAGE_BLOCKED = "stage_blocked"
    SLA_VIOLATION = "sla_violation"
    AUTO_ADVANCE_READY = "auto_advance_ready"
    CIRCUIT_BREAKER_TRIGGERED = "circuit_breaker_triggered"
    ERROR_RATE_SPIKE = "error_rate_spike"
    LATENCY_SPIKE = "latency_spike"


ISSUE_ALERT_TYPES = {
    IssueType.ERROR_RATE: RolloutAlertType.ERROR_RATE_SPIKE,
    IssueType.LATENCY: RolloutAlertType.LATENCY_SPIKE,
    IssueType.CIRCUIT_BREAKER: RolloutAlertType.CIRCUIT_BREAKER_TRIGGERED,
}


def alert_type_for_issue(issue_type: IssueType) -> RolloutAlertType:
    return ISSUE_ALERT_TYPES.get(issue_type, RolloutAlertType.HEALTH_DEGRADATION)


@dataclass
class RolloutStatus:
    """Current rollout state as held by the rollout store."""

    current_stage: RolloutStage
    percentage: int
    enabled: bool
    stage_started_at: datetime
    enabled_tenants: List[str] = field(default_factory=list)
    disabled_tenants: List[str] = field(default_factory=list)
    stage_initiated_by: Optional[str] = None
    last_health_check: Optional["HealthCheckResult"] = None

    def includes_tenant(self, tenant_id: str) -> bool:
        """Whether a tenant is routed to the rolled-out feature.

        Explicit overrides win; otherwise a stable hash of the tenant id
        places it in one of 100 buckets compared with the percentage.
        """
        if tenant_id in self.disabled_tenants:
            return False
        if tenant_id in self.enabled_tenants:
            return True
        if not self.enabled:
            return False
        return zlib.crc32(tenant_id.encode("utf-8")) % 100 < self.percentage

    def to_dict(self) -> dict:
        return {
            "current_stage": self.current_stage.value,
            "percentage": self.percentage,
            "enabled": self.enabled,
            "stage_started_at": self.stage_started_at.isoformat(),
            "enabled_tenants": list(self.enabled_tenants),
            "disabled_tenants": list(self.disabled_tenants),
            "stage_initiated_by": self.stage_initiated_by,
            "last_health_check": self.last_health_check.to_dict() if self.last_health_check else None,
        }


@dataclass
class RolloutMetrics:
    """Call health aggregated over the monitoring window."""

    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    error_rate: float = 0.0
    avg_latency_ms: float = 0.0
    p50_latency_ms: float = 0.0
    p95_latency_ms: float = 0.0
    p99_latency_ms: float = 0.0
    circuit_breaker_opens: int = 0
    active_calls: int = 0

    @property
    def failed_calls_rate(self) -> float:
        return self.failed_calls / self.total_calls if self.total_calls else 0.0

    def to_dict(self) -> dict:
        return {
            "total_calls": self.total_calls,
            "successful_calls": self.successful_calls,
            "failed_calls": self.failed_calls,
            "error_rate": self.error_rate,
            "avg_latency_ms": self.avg_latency_ms,
            "p50_latency_ms": self.p50_latency_ms,
            "p95_latency_ms": self.p95_latency_ms,
            "p99_latency_ms": self.p99_latency_ms,
            "circuit_breaker_opens": self.circuit_breaker_opens,
            "active_calls": self.active_calls,
        }


@dataclass
class RolloutIssue:
    severity: AlertSeverity
    issue_type: IssueType
    message: str
    current_value: float
    threshold_value: float
    recommended_action: RecommendedAction

    def to_dict(self) -> dict:
        return {
            "severity": self.severity.value,
            "type": self.issue_type.value,
            "message": self.message,
            "current_value": self.current_value,
            "threshold_value": self.threshold_value,
            "recommended_action": self.recommended_action.value,
        }


@dataclass
class HealthCheckResult:
    timestamp: datetime
    healthy: bool
    can_advance: bool
    should_rollback: bool
    metrics: RolloutMetrics
    issues: List[RolloutIssue] = field(default_factory=list)
    blockers: List[str] = field(default_factory=list)

    @property
    def critical_issues(self) -> List[RolloutIssue]:
        return [i for i in self.issues if i.severity == AlertSeverity.CRITICAL]

    @property
    def warning_issues(self) -> List[RolloutIssue]:
        return [i for i in self.issues if i.severity == AlertSeverity.WARNING]

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "healthy": self.healthy,
            "can_advance": self.can_advance,
            "should_rollback": self.should_rollback,
            "metrics": self.metrics.to_dict(),
            "issues": [i.to_dict() for i in self.issues],
            "blockers": list(self.blockers),
        }


@dataclass
class RolloutHistoryEntry:
    timestamp: datetime
    action: HistoryAction
    from_stage: RolloutStage
    to_stage: RolloutStage
    from_percentage: int
    to_percentage: int
    initiated_by: str
    reason: str = ""
    tenant_id: Optional[str] = None
    health_metrics: Optional[RolloutMetrics] = None
    entry_id: str = field(default_factory=lambda: f"hist_{uuid.uuid4().hex[:16]}")

    def to_dict(self) -> dict:
        return {
            "entry_id": self.entry_id,
            "timestamp": self.timestamp.isoformat(),
            "action": self.action.value,
            "from_stage": self.from_stage.value,
            "to_stage": self.to_stage.value,
            "from_percentage": self.from_percentage,
            "to_percentage": self.to_percentage,
            "initiated_by": self.initiated_by,
            "reason": self.reason,
            "tenant_id": self.tenant_id,
            "health_metrics": self.health_metrics.to_dict() if self.health_metrics else None,
        }


@dataclass
class RolloutAlertEvent:
    """Event delivered to ``on_alert`` handlers."""

    event_type: RolloutAlertType
    severity: AlertSeverity
    stage: RolloutStage
    percentage: int
    message: str
    timestamp: datetime
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "type": self.event_type.value,
            "severity": self.severity.value,
            "stage": self.stage.value,
            "percentage": self.percentage,
            "message": self.message,
            "details": dict(self.details),
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class RolloutOperationResult:
    success: bool
    status: Optional[RolloutStatus] = None
    error: Optional[str] = None
    health_check: Optional[HealthCheckResult] = None
