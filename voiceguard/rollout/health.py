"""Rollout health evaluation: metric collection and go/no-go classification."""

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Protocol, runtime_checkable

from voiceguard.alerting import AlertRuleEngine, AlertSeverity
from voiceguard.clock import Clock, system_clock, to_datetime
from voiceguard.observability import MetricsRegistry, VoiceMetricNames

from .config import StageConfig, get_next_stage
from .models import (
    HealthCheckResult,
    IssueType,
    RecommendedAction,
    RolloutIssue,
    RolloutMetrics,
    RolloutStatus,
)

logger = logging.getLogger(__name__)

CIRCUIT_BREAKER_ALERT_MARKER = "Circuit Breaker"
FORWARDED_CALL_REASON = "assistant-forwarded-call"


@dataclass
class CallRecord:
    """One call as reported by the call log."""

    call_id: str
    status: str
    created_at: datetime
    latency_ms: Optional[float] = None
    ended_reason: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == "completed" or self.ended_reason == FORWARDED_CALL_REASON

    @property
    def failed(self) -> bool:
        return self.status == "failed"


@runtime_checkable
class CallLogSource(Protocol):
    """Aggregate source of recent calls."""

    async def fetch_calls(self, since: datetime) -> List[CallRecord]: ...


class InMemoryCallLog:
    """Call log held in process memory."""

    def __init__(self) -> None:
        self._calls: List[CallRecord] = []

    def record(self, call: CallRecord) -> None:
        self._calls.append(call)

    def clear(self) -> None:
        self._calls.clear()

    async def fetch_calls(self, since: datetime) -> List[CallRecord]:
        return [c for c in self._calls if c.created_at >= since]


def percentile(sorted_values: List[float], p: float) -> float:
    """Nearest-rank percentile (``p`` in 0-100) of an ascending list."""
    if not sorted_values:
        return 0.0
    idx = math.ceil(p / 100 * len(sorted_values)) - 1
    return sorted_values[max(0, min(idx, len(sorted_values) - 1))]


class MetricsSummaryProvider:
    """Builds ``RolloutMetrics`` for the trailing monitoring window.

    Uses the call log when one is configured, otherwise the metrics
    registry. Circuit breaker opens are counted from alert history.
    Any failure yields empty metrics so the control loop keeps running.
    """

    def __init__(
        self,
        registry: MetricsRegistry,
        alert_engine: Optional[AlertRuleEngine] = None,
        call_log: Optional[CallLogSource] = None,
        clock: Clock = system_clock,
    ):
        self._registry = registry
        self._alert_engine = alert_engine
        self._call_log = call_log
        self._clock = clock

    @property
    def registry(self) -> MetricsRegistry:
        return self._registry

    async def collect(self, window_seconds: float) -> RolloutMetrics:
        since_ts = self._clock() - window_seconds
        since = to_datetime(since_ts)
        try:
            if self._call_log is not None:
                metrics = await self._from_call_log(since)
            else:
                metrics = self._from_registry(since_ts)
            metrics.circuit_breaker_opens = self._circuit_breaker_opens(since)
            return metrics
        except Exception as e:
            logger.error("Error calculating rollout metrics: %s", e, exc_info=True)
            return RolloutMetrics()

    async def _from_call_log(self, since: datetime) -> RolloutMetrics:
        calls = await self._call_log.fetch_calls(since)
        active = int(self._registry.get_gauge_value(VoiceMetricNames.ACTIVE_CALLS))
        if not calls:
            return RolloutMetrics(active_calls=active)

        total = len(calls)
        failed = sum(1 for c in calls if c.failed)
        latencies = sorted(c.latency_ms for c in calls if c.latency_ms is not None)
        return RolloutMetrics(
            total_calls=total,
            successful_calls=sum(1 for c in calls if c.succeeded),
            failed_calls=failed,
            error_rate=failed / total,
            avg_latency_ms=round(sum(latencies) / len(latencies)) if latencies else 0.0,
            p50_latency_ms=percentile(latencies, 50),
            p95_latency_ms=percentile(latencies, 95),
            p99_latency_ms=percentile(latencies, 99),
            active_calls=active,
        )

    def _from_registry(self, since: float) -> RolloutMetrics:
        total = int(self._registry.get_counter_total_since(VoiceMetricNames.CALLS_TOTAL, since))
        successful = int(self._registry.get_counter_total_since(VoiceMetricNames.CALLS_SUCCESSFUL, since))
        errors = self._registry.get_counter_total_since(VoiceMetricNames.ERRORS_TOTAL, since)
        active = int(self._registry.get_gauge_value(VoiceMetricNames.ACTIVE_CALLS))
        stats = self._registry.get_histogram_stats_since(VoiceMetricNames.LATENCY, since)
        return RolloutMetrics(
            total_calls=total,
            successful_calls=successful,
            failed_calls=max(0, total - successful - active),
            error_rate=errors / total if total else 0.0,
            avg_latency_ms=stats.avg * 1000 if stats else 0.0,
            p50_latency_ms=stats.percentiles["p50"] * 1000 if stats else 0.0,
            p95_latency_ms=stats.percentiles["p95"] * 1000 if stats else 0.0,
            p99_latency_ms=stats.percentiles["p99"] * 1000 if stats else 0.0,
            active_calls=active,
        )

    def _circuit_breaker_opens(self, since: datetime) -> int:
        if self._alert_engine is None:
            return 0
        return sum(
            1
            for alert in self._alert_engine.get_alert_history(limit=self._alert_engine.config.max_history)
            if CIRCUIT_BREAKER_ALERT_MARKER in alert.name and alert.fired_at >= since
        )


# ── Classification ───────────────────────────────────────────────────


def _pct(value: float) -> str:
    return f"{value * 100:.2f}%"


def check_for_issues(metrics: RolloutMetrics, stage_config: StageConfig) -> List[RolloutIssue]:
    """Compare metrics against the stage's no-go (critical) and go (warning) thresholds."""
    go, no_go = stage_config.go_criteria, stage_config.no_go_criteria
    issues: List[RolloutIssue] = []

    def classify(issue_type, value, critical_at, warning_at, describe, critical_action, warning_action):
        if value > critical_at:
            issues.append(RolloutIssue(
                severity=AlertSeverity.CRITICAL,
                issue_type=issue_type,
                message=describe(value, critical_at, "critical"),
                current_value=value,
                threshold_value=critical_at,
                recommended_action=critical_action,
            ))
        elif value > warning_at:
            issues.append(RolloutIssue(
                severity=AlertSeverity.WARNING,
                issue_type=issue_type,
                message=describe(value, warning_at, "warning"),
                current_value=value,
                threshold_value=warning_at,
                recommended_action=warning_action,
            ))

    classify(
        IssueType.ERROR_RATE,
        metrics.error_rate,
        no_go.max_error_rate,
        go.max_error_rate,
        lambda v, t, tier: f"Error rate {_pct(v)} exceeds {tier} threshold {_pct(t)}",
        RecommendedAction.ROLLBACK,
        RecommendedAction.MONITOR,
    )
    classify(
        IssueType.LATENCY,
        metrics.p95_latency_ms,
        no_go.max_p95_latency_ms,
        go.max_p95_latency_ms,
        lambda v, t, tier: f"p95 latency {v:.0f}ms exceeds {tier} threshold {t:.0f}ms",
        RecommendedAction.INVESTIGATE,
        RecommendedAction.MONITOR,
    )
    classify(
        IssueType.CIRCUIT_BREAKER,
        metrics.circuit_breaker_opens,
        no_go.max_circuit_breaker_opens,
        go.max_circuit_breaker_opens,
        lambda v, t, tier: f"{v} circuit breaker opens exceed {tier} threshold {t}",
        RecommendedAction.ROLLBACK,
        RecommendedAction.INVESTIGATE,
    )
    classify(
        IssueType.FAILED_CALLS,
        metrics.failed_calls_rate,
        no_go.max_failed_calls_rate,
        go.max_failed_calls_rate,
        lambda v, t, tier: f"Failed calls rate {_pct(v)} exceeds {tier} threshold {_pct(t)}",
        RecommendedAction.INVESTIGATE,
        RecommendedAction.MONITOR,
    )
    return issues


def should_rollback(metrics: RolloutMetrics, stage_config: StageConfig) -> bool:
    """True when any no-go threshold is breached."""
    no_go = stage_config.no_go_criteria
    return (
        metrics.error_rate > no_go.max_error_rate
        or metrics.p95_latency_ms > no_go.max_p95_latency_ms
        or metrics.circuit_breaker_opens > no_go.max_circuit_breaker_opens
        or metrics.failed_calls_rate > no_go.max_failed_calls_rate
    )


def advance_blockers(
    status: RolloutStatus,
    metrics: RolloutMetrics,
    issues: List[RolloutIssue],
    stage_config: StageConfig,
    now: datetime,
) -> List[str]:
    """Reasons the rollout may not move to the next stage yet."""
    blockers: List[str] = []
    if get_next_stage(status.current_stage) is None:
        blockers.append("Rollout is already complete")
    if issues:
        blockers.append(f"{len(issues)} open health issue(s)")
    elapsed_hours = (now - status.stage_started_at).total_seconds() / 3600
    if elapsed_hours < stage_config.min_duration_hours:
        blockers.append(
            f"Stage minimum duration not reached ({elapsed_hours:.1f}h of {stage_config.min_duration_hours:g}h)"
        )
    min_calls = stage_config.go_criteria.min_calls
    if metrics.total_calls < min_calls:
        blockers.append(f"Only {metrics.total_calls} calls observed; {min_calls} required")
    return blockers


def evaluate_health(
    status: RolloutStatus,
    metrics: RolloutMetrics,
    stage_config: StageConfig,
    now: datetime,
) -> HealthCheckResult:
    issues = check_for_issues(metrics, stage_config)
    blockers = advance_blockers(status, metrics, issues, stage_config, now)
    return HealthCheckResult(
        timestamp=now,
        healthy=not any(i.severity == AlertSeverity.CRITICAL for i in issues),
        can_advance=not blockers,
        should_rollback=should_rollback(metrics, stage_config),
        metrics=metrics,
        issues=issues,
        blockers=blockers,
    )
