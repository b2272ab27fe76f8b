"""Rollout health controller.

Runs the periodic rollout health check, turns critical and persistent
warning issues into events and alerts, optionally rolls the rollout
back, and exposes the manual advance / rollback / tenant operations.

Example:
    controller = RolloutHealthController(store, engine, provider)
    unsubscribe = controller.on_alert(lambda event: print(event.message))
    await controller.start()
"""

import inspect
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set, Union

from voiceguard.alerting import (
    Aggregation,
    Alert,
    AlertCondition,
    AlertRule,
    AlertRuleEngine,
    AlertSeverity,
    ChannelType,
    ComparisonOperator,
)
from voiceguard.clock import Clock, system_clock, to_datetime
from voiceguard.logging_config import LogContext
from voiceguard.observability import VoiceMetricNames
from voiceguard.scheduling import PeriodicTask

from .config import (
    STAGE_PROGRESSION,
    HealthControllerConfig,
    RollbackLevel,
    RolloutStage,
    StageConfig,
    default_stage_configs,
    get_next_stage,
    get_previous_stage,
)
from .escalation import WarningEscalationTracker
from .health import MetricsSummaryProvider, evaluate_health
from .models import (
    HealthCheckResult,
    HistoryAction,
    RolloutAlertEvent,
    RolloutAlertType,
    RolloutHistoryEntry,
    RolloutIssue,
    RolloutOperationResult,
    RolloutStatus,
    alert_type_for_issue,
)
from .store import RolloutStore

logger = logging.getLogger(__name__)

RolloutAlertHandler = Callable[[RolloutAlertEvent], Union[None, Awaitable[None]]]

ROLLOUT_COMPONENT = "rollout"
RESOLVED_CONDITION_CLEARED = "Rollout condition cleared"
RESOLVED_ROLLOUT_INACTIVE = "Rollout inactive"


class RolloutHealthController:
    """Watches rollout health and acts on it."""

    def __init__(
        self,
        store: RolloutStore,
        alert_engine: AlertRuleEngine,
        metrics_provider: MetricsSummaryProvider,
        config: Optional[HealthControllerConfig] = None,
        stage_configs: Optional[Dict[RolloutStage, StageConfig]] = None,
        clock: Clock = system_clock,
    ):
        self._store = store
        self._alert_engine = alert_engine
        self._metrics_provider = metrics_provider
        self._config = config or HealthControllerConfig()
        self._stage_configs = stage_configs or default_stage_configs()
        self._clock = clock

        self._handlers: List[RolloutAlertHandler] = []
        self._events: Deque[RolloutAlertEvent] = deque(maxlen=self._config.max_events)
        self._escalation = WarningEscalationTracker(
            max_consecutive=self._config.max_consecutive_warnings,
            escalation_seconds=self._config.warning_escalation_seconds,
        )
        self._last_rollback_at: Optional[float] = None
        self._cycle_in_progress = False
        # Alerts raised by monitoring cycles, by identity; one active alert per key
        self._cycle_alerts: Dict[str, str] = {}
        self._raised_keys: Set[str] = set()
        self._task = PeriodicTask(
            "rollout-monitoring",
            self.run_cycle,
            self._config.monitoring_interval_seconds,
        )
        self._rule_ids: List[str] = []
        if self._config.register_alert_rules:
            self.register_alert_rules()

    @property
    def config(self) -> HealthControllerConfig:
        return self._config

    @property
    def is_running(self) -> bool:
        return self._task.is_running

    # ── Lifecycle ─────────────────────────────────────────────────────

    async def start(self) -> None:
        if not self._config.enabled:
            logger.info("Rollout health monitoring disabled")
            return
        if self._task.is_running:
            return
        logger.info(
            "Starting rollout health monitoring",
            extra={"extra_data": {
                "interval_seconds": self._config.monitoring_interval_seconds,
                "auto_rollback": self._config.auto_rollback_on_critical,
            }},
        )
        await self._task.start()

    async def stop(self) -> None:
        await self._task.stop()
        self._escalation.clear()
        logger.info("Rollout health monitoring stopped")

    def reset(self) -> None:
        """Drop events, escalation streaks and the suppression window.

        Rollout rules missing from the engine (after an engine reset)
        are registered again.
        """
        self._events.clear()
        self._escalation.clear()
        self._last_rollback_at = None
        self._cycle_in_progress = False
        self._cycle_alerts.clear()
        if self._config.register_alert_rules and not all(
            self._alert_engine.get_rule(i) for i in self._rule_ids
        ):
            self._rule_ids = []
            self.register_alert_rules()

    def on_alert(self, handler: RolloutAlertHandler) -> Callable[[], None]:
        """Register an event handler. Returns a callable that unregisters it."""
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def register_alert_rules(self) -> List[AlertRule]:
        """Add the rollout alert rules to the engine, once."""
        if self._rule_ids:
            return [r for r in (self._alert_engine.get_rule(i) for i in self._rule_ids) if r]
        labels = {"component": ROLLOUT_COMPONENT}
        annotations = {"dashboard": "/admin/rollout"}
        rules = [
            AlertRule(
                name="Rollout Error Rate Critical",
                description="Rollout error rate exceeds the no-go threshold",
                severity=AlertSeverity.CRITICAL,
                condition=AlertCondition(
                    metric=VoiceMetricNames.ROLLOUT_ERROR_RATE,
                    operator=ComparisonOperator.GT,
                    threshold=0.05,
                    aggregation=Aggregation.AVG,
                    window_seconds=300,
                ),
                labels=dict(labels),
                annotations={**annotations, "runbook": "Check error logs, consider rollback if persistent"},
                notification_channels=list(self._config.default_channels),
            ),
            AlertRule(
                name="Rollout Latency Critical",
                description="Rollout p95 latency exceeds the no-go threshold",
                severity=AlertSeverity.CRITICAL,
                condition=AlertCondition(
                    metric=VoiceMetricNames.ROLLOUT_P95_LATENCY_MS,
                    operator=ComparisonOperator.GT,
                    threshold=1200,
                    aggregation=Aggregation.MAX,
                    window_seconds=300,
                ),
                labels=dict(labels),
                annotations={**annotations, "runbook": "Investigate latency sources"},
                notification_channels=list(self._config.default_channels),
            ),
            AlertRule(
                name="Rollout Error Rate Warning",
                description="Rollout error rate approaching the no-go threshold",
                severity=AlertSeverity.WARNING,
                condition=AlertCondition(
                    metric=VoiceMetricNames.ROLLOUT_ERROR_RATE,
                    operator=ComparisonOperator.GT,
                    threshold=0.02,
                    aggregation=Aggregation.AVG,
                    window_seconds=300,
                ),
                labels=dict(labels),
                annotations={**annotations, "runbook": "Monitor closely, may need intervention soon"},
                notification_channels=[ChannelType.SLACK],
            ),
        ]
        for rule in rules:
            self._alert_engine.add_rule(rule)
            self._rule_ids.append(rule.rule_id)
        logger.info("Rollout alert rules registered")
        return rules

    # ── Monitoring ────────────────────────────────────────────────────

    def is_in_suppression_window(self) -> bool:
        if self._last_rollback_at is None:
            return False
        return self._clock() - self._last_rollback_at < self._config.suppression_window_seconds

    async def run_cycle(self) -> Optional[HealthCheckResult]:
        """Run one monitoring cycle.

        Returns the health check result, or None when the cycle was
        skipped (already running, suppressed, rollout off, store error).
        """
        if self._cycle_in_progress:
            logger.debug("Rollout monitoring cycle already running, skipping")
            return None

        self._cycle_in_progress = True
        try:
            if self.is_in_suppression_window():
                logger.debug("Inside post-rollback suppression window, skipping cycle")
                return None
            try:
                status = await self._store.get_status()
            except Exception as e:
                logger.error("Failed to read rollout status: %s", e)
                return None
            if not status.enabled or status.percentage == 0:
                self._resolve_cycle_alerts(set(), RESOLVED_ROLLOUT_INACTIVE)
                return None

            with LogContext(extra={"stage": status.current_stage.value, "percentage": status.percentage}):
                result = await self.check_health(status)
                await self._process_health_check(status, result)
                return result
        finally:
            self._cycle_in_progress = False

    async def check_health(self, status: Optional[RolloutStatus] = None) -> HealthCheckResult:
        """Collect metrics, classify them, and save the snapshot."""
        if status is None:
            status = await self._store.get_status()
        metrics = await self._metrics_provider.collect(self._config.metrics_window_seconds)
        result = evaluate_health(
            status,
            metrics,
            self._stage_config(status.current_stage),
            to_datetime(self._clock()),
        )
        registry = self._metrics_provider.registry
        registry.set_gauge(VoiceMetricNames.ROLLOUT_ERROR_RATE, metrics.error_rate)
        registry.set_gauge(VoiceMetricNames.ROLLOUT_P95_LATENCY_MS, metrics.p95_latency_ms)
        try:
            await self._store.save_health_check(result)
        except Exception as e:
            logger.error("Failed to store health check result: %s", e)
        logger.info(
            "Rollout health check complete",
            extra={"extra_data": {
                "healthy": result.healthy,
                "can_advance": result.can_advance,
                "should_rollback": result.should_rollback,
                "issues": len(result.issues),
            }},
        )
        return result

    async def _process_health_check(self, status: RolloutStatus, result: HealthCheckResult) -> None:
        self._raised_keys = set()
        await self._act_on_health_check(status, result)
        self._resolve_cycle_alerts(self._raised_keys, RESOLVED_CONDITION_CLEARED)

    async def _act_on_health_check(self, status: RolloutStatus, result: HealthCheckResult) -> None:
        critical = result.critical_issues
        if critical:
            await self._handle_critical_issues(status, critical, result)

        await self._handle_warning_issues(status, result.warning_issues)

        if result.should_rollback:
            await self._handle_rollback_recommendation(status, result)
            if self._config.auto_rollback_on_critical:
                await self._trigger_auto_rollback(status, critical, result)
            return

        if result.can_advance and self._stage_config(status.current_stage).auto_advance:
            await self._handle_auto_advance_ready(status, result)

    async def _handle_critical_issues(
        self,
        status: RolloutStatus,
        issues: List[RolloutIssue],
        result: HealthCheckResult,
    ) -> None:
        for issue in issues:
            alert_type = alert_type_for_issue(issue.issue_type)
            await self._emit(
                alert_type,
                AlertSeverity.CRITICAL,
                status,
                issue.message,
                {
                    "current_value": issue.current_value,
                    "threshold_value": issue.threshold_value,
                    "recommended_action": issue.recommended_action.value,
                    "metrics": result.metrics.to_dict(),
                },
            )
            self._create_alert(
                name=f"Rollout {alert_type.value}: {issue.issue_type.value}",
                description=issue.message,
                severity=AlertSeverity.CRITICAL,
                alert_type=alert_type,
                status=status,
                labels={"issue_type": issue.issue_type.value},
                annotations={"recommended_action": issue.recommended_action.value},
                channels=self._config.default_channels,
                key=f"{alert_type.value}:{issue.issue_type.value}:{status.current_stage.value}",
            )

    async def _handle_warning_issues(self, status: RolloutStatus, issues: List[RolloutIssue]) -> None:
        now = self._clock()
        for decision in self._escalation.observe(issues, status.current_stage, now):
            issue, streak = decision.issue, decision.streak
            duration = streak.duration(now)
            message = (
                f"ESCALATED: {issue.message} ({streak.count} consecutive warnings)"
                if decision.escalated
                else issue.message
            )
            alert_type = alert_type_for_issue(issue.issue_type)
            await self._emit(
                alert_type,
                AlertSeverity.CRITICAL if decision.escalated else AlertSeverity.WARNING,
                status,
                message,
                {
                    "current_value": issue.current_value,
                    "threshold_value": issue.threshold_value,
                    "recommended_action": issue.recommended_action.value,
                    "consecutive_warnings": streak.count,
                    "warning_duration_seconds": duration,
                    "escalated": decision.escalated,
                },
            )
            if decision.escalated:
                self._create_alert(
                    name=f"Rollout Warning Escalated: {issue.issue_type.value}",
                    description=f"{issue.message} - Persisted for {round(duration / 60)} minutes",
                    severity=AlertSeverity.CRITICAL,
                    alert_type=alert_type,
                    status=status,
                    labels={"issue_type": issue.issue_type.value, "escalated": "true"},
                    channels=self._config.default_channels,
                    key=f"escalated:{issue.issue_type.value}:{status.current_stage.value}",
                )

    async def _handle_rollback_recommendation(self, status: RolloutStatus, result: HealthCheckResult) -> None:
        count = len(result.critical_issues)
        await self._emit(
            RolloutAlertType.ROLLBACK_RECOMMENDED,
            AlertSeverity.CRITICAL,
            status,
            f"Rollback recommended: {count} critical issues detected",
            {"issues": [i.to_dict() for i in result.issues], "metrics": result.metrics.to_dict()},
        )
        self._create_alert(
            name="Rollout Rollback Recommended",
            description=(
                f"Rollout at {status.percentage}% is experiencing critical issues. Rollback is recommended."
            ),
            severity=AlertSeverity.CRITICAL,
            alert_type=RolloutAlertType.ROLLBACK_RECOMMENDED,
            status=status,
            labels={"issue_count": str(count)},
            annotations={"action": "Review dashboard and consider rollback", "dashboard": "/admin/rollout"},
            channels=self._escalation_channels(),
            key=f"{RolloutAlertType.ROLLBACK_RECOMMENDED.value}:{status.current_stage.value}",
        )

    async def _handle_auto_advance_ready(self, status: RolloutStatus, result: HealthCheckResult) -> None:
        next_stage = get_next_stage(status.current_stage)
        if next_stage is None:
            return
        await self._emit(
            RolloutAlertType.AUTO_ADVANCE_READY,
            AlertSeverity.INFO,
            status,
            f"Rollout ready to advance from {status.current_stage.value} to {next_stage.value}",
            {"next_stage": next_stage.value, "metrics": result.metrics.to_dict(), "go_conditions_met": True},
        )
        self._create_alert(
            name="Rollout Auto-Advance Ready",
            description=(
                f"Rollout at {status.current_stage.value} meets all go conditions "
                f"for advancement to {next_stage.value}"
            ),
            severity=AlertSeverity.INFO,
            alert_type=RolloutAlertType.AUTO_ADVANCE_READY,
            status=status,
            labels={"next_stage": next_stage.value},
            channels=self._config.default_channels,
            key=f"{RolloutAlertType.AUTO_ADVANCE_READY.value}:{status.current_stage.value}",
        )

    async def _trigger_auto_rollback(
        self,
        status: RolloutStatus,
        issues: List[RolloutIssue],
        result: HealthCheckResult,
    ) -> None:
        reason = "Auto-rollback triggered: " + ", ".join(i.issue_type.value for i in issues)
        logger.error(
            "Triggering auto-rollback",
            extra={"extra_data": {
                "stage": status.current_stage.value,
                "percentage": status.percentage,
                "issues": len(issues),
                "reason": reason,
            }},
        )
        try:
            new_status = await self._apply_stage_change(
                status,
                RolloutStage.DISABLED,
                HistoryAction.ROLLBACK,
                self._config.system_actor,
                reason,
                result,
            )
        except Exception as e:
            logger.error("Auto-rollback failed: %s", e)
            return

        self._last_rollback_at = self._clock()
        await self._emit(
            RolloutAlertType.ROLLBACK_TRIGGERED,
            AlertSeverity.CRITICAL,
            status,
            f"Auto-rollback executed: {_describe(status)} -> {_describe(new_status)}",
            {
                "from_stage": status.current_stage.value,
                "to_stage": new_status.current_stage.value,
                "from_percentage": status.percentage,
                "to_percentage": new_status.percentage,
                "issues": [i.to_dict() for i in issues],
                "automatic": True,
            },
        )
        self._create_alert(
            name="Rollout Auto-Rollback Executed",
            description=(
                f"Rollout automatically rolled back from {status.percentage}% "
                f"to {new_status.percentage}% due to critical issues"
            ),
            severity=AlertSeverity.CRITICAL,
            alert_type=RolloutAlertType.ROLLBACK_TRIGGERED,
            status=status,
            labels={
                "automatic": "true",
                "from_percentage": str(status.percentage),
                "to_percentage": str(new_status.percentage),
            },
            channels=self._escalation_channels(),
        )

    # ── Manual operations ─────────────────────────────────────────────

    async def advance(
        self,
        initiated_by: str,
        reason: str = "",
        target_stage: Optional[RolloutStage] = None,
        skip_health_check: bool = False,
    ) -> RolloutOperationResult:
        """Move the rollout forward, by default to the next stage."""
        try:
            status = await self._store.get_status()
        except Exception as e:
            logger.error("Failed to read rollout status: %s", e)
            return RolloutOperationResult(success=False, error=str(e))

        target = target_stage or get_next_stage(status.current_stage)
        if target is None:
            return RolloutOperationResult(success=False, status=status, error="Rollout is already complete")
        if STAGE_PROGRESSION.index(target) <= STAGE_PROGRESSION.index(status.current_stage):
            return RolloutOperationResult(
                success=False,
                status=status,
                error=f"Cannot advance from {status.current_stage.value} to {target.value}",
            )

        health: Optional[HealthCheckResult] = None
        if not skip_health_check:
            health = await self.check_health(status)
            if not health.can_advance:
                blocked_reason = "; ".join(health.blockers)
                await self._stage_blocked(status, target, blocked_reason)
                return RolloutOperationResult(
                    success=False,
                    status=status,
                    error=f"Advancement blocked: {blocked_reason}",
                    health_check=health,
                )

        try:
            new_status = await self._apply_stage_change(
                status, target, HistoryAction.ADVANCE, initiated_by, reason, health
            )
        except Exception as e:
            logger.error("Failed to advance rollout: %s", e)
            return RolloutOperationResult(success=False, status=status, error=str(e), health_check=health)

        logger.info(
            "Rollout advanced",
            extra={"extra_data": {
                "from_stage": status.current_stage.value,
                "to_stage": target.value,
                "initiated_by": initiated_by,
            }},
        )
        await self._emit(
            RolloutAlertType.STAGE_ADVANCED,
            AlertSeverity.INFO,
            new_status,
            f"Rollout advanced: {_describe(status)} -> {_describe(new_status)}",
            {
                "from_stage": status.current_stage.value,
                "to_stage": new_status.current_stage.value,
                "from_percentage": status.percentage,
                "to_percentage": new_status.percentage,
                "initiated_by": initiated_by,
            },
        )
        self._create_alert(
            name="Rollout Stage Advanced",
            description=(
                f"Rollout advanced from {status.current_stage.value} to "
                f"{new_status.current_stage.value} ({new_status.percentage}%)"
            ),
            severity=AlertSeverity.INFO,
            alert_type=RolloutAlertType.STAGE_ADVANCED,
            status=new_status,
            labels={"from_stage": status.current_stage.value, "initiated_by": initiated_by},
            channels=self._config.default_channels,
        )
        return RolloutOperationResult(success=True, status=new_status, health_check=health)

    async def rollback(
        self,
        initiated_by: str,
        reason: str = "",
        level: RollbackLevel = RollbackLevel.TOTAL,
        tenant_id: Optional[str] = None,
    ) -> RolloutOperationResult:
        """Roll back to 0% (total), one stage (partial), or for one tenant."""
        if level == RollbackLevel.TENANT:
            if not tenant_id:
                return RolloutOperationResult(
                    success=False, error="Tenant ID required for tenant-level rollback"
                )
            return await self.set_tenant_override(tenant_id, False, initiated_by, reason)

        try:
            status = await self._store.get_status()
        except Exception as e:
            logger.error("Failed to read rollout status: %s", e)
            return RolloutOperationResult(success=False, error=str(e))

        if status.current_stage == RolloutStage.DISABLED and status.percentage == 0:
            return RolloutOperationResult(success=False, status=status, error="Rollout is already disabled")

        target = RolloutStage.DISABLED
        if level == RollbackLevel.PARTIAL:
            target = get_previous_stage(status.current_stage) or RolloutStage.DISABLED

        try:
            new_status = await self._apply_stage_change(
                status, target, HistoryAction.ROLLBACK, initiated_by, reason, status.last_health_check
            )
        except Exception as e:
            logger.error("Failed to roll back rollout: %s", e)
            return RolloutOperationResult(success=False, status=status, error=str(e))

        self._last_rollback_at = self._clock()
        logger.warning(
            "Rollout rolled back",
            extra={"extra_data": {
                "level": level.value,
                "from_percentage": status.percentage,
                "to_percentage": new_status.percentage,
                "initiated_by": initiated_by,
                "reason": reason,
            }},
        )
        await self._emit(
            RolloutAlertType.ROLLBACK_TRIGGERED,
            AlertSeverity.WARNING,
            new_status,
            f"Manual rollback executed: {_describe(status)} -> {_describe(new_status)}",
            {
                "from_stage": status.current_stage.value,
                "to_stage": new_status.current_stage.value,
                "from_percentage": status.percentage,
                "to_percentage": new_status.percentage,
                "initiated_by": initiated_by,
                "reason": reason,
                "automatic": False,
            },
        )
        self._create_alert(
            name="Rollout Manual Rollback",
            description=(
                f"Rollout manually rolled back from {status.percentage}% to {new_status.percentage}%: {reason}"
            ),
            severity=AlertSeverity.WARNING,
            alert_type=RolloutAlertType.ROLLBACK_TRIGGERED,
            status=new_status,
            labels={
                "automatic": "false",
                "from_percentage": str(status.percentage),
                "to_percentage": str(new_status.percentage),
                "initiated_by": initiated_by,
            },
            channels=self._config.default_channels,
        )
        return RolloutOperationResult(success=True, status=new_status)

    async def set_tenant_override(
        self,
        tenant_id: str,
        enable: bool,
        initiated_by: str,
        reason: str = "",
    ) -> RolloutOperationResult:
        """Force the rollout on or off for a single tenant."""
        try:
            status = await self._store.get_status()
            new_status = await self._store.set_tenant_override(tenant_id, enable)
            await self._store.append_history_entry(RolloutHistoryEntry(
                timestamp=to_datetime(self._clock()),
                action=HistoryAction.ENABLE_TENANT if enable else HistoryAction.ROLLBACK_TENANT,
                from_stage=status.current_stage,
                to_stage=status.current_stage,
                from_percentage=status.percentage,
                to_percentage=status.percentage,
                initiated_by=initiated_by,
                reason=f"Tenant {tenant_id} {'enabled' if enable else 'disabled'}: {reason}",
                tenant_id=tenant_id,
            ))
        except Exception as e:
            logger.error("Failed to update tenant override for %s: %s", tenant_id, e)
            return RolloutOperationResult(success=False, error=str(e))

        logger.warning(
            "Tenant %s for rollout",
            "enabled" if enable else "disabled",
            extra={"extra_data": {"tenant_id": tenant_id, "initiated_by": initiated_by, "reason": reason}},
        )
        if not enable:
            await self._emit(
                RolloutAlertType.ROLLBACK_TRIGGERED,
                AlertSeverity.WARNING,
                new_status,
                f"Rollout disabled for tenant {tenant_id}: {reason}",
                {"tenant_id": tenant_id, "initiated_by": initiated_by, "automatic": False},
            )
        return RolloutOperationResult(success=True, status=new_status)

    async def get_history(self, limit: int = 50) -> List[RolloutHistoryEntry]:
        return await self._store.get_history(limit)

    # ── Queries ───────────────────────────────────────────────────────

    def get_rollout_alerts(self) -> List[Alert]:
        return [
            alert
            for alert in self._alert_engine.get_active_alerts()
            if alert.labels.get("component") == ROLLOUT_COMPONENT or "Rollout" in alert.name
        ]

    def get_rollout_alert_summary(self) -> Dict[str, int]:
        alerts = self.get_rollout_alerts()
        summary = {"total": len(alerts)}
        for severity in AlertSeverity:
            summary[severity.value] = sum(1 for a in alerts if a.severity == severity)
        return summary

    def get_recent_events(self, limit: int = 50) -> List[RolloutAlertEvent]:
        """Most recent controller events, newest last."""
        events = list(self._events)
        return events[-limit:] if limit else events

    # ── Internals ─────────────────────────────────────────────────────

    def _stage_config(self, stage: RolloutStage) -> StageConfig:
        return self._stage_configs.get(stage) or default_stage_configs()[stage]

    def _escalation_channels(self) -> List[ChannelType]:
        channels = list(self._config.default_channels)
        if self._config.escalation_channel not in channels:
            channels.append(self._config.escalation_channel)
        return channels

    async def _apply_stage_change(
        self,
        status: RolloutStatus,
        target: RolloutStage,
        action: HistoryAction,
        initiated_by: str,
        reason: str,
        health: Optional[HealthCheckResult],
    ) -> RolloutStatus:
        percentage = self._stage_config(target).percentage
        new_status = await self._store.set_percentage_and_stage(target, percentage, initiated_by)
        await self._store.append_history_entry(RolloutHistoryEntry(
            timestamp=to_datetime(self._clock()),
            action=action,
            from_stage=status.current_stage,
            to_stage=target,
            from_percentage=status.percentage,
            to_percentage=percentage,
            initiated_by=initiated_by,
            reason=reason,
            health_metrics=health.metrics if health else None,
        ))
        return new_status

    async def _stage_blocked(self, status: RolloutStatus, target: RolloutStage, reason: str) -> None:
        await self._emit(
            RolloutAlertType.STAGE_BLOCKED,
            AlertSeverity.WARNING,
            status,
            f"Cannot advance from {status.current_stage.value} to {target.value}: {reason}",
            {"current_stage": status.current_stage.value, "target_stage": target.value, "reason": reason},
        )
        self._create_alert(
            name="Rollout Advancement Blocked",
            description=(
                f"Attempt to advance rollout from {status.current_stage.value} "
                f"to {target.value} was blocked: {reason}"
            ),
            severity=AlertSeverity.WARNING,
            alert_type=RolloutAlertType.STAGE_BLOCKED,
            status=status,
            labels={"target_stage": target.value},
            channels=self._config.default_channels,
        )

    def _create_alert(
        self,
        name: str,
        description: str,
        severity: AlertSeverity,
        alert_type: RolloutAlertType,
        status: RolloutStatus,
        channels: List[ChannelType],
        labels: Optional[Dict[str, str]] = None,
        annotations: Optional[Dict[str, str]] = None,
        key: Optional[str] = None,
    ) -> Alert:
        """Raise a manual alert. Keyed alerts are refreshed while the condition persists."""
        alert = self._alert_engine.create_manual_alert(
            name=name,
            description=description,
            severity=severity,
            labels={
                "component": ROLLOUT_COMPONENT,
                "alert_type": alert_type.value,
                "stage": status.current_stage.value,
                "percentage": str(status.percentage),
                **(labels or {}),
            },
            annotations=annotations,
            notification_channels=list(channels),
            key=f"{ROLLOUT_COMPONENT}:{key}" if key else None,
        )
        if key:
            self._cycle_alerts[key] = alert.alert_id
            self._raised_keys.add(key)
        return alert

    def _resolve_cycle_alerts(self, keep: Set[str], reason: str) -> None:
        for key, alert_id in list(self._cycle_alerts.items()):
            if key in keep:
                continue
            del self._cycle_alerts[key]
            if self._alert_engine.resolve_alert(alert_id, reason):
                logger.info("Rollout alert resolved", extra={"extra_data": {"key": key, "reason": reason}})

    async def _emit(
        self,
        event_type: RolloutAlertType,
        severity: AlertSeverity,
        status: RolloutStatus,
        message: str,
        details: Dict[str, Any],
    ) -> RolloutAlertEvent:
        event = RolloutAlertEvent(
            event_type=event_type,
            severity=severity,
            stage=status.current_stage,
            percentage=status.percentage,
            message=message,
            timestamp=to_datetime(self._clock()),
            details=details,
        )
        self._events.append(event)
        logger.info(
            "Rollout alert emitted",
            extra={"extra_data": {
                "type": event_type.value,
                "severity": severity.value,
                "stage": status.current_stage.value,
                "message": message,
            }},
        )
        for handler in list(self._handlers):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error("Rollout alert handler failed: %s", e, exc_info=True)
        return event


def _describe(status: RolloutStatus) -> str:
    return f"{status.current_stage.value} ({status.percentage}%)"
