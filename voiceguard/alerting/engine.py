"""Alert rule engine: evaluates rules on a timer and manages alert lifecycle."""

import asyncio
import inspect
import logging
from collections import deque
from dataclasses import replace
from typing import Any, Callable, Deque, Dict, List, Optional, Set

from voiceguard.clock import Clock, system_clock, to_datetime
from voiceguard.observability import MetricsRegistry
from voiceguard.scheduling import PeriodicTask

from .conditions import evaluate_condition, extract_series_values, state_key
from .config import AlertEngineConfig, AlertSeverity, AlertStatus, ChannelType
from .models import MANUAL_RULE_ID, Alert, AlertRule, AlertState
from .rules import default_alert_rules, generate_rule_id

logger = logging.getLogger(__name__)

NotificationHandler = Callable[[Alert, List[ChannelType]], Any]

RESOLVED_CONDITION_CLEARED = "Condition no longer met"
RESOLVED_RULE_DELETED = "Rule deleted"
RESOLVED_MANUAL_EVICTED = "Evicted: manual alert capacity reached"


class AlertRuleEngine:
    """Evaluates alert rules against a metrics registry.

    Lifecycle per ``(rule, label set)``: ``firing`` may move to
    ``acknowledged``; both move to ``resolved``, which is terminal.
    Fires and resolutions are handed to ``notification_handler`` as
    snapshot copies together with the rule's channels.

    Example:
        engine = AlertRuleEngine(registry, notification_handler=queue.submit)
        engine.add_rule(AlertRule(name="Queue Depth", condition=...))
        await engine.start()
    """

    def __init__(
        self,
        registry: MetricsRegistry,
        config: Optional[AlertEngineConfig] = None,
        notification_handler: Optional[NotificationHandler] = None,
        clock: Clock = system_clock,
    ) -> None:
        self._registry = registry
        self._config = config or AlertEngineConfig()
        self._clock = clock
        self.notification_handler = notification_handler
        self._rules: Dict[str, AlertRule] = {}
        self._active: Dict[str, Alert] = {}
        self._active_by_key: Dict[str, str] = {}
        self._states: Dict[str, AlertState] = {}
        self._history: Deque[Alert] = deque(maxlen=self._config.max_history)
        self._pending: Set[asyncio.Task] = set()
        self._task = PeriodicTask(
            "alert-evaluation",
            self.evaluate_all_rules,
            self._config.evaluation_interval_seconds,
        )
        if self._config.register_default_rules:
            for rule in default_alert_rules():
                self.add_rule(rule)

    @property
    def config(self) -> AlertEngineConfig:
        return self._config

    @property
    def is_running(self) -> bool:
        return self._task.is_running

    # ── Lifecycle ─────────────────────────────────────────────────────

    async def start(self) -> None:
        """Evaluate once immediately, then on every interval."""
        if not self._config.enabled:
            logger.info("Alert engine disabled; not starting")
            return
        if self._task.is_running:
            return
        await self._task.start()
        logger.info(
            "Alert engine started",
            extra={"extra_data": {
                "interval_seconds": self._config.evaluation_interval_seconds,
                "rules": len(self._rules),
            }},
        )

    async def stop(self) -> None:
        if not self._task.is_running:
            return
        await self._task.stop()
        logger.info("Alert engine stopped")

    def reset(self) -> None:
        """Drop all alerts and state and restore the default rules."""
        self._rules.clear()
        self._active.clear()
        self._active_by_key.clear()
        self._states.clear()
        self._history.clear()
        if self._config.register_default_rules:
            for rule in default_alert_rules():
                self.add_rule(rule)

    # ── Rule management ───────────────────────────────────────────────

    def add_rule(self, rule: AlertRule) -> AlertRule:
        """Register a rule, assigning an id if it has none."""
        if not rule.rule_id:
            rule.rule_id = generate_rule_id(rule.name)
        if rule.rule_id in self._rules:
            logger.info("Replacing alert rule %s", rule.rule_id)
        self._rules[rule.rule_id] = rule
        logger.debug("Alert rule added: %s (%s)", rule.name, rule.rule_id)
        return rule

    def update_rule(self, rule_id: str, **changes: Any) -> Optional[AlertRule]:
        """Apply field changes to a rule in place.

        Returns:
            The updated rule, or None if it does not exist.

        Raises:
            TypeError: If a change names a field AlertRule does not have.
        """
        rule = self._rules.get(rule_id)
        if rule is None:
            return None
        changes.pop("rule_id", None)
        updated = replace(rule, **changes)
        for name, value in changes.items():
            setattr(rule, name, getattr(updated, name))
        logger.info("Alert rule updated: %s", rule_id, extra={"extra_data": {"fields": sorted(changes)}})
        return rule

    def remove_rule(self, rule_id: str) -> bool:
        """Delete a rule and resolve every alert it owns."""
        rule = self._rules.pop(rule_id, None)
        if rule is None:
            return False
        now = self._clock()
        for alert in [a for a in self._active.values() if a.rule_id == rule_id]:
            self._resolve(alert, RESOLVED_RULE_DELETED, now)
        for key in [k for k in self._states if k.startswith(f"{rule_id}:")]:
            del self._states[key]
        logger.info("Alert rule removed: %s (%s)", rule.name, rule_id)
        return True

    def set_rule_enabled(self, rule_id: str, enabled: bool) -> bool:
        rule = self._rules.get(rule_id)
        if rule is None:
            return False
        rule.enabled = enabled
        return True

    def get_rule(self, rule_id: str) -> Optional[AlertRule]:
        return self._rules.get(rule_id)

    def get_rules(self) -> List[AlertRule]:
        """Return rules in insertion order."""
        return list(self._rules.values())

    # ── Evaluation ────────────────────────────────────────────────────

    def evaluate_all_rules(self) -> List[Alert]:
        """Evaluate every enabled rule once.

        A rule that raises is logged and skipped; the rest still run.

        Returns:
            Alerts fired during this pass.
        """
        if not self._config.enabled:
            return []
        now = self._clock()
        fired: List[Alert] = []
        for rule in list(self._rules.values()):
            if not rule.enabled:
                continue
            try:
                fired.extend(self.evaluate_rule(rule, now))
            except Exception as e:
                logger.error("Error evaluating rule %s: %s", rule.name, e, exc_info=True)
        self.sweep_states(now)
        return fired

    def evaluate_rule(self, rule: AlertRule, now: Optional[float] = None) -> List[Alert]:
        """Evaluate a single rule against every series of its metric."""
        now = self._clock() if now is None else now
        condition = rule.condition
        true_keys: Set[str] = set()
        fired: List[Alert] = []

        for labels, value in extract_series_values(self._registry, condition):
            key = state_key(rule.rule_id, labels)
            if not evaluate_condition(condition.operator, value, condition.threshold):
                continue
            true_keys.add(key)
            alert = self._maybe_fire(rule, key, labels, value, now)
            if alert is not None:
                fired.append(alert)

        for alert in [a for a in self._active.values() if a.rule_id == rule.rule_id]:
            if alert.state_key not in true_keys:
                self._resolve(alert, RESOLVED_CONDITION_CLEARED, now)
        return fired

    def _maybe_fire(
        self,
        rule: AlertRule,
        key: str,
        labels: Dict[str, str],
        value: float,
        now: float,
    ) -> Optional[Alert]:
        active_id = self._active_by_key.get(key)
        if active_id is not None:
            self._active[active_id].value = value
            return None

        state = self._states.get(key)
        if state is not None:
            if now - state.last_fired_at < self._config.deduplication_window_seconds:
                return None
            if (
                state.last_resolved_at is not None
                and now - state.last_resolved_at < self._config.repeat_interval_seconds
            ):
                return None

        if self._rule_alert_count() >= self._config.max_active_alerts:
            logger.warning(
                "Max active alerts reached; dropping fire for %s",
                rule.name,
                extra={"extra_data": {"rule_id": rule.rule_id, "max": self._config.max_active_alerts}},
            )
            return None

        alert = Alert(
            rule_id=rule.rule_id,
            name=rule.name,
            description=rule.description,
            severity=rule.severity,
            fired_at=to_datetime(now),
            value=value,
            threshold=rule.condition.threshold,
            labels={
                **labels,
                **rule.labels,
                "environment": self._config.environment,
                "service": self._config.service_name,
            },
            annotations=dict(rule.annotations),
            notification_channels=list(rule.notification_channels),
            state_key=key,
        )

        if state is None:
            self._states[key] = AlertState(last_fired_at=now, consecutive_firings=1)
        else:
            state.last_fired_at = now
            state.consecutive_firings += 1
            state.acknowledged_at = None
            state.acknowledged_by = None

        self._register(alert)
        logger.warning(
            "Alert fired: %s",
            alert.name,
            extra={"extra_data": {
                "alert_id": alert.alert_id,
                "rule_id": rule.rule_id,
                "severity": alert.severity.value,
                "value": value,
                "threshold": alert.threshold,
            }},
        )
        self._notify(alert)
        return alert

    def _register(self, alert: Alert) -> None:
        self._active[alert.alert_id] = alert
        self._active_by_key[alert.state_key] = alert.alert_id
        self._history.append(alert)

    def _resolve(self, alert: Alert, reason: str, now: float) -> None:
        alert.status = AlertStatus.RESOLVED
        alert.resolved_at = to_datetime(now)
        alert.resolution_reason = reason
        self._active.pop(alert.alert_id, None)
        if self._active_by_key.get(alert.state_key) == alert.alert_id:
            del self._active_by_key[alert.state_key]

        state = self._states.get(alert.state_key)
        if state is not None:
            state.last_resolved_at = now
            state.consecutive_firings = 0

        logger.info(
            "Alert resolved: %s",
            alert.name,
            extra={"extra_data": {"alert_id": alert.alert_id, "reason": reason}},
        )
        self._notify(alert)

    # ── Alert operations ──────────────────────────────────────────────

    def acknowledge_alert(self, alert_id: str, acknowledged_by: str) -> bool:
        """Acknowledge a firing alert. Any other status is rejected."""
        alert = self._active.get(alert_id)
        if alert is None or alert.status != AlertStatus.FIRING:
            return False
        now = self._clock()
        alert.status = AlertStatus.ACKNOWLEDGED
        alert.acknowledged_at = to_datetime(now)
        alert.acknowledged_by = acknowledged_by
        state = self._states.get(alert.state_key)
        if state is not None:
            state.acknowledged_at = now
            state.acknowledged_by = acknowledged_by
        logger.info("Alert acknowledged: %s by %s", alert.name, acknowledged_by)
        return True

    def resolve_alert(self, alert_id: str, reason: Optional[str] = None) -> bool:
        """Resolve an active alert. Resolved or unknown alerts are rejected."""
        alert = self._active.get(alert_id)
        if alert is None:
            return False
        self._resolve(alert, reason or "Manually resolved", self._clock())
        return True

    def create_manual_alert(
        self,
        name: str,
        description: str,
        severity: AlertSeverity,
        labels: Optional[Dict[str, str]] = None,
        annotations: Optional[Dict[str, str]] = None,
        notification_channels: Optional[List[ChannelType]] = None,
        key: Optional[str] = None,
    ) -> Alert:
        """Create a firing alert that no rule owns.

        Manual alerts skip rule evaluation and deduplication but follow
        the same acknowledge and resolve transitions. They do not count
        against ``max_active_alerts``; once ``max_manual_alerts`` are
        active the oldest manual alert is resolved to make room.

        Args:
            key: Optional identity. While an alert with the same key is
                active it is refreshed in place and returned instead of
                creating (and notifying) a new one.
            notification_channels: Channels to notify. No channels means
                no notification.
        """
        now = self._clock()
        merged_labels = {
            **(labels or {}),
            "environment": self._config.environment,
            "service": self._config.service_name,
            "manual": "true",
        }

        if key is not None:
            existing_id = self._active_by_key.get(f"{MANUAL_RULE_ID}:{key}")
            if existing_id is not None:
                alert = self._active[existing_id]
                alert.description = description
                alert.severity = severity
                alert.labels = merged_labels
                alert.annotations = dict(annotations or {})
                alert.notification_channels = list(notification_channels or [])
                logger.debug("Manual alert refreshed: %s", name, extra={"extra_data": {"key": key}})
                return alert

        self._evict_manual_alerts(now)
        alert = Alert(
            rule_id=MANUAL_RULE_ID,
            name=name,
            description=description,
            severity=severity,
            fired_at=to_datetime(now),
            labels=merged_labels,
            annotations=dict(annotations or {}),
            notification_channels=list(notification_channels or []),
        )
        alert.state_key = f"{MANUAL_RULE_ID}:{key if key is not None else alert.alert_id}"
        self._register(alert)
        logger.warning(
            "Manual alert created: %s",
            name,
            extra={"extra_data": {"alert_id": alert.alert_id, "severity": severity.value}},
        )
        self._notify(alert)
        return alert

    def _rule_alert_count(self) -> int:
        return sum(1 for a in self._active.values() if not a.is_manual)

    def _evict_manual_alerts(self, now: float) -> None:
        manual = [a for a in self._active.values() if a.is_manual]
        excess = len(manual) - self._config.max_manual_alerts + 1
        for alert in manual[:max(0, excess)]:
            logger.warning(
                "Max manual alerts reached; resolving oldest: %s",
                alert.name,
                extra={"extra_data": {"alert_id": alert.alert_id, "max": self._config.max_manual_alerts}},
            )
            self._resolve(alert, RESOLVED_MANUAL_EVICTED, now)

    # ── Queries ───────────────────────────────────────────────────────

    def get_active_alerts(self) -> List[Alert]:
        return list(self._active.values())

    def get_alert(self, alert_id: str) -> Optional[Alert]:
        alert = self._active.get(alert_id)
        if alert is not None:
            return alert
        for alert in self._history:
            if alert.alert_id == alert_id:
                return alert
        return None

    def get_alerts_by_severity(self, severity: AlertSeverity) -> List[Alert]:
        return [a for a in self._active.values() if a.severity == severity]

    def get_alerts_by_status(self, status: AlertStatus) -> List[Alert]:
        seen: Dict[str, Alert] = {a.alert_id: a for a in self._history}
        seen.update(self._active)
        return [a for a in seen.values() if a.status == status]

    def get_alert_history(self, limit: int = 100) -> List[Alert]:
        """Return the most recent fired alerts, oldest first."""
        if limit <= 0:
            return []
        return list(self._history)[-limit:]

    def get_alert_count_by_severity(self) -> Dict[str, int]:
        counts = {s.value: 0 for s in AlertSeverity}
        for alert in self._active.values():
            counts[alert.severity.value] += 1
        return counts

    def get_alert_summary(self) -> dict:
        active = list(self._active.values())
        return {
            "total": len(active),
            "firing": sum(1 for a in active if a.status == AlertStatus.FIRING),
            "acknowledged": sum(1 for a in active if a.status == AlertStatus.ACKNOWLEDGED),
            "by_severity": self.get_alert_count_by_severity(),
        }

    def get_alert_state(self, key: str) -> Optional[AlertState]:
        return self._states.get(key)

    # ── Housekeeping ──────────────────────────────────────────────────

    def sweep_states(self, now: Optional[float] = None) -> int:
        """Drop state for keys with no active alert whose windows have elapsed.

        Returns:
            Number of entries removed.
        """
        now = self._clock() if now is None else now
        dedup = self._config.deduplication_window_seconds
        repeat = self._config.repeat_interval_seconds
        expired = []
        for key, state in self._states.items():
            if key in self._active_by_key:
                continue
            if now - state.last_fired_at < dedup:
                continue
            if state.last_resolved_at is not None and now - state.last_resolved_at < repeat:
                continue
            expired.append(key)
        for key in expired:
            del self._states[key]
        return len(expired)

    # ── Notifications ─────────────────────────────────────────────────

    def _notify(self, alert: Alert) -> None:
        handler = self.notification_handler
        if handler is None:
            return
        channels = list(alert.notification_channels)
        if alert.is_manual and not channels:
            return
        snapshot = replace(
            alert,
            labels=dict(alert.labels),
            annotations=dict(alert.annotations),
            notification_channels=channels,
        )
        try:
            result = handler(snapshot, list(channels))
            if inspect.isawaitable(result):
                self._schedule(result)
        except Exception as e:
            logger.error("Notification handler failed for %s: %s", alert.alert_id, e, exc_info=True)

    def _schedule(self, awaitable) -> None:
        try:
            loop = asyncio.get_running_loop()
            task = asyncio.ensure_future(awaitable, loop=loop)
        except RuntimeError:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            logger.warning("No running event loop; async notification dropped")
            return
        self._pending.add(task)
        task.add_done_callback(self._on_notification_done)

    def _on_notification_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Async notification handler failed: %s", task.exception())
