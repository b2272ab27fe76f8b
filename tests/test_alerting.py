"""Tests for the alert rule engine."""

import asyncio

import pytest

from voiceguard.alerting import (
    MANUAL_RULE_ID,
    RESOLVED_CONDITION_CLEARED,
    RESOLVED_MANUAL_EVICTED,
    RESOLVED_RULE_DELETED,
    Aggregation,
    AlertCondition,
    AlertEngineConfig,
    AlertRule,
    AlertRuleEngine,
    AlertSeverity,
    AlertStatus,
    ChannelType,
    ComparisonOperator,
    default_alert_rules,
    evaluate_condition,
    extract_series_values,
    histogram_value,
    state_key,
)
from voiceguard.observability import HistogramMetric, MetricsRegistry, VoiceMetricNames


def gauge_rule(threshold=5, severity=AlertSeverity.WARNING, channels=None, name="Queue Depth High"):
    return AlertRule(
        name=name,
        description="queue depth above threshold",
        severity=severity,
        condition=AlertCondition(metric="queue_depth", operator=ComparisonOperator.GT, threshold=threshold),
        notification_channels=channels or [ChannelType.SLACK],
    )


def make_engine(clock, registry, **overrides):
    config = AlertEngineConfig(register_default_rules=False, **overrides)
    return AlertRuleEngine(registry, config, clock=clock)


# ── Condition Tests ──────────────────────────────────────────────────


class TestConditions:
    def test_operators(self):
        assert evaluate_condition(ComparisonOperator.GT, 2, 1)
        assert not evaluate_condition(ComparisonOperator.GT, 1, 1)
        assert evaluate_condition(ComparisonOperator.GTE, 1, 1)
        assert evaluate_condition(ComparisonOperator.LT, 0, 1)
        assert evaluate_condition(ComparisonOperator.LTE, 1, 1)
        assert evaluate_condition(ComparisonOperator.EQ, 1, 1)
        assert evaluate_condition(ComparisonOperator.NEQ, 2, 1)

    def test_float_operators(self):
        assert not evaluate_condition(ComparisonOperator.EQ, 0.1 + 0.2, 0.3)
        assert evaluate_condition(ComparisonOperator.NEQ, 0.1 + 0.2, 0.3)
        assert evaluate_condition(ComparisonOperator.EQ, 2.5, 2.5)
        assert not evaluate_condition(ComparisonOperator.NEQ, 2.5, 2.5)
        assert evaluate_condition(ComparisonOperator.GT, 0.1 + 0.2, 0.3)
        assert not evaluate_condition(ComparisonOperator.LTE, 0.1 + 0.2, 0.3)

    def test_float_equality_on_histogram_average(self, registry, clock):
        engine = make_engine(clock, registry)
        engine.add_rule(AlertRule(
            name="Latency Pinned",
            description="average latency stuck at exactly 250ms",
            severity=AlertSeverity.INFO,
            condition=AlertCondition(
                metric=VoiceMetricNames.LATENCY,
                operator=ComparisonOperator.EQ,
                threshold=0.25,
                aggregation=Aggregation.AVG,
            ),
        ))
        registry.observe_histogram(VoiceMetricNames.LATENCY, 0.125)
        registry.observe_histogram(VoiceMetricNames.LATENCY, 0.375)
        [alert] = engine.evaluate_all_rules()
        assert alert.value == 0.25

        registry.observe_histogram(VoiceMetricNames.LATENCY, 0.1)
        assert engine.evaluate_all_rules() == []
        assert engine.get_active_alerts() == []

    def test_histogram_aggregations(self):
        metric = HistogramMetric(
            name="h",
            count=4,
            sum=10.0,
            percentiles={"p95": 3.5, "p99": 3.9},
        )
        assert histogram_value(metric, Aggregation.AVG) == 2.5
        assert histogram_value(metric, Aggregation.MAX) == 3.9
        assert histogram_value(metric, Aggregation.RATE) == 4.0
        assert histogram_value(metric, None) == 3.5

    def test_missing_metric_yields_nothing(self):
        registry = MetricsRegistry(clock=lambda: 0.0)
        condition = AlertCondition(metric="nope", operator=ComparisonOperator.GT, threshold=0)
        assert extract_series_values(registry, condition) == []

    def test_empty_histogram_skipped(self):
        registry = MetricsRegistry(clock=lambda: 0.0)
        condition = AlertCondition(metric=VoiceMetricNames.LATENCY, operator=ComparisonOperator.GT, threshold=0)
        assert extract_series_values(registry, condition) == []

    def test_state_key_sorted(self):
        assert state_key("rule_x", {"b": "2", "a": "1"}) == "rule_x:a=1,b=2"
        assert state_key("rule_x", {}) == "rule_x:"


# ── Rule Management Tests ────────────────────────────────────────────


class TestRuleManagement:
    def test_default_rules_registered(self, registry, clock):
        engine = AlertRuleEngine(registry, clock=clock)
        names = [r.name for r in engine.get_rules()]
        assert names == [r.name for r in default_alert_rules()]
        assert "Circuit Breaker Open" in names

    def test_add_rule_assigns_id(self, engine):
        rule = engine.add_rule(gauge_rule())
        assert rule.rule_id.startswith("rule_queue_depth_high_")
        assert engine.get_rule(rule.rule_id) is rule

    def test_update_rule(self, engine):
        rule = engine.add_rule(gauge_rule())
        updated = engine.update_rule(rule.rule_id, severity=AlertSeverity.CRITICAL)
        assert updated.severity == AlertSeverity.CRITICAL
        assert engine.update_rule("missing", severity=AlertSeverity.INFO) is None

    def test_update_rule_unknown_field(self, engine):
        rule = engine.add_rule(gauge_rule())
        with pytest.raises(TypeError):
            engine.update_rule(rule.rule_id, not_a_field=1)

    def test_disabled_rule_not_evaluated(self, engine, registry):
        rule = engine.add_rule(gauge_rule())
        engine.set_rule_enabled(rule.rule_id, False)
        registry.set_gauge("queue_depth", 10)
        assert engine.evaluate_all_rules() == []

    def test_remove_rule_resolves_alerts(self, engine, registry):
        rule = engine.add_rule(gauge_rule())
        registry.set_gauge("queue_depth", 10)
        [alert] = engine.evaluate_all_rules()
        assert engine.remove_rule(rule.rule_id) is True
        assert alert.status == AlertStatus.RESOLVED
        assert alert.resolution_reason == RESOLVED_RULE_DELETED
        assert engine.get_active_alerts() == []
        assert engine.remove_rule(rule.rule_id) is False


# ── Firing & Resolution Tests ────────────────────────────────────────


class TestAlertLifecycle:
    def test_fires_when_condition_true(self, engine, registry):
        engine.add_rule(gauge_rule())
        registry.set_gauge("queue_depth", 10)
        [alert] = engine.evaluate_all_rules()
        assert alert.status == AlertStatus.FIRING
        assert alert.value == 10
        assert alert.threshold == 5
        assert alert.labels["environment"] == "development"
        assert alert.labels["service"] == "voice-agent-v2"

    def test_no_fire_when_condition_false(self, engine, registry):
        engine.add_rule(gauge_rule())
        registry.set_gauge("queue_depth", 1)
        assert engine.evaluate_all_rules() == []

    def test_missing_metric_never_fires(self, engine):
        engine.add_rule(gauge_rule())
        assert engine.evaluate_all_rules() == []

    def test_single_active_alert_per_key(self, engine, registry):
        engine.add_rule(gauge_rule())
        registry.set_gauge("queue_depth", 10)
        engine.evaluate_all_rules()
        registry.set_gauge("queue_depth", 12)
        assert engine.evaluate_all_rules() == []
        [active] = engine.get_active_alerts()
        assert active.value == 12

    def test_each_label_set_fires_separately(self, engine, registry):
        engine.add_rule(gauge_rule())
        registry.set_gauge("queue_depth", 10, {"queue": "a"})
        registry.set_gauge("queue_depth", 10, {"queue": "b"})
        fired = engine.evaluate_all_rules()
        assert sorted(a.labels["queue"] for a in fired) == ["a", "b"]

    def test_resolves_when_condition_clears(self, engine, registry):
        engine.add_rule(gauge_rule())
        registry.set_gauge("queue_depth", 10)
        [alert] = engine.evaluate_all_rules()
        registry.set_gauge("queue_depth", 0)
        engine.evaluate_all_rules()
        assert alert.status == AlertStatus.RESOLVED
        assert alert.resolution_reason == RESOLVED_CONDITION_CLEARED
        assert alert.resolved_at is not None
        assert engine.get_active_alerts() == []

    def test_dedup_window_blocks_refire(self, registry, clock):
        engine = make_engine(clock, registry, deduplication_window_seconds=60, repeat_interval_seconds=0)
        engine.add_rule(gauge_rule())
        registry.set_gauge("queue_depth", 10)
        engine.evaluate_all_rules()
        registry.set_gauge("queue_depth", 0)
        engine.evaluate_all_rules()
        registry.set_gauge("queue_depth", 10)

        clock.advance(30)
        assert engine.evaluate_all_rules() == []
        clock.advance(31)
        assert len(engine.evaluate_all_rules()) == 1

    def test_repeat_interval_blocks_refire(self, registry, clock):
        engine = make_engine(clock, registry, deduplication_window_seconds=0, repeat_interval_seconds=300)
        rule = engine.add_rule(gauge_rule())
        registry.set_gauge("queue_depth", 10)
        engine.evaluate_all_rules()
        registry.set_gauge("queue_depth", 0)
        engine.evaluate_all_rules()

        registry.set_gauge("queue_depth", 10)
        clock.advance(100)
        assert engine.evaluate_all_rules() == []
        state = engine.get_alert_state(state_key(rule.rule_id, {}))
        assert state.consecutive_firings == 0

        clock.advance(200)
        assert len(engine.evaluate_all_rules()) == 1
        assert engine.get_alert_state(state_key(rule.rule_id, {})).consecutive_firings == 1

    def test_capacity_drops_new_fires(self, registry, clock):
        engine = make_engine(clock, registry, max_active_alerts=2)
        engine.add_rule(gauge_rule())
        for queue in ("a", "b", "c"):
            registry.set_gauge("queue_depth", 10, {"queue": queue})
        fired = engine.evaluate_all_rules()
        assert len(fired) == 2
        assert len(engine.get_active_alerts()) == 2

    def test_bad_rule_does_not_block_others(self, engine, registry):
        broken = engine.add_rule(gauge_rule(name="Broken"))
        broken.condition = None
        engine.add_rule(gauge_rule(name="Working"))
        registry.set_gauge("queue_depth", 10)
        [alert] = engine.evaluate_all_rules()
        assert alert.name == "Working"

    def test_histogram_rule_uses_p95(self, engine, registry):
        engine.add_rule(AlertRule(
            name="Slow",
            condition=AlertCondition(metric=VoiceMetricNames.LATENCY, operator=ComparisonOperator.GT, threshold=1.5),
        ))
        for _ in range(20):
            registry.observe_histogram(VoiceMetricNames.LATENCY, 2.0)
        [alert] = engine.evaluate_all_rules()
        assert alert.value == 2.0

    def test_disabled_engine_evaluates_nothing(self, registry, clock):
        engine = make_engine(clock, registry, enabled=False)
        engine.add_rule(gauge_rule())
        registry.set_gauge("queue_depth", 10)
        assert engine.evaluate_all_rules() == []


# ── Acknowledge / Resolve Tests ──────────────────────────────────────


class TestAlertOperations:
    def test_acknowledge_firing(self, engine, registry):
        engine.add_rule(gauge_rule())
        registry.set_gauge("queue_depth", 10)
        [alert] = engine.evaluate_all_rules()
        assert engine.acknowledge_alert(alert.alert_id, "oncall") is True
        assert alert.status == AlertStatus.ACKNOWLEDGED
        assert alert.acknowledged_by == "oncall"
        assert engine.acknowledge_alert(alert.alert_id, "someone-else") is False
        assert alert.acknowledged_by == "oncall"

    def test_acknowledged_still_blocks_refire(self, engine, registry):
        engine.add_rule(gauge_rule())
        registry.set_gauge("queue_depth", 10)
        [alert] = engine.evaluate_all_rules()
        engine.acknowledge_alert(alert.alert_id, "oncall")
        assert engine.evaluate_all_rules() == []
        assert engine.get_alert_summary()["acknowledged"] == 1

    def test_acknowledge_unknown(self, engine):
        assert engine.acknowledge_alert("alert_missing", "oncall") is False

    def test_manual_resolve(self, engine, registry):
        engine.add_rule(gauge_rule())
        registry.set_gauge("queue_depth", 10)
        [alert] = engine.evaluate_all_rules()
        assert engine.resolve_alert(alert.alert_id) is True
        assert alert.resolution_reason == "Manually resolved"
        assert engine.resolve_alert(alert.alert_id) is False
        assert engine.acknowledge_alert(alert.alert_id, "oncall") is False

    def test_manual_alert(self, engine):
        alert = engine.create_manual_alert(
            name="Deploy Freeze",
            description="freeze in effect",
            severity=AlertSeverity.INFO,
            labels={"team": "voice"},
            notification_channels=[ChannelType.SLACK],
        )
        assert alert.rule_id == MANUAL_RULE_ID
        assert alert.is_manual
        assert alert.labels["manual"] == "true"
        assert alert.labels["team"] == "voice"
        assert alert.status == AlertStatus.FIRING
        assert engine.get_alert(alert.alert_id) is alert
        assert engine.resolve_alert(alert.alert_id, "done") is True
        assert alert.resolution_reason == "done"

    def test_keyed_manual_alert_refreshed_while_active(self, engine):
        received = []
        engine.notification_handler = lambda alert, channels: received.append(alert.description)
        first = engine.create_manual_alert(
            "Provider Degraded", "errors at 6%", AlertSeverity.WARNING,
            notification_channels=[ChannelType.SLACK], key="provider",
        )
        second = engine.create_manual_alert(
            "Provider Degraded", "errors at 9%", AlertSeverity.CRITICAL,
            notification_channels=[ChannelType.SLACK], key="provider",
        )
        assert second is first
        assert first.description == "errors at 9%"
        assert first.severity == AlertSeverity.CRITICAL
        assert len(engine.get_active_alerts()) == 1
        assert received == ["errors at 6%"]

        engine.resolve_alert(first.alert_id)
        third = engine.create_manual_alert(
            "Provider Degraded", "errors at 7%", AlertSeverity.WARNING,
            notification_channels=[ChannelType.SLACK], key="provider",
        )
        assert third is not first
        assert third.is_active

    def test_manual_alerts_do_not_block_rule_fires(self, registry, clock):
        engine = make_engine(clock, registry, max_active_alerts=1, max_manual_alerts=2)
        oldest = engine.create_manual_alert("m-0", "", AlertSeverity.CRITICAL)
        for i in range(1, 4):
            engine.create_manual_alert(f"m-{i}", "", AlertSeverity.CRITICAL)

        manual = [a for a in engine.get_active_alerts() if a.is_manual]
        assert [a.name for a in manual] == ["m-2", "m-3"]
        assert oldest.status == AlertStatus.RESOLVED
        assert oldest.resolution_reason == RESOLVED_MANUAL_EVICTED

        engine.add_rule(gauge_rule())
        registry.set_gauge("queue_depth", 10, {"queue": "a"})
        registry.set_gauge("queue_depth", 10, {"queue": "b"})
        fired = engine.evaluate_all_rules()
        assert len(fired) == 1
        assert len(engine.get_active_alerts()) == 3

    def test_manual_alert_without_channels_is_not_notified(self, engine):
        received = []
        engine.notification_handler = lambda alert, channels: received.append((alert.name, alert.status))
        quiet = engine.create_manual_alert("Note", "for the record", AlertSeverity.INFO)
        engine.resolve_alert(quiet.alert_id)
        assert received == []

        loud = engine.create_manual_alert(
            "Page", "wake up", AlertSeverity.CRITICAL, notification_channels=[ChannelType.PAGERDUTY]
        )
        engine.resolve_alert(loud.alert_id)
        assert received == [("Page", AlertStatus.FIRING), ("Page", AlertStatus.RESOLVED)]


# ── Query Tests ──────────────────────────────────────────────────────


class TestQueries:
    def setup_method(self):
        self.registry = MetricsRegistry(clock=lambda: 0.0)
        self.engine = AlertRuleEngine(
            self.registry,
            AlertEngineConfig(register_default_rules=False, max_history=3),
            clock=lambda: 0.0,
        )

    def test_counts_and_filters(self):
        self.engine.create_manual_alert("a", "", AlertSeverity.CRITICAL)
        self.engine.create_manual_alert("b", "", AlertSeverity.WARNING)
        self.engine.create_manual_alert("c", "", AlertSeverity.WARNING)
        counts = self.engine.get_alert_count_by_severity()
        assert counts == {"info": 0, "warning": 2, "critical": 1}
        assert len(self.engine.get_alerts_by_severity(AlertSeverity.WARNING)) == 2
        assert self.engine.get_alert_summary()["firing"] == 3

    def test_history_capped(self):
        for i in range(5):
            self.engine.create_manual_alert(f"alert-{i}", "", AlertSeverity.INFO)
        history = self.engine.get_alert_history()
        assert [a.name for a in history] == ["alert-2", "alert-3", "alert-4"]
        assert [a.name for a in self.engine.get_alert_history(limit=1)] == ["alert-4"]

    def test_alerts_by_status_includes_resolved(self):
        alert = self.engine.create_manual_alert("a", "", AlertSeverity.INFO)
        self.engine.resolve_alert(alert.alert_id)
        resolved = self.engine.get_alerts_by_status(AlertStatus.RESOLVED)
        assert [a.alert_id for a in resolved] == [alert.alert_id]

    def test_reset(self):
        self.engine.create_manual_alert("a", "", AlertSeverity.INFO)
        self.engine.reset()
        assert self.engine.get_active_alerts() == []
        assert self.engine.get_alert_history() == []


# ── Housekeeping Tests ───────────────────────────────────────────────


class TestStateSweep:
    def test_sweeps_after_windows_elapse(self, registry, clock):
        engine = make_engine(clock, registry, deduplication_window_seconds=60, repeat_interval_seconds=120)
        rule = engine.add_rule(gauge_rule())
        key = state_key(rule.rule_id, {})
        registry.set_gauge("queue_depth", 10)
        engine.evaluate_all_rules()
        registry.set_gauge("queue_depth", 0)
        engine.evaluate_all_rules()
        assert engine.get_alert_state(key) is not None

        clock.advance(119)
        assert engine.sweep_states() == 0
        clock.advance(2)
        assert engine.sweep_states() == 1
        assert engine.get_alert_state(key) is None

    def test_active_state_kept(self, registry, clock):
        engine = make_engine(clock, registry)
        rule = engine.add_rule(gauge_rule())
        registry.set_gauge("queue_depth", 10)
        engine.evaluate_all_rules()
        clock.advance(10_000)
        assert engine.sweep_states() == 0
        assert engine.get_alert_state(state_key(rule.rule_id, {})) is not None


# ── Notification Handler Tests ───────────────────────────────────────


class TestNotificationHandler:
    def test_sync_handler_receives_snapshot(self, engine, registry):
        received = []
        engine.notification_handler = lambda alert, channels: received.append((alert, channels))
        rule = engine.add_rule(gauge_rule(channels=[ChannelType.SLACK, ChannelType.PAGERDUTY]))
        registry.set_gauge("queue_depth", 10)
        [alert] = engine.evaluate_all_rules()

        snapshot, channels = received[0]
        assert snapshot is not alert
        assert snapshot.alert_id == alert.alert_id
        assert channels == [ChannelType.SLACK, ChannelType.PAGERDUTY]
        assert snapshot.rule_id == rule.rule_id

    def test_resolution_notifies_same_channels(self, engine, registry):
        received = []
        engine.notification_handler = lambda alert, channels: received.append((alert.status, channels))
        engine.add_rule(gauge_rule(channels=[ChannelType.WEBHOOK]))
        registry.set_gauge("queue_depth", 10)
        engine.evaluate_all_rules()
        registry.set_gauge("queue_depth", 0)
        engine.evaluate_all_rules()
        assert received == [
            (AlertStatus.FIRING, [ChannelType.WEBHOOK]),
            (AlertStatus.RESOLVED, [ChannelType.WEBHOOK]),
        ]

    def test_handler_error_is_contained(self, engine, registry):
        def boom(alert, channels):
            raise RuntimeError("handler down")

        engine.notification_handler = boom
        engine.add_rule(gauge_rule())
        registry.set_gauge("queue_depth", 10)
        assert len(engine.evaluate_all_rules()) == 1

    @pytest.mark.asyncio
    async def test_async_handler_scheduled(self, engine, registry):
        received = []

        async def handler(alert, channels):
            received.append(alert.alert_id)

        engine.notification_handler = handler
        engine.add_rule(gauge_rule())
        registry.set_gauge("queue_depth", 10)
        [alert] = engine.evaluate_all_rules()
        await asyncio.sleep(0)
        assert received == [alert.alert_id]


# ── Lifecycle Tests ──────────────────────────────────────────────────


class TestEngineLifecycle:
    @pytest.mark.asyncio
    async def test_start_evaluates_immediately(self, registry, clock):
        engine = make_engine(clock, registry, evaluation_interval_seconds=3600)
        engine.add_rule(gauge_rule())
        registry.set_gauge("queue_depth", 10)
        await engine.start()
        try:
            assert engine.is_running
            assert len(engine.get_active_alerts()) == 1
            await engine.start()
        finally:
            await engine.stop()
        assert not engine.is_running
        await engine.stop()

    @pytest.mark.asyncio
    async def test_disabled_start_is_noop(self, registry, clock):
        engine = make_engine(clock, registry, enabled=False)
        await engine.start()
        assert not engine.is_running
