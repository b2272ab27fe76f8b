"""Tests for rollout health evaluation, escalation, and the health controller."""

import asyncio
from datetime import timedelta

import pytest

from voiceguard.alerting import AlertCondition, AlertRule, AlertSeverity, ChannelType, ComparisonOperator
from voiceguard.clock import to_datetime
from voiceguard.observability import VoiceMetricNames, VoiceMetrics
from voiceguard.rollout import (
    CallRecord,
    HealthControllerConfig,
    HistoryAction,
    InMemoryCallLog,
    InMemoryRolloutStore,
    IssueType,
    MetricsSummaryProvider,
    RecommendedAction,
    RollbackLevel,
    RolloutAlertType,
    RolloutHealthController,
    RolloutMetrics,
    RolloutStage,
    RolloutStatus,
    RolloutStoreError,
    WarningEscalationTracker,
    check_for_issues,
    default_stage_configs,
    evaluate_health,
    get_next_stage,
    get_previous_stage,
    percentile,
    stage_for_percentage,
)


def make_status(clock, stage=RolloutStage.CANARY, percentage=5, hours_in_stage=48.0, enabled=True, **kwargs):
    return RolloutStatus(
        current_stage=stage,
        percentage=percentage,
        enabled=enabled,
        stage_started_at=to_datetime(clock() - hours_in_stage * 3600),
        **kwargs,
    )


def record_calls(call_log, clock, total, failed=0, latency_ms=300.0):
    for i in range(total):
        is_failed = i < failed
        call_log.record(CallRecord(
            call_id=f"call_{i}",
            status="failed" if is_failed else "completed",
            created_at=to_datetime(clock() - 60),
            latency_ms=None if is_failed else latency_ms,
        ))


def build(clock, registry, engine, status=None, **config):
    store = InMemoryRolloutStore(status=status, clock=clock)
    call_log = InMemoryCallLog()
    provider = MetricsSummaryProvider(registry, alert_engine=engine, call_log=call_log, clock=clock)
    controller = RolloutHealthController(
        store,
        engine,
        provider,
        config=HealthControllerConfig(**config),
        clock=clock,
    )
    return controller, store, call_log


def event_types(controller):
    return [e.event_type for e in controller.get_recent_events()]


def alert_names(engine):
    return [a.name for a in engine.get_active_alerts()]


# ── Stage Helpers ────────────────────────────────────────────────────


class TestStages:
    def test_progression(self):
        assert get_next_stage(RolloutStage.DISABLED) == RolloutStage.CANARY
        assert get_next_stage(RolloutStage.COMPLETE) is None
        assert get_previous_stage(RolloutStage.CANARY) == RolloutStage.DISABLED
        assert get_previous_stage(RolloutStage.DISABLED) is None

    def test_stage_for_percentage(self):
        assert stage_for_percentage(0) == RolloutStage.DISABLED
        assert stage_for_percentage(5) == RolloutStage.CANARY
        assert stage_for_percentage(10) == RolloutStage.EARLY_ADOPTERS
        assert stage_for_percentage(30) == RolloutStage.EXPANSION
        assert stage_for_percentage(50) == RolloutStage.MAJORITY
        assert stage_for_percentage(100) == RolloutStage.COMPLETE

    def test_default_percentages(self):
        configs = default_stage_configs()
        assert [configs[s].percentage for s in RolloutStage] == [0, 5, 10, 25, 50, 100]
        assert configs[RolloutStage.CANARY].auto_advance is True
        assert configs[RolloutStage.MAJORITY].auto_advance is False


class TestTenantRouting:
    def test_overrides_win(self, clock):
        status = make_status(clock, percentage=100, disabled_tenants=["blocked"])
        assert status.includes_tenant("anyone") is True
        assert status.includes_tenant("blocked") is False

        status = make_status(clock, stage=RolloutStage.DISABLED, percentage=0, enabled_tenants=["pilot"])
        assert status.includes_tenant("anyone") is False
        assert status.includes_tenant("pilot") is True

    def test_disabled_flag(self, clock):
        status = make_status(clock, percentage=100, enabled=False, enabled_tenants=["pilot"])
        assert status.includes_tenant("anyone") is False
        assert status.includes_tenant("pilot") is True

    def test_stable_assignment(self, clock):
        status = make_status(clock, percentage=50)
        first = [status.includes_tenant(f"tenant-{i}") for i in range(50)]
        second = [status.includes_tenant(f"tenant-{i}") for i in range(50)]
        assert first == second
        assert any(first) and not all(first)


# ── Health Classification ────────────────────────────────────────────


class TestHealthEvaluation:
    def setup_method(self):
        self.canary = default_stage_configs()[RolloutStage.CANARY]

    def test_percentile(self):
        values = [float(v) for v in range(1, 21)]
        assert percentile(values, 50) == 10.0
        assert percentile(values, 95) == 19.0
        assert percentile(values, 99) == 20.0
        assert percentile([], 95) == 0.0
        assert percentile([7.0], 99) == 7.0

    def test_warning_between_go_and_no_go(self):
        [issue] = check_for_issues(RolloutMetrics(total_calls=200, p95_latency_ms=1000), self.canary)
        assert issue.issue_type == IssueType.LATENCY
        assert issue.severity == AlertSeverity.WARNING
        assert issue.threshold_value == 800
        assert issue.recommended_action == RecommendedAction.MONITOR

    def test_critical_above_no_go(self):
        [issue] = check_for_issues(RolloutMetrics(total_calls=200, p95_latency_ms=1500), self.canary)
        assert issue.severity == AlertSeverity.CRITICAL
        assert issue.threshold_value == 1200
        assert issue.recommended_action == RecommendedAction.INVESTIGATE
        assert issue.message == "p95 latency 1500ms exceeds critical threshold 1200ms"

    def test_circuit_breaker_opens(self):
        [warning] = check_for_issues(RolloutMetrics(circuit_breaker_opens=1), self.canary)
        assert warning.severity == AlertSeverity.WARNING
        [critical] = check_for_issues(RolloutMetrics(circuit_breaker_opens=4), self.canary)
        assert critical.severity == AlertSeverity.CRITICAL
        assert critical.recommended_action == RecommendedAction.ROLLBACK

    def test_healthy_can_advance(self, clock):
        result = evaluate_health(
            make_status(clock),
            RolloutMetrics(total_calls=200, successful_calls=200, p95_latency_ms=300),
            self.canary,
            to_datetime(clock()),
        )
        assert result.healthy and result.can_advance
        assert not result.should_rollback
        assert result.blockers == []

    def test_blockers(self, clock):
        result = evaluate_health(
            make_status(clock, hours_in_stage=2),
            RolloutMetrics(total_calls=50, failed_calls=5, error_rate=0.1),
            self.canary,
            to_datetime(clock()),
        )
        assert not result.healthy
        assert result.should_rollback
        assert not result.can_advance
        assert "Only 50 calls observed; 100 required" in result.blockers
        assert "Stage minimum duration not reached (2.0h of 24h)" in result.blockers

    def test_complete_has_no_next_stage(self, clock):
        result = evaluate_health(
            make_status(clock, stage=RolloutStage.COMPLETE, percentage=100),
            RolloutMetrics(),
            default_stage_configs()[RolloutStage.COMPLETE],
            to_datetime(clock()),
        )
        assert result.blockers == ["Rollout is already complete"]


class TestMetricsSummaryProvider:
    @pytest.mark.asyncio
    async def test_from_call_log(self, clock, registry):
        call_log = InMemoryCallLog()
        provider = MetricsSummaryProvider(registry, call_log=call_log, clock=clock)
        now = to_datetime(clock())
        call_log.record(CallRecord("a", "completed", now, latency_ms=100))
        call_log.record(CallRecord("b", "completed", now, latency_ms=201))
        call_log.record(CallRecord("c", "in-progress", now, ended_reason="assistant-forwarded-call"))
        call_log.record(CallRecord("d", "failed", now))
        call_log.record(CallRecord("old", "failed", now - timedelta(hours=2)))

        metrics = await provider.collect(3600)
        assert metrics.total_calls == 4
        assert metrics.successful_calls == 3
        assert metrics.failed_calls == 1
        assert metrics.error_rate == 0.25
        assert metrics.avg_latency_ms == 150
        assert metrics.p95_latency_ms == 201

    @pytest.mark.asyncio
    async def test_from_registry(self, clock, registry):
        voice = VoiceMetrics(registry)
        for _ in range(4):
            voice.record_call()
        for _ in range(3):
            voice.record_successful_call()
        voice.record_error("timeout")

        metrics = await MetricsSummaryProvider(registry, clock=clock).collect(3600)
        assert metrics.total_calls == 4
        assert metrics.successful_calls == 3
        assert metrics.failed_calls == 1
        assert metrics.error_rate == 0.25

    @pytest.mark.asyncio
    async def test_registry_ignores_calls_before_window(self, clock, registry):
        voice = VoiceMetrics(registry)
        for i in range(100):
            voice.record_call()
            if i % 2:
                voice.record_error("llm_timeout")
            else:
                voice.record_successful_call()
            voice.record_latency(4000)
        clock.advance(7200)
        for _ in range(100):
            voice.record_call()
            voice.record_successful_call()
            voice.record_latency(200)

        metrics = await MetricsSummaryProvider(registry, clock=clock).collect(3600)
        assert metrics.total_calls == 100
        assert metrics.successful_calls == 100
        assert metrics.failed_calls == 0
        assert metrics.error_rate == 0.0
        assert metrics.p95_latency_ms == pytest.approx(200)
        assert voice.summary().total_calls == 200

    @pytest.mark.asyncio
    async def test_circuit_breaker_opens_from_alert_history(self, clock, registry, engine):
        engine.create_manual_alert("Circuit Breaker Open", "provider down", AlertSeverity.CRITICAL)
        engine.create_manual_alert("Something Else", "", AlertSeverity.INFO)
        metrics = await MetricsSummaryProvider(registry, alert_engine=engine, clock=clock).collect(3600)
        assert metrics.circuit_breaker_opens == 1

    @pytest.mark.asyncio
    async def test_source_failure_yields_empty_metrics(self, clock, registry):
        class BrokenCallLog:
            async def fetch_calls(self, since):
                raise ConnectionError("call log unavailable")

        metrics = await MetricsSummaryProvider(registry, call_log=BrokenCallLog(), clock=clock).collect(3600)
        assert metrics == RolloutMetrics()


# ── Escalation Tracker ───────────────────────────────────────────────


class TestWarningEscalationTracker:
    def setup_method(self):
        self.tracker = WarningEscalationTracker(max_consecutive=3, escalation_seconds=900)
        canary = default_stage_configs()[RolloutStage.CANARY]
        self.warnings = check_for_issues(RolloutMetrics(p95_latency_ms=900), canary)

    def test_escalates_on_count(self):
        results = [self.tracker.observe(self.warnings, RolloutStage.CANARY, float(t)) for t in (0, 60, 120)]
        assert [r[0].escalated for r in results] == [False, False, True]
        assert self.tracker.get_streak(IssueType.LATENCY, RolloutStage.CANARY).count == 3

    def test_escalates_on_duration(self):
        self.tracker.observe(self.warnings, RolloutStage.CANARY, 0.0)
        [decision] = self.tracker.observe(self.warnings, RolloutStage.CANARY, 900.0)
        assert decision.escalated
        assert decision.streak.count == 2

    def test_absent_warning_resets_streak(self):
        self.tracker.observe(self.warnings, RolloutStage.CANARY, 0.0)
        self.tracker.observe([], RolloutStage.CANARY, 60.0)
        assert len(self.tracker) == 0
        [decision] = self.tracker.observe(self.warnings, RolloutStage.CANARY, 120.0)
        assert decision.streak.count == 1

    def test_streaks_are_per_stage(self):
        self.tracker.observe(self.warnings, RolloutStage.CANARY, 0.0)
        [decision] = self.tracker.observe(self.warnings, RolloutStage.EARLY_ADOPTERS, 60.0)
        assert decision.streak.count == 1
        assert self.tracker.get_streak(IssueType.LATENCY, RolloutStage.CANARY) is None


# ── Monitoring Cycle ─────────────────────────────────────────────────


class TestMonitoringCycle:
    @pytest.mark.asyncio
    async def test_skipped_when_disabled_or_zero(self, clock, registry, engine):
        controller, _, _ = build(clock, registry, engine)
        assert await controller.run_cycle() is None

        controller, _, _ = build(clock, registry, engine, status=make_status(clock, enabled=False))
        assert await controller.run_cycle() is None

    @pytest.mark.asyncio
    async def test_healthy_cycle_reports_auto_advance_ready(self, clock, registry, engine):
        controller, store, call_log = build(clock, registry, engine, status=make_status(clock))
        record_calls(call_log, clock, 200)

        result = await controller.run_cycle()
        assert result.healthy and result.can_advance
        assert event_types(controller) == [RolloutAlertType.AUTO_ADVANCE_READY]
        assert "Rollout Auto-Advance Ready" in alert_names(engine)
        assert (await store.get_status()).last_health_check is result

    @pytest.mark.asyncio
    async def test_no_auto_advance_for_manual_stage(self, clock, registry, engine):
        status = make_status(clock, stage=RolloutStage.MAJORITY, percentage=50, hours_in_stage=100)
        controller, _, call_log = build(clock, registry, engine, status=status)
        record_calls(call_log, clock, 3000)

        result = await controller.run_cycle()
        assert result.can_advance
        assert controller.get_recent_events() == []

    @pytest.mark.asyncio
    async def test_critical_issues_recommend_rollback(self, clock, registry, engine):
        controller, store, call_log = build(clock, registry, engine, status=make_status(clock))
        record_calls(call_log, clock, 200, failed=30)

        result = await controller.run_cycle()
        assert result.should_rollback
        assert event_types(controller) == [
            RolloutAlertType.ERROR_RATE_SPIKE,
            RolloutAlertType.HEALTH_DEGRADATION,
            RolloutAlertType.ROLLBACK_RECOMMENDED,
        ]
        assert "Rollout error_rate_spike: error_rate" in alert_names(engine)
        assert "Rollout Rollback Recommended" in alert_names(engine)
        status = await store.get_status()
        assert status.percentage == 5
        assert not controller.is_in_suppression_window()

    @pytest.mark.asyncio
    async def test_persistent_critical_keeps_one_alert_per_issue(self, clock, registry, engine):
        controller, _, call_log = build(clock, registry, engine, status=make_status(clock))
        record_calls(call_log, clock, 100, failed=100)

        for _ in range(60):
            await controller.run_cycle()
            clock.advance(1)

        names = sorted(a.name for a in controller.get_rollout_alerts())
        assert names == [
            "Rollout Rollback Recommended",
            "Rollout error_rate_spike: error_rate",
            "Rollout health_degradation: failed_calls",
        ]
        assert len(controller.get_recent_events()) == 180

        engine.add_rule(AlertRule(
            name="Queue Backlog",
            description="dispatch backlog",
            severity=AlertSeverity.WARNING,
            condition=AlertCondition(metric="queue_backlog", operator=ComparisonOperator.GT, threshold=0),
        ))
        registry.set_gauge("queue_backlog", 5)
        assert "Queue Backlog" in [a.name for a in engine.evaluate_all_rules()]

    @pytest.mark.asyncio
    async def test_cycle_alerts_resolve_when_condition_clears(self, clock, registry, engine):
        controller, store, call_log = build(clock, registry, engine, status=make_status(clock))
        record_calls(call_log, clock, 200, failed=30)
        await controller.run_cycle()
        raised = controller.get_rollout_alerts()
        assert len(raised) == 3

        call_log.clear()
        record_calls(call_log, clock, 200)
        clock.advance(60)
        await controller.run_cycle()

        assert [a.name for a in controller.get_rollout_alerts()] == ["Rollout Auto-Advance Ready"]
        assert {a.resolution_reason for a in raised} == {"Rollout condition cleared"}

    @pytest.mark.asyncio
    async def test_cycle_alerts_resolve_when_rollout_inactive(self, clock, registry, engine):
        controller, store, call_log = build(clock, registry, engine, status=make_status(clock))
        record_calls(call_log, clock, 200, failed=30)
        await controller.run_cycle()
        await store.set_percentage_and_stage(RolloutStage.DISABLED, 0, "ops")

        assert await controller.run_cycle() is None
        assert controller.get_rollout_alerts() == []

    @pytest.mark.asyncio
    async def test_auto_rollback(self, clock, registry, engine):
        notified = []
        engine.notification_handler = lambda alert, channels: notified.append((alert.name, channels))
        controller, store, call_log = build(
            clock, registry, engine, status=make_status(clock), auto_rollback_on_critical=True
        )
        record_calls(call_log, clock, 200, failed=30)

        await controller.run_cycle()

        status = await store.get_status()
        assert status.current_stage == RolloutStage.DISABLED
        assert status.percentage == 0

        [entry] = await store.get_history(1)
        assert entry.action == HistoryAction.ROLLBACK
        assert entry.from_percentage == 5
        assert entry.to_percentage == 0
        assert entry.initiated_by == "rollout-health-controller"
        assert entry.reason == "Auto-rollback triggered: error_rate, failed_calls"
        assert entry.health_metrics.error_rate == pytest.approx(0.15)

        assert event_types(controller)[-2:] == [
            RolloutAlertType.ROLLBACK_RECOMMENDED,
            RolloutAlertType.ROLLBACK_TRIGGERED,
        ]
        triggered = controller.get_recent_events()[-1]
        assert triggered.severity == AlertSeverity.CRITICAL
        assert triggered.message == "Auto-rollback executed: canary (5%) -> disabled (0%)"
        assert ("Rollout Auto-Rollback Executed", [ChannelType.SLACK, ChannelType.PAGERDUTY]) in notified

    @pytest.mark.asyncio
    async def test_suppression_window_after_rollback(self, clock, registry, engine):
        controller, store, call_log = build(
            clock, registry, engine, status=make_status(clock), auto_rollback_on_critical=True
        )
        record_calls(call_log, clock, 200, failed=30)
        await controller.run_cycle()
        await store.set_percentage_and_stage(RolloutStage.CANARY, 5, "ops")

        assert controller.is_in_suppression_window()
        assert await controller.run_cycle() is None

        clock.advance(300)
        assert not controller.is_in_suppression_window()
        assert await controller.run_cycle() is not None

    @pytest.mark.asyncio
    async def test_rollout_gauges_drive_rollout_rules(self, clock, registry, engine):
        controller, _, call_log = build(clock, registry, engine, status=make_status(clock))
        record_calls(call_log, clock, 200, failed=30)
        await controller.run_cycle()

        assert registry.get_gauge_value(VoiceMetricNames.ROLLOUT_ERROR_RATE) == pytest.approx(0.15)
        fired = {a.name for a in engine.evaluate_all_rules()}
        assert fired == {"Rollout Error Rate Critical", "Rollout Error Rate Warning"}

        summary = controller.get_rollout_alert_summary()
        assert summary["total"] == len(controller.get_rollout_alerts())
        assert summary["critical"] >= 3

    @pytest.mark.asyncio
    async def test_single_flight(self, clock, registry, engine):
        class GatedStore(InMemoryRolloutStore):
            def __init__(self, **kwargs):
                super().__init__(**kwargs)
                self.gate = asyncio.Event()
                self.reads = 0

            async def get_status(self):
                self.reads += 1
                await self.gate.wait()
                return await super().get_status()

        store = GatedStore(clock=clock)
        controller = RolloutHealthController(
            store, engine, MetricsSummaryProvider(registry, clock=clock), clock=clock
        )
        first = asyncio.create_task(controller.run_cycle())
        await asyncio.sleep(0)
        assert await controller.run_cycle() is None
        store.gate.set()
        await first
        assert store.reads == 1

    @pytest.mark.asyncio
    async def test_store_failure_skips_cycle(self, clock, registry, engine):
        class BrokenStore(InMemoryRolloutStore):
            async def get_status(self):
                raise RolloutStoreError("database unavailable")

        controller = RolloutHealthController(
            BrokenStore(clock=clock), engine, MetricsSummaryProvider(registry, clock=clock), clock=clock
        )
        assert await controller.run_cycle() is None
        result = await controller.advance("alice")
        assert result.success is False
        assert result.error == "database unavailable"


class TestWarningEscalation:
    @pytest.mark.asyncio
    async def test_escalates_after_consecutive_warnings(self, clock, registry, engine):
        controller, _, call_log = build(clock, registry, engine, status=make_status(clock))
        record_calls(call_log, clock, 200, failed=6)

        for _ in range(3):
            await controller.run_cycle()
            clock.advance(60)

        events = controller.get_recent_events()
        assert [e.severity for e in events] == [
            AlertSeverity.WARNING,
            AlertSeverity.WARNING,
            AlertSeverity.CRITICAL,
        ]
        assert events[0].message == "Error rate 3.00% exceeds warning threshold 2.00%"
        assert events[-1].message == (
            "ESCALATED: Error rate 3.00% exceeds warning threshold 2.00% (3 consecutive warnings)"
        )
        [escalated] = [a for a in engine.get_active_alerts() if a.name == "Rollout Warning Escalated: error_rate"]
        assert escalated.severity == AlertSeverity.CRITICAL
        assert escalated.description.endswith("- Persisted for 2 minutes")
        assert escalated.labels["escalated"] == "true"

    @pytest.mark.asyncio
    async def test_escalates_after_duration(self, clock, registry, engine):
        controller, _, call_log = build(
            clock,
            registry,
            engine,
            status=make_status(clock),
            max_consecutive_warnings=10,
            warning_escalation_seconds=900,
        )
        record_calls(call_log, clock, 200, failed=6)

        await controller.run_cycle()
        clock.advance(900)
        await controller.run_cycle()

        last = controller.get_recent_events()[-1]
        assert last.details["escalated"] is True
        assert last.details["consecutive_warnings"] == 2
        assert any(a.description.endswith("Persisted for 15 minutes") for a in engine.get_active_alerts())

    @pytest.mark.asyncio
    async def test_healthy_cycle_resets_streak(self, clock, registry, engine):
        controller, _, call_log = build(clock, registry, engine, status=make_status(clock))
        record_calls(call_log, clock, 200, failed=6)
        await controller.run_cycle()

        call_log.clear()
        record_calls(call_log, clock, 200)
        clock.advance(60)
        await controller.run_cycle()

        call_log.clear()
        record_calls(call_log, clock, 200, failed=6)
        clock.advance(60)
        await controller.run_cycle()

        last = controller.get_recent_events()[-1]
        assert last.event_type == RolloutAlertType.ERROR_RATE_SPIKE
        assert last.details["consecutive_warnings"] == 1
        assert last.severity == AlertSeverity.WARNING


# ── Manual Operations ────────────────────────────────────────────────


class TestAdvance:
    @pytest.mark.asyncio
    async def test_advance_to_next_stage(self, clock, registry, engine):
        controller, store, _ = build(clock, registry, engine)
        result = await controller.advance("alice", "start canary")

        assert result.success is True
        assert result.status.current_stage == RolloutStage.CANARY
        assert result.status.percentage == 5
        assert result.health_check is not None

        [entry] = await controller.get_history()
        assert entry.action == HistoryAction.ADVANCE
        assert entry.initiated_by == "alice"
        assert entry.reason == "start canary"

        [event] = controller.get_recent_events()
        assert event.event_type == RolloutAlertType.STAGE_ADVANCED
        assert event.message == "Rollout advanced: disabled (0%) -> canary (5%)"
        [alert] = [a for a in engine.get_active_alerts() if a.name == "Rollout Stage Advanced"]
        assert alert.labels["stage"] == "canary"
        assert alert.labels["component"] == "rollout"

    @pytest.mark.asyncio
    async def test_blocked_by_health(self, clock, registry, engine):
        controller, store, call_log = build(
            clock, registry, engine, status=make_status(clock, hours_in_stage=0)
        )
        record_calls(call_log, clock, 200)

        result = await controller.advance("alice")
        assert result.success is False
        assert result.error == "Advancement blocked: Stage minimum duration not reached (0.0h of 24h)"
        assert (await store.get_status()).current_stage == RolloutStage.CANARY
        assert event_types(controller) == [RolloutAlertType.STAGE_BLOCKED]
        assert "Rollout Advancement Blocked" in alert_names(engine)

    @pytest.mark.asyncio
    async def test_skip_health_check(self, clock, registry, engine):
        controller, _, _ = build(clock, registry, engine, status=make_status(clock, hours_in_stage=0))
        result = await controller.advance("alice", skip_health_check=True)
        assert result.success is True
        assert result.health_check is None
        assert result.status.current_stage == RolloutStage.EARLY_ADOPTERS
        assert result.status.percentage == 10

    @pytest.mark.asyncio
    async def test_explicit_target_must_be_ahead(self, clock, registry, engine):
        status = make_status(clock, stage=RolloutStage.EARLY_ADOPTERS, percentage=10)
        controller, _, _ = build(clock, registry, engine, status=status)
        result = await controller.advance("alice", target_stage=RolloutStage.CANARY)
        assert result.error == "Cannot advance from early_adopters to canary"

        result = await controller.advance("alice", target_stage=RolloutStage.MAJORITY, skip_health_check=True)
        assert result.status.percentage == 50

    @pytest.mark.asyncio
    async def test_already_complete(self, clock, registry, engine):
        status = make_status(clock, stage=RolloutStage.COMPLETE, percentage=100)
        controller, _, _ = build(clock, registry, engine, status=status)
        result = await controller.advance("alice")
        assert result.success is False
        assert result.error == "Rollout is already complete"


class TestRollback:
    @pytest.mark.asyncio
    async def test_total_rollback(self, clock, registry, engine):
        status = make_status(clock, stage=RolloutStage.EXPANSION, percentage=25)
        controller, store, _ = build(clock, registry, engine, status=status)

        result = await controller.rollback("bob", "latency regression")
        assert result.success is True
        assert result.status.current_stage == RolloutStage.DISABLED
        assert result.status.percentage == 0
        assert controller.is_in_suppression_window()

        [event] = controller.get_recent_events()
        assert event.severity == AlertSeverity.WARNING
        assert event.message == "Manual rollback executed: expansion (25%) -> disabled (0%)"
        [alert] = [a for a in engine.get_active_alerts() if a.name == "Rollout Manual Rollback"]
        assert alert.description.endswith(": latency regression")

        [entry] = await store.get_history()
        assert entry.action == HistoryAction.ROLLBACK
        assert entry.initiated_by == "bob"

    @pytest.mark.asyncio
    async def test_partial_rollback_steps_back_one_stage(self, clock, registry, engine):
        status = make_status(clock, stage=RolloutStage.EXPANSION, percentage=25)
        controller, _, _ = build(clock, registry, engine, status=status)
        result = await controller.rollback("bob", level=RollbackLevel.PARTIAL)
        assert result.status.current_stage == RolloutStage.EARLY_ADOPTERS
        assert result.status.percentage == 10

    @pytest.mark.asyncio
    async def test_already_disabled(self, clock, registry, engine):
        controller, _, _ = build(clock, registry, engine)
        result = await controller.rollback("bob")
        assert result.success is False
        assert result.error == "Rollout is already disabled"

    @pytest.mark.asyncio
    async def test_tenant_rollback_requires_id(self, clock, registry, engine):
        controller, _, _ = build(clock, registry, engine, status=make_status(clock))
        result = await controller.rollback("bob", level=RollbackLevel.TENANT)
        assert result.error == "Tenant ID required for tenant-level rollback"

    @pytest.mark.asyncio
    async def test_tenant_rollback(self, clock, registry, engine):
        controller, store, _ = build(clock, registry, engine, status=make_status(clock))
        result = await controller.rollback("bob", "noisy", level=RollbackLevel.TENANT, tenant_id="acme")

        assert result.success is True
        assert result.status.disabled_tenants == ["acme"]
        assert result.status.percentage == 5
        assert not result.status.includes_tenant("acme")
        assert not controller.is_in_suppression_window()

        [entry] = await store.get_history()
        assert entry.action == HistoryAction.ROLLBACK_TENANT
        assert entry.tenant_id == "acme"
        assert entry.reason == "Tenant acme disabled: noisy"
        assert event_types(controller) == [RolloutAlertType.ROLLBACK_TRIGGERED]

    @pytest.mark.asyncio
    async def test_enable_tenant(self, clock, registry, engine):
        controller, store, _ = build(clock, registry, engine, status=make_status(clock))
        await controller.set_tenant_override("acme", False, "bob")
        result = await controller.set_tenant_override("acme", True, "bob", "fixed")

        assert result.status.enabled_tenants == ["acme"]
        assert result.status.disabled_tenants == []
        entry = (await store.get_history())[0]
        assert entry.action == HistoryAction.ENABLE_TENANT
        assert len(controller.get_recent_events()) == 1


# ── Handlers & Lifecycle ─────────────────────────────────────────────


class TestHandlersAndLifecycle:
    @pytest.mark.asyncio
    async def test_sync_and_async_handlers(self, clock, registry, engine):
        controller, _, _ = build(clock, registry, engine, status=make_status(clock, stage=RolloutStage.EXPANSION))
        received = []

        async def async_handler(event):
            await asyncio.sleep(0)
            received.append(("async", event.event_type))

        def broken_handler(event):
            raise RuntimeError("handler bug")

        controller.on_alert(broken_handler)
        unsubscribe = controller.on_alert(lambda event: received.append(("sync", event.event_type)))
        controller.on_alert(async_handler)

        await controller.rollback("bob")
        assert received == [
            ("sync", RolloutAlertType.ROLLBACK_TRIGGERED),
            ("async", RolloutAlertType.ROLLBACK_TRIGGERED),
        ]

        unsubscribe()
        await controller.advance("bob", skip_health_check=True)
        assert len(received) == 3

    def test_rollout_rules_registered_once(self, clock, registry, engine):
        controller, _, _ = build(clock, registry, engine)
        names = sorted(r.name for r in engine.get_rules())
        assert names == [
            "Rollout Error Rate Critical",
            "Rollout Error Rate Warning",
            "Rollout Latency Critical",
        ]
        controller.register_alert_rules()
        assert len(engine.get_rules()) == 3
        assert all(r.labels["component"] == "rollout" for r in engine.get_rules())

    def test_reset_restores_rules_and_state(self, clock, registry, engine):
        controller, _, _ = build(clock, registry, engine)
        engine.reset()
        assert engine.get_rules() == []
        controller.reset()
        assert len(engine.get_rules()) == 3
        assert not controller.is_in_suppression_window()

    @pytest.mark.asyncio
    async def test_start_stop(self, clock, registry, engine):
        controller, _, _ = build(clock, registry, engine, monitoring_interval_seconds=3600)
        await controller.start()
        assert controller.is_running
        await controller.start()
        await controller.stop()
        assert not controller.is_running

    @pytest.mark.asyncio
    async def test_disabled_controller_does_not_start(self, clock, registry, engine):
        controller, _, _ = build(clock, registry, engine, enabled=False)
        await controller.start()
        assert not controller.is_running
