"""Rollout stages, go/no-go criteria, and health controller configuration."""

import enum
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from voiceguard.alerting import ChannelType

logger = logging.getLogger(__name__)


class RolloutStage(enum.Enum):
    """Stages of the percentage-based rollout, in progression order."""

    DISABLED = "disabled"
    CANARY = "canary"
    EARLY_ADOPTERS = "early_adopters"
    EXPANSION = "expansion"
    MAJORITY = "majority"
    COMPLETE = "complete"


STAGE_PROGRESSION: List[RolloutStage] = [
    RolloutStage.DISABLED,
    RolloutStage.CANARY,
    RolloutStage.EARLY_ADOPTERS,
    RolloutStage.EXPANSION,
    RolloutStage.MAJORITY,
    RolloutStage.COMPLETE,
]


class RollbackLevel(enum.Enum):
    """Scope of a manual rollback."""

    TENANT = "tenant"     # disable a single tenant
    PARTIAL = "partial"   # step back one stage
    TOTAL = "total"       # back to 0%


@dataclass
class StageCriteria:
    """Thresholds a stage's live metrics are compared against."""

    max_error_rate: float
    max_p95_latency_ms: float
    max_circuit_breaker_opens: int
    max_failed_calls_rate: float
    min_calls: int = 0


@dataclass
class StageConfig:
    """Per-stage rollout parameters."""

    stage: RolloutStage
    percentage: int
    min_duration_hours: float
    go_criteria: StageCriteria
    no_go_criteria: StageCriteria
    auto_advance: bool = False


def _go(min_calls: int) -> StageCriteria:
    return StageCriteria(
        max_error_rate=0.02,
        max_p95_latency_ms=800,
        max_circuit_breaker_opens=0,
        max_failed_calls_rate=0.03,
        min_calls=min_calls,
    )


def _no_go() -> StageCriteria:
    return StageCriteria(
        max_error_rate=0.05,
        max_p95_latency_ms=1200,
        max_circuit_breaker_opens=3,
        max_failed_calls_rate=0.10,
    )


def default_stage_configs() -> Dict[RolloutStage, StageConfig]:
    """Build the default stage table. Disabled has no criteria of its own."""
    return {
        RolloutStage.DISABLED: StageConfig(RolloutStage.DISABLED, 0, 0, _go(0), _no_go()),
        RolloutStage.CANARY: StageConfig(RolloutStage.CANARY, 5, 24, _go(100), _no_go(), auto_advance=True),
        RolloutStage.EARLY_ADOPTERS: StageConfig(
            RolloutStage.EARLY_ADOPTERS, 10, 48, _go(500), _no_go(), auto_advance=True
        ),
        RolloutStage.EXPANSION: StageConfig(RolloutStage.EXPANSION, 25, 72, _go(1000), _no_go()),
        RolloutStage.MAJORITY: StageConfig(RolloutStage.MAJORITY, 50, 72, _go(2500), _no_go()),
        RolloutStage.COMPLETE: StageConfig(RolloutStage.COMPLETE, 100, 0, _go(0), _no_go()),
    }


def stage_for_percentage(percentage: float) -> RolloutStage:
    """Map a rollout percentage onto the stage that covers it."""
    if percentage >= 100:
        return RolloutStage.COMPLETE
    if percentage >= 50:
        return RolloutStage.MAJORITY
    if percentage >= 25:
        return RolloutStage.EXPANSION
    if percentage >= 10:
        return RolloutStage.EARLY_ADOPTERS
    if percentage > 0:
        return RolloutStage.CANARY
    return RolloutStage.DISABLED


def get_next_stage(stage: RolloutStage) -> Optional[RolloutStage]:
    idx = STAGE_PROGRESSION.index(stage)
    return STAGE_PROGRESSION[idx + 1] if idx + 1 < len(STAGE_PROGRESSION) else None


def get_previous_stage(stage: RolloutStage) -> Optional[RolloutStage]:
    idx = STAGE_PROGRESSION.index(stage)
    return STAGE_PROGRESSION[idx - 1] if idx > 0 else None


@dataclass
class HealthControllerConfig:
    """Rollout health controller configuration."""

    enabled: bool = True
    monitoring_interval_seconds: float = 60.0
    default_channels: List[ChannelType] = field(default_factory=lambda: [ChannelType.SLACK])
    escalation_channel: ChannelType = ChannelType.PAGERDUTY
    auto_rollback_on_critical: bool = False
    # No cycles run for this long after a rollback
    suppression_window_seconds: float = 300.0
    warning_escalation_seconds: float = 900.0
    max_consecutive_warnings: int = 3
    metrics_window_seconds: float = 3600.0
    register_alert_rules: bool = True
    system_actor: str = "rollout-health-controller"
    max_events: int = 500
