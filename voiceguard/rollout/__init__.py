"""Rollout health controller, stage model, and rollout stores."""

from .config import (
    STAGE_PROGRESSION,
    HealthControllerConfig,
    RollbackLevel,
    RolloutStage,
    StageConfig,
    StageCriteria,
    default_stage_configs,
    get_next_stage,
    get_previous_stage,
    stage_for_percentage,
)
from .models import (
    HealthCheckResult,
    HistoryAction,
    IssueType,
    RecommendedAction,
    RolloutAlertEvent,
    RolloutAlertType,
    RolloutHistoryEntry,
    RolloutIssue,
    RolloutMetrics,
    RolloutOperationResult,
    RolloutStatus,
    alert_type_for_issue,
)
from .store import InMemoryRolloutStore, RolloutStore, RolloutStoreError, apply_tenant_override
from .sql_store import SqlRolloutStore
from .health import (
    CallLogSource,
    CallRecord,
    InMemoryCallLog,
    MetricsSummaryProvider,
    advance_blockers,
    check_for_issues,
    evaluate_health,
    percentile,
    should_rollback,
)
from .escalation import EscalationDecision, WarningEscalationTracker, WarningStreak
from .controller import ROLLOUT_COMPONENT, RolloutAlertHandler, RolloutHealthController

__all__ = [
    # Config
    "STAGE_PROGRESSION",
    "HealthControllerConfig",
    "RollbackLevel",
    "RolloutStage",
    "StageConfig",
    "StageCriteria",
    "default_stage_configs",
    "get_next_stage",
    "get_previous_stage",
    "stage_for_percentage",
    # Models
    "HealthCheckResult",
    "HistoryAction",
    "IssueType",
    "RecommendedAction",
    "RolloutAlertEvent",
    "RolloutAlertType",
    "RolloutHistoryEntry",
    "RolloutIssue",
    "RolloutMetrics",
    "RolloutOperationResult",
    "RolloutStatus",
    "alert_type_for_issue",
    # Stores
    "InMemoryRolloutStore",
    "RolloutStore",
    "RolloutStoreError",
    "SqlRolloutStore",
    "apply_tenant_override",
    # Health
    "CallLogSource",
    "CallRecord",
    "InMemoryCallLog",
    "MetricsSummaryProvider",
    "advance_blockers",
    "check_for_issues",
    "evaluate_health",
    "percentile",
    "should_rollback",
    # Controller
    "EscalationDecision",
    "WarningEscalationTracker",
    "WarningStreak",
    "ROLLOUT_COMPONENT",
    "RolloutAlertHandler",
    "RolloutHealthController",
]
