"""Alert rule engine: rules, conditions, and alert lifecycle."""

from .config import (
    Aggregation,
    AlertEngineConfig,
    AlertSeverity,
    AlertStatus,
    ChannelType,
    ComparisonOperator,
)
from .models import MANUAL_RULE_ID, Alert, AlertCondition, AlertRule, AlertState
from .conditions import evaluate_condition, extract_series_values, histogram_value, state_key
from .rules import default_alert_rules, generate_rule_id
from .engine import (
    RESOLVED_CONDITION_CLEARED,
    RESOLVED_MANUAL_EVICTED,
    RESOLVED_RULE_DELETED,
    AlertRuleEngine,
    NotificationHandler,
)

__all__ = [
    # Config
    "Aggregation",
    "AlertEngineConfig",
    "AlertSeverity",
    "AlertStatus",
    "ChannelType",
    "ComparisonOperator",
    # Models
    "MANUAL_RULE_ID",
    "Alert",
    "AlertCondition",
    "AlertRule",
    "AlertState",
    # Conditions
    "evaluate_condition",
    "extract_series_values",
    "histogram_value",
    "state_key",
    # Rules
    "default_alert_rules",
    "generate_rule_id",
    # Engine
    "RESOLVED_CONDITION_CLEARED",
    "RESOLVED_MANUAL_EVICTED",
    "RESOLVED_RULE_DELETED",
    "AlertRuleEngine",
    "NotificationHandler",
]
