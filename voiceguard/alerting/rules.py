"""Default alert rules registered when an engine is created."""

import re
import uuid
from typing import List

from voiceguard.observability import VoiceMetricNames

from .config import Aggregation, AlertSeverity, ChannelType, ComparisonOperator
from .models import AlertCondition, AlertRule

_NON_WORD = re.compile(r"\W+")


def generate_rule_id(name: str) -> str:
    """Return ``rule_<snake_name>_<suffix>`` for a rule name."""
    slug = _NON_WORD.sub("_", name.strip().lower()).strip("_")
    return f"rule_{slug}_{uuid.uuid4().hex[:8]}"


def default_alert_rules() -> List[AlertRule]:
    """Build a fresh copy of the voice agent default rule set."""
    return [
        AlertRule(
            name="High Response Latency",
            description="p95 voice response latency above 1.5 seconds",
            severity=AlertSeverity.WARNING,
            condition=AlertCondition(
                metric=VoiceMetricNames.LATENCY,
                operator=ComparisonOperator.GT,
                threshold=1.5,
                window_seconds=300,
            ),
            annotations={"runbook": "Check LLM provider latency and RAG retrieval times"},
            notification_channels=[ChannelType.SLACK],
        ),
        AlertRule(
            name="Critical Response Latency",
            description="p99 voice response latency above 3 seconds",
            severity=AlertSeverity.CRITICAL,
            condition=AlertCondition(
                metric=VoiceMetricNames.LATENCY,
                operator=ComparisonOperator.GT,
                threshold=3.0,
                aggregation=Aggregation.MAX,
                window_seconds=300,
            ),
            annotations={"runbook": "Consider failing over to the fallback voice pipeline"},
            notification_channels=[ChannelType.SLACK, ChannelType.PAGERDUTY],
        ),
        AlertRule(
            name="Circuit Breaker Open",
            description="Voice call circuit breaker is open",
            severity=AlertSeverity.CRITICAL,
            condition=AlertCondition(
                metric=VoiceMetricNames.CIRCUIT_BREAKER_STATE,
                operator=ComparisonOperator.GTE,
                threshold=2,
            ),
            annotations={"runbook": "Inspect upstream provider health before closing the breaker"},
            notification_channels=[ChannelType.SLACK, ChannelType.PAGERDUTY],
        ),
        AlertRule(
            name="Elevated Error Count",
            description="More than 50 voice call errors of one type",
            severity=AlertSeverity.WARNING,
            condition=AlertCondition(
                metric=VoiceMetricNames.ERRORS_TOTAL,
                operator=ComparisonOperator.GT,
                threshold=50,
                window_seconds=300,
            ),
            notification_channels=[ChannelType.SLACK],
        ),
        AlertRule(
            name="Webhook Delivery Failures",
            description="More than 10 failed webhook deliveries",
            severity=AlertSeverity.WARNING,
            condition=AlertCondition(
                metric=VoiceMetricNames.WEBHOOK_FAILURES,
                operator=ComparisonOperator.GT,
                threshold=10,
                window_seconds=300,
            ),
            notification_channels=[ChannelType.SLACK],
        ),
        AlertRule(
            name="Active Call Saturation",
            description="More than 100 concurrent calls in progress",
            severity=AlertSeverity.INFO,
            condition=AlertCondition(
                metric=VoiceMetricNames.ACTIVE_CALLS,
                operator=ComparisonOperator.GT,
                threshold=100,
            ),
            notification_channels=[ChannelType.SLACK],
        ),
    ]
