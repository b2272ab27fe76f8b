"""Condition evaluation against metrics registry series."""

import logging
import operator
from typing import Callable, Dict, List, Optional, Tuple

from voiceguard.observability import Counter, Gauge, Histogram, HistogramMetric, MetricsRegistry

from .config import Aggregation, ComparisonOperator
from .models import AlertCondition

logger = logging.getLogger(__name__)

_OPERATORS: Dict[ComparisonOperator, Callable[[float, float], bool]] = {
    ComparisonOperator.GT: operator.gt,
    ComparisonOperator.GTE: operator.ge,
    ComparisonOperator.LT: operator.lt,
    ComparisonOperator.LTE: operator.le,
    ComparisonOperator.EQ: operator.eq,
    ComparisonOperator.NEQ: operator.ne,
}


def evaluate_condition(op: ComparisonOperator, value: float, threshold: float) -> bool:
    """Apply a comparison operator to a metric value."""
    return _OPERATORS[op](value, threshold)


def histogram_value(metric: HistogramMetric, aggregation: Optional[Aggregation]) -> float:
    """Reduce a histogram series to a single value.

    ``avg`` is sum/count, ``max`` reads p99, ``rate`` is the raw
    observation count, anything else reads p95.
    """
    if aggregation == Aggregation.AVG:
        return metric.avg
    if aggregation == Aggregation.MAX:
        return metric.percentiles.get("p99", 0.0)
    if aggregation == Aggregation.RATE:
        return float(metric.count)
    return metric.percentiles.get("p95", 0.0)


def extract_series_values(
    registry: MetricsRegistry,
    condition: AlertCondition,
) -> List[Tuple[Dict[str, str], float]]:
    """Return ``(labels, value)`` for every series of the condition's metric.

    An unknown metric, or one with no series yet, yields an empty list.
    """
    family = registry.get_family(condition.metric)
    if family is None:
        return []
    if isinstance(family, Histogram):
        return [
            (metric.labels, histogram_value(metric, condition.aggregation))
            for metric in family.series()
            if metric.count > 0
        ]
    if isinstance(family, (Counter, Gauge)):
        return [(metric.labels, metric.value) for metric in family.series()]
    logger.debug("Unsupported metric family for %s", condition.metric)
    return []


def state_key(rule_id: str, labels: Optional[Dict[str, str]]) -> str:
    """Return the ``rule_id:k=v,k=v`` key identifying one alert series."""
    pairs = ",".join(f"{k}={v}" for k, v in sorted((labels or {}).items()))
    return f"{rule_id}:{pairs}"
