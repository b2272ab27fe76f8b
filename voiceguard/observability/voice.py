"""Voice call metrics: convenience recorders and the health summary."""

import logging
from dataclasses import dataclass
from typing import Optional

from .config import CircuitBreakerState, VoiceMetricNames
from .registry import Counter, MetricsRegistry

logger = logging.getLogger(__name__)


@dataclass
class MetricsSummary:
    """Point-in-time overview of call health derived from the registry."""

    active_calls: float = 0.0
    total_calls: float = 0.0
    successful_calls: float = 0.0
    error_count: float = 0.0
    error_rate: float = 0.0
    avg_latency_ms: float = 0.0
    p95_latency_ms: float = 0.0
    circuit_breaker_state: CircuitBreakerState = CircuitBreakerState.CLOSED

    def to_dict(self) -> dict:
        return {
            "active_calls": self.active_calls,
            "total_calls": self.total_calls,
            "successful_calls": self.successful_calls,
            "error_count": self.error_count,
            "error_rate": self.error_rate,
            "avg_latency_ms": self.avg_latency_ms,
            "p95_latency_ms": self.p95_latency_ms,
            "circuit_breaker_state": self.circuit_breaker_state.name,
        }


class VoiceMetrics:
    """Records voice call events against a metrics registry.

    Latencies are accepted in milliseconds and stored in seconds.
    """

    def __init__(self, registry: MetricsRegistry):
        self.registry = registry

    # ── Calls ─────────────────────────────────────────────────────────

    def record_call(self, tenant_id: Optional[str] = None) -> None:
        self.registry.increment_counter(VoiceMetricNames.CALLS_TOTAL, labels=self._tenant(tenant_id))

    def record_successful_call(self, tenant_id: Optional[str] = None) -> None:
        self.registry.increment_counter(VoiceMetricNames.CALLS_SUCCESSFUL, labels=self._tenant(tenant_id))

    def record_error(self, error_type: str, tenant_id: Optional[str] = None) -> None:
        labels = {"error_type": error_type, **(self._tenant(tenant_id) or {})}
        self.registry.increment_counter(VoiceMetricNames.ERRORS_TOTAL, labels=labels)

    def record_webhook_failure(self, event_type: str = "unknown") -> None:
        self.registry.increment_counter(VoiceMetricNames.WEBHOOK_FAILURES, labels={"event_type": event_type})

    def record_transfer(self, reason: str = "requested") -> None:
        self.registry.increment_counter(VoiceMetricNames.TRANSFERS_TOTAL, labels={"reason": reason})

    # ── Gauges ────────────────────────────────────────────────────────

    def set_active_calls(self, count: int) -> None:
        self.registry.set_gauge(VoiceMetricNames.ACTIVE_CALLS, count)

    def increment_active_calls(self) -> None:
        self.registry.increment_gauge(VoiceMetricNames.ACTIVE_CALLS)

    def decrement_active_calls(self) -> None:
        self.registry.decrement_gauge(VoiceMetricNames.ACTIVE_CALLS)

    def set_circuit_breaker_state(self, state: CircuitBreakerState, tenant_id: Optional[str] = None) -> None:
        self.registry.set_gauge(VoiceMetricNames.CIRCUIT_BREAKER_STATE, state.value, labels=self._tenant(tenant_id))
        if state == CircuitBreakerState.OPEN:
            logger.warning(
                "Circuit breaker opened",
                extra={"extra_data": {"tenant_id": tenant_id}},
            )

    # ── Latency ───────────────────────────────────────────────────────

    def record_latency(self, latency_ms: float) -> None:
        self.registry.observe_histogram(VoiceMetricNames.LATENCY, latency_ms / 1000)

    def record_call_duration(self, duration_seconds: float) -> None:
        self.registry.observe_histogram(VoiceMetricNames.CALL_DURATION, duration_seconds)

    def record_rag_latency(self, latency_ms: float) -> None:
        self.registry.observe_histogram(VoiceMetricNames.RAG_LATENCY, latency_ms / 1000)

    # ── Summary ───────────────────────────────────────────────────────

    def summary(self) -> MetricsSummary:
        """Aggregate every label set into one call health overview."""
        total = self._counter_total(VoiceMetricNames.CALLS_TOTAL)
        errors = self._counter_total(VoiceMetricNames.ERRORS_TOTAL)
        latency = self.registry.get_histogram_stats(VoiceMetricNames.LATENCY)

        breaker = self.registry.get_family(VoiceMetricNames.CIRCUIT_BREAKER_STATE)
        worst = max((int(m.value) for m in breaker.series()), default=0) if breaker else 0

        return MetricsSummary(
            active_calls=self.registry.get_gauge_value(VoiceMetricNames.ACTIVE_CALLS),
            total_calls=total,
            successful_calls=self._counter_total(VoiceMetricNames.CALLS_SUCCESSFUL),
            error_count=errors,
            error_rate=errors / total if total else 0.0,
            avg_latency_ms=latency.avg * 1000 if latency else 0.0,
            p95_latency_ms=latency.percentiles["p95"] * 1000 if latency else 0.0,
            circuit_breaker_state=CircuitBreakerState(min(worst, CircuitBreakerState.OPEN.value)),
        )

    def _counter_total(self, name: str) -> float:
        family = self.registry.get_family(name)
        if not isinstance(family, Counter):
            return 0.0
        return sum(m.value for m in family.series())

    @staticmethod
    def _tenant(tenant_id: Optional[str]) -> Optional[dict]:
        return {"tenant_id": tenant_id} if tenant_id else None
