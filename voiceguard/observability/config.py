"""Observability configuration: metric kinds, export formats, well-known names."""

from dataclasses import dataclass, field
from enum import Enum
from typing import List


class MetricType(Enum):
    """Supported metric types."""

    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"


class ExportFormat(Enum):
    """Supported export formats."""

    PROMETHEUS = "prometheus"
    JSON = "json"


class CircuitBreakerState(Enum):
    """Numeric encoding of the call circuit breaker gauge."""

    CLOSED = 0
    HALF_OPEN = 1
    OPEN = 2


class VoiceMetricNames:
    """Names of the metrics registered when a registry is created."""

    CALLS_TOTAL = "voice_calls_total"
    CALLS_SUCCESSFUL = "voice_calls_successful_total"
    ERRORS_TOTAL = "voice_errors_total"
    WEBHOOK_FAILURES = "voice_webhook_failures_total"
    TRANSFERS_TOTAL = "voice_transfers_total"
    ACTIVE_CALLS = "voice_active_calls"
    CIRCUIT_BREAKER_STATE = "voice_circuit_breaker_state"
    LATENCY = "voice_latency_seconds"
    CALL_DURATION = "voice_call_duration_seconds"
    RAG_LATENCY = "voice_rag_latency_seconds"
    # Published by the rollout health controller each cycle
    ROLLOUT_ERROR_RATE = "voice_rollout_error_rate"
    ROLLOUT_P95_LATENCY_MS = "voice_rollout_p95_latency_ms"


@dataclass
class HistogramBuckets:
    """Configurable histogram bucket boundaries."""

    # Response latency (seconds)
    latency: List[float] = field(
        default_factory=lambda: [0.1, 0.25, 0.5, 0.75, 1.0, 1.5, 2.0, 3.0, 5.0]
    )
    # Whole-call duration (seconds)
    call_duration: List[float] = field(
        default_factory=lambda: [10, 30, 60, 120, 300, 600, 1200]
    )
    # Retrieval latency (seconds)
    rag_latency: List[float] = field(
        default_factory=lambda: [0.05, 0.1, 0.2, 0.3, 0.5, 1.0]
    )


@dataclass
class MetricsConfig:
    """Central configuration for the observability module."""

    # Export settings
    export_format: ExportFormat = ExportFormat.PROMETHEUS
    endpoint_path: str = "/metrics"
    include_timestamp: bool = False

    # Histogram buckets
    buckets: HistogramBuckets = field(default_factory=HistogramBuckets)

    # Raw samples kept per histogram series for percentile estimation
    histogram_sample_limit: int = 10_000

    # Counter history for trailing-window reads
    window_bucket_seconds: float = 10.0
    window_retention_seconds: float = 86_400.0

    # Register the voice call metric set on construction and reset
    register_default_metrics: bool = True
