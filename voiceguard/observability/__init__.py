"""Metrics registry, exporters, and voice call recorders."""

from .config import (
    CircuitBreakerState,
    ExportFormat,
    HistogramBuckets,
    MetricsConfig,
    MetricType,
    VoiceMetricNames,
)
from .registry import (
    PERCENTILES,
    Counter,
    CounterMetric,
    Gauge,
    GaugeMetric,
    Histogram,
    HistogramMetric,
    HistogramStats,
    Metric,
    MetricsRegistry,
    metric_key,
)
from .voice import MetricsSummary, VoiceMetrics
from .exporter import JsonExporter, PrometheusExporter, create_metrics_router

__all__ = [
    # Config
    "CircuitBreakerState",
    "ExportFormat",
    "HistogramBuckets",
    "MetricsConfig",
    "MetricType",
    "VoiceMetricNames",
    # Registry
    "PERCENTILES",
    "Counter",
    "CounterMetric",
    "Gauge",
    "GaugeMetric",
    "Histogram",
    "HistogramMetric",
    "HistogramStats",
    "Metric",
    "MetricsRegistry",
    "metric_key",
    # Voice
    "MetricsSummary",
    "VoiceMetrics",
    # Exporter
    "JsonExporter",
    "PrometheusExporter",
    "create_metrics_router",
]
