"""Metric exporters: Prometheus text exposition and JSON snapshots."""

import json
import logging
import re
from typing import Dict, Optional

from .config import MetricsConfig
from .registry import Counter, Gauge, Histogram, HistogramMetric, MetricsRegistry

logger = logging.getLogger(__name__)

_INVALID_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_:]")


class PrometheusExporter:
    """Exports metrics in Prometheus text exposition format."""

    def __init__(self, registry: MetricsRegistry, config: Optional[MetricsConfig] = None):
        self.registry = registry
        self.config = config or registry.config

    def expose_metrics(self) -> str:
        """Generate Prometheus text format output for all registered metrics."""
        lines = []
        families = self.registry.get_families()
        timestamp_ms = int(self.registry.now() * 1000) if self.config.include_timestamp else None

        for raw_name in sorted(families.keys()):
            family = families[raw_name]
            name = self.sanitize_name(raw_name)

            lines.append(f"# HELP {name} {family.description}")
            lines.append(f"# TYPE {name} {family.metric_type.value}")

            if isinstance(family, (Counter, Gauge)):
                self._render_scalar(lines, name, family, timestamp_ms)
            elif isinstance(family, Histogram):
                self._render_histogram(lines, name, family, timestamp_ms)

            lines.append("")

        return "\n".join(lines)

    def _render_scalar(self, lines: list, name: str, family, timestamp_ms: Optional[int]) -> None:
        ts_suffix = f" {timestamp_ms}" if timestamp_ms else ""
        series = family.series()
        if not series:
            lines.append(f"{name} 0{ts_suffix}")
            return
        for metric in series:
            lines.append(f"{name}{self._format_labels(metric.labels)} {self._format_value(metric.value)}{ts_suffix}")

    def _render_histogram(self, lines: list, name: str, family: Histogram, timestamp_ms: Optional[int]) -> None:
        ts_suffix = f" {timestamp_ms}" if timestamp_ms else ""
        series = family.series()
        if not series:
            lines.append(f"{name}_count 0{ts_suffix}")
            lines.append(f"{name}_sum 0{ts_suffix}")
            return

        for metric in series:
            self._render_histogram_series(lines, name, metric, ts_suffix)

    def _render_histogram_series(self, lines: list, name: str, metric: HistogramMetric, ts_suffix: str) -> None:
        base = self._format_labels(metric.labels)
        for bound, count in metric.buckets:
            le = "+Inf" if bound == float("inf") else self._format_value(float(bound))
            le_label = f'le="{le}"'
            combined = f"{base[1:-1]},{le_label}" if base else le_label
            lines.append(f"{name}_bucket{{{combined}}} {count}{ts_suffix}")
        lines.append(f"{name}_count{base} {metric.count}{ts_suffix}")
        lines.append(f"{name}_sum{base} {self._format_value(metric.sum)}{ts_suffix}")

    @staticmethod
    def sanitize_name(name: str) -> str:
        """Replace characters Prometheus does not accept in metric names."""
        cleaned = _INVALID_NAME_CHARS.sub("_", name)
        if cleaned and cleaned[0].isdigit():
            cleaned = "_" + cleaned
        return cleaned

    @staticmethod
    def _format_labels(labels: Dict[str, str]) -> str:
        """Format a label dict into a Prometheus label string, sorted by name."""
        if not labels:
            return ""
        pairs = []
        for k, v in sorted(labels.items()):
            escaped = str(v).replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")
            pairs.append(f'{k}="{escaped}"')
        return "{" + ",".join(pairs) + "}"

    @staticmethod
    def _format_value(value) -> str:
        """Format a numeric value for Prometheus output."""
        if isinstance(value, float):
            if value == float("inf"):
                return "+Inf"
            if value == float("-inf"):
                return "-Inf"
            if value == int(value) and abs(value) < 1e15:
                return str(int(value))
            return f"{value:g}"
        return str(value)


class JsonExporter:
    """Exports a JSON-serializable snapshot of every metric series."""

    def __init__(self, registry: MetricsRegistry):
        self.registry = registry

    def snapshot(self) -> dict:
        counters, gauges, histograms = [], [], []
        for family in self.registry.get_families().values():
            if isinstance(family, Counter):
                counters.extend(m.to_dict() for m in family.series())
            elif isinstance(family, Gauge):
                gauges.extend(m.to_dict() for m in family.series())
            elif isinstance(family, Histogram):
                histograms.extend(m.to_dict() for m in family.series())
        return {
            "counters": sorted(counters, key=lambda m: (m["name"], sorted(m["labels"].items()))),
            "gauges": sorted(gauges, key=lambda m: (m["name"], sorted(m["labels"].items()))),
            "histograms": sorted(histograms, key=lambda m: (m["name"], sorted(m["labels"].items()))),
            "exported_at": self.registry.now(),
            "uptime_seconds": self.registry.uptime_seconds(),
        }

    def to_json(self, indent: Optional[int] = None) -> str:
        return json.dumps(self.snapshot(), indent=indent)


def create_metrics_router(registry: MetricsRegistry, config: Optional[MetricsConfig] = None):
    """Create a FastAPI router exposing ``/metrics`` and ``/metrics/json``.

    FastAPI is imported only when called so the registry can be used
    without a web stack.
    """
    from fastapi import APIRouter
    from fastapi.responses import JSONResponse, PlainTextResponse

    config = config or registry.config
    router = APIRouter(tags=["observability"])
    prometheus = PrometheusExporter(registry, config)
    json_exporter = JsonExporter(registry)

    @router.get(config.endpoint_path, response_class=PlainTextResponse)
    async def metrics_endpoint():
        """Expose Prometheus metrics."""
        return PlainTextResponse(
            content=prometheus.expose_metrics(),
            media_type="text/plain; version=0.0.4; charset=utf-8",
        )

    @router.get(f"{config.endpoint_path}/json")
    async def metrics_json_endpoint():
        """Expose a JSON snapshot of all metrics."""
        return JSONResponse(content=json_exporter.snapshot())

    return router
