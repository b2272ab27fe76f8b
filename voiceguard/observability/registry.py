"""Metrics registry for voice call observability.

Metrics are grouped into families (one per name and kind). Each family
holds one series per distinct label set. Series are exposed to readers
as snapshot dataclasses (``CounterMetric``, ``GaugeMetric``,
``HistogramMetric``), which together form the ``Metric`` sum type.
"""

import bisect
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Callable, ClassVar, Deque, Dict, List, Optional, Tuple, Union

from .config import MetricsConfig, MetricType, VoiceMetricNames

logger = logging.getLogger(__name__)

LabelKey = Tuple[Tuple[str, str], ...]

PERCENTILES: Tuple[Tuple[str, float], ...] = (
    ("p50", 0.50),
    ("p75", 0.75),
    ("p90", 0.90),
    ("p95", 0.95),
    ("p99", 0.99),
)


def label_key(labels: Optional[Dict[str, str]]) -> LabelKey:
    """Return a hashable, order-independent key for a label set."""
    if not labels:
        return ()
    return tuple(sorted((str(k), str(v)) for k, v in labels.items()))


def metric_key(name: str, labels: Optional[Dict[str, str]] = None) -> str:
    """Return the canonical ``name{k="v",...}`` key with labels sorted by name."""
    key = label_key(labels)
    if not key:
        return name
    return name + "{" + ",".join(f'{k}="{v}"' for k, v in key) + "}"


# ── Metric snapshots ─────────────────────────────────────────────────


@dataclass
class CounterMetric:
    """A single counter series."""

    name: str
    description: str = ""
    labels: Dict[str, str] = field(default_factory=dict)
    value: float = 0.0
    updated_at: float = 0.0

    metric_type: ClassVar[MetricType] = MetricType.COUNTER

    @property
    def key(self) -> str:
        return metric_key(self.name, self.labels)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "labels": dict(self.labels),
            "value": self.value,
            "updated_at": self.updated_at,
        }


@dataclass
class GaugeMetric:
    """A single gauge series."""

    name: str
    description: str = ""
    labels: Dict[str, str] = field(default_factory=dict)
    value: float = 0.0
    updated_at: float = 0.0

    metric_type: ClassVar[MetricType] = MetricType.GAUGE

    @property
    def key(self) -> str:
        return metric_key(self.name, self.labels)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "labels": dict(self.labels),
            "value": self.value,
            "updated_at": self.updated_at,
        }


@dataclass
class HistogramMetric:
    """A single histogram series.

    ``bucket_counts`` are cumulative and aligned with ``bucket_bounds``;
    the final entry is the ``+Inf`` bucket and always equals ``count``.
    """

    name: str
    description: str = ""
    labels: Dict[str, str] = field(default_factory=dict)
    bucket_bounds: List[float] = field(default_factory=list)
    bucket_counts: List[int] = field(default_factory=list)
    count: int = 0
    sum: float = 0.0
    percentiles: Dict[str, float] = field(default_factory=dict)
    updated_at: float = 0.0

    metric_type: ClassVar[MetricType] = MetricType.HISTOGRAM

    @property
    def key(self) -> str:
        return metric_key(self.name, self.labels)

    @property
    def avg(self) -> float:
        return self.sum / self.count if self.count else 0.0

    @property
    def buckets(self) -> List[Tuple[float, int]]:
        """Bucket upper bounds paired with cumulative counts, ``+Inf`` last."""
        bounds = list(self.bucket_bounds) + [float("inf")]
        return list(zip(bounds, self.bucket_counts))

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "labels": dict(self.labels),
            "count": self.count,
            "sum": self.sum,
            "avg": self.avg,
            "buckets": {("+Inf" if b == float("inf") else str(b)): c for b, c in self.buckets},
            "percentiles": dict(self.percentiles),
            "updated_at": self.updated_at,
        }


Metric = Union[CounterMetric, GaugeMetric, HistogramMetric]


@dataclass
class HistogramStats:
    """Summary statistics for one histogram series."""

    count: int
    sum: float
    avg: float
    percentiles: Dict[str, float]


# ── Metric families ──────────────────────────────────────────────────


class Counter:
    """Monotonically increasing counter metric.

    Besides the running total, each series keeps increments grouped into
    ``bucket_seconds`` wide buckets for ``retention_seconds`` so callers
    can ask how much the counter grew over a trailing window.
    """

    metric_type = MetricType.COUNTER

    def __init__(
        self,
        name: str,
        description: str = "",
        clock: Callable[[], float] = time.time,
        bucket_seconds: float = 10.0,
        retention_seconds: float = 86_400.0,
    ):
        self.name = name
        self.description = description
        self.bucket_seconds = bucket_seconds
        self.retention_seconds = retention_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._series: Dict[LabelKey, CounterMetric] = {}
        self._history: Dict[LabelKey, Deque[List[float]]] = {}

    def increment(self, amount: float = 1.0, labels: Optional[Dict[str, str]] = None) -> None:
        """Increment the counter by the given amount."""
        if amount < 0:
            raise ValueError("Counter increment amount must be non-negative")
        key = label_key(labels)
        now = self._clock()
        with self._lock:
            series = self._series.get(key)
            if series is None:
                series = CounterMetric(self.name, self.description, dict(key))
                self._series[key] = series
                self._history[key] = deque()
            series.value += amount
            series.updated_at = now
            self._record(self._history[key], amount, now)

    def _record(self, history: Deque[List[float]], amount: float, now: float) -> None:
        start = now - now % self.bucket_seconds
        if history and history[-1][0] == start:
            history[-1][1] += amount
        else:
            history.append([start, amount])
        cutoff = now - self.retention_seconds
        while history and history[0][0] + self.bucket_seconds <= cutoff:
            history.popleft()

    def get(self, labels: Optional[Dict[str, str]] = None) -> float:
        """Return the counter value for specific labels."""
        with self._lock:
            series = self._series.get(label_key(labels))
            return series.value if series else 0.0

    def total_since(self, since: float) -> float:
        """Sum of increments across every label set in buckets ending after ``since``."""
        with self._lock:
            return sum(
                amount
                for history in self._history.values()
                for start, amount in history
                if start + self.bucket_seconds > since
            )

    def series(self) -> List[CounterMetric]:
        """Return snapshots of every label set, ordered by label key."""
        with self._lock:
            return [replace(s, labels=dict(s.labels)) for _, s in sorted(self._series.items())]

    def reset(self) -> None:
        with self._lock:
            self._series.clear()
            self._history.clear()


class Gauge:
    """Metric that can go up and down but never below zero."""

    metric_type = MetricType.GAUGE

    def __init__(self, name: str, description: str = "", clock: Callable[[], float] = time.time):
        self.name = name
        self.description = description
        self._clock = clock
        self._lock = threading.Lock()
        self._series: Dict[LabelKey, GaugeMetric] = {}

    def set(self, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        """Set the gauge to a specific value (floored at zero)."""
        self._apply(labels, lambda _current: value)

    def increment(self, amount: float = 1.0, labels: Optional[Dict[str, str]] = None) -> None:
        self._apply(labels, lambda current: current + amount)

    def decrement(self, amount: float = 1.0, labels: Optional[Dict[str, str]] = None) -> None:
        self._apply(labels, lambda current: current - amount)

    def get(self, labels: Optional[Dict[str, str]] = None) -> float:
        """Return the gauge value for specific labels."""
        with self._lock:
            series = self._series.get(label_key(labels))
            return series.value if series else 0.0

    def series(self) -> List[GaugeMetric]:
        with self._lock:
            return [replace(s, labels=dict(s.labels)) for _, s in sorted(self._series.items())]

    def reset(self) -> None:
        with self._lock:
            self._series.clear()

    def _apply(self, labels: Optional[Dict[str, str]], fn: Callable[[float], float]) -> None:
        key = label_key(labels)
        with self._lock:
            series = self._series.get(key)
            if series is None:
                series = GaugeMetric(self.name, self.description, dict(key))
                self._series[key] = series
            series.value = max(0.0, fn(series.value))
            series.updated_at = self._clock()


class _HistogramSeries:
    """Mutable state behind one histogram label set."""

    __slots__ = ("snapshot", "samples", "sample_times", "sorted_samples")

    def __init__(self, snapshot: HistogramMetric, sample_limit: int):
        self.snapshot = snapshot
        self.samples: Deque[float] = deque(maxlen=sample_limit)
        self.sample_times: Deque[float] = deque(maxlen=sample_limit)
        self.sorted_samples: List[float] = []


class Histogram:
    """Distribution metric with fixed buckets and rolling percentiles.

    Each series keeps the most recent ``sample_limit`` raw observations.
    A sorted copy is maintained incrementally so percentiles can be
    recomputed on every observation without re-sorting the window.
    """

    metric_type = MetricType.HISTOGRAM

    def __init__(
        self,
        name: str,
        description: str = "",
        buckets: Optional[List[float]] = None,
        sample_limit: int = 10_000,
        clock: Callable[[], float] = time.time,
    ):
        self.name = name
        self.description = description
        self.bucket_bounds = sorted(buckets or [0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0])
        self.sample_limit = sample_limit
        self._clock = clock
        self._lock = threading.Lock()
        self._series: Dict[LabelKey, _HistogramSeries] = {}

    def observe(self, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        """Record an observation."""
        key = label_key(labels)
        with self._lock:
            state = self._series.get(key)
            if state is None:
                state = _HistogramSeries(
                    HistogramMetric(
                        name=self.name,
                        description=self.description,
                        labels=dict(key),
                        bucket_bounds=list(self.bucket_bounds),
                        bucket_counts=[0] * (len(self.bucket_bounds) + 1),
                    ),
                    self.sample_limit,
                )
                self._series[key] = state

            snap = state.snapshot
            snap.count += 1
            snap.sum += value
            for i, bound in enumerate(self.bucket_bounds):
                if value <= bound:
                    snap.bucket_counts[i] += 1
            snap.bucket_counts[-1] += 1

            if len(state.samples) == state.samples.maxlen:
                evicted = state.samples[0]
                del state.sorted_samples[bisect.bisect_left(state.sorted_samples, evicted)]
            now = self._clock()
            state.samples.append(value)
            state.sample_times.append(now)
            bisect.insort(state.sorted_samples, value)

            snap.percentiles = self._percentiles(state.sorted_samples)
            snap.updated_at = now

    def get(self, labels: Optional[Dict[str, str]] = None) -> Optional[HistogramMetric]:
        with self._lock:
            state = self._series.get(label_key(labels))
            return self._copy(state.snapshot) if state else None

    def series(self) -> List[HistogramMetric]:
        with self._lock:
            return [self._copy(s.snapshot) for _, s in sorted(self._series.items())]

    def samples_since(self, since: float) -> List[float]:
        """Retained observations from every label set made at or after ``since``, ascending."""
        with self._lock:
            values = [
                value
                for state in self._series.values()
                for value, observed_at in zip(state.samples, state.sample_times)
                if observed_at >= since
            ]
        return sorted(values)

    def reset(self) -> None:
        with self._lock:
            self._series.clear()

    @staticmethod
    def _percentiles(sorted_samples: List[float]) -> Dict[str, float]:
        n = len(sorted_samples)
        if not n:
            return {name: 0.0 for name, _ in PERCENTILES}
        return {name: sorted_samples[min(int(n * p), n - 1)] for name, p in PERCENTILES}

    @staticmethod
    def _copy(snap: HistogramMetric) -> HistogramMetric:
        return replace(
            snap,
            labels=dict(snap.labels),
            bucket_bounds=list(snap.bucket_bounds),
            bucket_counts=list(snap.bucket_counts),
            percentiles=dict(snap.percentiles),
        )


MetricFamily = Union[Counter, Gauge, Histogram]


# ── Registry ─────────────────────────────────────────────────────────


class MetricsRegistry:
    """Central registry for voice call metrics.

    Counters and gauges are created on first write. Histograms must be
    registered with their bucket bounds before observations are kept.

    Example:
        registry = MetricsRegistry()
        registry.increment_counter("voice_calls_total", labels={"tenant": "t1"})
        registry.observe_histogram("voice_latency_seconds", 0.42)
        stats = registry.get_histogram_stats("voice_latency_seconds")
    """

    def __init__(
        self,
        config: Optional[MetricsConfig] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or MetricsConfig()
        self._clock = clock
        self._families: Dict[str, MetricFamily] = {}
        self._registry_lock = threading.Lock()
        self._started_at = clock()
        if self.config.register_default_metrics:
            self._register_defaults()
        logger.debug("MetricsRegistry initialized with %d metrics", len(self._families))

    # -- registration -------------------------------------------------

    def counter(self, name: str, description: str = "") -> Counter:
        """Register and return a Counter family."""
        return self._get_or_create(
            name,
            Counter,
            lambda: Counter(
                name,
                description,
                self._clock,
                bucket_seconds=self.config.window_bucket_seconds,
                retention_seconds=self.config.window_retention_seconds,
            ),
        )

    def gauge(self, name: str, description: str = "") -> Gauge:
        """Register and return a Gauge family."""
        return self._get_or_create(name, Gauge, lambda: Gauge(name, description, self._clock))

    def histogram(
        self,
        name: str,
        description: str = "",
        buckets: Optional[List[float]] = None,
    ) -> Histogram:
        """Register and return a Histogram family."""
        return self._get_or_create(
            name,
            Histogram,
            lambda: Histogram(
                name,
                description,
                buckets=buckets,
                sample_limit=self.config.histogram_sample_limit,
                clock=self._clock,
            ),
        )

    register_histogram = histogram

    def _get_or_create(self, name: str, kind: type, factory: Callable[[], MetricFamily]):
        with self._registry_lock:
            existing = self._families.get(name)
            if existing is not None:
                if not isinstance(existing, kind):
                    raise TypeError(f"Metric '{name}' already registered as {type(existing).__name__}")
                return existing
            family = factory()
            self._families[name] = family
            return family

    # -- writes -------------------------------------------------------

    def increment_counter(self, name: str, delta: float = 1.0, labels: Optional[Dict[str, str]] = None) -> None:
        self._counter(name).increment(delta, labels)

    def set_gauge(self, name: str, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        self._gauge(name).set(value, labels)

    def increment_gauge(self, name: str, delta: float = 1.0, labels: Optional[Dict[str, str]] = None) -> None:
        self._gauge(name).increment(delta, labels)

    def decrement_gauge(self, name: str, delta: float = 1.0, labels: Optional[Dict[str, str]] = None) -> None:
        self._gauge(name).decrement(delta, labels)

    def observe_histogram(self, name: str, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        """Record an observation; unknown histogram names are dropped."""
        family = self.get_family(name)
        if not isinstance(family, Histogram):
            logger.warning("Histogram %s is not registered; observation dropped", name)
            return
        family.observe(value, labels)

    def _counter(self, name: str) -> Counter:
        family = self.get_family(name)
        if family is None:
            return self.counter(name, f"Auto-registered counter: {name}")
        if not isinstance(family, Counter):
            raise TypeError(f"Metric '{name}' is a {type(family).__name__}, not a Counter")
        return family

    def _gauge(self, name: str) -> Gauge:
        family = self.get_family(name)
        if family is None:
            return self.gauge(name, f"Auto-registered gauge: {name}")
        if not isinstance(family, Gauge):
            raise TypeError(f"Metric '{name}' is a {type(family).__name__}, not a Gauge")
        return family

    # -- reads --------------------------------------------------------

    def get_family(self, name: str) -> Optional[MetricFamily]:
        with self._registry_lock:
            return self._families.get(name)

    def get_families(self) -> Dict[str, MetricFamily]:
        """Return all registered families keyed by name."""
        with self._registry_lock:
            return dict(self._families)

    def get_metric(self, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[Metric]:
        """Return a snapshot of one series, or None if it has not been written."""
        family = self.get_family(name)
        if family is None:
            return None
        if isinstance(family, Histogram):
            return family.get(labels)
        key = metric_key(name, labels)
        for series in family.series():
            if series.key == key:
                return series
        return None

    def get_counter_value(self, name: str, labels: Optional[Dict[str, str]] = None) -> float:
        family = self.get_family(name)
        return family.get(labels) if isinstance(family, Counter) else 0.0

    def get_gauge_value(self, name: str, labels: Optional[Dict[str, str]] = None) -> float:
        family = self.get_family(name)
        return family.get(labels) if isinstance(family, Gauge) else 0.0

    def get_histogram_stats(self, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[HistogramStats]:
        family = self.get_family(name)
        if not isinstance(family, Histogram):
            return None
        snap = family.get(labels)
        if snap is None:
            return None
        return HistogramStats(count=snap.count, sum=snap.sum, avg=snap.avg, percentiles=dict(snap.percentiles))

    # -- trailing windows ---------------------------------------------

    def get_counter_total_since(self, name: str, since: float) -> float:
        """Growth of a counter, summed over all label sets, since an epoch time."""
        family = self.get_family(name)
        return family.total_since(since) if isinstance(family, Counter) else 0.0

    def get_histogram_stats_since(self, name: str, since: float) -> Optional[HistogramStats]:
        """Stats over retained observations (all label sets) made since an epoch time."""
        family = self.get_family(name)
        if not isinstance(family, Histogram):
            return None
        values = family.samples_since(since)
        if not values:
            return None
        total = sum(values)
        return HistogramStats(
            count=len(values),
            sum=total,
            avg=total / len(values),
            percentiles=Histogram._percentiles(values),
        )

    def get_all_metrics(self) -> List[Metric]:
        """Return snapshots of every series, ordered by metric key."""
        result: List[Metric] = []
        for family in self.get_families().values():
            result.extend(family.series())
        return sorted(result, key=lambda m: m.key)

    def uptime_seconds(self) -> float:
        return max(0.0, self._clock() - self._started_at)

    def now(self) -> float:
        return self._clock()

    def reset(self) -> None:
        """Drop every metric and restore the default set."""
        with self._registry_lock:
            self._families.clear()
        self._started_at = self._clock()
        if self.config.register_default_metrics:
            self._register_defaults()
        logger.debug("MetricsRegistry reset")

    def _register_defaults(self) -> None:
        buckets = self.config.buckets
        self.counter(VoiceMetricNames.CALLS_TOTAL, "Total number of voice calls")
        self.counter(VoiceMetricNames.CALLS_SUCCESSFUL, "Number of successfully completed calls")
        self.counter(VoiceMetricNames.ERRORS_TOTAL, "Total number of errors by type")
        self.counter(VoiceMetricNames.WEBHOOK_FAILURES, "Number of failed webhook deliveries")
        self.counter(VoiceMetricNames.TRANSFERS_TOTAL, "Number of calls transferred to a human")
        self.gauge(VoiceMetricNames.ACTIVE_CALLS, "Number of calls currently in progress")
        self.gauge(
            VoiceMetricNames.CIRCUIT_BREAKER_STATE,
            "Circuit breaker state (0=closed, 1=half-open, 2=open)",
        )
        self.histogram(VoiceMetricNames.LATENCY, "Voice response latency in seconds", buckets.latency)
        self.histogram(VoiceMetricNames.CALL_DURATION, "Call duration in seconds", buckets.call_duration)
        self.histogram(VoiceMetricNames.RAG_LATENCY, "Knowledge retrieval latency in seconds", buckets.rag_latency)
