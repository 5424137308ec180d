# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Metrics collector for allocation intents, promotions and notifications.

Every value is kept in plain dicts so ``get_metrics()`` can be dumped as
JSON from a health endpoint. When prometheus_client is installed and
enabled, each update is mirrored into a Prometheus metric registered
from ``METRIC_DEFINITIONS``.

Usage:
    >>> from capacity_allocator.observability.collector import get_metrics_collector
    >>> collector = get_metrics_collector()
    >>> collector.inc_counter('capacity_alloc_reserve_intents_total',
    ...                       labels={'outcome': 'granted', 'parent_kind': 'event'})
    >>> collector.get_metrics()["counters"]
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, ClassVar

from .constants import (
    CONFLICT_RETRIES_EXHAUSTED_TOTAL,
    INTENT_ERRORS_TOTAL,
    INTENT_LATENCY_SECONDS,
    LATENCY_BUCKETS,
    NOTIFICATION_FAILURES_TOTAL,
    NOTIFICATIONS_IN_FLIGHT,
    NOTIFICATIONS_SENT_TOTAL,
    PROMOTIONS_SKIPPED_TOTAL,
    PROMOTIONS_TOTAL,
    RELEASE_INTENTS_TOTAL,
    RESERVE_INTENTS_TOTAL,
    TRANSACTION_CONFLICTS_TOTAL,
    UNITS_GRANTED_TOTAL,
    UNITS_RELEASED_TOTAL,
)

logger = logging.getLogger(__name__)

# prometheus_client is an optional extra
try:
    from prometheus_client import (
        REGISTRY as _REGISTRY,
        Counter as _Counter,
        Gauge as _Gauge,
        Histogram as _Histogram,
        start_http_server as _start_http_server,
    )

    _PROM_TYPES: dict[str, Any] = {
        "counter": _Counter,
        "gauge": _Gauge,
        "histogram": _Histogram,
    }
    REGISTRY: Any | None = _REGISTRY
    start_http_server: Callable[..., Any] | None = _start_http_server
    PROMETHEUS_AVAILABLE = True
except ImportError:
    _PROM_TYPES = {}
    REGISTRY = None
    start_http_server = None
    PROMETHEUS_AVAILABLE = False


@dataclass
class MetricDefinition:
    """Name, type, help text and label schema of one exported metric."""

    name: str
    metric_type: str  # 'counter', 'gauge', 'histogram'
    description: str
    label_names: tuple[str, ...] = ()
    buckets: list[float] | None = None


_CATALOGUE: tuple[tuple[str, str, str, tuple[str, ...]], ...] = (
    (RESERVE_INTENTS_TOTAL, "counter", "Reserve intents by outcome", ("outcome", "parent_kind")),
    (RELEASE_INTENTS_TOTAL, "counter", "Release intents by outcome", ("outcome",)),
    (PROMOTIONS_TOTAL, "counter", "Waitlist entries promoted to bookings", ()),
    (PROMOTIONS_SKIPPED_TOTAL, "counter", "Promotions abandoned after a failed re-check", ()),
    (UNITS_GRANTED_TOTAL, "counter", "Units taken from slot availability", ()),
    (UNITS_RELEASED_TOTAL, "counter", "Units returned to slot availability", ()),
    (TRANSACTION_CONFLICTS_TOTAL, "counter", "Slot transactions lost to a concurrent writer", ("intent",)),
    (CONFLICT_RETRIES_EXHAUSTED_TOTAL, "counter", "Intents that ran out of conflict retries", ("intent",)),
    (INTENT_ERRORS_TOTAL, "counter", "Intents rejected with an allocation error", ("intent", "reason")),
    (NOTIFICATIONS_SENT_TOTAL, "counter", "Allocation events delivered to the notifier", ("kind",)),
    (NOTIFICATION_FAILURES_TOTAL, "counter", "Notifier calls that raised or timed out", ("kind", "reason")),
    (NOTIFICATIONS_IN_FLIGHT, "gauge", "Notifier calls currently awaiting", ()),
)

METRIC_DEFINITIONS: dict[str, MetricDefinition] = {
    name: MetricDefinition(name, metric_type, description, labels)
    for name, metric_type, description, labels in _CATALOGUE
}
METRIC_DEFINITIONS[INTENT_LATENCY_SECONDS] = MetricDefinition(
    INTENT_LATENCY_SECONDS,
    "histogram",
    "Wall time of an intent including conflict retries",
    ("intent",),
    buckets=LATENCY_BUCKETS,
)


def _series_key(labels: dict[str, str] | None) -> str:
    if not labels:
        return ""
    return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))


def _summarize(observations: list[float]) -> dict[str, float]:
    total = sum(observations)
    return {
        "count": len(observations),
        "sum": total,
        "avg": total / len(observations),
        "min": min(observations),
        "max": max(observations),
    }


class UnifiedMetricsCollector:
    """
    Collects allocation metrics in memory and optionally in Prometheus.

    Series are keyed by metric name and a canonical ``k=v,...`` label string.
    At most ``MAX_LABEL_COMBINATIONS`` series are tracked per metric; updates
    for further combinations are dropped with a warning. Histogram series
    keep a bounded window of recent observations for the dict summary.
    """

    MAX_LABEL_COMBINATIONS: ClassVar[int] = 1000
    MAX_HISTOGRAM_OBSERVATIONS: ClassVar[int] = 10000

    def __init__(
        self,
        enable_prometheus: bool = True,
        registry: Any | None = None,
    ) -> None:
        """
        Args:
            enable_prometheus: Mirror updates into Prometheus when installed
            registry: Prometheus CollectorRegistry (defaults to the global one)
        """
        self._enable_prometheus = enable_prometheus and PROMETHEUS_AVAILABLE
        self._registry = registry if registry is not None else REGISTRY
        self._lock = threading.RLock()
        self._series: dict[str, dict[str, dict[str, Any]]] = {
            "counter": {},
            "gauge": {},
            "histogram": {},
        }
        self._prom_metrics: dict[str, Any] = {}
        self._server_running = False

        logger.debug(
            f"UnifiedMetricsCollector created (prometheus="
            f"{'on' if self._enable_prometheus else 'off'})"
        )

    def _apply(
        self,
        metric_type: str,
        name: str,
        labels: dict[str, str] | None,
        update: Callable[[Any], Any],
        initial: Any,
    ) -> bool:
        key = _series_key(labels)
        with self._lock:
            series = self._series[metric_type].setdefault(name, {})
            if key not in series:
                if len(series) >= self.MAX_LABEL_COMBINATIONS:
                    logger.warning(
                        f"Metric {name} already has {len(series)} label sets; "
                        f"dropping {key!r}"
                    )
                    return False
                series[key] = initial
            series[key] = update(series[key])
        return True

    def _prometheus_metric(self, name: str, metric_type: str) -> Any | None:
        if not self._enable_prometheus:
            return None
        if name in self._prom_metrics:
            return self._prom_metrics[name]

        defn = METRIC_DEFINITIONS.get(name)
        if defn is None or defn.metric_type != metric_type:
            defn = MetricDefinition(name, metric_type, f"Ad hoc {metric_type} {name}")
        kwargs: dict[str, Any] = {"registry": self._registry}
        if metric_type == "histogram":
            kwargs["buckets"] = defn.buckets or LATENCY_BUCKETS
        try:
            metric = _PROM_TYPES[metric_type](
                name, defn.description, list(defn.label_names), **kwargs
            )
        except ValueError as e:
            # Already registered by another collector; keep this one dict-only
            logger.warning(f"Prometheus {metric_type} {name} not registered: {e}")
            metric = None
        self._prom_metrics[name] = metric
        return metric

    def _mirror(
        self,
        metric_type: str,
        name: str,
        method: str,
        value: float,
        labels: dict[str, str] | None,
    ) -> None:
        metric = self._prometheus_metric(name, metric_type)
        if metric is None:
            return
        try:
            getattr(metric.labels(**labels) if labels else metric, method)(value)
        except ValueError as e:
            logger.debug(f"Prometheus {method} on {name} failed: {e}")

    def inc_counter(
        self,
        name: str,
        value: int = 1,
        labels: dict[str, str] | None = None,
    ) -> None:
        """
        Add ``value`` to a counter series.

        Raises:
            ValueError: If value is negative
        """
        if value < 0:
            raise ValueError("Counter increment must be non-negative")
        if self._apply("counter", name, labels, lambda current: current + value, 0):
            self._mirror("counter", name, "inc", value, labels)

    def set_gauge(
        self,
        name: str,
        value: float,
        labels: dict[str, str] | None = None,
    ) -> None:
        if self._apply("gauge", name, labels, lambda _: value, 0.0):
            self._mirror("gauge", name, "set", value, labels)

    def inc_gauge(
        self,
        name: str,
        value: float = 1.0,
        labels: dict[str, str] | None = None,
    ) -> None:
        if self._apply("gauge", name, labels, lambda current: current + value, 0.0):
            self._mirror("gauge", name, "inc", value, labels)

    def dec_gauge(
        self,
        name: str,
        value: float = 1.0,
        labels: dict[str, str] | None = None,
    ) -> None:
        if self._apply("gauge", name, labels, lambda current: current - value, 0.0):
            self._mirror("gauge", name, "dec", value, labels)

    def observe_histogram(
        self,
        name: str,
        value: float,
        labels: dict[str, str] | None = None,
    ) -> None:
        """Record one observation, e.g. an intent's latency in seconds."""
        limit = self.MAX_HISTOGRAM_OBSERVATIONS

        def append(window: list[float]) -> list[float]:
            window.append(value)
            if len(window) > limit:
                del window[: len(window) - limit // 2]
            return window

        if self._apply("histogram", name, labels, append, []):
            self._mirror("histogram", name, "observe", value, labels)

    def get_counter(self, name: str, labels: dict[str, str] | None = None) -> int:
        """Current value of one counter series (0 if never incremented)."""
        with self._lock:
            return self._series["counter"].get(name, {}).get(_series_key(labels), 0)

    def get_metrics(self) -> dict[str, Any]:
        """
        JSON-friendly snapshot::

            {
                "counters": {name: {label_key: int}},
                "gauges": {name: {label_key: float}},
                "histograms": {name: {label_key: {count, sum, avg, min, max}}},
            }
        """
        with self._lock:
            return {
                "counters": {
                    name: dict(series)
                    for name, series in self._series["counter"].items()
                },
                "gauges": {
                    name: dict(series)
                    for name, series in self._series["gauge"].items()
                },
                "histograms": {
                    name: {
                        key: _summarize(window)
                        for key, window in series.items()
                        if window
                    }
                    for name, series in self._series["histogram"].items()
                },
            }

    def reset(self) -> None:
        """Drop every in-memory series. Prometheus metrics are left registered."""
        with self._lock:
            for series in self._series.values():
                series.clear()
        logger.debug("Metrics collector reset")

    def start_http_server(self, host: str = "127.0.0.1", port: int = 9090) -> bool:
        """
        Expose the Prometheus registry over HTTP for scraping.

        Returns:
            True if the exporter is running after the call
        """
        if start_http_server is None:
            logger.warning("prometheus_client not installed; metrics exporter disabled")
            return False
        if self._server_running:
            return True

        try:
            if self._registry is not None:
                start_http_server(port, addr=host, registry=self._registry)
            else:
                start_http_server(port, addr=host)
        except OSError as e:
            logger.error(f"Could not bind metrics exporter on {host}:{port}: {e}")
            return False
        self._server_running = True
        logger.info(f"Metrics exporter listening on {host}:{port}")
        return True

    @property
    def prometheus_available(self) -> bool:
        return PROMETHEUS_AVAILABLE

    @property
    def prometheus_enabled(self) -> bool:
        return self._enable_prometheus

    @property
    def server_running(self) -> bool:
        return self._server_running


_global_collector: UnifiedMetricsCollector | None = None
_collector_lock = threading.Lock()


def get_metrics_collector(
    enable_prometheus: bool = True,
) -> UnifiedMetricsCollector:
    """
    Return the process-wide collector, creating it on first use.

    ``enable_prometheus`` only has an effect on the call that creates it.
    """
    global _global_collector

    if _global_collector is None:
        with _collector_lock:
            if _global_collector is None:
                _global_collector = UnifiedMetricsCollector(
                    enable_prometheus=enable_prometheus
                )
    return _global_collector


def reset_metrics_collector() -> None:
    """Forget the process-wide collector (used by tests)."""
    global _global_collector
    with _collector_lock:
        if _global_collector is not None:
            _global_collector.reset()
        _global_collector = None


__all__ = [
    "METRIC_DEFINITIONS",
    "PROMETHEUS_AVAILABLE",
    "MetricDefinition",
    "UnifiedMetricsCollector",
    "get_metrics_collector",
    "reset_metrics_collector",
]
