# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Observability and metrics for the Capacity Allocator.

Classes:
    UnifiedMetricsCollector: Unified metrics collector supporting dict and Prometheus.

Protocols:
    MetricsCollectorProtocol: Protocol for metrics collection backends.

Functions:
    get_metrics_collector: Get the global metrics collector singleton.
    reset_metrics_collector: Reset the global metrics collector singleton.

Constants:
    PROMETHEUS_AVAILABLE: Whether prometheus_client is available.
    All metric name constants from constants module.
"""

from .collector import (
    METRIC_DEFINITIONS,
    PROMETHEUS_AVAILABLE,
    MetricDefinition,
    UnifiedMetricsCollector,
    get_metrics_collector,
    reset_metrics_collector,
)
from .constants import (
    CONFLICT_RETRIES_EXHAUSTED_TOTAL,
    INTENT_ERRORS_TOTAL,
    INTENT_LATENCY_SECONDS,
    LATENCY_BUCKETS,
    METRIC_PREFIX,
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
from .protocols import MetricsCollectorProtocol

__all__ = [
    # Engine
    "CONFLICT_RETRIES_EXHAUSTED_TOTAL",
    "INTENT_ERRORS_TOTAL",
    "INTENT_LATENCY_SECONDS",
    # Buckets
    "LATENCY_BUCKETS",
    "METRIC_DEFINITIONS",
    "METRIC_PREFIX",
    # Notifications
    "NOTIFICATIONS_IN_FLIGHT",
    "NOTIFICATIONS_SENT_TOTAL",
    "NOTIFICATION_FAILURES_TOTAL",
    # Constants
    "PROMETHEUS_AVAILABLE",
    "PROMOTIONS_SKIPPED_TOTAL",
    "PROMOTIONS_TOTAL",
    "RELEASE_INTENTS_TOTAL",
    # Intents
    "RESERVE_INTENTS_TOTAL",
    "TRANSACTION_CONFLICTS_TOTAL",
    "UNITS_GRANTED_TOTAL",
    "UNITS_RELEASED_TOTAL",
    "MetricDefinition",
    # Protocols
    "MetricsCollectorProtocol",
    # Unified collector
    "UnifiedMetricsCollector",
    "get_metrics_collector",
    "reset_metrics_collector",
]
