# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Metric name constants following Prometheus naming conventions.

This module provides standardized metric names for all observability
in the capacity-allocator library. All metric names use the
`capacity_alloc_` prefix for Prometheus compatibility.

Naming Conventions:
    - Counter metrics end with `_total`
    - Histogram metrics for time end with `_seconds`
    - Gauges use present-tense descriptive names

Label Best Practices:
    To prevent label cardinality explosion, use only:
    - `intent` - Intent type (enum: reserve, release)
    - `outcome` - Intent outcome (enum: granted, waitlisted, released)
    - `parent_kind` - Parent kind (enum: event, screening)
    - `reason` - Failure or skip reason (enum: exception class names)

    NEVER use:
    - `slot_id` - Unique per slot (unbounded!)
    - `requester_id` - Unique per user (unbounded!)
    - `booking_id` - Unique per booking (unbounded!)

Usage:
    >>> from capacity_allocator.observability.constants import (
    ...     RESERVE_INTENTS_TOTAL, METRIC_PREFIX
    ... )
    >>> print(RESERVE_INTENTS_TOTAL)
    'capacity_alloc_reserve_intents_total'
"""


# =============================================================================
# Global Prefix
# =============================================================================

METRIC_PREFIX = "capacity_alloc"
"""Prefix for all Prometheus metrics in this library."""


# =============================================================================
# Intent Metrics (orchestrator.py)
# =============================================================================

RESERVE_INTENTS_TOTAL = f"{METRIC_PREFIX}_reserve_intents_total"
"""Total committed reserve intents, labeled by outcome (granted, waitlisted)."""

RELEASE_INTENTS_TOTAL = f"{METRIC_PREFIX}_release_intents_total"
"""Total committed release intents."""

PROMOTIONS_TOTAL = f"{METRIC_PREFIX}_promotions_total"
"""Total waitlist entries promoted to granted bookings."""

PROMOTIONS_SKIPPED_TOTAL = f"{METRIC_PREFIX}_promotions_skipped_total"
"""Total eligible entries whose promotion re-check failed."""

UNITS_GRANTED_TOTAL = f"{METRIC_PREFIX}_units_granted_total"
"""Total units granted, including promotions."""

UNITS_RELEASED_TOTAL = f"{METRIC_PREFIX}_units_released_total"
"""Total units returned to ledgers."""


# =============================================================================
# Engine Metrics (engine.py)
# =============================================================================

TRANSACTION_CONFLICTS_TOTAL = f"{METRIC_PREFIX}_transaction_conflicts_total"
"""Total transaction conflicts observed by the engine (each one is retried or surfaced)."""

CONFLICT_RETRIES_EXHAUSTED_TOTAL = f"{METRIC_PREFIX}_conflict_retries_exhausted_total"
"""Total intents that failed after exhausting conflict retries."""

INTENT_ERRORS_TOTAL = f"{METRIC_PREFIX}_intent_errors_total"
"""Total intents that ended in an error, labeled by intent and exception class."""

INTENT_LATENCY_SECONDS = f"{METRIC_PREFIX}_intent_latency_seconds"
"""End-to-end intent latency including retries (histogram)."""


# =============================================================================
# Notification Metrics (notifications.py)
# =============================================================================

NOTIFICATIONS_SENT_TOTAL = f"{METRIC_PREFIX}_notifications_sent_total"
"""Total allocation events delivered to notifiers."""

NOTIFICATION_FAILURES_TOTAL = f"{METRIC_PREFIX}_notification_failures_total"
"""Total notifier calls that raised or timed out."""

NOTIFICATIONS_IN_FLIGHT = f"{METRIC_PREFIX}_notifications_in_flight"
"""Notifier calls currently awaiting completion (gauge)."""


# =============================================================================
# Histogram Buckets
# =============================================================================

LATENCY_BUCKETS: list[float] = [
    0.001,
    0.005,
    0.01,
    0.025,
    0.05,
    0.1,
    0.25,
    0.5,
    1.0,
    2.5,
    5.0,
]
"""Default latency buckets for intent duration histograms (in seconds)."""


__all__ = [
    "CONFLICT_RETRIES_EXHAUSTED_TOTAL",
    "INTENT_ERRORS_TOTAL",
    "INTENT_LATENCY_SECONDS",
    # Buckets
    "LATENCY_BUCKETS",
    # Prefix
    "METRIC_PREFIX",
    "NOTIFICATIONS_IN_FLIGHT",
    "NOTIFICATIONS_SENT_TOTAL",
    "NOTIFICATION_FAILURES_TOTAL",
    "PROMOTIONS_SKIPPED_TOTAL",
    "PROMOTIONS_TOTAL",
    "RELEASE_INTENTS_TOTAL",
    # Intents
    "RESERVE_INTENTS_TOTAL",
    # Engine
    "TRANSACTION_CONFLICTS_TOTAL",
    "UNITS_GRANTED_TOTAL",
    "UNITS_RELEASED_TOTAL",
]
