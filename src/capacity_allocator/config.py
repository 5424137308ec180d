# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Allocator Configuration

This module provides the configuration dataclass for the allocation engine,
covering conflict retries, waitlist bounds, notification dispatch and metrics.
"""

import random
from dataclasses import dataclass

from .exceptions import ConfigurationError


@dataclass
class AllocatorConfig:
    """
    Configuration for the allocation engine.

    Backend selection and connection settings are passed to the backend
    itself; this class only covers allocation behavior.
    """

    # === Conflict Handling ===

    max_conflict_retries: int = 10
    """Retries after a TransactionConflictError before it is surfaced.

    Sized so a burst of concurrent reserves on one Redis-backed slot, where
    every commit bumps the same version, still settles without surfacing
    conflicts."""

    conflict_backoff_base: float = 0.01
    """Base delay in seconds for exponential backoff between conflict retries."""

    conflict_backoff_max: float = 0.5
    """Maximum delay in seconds between conflict retries."""

    # === Waitlist ===

    max_waitlist_size: int | None = 1000
    """Maximum entries per slot waitlist (None for unbounded)."""

    # === Notifications ===

    notification_timeout: float = 5.0
    """Seconds a single notifier call may take before it is abandoned."""

    # === Metrics ===

    metrics_enabled: bool = True
    """Record allocation metrics in the unified collector."""

    enable_prometheus: bool = True
    """Mirror metrics to prometheus_client when it is installed."""

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.max_conflict_retries < 0:
            raise ConfigurationError(
                f"max_conflict_retries must be >= 0, got {self.max_conflict_retries}"
            )
        if self.conflict_backoff_base < 0:
            raise ConfigurationError(
                f"conflict_backoff_base must be >= 0, got {self.conflict_backoff_base}"
            )
        if self.conflict_backoff_max < self.conflict_backoff_base:
            raise ConfigurationError(
                "conflict_backoff_max must be >= conflict_backoff_base"
            )
        if self.max_waitlist_size is not None and self.max_waitlist_size < 1:
            raise ConfigurationError(
                f"max_waitlist_size must be >= 1 or None, got {self.max_waitlist_size}"
            )
        if self.notification_timeout <= 0:
            raise ConfigurationError(
                f"notification_timeout must be > 0, got {self.notification_timeout}"
            )

    def get_backoff_delay(self, attempt: int) -> float:
        """Calculate the delay before retry ``attempt`` (1-based).

        Full jitter: a uniform draw between 0 and the exponential ceiling,
        which is capped at conflict_backoff_max. Writers that lost the same
        commit race land at different points of the window instead of
        colliding again on the next attempt.
        """
        ceiling: float = min(
            self.conflict_backoff_base * (2 ** (attempt - 1)),
            self.conflict_backoff_max,
        )
        return random.uniform(0, ceiling)  # nosec B311 # noqa: S311
