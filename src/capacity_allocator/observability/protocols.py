# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Structural type for the metrics sink used by the allocation components."""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class MetricsCollectorProtocol(Protocol):
    """
    What the engine, orchestrator and notification dispatcher call on a
    metrics sink.

    ``UnifiedMetricsCollector`` satisfies it; an adapter around StatsD or
    OpenTelemetry only needs these methods. Label dicts map label names to
    string values and may be None for unlabelled series.
    """

    def inc_counter(
        self, name: str, value: int = 1, labels: dict[str, str] | None = None
    ) -> None: ...

    def inc_gauge(
        self, name: str, value: float = 1.0, labels: dict[str, str] | None = None
    ) -> None: ...

    def dec_gauge(
        self, name: str, value: float = 1.0, labels: dict[str, str] | None = None
    ) -> None: ...

    def observe_histogram(
        self, name: str, value: float, labels: dict[str, str] | None = None
    ) -> None: ...

    def get_metrics(self) -> dict[str, Any]:
        """Snapshot of every series, grouped by metric kind."""
        ...

    def reset(self) -> None: ...


__all__ = ["MetricsCollectorProtocol"]
