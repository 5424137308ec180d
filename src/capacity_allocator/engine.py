# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Allocation Engine

The caller-facing boundary of the library. AllocationEngine wraps an
AllocationOrchestrator and adds:

- Bounded retries of TransactionConflictError with exponential backoff and jitter
- Intent latency and error metrics
- Backend lifecycle (``async with engine``)
- The read-only query surface and slot administration

Example:
    >>> from capacity_allocator import create_engine, ParentRef
    >>>
    >>> engine = create_engine(backend="memory")
    >>> async with engine:
    ...     await engine.create_slot("slot-1", ParentRef(parent_id="evt-1"), capacity=5)
    ...     outcome = await engine.reserve("user-1", "slot-1", quantity=2)
    ...     if outcome.granted:
    ...         await engine.release("user-1", outcome.booking.booking_id)
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime
from typing import Any, TypeVar

from .backends.base import BaseBackend, HealthCheckResult
from .backends.memory import MemoryBackend
from .config import AllocatorConfig
from .exceptions import AllocationError, ConfigurationError, TransactionConflictError
from .notifications import NotificationDispatcher
from .observability.collector import get_metrics_collector
from .observability.constants import (
    CONFLICT_RETRIES_EXHAUSTED_TOTAL,
    INTENT_ERRORS_TOTAL,
    INTENT_LATENCY_SECONDS,
    TRANSACTION_CONFLICTS_TOTAL,
)
from .observability.protocols import MetricsCollectorProtocol
from .orchestrator import AllocationOrchestrator
from .protocols.notifier import NotifierProtocol
from .protocols.parent_state import ParentStateProtocol
from .schedule import ScheduleWindow
from .types.booking import BookingRecord
from .types.outcomes import ReleaseOutcome, ReserveOutcome
from .types.slot import ParentRef, Slot
from .types.waitlist import WaitlistEntry

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AllocationEngine:
    """
    Retrying, instrumented front end over the allocation orchestrator.

    Only TransactionConflictError is retried. Every other error is surfaced
    verbatim on the first occurrence.
    """

    def __init__(
        self,
        backend: BaseBackend,
        config: AllocatorConfig | None = None,
        parent_state: ParentStateProtocol | None = None,
        notifier: NotifierProtocol | None = None,
        metrics: MetricsCollectorProtocol | None = None,
    ) -> None:
        self.config = config or AllocatorConfig()
        self.backend = backend

        if metrics is None and self.config.metrics_enabled:
            metrics = get_metrics_collector(
                enable_prometheus=self.config.enable_prometheus
            )
        self.metrics = metrics

        self.dispatcher = NotificationDispatcher(
            notifier=notifier,
            timeout=self.config.notification_timeout,
            metrics=metrics,
        )
        self.orchestrator = AllocationOrchestrator(
            backend=backend,
            parent_state=parent_state,
            dispatcher=self.dispatcher,
            metrics=metrics,
            max_waitlist_size=self.config.max_waitlist_size,
        )
        self._running = False

    # ==========================================================================
    # Lifecycle
    # ==========================================================================

    async def start(self) -> None:
        if self._running:
            return
        await self.backend.start()
        self._running = True
        logger.info(f"AllocationEngine started ({type(self.backend).__name__})")

    async def stop(self) -> None:
        if not self._running:
            return
        await self.backend.stop()
        self._running = False
        logger.info("AllocationEngine stopped")

    async def __aenter__(self) -> "AllocationEngine":
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.stop()

    # ==========================================================================
    # Retry Loop
    # ==========================================================================

    async def _run(self, intent: str, operation: Callable[[], Awaitable[T]]) -> T:
        """Run an intent, retrying transaction conflicts with backoff."""
        labels = {"intent": intent}
        start = time.monotonic()
        attempt = 0
        try:
            while True:
                try:
                    return await operation()
                except TransactionConflictError as e:
                    attempt += 1
                    self._inc(TRANSACTION_CONFLICTS_TOTAL, labels)
                    if attempt > self.config.max_conflict_retries:
                        self._inc(CONFLICT_RETRIES_EXHAUSTED_TOTAL, labels)
                        logger.error(
                            f"{intent} on slot {e.slot_id} failed after "
                            f"{attempt} conflicting attempts"
                        )
                        raise TransactionConflictError(e.slot_id, attempts=attempt) from e
                    delay = self.config.get_backoff_delay(attempt)
                    logger.warning(
                        f"Conflict on slot {e.slot_id} during {intent}; "
                        f"retry {attempt}/{self.config.max_conflict_retries} in {delay:.3f}s"
                    )
                    await asyncio.sleep(delay)
        except AllocationError as e:
            self._inc(INTENT_ERRORS_TOTAL, {"intent": intent, "reason": type(e).__name__})
            raise
        finally:
            if self.metrics is not None:
                self.metrics.observe_histogram(
                    INTENT_LATENCY_SECONDS, time.monotonic() - start, labels
                )

    def _inc(self, name: str, labels: dict[str, str]) -> None:
        if self.metrics is not None:
            self.metrics.inc_counter(name, labels=labels)

    # ==========================================================================
    # Intents
    # ==========================================================================

    async def reserve(
        self,
        requester_id: str,
        slot_id: str,
        quantity: int,
        seat_labels: Sequence[str] = (),
    ) -> ReserveOutcome:
        """Reserve units or join the slot's waitlist. See AllocationOrchestrator.reserve."""
        return await self._run(
            "reserve",
            lambda: self.orchestrator.reserve(requester_id, slot_id, quantity, seat_labels),
        )

    async def release(self, requester_id: str, booking_id: str) -> ReleaseOutcome:
        """Release a booking and promote at most one waiting request."""
        return await self._run(
            "release", lambda: self.orchestrator.release(requester_id, booking_id)
        )

    # ==========================================================================
    # Slot Administration
    # ==========================================================================

    async def create_slot(
        self,
        slot_id: str,
        parent: ParentRef,
        capacity: int,
        starts_at: datetime | None = None,
        ends_at: datetime | None = None,
    ) -> Slot:
        return await self._run(
            "create_slot",
            lambda: self.orchestrator.create_slot(
                slot_id, parent, capacity, starts_at, ends_at
            ),
        )

    async def create_slots(
        self,
        parent: ParentRef,
        schedule: Sequence[ScheduleWindow],
        capacity: int,
    ) -> list[Slot]:
        """Create one slot per schedule window in a single all-or-nothing write."""
        return await self._run(
            "create_slots",
            lambda: self.orchestrator.create_slots(parent, schedule, capacity),
        )

    async def delete_slot(self, slot_id: str) -> None:
        await self._run("delete_slot", lambda: self.orchestrator.delete_slot(slot_id))

    # ==========================================================================
    # Queries
    # ==========================================================================

    async def get_availability(self, slot_id: str) -> Slot:
        return await self.orchestrator.get_availability(slot_id)

    async def list_slots(
        self, parent_id: str | None = None, available_only: bool = False
    ) -> list[Slot]:
        return await self.orchestrator.list_slots(parent_id, available_only)

    async def get_booking(self, booking_id: str) -> BookingRecord:
        return await self.orchestrator.get_booking(booking_id)

    async def get_requester_bookings(
        self, requester_id: str, include_released: bool = True
    ) -> list[BookingRecord]:
        return await self.orchestrator.get_requester_bookings(
            requester_id, include_released
        )

    async def get_booked_quantity(self, slot_id: str) -> int:
        return await self.orchestrator.get_booked_quantity(slot_id)

    async def get_waitlist(self, slot_id: str) -> list[WaitlistEntry]:
        return await self.orchestrator.get_waitlist(slot_id)

    async def health_check(self) -> HealthCheckResult:
        return await self.backend.health_check()

    async def get_stats(self) -> dict[str, Any]:
        """Backend statistics plus notification failure count."""
        stats = await self.backend.get_all_stats()
        stats["notification_failures"] = self.dispatcher.failures
        return stats


def create_engine(
    backend: str | BaseBackend = "memory",
    config: AllocatorConfig | None = None,
    parent_state: ParentStateProtocol | None = None,
    notifier: NotifierProtocol | None = None,
    metrics: MetricsCollectorProtocol | None = None,
    **backend_kwargs: Any,
) -> AllocationEngine:
    """
    Factory function to create an AllocationEngine with proper dependency injection.

    Args:
        backend: "memory", "redis", or a BaseBackend instance
        config: Optional allocator config (will create default if not provided)
        parent_state: Optional parent-state collaborator (defaults to allow-all)
        notifier: Optional notifier (defaults to LoggingNotifier)
        metrics: Optional metrics collector (defaults to the global collector
            when config.metrics_enabled)
        **backend_kwargs: Passed to the backend constructor when backend is a name

    Returns:
        Configured AllocationEngine instance

    Raises:
        ConfigurationError: If the backend name is unknown
    """
    if isinstance(backend, BaseBackend):
        if backend_kwargs:
            raise ConfigurationError(
                "backend_kwargs are only accepted with a backend name"
            )
        backend_instance = backend
    elif backend == "memory":
        backend_instance = MemoryBackend(**backend_kwargs)
    elif backend == "redis":
        from .backends.redis import RedisBackend

        backend_instance = RedisBackend(**backend_kwargs)
    else:
        raise ConfigurationError(f"Unknown backend: {backend}")

    return AllocationEngine(
        backend=backend_instance,
        config=config,
        parent_state=parent_state,
        notifier=notifier,
        metrics=metrics,
    )
