# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Post-commit notifications.

Allocation events are handed to the notifier only after their transaction
has committed, and delivery never affects the intent's outcome: failures and
timeouts are logged and counted, not raised or retried.

Provided notifiers:
- LoggingNotifier: logs every event (the default)
- CompositeNotifier: fans one event out to several notifiers
- CacheInvalidationNotifier: deletes response-cache keys touched by the event
"""

import asyncio
import logging
import string
from collections.abc import Iterable, Sequence
from typing import Any

from .observability.constants import (
    NOTIFICATION_FAILURES_TOTAL,
    NOTIFICATIONS_IN_FLIGHT,
    NOTIFICATIONS_SENT_TOTAL,
)
from .observability.protocols import MetricsCollectorProtocol
from .protocols.notifier import NotifierProtocol
from .types.outcomes import AllocationEvent

logger = logging.getLogger(__name__)

_FORMATTER = string.Formatter()


class LoggingNotifier:
    """Notifier that writes each event to the library logger."""

    def __init__(self, level: int = logging.INFO) -> None:
        self.level = level

    async def notify(self, event: AllocationEvent) -> None:
        logger.log(
            self.level,
            f"{event.kind.value}: requester={event.requester_id} "
            f"slot={event.slot_id} booking={event.booking_id} "
            f"quantity={event.quantity}",
        )


class CompositeNotifier:
    """
    Delivers each event to every wrapped notifier.

    All notifiers are attempted even if one fails; the first failure is
    re-raised afterwards so the dispatcher records it.
    """

    def __init__(self, notifiers: Iterable[NotifierProtocol]) -> None:
        self.notifiers = list(notifiers)

    async def notify(self, event: AllocationEvent) -> None:
        results = await asyncio.gather(
            *(n.notify(event) for n in self.notifiers), return_exceptions=True
        )
        errors = [r for r in results if isinstance(r, BaseException)]
        for error in errors[1:]:
            logger.warning(f"Additional notifier failure for {event.kind.value}: {error}")
        if errors:
            raise errors[0]


class CacheInvalidationNotifier:
    """
    Deletes cached responses made stale by an allocation event.

    Key patterns are format strings over the event's fields (``slot_id``,
    ``requester_id``, ``booking_id``, ``kind``), matched with SCAN and removed
    with DEL. Patterns that reference a field the event lacks are skipped.

    Example:
        notifier = CacheInvalidationNotifier(
            redis_client,
            patterns=["cache:slots:{slot_id}*", "cache:bookings:{requester_id}*"],
        )
    """

    def __init__(
        self,
        redis_client: Any,
        patterns: Sequence[str],
        scan_count: int = 100,
    ) -> None:
        self._redis = redis_client
        self.patterns = list(patterns)
        self.scan_count = scan_count

    def _expand(self, event: AllocationEvent) -> list[str]:
        fields = {
            "kind": event.kind.value,
            "slot_id": event.slot_id,
            "requester_id": event.requester_id,
            "booking_id": event.booking_id,
        }
        expanded = []
        for pattern in self.patterns:
            referenced = {name for _, name, _, _ in _FORMATTER.parse(pattern) if name}
            unknown = referenced - fields.keys()
            if unknown:
                logger.warning(
                    f"Cache pattern {pattern!r} references unknown field(s) {sorted(unknown)}"
                )
                continue
            if any(fields[name] is None for name in referenced):
                continue
            expanded.append(pattern.format(**fields))
        return expanded

    async def notify(self, event: AllocationEvent) -> None:
        deleted = 0
        for pattern in self._expand(event):
            cursor = 0
            while True:
                cursor, keys = await self._redis.scan(
                    cursor, match=pattern, count=self.scan_count
                )
                if keys:
                    deleted += await self._redis.delete(*keys)
                if cursor == 0:
                    break
        logger.debug(f"Invalidated {deleted} cache key(s) after {event.kind.value}")


class NotificationDispatcher:
    """
    Delivers committed events to a notifier, isolating the caller from failures.

    Each notifier call is bounded by ``timeout`` seconds. Exceptions and
    timeouts are logged at WARNING and counted in
    ``capacity_alloc_notification_failures_total``.
    """

    def __init__(
        self,
        notifier: NotifierProtocol | None = None,
        timeout: float = 5.0,
        metrics: MetricsCollectorProtocol | None = None,
    ) -> None:
        self.notifier: NotifierProtocol = notifier or LoggingNotifier()
        self.timeout = timeout
        self._metrics = metrics
        self.failures = 0

    def _record_failure(self, event: AllocationEvent, reason: str) -> None:
        self.failures += 1
        if self._metrics is not None:
            self._metrics.inc_counter(
                NOTIFICATION_FAILURES_TOTAL,
                labels={"kind": event.kind.value, "reason": reason},
            )

    async def dispatch(self, events: Sequence[AllocationEvent]) -> None:
        """Deliver events in order. Never raises for notifier failures."""
        for event in events:
            await self._deliver(event)

    async def _deliver(self, event: AllocationEvent) -> None:
        if self._metrics is not None:
            self._metrics.inc_gauge(NOTIFICATIONS_IN_FLIGHT)
        try:
            await asyncio.wait_for(self.notifier.notify(event), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"Notifier timed out after {self.timeout}s on {event.kind.value} "
                f"for slot {event.slot_id}"
            )
            self._record_failure(event, "timeout")
            return
        except Exception as e:
            logger.warning(
                f"Notifier failed on {event.kind.value} for slot {event.slot_id}: {e}"
            )
            self._record_failure(event, type(e).__name__)
            return
        finally:
            if self._metrics is not None:
                self._metrics.dec_gauge(NOTIFICATIONS_IN_FLIGHT)

        if self._metrics is not None:
            self._metrics.inc_counter(
                NOTIFICATIONS_SENT_TOTAL, labels={"kind": event.kind.value}
            )
