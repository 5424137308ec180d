# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
In-process allocation storage.

Used by tests and single-worker deployments; needs nothing beyond the stdlib.
"""

import asyncio
import logging
from collections import defaultdict
from collections.abc import Sequence
from typing import Any

from ..exceptions import SlotExistsError
from ..types.booking import BookingRecord, BookingStatus
from ..types.slot import Slot
from ..types.waitlist import Waitlist
from .base import BaseBackend, HealthCheckResult, SlotTransaction, order_slots

logger = logging.getLogger(__name__)


class _MemorySlotTransaction(SlotTransaction):
    """Transaction reading directly from the backend's committed dicts."""

    def __init__(self, backend: "MemoryBackend", slot_id: str) -> None:
        super().__init__(slot_id)
        self._backend = backend

    async def _load_slot(self) -> Slot | None:
        return self._backend._slots.get(self.slot_id)

    async def _load_booking(self, booking_id: str) -> BookingRecord | None:
        return self._backend._bookings.get(booking_id)

    async def _load_waitlist(self) -> Waitlist | None:
        return self._backend._waitlists.get(self.slot_id)


class MemoryBackend(BaseBackend):
    """
    Keeps slots, bookings and waitlists in process-local dicts.

    Each slot has its own asyncio.Lock, held for the whole transaction, so
    writers to one slot run one at a time while other slots proceed. Staged
    writes are applied in a single synchronous step on commit and readers
    never see half of a transaction. Because the lock serializes writers,
    this backend never raises TransactionConflictError.

    State is lost on restart and is not shared between processes; use
    RedisBackend when several workers allocate from the same slots.
    """

    def __init__(self, namespace: str = "capacity_allocator_memory") -> None:
        """
        Create an empty backend.

        Args:
            namespace: Label reported in stats and health checks
        """
        super().__init__(namespace)

        # Committed records
        self._slots: dict[str, Slot] = {}
        self._bookings: dict[str, BookingRecord] = {}
        self._waitlists: dict[str, Waitlist] = {}

        # Secondary indices, insertion ordered
        self._requester_bookings: dict[str, list[str]] = defaultdict(list)
        self._slot_bookings: dict[str, list[str]] = defaultdict(list)
        self._parent_slots: dict[str, set[str]] = defaultdict(set)

        # Single writer per slot. A lock is dropped once no transaction holds or
        # awaits it and its slot no longer exists.
        self._slot_locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

        self._commits = 0

        logger.debug(f"Initialized MemoryBackend with namespace '{namespace}'")

    # ==========================================================================
    # Transactions
    # ==========================================================================

    async def _acquire(self, slot_id: str) -> None:
        lock = self._slot_locks.setdefault(slot_id, asyncio.Lock())
        self._lock_users[slot_id] = self._lock_users.get(slot_id, 0) + 1
        try:
            await lock.acquire()
        except asyncio.CancelledError:
            self._drop_lock_user(slot_id)
            raise

    def _release(self, slot_id: str) -> None:
        self._slot_locks[slot_id].release()
        self._drop_lock_user(slot_id)

    def _drop_lock_user(self, slot_id: str) -> None:
        remaining = self._lock_users[slot_id] - 1
        if remaining:
            self._lock_users[slot_id] = remaining
            return
        del self._lock_users[slot_id]
        if slot_id not in self._slots:
            del self._slot_locks[slot_id]

    async def _begin(self, slot_id: str) -> SlotTransaction:
        await self._acquire(slot_id)
        return _MemorySlotTransaction(self, slot_id)

    async def _commit(self, tx: SlotTransaction) -> None:
        # No awaits below: the whole commit is applied in one event-loop step.
        if tx.slot_dirty:
            staged = tx.staged_slot
            if staged is None:
                self._slots.pop(tx.slot_id, None)
                if tx.original_slot is not None:
                    self._unindex_slot(tx.original_slot)
            else:
                self._slots[tx.slot_id] = staged
                self._parent_slots[staged.parent.parent_id].add(tx.slot_id)

        for booking_id, record in tx.staged_bookings.items():
            if booking_id not in self._bookings:
                self._requester_bookings[record.requester_id].append(booking_id)
                self._slot_bookings[record.slot_id].append(booking_id)
            self._bookings[booking_id] = record

        if tx.waitlist_dirty:
            waitlist = tx.staged_waitlist
            if waitlist is None:
                self._waitlists.pop(tx.slot_id, None)
            else:
                self._waitlists[tx.slot_id] = waitlist

        self._commits += 1

    async def _end(self, tx: SlotTransaction) -> None:
        self._release(tx.slot_id)

    def _unindex_slot(self, slot: Slot) -> None:
        siblings = self._parent_slots.get(slot.parent.parent_id)
        if siblings is None:
            return
        siblings.discard(slot.slot_id)
        if not siblings:
            del self._parent_slots[slot.parent.parent_id]

    async def create_slots(self, slots: Sequence[Slot]) -> None:
        """Insert a batch of slots while holding every one of their locks."""
        acquired: list[str] = []
        try:
            # Sorted acquisition keeps concurrent batches from deadlocking
            for slot_id in sorted({s.slot_id for s in slots}):
                await self._acquire(slot_id)
                acquired.append(slot_id)

            for slot in slots:
                if slot.slot_id in self._slots:
                    raise SlotExistsError(slot.slot_id)
            for slot in slots:
                self._slots[slot.slot_id] = slot
                self._parent_slots[slot.parent.parent_id].add(slot.slot_id)
            self._commits += 1
        finally:
            for slot_id in reversed(acquired):
                self._release(slot_id)

    # ==========================================================================
    # Query Surface
    # ==========================================================================

    async def get_slot(self, slot_id: str) -> Slot | None:
        return self._slots.get(slot_id)

    async def list_slots(
        self, parent_id: str | None = None, available_only: bool = False
    ) -> list[Slot]:
        if parent_id is None:
            slots = list(self._slots.values())
        else:
            slot_ids = self._parent_slots.get(parent_id, set())
            slots = [self._slots[s] for s in slot_ids if s in self._slots]
        return order_slots(slots, available_only)

    async def get_booking(self, booking_id: str) -> BookingRecord | None:
        return self._bookings.get(booking_id)

    async def list_bookings_for_requester(
        self, requester_id: str
    ) -> list[BookingRecord]:
        return [
            self._bookings[b] for b in self._requester_bookings.get(requester_id, [])
        ]

    async def list_bookings_for_slot(self, slot_id: str) -> list[BookingRecord]:
        return [self._bookings[b] for b in self._slot_bookings.get(slot_id, [])]

    async def get_waitlist(self, slot_id: str) -> Waitlist | None:
        return self._waitlists.get(slot_id)

    # ==========================================================================
    # Lifecycle and Monitoring
    # ==========================================================================

    async def clear(self) -> None:
        """Clear all stored data."""
        self._slots.clear()
        self._bookings.clear()
        self._waitlists.clear()
        self._requester_bookings.clear()
        self._slot_bookings.clear()
        self._parent_slots.clear()
        for slot_id in [s for s in self._slot_locks if s not in self._lock_users]:
            del self._slot_locks[slot_id]
        logger.debug("MemoryBackend cleared")

    async def health_check(self) -> HealthCheckResult:
        """Perform health check on the memory backend."""
        return HealthCheckResult(
            healthy=True,
            backend_type="memory",
            namespace=self.namespace,
            metadata={
                "slots": len(self._slots),
                "bookings": len(self._bookings),
                "waitlists": len(self._waitlists),
            },
        )

    async def get_all_stats(self) -> dict[str, Any]:
        """Get all statistics from the backend."""
        granted = sum(
            1 for b in self._bookings.values() if b.status is BookingStatus.GRANTED
        )
        return {
            "backend_type": "memory",
            "namespace": self.namespace,
            "slots": len(self._slots),
            "bookings": len(self._bookings),
            "granted_bookings": granted,
            "waitlists": len(self._waitlists),
            "waitlist_entries": sum(len(w) for w in self._waitlists.values()),
            "locked_slots": sum(1 for lock in self._slot_locks.values() if lock.locked()),
            "commits": self._commits,
        }
