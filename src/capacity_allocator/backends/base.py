# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Base Backend for Capacity Allocator

This module provides the BaseBackend abstract class and the SlotTransaction
unit of work that every backend implements.

A slot's ledger, waitlist and the booking records created or released on it
form one consistency domain. All changes to that domain happen through a
SlotTransaction: reads go through the transaction, writes are staged on it,
and nothing becomes visible until the backend commits the whole set.

Features:
- Per-slot unit of work with staged writes
- Commit on clean exit, discard on exception
- Read-only query surface for slots, bookings and waitlists
- Health check and statistics reporting
"""

import abc
import contextlib
import logging
from collections.abc import AsyncIterator, Iterable, Sequence
from dataclasses import dataclass
from typing import Any

from ..types.booking import BookingRecord
from ..types.slot import Slot
from ..types.waitlist import Waitlist

logger = logging.getLogger(__name__)


def order_slots(slots: Iterable[Slot], available_only: bool = False) -> list[Slot]:
    """
    Sort slots by schedule: ``starts_at`` first, unscheduled slots last, then
    ``slot_id``. With ``available_only``, full slots are left out.
    """
    selected = [s for s in slots if not available_only or s.available_units > 0]
    selected.sort(
        key=lambda s: (
            s.starts_at is None,
            s.starts_at.timestamp() if s.starts_at is not None else 0.0,
            s.slot_id,
        )
    )
    return selected


@dataclass
class HealthCheckResult:
    """
    Structured health check result for backend monitoring.

    Attributes:
        healthy: Whether the backend is operational
        backend_type: Type of backend (e.g., 'redis', 'memory')
        namespace: Backend namespace
        error: Error message if unhealthy
        metadata: Additional backend-specific information
    """

    healthy: bool
    backend_type: str
    namespace: str
    error: str | None = None
    metadata: dict[str, Any] | None = None


class SlotTransaction(abc.ABC):
    """
    Staged view of one slot's consistency domain.

    Reads return staged values first and fall back to the backend's loaders.
    Writes are only recorded; the owning backend applies them atomically on
    commit. A transaction is bound to a single slot; booking records written
    through it must belong to that slot.
    """

    def __init__(self, slot_id: str) -> None:
        self.slot_id = slot_id

        self._slot: Slot | None = None
        self._slot_loaded = False
        self._slot_dirty = False
        # Snapshot of the slot as loaded, used for index maintenance on delete
        self._original_slot: Slot | None = None

        self._bookings: dict[str, BookingRecord | None] = {}
        self._booking_writes: dict[str, BookingRecord] = {}

        self._waitlist: Waitlist | None = None
        self._waitlist_loaded = False
        self._waitlist_dirty = False

    # ==========================================================================
    # Loaders (backend-specific)
    # ==========================================================================

    @abc.abstractmethod
    async def _load_slot(self) -> Slot | None:
        """Load the committed slot, or None if it does not exist."""
        pass

    @abc.abstractmethod
    async def _load_booking(self, booking_id: str) -> BookingRecord | None:
        """Load a committed booking record, or None if it does not exist."""
        pass

    @abc.abstractmethod
    async def _load_waitlist(self) -> Waitlist | None:
        """Load the committed waitlist, or None if the slot has no queue."""
        pass

    # ==========================================================================
    # Slot
    # ==========================================================================

    async def get_slot(self) -> Slot | None:
        if not self._slot_loaded:
            self._slot = await self._load_slot()
            self._original_slot = self._slot
            self._slot_loaded = True
        return self._slot

    def put_slot(self, slot: Slot) -> None:
        if slot.slot_id != self.slot_id:
            raise ValueError(
                f"Transaction for {self.slot_id} cannot write slot {slot.slot_id}"
            )
        self._slot = slot
        self._slot_loaded = True
        self._slot_dirty = True

    def delete_slot(self) -> None:
        self._slot = None
        self._slot_loaded = True
        self._slot_dirty = True

    # ==========================================================================
    # Bookings
    # ==========================================================================

    async def get_booking(self, booking_id: str) -> BookingRecord | None:
        if booking_id not in self._bookings:
            self._bookings[booking_id] = await self._load_booking(booking_id)
        return self._bookings[booking_id]

    def put_booking(self, record: BookingRecord) -> None:
        if record.slot_id != self.slot_id:
            raise ValueError(
                f"Transaction for {self.slot_id} cannot write booking "
                f"{record.booking_id} of slot {record.slot_id}"
            )
        self._bookings[record.booking_id] = record
        self._booking_writes[record.booking_id] = record

    # ==========================================================================
    # Waitlist
    # ==========================================================================

    async def get_waitlist(self) -> Waitlist | None:
        if not self._waitlist_loaded:
            self._waitlist = await self._load_waitlist()
            self._waitlist_loaded = True
        return self._waitlist

    def put_waitlist(self, waitlist: Waitlist | None) -> None:
        """Stage the slot's waitlist; an empty or None waitlist deletes it."""
        if waitlist is not None and len(waitlist) == 0:
            waitlist = None
        self._waitlist = waitlist
        self._waitlist_loaded = True
        self._waitlist_dirty = True

    # ==========================================================================
    # Staged state (read by backends on commit)
    # ==========================================================================

    @property
    def has_writes(self) -> bool:
        return self._slot_dirty or self._waitlist_dirty or bool(self._booking_writes)

    @property
    def slot_dirty(self) -> bool:
        return self._slot_dirty

    @property
    def staged_slot(self) -> Slot | None:
        return self._slot

    @property
    def original_slot(self) -> Slot | None:
        return self._original_slot

    @property
    def staged_bookings(self) -> dict[str, BookingRecord]:
        return dict(self._booking_writes)

    @property
    def waitlist_dirty(self) -> bool:
        return self._waitlist_dirty

    @property
    def staged_waitlist(self) -> Waitlist | None:
        return self._waitlist


class BaseBackend(abc.ABC):
    """
    An abstract base class that defines the common interface for all backend
    implementations in the Capacity Allocator.

    A backend provides two things: the per-slot atomic transaction facility
    used by the allocation components, and a read-only query surface. Every
    committed transaction of a slot is totally ordered with respect to the
    other transactions of that slot; there is no ordering across slots.

    Subclasses must implement all abstract methods to provide a concrete
    backend implementation.
    """

    def __init__(self, namespace: str = "capacity_allocator"):
        """
        Initialize the backend with a namespace for isolation.

        Args:
            namespace: Namespace for isolating data across different instances
        """
        self.namespace = namespace

    # ==========================================================================
    # Transactions
    # ==========================================================================

    @contextlib.asynccontextmanager
    async def transaction(self, slot_id: str) -> AsyncIterator[SlotTransaction]:
        """
        Open a unit of work on one slot.

        Staged writes are committed when the block exits normally and
        discarded when it raises. A commit that loses a race raises
        TransactionConflictError and applies nothing.

        Example:
            async with backend.transaction("slot-1") as tx:
                slot = await tx.get_slot()
                tx.put_slot(slot.with_available_units(slot.available_units - 1))
        """
        tx = await self._begin(slot_id)
        try:
            yield tx
            if tx.has_writes:
                await self._commit(tx)
        finally:
            await self._end(tx)

    @abc.abstractmethod
    async def _begin(self, slot_id: str) -> SlotTransaction:
        """Start a transaction on a slot."""
        pass

    @abc.abstractmethod
    async def _commit(self, tx: SlotTransaction) -> None:
        """Atomically apply the transaction's staged writes."""
        pass

    async def _end(self, tx: SlotTransaction) -> None:
        """Release any resources held by the transaction (commit or not)."""
        return None

    @abc.abstractmethod
    async def create_slots(self, slots: Sequence[Slot]) -> None:
        """
        Store a batch of new slots, all or none.

        Slot ids within the batch must be distinct.

        Raises:
            SlotExistsError: one of the ids is already taken; nothing is written
        """
        pass

    # ==========================================================================
    # Query Surface
    # ==========================================================================

    @abc.abstractmethod
    async def get_slot(self, slot_id: str) -> Slot | None:
        """Get the committed slot, or None if it does not exist."""
        pass

    @abc.abstractmethod
    async def list_slots(
        self, parent_id: str | None = None, available_only: bool = False
    ) -> list[Slot]:
        """
        List slots, optionally restricted to one parent item.

        Args:
            parent_id: Only return slots of this event or screening
            available_only: Skip slots with no available units

        Returns:
            Slots in schedule order (see ``order_slots``)
        """
        pass

    @abc.abstractmethod
    async def get_booking(self, booking_id: str) -> BookingRecord | None:
        """Get a committed booking record, or None if it does not exist."""
        pass

    @abc.abstractmethod
    async def list_bookings_for_requester(
        self, requester_id: str
    ) -> list[BookingRecord]:
        """List a requester's bookings, oldest first."""
        pass

    @abc.abstractmethod
    async def list_bookings_for_slot(self, slot_id: str) -> list[BookingRecord]:
        """List all bookings ever made on a slot, oldest first."""
        pass

    @abc.abstractmethod
    async def get_waitlist(self, slot_id: str) -> Waitlist | None:
        """Get the committed waitlist of a slot, or None if it has no queue."""
        pass

    # ==========================================================================
    # Lifecycle and Monitoring
    # ==========================================================================

    @abc.abstractmethod
    async def clear(self) -> None:
        """Clear all stored data in this backend's namespace."""
        pass

    @abc.abstractmethod
    async def health_check(self) -> HealthCheckResult:
        """Perform a health check on the backend."""
        pass

    @abc.abstractmethod
    async def get_all_stats(self) -> dict[str, Any]:
        """Get statistics about the backend's stored data."""
        pass

    async def start(self) -> None:
        """Prepare the backend for use (connect, load scripts)."""
        return None

    async def stop(self) -> None:
        """Release backend resources."""
        return None

    async def __aenter__(self) -> "BaseBackend":
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.stop()
