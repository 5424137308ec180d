# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Allocation Orchestrator

Runs each reserve or release intent as exactly one slot transaction and
decides its outcome:

    reserve:  RECEIVED -> GRANTED | WAITLISTED
    release:  GRANTED  -> RELEASED, optionally PROMOTED for one waiting requester

Validation (quantity, slot existence, parent bookability) happens before the
transaction opens. Inside the transaction every step either succeeds or the
whole intent is discarded; a reserve is never both granted and queued.
Events are dispatched only after the commit.

The orchestrator makes a single attempt per intent. Transaction conflicts
propagate to the caller; AllocationEngine retries them.
"""

import logging
from collections.abc import Sequence
from datetime import datetime

from .backends.base import BaseBackend, SlotTransaction
from .bookings import BookingStore
from .exceptions import (
    BookingNotFoundError,
    ParentNotBookableError,
    SlotExistsError,
    SlotHasActiveBookingsError,
    SlotNotFoundError,
)
from .ledger import CapacityLedger, validate_quantity
from .notifications import NotificationDispatcher
from .observability.constants import (
    PROMOTIONS_SKIPPED_TOTAL,
    PROMOTIONS_TOTAL,
    RELEASE_INTENTS_TOTAL,
    RESERVE_INTENTS_TOTAL,
    UNITS_GRANTED_TOTAL,
    UNITS_RELEASED_TOTAL,
)
from .observability.protocols import MetricsCollectorProtocol
from .protocols.parent_state import AllowAllParents, ParentStateProtocol
from .schedule import ScheduleWindow, schedule_slot_id
from .types.booking import BookingRecord, BookingStatus
from .types.outcomes import (
    AllocationEvent,
    EventKind,
    ReleaseOutcome,
    ReserveOutcome,
    ReserveStatus,
)
from .types.slot import ParentRef, Slot
from .types.waitlist import WaitlistEntry
from .waitlist import WaitlistQueue

logger = logging.getLogger(__name__)


class AllocationOrchestrator:
    """
    Coordinates the ledger, booking store and waitlist for one intent at a time.

    Args:
        backend: Storage backend providing slot transactions
        parent_state: Collaborator deciding whether a parent item is bookable
        dispatcher: Post-commit event dispatcher
        metrics: Optional metrics collector
        max_waitlist_size: Maximum entries per slot waitlist (None for unbounded)
    """

    def __init__(
        self,
        backend: BaseBackend,
        parent_state: ParentStateProtocol | None = None,
        dispatcher: NotificationDispatcher | None = None,
        metrics: MetricsCollectorProtocol | None = None,
        max_waitlist_size: int | None = None,
    ) -> None:
        self.backend = backend
        self.parent_state: ParentStateProtocol = parent_state or AllowAllParents()
        self.dispatcher = dispatcher or NotificationDispatcher(metrics=metrics)
        self._metrics = metrics

        self.ledger = CapacityLedger()
        self.bookings = BookingStore(self.ledger)
        self.waitlist = WaitlistQueue(max_size=max_waitlist_size)

    def _inc(self, name: str, value: int = 1, labels: dict[str, str] | None = None) -> None:
        if self._metrics is not None:
            self._metrics.inc_counter(name, value, labels)

    # ==========================================================================
    # Reserve Intent
    # ==========================================================================

    async def reserve(
        self,
        requester_id: str,
        slot_id: str,
        quantity: int,
        seat_labels: Sequence[str] = (),
    ) -> ReserveOutcome:
        """
        Reserve units on a slot, or waitlist the request if they are not available.

        Args:
            requester_id: Opaque, already-authenticated requester id
            slot_id: Target slot
            quantity: Units requested (>= 1)
            seat_labels: Informational seat labels stored on the booking

        Returns:
            ReserveOutcome with status GRANTED (and the new booking) or
            WAITLISTED (already_waiting=True if the requester was queued before)

        Raises:
            InvalidQuantityError: quantity is not a positive integer
            SlotNotFoundError: the slot does not exist
            ParentNotBookableError: the slot's parent item is not bookable
            WaitlistFullError: the request had to be queued but the queue is full
            TransactionConflictError: a concurrent commit won; safe to retry
        """
        validate_quantity(quantity)
        slot = await self.backend.get_slot(slot_id)
        if slot is None:
            raise SlotNotFoundError(slot_id)
        if not await self.parent_state.is_bookable(slot.parent):
            raise ParentNotBookableError(slot_id, slot.parent.parent_id)

        events: list[AllocationEvent] = []
        async with self.backend.transaction(slot_id) as tx:
            reserved, current = await self.ledger.try_reserve(tx, quantity)
            if reserved:
                booking = self.bookings.create(
                    tx, requester_id, quantity, tuple(seat_labels)
                )
                # A direct grant satisfies the requester's pending entry
                if await self.waitlist.remove(tx, requester_id):
                    logger.debug(
                        f"Dropped {requester_id}'s waitlist entry on {slot_id} after grant"
                    )
                outcome = ReserveOutcome(
                    status=ReserveStatus.GRANTED,
                    requester_id=requester_id,
                    slot_id=slot_id,
                    quantity=quantity,
                    available_units=current.available_units,
                    booking=booking,
                )
                events.append(
                    AllocationEvent(
                        kind=EventKind.GRANTED,
                        requester_id=requester_id,
                        slot_id=slot_id,
                        quantity=quantity,
                        booking_id=booking.booking_id,
                    )
                )
            else:
                added = await self.waitlist.enqueue(tx, requester_id, quantity)
                outcome = ReserveOutcome(
                    status=ReserveStatus.WAITLISTED,
                    requester_id=requester_id,
                    slot_id=slot_id,
                    quantity=quantity,
                    available_units=current.available_units,
                    already_waiting=not added,
                    waitlist_position=await self.waitlist.position(tx, requester_id),
                )
                if added:
                    events.append(
                        AllocationEvent(
                            kind=EventKind.WAITLISTED,
                            requester_id=requester_id,
                            slot_id=slot_id,
                            quantity=quantity,
                        )
                    )

        logger.debug(
            f"Reserve {requester_id} x{quantity} on {slot_id}: {outcome.status.value}"
        )
        self._inc(
            RESERVE_INTENTS_TOTAL,
            labels={
                "outcome": outcome.status.value,
                "parent_kind": slot.parent.parent_kind.value,
            },
        )
        if outcome.granted:
            self._inc(UNITS_GRANTED_TOTAL, quantity)

        await self.dispatcher.dispatch(events)
        return outcome

    # ==========================================================================
    # Release Intent
    # ==========================================================================

    async def release(self, requester_id: str, booking_id: str) -> ReleaseOutcome:
        """
        Release a booking and promote at most one waiting request.

        The released units, the promotion re-check, the promoted booking and
        the removal of its waitlist entry all commit together.

        Raises:
            BookingNotFoundError: the booking does not exist
            NotOwnerError: the booking belongs to another requester
            AlreadyReleasedError: the booking was already released
            TransactionConflictError: a concurrent commit won; safe to retry
        """
        record = await self.backend.get_booking(booking_id)
        if record is None:
            raise BookingNotFoundError(booking_id)

        async with self.backend.transaction(record.slot_id) as tx:
            released, slot = await self.bookings.release(tx, booking_id, requester_id)
            promoted, skipped = await self._promote_one(tx, slot)
            final = await tx.get_slot()

        available = final.available_units if final is not None else slot.available_units
        logger.debug(
            f"Released {booking_id} on {released.slot_id}"
            + (f", promoted {promoted.requester_id}" if promoted else "")
        )

        self._inc(RELEASE_INTENTS_TOTAL, labels={"outcome": "released"})
        self._inc(UNITS_RELEASED_TOTAL, released.quantity)
        if skipped:
            self._inc(PROMOTIONS_SKIPPED_TOTAL)

        events = [
            AllocationEvent(
                kind=EventKind.RELEASED,
                requester_id=requester_id,
                slot_id=released.slot_id,
                quantity=released.quantity,
                booking_id=released.booking_id,
            )
        ]
        if promoted is not None:
            self._inc(PROMOTIONS_TOTAL)
            self._inc(UNITS_GRANTED_TOTAL, promoted.quantity)
            events.append(
                AllocationEvent(
                    kind=EventKind.PROMOTED,
                    requester_id=promoted.requester_id,
                    slot_id=promoted.slot_id,
                    quantity=promoted.quantity,
                    booking_id=promoted.booking_id,
                )
            )

        await self.dispatcher.dispatch(events)
        return ReleaseOutcome(
            released=released, available_units=available, promoted=promoted
        )

    async def _promote_one(
        self, tx: SlotTransaction, slot: Slot
    ) -> tuple[BookingRecord | None, bool]:
        """
        Promote the first eligible waiting request, if any.

        Returns:
            (promoted booking or None, True if an eligible entry failed the
            capacity re-check and stays queued)
        """
        entry = await self.waitlist.next_eligible(tx, slot.available_units)
        if entry is None:
            return None, False

        reserved, current = await self.ledger.try_reserve(tx, entry.quantity)
        if not reserved:
            logger.warning(
                f"Promotion of {entry.requester_id} on {tx.slot_id} skipped: "
                f"{entry.quantity} needed, {current.available_units} available"
            )
            return None, True

        booking = self.bookings.create(
            tx, entry.requester_id, entry.quantity, promoted=True
        )
        await self.waitlist.remove(tx, entry.requester_id)
        return booking, False

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
        """
        Create a slot with all of its capacity available.

        Raises:
            InvalidQuantityError: capacity is not a positive integer
            SlotExistsError: a slot with this id already exists
        """
        validate_quantity(capacity)
        slot = Slot(
            slot_id=slot_id,
            parent=parent,
            capacity=capacity,
            available_units=capacity,
            starts_at=starts_at,
            ends_at=ends_at,
        )
        async with self.backend.transaction(slot_id) as tx:
            if await tx.get_slot() is not None:
                raise SlotExistsError(slot_id)
            tx.put_slot(slot)

        logger.info(
            f"Created slot {slot_id} for {parent.parent_kind.value} "
            f"{parent.parent_id} with capacity {capacity}"
        )
        return slot

    async def create_slots(
        self,
        parent: ParentRef,
        schedule: Sequence[ScheduleWindow],
        capacity: int,
    ) -> list[Slot]:
        """
        Create one slot per schedule window, all or none.

        Slot ids come from ``schedule_slot_id``. Windows are not checked
        for overlap.

        Raises:
            InvalidQuantityError: capacity is not a positive integer
            SlotExistsError: an id repeats within the schedule or is already
                taken; no slot is created
        """
        validate_quantity(capacity)
        slots = [
            Slot(
                slot_id=schedule_slot_id(parent.parent_id, starts_at),
                parent=parent,
                capacity=capacity,
                available_units=capacity,
                starts_at=starts_at,
                ends_at=ends_at,
            )
            for starts_at, ends_at in schedule
        ]
        seen: set[str] = set()
        for slot in slots:
            if slot.slot_id in seen:
                raise SlotExistsError(slot.slot_id)
            seen.add(slot.slot_id)
        if not slots:
            return []

        await self.backend.create_slots(slots)

        logger.info(
            f"Created {len(slots)} slots for {parent.parent_kind.value} "
            f"{parent.parent_id} with capacity {capacity}"
        )
        return slots

    async def delete_slot(self, slot_id: str) -> None:
        """
        Delete a slot and its waitlist.

        Raises:
            SlotNotFoundError: the slot does not exist
            SlotHasActiveBookingsError: GRANTED bookings still reference the slot
        """
        async with self.backend.transaction(slot_id) as tx:
            slot = await tx.get_slot()
            if slot is None:
                raise SlotNotFoundError(slot_id)
            if slot.granted_units > 0:
                raise SlotHasActiveBookingsError(slot_id, slot.granted_units)
            tx.delete_slot()
            tx.put_waitlist(None)

        logger.info(f"Deleted slot {slot_id}")

    # ==========================================================================
    # Query Surface
    # ==========================================================================

    async def get_availability(self, slot_id: str) -> Slot:
        """Committed slot state (capacity, available units, status)."""
        slot = await self.backend.get_slot(slot_id)
        if slot is None:
            raise SlotNotFoundError(slot_id)
        return slot

    async def list_slots(
        self, parent_id: str | None = None, available_only: bool = False
    ) -> list[Slot]:
        """Slots ordered by start time, then id; unscheduled slots last."""
        return await self.backend.list_slots(parent_id, available_only)

    async def get_booking(self, booking_id: str) -> BookingRecord:
        record = await self.backend.get_booking(booking_id)
        if record is None:
            raise BookingNotFoundError(booking_id)
        return record

    async def get_requester_bookings(
        self, requester_id: str, include_released: bool = True
    ) -> list[BookingRecord]:
        records = await self.backend.list_bookings_for_requester(requester_id)
        if include_released:
            return records
        return [r for r in records if r.status is BookingStatus.GRANTED]

    async def get_booked_quantity(self, slot_id: str) -> int:
        """Sum of quantities of GRANTED bookings on a slot (occupancy)."""
        records = await self.backend.list_bookings_for_slot(slot_id)
        return sum(r.quantity for r in records if r.status is BookingStatus.GRANTED)

    async def get_waitlist(self, slot_id: str) -> list[WaitlistEntry]:
        """Pending entries of a slot, in insertion order."""
        waitlist = await self.backend.get_waitlist(slot_id)
        return list(waitlist.entries) if waitlist is not None else []
