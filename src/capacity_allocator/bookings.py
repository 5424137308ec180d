# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Booking Store

Durable record of granted reservations. Creating a record never touches
capacity; the orchestrator calls ``create`` only right after a successful
ledger reservation in the same transaction. Releasing a record is what
returns its units to the ledger.
"""

import logging

from .backends.base import SlotTransaction
from .exceptions import (
    AlreadyReleasedError,
    BookingNotFoundError,
    NotOwnerError,
)
from .ledger import CapacityLedger
from .types.booking import BookingRecord, BookingStatus
from .types.slot import Slot

logger = logging.getLogger(__name__)


class BookingStore:
    """Creates and releases booking records inside slot transactions."""

    def __init__(self, ledger: CapacityLedger) -> None:
        self._ledger = ledger

    def create(
        self,
        tx: SlotTransaction,
        requester_id: str,
        quantity: int,
        seat_labels: tuple[str, ...] | list[str] = (),
        promoted: bool = False,
    ) -> BookingRecord:
        """Stage a new GRANTED booking on the transaction's slot."""
        record = BookingRecord(
            requester_id=requester_id,
            slot_id=tx.slot_id,
            quantity=quantity,
            seat_labels=tuple(seat_labels),
            promoted=promoted,
        )
        tx.put_booking(record)
        logger.debug(
            f"Booking {record.booking_id} staged for {requester_id} "
            f"on {tx.slot_id} ({quantity} units, promoted={promoted})"
        )
        return record

    async def release(
        self, tx: SlotTransaction, booking_id: str, requester_id: str
    ) -> tuple[BookingRecord, Slot]:
        """
        Release a GRANTED booking and return its units to the ledger.

        Args:
            tx: Open transaction on the booking's slot
            booking_id: Booking to release
            requester_id: Requester asking for the release

        Returns:
            (released record, updated slot)

        Raises:
            BookingNotFoundError: If the booking does not exist on this slot
            NotOwnerError: If the booking belongs to another requester
            AlreadyReleasedError: If the booking is already RELEASED
        """
        record = await tx.get_booking(booking_id)
        if record is None or record.slot_id != tx.slot_id:
            raise BookingNotFoundError(booking_id)
        if record.requester_id != requester_id:
            raise NotOwnerError(booking_id, requester_id)
        if record.status is BookingStatus.RELEASED:
            raise AlreadyReleasedError(booking_id)

        released = record.as_released()
        tx.put_booking(released)
        slot = await self._ledger.release(tx, record.quantity)
        return released, slot
