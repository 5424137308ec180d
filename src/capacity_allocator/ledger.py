# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Capacity Ledger

Owns a slot's total and remaining capacity. Units are counted, not identified;
the ledger is the only place available_units changes.

Every operation works on an open SlotTransaction. The check and the decrement
happen on the same transactional view and are committed together, so two
concurrent reservations can never both succeed when only one of them fits.
"""

import logging

from .backends.base import SlotTransaction
from .exceptions import (
    CapacityOverflowError,
    InsufficientCapacityError,
    InvalidQuantityError,
    SlotNotFoundError,
)
from .types.slot import Slot

logger = logging.getLogger(__name__)


def validate_quantity(quantity: object) -> int:
    """
    Validate that quantity is a positive integer.

    Args:
        quantity: The quantity value to validate

    Returns:
        The validated quantity

    Raises:
        InvalidQuantityError: If quantity is not an int (bools excluded) or is < 1
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
        raise InvalidQuantityError(quantity)
    return quantity


class CapacityLedger:
    """Conditional reserve and release of slot units."""

    async def _require_slot(self, tx: SlotTransaction) -> Slot:
        slot = await tx.get_slot()
        if slot is None:
            raise SlotNotFoundError(tx.slot_id)
        return slot

    async def try_reserve(self, tx: SlotTransaction, quantity: int) -> tuple[bool, Slot]:
        """
        Reserve units if enough are available.

        Args:
            tx: Open transaction on the slot
            quantity: Units to reserve (>= 1)

        Returns:
            (True, updated slot) when reserved, or (False, unchanged slot) when
            fewer than ``quantity`` units are available. Nothing is staged in
            the second case.

        Raises:
            InvalidQuantityError: If quantity is not a positive integer
            SlotNotFoundError: If the slot does not exist
        """
        validate_quantity(quantity)
        slot = await self._require_slot(tx)

        if slot.available_units < quantity:
            logger.debug(
                f"Slot {slot.slot_id}: {quantity} requested, "
                f"{slot.available_units} available"
            )
            return False, slot

        updated = slot.with_available_units(slot.available_units - quantity)
        tx.put_slot(updated)
        return True, updated

    async def reserve(self, tx: SlotTransaction, quantity: int) -> Slot:
        """Reserve units or raise InsufficientCapacityError."""
        reserved, slot = await self.try_reserve(tx, quantity)
        if not reserved:
            raise InsufficientCapacityError(
                slot.slot_id, quantity, slot.available_units
            )
        return slot

    async def release(self, tx: SlotTransaction, quantity: int) -> Slot:
        """
        Return units to the slot.

        Raises:
            InvalidQuantityError: If quantity is not a positive integer
            SlotNotFoundError: If the slot does not exist
            CapacityOverflowError: If the release would exceed capacity
        """
        validate_quantity(quantity)
        slot = await self._require_slot(tx)

        attempted = slot.available_units + quantity
        if attempted > slot.capacity:
            logger.error(
                f"Release of {quantity} on slot {slot.slot_id} would exceed "
                f"capacity {slot.capacity}"
            )
            raise CapacityOverflowError(slot.slot_id, slot.capacity, attempted)

        updated = slot.with_available_units(attempted)
        tx.put_slot(updated)
        return updated
