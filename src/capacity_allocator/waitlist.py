# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Waitlist Queue

Per-slot queue of deferred reservation requests, kept in insertion order.
A requester has at most one pending entry per slot.

Promotion policy: ``next_eligible`` scans the queue in insertion order and
returns the first entry whose quantity fits the available units. It is not
necessarily the head of the queue. An entry asking for more than is
currently available is skipped over, not blocking, so a later and smaller
request can be promoted first. This favors utilization over strict FIFO
fairness.
"""

import logging

from .backends.base import SlotTransaction
from .exceptions import AlreadyWaitingError, WaitlistFullError
from .ledger import validate_quantity
from .types.waitlist import Waitlist, WaitlistEntry

logger = logging.getLogger(__name__)


class WaitlistQueue:
    """Enqueue, select and remove waitlist entries inside slot transactions."""

    def __init__(self, max_size: int | None = None) -> None:
        self.max_size = max_size

    async def _load(self, tx: SlotTransaction) -> Waitlist:
        waitlist = await tx.get_waitlist()
        if waitlist is None:
            return Waitlist(slot_id=tx.slot_id)
        return waitlist

    async def enqueue(self, tx: SlotTransaction, requester_id: str, quantity: int) -> bool:
        """
        Append a request unless the requester is already waiting.

        Returns:
            True if an entry was appended, False if the requester already had
            one (nothing is staged).

        Raises:
            InvalidQuantityError: If quantity is not a positive integer
            WaitlistFullError: If the queue is at max_size
        """
        validate_quantity(quantity)
        waitlist = await self._load(tx)

        if waitlist.find(requester_id) is not None:
            logger.debug(f"{requester_id} already waiting on {tx.slot_id}")
            return False

        if self.max_size is not None and len(waitlist) >= self.max_size:
            raise WaitlistFullError(tx.slot_id, self.max_size)

        entry = WaitlistEntry(
            requester_id=requester_id, slot_id=tx.slot_id, quantity=quantity
        )
        tx.put_waitlist(waitlist.appended(entry))
        return True

    async def enqueue_strict(
        self, tx: SlotTransaction, requester_id: str, quantity: int
    ) -> None:
        """Like enqueue, but raise AlreadyWaitingError on a duplicate."""
        if not await self.enqueue(tx, requester_id, quantity):
            raise AlreadyWaitingError(requester_id, tx.slot_id)

    async def next_eligible(
        self, tx: SlotTransaction, available_units: int
    ) -> WaitlistEntry | None:
        """Return the first entry, in insertion order, with quantity <= available_units."""
        waitlist = await tx.get_waitlist()
        if waitlist is None:
            return None
        for entry in waitlist.entries:
            if entry.quantity <= available_units:
                return entry
        return None

    async def remove(self, tx: SlotTransaction, requester_id: str) -> bool:
        """
        Remove a requester's entry. The queue record is deleted when it empties.

        Returns:
            True if an entry was removed
        """
        waitlist = await tx.get_waitlist()
        if waitlist is None or waitlist.find(requester_id) is None:
            return False
        tx.put_waitlist(waitlist.without(requester_id))
        return True

    async def position(self, tx: SlotTransaction, requester_id: str) -> int | None:
        """1-based position of a requester's entry, or None if not waiting."""
        waitlist = await tx.get_waitlist()
        if waitlist is None:
            return None
        for index, entry in enumerate(waitlist.entries, start=1):
            if entry.requester_id == requester_id:
                return index
        return None
