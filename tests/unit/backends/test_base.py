from datetime import datetime, timedelta, timezone

import pytest

from capacity_allocator.backends.base import (
    BaseBackend,
    HealthCheckResult,
    SlotTransaction,
    order_slots,
)
from capacity_allocator.types.booking import BookingRecord
from capacity_allocator.types.slot import ParentRef, Slot
from capacity_allocator.types.waitlist import Waitlist, WaitlistEntry


class RecordingTransaction(SlotTransaction):
    """Transaction with fixed committed state that counts loader calls."""

    def __init__(self, slot_id, slot=None, bookings=None, waitlist=None):
        super().__init__(slot_id)
        self.committed_slot = slot
        self.committed_bookings = bookings or {}
        self.committed_waitlist = waitlist
        self.loads = 0

    async def _load_slot(self):
        self.loads += 1
        return self.committed_slot

    async def _load_booking(self, booking_id):
        self.loads += 1
        return self.committed_bookings.get(booking_id)

    async def _load_waitlist(self):
        self.loads += 1
        return self.committed_waitlist


class ConcreteBackend(BaseBackend):
    """Concrete implementation of BaseBackend for testing."""

    def __init__(self):
        super().__init__("test")
        self.events = []

    async def _begin(self, slot_id):
        self.events.append("begin")
        return RecordingTransaction(slot_id)

    async def _commit(self, tx):
        self.events.append("commit")

    async def _end(self, tx):
        self.events.append("end")

    async def get_slot(self, slot_id):
        return None

    async def create_slots(self, slots):
        self.events.append("create_slots")

    async def list_slots(self, parent_id=None, available_only=False):
        return []

    async def get_booking(self, booking_id):
        return None

    async def list_bookings_for_requester(self, requester_id):
        return []

    async def list_bookings_for_slot(self, slot_id):
        return []

    async def get_waitlist(self, slot_id):
        return None

    async def clear(self):
        pass

    async def health_check(self):
        return HealthCheckResult(healthy=True, backend_type="test", namespace="test")

    async def get_all_stats(self):
        return {}


def _slot(slot_id="slot-1", available=5, starts_at=None):
    return Slot(
        slot_id=slot_id,
        parent=ParentRef(parent_id="evt-1"),
        capacity=5,
        available_units=available,
        starts_at=starts_at,
    )


class TestSlotTransaction:
    @pytest.mark.asyncio
    async def test_reads_are_cached(self):
        tx = RecordingTransaction("slot-1", slot=_slot())
        await tx.get_slot()
        await tx.get_slot()
        await tx.get_waitlist()
        await tx.get_waitlist()
        assert tx.loads == 2

    @pytest.mark.asyncio
    async def test_staged_slot_visible_to_reads(self):
        tx = RecordingTransaction("slot-1", slot=_slot())
        tx.put_slot(_slot(available=2))

        assert (await tx.get_slot()).available_units == 2
        assert tx.slot_dirty
        assert tx.has_writes

    @pytest.mark.asyncio
    async def test_original_slot_kept_on_delete(self):
        tx = RecordingTransaction("slot-1", slot=_slot())
        await tx.get_slot()
        tx.delete_slot()

        assert await tx.get_slot() is None
        assert tx.staged_slot is None
        assert tx.original_slot.slot_id == "slot-1"

    def test_put_slot_of_other_slot_rejected(self):
        tx = RecordingTransaction("slot-1")
        with pytest.raises(ValueError):
            tx.put_slot(_slot("slot-2"))

    def test_put_booking_of_other_slot_rejected(self):
        tx = RecordingTransaction("slot-1")
        with pytest.raises(ValueError):
            tx.put_booking(BookingRecord(requester_id="a", slot_id="slot-2", quantity=1))

    @pytest.mark.asyncio
    async def test_staged_bookings(self):
        tx = RecordingTransaction("slot-1")
        record = BookingRecord(requester_id="a", slot_id="slot-1", quantity=1)
        tx.put_booking(record)

        assert await tx.get_booking(record.booking_id) is record
        assert tx.staged_bookings == {record.booking_id: record}
        assert tx.loads == 0

    @pytest.mark.asyncio
    async def test_empty_waitlist_staged_as_delete(self):
        entry = WaitlistEntry(requester_id="a", slot_id="slot-1", quantity=1)
        tx = RecordingTransaction(
            "slot-1", waitlist=Waitlist(slot_id="slot-1", entries=(entry,))
        )
        tx.put_waitlist(Waitlist(slot_id="slot-1"))

        assert tx.waitlist_dirty
        assert tx.staged_waitlist is None
        assert await tx.get_waitlist() is None

    def test_no_writes_initially(self):
        assert RecordingTransaction("slot-1").has_writes is False


class TestBaseBackendTransaction:
    @pytest.mark.asyncio
    async def test_read_only_transaction_skips_commit(self):
        backend = ConcreteBackend()
        async with backend.transaction("slot-1") as tx:
            await tx.get_slot()
        assert backend.events == ["begin", "end"]

    @pytest.mark.asyncio
    async def test_commit_on_clean_exit(self):
        backend = ConcreteBackend()
        async with backend.transaction("slot-1") as tx:
            tx.put_slot(_slot())
        assert backend.events == ["begin", "commit", "end"]

    @pytest.mark.asyncio
    async def test_discard_on_exception(self):
        backend = ConcreteBackend()
        with pytest.raises(RuntimeError):
            async with backend.transaction("slot-1") as tx:
                tx.put_slot(_slot())
                raise RuntimeError("abort")
        assert backend.events == ["begin", "end"]

    @pytest.mark.asyncio
    async def test_context_manager_lifecycle(self):
        backend = ConcreteBackend()
        async with backend as entered:
            assert entered is backend


class TestHealthCheckResult:
    def test_defaults(self):
        result = HealthCheckResult(healthy=True, backend_type="memory", namespace="ns")
        assert result.error is None
        assert result.metadata is None


class TestOrderSlots:
    def test_scheduled_before_unscheduled(self):
        t0 = datetime(2026, 3, 1, 19, 0, tzinfo=timezone.utc)
        slots = [
            _slot("a-late", starts_at=t0 + timedelta(hours=2)),
            _slot("z-none"),
            _slot("b-early", starts_at=t0),
            _slot("a-none"),
            _slot("a-early", starts_at=t0),
        ]

        ordered = [s.slot_id for s in order_slots(slots)]

        assert ordered == ["a-early", "b-early", "a-late", "a-none", "z-none"]

    def test_available_only_skips_full_slots(self):
        slots = [_slot("s1", available=0), _slot("s2", available=1)]
        assert [s.slot_id for s in order_slots(slots, available_only=True)] == ["s2"]
        assert len(order_slots(slots)) == 2
