# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Exception classes for the capacity allocator library.

This module defines the exception hierarchy used throughout the library.
All exceptions inherit from AllocationError, making it easy to catch
all allocation-related exceptions with a single except clause.

Validation errors (InvalidQuantityError, ParentNotBookableError) are raised
before any transaction is opened. Release failures are raised from inside the
slot transaction and abort it. TransactionConflictError is the only retryable
error; everything else is terminal for the intent that raised it.
"""


class AllocationError(Exception):
    """Base exception for all capacity allocator errors.

    This is the root exception class for the capacity allocator library.
    Catch this exception to handle any error originating from the library.

    Example:
        try:
            outcome = await engine.reserve("user-1", "slot-1", 2)
        except AllocationError as e:
            logger.error(f"Allocation error: {e}")
    """

    pass


class InvalidQuantityError(AllocationError):
    """Raised when a requested quantity is not a positive integer.

    Raised before any transaction starts, so no state is touched.

    Attributes:
        quantity: The rejected quantity value.

    Example:
        try:
            await engine.reserve("user-1", "slot-1", 0)
        except InvalidQuantityError as e:
            return {"error": f"quantity must be >= 1, got {e.quantity}"}
    """

    def __init__(self, quantity: object):
        super().__init__(f"Quantity must be a positive integer, got {quantity!r}")
        self.quantity = quantity


class ParentNotBookableError(AllocationError):
    """Raised when a slot's parent item is not published or active.

    The parent-state collaborator is consulted before the transaction opens;
    a slot of an unpublished event or screening cannot be reserved.

    Attributes:
        slot_id: The slot that was targeted.
        parent_id: The parent item that is not bookable.

    Example:
        try:
            await engine.reserve("user-1", "slot-1", 1)
        except ParentNotBookableError as e:
            logger.info(f"Parent {e.parent_id} is not open for booking")
    """

    def __init__(self, slot_id: str, parent_id: str):
        super().__init__(f"Slot {slot_id} belongs to non-bookable parent {parent_id}")
        self.slot_id = slot_id
        self.parent_id = parent_id


class SlotNotFoundError(AllocationError):
    """Raised when a slot does not exist.

    Attributes:
        slot_id: The identifier of the slot that was not found.

    Example:
        try:
            slot = await engine.get_availability("slot-404")
        except SlotNotFoundError as e:
            logger.warning(f"Slot '{e.slot_id}' not found")
    """

    def __init__(self, slot_id: str):
        super().__init__(f"Slot not found: {slot_id}")
        self.slot_id = slot_id


class InsufficientCapacityError(AllocationError):
    """Raised when a slot lacks the units for a strict reservation.

    This is an internal signal. Reserve intents never surface it: the
    orchestrator converts an insufficient reservation into a waitlist entry.
    It is raised by CapacityLedger.reserve(), the strict counterpart of
    try_reserve().

    Attributes:
        slot_id: The slot that could not satisfy the request.
        requested: Units requested.
        available: Units available at the time of the check.
    """

    def __init__(self, slot_id: str, requested: int, available: int):
        super().__init__(
            f"Slot {slot_id} has {available} units available, {requested} requested"
        )
        self.slot_id = slot_id
        self.requested = requested
        self.available = available


class AlreadyWaitingError(AllocationError):
    """Raised when a requester already has a pending waitlist entry for a slot.

    Internal signal; reserve intents treat it as an idempotent no-op and
    report the requester as waitlisted. Raised only by
    WaitlistQueue.enqueue_strict().

    Attributes:
        requester_id: The requester already in the queue.
        slot_id: The slot whose queue holds the entry.
    """

    def __init__(self, requester_id: str, slot_id: str):
        super().__init__(f"Requester {requester_id} is already waiting on {slot_id}")
        self.requester_id = requester_id
        self.slot_id = slot_id


class BookingNotFoundError(AllocationError):
    """Raised when a booking record does not exist.

    Attributes:
        booking_id: The identifier of the missing booking.

    Example:
        try:
            await engine.release("user-1", "bk-404")
        except BookingNotFoundError as e:
            return {"error": f"no booking {e.booking_id}"}
    """

    def __init__(self, booking_id: str):
        super().__init__(f"Booking not found: {booking_id}")
        self.booking_id = booking_id


class NotOwnerError(AllocationError):
    """Raised when a requester tries to release a booking they do not own.

    No state is changed.

    Attributes:
        booking_id: The targeted booking.
        requester_id: The requester that attempted the release.
    """

    def __init__(self, booking_id: str, requester_id: str):
        super().__init__(
            f"Requester {requester_id} does not own booking {booking_id}"
        )
        self.booking_id = booking_id
        self.requester_id = requester_id


class AlreadyReleasedError(AllocationError):
    """Raised when a booking has already been released.

    Units are returned to the ledger exactly once; a second release of the
    same booking fails with this error and changes nothing.

    Attributes:
        booking_id: The booking that is already RELEASED.
    """

    def __init__(self, booking_id: str):
        super().__init__(f"Booking already released: {booking_id}")
        self.booking_id = booking_id


class CapacityOverflowError(AllocationError):
    """Raised when a release would push available units above capacity.

    This always indicates an accounting bug in the caller; the ledger rejects
    the release instead of clamping it.

    Attributes:
        slot_id: The slot being released into.
        capacity: The slot's total capacity.
        attempted: The available-units value the release would have produced.
    """

    def __init__(self, slot_id: str, capacity: int, attempted: int):
        super().__init__(
            f"Release on slot {slot_id} would set available units to "
            f"{attempted}, exceeding capacity {capacity}"
        )
        self.slot_id = slot_id
        self.capacity = capacity
        self.attempted = attempted


class WaitlistFullError(AllocationError):
    """Raised when a slot's waitlist has reached its maximum size.

    The size bound is configured through AllocatorConfig.max_waitlist_size.

    Attributes:
        slot_id: The slot whose queue is full.
        max_size: The configured maximum queue length.

    Example:
        try:
            outcome = await engine.reserve("user-9", "slot-1", 1)
        except WaitlistFullError as e:
            return {"error": f"waitlist for {e.slot_id} is full"}
    """

    def __init__(self, slot_id: str, max_size: int):
        super().__init__(f"Waitlist for slot {slot_id} is full (max {max_size})")
        self.slot_id = slot_id
        self.max_size = max_size


class SlotExistsError(AllocationError):
    """Raised when creating a slot whose id is already taken.

    Attributes:
        slot_id: The duplicate slot identifier.
    """

    def __init__(self, slot_id: str):
        super().__init__(f"Slot already exists: {slot_id}")
        self.slot_id = slot_id


class SlotHasActiveBookingsError(AllocationError):
    """Raised when deleting a slot that still has granted bookings.

    Attributes:
        slot_id: The slot that cannot be deleted.
        granted_units: Units held by GRANTED bookings on the slot.

    Example:
        try:
            await engine.delete_slot("slot-1")
        except SlotHasActiveBookingsError as e:
            return {"error": f"{e.granted_units} units still booked"}, 409
    """

    def __init__(self, slot_id: str, granted_units: int):
        super().__init__(
            f"Cannot delete slot {slot_id}: {granted_units} unit(s) still granted"
        )
        self.slot_id = slot_id
        self.granted_units = granted_units


class TransactionConflictError(AllocationError):
    """Raised when a slot transaction could not commit because of a concurrent writer.

    Nothing from the failed transaction is applied. This is the only
    transient error: AllocationEngine retries it with backoff up to
    AllocatorConfig.max_conflict_retries and re-raises it once retries are
    exhausted.

    Attributes:
        slot_id: The slot whose transaction conflicted.
        attempts: Number of attempts made before giving up (0 when raised
            directly by a backend).

    Example:
        try:
            await engine.reserve("user-1", "slot-1", 1)
        except TransactionConflictError as e:
            logger.warning(f"Gave up on {e.slot_id} after {e.attempts} attempts")
    """

    def __init__(self, slot_id: str, attempts: int = 0):
        super().__init__(f"Transaction conflict on slot {slot_id}")
        self.slot_id = slot_id
        self.attempts = attempts


class StorageUnavailableError(AllocationError):
    """Raised when the storage backend cannot be reached.

    Fatal for the current intent; the caller decides whether to retry later.

    Example:
        try:
            await engine.reserve("user-1", "slot-1", 1)
        except StorageUnavailableError:
            return {"error": "try again later"}, 503
    """

    pass


class ConfigurationError(AllocationError, ValueError):
    """Raised when the allocator configuration is invalid.

    Inherits from ValueError as well so generic validation handlers still
    catch it.

    Example:
        try:
            config = AllocatorConfig(max_conflict_retries=-1)
        except ConfigurationError as e:
            logger.error(f"Invalid configuration: {e}")
            raise SystemExit(1)
    """

    pass
