# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Capacity Allocator - Transactional seat allocation with waitlist promotion.

This library decides, for every reserve or release intent against a
capacity-limited slot, whether units are granted, the request is queued, or
freed units are handed to the next waiting requester.

Key Features:
    - Atomic per-slot transactions (ledger, bookings and waitlist commit together)
    - No overbooking under concurrency
    - Automatic promotion of the first eligible waiting request on release
    - Bounded retries of transaction conflicts with jittered backoff
    - Post-commit notifications that never affect intent outcomes
    - Multiple backend options (memory, Redis)

Quick Start:
    >>> from capacity_allocator import ParentRef, create_engine
    >>>
    >>> engine = create_engine(backend="memory")
    >>> async with engine:
    ...     await engine.create_slot("show-1", ParentRef(parent_id="evt-1"), capacity=5)
    ...     outcome = await engine.reserve("alice", "show-1", quantity=3)
    ...     print(outcome.status, outcome.available_units)

Main Exports:
    - AllocationEngine, create_engine: Caller-facing engine
    - MemoryBackend, RedisBackend: Storage backends
    - AllocatorConfig: Configuration options
    - generate_schedule: Split a time range into slot windows for create_slots
    - ParentStateProtocol, NotifierProtocol: Collaborator protocols

Note: RedisBackend requires the 'redis' extra. Install with:
    pip install capacity-allocator[redis]

Version: 1.0.0
"""

__version__ = "1.0.0"

from typing import TYPE_CHECKING

from .backends import (
    BaseBackend,
    MemoryBackend,
)
from .config import AllocatorConfig
from .engine import AllocationEngine, create_engine
from .exceptions import (
    AllocationError,
    AlreadyReleasedError,
    AlreadyWaitingError,
    BookingNotFoundError,
    CapacityOverflowError,
    ConfigurationError,
    InsufficientCapacityError,
    InvalidQuantityError,
    NotOwnerError,
    ParentNotBookableError,
    SlotExistsError,
    SlotHasActiveBookingsError,
    SlotNotFoundError,
    StorageUnavailableError,
    TransactionConflictError,
    WaitlistFullError,
)
from .notifications import (
    CacheInvalidationNotifier,
    CompositeNotifier,
    LoggingNotifier,
)
from .orchestrator import AllocationOrchestrator
from .schedule import ScheduleWindow, generate_schedule, schedule_slot_id
from .protocols import (
    AllowAllParents,
    NotifierProtocol,
    ParentStateProtocol,
    StaticParentState,
)
from .types import (
    AllocationEvent,
    BookingRecord,
    BookingStatus,
    EventKind,
    ParentKind,
    ParentRef,
    ReleaseOutcome,
    ReserveOutcome,
    ReserveStatus,
    Slot,
    SlotStatus,
    WaitlistEntry,
)

# Lazy import for optional redis backend
if TYPE_CHECKING:
    from .backends import RedisBackend

__all__ = [
    # Engine
    "AllocationEngine",
    # Exceptions
    "AllocationError",
    # Types
    "AllocationEvent",
    "AllocationOrchestrator",
    "AllocatorConfig",
    # Protocols
    "AllowAllParents",
    "AlreadyReleasedError",
    "AlreadyWaitingError",
    # Backends
    "BaseBackend",
    "BookingNotFoundError",
    "BookingRecord",
    "BookingStatus",
    # Notifiers
    "CacheInvalidationNotifier",
    "CapacityOverflowError",
    "CompositeNotifier",
    "ConfigurationError",
    "EventKind",
    "InsufficientCapacityError",
    "InvalidQuantityError",
    "LoggingNotifier",
    "MemoryBackend",
    "NotOwnerError",
    "NotifierProtocol",
    "ParentKind",
    "ParentNotBookableError",
    "ParentRef",
    "ParentStateProtocol",
    "RedisBackend",  # Lazy loaded - requires redis extra
    "ReleaseOutcome",
    "ReserveOutcome",
    "ReserveStatus",
    # Scheduling
    "ScheduleWindow",
    "Slot",
    "SlotExistsError",
    "SlotHasActiveBookingsError",
    "SlotNotFoundError",
    "SlotStatus",
    "StaticParentState",
    "StorageUnavailableError",
    "TransactionConflictError",
    "WaitlistEntry",
    "WaitlistFullError",
    "create_engine",
    "generate_schedule",
    "schedule_slot_id",
]


def __getattr__(name: str) -> type:
    """Lazy import for optional redis backend."""
    if name == "RedisBackend":
        from .backends import RedisBackend

        return RedisBackend
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
