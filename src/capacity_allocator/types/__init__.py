# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Type definitions for slots, bookings, waitlists and intent outcomes."""

from .booking import BookingRecord, BookingStatus, new_booking_id
from .outcomes import (
    AllocationEvent,
    EventKind,
    ReleaseOutcome,
    ReserveOutcome,
    ReserveStatus,
)
from .slot import ParentKind, ParentRef, Slot, SlotStatus
from .waitlist import Waitlist, WaitlistEntry

__all__ = [
    # Events
    "AllocationEvent",
    # Bookings
    "BookingRecord",
    "BookingStatus",
    "EventKind",
    # Slots
    "ParentKind",
    "ParentRef",
    # Outcomes
    "ReleaseOutcome",
    "ReserveOutcome",
    "ReserveStatus",
    "Slot",
    "SlotStatus",
    # Waitlist
    "Waitlist",
    "WaitlistEntry",
    "new_booking_id",
]
