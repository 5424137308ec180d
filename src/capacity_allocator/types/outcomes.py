# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Intent outcomes and allocation events.

Outcomes are what reserve and release intents return to the caller.
AllocationEvents are what the orchestrator hands to the notification
collaborator after a transaction commits.
"""

import time
from dataclasses import dataclass, field
from enum import Enum

from .booking import BookingRecord


class ReserveStatus(str, Enum):
    """Terminal state of a reserve intent."""

    GRANTED = "granted"
    WAITLISTED = "waitlisted"


class EventKind(str, Enum):
    """Kinds of post-commit allocation events."""

    GRANTED = "granted"
    WAITLISTED = "waitlisted"
    RELEASED = "released"
    PROMOTED = "promoted"


@dataclass(frozen=True)
class ReserveOutcome:
    """
    Result of a reserve intent.

    Exactly one of the two shapes is produced:
    - GRANTED: ``booking`` holds the new record.
    - WAITLISTED: ``booking`` is None; ``already_waiting`` is True when the
      requester had a pending entry and nothing was written.

    Attributes:
        status: GRANTED or WAITLISTED
        requester_id: Requester the intent was made for
        slot_id: Target slot
        quantity: Units requested
        available_units: Slot's available units after the intent
        booking: The new booking when granted
        already_waiting: True for an idempotent repeat waitlisting
        waitlist_position: 1-based queue position when waitlisted
    """

    status: ReserveStatus
    requester_id: str
    slot_id: str
    quantity: int
    available_units: int
    booking: BookingRecord | None = None
    already_waiting: bool = False
    waitlist_position: int | None = None

    @property
    def granted(self) -> bool:
        return self.status is ReserveStatus.GRANTED

    @property
    def waitlisted(self) -> bool:
        return self.status is ReserveStatus.WAITLISTED


@dataclass(frozen=True)
class ReleaseOutcome:
    """
    Result of a release intent.

    Attributes:
        released: The booking record in its RELEASED state
        available_units: Slot's available units after release and any promotion
        promoted: Booking created for a waitlisted requester, if any
    """

    released: BookingRecord
    available_units: int
    promoted: BookingRecord | None = None

    @property
    def slot_id(self) -> str:
        return self.released.slot_id


@dataclass(frozen=True)
class AllocationEvent:
    """A committed allocation change, delivered to notifiers."""

    kind: EventKind
    requester_id: str
    slot_id: str
    quantity: int
    booking_id: str | None = None
    occurred_at: float = field(default_factory=time.time)
