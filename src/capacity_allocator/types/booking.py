# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Booking record types.

A BookingRecord is created only by a successful reservation and moves from
GRANTED to RELEASED exactly once. A promotion off the waitlist always creates
a new record; a RELEASED record is never granted again.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class BookingStatus(str, Enum):
    """Lifecycle states of a booking record."""

    GRANTED = "granted"
    RELEASED = "released"


def new_booking_id() -> str:
    """Generate a unique booking identifier."""
    return f"bk_{uuid.uuid4().hex}"


class BookingRecord(BaseModel):
    """
    A durable reservation of units on a slot.

    Attributes:
        booking_id: Unique booking identifier
        requester_id: Opaque id of the requester who owns the booking
        slot_id: Slot the units were reserved on
        quantity: Units held while GRANTED (>= 1)
        seat_labels: Informational seat labels; never capacity-checked
        status: GRANTED or RELEASED
        promoted: True if the booking was created by waitlist promotion
        created_at: Creation timestamp (UTC)
        released_at: Release timestamp (UTC), set on release
    """

    model_config = ConfigDict(frozen=True)

    booking_id: str = Field(default_factory=new_booking_id)
    requester_id: str = Field(min_length=1)
    slot_id: str = Field(min_length=1)
    quantity: int = Field(ge=1)
    seat_labels: tuple[str, ...] = ()
    status: BookingStatus = BookingStatus.GRANTED
    promoted: bool = False
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    released_at: datetime | None = None

    @property
    def is_granted(self) -> bool:
        return self.status is BookingStatus.GRANTED

    def as_released(self) -> "BookingRecord":
        """Return the RELEASED copy of this record."""
        return self.model_copy(
            update={
                "status": BookingStatus.RELEASED,
                "released_at": datetime.now(timezone.utc),
            }
        )
