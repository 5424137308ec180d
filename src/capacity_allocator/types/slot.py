# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Slot types for capacity allocation.

A slot is a schedulable unit of capacity tied to a parent content item (an
event or a screening). Its only mutable field is ``available_units``, which
the CapacityLedger changes; ``status`` is derived from it and can never be
set independently.
"""

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator


class ParentKind(str, Enum):
    """Kind of content item a slot belongs to."""

    EVENT = "event"
    SCREENING = "screening"


class SlotStatus(str, Enum):
    """Derived availability status of a slot.

    - AVAILABLE: at least one unit can still be reserved.
    - FULL: ``available_units == 0``.
    """

    AVAILABLE = "available"
    FULL = "full"


class ParentRef(BaseModel):
    """Reference to the content item that owns a slot."""

    model_config = ConfigDict(frozen=True)

    parent_id: str = Field(min_length=1)
    parent_kind: ParentKind = ParentKind.EVENT


class Slot(BaseModel):
    """
    Capacity state of one slot.

    Invariant: ``0 <= available_units <= capacity``. Instances are immutable;
    the ledger produces a new Slot for every change via ``with_available_units``.

    Attributes:
        slot_id: Unique slot identifier
        parent: Owning event or screening
        capacity: Total units, fixed at creation
        available_units: Units not currently granted
        starts_at: Optional scheduled start
        ends_at: Optional scheduled end (must be after starts_at)
        created_at: Creation timestamp (UTC)
        updated_at: Timestamp of the last capacity change (UTC)
    """

    model_config = ConfigDict(frozen=True)

    slot_id: str = Field(min_length=1)
    parent: ParentRef
    capacity: int = Field(ge=1)
    available_units: int = Field(ge=0)
    starts_at: datetime | None = None
    ends_at: datetime | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @model_validator(mode="after")
    def _validate_units(self) -> "Slot":
        """Validate that available units never exceed capacity."""
        if self.available_units > self.capacity:
            raise ValueError(
                f"available_units ({self.available_units}) must not exceed "
                f"capacity ({self.capacity})"
            )
        if self.starts_at and self.ends_at and self.ends_at <= self.starts_at:
            raise ValueError("ends_at must be after starts_at")
        return self

    @computed_field  # type: ignore[prop-decorator]
    @property
    def status(self) -> SlotStatus:
        """FULL iff no units remain."""
        return SlotStatus.FULL if self.available_units == 0 else SlotStatus.AVAILABLE

    @property
    def granted_units(self) -> int:
        """Units currently held by GRANTED bookings."""
        return self.capacity - self.available_units

    def with_available_units(self, available_units: int) -> "Slot":
        """Return a copy with new available units, re-validated."""
        return Slot.model_validate(
            {
                **self.model_dump(exclude={"status"}),
                "available_units": available_units,
                "updated_at": datetime.now(timezone.utc),
            }
        )
