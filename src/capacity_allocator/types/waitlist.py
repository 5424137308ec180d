# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Waitlist types.

All pending entries of one slot are stored together in a single Waitlist
record, in insertion order. A (requester, slot) pair has at most one entry.
"""

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field


class WaitlistEntry(BaseModel):
    """A deferred reservation request."""

    model_config = ConfigDict(frozen=True)

    requester_id: str = Field(min_length=1)
    slot_id: str = Field(min_length=1)
    quantity: int = Field(ge=1)
    enqueued_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class Waitlist(BaseModel):
    """
    Insertion-ordered queue record for one slot.

    An empty waitlist is never stored; removing the last entry deletes the
    record.
    """

    model_config = ConfigDict(frozen=True)

    slot_id: str = Field(min_length=1)
    entries: tuple[WaitlistEntry, ...] = ()

    def __len__(self) -> int:
        return len(self.entries)

    def find(self, requester_id: str) -> WaitlistEntry | None:
        for entry in self.entries:
            if entry.requester_id == requester_id:
                return entry
        return None

    def appended(self, entry: WaitlistEntry) -> "Waitlist":
        return self.model_copy(update={"entries": (*self.entries, entry)})

    def without(self, requester_id: str) -> "Waitlist":
        return self.model_copy(
            update={
                "entries": tuple(
                    e for e in self.entries if e.requester_id != requester_id
                )
            }
        )
