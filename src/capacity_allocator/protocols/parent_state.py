# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Protocol for the parent-state collaborator."""

from collections.abc import Iterable
from typing import Protocol, runtime_checkable

from ..types.slot import ParentRef


@runtime_checkable
class ParentStateProtocol(Protocol):
    """
    Answers whether a slot's parent item is open for booking.

    The engine asks this before any transaction starts. Publishing and
    unpublishing events or screenings is owned by the caller's system.
    """

    async def is_bookable(self, parent: ParentRef) -> bool:
        """Return True if the parent item is published and active."""
        ...


class AllowAllParents:
    """Parent state that treats every parent as bookable."""

    async def is_bookable(self, parent: ParentRef) -> bool:
        return True


class StaticParentState:
    """Parent state backed by an explicit set of bookable parent ids."""

    def __init__(self, bookable: Iterable[str] = ()) -> None:
        self._bookable = set(bookable)

    def publish(self, parent_id: str) -> None:
        self._bookable.add(parent_id)

    def unpublish(self, parent_id: str) -> None:
        self._bookable.discard(parent_id)

    async def is_bookable(self, parent: ParentRef) -> bool:
        return parent.parent_id in self._bookable
