# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Protocol definitions for allocator collaborators.

This module provides Protocol classes that define the interfaces for
the external collaborators of the allocation engine.

Available protocols:
- ParentStateProtocol: Whether a slot's parent item is open for booking
- NotifierProtocol: Receiver of post-commit allocation events

Default implementations:
- AllowAllParents: Every parent is bookable
- StaticParentState: Explicit set of bookable parent ids
"""

from .notifier import NotifierProtocol
from .parent_state import AllowAllParents, ParentStateProtocol, StaticParentState

__all__ = [
    "AllowAllParents",
    "NotifierProtocol",
    "ParentStateProtocol",
    "StaticParentState",
]
