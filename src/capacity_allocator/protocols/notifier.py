# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Protocol for the notification collaborator."""

from typing import Protocol, runtime_checkable

from ..types.outcomes import AllocationEvent


@runtime_checkable
class NotifierProtocol(Protocol):
    """
    Receives allocation events after their transaction has committed.

    Delivery is fire-and-forget: exceptions raised here are logged and
    counted by the dispatcher, never propagated to the intent.
    """

    async def notify(self, event: AllocationEvent) -> None:
        """Handle one committed allocation event."""
        ...
