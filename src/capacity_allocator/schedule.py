# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Slot schedules for a parent item.

A schedule is the list of (starts_at, ends_at) windows an event or screening
is split into. ``AllocationOrchestrator.create_slots`` turns a schedule into
slots in one all-or-nothing write.
"""

from datetime import datetime, timedelta

ScheduleWindow = tuple[datetime, datetime]


def generate_schedule(
    start: datetime, end: datetime, slot_duration: timedelta
) -> list[ScheduleWindow]:
    """
    Split ``[start, end)`` into back-to-back windows of ``slot_duration``.

    A trailing remainder shorter than ``slot_duration`` is dropped. An empty
    range or a non-positive duration yields no windows.
    """
    if start >= end or slot_duration <= timedelta(0):
        return []

    windows: list[ScheduleWindow] = []
    window_start = start
    while window_start + slot_duration <= end:
        windows.append((window_start, window_start + slot_duration))
        window_start += slot_duration
    return windows


def schedule_slot_id(parent_id: str, starts_at: datetime) -> str:
    """Deterministic slot id for a parent's window, e.g. ``evt-1-20260301-1900``."""
    return f"{parent_id}-{starts_at:%Y%m%d-%H%M}"


__all__ = ["ScheduleWindow", "generate_schedule", "schedule_slot_id"]
