"""Shared fixtures for unit tests."""

import pytest

from capacity_allocator.backends.memory import MemoryBackend
from capacity_allocator.observability.collector import (
    UnifiedMetricsCollector,
    reset_metrics_collector,
)
from capacity_allocator.types.slot import ParentRef, Slot


@pytest.fixture(autouse=True)
def _reset_global_metrics():
    yield
    reset_metrics_collector()


@pytest.fixture
def backend():
    return MemoryBackend(namespace="test")


@pytest.fixture
def metrics():
    return UnifiedMetricsCollector(enable_prometheus=False)


@pytest.fixture
def parent():
    return ParentRef(parent_id="evt-1")


@pytest.fixture
def make_slot(backend, parent):
    """Commit a slot directly through a backend transaction."""

    async def _make(slot_id="slot-1", capacity=5, available=None):
        slot = Slot(
            slot_id=slot_id,
            parent=parent,
            capacity=capacity,
            available_units=capacity if available is None else available,
        )
        async with backend.transaction(slot_id) as tx:
            tx.put_slot(slot)
        return slot

    return _make
