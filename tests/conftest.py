"""Shared fixtures for the queue tests."""

import pytest

from spritebatch.jobs import JobStore
from spritebatch.storage import MemorySlot


@pytest.fixture
def slot():
    return MemorySlot()


@pytest.fixture
def store(slot):
    return JobStore(slot=slot, storage_key="test_queue", preview_max_chars=20)
