"""Shared fixtures for the sync engine tests.

Doubles live in fakes.py; the fixtures here give each test a fresh clock,
a fresh source bucket, and a fresh state bucket behind a CheckpointStore.
"""

from __future__ import annotations

import pytest

from fakes import FakeClock, FakeObjectStore
from src.dealsync.storage.checkpoints import CheckpointStore


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def source_store() -> FakeObjectStore:
    return FakeObjectStore()


@pytest.fixture
def state_store() -> FakeObjectStore:
    return FakeObjectStore()


@pytest.fixture
def checkpoints(state_store) -> CheckpointStore:
    return CheckpointStore(state_store)
