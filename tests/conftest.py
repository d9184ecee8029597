"""Shared fixtures for the cai test suite."""

from __future__ import annotations

import pytest

from tests._test_helpers import FakeCalendarProvider, InMemoryStateStore


@pytest.fixture
def fake_provider() -> FakeCalendarProvider:
    return FakeCalendarProvider()


@pytest.fixture
def memory_store() -> InMemoryStateStore:
    return InMemoryStateStore()
