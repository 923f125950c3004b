"""Pytest fixtures for AutoReach tests."""

from __future__ import annotations

import pytest

from tests.helpers import FakeDriver, ManualClock


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def driver() -> FakeDriver:
    return FakeDriver()
