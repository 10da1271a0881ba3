"""Shared fixtures for unit tests."""

import pytest

from tests.helpers import FakeClock, FakeTransport, SleepRecorder


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeps() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()
