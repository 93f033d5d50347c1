"""
Pytest configuration and fixtures for Nostream tests.

Provides common fixtures and test utilities for unit and integration tests.
"""

import asyncio
import shutil
import tempfile
from pathlib import Path
from typing import Generator, List

import pytest

from nostream.keys import KeyMaterial
from nostream.relay_pool import MemoryRelayPool

RELAYS = ["wss://relay.one", "wss://relay.two", "wss://relay.three"]


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """
    Create a temporary directory for test data.

    Yields:
        Path: Temporary directory path

    Cleanup:
        Automatically removes directory after test
    """
    tmp = Path(tempfile.mkdtemp(prefix="nostream_test_"))
    try:
        yield tmp
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def alice() -> KeyMaterial:
    return KeyMaterial.generate()


@pytest.fixture
def bob() -> KeyMaterial:
    return KeyMaterial.generate()


@pytest.fixture
def carol() -> KeyMaterial:
    return KeyMaterial.generate()


@pytest.fixture
def relays() -> List[str]:
    return list(RELAYS)


@pytest.fixture
def pool(relays) -> MemoryRelayPool:
    return MemoryRelayPool(relays)


class FakeClock:
    """Manually advanced clock for time-dependent logic."""

    def __init__(self, start: float = 1_700_000_000):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Replacement for asyncio.sleep that records delays and returns at once."""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)
        await asyncio.sleep(0)


class FakeStream:
    """Relay stream that counts stop() calls."""

    def __init__(self, fail_on_stop: bool = False):
        self.stop_calls = 0
        self.fail_on_stop = fail_on_stop

    def stop(self) -> None:
        self.stop_calls += 1
        if self.fail_on_stop:
            raise RuntimeError("stream already closed")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


# Pytest marks
def pytest_configure(config):
    """
    Configure pytest markers.

    Args:
        config: Pytest configuration object
    """
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")


# Test collection hooks
def pytest_collection_modifyitems(config, items):
    """
    Modify test collection to add markers based on test location.

    Args:
        config: Pytest configuration
        items: List of collected test items
    """
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)


@pytest.fixture
def make_stream():
    """Factory for FakeStream instances."""
    return FakeStream
