"""Configure pytest environment for all tests."""

import sys
import threading
import time
from pathlib import Path
from typing import Callable

import pytest

# Get absolute paths
PROJECT_ROOT = Path(__file__).parent.parent.absolute()
SRC_PATH = PROJECT_ROOT / "src"

if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from batchgate._internal.concurrency import QuotaRegistry  # noqa: E402
from batchgate.core.config import ControllerSettings  # noqa: E402
from batchgate.core.memory import (  # noqa: E402
    InMemoryArtifactStore,
    InMemoryJobSource,
    InMemoryJobStore,
)


class FakeClock:
    """Manually advanced monotonic clock, safe to read from many threads."""

    def __init__(self, start: float = 1000.0) -> None:
        self._now = start
        self._lock = threading.Lock()

    def __call__(self) -> float:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> float:
        with self._lock:
            self._now += seconds
            return self._now


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def wait_until() -> Callable[..., bool]:
    """Poll a predicate until it holds or the timeout expires."""

    def _wait(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.005) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(interval)
        return predicate()

    return _wait


@pytest.fixture
def settings() -> ControllerSettings:
    return ControllerSettings()


@pytest.fixture
def registry(settings: ControllerSettings) -> QuotaRegistry:
    """Registry with the default classes on the real monotonic clock."""
    return QuotaRegistry.from_settings(settings)


@pytest.fixture
def job_store() -> InMemoryJobStore:
    return InMemoryJobStore()


@pytest.fixture
def job_source() -> InMemoryJobSource:
    return InMemoryJobSource()


@pytest.fixture
def artifacts() -> InMemoryArtifactStore:
    return InMemoryArtifactStore()
