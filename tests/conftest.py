"""
Pytest configuration for the job queue tests.

This module provides:
1. Storage and config fixtures
2. A polling helper for waiting on asynchronous scheduler state
3. Handler helpers (blocking, failing, recording)
"""

import asyncio
import time
from typing import Callable, List

import pytest

from jobqueue import FileStorage, JobQueue, MemoryStorage, QueueConfig


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
async def wait_until(predicate: Callable[[], bool], timeout: float = 3.0, interval: float = 0.01) -> None:
    """Poll predicate until it is true or fail the test after timeout seconds."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError(f"Condition not met within {timeout}s")
        await asyncio.sleep(interval)


def make_queue(storage=None, **overrides) -> JobQueue:
    """Create a stopped queue with a fast timeout sweep."""
    config = QueueConfig(autostart=False, sweep_interval_ms=20).with_overrides(**overrides)
    return JobQueue(storage if storage is not None else MemoryStorage(), config)


class EventRecorder:
    """Listener capturing (event, job_id, status, retries) at emission time."""

    def __init__(self):
        self.events: List[tuple] = []

    def __call__(self, event, job):
        self.events.append((event, job.id, job.status, job.retries))

    def names(self, job_id=None) -> List[str]:
        return [e[0] for e in self.events if job_id is None or e[1] == job_id]

    def of(self, event: str) -> List[tuple]:
        return [e for e in self.events if e[0] == event]


# -----------------------------------------------------------------------------
# Fixtures
# -----------------------------------------------------------------------------
@pytest.fixture
def memory_storage():
    return MemoryStorage()


@pytest.fixture
def file_storage(tmp_path):
    return FileStorage(tmp_path / "data")


@pytest.fixture
def recorder():
    return EventRecorder()


@pytest.fixture
def sample_params():
    """Sample job creation data."""
    return {
        "name": "Generate landing page",
        "type": "component-builder",
        "payload": {"components": ["Hero", "Footer"], "outputDir": "out"},
        "metadata": {"requested_by": "test-user"},
    }
