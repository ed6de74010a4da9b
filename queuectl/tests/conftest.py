import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from queuectl.config import Config
from queuectl.models import ExecutionResult
from queuectl.queue import JobQueue
from queuectl.storage import Storage


class FrozenClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingExecutor:
    """Succeeds unless the command is in ``failing``; records every call."""

    def __init__(self, failing=()):
        self.failing = set(failing)
        self.calls = []
        self._lock = threading.Lock()

    def __call__(self, command: str) -> ExecutionResult:
        with self._lock:
            self.calls.append(command)
        if command in self.failing:
            return ExecutionResult(success=False, exit_code=1, error_message=f"{command} failed")
        return ExecutionResult(success=True, exit_code=0, stdout="ok\n")


def wait_for(predicate, timeout: float = 10.0, interval: float = 0.05) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def storage(tmp_path):
    return Storage(tmp_path / "jobs.db")


@pytest.fixture
def config(storage):
    return Config(storage)


@pytest.fixture
def clock():
    return FrozenClock(datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def queue(storage, config, clock):
    return JobQueue(storage, config, clock=clock)
