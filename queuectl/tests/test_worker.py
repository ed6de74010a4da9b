import threading
import time

import pytest

from queuectl.models import ExecutionResult, JobState
from queuectl.queue import JobQueue
from queuectl.worker import Worker

from conftest import RecordingExecutor, wait_for


class FlakyQueue:
    """Raises on the first ``failures`` polls, then behaves like ``inner``."""

    def __init__(self, inner, failures=1):
        self.inner = inner
        self.failures = failures
        self.polls = 0

    def get_next_job(self):
        self.polls += 1
        if self.polls <= self.failures:
            raise RuntimeError("database is locked")
        return self.inner.get_next_job()

    def execute_job(self, job, worker_id):
        return self.inner.execute_job(job, worker_id)


class BlockingExecutor:
    def __init__(self):
        self.started = threading.Event()
        self.release = threading.Event()

    def __call__(self, command):
        self.started.set()
        self.release.wait(10)
        return ExecutionResult(success=True, exit_code=0)


def _start(worker):
    thread = threading.Thread(target=worker.run, daemon=True)
    thread.start()
    return thread


def test_worker_id_is_stable_and_unique(queue):
    first = Worker(queue)
    second = Worker(queue)

    assert first.worker_id.startswith("worker-")
    assert first.worker_id != second.worker_id
    assert Worker(queue, worker_id="w-fixed").worker_id == "w-fixed"


def test_run_once_idle_returns_none(queue):
    assert Worker(queue).run_once() is None


def test_run_once_executes_one_job(storage, config):
    executor = RecordingExecutor()
    queue = JobQueue(storage, config, executor=executor)
    queue.enqueue({"id": "a", "command": "echo a"})
    queue.enqueue({"id": "b", "command": "echo b"})
    worker = Worker(queue, worker_id="w1")

    outcome = worker.run_once()

    assert outcome.job_id == "a"
    assert executor.calls == ["echo a"]
    assert worker.current_job is None
    assert storage.get_job("b").state == JobState.PENDING


def test_run_processes_until_stopped(storage, config):
    queue = JobQueue(storage, config, executor=RecordingExecutor())
    for i in range(3):
        queue.enqueue({"id": f"job{i}", "command": f"echo {i}"})
    worker = Worker(queue, poll_interval=0.02)
    thread = _start(worker)

    assert wait_for(lambda: storage.get_stats()["completed"] == 3)
    assert worker.stop(grace_period=5) is True
    thread.join(timeout=5)
    assert not thread.is_alive()


def test_stop_when_idle_is_immediate(queue):
    worker = Worker(queue, poll_interval=30)
    thread = _start(worker)
    time.sleep(0.1)

    started = time.monotonic()
    assert worker.stop(grace_period=5) is True
    thread.join(timeout=5)

    assert not thread.is_alive()
    assert time.monotonic() - started < 5


def test_stop_waits_for_in_flight_job(storage, config):
    executor = BlockingExecutor()
    queue = JobQueue(storage, config, executor=executor)
    queue.enqueue({"id": "slow", "command": "sleep"})
    queue.enqueue({"id": "next", "command": "echo"})
    worker = Worker(queue, poll_interval=0.02)
    thread = _start(worker)
    assert executor.started.wait(5)

    stopper = threading.Timer(0.2, executor.release.set)
    stopper.start()
    assert worker.stop(grace_period=5) is True
    thread.join(timeout=5)

    assert storage.get_job("slow").state == JobState.COMPLETED
    # the loop exits instead of picking up more work
    assert storage.get_job("next").state == JobState.PENDING


def test_stop_gives_up_after_grace_period(storage, config):
    executor = BlockingExecutor()
    queue = JobQueue(storage, config, executor=executor)
    queue.enqueue({"id": "slow", "command": "sleep"})
    worker = Worker(queue, worker_id="w1", poll_interval=0.02)
    thread = _start(worker)
    assert executor.started.wait(5)

    assert worker.stop(grace_period=0.1) is False
    job = storage.get_job("slow")
    assert job.state == JobState.PROCESSING
    assert job.worker_id == "w1"

    executor.release.set()
    thread.join(timeout=5)


def test_worker_survives_transient_errors(storage, config):
    inner = JobQueue(storage, config, executor=RecordingExecutor())
    inner.enqueue({"id": "a", "command": "echo"})
    flaky = FlakyQueue(inner, failures=2)
    worker = Worker(flaky, poll_interval=0.02)
    thread = _start(worker)

    assert wait_for(lambda: storage.get_job("a").state == JobState.COMPLETED)
    worker.stop(grace_period=5)
    thread.join(timeout=5)

    assert flaky.polls > 2
    assert worker.current_job is None


def test_worker_survives_execution_errors(storage, config):
    class ExplodingQueue(JobQueue):
        def execute_job(self, job, worker_id):
            raise RuntimeError("disk full")

    queue = ExplodingQueue(storage, config, executor=RecordingExecutor())
    queue.enqueue({"id": "a", "command": "echo"})
    worker = Worker(queue, poll_interval=0.02)

    with pytest.raises(RuntimeError):
        worker.run_once()
    assert worker.current_job is None

    thread = _start(worker)
    time.sleep(0.1)
    assert thread.is_alive()
    worker.stop(grace_period=5)
    thread.join(timeout=5)
