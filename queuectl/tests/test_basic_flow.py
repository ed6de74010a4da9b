import threading

from queuectl.models import JobState
from queuectl.queue import JobQueue
from queuectl.worker import Worker

from conftest import wait_for


def _run_worker(worker):
    thread = threading.Thread(target=worker.run)
    thread.daemon = True
    thread.start()
    return thread


def test_basic_flow(storage):
    queue = JobQueue(storage)
    queue.enqueue({"id": "test-job", "command": "echo 'Hello World'"})

    jobs = queue.list("pending")
    assert len(jobs) == 1
    assert jobs[0].id == "test-job"

    worker = Worker(queue, poll_interval=0.05)
    worker_thread = _run_worker(worker)

    assert wait_for(lambda: storage.get_job("test-job").state == JobState.COMPLETED)
    assert worker.stop(grace_period=5)
    worker_thread.join(timeout=5)

    jobs = queue.list("completed")
    assert len(jobs) == 1
    assert jobs[0].id == "test-job"
    assert jobs[0].worker_id is None


def test_failed_job(storage, config):
    config.set("backoff_base", "100")
    queue = JobQueue(storage, config)
    queue.enqueue({"id": "fail-job", "command": "invalid_command_that_does_not_exist"})

    worker = Worker(queue, poll_interval=0.05)
    worker_thread = _run_worker(worker)

    assert wait_for(lambda: storage.get_job("fail-job").state == JobState.FAILED)
    worker.stop(grace_period=5)
    worker_thread.join(timeout=5)

    jobs = queue.list("failed")
    assert len(jobs) == 1
    assert jobs[0].id == "fail-job"
    assert jobs[0].attempts == 1
    assert jobs[0].next_retry_at is not None
    assert "exit code 127" in jobs[0].error_message
