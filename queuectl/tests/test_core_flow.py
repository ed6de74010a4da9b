import os
import tempfile
import threading
import unittest
from datetime import datetime, timezone

from queuectl.config import Config
from queuectl.executor import CommandExecutor
from queuectl.models import JobState
from queuectl.queue import JobQueue
from queuectl.storage import Storage
from queuectl.worker import Worker

from conftest import FrozenClock, RecordingExecutor, wait_for


class TestCoreFlow(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.test_db = os.path.join(self.tmpdir.name, "jobs.db")
        self.storage = Storage(self.test_db)
        self.config = Config(self.storage)

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_basic_job_flow(self):
        """A successful command ends completed with no owner or error"""
        queue = JobQueue(self.storage, self.config)
        queue.enqueue({"id": "test1", "command": "echo hello", "max_retries": 3})

        worker = Worker(queue)
        outcome = worker.run_once()

        self.assertTrue(outcome.success)
        self.assertIn("hello", outcome.stdout)
        job = self.storage.get_job("test1")
        self.assertEqual(job.state, JobState.COMPLETED)
        self.assertIsNone(job.worker_id)
        self.assertIsNone(job.error_message)

    def test_failed_job_retry(self):
        """Failed jobs retry with backoff, then land in the DLQ"""
        clock = FrozenClock(datetime(2026, 3, 1, tzinfo=timezone.utc))
        queue = JobQueue(self.storage, self.config, clock=clock)
        queue.enqueue({"id": "test2", "command": "exit 1", "max_retries": 2})

        worker = Worker(queue)
        outcome = worker.run_once()

        job = self.storage.get_job("test2")
        self.assertEqual(job.state, JobState.FAILED)
        self.assertEqual(job.attempts, 1)
        self.assertEqual(outcome.next_retry_at, job.next_retry_at)
        self.assertEqual((job.next_retry_at - clock.now).total_seconds(), 2)

        # not due yet
        self.assertIsNone(worker.run_once())

        clock.advance(2)
        worker.run_once()
        final_job = self.storage.get_job("test2")
        self.assertEqual(final_job.state, JobState.DEAD)
        self.assertEqual(final_job.attempts, 2)
        self.assertIsNone(final_job.next_retry_at)

    def test_job_timeout(self):
        """A command that outlives the executor timeout counts as a failure"""
        queue = JobQueue(self.storage, self.config, executor=CommandExecutor(timeout=0.5))
        queue.enqueue({"id": "test4", "command": "sleep 10", "max_retries": 1})

        outcome = Worker(queue).run_once()

        self.assertEqual(outcome.status, "dead")
        job = self.storage.get_job("test4")
        self.assertEqual(job.state, JobState.DEAD)
        self.assertIn("timed out", job.error_message)

    def test_worker_pool(self):
        """Several workers on one store run every job exactly once"""
        executor = RecordingExecutor()
        for i in range(12):
            JobQueue(self.storage, self.config).enqueue({"id": f"test{i}", "command": f"echo job{i}"})

        workers = [
            Worker(JobQueue(Storage(self.test_db), executor=executor), poll_interval=0.02)
            for _ in range(3)
        ]
        threads = [threading.Thread(target=w.run, daemon=True) for w in workers]
        for thread in threads:
            thread.start()

        done = wait_for(lambda: self.storage.get_stats()["completed"] == 12)
        for worker in workers:
            worker.stop(grace_period=5)
        for thread in threads:
            thread.join(timeout=5)

        self.assertTrue(done)
        self.assertEqual(sorted(executor.calls), sorted(f"echo job{i}" for i in range(12)))


if __name__ == '__main__':
    unittest.main()
