import logging
from threading import Event
from typing import Optional

from .models import Job, JobOutcome
from .queue import JobQueue
from .utils import format_timestamp, generate_worker_id

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 1.0
DEFAULT_GRACE_PERIOD = 30.0


class Worker:
    """One sequential execution stream against a :class:`JobQueue`.

    ``run`` blocks the calling thread; ``request_stop``/``stop`` may be called
    from any other thread (or a signal handler) to end the loop once the
    in-flight job, if any, is done.
    """

    def __init__(self, queue: JobQueue, worker_id: Optional[str] = None, poll_interval: float = DEFAULT_POLL_INTERVAL):
        self.queue = queue
        self.worker_id = worker_id or generate_worker_id()
        self.poll_interval = poll_interval
        self.current_job: Optional[Job] = None
        self._stop_event = Event()
        self._idle = Event()
        self._idle.set()

    def run_once(self) -> Optional[JobOutcome]:
        """Fetch and execute at most one job. Returns None when there was no work."""
        self._idle.clear()
        try:
            job = self.queue.get_next_job()
            # a stop request that arrives before the claim leaves the job for others
            if job is None or self._stop_event.is_set():
                return None
            self.current_job = job
            logger.info("Worker %s processing job %s: %s", self.worker_id, job.id, job.command)
            outcome = self.queue.execute_job(job, self.worker_id)
            self._log_outcome(outcome)
            return outcome
        finally:
            self.current_job = None
            self._idle.set()

    def run(self) -> None:
        logger.info("Worker %s started", self.worker_id)
        while not self._stop_event.is_set():
            try:
                outcome = self.run_once()
            except Exception:
                logger.exception("Worker %s error", self.worker_id)
                self._stop_event.wait(self.poll_interval)
                continue
            if outcome is None:
                # no job available, wait before polling again
                self._stop_event.wait(self.poll_interval)
        logger.info("Worker %s stopped", self.worker_id)

    def request_stop(self) -> None:
        self._stop_event.set()

    def stop(self, grace_period: float = DEFAULT_GRACE_PERIOD) -> bool:
        """Ask the loop to exit and wait for the in-flight job.

        Returns False if the grace period ran out with a job still running;
        that job is left in ``processing``.
        """
        self.request_stop()
        job = self.current_job
        if job is not None:
            logger.info("Worker %s waiting up to %ss for job %s", self.worker_id, grace_period, job.id)
        drained = self._idle.wait(grace_period)
        if not drained:
            logger.warning(
                "Worker %s grace period expired; job %s left in processing",
                self.worker_id,
                job.id if job else "?",
            )
        return drained

    def _log_outcome(self, outcome: JobOutcome) -> None:
        if not outcome.claimed:
            logger.info("Job %s already claimed by another worker, skipping", outcome.job_id)
        elif outcome.success:
            logger.info("Job %s completed", outcome.job_id)
        elif outcome.next_retry_at is not None:
            logger.info(
                "Job %s failed (attempt %d): %s; retry at %s",
                outcome.job_id,
                outcome.attempts,
                outcome.error_message,
                format_timestamp(outcome.next_retry_at),
            )
        else:
            logger.warning(
                "Job %s moved to DLQ after %d attempts: %s",
                outcome.job_id,
                outcome.attempts,
                outcome.error_message,
            )
