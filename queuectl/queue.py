import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional

from .config import Config
from .errors import DuplicateIdError, ValidationError
from .executor import CommandExecutor
from .models import ExecutionResult, Job, JobOutcome, JobState
from .storage import MAX_RETRIES_LIMIT, Storage
from .utils import utc_now

logger = logging.getLogger(__name__)

Executor = Callable[[str], ExecutionResult]

# retries are never scheduled further out than this (about 10 years)
MAX_BACKOFF_SECONDS = 10 * 365 * 24 * 3600


def _required_text(descriptor: Mapping[str, Any], key: str) -> str:
    value = descriptor.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f'Job must have a non-empty "{key}" field')
    return value


def _optional_max_retries(descriptor: Mapping[str, Any]) -> Optional[int]:
    value = descriptor.get("max_retries")
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValidationError("max_retries must be a non-negative integer")
    try:
        number = int(value)
    except (TypeError, ValueError, OverflowError):
        raise ValidationError("max_retries must be a non-negative integer") from None
    if number < 0 or (isinstance(value, float) and not value.is_integer()):
        raise ValidationError("max_retries must be a non-negative integer")
    if number > MAX_RETRIES_LIMIT:
        raise ValidationError(f"max_retries must not exceed {MAX_RETRIES_LIMIT}")
    return number


class JobQueue:
    """Job lifecycle around command execution: enqueue, pick, run, retry, DLQ."""

    def __init__(
        self,
        storage: Storage,
        config: Optional[Config] = None,
        executor: Optional[Executor] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.storage = storage
        self.config = config or Config(storage)
        self.executor = executor or CommandExecutor()
        self.clock = clock

    def enqueue(self, descriptor: Mapping[str, Any]) -> Job:
        if not isinstance(descriptor, Mapping):
            raise ValidationError("Job descriptor must be a JSON object")
        job_id = _required_text(descriptor, "id")
        command = _required_text(descriptor, "command")
        max_retries = _optional_max_retries(descriptor)
        if max_retries is None:
            max_retries = self.config.max_retries

        if self.storage.get_job(job_id) is not None:
            raise DuplicateIdError(job_id)

        job = self.storage.create_job(Job.create(job_id, command, max_retries, now=self.clock()))
        logger.debug("Enqueued job %s (max_retries=%d)", job.id, job.max_retries)
        return job

    def get_next_job(self) -> Optional[Job]:
        """Oldest pending job, else the earliest due retry put back to pending."""
        job = self.storage.next_pending()
        if job is not None:
            return job

        job = self.storage.next_retryable(self.clock())
        if job is None:
            return None
        # another worker may have re-queued it first; either way it is pending
        # (or already claimed) now, and the claim decides who runs it
        self.storage.requeue(job.id)
        return self.storage.get_job(job.id)

    def _backoff_delay(self, attempts: int) -> float:
        try:
            delay = self.config.backoff_base ** attempts
        except OverflowError:
            return MAX_BACKOFF_SECONDS
        return min(delay, MAX_BACKOFF_SECONDS)

    def execute_job(self, job: Job, worker_id: str) -> JobOutcome:
        if not self.storage.claim(job.id, worker_id):
            logger.debug("Worker %s lost the claim race for job %s", worker_id, job.id)
            return JobOutcome(job_id=job.id, status=JobOutcome.LOST_RACE, attempts=job.attempts)

        claimed = self.storage.get_job(job.id) or job
        try:
            result = self.executor(claimed.command)
        except Exception as exc:
            logger.warning("Executor raised while running job %s: %s", job.id, exc)
            result = ExecutionResult(success=False, error_message=str(exc) or type(exc).__name__)

        if result.success:
            self.storage.update_job(
                job.id,
                state=JobState.COMPLETED,
                worker_id=None,
                error_message=None,
                next_retry_at=None,
            )
            return JobOutcome(
                job_id=job.id,
                status=JobState.COMPLETED.value,
                attempts=claimed.attempts,
                stdout=result.stdout,
                stderr=result.stderr,
            )

        return self._record_failure(claimed, result)

    def _record_failure(self, job: Job, result: ExecutionResult) -> JobOutcome:
        attempts = job.attempts + 1
        error_message = result.error_message or "Command execution failed"

        if attempts >= job.max_retries:
            self.storage.update_job(
                job.id,
                state=JobState.DEAD,
                attempts=attempts,
                worker_id=None,
                next_retry_at=None,
                error_message=error_message,
            )
            status, next_retry_at = JobState.DEAD.value, None
        else:
            next_retry_at = self.clock() + timedelta(seconds=self._backoff_delay(attempts))
            self.storage.update_job(
                job.id,
                state=JobState.FAILED,
                attempts=attempts,
                worker_id=None,
                next_retry_at=next_retry_at,
                error_message=error_message,
            )
            status = JobState.FAILED.value

        return JobOutcome(
            job_id=job.id,
            status=status,
            attempts=attempts,
            next_retry_at=next_retry_at,
            error_message=error_message,
            stdout=result.stdout,
            stderr=result.stderr,
        )

    def list(self, state: Optional[str] = None) -> List[Job]:
        if state:
            try:
                state = JobState(state)
            except ValueError:
                valid = ", ".join(s.value for s in JobState)
                raise ValidationError(f"Invalid state {state!r}. Must be one of: {valid}") from None
        return self.storage.list_jobs(state)

    def get_stats(self) -> Dict[str, int]:
        return self.storage.get_stats()

    def get_dead_jobs(self) -> List[Job]:
        return self.storage.list_dead_jobs()

    def retry_from_dead(self, job_id: str) -> Job:
        return self.storage.retry_from_dead(job_id)
