from dataclasses import dataclass, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from .utils import utc_now


class JobState(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD = "dead"


@dataclass
class Job:
    id: str
    command: str
    state: JobState
    attempts: int
    max_retries: int
    created_at: datetime
    updated_at: datetime
    next_retry_at: Optional[datetime] = None
    worker_id: Optional[str] = None
    error_message: Optional[str] = None

    @staticmethod
    def create(id: str, command: str, max_retries: int = 3, now: Optional[datetime] = None) -> "Job":
        now = now or utc_now()
        return Job(
            id=id,
            command=command,
            state=JobState.PENDING,
            attempts=0,
            max_retries=max_retries,
            created_at=now,
            updated_at=now,
        )

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly view of the job"""
        data = asdict(self)
        data["state"] = self.state.value
        for key in ("created_at", "updated_at", "next_retry_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


@dataclass
class ExecutionResult:
    """What the command executor reports back for one attempt."""
    success: bool
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    error_message: Optional[str] = None
    timed_out: bool = False


@dataclass
class JobOutcome:
    job_id: str
    status: str  # completed / failed / dead / lost_race
    attempts: int = 0
    next_retry_at: Optional[datetime] = None
    error_message: Optional[str] = None
    stdout: str = ""
    stderr: str = ""

    LOST_RACE = "lost_race"

    @property
    def success(self) -> bool:
        return self.status == JobState.COMPLETED.value

    @property
    def claimed(self) -> bool:
        return self.status != self.LOST_RACE
