class QueueError(Exception):
    """Base class for errors surfaced to queuectl callers."""


class ValidationError(QueueError):
    """Malformed job descriptor or invalid configuration value."""


class DuplicateIdError(QueueError):
    def __init__(self, job_id: str):
        super().__init__(f"Job with id {job_id} already exists")
        self.job_id = job_id


class NotFoundError(QueueError):
    def __init__(self, job_id: str, message: str = ""):
        super().__init__(message or f"Job {job_id} not found")
        self.job_id = job_id


class NotInDeadStateError(NotFoundError):
    def __init__(self, job_id: str):
        super().__init__(job_id, f"Job {job_id} not found in DLQ")
