import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

from .errors import DuplicateIdError, NotFoundError, NotInDeadStateError
from .models import Job, JobState
from .utils import from_db_timestamp, to_db_timestamp, utc_now

DEFAULT_CONFIG = {
    "max_retries": "3",
    "backoff_base": "2",
}

# largest value an SQLite INTEGER column holds
MAX_RETRIES_LIMIT = 2 ** 63 - 1

# columns update_job is allowed to touch; id, command, created_at and
# max_retries are immutable once a job exists
_MUTABLE_FIELDS = {
    "state",
    "attempts",
    "next_retry_at",
    "worker_id",
    "error_message",
}
_TIMESTAMP_FIELDS = {"next_retry_at"}

_SELECT_JOB = """
    SELECT id, command, state, attempts, max_retries, created_at, updated_at,
           next_retry_at, worker_id, error_message
    FROM jobs
"""


def _row_to_job(row: sqlite3.Row) -> Job:
    return Job(
        id=row["id"],
        command=row["command"],
        state=JobState(row["state"]),
        attempts=row["attempts"],
        max_retries=row["max_retries"],
        created_at=from_db_timestamp(row["created_at"]),
        updated_at=from_db_timestamp(row["updated_at"]),
        next_retry_at=from_db_timestamp(row["next_retry_at"]),
        worker_id=row["worker_id"],
        error_message=row["error_message"],
    )


class Storage:
    """SQLite-backed job and config store shared by every worker process.

    Each call opens its own short-lived connection, so one ``Storage`` per
    process is enough and nothing is shared in memory between workers.
    """

    def __init__(self, db_path: Union[str, Path] = "jobs.db", busy_timeout: float = 30.0):
        self.db_path = Path(db_path)
        self.busy_timeout = busy_timeout
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self):
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS jobs (
                    id TEXT PRIMARY KEY,
                    command TEXT NOT NULL,
                    state TEXT NOT NULL DEFAULT 'pending',
                    attempts INTEGER NOT NULL DEFAULT 0,
                    max_retries INTEGER NOT NULL DEFAULT 3,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    next_retry_at TEXT,
                    worker_id TEXT,
                    error_message TEXT
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_state ON jobs(state)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_next_retry ON jobs(next_retry_at)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_worker ON jobs(worker_id)")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS config (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
            """)
            (count,) = conn.execute("SELECT COUNT(*) FROM config").fetchone()
            if count == 0:
                conn.executemany(
                    "INSERT OR IGNORE INTO config (key, value) VALUES (?, ?)",
                    DEFAULT_CONFIG.items(),
                )

    # ----------------------------
    # Jobs
    # ----------------------------
    def create_job(self, job: Job) -> Job:
        now = to_db_timestamp(utc_now())
        with self._connect() as conn:
            try:
                conn.execute("""
                    INSERT INTO jobs (
                        id, command, state, attempts, max_retries,
                        created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """, (
                    job.id,
                    job.command,
                    JobState.PENDING.value,
                    0,
                    job.max_retries,
                    to_db_timestamp(job.created_at) or now,
                    now,
                ))
            except sqlite3.IntegrityError:
                raise DuplicateIdError(job.id) from None
        return self.get_job(job.id)

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._connect() as conn:
            row = conn.execute(_SELECT_JOB + " WHERE id = ?", (job_id,)).fetchone()
        return _row_to_job(row) if row else None

    def claim(self, job_id: str, worker_id: str) -> bool:
        """Move a pending job to processing for ``worker_id``.

        A single conditional UPDATE: SQLite serialises writers, so among
        concurrent callers for the same id exactly one sees a changed row.
        """
        with self._connect() as conn:
            cursor = conn.execute("""
                UPDATE jobs
                SET state = ?, worker_id = ?, updated_at = ?
                WHERE id = ? AND state = ?
            """, (
                JobState.PROCESSING.value,
                worker_id,
                to_db_timestamp(utc_now()),
                job_id,
                JobState.PENDING.value,
            ))
            return cursor.rowcount == 1

    def update_job(self, job_id: str, **fields: Any) -> Job:
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update job fields: {', '.join(sorted(unknown))}")

        values: Dict[str, Any] = {}
        for key, value in fields.items():
            if key in _TIMESTAMP_FIELDS:
                value = to_db_timestamp(value)
            elif isinstance(value, JobState):
                value = value.value
            values[key] = value
        values["updated_at"] = to_db_timestamp(utc_now())

        assignments = ", ".join(f"{key} = ?" for key in values)
        with self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE jobs SET {assignments} WHERE id = ?",
                (*values.values(), job_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError(job_id)
        return self.get_job(job_id)

    def requeue(self, job_id: str) -> bool:
        """Put a due failed job back into the pending pool."""
        with self._connect() as conn:
            cursor = conn.execute("""
                UPDATE jobs
                SET state = ?, next_retry_at = NULL, updated_at = ?
                WHERE id = ? AND state = ?
            """, (
                JobState.PENDING.value,
                to_db_timestamp(utc_now()),
                job_id,
                JobState.FAILED.value,
            ))
            return cursor.rowcount == 1

    def next_pending(self) -> Optional[Job]:
        with self._connect() as conn:
            row = conn.execute(
                _SELECT_JOB + " WHERE state = ? ORDER BY created_at ASC, rowid ASC LIMIT 1",
                (JobState.PENDING.value,),
            ).fetchone()
        return _row_to_job(row) if row else None

    def next_retryable(self, now: Optional[datetime] = None) -> Optional[Job]:
        now_iso = to_db_timestamp(now or utc_now())
        with self._connect() as conn:
            row = conn.execute(
                _SELECT_JOB + """
                WHERE state = ?
                  AND attempts < max_retries
                  AND (next_retry_at IS NULL OR next_retry_at <= ?)
                ORDER BY next_retry_at ASC, rowid ASC
                LIMIT 1
                """,
                (JobState.FAILED.value, now_iso),
            ).fetchone()
        return _row_to_job(row) if row else None

    def list_jobs(self, state: Optional[Union[str, JobState]] = None) -> List[Job]:
        with self._connect() as conn:
            if state:
                cursor = conn.execute(
                    _SELECT_JOB + " WHERE state = ? ORDER BY created_at DESC, rowid DESC",
                    (JobState(state).value,),
                )
            else:
                cursor = conn.execute(_SELECT_JOB + " ORDER BY created_at DESC, rowid DESC")
            return [_row_to_job(row) for row in cursor]

    def list_dead_jobs(self) -> List[Job]:
        with self._connect() as conn:
            cursor = conn.execute(
                _SELECT_JOB + " WHERE state = ? ORDER BY updated_at DESC, rowid DESC",
                (JobState.DEAD.value,),
            )
            return [_row_to_job(row) for row in cursor]

    def move_to_dead(self, job_id: str) -> Job:
        return self.update_job(job_id, state=JobState.DEAD, worker_id=None, next_retry_at=None)

    def retry_from_dead(self, job_id: str) -> Job:
        with self._connect() as conn:
            cursor = conn.execute("""
                UPDATE jobs
                SET state = ?, attempts = 0, next_retry_at = NULL,
                    error_message = NULL, worker_id = NULL, updated_at = ?
                WHERE id = ? AND state = ?
            """, (
                JobState.PENDING.value,
                to_db_timestamp(utc_now()),
                job_id,
                JobState.DEAD.value,
            ))
            if cursor.rowcount != 1:
                raise NotInDeadStateError(job_id)
        return self.get_job(job_id)

    def get_stats(self) -> Dict[str, int]:
        stats = {state.value: 0 for state in JobState}
        with self._connect() as conn:
            cursor = conn.execute("""
                SELECT state, COUNT(*)
                FROM jobs
                GROUP BY state
            """)
            for state, count in cursor:
                stats[state] = count
        return stats

    # ----------------------------
    # Config
    # ----------------------------
    def get_config(self, key: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM config WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set_config(self, key: str, value: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO config (key, value) VALUES (?, ?)"
                " ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, str(value)),
            )

    def get_all_config(self) -> Dict[str, str]:
        with self._connect() as conn:
            rows = conn.execute("SELECT key, value FROM config ORDER BY key").fetchall()
        return {row["key"]: row["value"] for row in rows}
