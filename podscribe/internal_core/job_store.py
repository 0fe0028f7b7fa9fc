from __future__ import annotations

import datetime as _dt
import sqlite3
import threading
import uuid
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional

from .contracts import JOB_TRANSITIONS, Job, JobLogEntry, JobStatus, utc_now
from .errors import JobStateError, NotFoundError, StorageError

_MUTABLE_FIELDS = frozenset({"elapsed_seconds", "return_code", "output_location"})


def _check_transition(job: Job, status: str, fields: Dict[str, Any]) -> None:
    unknown = set(fields) - _MUTABLE_FIELDS
    if unknown:
        raise JobStateError(f"Fields cannot be changed on transition: {sorted(unknown)}")
    if status not in JOB_TRANSITIONS.get(job.status, frozenset()):
        raise JobStateError(f"Job {job.job_id}: illegal transition {job.status} -> {status}")

    merged = job.model_dump()
    merged.update(fields)
    if status == "DONE":
        if not merged.get("output_location"):
            raise JobStateError(f"Job {job.job_id}: DONE requires an output location")
        if merged.get("return_code") not in (None, 0):
            raise JobStateError(f"Job {job.job_id}: DONE requires return code 0")
    elif status == "FAILED":
        if merged.get("return_code") in (None, 0):
            raise JobStateError(f"Job {job.job_id}: FAILED requires a nonzero return code")
        if merged.get("output_location"):
            raise JobStateError(f"Job {job.job_id}: FAILED job cannot carry an output location")


class JobStore(ABC):
    """Persistence for job records and their append-only logs.

    Status changes go through ``transition_job`` so every backend enforces the
    same NEW -> RUNNING -> DONE|FAILED lifecycle.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()

    def create_job(self, podcast: str, episode: str, *, job_id: Optional[str] = None) -> Job:
        job = Job(
            id=str(uuid.uuid4()),
            job_id=job_id or uuid.uuid4().hex,
            podcast=podcast,
            episode=episode,
            status="NEW",
            created_at=utc_now(),
        )
        with self._lock:
            if self.get_job(job.job_id) is not None:
                raise JobStateError(f"Job {job.job_id} already exists")
            self._insert_job(job)
        return job

    def transition_job(self, job_id: str, status: JobStatus, **fields: Any) -> Job:
        with self._lock:
            current = self.get_job(job_id)
            if current is None:
                raise NotFoundError(f"Job not found: {job_id}")
            _check_transition(current, status, fields)
            updated = current.model_copy(update={"status": status, **fields})
            self._replace_job(updated)
            return updated

    @abstractmethod
    def get_job(self, job_id: str) -> Optional[Job]: ...

    @abstractmethod
    def delete_job(self, job_id: str) -> bool: ...

    @abstractmethod
    def delete_job_if_status(self, job_id: str, status: JobStatus) -> bool:
        """Delete only while the job is still in ``status``; atomic per backend."""

    @abstractmethod
    def list_jobs(self, status: Optional[JobStatus] = None, limit: Optional[int] = None) -> List[Job]: ...

    @abstractmethod
    def append_log(self, job_id: str, message: str) -> JobLogEntry: ...

    @abstractmethod
    def list_logs(self, job_id: str) -> List[JobLogEntry]: ...

    @abstractmethod
    def _insert_job(self, job: Job) -> None: ...

    @abstractmethod
    def _replace_job(self, job: Job) -> None: ...


class InMemoryJobStore(JobStore):
    def __init__(self) -> None:
        super().__init__()
        self._jobs: Dict[str, Job] = {}
        self._order: Dict[str, int] = {}
        self._logs: Dict[str, List[JobLogEntry]] = {}
        self._job_seq = 0
        self._log_seq = 0

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy() if job is not None else None

    def delete_job(self, job_id: str) -> bool:
        with self._lock:
            removed = self._jobs.pop(job_id, None)
            self._order.pop(job_id, None)
            self._logs.pop(job_id, None)
            return removed is not None

    def delete_job_if_status(self, job_id: str, status: JobStatus) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != status:
                return False
            return self.delete_job(job_id)

    def list_jobs(self, status: Optional[JobStatus] = None, limit: Optional[int] = None) -> List[Job]:
        with self._lock:
            jobs = [job for job in self._jobs.values() if status is None or job.status == status]
            jobs.sort(key=lambda job: (job.created_at, self._order[job.job_id]), reverse=True)
            if limit is not None:
                jobs = jobs[: max(0, limit)]
            return [job.model_copy() for job in jobs]

    def append_log(self, job_id: str, message: str) -> JobLogEntry:
        with self._lock:
            if job_id not in self._jobs:
                raise NotFoundError(f"Job not found: {job_id}")
            self._log_seq += 1
            entry = JobLogEntry(job_id=job_id, seq=self._log_seq, timestamp=utc_now(), message=message)
            self._logs.setdefault(job_id, []).append(entry)
            return entry.model_copy()

    def list_logs(self, job_id: str) -> List[JobLogEntry]:
        with self._lock:
            entries = list(self._logs.get(job_id, []))
        entries.sort(key=lambda entry: (entry.timestamp, entry.seq))
        return [entry.model_copy() for entry in entries]

    def _insert_job(self, job: Job) -> None:
        self._job_seq += 1
        self._jobs[job.job_id] = job.model_copy()
        self._order[job.job_id] = self._job_seq
        self._logs[job.job_id] = []

    def _replace_job(self, job: Job) -> None:
        self._jobs[job.job_id] = job.model_copy()


_SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    rowid_seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    job_id TEXT NOT NULL UNIQUE,
    podcast TEXT NOT NULL,
    episode TEXT NOT NULL,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    elapsed_seconds INTEGER,
    return_code INTEGER,
    output_location TEXT
);
CREATE INDEX IF NOT EXISTS idx_jobs_created_at ON jobs (created_at);
CREATE TABLE IF NOT EXISTS job_logs (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL REFERENCES jobs (job_id) ON DELETE CASCADE,
    timestamp TEXT NOT NULL,
    message TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_job_logs_job_id ON job_logs (job_id);
"""


def _to_text(value: _dt.datetime) -> str:
    # Fixed-width so lexical order in SQL matches chronological order.
    return value.astimezone(_dt.timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def _from_text(value: str) -> _dt.datetime:
    parsed = _dt.datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=_dt.timezone.utc)
    return parsed


def _row_to_job(row: sqlite3.Row) -> Job:
    return Job(
        id=row["id"],
        job_id=row["job_id"],
        podcast=row["podcast"],
        episode=row["episode"],
        status=row["status"],
        created_at=_from_text(row["created_at"]),
        elapsed_seconds=row["elapsed_seconds"],
        return_code=row["return_code"],
        output_location=row["output_location"],
    )


def _row_to_log(row: sqlite3.Row) -> JobLogEntry:
    return JobLogEntry(
        job_id=row["job_id"],
        seq=int(row["seq"]),
        timestamp=_from_text(row["timestamp"]),
        message=row["message"],
    )


class SQLiteJobStore(JobStore):
    """SQLite-backed store; one short-lived connection per call."""

    def __init__(self, db_path: str | Path) -> None:
        super().__init__()
        self.db_path = Path(db_path)
        if not self.db_path.parent.exists():
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self.connect() as connection:
            connection.executescript(_SCHEMA)

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        connection = sqlite3.connect(str(self.db_path), timeout=30.0)
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON;")
        try:
            yield connection
            connection.commit()
        except sqlite3.Error as exc:
            connection.rollback()
            raise StorageError(str(exc)) from exc
        except Exception:
            connection.rollback()
            raise
        finally:
            connection.close()

    def get_job(self, job_id: str) -> Optional[Job]:
        with self.connect() as connection:
            row = connection.execute("SELECT * FROM jobs WHERE job_id = ?", (job_id,)).fetchone()
        return _row_to_job(row) if row is not None else None

    def delete_job(self, job_id: str) -> bool:
        with self._lock, self.connect() as connection:
            cursor = connection.execute("DELETE FROM jobs WHERE job_id = ?", (job_id,))
            return cursor.rowcount > 0

    def delete_job_if_status(self, job_id: str, status: JobStatus) -> bool:
        with self._lock, self.connect() as connection:
            cursor = connection.execute(
                "DELETE FROM jobs WHERE job_id = ? AND status = ?",
                (job_id, status),
            )
            return cursor.rowcount > 0

    def list_jobs(self, status: Optional[JobStatus] = None, limit: Optional[int] = None) -> List[Job]:
        sql = "SELECT * FROM jobs"
        params: list[Any] = []
        if status is not None:
            sql += " WHERE status = ?"
            params.append(status)
        sql += " ORDER BY created_at DESC, rowid_seq DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(max(0, int(limit)))
        with self.connect() as connection:
            rows = connection.execute(sql, params).fetchall()
        return [_row_to_job(row) for row in rows]

    def append_log(self, job_id: str, message: str) -> JobLogEntry:
        timestamp = utc_now()
        with self._lock, self.connect() as connection:
            exists = connection.execute("SELECT 1 FROM jobs WHERE job_id = ?", (job_id,)).fetchone()
            if exists is None:
                raise NotFoundError(f"Job not found: {job_id}")
            cursor = connection.execute(
                "INSERT INTO job_logs (job_id, timestamp, message) VALUES (?, ?, ?)",
                (job_id, _to_text(timestamp), message),
            )
            seq = int(cursor.lastrowid or 0)
        return JobLogEntry(job_id=job_id, seq=seq, timestamp=timestamp, message=message)

    def list_logs(self, job_id: str) -> List[JobLogEntry]:
        with self.connect() as connection:
            rows = connection.execute(
                "SELECT * FROM job_logs WHERE job_id = ? ORDER BY timestamp ASC, seq ASC",
                (job_id,),
            ).fetchall()
        return [_row_to_log(row) for row in rows]

    def _insert_job(self, job: Job) -> None:
        with self.connect() as connection:
            connection.execute(
                "INSERT INTO jobs (id, job_id, podcast, episode, status, created_at, "
                "elapsed_seconds, return_code, output_location) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    job.id,
                    job.job_id,
                    job.podcast,
                    job.episode,
                    job.status,
                    _to_text(job.created_at),
                    job.elapsed_seconds,
                    job.return_code,
                    job.output_location,
                ),
            )

    def _replace_job(self, job: Job) -> None:
        with self.connect() as connection:
            connection.execute(
                "UPDATE jobs SET status = ?, elapsed_seconds = ?, return_code = ?, output_location = ? "
                "WHERE job_id = ?",
                (job.status, job.elapsed_seconds, job.return_code, job.output_location, job.job_id),
            )
