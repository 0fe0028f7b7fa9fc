from __future__ import annotations

import datetime as _dt
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict

JobStatus = Literal["NEW", "RUNNING", "DONE", "FAILED"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"DONE", "FAILED"})

# Allowed forward moves; anything else is rejected by the stores.
JOB_TRANSITIONS: dict[str, frozenset[str]] = {
    "NEW": frozenset({"RUNNING"}),
    "RUNNING": frozenset({"DONE", "FAILED"}),
    "DONE": frozenset(),
    "FAILED": frozenset(),
}


def utc_now() -> _dt.datetime:
    return _dt.datetime.now(_dt.timezone.utc)


class Job(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    job_id: str
    podcast: str
    episode: str
    status: JobStatus = "NEW"
    created_at: _dt.datetime
    elapsed_seconds: Optional[int] = None
    return_code: Optional[int] = None
    output_location: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class JobLogEntry(BaseModel):
    model_config = ConfigDict(extra="forbid")

    job_id: str
    seq: int
    timestamp: _dt.datetime
    message: str


class JobResult(BaseModel):
    model_config = ConfigDict(extra="forbid")

    job_id: str
    status: JobStatus
    output: Optional[bytes] = None


def format_time_ago(created_at: Optional[_dt.datetime], now: Optional[_dt.datetime] = None) -> str:
    if created_at is None:
        return "unknown"
    now = now or utc_now()
    total = int((now - created_at).total_seconds())
    days, rem = divmod(max(0, total), 86400)
    hours, rem = divmod(rem, 3600)
    minutes = rem // 60
    if days > 0:
        return f"{days}d ago"
    if hours > 0:
        return f"{hours}h ago"
    if minutes > 0:
        return f"{minutes}m ago"
    return "just now"


def format_duration(job: Job) -> Optional[str]:
    elapsed = job.elapsed_seconds or 0
    if job.status != "DONE" or elapsed <= 0:
        return None
    hours, rem = divmod(elapsed, 3600)
    minutes, seconds = divmod(rem, 60)
    if hours > 0:
        return f"{hours}h {minutes}m {seconds}s"
    if minutes > 0:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


def format_log_line(entry: JobLogEntry) -> str:
    stamp = entry.timestamp.astimezone(_dt.timezone.utc).replace(microsecond=0)
    return f"{stamp.isoformat().replace('+00:00', 'Z')} {entry.message}"
