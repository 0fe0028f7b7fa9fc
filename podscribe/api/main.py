from __future__ import annotations

"""
HTTP API surface for the Podscribe job service.

Design intent:
- Keep routes thin: parse the request, call the job manager, map errors.
- Return 202 while a job is pending and stream the transcript once it is done.
"""

import argparse
import logging
import threading
from typing import NoReturn, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from podscribe.internal_core.build_info import BuildInfo, get_build_info
from podscribe.internal_core.config import configure_logging, load_config
from podscribe.internal_core.contracts import (
    Job,
    JobStatus,
    format_duration,
    format_log_line,
    format_time_ago,
    utc_now,
)
from podscribe.internal_core.errors import (
    NotFoundError,
    PodscribeError,
    ProcessingError,
    ValidationError,
)
from podscribe.jobs.manager import JobLifecycleManager, build_job_manager


class JobSubmitResponse(BaseModel):
    job_id: str
    status: JobStatus


class JobSummary(BaseModel):
    job_id: str
    podcast: str
    episode: str
    status: JobStatus
    created_at: str
    time_ago: str
    duration: Optional[str] = None
    return_code: Optional[int] = None


class JobListResponse(BaseModel):
    jobs: list[JobSummary] = Field(default_factory=list)
    build: BuildInfo


class JobDetailResponse(BaseModel):
    job: JobSummary
    logs: list[str] = Field(default_factory=list)


class CleanupResponse(BaseModel):
    removed: int


app = FastAPI(title="podscribe transcription service")
logger = logging.getLogger(__name__)
_MANAGER_LOCK = threading.Lock()


def _get_job_manager() -> JobLifecycleManager:
    existing = getattr(app.state, "job_manager", None)
    if isinstance(existing, JobLifecycleManager):
        return existing
    with _MANAGER_LOCK:
        existing = getattr(app.state, "job_manager", None)
        if isinstance(existing, JobLifecycleManager):
            return existing
        created = build_job_manager(load_config())
        setattr(app.state, "job_manager", created)
        return created


def _raise_http(exc: PodscribeError) -> NoReturn:
    if isinstance(exc, ValidationError):
        status_code = 413 if exc.code == "PAYLOAD_TOO_LARGE" else 400
        raise HTTPException(status_code=status_code, detail=exc.message) from exc
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=404, detail="Job not found") from exc
    if isinstance(exc, ProcessingError):
        raise HTTPException(status_code=500, detail=exc.message) from exc
    raise HTTPException(status_code=500, detail=str(exc)) from exc


def _summarize(job: Job) -> JobSummary:
    return JobSummary(
        job_id=job.job_id,
        podcast=job.podcast,
        episode=job.episode,
        status=job.status,
        created_at=job.created_at.isoformat(),
        time_ago=format_time_ago(job.created_at, utc_now()),
        duration=format_duration(job),
        return_code=job.return_code,
    )


@app.get("/healthz")
async def healthz() -> dict[str, str]:
    build = get_build_info()
    return {"status": "ok", "version": build.version, "build_timestamp": build.build_timestamp}


@app.post("/submit/{podcast}/{episode}", status_code=202, response_model=JobSubmitResponse)
async def submit_job(
    podcast: str,
    episode: str,
    request: Request,
    filename: Optional[str] = Query(default=None, max_length=255),
) -> JobSubmitResponse:
    manager = _get_job_manager()
    declared = request.headers.get("content-length", "")
    if declared.isdigit() and int(declared) > manager.max_upload_bytes:
        raise HTTPException(status_code=413, detail="Upload exceeds size limit")

    payload = await request.body()
    try:
        job = manager.submit(podcast, episode, payload, filename=filename)
    except PodscribeError as exc:
        _raise_http(exc)
    return JobSubmitResponse(job_id=job.job_id, status=job.status)


@app.get("/result/{job_id}", response_model=None)
def get_result(job_id: str) -> Response:
    try:
        result = _get_job_manager().get_result(job_id)
    except PodscribeError as exc:
        _raise_http(exc)
    if result.output is None:
        return JSONResponse(status_code=202, content={"job_id": job_id, "status": result.status})
    return Response(content=result.output, media_type="application/json")


@app.get("/jobs", response_model=JobListResponse)
def list_jobs(limit: Optional[int] = Query(default=None, ge=1, le=500)) -> JobListResponse:
    jobs = _get_job_manager().list_recent(limit)
    return JobListResponse(jobs=[_summarize(job) for job in jobs], build=get_build_info())


@app.get("/jobs/{job_id}", response_model=JobDetailResponse)
def get_job_detail(job_id: str) -> JobDetailResponse:
    manager = _get_job_manager()
    try:
        job = manager.get_status(job_id)
        logs = manager.get_logs(job_id)
    except PodscribeError as exc:
        _raise_http(exc)
    return JobDetailResponse(job=_summarize(job), logs=[format_log_line(entry) for entry in logs])


@app.post("/cleanup", response_model=CleanupResponse)
def cleanup_jobs() -> CleanupResponse:
    removed = _get_job_manager().cleanup_stuck()
    return CleanupResponse(removed=removed)


def run(argv: Optional[list[str]] = None) -> None:
    import uvicorn

    parser = argparse.ArgumentParser(description="Run the podscribe transcription service.")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=5051)
    args = parser.parse_args(argv)

    cfg = load_config()
    configure_logging(cfg.PODSCRIBE_LOG_LEVEL)
    logger.info("Starting podscribe on %s:%s", args.host, args.port)
    uvicorn.run(app, host=args.host, port=args.port, log_level="info")


if __name__ == "__main__":
    run()
