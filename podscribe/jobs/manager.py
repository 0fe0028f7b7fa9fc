from __future__ import annotations

"""
Job lifecycle manager.

Design intent:
- Accept a submission, persist it, and hand it to one detached worker thread
  so the caller never waits on transcription.
- Keep every state change behind the job store's transition rules; polling
  only ever reads persisted state.
- Serve a finished transcript at most once and then discard it.
"""

import logging
import threading
import time
import uuid
from pathlib import Path
from typing import Dict, List, Optional

from podscribe.asr.diarization_adapter import EnergyClusterDiarizer
from podscribe.asr.fallback import FallbackDiarizationTrigger
from podscribe.asr.formatting import WhisperXFormatter
from podscribe.internal_core.artifact_store import LocalArtifactStore
from podscribe.internal_core.audio_utils import FfmpegAudioConverter
from podscribe.internal_core.capabilities.base import (
    AsrCapability,
    AudioConverter,
    DiarizationCapability,
    FallbackDiarizationCapability,
)
from podscribe.internal_core.capabilities.hf_asr import HFWhisperAsrCapability
from podscribe.internal_core.capabilities.mock import (
    MockAsrCapability,
    MockAudioConverter,
    MockDiarizationCapability,
    MockFallbackDiarizationCapability,
)
from podscribe.internal_core.capabilities.pyannote_fallback import PyannoteFallbackDiarizer
from podscribe.internal_core.config import AppConfig
from podscribe.internal_core.contracts import Job, JobLogEntry, JobResult
from podscribe.internal_core.errors import (
    NotFoundError,
    OutputMissingError,
    PodscribeError,
    ProcessingError,
    ValidationError,
)
from podscribe.internal_core.job_store import InMemoryJobStore, JobStore, SQLiteJobStore
from podscribe.jobs.pipeline import TranscriptionPipeline

logger = logging.getLogger(__name__)

DEFAULT_MAX_UPLOAD_BYTES = 500 * 1024 * 1024
DEFAULT_RECENT_LIMIT = 20
MARK_FAILED_ATTEMPTS = 3


class JobLifecycleManager:
    def __init__(
        self,
        store: JobStore,
        artifacts: LocalArtifactStore,
        pipeline: TranscriptionPipeline,
        *,
        max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES,
        recent_limit: int = DEFAULT_RECENT_LIMIT,
    ):
        self._store = store
        self._artifacts = artifacts
        self._pipeline = pipeline
        self._max_upload_bytes = int(max_upload_bytes)
        self._recent_limit = int(recent_limit)
        self._threads: Dict[str, threading.Thread] = {}
        self._threads_lock = threading.Lock()
        self._result_lock = threading.Lock()

    @property
    def store(self) -> JobStore:
        return self._store

    @property
    def max_upload_bytes(self) -> int:
        return self._max_upload_bytes

    def _log(self, job_id: str, message: str) -> None:
        logger.info("[Job %s] %s", job_id, message)
        try:
            self._store.append_log(job_id, message)
        except Exception as exc:
            logger.warning("[Job %s] Failed to log: %s", job_id, exc)

    def submit(
        self,
        podcast: str,
        episode: str,
        audio_bytes: Optional[bytes],
        *,
        filename: Optional[str] = None,
    ) -> Job:
        podcast = str(podcast or "").strip()
        episode = str(episode or "").strip()
        if not podcast:
            raise ValidationError("Missing podcast name")
        if not episode:
            raise ValidationError("Missing episode number")
        if not audio_bytes:
            raise ValidationError("No file uploaded")
        if len(audio_bytes) > self._max_upload_bytes:
            raise ValidationError(
                f"Upload exceeds {self._max_upload_bytes // (1024 * 1024)}MB limit",
                code="PAYLOAD_TOO_LARGE",
            )

        job_id = uuid.uuid4().hex
        upload_path = self._artifacts.save_upload(job_id, audio_bytes, filename)
        try:
            job = self._store.create_job(podcast, episode, job_id=job_id)
        except Exception:
            self._artifacts.remove_job_dir(job_id)
            raise
        self._log(job_id, f"Job created for {podcast} episode {episode}")

        worker = threading.Thread(
            target=self._run_job,
            args=(job_id, upload_path, podcast, episode),
            name=f"podscribe-job-{job_id[:8]}",
            daemon=True,
        )
        with self._threads_lock:
            self._threads[job_id] = worker
        worker.start()
        return job

    def get_status(self, job_id: str) -> Job:
        job = self._store.get_job(job_id)
        if job is None:
            raise NotFoundError(f"Job not found: {job_id}")
        return job

    def get_logs(self, job_id: str) -> List[JobLogEntry]:
        self.get_status(job_id)
        return self._store.list_logs(job_id)

    def list_recent(self, limit: Optional[int] = None) -> List[Job]:
        return self._store.list_jobs(limit=self._recent_limit if limit is None else limit)

    def get_result(self, job_id: str) -> JobResult:
        job = self.get_status(job_id)
        if job.status in ("NEW", "RUNNING"):
            return JobResult(job_id=job_id, status=job.status)
        if job.status == "FAILED":
            raise ProcessingError("Transcription failed")

        # Read-then-delete must not interleave between concurrent fetches.
        with self._result_lock:
            location = job.output_location or ""
            try:
                data = self._artifacts.read(location)
            except (OSError, ValueError) as e:
                raise OutputMissingError("Output file missing") from e
            self._artifacts.delete(location)
            self._artifacts.remove_job_dir(job_id)
        return JobResult(job_id=job_id, status="DONE", output=data)

    def cleanup_stuck(self) -> int:
        removed = 0
        for job in self._store.list_jobs(status="RUNNING"):
            # Skips jobs that finished between the scan and the delete.
            if self._store.delete_job_if_status(job.job_id, "RUNNING"):
                self._artifacts.remove_job_dir(job.job_id)
                removed += 1
        if removed:
            logger.info("Cleanup removed %d running job(s)", removed)
        return removed

    def join(self, job_id: str, timeout: Optional[float] = None) -> bool:
        """Wait for a job's worker; True once it is no longer running."""
        with self._threads_lock:
            worker = self._threads.get(job_id)
        if worker is None:
            return True
        worker.join(timeout)
        return not worker.is_alive()

    def _run_job(self, job_id: str, upload_path: Path, podcast: str, episode: str) -> None:
        started = time.monotonic()
        try:
            self._store.transition_job(job_id, "RUNNING")
            location = self._pipeline.run(job_id, upload_path, podcast, episode)
            elapsed = int(time.monotonic() - started)
            try:
                self._store.transition_job(
                    job_id,
                    "DONE",
                    elapsed_seconds=elapsed,
                    return_code=0,
                    output_location=location,
                )
            except NotFoundError:
                # Deleted by cleanup while running; drop the orphaned transcript.
                logger.info("[Job %s] Job removed before completion, discarding output", job_id)
                self._artifacts.remove_job_dir(job_id)
                return
            self._log(job_id, f"Processing complete. Output: {location}")
        except Exception as exc:
            logger.warning("[Job %s] Processing failed: %s", job_id, exc)
            self._mark_failed(job_id, started, exc)
        finally:
            upload_path.unlink(missing_ok=True)
            with self._threads_lock:
                self._threads.pop(job_id, None)

    def _mark_failed(self, job_id: str, started: float, exc: Exception) -> None:
        elapsed = int(time.monotonic() - started)
        for attempt in range(1, MARK_FAILED_ATTEMPTS + 1):
            try:
                job = self._store.get_job(job_id)
                if job is None:
                    raise NotFoundError(f"Job not found: {job_id}")
                if job.status == "RUNNING":
                    self._store.transition_job(job_id, "FAILED", elapsed_seconds=elapsed, return_code=1)
                break
            except NotFoundError:
                logger.info("[Job %s] Job removed before failure could be recorded", job_id)
                self._artifacts.remove_job_dir(job_id)
                return
            except PodscribeError as state_exc:
                logger.warning(
                    "[Job %s] Could not mark job failed (attempt %d/%d): %s",
                    job_id,
                    attempt,
                    MARK_FAILED_ATTEMPTS,
                    state_exc,
                )
        else:
            logger.error("[Job %s] Job left RUNNING; cleanup will remove it", job_id)
        self._log(job_id, f"ERROR: {exc}")
        self._artifacts.remove_job_dir(job_id)


def _build_job_store(cfg: AppConfig) -> JobStore:
    if cfg.PODSCRIBE_JOB_STORE == "sqlite":
        return SQLiteJobStore(cfg.db_path())
    if cfg.PODSCRIBE_JOB_STORE == "memory":
        return InMemoryJobStore()
    raise ValueError(f"Unsupported job store: {cfg.PODSCRIBE_JOB_STORE}")


def _build_capabilities(cfg: AppConfig) -> tuple[AudioConverter, AsrCapability, DiarizationCapability]:
    sample_rate = cfg.PODSCRIBE_SAMPLE_RATE
    if cfg.PODSCRIBE_ASR_PROVIDER == "mock":
        converter: AudioConverter = MockAudioConverter(sample_rate=sample_rate)
        asr: AsrCapability = MockAsrCapability(sample_rate=sample_rate)
    elif cfg.PODSCRIBE_ASR_PROVIDER == "hf_whisper":
        converter = FfmpegAudioConverter(
            sample_rate,
            tmp_dir=cfg.data_dir_path() / "_convert",
            max_bytes=cfg.PODSCRIBE_MAX_UPLOAD_BYTES,
        )
        asr = HFWhisperAsrCapability(
            cfg.PODSCRIBE_ASR_MODEL,
            device=cfg.PODSCRIBE_ASR_DEVICE or None,
            sample_rate=sample_rate,
        )
    else:
        raise ValueError(f"Unsupported ASR provider: {cfg.PODSCRIBE_ASR_PROVIDER}")

    if cfg.PODSCRIBE_DIARIZER == "mock":
        diarizer: DiarizationCapability = MockDiarizationCapability(sample_rate=sample_rate)
    elif cfg.PODSCRIBE_DIARIZER == "energy_cluster":
        diarizer = EnergyClusterDiarizer(
            sample_rate,
            max_speakers=cfg.PODSCRIBE_DIAR_MAX_SPEAKERS,
            cluster_similarity=cfg.PODSCRIBE_DIAR_CLUSTER_SIMILARITY,
        )
    else:
        raise ValueError(f"Unsupported diarizer: {cfg.PODSCRIBE_DIARIZER}")
    return converter, asr, diarizer


def _build_fallback(cfg: AppConfig) -> Optional[FallbackDiarizationCapability]:
    kind = cfg.PODSCRIBE_FALLBACK_DIARIZER
    if kind in ("", "none"):
        return None
    if kind == "mock":
        return MockFallbackDiarizationCapability()
    if kind == "pyannote":
        return PyannoteFallbackDiarizer(
            cfg.PODSCRIBE_FALLBACK_MODEL,
            auth_token=cfg.PODSCRIBE_HF_TOKEN,
            device=cfg.PODSCRIBE_ASR_DEVICE or None,
            sample_rate=cfg.PODSCRIBE_SAMPLE_RATE,
        )
    raise ValueError(f"Unsupported fallback diarizer: {kind}")


def build_job_manager(cfg: AppConfig) -> JobLifecycleManager:
    store = _build_job_store(cfg)
    artifacts = LocalArtifactStore(cfg.data_dir_path())
    converter, asr, diarizer = _build_capabilities(cfg)
    pipeline = TranscriptionPipeline(
        store,
        artifacts,
        converter,
        asr,
        diarizer,
        FallbackDiarizationTrigger(_build_fallback(cfg)),
        WhisperXFormatter(),
        min_segment_duration_sec=cfg.PODSCRIBE_MIN_SEGMENT_SEC,
    )
    logger.info(
        "Job manager ready: store=%s asr=%s diarizer=%s fallback=%s",
        cfg.PODSCRIBE_JOB_STORE,
        asr.name(),
        diarizer.name(),
        pipeline.fallback.name,
    )
    return JobLifecycleManager(
        store,
        artifacts,
        pipeline,
        max_upload_bytes=cfg.PODSCRIBE_MAX_UPLOAD_BYTES,
        recent_limit=cfg.PODSCRIBE_RECENT_JOBS_LIMIT,
    )
