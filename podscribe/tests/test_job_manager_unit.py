import json
import threading
from pathlib import Path
from typing import Optional, Union

import numpy as np
import pytest

from podscribe.internal_core.artifact_store import LocalArtifactStore
from podscribe.internal_core.capabilities.base import AsrCapability, AudioConverter
from podscribe.internal_core.capabilities.mock import (
    MockAsrCapability,
    MockAudioConverter,
    MockDiarizationCapability,
)
from podscribe.internal_core.config import load_config
from podscribe.internal_core.errors import (
    NotFoundError,
    OutputMissingError,
    ProcessingError,
    StorageError,
    ValidationError,
)
from podscribe.internal_core.job_store import InMemoryJobStore, SQLiteJobStore
from podscribe.jobs.manager import JobLifecycleManager, build_job_manager
from podscribe.jobs.pipeline import TranscriptionPipeline


class _BlockingConverter(MockAudioConverter):
    """Holds the worker inside audio loading until released."""

    def __init__(self) -> None:
        super().__init__(samples=np.zeros(16000 * 3, dtype=np.float32))
        self.started = threading.Event()
        self.release = threading.Event()

    def resample(self, path: Union[str, Path]) -> np.ndarray:
        self.started.set()
        self.release.wait(5)
        return np.zeros(16000 * 3, dtype=np.float32)


class _FinishesDuringScanStore(InMemoryJobStore):
    """Completes every running job right after it is listed."""

    def list_jobs(self, status=None, limit=None):
        jobs = super().list_jobs(status=status, limit=limit)
        if status == "RUNNING":
            for job in jobs:
                self.transition_job(job.job_id, "DONE", return_code=0, output_location="/done.json")
        return jobs


class _FlakyStore(InMemoryJobStore):
    """Rejects the DONE write, then fails the next read once."""

    def __init__(self) -> None:
        super().__init__()
        self.read_failures = 0

    def transition_job(self, job_id, status, **fields):
        if status == "DONE":
            self.read_failures = 1
            raise StorageError("database is locked")
        return super().transition_job(job_id, status, **fields)

    def get_job(self, job_id):
        if self.read_failures:
            self.read_failures -= 1
            raise StorageError("database is locked")
        return super().get_job(job_id)


def _manager(
    tmp_path: Path,
    *,
    converter: Optional[AudioConverter] = None,
    asr: Optional[AsrCapability] = None,
    max_upload_bytes: int = 1024 * 1024,
    store: Optional[InMemoryJobStore] = None,
) -> tuple[JobLifecycleManager, InMemoryJobStore, LocalArtifactStore]:
    store = store or InMemoryJobStore()
    artifacts = LocalArtifactStore(tmp_path / "data")
    pipeline = TranscriptionPipeline(
        store,
        artifacts,
        converter or MockAudioConverter(),
        asr or MockAsrCapability(),
        MockDiarizationCapability(),
    )
    manager = JobLifecycleManager(store, artifacts, pipeline, max_upload_bytes=max_upload_bytes)
    return manager, store, artifacts


def test_submit_runs_job_to_done(tmp_path) -> None:
    manager, _, artifacts = _manager(tmp_path)

    job = manager.submit("pod", "1", b"\x01" * 32000, filename="ep1.wav")
    assert job.status == "NEW"
    assert manager.join(job.job_id, timeout=10) is True

    done = manager.get_status(job.job_id)
    assert done.status == "DONE"
    assert done.return_code == 0
    assert done.output_location is not None
    assert Path(done.output_location).name == "pod_1_transcription.json"
    assert not (artifacts.job_dir(job.job_id) / "upload.wav").exists()

    logs = [entry.message for entry in manager.get_logs(job.job_id)]
    assert logs[0] == "Job created for pod episode 1"
    assert logs[-1] == f"Processing complete. Output: {done.output_location}"


def test_result_is_served_once(tmp_path) -> None:
    manager, _, artifacts = _manager(tmp_path)
    job = manager.submit("pod", "1", b"\x01" * 32000)
    manager.join(job.job_id, timeout=10)

    result = manager.get_result(job.job_id)

    assert result.status == "DONE"
    payload = json.loads(result.output)
    assert payload["segments"]
    assert not Path(manager.get_status(job.job_id).output_location).exists()
    assert not (artifacts.root / job.job_id).exists()
    with pytest.raises(OutputMissingError) as excinfo:
        manager.get_result(job.job_id)
    assert excinfo.value.message == "Output file missing"
    assert isinstance(excinfo.value, ProcessingError)


@pytest.mark.parametrize(
    ("podcast", "episode", "payload", "message"),
    [
        ("", "1", b"x", "Missing podcast name"),
        ("pod", "  ", b"x", "Missing episode number"),
        ("pod", "1", b"", "No file uploaded"),
        ("pod", "1", None, "No file uploaded"),
    ],
)
def test_submit_validation_errors(tmp_path, podcast, episode, payload, message) -> None:
    manager, store, _ = _manager(tmp_path)

    with pytest.raises(ValidationError) as excinfo:
        manager.submit(podcast, episode, payload)

    assert excinfo.value.message == message
    assert store.list_jobs() == []


def test_submit_rejects_oversized_upload(tmp_path) -> None:
    manager, store, _ = _manager(tmp_path, max_upload_bytes=4)

    with pytest.raises(ValidationError) as excinfo:
        manager.submit("pod", "1", b"12345")

    assert excinfo.value.code == "PAYLOAD_TOO_LARGE"
    assert store.list_jobs() == []


def test_failed_job_reports_transcription_failed(tmp_path) -> None:
    manager, _, artifacts = _manager(tmp_path, asr=MockAsrCapability(tokens=[]))
    job = manager.submit("pod", "1", b"\x01" * 1600)
    manager.join(job.job_id, timeout=10)

    failed = manager.get_status(job.job_id)
    assert failed.status == "FAILED"
    assert failed.return_code == 1
    assert failed.output_location is None
    assert not (artifacts.root / job.job_id).exists()
    with pytest.raises(ProcessingError) as excinfo:
        manager.get_result(job.job_id)
    assert excinfo.value.message == "Transcription failed"
    assert manager.get_logs(job.job_id)[-1].message.startswith("ERROR:")


def test_unknown_job_raises_not_found(tmp_path) -> None:
    manager, _, _ = _manager(tmp_path)

    with pytest.raises(NotFoundError):
        manager.get_status("nope")
    with pytest.raises(NotFoundError):
        manager.get_result("nope")
    with pytest.raises(NotFoundError):
        manager.get_logs("nope")


def test_running_job_is_pending_and_cleanup_removes_it(tmp_path) -> None:
    converter = _BlockingConverter()
    manager, store, artifacts = _manager(tmp_path, converter=converter)

    idle = store.create_job("pod", "idle")
    finished = store.create_job("pod", "finished")
    store.transition_job(finished.job_id, "RUNNING")
    store.transition_job(finished.job_id, "DONE", return_code=0, output_location="/gone.json")
    broken = store.create_job("pod", "broken")
    store.transition_job(broken.job_id, "RUNNING")
    store.transition_job(broken.job_id, "FAILED", return_code=1)

    job = manager.submit("pod", "1", b"\x01" * 64)
    try:
        assert converter.started.wait(5)
        pending = manager.get_result(job.job_id)
        assert pending.status == "RUNNING"
        assert pending.output is None

        assert manager.cleanup_stuck() == 1
    finally:
        converter.release.set()
    assert manager.join(job.job_id, timeout=10) is True

    with pytest.raises(NotFoundError):
        manager.get_status(job.job_id)
    assert not (artifacts.root / job.job_id).exists()
    assert {j.job_id for j in store.list_jobs()} == {idle.job_id, finished.job_id, broken.job_id}
    assert manager.cleanup_stuck() == 0


def test_cleanup_keeps_job_that_finishes_during_scan(tmp_path) -> None:
    manager, store, artifacts = _manager(tmp_path, store=_FinishesDuringScanStore())
    job = store.create_job("pod", "1")
    store.transition_job(job.job_id, "RUNNING")
    job_dir = artifacts.job_dir(job.job_id)

    assert manager.cleanup_stuck() == 0

    assert manager.get_status(job.job_id).status == "DONE"
    assert job_dir.exists()


def test_failure_is_recorded_after_transient_storage_errors(monkeypatch, tmp_path) -> None:
    manager, _, artifacts = _manager(tmp_path, store=_FlakyStore())
    errors = []
    monkeypatch.setattr(threading, "excepthook", errors.append)

    job = manager.submit("pod", "1", b"\x01" * 32000)
    assert manager.join(job.job_id, timeout=10) is True

    assert errors == []
    failed = manager.get_status(job.job_id)
    assert failed.status == "FAILED"
    assert failed.return_code == 1
    assert manager.get_logs(job.job_id)[-1].message == "ERROR: database is locked"
    assert not (artifacts.root / job.job_id).exists()


def test_list_recent_is_newest_first(tmp_path) -> None:
    manager, _, _ = _manager(tmp_path)
    ids = []
    for episode in ("1", "2", "3"):
        job = manager.submit("pod", episode, b"\x01" * 64)
        manager.join(job.job_id, timeout=10)
        ids.append(job.job_id)

    recent = manager.list_recent(limit=2)

    assert [job.job_id for job in recent] == [ids[2], ids[1]]
    assert len(manager.list_recent()) == 3


def test_build_job_manager_from_environment(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("PODSCRIBE_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("PODSCRIBE_JOB_STORE", "sqlite")
    monkeypatch.setenv("PODSCRIBE_DB_PATH", str(tmp_path / "jobs.db"))
    monkeypatch.setenv("PODSCRIBE_ASR_PROVIDER", "mock")
    monkeypatch.setenv("PODSCRIBE_DIARIZER", "mock")
    monkeypatch.setenv("PODSCRIBE_FALLBACK_DIARIZER", "mock")

    manager = build_job_manager(load_config())
    job = manager.submit("pod", "1", b"\x01" * 32000)
    manager.join(job.job_id, timeout=10)

    assert isinstance(manager.store, SQLiteJobStore)
    assert manager.get_status(job.job_id).status == "DONE"
    assert (tmp_path / "jobs.db").exists()


def test_build_job_manager_rejects_unknown_provider(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("PODSCRIBE_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("PODSCRIBE_JOB_STORE", "memory")
    monkeypatch.setenv("PODSCRIBE_ASR_PROVIDER", "carrier-pigeon")

    with pytest.raises(ValueError):
        build_job_manager(load_config())
