from __future__ import annotations

import shutil
from pathlib import Path
from typing import Optional, Union

DEFAULT_UPLOAD_SUFFIX = ".mp3"


def _sanitize_name_part(value: str, fallback: str) -> str:
    raw = str(value or "").strip()
    safe = "".join(ch if (ch.isalnum() or ch in {"_", "-"}) else "_" for ch in raw)
    safe = safe.strip("_")
    return (safe or fallback)[:64]


def _sanitize_suffix(filename: Optional[str]) -> str:
    suffix = Path(str(filename or "")).suffix.lower()
    if len(suffix) < 2 or not suffix[1:].isalnum():
        return DEFAULT_UPLOAD_SUFFIX
    return suffix[:16]


def output_filename(podcast: str, episode: str) -> str:
    return f"{_sanitize_name_part(podcast, 'podcast')}_{_sanitize_name_part(episode, 'episode')}_transcription.json"


class LocalArtifactStore:
    """Job-scoped upload and transcript files under one root directory."""

    def __init__(self, root: Union[str, Path]):
        self._root = Path(root).expanduser().resolve()
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def job_dir(self, job_id: str) -> Path:
        path = self._root / _sanitize_name_part(job_id, "job")
        path.mkdir(parents=True, exist_ok=True)
        return path

    def save_upload(self, job_id: str, data: bytes, filename: Optional[str] = None) -> Path:
        path = self.job_dir(job_id) / f"upload{_sanitize_suffix(filename)}"
        path.write_bytes(data)
        return path

    def write_output(self, job_id: str, podcast: str, episode: str, data: bytes) -> str:
        path = self.job_dir(job_id) / output_filename(podcast, episode)
        tmp_path = path.with_suffix(".json.partial")
        tmp_path.write_bytes(data)
        tmp_path.replace(path)
        return str(path)

    def _resolve(self, location: Union[str, Path]) -> Path:
        path = Path(location).expanduser().resolve()
        if self._root not in path.parents:
            raise ValueError(f"Location is outside the artifact root: {location}")
        return path

    def read(self, location: Union[str, Path]) -> bytes:
        return self._resolve(location).read_bytes()

    def delete(self, location: Union[str, Path]) -> bool:
        path = self._resolve(location)
        if not path.exists():
            return False
        path.unlink()
        return True

    def remove_job_dir(self, job_id: str) -> None:
        path = self._root / _sanitize_name_part(job_id, "job")
        if path.is_dir():
            shutil.rmtree(path, ignore_errors=True)
