from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def _project_root() -> Path:
    # podscribe/internal_core/config.py -> podscribe -> repo root
    return Path(__file__).resolve().parents[2]


def _getenv_str(name: str, default: str) -> str:
    value = os.getenv(name)
    return default if value is None else value


def _getenv_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return int(value)


def _getenv_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return float(value)


@dataclass(frozen=True)
class AppConfig:
    PODSCRIBE_DATA_DIR: str
    PODSCRIBE_JOB_STORE: str
    PODSCRIBE_DB_PATH: str
    PODSCRIBE_LOG_LEVEL: str
    PODSCRIBE_MAX_UPLOAD_BYTES: int
    PODSCRIBE_SAMPLE_RATE: int
    PODSCRIBE_ASR_PROVIDER: str
    PODSCRIBE_ASR_MODEL: str
    PODSCRIBE_ASR_DEVICE: str
    PODSCRIBE_DIARIZER: str
    PODSCRIBE_DIAR_MAX_SPEAKERS: int
    PODSCRIBE_DIAR_CLUSTER_SIMILARITY: float
    PODSCRIBE_FALLBACK_DIARIZER: str
    PODSCRIBE_FALLBACK_MODEL: str
    PODSCRIBE_HF_TOKEN: str
    PODSCRIBE_MIN_SEGMENT_SEC: float
    PODSCRIBE_RECENT_JOBS_LIMIT: int

    def data_dir_path(self, repo_root: Path | None = None) -> Path:
        return ((repo_root or _project_root()) / self.PODSCRIBE_DATA_DIR).resolve()

    def db_path(self, repo_root: Path | None = None) -> Path:
        return ((repo_root or _project_root()) / self.PODSCRIBE_DB_PATH).resolve()


def load_config() -> AppConfig:
    return AppConfig(
        PODSCRIBE_DATA_DIR=_getenv_str("PODSCRIBE_DATA_DIR", "./tmp/podscribe"),
        PODSCRIBE_JOB_STORE=_getenv_str("PODSCRIBE_JOB_STORE", "memory").strip().lower(),
        PODSCRIBE_DB_PATH=_getenv_str("PODSCRIBE_DB_PATH", "./podscribe.db"),
        PODSCRIBE_LOG_LEVEL=_getenv_str("PODSCRIBE_LOG_LEVEL", "INFO"),
        PODSCRIBE_MAX_UPLOAD_BYTES=_getenv_int("PODSCRIBE_MAX_UPLOAD_BYTES", 500 * 1024 * 1024),
        PODSCRIBE_SAMPLE_RATE=_getenv_int("PODSCRIBE_SAMPLE_RATE", 16000),
        PODSCRIBE_ASR_PROVIDER=_getenv_str("PODSCRIBE_ASR_PROVIDER", "hf_whisper").strip().lower(),
        PODSCRIBE_ASR_MODEL=_getenv_str("PODSCRIBE_ASR_MODEL", "openai/whisper-small"),
        PODSCRIBE_ASR_DEVICE=_getenv_str("PODSCRIBE_ASR_DEVICE", ""),
        PODSCRIBE_DIARIZER=_getenv_str("PODSCRIBE_DIARIZER", "energy_cluster").strip().lower(),
        PODSCRIBE_DIAR_MAX_SPEAKERS=_getenv_int("PODSCRIBE_DIAR_MAX_SPEAKERS", 4),
        PODSCRIBE_DIAR_CLUSTER_SIMILARITY=_getenv_float("PODSCRIBE_DIAR_CLUSTER_SIMILARITY", 0.82),
        PODSCRIBE_FALLBACK_DIARIZER=_getenv_str("PODSCRIBE_FALLBACK_DIARIZER", "pyannote").strip().lower(),
        PODSCRIBE_FALLBACK_MODEL=_getenv_str(
            "PODSCRIBE_FALLBACK_MODEL", "pyannote/speaker-diarization-3.1"
        ),
        PODSCRIBE_HF_TOKEN=_getenv_str("PODSCRIBE_HF_TOKEN", ""),
        PODSCRIBE_MIN_SEGMENT_SEC=_getenv_float("PODSCRIBE_MIN_SEGMENT_SEC", 2.0),
        PODSCRIBE_RECENT_JOBS_LIMIT=_getenv_int("PODSCRIBE_RECENT_JOBS_LIMIT", 20),
    )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
    )
