from .artifact_store import LocalArtifactStore
from .config import AppConfig, configure_logging, load_config
from .job_store import InMemoryJobStore, JobStore, SQLiteJobStore

__all__ = [
    "AppConfig",
    "configure_logging",
    "load_config",
    "LocalArtifactStore",
    "InMemoryJobStore",
    "JobStore",
    "SQLiteJobStore",
]
