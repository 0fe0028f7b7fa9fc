from __future__ import annotations

"""
Version and build stamp for the running service.

Design intent:
- Report which podscribe build and which model libraries a deployment runs,
  without importing the heavy model packages.
"""

import datetime as _dt
from functools import lru_cache
from importlib import metadata
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

import podscribe

NOT_INSTALLED = "not installed"
MODEL_PACKAGES = ("torch", "transformers", "pyannote.audio")


class BuildInfo(BaseModel):
    model_config = ConfigDict(extra="forbid")

    version: str
    build_timestamp: str
    libraries: dict[str, str] = Field(default_factory=dict)


def _package_version(name: str) -> str:
    try:
        return metadata.version(name)
    except metadata.PackageNotFoundError:
        return NOT_INSTALLED


def _build_timestamp(source_dir: Path) -> str:
    # Newest source file stands in for the build time of an unpacked install.
    mtimes = [path.stat().st_mtime for path in source_dir.rglob("*.py")]
    if not mtimes:
        return "unknown"
    stamp = _dt.datetime.fromtimestamp(max(mtimes), tz=_dt.timezone.utc)
    return stamp.strftime("%Y-%m-%d %H:%M UTC")


@lru_cache(maxsize=1)
def get_build_info() -> BuildInfo:
    version = _package_version("podscribe")
    if version == NOT_INSTALLED:
        version = podscribe.__version__
    return BuildInfo(
        version=version,
        build_timestamp=_build_timestamp(Path(podscribe.__file__).resolve().parent),
        libraries={name: _package_version(name) for name in MODEL_PACKAGES},
    )
