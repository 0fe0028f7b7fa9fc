from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Sequence, Union

import numpy as np

if TYPE_CHECKING:
    from podscribe.asr.models import (
        AlignedSegment,
        AsrResult,
        DiarizationResult,
        FallbackSpeakerSpan,
    )


class CapabilityError(RuntimeError):
    def __init__(self, code: str, message: str, provider_name: str):
        super().__init__(message)
        self.code = code
        self.message = message
        self.provider_name = provider_name


class InitOnce:
    """Run an initializer at most once; concurrent callers wait for the first.

    A failing initializer is not marked done, so the next caller retries.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._done = False

    @property
    def done(self) -> bool:
        return self._done

    def ensure(self, initializer: Callable[[], None]) -> bool:
        """Return True when this call ran the initializer."""
        if self._done:
            return False
        with self._lock:
            if self._done:
                return False
            initializer()
            self._done = True
            return True


class AudioConverter(ABC):
    @abstractmethod
    def resample(self, path: Union[str, Path]) -> np.ndarray: ...

    @property
    @abstractmethod
    def sample_rate(self) -> int: ...


class AsrCapability(ABC):
    @abstractmethod
    def initialize(self) -> None: ...

    @abstractmethod
    def transcribe(self, samples: np.ndarray) -> "AsrResult": ...

    @abstractmethod
    def name(self) -> str: ...


class DiarizationCapability(ABC):
    @abstractmethod
    def prepare(self) -> None: ...

    @abstractmethod
    def process(self, samples: np.ndarray) -> "DiarizationResult": ...

    @abstractmethod
    def name(self) -> str: ...


class FallbackDiarizationCapability(ABC):
    @abstractmethod
    def initialize(self) -> None: ...

    @abstractmethod
    def reset(self) -> None: ...

    @abstractmethod
    def process(self, samples: np.ndarray) -> list["FallbackSpeakerSpan"]: ...

    @abstractmethod
    def name(self) -> str: ...


class OutputFormatter(ABC):
    @abstractmethod
    def serialize(self, segments: Sequence["AlignedSegment"]) -> bytes: ...

    @abstractmethod
    def name(self) -> str: ...
