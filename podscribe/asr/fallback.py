from __future__ import annotations

"""
Fallback diarization trigger.

Design intent:
- Decide when the offline diarizer has collapsed to a single speaker.
- Own the secondary diarizer's one-time initialization and per-run reset,
  and relabel its speaker indices as stable synthetic labels.
"""

import logging
import threading
from typing import Callable, Optional

import numpy as np

from podscribe.asr.models import DiarizationResult, TimedSpeakerSegment
from podscribe.internal_core.capabilities.base import FallbackDiarizationCapability
from podscribe.internal_core.errors import FallbackInitError, FallbackRunError

logger = logging.getLogger(__name__)

LogFn = Callable[[str], None]


def fallback_label(speaker_index: int) -> str:
    return f"S{speaker_index + 1}"


class FallbackDiarizationTrigger:
    def __init__(self, capability: Optional[FallbackDiarizationCapability]):
        self._capability = capability
        self._lock = threading.Lock()
        self._initialized = False

    @property
    def configured(self) -> bool:
        return self._capability is not None

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def name(self) -> str:
        return self._capability.name() if self._capability is not None else "none"

    @staticmethod
    def should_fallback(result: DiarizationResult) -> bool:
        return len(result.speakers()) <= 1

    def run_fallback(self, samples: np.ndarray, *, log: Optional[LogFn] = None) -> DiarizationResult:
        if self._capability is None:
            raise FallbackInitError("No fallback diarizer configured")
        emit = log or (lambda message: logger.info("%s", message))

        # One run at a time: reset() mutates capability state shared across jobs.
        with self._lock:
            if not self._initialized:
                emit(f"Initializing {self.name} models (first-time download)...")
                try:
                    self._capability.initialize()
                except Exception as e:
                    raise FallbackInitError(f"{self.name} diarizer failed to initialize: {e}") from e
                self._initialized = True
                emit(f"{self.name} models initialized")

            emit(f"Running {self.name} diarization...")
            try:
                self._capability.reset()
                spans = self._capability.process(samples)
            except Exception as e:
                raise FallbackRunError(f"{self.name} diarization failed: {e}") from e

        active = {span.speaker_index for span in spans}
        emit(f"{self.name} raw: {len(spans)} segments, {len(active)} active speakers")

        segments = [
            TimedSpeakerSegment(
                speaker_id=fallback_label(span.speaker_index),
                start=span.start,
                end=span.end,
                quality_score=1.0,
            )
            for span in spans
        ]
        return DiarizationResult(segments=segments)
