from __future__ import annotations

from pathlib import Path
from typing import Optional, Sequence, Union

import numpy as np

from podscribe.asr.models import (
    AsrResult,
    DiarizationResult,
    FallbackSpeakerSpan,
    TimedSpeakerSegment,
    TokenTiming,
)

from .base import (
    AsrCapability,
    AudioConverter,
    CapabilityError,
    DiarizationCapability,
    FallbackDiarizationCapability,
)


class MockAudioConverter(AudioConverter):
    """Returns a silent buffer whose length is the file size in samples."""

    def __init__(self, sample_rate: int = 16000, samples: Optional[np.ndarray] = None) -> None:
        self._sr = sample_rate
        self._samples = samples

    @property
    def sample_rate(self) -> int:
        return self._sr

    def resample(self, path: Union[str, Path]) -> np.ndarray:
        file_path = Path(path)
        if not file_path.exists():
            raise CapabilityError("MOCK_AUDIO_MISSING", f"Audio file not found: {file_path}", "mock")
        if self._samples is not None:
            return np.asarray(self._samples, dtype=np.float32)
        return np.zeros((file_path.stat().st_size,), dtype=np.float32)


class MockAsrCapability(AsrCapability):
    def __init__(self, tokens: Optional[Sequence[TokenTiming]] = None, sample_rate: int = 16000) -> None:
        self._tokens = list(tokens) if tokens is not None else None
        self._sr = sample_rate
        self.initialize_calls = 0
        self.transcribe_calls = 0

    def name(self) -> str:
        return "mock"

    def initialize(self) -> None:
        self.initialize_calls += 1

    def transcribe(self, samples: np.ndarray) -> AsrResult:
        self.transcribe_calls += 1
        tokens = self._tokens
        if tokens is None:
            # One synthetic token per second of audio.
            seconds = max(1, int(len(samples) // self._sr))
            tokens = [
                TokenTiming(token=f" word{idx + 1}", start=float(idx), end=float(idx) + 0.9, confidence=0.9)
                for idx in range(seconds)
            ]
        text = "".join(item.token for item in tokens).strip()
        confidence = float(np.mean([item.confidence for item in tokens])) if tokens else 0.0
        return AsrResult(text=text, token_timings=list(tokens), confidence=confidence)


class MockDiarizationCapability(DiarizationCapability):
    def __init__(
        self,
        segments: Optional[Sequence[TimedSpeakerSegment]] = None,
        *,
        turn_sec: float = 5.0,
        speakers: Sequence[str] = ("A", "B"),
        sample_rate: int = 16000,
    ) -> None:
        self._segments = list(segments) if segments is not None else None
        self._turn_sec = turn_sec
        self._speakers = list(speakers)
        self._sr = sample_rate
        self.prepare_calls = 0

    def name(self) -> str:
        return "mock"

    def prepare(self) -> None:
        self.prepare_calls += 1

    def process(self, samples: np.ndarray) -> DiarizationResult:
        if self._segments is not None:
            return DiarizationResult(segments=list(self._segments))
        duration = float(len(samples)) / float(self._sr)
        segments: list[TimedSpeakerSegment] = []
        cursor = 0.0
        idx = 0
        while cursor < duration and self._speakers:
            end = min(duration, cursor + self._turn_sec)
            segments.append(
                TimedSpeakerSegment(
                    speaker_id=self._speakers[idx % len(self._speakers)],
                    start=cursor,
                    end=end,
                )
            )
            cursor = end
            idx += 1
        return DiarizationResult(segments=segments)


class MockFallbackDiarizationCapability(FallbackDiarizationCapability):
    def __init__(self, spans: Optional[Sequence[FallbackSpeakerSpan]] = None) -> None:
        self._spans = list(spans) if spans is not None else [
            FallbackSpeakerSpan(speaker_index=0, start=0.0, end=1.0),
            FallbackSpeakerSpan(speaker_index=1, start=1.0, end=2.0),
        ]
        self.initialize_calls = 0
        self.reset_calls = 0
        self.process_calls = 0

    def name(self) -> str:
        return "mock_fallback"

    def initialize(self) -> None:
        self.initialize_calls += 1

    def reset(self) -> None:
        self.reset_calls += 1

    def process(self, samples: np.ndarray) -> list[FallbackSpeakerSpan]:
        _ = samples
        self.process_calls += 1
        return list(self._spans)
