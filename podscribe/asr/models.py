from __future__ import annotations

"""
Typed ASR and diarization contracts shared by the transcription pipeline.

Design intent:
- Enforce timestamp-valid windows where model outputs enter the pipeline.
- Keep per-word speaker attribution explicit for downstream consumers.
"""

from pydantic import BaseModel, Field, model_validator


class TokenTiming(BaseModel):
    token: str
    start: float = Field(ge=0.0)
    end: float = Field(ge=0.0)
    confidence: float = 1.0

    @model_validator(mode="after")
    def _validate_window(self) -> "TokenTiming":
        if self.end < self.start:
            raise ValueError("TokenTiming.end must be >= TokenTiming.start")
        return self


class TimedSpeakerSegment(BaseModel):
    speaker_id: str
    start: float = Field(ge=0.0)
    end: float = Field(ge=0.0)
    quality_score: float = 1.0

    @model_validator(mode="after")
    def _validate_window(self) -> "TimedSpeakerSegment":
        if self.end < self.start:
            raise ValueError("TimedSpeakerSegment.end must be >= TimedSpeakerSegment.start")
        return self


class FallbackSpeakerSpan(BaseModel):
    speaker_index: int = Field(ge=0)
    start: float = Field(ge=0.0)
    end: float = Field(ge=0.0)


class AsrResult(BaseModel):
    text: str = ""
    token_timings: list[TokenTiming] | None = None
    confidence: float = 0.0


class DiarizationResult(BaseModel):
    segments: list[TimedSpeakerSegment] = Field(default_factory=list)

    def speakers(self) -> set[str]:
        return {segment.speaker_id for segment in self.segments}


class AlignedWord(BaseModel):
    word: str
    start: float
    end: float
    score: float
    speaker: str


class AlignedSegment(BaseModel):
    speaker: str
    start: float
    end: float
    words: list[AlignedWord] = Field(default_factory=list)

    @property
    def text(self) -> str:
        # Tokens carry their own leading spaces; no separator is inserted.
        return "".join(word.word for word in self.words)
