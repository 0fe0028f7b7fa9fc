from __future__ import annotations

from .base import (
    AsrCapability,
    AudioConverter,
    CapabilityError,
    DiarizationCapability,
    FallbackDiarizationCapability,
    InitOnce,
    OutputFormatter,
)
from .hf_asr import HFWhisperAsrCapability
from .mock import (
    MockAsrCapability,
    MockAudioConverter,
    MockDiarizationCapability,
    MockFallbackDiarizationCapability,
)
from .pyannote_fallback import PyannoteFallbackDiarizer

__all__ = [
    "AsrCapability",
    "AudioConverter",
    "CapabilityError",
    "DiarizationCapability",
    "FallbackDiarizationCapability",
    "InitOnce",
    "OutputFormatter",
    "HFWhisperAsrCapability",
    "MockAsrCapability",
    "MockAudioConverter",
    "MockDiarizationCapability",
    "MockFallbackDiarizationCapability",
    "PyannoteFallbackDiarizer",
]
