from __future__ import annotations

"""
Serialize aligned segments into WhisperX-compatible JSON.

Design intent:
- Match the WhisperX layout (`segments[].words[]`) so existing consumers work unchanged.
- Keep the encoding deterministic: sorted keys, stable float rendering.
"""

import json
from typing import Any, Sequence

from podscribe.asr.models import AlignedSegment
from podscribe.internal_core.capabilities.base import OutputFormatter
from podscribe.internal_core.errors import SerializationError


def _segment_text(segment: AlignedSegment) -> str:
    # WhisperX carries exactly one leading space before the trimmed text.
    return " " + segment.text.strip()


def build_whisperx_payload(segments: Sequence[AlignedSegment]) -> dict[str, Any]:
    return {
        "segments": [
            {
                "speaker": segment.speaker,
                "start": float(segment.start),
                "end": float(segment.end),
                "text": _segment_text(segment),
                "words": [
                    {
                        "word": word.word,
                        "start": float(word.start),
                        "end": float(word.end),
                        "score": float(word.score),
                        "speaker": word.speaker,
                    }
                    for word in segment.words
                ],
            }
            for segment in segments
        ]
    }


class WhisperXFormatter(OutputFormatter):
    def __init__(self, *, indent: int = 2):
        self._indent = indent

    def name(self) -> str:
        return "whisperx_json"

    def serialize(self, segments: Sequence[AlignedSegment]) -> bytes:
        try:
            payload = build_whisperx_payload(segments)
            return json.dumps(
                payload,
                indent=self._indent,
                sort_keys=True,
                ensure_ascii=False,
                allow_nan=False,
            ).encode("utf-8")
        except (TypeError, ValueError) as exc:
            raise SerializationError(f"Failed to encode WhisperX output: {exc}") from exc
