from __future__ import annotations

"""
Align ASR token timings to diarization speaker segments.

Design intent:
- Attribute every word to a speaker by midpoint containment, with a
  nearest-boundary fallback for words that land in diarization gaps.
- Smooth sub-threshold speaker flips so sentences are not fragmented by
  noisy diarization boundaries, while keeping per-word labels intact.
"""

from collections import Counter
from typing import Any, Sequence

from podscribe.asr.models import AlignedSegment, AlignedWord, TimedSpeakerSegment, TokenTiming

UNKNOWN_SPEAKER = "SPEAKER_UNKNOWN"
MIN_SEGMENT_DURATION_SEC = 2.0


def _midpoint(token: TokenTiming) -> float:
    return (token.start + token.end) / 2.0


def _boundary_distance(point: float, segment: TimedSpeakerSegment) -> float:
    return min(abs(point - segment.start), abs(point - segment.end))


def _sorted_segments(segments: Sequence[TimedSpeakerSegment]) -> list[TimedSpeakerSegment]:
    # sorted() is stable, so segments sharing a start keep their input order.
    return sorted(segments, key=lambda seg: seg.start)


def _assigned_speaker_with_reason(
    token: TokenTiming,
    segments: Sequence[TimedSpeakerSegment],
) -> tuple[str, str]:
    if not segments:
        return UNKNOWN_SPEAKER, "no_segments"

    mid = _midpoint(token)
    for segment in segments:
        if segment.start <= mid <= segment.end:
            return segment.speaker_id, "contained"

    closest = segments[0]
    best = _boundary_distance(mid, closest)
    for segment in segments[1:]:
        distance = _boundary_distance(mid, segment)
        # Strict comparison: ties go to the earlier segment.
        if distance < best:
            best = distance
            closest = segment
    return closest.speaker_id, "nearest_boundary"


def _group_words(
    words: Sequence[AlignedWord],
    *,
    min_segment_duration_sec: float,
) -> tuple[list[AlignedSegment], int]:
    segments: list[AlignedSegment] = []
    run_speaker: str | None = None
    run_words: list[AlignedWord] = []
    smoothed = 0

    for word in words:
        if run_words and run_speaker is not None and word.speaker != run_speaker:
            duration = run_words[-1].end - run_words[0].start
            if duration >= min_segment_duration_sec:
                segments.append(
                    AlignedSegment(
                        speaker=run_speaker,
                        start=run_words[0].start,
                        end=run_words[-1].end,
                        words=run_words,
                    )
                )
                run_words = []
                run_speaker = word.speaker
            else:
                smoothed += 1

        if run_speaker is None:
            run_speaker = word.speaker
        run_words.append(word)

    if run_words and run_speaker is not None:
        segments.append(
            AlignedSegment(
                speaker=run_speaker,
                start=run_words[0].start,
                end=run_words[-1].end,
                words=run_words,
            )
        )
    return segments, smoothed


def _assign_words(
    token_timings: Sequence[TokenTiming],
    speaker_segments: Sequence[TimedSpeakerSegment],
) -> tuple[list[AlignedWord], Counter[str]]:
    ordered = _sorted_segments(speaker_segments)
    reasons: Counter[str] = Counter()
    words: list[AlignedWord] = []
    for token in token_timings:
        speaker, reason = _assigned_speaker_with_reason(token, ordered)
        reasons[reason] += 1
        words.append(
            AlignedWord(
                word=token.token,
                start=token.start,
                end=token.end,
                score=token.confidence,
                speaker=speaker,
            )
        )
    return words, reasons


def align_words_to_speakers(
    token_timings: Sequence[TokenTiming] | None,
    speaker_segments: Sequence[TimedSpeakerSegment],
    *,
    min_segment_duration_sec: float = MIN_SEGMENT_DURATION_SEC,
) -> list[AlignedSegment]:
    if not token_timings:
        return []
    words, _ = _assign_words(token_timings, speaker_segments)
    segments, _ = _group_words(words, min_segment_duration_sec=min_segment_duration_sec)
    return segments


def align_words_to_speakers_with_debug(
    token_timings: Sequence[TokenTiming] | None,
    speaker_segments: Sequence[TimedSpeakerSegment],
    *,
    min_segment_duration_sec: float = MIN_SEGMENT_DURATION_SEC,
) -> tuple[list[AlignedSegment], dict[str, Any]]:
    if not token_timings:
        return [], {
            "tokens_in": 0,
            "segments_in": len(speaker_segments),
            "segments_out": 0,
            "reason_counts": {},
            "smoothed_flips": 0,
            "min_segment_duration_sec": float(min_segment_duration_sec),
        }
    words, reasons = _assign_words(token_timings, speaker_segments)
    segments, smoothed = _group_words(words, min_segment_duration_sec=min_segment_duration_sec)
    debug = {
        "tokens_in": len(token_timings),
        "segments_in": len(speaker_segments),
        "segments_out": len(segments),
        "reason_counts": dict(reasons),
        "smoothed_flips": int(smoothed),
        "min_segment_duration_sec": float(min_segment_duration_sec),
    }
    return segments, debug
