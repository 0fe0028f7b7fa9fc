from podscribe.asr.alignment import (
    UNKNOWN_SPEAKER,
    align_words_to_speakers,
    align_words_to_speakers_with_debug,
)
from podscribe.asr.models import TimedSpeakerSegment, TokenTiming


def _tok(token: str, start: float, end: float, confidence: float = 0.9) -> TokenTiming:
    return TokenTiming(token=token, start=start, end=end, confidence=confidence)


def _seg(speaker: str, start: float, end: float) -> TimedSpeakerSegment:
    return TimedSpeakerSegment(speaker_id=speaker, start=start, end=end)


def _a_words(start: float, end: float) -> list[TokenTiming]:
    out = []
    cursor = start
    while cursor < end:
        stop = min(end, cursor + 1.0)
        out.append(_tok(" a", cursor, stop))
        cursor = stop
    return out


def test_hi_there_single_segment() -> None:
    tokens = [_tok("Hi", 0.0, 0.5), _tok("there", 0.5, 1.0)]
    out = align_words_to_speakers(tokens, [_seg("A", 0.0, 1.0)])

    assert len(out) == 1
    assert out[0].speaker == "A"
    assert out[0].start == 0.0
    assert out[0].end == 1.0
    assert [w.speaker for w in out[0].words] == ["A", "A"]
    assert [w.word for w in out[0].words] == ["Hi", "there"]


def test_empty_tokens_return_empty_list() -> None:
    assert align_words_to_speakers([], [_seg("A", 0.0, 5.0)]) == []
    assert align_words_to_speakers([], []) == []
    assert align_words_to_speakers(None, [_seg("A", 0.0, 5.0)]) == []


def test_gap_tie_goes_to_earlier_segment() -> None:
    token = _tok(" gap", 1.0, 2.0)  # midpoint 1.5, 0.5 from both A.end and B.start

    assert align_words_to_speakers([token], [_seg("A", 0.0, 1.0), _seg("B", 2.0, 3.0)])[0].speaker == "A"
    out = align_words_to_speakers([token], [_seg("B", 2.0, 3.0), _seg("A", 0.0, 1.0)])
    assert out[0].words[0].speaker == "A"


def test_gap_assigns_nearest_boundary() -> None:
    token = _tok(" late", 1.6, 2.0)  # midpoint 1.8
    out = align_words_to_speakers([token], [_seg("A", 0.0, 1.0), _seg("B", 2.0, 3.0)])
    assert out[0].speaker == "B"


def test_containment_bounds_are_inclusive_and_first_match_wins() -> None:
    token = _tok(" edge", 0.5, 1.5)  # midpoint exactly 1.0
    segments = [_seg("A", 0.0, 1.0), _seg("B", 1.0, 2.0)]
    assert align_words_to_speakers([token], segments)[0].speaker == "A"


def test_no_segments_uses_unknown_sentinel() -> None:
    out = align_words_to_speakers([_tok(" x", 0.0, 0.4), _tok(" y", 0.4, 0.8)], [])
    assert len(out) == 1
    assert out[0].speaker == UNKNOWN_SPEAKER
    assert all(w.speaker == UNKNOWN_SPEAKER for w in out[0].words)


def test_short_flip_inside_single_speaker_run_is_smoothed() -> None:
    tokens = [_tok(" so", 0.0, 0.5), _tok(" yeah", 0.5, 1.5)] + _a_words(1.5, 10.0)
    segments = [_seg("A", 0.0, 0.5), _seg("B", 0.5, 1.5), _seg("A", 1.5, 10.0)]

    out = align_words_to_speakers(tokens, segments)

    assert len(out) == 1
    assert out[0].speaker == "A"
    assert out[0].start == 0.0
    assert out[0].end == 10.0
    # The flipped word keeps its own label inside the smoothed run.
    assert out[0].words[1].speaker == "B"


def test_long_flip_produces_new_segment() -> None:
    tokens = _a_words(0.0, 4.0) + [_tok(" long", 4.0, 6.5)] + _a_words(6.5, 10.0)
    segments = [_seg("A", 0.0, 4.0), _seg("B", 4.0, 6.5), _seg("A", 6.5, 10.0)]

    out = align_words_to_speakers(tokens, segments)

    assert [s.speaker for s in out] == ["A", "B", "A"]
    assert (out[1].start, out[1].end) == (4.0, 6.5)
    assert out[2].end == 10.0


def test_short_flip_after_long_run_opens_run_that_absorbs_following_words() -> None:
    # The threshold applies to the run being closed, not to the new speaker's span.
    tokens = _a_words(0.0, 3.0) + [_tok(" hm", 3.0, 3.5)] + _a_words(3.5, 5.0)
    segments = [_seg("A", 0.0, 3.0), _seg("B", 3.0, 3.5), _seg("A", 3.5, 5.0)]

    out = align_words_to_speakers(tokens, segments)

    assert [s.speaker for s in out] == ["A", "B"]
    assert out[1].start == 3.0
    assert out[1].end == 5.0
    assert [w.speaker for w in out[1].words] == ["B", "A", "A"]


def test_final_short_run_is_always_emitted() -> None:
    tokens = _a_words(0.0, 3.0) + [_tok(" bye", 3.0, 3.2)]
    segments = [_seg("A", 0.0, 3.0), _seg("B", 3.0, 3.2)]

    out = align_words_to_speakers(tokens, segments)

    assert [s.speaker for s in out] == ["A", "B"]
    assert out[-1].text == " bye"


def test_alignment_is_deterministic() -> None:
    tokens = _a_words(0.0, 4.0) + [_tok(" b", 4.0, 7.0)] + _a_words(7.0, 9.0)
    segments = [_seg("B", 4.0, 7.0), _seg("A", 0.0, 4.0), _seg("A", 7.0, 9.0)]

    first = [s.model_dump() for s in align_words_to_speakers(tokens, segments)]
    second = [s.model_dump() for s in align_words_to_speakers(tokens, segments)]
    assert first == second


def test_custom_threshold_changes_smoothing() -> None:
    tokens = [_tok(" a", 0.0, 1.0), _tok(" b", 1.0, 2.0)]
    segments = [_seg("A", 0.0, 1.0), _seg("B", 1.0, 2.0)]

    assert len(align_words_to_speakers(tokens, segments)) == 1
    assert len(align_words_to_speakers(tokens, segments, min_segment_duration_sec=0.5)) == 2


def test_debug_reports_reasons_and_smoothed_flips() -> None:
    tokens = [_tok(" so", 0.0, 0.5), _tok(" yeah", 0.5, 1.5), _tok(" gap", 10.5, 11.0)]
    segments = [_seg("A", 0.0, 0.5), _seg("B", 0.5, 1.5), _seg("A", 1.5, 10.0)]

    out, debug = align_words_to_speakers_with_debug(tokens, segments)

    assert len(out) == 1
    assert debug["tokens_in"] == 3
    assert debug["segments_out"] == 1
    assert debug["reason_counts"] == {"contained": 2, "nearest_boundary": 1}
    assert debug["smoothed_flips"] == 1
