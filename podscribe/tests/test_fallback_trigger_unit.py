import threading
import time

import numpy as np
import pytest

from podscribe.asr.fallback import FallbackDiarizationTrigger
from podscribe.asr.models import DiarizationResult, FallbackSpeakerSpan, TimedSpeakerSegment
from podscribe.internal_core.capabilities.base import InitOnce
from podscribe.internal_core.capabilities.mock import MockFallbackDiarizationCapability
from podscribe.internal_core.errors import DiarizationError, FallbackInitError, FallbackRunError


def _result(*speakers: str) -> DiarizationResult:
    return DiarizationResult(
        segments=[
            TimedSpeakerSegment(speaker_id=spk, start=float(i), end=float(i) + 1.0)
            for i, spk in enumerate(speakers)
        ]
    )


class _FlakyInitFallback(MockFallbackDiarizationCapability):
    def initialize(self) -> None:
        self.initialize_calls += 1
        if self.initialize_calls == 1:
            raise RuntimeError("hub unreachable")


class _BrokenRunFallback(MockFallbackDiarizationCapability):
    def process(self, samples: np.ndarray) -> list[FallbackSpeakerSpan]:
        raise RuntimeError("bad tensor shape")


def test_should_fallback_on_single_speaker() -> None:
    assert FallbackDiarizationTrigger.should_fallback(_result("A", "A", "A")) is True
    assert FallbackDiarizationTrigger.should_fallback(_result()) is True


def test_should_not_fallback_on_two_speakers() -> None:
    assert FallbackDiarizationTrigger.should_fallback(_result("A", "B")) is False
    assert FallbackDiarizationTrigger.should_fallback(_result("A", "B", "C", "A")) is False


def test_run_fallback_labels_spans_by_speaker_index() -> None:
    capability = MockFallbackDiarizationCapability(
        spans=[
            FallbackSpeakerSpan(speaker_index=0, start=0.0, end=1.5),
            FallbackSpeakerSpan(speaker_index=2, start=1.5, end=3.0),
            FallbackSpeakerSpan(speaker_index=0, start=3.0, end=4.0),
        ]
    )
    trigger = FallbackDiarizationTrigger(capability)

    out = trigger.run_fallback(np.zeros(16000, dtype=np.float32))

    assert [s.speaker_id for s in out.segments] == ["S1", "S3", "S1"]
    assert all(s.quality_score == 1.0 for s in out.segments)
    assert (out.segments[1].start, out.segments[1].end) == (1.5, 3.0)


def test_initializes_once_and_resets_every_run() -> None:
    capability = MockFallbackDiarizationCapability()
    trigger = FallbackDiarizationTrigger(capability)
    samples = np.zeros(16000, dtype=np.float32)

    assert trigger.initialized is False
    trigger.run_fallback(samples)
    trigger.run_fallback(samples)
    trigger.run_fallback(samples)

    assert trigger.initialized is True
    assert capability.initialize_calls == 1
    assert capability.reset_calls == 3
    assert capability.process_calls == 3


def test_init_failure_raises_and_is_retried_next_call() -> None:
    capability = _FlakyInitFallback()
    trigger = FallbackDiarizationTrigger(capability)
    samples = np.zeros(16000, dtype=np.float32)

    with pytest.raises(FallbackInitError) as excinfo:
        trigger.run_fallback(samples)
    assert isinstance(excinfo.value, DiarizationError)
    assert "hub unreachable" in str(excinfo.value)
    assert trigger.initialized is False
    assert capability.process_calls == 0

    out = trigger.run_fallback(samples)
    assert trigger.initialized is True
    assert capability.initialize_calls == 2
    assert len(out.segments) == 2


def test_run_failure_raises_fallback_run_error() -> None:
    trigger = FallbackDiarizationTrigger(_BrokenRunFallback())

    with pytest.raises(FallbackRunError) as excinfo:
        trigger.run_fallback(np.zeros(160, dtype=np.float32))
    assert isinstance(excinfo.value, DiarizationError)
    assert trigger.initialized is True


def test_unconfigured_trigger_refuses_to_run() -> None:
    trigger = FallbackDiarizationTrigger(None)
    assert trigger.configured is False
    assert trigger.name == "none"
    with pytest.raises(FallbackInitError):
        trigger.run_fallback(np.zeros(160, dtype=np.float32))


def test_run_fallback_reports_progress_through_log_callback() -> None:
    trigger = FallbackDiarizationTrigger(MockFallbackDiarizationCapability())
    messages: list[str] = []

    trigger.run_fallback(np.zeros(160, dtype=np.float32), log=messages.append)
    trigger.run_fallback(np.zeros(160, dtype=np.float32), log=messages.append)

    assert messages[0] == "Initializing mock_fallback models (first-time download)..."
    assert messages[1] == "mock_fallback models initialized"
    assert messages[2] == "Running mock_fallback diarization..."
    assert messages[3] == "mock_fallback raw: 2 segments, 2 active speakers"
    # Second run skips initialization.
    assert messages[4:] == ["Running mock_fallback diarization...", "mock_fallback raw: 2 segments, 2 active speakers"]


def test_init_once_runs_initializer_once_under_contention() -> None:
    guard = InitOnce()
    calls: list[int] = []

    def slow_init() -> None:
        time.sleep(0.05)
        calls.append(1)

    workers = [threading.Thread(target=guard.ensure, args=(slow_init,)) for _ in range(8)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join(timeout=5)

    assert len(calls) == 1
    assert guard.done is True
