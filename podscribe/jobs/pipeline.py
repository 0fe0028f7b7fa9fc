from __future__ import annotations

"""
Per-job transcription pipeline.

Design intent:
- Run decode -> transcribe -> diarize (+fallback) -> align -> serialize in
  order, leaving one job log entry per milestone.
- Fail loudly: every stage error is logged with stage context and re-raised
  as a typed stage error for the job manager to record.
"""

import logging
import threading
from pathlib import Path
from typing import Any, NoReturn, Optional, Type, Union

import numpy as np

from podscribe.asr.alignment import MIN_SEGMENT_DURATION_SEC, align_words_to_speakers_with_debug
from podscribe.asr.fallback import FallbackDiarizationTrigger
from podscribe.asr.formatting import WhisperXFormatter
from podscribe.asr.models import AsrResult, DiarizationResult
from podscribe.internal_core.artifact_store import LocalArtifactStore
from podscribe.internal_core.capabilities.base import (
    AsrCapability,
    AudioConverter,
    DiarizationCapability,
    InitOnce,
    OutputFormatter,
)
from podscribe.internal_core.errors import (
    AudioLoadError,
    DiarizationError,
    PipelineStageError,
    SerializationError,
    TranscriptionError,
)
from podscribe.internal_core.job_store import JobStore

logger = logging.getLogger(__name__)


def _speaker_summary(result: DiarizationResult) -> str:
    speakers = sorted(result.speakers())
    return f"{len(result.segments)} segments, {len(speakers)} speakers ({', '.join(speakers)})"


def _log_stage_debug(tag: str, job_id: str, debug: Optional[dict[str, Any]]) -> None:
    if not debug or not logger.isEnabledFor(logging.DEBUG):
        return
    fields = " ".join(f"{key}={value}" for key, value in sorted(debug.items()))
    logger.debug("%s_debug job_id=%s %s", tag, job_id, fields)


class TranscriptionPipeline:
    def __init__(
        self,
        store: JobStore,
        artifacts: LocalArtifactStore,
        converter: AudioConverter,
        asr: AsrCapability,
        diarizer: DiarizationCapability,
        fallback: Optional[FallbackDiarizationTrigger] = None,
        formatter: Optional[OutputFormatter] = None,
        *,
        min_segment_duration_sec: float = MIN_SEGMENT_DURATION_SEC,
    ):
        self._store = store
        self._artifacts = artifacts
        self._converter = converter
        self._asr = asr
        self._diarizer = diarizer
        self._fallback = fallback or FallbackDiarizationTrigger(None)
        self._formatter = formatter or WhisperXFormatter()
        self._min_segment_duration_sec = float(min_segment_duration_sec)
        self._asr_init = InitOnce()
        self._diarizer_init = InitOnce()
        # Capabilities are not assumed to be reentrant.
        self._asr_lock = threading.Lock()
        self._diarizer_lock = threading.Lock()

    @property
    def fallback(self) -> FallbackDiarizationTrigger:
        return self._fallback

    def _log(self, job_id: str, message: str) -> None:
        logger.info("[Job %s] %s", job_id, message)
        try:
            self._store.append_log(job_id, message)
        except Exception as exc:
            # A lost log line must not fail the job.
            logger.warning("[Job %s] Failed to log: %s", job_id, exc)

    def _fail(
        self,
        job_id: str,
        context: str,
        exc: Exception,
        error_cls: Type[PipelineStageError],
    ) -> NoReturn:
        self._log(job_id, f"ERROR: {context}: {exc}")
        if isinstance(exc, error_cls):
            raise exc
        raise error_cls(f"{context}: {exc}") from exc

    def run(self, job_id: str, audio_path: Union[str, Path], podcast: str, episode: str) -> str:
        self._log(job_id, f"Starting audio processing for {podcast} episode {episode}")

        samples = self._load_audio(job_id, audio_path)
        self._initialize_models(job_id)
        asr_result = self._transcribe(job_id, samples)
        diarization = self._diarize(job_id, samples)

        self._log(job_id, "Aligning words with speakers")
        aligned, align_debug = align_words_to_speakers_with_debug(
            asr_result.token_timings or [],
            diarization.segments,
            min_segment_duration_sec=self._min_segment_duration_sec,
        )
        self._log(job_id, f"Alignment complete: {len(aligned)} segments")
        _log_stage_debug("alignment", job_id, align_debug)

        self._log(job_id, "Building WhisperX format output")
        try:
            payload = self._formatter.serialize(aligned)
            location = self._artifacts.write_output(job_id, podcast, episode, payload)
        except Exception as e:
            self._fail(job_id, "Failed to save output", e, SerializationError)
        self._log(job_id, f"Output saved to: {location}")
        self._log(job_id, "Processing complete!")
        return location

    def _load_audio(self, job_id: str, audio_path: Union[str, Path]) -> np.ndarray:
        self._log(job_id, f"Loading audio file: {audio_path}")
        try:
            samples = self._converter.resample(audio_path)
        except Exception as e:
            self._fail(job_id, "Failed to load audio", e, AudioLoadError)
        sample_rate = max(1, int(self._converter.sample_rate))
        self._log(job_id, f"Audio loaded: {len(samples)} samples ({len(samples) // sample_rate} seconds)")
        return samples

    def _initialize_models(self, job_id: str) -> None:
        self._log(job_id, "Initializing ASR models")
        try:
            self._asr_init.ensure(self._asr.initialize)
        except Exception as e:
            self._fail(job_id, "Failed to initialize ASR", e, TranscriptionError)
        self._log(job_id, "ASR models initialized")

        self._log(job_id, "Initializing diarization models")
        try:
            self._diarizer_init.ensure(self._diarizer.prepare)
        except Exception as e:
            self._fail(job_id, "Failed to initialize diarization", e, DiarizationError)
        self._log(job_id, "Diarization models initialized")

    def _transcribe(self, job_id: str, samples: np.ndarray) -> AsrResult:
        self._log(job_id, "Running speech-to-text transcription")
        try:
            with self._asr_lock:
                result = self._asr.transcribe(samples)
            if not result.token_timings:
                raise TranscriptionError("ASR returned no token timings")
        except Exception as e:
            self._fail(job_id, "Transcription failed", e, TranscriptionError)
        self._log(job_id, f"Transcription complete: {len(result.text)} characters")
        self._log(job_id, f"Confidence: {result.confidence}")
        return result

    def _diarize(self, job_id: str, samples: np.ndarray) -> DiarizationResult:
        self._log(job_id, "Running speaker diarization (offline)")
        try:
            with self._diarizer_lock:
                result = self._diarizer.process(samples)
                diarizer_debug = dict(getattr(self._diarizer, "last_debug", None) or {})
            self._log(job_id, f"Offline diarization: {_speaker_summary(result)}")
            _log_stage_debug("diarization", job_id, diarizer_debug)

            if self._fallback.should_fallback(result):
                count = len(result.speakers())
                if not self._fallback.configured:
                    self._log(
                        job_id,
                        f"WARNING: Offline diarizer found only {count} speaker(s), "
                        "no fallback diarizer configured, keeping offline result",
                    )
                    return result
                name = self._fallback.name
                self._log(
                    job_id,
                    f"WARNING: Offline diarizer found only {count} speaker(s), falling back to {name}",
                )
                result = self._fallback.run_fallback(samples, log=lambda message: self._log(job_id, message))
                self._log(job_id, f"{name} fallback: {_speaker_summary(result)}")
        except Exception as e:
            self._fail(job_id, "Diarization failed", e, DiarizationError)
        return result
