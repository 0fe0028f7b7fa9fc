from __future__ import annotations

from typing import Optional


class PodscribeError(RuntimeError):
    code = "PODSCRIBE_ERROR"

    def __init__(self, message: str, *, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class ValidationError(PodscribeError):
    """Submission input the caller can correct (missing keys, empty payload)."""

    code = "VALIDATION_ERROR"


class NotFoundError(PodscribeError):
    code = "JOB_NOT_FOUND"


class JobStateError(PodscribeError):
    """Raised on a status change the job lifecycle does not allow."""

    code = "JOB_STATE_INVALID"


class StorageError(PodscribeError):
    code = "STORAGE_ERROR"


class ProcessingError(PodscribeError):
    """Surfaced when a caller fetches the result of a job that did not succeed."""

    code = "JOB_FAILED"


class OutputMissingError(ProcessingError):
    code = "JOB_OUTPUT_MISSING"


class PipelineStageError(PodscribeError):
    stage = "pipeline"
    code = "PIPELINE_FAILED"


class AudioLoadError(PipelineStageError):
    stage = "audio_load"
    code = "AUDIO_LOAD_FAILED"


class TranscriptionError(PipelineStageError):
    stage = "transcription"
    code = "TRANSCRIPTION_FAILED"


class DiarizationError(PipelineStageError):
    stage = "diarization"
    code = "DIARIZATION_FAILED"


class FallbackInitError(DiarizationError):
    code = "FALLBACK_INIT_FAILED"


class FallbackRunError(DiarizationError):
    code = "FALLBACK_RUN_FAILED"


class SerializationError(PipelineStageError):
    stage = "serialization"
    code = "SERIALIZATION_FAILED"
