from __future__ import annotations

import os
from collections.abc import Mapping
from typing import Any, Optional

import numpy as np

from podscribe.asr.models import FallbackSpeakerSpan

from .base import CapabilityError, FallbackDiarizationCapability


class PyannoteFallbackDiarizer(FallbackDiarizationCapability):
    """End-to-end pyannote.audio pipeline used when clustering collapses.

    Speaker labels are mapped to dense indices in order of first appearance;
    ``reset`` clears that mapping so each run starts from index 0.
    """

    def __init__(
        self,
        model_ref: str,
        *,
        auth_token: str = "",
        device: Optional[str] = None,
        sample_rate: int = 16000,
    ):
        self._model_ref = model_ref
        self._auth_token = auth_token
        self._device_override = device
        self._sr = sample_rate
        self._pipeline: Any = None
        self._torch: Any = None
        self._label_index: dict[str, int] = {}

    def name(self) -> str:
        return "pyannote"

    def initialize(self) -> None:
        if self._pipeline is not None:
            return
        try:
            import torch  # type: ignore
            from pyannote.audio import Pipeline  # type: ignore
        except ImportError as e:
            raise CapabilityError(
                "PYANNOTE_NOT_INSTALLED",
                f"pyannote.audio is not installed: {e}",
                self.name(),
            ) from e

        token = self._auth_token or os.getenv("HF_TOKEN", "") or None
        try:
            try:
                pipeline = Pipeline.from_pretrained(self._model_ref, token=token)
            except TypeError:
                # pyannote.audio < 4 still takes the old keyword.
                pipeline = Pipeline.from_pretrained(self._model_ref, use_auth_token=token)
        except Exception as e:
            raise CapabilityError(
                "PYANNOTE_LOAD_FAILED",
                f"Failed to load pyannote pipeline '{self._model_ref}': {e}",
                self.name(),
            ) from e
        if pipeline is None:
            raise CapabilityError(
                "PYANNOTE_LOAD_FAILED",
                f"pyannote returned no pipeline for '{self._model_ref}' (check the hub token).",
                self.name(),
            )

        device = self._device_override
        if not device:
            device = "cuda" if torch.cuda.is_available() else "cpu"
        if device != "cpu":
            pipeline.to(torch.device(device))
        self._torch = torch
        self._pipeline = pipeline

    def reset(self) -> None:
        self._label_index = {}

    def process(self, samples: np.ndarray) -> list[FallbackSpeakerSpan]:
        if self._pipeline is None:
            raise CapabilityError("PYANNOTE_NOT_INITIALIZED", "initialize() must run first", self.name())
        waveform = self._torch.from_numpy(np.asarray(samples, dtype=np.float32)).unsqueeze(0)
        try:
            output = self._pipeline({"waveform": waveform, "sample_rate": self._sr})
        except Exception as e:
            raise CapabilityError("PYANNOTE_RUN_FAILED", str(e), self.name()) from e

        annotation = _unwrap_annotation(output)
        spans: list[FallbackSpeakerSpan] = []
        for segment, _track, label in annotation.itertracks(yield_label=True):
            key = str(label)
            if key not in self._label_index:
                self._label_index[key] = len(self._label_index)
            spans.append(
                FallbackSpeakerSpan(
                    speaker_index=self._label_index[key],
                    start=max(0.0, float(segment.start)),
                    end=max(0.0, float(segment.end)),
                )
            )
        spans.sort(key=lambda item: (item.start, item.end))
        return spans


def _unwrap_annotation(output: Any) -> Any:
    if hasattr(output, "itertracks"):
        return output
    candidate = getattr(output, "speaker_diarization", None)
    if hasattr(candidate, "itertracks"):
        return candidate
    if isinstance(output, Mapping):
        mapped = output.get("speaker_diarization")
        if hasattr(mapped, "itertracks"):
            return mapped
    raise CapabilityError(
        "PYANNOTE_RUN_FAILED",
        f"Unexpected diarization output type: {type(output)!r}",
        "pyannote",
    )
