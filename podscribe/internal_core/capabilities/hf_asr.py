from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Optional

import numpy as np

from podscribe.asr.models import AsrResult, TokenTiming

from .base import AsrCapability, CapabilityError


@dataclass
class _HFAsrRuntime:
    torch: object
    pipe: Any
    device: str


class HFWhisperAsrCapability(AsrCapability):
    """Word-timestamped transcription through a transformers ASR pipeline."""

    def __init__(
        self,
        model_ref: str,
        device: Optional[str] = None,
        sample_rate: int = 16000,
        *,
        chunk_length_sec: int = 30,
        language: Optional[str] = None,
    ):
        self._model_ref = model_ref
        self._device_override = device
        self._sr = sample_rate
        self._chunk_length_sec = chunk_length_sec
        self._language = language
        self._rt: Optional[_HFAsrRuntime] = None
        self._load_lock = threading.Lock()

    def name(self) -> str:
        return "hf_whisper"

    def _pick_device(self, torch_mod) -> str:
        if self._device_override:
            return self._device_override
        if getattr(torch_mod.cuda, "is_available", lambda: False)():
            return "cuda"
        backends = getattr(torch_mod, "backends", None)
        mps = getattr(backends, "mps", None) if backends else None
        if mps is not None and getattr(mps, "is_available", lambda: False)():
            return "mps"
        return "cpu"

    def initialize(self) -> None:
        self._ensure_loaded()

    def _ensure_loaded(self) -> _HFAsrRuntime:
        with self._load_lock:
            if self._rt is not None:
                return self._rt

            try:
                import torch  # type: ignore
                from transformers import pipeline  # type: ignore
            except ImportError as e:
                raise CapabilityError(
                    "HF_ASR_NOT_CONFIGURED",
                    f"HF ASR requires torch+transformers installed: {e}",
                    self.name(),
                ) from e

            if not self._model_ref:
                raise CapabilityError(
                    "HF_ASR_NOT_CONFIGURED",
                    "ASR model is not configured (set PODSCRIBE_ASR_MODEL).",
                    self.name(),
                )

            device = self._pick_device(torch)
            try:
                pipe = pipeline(
                    "automatic-speech-recognition",
                    model=self._model_ref,
                    device=device,
                    chunk_length_s=self._chunk_length_sec,
                )
            except Exception as e:
                raise CapabilityError(
                    "HF_ASR_LOAD_FAILED",
                    f"Failed to load ASR pipeline '{self._model_ref}': {e}",
                    self.name(),
                ) from e

            self._rt = _HFAsrRuntime(torch=torch, pipe=pipe, device=device)
            return self._rt

    def transcribe(self, samples: np.ndarray) -> AsrResult:
        rt = self._ensure_loaded()
        audio = np.asarray(samples, dtype=np.float32)
        duration = float(audio.shape[0]) / float(self._sr) if self._sr else 0.0
        generate_kwargs = {"language": self._language} if self._language else None
        try:
            output = rt.pipe(
                {"raw": audio, "sampling_rate": self._sr},
                return_timestamps="word",
                generate_kwargs=generate_kwargs,
            )
        except Exception as e:
            raise CapabilityError("HF_ASR_INFER_FAILED", str(e), self.name()) from e

        tokens = _chunks_to_tokens(output.get("chunks") or [], duration=duration)
        return AsrResult(
            text=str(output.get("text") or "").strip(),
            token_timings=tokens,
            # The pipeline exposes no per-word probabilities.
            confidence=1.0 if tokens else 0.0,
        )


def _chunks_to_tokens(chunks: list[dict[str, Any]], *, duration: float) -> list[TokenTiming]:
    tokens: list[TokenTiming] = []
    for chunk in chunks:
        text = str(chunk.get("text") or "")
        if not text.strip():
            continue
        start, end = chunk.get("timestamp") or (None, None)
        if start is None:
            start = tokens[-1].end if tokens else 0.0
        if end is None:
            end = max(float(start), duration)
        start = max(0.0, float(start))
        end = max(start, float(end))
        tokens.append(TokenTiming(token=text, start=start, end=end, confidence=1.0))
    return tokens
