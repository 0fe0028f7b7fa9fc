from __future__ import annotations

"""
Local clustering diarizer over in-memory samples.

Design intent:
- Provide a dependency-light primary diarizer: energy VAD -> spectral
  embedding -> greedy cosine clustering -> speaker segments.
- Report collapse honestly: a single cluster yields a single speaker label,
  which is what triggers the fallback diarizer upstream.
"""

from dataclasses import dataclass
import threading
from typing import Any, Sequence

import numpy as np

from podscribe.asr.models import DiarizationResult, TimedSpeakerSegment
from podscribe.internal_core.capabilities.base import DiarizationCapability


@dataclass(frozen=True)
class _EmbeddedWindow:
    start: float
    end: float
    vector: np.ndarray


@dataclass(frozen=True)
class _LabelledWindow:
    start: float
    end: float
    cluster_id: int
    similarity: float


def _frame_signal(audio: np.ndarray, *, frame_len: int, hop_len: int) -> np.ndarray:
    if audio.size <= 0:
        return np.zeros((0, frame_len), dtype=np.float32)
    if audio.size < frame_len:
        padded = np.zeros((frame_len,), dtype=np.float32)
        padded[: audio.size] = audio
        return padded.reshape(1, frame_len)
    count = 1 + (audio.size - frame_len) // hop_len
    idx = np.arange(frame_len)[None, :] + hop_len * np.arange(count)[:, None]
    return audio[idx].astype(np.float32, copy=False)


def _fill_runs(mask: np.ndarray, value: bool, max_len: int, *, interior_only: bool) -> np.ndarray:
    out = mask.copy()
    idx = 0
    while idx < out.size:
        j = idx
        while j < out.size and out[j] == out[idx]:
            j += 1
        interior = idx > 0 and j < out.size
        if out[idx] == value and (j - idx) <= max_len and (interior or not interior_only):
            out[idx:j] = not value
        idx = j
    return out


def _cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    na = float(np.linalg.norm(a))
    nb = float(np.linalg.norm(b))
    if na <= 1e-8 or nb <= 1e-8:
        return 0.0
    return float(np.dot(a, b) / (na * nb))


class EnergyClusterDiarizer(DiarizationCapability):
    def __init__(
        self,
        sample_rate: int = 16000,
        *,
        max_speakers: int = 4,
        cluster_similarity: float = 0.82,
        frame_sec: float = 0.03,
        hop_sec: float = 0.01,
        min_speech_sec: float = 0.35,
        min_silence_sec: float = 0.20,
        window_sec: float = 1.6,
        window_overlap_sec: float = 0.3,
        turn_gap_sec: float = 0.35,
    ):
        self._sr = sample_rate
        self._max_speakers = max(1, int(max_speakers))
        self._threshold = float(cluster_similarity)
        self._frame_sec = frame_sec
        self._hop_sec = hop_sec
        self._min_speech_sec = min_speech_sec
        self._min_silence_sec = min_silence_sec
        self._window_sec = window_sec
        self._window_overlap_sec = window_overlap_sec
        self._turn_gap_sec = turn_gap_sec
        self._lock = threading.Lock()
        self._band_edges: np.ndarray | None = None
        self.last_debug: dict[str, Any] = {}

    def name(self) -> str:
        return "energy_cluster"

    def prepare(self) -> None:
        with self._lock:
            if self._band_edges is None:
                self._band_edges = np.linspace(0, 257, num=25).astype(int)

    def process(self, samples: np.ndarray) -> DiarizationResult:
        self.prepare()
        audio = np.asarray(samples, dtype=np.float32)
        speech, threshold = self._detect_speech(audio)
        windows = self._embed_windows(audio, speech)
        labelled, clusters = self._cluster(windows)
        segments = self._build_segments(labelled)
        self.last_debug = {
            "audio_duration_sec": round(float(audio.shape[0]) / float(self._sr), 3),
            "vad_threshold": round(threshold, 6),
            "speech_regions": len(speech),
            "windows": len(windows),
            "clusters": clusters,
            "segments": len(segments),
        }
        return DiarizationResult(segments=segments)

    def _detect_speech(self, audio: np.ndarray) -> tuple[list[tuple[float, float]], float]:
        frame_len = max(64, int(round(self._frame_sec * self._sr)))
        hop_len = max(32, int(round(self._hop_sec * self._sr)))
        frames = _frame_signal(audio, frame_len=frame_len, hop_len=hop_len)
        if frames.shape[0] == 0:
            return [], 0.0

        window = np.hanning(frame_len).astype(np.float32)
        energies = np.sqrt(np.maximum(1e-12, np.mean((frames * window) ** 2, axis=1)))
        p20 = float(np.percentile(energies, 20))
        p95 = float(np.percentile(energies, 95))
        # Capped at half the loud level so constant-level speech still registers.
        threshold = max(0.0018, min(p20 + max(0.0008, 0.20 * (p95 - p20)), 0.5 * p95))

        min_speech = max(1, int(round(self._min_speech_sec / self._hop_sec)))
        min_silence = max(1, int(round(self._min_silence_sec / self._hop_sec)))
        mask = _fill_runs(energies >= threshold, False, min_silence, interior_only=True)
        mask = _fill_runs(mask, True, min_speech - 1, interior_only=False)

        regions: list[tuple[float, float]] = []
        total_sec = float(audio.shape[0]) / float(self._sr)
        idx = 0
        while idx < mask.size:
            if not mask[idx]:
                idx += 1
                continue
            j = idx
            while j < mask.size and mask[j]:
                j += 1
            start = idx * self._hop_sec
            end = min(total_sec, j * self._hop_sec + self._frame_sec)
            if end - start >= self._min_speech_sec:
                regions.append((round(start, 3), round(end, 3)))
            idx = j
        return regions, threshold

    def _embedding(self, piece: np.ndarray) -> np.ndarray | None:
        if piece.size < int(0.25 * self._sr):
            return None
        frames = _frame_signal(piece, frame_len=400, hop_len=160)
        if frames.shape[0] == 0:
            return None
        spectrum = np.abs(np.fft.rfft(frames * np.hanning(400), n=512, axis=1)) ** 2
        log_power = np.log(np.maximum(1e-9, spectrum))
        edges = self._band_edges if self._band_edges is not None else np.linspace(0, 257, num=25).astype(int)
        bands = np.array(
            [float(np.mean(log_power[:, lo:hi])) for lo, hi in zip(edges[:-1], edges[1:]) if hi > lo],
            dtype=np.float32,
        )
        # Spectral shape only; loudness must not decide speaker identity.
        bands = bands - float(np.mean(bands))

        # Centroid as a fraction of Nyquist keeps it on the same scale as the bands.
        freqs = np.linspace(0.0, 1.0, num=spectrum.shape[1])
        power_sum = np.maximum(1e-9, spectrum.sum(axis=1))
        centroid = (spectrum * freqs[None, :]).sum(axis=1) / power_sum
        zcr = np.mean(np.abs(np.diff(np.sign(frames), axis=1)) > 0, axis=1)
        feature = np.array(
            [*bands, float(np.mean(centroid)), float(np.std(centroid)), float(np.mean(zcr)), float(np.std(zcr))],
            dtype=np.float32,
        )
        norm = float(np.linalg.norm(feature))
        if norm <= 1e-8:
            return None
        return feature / norm

    def _embed_windows(
        self,
        audio: np.ndarray,
        regions: Sequence[tuple[float, float]],
    ) -> list[_EmbeddedWindow]:
        step = max(0.2, self._window_sec - self._window_overlap_sec)
        windows: list[_EmbeddedWindow] = []
        for region_start, region_end in regions:
            cursor = float(region_start)
            while cursor < region_end:
                end = min(region_end, cursor + self._window_sec)
                if end - cursor < 0.25:
                    break
                lo = max(0, int(round(cursor * self._sr)))
                hi = min(audio.shape[0], int(round(end * self._sr)))
                vector = self._embedding(audio[lo:hi]) if hi > lo else None
                if vector is not None:
                    windows.append(_EmbeddedWindow(start=round(cursor, 3), end=round(end, 3), vector=vector))
                cursor += step
        return windows

    def _cluster(self, windows: Sequence[_EmbeddedWindow]) -> tuple[list[_LabelledWindow], int]:
        centroids: list[np.ndarray] = []
        counts: list[int] = []
        labelled: list[_LabelledWindow] = []
        for window in windows:
            sims = [_cosine_similarity(window.vector, centroid) for centroid in centroids]
            best_idx = int(np.argmax(sims)) if sims else -1
            best_sim = sims[best_idx] if sims else -1.0
            if best_idx == -1 or (best_sim < self._threshold and len(centroids) < self._max_speakers):
                centroids.append(window.vector.copy())
                counts.append(1)
                cluster_id, similarity = len(centroids) - 1, 1.0
            else:
                cluster_id, similarity = best_idx, max(0.0, best_sim)
                n = counts[cluster_id]
                centroids[cluster_id] = (centroids[cluster_id] * n + window.vector) / float(n + 1)
                counts[cluster_id] = n + 1
            labelled.append(
                _LabelledWindow(
                    start=window.start,
                    end=window.end,
                    cluster_id=cluster_id,
                    similarity=float(np.clip(similarity, 0.0, 1.0)),
                )
            )
        return labelled, len(centroids)

    def _build_segments(self, labelled: Sequence[_LabelledWindow]) -> list[TimedSpeakerSegment]:
        merged: list[dict[str, Any]] = []
        for item in sorted(labelled, key=lambda w: (w.start, w.end)):
            prev = merged[-1] if merged else None
            if prev and prev["cluster_id"] == item.cluster_id and item.start - prev["end"] <= self._turn_gap_sec:
                prev["end"] = max(prev["end"], item.end)
                prev["sims"].append(item.similarity)
                continue
            merged.append(
                {"start": item.start, "end": item.end, "cluster_id": item.cluster_id, "sims": [item.similarity]}
            )

        # Label clusters by first appearance so ids are stable across runs.
        order: dict[int, int] = {}
        for item in merged:
            order.setdefault(int(item["cluster_id"]), len(order))
        return [
            TimedSpeakerSegment(
                speaker_id=f"S{order[int(item['cluster_id'])] + 1}",
                start=float(item["start"]),
                end=float(item["end"]),
                quality_score=float(np.clip(np.mean(item["sims"]), 0.0, 1.0)),
            )
            for item in merged
        ]
