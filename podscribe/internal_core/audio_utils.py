from __future__ import annotations

import shutil
import subprocess
import tempfile
import uuid
import wave
from pathlib import Path
from typing import Optional, Tuple, Union

import numpy as np

from .capabilities.base import AudioConverter
from .errors import AudioLoadError


def _which(cmd: str) -> Optional[str]:
    return shutil.which(cmd)


def load_wav_info(path: Path) -> Tuple[float, int, int, int]:
    """Return ``(duration_sec, sample_rate, channels, sample_width_bytes)``."""
    with wave.open(str(path), "rb") as wf:
        frames = wf.getnframes()
        rate = wf.getframerate()
        channels = wf.getnchannels()
        width = wf.getsampwidth()
        duration = frames / float(rate) if rate else 0.0
        return duration, rate, channels, width


def enforce_max_size_bytes(path: Path, max_bytes: int) -> None:
    size = path.stat().st_size
    if size > max_bytes:
        raise AudioLoadError(
            f"Audio file too large ({size / (1024 * 1024):.1f}MB), "
            f"max allowed is {max_bytes / (1024 * 1024):.1f}MB"
        )


def normalize_to_wav_mono(
    input_path: Path,
    tmp_dir: Path,
    prefix: str,
    *,
    sample_rate: int = 16000,
    max_bytes: int = 500 * 1024 * 1024,
) -> Path:
    """
    Normalize any supported audio to mono 16-bit WAV at ``sample_rate``.
    Prefers ffmpeg when present; falls back to `miniaudio` decode/convert.
    """
    if not input_path.exists():
        raise AudioLoadError(f"Audio file not found: {input_path}")

    enforce_max_size_bytes(input_path, max_bytes=max_bytes)
    tmp_dir.mkdir(parents=True, exist_ok=True)

    if input_path.suffix.lower() == ".wav":
        try:
            _, sr, ch, width = load_wav_info(input_path)
            if int(sr) == sample_rate and int(ch) == 1 and int(width) == 2:
                return input_path
        except (wave.Error, EOFError):
            pass

    out_path = tmp_dir / f"{prefix}_norm_{uuid.uuid4().hex}.wav"

    ffmpeg = _which("ffmpeg")
    if ffmpeg:
        cmd = [
            ffmpeg,
            "-y",
            "-i",
            str(input_path),
            "-ac",
            "1",
            "-ar",
            str(sample_rate),
            "-sample_fmt",
            "s16",
            str(out_path),
        ]
        try:
            subprocess.run(cmd, check=True, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
            return out_path
        except subprocess.CalledProcessError as e:
            stderr = (
                e.stderr.decode("utf-8", "ignore")
                if isinstance(e.stderr, (bytes, bytearray))
                else str(e.stderr)
            )
            raise AudioLoadError(
                f"Audio conversion failed via ffmpeg: {stderr.strip() or 'unknown error'}"
            ) from e

    try:
        import miniaudio  # type: ignore
    except ImportError as e:
        raise AudioLoadError(
            "Audio conversion requires `ffmpeg` or the Python dependency `miniaudio`."
        ) from e

    try:
        decoded = miniaudio.decode_file(
            str(input_path),
            output_format=miniaudio.SampleFormat.SIGNED16,
            nchannels=1,
            sample_rate=sample_rate,
        )
        with wave.open(str(out_path), "wb") as wf:
            wf.setnchannels(1)
            wf.setsampwidth(2)
            wf.setframerate(sample_rate)
            wf.writeframes(decoded.samples.tobytes())
        return out_path
    except Exception as e:
        raise AudioLoadError(f"Audio conversion failed: {e}") from e


def load_wav_mono_float32(path: Path, *, sample_rate: int = 16000) -> np.ndarray:
    with wave.open(str(path), "rb") as wf:
        channels = wf.getnchannels()
        rate = wf.getframerate()
        width = wf.getsampwidth()
        frames = wf.getnframes()
        if channels != 1:
            raise AudioLoadError(f"Expected mono WAV, got {channels} channels")
        if rate != sample_rate:
            raise AudioLoadError(f"Expected {sample_rate}Hz WAV, got {rate}Hz")
        if width != 2:
            raise AudioLoadError(f"Expected 16-bit PCM WAV, got sampwidth={width}")
        raw = wf.readframes(frames)
    audio_i16 = np.frombuffer(raw, dtype="<i2")
    return (audio_i16.astype(np.float32) / 32768.0).clip(-1.0, 1.0)


class FfmpegAudioConverter(AudioConverter):
    def __init__(
        self,
        sample_rate: int = 16000,
        *,
        tmp_dir: Optional[Path] = None,
        max_bytes: int = 500 * 1024 * 1024,
    ):
        self._sr = sample_rate
        self._tmp_dir = tmp_dir
        self._max_bytes = max_bytes

    @property
    def sample_rate(self) -> int:
        return self._sr

    def resample(self, path: Union[str, Path]) -> np.ndarray:
        input_path = Path(path)
        tmp_dir = self._tmp_dir or Path(tempfile.gettempdir()) / "podscribe_audio"
        wav_path = normalize_to_wav_mono(
            input_path,
            tmp_dir,
            input_path.stem,
            sample_rate=self._sr,
            max_bytes=self._max_bytes,
        )
        try:
            return load_wav_mono_float32(wav_path, sample_rate=self._sr)
        except (wave.Error, EOFError) as e:
            raise AudioLoadError(f"Unreadable WAV after conversion: {e}") from e
        finally:
            if wav_path != input_path:
                wav_path.unlink(missing_ok=True)
