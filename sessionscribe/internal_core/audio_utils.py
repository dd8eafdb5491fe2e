from __future__ import annotations

import io
import wave
from typing import Optional, Tuple

import numpy as np


ALLOWED_UPLOAD_CONTENT_TYPES = {
    "audio/mp3",
    "audio/mpeg",
    "audio/webm",
    "audio/wav",
    "audio/x-wav",
    "audio/m4a",
    "audio/x-m4a",
    "audio/mp4",
    "audio/m4u",
}

_EXTENSIONS = {
    "audio/mp3": "mp3",
    "audio/mpeg": "mp3",
    "audio/webm": "webm",
    "audio/wav": "wav",
    "audio/x-wav": "wav",
    "audio/m4a": "m4a",
    "audio/x-m4a": "m4a",
    "audio/mp4": "mp4",
    "audio/m4u": "m4a",
    "audio/ogg": "ogg",
}

_CONTENT_TYPES_BY_SUFFIX = {
    ".mp3": "audio/mpeg",
    ".webm": "audio/webm",
    ".wav": "audio/wav",
    ".m4a": "audio/m4a",
    ".mp4": "audio/mp4",
    ".ogg": "audio/ogg",
}


def extension_for_content_type(content_type: str) -> str:
    base = (content_type or "").split(";", 1)[0].strip().lower()
    return _EXTENSIONS.get(base, "webm")


def content_type_for_filename(file_name: str, default: str = "audio/webm") -> str:
    name = (file_name or "").lower()
    for suffix, content_type in _CONTENT_TYPES_BY_SUFFIX.items():
        if name.endswith(suffix):
            return content_type
    return default


def is_allowed_upload_type(content_type: str) -> bool:
    base = (content_type or "").split(";", 1)[0].strip().lower()
    return base in ALLOWED_UPLOAD_CONTENT_TYPES


def enforce_max_size_bytes(size: int, max_bytes: int) -> None:
    if size > max_bytes:
        raise ValueError(
            f"Audio file too large ({size / (1024 * 1024):.1f}MB), "
            f"max allowed is {max_bytes / (1024 * 1024):.1f}MB"
        )


def _decode_wav(blob: bytes) -> Tuple[np.ndarray, int]:
    try:
        with wave.open(io.BytesIO(blob), "rb") as wf:
            channels = wf.getnchannels()
            rate = wf.getframerate()
            width = wf.getsampwidth()
            raw = wf.readframes(wf.getnframes())
    except (wave.Error, EOFError) as e:
        raise ValueError(f"Invalid WAV data: {e}")
    if width != 2:
        raise ValueError(f"Expected 16-bit PCM WAV, got sampwidth={width}")
    audio = np.frombuffer(raw, dtype="<i2").astype(np.float32) / 32768.0
    if channels > 1:
        audio = audio.reshape(-1, channels).mean(axis=1)
    return audio.clip(-1.0, 1.0), rate


def _decode_miniaudio(blob: bytes) -> Tuple[np.ndarray, int]:
    try:
        import miniaudio  # type: ignore
    except Exception:
        raise ValueError("Audio decoding requires the Python dependency `miniaudio`.")

    try:
        decoded = miniaudio.decode(
            blob,
            output_format=miniaudio.SampleFormat.SIGNED16,
            nchannels=1,
            sample_rate=16000,
        )
    except Exception as e:
        raise ValueError(f"Audio decoding failed: {e}")
    audio = np.asarray(decoded.samples, dtype=np.float32) / 32768.0
    return audio.clip(-1.0, 1.0), 16000


def decode_mono_float32(blob: bytes, content_type: str = "") -> Tuple[np.ndarray, int]:
    """
    Decode an audio blob to mono float32 samples.
    WAV is read with the stdlib; mp3/flac/vorbis go through `miniaudio`.
    Containers such as webm/m4a are not decodable here and raise ValueError.
    """
    if not blob:
        return np.zeros(0, dtype=np.float32), 16000
    if blob[:4] == b"RIFF" or extension_for_content_type(content_type) == "wav":
        return _decode_wav(blob)
    return _decode_miniaudio(blob)


def compute_rms(audio: np.ndarray) -> float:
    if audio.size == 0:
        return 0.0
    x = audio.astype(np.float32)
    return float(np.sqrt(np.mean(x * x)))


def probe_duration_seconds(blob: bytes, content_type: str = "") -> int:
    """Whole seconds of audio, or 0 when the format cannot be decoded."""
    try:
        audio, rate = decode_mono_float32(blob, content_type)
    except ValueError:
        return 0
    if not rate:
        return 0
    return int(round(audio.size / float(rate)))


def probe_rms(blob: bytes, content_type: str = "") -> Optional[float]:
    try:
        audio, _ = decode_mono_float32(blob, content_type)
    except ValueError:
        return None
    return compute_rms(audio)
