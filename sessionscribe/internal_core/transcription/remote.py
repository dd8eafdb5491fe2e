from __future__ import annotations

from typing import Protocol

from .base import TranscriptionProvider


class _TranscribingBackend(Protocol):
    def transcribe_audio(self, blob: bytes, *, file_name: str, content_type: str) -> str: ...


class RemoteTranscriptionProvider(TranscriptionProvider):
    """Black-box speech-to-text call exposed by the practice backend."""

    def __init__(self, backend: _TranscribingBackend) -> None:
        self._backend = backend

    def transcribe(self, audio: bytes, *, file_name: str, content_type: str) -> str:
        text = self._backend.transcribe_audio(audio, file_name=file_name, content_type=content_type)
        return " ".join((text or "").split()).strip()

    def name(self) -> str:
        return "remote"
