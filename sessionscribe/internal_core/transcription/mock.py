from __future__ import annotations

from typing import Optional

from .base import TranscriptionProvider


class MockTranscriptionProvider(TranscriptionProvider):
    def __init__(self, text: Optional[str] = None) -> None:
        self._text = text
        self._counter = 0

    def transcribe(self, audio: bytes, *, file_name: str, content_type: str) -> str:
        self._counter += 1
        if self._text is not None:
            return self._text
        if not audio:
            return ""
        return f"(mock) simulated transcript for {file_name} #{self._counter}."

    def name(self) -> str:
        return "mock"
