from __future__ import annotations

from abc import ABC, abstractmethod


class TranscriptionProvider(ABC):
    @abstractmethod
    def transcribe(self, audio: bytes, *, file_name: str, content_type: str) -> str: ...

    @abstractmethod
    def name(self) -> str: ...
