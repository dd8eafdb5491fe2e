from __future__ import annotations

from .base import TranscriptionProvider
from .mock import MockTranscriptionProvider
from .remote import RemoteTranscriptionProvider

__all__ = [
    "MockTranscriptionProvider",
    "RemoteTranscriptionProvider",
    "TranscriptionProvider",
]
