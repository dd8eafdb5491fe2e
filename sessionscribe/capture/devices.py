from __future__ import annotations

"""
Contracts for the audio capture device and the on-device speech recognizer.

Design intent:
- Keep hardware/browser specifics behind two small ABCs so the capture
  state machine can be driven by real devices, a websocket bridge, or fakes.
- Map device failures to the four user-facing permission categories.
"""

import logging
from abc import ABC, abstractmethod
from threading import Lock
from typing import Any, Callable, Optional, Protocol

from sessionscribe.internal_core.errors import DevicePermissionError

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[bytes], None]

# Browser-style error names plus their Python counterparts.
_CATEGORY_BY_ERROR_NAME = {
    "notallowederror": "permission_denied",
    "securityerror": "permission_denied",
    "permissionerror": "permission_denied",
    "permission_denied": "permission_denied",
    "notfounderror": "no_device",
    "devicesnotfounderror": "no_device",
    "overconstrainederror": "no_device",
    "filenotfounderror": "no_device",
    "no_device": "no_device",
    "notreadableerror": "device_busy",
    "trackstarterror": "device_busy",
    "blockingioerror": "device_busy",
    "device_busy": "device_busy",
    "typeerror": "unsupported",
    "notsupportederror": "unsupported",
    "notimplementederror": "unsupported",
    "unsupported": "unsupported",
}


def classify_device_error(error: Any) -> str:
    if isinstance(error, DevicePermissionError):
        return error.category
    if isinstance(error, str):
        name = error
    else:
        name = type(error).__name__
    category = _CATEGORY_BY_ERROR_NAME.get(name.strip().lower())
    if category:
        return category
    if isinstance(error, PermissionError):
        return "permission_denied"
    if isinstance(error, (FileNotFoundError, LookupError)):
        return "no_device"
    if isinstance(error, OSError) and "busy" in str(error).lower():
        return "device_busy"
    return "unsupported"


class AudioDevice(ABC):
    @abstractmethod
    def acquire(self, on_chunk: ChunkCallback) -> None:
        """Request access and start delivering data chunks to `on_chunk`."""

    @abstractmethod
    def stop(self) -> None:
        """Stop capture; the final chunk is flushed to `on_chunk` before returning."""

    def release(self) -> None:
        """Stop all tracks. Safe to call more than once."""
        self.stop()

    @property
    def content_type(self) -> str:
        return "audio/webm"


class RecognitionListener(Protocol):
    def on_result(self, text: str, is_final: bool) -> None: ...

    def on_end(self) -> None: ...

    def on_error(self, code: str) -> None: ...


class Recognizer(ABC):
    @abstractmethod
    def attach(self, listener: RecognitionListener) -> None: ...

    @abstractmethod
    def start(self) -> None: ...

    @abstractmethod
    def stop(self) -> None: ...


class StreamedAudioDevice(AudioDevice):
    """Audio pushed by a remote client (the browser keeps the microphone)."""

    def __init__(self, outbox: Callable[[dict[str, Any]], None], content_type: str = "audio/webm"):
        self._outbox = outbox
        self._content_type = content_type
        self._on_chunk: Optional[ChunkCallback] = None
        self._permission_error: Optional[str] = None
        self._lock = Lock()

    @property
    def content_type(self) -> str:
        return self._content_type

    def deny(self, error_name: str) -> None:
        self._permission_error = error_name

    def acquire(self, on_chunk: ChunkCallback) -> None:
        if self._permission_error:
            raise DevicePermissionError(
                classify_device_error(self._permission_error), self._permission_error
            )
        with self._lock:
            self._on_chunk = on_chunk

    def push(self, chunk: bytes) -> None:
        with self._lock:
            callback = self._on_chunk
        if callback is not None:
            callback(chunk)

    def stop(self) -> None:
        self._outbox({"type": "recorder_stop"})

    def release(self) -> None:
        with self._lock:
            self._on_chunk = None
        self._outbox({"type": "tracks_stop"})


class StreamedRecognizer(Recognizer):
    """Recognition runs on the remote client; events are relayed here."""

    def __init__(self, outbox: Callable[[dict[str, Any]], None]):
        self._outbox = outbox
        self._listener: Optional[RecognitionListener] = None

    def attach(self, listener: RecognitionListener) -> None:
        self._listener = listener

    def start(self) -> None:
        self._outbox({"type": "recognizer_start"})

    def stop(self) -> None:
        self._outbox({"type": "recognizer_stop"})

    def deliver(self, event: dict[str, Any]) -> None:
        listener = self._listener
        if listener is None:
            logger.info("recognizer_event_dropped type=%s", event.get("type"))
            return
        event_type = str(event.get("type", "")).strip().lower()
        if event_type == "recognition_result":
            listener.on_result(str(event.get("text", "")), bool(event.get("is_final", False)))
        elif event_type == "recognition_end":
            listener.on_end()
        elif event_type == "recognition_error":
            listener.on_error(str(event.get("error", "unknown")))
