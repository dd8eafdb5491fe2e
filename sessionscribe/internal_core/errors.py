from __future__ import annotations

from typing import Optional

PERMISSION_MESSAGES = {
    "permission_denied": "Microphone access was denied. Allow microphone access and try again.",
    "no_device": "No microphone was found. Connect a microphone and try again.",
    "device_busy": "The microphone is in use by another application.",
    "unsupported": "Audio recording is not supported in this environment.",
}


class CaptureError(RuntimeError):
    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


class CaptureTargetMissing(CaptureError):
    def __init__(self, message: str = "Select a session and client before recording."):
        super().__init__("TARGET_MISSING", message)


class CaptureStateError(CaptureError):
    def __init__(self, message: str):
        super().__init__("INVALID_STATE", message)


class DevicePermissionError(CaptureError):
    """Device access failed; fatal for the attempt and never retried."""

    def __init__(self, category: str, detail: str = ""):
        if category not in PERMISSION_MESSAGES:
            category = "unsupported"
        super().__init__(category.upper(), PERMISSION_MESSAGES[category])
        self.category = category
        self.detail = detail


class UnsupportedUpload(CaptureError):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__("UNSUPPORTED_UPLOAD", message)
        self.status_code = status_code


class TranscriptionUnavailable(RuntimeError):
    """Neither live recognition nor the remote fallback produced text."""

    def __init__(self, message: str = "No transcript could be produced for this audio."):
        super().__init__(message)
        self.code = "TRANSCRIPTION_UNAVAILABLE"
        self.message = message


class TransportError(RuntimeError):
    def __init__(
        self,
        code: str,
        message: str,
        phase: str,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.phase = phase
        self.status_code = status_code

    @property
    def is_timeout(self) -> bool:
        return self.code == "TIMEOUT"


class TransportTimeout(TransportError):
    def __init__(self, phase: str, timeout_sec: float):
        super().__init__(
            "TIMEOUT",
            f"{phase} timed out after {timeout_sec:g}s",
            phase,
        )
        self.timeout_sec = timeout_sec


class SignedUploadError(TransportError):
    def __init__(self, code: str, message: str, status_code: Optional[int] = None):
        super().__init__(code, message, "signed_url", status_code)


class BlobTransferError(TransportError):
    def __init__(self, code: str, message: str, status_code: Optional[int] = None):
        super().__init__(code, message, "blob_transfer", status_code)


class MetadataCommitError(TransportError):
    """Commit failed after the audio was transferred; the blob stays orphaned."""

    def __init__(
        self,
        code: str,
        message: str,
        audio_url: str,
        status_code: Optional[int] = None,
    ):
        super().__init__(code, message, "metadata_commit", status_code)
        self.audio_url = audio_url


class NoReciprocalTask(RuntimeError):
    """Confirm or skip was called with no reciprocal task open."""

    def __init__(self, message: str = "No reciprocal relationship task is open."):
        super().__init__(message)
        self.code = "NO_RECIPROCAL_TASK"
        self.message = message
