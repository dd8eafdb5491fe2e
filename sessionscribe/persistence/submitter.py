from __future__ import annotations

"""
Two-phase recording save: signed upload, blob transfer, metadata commit.

Design intent:
- Never write a metadata record that points at audio that failed to upload.
- A commit failure after a successful transfer leaves the blob orphaned in
  storage; the caller gets the audio URL back and decides on a retry.
- At-least-once: nothing here retries, and duplicates are absorbed by the
  session deduplicator at read time.
"""

import datetime as _dt
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, List, Optional, Protocol

from sessionscribe.internal_core.audio_utils import extension_for_content_type
from sessionscribe.internal_core.contracts import NoteSection, RecordingMetadata
from sessionscribe.internal_core.errors import (
    BlobTransferError,
    MetadataCommitError,
    SignedUploadError,
    TransportError,
)

logger = logging.getLogger(__name__)


class _StorageBackend(Protocol):
    def request_signed_upload(self, file_name: str, content_type: str) -> dict[str, str]: ...

    def put_blob(self, signed_url: str, blob: bytes, content_type: str) -> None: ...

    def commit_recording(self, payload: dict[str, Any]) -> dict[str, Any]: ...


@dataclass(frozen=True)
class SaveRequest:
    audio: bytes
    content_type: str
    transcript: str
    duration_sec: int
    notes: List[NoteSection]
    client_id: Optional[str] = None
    client_name: Optional[str] = None
    session_id: Optional[str] = None
    clinical_assessment: Optional[str] = None
    record_id: Optional[str] = None
    created_at: Optional[str] = None


def new_record_id() -> str:
    # Millisecond timestamp prefix keeps ids sortable like the legacy rows.
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


def _now_iso() -> str:
    return _dt.datetime.now(_dt.timezone.utc).isoformat()


class PersistenceSubmitter:
    def __init__(self, backend: _StorageBackend) -> None:
        self._backend = backend

    def save(self, request: SaveRequest) -> dict[str, Any]:
        record_id = request.record_id or new_record_id()
        extension = extension_for_content_type(request.content_type)
        file_name = f"recordings/{record_id}.{extension}"

        started = time.monotonic()
        try:
            target = self._backend.request_signed_upload(file_name, request.content_type)
        except TransportError as exc:
            code = "UPLOAD_CONFLICT" if exc.status_code == 409 else exc.code
            raise SignedUploadError(code, exc.message, status_code=exc.status_code) from exc

        try:
            self._backend.put_blob(target["signedUrl"], request.audio, request.content_type)
        except TransportError as exc:
            # No metadata is written for audio that never reached storage.
            raise BlobTransferError(exc.code, exc.message, status_code=exc.status_code) from exc

        metadata = RecordingMetadata(
            id=record_id,
            date=request.created_at or _now_iso(),
            duration=max(0, int(request.duration_sec)),
            transcript=request.transcript,
            notes=list(request.notes),
            audio_url=target["publicUrl"],
            client_id=request.client_id,
            client_name=request.client_name,
            session_id=request.session_id,
            clinical_assessment=request.clinical_assessment,
        )
        try:
            stored = self._backend.commit_recording(metadata.to_payload())
        except TransportError as exc:
            logger.error(
                "metadata_commit_failed record_id=%s orphaned_audio=%s code=%s",
                record_id,
                target["publicUrl"],
                exc.code,
            )
            raise MetadataCommitError(
                exc.code, exc.message, audio_url=target["publicUrl"], status_code=exc.status_code
            ) from exc

        logger.info(
            "recording_saved record_id=%s bytes=%s elapsed_ms=%s",
            record_id,
            len(request.audio),
            int((time.monotonic() - started) * 1000),
        )
        return stored
