from __future__ import annotations

"""
Pre-recorded file pipeline: remote transcription, paragraph reflow,
remote clinical structuring, then the two-phase save.

Design intent:
- Uploaded files have no live recognizer, so remote transcription always runs.
- An upload that yields no transcript is a hard failure: nothing is saved.
- The clinical assessment is stored next to the transcript, never over it.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, List, Optional, Protocol

from sessionscribe.internal_core.audio_utils import (
    content_type_for_filename,
    enforce_max_size_bytes,
    is_allowed_upload_type,
    probe_duration_seconds,
)
from sessionscribe.internal_core.contracts import NoteSection
from sessionscribe.internal_core.errors import (
    TranscriptionUnavailable,
    TransportError,
    UnsupportedUpload,
)
from sessionscribe.internal_core.transcription import TranscriptionProvider
from sessionscribe.persistence.submitter import PersistenceSubmitter, SaveRequest

from .formatting import reflow_paragraphs

logger = logging.getLogger(__name__)

_AUDIO_NAME_RE = re.compile(r"/([^/?]+\.(?:webm|m4a|mp3|wav|mp4|ogg|mpeg))(?:\?.*)?$", re.IGNORECASE)


class _StructuringBackend(Protocol):
    def structure_transcript(
        self,
        transcript: str,
        *,
        client_name: Optional[str] = None,
        therapist_name: Optional[str] = None,
        session_date: Optional[str] = None,
        duration: Optional[int] = None,
    ) -> str: ...


class _RecordingBackend(Protocol):
    def fetch_audio(self, audio_url: str) -> bytes: ...

    def update_recording_transcript(self, record_id: str, transcript: str) -> dict[str, Any]: ...


@dataclass(frozen=True)
class UploadTarget:
    client_id: Optional[str] = None
    client_name: Optional[str] = None
    session_id: Optional[str] = None
    session_date: Optional[str] = None


@dataclass
class UploadResult:
    record: dict[str, Any]
    transcript: str
    clinical_assessment: Optional[str]
    duration_sec: int
    warnings: List[str] = field(default_factory=list)


def audio_file_name(audio_url: Optional[str], record_id: str) -> str:
    """Storage file name for a recording, derived from its audio URL when possible."""
    if not audio_url:
        return f"{record_id}.webm"
    match = _AUDIO_NAME_RE.search(audio_url.strip())
    if match:
        return match.group(1)
    return f"{record_id}.webm"


class UploadPipeline:
    def __init__(
        self,
        transcriber: TranscriptionProvider,
        submitter: PersistenceSubmitter,
        *,
        structurer: Optional[_StructuringBackend] = None,
        therapist_name: Optional[str] = None,
        max_upload_bytes: int = 200 * 1024 * 1024,
    ) -> None:
        self._transcriber = transcriber
        self._submitter = submitter
        self._structurer = structurer
        self._therapist_name = therapist_name
        self._max_upload_bytes = max_upload_bytes

    def validate(self, blob: bytes, content_type: str) -> None:
        if not blob:
            raise UnsupportedUpload("Uploaded file is empty.")
        if not is_allowed_upload_type(content_type):
            raise UnsupportedUpload(f"Unsupported audio file type: {content_type or 'unknown'}")
        try:
            enforce_max_size_bytes(len(blob), self._max_upload_bytes)
        except ValueError as exc:
            raise UnsupportedUpload(str(exc), status_code=413) from exc

    def _structure(
        self, transcript: str, target: UploadTarget, duration_sec: int, warnings: List[str]
    ) -> Optional[str]:
        if self._structurer is None:
            return None
        try:
            structured = self._structurer.structure_transcript(
                transcript,
                client_name=target.client_name,
                therapist_name=self._therapist_name,
                session_date=target.session_date,
                duration=duration_sec,
            )
        except TransportError as exc:
            logger.warning("structuring_failed code=%s phase=%s", exc.code, exc.phase)
            warnings.append(f"Clinical assessment unavailable: {exc.code}")
            return None
        return structured.strip() or None

    def process(
        self,
        blob: bytes,
        *,
        file_name: str,
        content_type: str,
        target: Optional[UploadTarget] = None,
    ) -> UploadResult:
        target = target or UploadTarget()
        self.validate(blob, content_type)

        raw = self._transcriber.transcribe(blob, file_name=file_name, content_type=content_type)
        if not (raw or "").strip():
            # Uploads are never saved as content-free placeholders.
            raise TranscriptionUnavailable("Transcription produced an empty result for the uploaded file.")
        transcript = reflow_paragraphs(raw)

        duration_sec = probe_duration_seconds(blob, content_type)
        warnings: List[str] = []
        assessment = self._structure(transcript, target, duration_sec, warnings)

        notes = [NoteSection(title="Session Notes", content=transcript)]
        if assessment:
            notes.append(NoteSection(title="Clinical Assessment", content=assessment))

        record = self._submitter.save(
            SaveRequest(
                audio=blob,
                content_type=content_type,
                transcript=transcript,
                duration_sec=duration_sec,
                notes=notes,
                client_id=target.client_id,
                client_name=target.client_name,
                session_id=target.session_id,
                clinical_assessment=assessment,
            )
        )
        logger.info(
            "upload_saved file=%s chars=%s structured=%s",
            file_name,
            len(transcript),
            bool(assessment),
        )
        return UploadResult(
            record=record,
            transcript=transcript,
            clinical_assessment=assessment,
            duration_sec=duration_sec,
            warnings=warnings,
        )

    def retranscribe(
        self,
        backend: _RecordingBackend,
        *,
        record_id: str,
        audio_url: Optional[str],
    ) -> dict[str, Any]:
        """Re-run remote transcription for a stored recording and replace its transcript."""
        if not audio_url:
            raise TranscriptionUnavailable(f"Recording {record_id} has no stored audio.")
        file_name = audio_file_name(audio_url, record_id)
        audio = backend.fetch_audio(audio_url)
        raw = self._transcriber.transcribe(
            audio, file_name=file_name, content_type=content_type_for_filename(file_name)
        )
        if not (raw or "").strip():
            raise TranscriptionUnavailable("Transcription produced an empty result.")
        return backend.update_recording_transcript(record_id, reflow_paragraphs(raw))
