from typing import Any, Optional

import pytest

from sessionscribe.capture.controller import CaptureController, CaptureTarget
from sessionscribe.capture.upload import UploadPipeline, UploadTarget, audio_file_name
from sessionscribe.internal_core.attempt_store import InMemoryAttemptStore
from sessionscribe.internal_core.errors import (
    TranscriptionUnavailable,
    TransportError,
    TransportTimeout,
    UnsupportedUpload,
)
from sessionscribe.internal_core.transcription import MockTranscriptionProvider
from sessionscribe.persistence.submitter import PersistenceSubmitter


class FakeBackend:
    def __init__(self, *, structured: Optional[str] = "Assessment text", structure_error: Optional[Exception] = None):
        self.structured = structured
        self.structure_error = structure_error
        self.structure_calls: list[dict[str, Any]] = []
        self.signed: list[str] = []
        self.commits: list[dict[str, Any]] = []
        self.updated: list[tuple[str, str]] = []

    def structure_transcript(self, transcript: str, **kwargs: Any) -> str:
        self.structure_calls.append({"transcript": transcript, **kwargs})
        if self.structure_error is not None:
            raise self.structure_error
        return self.structured or ""

    def request_signed_upload(self, file_name: str, content_type: str) -> dict[str, str]:
        self.signed.append(file_name)
        return {"signedUrl": f"https://upload/{file_name}", "publicUrl": f"https://cdn/{file_name}"}

    def put_blob(self, signed_url: str, blob: bytes, content_type: str) -> None:
        return None

    def commit_recording(self, payload: dict[str, Any]) -> dict[str, Any]:
        self.commits.append(payload)
        return dict(payload)

    def fetch_audio(self, audio_url: str) -> bytes:
        return b"stored-audio"

    def update_recording_transcript(self, record_id: str, transcript: str) -> dict[str, Any]:
        self.updated.append((record_id, transcript))
        return {"id": record_id, "transcript": transcript}


def _pipeline(backend: FakeBackend, transcript: str, **kwargs: Any) -> UploadPipeline:
    return UploadPipeline(
        MockTranscriptionProvider(transcript),
        PersistenceSubmitter(backend),
        structurer=backend,
        therapist_name="Dr. Who",
        **kwargs,
    )


def test_upload_reflows_transcript_and_stores_assessment_separately() -> None:
    backend = FakeBackend()
    pipeline = _pipeline(backend, "We met today.  She said \"hello\". Then e.g. lunch at 3 p.m. happened.")

    result = pipeline.process(
        b"fake-mp3",
        file_name="visit.mp3",
        content_type="audio/mpeg",
        target=UploadTarget(client_id="c1", client_name="Jane", session_id="s1", session_date="2025-03-04"),
    )

    assert result.transcript == "We met today.\n\nShe said \"hello\".\n\nThen e.g. lunch at 3 p.m. happened."
    assert result.clinical_assessment == "Assessment text"
    payload = backend.commits[0]
    assert payload["transcript"] == result.transcript
    assert payload["clinicalAssessment"] == "Assessment text"
    assert payload["notes"] == [
        {"title": "Session Notes", "content": result.transcript},
        {"title": "Clinical Assessment", "content": "Assessment text"},
    ]
    assert payload["sessionId"] == "s1"
    assert backend.signed[0].endswith(".mp3")
    call = backend.structure_calls[0]
    assert call["client_name"] == "Jane"
    assert call["therapist_name"] == "Dr. Who"
    assert call["session_date"] == "2025-03-04"


def test_empty_remote_transcript_aborts_with_zero_saves() -> None:
    backend = FakeBackend()
    pipeline = _pipeline(backend, "   ")

    with pytest.raises(TranscriptionUnavailable):
        pipeline.process(b"fake", file_name="x.webm", content_type="audio/webm")

    assert backend.signed == []
    assert backend.commits == []
    assert backend.structure_calls == []


def test_structuring_failure_still_saves_transcript() -> None:
    backend = FakeBackend(structure_error=TransportTimeout("structuring", 15))
    pipeline = _pipeline(backend, "Plain words.")

    result = pipeline.process(b"fake", file_name="x.webm", content_type="audio/webm")

    assert result.clinical_assessment is None
    assert result.warnings == ["Clinical assessment unavailable: TIMEOUT"]
    assert backend.commits[0]["transcript"] == "Plain words."
    assert "clinicalAssessment" not in backend.commits[0]


@pytest.mark.parametrize(
    "blob, content_type, status",
    [
        (b"", "audio/webm", 400),
        (b"data", "video/quicktime", 400),
        (b"x" * 11, "audio/webm", 413),
    ],
)
def test_invalid_uploads_are_rejected_before_transcription(blob: bytes, content_type: str, status: int) -> None:
    backend = FakeBackend()
    pipeline = _pipeline(backend, "text", max_upload_bytes=10)

    with pytest.raises(UnsupportedUpload) as excinfo:
        pipeline.process(blob, file_name="x", content_type=content_type)

    assert excinfo.value.status_code == status
    assert backend.commits == []


def test_retranscribe_replaces_stored_transcript() -> None:
    backend = FakeBackend()
    pipeline = _pipeline(backend, "Fresh text. Second part.")

    updated = pipeline.retranscribe(backend, record_id="r1", audio_url="https://cdn/recordings/r1.webm")

    assert updated["transcript"] == "Fresh text.\n\nSecond part."
    assert backend.updated == [("r1", "Fresh text.\n\nSecond part.")]


def test_retranscribe_without_text_raises() -> None:
    backend = FakeBackend()
    pipeline = _pipeline(backend, "")
    with pytest.raises(TranscriptionUnavailable):
        pipeline.retranscribe(backend, record_id="r1", audio_url="https://cdn/r1.webm")
    with pytest.raises(TranscriptionUnavailable):
        pipeline.retranscribe(backend, record_id="r1", audio_url=None)
    assert backend.updated == []


def test_audio_file_name_prefers_url_name() -> None:
    assert audio_file_name("https://cdn/recordings/abc.m4a?sig=1", "r1") == "abc.m4a"
    assert audio_file_name("https://cdn/blob", "r1") == "r1.webm"
    assert audio_file_name(None, "r2") == "r2.webm"


def test_controller_upload_records_attempt_and_failure() -> None:
    backend = FakeBackend()
    store = InMemoryAttemptStore(ttl_seconds=60)
    controller = CaptureController(
        device=None,
        recognizer=None,
        fallback=None,
        submitter=PersistenceSubmitter(backend),
        store=store,
        upload_pipeline=_pipeline(backend, ""),
    )

    with pytest.raises(TranscriptionUnavailable):
        controller.upload_file(
            b"audio", file_name="a.webm", content_type="audio/webm", target=CaptureTarget(client_name="Jane")
        )

    attempt = store.get_attempt(controller.attempt_id)
    assert attempt["kind"] == "upload"
    assert attempt["state"] == "error"
    assert attempt["error_code"] == "TRANSCRIPTION_UNAVAILABLE"
    assert backend.commits == []
    assert controller.state == "error"


def test_controller_upload_success_marks_complete() -> None:
    backend = FakeBackend(structure_error=TransportError("HTTP_503", "down", "structuring", 503))
    store = InMemoryAttemptStore(ttl_seconds=60)
    controller = CaptureController(
        device=None,
        recognizer=None,
        fallback=None,
        submitter=PersistenceSubmitter(backend),
        store=store,
        upload_pipeline=_pipeline(backend, "Words here."),
    )

    outcome = controller.upload_file(b"audio", file_name="a.webm", content_type="audio/webm")

    attempt = store.get_attempt(outcome.attempt_id)
    assert outcome.state == "complete"
    assert attempt["state"] == "complete"
    assert attempt["record_id"] == backend.commits[0]["id"]
    assert attempt["warnings"] == ["Clinical assessment unavailable: HTTP_503"]
