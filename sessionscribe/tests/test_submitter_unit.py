from typing import Any, Optional

import pytest

from sessionscribe.internal_core.contracts import NoteSection
from sessionscribe.internal_core.errors import (
    BlobTransferError,
    MetadataCommitError,
    SignedUploadError,
    TransportError,
    TransportTimeout,
)
from sessionscribe.persistence.submitter import PersistenceSubmitter, SaveRequest, new_record_id


class FakeStorage:
    def __init__(
        self,
        *,
        signed_error: Optional[Exception] = None,
        put_error: Optional[Exception] = None,
        commit_error: Optional[Exception] = None,
    ) -> None:
        self.signed_error = signed_error
        self.put_error = put_error
        self.commit_error = commit_error
        self.calls: list[str] = []
        self.commits: list[dict[str, Any]] = []

    def request_signed_upload(self, file_name: str, content_type: str) -> dict[str, str]:
        self.calls.append(f"sign:{file_name}")
        if self.signed_error:
            raise self.signed_error
        return {"signedUrl": "https://upload/signed", "publicUrl": f"https://cdn/{file_name}"}

    def put_blob(self, signed_url: str, blob: bytes, content_type: str) -> None:
        self.calls.append("put")
        if self.put_error:
            raise self.put_error

    def commit_recording(self, payload: dict[str, Any]) -> dict[str, Any]:
        self.calls.append("commit")
        if self.commit_error:
            raise self.commit_error
        self.commits.append(payload)
        return {**payload, "stored": True}


def _request(**overrides: Any) -> SaveRequest:
    fields: dict[str, Any] = {
        "audio": b"audio-bytes",
        "content_type": "audio/webm",
        "transcript": "Transcript",
        "duration_sec": 42,
        "notes": [NoteSection(title="Session Notes", content="Transcript")],
        "client_id": "c1",
        "client_name": "Jane",
        "session_id": "s1",
        "record_id": "1700000000000-abcd1234",
        "created_at": "2025-03-04T10:00:00+00:00",
    }
    fields.update(overrides)
    return SaveRequest(**fields)


def test_save_runs_three_phases_in_order_and_returns_stored_record() -> None:
    storage = FakeStorage()

    stored = PersistenceSubmitter(storage).save(_request())

    assert storage.calls == ["sign:recordings/1700000000000-abcd1234.webm", "put", "commit"]
    assert stored["stored"] is True
    assert storage.commits[0] == {
        "id": "1700000000000-abcd1234",
        "date": "2025-03-04T10:00:00+00:00",
        "duration": 42,
        "transcript": "Transcript",
        "notes": [{"title": "Session Notes", "content": "Transcript"}],
        "audioURL": "https://cdn/recordings/1700000000000-abcd1234.webm",
        "clientId": "c1",
        "clientName": "Jane",
        "sessionId": "s1",
    }


def test_optional_links_are_omitted_when_absent() -> None:
    storage = FakeStorage()
    PersistenceSubmitter(storage).save(_request(client_id=None, client_name=None, session_id=None))
    payload = storage.commits[0]
    assert "clientId" not in payload and "sessionId" not in payload and "clientName" not in payload


def test_blob_transfer_failure_never_commits_metadata() -> None:
    storage = FakeStorage(put_error=TransportTimeout("blob_transfer", 300))

    with pytest.raises(BlobTransferError) as excinfo:
        PersistenceSubmitter(storage).save(_request())

    assert excinfo.value.phase == "blob_transfer"
    assert excinfo.value.code == "TIMEOUT"
    assert "commit" not in storage.calls


def test_commit_failure_reports_orphaned_audio_url() -> None:
    storage = FakeStorage(commit_error=TransportError("HTTP_500", "db down", "metadata_commit", 500))

    with pytest.raises(MetadataCommitError) as excinfo:
        PersistenceSubmitter(storage).save(_request())

    assert excinfo.value.phase == "metadata_commit"
    assert excinfo.value.status_code == 500
    assert excinfo.value.audio_url == "https://cdn/recordings/1700000000000-abcd1234.webm"
    assert storage.calls[-2:] == ["put", "commit"]


def test_existing_upload_target_is_reported_as_conflict() -> None:
    storage = FakeStorage(signed_error=TransportError("HTTP_409", "exists", "signed_url", 409))

    with pytest.raises(SignedUploadError) as excinfo:
        PersistenceSubmitter(storage).save(_request())

    assert excinfo.value.code == "UPLOAD_CONFLICT"
    assert storage.calls == ["sign:recordings/1700000000000-abcd1234.webm"]


def test_generated_ids_are_unique_and_time_prefixed() -> None:
    first, second = new_record_id(), new_record_id()
    assert first != second
    assert first.split("-")[0].isdigit()


def test_content_type_drives_file_extension() -> None:
    storage = FakeStorage()
    PersistenceSubmitter(storage).save(_request(content_type="audio/x-m4a", record_id="r9"))
    assert storage.calls[0] == "sign:recordings/r9.m4a"
