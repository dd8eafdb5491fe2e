from typing import Any, Callable, Optional

import pytest

from sessionscribe.capture.backup import PendingRecordingBackup
from sessionscribe.capture.controller import CaptureController, CaptureTarget
from sessionscribe.capture.devices import AudioDevice, Recognizer
from sessionscribe.internal_core.attempt_store import InMemoryAttemptStore
from sessionscribe.internal_core.errors import (
    CaptureStateError,
    CaptureTargetMissing,
    DevicePermissionError,
    MetadataCommitError,
    TransportError,
)
from sessionscribe.internal_core.transcription import MockTranscriptionProvider
from sessionscribe.persistence.submitter import PersistenceSubmitter

TARGET = CaptureTarget(session_id="s1", client_id="c1", client_name="Jane Doe", session_date="2025-03-04")


class FakeDevice(AudioDevice):
    def __init__(self, *, error: Optional[Exception] = None, final_chunk: bytes = b"tail") -> None:
        self._error = error
        self._final_chunk = final_chunk
        self._on_chunk: Optional[Callable[[bytes], None]] = None
        self.acquired = 0
        self.stopped = 0
        self.released = 0

    def acquire(self, on_chunk: Callable[[bytes], None]) -> None:
        self.acquired += 1
        if self._error is not None:
            raise self._error
        self._on_chunk = on_chunk

    def emit(self, chunk: bytes) -> None:
        assert self._on_chunk is not None
        self._on_chunk(chunk)

    def stop(self) -> None:
        self.stopped += 1
        if self._final_chunk and self._on_chunk is not None:
            self._on_chunk(self._final_chunk)

    def release(self) -> None:
        self.released += 1
        self._on_chunk = None


class FakeRecognizer(Recognizer):
    def __init__(self) -> None:
        self.listener: Any = None
        self.starts = 0
        self.stops = 0

    def attach(self, listener: Any) -> None:
        self.listener = listener

    def start(self) -> None:
        self.starts += 1

    def stop(self) -> None:
        self.stops += 1


class FakeStorage:
    def __init__(self, *, fail_commit: bool = False) -> None:
        self.fail_commit = fail_commit
        self.blobs: list[bytes] = []
        self.commits: list[dict[str, Any]] = []

    def request_signed_upload(self, file_name: str, content_type: str) -> dict[str, str]:
        return {"signedUrl": f"https://upload/{file_name}", "publicUrl": f"https://cdn/{file_name}"}

    def put_blob(self, signed_url: str, blob: bytes, content_type: str) -> None:
        self.blobs.append(blob)

    def commit_recording(self, payload: dict[str, Any]) -> dict[str, Any]:
        if self.fail_commit:
            raise TransportError("HTTP_500", "commit failed", "metadata_commit", 500)
        self.commits.append(payload)
        return dict(payload)


def _controller(
    *,
    device: Optional[FakeDevice] = None,
    recognizer: Optional[FakeRecognizer] = None,
    fallback: Any = None,
    storage: Optional[FakeStorage] = None,
    sleeper: Callable[[float], None] = lambda _: None,
    backup: Optional[PendingRecordingBackup] = None,
) -> tuple[CaptureController, FakeStorage, InMemoryAttemptStore]:
    storage = storage or FakeStorage()
    store = InMemoryAttemptStore(ttl_seconds=3600)
    controller = CaptureController(
        device=device,
        recognizer=recognizer,
        fallback=fallback,
        submitter=PersistenceSubmitter(storage),
        store=store,
        backup=backup,
        sleeper=sleeper,
    )
    return controller, storage, store


def _audit_types(store: InMemoryAttemptStore, attempt_id: str) -> list[str]:
    return [event.type for event in store.get_attempt(attempt_id)["audit_events"]]


def test_start_without_target_is_rejected_before_device_access() -> None:
    device = FakeDevice()
    controller, _, _ = _controller(device=device, recognizer=FakeRecognizer())

    with pytest.raises(CaptureTargetMissing):
        controller.start_capture()
    with pytest.raises(CaptureTargetMissing):
        controller.start_capture(CaptureTarget(session_id="s1"))

    assert device.acquired == 0
    assert controller.state == "idle"


def test_live_recording_saves_final_transcript_and_audio() -> None:
    device = FakeDevice()
    recognizer = FakeRecognizer()
    controller, storage, store = _controller(device=device, recognizer=recognizer)

    attempt_id = controller.start_capture(TARGET)
    assert controller.state == "recording"
    device.emit(b"one-")
    recognizer.listener.on_result("hello period", True)
    recognizer.listener.on_result("still talk", False)
    assert controller.display_text == "hello period still talk..."

    outcome = controller.stop_capture()

    assert outcome.state == "complete"
    assert outcome.transcript == "Hello."
    assert not outcome.used_fallback
    assert storage.blobs == [b"one-tail"]
    payload = storage.commits[0]
    assert payload["transcript"] == "Hello."
    assert payload["sessionId"] == "s1"
    assert payload["clientId"] == "c1"
    assert payload["notes"] == [{"title": "Session Notes", "content": "Hello."}]
    assert payload["audioURL"].startswith("https://cdn/recordings/")
    attempt = store.get_attempt(attempt_id)
    assert attempt["state"] == "complete"
    assert attempt["record_id"] == payload["id"]
    types = _audit_types(store, attempt_id)
    assert types[0] == "ATTEMPT_CREATED"
    assert "CAPTURE_STOPPED" in types and types[-1] == "SAVE_DONE"


def test_recognizer_restarts_on_end_while_recording_only() -> None:
    device = FakeDevice()
    recognizer = FakeRecognizer()
    controller, _, store = _controller(
        device=device, recognizer=recognizer, fallback=MockTranscriptionProvider("x")
    )
    attempt_id = controller.start_capture(TARGET)
    assert recognizer.starts == 1

    recognizer.listener.on_end()
    recognizer.listener.on_end()
    assert recognizer.starts == 3
    assert controller.supervisor.restart_count == 2
    assert "RECOGNIZER_RESTARTED" in _audit_types(store, attempt_id)

    controller.stop_capture()
    recognizer.listener.on_end()
    assert recognizer.starts == 3


def test_results_arriving_after_stop_never_reach_the_transcript() -> None:
    device = FakeDevice()
    recognizer = FakeRecognizer()

    def grace(_: float) -> None:
        recognizer.listener.on_result("late words", True)
        recognizer.listener.on_end()
        device.emit(b"-grace")

    controller, storage, _ = _controller(device=device, recognizer=recognizer, sleeper=grace)
    controller.start_capture(TARGET)
    recognizer.listener.on_result("kept words", True)
    recognizer.listener.on_result("interim only", False)

    outcome = controller.stop_capture()

    assert outcome.transcript == "Kept words"
    assert "late" not in storage.commits[0]["transcript"]
    assert "interim" not in storage.commits[0]["transcript"]
    assert recognizer.starts == 1
    # Trailing audio inside the grace window is still part of the blob.
    assert storage.blobs == [b"tail-grace"]


def test_empty_recognition_falls_back_to_remote_transcription() -> None:
    device = FakeDevice()
    recognizer = FakeRecognizer()
    controller, storage, store = _controller(
        device=device, recognizer=recognizer, fallback=MockTranscriptionProvider("remote words period")
    )
    attempt_id = controller.start_capture(TARGET)
    device.emit(b"audio")

    outcome = controller.stop_capture()

    assert outcome.used_fallback
    assert outcome.transcript == "remote words period"
    assert storage.commits[0]["transcript"] == "remote words period"
    assert "FALLBACK_USED" in _audit_types(store, attempt_id)


def test_no_transcript_persists_placeholder_instead_of_dropping_audio() -> None:
    device = FakeDevice()
    controller, storage, store = _controller(
        device=device, recognizer=FakeRecognizer(), fallback=MockTranscriptionProvider("")
    )
    attempt_id = controller.start_capture(TARGET)
    device.emit(b"silence")

    outcome = controller.stop_capture()

    assert outcome.state == "complete"
    assert outcome.used_placeholder
    assert outcome.transcript == "No transcript captured"
    assert storage.commits[0]["transcript"] == "No transcript captured"
    assert storage.blobs == [b"silencetail"]
    assert "PLACEHOLDER_USED" in _audit_types(store, attempt_id)


def test_missing_recognizer_records_warning_and_still_captures_audio() -> None:
    device = FakeDevice()
    controller, storage, store = _controller(
        device=device, recognizer=None, fallback=MockTranscriptionProvider("from remote")
    )
    attempt_id = controller.start_capture(TARGET)

    warnings = store.get_attempt(attempt_id)["warnings"]
    assert any("Speech recognition not available" in w for w in warnings)
    assert "RECOGNIZER_UNAVAILABLE" in _audit_types(store, attempt_id)

    outcome = controller.stop_capture()
    assert outcome.transcript == "from remote"
    assert storage.blobs == [b"tail"]


@pytest.mark.parametrize(
    "error, category",
    [
        (PermissionError("denied"), "permission_denied"),
        (FileNotFoundError("no input device"), "no_device"),
        (OSError("Device or resource busy"), "device_busy"),
        (RuntimeError("no audio stack"), "unsupported"),
    ],
)
def test_device_errors_map_to_permission_categories(error: Exception, category: str) -> None:
    recognizer = FakeRecognizer()
    controller, storage, _ = _controller(device=FakeDevice(error=error), recognizer=recognizer)

    with pytest.raises(DevicePermissionError) as excinfo:
        controller.start_capture(TARGET)

    assert excinfo.value.category == category
    assert controller.state == "error"
    assert recognizer.starts == 0
    assert storage.commits == []


def test_recognizer_no_speech_is_swallowed_but_other_errors_warn() -> None:
    recognizer = FakeRecognizer()
    controller, _, store = _controller(device=FakeDevice(), recognizer=recognizer)
    attempt_id = controller.start_capture(TARGET)

    recognizer.listener.on_error("no-speech")
    assert store.get_attempt(attempt_id)["warnings"] == []

    recognizer.listener.on_error("network")
    assert store.get_attempt(attempt_id)["warnings"] == ["Recognition error: network"]


def test_stop_when_not_recording_is_rejected() -> None:
    controller, _, _ = _controller(device=FakeDevice(), recognizer=FakeRecognizer())
    with pytest.raises(CaptureStateError):
        controller.stop_capture()


def test_teardown_releases_devices_and_discards_attempt() -> None:
    device = FakeDevice()
    recognizer = FakeRecognizer()
    controller, storage, store = _controller(device=device, recognizer=recognizer)
    attempt_id = controller.start_capture(TARGET)
    device.emit(b"partial")

    controller.teardown()

    assert device.released == 1
    assert recognizer.stops == 1
    assert controller.state == "idle"
    assert not store.has_attempt(attempt_id)
    recognizer.listener.on_result("after unmount", True)
    recognizer.listener.on_end()
    assert recognizer.starts == 1
    assert storage.commits == []


def test_teardown_during_stop_grace_lets_the_save_finish() -> None:
    device = FakeDevice()
    recognizer = FakeRecognizer()
    holder: list[CaptureController] = []
    controller, storage, store = _controller(
        device=device,
        recognizer=recognizer,
        sleeper=lambda _: holder[0].teardown(),
    )
    holder.append(controller)
    attempt_id = controller.start_capture(TARGET)
    recognizer.listener.on_result("still saved", True)
    device.emit(b"body")

    outcome = controller.stop_capture()

    assert outcome.state == "complete"
    assert controller.state == "complete"
    assert device.released >= 1
    assert [c["transcript"] for c in storage.commits] == ["Still saved"]
    assert store.has_attempt(attempt_id)
    assert store.get_attempt(attempt_id)["record_id"] == outcome.record["id"]
    assert "ATTEMPT_DISCARDED" not in _audit_types(store, attempt_id)


def test_commit_failure_keeps_backup_and_reports_orphaned_audio(tmp_path) -> None:
    backup = PendingRecordingBackup(tmp_path / "pending")
    device = FakeDevice()
    recognizer = FakeRecognizer()
    controller, _, store = _controller(
        device=device,
        recognizer=recognizer,
        storage=FakeStorage(fail_commit=True),
        backup=backup,
    )
    attempt_id = controller.start_capture(TARGET)
    recognizer.listener.on_result("worth keeping", True)

    with pytest.raises(MetadataCommitError) as excinfo:
        controller.stop_capture()

    assert excinfo.value.audio_url.startswith("https://cdn/recordings/")
    assert controller.state == "error"
    assert store.get_attempt(attempt_id)["error_code"] == "HTTP_500"
    assert backup.keys() == [attempt_id]
    pending = backup.load(attempt_id)
    assert pending is not None
    audio, meta = pending
    assert audio == b"tail"
    assert meta.transcript == "Worth keeping"
    assert meta.session_id == "s1"


def test_successful_save_clears_backup(tmp_path) -> None:
    backup = PendingRecordingBackup(tmp_path / "pending")
    device = FakeDevice()
    recognizer = FakeRecognizer()
    controller, _, _ = _controller(device=device, recognizer=recognizer, backup=backup)
    attempt_id = controller.start_capture(TARGET)
    recognizer.listener.on_result("fine", True)

    controller.stop_capture()

    assert backup.load(attempt_id) is None
    assert backup.keys() == []


def test_controllers_sharing_a_backup_dir_keep_each_others_entries(tmp_path) -> None:
    backup = PendingRecordingBackup(tmp_path / "pending")
    failing_recognizer = FakeRecognizer()
    failing, _, _ = _controller(
        device=FakeDevice(),
        recognizer=failing_recognizer,
        storage=FakeStorage(fail_commit=True),
        backup=backup,
    )
    ok_recognizer = FakeRecognizer()
    ok, _, _ = _controller(device=FakeDevice(), recognizer=ok_recognizer, backup=backup)

    failed_id = failing.start_capture(TARGET)
    failing_recognizer.listener.on_result("first client", True)
    with pytest.raises(MetadataCommitError):
        failing.stop_capture()

    ok.start_capture(CaptureTarget(session_id="s2", client_id="c2", client_name="Sam Roe"))
    ok_recognizer.listener.on_result("second client", True)
    ok.stop_capture()

    assert backup.keys() == [failed_id]
    pending = backup.load(failed_id)
    assert pending is not None
    assert pending[1].transcript == "First client"
    assert pending[1].session_id == "s1"


def test_new_attempt_resets_transcript_state() -> None:
    device = FakeDevice(final_chunk=b"")
    recognizer = FakeRecognizer()
    controller, storage, _ = _controller(device=device, recognizer=recognizer)

    controller.start_capture(TARGET)
    recognizer.listener.on_result("first take", True)
    device.emit(b"1")
    controller.stop_capture()

    controller.start_capture(TARGET)
    recognizer.listener.on_result("second take", True)
    device.emit(b"2")
    controller.stop_capture()

    assert [c["transcript"] for c in storage.commits] == ["First take", "Second take"]
    assert storage.blobs == [b"1", b"2"]
