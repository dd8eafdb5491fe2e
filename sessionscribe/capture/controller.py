from __future__ import annotations

"""
Capture state machine for one live recording or one uploaded file at a time.

Design intent:
- A recording always targets a session and a client; the check happens
  before the device is touched.
- The stop flag is set before anything else on stop, so late recognizer
  callbacks can neither restart recognition nor change the transcript.
- A stopped recording is never dropped: when no transcript can be produced
  the placeholder text is saved with the audio.
"""

import logging
import time
from dataclasses import dataclass, field
from threading import RLock
from typing import Any, Callable, List, Optional

from sessionscribe.internal_core.attempt_store import InMemoryAttemptStore
from sessionscribe.internal_core.audio_utils import (
    extension_for_content_type,
    probe_duration_seconds,
    probe_rms,
)
from sessionscribe.internal_core.audit import log_event
from sessionscribe.internal_core.contracts import NoteSection, RecordingState
from sessionscribe.internal_core.errors import (
    CaptureError,
    CaptureStateError,
    CaptureTargetMissing,
    DevicePermissionError,
    TranscriptionUnavailable,
    TransportError,
)
from sessionscribe.internal_core.transcription import TranscriptionProvider
from sessionscribe.persistence.submitter import PersistenceSubmitter, SaveRequest

from .backup import PendingRecording, PendingRecordingBackup
from .devices import AudioDevice, Recognizer, classify_device_error
from .formatting import format_voice_commands
from .supervisor import TranscriptionSupervisor
from .upload import UploadPipeline, UploadTarget

logger = logging.getLogger(__name__)

RECOGNIZER_UNAVAILABLE_WARNING = "Speech recognition not available. Audio will be recorded but not transcribed."

_BUSY_STATES = {"requesting_permission", "recording", "stopping", "finalizing", "processing"}


@dataclass(frozen=True)
class CaptureTarget:
    session_id: Optional[str] = None
    client_id: Optional[str] = None
    client_name: Optional[str] = None
    session_date: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        return bool(self.session_id) and bool(self.client_id or self.client_name)

    def as_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "client_id": self.client_id,
            "client_name": self.client_name,
            "session_date": self.session_date,
        }


@dataclass
class CaptureOutcome:
    attempt_id: str
    state: RecordingState
    transcript: str
    record: Optional[dict[str, Any]] = None
    duration_sec: int = 0
    used_fallback: bool = False
    used_placeholder: bool = False
    clinical_assessment: Optional[str] = None
    warnings: List[str] = field(default_factory=list)


class CaptureController:
    def __init__(
        self,
        *,
        device: Optional[AudioDevice],
        recognizer: Optional[Recognizer],
        fallback: Optional[TranscriptionProvider],
        submitter: PersistenceSubmitter,
        store: InMemoryAttemptStore,
        backup: Optional[PendingRecordingBackup] = None,
        upload_pipeline: Optional[UploadPipeline] = None,
        stop_grace_seconds: float = 1.0,
        placeholder: str = "No transcript captured",
        silence_rms: float = 0.008,
        sleeper: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._device = device
        self._submitter = submitter
        self._store = store
        self._backup = backup
        self._upload_pipeline = upload_pipeline
        self._grace = stop_grace_seconds
        self._placeholder = placeholder
        self._silence_rms = silence_rms
        self._sleep = sleeper
        self._clock = clock

        self._lock = RLock()
        self._state: RecordingState = "idle"
        self._target: Optional[CaptureTarget] = None
        self._attempt_id: Optional[str] = None
        self._chunks: List[bytes] = []
        self._started_at: Optional[float] = None
        self._stop_requested = False
        self._finishing = False

        self._supervisor = TranscriptionSupervisor(
            recognizer,
            fallback,
            is_recording=self._is_recording,
            on_event=self._on_supervisor_event,
        )

    # State

    @property
    def state(self) -> RecordingState:
        with self._lock:
            return self._state

    @property
    def attempt_id(self) -> Optional[str]:
        return self._attempt_id

    @property
    def display_text(self) -> str:
        return self._supervisor.display_text

    @property
    def supervisor(self) -> TranscriptionSupervisor:
        return self._supervisor

    def _is_recording(self) -> bool:
        with self._lock:
            return self._state == "recording" and not self._stop_requested

    def _set_state(self, state: RecordingState) -> None:
        with self._lock:
            previous = self._state
            self._state = state
            attempt_id = self._attempt_id
        logger.debug("capture_state %s -> %s attempt_id=%s", previous, state, attempt_id)
        if attempt_id and self._store.has_attempt(attempt_id):
            self._store.set_state(attempt_id, state)

    def _fail(self, attempt_id: str, exc: Exception, code: str, message: str) -> None:
        self._set_state("error")
        if self._store.has_attempt(attempt_id):
            self._store.set_error(attempt_id, code, message)
        log_event(self._store, attempt_id, "ERROR", code, f"{type(exc).__name__}: {message}")

    def _on_supervisor_event(self, kind: str, detail: str) -> None:
        attempt_id = self._attempt_id
        if not attempt_id:
            return
        if kind == "restarted":
            log_event(self._store, attempt_id, "RECOGNIZER_RESTARTED", "RESTARTED", detail)
        elif kind == "warning":
            self._store.append_warning(attempt_id, f"Recognition error: {detail}")
            log_event(self._store, attempt_id, "RECOGNIZER_WARNING", "RECOGNIZER_ERROR", detail)
        elif kind == "fallback":
            log_event(self._store, attempt_id, "FALLBACK_USED", "FALLBACK", detail)
        elif kind == "unavailable":
            log_event(self._store, attempt_id, "RECOGNIZER_UNAVAILABLE", "UNAVAILABLE", detail)

    # Target

    def select_target(self, target: Optional[CaptureTarget]) -> None:
        with self._lock:
            if self._state in _BUSY_STATES:
                raise CaptureStateError("Cannot change the recording target while capture is active.")
            self._target = target

    @property
    def target(self) -> Optional[CaptureTarget]:
        return self._target

    # Live recording

    def start_capture(self, target: Optional[CaptureTarget] = None) -> str:
        with self._lock:
            if self._state in _BUSY_STATES:
                raise CaptureStateError(f"Cannot start recording while {self._state}.")
            target = target or self._target
            if target is None or not target.is_complete:
                # Rejected before the device is ever touched.
                raise CaptureTargetMissing()
            if self._device is None:
                raise DevicePermissionError("unsupported", "no audio device configured")
            self._target = target
            self._chunks = []
            self._started_at = None
            self._stop_requested = False
            attempt_id = self._store.create_attempt("live", target.as_dict())
            self._attempt_id = attempt_id

        log_event(self._store, attempt_id, "ATTEMPT_CREATED", "LIVE", f"session_id={target.session_id}")
        self._set_state("requesting_permission")
        log_event(self._store, attempt_id, "PERMISSION_REQUESTED", "REQUESTED", "")
        try:
            self._device.acquire(self.on_audio_chunk)
        except DevicePermissionError as exc:
            self._fail(attempt_id, exc, exc.code, exc.message)
            raise
        except Exception as exc:
            perm = DevicePermissionError(classify_device_error(exc), str(exc))
            self._fail(attempt_id, exc, perm.code, perm.message)
            raise perm from exc

        with self._lock:
            self._started_at = self._clock()
        self._set_state("recording")
        log_event(self._store, attempt_id, "CAPTURE_STARTED", "RECORDING", "")

        if not self._supervisor.start():
            self._store.append_warning(attempt_id, RECOGNIZER_UNAVAILABLE_WARNING)
            if not self._supervisor.available:
                log_event(self._store, attempt_id, "RECOGNIZER_UNAVAILABLE", "UNAVAILABLE", "no recognizer")
        return attempt_id

    def on_audio_chunk(self, chunk: bytes) -> None:
        if not chunk:
            return
        with self._lock:
            # Trailing chunks flushed during stop are still part of the recording.
            if self._state not in ("recording", "stopping"):
                logger.debug("audio_chunk_dropped state=%s bytes=%s", self._state, len(chunk))
                return
            self._chunks.append(bytes(chunk))

    def stop_capture(self) -> CaptureOutcome:
        with self._lock:
            if self._state != "recording":
                raise CaptureStateError(f"Cannot stop while {self._state}.")
            if self._attempt_id is None or self._device is None:
                raise CaptureStateError("No recording attempt is active.")
            self._stop_requested = True
            self._finishing = True
            attempt_id = self._attempt_id
            started_at = self._started_at
            device = self._device
        try:
            return self._stop_and_finalize(attempt_id, device, started_at)
        finally:
            with self._lock:
                self._finishing = False

    def _stop_and_finalize(
        self, attempt_id: str, device: AudioDevice, started_at: Optional[float]
    ) -> CaptureOutcome:
        # Flag first, then the device, then the recognizer.
        self._supervisor.mark_stopped()
        self._set_state("stopping")
        duration_sec = int(max(0.0, self._clock() - (started_at or self._clock())))
        try:
            device.stop()
        except Exception as exc:
            logger.warning("device_stop_failed attempt_id=%s error=%s", attempt_id, exc)
        self._supervisor.stop()
        log_event(self._store, attempt_id, "CAPTURE_STOPPED", "STOPPED", f"duration_sec={duration_sec}")

        if self._grace > 0:
            self._sleep(self._grace)

        self._set_state("finalizing")
        with self._lock:
            audio = b"".join(self._chunks)
            self._chunks = []
        self._release_device(attempt_id)
        return self._finalize(attempt_id, device, audio, duration_sec)

    def _release_device(self, attempt_id: Optional[str]) -> None:
        if self._device is None:
            return
        try:
            self._device.release()
        except Exception as exc:
            logger.warning("device_release_failed attempt_id=%s error=%s", attempt_id, exc)

    def _resolve_transcript(self, attempt_id: str, audio: bytes, content_type: str) -> tuple[str, bool]:
        file_name = f"recording-{attempt_id}.{extension_for_content_type(content_type)}"
        try:
            text = self._supervisor.finalize(audio, file_name=file_name, content_type=content_type)
        except TranscriptionUnavailable as exc:
            log_event(self._store, attempt_id, "PLACEHOLDER_USED", exc.code, exc.message)
            self._store.append_warning(attempt_id, "No transcript could be produced; saved with placeholder text.")
            return self._placeholder, True
        if not self._supervisor.used_fallback:
            text = format_voice_commands(text)
        return text, False

    def _finalize(
        self, attempt_id: str, device: AudioDevice, audio: bytes, duration_sec: int
    ) -> CaptureOutcome:
        content_type = device.content_type
        target = self._target or CaptureTarget()

        rms = probe_rms(audio, content_type)
        if rms is not None:
            log_event(
                self._store,
                attempt_id,
                "CAPTURE_STOPPED",
                "AUDIO_LEVEL",
                f"rms={rms:.4f} silent={rms < self._silence_rms} bytes={len(audio)}",
            )
        if duration_sec <= 0:
            duration_sec = probe_duration_seconds(audio, content_type)

        transcript, used_placeholder = self._resolve_transcript(attempt_id, audio, content_type)

        if self._backup is not None:
            self._backup.save(
                attempt_id,
                audio,
                PendingRecording(
                    transcript=transcript,
                    content_type=content_type,
                    duration_sec=duration_sec,
                    saved_at=time.time(),
                    client_id=target.client_id,
                    client_name=target.client_name,
                    session_id=target.session_id,
                ),
            )

        self._set_state("processing")
        log_event(self._store, attempt_id, "SAVE_STARTED", "SAVING", f"bytes={len(audio)}")
        started = self._clock()
        try:
            record = self._submitter.save(
                SaveRequest(
                    audio=audio,
                    content_type=content_type,
                    transcript=transcript,
                    duration_sec=duration_sec,
                    notes=[NoteSection(title="Session Notes", content=transcript)],
                    client_id=target.client_id,
                    client_name=target.client_name,
                    session_id=target.session_id,
                )
            )
        except TransportError as exc:
            # The backup keeps the audio for an explicit retry.
            self._fail(attempt_id, exc, exc.code, f"{exc.phase}: {exc.message}")
            raise

        if self._backup is not None:
            self._backup.clear(attempt_id)
        record_id = str(record.get("id", ""))
        if record_id:
            self._store.set_record_id(attempt_id, record_id)
        log_event(
            self._store,
            attempt_id,
            "SAVE_DONE",
            "SAVED",
            f"record_id={record_id}",
            duration_ms=int((self._clock() - started) * 1000),
        )
        self._set_state("complete")
        return CaptureOutcome(
            attempt_id=attempt_id,
            state="complete",
            transcript=transcript,
            record=record,
            duration_sec=duration_sec,
            used_fallback=self._supervisor.used_fallback,
            used_placeholder=used_placeholder,
            warnings=self._store.get_attempt(attempt_id)["warnings"],
        )

    def teardown(self) -> None:
        """Release the device and recognizer and discard any attempt still in flight."""
        with self._lock:
            state = self._state
            finishing = self._finishing
            self._stop_requested = True
            attempt_id = self._attempt_id
        self._supervisor.stop()
        self._release_device(attempt_id)
        if finishing or state == "processing":
            # A stop already under way owns the attempt and saves it.
            return
        with self._lock:
            self._chunks = []
        if attempt_id and state in ("requesting_permission", "recording", "stopping", "finalizing"):
            log_event(self._store, attempt_id, "ATTEMPT_DISCARDED", "TEARDOWN", f"state={state}")
            self._store.destroy_attempt(attempt_id)
        with self._lock:
            self._state = "idle"
            self._attempt_id = None

    # Uploaded files

    def upload_file(
        self,
        blob: bytes,
        *,
        file_name: str,
        content_type: str,
        target: Optional[CaptureTarget] = None,
    ) -> CaptureOutcome:
        if self._upload_pipeline is None:
            raise CaptureStateError("File upload is not configured.")
        with self._lock:
            if self._state in _BUSY_STATES:
                raise CaptureStateError(f"Cannot upload while {self._state}.")
            target = target or self._target or CaptureTarget()
            attempt_id = self._store.create_attempt("upload", target.as_dict())
            self._attempt_id = attempt_id
            self._stop_requested = True

        log_event(self._store, attempt_id, "ATTEMPT_CREATED", "UPLOAD", f"file={file_name}")
        log_event(self._store, attempt_id, "UPLOAD_RECEIVED", "RECEIVED", f"bytes={len(blob)} type={content_type}")
        self._set_state("processing")
        try:
            result = self._upload_pipeline.process(
                blob,
                file_name=file_name,
                content_type=content_type,
                target=UploadTarget(
                    client_id=target.client_id,
                    client_name=target.client_name,
                    session_id=target.session_id,
                    session_date=target.session_date,
                ),
            )
        except (CaptureError, TranscriptionUnavailable, TransportError) as exc:
            self._fail(attempt_id, exc, exc.code, exc.message)
            raise

        for warning in result.warnings:
            self._store.append_warning(attempt_id, warning)
        if result.clinical_assessment:
            log_event(self._store, attempt_id, "STRUCTURING_DONE", "STRUCTURED", f"chars={len(result.clinical_assessment)}")
        record_id = str(result.record.get("id", ""))
        if record_id:
            self._store.set_record_id(attempt_id, record_id)
        log_event(self._store, attempt_id, "SAVE_DONE", "SAVED", f"record_id={record_id}")
        self._set_state("complete")
        return CaptureOutcome(
            attempt_id=attempt_id,
            state="complete",
            transcript=result.transcript,
            record=result.record,
            duration_sec=result.duration_sec,
            used_fallback=True,
            clinical_assessment=result.clinical_assessment,
            warnings=list(result.warnings),
        )
