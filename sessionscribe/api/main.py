from __future__ import annotations

"""
HTTP and websocket surface for session capture and note reconciliation.

Design intent:
- Keep API orchestration thin; capture, matching and relationship rules
  live in their own modules.
- Map each error category to one status code so callers can tell a
  timeout from a rejected request.
"""

import asyncio
import base64
import json
import logging
import time
from pathlib import Path
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from sessionscribe.capture.backup import PendingRecordingBackup
from sessionscribe.capture.controller import CaptureController, CaptureOutcome, CaptureTarget
from sessionscribe.capture.devices import StreamedAudioDevice, StreamedRecognizer
from sessionscribe.capture.upload import UploadPipeline
from sessionscribe.internal_core.attempt_store import InMemoryAttemptStore
from sessionscribe.internal_core.audio_utils import content_type_for_filename
from sessionscribe.internal_core.config import ScribeConfig, load_config
from sessionscribe.internal_core.contracts import Client, Note, NoteCounts, NoteSection, Relationship
from sessionscribe.internal_core.errors import (
    CaptureError,
    CaptureTargetMissing,
    DevicePermissionError,
    NoReciprocalTask,
    TranscriptionUnavailable,
    TransportError,
    UnsupportedUpload,
)
from sessionscribe.internal_core.transcription import (
    MockTranscriptionProvider,
    RemoteTranscriptionProvider,
    TranscriptionProvider,
)
from sessionscribe.matching.session_matcher import get_note_counts, match_session_notes
from sessionscribe.persistence.backend_client import BackendClient
from sessionscribe.persistence.submitter import PersistenceSubmitter, SaveRequest
from sessionscribe.relationships.reciprocal import (
    ReciprocalQueue,
    fix_relationship_types,
    missing_reciprocals,
)


class CaptureResponse(BaseModel):
    attempt_id: str
    state: str
    transcript: str
    record: dict[str, Any] = Field(default_factory=dict)
    duration_sec: int = 0
    used_fallback: bool = False
    used_placeholder: bool = False
    clinical_assessment: str | None = None
    warnings: list[str] = Field(default_factory=list)


class AttemptStatusResponse(BaseModel):
    attempt_id: str
    kind: str
    state: str
    target: dict[str, Any] = Field(default_factory=dict)
    record_id: str | None = None
    warnings: list[str] = Field(default_factory=list)
    error: str | None = None
    error_code: str | None = None
    audit_events: list[dict[str, Any]] = Field(default_factory=list)


class SessionNotesResponse(BaseModel):
    session_id: str
    notes: list[Note] = Field(default_factory=list)


class NoteCountsResponse(BaseModel):
    client_name: str
    counts: dict[str, NoteCounts] = Field(default_factory=dict)


class ReciprocalCheckRequest(BaseModel):
    client: Client
    clients: list[Client] | None = None


class ReciprocalTaskOut(BaseModel):
    source_id: str
    target_id: str
    source_name: str
    target_name: str
    initial_type: str
    suggested_type: str


class ReciprocalCheckResponse(BaseModel):
    enqueued: list[ReciprocalTaskOut] = Field(default_factory=list)
    pending: int = 0


class ReciprocalNextResponse(BaseModel):
    task: ReciprocalTaskOut | None = None
    target: Client | None = None
    relationships: list[Relationship] = Field(default_factory=list)
    pending: int = 0


class ReciprocalConfirmRequest(BaseModel):
    relationship_type: str | None = Field(default=None, max_length=64)


class RetryTranscriptionRequest(BaseModel):
    audio_url: str = Field(min_length=1)


app = FastAPI(title="sessionscribe capture service")
logger = logging.getLogger(__name__)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _get_config() -> ScribeConfig:
    existing = getattr(app.state, "config", None)
    if isinstance(existing, ScribeConfig):
        return existing
    created = load_config()
    logging.getLogger("sessionscribe").setLevel(created.SCRIBE_LOG_LEVEL.upper())
    setattr(app.state, "config", created)
    return created


def _get_backend() -> BackendClient:
    existing = getattr(app.state, "backend_client", None)
    if existing is not None:
        return existing
    created = BackendClient.from_config(_get_config())
    setattr(app.state, "backend_client", created)
    return created


def _get_attempt_store() -> InMemoryAttemptStore:
    existing = getattr(app.state, "attempt_store", None)
    if isinstance(existing, InMemoryAttemptStore):
        return existing
    created = InMemoryAttemptStore(ttl_seconds=_get_config().SCRIBE_ATTEMPT_TTL_SECONDS)
    setattr(app.state, "attempt_store", created)
    return created


def _get_reciprocal_queue() -> ReciprocalQueue:
    existing = getattr(app.state, "reciprocal_queue", None)
    if isinstance(existing, ReciprocalQueue):
        return existing
    created = ReciprocalQueue()
    setattr(app.state, "reciprocal_queue", created)
    return created


def _get_backup() -> PendingRecordingBackup:
    existing = getattr(app.state, "recording_backup", None)
    if isinstance(existing, PendingRecordingBackup):
        return existing
    cfg = _get_config()
    created = PendingRecordingBackup(cfg.backup_dir_path(), cfg.SCRIBE_BACKUP_MAX_AGE_SECONDS)
    setattr(app.state, "recording_backup", created)
    return created


def _get_transcription_provider() -> TranscriptionProvider:
    existing = getattr(app.state, "transcription_provider", None)
    if isinstance(existing, TranscriptionProvider):
        return existing
    provider_name = _get_config().SCRIBE_TRANSCRIPTION_PROVIDER.strip().lower()
    if provider_name == "mock":
        created: TranscriptionProvider = MockTranscriptionProvider()
    else:
        created = RemoteTranscriptionProvider(_get_backend())
    setattr(app.state, "transcription_provider", created)
    return created


def _build_upload_pipeline() -> UploadPipeline:
    cfg = _get_config()
    return UploadPipeline(
        _get_transcription_provider(),
        PersistenceSubmitter(_get_backend()),
        structurer=_get_backend() if cfg.SCRIBE_STRUCTURING_ENABLED else None,
        therapist_name=cfg.SCRIBE_THERAPIST_NAME,
        max_upload_bytes=cfg.SCRIBE_MAX_UPLOAD_BYTES,
    )


def _build_controller(
    device: StreamedAudioDevice | None = None,
    recognizer: StreamedRecognizer | None = None,
) -> CaptureController:
    cfg = _get_config()
    return CaptureController(
        device=device,
        recognizer=recognizer,
        fallback=_get_transcription_provider(),
        submitter=PersistenceSubmitter(_get_backend()),
        store=_get_attempt_store(),
        backup=_get_backup(),
        upload_pipeline=_build_upload_pipeline(),
        stop_grace_seconds=cfg.SCRIBE_STOP_GRACE_SECONDS,
        placeholder=cfg.SCRIBE_TRANSCRIPT_PLACEHOLDER,
        silence_rms=cfg.SCRIBE_SILENCE_RMS,
    )


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, UnsupportedUpload):
        return HTTPException(status_code=exc.status_code, detail=exc.message)
    if isinstance(exc, (CaptureTargetMissing, DevicePermissionError)):
        return HTTPException(status_code=400, detail={"code": exc.code, "message": exc.message})
    if isinstance(exc, CaptureError):
        return HTTPException(status_code=409, detail={"code": exc.code, "message": exc.message})
    if isinstance(exc, TranscriptionUnavailable):
        return HTTPException(status_code=422, detail={"code": exc.code, "message": exc.message})
    # Phase errors wrap the original timeout but keep its code.
    if isinstance(exc, TransportError) and exc.is_timeout:
        return HTTPException(
            status_code=504, detail={"code": exc.code, "phase": exc.phase, "message": exc.message}
        )
    if isinstance(exc, TransportError):
        detail: dict[str, Any] = {"code": exc.code, "phase": exc.phase, "message": exc.message}
        audio_url = getattr(exc, "audio_url", None)
        if audio_url:
            detail["audio_url"] = audio_url
        return HTTPException(status_code=502, detail=detail)
    if isinstance(exc, NoReciprocalTask):
        return HTTPException(status_code=409, detail={"code": exc.code, "message": exc.message})
    return HTTPException(status_code=500, detail=str(exc))


def _capture_response(outcome: CaptureOutcome) -> CaptureResponse:
    return CaptureResponse(
        attempt_id=outcome.attempt_id,
        state=outcome.state,
        transcript=outcome.transcript,
        record=outcome.record or {},
        duration_sec=outcome.duration_sec,
        used_fallback=outcome.used_fallback,
        used_placeholder=outcome.used_placeholder,
        clinical_assessment=outcome.clinical_assessment,
        warnings=outcome.warnings,
    )


def _task_out(task: Any) -> ReciprocalTaskOut:
    return ReciprocalTaskOut(**task.as_dict())


@app.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/capture/upload", response_model=CaptureResponse)
async def capture_upload(
    request: Request,
    file_name: str = Query(min_length=1, max_length=255),
    session_id: str | None = Query(default=None, max_length=128),
    client_id: str | None = Query(default=None, max_length=128),
    client_name: str | None = Query(default=None, max_length=255),
    session_date: str | None = Query(default=None, max_length=64),
) -> CaptureResponse:
    file_name = Path(str(file_name or "")).name
    if not file_name:
        raise HTTPException(status_code=400, detail="Missing file_name.")
    header_type = str(request.headers.get("content-type", "")).split(";")[0].strip().lower()
    if not header_type or header_type == "application/octet-stream":
        content_type = content_type_for_filename(file_name, default="")
    else:
        content_type = header_type

    payload = await request.body()
    controller = _build_controller()
    target = CaptureTarget(
        session_id=session_id or None,
        client_id=client_id or None,
        client_name=client_name or None,
        session_date=session_date or None,
    )
    started = time.perf_counter()
    try:
        outcome = await asyncio.to_thread(
            controller.upload_file,
            payload,
            file_name=file_name,
            content_type=content_type,
            target=target,
        )
    except (CaptureError, TranscriptionUnavailable, TransportError) as exc:
        logger.warning("capture_upload_failed file=%s error=%s", file_name, type(exc).__name__)
        raise _http_error(exc) from exc
    logger.info(
        "capture_upload_done file=%s attempt_id=%s elapsed_ms=%s",
        file_name,
        outcome.attempt_id,
        int((time.perf_counter() - started) * 1000),
    )
    return _capture_response(outcome)


@app.get("/capture/attempts/{attempt_id}", response_model=AttemptStatusResponse)
async def capture_attempt_status(attempt_id: str) -> AttemptStatusResponse:
    store = _get_attempt_store()
    store.cleanup_expired_attempts()
    try:
        attempt = store.get_attempt(attempt_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=f"Unknown attempt_id: {attempt_id}") from exc
    return AttemptStatusResponse(
        attempt_id=attempt["attempt_id"],
        kind=attempt["kind"],
        state=attempt["state"],
        target=attempt["target"],
        record_id=attempt["record_id"],
        warnings=attempt["warnings"],
        error=attempt["error"],
        error_code=attempt["error_code"],
        audit_events=[event.model_dump() for event in attempt["audit_events"]],
    )


@app.get("/sessions/{session_id}/notes", response_model=SessionNotesResponse)
async def session_notes(session_id: str) -> SessionNotesResponse:
    backend = _get_backend()
    try:
        sessions = await asyncio.to_thread(backend.list_sessions)
        session = next((item for item in sessions if item.id == session_id), None)
        if session is None:
            raise HTTPException(status_code=404, detail=f"Unknown session_id: {session_id}")
        pool = await asyncio.to_thread(backend.list_notes)
    except TransportError as exc:
        raise _http_error(exc) from exc
    return SessionNotesResponse(session_id=session_id, notes=match_session_notes(pool, session))


@app.get("/clients/note-counts", response_model=NoteCountsResponse)
async def client_note_counts(client_name: str = Query(min_length=1, max_length=255)) -> NoteCountsResponse:
    backend = _get_backend()
    try:
        sessions = await asyncio.to_thread(backend.list_sessions)
        pool = await asyncio.to_thread(backend.list_notes)
    except TransportError as exc:
        raise _http_error(exc) from exc
    return NoteCountsResponse(client_name=client_name, counts=get_note_counts(client_name, sessions, pool))


@app.post("/clients/reciprocal-check", response_model=ReciprocalCheckResponse)
async def reciprocal_check(payload: ReciprocalCheckRequest) -> ReciprocalCheckResponse:
    clients = payload.clients
    if clients is None:
        try:
            clients = await asyncio.to_thread(_get_backend().list_clients)
        except TransportError as exc:
            raise _http_error(exc) from exc
    queue = _get_reciprocal_queue()
    added = queue.enqueue_reciprocal_check(payload.client, clients)
    return ReciprocalCheckResponse(enqueued=[_task_out(task) for task in added], pending=len(queue.pending))


@app.post("/clients/reciprocal/next", response_model=ReciprocalNextResponse)
async def reciprocal_next() -> ReciprocalNextResponse:
    queue = _get_reciprocal_queue()
    draft = queue.next_task()
    if draft is None:
        return ReciprocalNextResponse(pending=0)
    return ReciprocalNextResponse(
        task=_task_out(draft.task),
        target=draft.target,
        relationships=draft.relationships,
        pending=len(queue.pending),
    )


@app.post("/clients/reciprocal/confirm", response_model=Client)
async def reciprocal_confirm(payload: ReciprocalConfirmRequest) -> Client:
    try:
        return _get_reciprocal_queue().confirm(payload.relationship_type)
    except NoReciprocalTask as exc:
        raise _http_error(exc) from exc


@app.post("/clients/reciprocal/skip", response_model=ReciprocalTaskOut)
async def reciprocal_skip() -> ReciprocalTaskOut:
    try:
        return _task_out(_get_reciprocal_queue().skip())
    except NoReciprocalTask as exc:
        raise _http_error(exc) from exc


@app.get("/clients/missing-reciprocals", response_model=list[ReciprocalTaskOut])
async def clients_missing_reciprocals() -> list[ReciprocalTaskOut]:
    try:
        clients = await asyncio.to_thread(_get_backend().list_clients)
    except TransportError as exc:
        raise _http_error(exc) from exc
    return [_task_out(task) for task in missing_reciprocals(clients)]


@app.post("/clients/fix-relationships", response_model=list[Client])
async def clients_fix_relationships() -> list[Client]:
    try:
        clients = await asyncio.to_thread(_get_backend().list_clients)
    except TransportError as exc:
        raise _http_error(exc) from exc
    return fix_relationship_types(clients)


@app.get("/recordings/backup")
async def list_backups() -> list[dict[str, Any]]:
    backup = _get_backup()
    entries: list[dict[str, Any]] = []
    for key in backup.keys():
        pending = backup.load(key)
        if pending is None:
            continue
        audio, meta = pending
        entries.append(
            {
                "key": key,
                "session_id": meta.session_id,
                "client_name": meta.client_name,
                "duration_sec": meta.duration_sec,
                "saved_at": meta.saved_at,
                "bytes": len(audio),
            }
        )
    return entries


@app.post("/recordings/backup/recover")
async def recover_backup(key: Optional[str] = Query(default=None, max_length=64)) -> dict[str, Any]:
    backup = _get_backup()
    if key is None:
        # Without a key the oldest pending recording is recovered.
        pending_keys = backup.keys()
        key = pending_keys[0] if pending_keys else None
    try:
        pending = backup.load(key) if key else None
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if pending is None:
        raise HTTPException(status_code=404, detail="No pending recording to recover.")
    audio, meta = pending
    submitter = PersistenceSubmitter(_get_backend())
    request = SaveRequest(
        audio=audio,
        content_type=meta.content_type,
        transcript=meta.transcript,
        duration_sec=meta.duration_sec,
        notes=[NoteSection(title="Session Notes", content=meta.transcript)],
        client_id=meta.client_id,
        client_name=meta.client_name,
        session_id=meta.session_id,
    )
    try:
        record = await asyncio.to_thread(submitter.save, request)
    except TransportError as exc:
        raise _http_error(exc) from exc
    backup.clear(key)
    logger.info("pending_recording_recovered key=%s record_id=%s", key, record.get("id"))
    return record


@app.post("/recordings/{record_id}/retry-transcription")
async def retry_transcription(record_id: str, payload: RetryTranscriptionRequest) -> dict[str, Any]:
    pipeline = _build_upload_pipeline()
    try:
        return await asyncio.to_thread(
            pipeline.retranscribe,
            _get_backend(),
            record_id=record_id,
            audio_url=payload.audio_url,
        )
    except (TranscriptionUnavailable, TransportError) as exc:
        raise _http_error(exc) from exc


def _decode_chunk(payload: dict[str, Any]) -> Optional[bytes]:
    data_b64 = str(payload.get("data_b64", "")).strip()
    if not data_b64:
        return None
    try:
        return base64.b64decode(data_b64, validate=True)
    except ValueError:
        return None


def _target_from_payload(payload: dict[str, Any]) -> CaptureTarget:
    def _opt(key: str) -> Optional[str]:
        value = payload.get(key)
        if value is None:
            return None
        return str(value).strip() or None

    return CaptureTarget(
        session_id=_opt("session_id"),
        client_id=_opt("client_id"),
        client_name=_opt("client_name"),
        session_date=_opt("session_date"),
    )


@app.websocket("/ws/capture")
async def capture_ws(websocket: WebSocket) -> None:
    """
    Live capture bridge. The browser owns the microphone and recognizer;
    it streams chunks and recognition events, and receives control
    messages (recorder_stop, recognizer_start, ...) back.
    """
    await websocket.accept()
    loop = asyncio.get_running_loop()
    outbox: asyncio.Queue[dict[str, Any]] = asyncio.Queue()

    def _post(message: dict[str, Any]) -> None:
        loop.call_soon_threadsafe(outbox.put_nowait, message)

    async def _drain_outbox() -> None:
        while True:
            message = await outbox.get()
            await websocket.send_json(message)

    mime_type = str(websocket.query_params.get("mime_type", "") or "audio/webm")
    device = StreamedAudioDevice(_post, content_type=mime_type)
    recognizer = StreamedRecognizer(_post)
    controller = _build_controller(device, recognizer)
    sender = asyncio.create_task(_drain_outbox())
    receive_task: Optional[asyncio.Task[str]] = None
    stop_task: Optional[asyncio.Task[CaptureOutcome]] = None

    try:
        while True:
            if receive_task is None:
                receive_task = asyncio.ensure_future(websocket.receive_text())
            waiting: set[asyncio.Future[Any]] = {receive_task}
            if stop_task is not None:
                waiting.add(stop_task)
            done, _ = await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)

            if stop_task is not None and stop_task in done:
                finished, stop_task = stop_task, None
                try:
                    outcome = finished.result()
                except (CaptureError, TransportError) as exc:
                    await websocket.send_json(
                        {"type": "error", "code": exc.code, "detail": exc.message}
                    )
                else:
                    await websocket.send_json(
                        {"type": "ack_stop", **_capture_response(outcome).model_dump()}
                    )

            if receive_task not in done:
                continue
            raw = receive_task.result()
            receive_task = None
            try:
                payload = json.loads(raw)
            except json.JSONDecodeError:
                await websocket.send_json({"type": "error", "detail": "invalid_json"})
                continue

            message_type = str(payload.get("type", "")).strip().lower()
            if message_type == "start":
                if payload.get("device_error"):
                    device.deny(str(payload["device_error"]))
                try:
                    attempt_id = controller.start_capture(_target_from_payload(payload))
                except CaptureError as exc:
                    await websocket.send_json({"type": "error", "code": exc.code, "detail": exc.message})
                    continue
                await websocket.send_json({"type": "ack_start", "attempt_id": attempt_id})
                continue

            if message_type == "audio_chunk":
                chunk = _decode_chunk(payload)
                if chunk is None:
                    await websocket.send_json({"type": "error", "detail": "invalid_base64"})
                    continue
                device.push(chunk)
                continue

            if message_type in ("recognition_result", "recognition_end", "recognition_error"):
                recognizer.deliver(payload)
                if message_type == "recognition_result":
                    await websocket.send_json({"type": "display", "text": controller.display_text})
                continue

            if message_type == "stop":
                if stop_task is not None:
                    continue
                # Stop runs off-loop so trailing chunks keep arriving during the grace delay.
                stop_task = asyncio.ensure_future(asyncio.to_thread(controller.stop_capture))
                continue

            if message_type == "cancel":
                controller.teardown()
                await websocket.send_json({"type": "ack_cancel"})
                continue

            await websocket.send_json({"type": "error", "detail": "unknown_message_type"})
    except WebSocketDisconnect:
        logger.info("capture_ws_disconnected attempt_id=%s state=%s", controller.attempt_id, controller.state)
    finally:
        if receive_task is not None:
            receive_task.cancel()
        if stop_task is not None:
            # An issued stop is still awaited; its save runs to completion.
            try:
                await stop_task
            except (CaptureError, TransportError) as exc:
                logger.warning("capture_ws_stop_failed code=%s", exc.code)
        # The socket is gone; control messages from teardown are not sent.
        sender.cancel()
        controller.teardown()
