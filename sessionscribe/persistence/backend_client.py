from __future__ import annotations

"""
HTTP client for the practice backend.

Design intent:
- One place for every remote round-trip the capture/reconcile core makes.
- Bounded timeouts on every call; a timeout is reported as TransportTimeout,
  never confused with an HTTP error status.
- No retries here: callers decide whether a failed call is retried.
"""

import json
import logging
from typing import Any, Optional

import requests

from sessionscribe.internal_core.config import ScribeConfig
from sessionscribe.internal_core.contracts import Client, Note, Session
from sessionscribe.internal_core.errors import TransportError, TransportTimeout

logger = logging.getLogger(__name__)


def _error_detail(response: requests.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return (response.text or "")[:300]
    if isinstance(data, dict):
        parts = [str(data.get(key)) for key in ("error", "details", "detail") if data.get(key)]
        if parts:
            return ": ".join(parts)[:300]
    return json.dumps(data)[:300]


class BackendClient:
    def __init__(
        self,
        base_url: str,
        *,
        api_token: Optional[str] = None,
        timeout_sec: float = 15.0,
        upload_timeout_sec: float = 300.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_token = api_token
        self._timeout_sec = float(timeout_sec)
        self._upload_timeout_sec = float(upload_timeout_sec)
        self._http = session if session is not None else requests.Session()

    @classmethod
    def from_config(cls, cfg: ScribeConfig) -> "BackendClient":
        return cls(
            cfg.SCRIBE_BACKEND_URL,
            api_token=cfg.SCRIBE_API_TOKEN,
            timeout_sec=cfg.SCRIBE_HTTP_TIMEOUT_SECONDS,
            upload_timeout_sec=cfg.SCRIBE_UPLOAD_TIMEOUT_SECONDS,
        )

    def _url(self, path: str) -> str:
        return f"{self._base_url}/{path.lstrip('/')}"

    def _headers(self) -> dict[str, str]:
        if not self._api_token:
            return {}
        return {"Authorization": f"Bearer {self._api_token}"}

    def _request(
        self,
        method: str,
        url: str,
        *,
        phase: str,
        timeout: float,
        **kwargs: Any,
    ) -> requests.Response:
        try:
            response = self._http.request(method, url, timeout=timeout, **kwargs)
        except requests.Timeout as exc:
            logger.warning("backend_timeout phase=%s url=%s timeout=%s", phase, url, timeout)
            raise TransportTimeout(phase, timeout) from exc
        except requests.RequestException as exc:
            logger.warning("backend_unreachable phase=%s url=%s error=%s", phase, url, exc)
            raise TransportError("NETWORK_ERROR", f"{phase} failed: {exc}", phase) from exc

        if not 200 <= response.status_code < 300:
            detail = _error_detail(response)
            logger.warning(
                "backend_http_error phase=%s status=%s detail=%s",
                phase,
                response.status_code,
                detail,
            )
            raise TransportError(
                f"HTTP_{response.status_code}",
                f"{phase} failed ({response.status_code}): {detail}",
                phase,
                status_code=response.status_code,
            )
        return response

    def _json(self, response: requests.Response, phase: str) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise TransportError("INVALID_JSON", f"{phase} returned invalid JSON", phase) from exc

    def _get_list(self, path: str, phase: str) -> list[dict[str, Any]]:
        response = self._request(
            "GET", self._url(path), phase=phase, timeout=self._timeout_sec, headers=self._headers()
        )
        data = self._json(response, phase)
        if not isinstance(data, list):
            raise TransportError("INVALID_PAYLOAD", f"{phase} did not return a list", phase)
        return [item for item in data if isinstance(item, dict)]

    # Remote transcription / structuring

    def transcribe_audio(self, blob: bytes, *, file_name: str, content_type: str) -> str:
        response = self._request(
            "POST",
            self._url("/api/audio/transcribe-upload"),
            phase="transcription",
            timeout=self._upload_timeout_sec,
            headers=self._headers(),
            files={"file": (file_name, blob, content_type)},
        )
        data = self._json(response, "transcription")
        if not isinstance(data, dict):
            return ""
        return str(data.get("transcript") or "").strip()

    def structure_transcript(
        self,
        transcript: str,
        *,
        client_name: Optional[str] = None,
        therapist_name: Optional[str] = None,
        session_date: Optional[str] = None,
        duration: Optional[int] = None,
    ) -> str:
        payload: dict[str, Any] = {"transcript": transcript}
        if client_name:
            payload["clientName"] = client_name
        if therapist_name:
            payload["therapistName"] = therapist_name
        if session_date:
            payload["sessionDate"] = session_date
        if duration is not None:
            payload["duration"] = int(duration)
        response = self._request(
            "POST",
            self._url("/api/ai/process-transcript"),
            phase="structuring",
            timeout=self._upload_timeout_sec,
            headers=self._headers(),
            json=payload,
        )
        data = self._json(response, "structuring")
        if not isinstance(data, dict):
            return ""
        return str(data.get("structured") or "").strip()

    # Two-phase save

    def request_signed_upload(self, file_name: str, content_type: str) -> dict[str, str]:
        response = self._request(
            "POST",
            self._url("/api/storage/signed-url"),
            phase="signed_url",
            timeout=self._timeout_sec,
            headers=self._headers(),
            json={"fileName": file_name, "contentType": content_type},
        )
        data = self._json(response, "signed_url")
        signed_url = str((data or {}).get("signedUrl") or "") if isinstance(data, dict) else ""
        public_url = str((data or {}).get("publicUrl") or "") if isinstance(data, dict) else ""
        if not signed_url or not public_url:
            raise TransportError(
                "INVALID_PAYLOAD", "signed_url response is missing signedUrl/publicUrl", "signed_url"
            )
        return {"signedUrl": signed_url, "publicUrl": public_url}

    def put_blob(self, signed_url: str, blob: bytes, content_type: str) -> None:
        # The signed URL carries its own authorization.
        self._request(
            "PUT",
            signed_url,
            phase="blob_transfer",
            timeout=self._upload_timeout_sec,
            headers={"Content-Type": content_type},
            data=blob,
        )

    def commit_recording(self, payload: dict[str, Any]) -> dict[str, Any]:
        response = self._request(
            "POST",
            self._url("/api/recordings"),
            phase="metadata_commit",
            timeout=self._timeout_sec,
            headers=self._headers(),
            json=payload,
        )
        data = self._json(response, "metadata_commit")
        return data if isinstance(data, dict) else dict(payload)

    def fetch_audio(self, audio_url: str) -> bytes:
        url = audio_url if audio_url.startswith(("http://", "https://")) else self._url(audio_url)
        response = self._request(
            "GET", url, phase="audio_fetch", timeout=self._upload_timeout_sec, headers=self._headers()
        )
        return response.content

    def update_recording_transcript(self, record_id: str, transcript: str) -> dict[str, Any]:
        response = self._request(
            "PATCH",
            self._url(f"/api/recordings/{record_id}"),
            phase="metadata_commit",
            timeout=self._timeout_sec,
            headers=self._headers(),
            json={"transcript": transcript},
        )
        data = self._json(response, "metadata_commit")
        return data if isinstance(data, dict) else {"id": record_id, "transcript": transcript}

    # Pools

    def list_notes(self) -> list[Note]:
        """Session notes and recordings merged into one pool, in backend order."""
        rows = self._get_list("/api/session-notes", "notes_fetch")
        recordings = self._get_list("/api/recordings", "recordings_fetch")
        for row in recordings:
            row.setdefault("source", "recording")
        notes: list[Note] = []
        for row in rows + recordings:
            try:
                notes.append(Note.model_validate(row))
            except ValueError as exc:
                logger.warning("note_skipped id=%s reason=%s", row.get("id"), exc)
        return notes

    def list_sessions(self) -> list[Session]:
        sessions: list[Session] = []
        for row in self._get_list("/api/appointments", "sessions_fetch"):
            try:
                sessions.append(Session.model_validate(row))
            except ValueError as exc:
                logger.warning("session_skipped id=%s reason=%s", row.get("id"), exc)
        return sessions

    def list_clients(self) -> list[Client]:
        clients: list[Client] = []
        for row in self._get_list("/api/clients", "clients_fetch"):
            try:
                clients.append(Client.model_validate(row))
            except ValueError as exc:
                logger.warning("client_skipped id=%s reason=%s", row.get("id"), exc)
        return clients
