from __future__ import annotations

import time
import uuid
from threading import RLock
from typing import Any, Dict, Optional

from .contracts import AuditEvent, RecordingState


class InMemoryAttemptStore:
    """Status of recording/upload attempts, kept for the status endpoints.

    Attempts never hold audio or transcript text; those belong to the
    controller for the lifetime of one attempt.
    """

    def __init__(self, ttl_seconds: int):
        self._ttl_seconds = ttl_seconds
        self._lock = RLock()
        self._attempts: Dict[str, Dict[str, Any]] = {}

    def create_attempt(self, kind: str, target: Optional[Dict[str, Any]] = None) -> str:
        attempt_id = uuid.uuid4().hex
        now = time.time()
        with self._lock:
            self._attempts[attempt_id] = {
                "attempt_id": attempt_id,
                "kind": kind,
                "created_at": now,
                "updated_at": now,
                "expires_at": now + self._ttl_seconds,
                "state": "idle",
                "target": dict(target or {}),
                "record_id": None,
                "warnings": [],
                "audit_events": [],
                "error": None,
                "error_code": None,
            }
        return attempt_id

    def _touch(self, attempt_id: str) -> None:
        now = time.time()
        attempt = self._attempts[attempt_id]
        attempt["updated_at"] = now
        attempt["expires_at"] = now + self._ttl_seconds

    def set_state(self, attempt_id: str, state: RecordingState) -> None:
        with self._lock:
            self._attempts[attempt_id]["state"] = state
            self._touch(attempt_id)

    def set_error(self, attempt_id: str, code: Optional[str], message: Optional[str]) -> None:
        with self._lock:
            self._attempts[attempt_id]["error_code"] = code
            self._attempts[attempt_id]["error"] = message
            self._touch(attempt_id)

    def set_record_id(self, attempt_id: str, record_id: str) -> None:
        with self._lock:
            self._attempts[attempt_id]["record_id"] = record_id
            self._touch(attempt_id)

    def append_warning(self, attempt_id: str, warning: str) -> None:
        with self._lock:
            self._attempts[attempt_id]["warnings"].append(warning)
            self._touch(attempt_id)

    def append_audit_event(self, attempt_id: str, event: AuditEvent) -> None:
        with self._lock:
            self._attempts[attempt_id]["audit_events"].append(event)
            self._touch(attempt_id)

    def get_attempt(self, attempt_id: str) -> Dict[str, Any]:
        with self._lock:
            attempt = self._attempts.get(attempt_id)
            if attempt is None:
                raise KeyError(f"Unknown attempt_id: {attempt_id}")
            return {
                "attempt_id": attempt["attempt_id"],
                "kind": attempt["kind"],
                "created_at": attempt["created_at"],
                "updated_at": attempt["updated_at"],
                "expires_at": attempt["expires_at"],
                "state": attempt["state"],
                "target": dict(attempt["target"]),
                "record_id": attempt["record_id"],
                "warnings": list(attempt["warnings"]),
                "audit_events": list(attempt["audit_events"]),
                "error": attempt["error"],
                "error_code": attempt["error_code"],
            }

    def has_attempt(self, attempt_id: str) -> bool:
        with self._lock:
            return attempt_id in self._attempts

    def destroy_attempt(self, attempt_id: str) -> None:
        with self._lock:
            self._attempts.pop(attempt_id, None)

    def cleanup_expired_attempts(self) -> int:
        now = time.time()
        with self._lock:
            expired = [
                attempt_id
                for attempt_id, attempt in self._attempts.items()
                if attempt["expires_at"] <= now
            ]
            for attempt_id in expired:
                self._attempts.pop(attempt_id, None)
        return len(expired)
