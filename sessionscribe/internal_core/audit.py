from __future__ import annotations

import datetime as _dt
import logging
from typing import Optional

from .attempt_store import InMemoryAttemptStore
from .contracts import AuditEvent, AuditEventType

logger = logging.getLogger(__name__)


def _ts_iso() -> str:
    return _dt.datetime.now(_dt.timezone.utc).isoformat()


def _sanitize_detail(detail: str) -> str:
    # IMPORTANT: Never include transcript text or audio bytes in detail.
    detail = (detail or "").replace("\n", " ").strip()
    if len(detail) > 200:
        detail = detail[:200] + "…"
    return detail


def log_event(
    store: InMemoryAttemptStore,
    attempt_id: str,
    event_type: AuditEventType,
    code: str,
    detail: str,
    duration_ms: Optional[int] = None,
) -> None:
    event = AuditEvent(
        ts_iso=_ts_iso(),
        attempt_id=attempt_id,
        type=event_type,
        code=code,
        detail=_sanitize_detail(detail),
        duration_ms=duration_ms,
    )
    try:
        store.append_audit_event(attempt_id, event)
    except KeyError:
        # Attempt already discarded by teardown; keep the log line only.
        logger.info("audit_dropped attempt_id=%s type=%s code=%s", attempt_id, event_type, code)
        return
    logger.info(
        "audit attempt_id=%s type=%s code=%s detail=%s",
        attempt_id,
        event_type,
        code,
        event.detail,
    )
