from __future__ import annotations

"""
Resolve which notes belong to a calendar session and collapse duplicates.

Design intent:
- Two composed pure passes: a strict per-note priority pass, then a
  permissive re-scan of the whole pool for recordings the strict pass missed.
- Never admit a note explicitly linked to a different session.
- Duplicates created by at-least-once saves are dropped by fingerprint,
  first occurrence wins.
"""

import datetime as _dt
import logging
import re
from typing import Dict, Hashable, Iterable, List, Optional, Sequence

from sessionscribe.internal_core.contracts import Note, NoteCounts, Session

logger = logging.getLogger(__name__)

FINGERPRINT_PREFIX_CHARS = 200

_DATE_ONLY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def _parse_timestamp(value: Optional[str]) -> Optional[_dt.datetime]:
    raw = (value or "").strip()
    if not raw:
        return None
    if _DATE_ONLY_RE.match(raw):
        try:
            day = _dt.date.fromisoformat(raw)
        except ValueError:
            return None
        return _dt.datetime(day.year, day.month, day.day, tzinfo=_dt.timezone.utc)
    if raw.endswith(("Z", "z")):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = _dt.datetime.fromisoformat(raw)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        # Naive timestamps are stored in UTC.
        return parsed.replace(tzinfo=_dt.timezone.utc)
    return parsed.astimezone(_dt.timezone.utc)


def day_key(value: Optional[str]) -> Optional[str]:
    """UTC calendar day (YYYY-MM-DD) of an ISO timestamp or date, or None."""
    parsed = _parse_timestamp(value)
    if parsed is None:
        return None
    return parsed.date().isoformat()


def minute_key(value: Optional[str]) -> str:
    parsed = _parse_timestamp(value)
    if parsed is None:
        return (value or "").strip()
    return parsed.strftime("%Y-%m-%dT%H:%M")


def _same_name(left: Optional[str], right: Optional[str]) -> bool:
    if not left or not right:
        return False
    return left.strip().lower() == right.strip().lower()


def _note_day(note: Note) -> Optional[str]:
    # The session-grouping date wins over the raw creation timestamp.
    return day_key(note.session_date) or day_key(note.created_at)


def _linked_elsewhere(note: Note, session: Session) -> bool:
    return bool(note.session_id) and note.session_id != session.id


def _client_day_match(note: Note, session: Session, *, permissive: bool = False) -> bool:
    session_day = day_key(session.date)
    if session_day is None:
        return False
    if permissive:
        # Either date field may carry the session day.
        days = {day_key(note.session_date), day_key(note.created_at)}
    else:
        days = {_note_day(note)}
    if session_day not in days:
        return False
    if note.client_id and session.client_id and note.client_id == session.client_id:
        return True
    return _same_name(note.client_name, session.client_name)


def _written_note_matches(note: Note, session: Session) -> bool:
    return _client_day_match(note, session)


def _recording_matches(note: Note, session: Session) -> bool:
    # Recordings never default into a session; they need a link or client+day.
    return _client_day_match(note, session)


def belongs_to_session(note: Note, session: Session) -> bool:
    """Strict membership predicate for a single note."""
    if note.session_id:
        return note.session_id == session.id
    if note.is_recording:
        return _recording_matches(note, session)
    return _written_note_matches(note, session)


def strict_session_matches(pool: Sequence[Note], session: Session) -> List[Note]:
    return [note for note in pool if belongs_to_session(note, session)]


def permissive_recording_rescan(
    pool: Sequence[Note], session: Session, already: Sequence[Note]
) -> List[Note]:
    """
    Second pass over the whole pool for recordings that match on client and
    day but were missed by the strict pass. Returns `already` plus additions.
    """
    included = {id(note) for note in already}
    included_ids = {(note.source, note.id) for note in already}
    result = list(already)
    for note in pool:
        if not note.is_recording or id(note) in included:
            continue
        if (note.source, note.id) in included_ids or _linked_elsewhere(note, session):
            continue
        if _client_day_match(note, session, permissive=True):
            logger.debug("rescan_added_recording note_id=%s session_id=%s", note.id, session.id)
            result.append(note)
            included.add(id(note))
            included_ids.add((note.source, note.id))
    return result


def is_displayable(note: Note) -> bool:
    """Content or transcript must be non-blank; audio alone is not enough."""
    return bool((note.content or "").strip() or (note.transcript or "").strip())


def note_fingerprint(note: Note) -> tuple[Hashable, ...]:
    text = (note.content or note.transcript or "").strip()[:FINGERPRINT_PREFIX_CHARS]
    minute = minute_key(note.created_at)
    if note.is_recording:
        # Two short recordings can share a transcript; the id keeps them apart.
        return (note.source, note.id, text, minute)
    return (text, minute)


def dedupe_notes(notes: Iterable[Note]) -> List[Note]:
    seen: set[tuple[Hashable, ...]] = set()
    kept: List[Note] = []
    for note in notes:
        key = note_fingerprint(note)
        if key in seen:
            logger.debug("duplicate_note_dropped note_id=%s source=%s", note.id, note.source)
            continue
        seen.add(key)
        kept.append(note)
    return kept


def match_session_notes(pool: Sequence[Note], session: Session) -> List[Note]:
    strict = strict_session_matches(pool, session)
    widened = permissive_recording_rescan(pool, session, strict)
    displayable = [note for note in widened if is_displayable(note)]
    deduped = dedupe_notes(displayable)
    if len(deduped) != len(displayable):
        logger.info(
            "session_notes_deduplicated session_id=%s removed=%s",
            session.id,
            len(displayable) - len(deduped),
        )
    return deduped


def get_notes_for_session(
    session_id: str, sessions: Sequence[Session], pool: Sequence[Note]
) -> List[Note]:
    session = next((item for item in sessions if item.id == session_id), None)
    if session is None:
        logger.info("session_not_found session_id=%s", session_id)
        return []
    return match_session_notes(pool, session)


def count_notes(notes: Iterable[Note]) -> NoteCounts:
    recordings = written = admin = 0
    for note in notes:
        if note.source == "recording":
            recordings += 1
        elif note.source == "admin":
            admin += 1
        else:
            written += 1
    return NoteCounts(recordings=recordings, written=written, admin=admin)


def get_note_counts(
    client_name: str, sessions: Sequence[Session], pool: Sequence[Note]
) -> Dict[str, NoteCounts]:
    counts: Dict[str, NoteCounts] = {}
    for session in sessions:
        if not _same_name(session.client_name, client_name):
            continue
        counts[session.id] = count_notes(match_session_notes(pool, session))
    return counts
