"""
Session matching boundary.

Design intent:
- Decide note-to-session membership with pure functions over a pool snapshot.
- Absorb duplicate notes from at-least-once saves at read time.
"""

from .session_matcher import (
    dedupe_notes,
    get_note_counts,
    get_notes_for_session,
    match_session_notes,
    note_fingerprint,
)

__all__ = [
    "dedupe_notes",
    "get_note_counts",
    "get_notes_for_session",
    "match_session_notes",
    "note_fingerprint",
]
