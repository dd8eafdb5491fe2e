from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)

_KEY_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def _safe_unlink(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except Exception:
        pass


@dataclass(frozen=True)
class PendingRecording:
    transcript: str
    content_type: str
    duration_sec: int
    saved_at: float
    client_id: Optional[str] = None
    client_name: Optional[str] = None
    session_id: Optional[str] = None


class PendingRecordingBackup:
    """
    Keeps each stopped recording on disk until its save succeeds, so a crash
    between stop and save does not lose the audio. Entries are keyed by
    attempt id; controllers sharing one directory never touch each other's.
    """

    def __init__(self, backup_dir: Path, max_age_seconds: int = 24 * 60 * 60) -> None:
        self._dir = backup_dir
        self._max_age_seconds = max_age_seconds

    def _paths(self, key: str) -> tuple[Path, Path]:
        if not _KEY_RE.match(key or ""):
            raise ValueError(f"Invalid backup key: {key!r}")
        return self._dir / f"{key}.json", self._dir / f"{key}.audio"

    def save(self, key: str, audio: bytes, meta: PendingRecording) -> None:
        meta_path, audio_path = self._paths(key)
        # Backup is best-effort; a failure here must not block the save.
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
            audio_path.write_bytes(audio)
            meta_path.write_text(json.dumps(asdict(meta)), encoding="utf-8")
        except OSError as exc:
            logger.warning("recording_backup_failed key=%s dir=%s error=%s", key, self._dir, exc)

    def load(self, key: str) -> Optional[tuple[bytes, PendingRecording]]:
        meta_path, audio_path = self._paths(key)
        if not meta_path.exists() or not audio_path.exists():
            return None
        try:
            raw = json.loads(meta_path.read_text(encoding="utf-8"))
            meta = PendingRecording(**raw)
            audio = audio_path.read_bytes()
        except (OSError, ValueError, TypeError) as exc:
            logger.warning("recording_backup_unreadable key=%s error=%s", key, exc)
            return None
        if not audio or time.time() - meta.saved_at > self._max_age_seconds:
            self.clear(key)
            return None
        return audio, meta

    def keys(self) -> List[str]:
        """Keys of every loadable entry, oldest first. Expired entries are dropped."""
        if not self._dir.is_dir():
            return []
        found: List[tuple[float, str]] = []
        for meta_path in self._dir.glob("*.json"):
            key = meta_path.stem
            if not _KEY_RE.match(key):
                continue
            loaded = self.load(key)
            if loaded is not None:
                found.append((loaded[1].saved_at, key))
        return [key for _, key in sorted(found)]

    def clear(self, key: str) -> None:
        meta_path, audio_path = self._paths(key)
        _safe_unlink(meta_path)
        _safe_unlink(audio_path)
