from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


def _project_root() -> Path:
    # sessionscribe/internal_core/config.py -> sessionscribe -> repo root
    return Path(__file__).resolve().parents[2]


def _getenv_str(name: str, default: str) -> str:
    value = os.getenv(name)
    return default if value is None else value


def _getenv_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return int(value)


def _getenv_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


def _getenv_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return float(value)


def _getenv_opt_str(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return None
    return value.strip()


@dataclass(frozen=True)
class ScribeConfig:
    SCRIBE_BACKEND_URL: str
    SCRIBE_API_TOKEN: Optional[str]
    SCRIBE_HTTP_TIMEOUT_SECONDS: float
    SCRIBE_UPLOAD_TIMEOUT_SECONDS: float
    SCRIBE_STOP_GRACE_SECONDS: float
    SCRIBE_TRANSCRIPTION_PROVIDER: str
    SCRIBE_STRUCTURING_ENABLED: bool
    SCRIBE_MAX_UPLOAD_BYTES: int
    SCRIBE_BACKUP_DIR: str
    SCRIBE_BACKUP_MAX_AGE_SECONDS: int
    SCRIBE_ATTEMPT_TTL_SECONDS: int
    SCRIBE_THERAPIST_NAME: Optional[str]
    SCRIBE_TRANSCRIPT_PLACEHOLDER: str
    SCRIBE_SILENCE_RMS: float
    SCRIBE_LOG_LEVEL: str
    SCRIBE_HOST: str
    SCRIBE_PORT: int

    def backup_dir_path(self, repo_root: Optional[Path] = None) -> Path:
        root = repo_root if repo_root is not None else _project_root()
        return (root / self.SCRIBE_BACKUP_DIR).resolve()


def load_config() -> ScribeConfig:
    return ScribeConfig(
        SCRIBE_BACKEND_URL=_getenv_str("SCRIBE_BACKEND_URL", "http://localhost:3000").rstrip("/"),
        SCRIBE_API_TOKEN=_getenv_opt_str("SCRIBE_API_TOKEN"),
        SCRIBE_HTTP_TIMEOUT_SECONDS=_getenv_float("SCRIBE_HTTP_TIMEOUT_SECONDS", 15.0),
        SCRIBE_UPLOAD_TIMEOUT_SECONDS=_getenv_float("SCRIBE_UPLOAD_TIMEOUT_SECONDS", 300.0),
        SCRIBE_STOP_GRACE_SECONDS=_getenv_float("SCRIBE_STOP_GRACE_SECONDS", 1.0),
        SCRIBE_TRANSCRIPTION_PROVIDER=_getenv_str("SCRIBE_TRANSCRIPTION_PROVIDER", "remote"),
        SCRIBE_STRUCTURING_ENABLED=_getenv_bool("SCRIBE_STRUCTURING_ENABLED", True),
        SCRIBE_MAX_UPLOAD_BYTES=_getenv_int("SCRIBE_MAX_UPLOAD_BYTES", 200 * 1024 * 1024),
        SCRIBE_BACKUP_DIR=_getenv_str("SCRIBE_BACKUP_DIR", "./tmp/pending-recordings"),
        SCRIBE_BACKUP_MAX_AGE_SECONDS=_getenv_int("SCRIBE_BACKUP_MAX_AGE_SECONDS", 24 * 60 * 60),
        SCRIBE_ATTEMPT_TTL_SECONDS=_getenv_int("SCRIBE_ATTEMPT_TTL_SECONDS", 14400),
        SCRIBE_THERAPIST_NAME=_getenv_opt_str("SCRIBE_THERAPIST_NAME"),
        SCRIBE_TRANSCRIPT_PLACEHOLDER=_getenv_str(
            "SCRIBE_TRANSCRIPT_PLACEHOLDER", "No transcript captured"
        ),
        SCRIBE_SILENCE_RMS=_getenv_float("SCRIBE_SILENCE_RMS", 0.008),
        SCRIBE_LOG_LEVEL=_getenv_str("SCRIBE_LOG_LEVEL", "INFO"),
        SCRIBE_HOST=_getenv_str("SCRIBE_HOST", "127.0.0.1"),
        SCRIBE_PORT=_getenv_int("SCRIBE_PORT", 8000),
    )
