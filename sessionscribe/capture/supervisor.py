from __future__ import annotations

"""
Keep an on-device speech recognizer alive for the length of a recording.

Design intent:
- The recognizer ends itself after short silence; restart it while the
  owner is still recording and has not asked to stop.
- Only final segments form the transcript of record. Interim text is for
  live display and is dropped at finalize.
- An empty transcript at finalize always falls back to remote transcription.
"""

import logging
from threading import RLock
from typing import Callable, List, Optional

from sessionscribe.internal_core.errors import TranscriptionUnavailable
from sessionscribe.internal_core.transcription import TranscriptionProvider

from .devices import Recognizer

logger = logging.getLogger(__name__)

BENIGN_RECOGNIZER_ERRORS = {"no-speech", "no_speech"}


class TranscriptionSupervisor:
    def __init__(
        self,
        recognizer: Optional[Recognizer],
        fallback: Optional[TranscriptionProvider],
        *,
        is_recording: Callable[[], bool],
        on_event: Optional[Callable[[str, str], None]] = None,
    ) -> None:
        self._recognizer = recognizer
        self._fallback = fallback
        self._is_recording = is_recording
        self._on_event = on_event
        self._lock = RLock()
        self._stopped = True
        self._final_segments: List[str] = []
        self._interim = ""
        self.restart_count = 0
        self.restart_failures = 0
        self.warnings: List[str] = []
        self.used_fallback = False
        if recognizer is not None:
            recognizer.attach(self)

    @property
    def available(self) -> bool:
        return self._recognizer is not None

    def _emit(self, kind: str, detail: str) -> None:
        if self._on_event is None:
            return
        try:
            self._on_event(kind, detail)
        except Exception:
            # Event reporting must never break recognition.
            logger.exception("supervisor_event_failed kind=%s", kind)

    def reset(self) -> None:
        with self._lock:
            self._final_segments = []
            self._interim = ""
            self.restart_count = 0
            self.restart_failures = 0
            self.warnings = []
            self.used_fallback = False

    def start(self) -> bool:
        """Start recognition for a new attempt. False when no recognizer is usable."""
        self.reset()
        with self._lock:
            self._stopped = False
        if self._recognizer is None:
            return False
        try:
            self._recognizer.start()
        except Exception as exc:
            logger.warning("recognizer_start_failed error=%s", exc)
            self.warnings.append(f"Speech recognition could not start: {exc}")
            self._emit("unavailable", str(exc))
            return False
        return True

    def mark_stopped(self) -> None:
        """Set the stop flag without touching the recognizer."""
        with self._lock:
            self._stopped = True

    def stop(self) -> None:
        self.mark_stopped()
        if self._recognizer is None:
            return
        try:
            self._recognizer.stop()
        except Exception as exc:
            logger.warning("recognizer_stop_failed error=%s", exc)

    # Recognizer callbacks. Each one checks the stop flag first.

    def on_result(self, text: str, is_final: bool) -> None:
        with self._lock:
            if self._stopped:
                logger.debug("recognition_result_discarded is_final=%s", is_final)
                return
            cleaned = " ".join((text or "").split())
            if is_final:
                if cleaned:
                    self._final_segments.append(cleaned)
                self._interim = ""
            else:
                self._interim = cleaned

    def on_end(self) -> None:
        with self._lock:
            stopped = self._stopped
        if stopped or self._recognizer is None or not self._is_recording():
            return
        try:
            self._recognizer.start()
        except Exception as exc:
            self.restart_failures += 1
            logger.warning("recognizer_restart_failed attempt=%s error=%s", self.restart_failures, exc)
            return
        self.restart_count += 1
        self._emit("restarted", f"restarts={self.restart_count}")

    def on_error(self, code: str) -> None:
        normalized = (code or "").strip().lower()
        if normalized in BENIGN_RECOGNIZER_ERRORS:
            logger.info("recognizer_no_speech_yet")
            return
        with self._lock:
            if self._stopped:
                return
            self.warnings.append(f"Recognition error: {code}")
        self._emit("warning", code)

    # Transcript access

    @property
    def final_text(self) -> str:
        with self._lock:
            return " ".join(self._final_segments).strip()

    @property
    def display_text(self) -> str:
        with self._lock:
            final = " ".join(self._final_segments).strip()
            if not self._interim:
                return final
            return f"{final} {self._interim}...".strip()

    def finalize(self, audio: bytes, *, file_name: str, content_type: str) -> str:
        """
        Resolve the transcript of record. Falls back to remote transcription
        whenever no final text exists; raises TranscriptionUnavailable when
        that also yields nothing.
        """
        with self._lock:
            self._stopped = True
            self._interim = ""
            text = " ".join(self._final_segments).strip()
        if text:
            return text

        if self._fallback is None or not audio:
            raise TranscriptionUnavailable("No speech was recognized and no fallback is available.")

        self.used_fallback = True
        try:
            text = self._fallback.transcribe(audio, file_name=file_name, content_type=content_type)
        except Exception as exc:
            logger.warning("fallback_transcription_failed provider=%s error=%s", self._fallback.name(), exc)
            raise TranscriptionUnavailable(f"Fallback transcription failed: {exc}") from exc
        text = " ".join((text or "").split()).strip()
        if not text:
            raise TranscriptionUnavailable("Fallback transcription returned no text.")
        self._emit("fallback", f"provider={self._fallback.name()} chars={len(text)}")
        return text
