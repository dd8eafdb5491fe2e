from __future__ import annotations

"""
Transcript text clean-up for live dictation and uploaded recordings.

Design intent:
- Turn spoken punctuation commands into punctuation for live recordings.
- Reflow long remote transcripts into paragraphs only at real sentence
  boundaries, so abbreviations and URLs stay intact.
"""

import re

_VOICE_COMMANDS: list[tuple[str, str]] = [
    ("period", "."),
    ("full stop", "."),
    ("comma", ","),
    ("question mark", "?"),
    ("exclamation point", "!"),
    ("exclamation mark", "!"),
    ("colon", ":"),
    ("semicolon", ";"),
]
_LINE_COMMANDS: list[tuple[str, str]] = [
    ("new line", "\n"),
    ("new paragraph", "\n\n"),
]

_SENTENCE_START_RE = re.compile(r"(^\w|[.!?]\s+\w)")
_PARAGRAPH_BREAK_RE = re.compile(r"([.!?])\s+(?=[A-Z\"'“‘])")


def _command_patterns() -> list[tuple[re.Pattern[str], str]]:
    patterns: list[tuple[re.Pattern[str], str]] = []
    for phrase, mark in _VOICE_COMMANDS:
        word = re.escape(phrase).replace(r"\ ", r"\s+")
        patterns.append((re.compile(rf"\s+{word}\s+", re.IGNORECASE), f"{mark} "))
        patterns.append((re.compile(rf"\s+{word}$", re.IGNORECASE), mark))
    for phrase, mark in _LINE_COMMANDS:
        word = re.escape(phrase).replace(r"\ ", r"\s+")
        patterns.append((re.compile(rf"\s+{word}\s+", re.IGNORECASE), mark))
        patterns.append((re.compile(rf"\s+{word}$", re.IGNORECASE), mark))
    return patterns


_COMMAND_PATTERNS = _command_patterns()


def format_voice_commands(text: str) -> str:
    formatted = text or ""
    for pattern, replacement in _COMMAND_PATTERNS:
        formatted = pattern.sub(replacement, formatted)
    formatted = "\n".join(" ".join(line.split()) for line in formatted.split("\n"))
    return _SENTENCE_START_RE.sub(lambda m: m.group(0).upper(), formatted).strip()


def reflow_paragraphs(text: str) -> str:
    """
    Insert a blank line after terminal punctuation followed by whitespace and
    a capital letter or opening quote. Nothing else is split.
    """
    normalized = " ".join((text or "").split())
    if not normalized:
        return ""
    return _PARAGRAPH_BREAK_RE.sub(r"\1\n\n", normalized)
