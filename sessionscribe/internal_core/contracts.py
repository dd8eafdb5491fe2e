from __future__ import annotations

from typing import Any, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

RecordingState = Literal[
    "idle",
    "requesting_permission",
    "recording",
    "stopping",
    "finalizing",
    "processing",
    "complete",
    "error",
]

NoteSource = Literal["recording", "written_session_note", "admin"]

_SOURCE_ALIASES = {
    "recording": "recording",
    "recordings": "recording",
    "voice_note": "recording",
    "admin": "admin",
    "admin_note": "admin",
    "written_session_note": "written_session_note",
    "session_note": "written_session_note",
    "written": "written_session_note",
}


def _opt_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(int(value)) if float(value).is_integer() else str(value)
    return str(value)


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _prefer_present_aliases(model: type[BaseModel], data: Any) -> Any:
    """
    Collapse a field spelled several ways in one row onto its first spelling,
    taking the first value that is not null or blank. Without this a null
    snake_case key would hide a populated camelCase one.
    """
    if not isinstance(data, dict):
        return data
    merged = dict(data)
    for info in model.model_fields.values():
        alias = info.validation_alias
        if not isinstance(alias, AliasChoices):
            continue
        names = [choice for choice in alias.choices if isinstance(choice, str)]
        present = [name for name in names if name in merged]
        if len(present) < 2:
            continue
        values = [merged.pop(name) for name in present]
        merged[names[0]] = next((v for v in values if not _is_blank(v)), values[0])
    return merged


class Note(BaseModel):
    """A persisted note record as returned by the backend pools.

    Backend rows mix camelCase and snake_case, so every field accepts both.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)

    id: str
    source: NoteSource = "written_session_note"
    content: Optional[str] = None
    transcript: Optional[str] = None
    audio_ref: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("audio_ref", "audioRef", "audioURL", "audio_url"),
    )
    client_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("client_id", "clientId")
    )
    client_name: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("client_name", "clientName")
    )
    session_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("session_id", "sessionId")
    )
    session_date: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("session_date", "sessionDate")
    )
    created_at: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("created_at", "createdAt", "createdDate", "date"),
    )

    @model_validator(mode="before")
    @classmethod
    def _merge_aliases(cls, data: Any) -> Any:
        return _prefer_present_aliases(cls, data)

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> str:
        coerced = _opt_str(value)
        if not coerced:
            raise ValueError("Note.id is required")
        return coerced

    @field_validator("client_id", "session_id", mode="before")
    @classmethod
    def _coerce_ref(cls, value: Any) -> Optional[str]:
        coerced = _opt_str(value)
        return coerced or None

    @field_validator("source", mode="before")
    @classmethod
    def _normalize_source(cls, value: Any) -> str:
        # Legacy rows carry no source (or "session_note"); both are written notes.
        key = str(value or "").strip().lower()
        return _SOURCE_ALIASES.get(key, "written_session_note")

    @property
    def is_recording(self) -> bool:
        return self.source == "recording"

    @property
    def is_soft_deleted(self) -> bool:
        return self.content is None and self.transcript is None


class Session(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)

    id: str
    client_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("client_id", "clientId")
    )
    client_name: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("client_name", "clientName")
    )
    date: str
    time: Optional[str] = None
    duration: Optional[int] = None
    type: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _merge_aliases(cls, data: Any) -> Any:
        return _prefer_present_aliases(cls, data)

    @field_validator("id", "client_id", mode="before")
    @classmethod
    def _coerce_ids(cls, value: Any) -> Optional[str]:
        return _opt_str(value)


class Relationship(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)

    related_client_id: str = Field(
        validation_alias=AliasChoices("related_client_id", "relatedClientId"),
        serialization_alias="relatedClientId",
    )
    type: str = ""

    @model_validator(mode="before")
    @classmethod
    def _merge_aliases(cls, data: Any) -> Any:
        return _prefer_present_aliases(cls, data)

    @field_validator("related_client_id", mode="before")
    @classmethod
    def _coerce_related(cls, value: Any) -> str:
        return _opt_str(value) or ""


class Client(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)

    id: str
    name: str = ""
    relationships: List[Relationship] = Field(default_factory=list)

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> str:
        return _opt_str(value) or ""

    @field_validator("relationships", mode="before")
    @classmethod
    def _none_is_empty(cls, value: Any) -> Any:
        return [] if value is None else value


class NoteSection(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: str
    content: str


class RecordingMetadata(BaseModel):
    """Metadata record committed after the audio blob is transferred."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    id: str
    date: str
    duration: int = Field(default=0, ge=0)
    transcript: str
    notes: List[NoteSection] = Field(default_factory=list)
    audio_url: str = Field(serialization_alias="audioURL")
    client_id: Optional[str] = Field(default=None, serialization_alias="clientId")
    client_name: Optional[str] = Field(default=None, serialization_alias="clientName")
    session_id: Optional[str] = Field(default=None, serialization_alias="sessionId")
    clinical_assessment: Optional[str] = Field(
        default=None, serialization_alias="clinicalAssessment"
    )

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class NoteCounts(BaseModel):
    model_config = ConfigDict(extra="forbid")

    recordings: int = 0
    written: int = 0
    admin: int = 0


AuditEventType = Literal[
    "ATTEMPT_CREATED",
    "PERMISSION_REQUESTED",
    "CAPTURE_STARTED",
    "RECOGNIZER_UNAVAILABLE",
    "RECOGNIZER_RESTARTED",
    "RECOGNIZER_WARNING",
    "CAPTURE_STOPPED",
    "FALLBACK_USED",
    "PLACEHOLDER_USED",
    "UPLOAD_RECEIVED",
    "STRUCTURING_DONE",
    "SAVE_STARTED",
    "SAVE_DONE",
    "ATTEMPT_DISCARDED",
    "ERROR",
]


class AuditEvent(BaseModel):
    model_config = ConfigDict(extra="forbid")

    ts_iso: str
    attempt_id: str
    type: AuditEventType
    code: str
    detail: str
    duration_ms: Optional[int] = None
