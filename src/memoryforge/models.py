"""Data models crossing the engine boundary."""

from __future__ import annotations

import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Literal, Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import InvalidMessage

ROOT_ID = "root"


def generate_id() -> str:
    """Return a new unique message ID."""
    return str(uuid.uuid4())


class Message(BaseModel):
    """A single conversation message, immutable once ingested."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(default_factory=generate_id, min_length=1)
    role: Literal["user", "assistant", "system"]
    content: str
    timestamp: float = Field(default_factory=time.time)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("content")
    @classmethod
    def _content_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("content must not be empty")
        return value

    @field_validator("id")
    @classmethod
    def _id_not_reserved(cls, value: str) -> str:
        if value == ROOT_ID:
            raise ValueError(f"'{ROOT_ID}' is reserved for the tree root")
        return value


def coerce_message(message: Message | dict[str, Any]) -> Message:
    """Validate *message* into a :class:`Message` or raise ``InvalidMessage``."""
    if isinstance(message, Message):
        return message
    if not isinstance(message, dict):
        raise InvalidMessage(f"expected a message mapping, got {type(message).__name__}")
    try:
        return Message.model_validate(message)
    except ValidationError as exc:
        raise InvalidMessage(str(exc)) from exc


# ---------------------------------------------------------------------------
# Sync boundary
# ---------------------------------------------------------------------------


@dataclass
class ChangeRecord:
    """A change emitted for (or received from) an external sync collaborator."""

    id: str
    type: str
    data: dict[str, Any]
    timestamp: float = field(default_factory=time.time)
    version: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChangeRecord:
        return cls(
            id=data["id"],
            type=data["type"],
            data=dict(data.get("data") or {}),
            timestamp=float(data.get("timestamp", time.time())),
            version=int(data.get("version", 0)),
        )


# ---------------------------------------------------------------------------
# Image boundary
# ---------------------------------------------------------------------------


@dataclass
class ImageEnrichment:
    """Opaque result of the external image collaborator for one image."""

    content_type: str
    colors: list[str] = field(default_factory=list)
    thumbnail: str | None = None
    fingerprint: str | None = None
    ocr_text: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ImageCollaborator(Protocol):
    """What the engine expects from an image decoding / OCR provider."""

    def analyze(self, source: str | bytes) -> ImageEnrichment: ...

    def search_by_text(self, query: str) -> list[dict[str, Any]]: ...

    def search_by_type(self, content_type: str) -> list[dict[str, Any]]: ...
