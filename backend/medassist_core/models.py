from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class Modality(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"
    VIDEO = "video"
    DOCUMENT = "document"

    @classmethod
    def parse(cls, value: str | None) -> "Modality | None":
        normalized = (value or "").strip().lower()
        for member in cls:
            if member.value == normalized:
                return member
        return None


@dataclass(frozen=True)
class HistoryEntry:
    sender: str
    content: str

    @property
    def role_label(self) -> str:
        return "User" if self.sender == "patient" else "Assistant"

    @classmethod
    def from_message(cls, message: dict[str, Any]) -> "HistoryEntry":
        return cls(sender=str(message.get("sender") or "ai"), content=str(message.get("content") or ""))


@dataclass
class ChatTurn:
    text: str
    modality: str = Modality.TEXT.value
    file_path: str | None = None
    file_type: str | None = None
    history: list[HistoryEntry] = field(default_factory=list)


@dataclass
class InferenceResult:
    content: str
    explanation: str | None = None
    success: bool = True
    provider_tag: str = ""
    error_detail: str | None = None
    transcription: str | None = None
    extracted_text: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Value-or-error result for best-effort calls."""

    value: T | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap_or(self, default: T) -> T:
        if self.error is not None or self.value is None:
            return default
        return self.value

    @classmethod
    def success(cls, value: T) -> "Outcome[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: Exception) -> "Outcome[T]":
        return cls(error=error)
