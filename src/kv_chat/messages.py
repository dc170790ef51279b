"""Conversation data model: messages, transcripts and validated request values."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Literal, Optional, Tuple, Union

from .errors import InvalidInput

Role = Literal["user", "assistant"]
ROLES: Tuple[str, ...] = ("user", "assistant")


@dataclass(frozen=True)
class Message:
    """A single turn stored in a transcript."""

    role: Role
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}

    @classmethod
    def from_dict(cls, raw: Any) -> "Message":
        if not isinstance(raw, dict):
            raise ValueError(f"message must be an object, got {type(raw).__name__}")
        role = raw.get("role")
        content = raw.get("content")
        if role not in ROLES:
            raise ValueError(f"unknown message role: {role!r}")
        if not isinstance(content, str):
            raise ValueError("message content must be a string")
        return cls(role=role, content=content)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(role="user", content=content)

    @classmethod
    def assistant(cls, content: str) -> "Message":
        return cls(role="assistant", content=content)


# Oldest first. Only ever grows by appending.
Transcript = Tuple[Message, ...]


def transcript_to_dicts(transcript: Iterable[Message]) -> List[Dict[str, str]]:
    return [m.to_dict() for m in transcript]


def transcript_from_dicts(items: Any) -> Transcript:
    if not isinstance(items, list):
        raise ValueError(f"transcript must be a list, got {type(items).__name__}")
    return tuple(Message.from_dict(item) for item in items)


def encode_transcript(transcript: Iterable[Message]) -> bytes:
    """Serialize a transcript to the stored JSON representation."""
    return json.dumps(transcript_to_dicts(transcript), ensure_ascii=False).encode("utf-8")


def decode_transcript(raw: bytes) -> Transcript:
    """Parse a stored value. Raises ``ValueError`` on malformed data."""
    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValueError(f"stored transcript is not valid JSON: {e}") from e
    return transcript_from_dicts(data)


# -----------------------------
# Request values
# -----------------------------
@dataclass(frozen=True)
class NonEmptyText:
    """User text that is known to contain something other than whitespace."""

    value: str

    def __post_init__(self) -> None:
        if not isinstance(self.value, str) or not self.value.strip():
            raise InvalidInput("Missing userMessage")

    @classmethod
    def parse(cls, text: Optional[str]) -> "NonEmptyText":
        return cls(text if text is not None else "")


@dataclass(frozen=True)
class NewConversation:
    """No identifier was supplied; the coordinator will mint one."""


@dataclass(frozen=True)
class ExistingConversation:
    """A client-supplied identifier, trusted verbatim."""

    conversation_id: str


ConversationRef = Union[NewConversation, ExistingConversation]


def conversation_ref(chat_id: Optional[str]) -> ConversationRef:
    """Map the optional ``chatId`` field to a tagged reference.

    An empty string counts as absent.
    """
    if chat_id:
        return ExistingConversation(chat_id)
    return NewConversation()
