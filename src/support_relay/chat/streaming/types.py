"""Type definitions for the chat streaming subsystem."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Union


SseEvent = dict[str, str | None]


@dataclass(frozen=True)
class Envelope:
    """Identity fields copied from the upstream chunk onto every outgoing frame."""

    id: str | None = None
    object: str = "chat.completion.chunk"
    created: int | None = None
    model: str | None = None

    @classmethod
    def from_chunk(cls, chunk: dict[str, Any]) -> "Envelope":
        return cls(
            id=chunk.get("id"),
            object=chunk.get("object") or "chat.completion.chunk",
            created=chunk.get("created"),
            model=chunk.get("model"),
        )

    def asdict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "object": self.object,
            "created": self.created,
            "model": self.model,
        }


@dataclass(frozen=True)
class ContentDelta:
    text: str
    envelope: Envelope
    finish_reason: str | None = None


@dataclass(frozen=True)
class ToolCallDelta:
    index: int
    arguments_fragment: str
    envelope: Envelope
    name: str | None = None
    call_id: str | None = None


ChatDelta = Union[ContentDelta, ToolCallDelta]


@dataclass
class CompletedToolCall:
    """A tool call whose argument text parsed as JSON."""

    name: str
    arguments: dict[str, Any]
    raw_arguments: str
    call_id: str
    envelope: Envelope

    def to_message_dict(self) -> dict[str, Any]:
        return {
            "id": self.call_id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.raw_arguments},
        }


__all__ = [
    "ChatDelta",
    "CompletedToolCall",
    "ContentDelta",
    "Envelope",
    "SseEvent",
    "ToolCallDelta",
]
