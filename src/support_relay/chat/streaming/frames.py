"""Serialization of outgoing chat-completion chunks."""

from __future__ import annotations

import json

from .types import Envelope, SseEvent

DONE_DATA = "[DONE]"


def build_content_chunk(
    envelope: Envelope,
    content: str,
    *,
    finish_reason: str | None = None,
) -> dict:
    chunk = envelope.asdict()
    chunk["choices"] = [
        {
            "index": 0,
            "delta": {"content": content},
            "finish_reason": finish_reason,
        }
    ]
    return chunk


def content_event(
    envelope: Envelope,
    content: str,
    *,
    finish_reason: str | None = None,
) -> SseEvent:
    """Wrap content in the chunk shape clients expect, as an SSE payload dict."""

    chunk = build_content_chunk(envelope, content, finish_reason=finish_reason)
    return {"data": json.dumps(chunk)}


def raw_event(data: str) -> SseEvent:
    return {"data": data}


def done_event() -> SseEvent:
    return {"data": DONE_DATA}


__all__ = [
    "DONE_DATA",
    "build_content_chunk",
    "content_event",
    "done_event",
    "raw_event",
]
