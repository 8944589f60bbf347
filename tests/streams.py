"""Builders for upstream chunks and settings shared by the test modules."""

import json
from typing import Any, AsyncIterator, Iterable

from support_relay.config import Settings


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "upstream_api_key": "test-key",
        "upstream_base_url": "https://upstream.example.com/v1",
        "upstream_model": "gpt-test",
        "classifier_mode": "streaming",
        "summarize_after_tools": False,
        "max_summary_turns": 3,
        "department_url": "https://departments.example.com/generate",
        "langbase_sports_pipe_api_key": "sports-key",
        "langbase_electronics_pipe_api_key": "electronics-key",
        "langbase_travel_pipe_api_key": "travel-key",
        "department_streaming": False,
        "allowed_origin": "http://localhost:3000",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)  # pyright: ignore[reportCallIssue]


ENVELOPE = {
    "id": "chatcmpl-1",
    "object": "chat.completion.chunk",
    "created": 1700000000,
    "model": "gpt-test",
}


def content_chunk(
    text: str,
    *,
    chunk_id: str = "chatcmpl-1",
    finish_reason: str | None = None,
) -> dict[str, Any]:
    return {
        **ENVELOPE,
        "id": chunk_id,
        "choices": [
            {"index": 0, "delta": {"content": text}, "finish_reason": finish_reason}
        ],
    }


def tool_chunk(
    arguments: str,
    *,
    name: str | None = None,
    call_id: str | None = None,
    index: int = 0,
    chunk_id: str = "chatcmpl-1",
) -> dict[str, Any]:
    function: dict[str, Any] = {"arguments": arguments}
    if name is not None:
        function["name"] = name
    tool_delta: dict[str, Any] = {"index": index, "function": function}
    if call_id is not None:
        tool_delta["id"] = call_id
        tool_delta["type"] = "function"
    return {
        **ENVELOPE,
        "id": chunk_id,
        "choices": [
            {"index": 0, "delta": {"tool_calls": [tool_delta]}, "finish_reason": None}
        ],
    }


def sse_text(chunks: Iterable[dict[str, Any]], *, done: bool = True) -> str:
    frames = [f"data: {json.dumps(chunk)}\n\n" for chunk in chunks]
    if done:
        frames.append("data: [DONE]\n\n")
    return "".join(frames)


def split_every(text: str, size: int) -> list[str]:
    return [text[start : start + size] for start in range(0, len(text), size)]


async def iterate(pieces: Iterable[str]) -> AsyncIterator[str]:
    for piece in pieces:
        yield piece


def event_content(event: dict[str, Any]) -> str:
    """Return the delta content carried by an outgoing content event."""

    return json.loads(event["data"])["choices"][0]["delta"]["content"]
