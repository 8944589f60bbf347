"""Line framing and decoding for upstream Server-Sent Event streams."""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterable, AsyncIterator

from .types import ChatDelta, ContentDelta, Envelope, ToolCallDelta

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "
DONE_LINE = "data: [DONE]"

_DATA_FIELD = "data:"
_CONTROL_FIELDS = (":", "event:", "id:", "retry:")


class SseLineBuffer:
    """Split arbitrarily chunked text into complete newline-terminated lines.

    The trailing segment of every chunk is carried over until the newline that
    completes it arrives, so a line split across chunk boundaries is yielded
    exactly once and in order.
    """

    def __init__(self) -> None:
        self._carry = ""

    def feed(self, text: str) -> list[str]:
        if not text:
            return []
        self._carry += text
        *lines, self._carry = self._carry.split("\n")
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> list[str]:
        """Return whatever is left once the stream has ended."""

        remainder, self._carry = self._carry, ""
        remainder = remainder.rstrip("\r")
        return [remainder] if remainder else []


async def iter_lines(chunks: AsyncIterable[str]) -> AsyncIterator[str]:
    buffer = SseLineBuffer()
    async for chunk in chunks:
        for line in buffer.feed(chunk):
            yield line
    for line in buffer.flush():
        yield line


def data_payload(line: str) -> str | None:
    """Return the value of a `data:` field line, or ``None`` for any other line."""

    if not line.startswith(_DATA_FIELD):
        return None
    payload = line[len(_DATA_FIELD):]
    return payload[1:] if payload.startswith(" ") else payload


def is_control_line(line: str) -> bool:
    """Comments and the non-data SSE fields carry nothing to forward."""

    return line.startswith(_CONTROL_FIELDS)


def is_done_line(line: str) -> bool:
    payload = data_payload(line)
    return payload is not None and payload.strip() == "[DONE]"


def decode_data_line(line: str) -> dict[str, Any] | None:
    """Return the JSON object carried by a `data:` line.

    Other lines, blank payloads and malformed JSON yield ``None``;
    decode failures are logged and never raised.
    """

    payload = data_payload(line)
    if payload is None:
        return None
    payload = payload.strip()
    if not payload:
        return None
    try:
        chunk = json.loads(payload)
    except json.JSONDecodeError as exc:
        logger.debug("Skipping non-JSON SSE payload (%s): %s", exc.msg, payload)
        return None
    if not isinstance(chunk, dict):
        logger.debug("Skipping non-object SSE payload: %s", payload)
        return None
    return chunk


def extract_deltas(chunk: dict[str, Any]) -> list[ChatDelta]:
    """Turn one decoded chunk into content and tool-call deltas, in order."""

    envelope = Envelope.from_chunk(chunk)
    deltas: list[ChatDelta] = []

    choices = chunk.get("choices") or []
    if not isinstance(choices, list):
        return deltas

    for choice in choices:
        if not isinstance(choice, dict):
            continue
        delta = choice.get("delta") or {}
        if not isinstance(delta, dict):
            continue

        content = delta.get("content")
        finish_reason = choice.get("finish_reason")
        if not isinstance(finish_reason, str) or not finish_reason:
            finish_reason = None
        if isinstance(content, str) and content:
            deltas.append(
                ContentDelta(
                    text=content,
                    envelope=envelope,
                    finish_reason=finish_reason,
                )
            )
        elif finish_reason and not delta.get("tool_calls"):
            # Bare finish marker, forwarded as an empty content frame.
            deltas.append(
                ContentDelta(text="", envelope=envelope, finish_reason=finish_reason)
            )

        for tool_delta in delta.get("tool_calls") or []:
            if not isinstance(tool_delta, dict):
                continue
            function = tool_delta.get("function") or {}
            if not isinstance(function, dict):
                function = {}
            index = tool_delta.get("index")
            name = function.get("name")
            arguments = function.get("arguments")
            call_id = tool_delta.get("id")
            deltas.append(
                ToolCallDelta(
                    index=index if isinstance(index, int) else 0,
                    arguments_fragment=arguments if isinstance(arguments, str) else "",
                    envelope=envelope,
                    name=name if isinstance(name, str) and name else None,
                    call_id=call_id if isinstance(call_id, str) and call_id else None,
                )
            )

    return deltas


__all__ = [
    "DATA_PREFIX",
    "DONE_LINE",
    "SseLineBuffer",
    "data_payload",
    "decode_data_line",
    "extract_deltas",
    "is_control_line",
    "is_done_line",
    "iter_lines",
]
