"""Classifier capabilities that turn a conversation into an upstream turn."""

from __future__ import annotations

import json
from typing import Any, Optional, Protocol

from fastapi import status

from ..config import Settings
from ..upstream import UpstreamClient, UpstreamTurn, UpstreamUnavailable
from .streaming.frames import build_content_chunk
from .streaming.parser import DONE_LINE
from .streaming.types import Envelope

NO_RESPONSE_TEXT = "Sorry, I couldn't process your request."


def _department_tool(name: str, description: str, topic: str) -> dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {
                "type": "object",
                "properties": {
                    "customerQuery": {
                        "type": "string",
                        "description": f"The customer query related to {topic}",
                    },
                },
                "required": ["customerQuery"],
            },
        },
    }


DEPARTMENT_TOOLS: list[dict[str, Any]] = [
    _department_tool(
        "call_sports_dept",
        "Call this function for queries related to sports gear and clothes",
        "sports gear",
    ),
    _department_tool(
        "call_electronics_dept",
        "Call this function for queries related to electronics and appliances",
        "electronics and appliances",
    ),
    _department_tool(
        "call_travel_dept",
        "Call this function for queries related to travel bags and suitcases",
        "travel bags and suitcases",
    ),
]


class Classifier(Protocol):
    async def start_turn(
        self,
        messages: list[dict[str, Any]],
        thread_id: Optional[str] = None,
    ) -> UpstreamTurn:
        ...


def build_payload(model: str, messages: list[dict[str, Any]]) -> dict[str, Any]:
    return {
        "model": model,
        "messages": messages,
        "tools": DEPARTMENT_TOOLS,
        "tool_choice": "auto",
    }


class StreamingClassifier:
    """Let the model stream its reply; tool calls arrive as incremental fragments."""

    def __init__(self, client: UpstreamClient, *, model: str) -> None:
        self._client = client
        self._model = model

    async def start_turn(
        self,
        messages: list[dict[str, Any]],
        thread_id: Optional[str] = None,
    ) -> UpstreamTurn:
        payload = build_payload(self._model, messages)
        return await self._client.open_chat_stream(payload, thread_id=thread_id)


class SingleShotClassifier:
    """Ask for one complete reply and replay it as an SSE stream."""

    def __init__(self, client: UpstreamClient, *, model: str) -> None:
        self._client = client
        self._model = model

    async def start_turn(
        self,
        messages: list[dict[str, Any]],
        thread_id: Optional[str] = None,
    ) -> UpstreamTurn:
        payload = build_payload(self._model, messages)
        completion, returned_thread_id = await self._client.create_completion(
            payload, thread_id=thread_id
        )
        return UpstreamTurn.from_text(
            completion_to_sse(completion), thread_id=returned_thread_id
        )


def completion_to_sse(completion: dict[str, Any]) -> str:
    """Express a non-streaming completion as the equivalent chunk stream.

    Each tool call becomes one chunk carrying its full argument text; a plain
    reply becomes a single content chunk. The text always ends with ``[DONE]``.
    """

    choices = completion.get("choices")
    message = None
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        message = choices[0].get("message")
    if not isinstance(message, dict):
        raise UpstreamUnavailable(
            status.HTTP_502_BAD_GATEWAY, "Completion response missing message"
        )

    envelope = Envelope(
        id=completion.get("id"),
        created=completion.get("created"),
        model=completion.get("model"),
    )
    frames: list[str] = []

    tool_calls = message.get("tool_calls") or []
    for index, call in enumerate(tool_calls):
        if not isinstance(call, dict):
            continue
        function = call.get("function") or {}
        chunk = envelope.asdict()
        chunk["choices"] = [
            {
                "index": 0,
                "delta": {
                    "tool_calls": [
                        {
                            "index": index,
                            "id": call.get("id"),
                            "type": "function",
                            "function": {
                                "name": function.get("name"),
                                "arguments": function.get("arguments") or "",
                            },
                        }
                    ]
                },
                "finish_reason": None,
            }
        ]
        frames.append(f"data: {json.dumps(chunk)}")

    if not frames:
        content = message.get("content")
        if not isinstance(content, str) or not content:
            content = NO_RESPONSE_TEXT
        chunk = build_content_chunk(envelope, content, finish_reason="stop")
        frames.append(f"data: {json.dumps(chunk)}")

    frames.append(DONE_LINE)
    return "".join(f"{frame}\n\n" for frame in frames)


def build_classifier(settings: Settings, client: UpstreamClient) -> Classifier:
    if settings.classifier_mode == "single_shot":
        return SingleShotClassifier(client, model=settings.upstream_model)
    return StreamingClassifier(client, model=settings.upstream_model)


__all__ = [
    "Classifier",
    "DEPARTMENT_TOOLS",
    "NO_RESPONSE_TEXT",
    "SingleShotClassifier",
    "StreamingClassifier",
    "build_classifier",
    "build_payload",
    "completion_to_sse",
]
