from __future__ import annotations

import json
from typing import Any, Callable, Iterator

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from streams import content_chunk, make_settings, sse_text, tool_chunk

from support_relay.config import Settings, get_settings
from support_relay.departments import DepartmentDispatcher
from support_relay.routers.chat import (
    get_department_dispatcher,
    get_upstream_client,
    router,
)
from support_relay.upstream import UpstreamClient

Handler = Callable[[httpx.Request], httpx.Response]

SNEAKERS_STREAM = sse_text(
    [
        tool_chunk("", name="call_sports_dept", call_id="call_1"),
        tool_chunk('{"customerQuery": '),
        tool_chunk('"my sneakers broke"}', chunk_id="chatcmpl-last"),
    ]
)


@pytest.fixture(autouse=True)
def reset_sse_app_status() -> Iterator[None]:
    # sse-starlette keeps a module-level exit event bound to the first event loop.
    from sse_starlette.sse import AppStatus

    if hasattr(AppStatus, "should_exit_event"):
        AppStatus.should_exit_event = None  # type: ignore[assignment]
    yield


class Recorder:
    def __init__(self, handler: Handler) -> None:
        self.handler = handler
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)


def stream_response(body: str, *, thread_id: str | None = None) -> httpx.Response:
    headers = {"content-type": "text/event-stream"}
    if thread_id:
        headers["lb-thread-id"] = thread_id
    return httpx.Response(200, content=body.encode(), headers=headers)


def department_ok(request: httpx.Request) -> httpx.Response:
    return httpx.Response(
        200, json={"completion": json.dumps({"Ticket No.": 42, "Classification": "sports"})}
    )


def make_client(
    upstream: Recorder,
    department: Recorder | None = None,
    settings: Settings | None = None,
) -> TestClient:
    app = FastAPI()
    resolved = settings or make_settings()
    department = department or Recorder(department_ok)

    def _override_settings() -> Settings:
        return resolved

    def _override_upstream() -> UpstreamClient:
        return UpstreamClient(resolved, transport=httpx.MockTransport(upstream))

    def _override_dispatcher() -> DepartmentDispatcher:
        return DepartmentDispatcher(resolved, transport=httpx.MockTransport(department))

    app.dependency_overrides[get_settings] = _override_settings
    app.dependency_overrides[get_upstream_client] = _override_upstream
    app.dependency_overrides[get_department_dispatcher] = _override_dispatcher
    app.include_router(router)
    return TestClient(app)


def frames(text: str) -> list[str]:
    return [frame for frame in text.split("\n\n") if frame.strip()]


def frame_content(frame: str) -> Any:
    assert frame.startswith("data: ")
    return json.loads(frame[len("data: "):])["choices"][0]["delta"]["content"]


def test_sneakers_request_streams_ticket() -> None:
    upstream = Recorder(lambda request: stream_response(SNEAKERS_STREAM, thread_id="thread-xyz"))
    department = Recorder(department_ok)
    client = make_client(upstream, department)

    response = client.post(
        "/api/chat",
        json={
            "messages": [{"role": "user", "content": "my sneakers broke"}],
            "threadId": "thread-abc",
        },
    )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    assert response.headers["lb-thread-id"] == "thread-xyz"
    assert response.headers["access-control-allow-origin"] == "http://localhost:3000"

    body_frames = frames(response.text)
    assert frame_content(body_frames[0]) == "Ticket No. 42"
    assert json.loads(body_frames[0][len("data: "):])["id"] == "chatcmpl-last"
    assert body_frames[-1] == "data: [DONE]"
    assert len(body_frames) == 2

    upstream_request = upstream.requests[0]
    assert upstream_request.headers["lb-thread-id"] == "thread-abc"
    upstream_body = json.loads(upstream_request.content)
    assert upstream_body["stream"] is True
    assert [tool["function"]["name"] for tool in upstream_body["tools"]] == [
        "call_sports_dept",
        "call_electronics_dept",
        "call_travel_dept",
    ]
    assert upstream_body["messages"][-1] == {
        "role": "user",
        "content": "my sneakers broke",
    }

    department_body = json.loads(department.requests[0].content)
    assert department_body["messages"] == [
        {"role": "user", "content": "my sneakers broke"}
    ]
    assert department_body["threadId"] == "thread-abc"


def test_thread_id_header_is_used_and_echoed() -> None:
    body = sse_text([content_chunk("Hello!")])
    upstream = Recorder(lambda request: stream_response(body))
    client = make_client(upstream)

    response = client.post(
        "/api/chat",
        json={"messages": [{"role": "user", "content": "hi"}]},
        headers={"lb-thread-id": "thread-hdr"},
    )

    assert response.status_code == 200
    assert upstream.requests[0].headers["lb-thread-id"] == "thread-hdr"
    assert response.headers["lb-thread-id"] == "thread-hdr"
    body_frames = frames(response.text)
    assert frame_content(body_frames[0]) == "Hello!"
    assert body_frames[-1] == "data: [DONE]"


def test_department_failure_streams_apology() -> None:
    upstream = Recorder(lambda request: stream_response(SNEAKERS_STREAM))
    department = Recorder(lambda request: httpx.Response(503))
    client = make_client(upstream, department)

    response = client.post(
        "/api/chat", json={"messages": [{"role": "user", "content": "my sneakers broke"}]}
    )

    assert response.status_code == 200
    body_frames = frames(response.text)
    assert "503 Service Unavailable" in frame_content(body_frames[0])
    assert body_frames[-1] == "data: [DONE]"


def test_summary_turn_follows_department_result() -> None:
    replies = [
        stream_response(SNEAKERS_STREAM, thread_id="thread-1"),
        stream_response(sse_text([content_chunk("Your ticket number is 42.")])),
    ]
    upstream = Recorder(lambda request: replies.pop(0))
    client = make_client(upstream, settings=make_settings(summarize_after_tools=True))

    response = client.post(
        "/api/chat", json={"messages": [{"role": "user", "content": "my sneakers broke"}]}
    )

    body_frames = frames(response.text)
    assert [frame_content(frame) for frame in body_frames[:-1]] == [
        "Ticket No. 42",
        "Your ticket number is 42.",
    ]
    assert body_frames[-1] == "data: [DONE]"
    follow_up = upstream.requests[1]
    assert follow_up.headers["lb-thread-id"] == "thread-1"
    roles = [message["role"] for message in json.loads(follow_up.content)["messages"]]
    assert roles == ["system", "user", "assistant", "tool", "user"]


def test_single_shot_mode_matches_streaming_output() -> None:
    completion = {
        "id": "chatcmpl-1",
        "object": "chat.completion",
        "created": 1700000000,
        "model": "gpt-test",
        "choices": [
            {
                "index": 0,
                "message": {
                    "role": "assistant",
                    "content": None,
                    "tool_calls": [
                        {
                            "id": "call_1",
                            "type": "function",
                            "function": {
                                "name": "call_sports_dept",
                                "arguments": '{"customerQuery": "my sneakers broke"}',
                            },
                        }
                    ],
                },
                "finish_reason": "tool_calls",
            }
        ],
    }
    upstream = Recorder(lambda request: httpx.Response(200, json=completion))
    client = make_client(upstream, settings=make_settings(classifier_mode="single_shot"))

    response = client.post(
        "/api/chat", json={"messages": [{"role": "user", "content": "my sneakers broke"}]}
    )

    body_frames = frames(response.text)
    assert frame_content(body_frames[0]) == "Ticket No. 42"
    assert body_frames[-1] == "data: [DONE]"
    assert json.loads(upstream.requests[0].content)["stream"] is False


def test_upstream_failure_returns_plain_500() -> None:
    upstream = Recorder(
        lambda request: httpx.Response(503, json={"error": {"message": "overloaded"}})
    )
    client = make_client(upstream)

    response = client.post("/api/chat", json={"messages": [{"role": "user", "content": "hi"}]})

    assert response.status_code == 500
    assert response.text.startswith("Chat service unavailable")
    assert "overloaded" in response.text


def test_missing_api_key_returns_500() -> None:
    upstream = Recorder(lambda request: stream_response(""))
    client = make_client(upstream, settings=make_settings(upstream_api_key=None))

    response = client.post("/api/chat", json={"messages": [{"role": "user", "content": "hi"}]})

    assert response.status_code == 500
    assert response.text == "OPENAI_API_KEY is not set"
    assert upstream.requests == []


@pytest.mark.parametrize(
    "payload",
    [{"messages": []}, {}, {"messages": "hello"}],
)
def test_invalid_messages_return_400(payload: dict[str, Any]) -> None:
    upstream = Recorder(lambda request: stream_response(""))
    client = make_client(upstream)

    response = client.post("/api/chat", json=payload)

    assert response.status_code == 400
    assert response.json() == {"error": "Invalid or empty messages array"}
    assert response.headers["access-control-allow-origin"] == "http://localhost:3000"
    assert upstream.requests == []


def test_invalid_json_returns_400() -> None:
    client = make_client(Recorder(lambda request: stream_response("")))

    response = client.post(
        "/api/chat", content=b"{not json", headers={"content-type": "application/json"}
    )

    assert response.status_code == 400
    assert response.json() == {"error": "Invalid JSON body"}


def test_preflight_returns_cors_headers() -> None:
    client = make_client(Recorder(lambda request: stream_response("")))

    response = client.options("/api/chat")

    assert response.status_code == 204
    assert response.headers["access-control-allow-origin"] == "http://localhost:3000"
    assert "POST" in response.headers["access-control-allow-methods"]
    assert "lb-thread-id" in response.headers["access-control-allow-headers"]


@pytest.mark.parametrize("method", ["GET", "PUT", "PATCH", "DELETE", "TRACE"])
def test_other_methods_are_rejected(method: str) -> None:
    client = make_client(Recorder(lambda request: stream_response("")))

    response = client.request(method, "/api/chat")

    assert response.status_code == 405
    assert response.text == "Method Not Allowed"
    assert response.headers["content-type"].startswith("text/plain")


def test_head_is_rejected() -> None:
    client = make_client(Recorder(lambda request: stream_response("")))

    response = client.head("/api/chat")

    assert response.status_code == 405
    assert response.headers["content-type"].startswith("text/plain")
