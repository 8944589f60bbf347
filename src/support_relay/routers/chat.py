"""Support chat streaming API routes."""

from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import ValidationError
from sse_starlette.sse import EventSourceResponse

from ..chat import ChatOrchestrator
from ..config import Settings, get_settings
from ..departments import DepartmentDispatcher
from ..schemas.chat import EMPTY_MESSAGES_ERROR, SupportChatRequest
from ..upstream import THREAD_ID_HEADER, UpstreamClient, UpstreamUnavailable

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["chat"])


def get_upstream_client(
    settings: Settings = Depends(get_settings),
) -> UpstreamClient:
    return UpstreamClient(settings)


def get_department_dispatcher(
    settings: Settings = Depends(get_settings),
) -> DepartmentDispatcher:
    return DepartmentDispatcher(settings)


def cors_headers(settings: Settings) -> dict[str, str]:
    return {
        "Access-Control-Allow-Origin": settings.allowed_origin,
        "Access-Control-Allow-Methods": "POST, OPTIONS",
        "Access-Control-Allow-Headers": f"Content-Type, {THREAD_ID_HEADER}",
        "Access-Control-Expose-Headers": THREAD_ID_HEADER,
    }


def _error_response(message: str, settings: Settings) -> JSONResponse:
    return JSONResponse(
        {"error": message},
        status_code=status.HTTP_400_BAD_REQUEST,
        headers=cors_headers(settings),
    )


def _describe_validation_error(exc: ValidationError) -> str:
    for error in exc.errors():
        location = error.get("loc") or ()
        if location and location[0] == "messages":
            return EMPTY_MESSAGES_ERROR
    return "Invalid request body"


@router.options("/chat", status_code=204)
async def chat_preflight(settings: Settings = Depends(get_settings)) -> Response:
    """Answer CORS preflight requests."""

    return Response(status_code=status.HTTP_204_NO_CONTENT, headers=cors_headers(settings))


@router.api_route(
    "/chat",
    methods=["GET", "HEAD", "PUT", "PATCH", "DELETE", "TRACE", "CONNECT"],
    include_in_schema=False,
)
async def chat_method_not_allowed() -> PlainTextResponse:
    return PlainTextResponse(
        "Method Not Allowed", status_code=status.HTTP_405_METHOD_NOT_ALLOWED
    )


@router.post("/chat", response_model=None, status_code=200)
async def stream_support_chat(
    request: Request,
    settings: Settings = Depends(get_settings),
    client: UpstreamClient = Depends(get_upstream_client),
    dispatcher: DepartmentDispatcher = Depends(get_department_dispatcher),
) -> Response:
    """Classify the latest customer message and stream the reply as SSE."""

    if settings.upstream_api_key is None:
        logger.error("Rejecting request: OPENAI_API_KEY is not set")
        return PlainTextResponse(
            "OPENAI_API_KEY is not set",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    try:
        body: Any = await request.json()
    except ValueError:
        return _error_response("Invalid JSON body", settings)

    try:
        payload = SupportChatRequest.model_validate(body)
    except ValidationError as exc:
        message = _describe_validation_error(exc)
        logger.info("Rejecting request: %s", message)
        return _error_response(message, settings)

    thread_id = payload.thread_id or request.headers.get(THREAD_ID_HEADER) or None

    orchestrator = ChatOrchestrator(settings, client, dispatcher)
    try:
        prepared = await orchestrator.start(payload, thread_id=thread_id)
    except UpstreamUnavailable as exc:
        detail = exc.detail if isinstance(exc.detail, str) else json.dumps(exc.detail)
        logger.error("Chat backend unavailable (%s): %s", exc.status_code, detail)
        return PlainTextResponse(
            f"Chat service unavailable: {detail}",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    headers = cors_headers(settings)
    headers.update(
        {
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            THREAD_ID_HEADER: prepared.thread_id or "",
        }
    )
    return EventSourceResponse(prepared.events, headers=headers, sep="\n")


__all__ = [
    "cors_headers",
    "get_department_dispatcher",
    "get_upstream_client",
    "router",
]
