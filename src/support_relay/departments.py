"""Department pipes: routing table, HTTP dispatch and completion formatting."""

from __future__ import annotations

import asyncio
import json
import logging
from enum import Enum
from typing import Any, AsyncGenerator, Optional

import httpx
from fastapi import status

from .config import Settings

logger = logging.getLogger(__name__)


class Department(str, Enum):
    SPORTS = "sports"
    ELECTRONICS = "electronics"
    TRAVEL = "travel"


FUNCTION_DEPARTMENTS: dict[str, Department] = {
    "call_sports_dept": Department.SPORTS,
    "call_electronics_dept": Department.ELECTRONICS,
    "call_travel_dept": Department.TRAVEL,
}

_CREDENTIAL_FIELDS: dict[Department, str] = {
    Department.SPORTS: "langbase_sports_pipe_api_key",
    Department.ELECTRONICS: "langbase_electronics_pipe_api_key",
    Department.TRAVEL: "langbase_travel_pipe_api_key",
}


def department_for_function(function_name: str | None) -> Department | None:
    if not function_name:
        return None
    return FUNCTION_DEPARTMENTS.get(function_name)


class DepartmentUnavailable(Exception):
    """A department pipe could not produce a completion."""

    def __init__(self, department: Department, status_code: int, status_text: str):
        super().__init__(f"{department.value}: {status_code} {status_text}")
        self.department = department
        self.status_code = status_code
        self.status_text = status_text


def format_completion(raw: str) -> str:
    """Render a pipe completion for the customer.

    Completions that decode to a JSON object are reduced to their first
    key/value pair (``"Ticket No. 42"``); anything else is returned unchanged.
    """

    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return raw
    if not isinstance(parsed, dict) or not parsed:
        return raw
    key, value = next(iter(parsed.items()))
    if not isinstance(value, str):
        value = json.dumps(value)
    return f"{key} {value}"


def render_body_text(text: str) -> str:
    """Render department text that arrived without SSE framing.

    A one-shot `{"completion": ...}` body is formatted like a dispatched reply.
    """

    try:
        payload = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return text
    completion = payload.get("completion") if isinstance(payload, dict) else None
    if not isinstance(completion, str):
        return text
    return format_completion(completion)


def apology_text(error: DepartmentUnavailable) -> str:
    return (
        f"Sorry, our {error.department.value} department could not be reached "
        f"right now (Error: {error.status_code} {error.status_text}). "
        "Please try again in a moment."
    )


class DepartmentDispatcher:
    """Call the department pipes on behalf of the stream handler."""

    _client_lock: asyncio.Lock = asyncio.Lock()
    _client_pool: dict[float, httpx.AsyncClient] = {}

    def __init__(
        self,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._settings = settings
        self._transport = transport
        self._own_client: httpx.AsyncClient | None = None

    def _timeout(self) -> httpx.Timeout:
        return httpx.Timeout(self._settings.department_timeout, connect=10.0)

    async def _get_http_client(self) -> httpx.AsyncClient:
        if self._transport is not None:
            if self._own_client is None:
                self._own_client = httpx.AsyncClient(
                    transport=self._transport, timeout=self._timeout()
                )
            return self._own_client

        key = float(self._settings.department_timeout)
        client = self.__class__._client_pool.get(key)
        if client is not None:
            return client

        async with self.__class__._client_lock:
            client = self.__class__._client_pool.get(key)
            if client is None:
                client = httpx.AsyncClient(
                    timeout=self._timeout(),
                    limits=httpx.Limits(
                        max_connections=20,
                        max_keepalive_connections=10,
                    ),
                    http2=True,
                )
                self.__class__._client_pool[key] = client
        return client

    @property
    def streaming(self) -> bool:
        return self._settings.department_streaming

    def _headers(self, department: Department) -> dict[str, str]:
        credential = getattr(self._settings, _CREDENTIAL_FIELDS[department])
        if credential is None:
            raise DepartmentUnavailable(
                department,
                status.HTTP_500_INTERNAL_SERVER_ERROR,
                "Credential not configured",
            )
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {credential.get_secret_value()}",
        }

    @staticmethod
    def _body(
        customer_query: str,
        thread_id: Optional[str],
        *,
        stream: bool | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "messages": [{"role": "user", "content": customer_query}],
        }
        if thread_id:
            body["threadId"] = thread_id
        if stream is not None:
            body["stream"] = stream
        return body

    async def dispatch(
        self,
        department: Department,
        customer_query: str,
        thread_id: Optional[str] = None,
    ) -> str:
        """POST the query to the department pipe and return the rendered completion."""

        logger.info("Calling %s department with query: %s", department.value, customer_query)
        headers = self._headers(department)
        client = await self._get_http_client()
        try:
            response = await client.post(
                str(self._settings.department_url),
                headers=headers,
                json=self._body(customer_query, thread_id),
            )
        except httpx.TimeoutException as exc:
            raise DepartmentUnavailable(
                department, status.HTTP_504_GATEWAY_TIMEOUT, "Gateway Timeout"
            ) from exc
        except httpx.HTTPError as exc:
            raise DepartmentUnavailable(
                department, status.HTTP_502_BAD_GATEWAY, "Bad Gateway"
            ) from exc

        if not response.is_success:
            raise DepartmentUnavailable(
                department, response.status_code, response.reason_phrase
            )

        try:
            payload = response.json()
        except ValueError:
            logger.warning(
                "%s department returned a non-JSON body; passing it through",
                department.value,
            )
            return response.text

        completion = payload.get("completion") if isinstance(payload, dict) else None
        if not isinstance(completion, str):
            logger.warning(
                "%s department response has no completion text; passing it through",
                department.value,
            )
            return response.text
        return format_completion(completion)

    async def dispatch_stream(
        self,
        department: Department,
        customer_query: str,
        thread_id: Optional[str] = None,
    ) -> AsyncGenerator[str, None]:
        """Yield the department's streamed body as decoded text chunks."""

        logger.info(
            "Streaming %s department with query: %s", department.value, customer_query
        )
        headers = self._headers(department)
        client = await self._get_http_client()
        try:
            async with client.stream(
                "POST",
                str(self._settings.department_url),
                headers=headers,
                json=self._body(customer_query, thread_id, stream=True),
            ) as response:
                if not response.is_success:
                    await response.aread()
                    raise DepartmentUnavailable(
                        department, response.status_code, response.reason_phrase
                    )
                async for text in response.aiter_text():
                    yield text
        except httpx.TimeoutException as exc:
            raise DepartmentUnavailable(
                department, status.HTTP_504_GATEWAY_TIMEOUT, "Gateway Timeout"
            ) from exc
        except httpx.HTTPError as exc:
            raise DepartmentUnavailable(
                department, status.HTTP_502_BAD_GATEWAY, "Bad Gateway"
            ) from exc

    async def aclose(self) -> None:
        if self._own_client is not None:
            await self._own_client.aclose()
            self._own_client = None

    @classmethod
    async def aclose_shared(cls) -> None:
        async with cls._client_lock:
            clients = list(cls._client_pool.values())
            cls._client_pool.clear()
        for client in clients:
            try:
                await client.aclose()
            except Exception:  # pragma: no cover - best effort cleanup
                pass


__all__ = [
    "Department",
    "DepartmentDispatcher",
    "DepartmentUnavailable",
    "FUNCTION_DEPARTMENTS",
    "apology_text",
    "department_for_function",
    "format_completion",
    "render_body_text",
]
