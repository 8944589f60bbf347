"""Client for the main chat backend (OpenAI chat-completions protocol)."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

import httpx
from fastapi import status

from .config import Settings

logger = logging.getLogger(__name__)

THREAD_ID_HEADER = "lb-thread-id"


class UpstreamUnavailable(Exception):
    """Wrap transport or API failures when communicating with the chat backend."""

    def __init__(self, status_code: int, detail: Any):
        super().__init__(str(detail))
        self.status_code = status_code
        self.detail = detail


class UpstreamTurn:
    """One upstream reply, exposed as decoded text chunks.

    ``thread_id`` holds the continuation token the backend returned, if any.
    """

    def __init__(
        self,
        chunks: AsyncIterator[str],
        *,
        thread_id: Optional[str] = None,
        on_close: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> None:
        self._chunks = chunks
        self.thread_id = thread_id
        self._on_close = on_close
        self._closed = False

    def __aiter__(self) -> AsyncIterator[str]:
        return self._chunks

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._on_close is not None:
            await self._on_close()

    @classmethod
    def from_text(cls, text: str, *, thread_id: Optional[str] = None) -> "UpstreamTurn":
        async def _single() -> AsyncIterator[str]:
            yield text

        return cls(_single(), thread_id=thread_id)


class UpstreamClient:
    """Client responsible for chat completions against the main backend."""

    _client_lock: asyncio.Lock = asyncio.Lock()
    _client_pool: dict[tuple[str, float], httpx.AsyncClient] = {}

    def __init__(
        self,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._settings = settings
        self._transport = transport
        self._own_client: httpx.AsyncClient | None = None

    def _client_key(self) -> tuple[str, float]:
        return (self._base_url, float(self._settings.upstream_timeout))

    def _timeout(self) -> httpx.Timeout:
        return httpx.Timeout(self._settings.upstream_timeout, connect=10.0)

    async def _get_http_client(self) -> httpx.AsyncClient:
        if self._transport is not None:
            if self._own_client is None:
                self._own_client = httpx.AsyncClient(
                    transport=self._transport, timeout=self._timeout()
                )
            return self._own_client

        key = self._client_key()
        client = self.__class__._client_pool.get(key)
        if client is not None:
            return client

        async with self.__class__._client_lock:
            client = self.__class__._client_pool.get(key)
            if client is None:
                limits = httpx.Limits(
                    max_connections=50,
                    max_keepalive_connections=20,
                )
                client = httpx.AsyncClient(
                    timeout=self._timeout(),
                    limits=limits,
                    http2=True,
                )
                self.__class__._client_pool[key] = client
        return client

    def _headers(self, thread_id: Optional[str], *, stream: bool) -> dict[str, str]:
        api_key = self._settings.upstream_api_key
        headers = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream" if stream else "application/json",
        }
        if api_key is not None:
            headers["Authorization"] = f"Bearer {api_key.get_secret_value()}"
        if thread_id:
            headers[THREAD_ID_HEADER] = thread_id
        return headers

    @property
    def _base_url(self) -> str:
        """Return the chat backend base URL without a trailing slash."""

        return str(self._settings.upstream_base_url).rstrip("/")

    async def open_chat_stream(
        self,
        payload: dict[str, Any],
        *,
        thread_id: Optional[str] = None,
    ) -> UpstreamTurn:
        """Start a streaming completion and return once the status is known.

        The response body is left open; iterating the returned turn reads it
        and ``aclose()`` releases the connection.
        """

        url = f"{self._base_url}/chat/completions"
        body = dict(payload)
        body["stream"] = True

        client = await self._get_http_client()
        request = client.build_request(
            "POST",
            url,
            headers=self._headers(thread_id, stream=True),
            json=body,
        )
        try:
            response = await client.send(request, stream=True)
        except httpx.TimeoutException as exc:
            raise UpstreamUnavailable(status.HTTP_504_GATEWAY_TIMEOUT, str(exc)) from exc
        except httpx.HTTPError as exc:
            raise UpstreamUnavailable(status.HTTP_502_BAD_GATEWAY, str(exc)) from exc

        if not response.is_success:
            raw = await response.aread()
            await response.aclose()
            detail = self._extract_error_detail(raw)
            logger.error("Chat backend returned %s: %s", response.status_code, detail)
            raise UpstreamUnavailable(response.status_code, detail)

        returned_thread_id = response.headers.get(THREAD_ID_HEADER) or None

        async def _chunks() -> AsyncIterator[str]:
            try:
                async for text in response.aiter_text():
                    yield text
            except httpx.TimeoutException as exc:
                raise UpstreamUnavailable(
                    status.HTTP_504_GATEWAY_TIMEOUT, str(exc)
                ) from exc
            except httpx.HTTPError as exc:
                raise UpstreamUnavailable(status.HTTP_502_BAD_GATEWAY, str(exc)) from exc

        return UpstreamTurn(
            _chunks(),
            thread_id=returned_thread_id,
            on_close=response.aclose,
        )

    async def create_completion(
        self,
        payload: dict[str, Any],
        *,
        thread_id: Optional[str] = None,
    ) -> tuple[dict[str, Any], Optional[str]]:
        """Request a non-streaming completion.

        Returns the decoded body together with any thread id the backend sent.
        """

        url = f"{self._base_url}/chat/completions"
        body = dict(payload)
        body["stream"] = False

        client = await self._get_http_client()
        try:
            response = await client.post(
                url,
                headers=self._headers(thread_id, stream=False),
                json=body,
            )
        except httpx.TimeoutException as exc:
            raise UpstreamUnavailable(status.HTTP_504_GATEWAY_TIMEOUT, str(exc)) from exc
        except httpx.HTTPError as exc:
            raise UpstreamUnavailable(status.HTTP_502_BAD_GATEWAY, str(exc)) from exc

        if not response.is_success:
            detail = self._extract_error_detail(response.content)
            logger.error("Chat backend returned %s: %s", response.status_code, detail)
            raise UpstreamUnavailable(response.status_code, detail)

        try:
            data = response.json()
        except ValueError as exc:
            raise UpstreamUnavailable(status.HTTP_502_BAD_GATEWAY, str(exc)) from exc
        if not isinstance(data, dict):
            raise UpstreamUnavailable(
                status.HTTP_502_BAD_GATEWAY, "Completion response is not an object"
            )

        return data, response.headers.get(THREAD_ID_HEADER) or None

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

    @staticmethod
    def _extract_error_detail(raw: bytes) -> Any:
        if not raw:
            return "Chat backend returned an empty error response."
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError:
            text = raw.decode("utf-8", errors="ignore")
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            return text
        if isinstance(payload, dict):
            return payload.get("error") or payload
        return payload


__all__ = ["THREAD_ID_HEADER", "UpstreamClient", "UpstreamTurn", "UpstreamUnavailable"]
