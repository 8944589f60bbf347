"""Conversation streaming orchestration."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any, AsyncGenerator, Optional

from ...departments import (
    DepartmentDispatcher,
    DepartmentUnavailable,
    apology_text,
    department_for_function,
    render_body_text,
)
from ...upstream import UpstreamTurn, UpstreamUnavailable
from .frames import content_event, done_event, raw_event
from .parser import (
    data_payload,
    decode_data_line,
    extract_deltas,
    is_control_line,
    is_done_line,
    iter_lines,
)
from .tooling import ToolCallAccumulator
from .types import CompletedToolCall, ContentDelta, Envelope, SseEvent, ToolCallDelta

if TYPE_CHECKING:
    from ..classifiers import Classifier


logger = logging.getLogger(__name__)

ResolvedCall = tuple[CompletedToolCall, str]

NO_RESPONSE_GENERATED = "No response generated."


class StreamingHandler:
    """Re-stream upstream turns, resolving department tool calls mid-stream."""

    def __init__(
        self,
        classifier: Classifier,
        dispatcher: DepartmentDispatcher,
        *,
        summary_prompt: str,
        summarize_after_tools: bool = True,
        max_summary_turns: int = 3,
    ) -> None:
        self._classifier = classifier
        self._dispatcher = dispatcher
        self._summary_prompt = summary_prompt
        self._summarize_after_tools = summarize_after_tools
        self._max_summary_turns = max_summary_turns

    async def stream_conversation(
        self,
        first_turn: UpstreamTurn,
        conversation: list[dict[str, Any]],
        *,
        customer_query: str,
        thread_id: Optional[str] = None,
    ) -> AsyncGenerator[SseEvent, None]:
        """Yield SSE events for the opened turn and any follow-up summary turns.

        ``thread_id`` is the caller's token; it is forwarded to departments
        unchanged, while follow-up turns use whatever the backend returned.
        """

        conversation_state = list(conversation)
        turn = first_turn
        upstream_thread_id = first_turn.thread_id or thread_id
        summary_turns = 0

        while True:
            resolved: list[ResolvedCall] = []
            try:
                async for event in self._stream_turn(
                    turn,
                    resolved,
                    customer_query=customer_query,
                    thread_id=thread_id,
                ):
                    yield event
            except UpstreamUnavailable as exc:
                logger.error("Upstream stream failed mid-response: %s", exc.detail)
                yield content_event(Envelope(), f"Error: {_describe(exc.detail)}")
                break
            finally:
                await turn.aclose()

            if not resolved or not self._summarize_after_tools:
                break

            if summary_turns >= self._max_summary_turns:
                logger.warning(
                    "Stopping after %d summary turns with tool calls still pending",
                    summary_turns,
                )
                break
            summary_turns += 1

            for call, result_text in resolved:
                conversation_state.append(
                    {
                        "role": "assistant",
                        "content": None,
                        "tool_calls": [call.to_message_dict()],
                    }
                )
                conversation_state.append(
                    {
                        "role": "tool",
                        "tool_call_id": call.call_id,
                        "content": result_text,
                    }
                )
            conversation_state.append({"role": "user", "content": self._summary_prompt})

            try:
                turn = await self._classifier.start_turn(
                    conversation_state, upstream_thread_id
                )
            except UpstreamUnavailable as exc:
                logger.error("Summary turn could not be started: %s", exc.detail)
                yield content_event(Envelope(), f"Error: {_describe(exc.detail)}")
                break
            if turn.thread_id:
                upstream_thread_id = turn.thread_id

        yield done_event()

    async def _stream_turn(
        self,
        turn: UpstreamTurn,
        resolved: list[ResolvedCall],
        *,
        customer_query: str,
        thread_id: Optional[str],
    ) -> AsyncGenerator[SseEvent, None]:
        accumulator = ToolCallAccumulator()
        # Content that arrives while a call is accumulating waits for its result.
        held: list[ContentDelta] = []
        envelope = Envelope()
        emitted = False

        async for line in iter_lines(turn):
            if is_done_line(line):
                break
            chunk = decode_data_line(line)
            if chunk is None:
                continue
            envelope = Envelope.from_chunk(chunk)

            for delta in extract_deltas(chunk):
                if isinstance(delta, ToolCallDelta):
                    completed = accumulator.feed(delta)
                    if completed is None:
                        continue
                    async for event in self._resolve(
                        completed,
                        resolved,
                        customer_query=customer_query,
                        thread_id=thread_id,
                    ):
                        emitted = True
                        yield event
                    for pending in held:
                        emitted = emitted or bool(pending.text)
                        yield _content(pending)
                    held.clear()
                elif accumulator.is_accumulating:
                    held.append(delta)
                else:
                    emitted = emitted or bool(delta.text)
                    yield _content(delta)

        accumulator.discard()
        for pending in held:
            emitted = emitted or bool(pending.text)
            yield _content(pending)

        if not emitted:
            logger.info("Turn produced no content; sending the fallback reply")
            yield content_event(envelope, NO_RESPONSE_GENERATED)

    async def _resolve(
        self,
        call: CompletedToolCall,
        resolved: list[ResolvedCall],
        *,
        customer_query: str,
        thread_id: Optional[str],
    ) -> AsyncGenerator[SseEvent, None]:
        department = department_for_function(call.name)
        if department is None:
            logger.warning("Ignoring call to unknown function %s", call.name)
            return

        query = call.arguments.get("customerQuery")
        if not isinstance(query, str) or not query.strip():
            query = customer_query

        if self._dispatcher.streaming:
            fragments: list[str] = []
            department_stream = self._dispatcher.dispatch_stream(
                department, query, thread_id
            )
            try:
                async for line in iter_lines(department_stream):
                    if is_done_line(line):
                        break
                    payload = data_payload(line)
                    if payload is not None:
                        yield raw_event(payload)
                        chunk = decode_data_line(line)
                        if chunk is not None:
                            fragments.extend(
                                delta.text
                                for delta in extract_deltas(chunk)
                                if isinstance(delta, ContentDelta)
                            )
                    elif line.strip() and not is_control_line(line):
                        # Unframed department text is wrapped as content.
                        text = render_body_text(line)
                        if fragments:
                            text = "\n" + text
                        fragments.append(text)
                        yield content_event(call.envelope, text)
                result_text = "".join(fragments)
            except DepartmentUnavailable as exc:
                logger.warning("Department call failed: %s", exc)
                result_text = apology_text(exc)
                yield content_event(call.envelope, result_text)
            finally:
                await department_stream.aclose()
        else:
            try:
                result_text = await self._dispatcher.dispatch(department, query, thread_id)
            except DepartmentUnavailable as exc:
                logger.warning("Department call failed: %s", exc)
                result_text = apology_text(exc)
            yield content_event(call.envelope, result_text)

        resolved.append((call, result_text))


def _content(delta: ContentDelta) -> SseEvent:
    return content_event(delta.envelope, delta.text, finish_reason=delta.finish_reason)


def _describe(detail: Any) -> str:
    return detail if isinstance(detail, str) else json.dumps(detail)


__all__ = ["NO_RESPONSE_GENERATED", "StreamingHandler"]
