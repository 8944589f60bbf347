"""Accumulation of streamed tool-call fragments."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from .types import CompletedToolCall, ToolCallDelta

logger = logging.getLogger(__name__)


@dataclass
class PendingToolCall:
    name: str | None = None
    arguments_buffer: str = ""
    index: int = 0
    call_id: str | None = None

    def parsed_arguments(self) -> dict[str, Any] | None:
        """Return the arguments once the buffer looks finished and parses.

        The buffer is only tried when it ends with ``}``; a parse failure means
        "keep accumulating", never an error.
        """

        text = self.arguments_buffer.rstrip()
        if not self.name or not text.endswith("}"):
            return None
        try:
            value = json.loads(text)
        except json.JSONDecodeError:
            return None
        if not isinstance(value, dict):
            return None
        return value


class ToolCallAccumulator:
    """Track at most one in-flight tool call across streamed deltas."""

    def __init__(self) -> None:
        self._pending: PendingToolCall | None = None

    @property
    def pending(self) -> PendingToolCall | None:
        return self._pending

    @property
    def is_accumulating(self) -> bool:
        return self._pending is not None

    def feed(self, delta: ToolCallDelta) -> CompletedToolCall | None:
        """Absorb one fragment and return the call if it just completed."""

        if delta.name is not None:
            if self._pending is not None:
                logger.info(
                    "Tool call %s replaced by %s before its arguments completed",
                    self._pending.name,
                    delta.name,
                )
            self._pending = PendingToolCall(
                name=delta.name,
                arguments_buffer=delta.arguments_fragment,
                index=delta.index,
                call_id=delta.call_id,
            )
        elif self._pending is None:
            logger.debug(
                "Ignoring tool-call fragment without an open call: %r",
                delta.arguments_fragment,
            )
            return None
        else:
            self._pending.arguments_buffer += delta.arguments_fragment
            if delta.call_id and not self._pending.call_id:
                self._pending.call_id = delta.call_id

        pending = self._pending
        arguments = pending.parsed_arguments()
        if arguments is None:
            return None

        self._pending = None
        return CompletedToolCall(
            name=pending.name or "",
            arguments=arguments,
            raw_arguments=pending.arguments_buffer,
            call_id=pending.call_id or f"call_{pending.index}",
            envelope=delta.envelope,
        )

    def discard(self) -> PendingToolCall | None:
        """Drop the in-flight call, if any, and return it."""

        pending, self._pending = self._pending, None
        if pending is not None:
            logger.info(
                "Dropping incomplete tool call %s (%d argument chars buffered)",
                pending.name,
                len(pending.arguments_buffer),
            )
        return pending


__all__ = ["PendingToolCall", "ToolCallAccumulator"]
