"""Chat orchestrator coordinating the classifier, departments and streaming handler."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, AsyncGenerator, Optional

from ..departments import DepartmentDispatcher
from ..schemas.chat import SupportChatRequest
from ..upstream import UpstreamClient
from .classifiers import Classifier, build_classifier
from .streaming import SseEvent, StreamingHandler

if TYPE_CHECKING:
    from ..config import Settings

logger = logging.getLogger(__name__)


@dataclass
class PreparedStream:
    """An exchange whose first upstream turn is already open."""

    thread_id: Optional[str]
    events: AsyncGenerator[SseEvent, None]


class ChatOrchestrator:
    """High-level coordination for one support exchange."""

    def __init__(
        self,
        settings: Settings,
        client: UpstreamClient,
        dispatcher: DepartmentDispatcher,
        *,
        classifier: Classifier | None = None,
    ):
        self._settings = settings
        self._classifier = classifier or build_classifier(settings, client)
        self._handler = StreamingHandler(
            self._classifier,
            dispatcher,
            summary_prompt=settings.summary_prompt,
            summarize_after_tools=settings.summarize_after_tools,
            max_summary_turns=settings.max_summary_turns,
        )

    def build_conversation(self, customer_query: str) -> list[dict[str, Any]]:
        return [
            {"role": "system", "content": self._settings.system_prompt},
            {"role": "user", "content": customer_query},
        ]

    async def start(
        self,
        request: SupportChatRequest,
        *,
        thread_id: Optional[str] = None,
    ) -> PreparedStream:
        """Open the first upstream turn.

        Raises ``UpstreamUnavailable`` before any byte is streamed, so callers
        can still answer with a plain error response.
        """

        customer_query = request.customer_query()
        logger.info("Classifying customer query: %s", customer_query)
        conversation = self.build_conversation(customer_query)

        first_turn = await self._classifier.start_turn(conversation, thread_id)
        events = self._handler.stream_conversation(
            first_turn,
            conversation,
            customer_query=customer_query,
            thread_id=thread_id,
        )
        return PreparedStream(
            thread_id=first_turn.thread_id or thread_id,
            events=events,
        )


__all__ = ["ChatOrchestrator", "PreparedStream"]
