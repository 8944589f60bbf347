"""Pydantic models for support chat requests."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

EMPTY_MESSAGES_ERROR = "Invalid or empty messages array"


class ChatMessage(BaseModel):
    """Represents a single chat message."""

    role: str
    content: Union[str, List[Dict[str, Any]], None] = None

    model_config = ConfigDict(extra="allow")

    def text(self) -> str:
        """Return the message text, flattening structured content parts."""

        if isinstance(self.content, str):
            return self.content
        if isinstance(self.content, list):
            fragments = [
                part["text"]
                for part in self.content
                if isinstance(part, dict) and isinstance(part.get("text"), str)
            ]
            return "".join(fragments)
        return ""


class SupportChatRequest(BaseModel):
    """Incoming support chat payload."""

    messages: List[ChatMessage]
    thread_id: Optional[str] = Field(default=None, alias="threadId")

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    @field_validator("messages", mode="before")
    @classmethod
    def _require_messages(cls, value: Any) -> Any:
        if not isinstance(value, list) or not value:
            raise ValueError(EMPTY_MESSAGES_ERROR)
        return value

    def customer_query(self) -> str:
        """The latest message is the one being classified."""

        return self.messages[-1].text()


__all__ = ["ChatMessage", "EMPTY_MESSAGES_ERROR", "SupportChatRequest"]
