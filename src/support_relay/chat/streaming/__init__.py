"""Chat streaming package."""

from .handler import StreamingHandler
from .types import SseEvent

__all__ = ["StreamingHandler", "SseEvent"]
