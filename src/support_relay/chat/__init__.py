"""Support chat classification, streaming and orchestration."""

from .orchestrator import ChatOrchestrator, PreparedStream

__all__ = ["ChatOrchestrator", "PreparedStream"]
