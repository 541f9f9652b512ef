"""Task processor wiring every pipeline stage together."""

from pilot.orchestrator.processor import TaskProcessor

__all__ = ["TaskProcessor"]
