"""Post-result learning events.

Handlers run only after a task result has been persisted and dispatched.
Each handler is independent: a failure is logged and the rest still run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

EventHandler = Callable[["TaskEvent"], Awaitable[None]]


@dataclass
class TaskEvent:
    name: str
    task_id: str
    owner_id: str
    payload: dict[str, Any] = field(default_factory=dict)


class EventSink:
    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = {}
        self._queue: list[TaskEvent] = []

    def subscribe(self, name: str, handler: EventHandler) -> None:
        self._handlers.setdefault(name, []).append(handler)

    def record(self, event: TaskEvent) -> None:
        """Queue an event; nothing runs until emit_all()."""
        self._queue.append(event)

    async def emit_all(self) -> int:
        """Run handlers for every queued event. Returns the number of handler failures."""
        failures = 0
        queued, self._queue = self._queue, []
        for event in queued:
            for handler in self._handlers.get(event.name, []):
                try:
                    await handler(event)
                except Exception as e:
                    failures += 1
                    logger.warning(f"Event handler for {event.name} failed (non-fatal): {e}")
        return failures
