"""Typed, synchronous event broadcasting for engine observers.

Subscribers receive events in emission order. A subscriber that raises is
logged and skipped; it never interrupts the emitter or other subscribers.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from loguru import logger

from .utils import _now_iso


class EventType(str, Enum):
    # State manager
    TASK_STARTED = "task_started"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"
    TASK_SKIPPED = "task_skipped"
    TASK_RETRIED = "task_retried"
    PHASE_COMPLETED = "phase_completed"
    APPROVAL_ADDED = "approval_added"
    COST_UPDATED = "cost_updated"
    # Phase executor
    PHASE_START = "phase_start"
    PHASE_COMPLETE = "phase_complete"
    PHASE_FAIL = "phase_fail"
    TASK_EVENT = "task_event"
    # Orchestrator
    ORCHESTRATION_START = "orchestration_start"
    ORCHESTRATION_COMPLETE = "orchestration_complete"
    ORCHESTRATION_FAIL = "orchestration_fail"
    PHASE_EVENT = "phase_event"


# Required payload keys per event kind.
PAYLOAD_FIELDS: dict[EventType, tuple[str, ...]] = {
    EventType.TASK_STARTED: ("task_id",),
    EventType.TASK_COMPLETED: ("task_id", "result"),
    EventType.TASK_FAILED: ("task_id", "result"),
    EventType.TASK_SKIPPED: ("task_id", "reason"),
    EventType.TASK_RETRIED: ("task_id",),
    EventType.PHASE_COMPLETED: ("phase_number", "phase_name"),
    EventType.APPROVAL_ADDED: ("phase", "notes"),
    EventType.COST_UPDATED: ("tokens", "cost"),
    EventType.PHASE_START: ("phase_number", "phase_name", "progress"),
    EventType.PHASE_COMPLETE: ("phase_number", "phase_name", "progress"),
    EventType.PHASE_FAIL: ("phase_number", "phase_name", "progress"),
    EventType.TASK_EVENT: ("phase_number", "phase_name", "task_event"),
    EventType.ORCHESTRATION_START: ("progress",),
    EventType.ORCHESTRATION_COMPLETE: ("progress",),
    EventType.ORCHESTRATION_FAIL: ("progress",),
    EventType.PHASE_EVENT: ("phase_event",),
}


@dataclass(frozen=True)
class Event:
    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=_now_iso)

    def __getitem__(self, key: str) -> Any:
        return self.data[key]

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)


Handler = Callable[[Event], None]


class EventBus:
    """Dispatch events to subscribers registered per kind or for every kind."""

    def __init__(self, name: str = "events") -> None:
        self.name = name
        self._handlers: dict[Optional[EventType], list[Handler]] = {}
        self._lock = threading.RLock()

    def subscribe(self, event_type: Optional[EventType], handler: Handler) -> Callable[[], None]:
        """Register `handler` for `event_type` (None = every kind).

        Returns:
            A callable that removes the subscription.
        """
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)

        def _unsubscribe() -> None:
            self.unsubscribe(event_type, handler)

        return _unsubscribe

    def subscribe_all(self, handler: Handler) -> Callable[[], None]:
        return self.subscribe(None, handler)

    def unsubscribe(self, event_type: Optional[EventType], handler: Handler) -> None:
        with self._lock:
            handlers = self._handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

    def emit(self, event_type: EventType, **data: Any) -> Event:
        missing = [key for key in PAYLOAD_FIELDS.get(event_type, ()) if key not in data]
        if missing:
            raise ValueError(f"{event_type.value} event missing payload keys: {missing}")
        event = Event(type=event_type, data=data)
        with self._lock:
            handlers = list(self._handlers.get(event_type, [])) + list(self._handlers.get(None, []))
            for handler in handlers:
                try:
                    handler(event)
                except Exception as exc:
                    logger.warning("[{}] {} handler {!r} raised: {}", self.name, event_type.value, handler, exc)
        return event
