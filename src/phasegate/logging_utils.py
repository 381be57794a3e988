"""Configure loguru and summarise engine events for logs."""

from __future__ import annotations

import sys
from dataclasses import is_dataclass
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from .events import Event, EventType

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{module}</cyan>:<cyan>{line}</cyan>\n"
    "{message}"
)

_INFO_EVENTS = {
    EventType.PHASE_START,
    EventType.PHASE_COMPLETE,
    EventType.PHASE_FAIL,
    EventType.PHASE_COMPLETED,
    EventType.APPROVAL_ADDED,
    EventType.ORCHESTRATION_START,
    EventType.ORCHESTRATION_COMPLETE,
    EventType.ORCHESTRATION_FAIL,
}


def configure_logging(level: str = "INFO", log_file: Optional[Path] = None) -> None:
    """Replace loguru sinks with a stderr sink and an optional file sink."""
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=LOG_FORMAT)
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(log_file, level="DEBUG", format=LOG_FORMAT, rotation="10 MB", enqueue=True)


def _plain(value: Any) -> Any:
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, Event):
        return summarize_event(value)
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    if isinstance(value, dict):
        return {str(k): _plain(v) for k, v in value.items()}
    if is_dataclass(value):
        return repr(value)
    return value


def summarize_event(event: Optional[Event]) -> dict[str, Any]:
    """Render a compact, JSON-friendly summary of an event.

    Nested events (a task event inside a phase event inside an orchestrator
    event) are flattened into one level with the innermost kind last.
    """
    if event is None:
        return {"event": None}
    summary: dict[str, Any] = {"event": event.type.value, "timestamp": event.timestamp}
    for key, value in event.data.items():
        if key == "phase_event" and isinstance(value, Event):
            inner = summarize_event(value)
            inner.pop("timestamp", None)
            summary.update({k: v for k, v in inner.items() if k != "event"})
            summary["phase_event"] = inner["event"]
        elif key == "task_event":
            summary["task_event"] = _plain(value)
        elif key == "result":
            summary["status"] = _result_status(value)
        else:
            summary[key] = _plain(value)
    return summary


def _result_status(result: Any) -> Any:
    status = getattr(result, "status", None)
    if status is not None:
        return getattr(status, "value", status)
    success = getattr(result, "success", None)
    if success is not None:
        return "success" if success else "failed"
    return None


def log_event(event: Event) -> None:
    """Event subscriber: lifecycle at INFO, everything else at DEBUG."""
    level = "INFO" if event.type in _INFO_EVENTS else "DEBUG"
    logger.log(level, "event {}", summarize_event(event))
