"""Structured event helpers shared across the pipeline."""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, Optional


DEFAULT_EVENT_LOGGER = logging.getLogger("khutbah_notes.events")

_MAX_VALUE_LENGTH = 200


def sanitize_context_value(value: Any) -> Any:
    """Return a log-friendly representation for *value*, or ``None`` to drop it."""

    if value is None:
        return None
    if isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, Enum):
        return sanitize_context_value(value.value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, dict):
        return normalize_context(value)
    if isinstance(value, (list, tuple, set, frozenset)):
        joined = ", ".join(str(item) for item in value)
    else:
        joined = str(value)
    trimmed = joined.strip()
    if not trimmed:
        return None
    return trimmed[:_MAX_VALUE_LENGTH] + ("…" if len(trimmed) > _MAX_VALUE_LENGTH else "")


def normalize_context(values: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Drop empty keys and values and sanitise the remainder."""

    if not values:
        return {}
    normalised: Dict[str, Any] = {}
    for key, raw_value in values.items():
        if not key:
            continue
        value = sanitize_context_value(raw_value)
        if value is None or value == "" or value == {}:
            continue
        normalised[str(key)] = value
    return normalised


def emit_structured_event(
    event_type: str,
    message: str,
    *,
    payload: Optional[Dict[str, Any]] = None,
    context: Optional[Dict[str, Any]] = None,
    correlation: Optional[Dict[str, Any]] = None,
    duration_ms: Optional[float] = None,
    level: int = logging.INFO,
    logger: logging.Logger | logging.LoggerAdapter = DEFAULT_EVENT_LOGGER,
) -> None:
    """Log *message* tagged with *event_type* and the normalised metadata."""

    name = str(message).strip()
    sections = {
        "event_correlation": normalize_context(correlation),
        "event_context": normalize_context(context),
        "event_payload": normalize_context(payload),
    }
    extra: Dict[str, Any] = {"event_name": name, "event_type": event_type or ""}
    extra.update({key: values for key, values in sections.items() if values})
    if duration_ms is not None:
        extra["event_duration_ms"] = float(duration_ms)
    logger.log(level, _render_message(event_type, name, sections.values()), extra=extra)


def _render_message(event_type: str, name: str, sections: Iterable[Dict[str, Any]]) -> str:
    details: Dict[str, Any] = {}
    for values in sections:
        details.update(values)
    text = f"[{event_type}] {name}" if event_type else name
    if not details:
        return text
    return f"{text} (" + ", ".join(f"{key}={value}" for key, value in details.items()) + ")"


def emit_db_event(action: str, **kwargs: Any) -> None:
    """Emit a structured document-store event."""

    emit_structured_event("DB_QUERY", action, **kwargs)


def emit_file_event(operation: str, **kwargs: Any) -> None:
    """Emit a structured file-system event."""

    emit_structured_event("FILE_OP", operation, **kwargs)


def emit_task_event(phase: str, message: str = "", **kwargs: Any) -> None:
    """Emit a structured pipeline stage event."""

    emit_structured_event("TASK_STATE", message or phase, **kwargs)


def emit_analytics_event(name: str, **kwargs: Any) -> None:
    """Emit a lifecycle analytics event."""

    emit_structured_event("ANALYTICS", name, **kwargs)


__all__ = [
    "DEFAULT_EVENT_LOGGER",
    "emit_analytics_event",
    "emit_db_event",
    "emit_file_event",
    "emit_structured_event",
    "emit_task_event",
    "normalize_context",
    "sanitize_context_value",
]
