"""Route actions and deep links that survive a process relaunch."""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import parse_qs, urlencode, urlsplit


LOGGER = logging.getLogger(__name__)

SCHEME = "khutbahnotesai"
RECORDING_HOST = "recording"
LECTURE_HOST = "lecture"

_CONTROL_KEY = "recordingControlAction"
_ROUTE_KEY = "recordingRouteAction"
_LECTURE_KEY = "pendingLectureId"


class RecordingControlAction(str, Enum):
    PAUSE = "pause"
    RESUME = "resume"
    STOP = "stop"


class RecordingRouteAction(str, Enum):
    OPEN_RECORDING = "openRecording"
    SHOW_SAVE_CARD = "showSaveCard"


@dataclass(frozen=True)
class RouteAction:
    action: RecordingRouteAction
    lecture_id: Optional[str] = None


def recording_url(action: RecordingRouteAction) -> str:
    return f"{SCHEME}://{RECORDING_HOST}?{urlencode({'action': action.value})}"


def recording_action_from_url(url: str) -> Optional[RecordingRouteAction]:
    """Return the route action of a recording link; unknown actions open the recorder."""

    parts = urlsplit(url)
    if parts.scheme != SCHEME or parts.netloc != RECORDING_HOST:
        return None
    values = parse_qs(parts.query).get("action", [])
    for value in values:
        try:
            return RecordingRouteAction(value)
        except ValueError:
            break
    return RecordingRouteAction.OPEN_RECORDING


def lecture_url(lecture_id: str) -> str:
    return f"{SCHEME}://{LECTURE_HOST}?{urlencode({'lectureId': lecture_id.strip()})}"


def lecture_id_from_url(url: str) -> Optional[str]:
    parts = urlsplit(url)
    if parts.scheme != SCHEME or parts.netloc != LECTURE_HOST:
        return None
    values = parse_qs(parts.query, keep_blank_values=True).get("lectureId")
    if not values:
        return None
    trimmed = values[0].strip()
    return trimmed or None


class RouteActionStore:
    """Key/value file shared between processes for pending routes and controls."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def set_route_action(
        self, action: RecordingRouteAction, lecture_id: Optional[str] = None
    ) -> None:
        with self._lock:
            values = self._read()
            values[_ROUTE_KEY] = action.value
            trimmed = (lecture_id or "").strip()
            if trimmed:
                values[_LECTURE_KEY] = trimmed
            else:
                values.pop(_LECTURE_KEY, None)
            self._write(values)

    def route_to_save_card(self, lecture_id: str) -> None:
        self.set_route_action(RecordingRouteAction.SHOW_SAVE_CARD, lecture_id)

    def peek_route_action(self) -> Optional[RouteAction]:
        with self._lock:
            return self._route_from(self._read())

    def take_route_action(self) -> Optional[RouteAction]:
        """Return and clear the stored route action."""

        with self._lock:
            values = self._read()
            route = self._route_from(values)
            if route is not None or _LECTURE_KEY in values:
                values.pop(_ROUTE_KEY, None)
                values.pop(_LECTURE_KEY, None)
                self._write(values)
            return route

    def clear_route_action(self) -> None:
        with self._lock:
            values = self._read()
            values.pop(_ROUTE_KEY, None)
            values.pop(_LECTURE_KEY, None)
            self._write(values)

    def set_control_action(self, action: RecordingControlAction) -> None:
        with self._lock:
            values = self._read()
            values[_CONTROL_KEY] = action.value
            self._write(values)

    def take_control_action(self) -> Optional[RecordingControlAction]:
        with self._lock:
            values = self._read()
            raw = values.pop(_CONTROL_KEY, None)
            if raw is None:
                return None
            self._write(values)
            try:
                return RecordingControlAction(raw)
            except ValueError:
                LOGGER.warning("Ignoring unknown recording control action %r", raw)
                return None

    def _route_from(self, values: Dict[str, Any]) -> Optional[RouteAction]:
        raw = values.get(_ROUTE_KEY)
        if raw is None:
            return None
        try:
            action = RecordingRouteAction(raw)
        except ValueError:
            LOGGER.warning("Ignoring unknown route action %r", raw)
            return None
        lecture_id = values.get(_LECTURE_KEY)
        return RouteAction(action, lecture_id if isinstance(lecture_id, str) else None)

    def _read(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as error:
            LOGGER.warning("Route action file %s is unreadable: %s", self._path, error)
            return {}
        return payload if isinstance(payload, dict) else {}

    def _write(self, values: Dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        temporary = self._path.with_name(f".{self._path.name}.tmp")
        temporary.write_text(json.dumps(values, indent=2), encoding="utf-8")
        os.replace(temporary, self._path)


__all__ = [
    "RecordingControlAction",
    "RecordingRouteAction",
    "RouteAction",
    "RouteActionStore",
    "lecture_id_from_url",
    "lecture_url",
    "recording_action_from_url",
    "recording_url",
]
