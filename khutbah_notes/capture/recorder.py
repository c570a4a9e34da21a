"""Microphone capture state machine."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import math
import time
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Protocol

from ..services.events import emit_task_event
from ..services.naming import build_recording_name


LOGGER = logging.getLogger(__name__)

METER_INTERVAL = 0.125
SILENCE_FLOOR_DB = -80.0


class CaptureState(str, Enum):
    IDLE = "idle"
    RECORDING = "recording"
    PAUSED = "paused"


class PermissionStatus(str, Enum):
    GRANTED = "granted"
    DENIED = "denied"
    UNDETERMINED = "undetermined"


class CaptureError(RuntimeError):
    """Base class for capture failures."""


class PermissionDeniedError(CaptureError):
    """Raised when microphone access has been refused."""


class CaptureStartError(CaptureError):
    """Raised when the capture device or session cannot be started."""


class CaptureEngine(Protocol):
    def open(self, path: Path) -> None:
        """Start writing microphone input to *path*."""

    def pause(self) -> None:
        ...

    def resume(self) -> None:
        ...

    def stop(self) -> None:
        """Finish the file and release the device."""

    def average_power(self) -> float:
        """Return the most recent average input power in dBFS."""


class PermissionProvider(Protocol):
    def status(self) -> PermissionStatus:
        ...

    async def request(self) -> bool:
        """Ask for microphone access and return whether it was granted."""


def level_from_decibels(decibels: float) -> float:
    """Map a dBFS reading onto ``0..1`` with a floor at -80 dB."""

    if not math.isfinite(decibels):
        return 0.0
    clamped = min(0.0, max(SILENCE_FLOOR_DB, decibels))
    if clamped <= SILENCE_FLOOR_DB:
        return 0.0
    return float(10 ** (clamped / 20))


class AudioCapture:
    """Owns one capture session: ``idle -> recording <-> paused -> idle``.

    ``elapsed_time`` only accumulates while recording. ``stop`` always returns
    to idle, yields the finished file (or ``None`` when nothing was captured)
    and resets every counter; the length of the last capture stays available
    as ``last_duration``.
    """

    def __init__(
        self,
        engine: CaptureEngine,
        permissions: PermissionProvider,
        *,
        output_dir: Path,
        clock: Callable[[], float] = time.monotonic,
        extension: str = ".wav",
    ) -> None:
        self._engine = engine
        self._permissions = permissions
        self._output_dir = output_dir
        self._clock = clock
        self._extension = extension
        self._state = CaptureState.IDLE
        self._current_file: Optional[Path] = None
        self._accumulated = 0.0
        self._segment_started: Optional[float] = None
        self._level = 0.0
        self._resume_after_interrupt = False
        self.last_duration = 0.0

    @property
    def state(self) -> CaptureState:
        return self._state

    @property
    def is_recording(self) -> bool:
        return self._state is CaptureState.RECORDING

    @property
    def is_paused(self) -> bool:
        return self._state is CaptureState.PAUSED

    @property
    def current_file(self) -> Optional[Path]:
        return self._current_file

    @property
    def level(self) -> float:
        return self._level

    @property
    def elapsed_time(self) -> float:
        if self._segment_started is None:
            return self._accumulated
        return self._accumulated + max(0.0, self._clock() - self._segment_started)

    async def start_capture(self) -> bool:
        """Begin recording into a fresh file.

        Returns ``False`` when the session is already active or when a pending
        permission prompt is declined.
        """

        if self._state is not CaptureState.IDLE:
            LOGGER.debug("Ignoring start request while %s", self._state.value)
            return False

        status = self._permissions.status()
        if status is PermissionStatus.DENIED:
            raise PermissionDeniedError("Microphone access has been denied.")
        if status is PermissionStatus.UNDETERMINED:
            granted = await self._permissions.request()
            if not granted:
                LOGGER.info("Microphone permission request declined")
                return False

        self._output_dir.mkdir(parents=True, exist_ok=True)
        path = self._output_dir / build_recording_name(self._extension)
        try:
            self._engine.open(path)
        except CaptureError:
            with contextlib.suppress(OSError):
                path.unlink()
            raise
        except OSError as error:
            with contextlib.suppress(OSError):
                path.unlink()
            raise CaptureStartError(f"Unable to start recording: {error}") from error

        self._current_file = path
        self._accumulated = 0.0
        self._segment_started = self._clock()
        self._state = CaptureState.RECORDING
        emit_task_event("capture_started", payload={"path": path})
        return True

    def pause(self) -> None:
        if self._state is not CaptureState.RECORDING:
            return
        self._engine.pause()
        self._freeze_segment()
        self._state = CaptureState.PAUSED
        self._level = 0.0

    def resume(self) -> None:
        if self._state is not CaptureState.PAUSED:
            return
        self._engine.resume()
        self._segment_started = self._clock()
        self._state = CaptureState.RECORDING

    def stop(self) -> Optional[Path]:
        if self._state is CaptureState.IDLE:
            return None

        self._freeze_segment()
        path = self._current_file
        duration = self._accumulated
        try:
            self._engine.stop()
        finally:
            self._state = CaptureState.IDLE
            self._current_file = None
            self._accumulated = 0.0
            self._segment_started = None
            self._level = 0.0
            self._resume_after_interrupt = False
            self.last_duration = duration

        emit_task_event(
            "capture_stopped",
            payload={"path": path, "duration_seconds": round(duration, 3)},
        )
        return path

    def update_meters(self) -> float:
        """Sample the engine once and return the normalised level."""

        if self._state is CaptureState.RECORDING:
            self._level = level_from_decibels(self._engine.average_power())
        else:
            self._level = 0.0
        return self._level

    async def run_meter(self, on_tick: Optional[Callable[[float, float], None]] = None) -> None:
        """Refresh the level every :data:`METER_INTERVAL` seconds until idle."""

        while self._state is not CaptureState.IDLE:
            level = self.update_meters()
            if on_tick is not None:
                on_tick(level, self.elapsed_time)
            await asyncio.sleep(METER_INTERVAL)

    def interrupt_began(self) -> None:
        if self._state is CaptureState.RECORDING:
            self._resume_after_interrupt = True
            self.pause()

    def interrupt_ended(self, should_resume: bool) -> None:
        resume = self._resume_after_interrupt and should_resume
        self._resume_after_interrupt = False
        if resume:
            self.resume()

    def _freeze_segment(self) -> None:
        if self._segment_started is not None:
            self._accumulated += max(0.0, self._clock() - self._segment_started)
            self._segment_started = None


__all__ = [
    "AudioCapture",
    "CaptureEngine",
    "CaptureError",
    "CaptureStartError",
    "CaptureState",
    "METER_INTERVAL",
    "PermissionDeniedError",
    "PermissionProvider",
    "PermissionStatus",
    "SILENCE_FLOOR_DB",
    "level_from_decibels",
]
