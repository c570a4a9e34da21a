from __future__ import annotations

import asyncio
import math
import wave
from pathlib import Path
from typing import List, Optional

import numpy as np
import pytest

from khutbah_notes.capture.devices import power_dbfs, write_pcm_wav
from khutbah_notes.capture.recorder import (
    AudioCapture,
    CaptureStartError,
    CaptureState,
    PermissionDeniedError,
    PermissionStatus,
    level_from_decibels,
)


class ManualClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeEngine:
    def __init__(self, *, power: float = -20.0, error: Optional[Exception] = None) -> None:
        self.power = power
        self.error = error
        self.calls: List[str] = []

    def open(self, path: Path) -> None:
        if self.error is not None:
            raise self.error
        self.calls.append("open")
        path.write_bytes(b"RIFF")

    def pause(self) -> None:
        self.calls.append("pause")

    def resume(self) -> None:
        self.calls.append("resume")

    def stop(self) -> None:
        self.calls.append("stop")

    def average_power(self) -> float:
        return self.power


class FakePermissions:
    def __init__(self, status: PermissionStatus, *, grant: bool = True) -> None:
        self._status = status
        self._grant = grant
        self.requested = False

    def status(self) -> PermissionStatus:
        return self._status

    async def request(self) -> bool:
        self.requested = True
        if self._grant:
            self._status = PermissionStatus.GRANTED
        return self._grant


def _capture(tmp_path: Path, *, engine=None, permissions=None, clock=None) -> AudioCapture:
    return AudioCapture(
        engine or FakeEngine(),
        permissions or FakePermissions(PermissionStatus.GRANTED),
        output_dir=tmp_path / "recordings",
        clock=clock or ManualClock(),
    )


def test_elapsed_time_excludes_paused_intervals(tmp_path: Path) -> None:
    clock = ManualClock()
    engine = FakeEngine()
    capture = _capture(tmp_path, engine=engine, clock=clock)

    assert asyncio.run(capture.start_capture()) is True
    assert capture.state is CaptureState.RECORDING
    clock.advance(10)
    capture.pause()
    clock.advance(30)
    assert capture.elapsed_time == pytest.approx(10.0)
    capture.resume()
    clock.advance(5)
    assert capture.elapsed_time == pytest.approx(15.0)

    path = capture.stop()

    assert path is not None and path.exists()
    assert path.parent == tmp_path / "recordings"
    assert capture.last_duration == pytest.approx(15.0)
    assert capture.state is CaptureState.IDLE
    assert capture.elapsed_time == 0.0
    assert capture.current_file is None
    assert engine.calls == ["open", "pause", "resume", "stop"]


def test_stop_without_capture_returns_none(tmp_path: Path) -> None:
    capture = _capture(tmp_path)

    assert capture.stop() is None
    capture.pause()
    capture.resume()
    assert capture.state is CaptureState.IDLE


def test_start_while_recording_is_rejected(tmp_path: Path) -> None:
    capture = _capture(tmp_path)

    async def scenario():
        first = await capture.start_capture()
        second = await capture.start_capture()
        return first, second

    assert asyncio.run(scenario()) == (True, False)


def test_denied_permission_raises(tmp_path: Path) -> None:
    engine = FakeEngine()
    capture = _capture(tmp_path, engine=engine, permissions=FakePermissions(PermissionStatus.DENIED))

    with pytest.raises(PermissionDeniedError):
        asyncio.run(capture.start_capture())

    assert engine.calls == []
    assert capture.state is CaptureState.IDLE


def test_undetermined_permission_is_requested(tmp_path: Path) -> None:
    declined = FakePermissions(PermissionStatus.UNDETERMINED, grant=False)
    capture = _capture(tmp_path, permissions=declined)

    assert asyncio.run(capture.start_capture()) is False
    assert declined.requested
    assert capture.state is CaptureState.IDLE

    granted = FakePermissions(PermissionStatus.UNDETERMINED, grant=True)
    capture = _capture(tmp_path, permissions=granted)

    assert asyncio.run(capture.start_capture()) is True
    assert capture.is_recording


def test_engine_failure_surfaces_as_start_error(tmp_path: Path) -> None:
    capture = _capture(tmp_path, engine=FakeEngine(error=OSError("device busy")))

    with pytest.raises(CaptureStartError):
        asyncio.run(capture.start_capture())

    assert capture.state is CaptureState.IDLE
    assert list((tmp_path / "recordings").iterdir()) == []


def test_level_is_floored_and_zero_while_paused(tmp_path: Path) -> None:
    assert level_from_decibels(-80.0) == 0.0
    assert level_from_decibels(-120.0) == 0.0
    assert level_from_decibels(float("nan")) == 0.0
    assert level_from_decibels(0.0) == pytest.approx(1.0)
    assert level_from_decibels(6.0) == pytest.approx(1.0)
    assert level_from_decibels(-20.0) == pytest.approx(0.1)

    capture = _capture(tmp_path, engine=FakeEngine(power=-20.0))
    asyncio.run(capture.start_capture())

    assert capture.update_meters() == pytest.approx(0.1)
    capture.pause()
    assert capture.level == 0.0
    assert capture.update_meters() == 0.0


def test_interruption_resumes_only_when_both_sides_agree(tmp_path: Path) -> None:
    clock = ManualClock()
    capture = _capture(tmp_path, clock=clock)
    asyncio.run(capture.start_capture())

    capture.interrupt_began()
    assert capture.is_paused
    capture.interrupt_ended(should_resume=True)
    assert capture.is_recording

    capture.interrupt_began()
    capture.interrupt_ended(should_resume=False)
    assert capture.is_paused

    capture.interrupt_began()
    capture.interrupt_ended(should_resume=True)
    assert capture.is_paused


def test_power_dbfs_and_wav_writer(tmp_path: Path) -> None:
    silence = np.zeros(256, dtype=np.float32)
    full_scale = np.ones(256, dtype=np.float32)

    assert power_dbfs(silence) == -80.0
    assert power_dbfs(np.zeros(0, dtype=np.float32)) == -80.0
    assert math.isclose(power_dbfs(full_scale), 0.0, abs_tol=1e-6)
    assert math.isclose(power_dbfs(full_scale * 0.1), -20.0, abs_tol=1e-3)

    target = tmp_path / "capture.wav"
    write_pcm_wav(target, np.full((1_000, 1), 0.5, dtype=np.float32), 8_000)

    with wave.open(str(target), "rb") as handle:
        assert handle.getnchannels() == 1
        assert handle.getsampwidth() == 2
        assert handle.getframerate() == 8_000
        assert handle.getnframes() == 1_000
