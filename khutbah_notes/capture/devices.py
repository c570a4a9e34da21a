"""Microphone access through PortAudio (``sounddevice``)."""

from __future__ import annotations

import logging
import math
import threading
import wave
from pathlib import Path
from typing import Any, List, Optional

import numpy as np

from .recorder import CaptureStartError, PermissionStatus, SILENCE_FLOOR_DB


LOGGER = logging.getLogger(__name__)


def _load_sounddevice() -> Any:
    # PortAudio is loaded when the module is imported.
    try:
        import sounddevice
    except OSError as error:
        raise CaptureStartError(f"PortAudio is not available: {error}") from error
    return sounddevice


def power_dbfs(block: np.ndarray) -> float:
    """Return the RMS power of a float block in dBFS."""

    samples = np.asarray(block, dtype=np.float32).reshape(-1)
    if samples.size == 0:
        return SILENCE_FLOOR_DB
    rms = float(np.sqrt(np.mean(np.square(samples))))
    if rms <= 0 or not math.isfinite(rms):
        return SILENCE_FLOOR_DB
    return max(SILENCE_FLOOR_DB, 20.0 * math.log10(rms))


def write_pcm_wav(path: Path, audio: np.ndarray, sample_rate: int) -> None:
    """Persist float samples to *path* as a mono 16-bit PCM WAV file."""

    path.parent.mkdir(parents=True, exist_ok=True)
    mono = np.asarray(audio, dtype=np.float32).flatten()
    pcm = np.round(np.clip(mono, -1.0, 1.0) * 32_767).astype(np.int16)

    with wave.open(str(path), "wb") as handle:
        handle.setnchannels(1)
        handle.setsampwidth(2)
        handle.setframerate(sample_rate)
        handle.writeframes(pcm.tobytes())


class SoundDeviceEngine:
    """Capture engine buffering the default input device in memory.

    The PortAudio callback only appends blocks and updates the power reading;
    the WAV file is written when the capture stops.
    """

    def __init__(self, *, sample_rate: int = 44_100, blocksize: int = 1024) -> None:
        self.sample_rate = sample_rate
        self.blocksize = blocksize
        self._buffer: List[np.ndarray] = []
        self._lock = threading.Lock()
        self._paused = False
        self._power = SILENCE_FLOOR_DB
        self._stream: Any = None
        self._path: Optional[Path] = None

    def open(self, path: Path) -> None:
        sd = _load_sounddevice()
        with self._lock:
            self._buffer = []
            self._paused = False
            self._power = SILENCE_FLOOR_DB
        try:
            stream = sd.InputStream(
                samplerate=self.sample_rate,
                channels=1,
                dtype="float32",
                callback=self._audio_callback,
                blocksize=self.blocksize,
            )
            stream.start()
        except sd.PortAudioError as error:
            raise CaptureStartError(f"Unable to open the microphone: {error}") from error
        self._stream = stream
        self._path = path
        LOGGER.debug("Opened input stream at %s Hz for %s", self.sample_rate, path)

    def _audio_callback(self, indata: np.ndarray, frames: int, timeinfo: Any, status: Any) -> None:
        with self._lock:
            if self._paused:
                return
            self._buffer.append(indata.copy())
            self._power = power_dbfs(indata)

    def pause(self) -> None:
        with self._lock:
            self._paused = True
            self._power = SILENCE_FLOOR_DB

    def resume(self) -> None:
        with self._lock:
            self._paused = False

    def average_power(self) -> float:
        with self._lock:
            return self._power

    def stop(self) -> None:
        if self._stream is not None:
            self._stream.stop()
            self._stream.close()
            self._stream = None
        with self._lock:
            blocks = self._buffer
            self._buffer = []
        if self._path is None:
            return
        audio = np.concatenate(blocks, axis=0) if blocks else np.zeros(0, dtype=np.float32)
        write_pcm_wav(self._path, audio, self.sample_rate)
        LOGGER.debug("Wrote %d samples to %s", int(audio.shape[0]), self._path)
        self._path = None


class SoundDevicePermissionProvider:
    """Desktop microphone access: granted whenever an input device exists."""

    def status(self) -> PermissionStatus:
        try:
            sd = _load_sounddevice()
        except CaptureStartError as error:
            LOGGER.warning("No usable input device: %s", error)
            return PermissionStatus.DENIED
        try:
            sd.query_devices(kind="input")
        except (sd.PortAudioError, ValueError) as error:
            LOGGER.warning("No usable input device: %s", error)
            return PermissionStatus.DENIED
        return PermissionStatus.GRANTED

    async def request(self) -> bool:
        return self.status() is PermissionStatus.GRANTED


__all__ = [
    "SoundDeviceEngine",
    "SoundDevicePermissionProvider",
    "power_dbfs",
    "write_pcm_wav",
]
