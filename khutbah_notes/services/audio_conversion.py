"""Validation, transcoding and probing of audio files before upload."""

from __future__ import annotations

import contextlib
import logging
import shutil
import subprocess
import wave
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional, Tuple

from mutagen import File as MutagenFile
from mutagen import MutagenError

from ..config import UploadPolicy
from .naming import build_timestamped_name


LOGGER = logging.getLogger(__name__)


class PreparationCode(str, Enum):
    UNSUPPORTED_FILE_TYPE = "unsupported_file_type"
    FILE_TOO_LARGE = "file_too_large"
    UNREADABLE_FILE = "unreadable_file"
    TRANSCODE_FAILED = "transcode_failed"


class PreparationError(RuntimeError):
    """Raised when a source file cannot be turned into an uploadable file."""

    def __init__(self, code: PreparationCode, message: str) -> None:
        super().__init__(message)
        self.code = code


class AudioConversionDependencyError(PreparationError):
    """Raised when FFmpeg is required but not installed."""

    def __init__(self, message: str = "Audio conversion requires FFmpeg to be installed.") -> None:
        super().__init__(PreparationCode.TRANSCODE_FAILED, message)


def audio_upload_validation_error(
    *,
    file_extension: str,
    file_size_bytes: Optional[int],
    supported_extensions: Iterable[str],
    max_file_size_bytes: int,
) -> Optional[PreparationCode]:
    """Return the reason a file may not be uploaded, or ``None`` when it is acceptable."""

    extension = file_extension.lower().lstrip(".")
    if extension not in {item.lower().lstrip(".") for item in supported_extensions}:
        return PreparationCode.UNSUPPORTED_FILE_TYPE
    if file_size_bytes is not None and file_size_bytes > max_file_size_bytes:
        return PreparationCode.FILE_TOO_LARGE
    return None


def _describe(code: PreparationCode, policy: UploadPolicy) -> str:
    if code is PreparationCode.UNSUPPORTED_FILE_TYPE:
        supported = ", ".join(policy.supported_extensions)
        return f"This file type isn't supported. Please choose one of: {supported}."
    if code is PreparationCode.FILE_TOO_LARGE:
        limit_mb = policy.max_file_bytes // (1024 * 1024)
        return f"This file is larger than {limit_mb} MB. Please choose a shorter recording."
    if code is PreparationCode.UNREADABLE_FILE:
        return "The audio file could not be read."
    return "The audio file could not be converted for upload."


def validate_audio_file(path: Path, policy: UploadPolicy) -> int:
    """Return the size of *path* in bytes after checking type and size limits."""

    try:
        size = path.stat().st_size
    except OSError as error:
        raise PreparationError(
            PreparationCode.UNREADABLE_FILE,
            _describe(PreparationCode.UNREADABLE_FILE, policy),
        ) from error

    code = audio_upload_validation_error(
        file_extension=path.suffix,
        file_size_bytes=size,
        supported_extensions=policy.supported_extensions,
        max_file_size_bytes=policy.max_file_bytes,
    )
    if code is not None:
        LOGGER.debug("Rejected %s (%s bytes): %s", path, size, code.value)
        raise PreparationError(code, _describe(code, policy))
    return size


def _unique_destination(directory: Path, stem: str, extension: str) -> Path:
    candidate = directory / f"{stem}.{extension}"
    sequence = 1
    while candidate.exists():
        candidate = directory / build_timestamped_name(
            stem, sequence=sequence, extension=extension
        )
        sequence += 1
    return candidate


def ensure_canonical_audio(
    source: Path,
    *,
    output_dir: Path,
    policy: UploadPolicy,
) -> Tuple[Path, bool]:
    """Return *source* encoded in the canonical container.

    Files already using the canonical extension are returned unchanged.
    Otherwise FFmpeg transcodes the payload into a fresh file inside
    *output_dir*. The flag in the returned tuple reports whether a new file was
    created.
    """

    canonical = policy.canonical_extension.lower().lstrip(".")
    if source.suffix.lower().lstrip(".") == canonical:
        LOGGER.debug("Source %s already uses .%s; skipping conversion", source, canonical)
        return source, False

    ffmpeg_path = shutil.which("ffmpeg")
    if ffmpeg_path is None:
        raise AudioConversionDependencyError()

    output_dir.mkdir(parents=True, exist_ok=True)
    destination = _unique_destination(output_dir, source.stem or "audio", canonical)
    command = [
        ffmpeg_path,
        "-hide_banner",
        "-loglevel",
        "error",
        "-y",
        "-i",
        str(source),
        "-vn",
        "-ac",
        "1",
        "-ar",
        "44100",
        "-c:a",
        "aac",
        "-b:a",
        "96k",
        str(destination),
    ]

    LOGGER.debug("Executing FFmpeg command: %s", " ".join(command))
    try:
        completed = subprocess.run(
            command, stdout=subprocess.PIPE, stderr=subprocess.PIPE, check=False
        )
    except OSError as error:
        raise PreparationError(
            PreparationCode.TRANSCODE_FAILED,
            f"Unable to run FFmpeg: {error}",
        ) from error

    if completed.returncode != 0:
        destination.unlink(missing_ok=True)
        stderr = completed.stderr.decode("utf-8", errors="ignore").strip()
        details = (stderr or "FFmpeg exited with a non-zero status.").splitlines()
        LOGGER.debug("FFmpeg conversion failed (code=%s): %s", completed.returncode, stderr)
        raise PreparationError(
            PreparationCode.TRANSCODE_FAILED,
            f"Unable to convert audio: {details[0] if details else 'Unknown error.'}",
        )

    LOGGER.debug("FFmpeg conversion succeeded; output stored at %s", destination)
    return destination, True


def probe_duration_seconds(path: Path) -> Optional[float]:
    """Return the media duration of *path* in seconds, or ``None`` if unknown."""

    if path.suffix.lower() == ".wav":
        try:
            with contextlib.closing(wave.open(str(path), "rb")) as handle:
                frames = handle.getnframes()
                rate = handle.getframerate()
        except (wave.Error, EOFError, OSError) as error:
            LOGGER.debug("Could not read WAV header of %s: %s", path, error)
            return None
        return frames / float(rate) if rate else None

    try:
        metadata = MutagenFile(str(path))
    except (MutagenError, OSError) as error:
        LOGGER.debug("mutagen could not read %s: %s", path, error)
        return None
    if metadata is None:
        return None
    length = getattr(getattr(metadata, "info", None), "length", None)
    return float(length) if length else None


__all__ = [
    "AudioConversionDependencyError",
    "PreparationCode",
    "PreparationError",
    "audio_upload_validation_error",
    "ensure_canonical_audio",
    "probe_duration_seconds",
    "validate_audio_file",
]
