from __future__ import annotations

import math
import wave
from pathlib import Path

import pytest

import khutbah_notes.services.audio_conversion as conversion_module
from khutbah_notes.config import UploadPolicy
from khutbah_notes.models import duration_minutes_from_seconds
from khutbah_notes.services.audio_conversion import (
    AudioConversionDependencyError,
    PreparationCode,
    PreparationError,
    audio_upload_validation_error,
    ensure_canonical_audio,
    probe_duration_seconds,
    validate_audio_file,
)


def _write_wav(path: Path, seconds: float, rate: int = 1_000) -> Path:
    with wave.open(str(path), "wb") as handle:
        handle.setnchannels(1)
        handle.setsampwidth(2)
        handle.setframerate(rate)
        handle.writeframes(b"\x00\x00" * int(seconds * rate))
    return path


def test_validation_error_codes() -> None:
    supported = ("m4a", "mp3", "wav")
    limit = 100 * 1024 * 1024

    assert (
        audio_upload_validation_error(
            file_extension=".M4A",
            file_size_bytes=1024,
            supported_extensions=supported,
            max_file_size_bytes=limit,
        )
        is None
    )
    assert (
        audio_upload_validation_error(
            file_extension="txt",
            file_size_bytes=1024,
            supported_extensions=supported,
            max_file_size_bytes=limit,
        )
        is PreparationCode.UNSUPPORTED_FILE_TYPE
    )
    assert (
        audio_upload_validation_error(
            file_extension="mp3",
            file_size_bytes=150 * 1024 * 1024,
            supported_extensions=supported,
            max_file_size_bytes=limit,
        )
        is PreparationCode.FILE_TOO_LARGE
    )
    assert (
        audio_upload_validation_error(
            file_extension="wav",
            file_size_bytes=None,
            supported_extensions=supported,
            max_file_size_bytes=limit,
        )
        is None
    )


def test_validate_audio_file_reports_user_facing_messages(tmp_path: Path) -> None:
    policy = UploadPolicy()
    notes = tmp_path / "notes.txt"
    notes.write_text("hello", encoding="utf-8")

    with pytest.raises(PreparationError) as unsupported:
        validate_audio_file(notes, policy)
    assert unsupported.value.code is PreparationCode.UNSUPPORTED_FILE_TYPE

    with pytest.raises(PreparationError) as missing:
        validate_audio_file(tmp_path / "gone.m4a", policy)
    assert missing.value.code is PreparationCode.UNREADABLE_FILE

    large = tmp_path / "long.m4a"
    with large.open("wb") as handle:
        handle.truncate(150 * 1024 * 1024)
    with pytest.raises(PreparationError) as too_large:
        validate_audio_file(large, policy)
    assert too_large.value.code is PreparationCode.FILE_TOO_LARGE
    assert "100 MB" in str(too_large.value)

    small = tmp_path / "talk.m4a"
    small.write_bytes(b"\x00" * 512)
    assert validate_audio_file(small, policy) == 512


def test_canonical_sources_are_not_converted(tmp_path: Path) -> None:
    source = tmp_path / "talk.M4A"
    source.write_bytes(b"\x00" * 16)

    prepared, created = ensure_canonical_audio(
        source, output_dir=tmp_path / "prepared", policy=UploadPolicy()
    )

    assert prepared == source
    assert created is False
    assert not (tmp_path / "prepared").exists()


def test_conversion_requires_ffmpeg(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setattr(conversion_module.shutil, "which", lambda name: None)
    source = _write_wav(tmp_path / "capture.wav", 1.0)

    with pytest.raises(AudioConversionDependencyError) as excinfo:
        ensure_canonical_audio(source, output_dir=tmp_path / "prepared", policy=UploadPolicy())

    assert excinfo.value.code is PreparationCode.TRANSCODE_FAILED
    assert "FFmpeg" in str(excinfo.value)


def test_probe_reads_wav_duration(tmp_path: Path) -> None:
    source = _write_wav(tmp_path / "capture.wav", 65.0)

    seconds = probe_duration_seconds(source)

    assert seconds == pytest.approx(65.0)
    assert duration_minutes_from_seconds(seconds) == 1


def test_probe_returns_none_for_unreadable_media(tmp_path: Path) -> None:
    broken = tmp_path / "broken.wav"
    broken.write_bytes(b"not a wave file")

    assert probe_duration_seconds(broken) is None
    assert probe_duration_seconds(tmp_path / "missing.wav") is None


def test_duration_minutes_rounding() -> None:
    assert duration_minutes_from_seconds(65) == 1
    assert duration_minutes_from_seconds(10) == 1
    assert duration_minutes_from_seconds(89) == 1
    assert duration_minutes_from_seconds(90) == 2
    assert duration_minutes_from_seconds(3_600) == 60
    assert duration_minutes_from_seconds(0) is None
    assert duration_minutes_from_seconds(-5) is None
    assert duration_minutes_from_seconds(math.nan) is None
    assert duration_minutes_from_seconds(None) is None
