"""Helpers for consistent recording and blob naming."""

from __future__ import annotations

import re
import uuid
from datetime import datetime
from typing import Optional

__all__ = [
    "build_blob_path",
    "build_recording_name",
    "build_timestamped_name",
    "new_lecture_id",
    "slugify",
]


def slugify(value: str) -> str:
    """Return a filesystem-friendly representation of *value*."""

    value = value.strip().lower()
    value = re.sub(r"[^a-z0-9]+", "-", value)
    value = re.sub(r"-+", "-", value).strip("-")
    return value or "item"


def new_lecture_id() -> str:
    """Return a client-generated lecture id, stable across retries."""

    return str(uuid.uuid4()).upper()


def build_blob_path(user_id: str, lecture_id: str, extension: str = "m4a") -> str:
    """Return the remote blob path ``audio/{user}/{lecture}.{ext}``."""

    suffix = extension.lstrip(".").lower() or "m4a"
    return f"audio/{user_id}/{lecture_id}.{suffix}"


def build_recording_name(extension: str = ".wav") -> str:
    """Return a unique file name for a fresh capture."""

    suffix = extension if extension.startswith(".") else f".{extension}"
    return f"recording-{uuid.uuid4()}{suffix.lower()}"


def build_timestamped_name(
    stem: str,
    *,
    timestamp: Optional[str] = None,
    sequence: Optional[int] = None,
    extension: str = "",
) -> str:
    """Return a timestamped name for *stem* with an optional *extension*."""

    stamp = timestamp or datetime.now().strftime("%Y%m%d-%H%M%S")
    components = [slugify(stem) if stem else "item", stamp]
    if sequence is not None:
        components.append(f"{sequence:03d}")
    suffix = ""
    if extension:
        suffix = extension if extension.startswith(".") else f".{extension}"
        suffix = suffix.lower()
    return "-".join(components) + suffix
