"""Configuration loading utilities for the Khutbah Notes client core."""

from __future__ import annotations

import contextlib
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Tuple


LOGGER = logging.getLogger(__name__)


_PERMISSION_SENTINEL = ".khutbah_notes_write_check"

DEFAULT_SUPPORTED_EXTENSIONS: Tuple[str, ...] = (
    "m4a",
    "mp3",
    "wav",
    "aac",
    "m4b",
    "aif",
    "aiff",
    "caf",
)


def _ensure_writable_directory(path: Path) -> bool:
    """Return ``True`` if *path* can be created and written to."""

    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError:
        return False

    test_file = path / _PERMISSION_SENTINEL
    try:
        with test_file.open("w", encoding="utf-8") as handle:
            handle.write("ok")
    except OSError:
        return False
    finally:
        with contextlib.suppress(OSError):
            test_file.unlink()

    return True


def _select_writable_directory(
    preferred: Path,
    *,
    label: str,
    fallbacks: Iterable[Path] = (),
) -> Tuple[Path, bool]:
    """Return a usable directory based on ``preferred`` and ``fallbacks``.

    The first writable candidate wins. The flag in the returned tuple reports
    whether a fallback was used. When nothing is writable ``preferred`` is
    returned unchanged and the caller decides how to fail.
    """

    preferred = preferred.resolve()
    if _ensure_writable_directory(preferred):
        return preferred, False

    for fallback in fallbacks:
        candidate = fallback.resolve()
        if candidate == preferred:
            continue
        if _ensure_writable_directory(candidate):
            LOGGER.warning(
                "Preferred %s directory '%s' is not writable; using fallback '%s'.",
                label,
                preferred,
                candidate,
            )
            return candidate, True

    LOGGER.warning(
        "%s directory '%s' is not writable and no fallback is available.",
        label.capitalize(),
        preferred,
    )
    return preferred, False


@dataclass(frozen=True)
class UploadPolicy:
    """Limits and retry behaviour applied by the upload orchestrator."""

    max_file_bytes: int = 100 * 1024 * 1024
    supported_extensions: Tuple[str, ...] = DEFAULT_SUPPORTED_EXTENSIONS
    canonical_extension: str = "m4a"
    content_type: str = "audio/mp4"
    max_attempts: int = 3
    retry_delays: Tuple[float, ...] = (1.0, 3.0, 9.0)

    def delay_for_attempt(self, attempt: int) -> float:
        """Return the backoff delay applied after the failed *attempt* (1-based)."""

        if not self.retry_delays:
            return 0.0
        index = min(max(attempt, 1), len(self.retry_delays)) - 1
        return float(self.retry_delays[index])

    @classmethod
    def from_mapping(cls, mapping: Dict[str, Any]) -> "UploadPolicy":
        defaults = cls()
        extensions = mapping.get("supported_extensions")
        delays = mapping.get("retry_delays")
        return cls(
            max_file_bytes=int(mapping.get("max_file_bytes", defaults.max_file_bytes)),
            supported_extensions=(
                tuple(str(item).lower().lstrip(".") for item in extensions)
                if extensions
                else defaults.supported_extensions
            ),
            canonical_extension=str(
                mapping.get("canonical_extension", defaults.canonical_extension)
            ).lstrip("."),
            content_type=str(mapping.get("content_type", defaults.content_type)),
            max_attempts=max(1, int(mapping.get("max_attempts", defaults.max_attempts))),
            retry_delays=(
                tuple(float(item) for item in delays) if delays else defaults.retry_delays
            ),
        )


@dataclass(frozen=True)
class SummaryPolicy:
    in_progress_ttl_seconds: float = 15 * 60

    @classmethod
    def from_mapping(cls, mapping: Dict[str, Any]) -> "SummaryPolicy":
        return cls(
            in_progress_ttl_seconds=float(
                mapping.get("in_progress_ttl_seconds", cls.in_progress_ttl_seconds)
            )
        )


@dataclass(frozen=True)
class QuotaPolicy:
    """Plan limits mirrored from server-side enforcement."""

    per_recording_minutes: int = 70
    free_lifetime_minutes: int = 60
    premium_monthly_minutes: int = 500

    @classmethod
    def from_mapping(cls, mapping: Dict[str, Any]) -> "QuotaPolicy":
        defaults = cls()
        return cls(
            per_recording_minutes=int(
                mapping.get("per_recording_minutes", defaults.per_recording_minutes)
            ),
            free_lifetime_minutes=int(
                mapping.get("free_lifetime_minutes", defaults.free_lifetime_minutes)
            ),
            premium_monthly_minutes=int(
                mapping.get("premium_monthly_minutes", defaults.premium_monthly_minutes)
            ),
        )


@dataclass(frozen=True)
class AppConfig:
    """Runtime paths and policies for the client core."""

    storage_root: Path
    database_file: Path
    recordings_root: Path
    shared_root: Path
    upload: UploadPolicy = field(default_factory=UploadPolicy)
    summary: SummaryPolicy = field(default_factory=SummaryPolicy)
    quota: QuotaPolicy = field(default_factory=QuotaPolicy)
    account_deletion_url: Optional[str] = None
    analytics_enabled: bool = True

    @property
    def blob_root(self) -> Path:
        """Location of the local blob store."""

        return (self.storage_root / "_blobs").resolve()

    @property
    def prepared_root(self) -> Path:
        """Scratch space for transcoded upload intermediates."""

        return (self.storage_root / "_prepared").resolve()

    @property
    def pending_file(self) -> Path:
        return self.storage_root / "pending_recordings.json"

    @property
    def settings_file(self) -> Path:
        return self.storage_root / "settings.json"

    @property
    def route_file(self) -> Path:
        return self.shared_root / "route_actions.json"

    @classmethod
    def from_mapping(cls, mapping: Dict[str, Any], *, base_path: Path) -> "AppConfig":
        preferred_storage = (base_path / mapping["storage_root"]).resolve()
        storage_fallback = Path.home() / ".khutbah_notes" / "storage"
        storage_root, storage_fallback_used = _select_writable_directory(
            preferred_storage,
            label="storage",
            fallbacks=(storage_fallback,),
        )

        database_file = (base_path / mapping["database_file"]).resolve()
        if storage_fallback_used:
            try:
                relative_database = database_file.relative_to(preferred_storage)
            except ValueError:
                relative_database = None
            if relative_database is not None:
                fallback_database = (storage_root / relative_database).resolve()
                if _ensure_writable_directory(fallback_database.parent):
                    LOGGER.warning(
                        "Preferred database location '%s' is not writable; using fallback '%s'.",
                        database_file,
                        fallback_database,
                    )
                    database_file = fallback_database

        if not _ensure_writable_directory(database_file.parent):
            fallback_database = (storage_root / database_file.name).resolve()
            if fallback_database != database_file and _ensure_writable_directory(
                fallback_database.parent
            ):
                LOGGER.warning(
                    "Preferred database location '%s' is not writable; using fallback '%s'.",
                    database_file,
                    fallback_database,
                )
                database_file = fallback_database

        recordings_root, _ = _select_writable_directory(
            (base_path / mapping.get("recordings_root", "storage/recordings")).resolve(),
            label="recordings",
            fallbacks=(storage_root / "recordings",),
        )
        shared_root, _ = _select_writable_directory(
            (base_path / mapping.get("shared_root", "storage/shared")).resolve(),
            label="shared",
            fallbacks=(storage_root / "shared",),
        )

        deletion_url = mapping.get("account_deletion_url") or None

        return cls(
            storage_root=storage_root,
            database_file=database_file,
            recordings_root=recordings_root,
            shared_root=shared_root,
            upload=UploadPolicy.from_mapping(mapping.get("upload") or {}),
            summary=SummaryPolicy.from_mapping(mapping.get("summary") or {}),
            quota=QuotaPolicy.from_mapping(mapping.get("quota") or {}),
            account_deletion_url=str(deletion_url) if deletion_url else None,
            analytics_enabled=bool(mapping.get("analytics_enabled", True)),
        )


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load the configuration from ``config/default.json`` by default."""

    base_path = Path(__file__).resolve().parent.parent
    if config_path is None:
        config_path = base_path / "config" / "default.json"

    with config_path.open("r", encoding="utf-8") as config_file:
        raw_config = json.load(config_file)

    return AppConfig.from_mapping(raw_config, base_path=base_path)


__all__ = [
    "AppConfig",
    "DEFAULT_SUPPORTED_EXTENSIONS",
    "QuotaPolicy",
    "SummaryPolicy",
    "UploadPolicy",
    "load_config",
]
