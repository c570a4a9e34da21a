"""Domain records shared by the capture, upload and reconciliation layers."""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple


class LectureStatus(str, Enum):
    RECORDING = "recording"
    PROCESSING = "processing"
    TRANSCRIBED = "transcribed"
    SUMMARIZING = "summarizing"
    READY = "ready"
    FAILED = "failed"
    BLOCKED_QUOTA = "blocked_quota"

    @classmethod
    def parse(cls, value: Any) -> "LectureStatus":
        """Return the status for *value*; unknown strings map to ``PROCESSING``."""

        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            normalized = value.strip()
            if normalized == "blockedQuota":
                return cls.BLOCKED_QUOTA
            for member in cls:
                if member.value == normalized:
                    return member
        return cls.PROCESSING

    @property
    def is_terminal_failure(self) -> bool:
        return self in {LectureStatus.FAILED, LectureStatus.BLOCKED_QUOTA}


class AudioUploadTrigger(str, Enum):
    RECORDING = "recording"
    RETAKE = "retake"
    MANUAL = "manual"


@dataclass(frozen=True)
class LectureSummary:
    main_theme: str
    key_points: Tuple[str, ...] = ()
    explicit_ayat_or_hadith: Tuple[str, ...] = ()
    weekly_actions: Tuple[str, ...] = ()


@dataclass(frozen=True)
class SummaryInProgress:
    """Server-side marker for a running summary job.

    Older documents store a bare ``true``; those decode with ``is_legacy`` set
    and no timestamps.
    """

    started_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    is_legacy: bool = False


@dataclass(frozen=True)
class SummaryTranslation:
    language_code: str
    summary: LectureSummary


@dataclass(frozen=True)
class SummaryTranslationError:
    language_code: str
    message: str


@dataclass(frozen=True)
class Lecture:
    id: str
    title: str
    date: datetime
    status: LectureStatus = LectureStatus.PROCESSING
    duration_minutes: Optional[int] = None
    charged_minutes: Optional[int] = None
    is_favorite: bool = False
    quota_reason: Optional[str] = None
    error_message: Optional[str] = None
    transcript: Optional[str] = None
    transcript_formatted: Optional[str] = None
    summary: Optional[LectureSummary] = None
    summary_in_progress: Optional[SummaryInProgress] = None
    summary_translations: Tuple[SummaryTranslation, ...] = ()
    translation_requests: Tuple[str, ...] = ()
    translation_in_progress: Tuple[str, ...] = ()
    translation_errors: Tuple[SummaryTranslationError, ...] = ()
    audio_path: Optional[str] = None
    folder_id: Optional[str] = None
    folder_name: Optional[str] = None

    @property
    def has_transcript(self) -> bool:
        return bool(self.transcript and self.transcript.strip())

    @property
    def is_demo(self) -> bool:
        return self.id == "demo-welcome" or bool(
            self.audio_path and self.audio_path.startswith("demo/")
        )


@dataclass(frozen=True)
class Folder:
    id: str
    name: str
    created_at: datetime


@dataclass(frozen=True)
class UserUsage:
    """Read-only view of the server-maintained usage counters."""

    plan: str = "free"
    monthly_minutes_used: int = 0
    monthly_key: Optional[str] = None
    free_lifetime_minutes_used: int = 0
    period_start: Optional[datetime] = None
    renews_at: Optional[datetime] = None
    free_lifetime_cap: int = 60
    premium_monthly_cap: int = 500
    per_recording_cap: int = 70

    @property
    def is_premium(self) -> bool:
        return self.plan == "premium"

    @property
    def minutes_remaining(self) -> int:
        if self.is_premium:
            return max(0, self.premium_monthly_cap - self.monthly_minutes_used)
        return max(0, self.free_lifetime_cap - self.free_lifetime_minutes_used)

    def exceeds_per_recording_cap(self, duration_minutes: Optional[int]) -> bool:
        return duration_minutes is not None and duration_minutes > self.per_recording_cap


@dataclass(frozen=True)
class PendingRecording:
    """Durable record of a capture that has not been confirmed remotely."""

    id: str
    user_id: str
    title: str
    date: datetime
    audio_path: str
    file_path: str
    trigger: AudioUploadTrigger = AudioUploadTrigger.RECORDING
    duration_minutes: Optional[int] = None

    @property
    def file(self) -> Path:
        return Path(self.file_path)

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["date"] = self.date.isoformat()
        payload["trigger"] = self.trigger.value
        return payload

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "PendingRecording":
        duration = payload.get("duration_minutes")
        return cls(
            id=str(payload["id"]),
            user_id=str(payload["user_id"]),
            title=str(payload["title"]),
            date=datetime.fromisoformat(str(payload["date"])),
            audio_path=str(payload["audio_path"]),
            file_path=str(payload["file_path"]),
            trigger=AudioUploadTrigger(payload.get("trigger", AudioUploadTrigger.RECORDING.value)),
            duration_minutes=int(duration) if duration is not None else None,
        )


@dataclass
class PendingUpload:
    """Runtime state for one outstanding upload, keyed by lecture id."""

    record: PendingRecording
    source: Path
    prepared: Optional[Path] = None
    blob_uploaded: bool = False
    failures: List[str] = field(default_factory=list)

    @property
    def lecture_id(self) -> str:
        return self.record.id

    def recoverable_source(self) -> Optional[Path]:
        """Return the first local file that can seed another attempt."""

        for candidate in (self.record.file, self.prepared, self.source):
            if candidate is not None and candidate.exists():
                return candidate
        return None

    def to_lecture(self) -> Lecture:
        return Lecture(
            id=self.record.id,
            title=self.record.title,
            date=self.record.date,
            status=LectureStatus.PROCESSING,
            duration_minutes=self.record.duration_minutes,
            audio_path=self.record.audio_path,
        )


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def duration_minutes_from_seconds(seconds: Optional[float]) -> Optional[int]:
    """Round *seconds* to whole minutes, never reporting less than one."""

    if seconds is None:
        return None
    try:
        value = float(seconds)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(value) or value <= 0:
        return None
    return max(1, int(math.floor(value / 60.0 + 0.5)))


def should_show_summary_retry(
    lecture: Lecture,
    now: datetime,
    *,
    ttl: timedelta = timedelta(minutes=15),
) -> bool:
    """Return ``True`` when a stuck or failed summary may be requested again."""

    if lecture.status is LectureStatus.FAILED:
        return lecture.has_transcript
    if lecture.status is not LectureStatus.SUMMARIZING:
        return False

    marker = lecture.summary_in_progress
    if marker is None:
        return False
    if marker.expires_at is not None:
        return now >= marker.expires_at
    if marker.started_at is not None:
        return now - marker.started_at >= ttl
    return False


__all__ = [
    "AudioUploadTrigger",
    "Folder",
    "Lecture",
    "LectureStatus",
    "LectureSummary",
    "PendingRecording",
    "PendingUpload",
    "SummaryInProgress",
    "SummaryTranslation",
    "SummaryTranslationError",
    "UserUsage",
    "duration_minutes_from_seconds",
    "should_show_summary_retry",
    "utcnow",
]
