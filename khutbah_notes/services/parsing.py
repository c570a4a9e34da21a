"""Strict decoding of remote lecture, folder and profile documents.

Documents arrive as loosely typed mappings. Everything here either produces a
well-formed domain object or ``None``; malformed input is dropped instead of
raising so one bad document never breaks a whole snapshot.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Iterable, List, Mapping, Optional, Tuple

from ..config import QuotaPolicy
from ..models import (
    Folder,
    Lecture,
    LectureStatus,
    LectureSummary,
    PendingRecording,
    SummaryInProgress,
    SummaryTranslation,
    SummaryTranslationError,
    UserUsage,
)
from ..remote.base import DELETE_FIELD


LOGGER = logging.getLogger(__name__)

MAIN_THEME_FALLBACK = "Not mentioned"


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Return an aware datetime for *value* or ``None`` when it is not a timestamp."""

    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(float(value), tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def _string_list(value: Any) -> Tuple[str, ...]:
    if not isinstance(value, (list, tuple)):
        return ()
    return tuple(item for item in value if isinstance(item, str))


def _optional_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value == value:
        return int(value)
    return None


def _optional_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def parse_summary(value: Any) -> Optional[LectureSummary]:
    if not isinstance(value, Mapping):
        return None
    main_theme = value.get("mainTheme")
    if not isinstance(main_theme, str) or not main_theme.strip():
        main_theme = MAIN_THEME_FALLBACK
    return LectureSummary(
        main_theme=main_theme,
        key_points=_string_list(value.get("keyPoints")),
        explicit_ayat_or_hadith=_string_list(value.get("explicitAyatOrHadith")),
        weekly_actions=_string_list(value.get("weeklyActions")),
    )


def parse_summary_in_progress(value: Any) -> Optional[SummaryInProgress]:
    """Decode the in-progress marker.

    ``True`` is the legacy form, ``False`` clears the marker and a mapping must
    carry at least one valid timestamp.
    """

    if isinstance(value, bool):
        return SummaryInProgress(is_legacy=True) if value else None
    if not isinstance(value, Mapping):
        return None
    started_at = parse_timestamp(value.get("startedAt"))
    expires_at = parse_timestamp(value.get("expiresAt"))
    if started_at is None and expires_at is None:
        return None
    return SummaryInProgress(started_at=started_at, expires_at=expires_at)


def parse_summary_translations(value: Any) -> Tuple[SummaryTranslation, ...]:
    if not isinstance(value, Mapping):
        return ()
    translations: List[SummaryTranslation] = []
    for language_code, payload in value.items():
        if not isinstance(payload, Mapping):
            continue
        summary = parse_summary(payload)
        if summary is not None:
            translations.append(SummaryTranslation(str(language_code), summary))
    return tuple(sorted(translations, key=lambda item: item.language_code))


def parse_translation_errors(value: Any) -> Tuple[SummaryTranslationError, ...]:
    if not isinstance(value, Mapping):
        return ()
    errors = [
        SummaryTranslationError(str(language_code), message.strip())
        for language_code, message in value.items()
        if isinstance(message, str) and message.strip()
    ]
    return tuple(sorted(errors, key=lambda item: item.language_code))


def translation_keys(value: Any) -> Tuple[str, ...]:
    """Return the sorted language codes held by a mapping or a list."""

    if isinstance(value, Mapping):
        return tuple(sorted(str(key) for key in value.keys()))
    if isinstance(value, (list, tuple)):
        return tuple(sorted(item for item in value if isinstance(item, str)))
    return ()


def lecture_from_document(document_id: str, data: Mapping[str, Any]) -> Optional[Lecture]:
    """Return a :class:`Lecture` or ``None`` when required fields are missing."""

    title = data.get("title")
    date = parse_timestamp(data.get("date"))
    status_value = data.get("status")
    if not isinstance(title, str) or date is None or not isinstance(status_value, str):
        LOGGER.debug("Dropping malformed lecture document %s", document_id)
        return None

    transcript = _optional_str(data.get("transcript"))
    summary = parse_summary(data.get("summary"))
    if summary is not None and not (transcript and transcript.strip()):
        LOGGER.debug("Ignoring summary without transcript on lecture %s", document_id)
        summary = None

    return Lecture(
        id=document_id,
        title=title,
        date=date,
        status=LectureStatus.parse(status_value),
        duration_minutes=_optional_int(data.get("durationMinutes")),
        charged_minutes=_optional_int(data.get("chargedMinutes")),
        is_favorite=data.get("isFavorite") is True,
        quota_reason=_optional_str(data.get("quotaReason")),
        error_message=_optional_str(data.get("errorMessage")),
        transcript=transcript,
        transcript_formatted=_optional_str(data.get("transcriptFormatted")),
        summary=summary,
        summary_in_progress=parse_summary_in_progress(data.get("summaryInProgress")),
        summary_translations=parse_summary_translations(data.get("summaryTranslations")),
        translation_requests=translation_keys(data.get("summaryTranslationRequests")),
        translation_in_progress=translation_keys(data.get("summaryTranslationInProgress")),
        translation_errors=parse_translation_errors(data.get("summaryTranslationErrors")),
        audio_path=_optional_str(data.get("audioPath")),
        folder_id=_optional_str(data.get("folderId")),
        folder_name=_optional_str(data.get("folderName")),
    )


def lectures_from_documents(documents: Iterable[Any]) -> List[Lecture]:
    lectures: List[Lecture] = []
    for document in documents:
        lecture = lecture_from_document(document.id, document.data)
        if lecture is not None:
            lectures.append(lecture)
    return lectures


def folder_from_document(document_id: str, data: Mapping[str, Any]) -> Optional[Folder]:
    name = data.get("name")
    created_at = parse_timestamp(data.get("createdAt"))
    if not isinstance(name, str) or created_at is None:
        return None
    return Folder(id=document_id, name=name, created_at=created_at)


def usage_from_document(
    data: Optional[Mapping[str, Any]],
    quota: QuotaPolicy = QuotaPolicy(),
) -> UserUsage:
    """Return the usage counters from a profile document, defaulting when absent."""

    data = data or {}
    plan = data.get("plan")
    return UserUsage(
        plan=plan if plan in {"free", "premium"} else "free",
        monthly_minutes_used=_optional_int(data.get("monthlyMinutesUsed")) or 0,
        monthly_key=_optional_str(data.get("monthlyKey")),
        free_lifetime_minutes_used=_optional_int(data.get("freeLifetimeMinutesUsed")) or 0,
        period_start=parse_timestamp(data.get("periodStart")),
        renews_at=parse_timestamp(data.get("renewsAt")),
        free_lifetime_cap=quota.free_lifetime_minutes,
        premium_monthly_cap=quota.premium_monthly_minutes,
        per_recording_cap=quota.per_recording_minutes,
    )


def lecture_document_fields(record: PendingRecording) -> dict:
    """Return the merge payload that finalizes an uploaded recording."""

    fields = {
        "title": record.title,
        "date": record.date,
        "status": LectureStatus.PROCESSING.value,
        "audioPath": record.audio_path,
        "errorMessage": DELETE_FIELD,
    }
    if record.duration_minutes is not None:
        fields["durationMinutes"] = record.duration_minutes
    return fields


__all__ = [
    "MAIN_THEME_FALLBACK",
    "folder_from_document",
    "lecture_document_fields",
    "lecture_from_document",
    "lectures_from_documents",
    "parse_summary",
    "parse_summary_in_progress",
    "parse_summary_translations",
    "parse_timestamp",
    "parse_translation_errors",
    "translation_keys",
    "usage_from_document",
]
