from __future__ import annotations

from datetime import datetime, timezone

from khutbah_notes.config import QuotaPolicy
from khutbah_notes.models import LectureStatus, PendingRecording
from khutbah_notes.remote.base import DELETE_FIELD, DocumentSnapshot
from khutbah_notes.services.parsing import (
    MAIN_THEME_FALLBACK,
    folder_from_document,
    lecture_document_fields,
    lecture_from_document,
    lectures_from_documents,
    parse_summary,
    parse_summary_in_progress,
    parse_summary_translations,
    parse_timestamp,
    parse_translation_errors,
    translation_keys,
    usage_from_document,
)


DATE = datetime(2024, 3, 8, 13, 0, tzinfo=timezone.utc)


def _document(**overrides):
    data = {"title": "Friday khutbah", "date": DATE, "status": "processing"}
    data.update(overrides)
    return data


def test_status_strings_map_to_known_states() -> None:
    assert LectureStatus.parse("ready") is LectureStatus.READY
    assert LectureStatus.parse("blocked_quota") is LectureStatus.BLOCKED_QUOTA
    assert LectureStatus.parse("blockedQuota") is LectureStatus.BLOCKED_QUOTA
    assert LectureStatus.parse("archived") is LectureStatus.PROCESSING
    assert LectureStatus.parse(None) is LectureStatus.PROCESSING


def test_timestamps_accept_datetimes_epochs_and_iso_strings() -> None:
    assert parse_timestamp(DATE) == DATE
    assert parse_timestamp(datetime(2024, 3, 8, 13, 0)) == DATE
    assert parse_timestamp("2024-03-08T13:00:00Z") == DATE
    assert parse_timestamp(DATE.timestamp()) == DATE
    assert parse_timestamp("yesterday") is None
    assert parse_timestamp(True) is None
    assert parse_timestamp(None) is None


def test_documents_without_required_fields_are_dropped() -> None:
    assert lecture_from_document("A", {"date": DATE, "status": "ready"}) is None
    assert lecture_from_document("A", {"title": "x", "status": "ready"}) is None
    assert lecture_from_document("A", {"title": "x", "date": DATE}) is None

    lectures = lectures_from_documents(
        [
            DocumentSnapshot("A", _document()),
            DocumentSnapshot("B", {"title": 7}),
            DocumentSnapshot("C", _document(status="mystery")),
        ]
    )

    assert [lecture.id for lecture in lectures] == ["A", "C"]
    assert lectures[1].status is LectureStatus.PROCESSING


def test_lecture_fields_are_decoded() -> None:
    lecture = lecture_from_document(
        "A",
        _document(
            status="ready",
            durationMinutes=42,
            chargedMinutes=40.0,
            isFavorite=True,
            transcript="In the name of God",
            summary={"mainTheme": "Patience", "keyPoints": ["Be steadfast", 3]},
            audioPath="audio/u/A.m4a",
            folderId="F1",
            folderName="Ramadan",
        ),
    )

    assert lecture is not None
    assert lecture.status is LectureStatus.READY
    assert lecture.duration_minutes == 42
    assert lecture.charged_minutes == 40
    assert lecture.is_favorite is True
    assert lecture.summary is not None
    assert lecture.summary.key_points == ("Be steadfast",)
    assert lecture.audio_path == "audio/u/A.m4a"
    assert lecture.folder_name == "Ramadan"


def test_summary_without_transcript_is_ignored() -> None:
    lecture = lecture_from_document(
        "A", _document(status="ready", transcript="   ", summary={"mainTheme": "Patience"})
    )

    assert lecture is not None
    assert lecture.summary is None


def test_summary_defaults_missing_fields() -> None:
    summary = parse_summary({"keyPoints": "not a list"})

    assert summary is not None
    assert summary.main_theme == MAIN_THEME_FALLBACK
    assert summary.key_points == ()
    assert summary.weekly_actions == ()
    assert parse_summary("text") is None


def test_summary_in_progress_forms() -> None:
    legacy = parse_summary_in_progress(True)
    assert legacy is not None and legacy.is_legacy

    assert parse_summary_in_progress(False) is None
    assert parse_summary_in_progress({}) is None
    assert parse_summary_in_progress({"startedAt": "soon"}) is None

    marker = parse_summary_in_progress({"startedAt": "2024-03-08T13:00:00Z"})
    assert marker is not None
    assert marker.started_at == DATE
    assert marker.expires_at is None
    assert not marker.is_legacy


def test_translations_are_sorted_and_malformed_entries_skipped() -> None:
    translations = parse_summary_translations(
        {
            "ur": {"mainTheme": "Sabr"},
            "ar": {"mainTheme": "الصبر"},
            "fr": "broken",
        }
    )

    assert [item.language_code for item in translations] == ["ar", "ur"]

    errors = parse_translation_errors({"ur": " Failed ", "ar": "", "fr": 5})
    assert [(item.language_code, item.message) for item in errors] == [("ur", "Failed")]

    assert translation_keys({"ur": True, "ar": True}) == ("ar", "ur")
    assert translation_keys(["ur", 1, "ar"]) == ("ar", "ur")
    assert translation_keys("ur") == ()


def test_folder_and_usage_documents() -> None:
    folder = folder_from_document("F1", {"name": "Ramadan", "createdAt": DATE})
    assert folder is not None and folder.name == "Ramadan"
    assert folder_from_document("F2", {"name": "No date"}) is None

    free = usage_from_document({"plan": "free", "freeLifetimeMinutesUsed": 45})
    assert free.minutes_remaining == 15
    assert free.exceeds_per_recording_cap(71)
    assert not free.exceeds_per_recording_cap(70)
    assert not free.exceeds_per_recording_cap(None)

    premium = usage_from_document(
        {"plan": "premium", "monthlyMinutesUsed": 520}, QuotaPolicy(premium_monthly_minutes=500)
    )
    assert premium.minutes_remaining == 0

    assert usage_from_document(None).plan == "free"
    assert usage_from_document({"plan": "gold"}).plan == "free"


def test_finalize_fields_clear_stale_errors() -> None:
    record = PendingRecording(
        id="A",
        user_id="u",
        title="Friday khutbah",
        date=DATE,
        audio_path="audio/u/A.m4a",
        file_path="/tmp/A.m4a",
        duration_minutes=12,
    )

    fields = lecture_document_fields(record)

    assert fields["status"] == "processing"
    assert fields["audioPath"] == "audio/u/A.m4a"
    assert fields["durationMinutes"] == 12
    assert fields["errorMessage"] is DELETE_FIELD
    assert "isFavorite" not in fields
