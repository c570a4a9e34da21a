from __future__ import annotations

from datetime import datetime, timedelta, timezone

from rich.console import Console

from khutbah_notes.models import Folder, Lecture, LectureStatus, SummaryInProgress, UserUsage
from khutbah_notes.ui.overview import UNFILED, LectureOverviewUI, collect_overview


NOW = datetime(2024, 3, 8, 14, 0, tzinfo=timezone.utc)


def _lectures():
    return [
        Lecture(
            id="L1",
            title="Sabr in hardship",
            date=NOW,
            status=LectureStatus.READY,
            duration_minutes=22,
            is_favorite=True,
            folder_id="F1",
        ),
        Lecture(
            id="L2",
            title="Stuck summary",
            date=NOW - timedelta(hours=1),
            status=LectureStatus.SUMMARIZING,
            transcript="text",
            summary_in_progress=SummaryInProgress(started_at=NOW - timedelta(minutes=20)),
        ),
        Lecture(
            id="L3",
            title="Upload problem",
            date=NOW - timedelta(hours=2),
            status=LectureStatus.FAILED,
            error_message="Upload failed - tap to retry",
            folder_id="gone",
            folder_name="Archive",
        ),
    ]


def test_collect_overview_groups_by_folder() -> None:
    snapshot = collect_overview(
        _lectures(), [Folder(id="F1", name="Ramadan", created_at=NOW)], UserUsage()
    )

    assert [folder.name for folder in snapshot.folders] == ["Archive", "Ramadan", UNFILED]
    assert snapshot.lecture_count == 3
    assert snapshot.status_totals[LectureStatus.READY] == 1
    assert snapshot.status_totals[LectureStatus.FAILED] == 1
    assert snapshot.status_totals[LectureStatus.PROCESSING] == 0


def test_render_lists_lectures_and_usage() -> None:
    console = Console(record=True, width=140)
    snapshot = collect_overview(
        _lectures(),
        [Folder(id="F1", name="Ramadan", created_at=NOW)],
        UserUsage(plan="free", free_lifetime_minutes_used=45),
    )

    LectureOverviewUI(console=console, now=NOW).render(snapshot)

    text = console.export_text()
    assert "Sabr in hardship" in text
    assert "Ramadan" in text
    assert "Upload failed - tap to retry" in text
    assert "Summary can be retried" in text
    assert "Minutes remaining" in text
    assert "15" in text


def test_render_empty_state() -> None:
    console = Console(record=True, width=120)

    LectureOverviewUI(console=console).render(collect_overview([]))

    assert "No lectures yet." in console.export_text()
