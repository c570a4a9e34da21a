"""Rich rendering of the merged lecture list."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from rich import box
from rich.columns import Columns
from rich.console import Console, Group
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text
from rich.tree import Tree

from ..models import Folder, Lecture, LectureStatus, UserUsage, should_show_summary_retry


STATUS_LABELS: Dict[LectureStatus, str] = {
    LectureStatus.RECORDING: "🎙️ Recording",
    LectureStatus.PROCESSING: "⏳ Processing",
    LectureStatus.TRANSCRIBED: "📝 Transcribed",
    LectureStatus.SUMMARIZING: "✍️ Summarizing",
    LectureStatus.READY: "✅ Ready",
    LectureStatus.FAILED: "⚠️ Failed",
    LectureStatus.BLOCKED_QUOTA: "⛔ Quota reached",
}

STATUS_STYLES: Dict[LectureStatus, str] = {
    LectureStatus.READY: "green",
    LectureStatus.FAILED: "red",
    LectureStatus.BLOCKED_QUOTA: "red",
    LectureStatus.PROCESSING: "yellow",
    LectureStatus.SUMMARIZING: "yellow",
}

UNFILED = "Unfiled"


@dataclass
class FolderOverview:
    name: str
    lectures: List[Lecture]


@dataclass
class OverviewSnapshot:
    folders: List[FolderOverview]
    lecture_count: int
    status_totals: Dict[LectureStatus, int]
    usage: UserUsage


def collect_overview(
    lectures: Iterable[Lecture],
    folders: Iterable[Folder] = (),
    usage: UserUsage = UserUsage(),
) -> OverviewSnapshot:
    """Group *lectures* by folder, keeping the incoming order inside each group."""

    names = {folder.id: folder.name for folder in folders}
    grouped: Dict[str, List[Lecture]] = {}
    status_totals = {status: 0 for status in LectureStatus}
    count = 0
    for lecture in lectures:
        count += 1
        status_totals[lecture.status] += 1
        name = UNFILED
        if lecture.folder_id:
            name = names.get(lecture.folder_id) or lecture.folder_name or UNFILED
        grouped.setdefault(name, []).append(lecture)

    ordered = sorted(grouped.items(), key=lambda item: (item[0] == UNFILED, item[0].lower()))
    return OverviewSnapshot(
        folders=[FolderOverview(name=name, lectures=items) for name, items in ordered],
        lecture_count=count,
        status_totals=status_totals,
        usage=usage,
    )


class LectureOverviewUI:
    """Render the lecture list and usage with Rich widgets."""

    def __init__(self, *, console: Optional[Console] = None, now: Optional[datetime] = None) -> None:
        self._console = console or Console()
        self._now = now

    def render(self, snapshot: OverviewSnapshot) -> None:
        console = self._console
        console.rule("[bold magenta]Khutbah Notes")

        if snapshot.lecture_count == 0:
            console.print(
                Panel(
                    "No lectures yet.\n"
                    "Use [bold]python run.py record[/bold] or [bold]python run.py upload[/bold] "
                    "to add your first lecture.",
                    border_style="yellow",
                    box=box.ROUNDED,
                )
            )
            return

        tree_panel = Panel(
            self._build_tree(snapshot.folders),
            title="Lectures",
            border_style="cyan",
            box=box.ROUNDED,
        )
        console.print(Columns([tree_panel, self._build_stats_panel(snapshot)], expand=True))

    def _build_tree(self, folders: Iterable[FolderOverview]) -> Tree:
        tree = Tree("[bold cyan]Folders", guide_style="cyan")
        for folder in folders:
            node = tree.add(Text(folder.name, style="bold"))
            for lecture in folder.lectures:
                node.add(self._build_lecture_label(lecture))
        return tree

    def _build_lecture_label(self, lecture: Lecture) -> Text:
        label = Text(lecture.title, style="white")
        if lecture.is_favorite:
            label.append(" ★", style="yellow")
        label.append("  ")
        label.append(
            STATUS_LABELS.get(lecture.status, lecture.status.value),
            style=STATUS_STYLES.get(lecture.status, "cyan"),
        )
        details = [lecture.date.strftime("%Y-%m-%d %H:%M")]
        if lecture.duration_minutes is not None:
            details.append(f"{lecture.duration_minutes} min")
        details.append(lecture.id)
        label.append("\n")
        label.append(" · ".join(details), style="dim")
        if lecture.error_message:
            label.append("\n")
            label.append(lecture.error_message, style="red")
        if lecture.quota_reason:
            label.append("\n")
            label.append(f"Reason: {lecture.quota_reason}", style="red")
        if self._now is not None and should_show_summary_retry(lecture, self._now):
            label.append("\n")
            label.append("Summary can be retried", style="magenta")
        return label

    def _build_stats_panel(self, snapshot: OverviewSnapshot) -> Panel:
        metrics = Table.grid(expand=True, padding=(0, 1))
        metrics.add_column(style="dim")
        metrics.add_column(justify="right", style="bold")
        metrics.add_row("Lectures", str(snapshot.lecture_count))
        for status, label in STATUS_LABELS.items():
            total = snapshot.status_totals.get(status, 0)
            if total:
                metrics.add_row(label, str(total))

        usage = snapshot.usage
        usage_table = Table.grid(expand=True, padding=(0, 1))
        usage_table.add_column(style="dim")
        usage_table.add_column(justify="right", style="bold")
        usage_table.add_row("Plan", usage.plan.capitalize())
        usage_table.add_row("Minutes remaining", str(usage.minutes_remaining))
        usage_table.add_row("Per-recording limit", f"{usage.per_recording_cap} min")

        body = Group(metrics, Rule(style="magenta"), usage_table)
        return Panel(body, title="At a glance", border_style="magenta", box=box.ROUNDED)


__all__ = [
    "FolderOverview",
    "LectureOverviewUI",
    "OverviewSnapshot",
    "STATUS_LABELS",
    "collect_overview",
]
