"""Merge remote lecture snapshots with local optimistic state."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import tempfile
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set

from ..config import QuotaPolicy
from ..models import Folder, Lecture, LectureStatus, UserUsage, duration_minutes_from_seconds
from ..remote.base import LECTURES, BlobStore, DocumentSnapshot, DocumentStore, RemoteError
from .audio_conversion import probe_duration_seconds
from .parsing import folder_from_document, lectures_from_documents, usage_from_document


LOGGER = logging.getLogger(__name__)

LectureListener = Callable[[Optional[Lecture], Lecture], None]
ErrorCallback = Callable[[str, BaseException], None]


class LectureStateReconciler:
    """Single ordered lecture list built from remote and local sources.

    Remote documents win as soon as they contain an id. Until then a local
    override (optimistic insert or local status change) is shown, and any
    still-pending upload without either appears as a synthetic ``processing``
    row. Every merge is sorted by date, newest first.
    """

    def __init__(
        self,
        *,
        pending_lectures: Callable[[], Iterable[Lecture]] = lambda: (),
        quota: QuotaPolicy = QuotaPolicy(),
        backfill: Optional["DurationBackfill"] = None,
    ) -> None:
        self._pending_lectures = pending_lectures
        self._backfill = backfill
        self._quota = quota
        self._remote: List[Lecture] = []
        self._overrides: Dict[str, Lecture] = {}
        self._listeners: List[LectureListener] = []
        self.lectures: List[Lecture] = []
        self.folders: List[Folder] = []
        self.usage: UserUsage = usage_from_document(None, quota)

    def add_listener(self, listener: LectureListener) -> None:
        """Register *listener* for every changed ``(previous, current)`` pair."""

        self._listeners.append(listener)

    def lecture(self, lecture_id: str) -> Optional[Lecture]:
        for lecture in self.lectures:
            if lecture.id == lecture_id:
                return lecture
        return None

    # ------------------------------------------------------------------
    # Remote feeds
    # ------------------------------------------------------------------
    def apply_snapshot(self, documents: Sequence[DocumentSnapshot]) -> List[Lecture]:
        """Replace the remote view with *documents* and re-merge."""

        self._remote = lectures_from_documents(documents)
        remote_ids = {lecture.id for lecture in self._remote}
        for lecture_id in list(self._overrides):
            if lecture_id in remote_ids:
                del self._overrides[lecture_id]
        lectures = self._rebuild()
        if self._backfill is not None:
            pending_ids = {lecture.id for lecture in self._pending_lectures()}
            self._backfill.schedule(
                lecture for lecture in self._remote if lecture.id not in pending_ids
            )
        return lectures

    def apply_folders(self, documents: Sequence[DocumentSnapshot]) -> List[Folder]:
        folders = [folder_from_document(document.id, document.data) for document in documents]
        self.folders = [folder for folder in folders if folder is not None]
        return self.folders

    def apply_profile(self, data: Optional[dict]) -> UserUsage:
        self.usage = usage_from_document(data, self._quota)
        return self.usage

    # ------------------------------------------------------------------
    # Local optimistic state
    # ------------------------------------------------------------------
    def insert_optimistic(self, lecture: Lecture) -> None:
        if any(remote.id == lecture.id for remote in self._remote):
            return
        self._overrides[lecture.id] = lecture
        self._rebuild()

    def update_local(self, lecture_id: str, **changes: object) -> None:
        """Apply *changes* to the visible lecture until the next remote snapshot."""

        current = self.lecture(lecture_id)
        if current is None:
            LOGGER.debug("Ignoring local update for unknown lecture %s", lecture_id)
            return
        updated = dataclasses.replace(current, **changes)
        self._overrides[lecture_id] = updated
        self._remote = [updated if lecture.id == lecture_id else lecture for lecture in self._remote]
        self._rebuild()

    def remove_local(self, lecture_id: str) -> None:
        self._overrides.pop(lecture_id, None)
        self._remote = [lecture for lecture in self._remote if lecture.id != lecture_id]
        self._rebuild()

    def clear(self) -> None:
        self._remote = []
        self._overrides.clear()
        self.folders = []
        self.usage = usage_from_document(None, self._quota)
        self._rebuild()

    # ------------------------------------------------------------------
    # Merge
    # ------------------------------------------------------------------
    def merged(self) -> List[Lecture]:
        combined = list(self._remote)
        seen = {lecture.id for lecture in combined}
        for lecture in self._overrides.values():
            if lecture.id not in seen:
                combined.append(lecture)
                seen.add(lecture.id)
        for lecture in self._pending_lectures():
            if lecture.id not in seen:
                combined.append(dataclasses.replace(lecture, status=LectureStatus.PROCESSING))
                seen.add(lecture.id)
        combined.sort(key=lambda lecture: lecture.date, reverse=True)
        return combined

    def _rebuild(self) -> List[Lecture]:
        previous = {lecture.id: lecture for lecture in self.lectures}
        self.lectures = self.merged()
        for lecture in self.lectures:
            before = previous.get(lecture.id)
            if before == lecture:
                continue
            for listener in self._listeners:
                listener(before, lecture)
        return self.lectures


class DurationBackfill:
    """Probe and store durations for uploaded lectures that lack one."""

    def __init__(
        self,
        *,
        user_id: str,
        documents: DocumentStore,
        blob_store: BlobStore,
        scratch_root: Path,
        error_callback: Optional[ErrorCallback] = None,
    ) -> None:
        self._user_id = user_id
        self._documents = documents
        self._blob_store = blob_store
        self._scratch_root = scratch_root
        self._error_callback = error_callback
        self._in_flight: Set[str] = set()
        self._unresolved: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()

    @property
    def in_flight(self) -> Set[str]:
        return set(self._in_flight)

    def schedule(self, lectures: Iterable[Lecture]) -> int:
        """Start a probe for every eligible lecture; return how many started."""

        started = 0
        for lecture in lectures:
            if lecture.duration_minutes is not None or not lecture.audio_path:
                continue
            if lecture.is_demo or lecture.status is LectureStatus.FAILED:
                continue
            if lecture.id in self._in_flight or lecture.id in self._unresolved:
                continue
            self._in_flight.add(lecture.id)
            task = asyncio.get_running_loop().create_task(self._backfill(lecture))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            started += 1
        return started

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _backfill(self, lecture: Lecture) -> None:
        try:
            minutes = await self._probe(lecture.id, lecture.audio_path or "")
            if minutes is None:
                self._unresolved.add(lecture.id)
                return
            await self._documents.merge(
                self._user_id, LECTURES, lecture.id, {"durationMinutes": minutes}
            )
            LOGGER.info("Stored duration of %s: %d min", lecture.id, minutes)
        except RemoteError as error:
            LOGGER.warning("Duration backfill for %s failed: %s", lecture.id, error)
            self._unresolved.add(lecture.id)
            if self._error_callback is not None:
                self._error_callback(lecture.id, error)
        finally:
            self._in_flight.discard(lecture.id)

    async def _probe(self, lecture_id: str, audio_path: str) -> Optional[int]:
        self._scratch_root.mkdir(parents=True, exist_ok=True)
        suffix = Path(audio_path).suffix or ".m4a"
        with tempfile.TemporaryDirectory(dir=self._scratch_root) as directory:
            destination = Path(directory) / f"{lecture_id}{suffix}"
            await self._blob_store.download(audio_path, destination)
            seconds = await asyncio.to_thread(probe_duration_seconds, destination)
        return duration_minutes_from_seconds(seconds)


__all__ = ["DurationBackfill", "LectureListener", "LectureStateReconciler"]
