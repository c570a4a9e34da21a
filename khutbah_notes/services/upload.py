"""Drive local recordings to a stored blob plus a finalized lecture document."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Protocol, Set, Tuple

from ..config import AppConfig
from ..models import (
    AudioUploadTrigger,
    Lecture,
    LectureStatus,
    PendingRecording,
    PendingUpload,
    duration_minutes_from_seconds,
    utcnow,
)
from ..remote.base import LECTURES, AuthProvider, BlobStore, DocumentStore, RemoteError
from .audio_conversion import (
    PreparationCode,
    PreparationError,
    ensure_canonical_audio,
    probe_duration_seconds,
    validate_audio_file,
)
from .events import emit_task_event
from .naming import build_blob_path, new_lecture_id
from .parsing import lecture_document_fields
from .pending_store import PendingRecordingStore
from .telemetry import FailureStage, PipelineTelemetryLedger, classify_error


LOGGER = logging.getLogger(__name__)

UPLOAD_RETRY_MESSAGE = "Upload failed - tap to retry"

ErrorCallback = Callable[[str, BaseException], None]


class UploadError(RuntimeError):
    """Base class for upload orchestration failures."""

    def __init__(self, lecture_id: str, message: str) -> None:
        super().__init__(message)
        self.lecture_id = lecture_id


class NoRecoverableSourceError(UploadError):
    """Raised when a retry has neither a recording, a prepared file nor a source."""

    def __init__(self, lecture_id: str) -> None:
        super().__init__(
            lecture_id,
            "The original audio for this lecture is no longer available. "
            "Please record or choose the file again.",
        )


class LocalLectureState(Protocol):
    def insert_optimistic(self, lecture: Lecture) -> None:
        ...

    def update_local(self, lecture_id: str, **changes: object) -> None:
        ...


class UploadOrchestrator:
    """Upload pending recordings with bounded retries, one task per lecture id.

    All bookkeeping runs on the event loop that owns the session; only file
    preparation is pushed to a worker thread. A lecture id with an active
    upload rejects further attempts until that upload finishes.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        user_id: str,
        store: PendingRecordingStore,
        blob_store: BlobStore,
        documents: DocumentStore,
        ledger: PipelineTelemetryLedger,
        local_state: LocalLectureState,
        auth: Optional[AuthProvider] = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
        error_callback: Optional[ErrorCallback] = None,
    ) -> None:
        self._config = config
        self._policy = config.upload
        self._user_id = user_id
        self._store = store
        self._blob_store = blob_store
        self._documents = documents
        self._ledger = ledger
        self._local_state = local_state
        self._auth = auth
        self._sleep = sleep
        self._error_callback = error_callback
        self.pending: Dict[str, PendingUpload] = {}
        self._active: Set[str] = set()
        self._tasks: Dict[str, asyncio.Task] = {}
        self._running: Counter = Counter()
        self.peak_concurrency: Counter = Counter()

    @property
    def user_id(self) -> str:
        return self._user_id

    def is_active(self, lecture_id: str) -> bool:
        return lecture_id in self._active

    def pending_lectures(self) -> List[Lecture]:
        """Synthetic rows for every outstanding upload."""

        return [pending.to_lecture() for pending in self.pending.values()]

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------
    async def create_lecture(
        self,
        title: str,
        source: Path,
        *,
        trigger: AudioUploadTrigger = AudioUploadTrigger.RECORDING,
        date: Optional[datetime] = None,
        duration_seconds: Optional[float] = None,
    ) -> Lecture:
        """Persist a pending record, show it locally and start uploading it."""

        if duration_seconds is None:
            duration_seconds = await asyncio.to_thread(probe_duration_seconds, source)

        lecture_id = new_lecture_id()
        record = PendingRecording(
            id=lecture_id,
            user_id=self._user_id,
            title=title.strip() or "Untitled lecture",
            date=date or utcnow(),
            audio_path=build_blob_path(
                self._user_id, lecture_id, self._policy.canonical_extension
            ),
            file_path=str(source),
            trigger=trigger,
            duration_minutes=duration_minutes_from_seconds(duration_seconds),
        )
        self._store.upsert(record)
        pending = PendingUpload(record=record, source=source)
        self.pending[lecture_id] = pending

        lecture = pending.to_lecture()
        self._local_state.insert_optimistic(lecture)
        emit_task_event(
            "lecture_created",
            payload={"lecture_id": lecture_id, "trigger": trigger, "source": source},
        )
        self._schedule(pending, resume=False)
        return lecture

    def retry_upload(self, lecture_id: str) -> bool:
        """Start another upload for *lecture_id*.

        Returns ``False`` when an upload for the id is already running and
        raises :class:`NoRecoverableSourceError` when nothing local is left to
        upload.
        """

        if lecture_id in self._active:
            LOGGER.info("Upload for %s is already running; ignoring retry", lecture_id)
            return False

        pending = self.pending.get(lecture_id)
        if pending is None:
            for record in self._store.load(self._user_id):
                if record.id == lecture_id:
                    pending = PendingUpload(record=record, source=record.file)
                    break
        if pending is None or pending.recoverable_source() is None:
            raise NoRecoverableSourceError(lecture_id)

        self.pending[lecture_id] = pending
        self._local_state.update_local(
            lecture_id, status=LectureStatus.PROCESSING, error_message=None
        )
        # The blob may already be stored by an earlier process.
        return self._schedule(pending, resume=False, check_existing=True)

    def restore_pending_recordings(self) -> List[PendingRecording]:
        """Resume every stored record whose local file still exists."""

        records = self._store.load(self._user_id)
        kept: List[PendingRecording] = []
        for record in records:
            if record.file.exists():
                kept.append(record)
                continue
            LOGGER.info("Dropping pending recording %s; %s is missing", record.id, record.file)
            self.pending.pop(record.id, None)
        if len(kept) != len(records):
            self._store.replace(kept, self._user_id)

        for record in kept:
            if record.id in self._active:
                continue
            pending = self.pending.get(record.id)
            if pending is None:
                pending = PendingUpload(record=record, source=record.file)
                self.pending[record.id] = pending
            self._local_state.insert_optimistic(pending.to_lecture())
            self._schedule(pending, resume=True)
        return kept

    def discard(self, lecture_id: str) -> None:
        """Forget a pending upload the user removed."""

        pending = self.pending.pop(lecture_id, None)
        self._store.remove(lecture_id, self._user_id)
        if pending is not None:
            self._remove_prepared(pending)

    async def finalize(self, record: PendingRecording) -> None:
        """Merge the lecture document for an uploaded blob.

        Merge semantics make repeated calls leave the document unchanged.
        """

        await self._documents.merge(
            self._user_id, LECTURES, record.id, lecture_document_fields(record)
        )

    async def wait_for(self, lecture_id: str) -> None:
        task = self._tasks.get(lecture_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def drain(self) -> None:
        """Wait until no upload task is running."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------
    def _schedule(
        self, pending: PendingUpload, *, resume: bool, check_existing: bool = False
    ) -> bool:
        lecture_id = pending.lecture_id
        if lecture_id in self._active:
            LOGGER.info("Upload for %s is already running; not starting another", lecture_id)
            return False
        self._active.add(lecture_id)
        task = asyncio.get_running_loop().create_task(
            self._run(pending, resume=resume, check_existing=check_existing or resume)
        )
        self._tasks[lecture_id] = task
        return True

    async def _run(self, pending: PendingUpload, *, resume: bool, check_existing: bool) -> None:
        lecture_id = pending.lecture_id
        self._running[lecture_id] += 1
        self.peak_concurrency[lecture_id] = max(
            self.peak_concurrency[lecture_id], self._running[lecture_id]
        )
        try:
            await self._upload(pending, resume=resume, check_existing=check_existing)
        except Exception as error:  # noqa: BLE001 - reported through the lecture state
            LOGGER.exception("Upload for %s failed unexpectedly", lecture_id)
            self._ledger.upload_failed(
                lecture_id, stage=FailureStage.UPLOAD, code=classify_error(error)
            )
            await self._fail(pending, error, UPLOAD_RETRY_MESSAGE)
        finally:
            self._running[lecture_id] -= 1
            self._active.discard(lecture_id)
            self._tasks.pop(lecture_id, None)

    async def _upload(
        self, pending: PendingUpload, *, resume: bool, check_existing: bool
    ) -> None:
        record = pending.record
        lecture_id = record.id
        source = pending.recoverable_source()
        self._ledger.upload_attempt(
            lecture_id,
            trigger=record.trigger,
            resume=resume,
            file_size=_file_size(source),
            file_duration=(
                record.duration_minutes * 60.0 if record.duration_minutes is not None else None
            ),
        )
        emit_task_event("upload_attempt", payload={"lecture_id": lecture_id, "resume": resume})

        try:
            prepared = await asyncio.to_thread(self._prepare, pending)
        except PreparationError as error:
            LOGGER.warning("Preparation of %s failed: %s", lecture_id, error)
            self._ledger.upload_failed(
                lecture_id, stage=FailureStage.PREPARE, code=classify_error(error)
            )
            await self._fail(pending, error, str(error))
            return
        pending.prepared = prepared

        if self._auth is not None:
            try:
                await self._auth.get_id_token()
            except RemoteError as error:
                self._ledger.upload_failed(
                    lecture_id, stage=FailureStage.AUTH, code=classify_error(error)
                )
                await self._fail(pending, error, UPLOAD_RETRY_MESSAGE)
                return

        self._ledger.upload_started(lecture_id)
        failures_before = len(pending.failures)
        try:
            total_bytes, retries = await self._store_blob(
                pending, prepared, check_existing=check_existing
            )
        except RemoteError as error:
            retries = max(0, len(pending.failures) - failures_before - 1)
            self._ledger.upload_failed(
                lecture_id,
                stage=FailureStage.UPLOAD,
                code=classify_error(error),
                retries_count=retries,
            )
            await self._fail(pending, error, UPLOAD_RETRY_MESSAGE)
            return

        try:
            await self.finalize(record)
        except RemoteError as error:
            LOGGER.warning("Finalizing %s failed after the blob was stored: %s", lecture_id, error)
            self._ledger.upload_failed(
                lecture_id,
                stage=FailureStage.FINALIZE,
                code=classify_error(error),
                retries_count=retries,
            )
            await self._fail(pending, error, UPLOAD_RETRY_MESSAGE)
            return

        self._store.remove(lecture_id, self._user_id)
        self.pending.pop(lecture_id, None)
        self._remove_prepared(pending)
        self._ledger.upload_succeeded(lecture_id, total_bytes=total_bytes, retries_count=retries)
        emit_task_event(
            "upload_completed",
            payload={"lecture_id": lecture_id, "bytes": total_bytes, "retries": retries},
        )

    def _prepare(self, pending: PendingUpload) -> Path:
        if pending.prepared is not None and pending.prepared.exists():
            validate_audio_file(pending.prepared, self._policy)
            return pending.prepared

        source = pending.recoverable_source()
        if source is None:
            raise PreparationError(
                PreparationCode.UNREADABLE_FILE, "The audio file could not be read."
            )
        validate_audio_file(source, self._policy)
        prepared, created = ensure_canonical_audio(
            source, output_dir=self._config.prepared_root, policy=self._policy
        )
        if created:
            try:
                validate_audio_file(prepared, self._policy)
            except PreparationError:
                prepared.unlink(missing_ok=True)
                raise
        return prepared

    async def _store_blob(
        self, pending: PendingUpload, prepared: Path, *, check_existing: bool
    ) -> Tuple[int, int]:
        blob_path = pending.record.audio_path
        if pending.blob_uploaded or check_existing:
            try:
                present = await self._blob_store.exists(blob_path)
            except RemoteError as error:
                LOGGER.debug("Could not check %s before upload: %s", blob_path, error)
                present = False
            if present:
                LOGGER.info("Blob %s already stored; skipping upload", blob_path)
                pending.blob_uploaded = True
                return prepared.stat().st_size, 0

        attempt = 0
        while True:
            attempt += 1
            try:
                total_bytes = await self._blob_store.upload(
                    prepared, blob_path, self._policy.content_type
                )
            except RemoteError as error:
                pending.failures.append(str(error))
                if error.is_transient and attempt < self._policy.max_attempts:
                    delay = self._policy.delay_for_attempt(attempt)
                    LOGGER.warning(
                        "Upload attempt %d/%d for %s failed (%s); retrying in %.0fs",
                        attempt,
                        self._policy.max_attempts,
                        pending.lecture_id,
                        error.code.value,
                        delay,
                    )
                    await self._sleep(delay)
                    continue
                raise
            pending.blob_uploaded = True
            return total_bytes, attempt - 1

    async def _fail(self, pending: PendingUpload, error: BaseException, message: str) -> None:
        record = pending.record
        lecture_id = record.id
        if pending.recoverable_source() is None:
            LOGGER.info("No local audio left for %s; clearing its pending record", lecture_id)
            self._store.remove(lecture_id, self._user_id)
            self.pending.pop(lecture_id, None)
        else:
            self._store.upsert(record)

        self._local_state.update_local(
            lecture_id, status=LectureStatus.FAILED, error_message=message
        )
        try:
            await self._documents.merge(
                self._user_id,
                LECTURES,
                lecture_id,
                {
                    "title": record.title,
                    "date": record.date,
                    "status": LectureStatus.FAILED.value,
                    "errorMessage": message,
                },
            )
        except RemoteError as remote_error:
            LOGGER.warning("Could not mark %s as failed remotely: %s", lecture_id, remote_error)

        emit_task_event(
            "upload_failed",
            payload={"lecture_id": lecture_id, "error": error, "message": message},
            level=logging.WARNING,
        )
        if self._error_callback is not None:
            self._error_callback(lecture_id, error)

    def _remove_prepared(self, pending: PendingUpload) -> None:
        prepared = pending.prepared
        if prepared is None or prepared == pending.record.file:
            return
        if prepared.parent == self._config.prepared_root:
            with contextlib.suppress(OSError):
                prepared.unlink()


def _file_size(path: Optional[Path]) -> Optional[int]:
    if path is None:
        return None
    try:
        return path.stat().st_size
    except OSError:
        return None


__all__ = [
    "NoRecoverableSourceError",
    "UPLOAD_RETRY_MESSAGE",
    "UploadError",
    "UploadOrchestrator",
]
