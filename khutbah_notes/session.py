"""Per-user session wiring capture, upload, reconciliation and telemetry."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, List, Optional

from .capture.recorder import AudioCapture
from .config import AppConfig
from .models import (
    AudioUploadTrigger,
    Folder,
    Lecture,
    LectureStatus,
    PendingRecording,
    UserUsage,
    should_show_summary_retry,
    utcnow,
)
from .remote.base import (
    DELETE_FIELD,
    FOLDERS,
    LECTURES,
    SERVER_TIMESTAMP,
    AuthProvider,
    BlobStore,
    DocumentStore,
    RemoteError,
    RemoteErrorCode,
    Subscription,
)
from .services.account import AccountDeletionClient, AccountDeletionError
from .services.events import emit_task_event
from .services.pending_store import PendingRecordingStore
from .services.reconciler import DurationBackfill, LectureStateReconciler
from .services.routing import RouteActionStore
from .services.telemetry import (
    AnalyticsSink,
    LoggingAnalyticsSink,
    PipelineTelemetryLedger,
    classify_error,
)
from .services.upload import ErrorCallback, UploadOrchestrator


LOGGER = logging.getLogger(__name__)


class SessionNotStartedError(RuntimeError):
    """Raised when a session operation runs before :meth:`LectureSession.start`."""


class LectureSession:
    """Single owner of the lecture list, pending uploads and telemetry contexts.

    Every method must run on the event loop that called :meth:`start`; remote
    snapshots are delivered on that same loop in arrival order.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        documents: DocumentStore,
        blob_store: BlobStore,
        auth: AuthProvider,
        analytics: Optional[AnalyticsSink] = None,
        deletion_client: Optional[AccountDeletionClient] = None,
        route_store: Optional[RouteActionStore] = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
        network_type: Callable[[], str] = lambda: "unknown",
        error_callback: Optional[ErrorCallback] = None,
    ) -> None:
        self.config = config
        self._documents = documents
        self._blob_store = blob_store
        self._auth = auth
        self._analytics = analytics or LoggingAnalyticsSink(enabled=config.analytics_enabled)
        self._deletion_client = deletion_client
        if deletion_client is None and config.account_deletion_url:
            self._deletion_client = AccountDeletionClient(config.account_deletion_url)
        self.route_store = route_store or RouteActionStore(config.route_file)
        self._sleep = sleep
        self._network_type = network_type
        self._error_callback = error_callback
        self.pending_store = PendingRecordingStore(config.pending_file)
        self.ledger = PipelineTelemetryLedger(self._analytics, network_type=network_type)
        self._subscriptions: List[Subscription] = []
        self._user_id: Optional[str] = None
        self._reconciler: Optional[LectureStateReconciler] = None
        self._orchestrator: Optional[UploadOrchestrator] = None
        self._backfill: Optional[DurationBackfill] = None
        self._restored: List[PendingRecording] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> str:
        user_id = await self._auth.sign_in_anonymously()
        self._user_id = user_id
        if isinstance(self._analytics, LoggingAnalyticsSink):
            self._analytics.set_user_id(user_id)

        self._backfill = DurationBackfill(
            user_id=user_id,
            documents=self._documents,
            blob_store=self._blob_store,
            scratch_root=self.config.prepared_root,
            error_callback=self._report,
        )
        reconciler = LectureStateReconciler(
            pending_lectures=lambda: self.orchestrator.pending_lectures(),
            quota=self.config.quota,
            backfill=self._backfill,
        )
        reconciler.add_listener(self.ledger.observe)
        self._reconciler = reconciler
        self._orchestrator = UploadOrchestrator(
            self.config,
            user_id=user_id,
            store=self.pending_store,
            blob_store=self._blob_store,
            documents=self._documents,
            ledger=self.ledger,
            local_state=reconciler,
            auth=self._auth,
            sleep=self._sleep,
            error_callback=self._report,
        )

        self._subscriptions = [
            self._documents.subscribe(
                user_id,
                LECTURES,
                reconciler.apply_snapshot,
                order_by="date",
                descending=True,
                on_error=lambda error: self._report(LECTURES, error),
            ),
            self._documents.subscribe(
                user_id,
                FOLDERS,
                reconciler.apply_folders,
                order_by="createdAt",
                on_error=lambda error: self._report(FOLDERS, error),
            ),
            self._documents.subscribe_profile(
                user_id,
                reconciler.apply_profile,
                on_error=lambda error: self._report("profile", error),
            ),
        ]
        self._restored = self._orchestrator.restore_pending_recordings()
        if self._restored:
            LOGGER.info("Resuming %d pending upload(s)", len(self._restored))
        # Initial snapshots are queued on the loop; let them land.
        await asyncio.sleep(0)
        LOGGER.info("Session started for user %s", user_id)
        return user_id

    async def close(self) -> None:
        for subscription in self._subscriptions:
            subscription.remove()
        self._subscriptions = []

    async def wait_idle(self) -> None:
        """Wait for uploads, duration probes and queued snapshots to settle."""

        await self.orchestrator.drain()
        if self._backfill is not None:
            await self._backfill.drain()
        for _ in range(3):
            await asyncio.sleep(0)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------
    @property
    def user_id(self) -> str:
        if self._user_id is None:
            raise SessionNotStartedError("Session has not been started")
        return self._user_id

    @property
    def restored_recordings(self) -> List[PendingRecording]:
        """Pending records resumed when the session started."""

        return list(self._restored)

    @property
    def reconciler(self) -> LectureStateReconciler:
        if self._reconciler is None:
            raise SessionNotStartedError("Session has not been started")
        return self._reconciler

    @property
    def orchestrator(self) -> UploadOrchestrator:
        if self._orchestrator is None:
            raise SessionNotStartedError("Session has not been started")
        return self._orchestrator

    @property
    def lectures(self) -> List[Lecture]:
        return list(self.reconciler.lectures)

    @property
    def folders(self) -> List[Folder]:
        return list(self.reconciler.folders)

    @property
    def usage(self) -> UserUsage:
        return self.reconciler.usage

    def lecture(self, lecture_id: str) -> Optional[Lecture]:
        return self.reconciler.lecture(lecture_id)

    # ------------------------------------------------------------------
    # Uploads
    # ------------------------------------------------------------------
    async def create_lecture(
        self,
        title: str,
        source: Path,
        *,
        trigger: AudioUploadTrigger = AudioUploadTrigger.MANUAL,
        duration_seconds: Optional[float] = None,
        date: Optional[datetime] = None,
    ) -> Lecture:
        return await self.orchestrator.create_lecture(
            title, source, trigger=trigger, duration_seconds=duration_seconds, date=date
        )

    async def finish_capture(
        self,
        capture: AudioCapture,
        title: str,
        *,
        trigger: AudioUploadTrigger = AudioUploadTrigger.RECORDING,
    ) -> Optional[Lecture]:
        """Stop *capture* and hand the finished file to the upload pipeline."""

        path = capture.stop()
        if path is None:
            return None
        return await self.create_lecture(
            title, path, trigger=trigger, duration_seconds=capture.last_duration
        )

    def retry_upload(self, lecture_id: str) -> bool:
        return self.orchestrator.retry_upload(lecture_id)

    def restore_pending_recordings(self) -> List[PendingRecording]:
        return self.orchestrator.restore_pending_recordings()

    def route_to_save_card(self, lecture_id: str) -> None:
        self.route_store.route_to_save_card(lecture_id)

    # ------------------------------------------------------------------
    # Lecture operations
    # ------------------------------------------------------------------
    async def rename_lecture(self, lecture_id: str, title: str) -> None:
        trimmed = title.strip()
        if not trimmed:
            raise ValueError("Lecture title cannot be empty")
        self.reconciler.update_local(lecture_id, title=trimmed)
        await self._merge_lecture(lecture_id, {"title": trimmed})

    async def move_lecture(self, lecture_id: str, folder: Optional[Folder]) -> None:
        if folder is None:
            self.reconciler.update_local(lecture_id, folder_id=None, folder_name=None)
            await self._merge_lecture(
                lecture_id, {"folderId": DELETE_FIELD, "folderName": DELETE_FIELD}
            )
            return
        self.reconciler.update_local(lecture_id, folder_id=folder.id, folder_name=folder.name)
        await self._merge_lecture(lecture_id, {"folderId": folder.id, "folderName": folder.name})

    async def set_favorite(self, lecture_id: str, is_favorite: bool) -> None:
        self.reconciler.update_local(lecture_id, is_favorite=is_favorite)
        await self._merge_lecture(lecture_id, {"isFavorite": is_favorite})

    async def create_folder(self, name: str) -> str:
        trimmed = name.strip()
        if not trimmed:
            raise ValueError("Folder name cannot be empty")
        folder_id = str(uuid.uuid4()).upper()
        await self._documents.merge(
            self.user_id, FOLDERS, folder_id, {"name": trimmed, "createdAt": SERVER_TIMESTAMP}
        )
        return folder_id

    async def delete_lecture(self, lecture_id: str) -> None:
        """Remove the document, its blob and any local pending state."""

        lecture = self.lecture(lecture_id)
        pending = self.orchestrator.pending.get(lecture_id)
        local_files = [pending.record.file] if pending is not None else []
        for record in self.pending_store.load(self.user_id):
            if record.id == lecture_id:
                local_files.append(record.file)

        self.orchestrator.discard(lecture_id)
        self.ledger.forget(lecture_id)
        self.reconciler.remove_local(lecture_id)
        for path in local_files:
            with contextlib.suppress(OSError):
                path.unlink()

        await self._documents.delete(self.user_id, LECTURES, lecture_id)
        if lecture is not None and lecture.audio_path and not lecture.is_demo:
            try:
                await self._blob_store.delete(lecture.audio_path)
            except RemoteError as error:
                if error.code is not RemoteErrorCode.NOT_FOUND:
                    raise
        emit_task_event("lecture_deleted", payload={"lecture_id": lecture_id})

    def should_show_summary_retry(self, lecture: Lecture, now: Optional[datetime] = None) -> bool:
        return should_show_summary_retry(
            lecture,
            now or utcnow(),
            ttl=timedelta(seconds=self.config.summary.in_progress_ttl_seconds),
        )

    async def retry_summary(self, lecture_id: str) -> None:
        """Ask the server to summarize an existing transcript again."""

        lecture = self.lecture(lecture_id)
        if lecture is None or not lecture.has_transcript:
            raise ValueError(f"Lecture {lecture_id} has no transcript to summarize")

        self.ledger.summary_retry_requested(lecture_id)
        self.reconciler.update_local(
            lecture_id,
            status=LectureStatus.TRANSCRIBED,
            summary=None,
            summary_in_progress=None,
            error_message=None,
        )
        try:
            await self._documents.merge(
                self.user_id,
                LECTURES,
                lecture_id,
                {
                    "status": LectureStatus.TRANSCRIBED.value,
                    "summary": DELETE_FIELD,
                    "summaryInProgress": DELETE_FIELD,
                    "errorMessage": DELETE_FIELD,
                },
            )
        except RemoteError as error:
            self.ledger.summary_retry_failed(lecture_id, classify_error(error))
            self.reconciler.update_local(
                lecture_id, status=LectureStatus.FAILED, error_message=str(error)
            )
            self._report(lecture_id, error)
            raise

    # ------------------------------------------------------------------
    # Account
    # ------------------------------------------------------------------
    async def delete_account(self) -> None:
        """Delete server-side data, then forget everything held locally."""

        if self._deletion_client is None:
            raise AccountDeletionError("Account deletion is not configured")
        token = await self._auth.get_id_token(force_refresh=True)
        await self._deletion_client.delete_account(token)

        user_id = self.user_id
        await self.close()
        for record in self.pending_store.load(user_id):
            with contextlib.suppress(OSError):
                record.file.unlink()
        self.pending_store.replace([], user_id)
        for lecture_id in list(self.orchestrator.pending):
            self.orchestrator.discard(lecture_id)
            self.ledger.forget(lecture_id)
        self.reconciler.clear()
        self.route_store.clear_route_action()
        await self._auth.sign_out()
        self._user_id = None
        LOGGER.info("Local state cleared after account deletion")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    async def _merge_lecture(self, lecture_id: str, fields: dict) -> None:
        try:
            await self._documents.merge(self.user_id, LECTURES, lecture_id, fields)
        except RemoteError as error:
            self._report(lecture_id, error)
            raise

    def _report(self, subject: str, error: BaseException) -> None:
        LOGGER.warning("%s: %s", subject, error)
        if self._error_callback is not None:
            self._error_callback(subject, error)


__all__ = ["LectureSession", "SessionNotStartedError"]
