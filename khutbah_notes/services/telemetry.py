"""Lifecycle analytics that follow one recording through every pipeline phase.

Each phase (upload, transcription, summarization) emits ``attempt``,
``started``, ``success`` and ``failed`` events. A correlation context is opened
when a phase begins and discarded once the phase concludes; later phases carry
the identifiers of the phases that produced their input.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Tuple

from ..models import AudioUploadTrigger, Lecture, LectureStatus
from ..remote.base import RemoteError, RemoteErrorCode
from .audio_conversion import PreparationCode, PreparationError
from .events import emit_analytics_event


LOGGER = logging.getLogger(__name__)


class ErrorCode(str, Enum):
    AUTH = "auth"
    NETWORK = "network"
    TIMEOUT = "timeout"
    SERVER_5XX = "server_5xx"
    CLIENT_4XX = "client_4xx"
    QUOTA = "quota"
    FILE_TOO_LARGE = "file_too_large"
    INVALID_MEDIA = "invalid_media"
    CANCELED = "canceled"
    UNKNOWN = "unknown"


RETRYABLE_CODES = frozenset({ErrorCode.NETWORK, ErrorCode.TIMEOUT, ErrorCode.SERVER_5XX})


def is_retryable(code: ErrorCode) -> bool:
    return code in RETRYABLE_CODES


class FailureStage(str, Enum):
    PREPARE = "prepare"
    AUTH = "auth"
    UPLOAD = "upload"
    FINALIZE = "finalize"
    TRANSCRIPTION = "transcription"
    SUMMARIZATION = "summarization"


class Phase(str, Enum):
    UPLOAD = "audio_upload"
    TRANSCRIPTION = "transcription"
    SUMMARIZATION = "summarization"

    @property
    def id_key(self) -> str:
        return {
            Phase.UPLOAD: "upload_id",
            Phase.TRANSCRIPTION: "transcription_id",
            Phase.SUMMARIZATION: "summary_id",
        }[self]


_REMOTE_CODES: Dict[RemoteErrorCode, ErrorCode] = {
    RemoteErrorCode.NETWORK: ErrorCode.NETWORK,
    RemoteErrorCode.TIMEOUT: ErrorCode.TIMEOUT,
    RemoteErrorCode.RETRY_LIMIT_EXCEEDED: ErrorCode.TIMEOUT,
    RemoteErrorCode.UNAUTHENTICATED: ErrorCode.AUTH,
    RemoteErrorCode.UNAUTHORIZED: ErrorCode.AUTH,
    RemoteErrorCode.QUOTA_EXCEEDED: ErrorCode.QUOTA,
    RemoteErrorCode.NOT_FOUND: ErrorCode.CLIENT_4XX,
    RemoteErrorCode.INVALID_ARGUMENT: ErrorCode.CLIENT_4XX,
    RemoteErrorCode.CLIENT: ErrorCode.CLIENT_4XX,
    RemoteErrorCode.SERVER: ErrorCode.SERVER_5XX,
    RemoteErrorCode.CANCELED: ErrorCode.CANCELED,
    RemoteErrorCode.UNKNOWN: ErrorCode.UNKNOWN,
}


def classify_remote_error(error: RemoteError) -> ErrorCode:
    return _REMOTE_CODES.get(error.code, ErrorCode.UNKNOWN)


def classify_preparation_error(error: PreparationError) -> ErrorCode:
    if error.code is PreparationCode.FILE_TOO_LARGE:
        return ErrorCode.FILE_TOO_LARGE
    return ErrorCode.INVALID_MEDIA


def classify_error(error: BaseException) -> ErrorCode:
    if isinstance(error, RemoteError):
        return classify_remote_error(error)
    if isinstance(error, PreparationError):
        return classify_preparation_error(error)
    if isinstance(error, asyncio.CancelledError):
        return ErrorCode.CANCELED
    if isinstance(error, (TimeoutError, asyncio.TimeoutError)):
        return ErrorCode.TIMEOUT
    if isinstance(error, ConnectionError):
        return ErrorCode.NETWORK
    return ErrorCode.UNKNOWN


class AnalyticsSink(Protocol):
    def log(self, name: str, parameters: Mapping[str, Any]) -> None:
        ...


def _clean(parameters: Mapping[str, Any]) -> Dict[str, Any]:
    cleaned: Dict[str, Any] = {}
    for key, value in parameters.items():
        if value is None:
            continue
        cleaned[key] = value.value if isinstance(value, Enum) else value
    return cleaned


class LoggingAnalyticsSink:
    """Write analytics events to the structured event log."""

    def __init__(self, *, enabled: bool = True) -> None:
        self.enabled = enabled
        self.user_id: Optional[str] = None

    def set_user_id(self, user_id: Optional[str]) -> None:
        self.user_id = user_id

    def log(self, name: str, parameters: Mapping[str, Any]) -> None:
        if not self.enabled:
            return
        emit_analytics_event(
            name,
            payload=_clean(parameters),
            correlation={"user_id": self.user_id},
        )


class RecordingAnalyticsSink:
    """Keep analytics events in memory."""

    def __init__(self) -> None:
        self.events: List[Tuple[str, Dict[str, Any]]] = []

    def log(self, name: str, parameters: Mapping[str, Any]) -> None:
        self.events.append((name, _clean(parameters)))

    def names(self) -> List[str]:
        return [name for name, _ in self.events]

    def of(self, name: str) -> List[Dict[str, Any]]:
        return [parameters for event_name, parameters in self.events if event_name == name]


@dataclass
class CorrelationContext:
    phase: Phase
    lecture_id: str
    identifier: str
    opened_at: float
    parents: Dict[str, str] = field(default_factory=dict)
    started: bool = False
    trigger: Optional[AudioUploadTrigger] = None
    resume: bool = False
    file_size: Optional[int] = None
    file_duration: Optional[float] = None


class PipelineTelemetryLedger:
    """Correlate and emit lifecycle events for upload, transcription and summary."""

    def __init__(
        self,
        sink: AnalyticsSink,
        *,
        clock: Callable[[], float] = time.monotonic,
        id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
        network_type: Callable[[], str] = lambda: "unknown",
    ) -> None:
        self._sink = sink
        self._clock = clock
        self._id_factory = id_factory
        self._network_type = network_type
        self._contexts: Dict[Tuple[Phase, str], CorrelationContext] = {}
        self._known_ids: Dict[str, Dict[str, str]] = {}

    # ------------------------------------------------------------------
    # Context bookkeeping
    # ------------------------------------------------------------------
    def context(self, phase: Phase, lecture_id: str) -> Optional[CorrelationContext]:
        return self._contexts.get((phase, lecture_id))

    def known_ids(self, lecture_id: str) -> Dict[str, str]:
        return dict(self._known_ids.get(lecture_id, {}))

    def forget(self, lecture_id: str) -> None:
        for phase in Phase:
            self._contexts.pop((phase, lecture_id), None)
        self._known_ids.pop(lecture_id, None)

    def _open(self, phase: Phase, lecture_id: str, **attributes: Any) -> CorrelationContext:
        context = CorrelationContext(
            phase=phase,
            lecture_id=lecture_id,
            identifier=self._id_factory(),
            opened_at=self._clock(),
            parents=self.known_ids(lecture_id),
            **attributes,
        )
        self._contexts[(phase, lecture_id)] = context
        return context

    def _close(self, context: CorrelationContext, *, succeeded: bool) -> None:
        self._contexts.pop((context.phase, context.lecture_id), None)
        if succeeded:
            self._known_ids.setdefault(context.lecture_id, {})[context.phase.id_key] = (
                context.identifier
            )

    def _base_parameters(self, context: CorrelationContext) -> Dict[str, Any]:
        parameters: Dict[str, Any] = dict(context.parents)
        parameters[context.phase.id_key] = context.identifier
        parameters["lecture_id"] = context.lecture_id
        return parameters

    def _emit(self, context: CorrelationContext, suffix: str, **parameters: Any) -> None:
        name = f"{context.phase.value}_{suffix}"
        payload = self._base_parameters(context)
        payload.update(parameters)
        self._sink.log(name, payload)

    def _attempt(self, context: CorrelationContext) -> None:
        self._emit(context, "attempt", network_type=self._network_type())

    def _started(self, context: CorrelationContext) -> None:
        if context.started:
            return
        context.started = True
        self._emit(context, "started")

    def _failed(
        self,
        context: CorrelationContext,
        *,
        stage: FailureStage,
        code: ErrorCode,
        **parameters: Any,
    ) -> None:
        self._emit(
            context,
            "failed",
            failure_stage=stage,
            error_code=code,
            retryable=is_retryable(code),
            network_type=self._network_type(),
            duration_ms=self._elapsed_ms(context),
            **parameters,
        )
        self._close(context, succeeded=False)

    def _elapsed_ms(self, context: CorrelationContext) -> int:
        return int(round((self._clock() - context.opened_at) * 1000))

    # ------------------------------------------------------------------
    # Upload phase
    # ------------------------------------------------------------------
    def upload_attempt(
        self,
        lecture_id: str,
        *,
        trigger: AudioUploadTrigger,
        resume: bool = False,
        file_size: Optional[int] = None,
        file_duration: Optional[float] = None,
    ) -> str:
        context = self._open(
            Phase.UPLOAD,
            lecture_id,
            trigger=trigger,
            resume=resume,
            file_size=file_size,
            file_duration=file_duration,
        )
        self._emit(
            context,
            "attempt",
            file_size=file_size,
            file_duration=file_duration,
            network_type=self._network_type(),
            trigger=trigger,
            resume=resume,
        )
        return context.identifier

    def upload_started(self, lecture_id: str) -> None:
        context = self.context(Phase.UPLOAD, lecture_id)
        if context is None or context.started:
            return
        context.started = True
        self._emit(context, "started", resume=context.resume)

    def upload_failed(
        self,
        lecture_id: str,
        *,
        stage: FailureStage,
        code: ErrorCode,
        retries_count: int = 0,
    ) -> None:
        context = self.context(Phase.UPLOAD, lecture_id)
        if context is None:
            return
        self._failed(
            context,
            stage=stage,
            code=code,
            trigger=context.trigger,
            resume=context.resume,
            retries_count=retries_count,
        )

    def upload_succeeded(self, lecture_id: str, *, total_bytes: int, retries_count: int) -> None:
        context = self.context(Phase.UPLOAD, lecture_id)
        if context is None:
            return
        self._emit(
            context,
            "success",
            total_bytes=total_bytes,
            duration_ms=self._elapsed_ms(context),
            retries_count=retries_count,
            network_type=self._network_type(),
            trigger=context.trigger,
            resume=context.resume,
        )
        self._close(context, succeeded=True)

        # The finalized document is what triggers server-side transcription.
        transcription = self._open(Phase.TRANSCRIPTION, lecture_id)
        self._attempt(transcription)
        self._started(transcription)

    # ------------------------------------------------------------------
    # Summarization retries
    # ------------------------------------------------------------------
    def summary_retry_requested(self, lecture_id: str) -> str:
        self._contexts.pop((Phase.SUMMARIZATION, lecture_id), None)
        context = self._open(Phase.SUMMARIZATION, lecture_id)
        self._attempt(context)
        self._started(context)
        return context.identifier

    def summary_retry_failed(self, lecture_id: str, code: ErrorCode) -> None:
        context = self.context(Phase.SUMMARIZATION, lecture_id)
        if context is not None:
            self._failed(context, stage=FailureStage.SUMMARIZATION, code=code)

    # ------------------------------------------------------------------
    # Snapshot diffing
    # ------------------------------------------------------------------
    def observe(self, previous: Optional[Lecture], current: Lecture) -> None:
        """Advance or close contexts from one before/after pair of the same lecture."""

        if previous is None:
            return
        lecture_id = current.id

        if not previous.has_transcript and current.has_transcript:
            transcription = self.context(Phase.TRANSCRIPTION, lecture_id)
            if transcription is None:
                transcription = self._open(Phase.TRANSCRIPTION, lecture_id)
            self._emit(
                transcription,
                "success",
                transcript_chars=len(current.transcript or ""),
                duration_ms=self._elapsed_ms(transcription),
            )
            self._close(transcription, succeeded=True)
            if previous.summary is None and current.summary is None:
                self._attempt(self._open(Phase.SUMMARIZATION, lecture_id))

        summarization = self.context(Phase.SUMMARIZATION, lecture_id)
        if summarization is not None and current.status is LectureStatus.SUMMARIZING:
            self._started(summarization)

        if previous.summary is None and current.summary is not None:
            if summarization is None:
                summarization = self._open(Phase.SUMMARIZATION, lecture_id)
            summary = current.summary
            self._emit(
                summarization,
                "success",
                summary_chars=len(summary.main_theme)
                + sum(len(item) for item in summary.key_points)
                + sum(len(item) for item in summary.weekly_actions),
                duration_ms=self._elapsed_ms(summarization),
            )
            self._close(summarization, succeeded=True)

        if current.status.is_terminal_failure and current.status is not previous.status:
            code = (
                ErrorCode.QUOTA
                if current.status is LectureStatus.BLOCKED_QUOTA
                else ErrorCode.UNKNOWN
            )
            for phase, stage in (
                (Phase.TRANSCRIPTION, FailureStage.TRANSCRIPTION),
                (Phase.SUMMARIZATION, FailureStage.SUMMARIZATION),
            ):
                context = self.context(phase, lecture_id)
                if context is not None:
                    self._failed(context, stage=stage, code=code, reason=current.quota_reason)


__all__ = [
    "AnalyticsSink",
    "CorrelationContext",
    "ErrorCode",
    "FailureStage",
    "LoggingAnalyticsSink",
    "Phase",
    "PipelineTelemetryLedger",
    "RETRYABLE_CODES",
    "RecordingAnalyticsSink",
    "classify_error",
    "classify_preparation_error",
    "classify_remote_error",
    "is_retryable",
]
