from __future__ import annotations

import itertools
from dataclasses import replace
from datetime import datetime, timezone

from khutbah_notes.models import AudioUploadTrigger, Lecture, LectureStatus, LectureSummary
from khutbah_notes.remote.base import RemoteError, RemoteErrorCode
from khutbah_notes.services.audio_conversion import PreparationCode, PreparationError
from khutbah_notes.services.telemetry import (
    ErrorCode,
    FailureStage,
    Phase,
    PipelineTelemetryLedger,
    RecordingAnalyticsSink,
    classify_error,
    is_retryable,
)


DATE = datetime(2024, 3, 8, 13, 0, tzinfo=timezone.utc)


def _ledger():
    sink = RecordingAnalyticsSink()
    counter = itertools.count(1)
    ledger = PipelineTelemetryLedger(
        sink,
        clock=lambda: 0.0,
        id_factory=lambda: f"id-{next(counter)}",
        network_type=lambda: "wifi",
    )
    return ledger, sink


def _processing() -> Lecture:
    return Lecture(id="L1", title="Jumu'ah Talk", date=DATE, duration_minutes=1)


def _ready() -> Lecture:
    return replace(
        _processing(),
        status=LectureStatus.READY,
        transcript="In the name of God, the Merciful.",
        summary=LectureSummary(main_theme="Patience", key_points=("Be steadfast",)),
    )


def _upload(ledger: PipelineTelemetryLedger) -> None:
    ledger.upload_attempt("L1", trigger=AudioUploadTrigger.RECORDING, file_size=2048)
    ledger.upload_started("L1")
    ledger.upload_succeeded("L1", total_bytes=2048, retries_count=0)


def test_upload_success_opens_transcription_context() -> None:
    ledger, sink = _ledger()

    _upload(ledger)

    assert sink.names() == [
        "audio_upload_attempt",
        "audio_upload_started",
        "audio_upload_success",
        "transcription_attempt",
        "transcription_started",
    ]
    success = sink.of("audio_upload_success")[0]
    assert success["upload_id"] == "id-1"
    assert success["trigger"] == "recording"
    assert success["network_type"] == "wifi"
    assert sink.of("transcription_attempt")[0]["upload_id"] == "id-1"
    assert ledger.context(Phase.UPLOAD, "L1") is None
    assert ledger.context(Phase.TRANSCRIPTION, "L1") is not None


def test_upload_started_is_emitted_once() -> None:
    ledger, sink = _ledger()
    ledger.upload_attempt("L1", trigger=AudioUploadTrigger.MANUAL, resume=True)

    ledger.upload_started("L1")
    ledger.upload_started("L1")

    assert sink.names().count("audio_upload_started") == 1
    assert sink.of("audio_upload_started")[0]["resume"] is True


def test_jump_to_ready_emits_each_success_once() -> None:
    ledger, sink = _ledger()
    _upload(ledger)

    ledger.observe(_processing(), _ready())
    ledger.observe(_ready(), _ready())

    assert sink.names().count("transcription_success") == 1
    assert sink.names().count("summarization_success") == 1
    assert "transcription_failed" not in sink.names()
    summary = sink.of("summarization_success")[0]
    assert summary["upload_id"] == "id-1"
    assert summary["transcription_id"] == "id-2"
    assert summary["summary_chars"] == len("Patience") + len("Be steadfast")
    assert ledger.context(Phase.TRANSCRIPTION, "L1") is None
    assert ledger.context(Phase.SUMMARIZATION, "L1") is None


def test_step_by_step_transitions() -> None:
    ledger, sink = _ledger()
    _upload(ledger)
    transcribed = replace(
        _processing(), status=LectureStatus.TRANSCRIBED, transcript="In the name of God"
    )
    summarizing = replace(transcribed, status=LectureStatus.SUMMARIZING)
    ready = replace(
        summarizing, status=LectureStatus.READY, summary=LectureSummary(main_theme="Patience")
    )

    ledger.observe(_processing(), transcribed)
    ledger.observe(transcribed, summarizing)
    ledger.observe(summarizing, replace(summarizing, is_favorite=True))
    ledger.observe(summarizing, ready)

    names = sink.names()
    assert names[-4:] == [
        "transcription_success",
        "summarization_attempt",
        "summarization_started",
        "summarization_success",
    ]
    assert names.count("summarization_started") == 1


def test_quota_block_fails_the_open_phase_once() -> None:
    ledger, sink = _ledger()
    _upload(ledger)
    blocked = replace(
        _processing(), status=LectureStatus.BLOCKED_QUOTA, quota_reason="free_lifetime_exceeded"
    )

    ledger.observe(_processing(), blocked)
    ledger.observe(blocked, replace(blocked, title="Renamed"))

    failures = sink.of("transcription_failed")
    assert len(failures) == 1
    assert failures[0]["error_code"] == "quota"
    assert failures[0]["failure_stage"] == "transcription"
    assert failures[0]["retryable"] is False
    assert failures[0]["reason"] == "free_lifetime_exceeded"
    assert ledger.context(Phase.TRANSCRIPTION, "L1") is None


def test_first_snapshot_of_a_lecture_is_not_a_transition() -> None:
    ledger, sink = _ledger()

    ledger.observe(None, _ready())

    assert sink.events == []


def test_summary_retry_gets_a_fresh_identifier() -> None:
    ledger, sink = _ledger()
    _upload(ledger)
    ledger.observe(_processing(), replace(_processing(), transcript="text"))

    first = ledger.summary_retry_requested("L1")
    ledger.summary_retry_failed("L1", ErrorCode.NETWORK)
    second = ledger.summary_retry_requested("L1")

    assert first != second
    failed = sink.of("summarization_failed")
    assert len(failed) == 1
    assert failed[0]["retryable"] is True
    assert failed[0]["summary_id"] == first
    assert sink.of("summarization_started")[-1]["summary_id"] == second
    assert sink.of("summarization_started")[-1]["transcription_id"] == "id-2"


def test_forget_drops_contexts() -> None:
    ledger, _ = _ledger()
    _upload(ledger)

    ledger.forget("L1")

    assert ledger.context(Phase.TRANSCRIPTION, "L1") is None
    assert ledger.known_ids("L1") == {}


def test_upload_failure_carries_stage_and_code() -> None:
    ledger, sink = _ledger()
    ledger.upload_attempt("L1", trigger=AudioUploadTrigger.RETAKE)

    ledger.upload_failed(
        "L1", stage=FailureStage.PREPARE, code=ErrorCode.FILE_TOO_LARGE, retries_count=0
    )
    ledger.upload_failed("L1", stage=FailureStage.UPLOAD, code=ErrorCode.NETWORK)

    failures = sink.of("audio_upload_failed")
    assert len(failures) == 1
    assert failures[0]["failure_stage"] == "prepare"
    assert failures[0]["error_code"] == "file_too_large"
    assert failures[0]["trigger"] == "retake"


def test_retryability_and_classification() -> None:
    assert is_retryable(ErrorCode.NETWORK)
    assert is_retryable(ErrorCode.TIMEOUT)
    assert is_retryable(ErrorCode.SERVER_5XX)
    for code in (
        ErrorCode.AUTH,
        ErrorCode.CLIENT_4XX,
        ErrorCode.QUOTA,
        ErrorCode.INVALID_MEDIA,
        ErrorCode.CANCELED,
        ErrorCode.UNKNOWN,
    ):
        assert not is_retryable(code)

    assert classify_error(RemoteError(RemoteErrorCode.SERVER)) is ErrorCode.SERVER_5XX
    assert classify_error(RemoteError(RemoteErrorCode.RETRY_LIMIT_EXCEEDED)) is ErrorCode.TIMEOUT
    assert classify_error(RemoteError.from_status(403)) is ErrorCode.AUTH
    assert classify_error(RemoteError.from_status(429)) is ErrorCode.QUOTA
    assert (
        classify_error(PreparationError(PreparationCode.FILE_TOO_LARGE, "too big"))
        is ErrorCode.FILE_TOO_LARGE
    )
    assert (
        classify_error(PreparationError(PreparationCode.UNSUPPORTED_FILE_TYPE, "nope"))
        is ErrorCode.INVALID_MEDIA
    )
    assert classify_error(ConnectionResetError()) is ErrorCode.NETWORK
    assert classify_error(ValueError("odd")) is ErrorCode.UNKNOWN
