from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path

from khutbah_notes.logging_utils import (
    DEFAULT_LOG_FORMAT,
    build_cli_handlers,
    configure_logging,
    get_log_file_path,
)
from khutbah_notes.services.events import emit_task_event, normalize_context
from khutbah_notes.services.telemetry import LoggingAnalyticsSink


def test_normalize_context_drops_empty_values() -> None:
    normalised = normalize_context(
        {
            "path": Path("/tmp/talk.m4a"),
            "when": datetime(2024, 3, 8, 13, 0, tzinfo=timezone.utc),
            "missing": None,
            "blank": "   ",
            "": "no key",
            "count": 3,
            "tags": ["a", "b"],
            "long": "x" * 300,
        }
    )

    assert normalised["path"] == "/tmp/talk.m4a"
    assert normalised["when"] == "2024-03-08T13:00:00+00:00"
    assert normalised["count"] == 3
    assert normalised["tags"] == "a, b"
    assert len(normalised["long"]) == 201
    assert "missing" not in normalised
    assert "blank" not in normalised
    assert "" not in normalised


def test_task_events_carry_structured_extras(caplog) -> None:
    with caplog.at_level(logging.INFO, logger="khutbah_notes.events"):
        emit_task_event("upload_completed", payload={"lecture_id": "L1", "bytes": 2048})

    record = caplog.records[-1]
    assert record.event_type == "TASK_STATE"
    assert record.event_payload == {"lecture_id": "L1", "bytes": 2048}
    assert "[TASK_STATE] upload_completed" in record.getMessage()


def test_analytics_sink_honours_opt_out(caplog) -> None:
    enabled = LoggingAnalyticsSink()
    enabled.set_user_id("user-1")
    disabled = LoggingAnalyticsSink(enabled=False)

    with caplog.at_level(logging.INFO, logger="khutbah_notes.events"):
        enabled.log("audio_upload_attempt", {"lecture_id": "L1", "file_size": None})
        disabled.log("audio_upload_attempt", {"lecture_id": "L2"})

    analytics = [
        record for record in caplog.records if getattr(record, "event_type", "") == "ANALYTICS"
    ]
    assert len(analytics) == 1
    assert analytics[0].event_payload == {"lecture_id": "L1"}
    assert analytics[0].event_correlation == {"user_id": "user-1"}


def test_configure_logging_attaches_formatted_handlers(tmp_path: Path) -> None:
    handler = logging.FileHandler(get_log_file_path(tmp_path), encoding="utf-8")
    root = logging.getLogger()
    previous_level = root.level
    try:
        configure_logging(logging.DEBUG, handlers=[handler])

        assert handler in root.handlers
        assert handler.formatter._fmt == DEFAULT_LOG_FORMAT
        assert root.level == logging.DEBUG
    finally:
        root.removeHandler(handler)
        handler.close()
        root.setLevel(previous_level)

    assert get_log_file_path(tmp_path) == tmp_path / "khutbah_notes.log"


def test_cli_handlers_write_to_storage_log(tmp_path: Path) -> None:
    handlers = build_cli_handlers(tmp_path)
    try:
        file_handler, console_handler = handlers
        assert Path(file_handler.baseFilename) == tmp_path / "khutbah_notes.log"
        assert console_handler.level == logging.WARNING
        assert file_handler.formatter._fmt == DEFAULT_LOG_FORMAT
    finally:
        for handler in handlers:
            handler.close()


def test_configure_logging_quiets_http_client_loggers() -> None:
    handler = logging.NullHandler()
    root = logging.getLogger()
    previous_level = root.level
    try:
        configure_logging(logging.INFO, handlers=[handler])

        assert logging.getLogger("httpx").level == logging.WARNING
    finally:
        root.removeHandler(handler)
        root.setLevel(previous_level)
        logging.getLogger("httpx").setLevel(logging.NOTSET)
        logging.getLogger("httpcore").setLevel(logging.NOTSET)
