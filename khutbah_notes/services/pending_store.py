"""Durable, user-scoped persistence of recordings awaiting upload."""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from pathlib import Path
from typing import Dict, List, Sequence

from ..models import PendingRecording
from .events import emit_file_event


LOGGER = logging.getLogger(__name__)


class PendingRecordingStore:
    """Store :class:`PendingRecording` entries in a single JSON file.

    Records for every user share one file; each operation reads the full file,
    rewrites only the caller's user scope and replaces the file atomically.
    The store performs no checks on the referenced audio files.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.RLock()

    @property
    def path(self) -> Path:
        return self._path

    def load(self, user_id: str) -> List[PendingRecording]:
        with self._lock:
            return [record for record in self._read_all() if record.user_id == user_id]

    def replace(self, records: Sequence[PendingRecording], user_id: str) -> None:
        """Replace every record owned by *user_id* with *records*."""

        with self._lock:
            others = [record for record in self._read_all() if record.user_id != user_id]
            scoped = [record for record in records if record.user_id == user_id]
            if len(scoped) != len(records):
                LOGGER.warning(
                    "Ignoring %d pending record(s) not owned by user %s",
                    len(records) - len(scoped),
                    user_id,
                )
            self._write_all([*others, *scoped])

    def upsert(self, record: PendingRecording) -> None:
        with self._lock:
            records = self.load(record.user_id)
            for index, existing in enumerate(records):
                if existing.id == record.id:
                    records[index] = record
                    break
            else:
                records.append(record)
            self.replace(records, record.user_id)

    def remove(self, record_id: str, user_id: str) -> None:
        with self._lock:
            records = [record for record in self.load(user_id) if record.id != record_id]
            self.replace(records, user_id)

    def _read_all(self) -> List[PendingRecording]:
        if not self._path.exists():
            return []
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as error:
            LOGGER.warning("Pending recordings file %s is unreadable: %s", self._path, error)
            return []
        if not isinstance(payload, list):
            return []

        records: List[PendingRecording] = []
        for item in payload:
            if not isinstance(item, dict):
                continue
            try:
                records.append(PendingRecording.from_dict(item))
            except (KeyError, TypeError, ValueError) as error:
                LOGGER.warning("Skipping malformed pending recording %r: %s", item, error)
        return records

    def _write_all(self, records: Sequence[PendingRecording]) -> None:
        start = time.perf_counter()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        data: List[Dict[str, object]] = [record.to_dict() for record in records]
        temporary = self._path.with_name(f".{self._path.name}.tmp")
        temporary.write_text(json.dumps(data, indent=2), encoding="utf-8")
        os.replace(temporary, self._path)
        emit_file_event(
            "pending_recordings_saved",
            payload={"path": self._path, "count": len(records)},
            duration_ms=(time.perf_counter() - start) * 1000.0,
            level=logging.DEBUG,
        )


__all__ = ["PendingRecordingStore"]
