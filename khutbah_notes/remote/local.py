"""Local adapters for the remote collaborators.

The document store keeps JSON documents in SQLite and pushes fresh snapshots
to in-process subscribers after every write. The blob store mirrors blob paths
onto a directory tree. Both raise :class:`RemoteError` like their networked
counterparts so the pipeline cannot tell them apart.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import shutil
import sqlite3
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from ..services.events import emit_db_event, emit_file_event
from ..services.settings import SettingsStore
from .base import (
    DELETE_FIELD,
    SERVER_TIMESTAMP,
    DocumentSnapshot,
    ErrorCallback,
    ProfileCallback,
    RemoteError,
    RemoteErrorCode,
    SnapshotCallback,
)


LOGGER = logging.getLogger(__name__)

_PROFILE_COLLECTION = "_profile"
_PROFILE_DOCUMENT = "profile"
_TIMESTAMP_KEY = "$timestamp"


def _encode(value: Any) -> Any:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return {_TIMESTAMP_KEY: value.isoformat()}
    if isinstance(value, dict):
        return {str(key): _encode(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_encode(item) for item in value]
    return value


def _decode(value: Any) -> Any:
    if isinstance(value, dict):
        if set(value.keys()) == {_TIMESTAMP_KEY}:
            return datetime.fromisoformat(value[_TIMESTAMP_KEY])
        return {key: _decode(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_decode(item) for item in value]
    return value


def apply_merge(target: Dict[str, Any], fields: Mapping[str, Any], now: datetime) -> Dict[str, Any]:
    """Merge *fields* into *target* the way a document store ``merge`` write does.

    Nested mappings merge key by key, :data:`DELETE_FIELD` removes a key and
    :data:`SERVER_TIMESTAMP` resolves to *now*.
    """

    for key, value in fields.items():
        if value is DELETE_FIELD:
            target.pop(key, None)
        elif value is SERVER_TIMESTAMP:
            target[key] = now
        elif isinstance(value, Mapping):
            existing = target.get(key)
            base = dict(existing) if isinstance(existing, dict) else {}
            target[key] = apply_merge(base, value, now)
        elif isinstance(value, (list, tuple)):
            target[key] = list(value)
        else:
            target[key] = value
    return target


class _LocalSubscription:
    def __init__(
        self,
        store: "SQLiteDocumentStore",
        key: Tuple[str, str],
        loop: asyncio.AbstractEventLoop,
        deliver: Any,
        on_error: Optional[ErrorCallback],
    ) -> None:
        self._store = store
        self.key = key
        self._loop = loop
        self._deliver = deliver
        self._on_error = on_error
        self.active = True

    def push(self) -> None:
        try:
            payload = self._store._snapshot_payload(self)
        except RemoteError as error:
            self._loop.call_soon(self._fail, error)
            return
        self._loop.call_soon(self._dispatch, payload)

    def _dispatch(self, payload: Any) -> None:
        if not self.active:
            return
        try:
            self._deliver(payload)
        except Exception as error:  # noqa: BLE001 - listener failures are reported, not fatal
            LOGGER.exception("Snapshot listener for %s/%s failed", *self.key)
            if self._on_error is not None:
                self._on_error(error)

    def _fail(self, error: Exception) -> None:
        if self.active and self._on_error is not None:
            self._on_error(error)

    def remove(self) -> None:
        self.active = False
        self._store._detach(self)


class _CollectionSubscription(_LocalSubscription):
    def __init__(self, *args: Any, order_by: str, descending: bool, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.order_by = order_by
        self.descending = descending


class SQLiteDocumentStore:
    """Document store persisted in the SQLite database prepared at bootstrap."""

    def __init__(self, database_file: Path) -> None:
        self._db_path = database_file
        self._subscriptions: List[_LocalSubscription] = []

    # ------------------------------------------------------------------
    # SQLite plumbing
    # ------------------------------------------------------------------
    @contextlib.contextmanager
    def _track_db_event(self, action: str, **payload: Any) -> Iterator[Dict[str, Any]]:
        start = time.perf_counter()
        event_payload: Dict[str, Any] = dict(payload)
        try:
            yield event_payload
        except Exception as exc:
            event_payload.setdefault("status", "error")
            event_payload.setdefault("error", f"{exc.__class__.__name__}: {exc}")
            raise
        finally:
            event_payload.setdefault("status", "ok")
            emit_db_event(
                action,
                payload=event_payload,
                duration_ms=(time.perf_counter() - start) * 1000.0,
                level=logging.DEBUG,
            )

    def _connect(self) -> sqlite3.Connection:
        try:
            connection = sqlite3.connect(self._db_path)
        except sqlite3.Error as error:
            raise RemoteError(RemoteErrorCode.UNKNOWN, f"Cannot open {self._db_path}: {error}") from error
        connection.row_factory = sqlite3.Row
        return connection

    def _execute(
        self,
        statement: str,
        parameters: Sequence[Any] = (),
        *,
        action: str,
    ) -> List[sqlite3.Row]:
        with self._track_db_event(action, parameter_count=len(parameters)) as event:
            connection = self._connect()
            try:
                cursor = connection.execute(statement, tuple(parameters))
                rows = cursor.fetchall()
                connection.commit()
                if cursor.rowcount >= 0:
                    event["rowcount"] = int(cursor.rowcount)
                return rows
            except sqlite3.Error as error:
                raise RemoteError(RemoteErrorCode.UNKNOWN, str(error)) from error
            finally:
                connection.close()

    def _read(self, user_id: str, collection: str, document_id: str) -> Optional[Dict[str, Any]]:
        rows = self._execute(
            "SELECT data FROM documents WHERE user_id = ? AND collection = ? AND document_id = ?",
            (user_id, collection, document_id),
            action="documents.get",
        )
        if not rows:
            return None
        return _decode(json.loads(rows[0]["data"]))

    def _merge_sync(
        self, user_id: str, collection: str, document_id: str, fields: Mapping[str, Any]
    ) -> None:
        current = self._read(user_id, collection, document_id) or {}
        merged = apply_merge(current, fields, datetime.now(timezone.utc))
        self._execute(
            "INSERT INTO documents (user_id, collection, document_id, data) VALUES (?, ?, ?, ?) "
            "ON CONFLICT(user_id, collection, document_id) DO UPDATE SET data = excluded.data",
            (user_id, collection, document_id, json.dumps(_encode(merged))),
            action="documents.merge",
        )

    def _list(self, user_id: str, collection: str) -> List[DocumentSnapshot]:
        rows = self._execute(
            "SELECT document_id, data FROM documents WHERE user_id = ? AND collection = ?",
            (user_id, collection),
            action="documents.list",
        )
        return [
            DocumentSnapshot(id=row["document_id"], data=_decode(json.loads(row["data"])))
            for row in rows
        ]

    # ------------------------------------------------------------------
    # DocumentStore API
    # ------------------------------------------------------------------
    async def merge(
        self, user_id: str, collection: str, document_id: str, fields: Mapping[str, Any]
    ) -> None:
        await asyncio.to_thread(self._merge_sync, user_id, collection, document_id, fields)
        self._notify(user_id, collection)

    async def get(
        self, user_id: str, collection: str, document_id: str
    ) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self._read, user_id, collection, document_id)

    async def delete(self, user_id: str, collection: str, document_id: str) -> None:
        await asyncio.to_thread(
            self._execute,
            "DELETE FROM documents WHERE user_id = ? AND collection = ? AND document_id = ?",
            (user_id, collection, document_id),
            action="documents.delete",
        )
        self._notify(user_id, collection)

    async def merge_profile(self, user_id: str, fields: Mapping[str, Any]) -> None:
        await self.merge(user_id, _PROFILE_COLLECTION, _PROFILE_DOCUMENT, fields)

    def subscribe(
        self,
        user_id: str,
        collection: str,
        callback: SnapshotCallback,
        *,
        order_by: str,
        descending: bool = False,
        on_error: Optional[ErrorCallback] = None,
    ) -> _LocalSubscription:
        subscription = _CollectionSubscription(
            self,
            (user_id, collection),
            asyncio.get_running_loop(),
            callback,
            on_error,
            order_by=order_by,
            descending=descending,
        )
        self._subscriptions.append(subscription)
        subscription.push()
        return subscription

    def subscribe_profile(
        self,
        user_id: str,
        callback: ProfileCallback,
        *,
        on_error: Optional[ErrorCallback] = None,
    ) -> _LocalSubscription:
        subscription = _LocalSubscription(
            self,
            (user_id, _PROFILE_COLLECTION),
            asyncio.get_running_loop(),
            callback,
            on_error,
        )
        self._subscriptions.append(subscription)
        subscription.push()
        return subscription

    # ------------------------------------------------------------------
    # Snapshot delivery
    # ------------------------------------------------------------------
    def _notify(self, user_id: str, collection: str) -> None:
        for subscription in list(self._subscriptions):
            if subscription.key == (user_id, collection):
                subscription.push()

    def _detach(self, subscription: _LocalSubscription) -> None:
        with contextlib.suppress(ValueError):
            self._subscriptions.remove(subscription)

    def _snapshot_payload(self, subscription: _LocalSubscription) -> Any:
        user_id, collection = subscription.key
        if not isinstance(subscription, _CollectionSubscription):
            return self._read(user_id, _PROFILE_COLLECTION, _PROFILE_DOCUMENT)

        documents = [
            document
            for document in self._list(user_id, collection)
            if document.data.get(subscription.order_by) is not None
        ]
        try:
            documents.sort(
                key=lambda document: document.data[subscription.order_by],
                reverse=subscription.descending,
            )
        except TypeError:
            LOGGER.warning(
                "Mixed '%s' values in %s/%s; delivering unsorted snapshot",
                subscription.order_by,
                user_id,
                collection,
            )
        return documents


class LocalBlobStore:
    """Blob store that mirrors blob paths under a local directory."""

    def __init__(self, root: Path) -> None:
        self._root = root

    def _resolve(self, blob_path: str) -> Path:
        candidate = (self._root / blob_path).resolve()
        root = self._root.resolve()
        if root not in candidate.parents:
            raise RemoteError(RemoteErrorCode.INVALID_ARGUMENT, f"Invalid blob path: {blob_path}")
        return candidate

    def _copy(self, source: Path, destination: Path) -> int:
        start = time.perf_counter()
        destination.parent.mkdir(parents=True, exist_ok=True)
        try:
            shutil.copyfile(source, destination)
        except FileNotFoundError as error:
            raise RemoteError(RemoteErrorCode.NOT_FOUND, str(error)) from error
        except OSError as error:
            raise RemoteError(RemoteErrorCode.UNKNOWN, str(error)) from error
        size = destination.stat().st_size
        emit_file_event(
            "blob_copy",
            payload={"source": source, "destination": destination, "bytes": size},
            duration_ms=(time.perf_counter() - start) * 1000.0,
            level=logging.DEBUG,
        )
        return size

    async def upload(self, local_path: Path, blob_path: str, content_type: str) -> int:
        LOGGER.debug("Storing %s at blob path %s (%s)", local_path, blob_path, content_type)
        return await asyncio.to_thread(self._copy, local_path, self._resolve(blob_path))

    async def exists(self, blob_path: str) -> bool:
        return self._resolve(blob_path).is_file()

    async def download(self, blob_path: str, destination: Path) -> Path:
        source = self._resolve(blob_path)
        await asyncio.to_thread(self._copy, source, destination)
        return destination

    async def download_url(self, blob_path: str, *, expires_in: int = 3600) -> str:
        target = self._resolve(blob_path)
        if not target.is_file():
            raise RemoteError(RemoteErrorCode.NOT_FOUND, f"No blob at {blob_path}")
        return target.as_uri()

    async def delete(self, blob_path: str) -> None:
        target = self._resolve(blob_path)
        if not target.exists():
            raise RemoteError(RemoteErrorCode.NOT_FOUND, f"No blob at {blob_path}")
        target.unlink()


class LocalAnonymousAuth:
    """Anonymous identity persisted in the client settings file."""

    def __init__(self, settings_store: SettingsStore) -> None:
        self._settings_store = settings_store
        self._user_id: Optional[str] = settings_store.load().user_id

    @property
    def current_user_id(self) -> Optional[str]:
        return self._user_id

    async def sign_in_anonymously(self) -> str:
        settings = self._settings_store.load()
        if not settings.user_id:
            settings.user_id = uuid.uuid4().hex
            settings.id_token = uuid.uuid4().hex
            self._settings_store.save(settings)
            LOGGER.info("Created anonymous user %s", settings.user_id)
        self._user_id = settings.user_id
        return settings.user_id

    async def get_id_token(self, *, force_refresh: bool = False) -> str:
        settings = self._settings_store.load()
        if not settings.user_id:
            raise RemoteError(RemoteErrorCode.UNAUTHENTICATED, "No signed-in user")
        if force_refresh or not settings.id_token:
            settings.id_token = uuid.uuid4().hex
            self._settings_store.save(settings)
        return settings.id_token

    async def sign_out(self) -> None:
        settings = self._settings_store.load()
        settings.user_id = None
        settings.id_token = None
        self._settings_store.save(settings)
        self._user_id = None


__all__ = [
    "LocalAnonymousAuth",
    "LocalBlobStore",
    "SQLiteDocumentStore",
    "apply_merge",
]
