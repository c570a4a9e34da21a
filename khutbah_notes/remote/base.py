"""Interfaces of the remote collaborators the pipeline depends on."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol


LECTURES = "lectures"
FOLDERS = "folders"


class _Sentinel:
    def __init__(self, name: str) -> None:
        self._name = name

    def __repr__(self) -> str:
        return self._name


DELETE_FIELD: Any = _Sentinel("DELETE_FIELD")
"""Merge value that removes the field from the stored document."""

SERVER_TIMESTAMP: Any = _Sentinel("SERVER_TIMESTAMP")
"""Merge value replaced by the store's current time."""


class RemoteErrorCode(str, Enum):
    NETWORK = "network"
    TIMEOUT = "timeout"
    UNAUTHENTICATED = "unauthenticated"
    UNAUTHORIZED = "unauthorized"
    QUOTA_EXCEEDED = "quota_exceeded"
    NOT_FOUND = "not_found"
    INVALID_ARGUMENT = "invalid_argument"
    SERVER = "server"
    CLIENT = "client"
    RETRY_LIMIT_EXCEEDED = "retry_limit_exceeded"
    CANCELED = "canceled"
    UNKNOWN = "unknown"


TRANSIENT_CODES = frozenset(
    {
        RemoteErrorCode.NETWORK,
        RemoteErrorCode.TIMEOUT,
        RemoteErrorCode.SERVER,
        RemoteErrorCode.RETRY_LIMIT_EXCEEDED,
        RemoteErrorCode.UNKNOWN,
    }
)


class RemoteError(RuntimeError):
    """Failure reported by a remote store, auth provider or HTTP endpoint."""

    def __init__(
        self,
        code: RemoteErrorCode,
        message: str = "",
        *,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message or code.value)
        self.code = code
        self.status_code = status_code

    @property
    def is_transient(self) -> bool:
        """Whether a blob write failing with this error may be attempted again."""

        return self.code in TRANSIENT_CODES

    @classmethod
    def from_status(cls, status_code: int, message: str = "") -> "RemoteError":
        if status_code == 401:
            code = RemoteErrorCode.UNAUTHENTICATED
        elif status_code == 403:
            code = RemoteErrorCode.UNAUTHORIZED
        elif status_code == 404:
            code = RemoteErrorCode.NOT_FOUND
        elif status_code == 408:
            code = RemoteErrorCode.TIMEOUT
        elif status_code == 429:
            code = RemoteErrorCode.QUOTA_EXCEEDED
        elif status_code >= 500:
            code = RemoteErrorCode.SERVER
        elif status_code >= 400:
            code = RemoteErrorCode.CLIENT
        else:
            code = RemoteErrorCode.UNKNOWN
        return cls(code, message or f"HTTP {status_code}", status_code=status_code)


@dataclass(frozen=True)
class DocumentSnapshot:
    id: str
    data: Mapping[str, Any] = field(default_factory=dict)


SnapshotCallback = Callable[[List[DocumentSnapshot]], None]
ProfileCallback = Callable[[Optional[Mapping[str, Any]]], None]
ErrorCallback = Callable[[Exception], None]


class Subscription(Protocol):
    def remove(self) -> None:
        """Stop delivering snapshots."""


class DocumentStore(Protocol):
    """Per-user document collections with merge writes and live snapshots."""

    async def merge(
        self, user_id: str, collection: str, document_id: str, fields: Mapping[str, Any]
    ) -> None:
        """Merge *fields* into the document, creating it when missing."""

    async def get(
        self, user_id: str, collection: str, document_id: str
    ) -> Optional[Dict[str, Any]]:
        """Return the stored document or ``None``."""

    async def delete(self, user_id: str, collection: str, document_id: str) -> None:
        """Delete the document if it exists."""

    def subscribe(
        self,
        user_id: str,
        collection: str,
        callback: SnapshotCallback,
        *,
        order_by: str,
        descending: bool = False,
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription:
        """Deliver ordered snapshots of *collection* in arrival order."""

    async def merge_profile(self, user_id: str, fields: Mapping[str, Any]) -> None:
        """Merge *fields* into the user profile document."""

    def subscribe_profile(
        self,
        user_id: str,
        callback: ProfileCallback,
        *,
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription:
        """Deliver the user profile document whenever it changes."""


class BlobStore(Protocol):
    """Path-addressed binary storage."""

    async def upload(self, local_path: Path, blob_path: str, content_type: str) -> int:
        """Store *local_path* at *blob_path* and return the number of bytes written."""

    async def exists(self, blob_path: str) -> bool:
        """Return whether *blob_path* holds content."""

    async def download(self, blob_path: str, destination: Path) -> Path:
        """Copy the blob into *destination*."""

    async def download_url(self, blob_path: str, *, expires_in: int = 3600) -> str:
        """Return a time-limited URL for the blob."""

    async def delete(self, blob_path: str) -> None:
        """Remove the blob."""


class AuthProvider(Protocol):
    @property
    def current_user_id(self) -> Optional[str]:
        """Signed-in user id, if any."""

    async def sign_in_anonymously(self) -> str:
        """Return a stable anonymous user id, creating one when needed."""

    async def get_id_token(self, *, force_refresh: bool = False) -> str:
        """Return a bearer token for the current user."""

    async def sign_out(self) -> None:
        """Forget the current identity."""


__all__ = [
    "AuthProvider",
    "BlobStore",
    "DELETE_FIELD",
    "DocumentSnapshot",
    "DocumentStore",
    "FOLDERS",
    "LECTURES",
    "RemoteError",
    "RemoteErrorCode",
    "SERVER_TIMESTAMP",
    "Subscription",
    "TRANSIENT_CODES",
]
