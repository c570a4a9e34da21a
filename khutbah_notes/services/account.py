"""Client for the server-side account deletion endpoint."""

from __future__ import annotations

import logging
from typing import Optional

import httpx


LOGGER = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


class AccountDeletionError(RuntimeError):
    """Raised when the deletion endpoint does not confirm with HTTP 200."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AccountDeletionClient:
    """POST to the deletion endpoint with the user's bearer token."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._url = url
        self._timeout = timeout
        self._transport = transport

    async def delete_account(self, id_token: str) -> None:
        headers = {
            "Authorization": f"Bearer {id_token}",
            "Content-Type": "application/json",
        }
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            try:
                response = await client.post(self._url, headers=headers, json={})
            except httpx.HTTPError as error:
                raise AccountDeletionError(f"Account deletion request failed: {error}") from error

        if response.status_code != 200:
            detail = response.text.strip()[:200]
            LOGGER.warning(
                "Account deletion returned HTTP %s: %s", response.status_code, detail
            )
            raise AccountDeletionError(
                detail or f"Account deletion failed with HTTP {response.status_code}",
                status_code=response.status_code,
            )
        LOGGER.info("Account deletion confirmed by server")


__all__ = ["AccountDeletionClient", "AccountDeletionError"]
