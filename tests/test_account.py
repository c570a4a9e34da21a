from __future__ import annotations

import asyncio

import httpx
import pytest

from khutbah_notes.services.account import AccountDeletionClient, AccountDeletionError


URL = "https://functions.example.test/deleteAccount"


def test_delete_account_posts_bearer_token() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"ok": True})

    client = AccountDeletionClient(URL, transport=httpx.MockTransport(handler))

    asyncio.run(client.delete_account("token-123"))

    assert len(seen) == 1
    assert seen[0].method == "POST"
    assert str(seen[0].url) == URL
    assert seen[0].headers["Authorization"] == "Bearer token-123"


@pytest.mark.parametrize("status_code", [204, 401, 500])
def test_any_other_status_is_a_failure(status_code: int) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, text="nope")

    client = AccountDeletionClient(URL, transport=httpx.MockTransport(handler))

    with pytest.raises(AccountDeletionError) as excinfo:
        asyncio.run(client.delete_account("token-123"))

    assert excinfo.value.status_code == status_code


def test_transport_errors_are_wrapped() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("offline", request=request)

    client = AccountDeletionClient(URL, transport=httpx.MockTransport(handler))

    with pytest.raises(AccountDeletionError) as excinfo:
        asyncio.run(client.delete_account("token-123"))

    assert excinfo.value.status_code is None
