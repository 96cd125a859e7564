"""Summary: Tests for remote chat clients.

Importance: Ensures HTTP failures map onto failure reasons and fixtures page correctly.
Alternatives: Use integration tests with the live Google Chat API.
"""

from __future__ import annotations

import json
import urllib.error
import urllib.request
from typing import Any

import pytest

from chatmirror.errors import (
    NotFoundError,
    TransientError,
    UnauthorizedError,
    classify_http_status,
)
from chatmirror.remote import FixtureChatClient, GoogleChatClient


class FakeResponse:
    """Summary: Minimal urlopen response used as a context manager."""

    def __init__(self, body: bytes, content_type: str | None = None) -> None:
        self._body = body
        self.headers = {"Content-Type": content_type} if content_type else {}

    def read(self) -> bytes:
        return self._body

    def __enter__(self) -> "FakeResponse":
        return self

    def __exit__(self, *args: Any) -> None:
        return None


def _client() -> GoogleChatClient:
    return GoogleChatClient(
        access_token="token",
        base_url="https://chat.invalid/v1/",
        drive_base_url="https://drive.invalid/v3",
        page_size=2,
        directory_base_url="https://directory.invalid/v1",
    )


def _raise_status(status: int):
    def fake_urlopen(request: urllib.request.Request, timeout: float) -> FakeResponse:
        raise urllib.error.HTTPError(request.full_url, status, "error", None, None)

    return fake_urlopen


def test_classify_http_status() -> None:
    assert classify_http_status(401) is UnauthorizedError
    assert classify_http_status(403) is UnauthorizedError
    assert classify_http_status(404) is NotFoundError
    assert classify_http_status(410) is NotFoundError
    assert classify_http_status(429) is TransientError
    assert classify_http_status(503) is TransientError


def test_fixture_client_pages_messages() -> None:
    """Summary: Verify fixture paging returns tokens until the last page.

    Importance: Sync paging logic relies on the token contract.
    Alternatives: Return every message in one page.
    """

    messages = [{"name": f"spaces/S/messages/{index}"} for index in range(5)]
    client = FixtureChatClient({"conversations": {"spaces/S": {"messages": messages}}}, 2)
    first, token = client.list_messages("spaces/S")
    assert [item["name"] for item in first] == ["spaces/S/messages/0", "spaces/S/messages/1"]
    second, token = client.list_messages("spaces/S", token)
    third, token = client.list_messages("spaces/S", token)
    assert len(second) == 2
    assert len(third) == 1
    assert token is None
    with pytest.raises(NotFoundError):
        client.list_messages("spaces/OTHER")


def test_fixture_client_media_statuses() -> None:
    client = FixtureChatClient(
        {
            "media": {
                "https://m/ok": {"text": "hello", "contentType": "text/plain"},
                "https://m/denied": {"status": 403},
                "https://m/busy": {"status": 503},
            }
        }
    )
    assert client.fetch_bytes(("download_url", "https://m/ok"), "t") == (b"hello", "text/plain")
    with pytest.raises(UnauthorizedError):
        client.fetch_bytes(("download_url", "https://m/denied"), "t")
    with pytest.raises(TransientError):
        client.fetch_bytes(("download_url", "https://m/busy"), "t")
    with pytest.raises(NotFoundError):
        client.fetch_bytes(("thumbnail_url", "https://m/missing"), "t")
    assert len(client.fetch_log) == 4


def test_google_client_lists_messages(monkeypatch: pytest.MonkeyPatch) -> None:
    """Summary: Verify message listing builds paged URLs and reads tokens.

    Importance: Ensures the production client follows the Chat API paging contract.
    Alternatives: Trust the SDK to page.
    """

    seen: list[str] = []

    def fake_urlopen(request: urllib.request.Request, timeout: float) -> FakeResponse:
        seen.append(request.full_url)
        assert request.get_header("Authorization") == "Bearer token"
        body = {"messages": [{"name": "spaces/S/messages/1"}], "nextPageToken": "next"}
        return FakeResponse(json.dumps(body).encode("utf-8"), "application/json")

    monkeypatch.setattr(urllib.request, "urlopen", fake_urlopen)
    messages, token = _client().list_messages("spaces/S")
    assert messages == [{"name": "spaces/S/messages/1"}]
    assert token == "next"
    assert seen[0].startswith("https://chat.invalid/v1/spaces/S/messages?pageSize=2")


def test_google_client_maps_http_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    client = _client()
    monkeypatch.setattr(urllib.request, "urlopen", _raise_status(401))
    with pytest.raises(UnauthorizedError):
        client.fetch_bytes(("download_url", "https://media.invalid/1"), "token")
    monkeypatch.setattr(urllib.request, "urlopen", _raise_status(404))
    with pytest.raises(NotFoundError):
        client.get_message_detail("spaces/S/messages/1")
    monkeypatch.setattr(urllib.request, "urlopen", _raise_status(500))
    with pytest.raises(TransientError):
        client.get_conversation("spaces/S")


def test_google_client_maps_network_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_urlopen(request: urllib.request.Request, timeout: float) -> FakeResponse:
        raise urllib.error.URLError("connection refused")

    monkeypatch.setattr(urllib.request, "urlopen", fake_urlopen)
    with pytest.raises(TransientError):
        _client().fetch_bytes(("drive_file", "file-1"), "token")


def test_google_client_fetches_drive_files(monkeypatch: pytest.MonkeyPatch) -> None:
    seen: list[str] = []

    def fake_urlopen(request: urllib.request.Request, timeout: float) -> FakeResponse:
        seen.append(request.full_url)
        return FakeResponse(b"%PDF-1.4", "application/pdf")

    monkeypatch.setattr(urllib.request, "urlopen", fake_urlopen)
    content, content_type = _client().fetch_bytes(("drive_file", "file 1"), "token")
    assert content == b"%PDF-1.4"
    assert content_type == "application/pdf"
    assert seen == ["https://drive.invalid/v3/files/file%201?alt=media"]


def test_google_client_directory_lookup(monkeypatch: pytest.MonkeyPatch) -> None:
    """Summary: Verify directory entries map to names and missing users return None.

    Importance: Directory misses must fall through to heuristics instead of failing.
    Alternatives: Raise on every directory miss.
    """

    def fake_urlopen(request: urllib.request.Request, timeout: float) -> FakeResponse:
        if request.full_url.endswith("/users/42"):
            body = {"name": {"fullName": "Ana Silva"}, "primaryEmail": "ana@corp.example"}
            return FakeResponse(json.dumps(body).encode("utf-8"), "application/json")
        raise urllib.error.HTTPError(request.full_url, 404, "missing", None, None)

    monkeypatch.setattr(urllib.request, "urlopen", fake_urlopen)
    client = _client()
    assert client.resolve_identity("users/42", "token") == {
        "displayName": "Ana Silva",
        "email": "ana@corp.example",
    }
    assert client.resolve_identity("users/43", "token") is None


def test_google_client_rejects_invalid_json(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        urllib.request, "urlopen", lambda request, timeout: FakeResponse(b"<html>", "text/html")
    )
    with pytest.raises(TransientError):
        _client().get_conversation("spaces/S")
