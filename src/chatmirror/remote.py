"""Summary: Remote chat client interfaces and implementations.

Importance: Encapsulates read-only access to the remote chat service and its media.
Alternatives: Rely solely on the vendor SDK with vendor lock-in.
"""

from __future__ import annotations

import base64
import json
import logging
import socket
import urllib.error
import urllib.parse
import urllib.request
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from chatmirror.errors import NotFoundError, TransientError, classify_http_status


logger = logging.getLogger(__name__)

DIRECTORY_BASE_URL = "https://admin.googleapis.com/admin/directory/v1"


class RemoteChatClient(ABC):
    """Summary: Abstract interface for the remote chat service.

    Importance: Lets the sync engine run against the live API or a fixture.
    Alternatives: Call the HTTP API directly from the orchestrator.
    """

    @abstractmethod
    def list_messages(
        self, conversation_ref: str, page_token: str | None = None
    ) -> tuple[list[dict[str, Any]], str | None]:
        """Summary: List one page of raw messages and the next page token.

        Importance: Drives paginated ingestion.
        Alternatives: Return every message in one call.
        """

    @abstractmethod
    def get_message_detail(self, message_ref: str) -> dict[str, Any]:
        """Summary: Fetch the full payload of one message.

        Importance: Listed payloads can omit attachment details.
        Alternatives: Trust the listed payload.
        """

    @abstractmethod
    def fetch_bytes(self, source: tuple[str, str], credential: str) -> tuple[bytes, str | None]:
        """Summary: Fetch attachment bytes and the declared content type.

        Importance: Single entry point for every attachment source kind.
        Alternatives: Let the download pipeline build HTTP requests.
        """

    @abstractmethod
    def resolve_identity(self, identifier: str, credential: str | None) -> dict[str, Any] | None:
        """Summary: Look up a sender in the organization directory.

        Importance: Highest-confidence source of names and emails.
        Alternatives: Infer identities from message text only.
        """

    @abstractmethod
    def get_conversation(self, conversation_ref: str) -> dict[str, Any]:
        """Summary: Fetch conversation metadata."""

    @abstractmethod
    def list_conversations(self) -> list[str]:
        """Summary: List conversation references visible to the credential."""


class GoogleChatClient(RemoteChatClient):
    """Summary: Reads spaces, messages, and media from the Google Chat REST API.

    Importance: Production client using OAuth bearer tokens without extra dependencies.
    Alternatives: Use google-api-python-client.
    """

    def __init__(
        self,
        access_token: str,
        base_url: str,
        drive_base_url: str,
        timeout: float = 30.0,
        page_size: int = 100,
        directory_base_url: str = DIRECTORY_BASE_URL,
    ) -> None:
        """Summary: Initialize the Google Chat client.

        Importance: Stores the token, base URLs, and request timeout for every call.
        Alternatives: Fetch tokens on demand inside each request.
        """

        self._access_token = access_token
        self._base_url = base_url.rstrip("/")
        self._drive_base_url = drive_base_url.rstrip("/")
        self._directory_base_url = directory_base_url.rstrip("/")
        self._timeout = timeout
        self._page_size = page_size

    def list_messages(
        self, conversation_ref: str, page_token: str | None = None
    ) -> tuple[list[dict[str, Any]], str | None]:
        params = {"pageSize": str(self._page_size), "orderBy": "createTime asc"}
        if page_token:
            params["pageToken"] = page_token
        url = f"{self._base_url}/{conversation_ref}/messages?{urllib.parse.urlencode(params)}"
        payload = _chat_api_get(url, self._access_token, self._timeout)
        messages = payload.get("messages", [])
        if not isinstance(messages, list):
            messages = []
        return messages, payload.get("nextPageToken") or None

    def get_message_detail(self, message_ref: str) -> dict[str, Any]:
        return _chat_api_get(f"{self._base_url}/{message_ref}", self._access_token, self._timeout)

    def fetch_bytes(self, source: tuple[str, str], credential: str) -> tuple[bytes, str | None]:
        """Summary: Download attachment bytes from a download URL, drive file, or thumbnail.

        Importance: Maps HTTP and network failures onto failure reason codes.
        Alternatives: Use the Chat media endpoint for every attachment.
        """

        kind, value = source
        if kind == "drive_file":
            url = f"{self._drive_base_url}/files/{urllib.parse.quote(value)}?alt=media"
        else:
            url = value
        return _http_get_bytes(url, credential, self._timeout)

    def resolve_identity(self, identifier: str, credential: str | None) -> dict[str, Any] | None:
        """Summary: Resolve a sender through the admin directory.

        Importance: Returns a name and email when the directory knows the user.
        Alternatives: Use the People API.
        """

        user_key = identifier.split("/", 1)[-1]
        url = f"{self._directory_base_url}/users/{urllib.parse.quote(user_key)}"
        try:
            payload = _chat_api_get(url, credential or self._access_token, self._timeout)
        except NotFoundError:
            logger.info("Directory has no entry for %s", identifier)
            return None
        name = payload.get("name") if isinstance(payload.get("name"), dict) else {}
        display_name = name.get("fullName") or payload.get("displayName")
        email = payload.get("primaryEmail") or payload.get("email")
        if not display_name or not email:
            return None
        return {"displayName": display_name, "email": email}

    def get_conversation(self, conversation_ref: str) -> dict[str, Any]:
        return _chat_api_get(
            f"{self._base_url}/{conversation_ref}", self._access_token, self._timeout
        )

    def list_conversations(self) -> list[str]:
        refs: list[str] = []
        page_token: str | None = None
        while True:
            params = {"pageSize": str(self._page_size)}
            if page_token:
                params["pageToken"] = page_token
            url = f"{self._base_url}/spaces?{urllib.parse.urlencode(params)}"
            payload = _chat_api_get(url, self._access_token, self._timeout)
            for space in payload.get("spaces", []):
                if isinstance(space, dict) and space.get("name"):
                    refs.append(space["name"])
            page_token = payload.get("nextPageToken")
            if not page_token:
                return refs


class FixtureChatClient(RemoteChatClient):
    """Summary: Serves conversations, messages, and media from a local JSON fixture.

    Importance: Supports offline testing and demos.
    Alternatives: Record and replay HTTP traffic.
    """

    def __init__(self, data: dict[str, Any], page_size: int = 100) -> None:
        """Summary: Initialize the fixture client from parsed fixture data.

        Importance: Tests can build fixtures inline without touching disk.
        Alternatives: Accept only a file path.
        """

        self._conversations: dict[str, dict[str, Any]] = data.get("conversations", {})
        self._directory: dict[str, dict[str, Any]] = data.get("directory", {})
        self._media: dict[str, Any] = data.get("media", {})
        self._page_size = page_size
        self.fetch_log: list[tuple[str, str]] = []

    @classmethod
    def from_path(cls, fixture_path: Path, page_size: int = 100) -> "FixtureChatClient":
        return cls(json.loads(fixture_path.read_text(encoding="utf-8")), page_size=page_size)

    def list_messages(
        self, conversation_ref: str, page_token: str | None = None
    ) -> tuple[list[dict[str, Any]], str | None]:
        messages = self._conversation(conversation_ref).get("messages", [])
        start = int(page_token) if page_token else 0
        end = start + self._page_size
        next_token = str(end) if end < len(messages) else None
        return list(messages[start:end]), next_token

    def get_message_detail(self, message_ref: str) -> dict[str, Any]:
        for conversation in self._conversations.values():
            for message in conversation.get("messages", []):
                if isinstance(message, dict) and message.get("name") == message_ref:
                    return message
        raise NotFoundError(f"Message not found: {message_ref}", status=404)

    def fetch_bytes(self, source: tuple[str, str], credential: str) -> tuple[bytes, str | None]:
        """Summary: Return fixture media for a source value.

        Importance: Media entries may declare an HTTP status to simulate remote failures.
        Alternatives: Serve every source successfully.
        """

        self.fetch_log.append(source)
        entry = self._media.get(source[1])
        if entry is None:
            raise NotFoundError(f"Media not found: {source[1]}", status=404)
        if isinstance(entry, str):
            return entry.encode("utf-8"), None
        status = entry.get("status")
        if status:
            raise classify_http_status(int(status))(
                f"Fixture media returned {status}", status=int(status)
            )
        if "base64" in entry:
            content = base64.b64decode(entry["base64"])
        else:
            content = entry.get("text", "").encode("utf-8")
        return content, entry.get("contentType")

    def resolve_identity(self, identifier: str, credential: str | None) -> dict[str, Any] | None:
        return self._directory.get(identifier)

    def get_conversation(self, conversation_ref: str) -> dict[str, Any]:
        conversation = self._conversation(conversation_ref)
        return {key: value for key, value in conversation.items() if key != "messages"}

    def list_conversations(self) -> list[str]:
        return list(self._conversations)

    def _conversation(self, conversation_ref: str) -> dict[str, Any]:
        conversation = self._conversations.get(conversation_ref)
        if conversation is None:
            raise NotFoundError(f"Conversation not found: {conversation_ref}", status=404)
        return conversation


def _chat_api_get(url: str, access_token: str, timeout: float) -> dict[str, Any]:
    """Summary: Fetch JSON data from a Google REST API.

    Importance: Encapsulates API calls and error classification without new dependencies.
    Alternatives: Use a third-party HTTP client or SDK.
    """

    content, _ = _http_get_bytes(url, access_token, timeout, accept="application/json")
    try:
        payload = json.loads(content.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise TransientError(f"Invalid JSON from {url}") from exc
    if not isinstance(payload, dict):
        raise TransientError(f"Unexpected JSON payload from {url}")
    return payload


def _http_get_bytes(
    url: str, access_token: str, timeout: float, accept: str = "*/*"
) -> tuple[bytes, str | None]:
    request = urllib.request.Request(
        url,
        headers={"Authorization": f"Bearer {access_token}", "Accept": accept},
        method="GET",
    )
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            return response.read(), response.headers.get("Content-Type")
    except urllib.error.HTTPError as exc:
        error_class = classify_http_status(exc.code)
        raise error_class(
            f"Request to {url} failed with {exc.code}: {exc.reason}", status=exc.code
        ) from exc
    except (urllib.error.URLError, socket.timeout, TimeoutError, ConnectionError) as exc:
        raise TransientError(f"Request to {url} failed: {exc}") from exc
