"""Summary: Attachment normalizer for remote chat message payloads.

Importance: Converts every wire shape the chat API produces into one canonical record.
Alternatives: Scatter type checks for attachment fields across sync callers.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any

from chatmirror.models import NormalizedAttachment, NormalizedMessage, SourceRefs


UNNAMED_ATTACHMENT = "Unnamed attachment"
DEFAULT_CONTENT_TYPE = "application/octet-stream"
UNKNOWN_SENDER = "unknown"

_TIMESTAMP_PREFIX = re.compile(r"^\d+_")
_DOCUMENT_MARKERS = ("document", "spreadsheet", "presentation", "msword", "text/")
_ARCHIVE_TYPES = {
    "application/zip",
    "application/x-rar-compressed",
    "application/x-7z-compressed",
    "application/x-tar",
    "application/gzip",
}


def normalize_message(raw: Any) -> NormalizedMessage | None:
    """Summary: Normalize one raw message payload.

    Importance: Gives the orchestrator a stable view of ids, senders, and attachments.
    Alternatives: Fail the whole page when one payload is malformed.
    """

    if not isinstance(raw, dict):
        return None
    remote_id = _first_text(raw, "name", "id")
    if not remote_id:
        return None
    return NormalizedMessage(
        remote_id=remote_id,
        sender_id=_sender_id(raw.get("sender")),
        text=raw.get("text") if isinstance(raw.get("text"), str) else "",
        created_at=_parse_timestamp(raw.get("createTime")),
        attachments=normalize_attachments(raw),
    )


def normalize_attachments(raw: dict[str, Any]) -> list[NormalizedAttachment]:
    """Summary: Produce canonical attachments from a message payload.

    Importance: Treats single objects, arrays, and missing fields uniformly.
    Alternatives: Only support the plural array field.
    """

    value = raw.get("attachments")
    if value is None:
        value = raw.get("attachment")
    entries = [item for item in _as_sequence(value) if isinstance(item, dict)]
    return [_normalize_attachment(item, position) for position, item in enumerate(entries)]


def filename_from_local_path(value: str | None) -> str | None:
    """Summary: Derive a display filename from a legacy local path.

    Importance: Recovers names from records that only kept a stored path.
    Alternatives: Fall back to the generic name immediately.
    """

    if not value or not isinstance(value, str):
        return None
    cleaned = value.split("?", 1)[0].split("#", 1)[0]
    tail = re.split(r"[\\/]", cleaned.rstrip("/\\"))[-1]
    tail = _TIMESTAMP_PREFIX.sub("", tail).strip()
    return tail or None


def classify_media_type(content_type: str) -> str:
    """Summary: Group a MIME type into a coarse media category.

    Importance: Lets clients filter images, video, and documents without MIME parsing.
    Alternatives: Expose raw content types only.
    """

    lowered = content_type.lower()
    if lowered.startswith("image/"):
        return "image"
    if lowered.startswith("video/"):
        return "video"
    if lowered.startswith("audio/") or lowered == "application/ogg":
        return "audio"
    if lowered in _ARCHIVE_TYPES:
        return "archive"
    if lowered == "application/pdf" or any(marker in lowered for marker in _DOCUMENT_MARKERS):
        return "document"
    return "other"


def _normalize_attachment(item: dict[str, Any], position: int) -> NormalizedAttachment:
    legacy_path = _first_text(item, "localFilePath", "localPath")
    filename = (
        _first_text(item, "filename", "fileName")
        or _first_text(item, "contentName")
        or filename_from_local_path(legacy_path)
        or UNNAMED_ATTACHMENT
    )
    content_type = _first_text(item, "contentType") or _first_text(item, "mimeType")
    content_type = content_type or DEFAULT_CONTENT_TYPE
    drive_ref = item.get("driveDataRef") if isinstance(item.get("driveDataRef"), dict) else {}
    data_ref = (
        item.get("attachmentDataRef") if isinstance(item.get("attachmentDataRef"), dict) else {}
    )
    drive_file_id = _first_text(drive_ref, "driveFileId")
    sources = SourceRefs(
        download_url=_first_text(item, "downloadUri", "downloadUrl"),
        thumbnail_url=_first_text(item, "thumbnailUri", "thumbnailUrl"),
        drive_file_id=drive_file_id,
    )
    stable_id = (
        _first_text(data_ref, "resourceName")
        or drive_file_id
        or _first_text(item, "sourceId")
        or _first_text(item, "name")
    )
    return NormalizedAttachment(
        stable_id=stable_id,
        filename=filename,
        content_type=content_type,
        media_type=classify_media_type(content_type),
        byte_size=_parse_size(item.get("fileSize", item.get("size"))),
        sources=sources,
        position=position,
    )


def _as_sequence(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, dict):
        return [value]
    if isinstance(value, (list, tuple)):
        return list(value)
    return []


def _first_text(payload: dict[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _sender_id(sender: Any) -> str:
    if isinstance(sender, dict):
        return _first_text(sender, "name", "id") or UNKNOWN_SENDER
    if isinstance(sender, str) and sender.strip():
        return sender.strip()
    return UNKNOWN_SENDER


def _parse_size(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        size = int(value)
    except (TypeError, ValueError):
        return None
    return size if size >= 0 else None


def _parse_timestamp(value: Any) -> datetime | None:
    """Summary: Parse RFC 3339 timestamps from chat payloads.

    Importance: Normalizes message ordering data without failing on bad input.
    Alternatives: Store raw timestamp strings in the database.
    """

    if not isinstance(value, str) or not value:
        return None
    cleaned = value.replace("Z", "+00:00")
    # fromisoformat rejects nanosecond fractions, which the chat API emits
    cleaned = re.sub(r"(\.\d{6})\d+", r"\1", cleaned)
    try:
        return datetime.fromisoformat(cleaned)
    except ValueError:
        return None
