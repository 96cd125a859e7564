"""Summary: Tests for the attachment normalizer.

Importance: Ensures every wire shape collapses into one canonical attachment record.
Alternatives: Validate normalization only through end-to-end syncs.
"""

from __future__ import annotations

from chatmirror.normalizer import (
    DEFAULT_CONTENT_TYPE,
    UNNAMED_ATTACHMENT,
    UNKNOWN_SENDER,
    classify_media_type,
    filename_from_local_path,
    normalize_attachments,
    normalize_message,
)


def _attachment() -> dict[str, object]:
    return {
        "name": "spaces/AAA/messages/m1/attachments/a1",
        "contentName": "report.pdf",
        "contentType": "application/pdf",
        "downloadUri": "https://chat.example.com/download/a1",
        "attachmentDataRef": {"resourceName": "res-a1"},
    }


def test_single_object_and_array_normalize_identically() -> None:
    """Summary: Verify singular and plural attachment fields produce the same records.

    Importance: The remote API sends both shapes for the same data.
    Alternatives: Support only the plural field.
    """

    single = normalize_attachments({"attachment": _attachment()})
    array = normalize_attachments({"attachments": [_attachment()]})
    assert single == array
    assert len(single) == 1
    assert single[0].stable_id == "res-a1"
    assert single[0].media_type == "document"


def test_absent_and_invalid_attachment_fields_yield_empty_list() -> None:
    assert normalize_attachments({}) == []
    assert normalize_attachments({"attachments": None}) == []
    assert normalize_attachments({"attachments": "oops"}) == []
    assert normalize_attachments({"attachments": [42, "x", None]}) == []


def test_filename_fallback_order() -> None:
    """Summary: Verify filename, contentName, legacy path, and generic fallbacks.

    Importance: Display filenames must never be empty.
    Alternatives: Use the resource name as the filename.
    """

    records = normalize_attachments(
        {
            "attachments": [
                {"filename": "explicit.txt", "contentName": "ignored.txt"},
                {"contentName": "content.txt"},
                {"localFilePath": "/uploads/media/1699999999_report.pdf"},
                {"contentType": "image/png"},
            ]
        }
    )
    assert [record.filename for record in records] == [
        "explicit.txt",
        "content.txt",
        "report.pdf",
        UNNAMED_ATTACHMENT,
    ]
    assert [record.position for record in records] == [0, 1, 2, 3]


def test_filename_from_local_path_strips_prefix_and_query() -> None:
    assert filename_from_local_path("1699999999_report.pdf") == "report.pdf"
    assert filename_from_local_path("C:\\media\\123_photo.png?x=1") == "photo.png"
    assert filename_from_local_path("") is None
    assert filename_from_local_path(None) is None


def test_content_type_and_sources() -> None:
    [record] = normalize_attachments(
        {
            "attachments": [
                {
                    "mimeType": "image/jpeg",
                    "thumbnailUri": "https://chat.example.com/thumb/1",
                    "driveDataRef": {"driveFileId": "drive-1"},
                    "fileSize": "2048",
                }
            ]
        }
    )
    assert record.content_type == "image/jpeg"
    assert record.media_type == "image"
    assert record.sources.download_url is None
    assert record.sources.thumbnail_url == "https://chat.example.com/thumb/1"
    assert record.sources.drive_file_id == "drive-1"
    assert record.stable_id == "drive-1"
    assert record.byte_size == 2048
    assert record.sources.ordered() == [
        ("drive_file", "drive-1"),
        ("thumbnail_url", "https://chat.example.com/thumb/1"),
    ]


def test_attachment_without_sources_is_not_fetchable() -> None:
    [record] = normalize_attachments({"attachment": {"contentName": "ghost.bin"}})
    assert record.content_type == DEFAULT_CONTENT_TYPE
    assert not record.sources.is_fetchable
    assert record.stable_id is None


def test_normalize_message_reads_sender_text_and_timestamp() -> None:
    message = normalize_message(
        {
            "name": "spaces/AAA/messages/m1",
            "sender": {"name": "users/123456789", "type": "HUMAN"},
            "text": "Hello",
            "createTime": "2024-03-01T10:15:30.123456789Z",
            "attachment": [_attachment()],
        }
    )
    assert message is not None
    assert message.remote_id == "spaces/AAA/messages/m1"
    assert message.sender_id == "users/123456789"
    assert message.text == "Hello"
    assert message.created_at is not None
    assert message.created_at.year == 2024
    assert len(message.attachments) == 1


def test_normalize_message_rejects_malformed_payloads() -> None:
    assert normalize_message(None) is None
    assert normalize_message(["not", "a", "dict"]) is None
    assert normalize_message({"text": "no id"}) is None
    message = normalize_message({"id": "m2", "text": 5, "createTime": "garbage"})
    assert message is not None
    assert message.sender_id == UNKNOWN_SENDER
    assert message.text == ""
    assert message.created_at is None


def test_classify_media_type() -> None:
    assert classify_media_type("video/mp4") == "video"
    assert classify_media_type("audio/mpeg") == "audio"
    assert classify_media_type("application/zip") == "archive"
    assert classify_media_type("application/vnd.ms-excel") == "other"
    assert classify_media_type("text/plain") == "document"
