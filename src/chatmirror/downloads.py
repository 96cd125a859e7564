"""Summary: Download pipeline for attachment media.

Importance: Fetches, validates, stores, and records attachment bytes exactly once per attachment.
Alternatives: Download synchronously inside the sync loop without validation.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Iterable

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from chatmirror.errors import (
    NO_SOURCE,
    TRANSIENT,
    ContentMismatchError,
    RemoteApiError,
    TransientError,
    UnauthorizedError,
)
from chatmirror.locks import InFlightTable
from chatmirror.media import MediaWriter, canonical_name, image_dimensions
from chatmirror.models import COMPLETED, DOWNLOADING, FAILED, SourceRefs
from chatmirror.remote import RemoteChatClient
from chatmirror.storage.sqlite_store import SqliteStore, StoredAttachment


logger = logging.getLogger(__name__)

SKIPPED = "skipped"
CANCELLED = "cancelled"
ABORTED = "aborted"

_SIGNATURES: dict[str, Callable[[bytes], bool]] = {
    "image/png": lambda content: content.startswith(b"\x89PNG\r\n\x1a\n"),
    "image/jpeg": lambda content: content.startswith(b"\xff\xd8\xff"),
    "image/jpg": lambda content: content.startswith(b"\xff\xd8\xff"),
    "application/pdf": lambda content: content.startswith(b"%PDF"),
    "video/mp4": lambda content: content[4:8] == b"ftyp",
}
_HTML_MARKERS = (b"<!doctype html", b"<html", b"<head", b"<body")


@dataclass(frozen=True)
class DownloadOutcome:
    """Summary: Result of one attachment download attempt.

    Importance: Lets the orchestrator fold download results into the sync summary.
    Alternatives: Re-read the store after every download.
    """

    attachment_id: int
    status: str
    local_ref: str | None = None
    byte_size: int | None = None
    reason: str | None = None
    detail: str | None = None


def validate_content(content: bytes, declared_type: str | None, expected_type: str) -> None:
    """Summary: Reject bodies that are not the binary content that was requested.

    Importance: Error pages served with a 200 status must never be stored as media.
    Alternatives: Trust the declared content type.
    """

    expected = expected_type.split(";", 1)[0].strip().lower()
    declared = (declared_type or "").split(";", 1)[0].strip().lower()
    if not content:
        raise ContentMismatchError("Empty response body")
    if expected != "text/html":
        if declared == "text/html":
            raise ContentMismatchError("Received an HTML page instead of attachment content")
        head = content[:512].lstrip().lower()
        if head.startswith(_HTML_MARKERS):
            raise ContentMismatchError("Response body looks like an HTML page")
    check = _SIGNATURES.get(expected)
    if check is not None and not check(content):
        raise ContentMismatchError(f"Response body does not match {expected} signature")


def sources_for(attachment: StoredAttachment) -> SourceRefs:
    return SourceRefs(
        download_url=attachment.download_url,
        thumbnail_url=attachment.thumbnail_url,
        drive_file_id=attachment.drive_file_id,
    )


class DownloadPipeline:
    """Summary: Downloads pending attachments with retries and bounded concurrency.

    Importance: Turns pending records into completed or classified failures.
    Alternatives: Hand downloads to an external job queue.
    """

    def __init__(
        self,
        store: SqliteStore,
        client: RemoteChatClient,
        writer: MediaWriter,
        workers: int = 4,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        backoff_max_seconds: float = 10.0,
        inflight: InFlightTable | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Summary: Initialize the pipeline with its collaborators and retry policy.

        Importance: Retry and concurrency limits come from configuration.
        Alternatives: Hardcode limits inside the class.
        """

        self._store = store
        self._client = client
        self._writer = writer
        self._workers = max(1, workers)
        self._max_attempts = max(1, max_attempts)
        self._backoff_seconds = backoff_seconds
        self._backoff_max_seconds = backoff_max_seconds
        self._inflight = inflight or InFlightTable()
        self._sleep = sleep

    def download(
        self,
        attachment: StoredAttachment,
        credential: str,
        cancel_event: threading.Event | None = None,
    ) -> DownloadOutcome:
        """Summary: Download one attachment and record the outcome in the store.

        Importance: Only one worker fetches a given attachment, and it never stays in downloading.
        Alternatives: Let concurrent workers race and keep the last writer.
        """

        with self._inflight.claim(attachment.id) as acquired:
            if not acquired:
                return DownloadOutcome(attachment.id, SKIPPED, detail="already in flight")
            if not self._store.begin_download(attachment.id):
                return DownloadOutcome(attachment.id, SKIPPED, detail="not pending")
            try:
                return self._run(attachment, credential, cancel_event)
            except Exception:
                logger.exception("Download of attachment %s aborted", attachment.id)
                current = self._store.get_attachment(attachment.id)
                if current is not None and current.state == DOWNLOADING:
                    self._store.release_download(attachment.id)
                raise

    def download_many(
        self,
        attachments: Iterable[StoredAttachment],
        credential: str,
        cancel_event: threading.Event | None = None,
    ) -> list[DownloadOutcome]:
        """Summary: Download several attachments concurrently.

        Importance: Bounds parallel fetches by the configured worker count.
        Alternatives: Download one attachment at a time.
        """

        queued = list(attachments)
        if not queued:
            return []
        with ThreadPoolExecutor(max_workers=min(self._workers, len(queued))) as executor:
            futures = [
                executor.submit(self.download, attachment, credential, cancel_event)
                for attachment in queued
            ]
            outcomes: list[DownloadOutcome] = []
            for attachment, future in zip(queued, futures):
                try:
                    outcomes.append(future.result())
                except Exception as exc:
                    outcomes.append(DownloadOutcome(attachment.id, ABORTED, detail=str(exc)))
            return outcomes

    def _run(
        self,
        attachment: StoredAttachment,
        credential: str,
        cancel_event: threading.Event | None,
    ) -> DownloadOutcome:
        last_error: RemoteApiError | None = None
        for source in sources_for(attachment).ordered():
            if cancel_event is not None and cancel_event.is_set():
                self._store.release_download(attachment.id)
                return DownloadOutcome(attachment.id, CANCELLED)
            try:
                content, declared_type = self._fetch(source, credential)
                validate_content(content, declared_type, attachment.content_type)
            except UnauthorizedError as exc:
                last_error = exc
                break
            except RemoteApiError as exc:
                logger.info(
                    "Source %s failed for attachment %s: %s", source[0], attachment.id, exc.reason
                )
                last_error = exc
                continue
            return self._store_content(attachment, content)
        if last_error is None:
            return self._fail(attachment, NO_SOURCE, "No fetchable source")
        return self._fail(attachment, last_error.reason, str(last_error))

    def _fetch(self, source: tuple[str, str], credential: str) -> tuple[bytes, str | None]:
        retrying = Retrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(
                multiplier=self._backoff_seconds, max=self._backoff_max_seconds
            ),
            retry=retry_if_exception_type(TransientError),
            sleep=self._sleep,
            reraise=True,
        )
        return retrying(self._client.fetch_bytes, source, credential)

    def _store_content(self, attachment: StoredAttachment, content: bytes) -> DownloadOutcome:
        try:
            name = canonical_name(attachment.filename, self._writer)
            local_ref = self._writer.write(name, content)
        except OSError as exc:
            return self._fail(attachment, TRANSIENT, f"Write failed: {exc}")
        self._store.complete_download(attachment.id, local_ref, len(content))
        if attachment.media_type == "image":
            dimensions = image_dimensions(content)
            if dimensions is not None:
                self._store.record_media_metadata(attachment.id, *dimensions)
        logger.info("Downloaded attachment %s as %s", attachment.id, local_ref)
        return DownloadOutcome(
            attachment.id, COMPLETED, local_ref=local_ref, byte_size=len(content)
        )

    def _fail(self, attachment: StoredAttachment, reason: str, detail: str) -> DownloadOutcome:
        self._store.fail_download(attachment.id, reason, detail)
        logger.warning("Download of attachment %s failed: %s (%s)", attachment.id, reason, detail)
        return DownloadOutcome(attachment.id, FAILED, reason=reason, detail=detail)
