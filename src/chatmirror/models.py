"""Summary: Domain model dataclasses for ChatMirror.

Importance: Defines the core entities shared across the sync engine and storage.
Alternatives: Use Pydantic models or ORM classes directly.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime


PENDING = "pending"
DOWNLOADING = "downloading"
COMPLETED = "completed"
FAILED = "failed"

LIFECYCLE_STATES = (PENDING, DOWNLOADING, COMPLETED, FAILED)

METHOD_DIRECTORY = "directory"
METHOD_MANUAL = "manual"
METHOD_HEURISTIC = "heuristic"
METHOD_UNRESOLVED = "unresolved_default"
METHOD_REVERTED = "reverted_incorrect_mapping"

CONVERSATION_DIRECT = "direct"
CONVERSATION_GROUP = "group"


@dataclass(frozen=True)
class Conversation:
    """Summary: Represents a mirrored remote chat space.

    Importance: Top-level container owning messages and participants.
    Alternatives: Store messages without a parent container.
    """

    remote_ref: str
    display_name: str
    conversation_type: str


@dataclass(frozen=True)
class SourceRefs:
    """Summary: Remote locations an attachment can be fetched from.

    Importance: Keeps download inputs verbatim for the download pipeline.
    Alternatives: Resolve a single download URL at normalization time.
    """

    download_url: str | None = None
    thumbnail_url: str | None = None
    drive_file_id: str | None = None

    @property
    def is_fetchable(self) -> bool:
        return bool(self.download_url or self.thumbnail_url or self.drive_file_id)

    def ordered(self) -> list[tuple[str, str]]:
        """Summary: List available sources in download preference order.

        Importance: Full-size content first, thumbnails as the last resort.
        Alternatives: Only try the download URL.
        """

        sources: list[tuple[str, str]] = []
        if self.download_url:
            sources.append(("download_url", self.download_url))
        if self.drive_file_id:
            sources.append(("drive_file", self.drive_file_id))
        if self.thumbnail_url:
            sources.append(("thumbnail_url", self.thumbnail_url))
        return sources


@dataclass(frozen=True)
class NormalizedAttachment:
    """Summary: Canonical attachment record produced by the normalizer.

    Importance: Single shape consumed by deduplication, storage, and downloads.
    Alternatives: Pass raw API dictionaries between components.
    """

    stable_id: str | None
    filename: str
    content_type: str
    media_type: str
    byte_size: int | None
    sources: SourceRefs
    position: int


@dataclass(frozen=True)
class NormalizedMessage:
    """Summary: Canonical message record produced by the normalizer.

    Importance: Decouples the orchestrator from remote payload quirks.
    Alternatives: Read remote fields inline during sync.
    """

    remote_id: str
    sender_id: str
    text: str
    created_at: datetime | None
    attachments: list[NormalizedAttachment]


@dataclass(frozen=True)
class SenderIdentity:
    """Summary: Resolved identity for a remote sender identifier.

    Importance: Carries the confidence used to decide whether to re-resolve or overwrite.
    Alternatives: Store only a display name per message.
    """

    sender_id: str
    display_name: str
    email: str
    confidence: int
    method: str
    employee_sender_id: str | None = None


@dataclass
class SyncSummary:
    """Summary: Counters describing one sync pass.

    Importance: Makes every outcome visible so nothing is silently dropped.
    Alternatives: Log counts without returning them.
    """

    conversation_ref: str
    messages_seen: int = 0
    messages_new: int = 0
    messages_skipped: int = 0
    attachments_new: int = 0
    attachments_updated: int = 0
    attachments_unchanged: int = 0
    paths_migrated: int = 0
    downloads_completed: int = 0
    downloads_failed: int = 0
    identities_resolved: int = 0
    identities_unresolved: int = 0
    failure_reasons: dict[str, int] = field(default_factory=dict)

    def record_failure(self, reason: str) -> None:
        self.failure_reasons[reason] = self.failure_reasons.get(reason, 0) + 1

    def as_dict(self) -> dict[str, object]:
        """Summary: Convert the summary to a plain dictionary.

        Importance: Feeds JSON responses and CLI output.
        Alternatives: Use dataclasses.asdict at each call site.
        """

        return {
            "conversation_ref": self.conversation_ref,
            "messages_seen": self.messages_seen,
            "messages_new": self.messages_new,
            "messages_skipped": self.messages_skipped,
            "attachments_new": self.attachments_new,
            "attachments_updated": self.attachments_updated,
            "attachments_unchanged": self.attachments_unchanged,
            "paths_migrated": self.paths_migrated,
            "downloads_completed": self.downloads_completed,
            "downloads_failed": self.downloads_failed,
            "identities_resolved": self.identities_resolved,
            "identities_unresolved": self.identities_unresolved,
            "failure_reasons": dict(self.failure_reasons),
        }


@dataclass(frozen=True)
class BatchResult:
    """Summary: Outcome of syncing one conversation inside a batch.

    Importance: Records per-conversation failures without aborting the batch.
    Alternatives: Raise on the first failing conversation.
    """

    conversation_ref: str
    summary: SyncSummary | None
    error: str | None = None
    cancelled: bool = False
