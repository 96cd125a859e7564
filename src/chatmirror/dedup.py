"""Summary: Deduplication index for attachments across sync passes.

Importance: Decides whether an incoming attachment is new, unchanged, or needs an update.
Alternatives: Compare full payload hashes on every sync.
"""

from __future__ import annotations

from dataclasses import dataclass

from chatmirror.errors import NO_SOURCE, TRANSIENT
from chatmirror.media import is_legacy_served_path
from chatmirror.models import FAILED, PENDING, NormalizedAttachment
from chatmirror.storage.sqlite_store import SqliteStore, StoredAttachment


NEW = "new"
DUPLICATE_UNCHANGED = "duplicate_unchanged"
DUPLICATE_NEEDS_UPDATE = "duplicate_needs_update"


@dataclass(frozen=True)
class DedupDecision:
    """Summary: Verdict for one incoming attachment.

    Importance: Carries the identity key and the stored record so callers avoid a second lookup.
    Alternatives: Return a bare verdict string.
    """

    verdict: str
    identity_key: str
    existing: StoredAttachment | None = None


def attachment_identity_key(
    conversation_id: int, message_id: int, attachment: NormalizedAttachment
) -> str:
    """Summary: Build the deduplication key for an attachment.

    Importance: Prefers the remote stable id and falls back to position-bound content fields.
    Alternatives: Key on filename alone.
    """

    prefix = f"{conversation_id}|{message_id}"
    if attachment.stable_id:
        return f"{prefix}|id:{attachment.stable_id}"
    return (
        f"{prefix}|pos:{attachment.position}:{attachment.filename}:{attachment.content_type}"
    )


@dataclass(frozen=True)
class DeduplicationIndex:
    """Summary: Classifies incoming attachments against the lifecycle store.

    Importance: Makes repeated syncs idempotent once results are committed.
    Alternatives: Keep an in-memory set of seen attachments per process.
    """

    store: SqliteStore
    max_auto_retries: int = 3

    def classify(
        self, conversation_id: int, message_id: int, attachment: NormalizedAttachment
    ) -> DedupDecision:
        """Summary: Classify one incoming attachment.

        Importance: Feeds the orchestrator's register, refresh, and download decisions.
        Alternatives: Always re-register and rely on unique constraints.
        """

        key = attachment_identity_key(conversation_id, message_id, attachment)
        existing = self.store.find_attachment(key)
        if existing is None:
            return DedupDecision(NEW, key)
        if self._needs_update(existing, attachment):
            return DedupDecision(DUPLICATE_NEEDS_UPDATE, key, existing)
        return DedupDecision(DUPLICATE_UNCHANGED, key, existing)

    def _needs_update(self, existing: StoredAttachment, incoming: NormalizedAttachment) -> bool:
        if is_legacy_served_path(existing.local_ref):
            return True
        if existing.local_ref or not incoming.sources.is_fetchable:
            return False
        if existing.state == PENDING:
            return True
        if existing.state != FAILED:
            return False
        if existing.failure_reason == NO_SOURCE:
            return not existing.has_source
        return (
            existing.failure_reason == TRANSIENT and existing.attempts < self.max_auto_retries
        )
