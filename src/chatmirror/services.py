"""Summary: Core application services for ChatMirror.

Importance: Orchestrates conversation sync, download retries, and identity maintenance.
Alternatives: Build a full service layer with a dependency injection framework.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Iterable

from chatmirror.credentials import CredentialProvider
from chatmirror.dedup import DUPLICATE_NEEDS_UPDATE, NEW, DeduplicationIndex
from chatmirror.downloads import ABORTED, DownloadOutcome, DownloadPipeline
from chatmirror.errors import (
    IDENTITY_UNRESOLVED,
    MALFORMED_INPUT,
    NO_SOURCE,
    TRANSIENT,
    ChatMirrorError,
    RemoteApiError,
)
from chatmirror.identity import IdentityResolver
from chatmirror.media import MediaWriter, is_legacy_served_path
from chatmirror.models import (
    COMPLETED,
    CONVERSATION_DIRECT,
    CONVERSATION_GROUP,
    FAILED,
    METHOD_REVERTED,
    METHOD_UNRESOLVED,
    PENDING,
    BatchResult,
    Conversation,
    NormalizedAttachment,
    NormalizedMessage,
    SenderIdentity,
    SyncSummary,
)
from chatmirror.normalizer import normalize_message
from chatmirror.remote import RemoteChatClient
from chatmirror.storage.sqlite_store import MediaStatistic, SqliteStore, StoredAttachment


logger = logging.getLogger(__name__)

_DIRECT_TYPES = {"DIRECT_MESSAGE", "DM"}


@dataclass
class SyncRunContext:
    """Summary: Mutable state owned by one sync invocation.

    Importance: Keeps per-run caches out of module state so concurrent runs never share them.
    Alternatives: Store caches on the service instance.
    """

    summary: SyncSummary
    conversation_id: int
    credential: str
    resolved: dict[str, SenderIdentity] = field(default_factory=dict)
    queued: list[StoredAttachment] = field(default_factory=list)
    queued_ids: set[int] = field(default_factory=set)

    def queue(self, attachment: StoredAttachment) -> None:
        if attachment.id in self.queued_ids:
            return
        self.queued_ids.add(attachment.id)
        self.queued.append(attachment)


@dataclass(frozen=True)
class SyncService:
    """Summary: Mirrors remote conversations into the local store.

    Importance: Drives normalization, deduplication, identity resolution, and downloads.
    Alternatives: Run each step as an independent scheduled job.
    """

    store: SqliteStore
    client: RemoteChatClient
    credentials: CredentialProvider
    pipeline: DownloadPipeline
    resolver: IdentityResolver
    dedup: DeduplicationIndex
    writer: MediaWriter
    page_limit: int = 50
    identity_threshold: int = 90
    max_auto_retries: int = 3
    conversation_workers: int = 2

    def run_sync(
        self, conversation_ref: str, cancel_event: threading.Event | None = None
    ) -> SyncSummary:
        """Summary: Sync one conversation and return its summary.

        Importance: Main entry point for incremental mirroring.
        Alternatives: Sync every conversation on every call.
        """

        credential = self.credentials.get_credential()
        conversation_id = self.store.upsert_conversation(self._fetch_conversation(conversation_ref))
        context = SyncRunContext(
            summary=SyncSummary(conversation_ref=conversation_ref),
            conversation_id=conversation_id,
            credential=credential,
        )
        page_token: str | None = None
        for page in range(1, self.page_limit + 1):
            if cancel_event is not None and cancel_event.is_set():
                logger.info("Sync of %s cancelled after %s pages", conversation_ref, page - 1)
                break
            messages, page_token = self.client.list_messages(conversation_ref, page_token)
            for raw in messages:
                self._sync_message(context, raw)
            if not page_token:
                break
        else:
            logger.warning(
                "Stopped paging %s after %s pages; more messages remain",
                conversation_ref,
                self.page_limit,
            )

        self._fold_outcomes(
            context.summary,
            self.pipeline.download_many(context.queued, credential, cancel_event),
        )
        self.store.mark_conversation_synced(conversation_id)
        logger.info("Synced %s: %s", conversation_ref, context.summary.as_dict())
        return context.summary

    def run_batch(
        self,
        conversation_refs: Iterable[str] | None = None,
        cancel_event: threading.Event | None = None,
    ) -> list[BatchResult]:
        """Summary: Sync several conversations concurrently.

        Importance: One failing conversation is recorded without aborting the batch.
        Alternatives: Sync conversations strictly one after another.
        """

        refs = list(conversation_refs) if conversation_refs is not None else None
        if refs is None:
            refs = self.client.list_conversations()
        if not refs:
            return []
        workers = max(1, min(self.conversation_workers, len(refs)))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [executor.submit(self._sync_for_batch, ref, cancel_event) for ref in refs]
            return [future.result() for future in futures]

    def retry_failed_downloads(
        self, conversation_ref: str | None = None, attachment_id: int | None = None
    ) -> SyncSummary:
        """Summary: Requeue failed downloads on operator request and download them again.

        Importance: Operator retries cover every failure reason, not only transient ones.
        Alternatives: Only retry automatically during sync.
        """

        summary = SyncSummary(conversation_ref=conversation_ref or "*")
        if attachment_id is not None:
            found = self.store.get_attachment(attachment_id)
            candidates = [found] if found is not None and found.state == FAILED else []
        elif conversation_ref is not None:
            conversation = self.store.get_conversation(conversation_ref)
            if conversation is None:
                raise ValueError(f"Unknown conversation: {conversation_ref}")
            candidates = self.store.list_attachments(conversation.id, FAILED)
        else:
            candidates = self.store.list_attachments(state=FAILED)

        queued: list[StoredAttachment] = []
        for attachment in candidates:
            if not attachment.has_source:
                summary.record_failure(NO_SOURCE)
                continue
            if self.store.requeue_attachment(attachment.id, operator=True):
                refreshed = self.store.get_attachment(attachment.id)
                if refreshed is not None:
                    queued.append(refreshed)
        if queued:
            credential = self.credentials.get_credential()
            self._fold_outcomes(summary, self.pipeline.download_many(queued, credential))
        logger.info("Retried %s failed downloads: %s", len(queued), summary.as_dict())
        return summary

    def revert_identity(self, sender_id: str) -> int:
        return self.resolver.revert_identity(sender_id)

    def revert_identities(self, sender_ids: Iterable[str]) -> dict[str, int]:
        return self.resolver.revert_identities(sender_ids)

    def map_identity(self, sender_id: str, display_name: str, email: str) -> int:
        return self.resolver.map_identity(sender_id, display_name, email)

    def migrate_legacy_paths(self) -> int:
        return self.store.migrate_legacy_paths()

    def remove_empty_media(self) -> list[str]:
        return self.writer.remove_empty()

    def media_statistics(self, conversation_ref: str | None = None) -> list[MediaStatistic]:
        """Summary: Report attachment counts and stored bytes per media type and state.

        Importance: Operators see download progress and failure hot spots per kind of media.
        Alternatives: Inspect the media directory by hand.
        """

        if conversation_ref is None:
            return self.store.media_statistics()
        conversation = self.store.get_conversation(conversation_ref)
        if conversation is None:
            raise ValueError(f"Unknown conversation: {conversation_ref}")
        return self.store.media_statistics(conversation.id)

    def list_attachments(
        self, conversation_ref: str, state: str | None = None
    ) -> list[StoredAttachment]:
        """Summary: List attachments of a conversation by remote reference.

        Importance: Feeds the API and CLI listings.
        Alternatives: Require database IDs from callers.
        """

        conversation = self.store.get_conversation(conversation_ref)
        if conversation is None:
            raise ValueError(f"Unknown conversation: {conversation_ref}")
        return self.store.list_attachments(conversation.id, state)

    def list_identities(self, max_confidence: int | None = None) -> list[SenderIdentity]:
        return self.store.list_identities(max_confidence)

    def _sync_for_batch(
        self, conversation_ref: str, cancel_event: threading.Event | None
    ) -> BatchResult:
        if cancel_event is not None and cancel_event.is_set():
            return BatchResult(conversation_ref, None, cancelled=True)
        try:
            summary = self.run_sync(conversation_ref, cancel_event)
        except (ChatMirrorError, sqlite3.Error, OSError, ValueError) as exc:
            logger.exception("Sync of %s failed", conversation_ref)
            return BatchResult(conversation_ref, None, error=str(exc))
        cancelled = cancel_event is not None and cancel_event.is_set()
        return BatchResult(conversation_ref, summary, cancelled=cancelled)

    def _fetch_conversation(self, conversation_ref: str) -> Conversation:
        payload = self.client.get_conversation(conversation_ref)
        space_type = str(payload.get("spaceType") or payload.get("type") or "").upper()
        if space_type in _DIRECT_TYPES or payload.get("singleUserBotDm"):
            conversation_type = CONVERSATION_DIRECT
        else:
            conversation_type = CONVERSATION_GROUP
        return Conversation(
            remote_ref=conversation_ref,
            display_name=payload.get("displayName") or conversation_ref,
            conversation_type=conversation_type,
        )

    def _message_detail(self, raw: Any) -> Any:
        if not isinstance(raw, dict) or not raw.get("name"):
            return raw
        try:
            detail = self.client.get_message_detail(raw["name"])
        except RemoteApiError as exc:
            logger.info("Using listed payload for %s: %s", raw["name"], exc.reason)
            return raw
        return detail if isinstance(detail, dict) else raw

    def _sync_message(self, context: SyncRunContext, raw: Any) -> None:
        summary = context.summary
        summary.messages_seen += 1
        message = normalize_message(self._message_detail(raw))
        if message is None:
            summary.messages_skipped += 1
            summary.record_failure(MALFORMED_INPUT)
            logger.warning("Skipping malformed message in %s", summary.conversation_ref)
            return
        identity = self._resolve_sender(context, message)
        message_id, created = self.store.upsert_message(context.conversation_id, message, identity)
        if created:
            summary.messages_new += 1
        for attachment in message.attachments:
            try:
                self._sync_attachment(context, message_id, attachment)
            except (ChatMirrorError, ValueError) as exc:
                summary.record_failure(MALFORMED_INPUT)
                logger.warning(
                    "Attachment %s of %s not synced: %s",
                    attachment.position,
                    message.remote_id,
                    exc,
                )

    def _resolve_sender(
        self, context: SyncRunContext, message: NormalizedMessage
    ) -> SenderIdentity:
        sender_id = message.sender_id
        cached = context.resolved.get(sender_id)
        if cached is not None:
            return cached
        existing = self.store.get_identity(sender_id)
        if existing is None or existing.confidence < self.identity_threshold:
            texts = [message.text, *self.store.list_sender_texts(sender_id)]
            identity = self.resolver.resolve(sender_id, texts, context.credential)
        else:
            self.store.touch_identity(sender_id)
            identity = existing
        if identity.method in (METHOD_UNRESOLVED, METHOD_REVERTED):
            context.summary.identities_unresolved += 1
            context.summary.record_failure(IDENTITY_UNRESOLVED)
        else:
            context.summary.identities_resolved += 1
        self.store.upsert_participant(context.conversation_id, identity)
        context.resolved[sender_id] = identity
        return identity

    def _sync_attachment(
        self, context: SyncRunContext, message_id: int, attachment: NormalizedAttachment
    ) -> None:
        summary = context.summary
        decision = self.dedup.classify(context.conversation_id, message_id, attachment)
        if decision.verdict == NEW:
            stored = self.store.register_attachment(
                context.conversation_id, message_id, decision.identity_key, attachment
            )
            summary.attachments_new += 1
            if stored.state == PENDING:
                context.queue(stored)
            else:
                summary.record_failure(stored.failure_reason or NO_SOURCE)
            return
        if decision.verdict != DUPLICATE_NEEDS_UPDATE or decision.existing is None:
            summary.attachments_unchanged += 1
            return

        existing = decision.existing
        summary.attachments_updated += 1
        if is_legacy_served_path(existing.local_ref):
            if self.store.migrate_legacy_path(existing.id):
                summary.paths_migrated += 1
        if attachment.sources.is_fetchable:
            self.store.refresh_attachment(existing.id, attachment)
        if existing.state == FAILED and existing.failure_reason == TRANSIENT:
            self.store.requeue_attachment(existing.id, max_auto_retries=self.max_auto_retries)
        refreshed = self.store.get_attachment(existing.id)
        if refreshed is not None and refreshed.state == PENDING and not refreshed.local_ref:
            context.queue(refreshed)

    def _fold_outcomes(self, summary: SyncSummary, outcomes: list[DownloadOutcome]) -> None:
        for outcome in outcomes:
            if outcome.status == COMPLETED:
                summary.downloads_completed += 1
            elif outcome.status == FAILED:
                summary.downloads_failed += 1
                summary.record_failure(outcome.reason or TRANSIENT)
            elif outcome.status == ABORTED:
                summary.downloads_failed += 1
                summary.record_failure(TRANSIENT)
