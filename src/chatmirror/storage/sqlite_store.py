"""Summary: SQLite lifecycle state store for ChatMirror.

Importance: Single source of truth for mirrored conversations, attachment lifecycle, and identities.
Alternatives: Use an ORM or an external database immediately.
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from chatmirror.errors import DOWNLOAD_FAILURE_REASONS, NO_SOURCE, TRANSIENT, InvalidTransitionError
from chatmirror.media import bare_filename, is_legacy_served_path
from chatmirror.models import (
    COMPLETED,
    DOWNLOADING,
    FAILED,
    PENDING,
    Conversation,
    NormalizedAttachment,
    NormalizedMessage,
    SenderIdentity,
)


logger = logging.getLogger(__name__)

_ATTACHMENT_COLUMNS = """
    id, conversation_id, message_id, identity_key, stable_id, filename, content_type,
    media_type, byte_size, position, download_url, thumbnail_url, drive_file_id,
    state, failure_reason, failure_detail, attempts, local_ref, downloaded_at,
    width, height, duration_seconds
"""

_MEDIA_METADATA_COLUMNS = (
    ("width", "INTEGER"),
    ("height", "INTEGER"),
    ("duration_seconds", "REAL"),
)

_IDENTITY_COLUMNS = "sender_id, display_name, email, confidence, method, employee_sender_id"


@dataclass(frozen=True)
class StoredConversation:
    """Summary: Conversation record with database identifier.

    Importance: Links messages, attachments, and participants to one space.
    Alternatives: Use the remote reference as the only key.
    """

    id: int
    remote_ref: str
    display_name: str
    conversation_type: str
    last_synced_at: str | None


@dataclass(frozen=True)
class StoredMessage:
    """Summary: Message record with database identifier.

    Importance: Parent row for attachments and the sender display cache.
    Alternatives: Embed messages in the conversation row.
    """

    id: int
    conversation_id: int
    remote_id: str
    sender_id: str
    sender_display_name: str | None
    sender_email: str | None
    text: str
    created_at: str | None


@dataclass(frozen=True)
class StoredAttachment:
    """Summary: Attachment record with lifecycle state.

    Importance: Carries everything the dedup index and download pipeline need.
    Alternatives: Store attachments as JSON on the message row.
    """

    id: int
    conversation_id: int
    message_id: int
    identity_key: str
    stable_id: str | None
    filename: str
    content_type: str
    media_type: str
    byte_size: int | None
    position: int
    download_url: str | None
    thumbnail_url: str | None
    drive_file_id: str | None
    state: str
    failure_reason: str | None
    failure_detail: str | None
    attempts: int
    local_ref: str | None
    downloaded_at: str | None
    width: int | None = None
    height: int | None = None
    duration_seconds: float | None = None

    @property
    def has_source(self) -> bool:
        return bool(self.download_url or self.thumbnail_url or self.drive_file_id)


@dataclass(frozen=True)
class StoredParticipant:
    """Summary: Cached participant identity inside one conversation.

    Importance: Lets clients render names without joining identities.
    Alternatives: Resolve names on every read.
    """

    conversation_id: int
    sender_id: str
    display_name: str
    email: str


@dataclass(frozen=True)
class StateChange:
    """Summary: One lifecycle transition of an attachment.

    Importance: Provides an audit trail for the state machine.
    Alternatives: Keep only the current state.
    """

    attachment_id: int
    from_state: str | None
    to_state: str
    reason: str | None
    changed_at: str


@dataclass(frozen=True)
class MediaStatistic:
    """Summary: Count and total size of attachments sharing a media type and state.

    Importance: Shows how much of the mirror is downloaded and where failures pile up.
    Alternatives: Walk the media directory and sum file sizes.
    """

    media_type: str
    state: str
    file_count: int
    total_bytes: int


class SqliteStore:
    """Summary: SQLite-backed lifecycle state store.

    Importance: Enables local-first persistence with minimal dependencies.
    Alternatives: Use Postgres and SQLAlchemy from day one.
    """

    def __init__(self, db_path: str, timeout: float = 30.0) -> None:
        """Summary: Initialize the storage with a database path.

        Importance: Allows configurable database location per environment.
        Alternatives: Hardcode a default path in the class.
        """

        self._db_path = Path(db_path)
        self._timeout = timeout

    def initialize(self) -> None:
        """Summary: Create tables if they do not exist.

        Importance: Ensures the database is ready for sync passes and queries.
        Alternatives: Run migrations using a dedicated migration tool.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS conversations (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    remote_ref TEXT NOT NULL UNIQUE,
                    display_name TEXT NOT NULL,
                    conversation_type TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    last_synced_at TEXT
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS messages (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    conversation_id INTEGER NOT NULL,
                    remote_id TEXT NOT NULL,
                    sender_id TEXT NOT NULL,
                    sender_display_name TEXT,
                    sender_email TEXT,
                    text TEXT NOT NULL,
                    created_at TEXT,
                    UNIQUE(conversation_id, remote_id)
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS attachments (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    conversation_id INTEGER NOT NULL,
                    message_id INTEGER NOT NULL,
                    identity_key TEXT NOT NULL UNIQUE,
                    stable_id TEXT,
                    filename TEXT NOT NULL,
                    content_type TEXT NOT NULL,
                    media_type TEXT NOT NULL,
                    byte_size INTEGER,
                    position INTEGER NOT NULL,
                    download_url TEXT,
                    thumbnail_url TEXT,
                    drive_file_id TEXT,
                    state TEXT NOT NULL,
                    failure_reason TEXT,
                    failure_detail TEXT,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    local_ref TEXT,
                    downloaded_at TEXT,
                    width INTEGER,
                    height INTEGER,
                    duration_seconds REAL
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS attachment_state_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    attachment_id INTEGER NOT NULL,
                    from_state TEXT,
                    to_state TEXT NOT NULL,
                    reason TEXT,
                    changed_at TEXT NOT NULL
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS sender_identities (
                    sender_id TEXT PRIMARY KEY,
                    display_name TEXT NOT NULL,
                    email TEXT NOT NULL,
                    confidence INTEGER NOT NULL,
                    method TEXT NOT NULL,
                    employee_sender_id TEXT,
                    first_seen TEXT NOT NULL,
                    last_seen TEXT NOT NULL,
                    seen_count INTEGER NOT NULL DEFAULT 1
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS participants (
                    conversation_id INTEGER NOT NULL,
                    sender_id TEXT NOT NULL,
                    display_name TEXT NOT NULL,
                    email TEXT NOT NULL,
                    PRIMARY KEY (conversation_id, sender_id)
                )
                """
            )
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_attachments_state ON attachments (state)"
            )
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_participants_sender ON participants (sender_id)"
            )
            self._add_missing_columns(cursor)
            connection.commit()

    # Conversations and messages

    def upsert_conversation(self, conversation: Conversation) -> int:
        """Summary: Create or update a conversation and return its ID.

        Importance: Conversations are created on first sync and refreshed afterwards.
        Alternatives: Create conversations only once and never refresh metadata.
        """

        now = _now()
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                INSERT INTO conversations (remote_ref, display_name, conversation_type, created_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(remote_ref) DO UPDATE SET
                    display_name = excluded.display_name,
                    conversation_type = excluded.conversation_type
                """,
                (
                    conversation.remote_ref,
                    conversation.display_name,
                    conversation.conversation_type,
                    now,
                ),
            )
            cursor.execute(
                "SELECT id FROM conversations WHERE remote_ref = ?", (conversation.remote_ref,)
            )
            row = cursor.fetchone()
            connection.commit()
        return int(row[0])

    def mark_conversation_synced(self, conversation_id: int) -> None:
        with self._connection() as connection:
            connection.execute(
                "UPDATE conversations SET last_synced_at = ? WHERE id = ?",
                (_now(), conversation_id),
            )
            connection.commit()

    def get_conversation(self, remote_ref: str) -> StoredConversation | None:
        """Summary: Retrieve a conversation by remote reference.

        Importance: Resolves caller-facing references to database rows.
        Alternatives: Require callers to pass database IDs.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                SELECT id, remote_ref, display_name, conversation_type, last_synced_at
                FROM conversations
                WHERE remote_ref = ?
                """,
                (remote_ref,),
            )
            row = cursor.fetchone()
        return StoredConversation(*row) if row else None

    def upsert_message(
        self,
        conversation_id: int,
        message: NormalizedMessage,
        identity: SenderIdentity | None = None,
    ) -> tuple[int, bool]:
        """Summary: Insert or update a message keyed by its remote ID.

        Importance: Re-sync must update messages in place and never duplicate them.
        Alternatives: Delete and re-insert the conversation on every sync.
        """

        created_at = message.created_at.isoformat() if message.created_at else None
        display_name = identity.display_name if identity else None
        email = identity.email if identity else None
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                INSERT OR IGNORE INTO messages (
                    conversation_id, remote_id, sender_id, sender_display_name, sender_email,
                    text, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    conversation_id,
                    message.remote_id,
                    message.sender_id,
                    display_name,
                    email,
                    message.text,
                    created_at,
                ),
            )
            created = cursor.rowcount == 1
            if not created:
                cursor.execute(
                    """
                    UPDATE messages
                    SET sender_id = ?,
                        sender_display_name = COALESCE(?, sender_display_name),
                        sender_email = COALESCE(?, sender_email),
                        text = ?,
                        created_at = COALESCE(?, created_at)
                    WHERE conversation_id = ? AND remote_id = ?
                    """,
                    (
                        message.sender_id,
                        display_name,
                        email,
                        message.text,
                        created_at,
                        conversation_id,
                        message.remote_id,
                    ),
                )
            cursor.execute(
                "SELECT id FROM messages WHERE conversation_id = ? AND remote_id = ?",
                (conversation_id, message.remote_id),
            )
            row = cursor.fetchone()
            connection.commit()
        return int(row[0]), created

    def list_messages(self, conversation_id: int) -> list[StoredMessage]:
        """Summary: List messages of a conversation in creation order.

        Importance: Supports review of the mirror and test assertions.
        Alternatives: Stream messages from the remote API directly.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                SELECT id, conversation_id, remote_id, sender_id, sender_display_name,
                       sender_email, text, created_at
                FROM messages
                WHERE conversation_id = ?
                ORDER BY created_at ASC, id ASC
                """,
                (conversation_id,),
            )
            rows = cursor.fetchall()
        return [StoredMessage(*row) for row in rows]

    def list_sender_texts(self, sender_id: str, limit: int = 20) -> list[str]:
        """Summary: Return recent message texts written by a sender.

        Importance: Gives identity heuristics more context than a single message.
        Alternatives: Infer names from the current message only.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                SELECT text FROM messages
                WHERE sender_id = ? AND text != ''
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                (sender_id, limit),
            )
            rows = cursor.fetchall()
        return [row[0] for row in rows]

    # Attachment lifecycle

    def find_attachment(self, identity_key: str) -> StoredAttachment | None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                f"SELECT {_ATTACHMENT_COLUMNS} FROM attachments WHERE identity_key = ?",
                (identity_key,),
            )
            row = cursor.fetchone()
        return StoredAttachment(*row) if row else None

    def get_attachment(self, attachment_id: int) -> StoredAttachment | None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                f"SELECT {_ATTACHMENT_COLUMNS} FROM attachments WHERE id = ?", (attachment_id,)
            )
            row = cursor.fetchone()
        return StoredAttachment(*row) if row else None

    def list_attachments(
        self, conversation_id: int | None = None, state: str | None = None
    ) -> list[StoredAttachment]:
        """Summary: List attachments filtered by conversation and state.

        Importance: Powers retry selection, reporting, and API listings.
        Alternatives: Expose raw SQL to callers.
        """

        clauses: list[str] = []
        params: list[object] = []
        if conversation_id is not None:
            clauses.append("conversation_id = ?")
            params.append(conversation_id)
        if state is not None:
            clauses.append("state = ?")
            params.append(state)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                f"SELECT {_ATTACHMENT_COLUMNS} FROM attachments {where} "
                "ORDER BY message_id ASC, position ASC",
                params,
            )
            rows = cursor.fetchall()
        return [StoredAttachment(*row) for row in rows]

    def register_attachment(
        self,
        conversation_id: int,
        message_id: int,
        identity_key: str,
        attachment: NormalizedAttachment,
    ) -> StoredAttachment:
        """Summary: Insert a newly discovered attachment in its initial state.

        Importance: Attachments without any source become terminal no_source failures at once.
        Alternatives: Insert everything as pending and fail later on download.
        """

        fetchable = attachment.sources.is_fetchable
        state = PENDING if fetchable else FAILED
        reason = None if fetchable else NO_SOURCE
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                INSERT INTO attachments (
                    conversation_id, message_id, identity_key, stable_id, filename, content_type,
                    media_type, byte_size, position, download_url, thumbnail_url, drive_file_id,
                    state, failure_reason
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    conversation_id,
                    message_id,
                    identity_key,
                    attachment.stable_id,
                    attachment.filename,
                    attachment.content_type,
                    attachment.media_type,
                    attachment.byte_size,
                    attachment.position,
                    attachment.sources.download_url,
                    attachment.sources.thumbnail_url,
                    attachment.sources.drive_file_id,
                    state,
                    reason,
                ),
            )
            attachment_id = int(cursor.lastrowid)
            self._record_transition(cursor, attachment_id, None, state, reason)
            connection.commit()
        return self._require_attachment(attachment_id)

    def refresh_attachment(self, attachment_id: int, attachment: NormalizedAttachment) -> None:
        """Summary: Refresh descriptive fields and source references from the remote.

        Importance: Download URLs rotate between syncs and must stay current.
        Alternatives: Keep the URLs captured at first discovery.
        """

        with self._connection() as connection:
            connection.execute(
                """
                UPDATE attachments
                SET filename = ?, content_type = ?, media_type = ?,
                    byte_size = COALESCE(byte_size, ?),
                    download_url = ?, thumbnail_url = ?, drive_file_id = ?
                WHERE id = ?
                """,
                (
                    attachment.filename,
                    attachment.content_type,
                    attachment.media_type,
                    attachment.byte_size,
                    attachment.sources.download_url,
                    attachment.sources.thumbnail_url,
                    attachment.sources.drive_file_id,
                    attachment_id,
                ),
            )
            connection.commit()

    def begin_download(self, attachment_id: int) -> bool:
        """Summary: Move an attachment from pending to downloading.

        Importance: Compare-and-set guarantees a single in-flight download per attachment.
        Alternatives: Rely on in-process locks only.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                UPDATE attachments
                SET state = ?, attempts = attempts + 1
                WHERE id = ? AND state = ?
                """,
                (DOWNLOADING, attachment_id, PENDING),
            )
            if cursor.rowcount != 1:
                connection.rollback()
                return False
            self._record_transition(cursor, attachment_id, PENDING, DOWNLOADING, None)
            connection.commit()
        return True

    def complete_download(self, attachment_id: int, local_ref: str, byte_size: int) -> None:
        """Summary: Mark a download as completed with its storage reference and size.

        Importance: Reference, size, and state change together in one transaction.
        Alternatives: Update the fields one at a time.
        """

        if not local_ref:
            raise ValueError("Completed downloads require a local storage reference")
        if byte_size is None or byte_size < 0:
            raise ValueError("Completed downloads require a known byte size")
        if is_legacy_served_path(local_ref):
            local_ref = bare_filename(local_ref)
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                UPDATE attachments
                SET state = ?, local_ref = ?, byte_size = ?, downloaded_at = ?,
                    failure_reason = NULL, failure_detail = NULL
                WHERE id = ? AND state = ?
                """,
                (COMPLETED, local_ref, byte_size, _now(), attachment_id, DOWNLOADING),
            )
            if cursor.rowcount != 1:
                connection.rollback()
                raise InvalidTransitionError(attachment_id, DOWNLOADING, COMPLETED)
            self._record_transition(cursor, attachment_id, DOWNLOADING, COMPLETED, None)
            connection.commit()

    def fail_download(self, attachment_id: int, reason: str, detail: str | None = None) -> None:
        """Summary: Mark an in-flight download as failed with a reason code.

        Importance: Every failure is recorded with a specific, queryable reason.
        Alternatives: Store free-form error strings only.
        """

        if reason not in DOWNLOAD_FAILURE_REASONS:
            raise ValueError(f"Unknown failure reason: {reason}")
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                UPDATE attachments
                SET state = ?, failure_reason = ?, failure_detail = ?
                WHERE id = ? AND state = ?
                """,
                (FAILED, reason, (detail or "")[:500] or None, attachment_id, DOWNLOADING),
            )
            if cursor.rowcount != 1:
                connection.rollback()
                raise InvalidTransitionError(attachment_id, DOWNLOADING, FAILED)
            self._record_transition(cursor, attachment_id, DOWNLOADING, FAILED, reason)
            connection.commit()

    def release_download(self, attachment_id: int) -> None:
        """Summary: Return an in-flight download to pending without counting a failure.

        Importance: Cancelled work never leaves an attachment stuck in downloading.
        Alternatives: Mark cancelled downloads as failed.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "UPDATE attachments SET state = ? WHERE id = ? AND state = ?",
                (PENDING, attachment_id, DOWNLOADING),
            )
            if cursor.rowcount != 1:
                connection.rollback()
                raise InvalidTransitionError(attachment_id, DOWNLOADING, PENDING)
            self._record_transition(cursor, attachment_id, DOWNLOADING, PENDING, "released")
            connection.commit()

    def requeue_attachment(
        self, attachment_id: int, operator: bool = False, max_auto_retries: int | None = None
    ) -> bool:
        """Summary: Move a failed attachment back to pending.

        Importance: Automatic retries apply to transient failures only, within the cap.
        Alternatives: Retry every failure on every sync.
        """

        attachment = self.get_attachment(attachment_id)
        if attachment is None or attachment.state != FAILED:
            return False
        if not operator:
            if attachment.failure_reason != TRANSIENT:
                return False
            if max_auto_retries is not None and attachment.attempts >= max_auto_retries:
                return False
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                UPDATE attachments
                SET state = ?, failure_reason = NULL, failure_detail = NULL,
                    attempts = CASE WHEN ? THEN 0 ELSE attempts END
                WHERE id = ? AND state = ?
                """,
                (PENDING, 1 if operator else 0, attachment_id, FAILED),
            )
            if cursor.rowcount != 1:
                connection.rollback()
                return False
            self._record_transition(
                cursor,
                attachment_id,
                FAILED,
                PENDING,
                "operator_retry" if operator else "auto_retry",
            )
            connection.commit()
        return True

    def recover_interrupted_downloads(self) -> int:
        """Summary: Fail downloads left in flight by a previous process.

        Importance: A crash must not leave attachments locked in downloading forever.
        Alternatives: Require manual cleanup of stuck rows.
        """

        recovered = 0
        for attachment in self.list_attachments(state=DOWNLOADING):
            try:
                self.fail_download(attachment.id, TRANSIENT, "interrupted download")
            except InvalidTransitionError:
                continue
            recovered += 1
        if recovered:
            logger.warning("Recovered %s interrupted downloads", recovered)
        return recovered

    def migrate_legacy_paths(self) -> int:
        """Summary: Rewrite served-URL storage references to bare filenames.

        Importance: Repairs records written by the legacy media route without touching state.
        Alternatives: Translate URLs at read time forever.
        """

        migrated = 0
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute("SELECT id, local_ref FROM attachments WHERE local_ref IS NOT NULL")
            rows = cursor.fetchall()
            for attachment_id, local_ref in rows:
                if self._rewrite_legacy_path(cursor, attachment_id, local_ref):
                    migrated += 1
            connection.commit()
        if migrated:
            logger.info("Migrated %s legacy storage references", migrated)
        return migrated

    def migrate_legacy_path(self, attachment_id: int) -> bool:
        """Summary: Rewrite one attachment's served-URL reference to a bare filename.

        Importance: Lets a sync pass repair references as it encounters them.
        Alternatives: Wait for the next full migration run.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute("SELECT local_ref FROM attachments WHERE id = ?", (attachment_id,))
            row = cursor.fetchone()
            migrated = bool(row) and self._rewrite_legacy_path(cursor, attachment_id, row[0])
            connection.commit()
        return migrated

    def record_media_metadata(
        self,
        attachment_id: int,
        width: int | None,
        height: int | None,
        duration_seconds: float | None = None,
    ) -> bool:
        """Summary: Store dimensions and duration read from a completed download.

        Importance: Lets clients lay out media without opening the files.
        Alternatives: Read the files on every request.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                UPDATE attachments SET width = ?, height = ?, duration_seconds = ?
                WHERE id = ? AND state = ?
                """,
                (width, height, duration_seconds, attachment_id, COMPLETED),
            )
            updated = cursor.rowcount == 1
            connection.commit()
        return updated

    def media_statistics(self, conversation_id: int | None = None) -> list[MediaStatistic]:
        """Summary: Count attachments and sum their sizes per media type and state.

        Importance: Backs the storage report without touching the media directory.
        Alternatives: Aggregate in Python over list_attachments.
        """

        where = "WHERE conversation_id = ?" if conversation_id is not None else ""
        params = (conversation_id,) if conversation_id is not None else ()
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                f"""
                SELECT media_type, state, COUNT(*), COALESCE(SUM(byte_size), 0)
                FROM attachments {where}
                GROUP BY media_type, state
                ORDER BY media_type, state
                """,
                params,
            )
            rows = cursor.fetchall()
        return [MediaStatistic(*row) for row in rows]

    def attachment_history(self, attachment_id: int) -> list[StateChange]:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                SELECT attachment_id, from_state, to_state, reason, changed_at
                FROM attachment_state_history
                WHERE attachment_id = ?
                ORDER BY id ASC
                """,
                (attachment_id,),
            )
            rows = cursor.fetchall()
        return [StateChange(*row) for row in rows]

    # Identities and participants

    def get_identity(self, sender_id: str) -> SenderIdentity | None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                f"SELECT {_IDENTITY_COLUMNS} FROM sender_identities WHERE sender_id = ?",
                (sender_id,),
            )
            row = cursor.fetchone()
        return SenderIdentity(*row) if row else None

    def list_identities(self, max_confidence: int | None = None) -> list[SenderIdentity]:
        """Summary: List sender identities, optionally below a confidence ceiling.

        Importance: Supports review of weak resolutions before manual mapping.
        Alternatives: Inspect the database by hand.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            if max_confidence is None:
                cursor.execute(
                    f"SELECT {_IDENTITY_COLUMNS} FROM sender_identities ORDER BY display_name"
                )
            else:
                cursor.execute(
                    f"""
                    SELECT {_IDENTITY_COLUMNS} FROM sender_identities
                    WHERE confidence <= ?
                    ORDER BY confidence ASC, display_name
                    """,
                    (max_confidence,),
                )
            rows = cursor.fetchall()
        return [SenderIdentity(*row) for row in rows]

    def find_employees(self, min_confidence: int) -> list[SenderIdentity]:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                f"""
                SELECT {_IDENTITY_COLUMNS} FROM sender_identities
                WHERE confidence >= ? AND method IN ('directory', 'manual')
                ORDER BY display_name
                """,
                (min_confidence,),
            )
            rows = cursor.fetchall()
        return [SenderIdentity(*row) for row in rows]

    def save_identity(self, identity: SenderIdentity, propagate: bool = False) -> int:
        """Summary: Upsert a sender identity, optionally propagating it to cached copies.

        Importance: With propagation every participant and message copy changes in one transaction.
        Alternatives: Update cached copies lazily on next sync.
        """

        now = _now()
        affected = 0
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                INSERT INTO sender_identities (
                    sender_id, display_name, email, confidence, method, employee_sender_id,
                    first_seen, last_seen
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(sender_id) DO UPDATE SET
                    display_name = excluded.display_name,
                    email = excluded.email,
                    confidence = excluded.confidence,
                    method = excluded.method,
                    employee_sender_id = excluded.employee_sender_id,
                    last_seen = excluded.last_seen
                """,
                (
                    identity.sender_id,
                    identity.display_name,
                    identity.email,
                    identity.confidence,
                    identity.method,
                    identity.employee_sender_id,
                    now,
                    now,
                ),
            )
            if propagate:
                cursor.execute(
                    "UPDATE participants SET display_name = ?, email = ? WHERE sender_id = ?",
                    (identity.display_name, identity.email, identity.sender_id),
                )
                affected = cursor.rowcount
                cursor.execute(
                    """
                    UPDATE messages SET sender_display_name = ?, sender_email = ?
                    WHERE sender_id = ?
                    """,
                    (identity.display_name, identity.email, identity.sender_id),
                )
            connection.commit()
        return affected

    def touch_identity(self, sender_id: str) -> None:
        with self._connection() as connection:
            connection.execute(
                """
                UPDATE sender_identities SET seen_count = seen_count + 1, last_seen = ?
                WHERE sender_id = ?
                """,
                (_now(), sender_id),
            )
            connection.commit()

    def upsert_participant(self, conversation_id: int, identity: SenderIdentity) -> None:
        """Summary: Cache a sender's identity as a conversation participant.

        Importance: Keeps participant lists current after every sync.
        Alternatives: Derive participants from messages on read.
        """

        with self._connection() as connection:
            connection.execute(
                """
                INSERT INTO participants (conversation_id, sender_id, display_name, email)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(conversation_id, sender_id) DO UPDATE SET
                    display_name = excluded.display_name,
                    email = excluded.email
                """,
                (conversation_id, identity.sender_id, identity.display_name, identity.email),
            )
            connection.commit()

    def list_participants(self, conversation_id: int | None = None) -> list[StoredParticipant]:
        with self._connection() as connection:
            cursor = connection.cursor()
            if conversation_id is None:
                cursor.execute(
                    """
                    SELECT conversation_id, sender_id, display_name, email
                    FROM participants ORDER BY conversation_id, display_name
                    """
                )
            else:
                cursor.execute(
                    """
                    SELECT conversation_id, sender_id, display_name, email
                    FROM participants WHERE conversation_id = ? ORDER BY display_name
                    """,
                    (conversation_id,),
                )
            rows = cursor.fetchall()
        return [StoredParticipant(*row) for row in rows]

    def _add_missing_columns(self, cursor: sqlite3.Cursor) -> None:
        cursor.execute("PRAGMA table_info(attachments)")
        present = {row[1] for row in cursor.fetchall()}
        for name, column_type in _MEDIA_METADATA_COLUMNS:
            if name not in present:
                cursor.execute(f"ALTER TABLE attachments ADD COLUMN {name} {column_type}")
                logger.info("Added attachments.%s column", name)

    def _record_transition(
        self,
        cursor: sqlite3.Cursor,
        attachment_id: int,
        from_state: str | None,
        to_state: str,
        reason: str | None,
    ) -> None:
        cursor.execute(
            """
            INSERT INTO attachment_state_history (
                attachment_id, from_state, to_state, reason, changed_at
            ) VALUES (?, ?, ?, ?, ?)
            """,
            (attachment_id, from_state, to_state, reason, _now()),
        )

    def _rewrite_legacy_path(
        self, cursor: sqlite3.Cursor, attachment_id: int, local_ref: str | None
    ) -> bool:
        if not is_legacy_served_path(local_ref):
            return False
        cursor.execute(
            "UPDATE attachments SET local_ref = ? WHERE id = ?",
            (bare_filename(local_ref), attachment_id),
        )
        return True

    def _require_attachment(self, attachment_id: int) -> StoredAttachment:
        attachment = self.get_attachment(attachment_id)
        if attachment is None:
            raise ValueError(f"Attachment not found: {attachment_id}")
        return attachment

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        """Summary: Context manager for SQLite connections.

        Importance: One short-lived connection per operation keeps worker threads independent.
        Alternatives: Keep a single long-lived connection behind a lock.
        """

        connection = sqlite3.connect(self._db_path, timeout=self._timeout)
        try:
            yield connection
        finally:
            connection.close()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()
