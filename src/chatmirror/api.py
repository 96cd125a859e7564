"""Summary: FastAPI application for ChatMirror.

Importance: Exposes HTTP endpoints to trigger syncs and maintenance from other systems.
Alternatives: Use a CLI-only workflow or a different web framework.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException
from pydantic import BaseModel, Field

from chatmirror.app import build_services
from chatmirror.config import AppConfig
from chatmirror.credentials import CredentialProvider
from chatmirror.errors import ChatMirrorError, NotFoundError, UnauthorizedError
from chatmirror.media import MediaWriter
from chatmirror.models import LIFECYCLE_STATES
from chatmirror.remote import RemoteChatClient
from chatmirror.storage.sqlite_store import StoredAttachment


class SyncRequest(BaseModel):
    """Summary: Request payload for syncing one conversation.

    Importance: Keeps sync inputs explicit for API clients.
    Alternatives: Use query parameters instead of JSON payloads.
    """

    conversation_ref: str = Field(min_length=1)


class BatchSyncRequest(BaseModel):
    """Summary: Request payload for syncing several conversations.

    Importance: Omitting references syncs every visible conversation.
    Alternatives: Require clients to loop over single syncs.
    """

    conversation_refs: list[str] | None = None


class RetryRequest(BaseModel):
    """Summary: Request payload for operator download retries."""

    conversation_ref: str | None = None
    attachment_id: int | None = None


class RevertRequest(BaseModel):
    """Summary: Request payload for identity reverts.

    Importance: Supports bulk reverts after a bad mapping run.
    Alternatives: Revert one identity per request.
    """

    sender_ids: list[str] = Field(min_length=1)


class MapIdentityRequest(BaseModel):
    """Summary: Request payload for manual identity mapping."""

    sender_id: str = Field(min_length=1)
    display_name: str = Field(min_length=1)
    email: str = Field(min_length=3)


def _attachment_payload(attachment: StoredAttachment) -> dict[str, Any]:
    return {
        "id": attachment.id,
        "filename": attachment.filename,
        "content_type": attachment.content_type,
        "media_type": attachment.media_type,
        "byte_size": attachment.byte_size,
        "position": attachment.position,
        "state": attachment.state,
        "failure_reason": attachment.failure_reason,
        "attempts": attachment.attempts,
        "local_ref": attachment.local_ref,
        "downloaded_at": attachment.downloaded_at,
        "width": attachment.width,
        "height": attachment.height,
        "duration_seconds": attachment.duration_seconds,
    }


def _http_error(exc: ChatMirrorError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, UnauthorizedError):
        return HTTPException(status_code=502, detail=f"Remote credential rejected: {exc}")
    return HTTPException(status_code=502, detail=str(exc))


def create_app(
    config: AppConfig,
    client: RemoteChatClient | None = None,
    writer: MediaWriter | None = None,
    credentials: CredentialProvider | None = None,
) -> FastAPI:
    """Summary: Create a FastAPI app wired to ChatMirror services.

    Importance: Ensures the API layer shares the same configuration and storage.
    Alternatives: Instantiate services globally outside the factory.
    """

    if not logging.getLogger().handlers:
        logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    app = FastAPI(title="ChatMirror API", version="0.1.0")
    services = build_services(config, client=client, writer=writer, credentials=credentials)

    def require_api_key(x_api_key: str | None = Header(default=None)) -> None:
        """Summary: Enforce API key authentication when configured.

        Importance: Adds a minimal security layer for local and private deployments.
        Alternatives: Use OAuth or session-based authentication.
        """

        if not config.api_key:
            return
        if x_api_key != config.api_key:
            raise HTTPException(status_code=401, detail="Invalid API key")

    @app.get("/health")
    def health() -> dict[str, str]:
        """Summary: Health check endpoint.

        Importance: Supports uptime checks in local and cloud deployments.
        Alternatives: Use a metrics endpoint only.
        """

        return {"status": "ok"}

    @app.post("/sync", dependencies=[Depends(require_api_key)])
    def sync(payload: SyncRequest) -> dict[str, Any]:
        """Summary: Sync one conversation and return the summary.

        Importance: Lets schedulers and webhooks trigger incremental syncs.
        Alternatives: Run syncs only from cron via the CLI.
        """

        try:
            summary = services.sync.run_sync(payload.conversation_ref)
        except ChatMirrorError as exc:
            raise _http_error(exc) from exc
        return summary.as_dict()

    @app.post("/sync/batch", dependencies=[Depends(require_api_key)])
    def sync_batch(payload: BatchSyncRequest) -> list[dict[str, Any]]:
        try:
            results = services.sync.run_batch(payload.conversation_refs)
        except ChatMirrorError as exc:
            raise _http_error(exc) from exc
        return [
            {
                "conversation_ref": result.conversation_ref,
                "summary": result.summary.as_dict() if result.summary else None,
                "error": result.error,
                "cancelled": result.cancelled,
            }
            for result in results
        ]

    @app.post("/downloads/retry", dependencies=[Depends(require_api_key)])
    def retry_downloads(payload: RetryRequest) -> dict[str, Any]:
        """Summary: Retry failed downloads on operator request.

        Importance: Recovers downloads after credentials or sources are fixed.
        Alternatives: Wait for the next sync to retry transient failures.
        """

        try:
            summary = services.sync.retry_failed_downloads(
                payload.conversation_ref, payload.attachment_id
            )
        except ValueError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except ChatMirrorError as exc:
            raise _http_error(exc) from exc
        return summary.as_dict()

    @app.post("/identities/revert", dependencies=[Depends(require_api_key)])
    def revert_identities(payload: RevertRequest) -> dict[str, Any]:
        return {"reverted": services.sync.revert_identities(payload.sender_ids)}

    @app.post("/identities/map", dependencies=[Depends(require_api_key)])
    def map_identity(payload: MapIdentityRequest) -> dict[str, Any]:
        """Summary: Manually map a sender to a person.

        Importance: Corrects identities the resolver could not determine.
        Alternatives: Edit the database directly.
        """

        try:
            affected = services.sync.map_identity(
                payload.sender_id, payload.display_name, payload.email
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"sender_id": payload.sender_id, "participants_updated": affected}

    @app.post("/maintenance/migrate-paths", dependencies=[Depends(require_api_key)])
    def migrate_paths() -> dict[str, int]:
        return {"migrated": services.sync.migrate_legacy_paths()}

    @app.post("/maintenance/remove-empty-media", dependencies=[Depends(require_api_key)])
    def remove_empty_media() -> dict[str, list[str]]:
        return {"removed": services.sync.remove_empty_media()}

    @app.get("/media/statistics", dependencies=[Depends(require_api_key)])
    def media_statistics(conversation_ref: str | None = None) -> list[dict[str, Any]]:
        """Summary: Report attachment counts and stored bytes per media type and state.

        Importance: Gives dashboards a storage overview without reading the media directory.
        Alternatives: Compute totals client-side from attachment listings.
        """

        try:
            statistics = services.sync.media_statistics(conversation_ref)
        except ValueError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return [
            {
                "media_type": item.media_type,
                "state": item.state,
                "file_count": item.file_count,
                "total_bytes": item.total_bytes,
            }
            for item in statistics
        ]

    @app.get(
        "/conversations/{conversation_ref:path}/attachments",
        dependencies=[Depends(require_api_key)],
    )
    def list_attachments(conversation_ref: str, state: str | None = None) -> list[dict[str, Any]]:
        """Summary: List attachments of a conversation.

        Importance: Lets clients render media and spot failed downloads.
        Alternatives: Expose the SQLite file directly.
        """

        if state is not None and state not in LIFECYCLE_STATES:
            raise HTTPException(status_code=400, detail=f"Unknown state: {state}")
        try:
            attachments = services.sync.list_attachments(conversation_ref, state)
        except ValueError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return [_attachment_payload(attachment) for attachment in attachments]

    @app.get("/identities", dependencies=[Depends(require_api_key)])
    def list_identities(max_confidence: int | None = None) -> list[dict[str, Any]]:
        return [
            {
                "sender_id": identity.sender_id,
                "display_name": identity.display_name,
                "email": identity.email,
                "confidence": identity.confidence,
                "method": identity.method,
                "employee_sender_id": identity.employee_sender_id,
            }
            for identity in services.sync.list_identities(max_confidence)
        ]

    return app


app = create_app(AppConfig.from_env())
