"""Summary: Application factory wiring core services.

Importance: Centralizes dependency creation for the CLI and API layers.
Alternatives: Instantiate services manually in each entrypoint.
"""

from __future__ import annotations

from dataclasses import dataclass

from chatmirror.config import AppConfig
from chatmirror.credentials import CredentialProvider, StaticCredentialProvider
from chatmirror.dedup import DeduplicationIndex
from chatmirror.downloads import DownloadPipeline
from chatmirror.identity import IdentityResolver
from chatmirror.media import LocalMediaWriter, MediaWriter
from chatmirror.remote import GoogleChatClient, RemoteChatClient
from chatmirror.services import SyncService
from chatmirror.storage.sqlite_store import SqliteStore


@dataclass(frozen=True)
class AppServices:
    """Summary: Bundle of core services for ChatMirror.

    Importance: Simplifies passing dependencies to CLI or API layers.
    Alternatives: Use a dependency injection container.
    """

    sync: SyncService
    store: SqliteStore
    config: AppConfig


def build_client(config: AppConfig) -> RemoteChatClient:
    return GoogleChatClient(
        access_token=config.access_token,
        base_url=config.api_base_url,
        drive_base_url=config.drive_base_url,
        timeout=config.request_timeout_seconds,
    )


def build_services(
    config: AppConfig,
    client: RemoteChatClient | None = None,
    writer: MediaWriter | None = None,
    credentials: CredentialProvider | None = None,
) -> AppServices:
    """Summary: Build core services from configuration.

    Importance: Provides a single construction path; collaborators can be swapped for tests.
    Alternatives: Instantiate services directly within the CLI entrypoint.
    """

    store = SqliteStore(config.db_path)
    store.initialize()
    store.recover_interrupted_downloads()
    client = client or build_client(config)
    writer = writer or LocalMediaWriter(config.media_dir)
    credentials = credentials or StaticCredentialProvider(config.access_token)
    pipeline = DownloadPipeline(
        store=store,
        client=client,
        writer=writer,
        workers=config.download_workers,
        max_attempts=config.download_max_attempts,
        backoff_seconds=config.download_backoff_seconds,
        backoff_max_seconds=config.download_backoff_max_seconds,
    )
    resolver = IdentityResolver(
        store=store,
        client=client,
        fallback_domain=config.fallback_domain,
        employee_threshold=config.identity_threshold,
    )
    sync = SyncService(
        store=store,
        client=client,
        credentials=credentials,
        pipeline=pipeline,
        resolver=resolver,
        dedup=DeduplicationIndex(store=store, max_auto_retries=config.max_auto_retries),
        writer=writer,
        page_limit=config.page_limit,
        identity_threshold=config.identity_threshold,
        max_auto_retries=config.max_auto_retries,
        conversation_workers=config.conversation_workers,
    )
    return AppServices(sync=sync, store=store, config=config)
