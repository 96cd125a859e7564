"""Summary: Command-line interface for ChatMirror.

Importance: Provides a local entry point for sync and maintenance workflows.
Alternatives: Trigger every workflow through the HTTP API.
"""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path

import uvicorn

from chatmirror.app import build_services
from chatmirror.config import AppConfig
from chatmirror.credentials import StaticCredentialProvider
from chatmirror.remote import FixtureChatClient


def build_parser() -> argparse.ArgumentParser:
    """Summary: Build the CLI argument parser.

    Importance: Defines supported commands for local operation.
    Alternatives: Use a CLI framework like Typer or Click.
    """

    parser = argparse.ArgumentParser(description="ChatMirror CLI")
    parser.add_argument(
        "--fixture", type=str, default=None, help="Read conversations from a JSON fixture"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    sync = subparsers.add_parser("sync", help="Sync one conversation")
    sync.add_argument("conversation_ref", type=str)

    sync_all = subparsers.add_parser("sync-all", help="Sync several or all conversations")
    sync_all.add_argument("conversation_refs", nargs="*", type=str)

    retry = subparsers.add_parser("retry-downloads", help="Retry failed downloads")
    retry.add_argument("--conversation", type=str, default=None)
    retry.add_argument("--attachment-id", type=int, default=None)

    revert = subparsers.add_parser("revert-identity", help="Reset identities to neutral")
    revert.add_argument("sender_ids", nargs="+", type=str)

    map_identity = subparsers.add_parser("map-identity", help="Manually map a sender")
    map_identity.add_argument("sender_id", type=str)
    map_identity.add_argument("display_name", type=str)
    map_identity.add_argument("email", type=str)

    subparsers.add_parser("migrate-paths", help="Rewrite legacy storage references")
    subparsers.add_parser("clean-media", help="Delete zero-byte media files")

    media_stats = subparsers.add_parser("media-stats", help="Summarize attachments by media type")
    media_stats.add_argument("conversation_ref", nargs="?", default=None, type=str)

    list_attachments = subparsers.add_parser("list-attachments", help="List attachments")
    list_attachments.add_argument("conversation_ref", type=str)
    list_attachments.add_argument("--state", type=str, default=None)

    list_identities = subparsers.add_parser("list-identities", help="List sender identities")
    list_identities.add_argument("--max-confidence", type=int, default=None)

    subparsers.add_parser("serve", help="Run the HTTP API")

    return parser


def run_cli(argv: list[str] | None = None) -> None:
    """Summary: Execute the ChatMirror CLI.

    Importance: Drives sync and maintenance without an HTTP server.
    Alternatives: Invoke services via the HTTP API.
    """

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    parser = build_parser()
    args = parser.parse_args(argv)
    config = AppConfig.from_env()

    if args.command == "serve":
        uvicorn.run("chatmirror.api:app", host=config.api_host, port=config.api_port)
        return

    if args.fixture:
        services = build_services(
            config,
            client=FixtureChatClient.from_path(Path(args.fixture)),
            credentials=StaticCredentialProvider(config.access_token or "fixture"),
        )
    else:
        services = build_services(config)

    if args.command == "sync":
        summary = services.sync.run_sync(args.conversation_ref)
        print(json.dumps(summary.as_dict(), indent=2))
        return

    if args.command == "sync-all":
        results = services.sync.run_batch(args.conversation_refs or None)
        for result in results:
            if result.error:
                print(f"{result.conversation_ref}: failed ({result.error})")
            elif result.summary is None:
                print(f"{result.conversation_ref}: cancelled")
            else:
                summary = result.summary
                print(
                    f"{result.conversation_ref}: {summary.messages_seen} messages, "
                    f"{summary.downloads_completed} downloads, "
                    f"{summary.downloads_failed} failed"
                )
        return

    if args.command == "retry-downloads":
        summary = services.sync.retry_failed_downloads(args.conversation, args.attachment_id)
        print(
            f"Retried downloads: {summary.downloads_completed} completed, "
            f"{summary.downloads_failed} failed."
        )
        return

    if args.command == "revert-identity":
        for sender_id, affected in services.sync.revert_identities(args.sender_ids).items():
            print(f"Reverted {sender_id} ({affected} participants updated).")
        return

    if args.command == "map-identity":
        affected = services.sync.map_identity(args.sender_id, args.display_name, args.email)
        print(f"Mapped {args.sender_id} to {args.email} ({affected} participants updated).")
        return

    if args.command == "migrate-paths":
        migrated = services.sync.migrate_legacy_paths()
        print(f"Migrated {migrated} legacy paths.")
        return

    if args.command == "clean-media":
        removed = services.sync.remove_empty_media()
        print(f"Removed {len(removed)} empty media files.")
        return

    if args.command == "media-stats":
        for item in services.sync.media_statistics(args.conversation_ref):
            print(
                f"{item.media_type} {item.state}: {item.file_count} files, "
                f"{item.total_bytes} bytes"
            )
        return

    if args.command == "list-attachments":
        for attachment in services.sync.list_attachments(args.conversation_ref, args.state):
            reason = f" ({attachment.failure_reason})" if attachment.failure_reason else ""
            print(
                f"{attachment.id}: {attachment.filename} [{attachment.state}{reason}] "
                f"{attachment.local_ref or '-'}"
            )
        return

    if args.command == "list-identities":
        for identity in services.sync.list_identities(args.max_confidence):
            print(
                f"{identity.sender_id}: {identity.display_name} <{identity.email}> "
                f"{identity.confidence} {identity.method}"
            )
        return


if __name__ == "__main__":
    run_cli()
