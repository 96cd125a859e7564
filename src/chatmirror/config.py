"""Summary: Application configuration for ChatMirror.

Importance: Centralizes environment, .env, and config defaults for consistent behavior.
Alternatives: Use a dedicated settings library like Pydantic Settings.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from dataclasses import dataclass


@dataclass(frozen=True)
class AppConfig:
    """Summary: Holds configuration values for the remote API, storage, and sync tuning.

    Importance: Ensures all services derive settings from a single source of truth.
    Alternatives: Store settings in a shared config file and parse at startup.
    """

    db_path: str
    media_dir: str
    api_base_url: str
    drive_base_url: str
    access_token: str
    fallback_domain: str
    download_workers: int
    conversation_workers: int
    download_max_attempts: int
    download_backoff_seconds: float
    download_backoff_max_seconds: float
    max_auto_retries: int
    request_timeout_seconds: float
    identity_threshold: int
    page_limit: int
    api_host: str
    api_port: int
    api_key: str

    @staticmethod
    def from_env() -> "AppConfig":
        """Summary: Build configuration from defaults, .env, and environment.

        Importance: Keeps all variables defined in config defaults while allowing overrides.
        Alternatives: Parse only environment variables without a defaults file.
        """

        defaults = load_defaults(Path("config") / "defaults.json")
        load_dotenv(Path(".env"))
        return AppConfig(
            db_path=os.getenv("CHATMIRROR_DB_PATH", defaults["db_path"]),
            media_dir=os.getenv("CHATMIRROR_MEDIA_DIR", defaults["media_dir"]),
            api_base_url=os.getenv("CHATMIRROR_API_BASE_URL", defaults["api_base_url"]),
            drive_base_url=os.getenv("CHATMIRROR_DRIVE_BASE_URL", defaults["drive_base_url"]),
            access_token=os.getenv("CHATMIRROR_ACCESS_TOKEN", defaults["access_token"]),
            fallback_domain=os.getenv("CHATMIRROR_FALLBACK_DOMAIN", defaults["fallback_domain"]),
            download_workers=int(
                os.getenv("CHATMIRROR_DOWNLOAD_WORKERS", defaults["download_workers"])
            ),
            conversation_workers=int(
                os.getenv("CHATMIRROR_CONVERSATION_WORKERS", defaults["conversation_workers"])
            ),
            download_max_attempts=int(
                os.getenv("CHATMIRROR_DOWNLOAD_MAX_ATTEMPTS", defaults["download_max_attempts"])
            ),
            download_backoff_seconds=float(
                os.getenv(
                    "CHATMIRROR_DOWNLOAD_BACKOFF_SECONDS", defaults["download_backoff_seconds"]
                )
            ),
            download_backoff_max_seconds=float(
                os.getenv(
                    "CHATMIRROR_DOWNLOAD_BACKOFF_MAX_SECONDS",
                    defaults["download_backoff_max_seconds"],
                )
            ),
            max_auto_retries=int(
                os.getenv("CHATMIRROR_MAX_AUTO_RETRIES", defaults["max_auto_retries"])
            ),
            request_timeout_seconds=float(
                os.getenv(
                    "CHATMIRROR_REQUEST_TIMEOUT_SECONDS", defaults["request_timeout_seconds"]
                )
            ),
            identity_threshold=int(
                os.getenv("CHATMIRROR_IDENTITY_THRESHOLD", defaults["identity_threshold"])
            ),
            page_limit=int(os.getenv("CHATMIRROR_PAGE_LIMIT", defaults["page_limit"])),
            api_host=os.getenv("CHATMIRROR_API_HOST", defaults["api_host"]),
            api_port=int(os.getenv("CHATMIRROR_API_PORT", defaults["api_port"])),
            api_key=os.getenv("CHATMIRROR_API_KEY", defaults["api_key"]),
        )


def load_defaults(path: Path) -> dict[str, str]:
    """Summary: Load configuration defaults from JSON.

    Importance: Ensures all variables exist in a single config file.
    Alternatives: Inline defaults in the AppConfig initializer.
    """

    if not path.exists():
        raise FileNotFoundError(f"Defaults file not found: {path}")
    return json.loads(path.read_text(encoding="utf-8"))


def load_dotenv(path: Path) -> None:
    """Summary: Load key-value pairs from a .env file into the environment.

    Importance: Keeps secrets out of code while supporting local workflows.
    Alternatives: Use python-dotenv or OS-specific secret stores.
    """

    if not path.exists():
        return
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        os.environ.setdefault(key.strip(), value.strip())
