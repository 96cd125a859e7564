"""Summary: Tests for configuration loading.

Importance: Ensures defaults, .env, and environment overrides behave correctly.
Alternatives: Validate configuration manually during runtime.
"""

from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from chatmirror.config import AppConfig, load_defaults, load_dotenv


_DEFAULTS = {
    "db_path": "test.db",
    "media_dir": "media",
    "api_base_url": "https://chat.googleapis.com/v1",
    "drive_base_url": "https://www.googleapis.com/drive/v3",
    "access_token": "",
    "fallback_domain": "chatmirror.local",
    "download_workers": "4",
    "conversation_workers": "2",
    "download_max_attempts": "3",
    "download_backoff_seconds": "1.0",
    "download_backoff_max_seconds": "10.0",
    "max_auto_retries": "3",
    "request_timeout_seconds": "30",
    "identity_threshold": "90",
    "page_limit": "50",
    "api_host": "127.0.0.1",
    "api_port": "8000",
    "api_key": "",
}


def _write_defaults(root: Path) -> None:
    (root / "config").mkdir()
    (root / "config" / "defaults.json").write_text(json.dumps(_DEFAULTS), encoding="utf-8")


def test_load_defaults_reads_json(tmp_path: Path) -> None:
    """Summary: Verify defaults are parsed from JSON.

    Importance: Confirms config file is the source of truth for variables.
    Alternatives: Hardcode defaults in the test.
    """

    defaults_path = tmp_path / "defaults.json"
    defaults_path.write_text("{\"db_path\": \"test.db\"}", encoding="utf-8")
    defaults = load_defaults(defaults_path)
    assert defaults["db_path"] == "test.db"


def test_load_defaults_requires_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_defaults(tmp_path / "missing.json")


def test_load_dotenv_sets_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Summary: Ensure .env values populate environment variables.

    Importance: Validates local secret loading without external tools.
    Alternatives: Assume OS environment is always set.
    """

    env_path = tmp_path / ".env"
    env_path.write_text("# token\nCHATMIRROR_ACCESS_TOKEN=abc\n", encoding="utf-8")
    monkeypatch.delenv("CHATMIRROR_ACCESS_TOKEN", raising=False)
    load_dotenv(env_path)
    assert os.getenv("CHATMIRROR_ACCESS_TOKEN") == "abc"


def test_app_config_uses_defaults(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Summary: Verify AppConfig honors defaults when env is absent.

    Importance: Confirms config file remains the baseline for variables.
    Alternatives: Inline defaults directly in the AppConfig class.
    """

    _write_defaults(tmp_path)
    monkeypatch.chdir(tmp_path)
    for key in _DEFAULTS:
        monkeypatch.delenv(f"CHATMIRROR_{key.upper()}", raising=False)
    config = AppConfig.from_env()
    assert config.db_path == "test.db"
    assert config.download_workers == 4
    assert config.download_backoff_seconds == 1.0
    assert config.identity_threshold == 90
    assert config.api_port == 8000
    assert config.access_token == ""


def test_app_config_env_overrides(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _write_defaults(tmp_path)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("CHATMIRROR_DOWNLOAD_WORKERS", "8")
    monkeypatch.setenv("CHATMIRROR_FALLBACK_DOMAIN", "partners.example")
    monkeypatch.setenv("CHATMIRROR_MAX_AUTO_RETRIES", "5")
    config = AppConfig.from_env()
    assert config.download_workers == 8
    assert config.fallback_domain == "partners.example"
    assert config.max_auto_retries == 5
