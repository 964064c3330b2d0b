"""Configuration utilities for the recordsync CLI.

This module provides shared configuration functions used across CLI commands:
- JSON config file in ~/.recordsync (backend URL, API key, bucket)
- Access token in the OS keyring, with a config-file fallback
- Resolution of command-line/environment overrides into BackendConfig
"""

from __future__ import annotations

import json
import logging
import sys
from dataclasses import dataclass
from pathlib import Path

import click
import keyring
from keyring.errors import KeyringError

from recordsync.core.config import BackendConfig, StoreConfig

logger = logging.getLogger(__name__)

KEYRING_SERVICE = "recordsync"
KEYRING_USER = "access_token"


def get_config_dir() -> Path:
    """Get the configuration directory for recordsync.

    Returns:
        Path to ~/.recordsync or equivalent.
    """
    return Path.home() / ".recordsync"


def get_config_file() -> Path:
    """Get the path to the config file."""
    return get_config_dir() / "config.json"


def load_config() -> dict[str, str]:
    """Load configuration from config file."""
    config_file = get_config_file()
    if config_file.exists():
        return dict(json.loads(config_file.read_text()))
    return {}


def save_config(config: dict[str, str]) -> None:
    """Save configuration to config file."""
    config_file = get_config_file()
    config_file.parent.mkdir(parents=True, exist_ok=True)
    config_file.write_text(json.dumps(config, indent=2))


def save_access_token(token: str) -> bool:
    """Store the access token in the OS keyring.

    Falls back to the config file when no keyring backend is available.

    Returns:
        True if the keyring was used.
    """
    try:
        keyring.set_password(KEYRING_SERVICE, KEYRING_USER, token)
    except KeyringError as e:
        logger.debug(f"Keyring unavailable, storing token in config file: {e}")
        config = load_config()
        config["access_token"] = token
        save_config(config)
        return False

    config = load_config()
    if config.pop("access_token", None) is not None:
        save_config(config)
    return True


def load_access_token() -> str | None:
    """Get the stored access token (keyring first, then config file)."""
    try:
        token = keyring.get_password(KEYRING_SERVICE, KEYRING_USER)
    except KeyringError as e:
        logger.debug(f"Keyring unavailable: {e}")
        token = None
    return token or load_config().get("access_token")


@dataclass
class Settings:
    """Resolved settings of one CLI invocation."""

    backend: BackendConfig
    store: StoreConfig


def resolve_settings(
    url: str | None = None,
    api_key: str | None = None,
    access_token: str | None = None,
    bucket: str | None = None,
) -> Settings | None:
    """Merge overrides with the stored configuration.

    Args:
        url: Backend URL override.
        api_key: API key override.
        access_token: Access token override.
        bucket: Storage bucket override.

    Returns:
        Settings, or None if URL, key or token is missing.
    """
    config = load_config()
    url = url or config.get("url")
    api_key = api_key or config.get("api_key")
    access_token = access_token or load_access_token()
    if not url or not api_key or not access_token:
        return None

    store = StoreConfig()
    store.bucket = bucket or config.get("bucket") or store.bucket
    return Settings(
        backend=BackendConfig(url=url, api_key=api_key, access_token=access_token),
        store=store,
    )


def require_settings(ctx: click.Context) -> Settings:
    """Get settings for a command, exiting if not configured."""
    obj = ctx.find_root().obj or {}
    settings = resolve_settings(
        url=obj.get("url"),
        api_key=obj.get("api_key"),
        access_token=obj.get("access_token"),
        bucket=obj.get("bucket"),
    )
    if settings is None:
        click.echo("Error: Not configured. Run 'recordsync configure' first.", err=True)
        sys.exit(1)
    return settings
