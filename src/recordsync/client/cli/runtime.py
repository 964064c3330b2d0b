"""Shared runtime for CLI commands.

This module provides:
- Clients: Gateway, attachment store and feed of one invocation
- open_clients: Creates the clients and closes them on exit
- run_async: Runs a coroutine and turns known errors into CLI errors
- setup_logging: Routes recordsync logs to stderr
"""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import AsyncIterator, Coroutine
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, TypeVar

import click
import httpx

from recordsync.client.api import APIError, NoPrincipalError, RecordGateway
from recordsync.client.cli.config import Settings
from recordsync.client.storage import AttachmentStore
from recordsync.client.sync.feed import ChangeFeed
from recordsync.client.sync.types import SyncError

T = TypeVar("T")


@dataclass
class Clients:
    """Collaborators shared by the stores of one invocation."""

    gateway: RecordGateway
    attachments: AttachmentStore
    feed: ChangeFeed


@asynccontextmanager
async def open_clients(settings: Settings) -> AsyncIterator[Clients]:
    """Create the backend clients and close them on exit."""
    gateway = RecordGateway(settings.backend)
    attachments = AttachmentStore(settings.backend, settings.store.bucket)
    feed = ChangeFeed(settings.backend)
    try:
        yield Clients(gateway=gateway, attachments=attachments, feed=feed)
    finally:
        await feed.close()
        await attachments.aclose()
        await gateway.aclose()


def run_async(coro: Coroutine[Any, Any, T]) -> T:
    """Run a command coroutine, exiting with status 1 on known errors."""
    try:
        return asyncio.run(coro)
    except NoPrincipalError:
        click.echo("Error: Not signed in. Run 'recordsync configure' with a valid access token.", err=True)
        sys.exit(1)
    except (APIError, SyncError, TimeoutError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    except httpx.ConnectError as e:
        click.echo(f"Error: Could not connect to backend: {e}", err=True)
        sys.exit(1)
    except httpx.RequestError as e:
        click.echo(f"Error: Request failed: {e}", err=True)
        sys.exit(1)


def setup_logging(verbose: bool) -> None:
    """Send recordsync logs to stderr (DEBUG if verbose, else WARNING)."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))

    app_logger = logging.getLogger("recordsync")
    for existing in app_logger.handlers[:]:
        app_logger.removeHandler(existing)
    app_logger.addHandler(handler)
    app_logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    # Prevent propagation to root logger
    app_logger.propagate = False
