"""Command-line interface for recordsync.

This module provides the main CLI entry point and assembles all commands.

Commands:
- configure: Store backend URL, API key and access token
- todos: List, add, toggle, delete and watch todos
- images: List, delete and upload images
"""

from __future__ import annotations

import click

from recordsync.client.cli.config import (
    get_config_dir,
    get_config_file,
    load_config,
    save_access_token,
    save_config,
)
from recordsync.client.cli.images import images
from recordsync.client.cli.runtime import setup_logging
from recordsync.client.cli.todos import todos


@click.group()
@click.version_option(package_name="recordsync")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.option("--url", envvar="RECORDSYNC_URL", default=None, help="Backend URL.")
@click.option("--api-key", envvar="RECORDSYNC_API_KEY", default=None, help="Backend API key.")
@click.option(
    "--access-token",
    envvar="RECORDSYNC_ACCESS_TOKEN",
    default=None,
    help="Access token of the signed-in user.",
)
@click.option("--bucket", default=None, help="Storage bucket for attachments.")
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    url: str | None,
    api_key: str | None,
    access_token: str | None,
    bucket: str | None,
) -> None:
    """recordsync - Synchronized todo list and image uploads."""
    setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj.update(url=url, api_key=api_key, access_token=access_token, bucket=bucket)


@cli.command()
@click.option("--url", "backend_url", default=None, help="Backend URL (e.g., https://xyz.supabase.co).")
@click.option("--api-key", "backend_key", default=None, help="Public API key of the backend.")
@click.option("--access-token", "token", default=None, help="Access token of the user.")
@click.option("--bucket", "bucket_name", default=None, help="Storage bucket for attachments.")
def configure(
    backend_url: str | None,
    backend_key: str | None,
    token: str | None,
    bucket_name: str | None,
) -> None:
    """Store the backend connection settings.

    The URL, API key and bucket go to the config file; the access token
    goes to the OS keyring when one is available.
    """
    config = load_config()

    if backend_url is None:
        backend_url = click.prompt("Backend URL", default=config.get("url"))
    if backend_key is None:
        backend_key = click.prompt("API key", default=config.get("api_key"))
    if token is None:
        token = click.prompt("Access token", hide_input=True)
    if bucket_name is None:
        bucket_name = click.prompt("Bucket", default=config.get("bucket", "todo-bucket"))

    config["url"] = str(backend_url).rstrip("/")
    config["api_key"] = str(backend_key)
    config["bucket"] = str(bucket_name)
    save_config(config)

    if save_access_token(str(token)):
        click.echo("Access token stored in keyring.")
    else:
        click.echo(f"Warning: No keyring available, access token stored in {get_config_file()}")

    click.echo(f"\nConfiguration saved to {get_config_dir()}")


cli.add_command(todos)
cli.add_command(images)


def main() -> None:
    """Entry point for the CLI."""
    cli()


__all__ = [
    "cli",
    "main",
]
