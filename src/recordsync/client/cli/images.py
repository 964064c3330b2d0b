"""Image commands for the recordsync CLI.

Commands:
- images list: Show uploaded images
- images delete: Delete an image record and its blob
- images upload: Compress and upload image files
"""

from __future__ import annotations

import sys
from pathlib import Path

import click

from recordsync.client.api import IMAGES, ImageRecord
from recordsync.client.cli.config import require_settings
from recordsync.client.cli.runtime import open_clients, run_async
from recordsync.client.notifications import Notifier, send_desktop_notification
from recordsync.client.sync.store import RecordStore
from recordsync.client.sync.types import SourceFile, UploadTask
from recordsync.client.sync.upload import UploadManager, format_file_size
from recordsync.core.types import UploadStatus


def format_image(image: ImageRecord) -> str:
    sizes = f"{format_file_size(image.original_size)} -> {format_file_size(image.compressed_size)}"
    return f"{image.name}  {sizes}  ({image.id})\n    {image.url}"


def format_task(task: UploadTask) -> str:
    """Describe the state of one upload."""
    name = task.source.name
    if task.status == UploadStatus.COMPRESSING:
        return f"{name}: compressing ({format_file_size(task.original_size)})"
    if task.status == UploadStatus.UPLOADING:
        return (
            f"{name}: uploading {format_file_size(task.compressed_size or 0)} "
            f"({task.compression_ratio}% smaller)"
        )
    if task.status == UploadStatus.COMPLETED:
        return f"{name}: completed"
    if task.status == UploadStatus.FAILED:
        return f"{name}: failed: {task.error}"
    return f"{name}: waiting"


@click.group()
def images() -> None:
    """Manage uploaded images."""


@images.command("list")
@click.pass_context
def list_images(ctx: click.Context) -> None:
    """List uploaded images, newest first."""
    settings = require_settings(ctx)

    async def _run() -> tuple[ImageRecord, ...]:
        async with open_clients(settings) as clients:
            store = RecordStore(IMAGES, clients.gateway, config=settings.store)
            return await store.load()

    records = run_async(_run())
    if not records:
        click.echo("No images uploaded yet")
        return
    for image in records:
        click.echo(format_image(image))
    click.echo(f"{len(records)} images")


@images.command("delete")
@click.argument("image_id")
@click.pass_context
def delete_image(ctx: click.Context, image_id: str) -> None:
    """Delete an image record and its stored blob."""
    settings = require_settings(ctx)

    async def _run() -> None:
        async with open_clients(settings) as clients:
            store = RecordStore(
                IMAGES, clients.gateway, clients.attachments, config=settings.store
            )
            await store.load()
            await store.delete(image_id)

    run_async(_run())
    click.echo(f"Deleted {image_id}")


@images.command("upload")
@click.argument(
    "files",
    nargs=-1,
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
@click.option(
    "--max-size-mb",
    type=float,
    default=None,
    help="Target size of each compressed image (default: 1.0).",
)
@click.option(
    "--max-dimension",
    type=int,
    default=None,
    help="Longest side of each compressed image in pixels (default: 1920).",
)
@click.option("--notify", is_flag=True, help="Show desktop notifications.")
@click.pass_context
def upload_images(
    ctx: click.Context,
    files: tuple[Path, ...],
    max_size_mb: float | None,
    max_dimension: int | None,
    notify: bool,
) -> None:
    """Compress and upload image files.

    Non-image files are skipped. Each image is compressed to fit the
    target size before it is stored.
    """
    settings = require_settings(ctx)
    if max_size_mb is not None:
        settings.store.max_size_mb = max_size_mb
    if max_dimension is not None:
        settings.store.max_dimension = max_dimension

    notifier = Notifier()
    notifier.add_handler(lambda n: click.echo(f"{n.title}: {n.message}", err=True))
    if notify:
        notifier.add_handler(send_desktop_notification)

    sources = [SourceFile.from_path(path) for path in files]

    async def _run() -> list[UploadTask]:
        async with open_clients(settings) as clients:
            store = RecordStore(IMAGES, clients.gateway, config=settings.store)
            manager = UploadManager(
                store, clients.attachments, config=settings.store, notifier=notifier
            )
            seen: dict[str, UploadStatus] = {}
            finished: dict[str, UploadTask] = {}

            def report(tasks: tuple[UploadTask, ...]) -> None:
                for task in tasks:
                    if seen.get(task.task_id) != task.status:
                        seen[task.task_id] = task.status
                        click.echo(format_task(task))
                    if task.status.is_terminal:
                        finished[task.task_id] = task

            manager.subscribe(report)
            manager.accept(sources)
            await manager.wait_idle()
            return list(finished.values())

    results = run_async(_run())
    completed = [t for t in results if t.status == UploadStatus.COMPLETED]
    failed = [t for t in results if t.status == UploadStatus.FAILED]

    click.echo(f"\nUploaded {len(completed)} of {len(sources)} files")
    for task in completed:
        click.echo(
            f"  {task.source.name}: {format_file_size(task.original_size)} -> "
            f"{format_file_size(task.compressed_size or 0)}"
        )
    if failed or not completed:
        sys.exit(1)
