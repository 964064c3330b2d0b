"""Image upload pipeline.

This module provides:
- UploadManager: Accepts files and drives each through
  idle -> compressing -> uploading -> completed (or failed)
- format_file_size: Human-readable sizes for display

Each accepted file runs its own pipeline task; there is no concurrency
limit and tasks never share state. Uploading is three steps that must all
succeed: write the blob, resolve its public URL, persist the image record.
A failed blob write never reaches the record; a failed record after a
written blob leaves the blob in storage (logged, not cleaned up).
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import TYPE_CHECKING, TypeVar

from recordsync.client.notifications import (
    Notifier,
    file_rejected,
    no_images_selected,
    upload_failed,
    upload_succeeded,
)
from recordsync.client.storage import storage_key
from recordsync.client.sync.compression import CompressionOptions, ImageCompressor
from recordsync.client.sync.retry import run_with_timeout
from recordsync.client.sync.types import (
    SourceFile,
    TaskListener,
    UploadError,
    UploadTask,
    compression_ratio,
)
from recordsync.core.config import StoreConfig
from recordsync.core.types import UploadStatus

if TYPE_CHECKING:
    from recordsync.client.api import ImageRecord
    from recordsync.client.storage import AttachmentStore
    from recordsync.client.sync.store import RecordStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


def format_file_size(size: int) -> str:
    """Format a byte count as B, KB or MB."""
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.2f} KB"
    return f"{size / (1024 * 1024):.2f} MB"


def _error_message(error: BaseException) -> str:
    return str(error) or error.__class__.__name__ or "Unknown error"


class UploadManager:
    """Owns the visible upload queue and the pipeline of every task.

    Usage:
        manager = UploadManager(image_store, attachments)
        manager.subscribe(render)
        manager.accept([SourceFile.from_path(p) for p in paths])
        await manager.wait_idle()
    """

    def __init__(
        self,
        image_store: RecordStore[ImageRecord],
        attachments: AttachmentStore,
        compressor: ImageCompressor | None = None,
        config: StoreConfig | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        """Initialize the upload manager.

        Args:
            image_store: Store the finished image records are added to.
            attachments: Blob store for the compressed images.
            compressor: Compression pipeline (Pillow-based by default).
            config: Size targets, retry and removal delay settings.
            notifier: Receives user-visible notices.
        """
        self._image_store = image_store
        self._attachments = attachments
        self._compressor = compressor or ImageCompressor()
        self._config = config or StoreConfig()
        self._notifier = notifier or Notifier()

        self._tasks: tuple[UploadTask, ...] = ()
        self._listeners: list[TaskListener] = []
        self._running: set[asyncio.Task[None]] = set()

    @property
    def options(self) -> CompressionOptions:
        return CompressionOptions(
            max_size_mb=self._config.max_size_mb,
            max_dimension=self._config.max_dimension,
        )

    # === Reactive surface ===

    def get_tasks(self) -> tuple[UploadTask, ...]:
        """Current upload queue, in acceptance order."""
        return self._tasks

    def find(self, task_id: str) -> UploadTask | None:
        for task in self._tasks:
            if task.task_id == task_id:
                return task
        return None

    def subscribe(self, listener: TaskListener) -> Callable[[], None]:
        """Register a listener called with every new queue snapshot."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, tasks: tuple[UploadTask, ...]) -> None:
        self._tasks = tasks
        for listener in list(self._listeners):
            try:
                listener(tasks)
            except Exception:
                logger.exception("Upload listener failed")

    def _set(self, task: UploadTask) -> UploadTask:
        tasks = tuple(task if t.task_id == task.task_id else t for t in self._tasks)
        self._publish(tasks)
        return task

    def _remove(self, task_id: str) -> None:
        tasks = tuple(t for t in self._tasks if t.task_id != task_id)
        if len(tasks) != len(self._tasks):
            self._publish(tasks)

    # === Intake ===

    def accept(self, files: Iterable[SourceFile]) -> list[UploadTask]:
        """Queue image files and start their pipelines.

        Non-image files are rejected with a notice and never queued.
        Must be called from a running event loop.

        Returns:
            The new tasks, in the order given.
        """
        accepted: list[UploadTask] = []
        for source in files:
            if source.is_image:
                accepted.append(UploadTask(source=source))
            else:
                logger.info("Rejected non-image file %s (%s)", source.name, source.media_type)
                self._notifier.notify(file_rejected(source.name))

        if not accepted:
            self._notifier.notify(no_images_selected())
            return []

        self._publish(self._tasks + tuple(accepted))
        for task in accepted:
            self._start(task)
        return accepted

    def dismiss(self, task_id: str) -> bool:
        """Remove a failed task from the queue.

        Returns:
            True if a failed task was removed.
        """
        task = self.find(task_id)
        if task is None or task.status != UploadStatus.FAILED:
            return False
        self._remove(task_id)
        return True

    def retry(self, task_id: str) -> UploadTask:
        """Replace a failed task by a fresh one for the same file.

        Raises:
            UploadError: If the task does not exist or has not failed.
        """
        task = self.find(task_id)
        if task is None or task.status != UploadStatus.FAILED:
            raise UploadError(f"No failed upload {task_id}")

        fresh = UploadTask(source=task.source)
        self._publish(tuple(fresh if t.task_id == task_id else t for t in self._tasks))
        self._start(fresh)
        return fresh

    async def wait_idle(self) -> None:
        """Wait until every running pipeline has finished."""
        while self._running:
            await asyncio.gather(*list(self._running), return_exceptions=True)

    # === Pipeline ===

    def _start(self, task: UploadTask) -> None:
        runner = asyncio.create_task(self._run(task), name=f"upload-{task.source.name}")
        self._running.add(runner)
        runner.add_done_callback(self._running.discard)

    async def _call(self, operation: Callable[[], Awaitable[T]]) -> T:
        return await run_with_timeout(
            operation,
            max_retries=self._config.max_retries,
            timeout=self._config.operation_timeout,
            retry_interval=self._config.retry_interval,
        )

    def _fail(self, task: UploadTask, error: BaseException) -> UploadTask:
        message = _error_message(error)
        logger.error(f"Error uploading {task.source.name}: {message}")
        task = self._set(task.fail(message))
        self._notifier.notify(upload_failed(task.source.name, message))
        return task

    async def _run(self, task: UploadTask) -> None:
        source = task.source
        task = self._set(task.advance(UploadStatus.COMPRESSING))

        try:
            compressed = await self._compressor.compress(source.data, self.options)
        except Exception as e:
            self._fail(task, e)
            return

        task = self._set(
            task.advance(
                UploadStatus.UPLOADING,
                compressed_size=compressed.size,
                compression_ratio=compression_ratio(source.size, compressed.size),
            )
        )
        logger.info(
            "Compressed %s: %s -> %s",
            source.name, format_file_size(source.size), format_file_size(compressed.size),
        )

        key = storage_key(source.name)
        attachments = self._attachments
        try:
            await self._call(lambda: attachments.put(key, compressed.data, compressed.media_type))
        except Exception as e:
            self._fail(task, e)
            return
        task = self._set(task.advance(UploadStatus.UPLOADING, progress=100, storage_key=key))

        try:
            url = attachments.public_url(key)
            record = await self._image_store.add(
                name=source.name,
                original_size=source.size,
                compressed_size=compressed.size,
                url=url,
            )
        except Exception as e:
            logger.warning(f"Blob {key} is orphaned: image record was not saved")
            self._fail(task, e)
            return

        task = self._set(task.advance(UploadStatus.COMPLETED, record=record))
        self._notifier.notify(upload_succeeded(source.name))

        loop = asyncio.get_running_loop()
        loop.call_later(self._config.completed_removal_delay, self._remove, task.task_id)
