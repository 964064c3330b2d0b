"""Shared types and dataclasses for sync operations.

This module provides:
- SyncError, StoreError, RecordNotFoundError, UploadError, CompressionError:
  Exception classes
- ChangeKind, ChangeEvent: Feed event types
- SourceFile, CompressedImage, UploadTask: Upload pipeline types
- Type aliases for listeners
"""

from __future__ import annotations

import mimetypes
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from recordsync.core.types import UploadStatus

if TYPE_CHECKING:
    from recordsync.client.api import ImageRecord, Record


class SyncError(Exception):
    """Base exception for sync errors."""


class StoreError(SyncError):
    """A record store operation could not be performed."""


class RecordNotFoundError(StoreError):
    """The record is not in the local view."""


class UploadError(SyncError):
    """Failed to upload an attachment."""


class CompressionError(SyncError):
    """Failed to compress an image."""


# =============================================================================
# Feed Types
# =============================================================================


class ChangeKind(str, Enum):
    """Kind of a remote row change."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass(frozen=True)
class ChangeEvent:
    """A remote change delivered by the feed.

    Attributes:
        kind: Insert, update or delete.
        record_id: Id of the changed record (the merge key).
        record: Full record for inserts/updates. For deletes it is only
            present when the backend sent the complete old row.
    """

    kind: ChangeKind
    record_id: str
    record: Record | None = None

    @classmethod
    def insert(cls, record: Record) -> ChangeEvent:
        return cls(ChangeKind.INSERT, record.id, record)

    @classmethod
    def update(cls, record: Record) -> ChangeEvent:
        return cls(ChangeKind.UPDATE, record.id, record)

    @classmethod
    def delete(cls, record_id: str) -> ChangeEvent:
        return cls(ChangeKind.DELETE, record_id)

    def __repr__(self) -> str:
        """Human-readable representation."""
        return f"ChangeEvent({self.kind.value}, id={self.record_id!r})"


# =============================================================================
# Upload Types
# =============================================================================


@dataclass(frozen=True)
class SourceFile:
    """A file selected by the user for upload.

    Attributes:
        name: Original file name.
        data: File content.
        media_type: MIME type (e.g., "image/png").
    """

    name: str
    data: bytes = field(repr=False)
    media_type: str = "application/octet-stream"

    @property
    def size(self) -> int:
        """Size in bytes."""
        return len(self.data)

    @property
    def is_image(self) -> bool:
        """Check if the media type is image-like."""
        return self.media_type.startswith("image/")

    @classmethod
    def from_path(cls, path: Path) -> SourceFile:
        """Read a file from disk, guessing its media type from the name."""
        media_type, _ = mimetypes.guess_type(path.name)
        return cls(
            name=path.name,
            data=path.read_bytes(),
            media_type=media_type or "application/octet-stream",
        )


@dataclass(frozen=True)
class CompressedImage:
    """Result of the compression pipeline."""

    data: bytes = field(repr=False)
    media_type: str
    original_size: int
    width: int = 0
    height: int = 0

    @property
    def size(self) -> int:
        """Compressed size in bytes."""
        return len(self.data)


def compression_ratio(original_size: int, compressed_size: int) -> int:
    """Percentage saved by compression, rounded to an integer."""
    if original_size <= 0:
        return 0
    return round((1 - compressed_size / original_size) * 100)


@dataclass(frozen=True)
class UploadTask:
    """One pending attachment and its pipeline state.

    Tasks are immutable; every transition produces a new value.

    Attributes:
        task_id: Unique identifier of the task.
        source: The file being uploaded.
        status: Current pipeline state.
        progress: Upload progress 0-100.
        compressed_size: Size after compression (None until compressed).
        compression_ratio: Percentage saved (None until compressed).
        error: Error message, present iff status is FAILED.
        storage_key: Key of the written blob (None until written).
        record: Persisted image record once completed.
    """

    source: SourceFile
    task_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: UploadStatus = UploadStatus.IDLE
    progress: int = 0
    compressed_size: int | None = None
    compression_ratio: int | None = None
    error: str | None = None
    storage_key: str | None = None
    record: ImageRecord | None = None

    @property
    def original_size(self) -> int:
        return self.source.size

    def advance(self, status: UploadStatus, **changes: object) -> UploadTask:
        """Move to a later state.

        Raises:
            UploadError: If the transition would go backwards or leave a
                terminal state.
        """
        if not _is_forward(self.status, status):
            raise UploadError(
                f"Invalid transition {self.status.value} -> {status.value}"
            )
        return replace(self, status=status, **changes)  # type: ignore[arg-type]

    def fail(self, error: str) -> UploadTask:
        """Move to FAILED with an error message."""
        return self.advance(UploadStatus.FAILED, error=error)


_ORDER = {
    UploadStatus.IDLE: 0,
    UploadStatus.COMPRESSING: 1,
    UploadStatus.UPLOADING: 2,
    UploadStatus.COMPLETED: 3,
}


def _is_forward(current: UploadStatus, target: UploadStatus) -> bool:
    if current.is_terminal:
        return False
    if target == UploadStatus.FAILED:
        return current in (UploadStatus.COMPRESSING, UploadStatus.UPLOADING)
    if target == current:
        return True
    return _ORDER[target] == _ORDER[current] + 1


# Type aliases for listeners
ViewListener = Callable[[tuple["Record", ...]], None]
TaskListener = Callable[[tuple[UploadTask, ...]], None]
