"""Record synchronization and uploads.

Architecture:
    Intents ─► RecordStore ─► run_with_timeout ─► RecordGateway / AttachmentStore
                   ▲
    ChangeFeed ────┘ (FeedSubscription drained by RecordStore.session())

Components:
- **RecordStore**: Ordered local view merged from load, local intents and feed
- **view**: Pure id-keyed merge rules over immutable tuples
- **ChangeFeed**: Realtime websocket client, one subscription per table/filter
- **UploadManager**: Per-file compress/upload/persist state machine
- **ImageCompressor**: Pillow compression run off the event loop
- **run_with_timeout**: Timeout-bounded retry of async operations
"""

from recordsync.client.sync.compression import (
    CompressionOptions,
    ImageCompressor,
    compress_image,
)
from recordsync.client.sync.feed import ChangeFeed, FeedSubscription
from recordsync.client.sync.retry import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_RETRY_INTERVAL,
    DEFAULT_TIMEOUT,
    OperationTimeoutError,
    run_with_timeout,
)
from recordsync.client.sync.store import RecordStore, ViewStats
from recordsync.client.sync.types import (
    ChangeEvent,
    ChangeKind,
    CompressedImage,
    CompressionError,
    RecordNotFoundError,
    SourceFile,
    StoreError,
    SyncError,
    UploadError,
    UploadTask,
    compression_ratio,
)
from recordsync.client.sync.upload import UploadManager, format_file_size

__all__ = [
    # Store
    "RecordStore",
    "ViewStats",
    # Feed
    "ChangeFeed",
    "FeedSubscription",
    # Uploads
    "CompressionOptions",
    "ImageCompressor",
    "UploadManager",
    "compress_image",
    "format_file_size",
    # Retry
    "DEFAULT_MAX_RETRIES",
    "DEFAULT_RETRY_INTERVAL",
    "DEFAULT_TIMEOUT",
    "OperationTimeoutError",
    "run_with_timeout",
    # Types
    "ChangeEvent",
    "ChangeKind",
    "CompressedImage",
    "CompressionError",
    "RecordNotFoundError",
    "SourceFile",
    "StoreError",
    "SyncError",
    "UploadError",
    "UploadTask",
    "compression_ratio",
]
