"""Core module - Shared configuration and enums."""

from recordsync.core.config import BackendConfig, StoreConfig
from recordsync.core.types import FeedStatus, TodoFilter, UploadStatus

__all__ = [
    # Config
    "BackendConfig",
    "StoreConfig",
    # Types
    "FeedStatus",
    "TodoFilter",
    "UploadStatus",
]
