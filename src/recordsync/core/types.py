"""Shared types for recordsync.

This module defines enums used by the sync core and the CLI.
"""

from __future__ import annotations

from enum import Enum


class UploadStatus(str, Enum):
    """Lifecycle state of one upload task.

    Transitions are strictly forward:
    idle -> compressing -> uploading -> completed, with failed reachable
    from compressing or uploading.
    """

    IDLE = "idle"
    COMPRESSING = "compressing"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Check if no further transition is possible."""
        return self in (UploadStatus.COMPLETED, UploadStatus.FAILED)


class FeedStatus(str, Enum):
    """Connection status signal of a feed subscription."""

    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"
    CHANNEL_ERROR = "channel_error"
    TIMED_OUT = "timed_out"
    CLOSED = "closed"


class TodoFilter(str, Enum):
    """Visibility filter of the todo list."""

    ALL = "all"
    ACTIVE = "active"
    COMPLETED = "completed"
