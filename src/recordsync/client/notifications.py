"""User-visible notices.

This module provides:
- Notification, NotificationType: A notice to show the user
- Notifier: Dispatches notices to registered handlers (CLI output, desktop)
- send_desktop_notification: Native notification on macOS and Linux
- Factory helpers for the notices emitted by the upload pipeline
"""

from __future__ import annotations

import logging
import platform
import subprocess
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum, auto

logger = logging.getLogger(__name__)

APP_NAME = "recordsync"


class NotificationType(Enum):
    """Type of notification."""

    INFO = auto()
    SUCCESS = auto()
    WARNING = auto()
    ERROR = auto()


@dataclass(frozen=True)
class Notification:
    """Represents a notification to display."""

    title: str
    message: str
    type: NotificationType = NotificationType.INFO


NotificationHandler = Callable[[Notification], None]

_LOG_LEVELS = {
    NotificationType.INFO: logging.INFO,
    NotificationType.SUCCESS: logging.INFO,
    NotificationType.WARNING: logging.WARNING,
    NotificationType.ERROR: logging.WARNING,
}


class Notifier:
    """Fan-out of notices to handlers.

    Every notice is logged; handlers decide how to show it. A failing
    handler is logged and skipped.
    """

    def __init__(self, handlers: list[NotificationHandler] | None = None) -> None:
        self._handlers: list[NotificationHandler] = list(handlers or [])

    def add_handler(self, handler: NotificationHandler) -> None:
        self._handlers.append(handler)

    def notify(self, notification: Notification) -> None:
        """Show a notice."""
        logger.log(
            _LOG_LEVELS[notification.type],
            "%s: %s",
            notification.title,
            notification.message,
        )
        for handler in list(self._handlers):
            try:
                handler(notification)
            except Exception:
                logger.exception("Notification handler failed")


def send_desktop_notification(notification: Notification) -> bool:
    """Send a native desktop notification.

    Uses osascript on macOS and notify-send on Linux.

    Returns:
        True if notification was sent, False if failed or unavailable.
    """
    system = platform.system()
    try:
        if system == "Darwin":
            title = notification.title.replace('"', '\\"')
            message = notification.message.replace('"', '\\"')
            subprocess.run(
                ["osascript", "-e", f'display notification "{message}" with title "{title}"'],
                capture_output=True,
                check=True,
            )
            return True
        if system == "Linux":
            urgency = "critical" if notification.type == NotificationType.ERROR else "normal"
            subprocess.run(
                [
                    "notify-send",
                    "--urgency", urgency,
                    "--app-name", APP_NAME,
                    notification.title,
                    notification.message,
                ],
                capture_output=True,
                check=True,
            )
            return True
    except FileNotFoundError:
        logger.debug("No desktop notifier found")
        return False
    except subprocess.CalledProcessError as e:
        logger.debug(f"Desktop notification failed: {e}")
        return False

    logger.debug(f"Desktop notifications not supported on {system}")
    return False


def no_images_selected() -> Notification:
    return Notification(
        title="Upload",
        message="Please upload image files",
        type=NotificationType.ERROR,
    )


def file_rejected(name: str) -> Notification:
    return Notification(
        title="Upload",
        message=f"'{name}' is not an image and was skipped",
        type=NotificationType.WARNING,
    )


def upload_succeeded(name: str) -> Notification:
    return Notification(
        title="Upload complete",
        message=f"Image uploaded: {name}",
        type=NotificationType.SUCCESS,
    )


def upload_failed(name: str, error: str) -> Notification:
    return Notification(
        title="Upload failed",
        message=f"{name}: {error}",
        type=NotificationType.ERROR,
    )
