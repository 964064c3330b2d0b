"""Shared configuration classes for recordsync.

This module defines configuration classes used by the gateways, the change
feed and the record store.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class BackendConfig:
    """Configuration for connecting to the hosted backend.

    Used by the HTTP gateways (RecordGateway, AttachmentStore) and the
    websocket feed (ChangeFeed) to ensure consistent connection settings.

    Attributes:
        url: Base URL of the backend project (e.g., "https://abc.supabase.co").
        api_key: Public project key sent as the ``apikey`` header.
        access_token: Bearer token of the signed-in user.
        timeout: Request/connection timeout in seconds.
        verify_ssl: Whether to verify SSL certificates (default True).
    """

    url: str
    api_key: str
    access_token: str
    timeout: float = 30.0
    verify_ssl: bool = True

    def __post_init__(self) -> None:
        """Normalize backend URL."""
        self.url = self.url.rstrip("/")

    @property
    def rest_url(self) -> str:
        """Base URL of the row API."""
        return f"{self.url}/rest/v1"

    @property
    def storage_url(self) -> str:
        """Base URL of the object storage API."""
        return f"{self.url}/storage/v1"

    @property
    def auth_url(self) -> str:
        """Base URL of the auth API."""
        return f"{self.url}/auth/v1"

    @property
    def realtime_url(self) -> str:
        """Get websocket URL of the realtime endpoint.

        Returns:
            Websocket URL with the project key in the query string.
        """
        url = self.url
        if url.startswith("https://"):
            url = "wss://" + url[8:]
        elif url.startswith("http://"):
            url = "ws://" + url[7:]
        return f"{url}/realtime/v1/websocket?apikey={self.api_key}&vsn=1.0.0"

    @property
    def is_secure(self) -> bool:
        """Check if using HTTPS/WSS."""
        return self.url.startswith("https://")

    def headers(self) -> dict[str, str]:
        """Headers shared by every HTTP request."""
        return {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.access_token}",
        }


@dataclass
class StoreConfig:
    """Tuning knobs for the record store and the upload pipeline.

    Attributes:
        max_retries: Retries after a timed-out gateway call.
        operation_timeout: Seconds before a gateway call is abandoned.
        retry_interval: Fixed delay between timed-out attempts.
        bucket: Storage bucket holding attachments.
        max_size_mb: Target size of a compressed image.
        max_dimension: Longest side of a compressed image in pixels.
        completed_removal_delay: Seconds a completed upload stays visible.
    """

    max_retries: int = 1
    operation_timeout: float = 3.0
    retry_interval: float = 0.0
    bucket: str = "todo-bucket"
    max_size_mb: float = 1.0
    max_dimension: int = 1920
    completed_removal_delay: float = 2.0
