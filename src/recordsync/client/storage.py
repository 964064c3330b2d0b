"""Attachment storage client.

This module provides:
- AttachmentStore: put/public_url/remove for blobs in one bucket
- storage_key: Collision-resistant key for a new blob
- key_from_url: Recover a storage key from its public URL
"""

from __future__ import annotations

import logging
import time
import uuid
from urllib.parse import unquote, urlparse

import httpx

from recordsync.client.api import APIError, _error_payload
from recordsync.core.config import BackendConfig

logger = logging.getLogger(__name__)


class StorageError(APIError):
    """A storage request failed."""


def storage_key(name: str, now: float | None = None, token: str | None = None) -> str:
    """Build a storage key: millisecond timestamp, random token, file name.

    The token keeps files with the same name in one batch apart.
    """
    millis = int((time.time() if now is None else now) * 1000)
    token = token or uuid.uuid4().hex[:8]
    return f"{millis}-{token}-{name.replace('/', '_')}"


def key_from_url(url: str) -> str | None:
    """Get the storage key of a public attachment URL.

    Keys may contain folders (``<owner>/<file>``). For URLs not shaped like
    AttachmentStore.public_url(), the last path segment is taken.

    Args:
        url: Public URL as returned by AttachmentStore.public_url().

    Returns:
        The key, or None if the URL has no path segment.
    """
    path = unquote(urlparse(url).path)
    _, marker, rest = path.partition("/object/public/")
    if marker:
        _bucket, _, key = rest.partition("/")
        return key.strip("/") or None
    segment = path.rstrip("/").rsplit("/", 1)[-1]
    return segment or None


class AttachmentStore:
    """Blob storage client bound to a single bucket."""

    def __init__(
        self,
        config: BackendConfig,
        bucket: str,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the attachment store.

        Args:
            config: Backend configuration with URL, key and token.
            bucket: Bucket holding the attachments.
            client: Optional preconfigured client (mainly for tests).
        """
        self._config = config
        self._bucket = bucket
        self._client = client or httpx.AsyncClient(
            timeout=config.timeout,
            headers=config.headers(),
            verify=config.verify_ssl,
        )

    @property
    def bucket(self) -> str:
        """Bucket name."""
        return self._bucket

    async def aclose(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> AttachmentStore:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

    def _handle_response(self, response: httpx.Response) -> httpx.Response:
        if response.status_code >= 400:
            payload = _error_payload(response)
            message = str(payload.get("message") or payload.get("error") or "Storage error")
            raise StorageError(message, response.status_code)
        return response

    async def put(
        self,
        key: str,
        data: bytes,
        content_type: str = "application/octet-stream",
    ) -> None:
        """Upload a blob. Existing keys are never overwritten.

        Args:
            key: Storage key.
            data: Blob content.
            content_type: Media type stored with the blob.

        Raises:
            StorageError: If the upload was rejected.
        """
        self._handle_response(
            await self._client.post(
                f"{self._config.storage_url}/object/{self._bucket}/{key}",
                content=data,
                headers={
                    "Content-Type": content_type,
                    "cache-control": "max-age=3600",
                    "x-upsert": "false",
                },
            )
        )
        logger.debug("Stored %s (%d bytes)", key, len(data))

    def public_url(self, key: str) -> str:
        """Get the public URL of a blob (no request is made)."""
        return f"{self._config.storage_url}/object/public/{self._bucket}/{key}"

    async def remove(self, keys: list[str]) -> None:
        """Delete blobs by key.

        Raises:
            StorageError: If the request was rejected.
        """
        self._handle_response(
            await self._client.request(
                "DELETE",
                f"{self._config.storage_url}/object/{self._bucket}",
                json={"prefixes": keys},
            )
        )
        logger.debug("Removed %s", ", ".join(keys))
