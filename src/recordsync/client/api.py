"""HTTP gateway for the hosted row API.

This module provides:
- Todo, ImageRecord: Immutable records parsed from backend rows
- Collection: Binds a table to its record type and owner column
- RecordGateway: Async HTTP client for create/read/update/delete
- Principal resolution (current_user)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, fields, replace
from datetime import UTC, datetime
from typing import Any, ClassVar, Generic, TypeVar

import httpx

from recordsync.core.config import BackendConfig

logger = logging.getLogger(__name__)

# Postgres unique_violation
UNIQUE_VIOLATION = "23505"


class APIError(Exception):
    """Base exception for API errors."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class AuthenticationError(APIError):
    """Authentication failed."""


class NotFoundError(APIError):
    """Resource not found."""


class DuplicateRecordError(APIError):
    """A record with the same unique values already exists."""


class NoPrincipalError(APIError):
    """No signed-in user could be resolved."""


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO timestamp; values without an offset are taken as UTC."""
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


@dataclass(frozen=True)
class Principal:
    """The authenticated user whose records are visible."""

    id: str
    email: str | None = None


@dataclass(frozen=True)
class Record:
    """Base class of every synchronized record.

    Identity (``id``), owner and ``created_at`` are assigned by the server
    and never change. Subclasses list the remaining columns in
    ``MUTABLE_FIELDS``.
    """

    MUTABLE_FIELDS: ClassVar[tuple[str, ...]] = ()

    id: str
    owner_id: str
    created_at: datetime

    @property
    def attachment_url(self) -> str | None:
        """URL of the blob owned by this record, if any."""
        return None

    def owns_attachment(self, key: str) -> bool:
        """Check if deleting this record may delete the blob at ``key``."""
        return True

    def with_fields(self, other: Record) -> Record:
        """Copy ``other``'s mutable fields onto this record (last write wins)."""
        changes = {name: getattr(other, name) for name in self.MUTABLE_FIELDS}
        return replace(self, **changes)

    def with_changes(self, **changes: Any) -> Record:
        """Return a copy with some mutable fields replaced."""
        unknown = set(changes) - set(self.MUTABLE_FIELDS)
        if unknown:
            raise ValueError(f"Not mutable: {', '.join(sorted(unknown))}")
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a plain dictionary (timestamps as ISO strings)."""
        data: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            data[f.name] = value.isoformat() if isinstance(value, datetime) else value
        return data


@dataclass(frozen=True)
class Todo(Record):
    """A todo item."""

    MUTABLE_FIELDS: ClassVar[tuple[str, ...]] = ("text", "completed", "image_url")

    text: str = ""
    completed: bool = False
    image_url: str | None = None

    @property
    def attachment_url(self) -> str | None:
        return self.image_url

    def owns_attachment(self, key: str) -> bool:
        # Todo images live in the owner's folder; anything else is shared
        return key.startswith(f"{self.owner_id}/")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Todo:
        """Create from API response dictionary."""
        return cls(
            id=str(data["id"]),
            owner_id=str(data["user_id"]),
            created_at=parse_timestamp(data["created_at"]),
            text=data["text"],
            completed=bool(data.get("completed", False)),
            image_url=data.get("image_url") or None,
        )


@dataclass(frozen=True)
class ImageRecord(Record):
    """Metadata of an uploaded image."""

    MUTABLE_FIELDS: ClassVar[tuple[str, ...]] = (
        "name",
        "original_size",
        "compressed_size",
        "url",
    )

    name: str = ""
    original_size: int = 0
    compressed_size: int = 0
    url: str = ""

    @property
    def attachment_url(self) -> str | None:
        return self.url or None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ImageRecord:
        """Create from API response dictionary."""
        return cls(
            id=str(data["id"]),
            owner_id=str(data["user_id"]),
            created_at=parse_timestamp(data["created_at"]),
            name=data["name"],
            original_size=int(data["original_size"]),
            compressed_size=int(data["compressed_size"]),
            url=data["url"],
        )


R = TypeVar("R", bound=Record)


@dataclass(frozen=True)
class Collection(Generic[R]):
    """A table of records owned by one principal each.

    Attributes:
        table: Table name in the backend.
        record_type: Record class rows are parsed into.
        owner_column: Column holding the owner id (tenant filter).
        attachment_column: Column holding the URL of an attachment the
            record owns, if records carry one.
    """

    table: str
    record_type: type[R]
    owner_column: str = "user_id"
    attachment_column: str | None = None

    def parse(self, row: dict[str, Any]) -> R:
        """Parse a backend row into a record."""
        return self.record_type.from_dict(row)  # type: ignore[attr-defined, no-any-return]

    def owner_filter(self, owner_id: str) -> str:
        """Tenant filter in the backend's filter syntax."""
        return f"{self.owner_column}=eq.{owner_id}"


TODOS: Collection[Todo] = Collection("todos", Todo, attachment_column="image_url")
IMAGES: Collection[ImageRecord] = Collection("images", ImageRecord)


def _error_payload(response: httpx.Response) -> dict[str, Any]:
    """Best-effort decode of an error body."""
    try:
        data = response.json()
    except ValueError:
        return {"message": response.text or response.reason_phrase}
    return data if isinstance(data, dict) else {"message": str(data)}


class RecordGateway:
    """Async HTTP client for the row API, scoped by owner."""

    def __init__(
        self,
        config: BackendConfig,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the gateway.

        Args:
            config: Backend configuration with URL, key and token.
            client: Optional preconfigured client (mainly for tests).
        """
        self._config = config
        self._client = client or httpx.AsyncClient(
            timeout=config.timeout,
            headers=config.headers(),
            verify=config.verify_ssl,
        )

    async def aclose(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> RecordGateway:
        """Context manager entry."""
        return self

    async def __aexit__(self, *args: object) -> None:
        """Context manager exit."""
        await self.aclose()

    def _handle_response(self, response: httpx.Response) -> httpx.Response:
        """Handle API response and raise appropriate exceptions."""
        if response.status_code < 400:
            return response

        payload = _error_payload(response)
        message = str(
            payload.get("message")
            or payload.get("msg")
            or payload.get("error_description")
            or payload.get("error")
            or "Unknown error"
        )
        code = payload.get("code")
        code = str(code) if code is not None else None

        if code == UNIQUE_VIOLATION:
            raise DuplicateRecordError(message, response.status_code, code)
        if response.status_code == 401:
            raise AuthenticationError(message, 401, code)
        if response.status_code == 404:
            raise NotFoundError(message, 404, code)
        raise APIError(message, response.status_code, code)

    def _table_url(self, collection: Collection[Any]) -> str:
        return f"{self._config.rest_url}/{collection.table}"

    @staticmethod
    def _scope(
        collection: Collection[Any], record_id: str, owner_id: str
    ) -> dict[str, str]:
        return {"id": f"eq.{record_id}", collection.owner_column: f"eq.{owner_id}"}

    # === Principal ===

    async def current_user(self) -> Principal:
        """Resolve the signed-in user.

        Returns:
            The current principal.

        Raises:
            NoPrincipalError: If no user is signed in.
        """
        response = await self._client.get(f"{self._config.auth_url}/user")
        if response.status_code in (401, 403):
            raise NoPrincipalError("no user", response.status_code)
        data = self._handle_response(response).json()
        if not isinstance(data, dict) or not data.get("id"):
            raise NoPrincipalError("no user", response.status_code)
        return Principal(id=str(data["id"]), email=data.get("email"))

    # === Record operations ===

    async def list_records(self, collection: Collection[R], owner_id: str) -> list[R]:
        """List all records of an owner, newest first.

        Args:
            collection: Table to read.
            owner_id: Owner whose records are returned.

        Returns:
            Records ordered by created_at descending.
        """
        response = self._handle_response(
            await self._client.get(
                self._table_url(collection),
                params={
                    "select": "*",
                    collection.owner_column: f"eq.{owner_id}",
                    "order": "created_at.desc",
                },
            )
        )
        return [collection.parse(row) for row in response.json()]

    async def insert(
        self,
        collection: Collection[R],
        values: dict[str, Any],
        owner_id: str,
    ) -> R:
        """Create a record owned by ``owner_id``.

        Args:
            collection: Target table.
            values: Column values (without id/owner/created_at).
            owner_id: Owner of the new record.

        Returns:
            The record as stored, with server-assigned id and created_at.

        Raises:
            DuplicateRecordError: On a unique constraint violation.
        """
        response = self._handle_response(
            await self._client.post(
                self._table_url(collection),
                json={**values, collection.owner_column: owner_id},
                headers={"Prefer": "return=representation"},
            )
        )
        rows = response.json()
        if not rows:
            raise APIError("No data returned", response.status_code)
        row = rows[0] if isinstance(rows, list) else rows
        return collection.parse(row)

    async def update(
        self,
        collection: Collection[Any],
        record_id: str,
        owner_id: str,
        values: dict[str, Any],
    ) -> None:
        """Update columns of one record scoped to its owner."""
        self._handle_response(
            await self._client.patch(
                self._table_url(collection),
                params=self._scope(collection, record_id, owner_id),
                json=values,
                headers={"Prefer": "return=minimal"},
            )
        )

    async def delete(
        self,
        collection: Collection[Any],
        record_id: str,
        owner_id: str,
    ) -> None:
        """Delete one record scoped to its owner."""
        self._handle_response(
            await self._client.delete(
                self._table_url(collection),
                params=self._scope(collection, record_id, owner_id),
            )
        )
