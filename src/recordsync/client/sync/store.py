"""Synchronized record store.

This module provides:
- RecordStore: Local ordered view of one principal's records, kept
  consistent with the backend through three inflows
- ViewStats: Counts shown under the todo list

Inflows:
    1. load()            one-shot fetch of the principal's records
       refresh()         re-fetch after the feed resumed from a disconnect
    2. add/update/toggle/delete
                         local intents, applied only after the backend
                         confirmed them (confirm-then-apply)
    3. apply_event()     feed events, applied in delivery order

All three merge by record id through the pure functions of
recordsync.client.sync.view, so applying the same change twice, or a local
change followed by its own feed echo, never duplicates or loses a record.
The view is replaced, never mutated; listeners receive each new snapshot.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from recordsync.client.api import Collection, Principal, Record
from recordsync.client.storage import key_from_url, storage_key
from recordsync.client.sync.retry import run_with_timeout
from recordsync.client.sync.types import (
    ChangeEvent,
    ChangeKind,
    RecordNotFoundError,
    SourceFile,
    StoreError,
    ViewListener,
)
from recordsync.client.sync.view import (
    View,
    filter_todos,
    find,
    insert_record,
    merge_records,
    remove_record,
    replace_record,
    update_record,
)
from recordsync.core.config import StoreConfig
from recordsync.core.types import TodoFilter

if TYPE_CHECKING:
    from recordsync.client.api import RecordGateway
    from recordsync.client.storage import AttachmentStore
    from recordsync.client.sync.feed import ChangeFeed, FeedSubscription

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=Record)
T = TypeVar("T")


@dataclass(frozen=True)
class ViewStats:
    """Counts of a todo view."""

    total: int
    completed: int

    @property
    def active(self) -> int:
        return self.total - self.completed


class RecordStore(Generic[R]):
    """Single source of truth for what the current user sees.

    All collaborators are injected. The store talks to the gateway and the
    attachment store through run_with_timeout, and drains the change feed
    while a session() is open.

    Usage:
        store = RecordStore(TODOS, gateway, attachments, feed)
        unsubscribe = store.subscribe(render)

        async with store.session():
            await store.add(text="buy milk", completed=False)
            ...

        unsubscribe()
    """

    def __init__(
        self,
        collection: Collection[R],
        gateway: RecordGateway,
        attachments: AttachmentStore | None = None,
        feed: ChangeFeed | None = None,
        config: StoreConfig | None = None,
    ) -> None:
        """Initialize the store.

        Args:
            collection: Table whose records are synchronized.
            gateway: Row API client.
            attachments: Blob store holding record attachments.
            feed: Realtime change feed (no live updates if None).
            config: Retry and timeout settings.
        """
        self.collection = collection
        self._gateway = gateway
        self._attachments = attachments
        self._feed = feed
        self._config = config or StoreConfig()

        self._view: tuple[R, ...] = ()
        self._listeners: list[ViewListener] = []
        self._principal: Principal | None = None
        self._loaded = False
        self._session_active = False
        self._refreshes: set[asyncio.Task[None]] = set()
        # Ids are never reused, so deleted ids can be remembered forever
        self._tombstones: set[str] = set()

    # === Reactive surface ===

    def get_view(self) -> tuple[R, ...]:
        """Current snapshot, ordered by created_at descending."""
        return self._view

    def subscribe(self, listener: ViewListener) -> Callable[[], None]:
        """Register a listener called with every new snapshot.

        Returns:
            A callable that unregisters the listener.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return unsubscribe

    def find(self, record_id: str) -> R | None:
        """Get a record of the current view by id."""
        return find(self._view, record_id)  # type: ignore[return-value]

    def filtered(self, todo_filter: TodoFilter = TodoFilter.ALL) -> tuple[R, ...]:
        """Current snapshot restricted to active or completed records."""
        return filter_todos(self._view, todo_filter)  # type: ignore[return-value]

    def stats(self) -> ViewStats:
        """Total and completed counts of the current snapshot."""
        view = self._view
        completed = sum(1 for r in view if getattr(r, "completed", False))
        return ViewStats(total=len(view), completed=completed)

    @property
    def loaded(self) -> bool:
        return self._loaded

    @property
    def principal(self) -> Principal | None:
        return self._principal

    def _replace(self, view: View) -> bool:
        """Swap in a new snapshot and notify listeners."""
        if view is self._view:
            return False
        self._view = view  # type: ignore[assignment]
        for listener in list(self._listeners):
            try:
                listener(view)
            except Exception:
                logger.exception("View listener failed")
        return True

    async def _call(self, operation: Callable[[], Awaitable[T]]) -> T:
        return await run_with_timeout(
            operation,
            max_retries=self._config.max_retries,
            timeout=self._config.operation_timeout,
            retry_interval=self._config.retry_interval,
        )

    # === Inflow 1: initial load ===

    async def resolve_principal(self) -> Principal:
        """Get the current principal, asking the backend once.

        Raises:
            NoPrincipalError: If no user is signed in.
        """
        if self._principal is None:
            self._principal = await self._call(self._gateway.current_user)
            logger.debug("Principal resolved: %s", self._principal.id)
        return self._principal

    async def load(self) -> tuple[R, ...]:
        """Fetch the principal's records into the view.

        Runs once per store; later calls return the current view.

        Returns:
            The view after loading.
        """
        if self._loaded:
            logger.debug("%s already loaded", self.collection.table)
            return self._view

        principal = await self.resolve_principal()
        try:
            records = await self._call(
                lambda: self._gateway.list_records(self.collection, principal.id)
            )
        except Exception as e:
            logger.error(f"Error fetching {self.collection.table}: {e}")
            raise

        self._loaded = True
        fresh = [r for r in records if r.id not in self._tombstones]
        self._replace(merge_records(self._view, fresh))
        logger.info("Loaded %d %s", len(fresh), self.collection.table)
        return self._view

    # === Inflow 2: local intents (confirm-then-apply) ===

    async def add(self, **values: Any) -> R:
        """Create a record and add it to the view once the backend stored it.

        Args:
            **values: Column values of the new record.

        Returns:
            The stored record (server-assigned id and created_at).

        Raises:
            DuplicateRecordError: On a unique constraint violation.
            OperationTimeoutError: If every attempt timed out.
        """
        principal = await self.resolve_principal()
        try:
            record = await self._call(
                lambda: self._gateway.insert(self.collection, values, principal.id)
            )
        except Exception as e:
            logger.error(f"Error adding {self.collection.table} record: {e}")
            raise

        if record.id not in self._tombstones:
            self._replace(insert_record(self._view, record))
        return record

    async def add_with_attachment(self, source: SourceFile, **values: Any) -> R:
        """Store a file in the principal's folder, then add a record owning it.

        The file's public URL goes into the collection's attachment column.
        If the record is not saved, the blob stays behind and is logged as
        orphaned.

        Args:
            source: File to attach.
            **values: Other column values of the new record.

        Raises:
            StoreError: If the collection has no attachment column or no
                attachment store is configured.
        """
        column = self.collection.attachment_column
        if column is None:
            raise StoreError(f"{self.collection.table} records have no attachment")
        if self._attachments is None:
            raise StoreError("No attachment store configured")

        principal = await self.resolve_principal()
        key = f"{principal.id}/{storage_key(source.name)}"
        attachments = self._attachments
        try:
            await self._call(lambda: attachments.put(key, source.data, source.media_type))
        except Exception as e:
            logger.error(f"Error storing attachment {source.name}: {e}")
            raise

        try:
            return await self.add(**values, **{column: attachments.public_url(key)})
        except Exception:
            logger.warning(f"Blob {key} is orphaned: {self.collection.table} record was not saved")
            raise

    async def update(self, record_id: str, **values: Any) -> R:
        """Change columns of a record, then apply them locally.

        Returns:
            The record as now shown in the view.

        Raises:
            RecordNotFoundError: If the id is not in the view.
        """
        current = self.find(record_id)
        if current is None:
            raise RecordNotFoundError(f"No {self.collection.table} record {record_id}")
        updated = current.with_changes(**values)

        principal = await self.resolve_principal()
        try:
            await self._call(
                lambda: self._gateway.update(self.collection, record_id, principal.id, values)
            )
        except Exception as e:
            logger.error(f"Error updating {self.collection.table} record {record_id}: {e}")
            raise

        # The record may have been replaced or removed by the feed meanwhile
        latest = self.find(record_id)
        if latest is None:
            return updated  # type: ignore[return-value]
        merged = latest.with_changes(**values)
        self._replace(replace_record(self._view, merged))
        return merged  # type: ignore[return-value]

    async def toggle(self, record_id: str) -> R:
        """Flip the completed flag of a todo."""
        current = self.find(record_id)
        if current is None:
            raise RecordNotFoundError(f"No {self.collection.table} record {record_id}")
        if "completed" not in current.MUTABLE_FIELDS:
            raise StoreError(f"{self.collection.table} records cannot be toggled")
        return await self.update(record_id, completed=not getattr(current, "completed"))

    async def delete(self, record_id: str) -> None:
        """Delete a record, then remove it and the attachment it owns.

        Attachment removal is best effort: a failure is logged and the
        record stays deleted. Attachments the record does not own (see
        Record.owns_attachment) are kept.

        Raises:
            RecordNotFoundError: If the id is not in the view.
        """
        current = self.find(record_id)
        if current is None:
            raise RecordNotFoundError(f"No {self.collection.table} record {record_id}")

        principal = await self.resolve_principal()
        try:
            await self._call(
                lambda: self._gateway.delete(self.collection, record_id, principal.id)
            )
        except Exception as e:
            logger.error(f"Error deleting {self.collection.table} record {record_id}: {e}")
            raise

        self._tombstones.add(record_id)
        self._replace(remove_record(self._view, record_id))
        await self._remove_attachment(current)

    async def _remove_attachment(self, record: Record) -> None:
        url = record.attachment_url
        if not url or self._attachments is None:
            return
        key = key_from_url(url)
        if not key:
            logger.warning("Cannot derive storage key from %s", url)
            return
        if not record.owns_attachment(key):
            logger.debug("Keeping shared attachment %s of record %s", key, record.id)
            return

        attachments = self._attachments
        try:
            await self._call(lambda: attachments.remove([key]))
        except Exception as e:
            logger.warning(f"Failed to delete attachment {key} of record {record.id}: {e}")
        else:
            logger.debug("Deleted attachment %s", key)

    # === Inflow 3: feed events ===

    def apply_event(self, event: ChangeEvent) -> bool:
        """Merge a feed event into the view.

        Malformed or foreign events are dropped with a log.

        Returns:
            True if the view changed.
        """
        if not event.record_id:
            logger.warning("Dropping event without id: %r", event)
            return False

        if event.kind == ChangeKind.DELETE:
            self._tombstones.add(event.record_id)
            return self._replace(remove_record(self._view, event.record_id))

        record = event.record
        if not isinstance(record, self.collection.record_type) or record.id != event.record_id:
            logger.warning("Dropping malformed event: %r", event)
            return False
        if self._principal is not None and record.owner_id != self._principal.id:
            logger.debug("Dropping event for foreign owner: %r", event)
            return False
        if record.id in self._tombstones:
            logger.debug("Ignoring %r for deleted record", event)
            return False

        if event.kind == ChangeKind.INSERT or find(self._view, record.id) is None:
            # An update for an unseen id counts as an insert
            return self._replace(insert_record(self._view, record))
        return self._replace(update_record(self._view, record))

    # === Subscription lifecycle ===

    async def refresh(self) -> tuple[R, ...]:
        """Re-fetch the principal's records and merge them into the view.

        Picks up changes the feed missed while it was disconnected:
        unseen records are inserted, known ones take the fetched mutable
        fields, and records the backend no longer lists are removed.

        Returns:
            The view after merging.
        """
        principal = await self.resolve_principal()
        known = {r.id for r in self._view}
        records = await self._call(
            lambda: self._gateway.list_records(self.collection, principal.id)
        )

        fresh = {r.id: r for r in records if r.id not in self._tombstones}
        view: View = self._view
        for record_id in known - fresh.keys():
            self._tombstones.add(record_id)
            view = remove_record(view, record_id)
        for record in fresh.values():
            if find(view, record.id) is None:
                view = insert_record(view, record)
            else:
                view = update_record(view, record)

        if self._replace(view):
            logger.info("Merged missed %s changes", self.collection.table)
        return self._view

    @contextlib.asynccontextmanager
    async def session(self) -> AsyncIterator[RecordStore[R]]:
        """Keep the view live for the duration of the block.

        Resolves the principal, loads once, then subscribes to the feed
        with the owner filter and drains it in a background task. When the
        feed resumes after a disconnect, the view is refreshed. The
        subscription is released on every exit path.

        Raises:
            StoreError: If a session is already open on this store.
        """
        if self._session_active:
            raise StoreError("A session is already active on this store")
        self._session_active = True

        subscription: FeedSubscription | None = None
        drain: asyncio.Task[None] | None = None
        try:
            principal = await self.resolve_principal()
            await self.load()
            if self._feed is not None:
                subscription = await self._feed.subscribe(
                    self.collection, self.collection.owner_filter(principal.id)
                )
                subscription.add_resume_listener(self._schedule_refresh)
                drain = asyncio.create_task(
                    self._drain(subscription),
                    name=f"RecordStore-{self.collection.table}",
                )
            yield self
        finally:
            pending = [t for t in (drain, *self._refreshes) if t is not None]
            for task in pending:
                task.cancel()
            try:
                results = await asyncio.gather(*pending, return_exceptions=True)
                for result in results:
                    if isinstance(result, Exception):
                        logger.error(f"Feed task of {self.collection.table} failed: {result}")
            finally:
                if subscription is not None and self._feed is not None:
                    await self._feed.unsubscribe(subscription)
                self._session_active = False

    async def _drain(self, subscription: FeedSubscription) -> None:
        async for event in subscription:
            try:
                self.apply_event(event)
            except Exception:
                logger.exception("Failed to apply %r", event)
        logger.debug("Feed %s drained", subscription.topic)

    def _schedule_refresh(self) -> None:
        task = asyncio.create_task(
            self._fetch_missed_changes(),
            name=f"RecordStore-{self.collection.table}-refresh",
        )
        self._refreshes.add(task)
        task.add_done_callback(self._refreshes.discard)

    async def _fetch_missed_changes(self) -> None:
        try:
            await self.refresh()
        except Exception as e:
            logger.warning("Failed to fetch missed changes: %s", e)
