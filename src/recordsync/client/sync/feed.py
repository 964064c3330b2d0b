"""Realtime change feed for row notifications.

This module provides:
- FeedSubscription: Async stream of ChangeEvents for one table and filter
- ChangeFeed: Websocket client that joins realtime channels and pushes
  row changes into their subscriptions

Architecture:
    Backend ─push─► ChangeFeed ─► FeedSubscription (asyncio.Queue) ─► RecordStore

The feed speaks the Phoenix channel protocol: one ``phx_join`` per
subscription with a ``postgres_changes`` config, ``heartbeat`` frames on
the ``phoenix`` topic, ``phx_leave`` on unsubscribe. On disconnect it
reconnects after a delay and re-joins every open subscription; a re-joined
subscription signals its resume listeners, since the backend does not
replay changes made while it was away.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
import logging
import ssl
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Literal

import websockets
from pydantic import BaseModel, Field, ValidationError
from websockets.exceptions import WebSocketException

from recordsync.client.sync.types import ChangeEvent, ChangeKind
from recordsync.core.types import FeedStatus

if TYPE_CHECKING:
    from websockets.asyncio.client import ClientConnection

    from recordsync.client.api import Collection
    from recordsync.core.config import BackendConfig

logger = logging.getLogger(__name__)

StatusListener = Callable[[FeedStatus], None]
ResumeListener = Callable[[], None]


# =============================================================================
# Wire models
# =============================================================================


class PhoenixMessage(BaseModel):
    """A frame of the Phoenix channel protocol."""

    topic: str
    event: str
    payload: dict[str, Any] = Field(default_factory=dict)
    ref: str | int | None = None
    join_ref: str | int | None = None


class RowChange(BaseModel):
    """The ``data`` part of a ``postgres_changes`` payload."""

    type: Literal["INSERT", "UPDATE", "DELETE"]
    table: str
    schema_name: str = Field(default="public", alias="schema")
    record: dict[str, Any] | None = None
    old_record: dict[str, Any] | None = None
    commit_timestamp: str | None = None


def parse_row_change(change: RowChange, collection: Collection[Any]) -> ChangeEvent | None:
    """Convert a row change into a ChangeEvent.

    Returns:
        The event, or None if the row cannot be parsed into a record.
    """
    kind = ChangeKind(change.type)

    if kind == ChangeKind.DELETE:
        old = change.old_record or {}
        if old.get("id") in (None, ""):
            logger.warning("Dropping DELETE without id on %s", change.table)
            return None
        try:
            record = collection.parse(old)
        except (KeyError, TypeError, ValueError):
            # Only the primary key is guaranteed on deletes
            record = None
        return ChangeEvent(kind, str(old["id"]), record)

    if not change.record:
        logger.warning("Dropping %s without record on %s", kind.value, change.table)
        return None
    try:
        record = collection.parse(change.record)
    except (KeyError, TypeError, ValueError) as e:
        logger.warning("Dropping malformed %s on %s: %r", kind.value, change.table, e)
        return None
    return ChangeEvent(kind, record.id, record)


# =============================================================================
# Subscription
# =============================================================================


class FeedSubscription:
    """Stream of change events for one table and filter.

    Iterate with ``async for``; iteration ends once the subscription is
    released with ChangeFeed.unsubscribe() or the feed is closed.
    """

    def __init__(self, collection: Collection[Any], filter: str, topic: str) -> None:
        self.collection = collection
        self.filter = filter
        self.topic = topic
        self.join_ref: str | None = None
        self._status = FeedStatus.CONNECTING
        self._queue: asyncio.Queue[ChangeEvent | None] = asyncio.Queue()
        self._closed = False
        self._status_listeners: list[StatusListener] = []
        self._resume_listeners: list[ResumeListener] = []
        self._was_subscribed = False
        self._join_timer: asyncio.TimerHandle | None = None

    @property
    def status(self) -> FeedStatus:
        """Last connection status signal."""
        return self._status

    @property
    def closed(self) -> bool:
        return self._closed

    def add_status_listener(self, listener: StatusListener) -> None:
        """Call ``listener`` on every status change."""
        self._status_listeners.append(listener)

    def add_resume_listener(self, listener: ResumeListener) -> None:
        """Call ``listener`` when the channel is joined again after a drop.

        Changes made while the channel was down are not replayed, so the
        listener is where owners re-fetch.
        """
        self._resume_listeners.append(listener)

    def join_config(self) -> dict[str, Any]:
        """Payload of the ``phx_join`` frame for this subscription."""
        change = {
            "event": "*",
            "schema": "public",
            "table": self.collection.table,
        }
        if self.filter:
            change["filter"] = self.filter
        return {
            "config": {
                "broadcast": {"self": False},
                "presence": {"key": ""},
                "postgres_changes": [change],
            }
        }

    def _set_status(self, status: FeedStatus) -> None:
        if status == self._status:
            return
        self._status = status
        logger.info("Feed %s: %s", self.topic, status.value)
        for listener in list(self._status_listeners):
            try:
                listener(status)
            except Exception:
                logger.exception("Feed status listener failed")

        if status != FeedStatus.SUBSCRIBED:
            return
        if self._was_subscribed:
            for resume in list(self._resume_listeners):
                try:
                    resume()
                except Exception:
                    logger.exception("Feed resume listener failed")
        self._was_subscribed = True

    def _push(self, event: ChangeEvent) -> None:
        if not self._closed:
            self._queue.put_nowait(event)

    def _close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._join_timer:
            self._join_timer.cancel()
            self._join_timer = None
        self._set_status(FeedStatus.CLOSED)
        self._queue.put_nowait(None)

    def __aiter__(self) -> FeedSubscription:
        return self

    async def __anext__(self) -> ChangeEvent:
        event = await self._queue.get()
        if event is None:
            raise StopAsyncIteration
        return event

    def __repr__(self) -> str:
        return f"FeedSubscription({self.topic!r}, filter={self.filter!r}, status={self._status.value})"


# =============================================================================
# Feed
# =============================================================================


class ChangeFeed:
    """Websocket client for realtime row change notifications.

    The connection is opened by the first subscribe() and closed when the
    last subscription is released. Runs as a task on the caller's event
    loop.

    Usage:
        feed = ChangeFeed(config)
        sub = await feed.subscribe(TODOS, "user_id=eq.42")
        try:
            async for event in sub:
                ...
        finally:
            await feed.unsubscribe(sub)
    """

    def __init__(
        self,
        config: BackendConfig,
        reconnect_delay: float = 5.0,
        heartbeat_interval: float = 25.0,
        join_timeout: float = 10.0,
    ) -> None:
        """Initialize the change feed.

        Args:
            config: Backend configuration with URL, key and token.
            reconnect_delay: Delay between reconnection attempts.
            heartbeat_interval: Seconds between heartbeat frames.
            join_timeout: Seconds to wait for a join reply before
                signalling TIMED_OUT.
        """
        self._config = config
        self._reconnect_delay = reconnect_delay
        self._heartbeat_interval = heartbeat_interval
        self._join_timeout = join_timeout

        # Connection state
        self._ws: ClientConnection | None = None
        self._connected = False
        self._should_run = False
        self._task: asyncio.Task[None] | None = None
        self._stop_event: asyncio.Event | None = None  # For interruptible sleep

        self._refs = itertools.count(1)
        self._subscriptions: dict[str, FeedSubscription] = {}
        self._pending_joins: dict[str, FeedSubscription] = {}

    @property
    def connected(self) -> bool:
        """Check if currently connected."""
        return self._connected

    @property
    def url(self) -> str:
        """Get the websocket URL."""
        return self._config.realtime_url

    @property
    def subscriptions(self) -> list[FeedSubscription]:
        return list(self._subscriptions.values())

    def _next_ref(self) -> str:
        return str(next(self._refs))

    # === Subscription management ===

    async def subscribe(self, collection: Collection[Any], filter: str = "") -> FeedSubscription:
        """Open a subscription to row changes of a table.

        Args:
            collection: Table to watch.
            filter: Row filter in the backend's syntax (e.g. "user_id=eq.42").

        Returns:
            The subscription; its status becomes SUBSCRIBED once joined.
        """
        topic = f"realtime:{collection.table}"
        if filter:
            topic = f"{topic}:{filter}"
        if topic in self._subscriptions:
            raise ValueError(f"Already subscribed to {topic}")

        subscription = FeedSubscription(collection, filter, topic)
        self._subscriptions[topic] = subscription

        if self._task is None or self._task.done():
            self._should_run = True
            self._stop_event = asyncio.Event()
            self._task = asyncio.create_task(self._connection_loop(), name="ChangeFeed")
            logger.info("ChangeFeed started")
        elif self._connected:
            await self._join(subscription)

        return subscription

    async def unsubscribe(self, subscription: FeedSubscription) -> None:
        """Release a subscription. Safe to call more than once."""
        if self._subscriptions.get(subscription.topic) is subscription:
            del self._subscriptions[subscription.topic]
            if self._connected and subscription.status == FeedStatus.SUBSCRIBED:
                with contextlib.suppress(WebSocketException, OSError):
                    await self._send(subscription.topic, "phx_leave", {})
        self._pending_joins = {
            ref: sub for ref, sub in self._pending_joins.items() if sub is not subscription
        }
        subscription._close()

        if not self._subscriptions:
            await self.close()

    async def close(self) -> None:
        """Stop the connection task and release every subscription."""
        self._should_run = False
        if self._stop_event:
            self._stop_event.set()

        await self._close_connection()

        task, self._task = self._task, None
        if task and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        for subscription in list(self._subscriptions.values()):
            subscription._close()
        self._subscriptions.clear()
        self._pending_joins.clear()
        logger.info("ChangeFeed stopped")

    # === Connection loop ===

    async def _connection_loop(self) -> None:
        """Main connection loop with automatic reconnection."""
        was_connected = False

        while self._should_run:
            try:
                await self._connect()

                if self._connected:
                    if was_connected:
                        logger.info("Reconnected, re-joining channels...")
                    was_connected = True
                    for subscription in list(self._subscriptions.values()):
                        await self._join(subscription)

                    heartbeat = asyncio.create_task(self._heartbeat_loop())
                    try:
                        await self._listen_for_messages()
                    finally:
                        heartbeat.cancel()
                        with contextlib.suppress(asyncio.CancelledError):
                            await heartbeat

            except WebSocketException as e:
                if was_connected:
                    logger.warning("ChangeFeed disconnected: %s", e)
                logger.debug("Websocket error: %s", e)
            except OSError as e:
                if was_connected:
                    logger.warning("ChangeFeed connection lost")
                logger.debug("Connection error: %s", e)
            except Exception as e:
                logger.warning("ChangeFeed error: %s", e)
                logger.debug("Full traceback:", exc_info=True)

            self._connected = False
            self._ws = None

            if not self._should_run:
                break

            for subscription in self._subscriptions.values():
                subscription._set_status(FeedStatus.CHANNEL_ERROR)

            logger.info("ChangeFeed reconnecting in %.0fs...", self._reconnect_delay)
            # Use interruptible sleep - will wake on stop signal
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(),  # type: ignore[union-attr]
                    timeout=self._reconnect_delay,
                )
                break
            except TimeoutError:
                pass

    async def _connect(self) -> None:
        """Establish websocket connection."""
        ssl_context: ssl.SSLContext | None = None
        if self.url.startswith("wss://"):
            ssl_context = ssl.create_default_context()
            if not self._config.verify_ssl:
                ssl_context.check_hostname = False
                ssl_context.verify_mode = ssl.CERT_NONE

        self._ws = await websockets.connect(
            self.url,
            ssl=ssl_context,
            open_timeout=self._config.timeout,
            close_timeout=5,
        )
        self._connected = True
        logger.info("ChangeFeed connected")

    async def _listen_for_messages(self) -> None:
        """Dispatch incoming frames until the connection closes."""
        if not self._ws:
            return
        try:
            async for message in self._ws:
                self._handle_message(message)
        except websockets.ConnectionClosed:
            logger.info("Connection closed by server")

    async def _heartbeat_loop(self) -> None:
        while self._connected:
            await asyncio.sleep(self._heartbeat_interval)
            await self._send("phoenix", "heartbeat", {})

    async def _send(self, topic: str, event: str, payload: dict[str, Any], ref: str | None = None) -> str:
        ref = ref or self._next_ref()
        frame = {"topic": topic, "event": event, "payload": payload, "ref": ref}
        if self._ws is not None:
            await self._ws.send(json.dumps(frame))
        return ref

    async def _join(self, subscription: FeedSubscription) -> None:
        payload = subscription.join_config()
        payload["access_token"] = self._config.access_token
        ref = self._next_ref()
        subscription.join_ref = ref
        subscription._set_status(FeedStatus.CONNECTING)
        self._pending_joins[ref] = subscription
        await self._send(subscription.topic, "phx_join", payload, ref=ref)

        loop = asyncio.get_running_loop()
        if subscription._join_timer:
            subscription._join_timer.cancel()
        subscription._join_timer = loop.call_later(
            self._join_timeout, self._check_join, ref
        )

    def _check_join(self, ref: str) -> None:
        subscription = self._pending_joins.pop(ref, None)
        if subscription is not None and not subscription.closed:
            logger.warning("Join of %s timed out", subscription.topic)
            subscription._set_status(FeedStatus.TIMED_OUT)

    # === Message handling ===

    def _handle_message(self, message: str | bytes) -> None:
        """Handle an incoming frame.

        Supported events:
        - phx_reply: join acknowledgement (status ok/error)
        - postgres_changes: row change
          {"payload": {"data": {"type": "INSERT|UPDATE|DELETE", "record": {...}, "old_record": {...}}}}
        - phx_error / phx_close: channel failure or closure
        - system: status reports from the realtime server

        Args:
            message: Raw text frame, or a binary frame holding UTF-8 JSON.
        """
        try:
            if isinstance(message, bytes):
                message = message.decode("utf-8")
            frame = PhoenixMessage.model_validate(json.loads(message))
        except (UnicodeDecodeError, json.JSONDecodeError, ValidationError):
            logger.warning("Invalid message received: %s", message[:100])
            return

        if frame.topic == "phoenix":
            return  # heartbeat replies

        subscription = self._subscriptions.get(frame.topic)
        if subscription is None:
            logger.debug("Message for unknown topic %s", frame.topic)
            return

        if frame.event == "phx_reply":
            self._handle_reply(subscription, frame)
        elif frame.event == "postgres_changes":
            self._handle_change(subscription, frame)
        elif frame.event == "phx_error":
            subscription._set_status(FeedStatus.CHANNEL_ERROR)
        elif frame.event == "phx_close":
            subscription._set_status(FeedStatus.CLOSED)
        elif frame.event == "system":
            if frame.payload.get("status") == "error":
                logger.warning("Realtime error on %s: %s", frame.topic, frame.payload.get("message"))
                subscription._set_status(FeedStatus.CHANNEL_ERROR)

        # Ignore other events (presence, broadcast, ...)

    def _handle_reply(self, subscription: FeedSubscription, frame: PhoenixMessage) -> None:
        ref = str(frame.ref) if frame.ref is not None else None
        if ref is None or self._pending_joins.get(ref) is not subscription:
            return
        del self._pending_joins[ref]
        if subscription._join_timer:
            subscription._join_timer.cancel()
            subscription._join_timer = None

        if frame.payload.get("status") == "ok":
            subscription._set_status(FeedStatus.SUBSCRIBED)
        else:
            logger.warning("Join of %s rejected: %s", subscription.topic, frame.payload.get("response"))
            subscription._set_status(FeedStatus.CHANNEL_ERROR)

    def _handle_change(self, subscription: FeedSubscription, frame: PhoenixMessage) -> None:
        try:
            change = RowChange.model_validate(frame.payload.get("data"))
        except ValidationError as e:
            logger.warning("Dropping malformed change on %s: %s", frame.topic, e)
            return

        event = parse_row_change(change, subscription.collection)
        if event is not None:
            logger.debug("Received change: %r", event)
            subscription._push(event)

    async def _close_connection(self) -> None:
        """Close the websocket connection."""
        if self._ws:
            with contextlib.suppress(WebSocketException, OSError):
                await self._ws.close()
            self._ws = None
        self._connected = False
