"""Subscription hub: one resilient push connection, many logical subscriptions.

State machine::

    DISCONNECTED -> CONNECTING -> CONNECTED -> DISCONNECTED (drop) -> CONNECTING -> ...
                         |
                         +-> FAILED (after ``max_reconnect_attempts`` consecutive failures)

A failed dial and a dropped connection both count as a failed attempt and
are followed by backoff. The counter resets only once a connection has
delivered a frame, so an upstream that accepts and immediately drops still
ends in ``FAILED``.

Owns:
- the listener map ``(entity_type, entity_id) -> listeners`` and the
  load-status listener map ``load_id -> listeners``
- the connection task, reconnect/backoff and resubscription
- fan-out of inbound events, with write-through to the position cache

The listener maps and connection state are guarded by a single lock.
Listener callbacks are always invoked outside the lock, so a listener
may unsubscribe from inside its own callback.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import inspect
import logging
import threading
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from pyfleettrack._cache import PositionCache
from pyfleettrack._push import (
    LoadStatusEvent,
    PositionUpdateEvent,
    SubscriptionKey,
    parse_push_message,
    subscribe_load_status_message,
    subscribe_message,
    unsubscribe_load_status_message,
    unsubscribe_message,
)
from pyfleettrack._transport import PushConnection, PushTransport
from pyfleettrack.exceptions import TrackingConnectionError, TrackingError
from pyfleettrack.models.position import EntityType, PositionSample

_logger = logging.getLogger(__name__)

PositionListener = Callable[[PositionSample], Any]
LoadStatusListener = Callable[[LoadStatusEvent], Any]
ErrorListener = Callable[[Exception], Any]
Unsubscribe = Callable[[], None]


class HubState(enum.StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


@dataclass(eq=False)
class _Listener:
    """One registration; compared by identity so duplicates stay distinct."""

    on_update: Callable[[Any], Any]
    on_error: ErrorListener | None = None


class SubscriptionHub:
    """Multiplex per-entity subscriptions over a single push connection.

    Usage::

        hub = SubscriptionHub(transport, cache)
        await hub.start()
        unsubscribe = hub.subscribe("truck-1", EntityType.VEHICLE, print)
        ...
        unsubscribe()
        await hub.stop()
    """

    def __init__(
        self,
        transport: PushTransport,
        cache: PositionCache | None = None,
        *,
        max_reconnect_attempts: int = 5,
        reconnect_base_delay: float = 1.0,
        reconnect_max_delay: float = 5.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._transport = transport
        self._cache = cache
        self._max_attempts = max_reconnect_attempts
        self._base_delay = reconnect_base_delay
        self._max_delay = reconnect_max_delay
        self._sleep = sleep

        self._lock = threading.Lock()
        self._listeners: dict[SubscriptionKey, list[_Listener]] = {}
        self._load_listeners: dict[str, list[_Listener]] = {}
        self._state = HubState.DISCONNECTED
        self._retries = 0
        self._outbox: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self._connection: PushConnection | None = None

        self._task: asyncio.Task[None] | None = None
        self._closing = False
        self._connected = asyncio.Event()
        self._callback_tasks: set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> HubState:
        with self._lock:
            return self._state

    @property
    def retry_count(self) -> int:
        with self._lock:
            return self._retries

    def active_keys(self) -> list[SubscriptionKey]:
        with self._lock:
            return list(self._listeners)

    def active_load_ids(self) -> list[str]:
        with self._lock:
            return list(self._load_listeners)

    def listener_count(self, entity_id: str, entity_type: EntityType) -> int:
        key = SubscriptionKey(EntityType(entity_type), entity_id)
        with self._lock:
            return len(self._listeners.get(key, ()))

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number *attempt* (1-based)."""
        return min(self._base_delay * (2 ** (attempt - 1)), self._max_delay)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the connection task if it is not already running."""
        self._ensure_started()

    def _ensure_started(self) -> None:
        if self._task is not None and not self._task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop yet; start() will be awaited later.
            return
        with self._lock:
            self._closing = False
            self._state = HubState.CONNECTING
        self._task = loop.create_task(self._run(), name="pyfleettrack-subscription-hub")

    async def stop(self) -> None:
        """Close the connection and stop reconnecting.

        Listener registrations survive; a later :meth:`start` resubscribes them.
        """
        with self._lock:
            self._closing = True
            connection = self._connection
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if connection is not None:
            await self._close_quietly(connection)
        with self._lock:
            self._connection = None
            self._state = HubState.DISCONNECTED
            self._outbox = asyncio.Queue()
        self._connected.clear()
        for pending in list(self._callback_tasks):
            pending.cancel()

    async def wait_until_connected(self, timeout: float | None = None) -> bool:
        try:
            await asyncio.wait_for(self._connected.wait(), timeout)
            return True
        except TimeoutError:
            return False

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(
        self,
        entity_id: str,
        entity_type: EntityType,
        on_update: PositionListener,
        on_error: ErrorListener | None = None,
    ) -> Unsubscribe:
        """Register a position listener and return its unsubscribe function.

        The first listener for a key causes an upstream ``subscribe``; it is
        sent immediately when connected, otherwise on the next successful
        connect. The returned function removes only this listener and is
        safe to call repeatedly.
        """
        key = SubscriptionKey(EntityType(entity_type), entity_id)
        entry = _Listener(on_update, on_error)
        with self._lock:
            listeners = self._listeners.setdefault(key, [])
            listeners.append(entry)
            first = len(listeners) == 1
            if first and self._state == HubState.CONNECTED:
                self._outbox.put_nowait(subscribe_message(key))
            self._reset_if_failed()
        if first:
            _logger.debug("Subscribed %s", key.wire)
        self._ensure_started()

        def unsubscribe() -> None:
            with self._lock:
                current = self._listeners.get(key)
                if current is None or entry not in current:
                    return
                current.remove(entry)
                emptied = not current
                if emptied:
                    del self._listeners[key]
                    if self._state == HubState.CONNECTED:
                        self._outbox.put_nowait(unsubscribe_message(key))
            if emptied:
                _logger.debug("Unsubscribed %s", key.wire)

        return unsubscribe

    def subscribe_load_status(
        self,
        load_id: str,
        on_update: LoadStatusListener,
        on_error: ErrorListener | None = None,
    ) -> Unsubscribe:
        """Register a load-status listener; same lifecycle as :meth:`subscribe`."""
        entry = _Listener(on_update, on_error)
        with self._lock:
            listeners = self._load_listeners.setdefault(load_id, [])
            listeners.append(entry)
            if len(listeners) == 1 and self._state == HubState.CONNECTED:
                self._outbox.put_nowait(subscribe_load_status_message(load_id))
            self._reset_if_failed()
        self._ensure_started()

        def unsubscribe() -> None:
            with self._lock:
                current = self._load_listeners.get(load_id)
                if current is None or entry not in current:
                    return
                current.remove(entry)
                if not current:
                    del self._load_listeners[load_id]
                    if self._state == HubState.CONNECTED:
                        self._outbox.put_nowait(unsubscribe_load_status_message(load_id))

        return unsubscribe

    def _reset_if_failed(self) -> None:
        """Caller holds the lock."""
        if self._state == HubState.FAILED:
            _logger.info("Subscription after failure; retrying push connection")
            self._retries = 0
            self._state = HubState.DISCONNECTED

    # ------------------------------------------------------------------
    # Connection loop
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        while True:
            with self._lock:
                if self._closing:
                    return
                self._state = HubState.CONNECTING
            try:
                connection = await self._transport.connect()
            except Exception as exc:
                # Any dial failure drives the retry state machine.
                if not await self._handle_connect_failure(exc):
                    return
                continue
            lost = await self._serve(connection)
            with self._lock:
                if self._closing:
                    return
            # A drop counts as a failed attempt; the counter only resets once a
            # connection has delivered a frame.
            if not await self._handle_connect_failure(lost):
                return

    async def _handle_connect_failure(self, exc: Exception) -> bool:
        """Record a failed dial or a dropped connection.

        Notifies error listeners, then backs off. Returns ``False`` once the
        hub has given up.
        """
        with self._lock:
            self._retries += 1
            attempt = self._retries
            gave_up = attempt >= self._max_attempts
            if gave_up:
                self._state = HubState.FAILED
            error_listeners = self._error_listeners()

        _logger.warning(
            "Push connection attempt %d/%d failed: %s",
            attempt,
            self._max_attempts,
            exc,
        )
        for callback in error_listeners:
            self._invoke(callback, exc, "on_error")

        if gave_up:
            _logger.error("Giving up on push connection after %d attempts", attempt)
            return False
        await self._sleep(self.backoff_delay(attempt))
        return True

    def _error_listeners(self) -> list[ErrorListener]:
        """Caller holds the lock."""
        callbacks: list[ErrorListener] = []
        for group in (*self._listeners.values(), *self._load_listeners.values()):
            callbacks.extend(entry.on_error for entry in group if entry.on_error is not None)
        return callbacks

    async def _serve(self, connection: PushConnection) -> Exception:
        """Run one connection until it drops; returns the reason."""
        with self._lock:
            self._connection = connection
            # Anything queued for the previous connection is superseded by the
            # full resubscription below.
            self._outbox = outbox = asyncio.Queue()
            self._state = HubState.CONNECTED
            keys = list(self._listeners)
            load_ids = list(self._load_listeners)

        _logger.info("Push connection established; resubscribing %d keys", len(keys) + len(load_ids))
        sender: asyncio.Task[None] | None = None
        lost: Exception = TrackingConnectionError("Push connection closed by peer")
        delivered = False
        try:
            for key in keys:
                await connection.send_json(subscribe_message(key))
            for load_id in load_ids:
                await connection.send_json(subscribe_load_status_message(load_id))
            self._connected.set()
            sender = asyncio.create_task(self._drain_outbox(connection, outbox))
            while True:
                frame = await connection.receive_json()
                if frame is None:
                    break
                if not delivered:
                    delivered = True
                    with self._lock:
                        self._retries = 0
                self._dispatch(frame)
        except (TrackingError, OSError) as exc:
            _logger.warning("Push connection lost: %s", exc)
            lost = exc
        finally:
            self._connected.clear()
            if sender is not None:
                sender.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await sender
            with self._lock:
                self._connection = None
                if self._state == HubState.CONNECTED:
                    self._state = HubState.DISCONNECTED
            await self._close_quietly(connection)
        _logger.info("Push connection closed")
        return lost

    async def _drain_outbox(self, connection: PushConnection, outbox: asyncio.Queue[dict[str, Any]]) -> None:
        while True:
            message = await outbox.get()
            try:
                await connection.send_json(message)
            except TrackingError as exc:
                _logger.warning("Push send failed, dropping connection: %s", exc)
                await self._close_quietly(connection)
                return

    @staticmethod
    async def _close_quietly(connection: PushConnection) -> None:
        try:
            await connection.close()
        except Exception:
            _logger.debug("Push connection close failed", exc_info=True)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _dispatch(self, frame: Any) -> None:
        try:
            event = parse_push_message(frame)
        except TrackingError as exc:
            _logger.warning("Dropping malformed push frame: %s", exc)
            return
        if event is None:
            return

        if isinstance(event, PositionUpdateEvent):
            if self._cache is not None:
                self._cache.put(event.key.entity_id, event.key.entity_type, event.sample)
            with self._lock:
                listeners = list(self._listeners.get(event.key, ()))
            if not listeners:
                _logger.debug("No listeners for %s", event.key.wire)
            for entry in listeners:
                self._invoke(entry.on_update, event.sample, event.key.wire)
            return

        with self._lock:
            listeners = list(self._load_listeners.get(event.load_id, ()))
        for entry in listeners:
            self._invoke(entry.on_update, event, f"load_{event.load_id}")

    def _invoke(self, callback: Callable[[Any], Any], argument: Any, label: str) -> None:
        """Call one listener; its failure never reaches siblings or the hub."""
        try:
            result = callback(argument)
        except Exception:
            _logger.warning("Listener for %s raised", label, exc_info=True)
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._callback_tasks.add(task)
            task.add_done_callback(lambda t: self._on_callback_done(t, label))

    def _on_callback_done(self, task: asyncio.Task[Any], label: str) -> None:
        self._callback_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            _logger.warning("Async listener for %s raised", label, exc_info=exc)
