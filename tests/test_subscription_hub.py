from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import pytest

from pyfleettrack._cache import PositionCache
from pyfleettrack._push import LoadStatusEvent
from pyfleettrack.exceptions import TrackingConnectionError
from pyfleettrack.hub import HubState, SubscriptionHub
from pyfleettrack.models import EntityType, LoadStatus, PositionSample


class FakeConnection:
    def __init__(self) -> None:
        self.inbox: asyncio.Queue[Any] = asyncio.Queue()
        self.sent: list[dict[str, Any]] = []
        self.closed = False

    async def send_json(self, message: dict[str, Any]) -> None:
        self.sent.append(message)

    async def receive_json(self) -> Any | None:
        return await self.inbox.get()

    async def close(self) -> None:
        self.closed = True
        self.inbox.put_nowait(None)

    def push(self, frame: dict[str, Any]) -> None:
        self.inbox.put_nowait(frame)

    def drop(self) -> None:
        self.inbox.put_nowait(None)


class FakeTransport:
    """Replays scripted connect outcomes, then blocks forever."""

    def __init__(self, *outcomes: FakeConnection | Exception) -> None:
        self.outcomes = list(outcomes)
        self.attempts = 0

    async def connect(self) -> FakeConnection:
        self.attempts += 1
        if not self.outcomes:
            await asyncio.get_running_loop().create_future()
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


async def _until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.001)


def _position_frame(entity_id: str, lat: float = 40.0, entity_type: str = "vehicle") -> dict[str, Any]:
    return {
        "event": "position_update",
        "key": f"{entity_type}_{entity_id}",
        "payload": {"latitude": lat, "longitude": -75.0, "recordedAt": "2026-03-10T12:00:00Z"},
    }


def _sub(entity_id: str, entity_type: str = "vehicle") -> dict[str, Any]:
    return {"op": "subscribe", "entityId": entity_id, "entityType": entity_type}


# ------------------------------------------------------------------
# Subscribe / unsubscribe
# ------------------------------------------------------------------


class TestSubscriptions:
    @pytest.mark.asyncio
    async def test_first_listener_subscribes_upstream_once(self) -> None:
        conn = FakeConnection()
        hub = SubscriptionHub(FakeTransport(conn))
        received: list[PositionSample] = []

        hub.subscribe("v1", EntityType.VEHICLE, received.append)
        hub.subscribe("v1", EntityType.VEHICLE, received.append)
        assert await hub.wait_until_connected(1.0)
        assert conn.sent == [_sub("v1")]

        hub.subscribe("v2", EntityType.VEHICLE, received.append)
        await _until(lambda: len(conn.sent) == 2)
        assert conn.sent[1] == _sub("v2")

        conn.push(_position_frame("v1"))
        await _until(lambda: len(received) == 2)
        assert received[0].entity_id == "v1"
        assert hub.listener_count("v1", EntityType.VEHICLE) == 2

        await hub.stop()

    @pytest.mark.asyncio
    async def test_unsubscribe_is_idempotent_and_stops_delivery(self) -> None:
        conn = FakeConnection()
        hub = SubscriptionHub(FakeTransport(conn))
        first: list[PositionSample] = []
        second: list[PositionSample] = []
        other: list[PositionSample] = []

        unsubscribe_first = hub.subscribe("v1", EntityType.VEHICLE, first.append)
        unsubscribe_second = hub.subscribe("v1", EntityType.VEHICLE, second.append)
        hub.subscribe("v2", EntityType.VEHICLE, other.append)
        assert await hub.wait_until_connected(1.0)

        unsubscribe_first()
        unsubscribe_first()
        assert hub.listener_count("v1", EntityType.VEHICLE) == 1

        unsubscribe_second()
        await _until(lambda: {"op": "unsubscribe", "entityId": "v1", "entityType": "vehicle"} in conn.sent)
        assert hub.active_keys() == [(EntityType.VEHICLE, "v2")]

        conn.push(_position_frame("v1"))
        conn.push(_position_frame("v2"))
        await _until(lambda: len(other) == 1)
        assert first == []
        assert second == []

        unsubscribe_second()
        await hub.stop()

    @pytest.mark.asyncio
    async def test_listener_may_unsubscribe_itself(self) -> None:
        conn = FakeConnection()
        hub = SubscriptionHub(FakeTransport(conn))
        calls: list[PositionSample] = []
        unsubscribe: Callable[[], None] | None = None

        def once(sample: PositionSample) -> None:
            calls.append(sample)
            assert unsubscribe is not None
            unsubscribe()

        unsubscribe = hub.subscribe("v1", EntityType.VEHICLE, once)
        assert await hub.wait_until_connected(1.0)
        conn.push(_position_frame("v1"))
        conn.push(_position_frame("v1", lat=41.0))
        await _until(lambda: hub.active_keys() == [] and conn.inbox.empty())
        assert len(calls) == 1

        await hub.stop()


# ------------------------------------------------------------------
# Fan-out
# ------------------------------------------------------------------


class TestDispatch:
    @pytest.mark.asyncio
    async def test_failing_listener_does_not_affect_siblings(self) -> None:
        conn = FakeConnection()
        hub = SubscriptionHub(FakeTransport(conn))
        good: list[PositionSample] = []
        async_good: list[PositionSample] = []

        def bad(_: PositionSample) -> None:
            raise RuntimeError("boom")

        async def async_listener(sample: PositionSample) -> None:
            async_good.append(sample)

        hub.subscribe("v1", EntityType.VEHICLE, bad)
        hub.subscribe("v1", EntityType.VEHICLE, good.append)
        hub.subscribe("v1", EntityType.VEHICLE, async_listener)
        assert await hub.wait_until_connected(1.0)

        conn.push(_position_frame("v1"))
        await _until(lambda: len(good) == 1 and len(async_good) == 1)
        assert hub.state is HubState.CONNECTED

        await hub.stop()

    @pytest.mark.asyncio
    async def test_push_writes_through_to_cache(self) -> None:
        conn = FakeConnection()
        cache = PositionCache(30.0, clock=lambda: 0.0)
        hub = SubscriptionHub(FakeTransport(conn), cache)
        hub.subscribe("d1", EntityType.DRIVER, lambda _: None)
        assert await hub.wait_until_connected(1.0)

        conn.push(_position_frame("d1", lat=42.5, entity_type="driver"))
        await _until(lambda: cache.get("d1", EntityType.DRIVER) is not None)
        cached = cache.get("d1", EntityType.DRIVER)
        assert cached is not None and cached.latitude == 42.5

        await hub.stop()

    @pytest.mark.asyncio
    async def test_malformed_frames_are_dropped(self) -> None:
        conn = FakeConnection()
        hub = SubscriptionHub(FakeTransport(conn))
        received: list[PositionSample] = []
        hub.subscribe("v1", EntityType.VEHICLE, received.append)
        assert await hub.wait_until_connected(1.0)

        conn.push({"event": "position_update", "key": "vehicle_v1", "payload": {"latitude": 500}})
        conn.push({"event": "unknown"})
        conn.push(_position_frame("v1"))
        await _until(lambda: len(received) == 1)
        assert hub.state is HubState.CONNECTED

        await hub.stop()

    @pytest.mark.asyncio
    async def test_load_status_subscription(self) -> None:
        conn = FakeConnection()
        hub = SubscriptionHub(FakeTransport(conn))
        events: list[LoadStatusEvent] = []

        unsubscribe = hub.subscribe_load_status("L1", events.append)
        assert await hub.wait_until_connected(1.0)
        assert conn.sent == [{"op": "subscribe_load_status", "loadId": "L1"}]

        conn.push({"event": "load_status", "loadId": "L1", "status": "delivered"})
        conn.push({"event": "load_status", "loadId": "L2", "status": "delivered"})
        await _until(lambda: len(events) == 1)
        assert events[0].status is LoadStatus.DELIVERED

        unsubscribe()
        await _until(lambda: len(conn.sent) == 2)
        assert conn.sent[1] == {"op": "unsubscribe_load_status", "loadId": "L1"}
        assert hub.active_load_ids() == []

        await hub.stop()


# ------------------------------------------------------------------
# Reconnect
# ------------------------------------------------------------------


class TestReconnect:
    def test_backoff_schedule(self) -> None:
        hub = SubscriptionHub(FakeTransport(), reconnect_base_delay=1.0, reconnect_max_delay=5.0)
        assert [hub.backoff_delay(n) for n in range(1, 7)] == [1.0, 2.0, 4.0, 5.0, 5.0, 5.0]

    @pytest.mark.asyncio
    async def test_drop_resubscribes_every_key_exactly_once(self) -> None:
        first_conn = FakeConnection()
        second_conn = FakeConnection()
        sleep = RecordingSleep()
        hub = SubscriptionHub(FakeTransport(first_conn, second_conn), sleep=sleep)
        received: list[PositionSample] = []

        hub.subscribe("a", EntityType.VEHICLE, received.append)
        hub.subscribe("b", EntityType.DRIVER, received.append)
        assert await hub.wait_until_connected(1.0)
        assert len(first_conn.sent) == 2

        first_conn.drop()
        await _until(lambda: len(second_conn.sent) == 2 and hub.state is HubState.CONNECTED)

        assert sorted(second_conn.sent, key=lambda m: m["entityId"]) == [_sub("a"), _sub("b", "driver")]
        assert first_conn.closed
        assert sleep.delays == [1.0]
        assert hub.retry_count == 1

        second_conn.push(_position_frame("a"))
        await _until(lambda: len(received) == 1)
        assert hub.retry_count == 0

        await hub.stop()

    @pytest.mark.asyncio
    async def test_immediate_drops_back_off_and_give_up(self) -> None:
        connections = [FakeConnection() for _ in range(5)]
        for conn in connections:
            conn.drop()
        transport = FakeTransport(*connections)
        sleep = RecordingSleep()
        hub = SubscriptionHub(transport, max_reconnect_attempts=5, sleep=sleep)
        errors: list[Exception] = []

        hub.subscribe("v1", EntityType.VEHICLE, lambda _: None, errors.append)
        await _until(lambda: hub.state is HubState.FAILED)

        assert transport.attempts == 5
        assert sleep.delays == [1.0, 2.0, 4.0, 5.0]
        assert len(errors) == 5
        assert all(isinstance(exc, TrackingConnectionError) for exc in errors)
        assert all(conn.closed for conn in connections)

        await hub.stop()

    @pytest.mark.asyncio
    async def test_delivered_frame_resets_retry_count(self) -> None:
        first_conn = FakeConnection()
        second_conn = FakeConnection()
        sleep = RecordingSleep()
        transport = FakeTransport(TrackingConnectionError("refused"), first_conn, second_conn)
        hub = SubscriptionHub(transport, sleep=sleep)
        received: list[PositionSample] = []

        hub.subscribe("a", EntityType.VEHICLE, received.append)
        assert await hub.wait_until_connected(1.0)
        assert hub.retry_count == 1

        first_conn.push(_position_frame("a"))
        await _until(lambda: len(received) == 1)
        assert hub.retry_count == 0

        first_conn.drop()
        await _until(lambda: len(second_conn.sent) == 1)
        assert sleep.delays == [1.0, 1.0]

        await hub.stop()

    @pytest.mark.asyncio
    async def test_keys_added_while_disconnected_are_sent_on_connect(self) -> None:
        conn = FakeConnection()
        sleep = RecordingSleep()
        transport = FakeTransport(TrackingConnectionError("refused"), conn)
        hub = SubscriptionHub(transport, sleep=sleep)

        hub.subscribe("a", EntityType.VEHICLE, lambda _: None)
        hub.subscribe("b", EntityType.VEHICLE, lambda _: None)
        assert await hub.wait_until_connected(1.0)

        assert sleep.delays == [1.0]
        assert conn.sent == [_sub("a"), _sub("b")]

        await hub.stop()

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts_then_resets_on_subscribe(self) -> None:
        failures = [TrackingConnectionError(f"refused {n}") for n in range(5)]
        transport = FakeTransport(*failures)
        sleep = RecordingSleep()
        hub = SubscriptionHub(
            transport,
            max_reconnect_attempts=5,
            reconnect_base_delay=1.0,
            reconnect_max_delay=5.0,
            sleep=sleep,
        )
        errors: list[Exception] = []

        hub.subscribe("v1", EntityType.VEHICLE, lambda _: None, errors.append)
        await _until(lambda: hub.state is HubState.FAILED)

        assert transport.attempts == 5
        assert sleep.delays == [1.0, 2.0, 4.0, 5.0]
        assert errors == failures
        assert hub.retry_count == 5

        conn = FakeConnection()
        transport.outcomes.append(conn)
        hub.subscribe("v2", EntityType.VEHICLE, lambda _: None)
        assert await hub.wait_until_connected(1.0)
        assert sorted(m["entityId"] for m in conn.sent) == ["v1", "v2"]
        assert hub.retry_count == 0

        await hub.stop()

    @pytest.mark.asyncio
    async def test_stop_keeps_registrations(self) -> None:
        conn = FakeConnection()
        hub = SubscriptionHub(FakeTransport(conn))
        hub.subscribe("v1", EntityType.VEHICLE, lambda _: None)
        assert await hub.wait_until_connected(1.0)

        await hub.stop()

        assert conn.closed
        assert hub.state is HubState.DISCONNECTED
        assert hub.active_keys() == [(EntityType.VEHICLE, "v1")]
