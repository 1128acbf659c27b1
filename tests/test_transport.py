import asyncio

import pytest

from conftest import FakeConnector, make_transport, until
from tableside.credentials import CredentialProvider, TOKEN_KEY
from tableside.errors import AuthError, ChannelDegraded, ChannelError, RequestTimeout, ValidationError
from tableside.storage import MemoryStorage
from tableside.transport import ConnectionState, EventKind, backoff_delay


def test_backoff_is_exponential_and_capped():
    assert [backoff_delay(n, 1, 30) for n in range(1, 7)] == [1, 2, 4, 8, 16, 30]
    assert backoff_delay(10, 1, 30) == 30


def test_backoff_jitter_stays_within_bounds():
    assert backoff_delay(3, 1, 30, jitter=0.5, rand=lambda: 0.0) == 2.0
    assert backoff_delay(3, 1, 30, jitter=0.5, rand=lambda: 1.0) == 6.0
    assert backoff_delay(6, 1, 30, jitter=0.5, rand=lambda: 1.0) == 30


def test_connect_joins_rooms_and_sends_token():
    async def scenario():
        connector = FakeConnector()
        transport = make_transport(connector)
        await transport.connect("r1", "t1", token="secret")
        assert await transport.wait_connected(1)

        assert transport.state == ConnectionState.CONNECTED
        assert connector.headers[0] == {"Authorization": "Bearer secret"}
        assert connector.last.events() == ["join-restaurant", "join-table"]
        assert connector.last.sent[1]["data"]["tableId"] == "t1"
        await transport.disconnect()

    asyncio.run(scenario())


def test_connect_requires_restaurant():
    transport = make_transport(FakeConnector())
    with pytest.raises(ValidationError):
        asyncio.run(transport.connect(None))


def test_connect_is_idempotent_per_scope():
    async def scenario():
        connector = FakeConnector()
        transport = make_transport(connector)
        await transport.connect("r1")
        await transport.wait_connected(1)
        await transport.connect("r1")
        assert connector.calls == 1

        await transport.connect("r2")
        await until(lambda: connector.calls == 2 and transport.is_connected)
        assert connector.connections[0].closed
        assert connector.last.sent[0]["data"]["restaurantId"] == "r2"
        await transport.disconnect()

    asyncio.run(scenario())


def test_subscriptions_deliver_and_tear_down_precisely():
    async def scenario():
        connector = FakeConnector()
        transport = make_transport(connector)
        first, second = [], []
        sub = transport.subscribe(EventKind.ORDER_UPDATED, first.append)
        transport.on("order-updated", second.append)
        assert transport.handler_count(EventKind.ORDER_UPDATED) == 2

        await transport.connect("r1")
        await transport.wait_connected(1)
        connector.last.push("order-updated", {"orderId": "o1"})
        await until(lambda: len(second) == 1)
        assert first == [{"orderId": "o1"}]

        sub.unsubscribe()
        sub()
        assert transport.handler_count(EventKind.ORDER_UPDATED) == 1
        connector.last.push("order-updated", {"orderId": "o2"})
        await until(lambda: len(second) == 2)
        assert len(first) == 1

        assert transport.off(EventKind.ORDER_UPDATED, second.append)
        assert transport.handler_count() == 0
        await transport.disconnect()

    asyncio.run(scenario())


def test_failing_handler_does_not_block_others():
    async def scenario():
        connector = FakeConnector()
        transport = make_transport(connector)
        received = []

        def broken(payload):
            raise RuntimeError("boom")

        async def slow(payload):
            await asyncio.sleep(0)
            received.append(payload)

        transport.subscribe(EventKind.NOTIFICATION, broken)
        transport.subscribe(EventKind.NOTIFICATION, slow)
        await transport.connect("r1")
        await transport.wait_connected(1)
        connector.last.push("notification", {"text": "hello"})
        await until(lambda: received)
        await transport.drain()
        assert received == [{"text": "hello"}]
        await transport.disconnect()

    asyncio.run(scenario())


def test_lifecycle_kinds_from_the_wire_are_ignored():
    async def scenario():
        connector = FakeConnector()
        transport = make_transport(connector)
        events = []
        transport.subscribe(EventKind.DEGRADED, events.append)
        transport.subscribe(EventKind.SERVER_MESSAGE, events.append)
        await transport.connect("r1")
        await transport.wait_connected(1)
        connector.last.push("degraded", {"fake": True})
        connector.last.push("server_message", {"text": "hi"})
        await until(lambda: events)
        assert events == [{"text": "hi"}]
        await transport.disconnect()

    asyncio.run(scenario())


def test_notify_while_disconnected_is_dropped():
    async def scenario():
        transport = make_transport(FakeConnector())
        assert await transport.notify("client-ping", {}) is False
        with pytest.raises(ChannelError):
            await transport.request("join-table", {"tableId": "t1"})

    asyncio.run(scenario())


def test_request_resolves_with_ack():
    async def scenario():
        connector = FakeConnector()
        transport = make_transport(connector)
        await transport.connect("r1")
        await transport.wait_connected(1)

        task = asyncio.create_task(transport.request("join-reservation", {"reservationId": "res1"}))
        await until(lambda: any("id" in f for f in connector.last.sent))
        frame = next(f for f in connector.last.sent if "id" in f)
        assert frame["id"].startswith("evt_")
        assert frame["data"]["eventId"] == frame["id"]

        connector.last.push("ack", {"room": "reservation:res1"}, id=frame["id"], success=True)
        assert await task == {"room": "reservation:res1"}
        await transport.disconnect()

    asyncio.run(scenario())


def test_request_negative_ack_and_timeout():
    async def scenario():
        connector = FakeConnector()
        transport = make_transport(connector, ack_timeout=0.05)
        await transport.connect("r1")
        await transport.wait_connected(1)

        with pytest.raises(RequestTimeout):
            await transport.request("join-table", {"tableId": "t1"})

        task = asyncio.create_task(transport.request("bogus", {}))
        await until(lambda: sum("id" in f for f in connector.last.sent) == 2)
        frame = [f for f in connector.last.sent if "id" in f][-1]
        connector.last.push("ack", None, id=frame["id"], success=False, error="Unknown event")
        with pytest.raises(ChannelError):
            await task
        await transport.disconnect()

    asyncio.run(scenario())


def test_reconnect_rejoins_rooms():
    async def scenario():
        connector = FakeConnector()
        transport = make_transport(connector)
        lifecycle = []
        transport.subscribe(EventKind.CONNECTED, lifecycle.append)
        transport.subscribe(EventKind.DISCONNECTED, lifecycle.append)

        await transport.connect("r1", "t1")
        await transport.wait_connected(1)
        await transport.join_reservation("res1")
        await transport.join_reservation("res2")
        await transport.leave_reservation("res2")

        connector.last.drop()
        await until(lambda: len(connector.connections) == 2 and transport.is_connected)
        assert connector.last.events() == ["join-restaurant", "join-table", "join-reservation"]
        assert connector.last.sent[2]["data"]["reservationId"] == "res1"
        assert lifecycle == [{"reconnected": False}, {"reason": "dropped"}, {"reconnected": True}]
        await transport.disconnect()

    asyncio.run(scenario())


def test_pending_request_fails_when_connection_drops():
    async def scenario():
        connector = FakeConnector()
        transport = make_transport(connector, ack_timeout=5)
        await transport.connect("r1")
        await transport.wait_connected(1)

        task = asyncio.create_task(transport.request("join-table", {"tableId": "t1"}))
        await until(lambda: any("id" in f for f in connector.last.sent))
        connector.last.drop()
        with pytest.raises(ChannelError):
            await task
        await transport.disconnect()

    asyncio.run(scenario())


def test_exhausted_reconnection_degrades():
    async def scenario():
        connector = FakeConnector(failures=100)
        transport = make_transport(connector, reconnect_attempts=2)
        degraded = []
        transport.subscribe(EventKind.DEGRADED, degraded.append)

        await transport.connect("r1")
        await until(lambda: transport.degraded)
        assert connector.calls == 3
        assert transport.state == ConnectionState.DISCONNECTED
        assert isinstance(degraded[0]["error"], ChannelDegraded)

        connector.failures = 0
        await transport.connect("r1")
        assert not transport.degraded
        assert await transport.wait_connected(1)
        await transport.disconnect()

    asyncio.run(scenario())


def test_reservation_rooms_follow_the_scope_after_degradation():
    async def scenario():
        connector = FakeConnector(failures=100)
        transport = make_transport(connector, reconnect_attempts=1)
        await transport.connect("r1", "t1")
        await transport.join_reservation("res1")
        await until(lambda: transport.degraded)

        connector.failures = 0
        await transport.connect("r1", "t1")
        assert await transport.wait_connected(1)
        assert {"reservationId": "res1"} in [f["data"] for f in connector.last.sent]

        connector.failures = 100
        connector.last.drop()
        await until(lambda: transport.degraded)

        connector.failures = 0
        await transport.connect("r2", "t9")
        assert await transport.wait_connected(1)
        assert "join-table" in connector.last.events()
        assert "join-reservation" not in connector.last.events()
        await transport.disconnect()

    asyncio.run(scenario())


def test_auth_failure_stops_reconnection_and_clears_token():
    async def scenario():
        storage = MemoryStorage({TOKEN_KEY: "stale"})
        connector = FakeConnector(failures=100, error=AuthError(status=401))
        transport = make_transport(connector)
        transport.credentials = CredentialProvider(storage)
        disconnected = []
        transport.subscribe(EventKind.DISCONNECTED, disconnected.append)

        await transport.connect("r1")
        await until(lambda: disconnected)
        assert disconnected[0]["reason"] == "auth"
        assert connector.calls == 1
        assert connector.headers[0] == {"Authorization": "Bearer stale"}
        assert not transport.degraded
        assert transport.state == ConnectionState.DISCONNECTED
        assert storage.get(TOKEN_KEY) is None

    asyncio.run(scenario())


def test_heartbeat_pings_and_closes_half_open_connection():
    async def scenario():
        connector = FakeConnector()
        transport = make_transport(connector, heartbeat_interval=0.02, heartbeat_timeout=10)
        await transport.connect("r1")
        await transport.wait_connected(1)
        await until(lambda: "client-ping" in connector.last.events())
        await transport.disconnect()

        connector = FakeConnector()
        transport = make_transport(connector, heartbeat_interval=0.02, heartbeat_timeout=0.03)
        await transport.connect("r1")
        await transport.wait_connected(1)
        await until(lambda: connector.calls >= 2)
        assert connector.connections[0].closed
        await transport.disconnect()

    asyncio.run(scenario())


def test_disconnect_leaves_rooms_and_drops_subscriptions():
    async def scenario():
        connector = FakeConnector()
        transport = make_transport(connector)
        transport.subscribe(EventKind.ORDER, lambda payload: None)
        await transport.connect("r1", "t1")
        await transport.wait_connected(1)
        conn = connector.last

        await transport.disconnect()
        assert conn.events()[-2:] == ["leave-restaurant", "leave-table"]
        assert conn.closed
        assert transport.handler_count() == 0
        assert transport.state == ConnectionState.DISCONNECTED
        assert await transport.notify("client-ping") is False
        await asyncio.sleep(0.05)
        assert connector.calls == 1

    asyncio.run(scenario())
