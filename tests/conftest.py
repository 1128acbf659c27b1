"""Shared fakes: REST collaborator, websocket connection and connector"""
import asyncio
import copy
import json

import pytest

from tableside.storage import MemoryStorage
from tableside.transport import TransportClient

PRODUCT_A = {"_id": "A", "name": "Burger", "price": 5.0}
PRODUCT_B = {"_id": "B", "name": "Soda", "price": 3.0}
PRODUCT_C = {"_id": "C", "name": "Salad", "price": 7.5}
CATALOG = [PRODUCT_A, PRODUCT_B, PRODUCT_C]


class FakeApi:
    """In-memory stand-in for RestaurantApi"""

    def __init__(self):
        self.orders = []
        self.calls = []
        self.fail = {}
        self.gate = None
        self.paid = []
        self.closed = []
        self.reservation = {"_id": "res1", "status": "ouverte"}
        self.token = "guest-token"

    async def _enter(self, name, *args):
        self.calls.append((name,) + args)
        if self.gate is not None:
            await self.gate.wait()
        if name in self.fail:
            raise self.fail[name]

    async def issue_token(self, user_name, table_id, restaurant_id):
        await self._enter("issue_token", user_name, table_id, restaurant_id)
        return self.token

    async def create_reservation(self, table_id, restaurant_id, client_id, client_name,
                                 reservation_date, reservation_time, notes=None):
        await self._enter("create_reservation", table_id, client_id)
        return dict(self.reservation)

    async def create_order(self, table_id, reservation_id, client_id, items, total,
                           restaurant_id=None, client_name=None):
        await self._enter("create_order", reservation_id, total)
        order_id = f"ord{len(self.orders) + 1}"
        self.orders.append({
            "_id": order_id,
            "reservationId": reservation_id,
            "clientId": client_id,
            "tableId": table_id,
            "items": [dict(i) for i in items],
            "total": total,
            "status": "in_progress",
            "paid": False,
        })
        return {"orderId": order_id, "status": "in_progress"}

    async def get_active_order(self):
        await self._enter("get_active_order")
        active = [o for o in self.orders if not o["paid"] and o["status"] != "completed"]
        return copy.deepcopy(active[0]) if active else None

    async def get_orders_by_reservation(self, reservation_id):
        await self._enter("get_orders_by_reservation", reservation_id)
        return [copy.deepcopy(o) for o in self.orders if o["reservationId"] == reservation_id]

    async def mark_order_paid(self, order_id):
        await self._enter("mark_order_paid", order_id)
        for order in self.orders:
            if order["_id"] == order_id:
                order["paid"] = True
        self.paid.append(order_id)
        return {"success": True}

    async def close_reservation(self, reservation_id):
        await self._enter("close_reservation", reservation_id)
        self.closed.append(reservation_id)
        return {"success": True}

    def close(self):
        pass


class FakeConnection:
    def __init__(self):
        self.sent = []
        self.incoming = asyncio.Queue()
        self.closed = False

    async def send(self, raw):
        if self.closed:
            raise ConnectionResetError("connection closed")
        self.sent.append(json.loads(raw))

    async def recv(self):
        item = await self.incoming.get()
        if item is None:
            raise ConnectionResetError("connection closed")
        return item

    async def close(self):
        if not self.closed:
            self.closed = True
            self.incoming.put_nowait(None)

    def drop(self):
        self.closed = True
        self.incoming.put_nowait(None)

    def push(self, event, data=None, **extra):
        self.incoming.put_nowait(json.dumps({"event": event, "data": data or {}, **extra}))

    def events(self):
        return [frame["event"] for frame in self.sent]


class FakeConnector:
    """Connector callable; the first `failures` attempts raise `error`"""

    def __init__(self, failures=0, error=None):
        self.failures = failures
        self.error = error or ConnectionRefusedError("refused")
        self.calls = 0
        self.headers = []
        self.connections = []
        self.gate = None

    async def __call__(self, url, headers):
        self.calls += 1
        self.headers.append(headers)
        if self.gate is not None:
            await self.gate.wait()
        if self.calls <= self.failures:
            raise self.error
        conn = FakeConnection()
        self.connections.append(conn)
        return conn

    @property
    def last(self):
        return self.connections[-1]


def make_transport(connector, **kwargs):
    options = {
        "heartbeat_interval": 60,
        "heartbeat_timeout": 120,
        "ack_timeout": 1,
        "open_timeout": 1,
        "reconnect_attempts": 3,
        "reconnect_delay": 0,
        "reconnect_delay_max": 0,
        "jitter": 0,
    }
    options.update(kwargs)
    return TransportClient("ws://sandbox/ws", connector=connector, **options)


async def until(predicate, timeout=2.0):
    """Poll `predicate` until it holds or `timeout` seconds pass"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def api():
    return FakeApi()
