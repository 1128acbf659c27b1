"""
Realtime duplex transport scoped to a restaurant (and optionally a table)

One websocket connection at a time. Rooms are rejoined on every successful
connection, reconnection uses capped exponential backoff with jitter, and an
application heartbeat closes half-open connections. Messages sent while
disconnected are dropped, never queued: dependents reconcile over REST.

Wire framing (JSON text frames):
    {"event": name, "data": {...}, "id": ackId}      client -> server
    {"event": "ack", "id": ackId, "success": bool, "data": ..., "error": ...}
"""
import asyncio
import inspect
import json
import logging
import random
import time
import uuid
from enum import Enum

from websockets.asyncio.client import connect as websocket_connect
from websockets.exceptions import ConnectionClosed, InvalidStatus, WebSocketException

from . import config
from .errors import AuthError, ChannelDegraded, ChannelError, RequestTimeout, ValidationError

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    ORDER = "order"
    ORDER_UPDATED = "order-updated"
    RESERVATION = "reservation"
    RESERVATION_STATUS_CHANGED = "reservation-status-changed"
    TABLE_STATUS_UPDATED = "table_status_updated"
    SERVER_MESSAGE = "server_message"
    NOTIFICATION = "notification"
    # Local lifecycle events, never read from the wire
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    DEGRADED = "degraded"


LIFECYCLE_KINDS = frozenset({EventKind.CONNECTED, EventKind.DISCONNECTED, EventKind.DEGRADED})


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class Subscription:
    """Handle returned by subscribe(); calling it (or unsubscribe()) removes exactly this registration"""

    def __init__(self, transport, kind, handler):
        self._transport = transport
        self.kind = kind
        self.handler = handler
        self.active = True

    def unsubscribe(self):
        if not self.active:
            return
        self.active = False
        self._transport._remove_subscription(self)

    __call__ = unsubscribe


def backoff_delay(attempt, base, cap, jitter=0.0, rand=random.random):
    """Delay before reconnect attempt number `attempt` (1-based)"""
    delay = min(cap, base * (2 ** max(attempt - 1, 0)))
    if jitter:
        delay *= 1 + jitter * (2 * rand() - 1)
    return max(0.0, min(delay, cap))


class TransportClient:
    def __init__(self, url, credentials=None, connector=None,
                 heartbeat_interval=config.HEARTBEAT_INTERVAL,
                 heartbeat_timeout=config.HEARTBEAT_TIMEOUT,
                 ack_timeout=config.ACK_TIMEOUT,
                 open_timeout=config.OPEN_TIMEOUT,
                 reconnect_attempts=config.RECONNECT_ATTEMPTS,
                 reconnect_delay=config.RECONNECT_DELAY,
                 reconnect_delay_max=config.RECONNECT_DELAY_MAX,
                 jitter=config.RECONNECT_JITTER):
        self.url = url
        self.credentials = credentials
        self._connector = connector or self._websocket_connect
        self.heartbeat_interval = heartbeat_interval
        self.heartbeat_timeout = heartbeat_timeout
        self.ack_timeout = ack_timeout
        self.open_timeout = open_timeout
        self.reconnect_attempts = reconnect_attempts
        self.reconnect_delay = reconnect_delay
        self.reconnect_delay_max = reconnect_delay_max
        self.jitter = jitter

        self.state = ConnectionState.DISCONNECTED
        self.degraded = False
        self.restaurant_id = None
        self.table_id = None
        self._token = None
        self._conn = None
        self._runner = None
        self._heartbeat_task = None
        self._closing = False
        self._connected = asyncio.Event()
        self._last_received = 0.0
        self._subscriptions = {}
        self._pending = {}
        self._reservations = set()
        self._handler_tasks = set()

    @property
    def is_connected(self):
        return self.state == ConnectionState.CONNECTED and self._conn is not None

    # ============ Subscriptions ============

    def subscribe(self, kind, handler):
        kind = EventKind(kind)
        subscription = Subscription(self, kind, handler)
        self._subscriptions.setdefault(kind, []).append(subscription)
        return subscription

    on = subscribe

    def off(self, kind, handler):
        """Remove one registration of `handler` for `kind`"""
        for subscription in list(self._subscriptions.get(EventKind(kind), [])):
            if subscription.handler == handler:
                subscription.unsubscribe()
                return True
        return False

    def _remove_subscription(self, subscription):
        handlers = self._subscriptions.get(subscription.kind, [])
        if subscription in handlers:
            handlers.remove(subscription)
        if not handlers:
            self._subscriptions.pop(subscription.kind, None)

    def handler_count(self, kind=None):
        if kind is not None:
            return len(self._subscriptions.get(EventKind(kind), []))
        return sum(len(h) for h in self._subscriptions.values())

    def _dispatch(self, kind, payload):
        for subscription in list(self._subscriptions.get(kind, [])):
            if not subscription.active:
                continue
            try:
                result = subscription.handler(payload)
            except Exception:
                logger.exception(f"[TRANSPORT] Handler for {kind.value} failed")
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._handler_tasks.add(task)
                task.add_done_callback(self._handler_done)

    def _handler_done(self, task):
        self._handler_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"[TRANSPORT] Async handler failed: {error!r}")

    async def drain(self):
        """Wait for handler coroutines scheduled so far"""
        while self._handler_tasks:
            await asyncio.gather(*list(self._handler_tasks), return_exceptions=True)

    # ============ Lifecycle ============

    async def connect(self, restaurant_id, table_id=None, token=None):
        """Start (or keep) the connection for a scope; a new scope tears down and reconnects"""
        if not restaurant_id:
            raise ValidationError("restaurantId is required to connect")

        running = self._runner is not None and not self._runner.done()
        if running and (restaurant_id, table_id) == (self.restaurant_id, self.table_id):
            logger.debug(f"[TRANSPORT] Already connected to restaurant {restaurant_id}")
            return

        if running:
            logger.info(f"[TRANSPORT] Scope change {self.restaurant_id} -> {restaurant_id}, reconnecting")
            await self._teardown()
        if (restaurant_id, table_id) != (self.restaurant_id, self.table_id):
            self._reservations.clear()

        self.restaurant_id = restaurant_id
        self.table_id = table_id
        if token is not None:
            self._token = token
        self.degraded = False
        self._closing = False
        self._runner = asyncio.create_task(self._run())
        logger.info(f"[TRANSPORT] Connecting to restaurant {restaurant_id}...")

    async def wait_connected(self, timeout=None):
        try:
            await asyncio.wait_for(self._connected.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def disconnect(self):
        """Intentional disconnect: leave rooms, stop timers, drop every subscription"""
        if self._runner is None and self._conn is None:
            return
        logger.info("[TRANSPORT] Disconnecting...")
        if self.is_connected:
            await self.notify("leave-restaurant", {"restaurantId": self.restaurant_id})
            if self.table_id:
                await self.notify("leave-table", {"restaurantId": self.restaurant_id, "tableId": self.table_id})
        await self._teardown()
        self._subscriptions.clear()
        self._reservations.clear()
        self.restaurant_id = None
        self.table_id = None

    async def _teardown(self):
        self._closing = True
        conn = self._conn
        if conn is not None:
            try:
                await conn.close()
            except (ConnectionClosed, OSError) as e:
                logger.debug(f"[TRANSPORT] Close error ignored: {e}")

        runner = self._runner
        if runner is not None and not runner.done():
            runner.cancel()
            try:
                await runner
            except asyncio.CancelledError:
                pass
        self._runner = None
        self._conn = None
        self._stop_heartbeat()
        self._connected.clear()
        self._fail_pending(ChannelError("Transport disconnected"))
        for task in list(self._handler_tasks):
            task.cancel()
        self._set_state(ConnectionState.DISCONNECTED)

    def _set_state(self, state):
        if state != self.state:
            logger.info(f"[TRANSPORT] {self.state.value} -> {state.value}")
            self.state = state

    async def _websocket_connect(self, url, headers):
        try:
            return await websocket_connect(
                url,
                additional_headers=headers or None,
                open_timeout=self.open_timeout,
                ping_interval=self.heartbeat_interval,
                ping_timeout=self.heartbeat_timeout,
            )
        except InvalidStatus as e:
            status = e.response.status_code
            if status in (401, 403):
                raise AuthError(f"Socket authentication refused (HTTP {status})", status=status) from e
            raise

    async def _open(self):
        headers = {}
        token = self._token
        if token is None and self.credentials:
            token = self.credentials.get_token()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return await asyncio.wait_for(self._connector(self.url, headers), self.open_timeout)

    def _backoff(self, attempt):
        return backoff_delay(attempt, self.reconnect_delay, self.reconnect_delay_max, self.jitter)

    async def _run(self):
        failures = 0
        reconnecting = False
        while not self._closing:
            self._set_state(ConnectionState.RECONNECTING if reconnecting else ConnectionState.CONNECTING)
            try:
                conn = await self._open()
            except AuthError as e:
                logger.error(f"[TRANSPORT] Authentication error, stopping reconnection: {e}")
                if self.credentials:
                    self.credentials.clear()
                self._token = None
                self._set_state(ConnectionState.DISCONNECTED)
                self._dispatch(EventKind.DISCONNECTED, {"reason": "auth", "error": e})
                return
            except (OSError, asyncio.TimeoutError, WebSocketException) as e:
                failures += 1
                if failures > self.reconnect_attempts:
                    self.degraded = True
                    self._set_state(ConnectionState.DISCONNECTED)
                    error = ChannelDegraded(f"Gave up after {failures} failed connection attempts")
                    logger.error(f"[TRANSPORT] {error}")
                    self._dispatch(EventKind.DEGRADED, {"error": error, "attempts": failures})
                    return
                delay = self._backoff(failures)
                logger.warning(f"[TRANSPORT] Connection failed ({e!r}), attempt #{failures} in {delay:.1f}s")
                reconnecting = True
                await asyncio.sleep(delay)
                continue

            failures = 0
            self._conn = conn
            self._last_received = time.monotonic()
            self._set_state(ConnectionState.CONNECTED)
            await self._join_rooms()
            self._heartbeat_task = asyncio.create_task(self._heartbeat(conn))
            self._connected.set()
            self._dispatch(EventKind.CONNECTED, {"reconnected": reconnecting})

            try:
                await self._receive(conn)
            except (ConnectionClosed, OSError) as e:
                logger.warning(f"[TRANSPORT] Connection dropped: {e!r}")
            finally:
                self._stop_heartbeat()
                self._conn = None
                self._connected.clear()
                self._fail_pending(ChannelError("Connection lost before acknowledgement"))

            if self._closing:
                break
            self._set_state(ConnectionState.RECONNECTING)
            self._dispatch(EventKind.DISCONNECTED, {"reason": "dropped"})
            reconnecting = True
            await asyncio.sleep(self._backoff(1))

    async def _receive(self, conn):
        while True:
            raw = await conn.recv()
            self._last_received = time.monotonic()
            self._handle_frame(raw)

    def _handle_frame(self, raw):
        try:
            frame = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("[TRANSPORT] Ignoring non-JSON frame")
            return
        if not isinstance(frame, dict):
            return

        name = frame.get("event")
        if name == "ack":
            self._resolve_ack(frame)
            return
        if name == "server-pong":
            return

        try:
            kind = EventKind(name)
        except ValueError:
            logger.debug(f"[TRANSPORT] Ignoring event {name}")
            return
        if kind in LIFECYCLE_KINDS:
            return
        logger.debug(f"[TRANSPORT] Event {kind.value} received")
        self._dispatch(kind, frame.get("data") or {})

    def _resolve_ack(self, frame):
        future = self._pending.get(frame.get("id"))
        if future is None or future.done():
            return
        if frame.get("success"):
            future.set_result(frame.get("data"))
        else:
            future.set_exception(ChannelError(frame.get("error") or "Negative acknowledgement"))

    def _fail_pending(self, error):
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()

    # ============ Heartbeat ============

    async def _heartbeat(self, conn):
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            silence = time.monotonic() - self._last_received
            if silence > self.heartbeat_timeout:
                logger.warning(f"[TRANSPORT] Nothing received for {silence:.0f}s, closing half-open connection")
                try:
                    await conn.close()
                except (ConnectionClosed, OSError):
                    pass
                return
            try:
                await conn.send(json.dumps(self._frame("client-ping", {})))
            except (ConnectionClosed, OSError):
                return

    def _stop_heartbeat(self):
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None

    # ============ Rooms ============

    async def _join_rooms(self):
        await self.notify("join-restaurant", {"restaurantId": self.restaurant_id})
        if self.table_id:
            await self.notify("join-table", {"restaurantId": self.restaurant_id, "tableId": self.table_id})
        for reservation_id in sorted(self._reservations):
            await self.notify("join-reservation", {"reservationId": reservation_id})

    async def join_reservation(self, reservation_id):
        """Join a reservation room now (if connected) and on every reconnect"""
        self._reservations.add(reservation_id)
        if self.is_connected:
            await self.notify("join-reservation", {"reservationId": reservation_id})

    async def leave_reservation(self, reservation_id):
        self._reservations.discard(reservation_id)
        if self.is_connected:
            await self.notify("leave-reservation", {"reservationId": reservation_id})

    # ============ Sending ============

    def _frame(self, name, payload, ack_id=None):
        data = {
            **(payload or {}),
            "timestamp": int(time.time() * 1000),
            "restaurantId": self.restaurant_id,
            "tableId": self.table_id,
        }
        frame = {"event": getattr(name, "value", name), "data": data}
        if ack_id:
            data["eventId"] = ack_id
            frame["id"] = ack_id
        return frame

    async def notify(self, name, payload=None):
        """Fire-and-forget; returns False (message dropped) when not connected"""
        conn = self._conn
        name = getattr(name, "value", name)
        if conn is None or self.state != ConnectionState.CONNECTED:
            logger.warning(f"[TRANSPORT] Not connected, dropping event {name}")
            return False
        try:
            await conn.send(json.dumps(self._frame(name, payload)))
        except (ConnectionClosed, OSError) as e:
            logger.warning(f"[TRANSPORT] Send failed for {name}: {e!r}")
            return False
        return True

    emit = notify

    async def request(self, name, payload=None, timeout=None):
        """Send and wait for an acknowledgement.

        RequestTimeout means the outcome is unknown: retry idempotently,
        never treat it as a confirmed failure.
        """
        conn = self._conn
        name = getattr(name, "value", name)
        if conn is None or self.state != ConnectionState.CONNECTED:
            raise ChannelError(f"Socket not connected, cannot send {name}")

        ack_id = f"evt_{uuid.uuid4().hex[:12]}"
        future = asyncio.get_running_loop().create_future()
        self._pending[ack_id] = future
        try:
            await conn.send(json.dumps(self._frame(name, payload, ack_id)))
            return await asyncio.wait_for(future, timeout or self.ack_timeout)
        except asyncio.TimeoutError as e:
            logger.warning(f"[TRANSPORT] ACK timeout for {name} (ID: {ack_id})")
            raise RequestTimeout(f"No acknowledgement for {name}") from e
        except (ConnectionClosed, OSError) as e:
            raise ChannelError(f"Send failed for {name}: {e!r}") from e
        finally:
            self._pending.pop(ack_id, None)

    emit_with_ack = request
