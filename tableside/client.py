"""
Application root: owns one session's stores and wires them to the transport
"""
import logging
from datetime import datetime

from . import config
from .api import RestaurantApi
from .cart_store import CartStore
from .credentials import CredentialProvider
from .errors import ApiError, ValidationError
from .order_store import OrderStore
from .payment import PaymentReconciler
from .reservation_watcher import ReservationStatusWatcher
from .session import Session, SessionStore
from .storage import SqliteStorage
from .transport import EventKind, TransportClient

logger = logging.getLogger(__name__)


class TablesideClient:
    def __init__(self, api, transport, storage, credentials=None, restaurant_id=None,
                 restaurant_name="Restaurant", notify=None, on_session_closed=None,
                 on_conflict=None, closed_statuses=config.CLOSED_RESERVATION_STATUSES):
        self.api = api
        self.transport = transport
        self.storage = storage
        self.credentials = credentials
        self.restaurant_id = restaurant_id
        self.restaurant_name = restaurant_name
        self.on_session_closed = on_session_closed

        self.session_store = SessionStore(storage)
        self.cart = CartStore(storage)
        self.orders = OrderStore(api, storage, on_conflict=on_conflict)
        self.watcher = ReservationStatusWatcher(
            transport, self.session_store,
            notify=notify,
            on_closed=self._on_reservation_closed,
            closed_statuses=closed_statuses,
        )
        self.session = None
        self._subscriptions = []

    @classmethod
    def from_settings(cls, settings=None, storage=None, **kwargs):
        """Build the whole object graph from `config.load_settings()`"""
        settings = settings or config.load_settings()
        storage = storage or SqliteStorage(settings["storage_path"])
        credentials = CredentialProvider(storage, settings.get("secret_name"), settings.get("region"))
        api = RestaurantApi(settings["api_base_url"], credentials, timeout=settings["request_timeout"])
        transport = TransportClient(settings["socket_url"], credentials, **settings["transport"])
        return cls(
            api, transport, storage, credentials,
            restaurant_id=settings.get("restaurant_id"),
            restaurant_name=settings.get("restaurant_name", "Restaurant"),
            closed_statuses=settings["closed_statuses"],
            **kwargs,
        )

    @property
    def degraded(self):
        return self.transport.degraded

    # ============ Session ============

    async def join_table(self, user_name, table_id, restaurant_id=None, table_number=None, notes=None):
        """Get a token, create the reservation, then go realtime"""
        restaurant_id = restaurant_id or self.restaurant_id
        if not user_name or not table_id or not restaurant_id:
            raise ValidationError("Name, table and restaurant are required to join a table")

        client_id = self.session_store.get_or_create_client_id()
        previous = self.session_store.load()

        token = await self.api.issue_token(user_name, table_id, restaurant_id)
        if self.credentials:
            if token:
                self.credentials.set_token(token)
            else:
                self.credentials.ensure_token(client_id, restaurant_id)

        now = datetime.now()
        reservation = await self.api.create_reservation(
            table_id, restaurant_id, client_id, user_name,
            now.strftime("%Y-%m-%d"), now.strftime("%H:%M"), notes,
        )
        reservation_id = reservation.get("_id") or reservation.get("id") or reservation.get("reservationId")
        if not reservation_id:
            raise ApiError(200, "Reservation created without an id")

        session = Session(
            restaurant_id=restaurant_id,
            table_id=table_id,
            reservation_id=reservation_id,
            client_id=client_id,
            user_name=user_name,
            table_number=table_number,
        )
        self.session_store.save(session)

        fresh = previous is None or (previous.user_name, previous.reservation_id) != (user_name, reservation_id)
        self.cart.init(user_name, clear_previous=fresh)
        if fresh:
            self.orders.reset_order()
        self.orders.init()
        self.session = session
        logger.info(f"[SESSION] {user_name} joined table {table_id} (reservation {reservation_id})")

        await self._start_realtime(session)
        return session

    async def resume(self):
        """Restore the persisted session, reconnect and pull the server state"""
        session = self.session_store.load()
        if session is None:
            return None
        self.session = session
        if session.user_name:
            self.cart.init(session.user_name)
        self.orders.init()
        if session.reservation_id:
            await self._start_realtime(session)
            await self.refresh()
        logger.info(f"[SESSION] Session resumed for reservation {session.reservation_id}")
        return session

    async def reset(self):
        """Tear the session down; the permanent client id survives"""
        self.watcher.stop()
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions = []
        await self.transport.disconnect()
        self.orders.reset_order()
        self.cart.clear_cart()
        self.cart.reset()
        self.session_store.clear()
        self.session = None
        logger.info("[SESSION] Session reset")

    def close(self):
        self.api.close()

    # ============ Realtime ============

    async def _start_realtime(self, session):
        token = self.credentials.get_token() if self.credentials else None
        await self.transport.connect(session.restaurant_id, session.table_id, token=token)
        if not self._subscriptions:
            self._subscriptions = [
                self.transport.subscribe(EventKind.ORDER, self._on_order_event),
                self.transport.subscribe(EventKind.ORDER_UPDATED, self._on_order_event),
                self.transport.subscribe(EventKind.CONNECTED, self._on_connected),
                self.transport.subscribe(EventKind.DEGRADED, self._on_degraded),
            ]
        await self.transport.join_reservation(session.reservation_id)
        self.watcher.watch(session.reservation_id)

    def _on_order_event(self, payload):
        if self.session is None:
            return None
        reservation_id = payload.get("reservationId")
        if reservation_id and str(reservation_id) != str(self.session.reservation_id):
            return None
        if not reservation_id:
            order_id = payload.get("orderId") or payload.get("_id")
            known = {line.get("orderId") for line in self.orders.order_lines}
            if order_id not in known and order_id != self.orders.active_order_id:
                return None
        return self.refresh()

    def _on_connected(self, payload):
        if payload.get("reconnected") and self.session is not None:
            logger.info("[SESSION] Reconnected, refreshing orders")
            return self.refresh()
        return None

    def _on_degraded(self, payload):
        logger.warning("[SESSION] Realtime channel degraded, orders refresh on demand only")

    async def _on_reservation_closed(self):
        session = self.session
        if session is not None and session.reservation_id:
            await self.transport.leave_reservation(session.reservation_id)
        self.orders.reset_order()
        self.cart.clear_cart()
        self.cart.reset()
        self.session = None
        if self.on_session_closed:
            self.on_session_closed()

    # ============ Orders and payment ============

    async def refresh(self):
        """Authoritative pull of the reservation's orders"""
        if self.session is None or not self.session.reservation_id:
            return None
        return await self.orders.fetch_orders_by_reservation(self.session.reservation_id)

    async def checkout(self, catalog, payload=None):
        """Turn the cart into a submitted order; the cart is cleared on success"""
        if self.session is None:
            raise ValidationError("No active session. Please join a table first.")
        self.orders.load_cart(self.cart, catalog)
        data = await self.orders.submit_order(self.session, payload)
        self.cart.clear_cart()
        return data

    async def open_payment(self):
        """Refresh, then hand back a loaded payment reconciler"""
        if self.session is None or not self.session.reservation_id:
            raise ValidationError("No active reservation to pay for")
        await self.refresh()
        reconciler = PaymentReconciler(
            self.orders, self.api, self.storage,
            reservation_id=self.session.reservation_id,
            order_id=self.orders.active_order_id,
            restaurant_name=self.restaurant_name,
            table_number=self.session.table_number,
            user_name=self.session.user_name,
        )
        return reconciler.load()
