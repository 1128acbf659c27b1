"""
Table-side ordering client core: realtime transport, cart and order stores,
partial payment reconciliation and reservation lifecycle watching
"""
from .cart_store import CartStore
from .client import TablesideClient
from .order_store import OrderStore, OrderState
from .payment import PaymentReconciler, PaymentResult, fingerprint
from .reservation_watcher import ReservationStatusWatcher
from .session import Session, SessionStore
from .transport import TransportClient, EventKind, ConnectionState

__all__ = [
    "CartStore",
    "TablesideClient",
    "OrderStore",
    "OrderState",
    "PaymentReconciler",
    "PaymentResult",
    "fingerprint",
    "ReservationStatusWatcher",
    "Session",
    "SessionStore",
    "TransportClient",
    "EventKind",
    "ConnectionState",
]
