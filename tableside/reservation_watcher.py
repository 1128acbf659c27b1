"""
Session teardown when the reservation is closed server-side
"""
import inspect
import logging
import sqlite3

from .config import CLOSED_RESERVATION_STATUSES
from .transport import EventKind

logger = logging.getLogger(__name__)

CLOSED_TITLE = "Session ended"
CLOSED_MESSAGE = "Your table has been closed. Thank you for your visit!"


class ReservationStatusWatcher:
    """Fires the teardown at most once per reservation id"""

    def __init__(self, transport, session_store, notify=None, on_closed=None,
                 closed_statuses=CLOSED_RESERVATION_STATUSES):
        self.transport = transport
        self.session_store = session_store
        self.notify = notify
        self.on_closed = on_closed
        self.closed_statuses = {s.lower() for s in closed_statuses}
        self.reservation_id = None
        self.fired = False
        self._subscriptions = []

    def watch(self, reservation_id):
        if reservation_id != self.reservation_id:
            self.fired = False
        self.reservation_id = reservation_id
        if not self._subscriptions:
            self._subscriptions = [
                self.transport.subscribe(EventKind.RESERVATION_STATUS_CHANGED, self._on_status_changed),
                self.transport.subscribe(EventKind.RESERVATION, self._on_reservation),
            ]
        logger.info(f"[RESERVATION] Watching reservation {reservation_id}")

    def stop(self):
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions = []
        self.reservation_id = None
        self.fired = False

    def _on_status_changed(self, payload):
        return self._handle(payload.get("reservationId"), payload.get("status"))

    def _on_reservation(self, payload):
        if payload.get("type") != "statusUpdated":
            return None
        data = payload.get("data") or {}
        reservation_id = data.get("_id") or data.get("id") or data.get("reservationId")
        return self._handle(reservation_id, data.get("status"))

    def _handle(self, reservation_id, status):
        if not self.reservation_id or str(reservation_id) != str(self.reservation_id):
            return None
        if str(status).lower() not in self.closed_statuses:
            return None
        if self.fired:
            logger.debug(f"[RESERVATION] Duplicate closure event for {reservation_id} ignored")
            return None
        self.fired = True
        logger.info(f"[RESERVATION] Reservation {reservation_id} is {status}, ending session")

        try:
            self.session_store.clear()
        except (sqlite3.Error, OSError) as e:
            logger.error(f"[RESERVATION] Could not clear session storage: {e}")

        if self.notify:
            try:
                self.notify(CLOSED_TITLE, CLOSED_MESSAGE)
            except Exception:
                logger.exception("[RESERVATION] Closure notification failed")
        if self.on_closed:
            result = self.on_closed()
            if inspect.isawaitable(result):
                return result
        return None
