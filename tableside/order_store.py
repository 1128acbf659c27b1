"""
Draft order lifecycle, submission and authoritative refresh per reservation

Two layers are kept apart: the local draft (intent, never touched by a
fetch) and the server-confirmed order lines (overwritten wholesale by every
authoritative fetch).
"""
import logging
from enum import Enum

from .errors import ReconciliationConflict, ValidationError

logger = logging.getLogger(__name__)

ACTIVE_ORDER_KEY = "activeOrderId"
ORDER_LINES_KEY = "allOrders"


class OrderState(str, Enum):
    EMPTY = "empty"
    DRAFT = "draft"
    SUBMITTING = "submitting"
    SUBMITTED = "submitted"
    PAID = "paid"
    RESET = "reset"


def _order_id(order):
    return order.get("_id") or order.get("orderId")


def line_total(lines):
    return round(sum(float(l.get("price") or 0) * int(l.get("quantity") or 0) for l in lines), 2)


def flatten_orders(orders):
    """One record per item, enriched with its parent order's id, status and paid flag"""
    lines = []
    for order in orders:
        for item in order.get("items") or []:
            lines.append({
                **item,
                "orderId": _order_id(order),
                "orderStatus": order.get("status"),
                "paid": bool(order.get("paid")),
                "sent": True,
            })
    return lines


def pick_active_order(orders):
    """Most recent order that is neither paid nor completed"""
    active = [o for o in orders if not o.get("paid") and o.get("status") != "completed"]
    return active[-1] if active else None


def _reconcile_key(line):
    return (
        str(line.get("orderId")),
        str(line.get("productId")),
        str(line.get("name")),
        f"{float(line.get('price') or 0):.2f}",
        int(line.get("quantity") or 0),
    )


class OrderStore:
    def __init__(self, api, storage, on_conflict=None):
        self.api = api
        self.storage = storage
        self.on_conflict = on_conflict
        self.draft = []
        self.order_lines = []
        self.active_order_id = None
        self.state = OrderState.EMPTY
        self.is_loading = False
        self._generation = 0

    def init(self):
        """Restore the active order id and cached order lines"""
        self.active_order_id = self.storage.get(ACTIVE_ORDER_KEY)
        lines = self.storage.get(ORDER_LINES_KEY, [])
        self.order_lines = lines if isinstance(lines, list) else []
        if self.active_order_id:
            logger.info(f"[ORDER] Active order restored: {self.active_order_id}")
        self._settle_state()

    @property
    def has_active_order(self):
        return self.active_order_id is not None

    def _settle_state(self):
        if self.draft:
            self.state = OrderState.DRAFT
        elif self.active_order_id:
            self.state = OrderState.SUBMITTED
        else:
            self.state = OrderState.EMPTY

    # ============ Draft ============

    def add_to_order(self, product, user_name=None, quantity=1):
        """Add `quantity` of a catalog product to the draft"""
        if quantity <= 0:
            raise ValidationError("Quantity to add must be positive")
        product_id = product.get("_id") or product.get("id") or product.get("productId")
        if not product_id:
            raise ValidationError("Product has no id")

        for index, line in enumerate(self.draft):
            if line["productId"] == product_id:
                updated = {**line, "quantity": line["quantity"] + quantity}
                self.draft = self.draft[:index] + [updated] + self.draft[index + 1:]
                break
        else:
            self.draft = self.draft + [{
                "productId": product_id,
                "name": product.get("name"),
                "price": float(product.get("price") or 0),
                "quantity": quantity,
                "selectedOptions": list(product.get("selectedOptions") or []),
                "category": product.get("category"),
                "user": user_name,
            }]
        if self.state != OrderState.SUBMITTING:
            self._settle_state()

    def update_order_quantity(self, product_id, quantity):
        if quantity <= 0:
            self.draft = [l for l in self.draft if l["productId"] != product_id]
        else:
            self.draft = [
                {**l, "quantity": quantity} if l["productId"] == product_id else l
                for l in self.draft
            ]
        if self.state != OrderState.SUBMITTING:
            self._settle_state()

    def load_cart(self, cart_store, catalog, user_name=None):
        """Rebuild the draft from cart lines and a catalog snapshot"""
        by_id = {}
        for product in catalog:
            pid = product.get("_id") or product.get("id") or product.get("productId")
            if pid:
                by_id[pid] = product

        draft = []
        for line in cart_store.lines():
            product = by_id.get(line["productId"])
            if product is None:
                logger.warning(f"[ORDER] Product {line['productId']} missing from catalog, skipped")
                continue
            draft.append({
                "productId": line["productId"],
                "name": product.get("name"),
                "price": float(product.get("price") or 0),
                "quantity": line["quantity"],
                "selectedOptions": list(product.get("selectedOptions") or []),
                "category": product.get("category"),
                "user": user_name or cart_store.user_name,
            })
        self.draft = draft
        if self.state != OrderState.SUBMITTING:
            self._settle_state()
        return draft

    def draft_total(self):
        return line_total(self.draft)

    # ============ Server calls ============

    async def submit_order(self, session, payload=None):
        """Post the draft; on success the lines move to the confirmed layer tagged sent=True"""
        payload = payload or {}
        if session is None or not session.reservation_id:
            raise ValidationError("No active reservation. Please join a table first.")
        if self.state == OrderState.SUBMITTING:
            raise ValidationError("An order is already being submitted")

        from_draft = "items" not in payload
        sent_lines = list(self.draft) if from_draft else [dict(i) for i in payload["items"]]
        if not sent_lines:
            raise ValidationError("Your order is empty")

        items = [
            {
                "productId": l.get("productId"),
                "name": l.get("name"),
                "price": l.get("price"),
                "quantity": l.get("quantity"),
                "selectedOptions": l.get("selectedOptions") or [],
            }
            for l in sent_lines
        ]
        total = payload.get("total") or line_total(sent_lines)

        generation = self._generation
        self.state = OrderState.SUBMITTING
        self.is_loading = True
        try:
            data = await self.api.create_order(
                table_id=payload.get("tableId") or session.table_id,
                reservation_id=session.reservation_id,
                client_id=session.client_id,
                items=items,
                total=total,
                restaurant_id=session.restaurant_id,
                client_name=payload.get("clientName") or session.user_name,
            )
        except Exception:
            if generation == self._generation:
                self.is_loading = False
                self._settle_state()
            raise

        if generation != self._generation:
            logger.warning("[ORDER] Session reset during submission, response discarded")
            return data

        order_id = data["orderId"]
        sent = [
            {**line, "sent": True, "orderId": order_id, "paid": False,
             "orderStatus": data.get("status", "in_progress")}
            for line in sent_lines
        ]
        self.order_lines = self.order_lines + sent
        if from_draft:
            self.draft = [l for l in self.draft if not any(l is s for s in sent_lines)]
        self.active_order_id = order_id
        self.storage.set(ACTIVE_ORDER_KEY, order_id)
        self.storage.set(ORDER_LINES_KEY, self.order_lines)
        self.is_loading = False
        self._settle_state()
        logger.info(f"[ORDER] Order {order_id} submitted: {len(sent)} line(s), total {total:.2f}")
        return data

    async def fetch_active_order(self):
        generation = self._generation
        self.is_loading = True
        try:
            order = await self.api.get_active_order()
        finally:
            if generation == self._generation:
                self.is_loading = False
        if generation != self._generation:
            return order

        if order:
            self.active_order_id = _order_id(order)
            self.storage.set(ACTIVE_ORDER_KEY, self.active_order_id)
        else:
            self.active_order_id = None
            self.storage.remove(ACTIVE_ORDER_KEY)
        self._settle_state()
        return order

    async def fetch_orders_by_reservation(self, reservation_id, client_id=None):
        """Authoritative refresh: the server's item list replaces the cached one"""
        if not reservation_id:
            raise ValidationError("reservationId is required")

        generation = self._generation
        self.is_loading = True
        try:
            orders = await self.api.get_orders_by_reservation(reservation_id)
        finally:
            if generation == self._generation:
                self.is_loading = False
        if generation != self._generation:
            logger.warning("[ORDER] Session reset during fetch, response discarded")
            return None

        if client_id:
            orders = [o for o in orders if not o.get("clientId") or o.get("clientId") == client_id]
        lines = flatten_orders(orders)

        previous = self.order_lines
        if previous and sorted(map(_reconcile_key, previous)) != sorted(map(_reconcile_key, lines)):
            conflict = ReconciliationConflict(previous, lines)
            logger.warning(f"[ORDER] Local order lines overwritten by server: {conflict}")
            if self.on_conflict:
                self.on_conflict(conflict)

        self.order_lines = lines
        self.storage.set(ORDER_LINES_KEY, lines)

        active = pick_active_order(orders)
        if active:
            self.active_order_id = _order_id(active)
            self.storage.set(ACTIVE_ORDER_KEY, self.active_order_id)
        else:
            self.active_order_id = None
            self.storage.remove(ACTIVE_ORDER_KEY)
        self._settle_state()
        logger.info(f"[ORDER] {len(lines)} line(s) loaded for reservation {reservation_id}")
        return lines

    async def mark_as_paid(self, order_id=None):
        order_id = order_id or self.active_order_id
        if not order_id:
            raise ValidationError("No active order to pay")

        generation = self._generation
        self.is_loading = True
        try:
            await self.api.mark_order_paid(order_id)
        finally:
            if generation == self._generation:
                self.is_loading = False
        if generation != self._generation:
            return

        self.storage.remove(ACTIVE_ORDER_KEY, ORDER_LINES_KEY)
        self.active_order_id = None
        self.order_lines = []
        self.draft = []
        self.state = OrderState.PAID
        logger.info(f"[ORDER] Order {order_id} marked as paid")

    def reset_order(self):
        """Drop every local order layer; in-flight responses are discarded"""
        self._generation += 1
        self.draft = []
        self.order_lines = []
        self.active_order_id = None
        self.is_loading = False
        self.storage.remove(ACTIVE_ORDER_KEY, ORDER_LINES_KEY)
        self.state = OrderState.RESET
