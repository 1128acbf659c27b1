"""
Split payment over the items of a reservation

The paid-item ledger is a set of item fingerprints persisted per reservation
(or per order when no reservation is known). It only grows until the whole
bill is settled, then it is erased.
"""
import logging
import math
from dataclasses import dataclass, field

from .errors import TablesideError, ValidationError
from .instrumentation import instrument_operation
from .order_store import line_total
from .receipt import build_receipt

logger = logging.getLogger(__name__)


def fingerprint(item):
    """Derived key of a line item: (line id or product id, name, price, quantity)"""
    line_id = item.get("lineId") or item.get("_id") or item.get("productId")
    price = float(item.get("price") or 0)
    return "|".join([str(line_id), str(item.get("name")), f"{price:.2f}", str(int(item.get("quantity") or 0))])


def ledger_key(reservation_id=None, order_id=None):
    if reservation_id:
        return f"paidItems_res_{reservation_id}"
    if order_id:
        return f"paidItems_order_{order_id}"
    raise ValidationError("No reservation or order to pay for")


@dataclass
class PaymentResult:
    amount_paid: float
    newly_paid: list = field(default_factory=list)
    remaining: list = field(default_factory=list)
    remaining_amount: float = 0.0
    total_paid: float = 0.0
    fully_settled: bool = False
    closure_requested: bool = False
    closure_error: Exception = None
    receipt: dict = None


class PaymentReconciler:
    def __init__(self, order_store, api, storage, reservation_id=None, order_id=None,
                 restaurant_name="Restaurant", table_number=None, user_name=None):
        self.order_store = order_store
        self.api = api
        self.storage = storage
        self.reservation_id = reservation_id
        self.order_id = order_id
        self.key = ledger_key(reservation_id, order_id)
        self.restaurant_name = restaurant_name
        self.table_number = table_number
        self.user_name = user_name

        self.items = []
        self.selected = set()
        self.is_processing = False
        self.settled = False
        self.closure_pending = False
        self._marked = set()

    def _read_ledger(self):
        raw = self.storage.get(self.key, [])
        return set(raw) if isinstance(raw, list) else set()

    def _write_ledger(self, fingerprints):
        self.storage.set(self.key, sorted(fingerprints))

    def _is_paid(self, item, ledger):
        return bool(item.get("paid")) or fingerprint(item) in ledger

    def load(self, items=None):
        """Take the item list (server wins) and select every unpaid item"""
        self.items = list(self.order_store.order_lines if items is None else items)
        self.settled = False
        self._marked = set()

        present = {fingerprint(i) for i in self.items}
        ledger = self._read_ledger()
        if ledger - present:
            logger.warning(f"[PAYMENT] Pruning {len(ledger - present)} stale fingerprint(s) from {self.key}")
            ledger &= present
            if ledger:
                self._write_ledger(ledger)
            else:
                self.storage.remove(self.key)

        self.selected = {fingerprint(i) for i in self.available_items()}
        logger.info(f"[PAYMENT] Loaded {len(self.items)} item(s), {len(self.selected)} unpaid")
        return self

    # ============ Selection ============

    def available_items(self):
        ledger = self._read_ledger()
        return [i for i in self.items if not self._is_paid(i, ledger)]

    def paid_items(self):
        ledger = self._read_ledger()
        return [i for i in self.items if self._is_paid(i, ledger)]

    def selected_items(self):
        return [i for i in self.available_items() if fingerprint(i) in self.selected]

    def toggle_item(self, item):
        fp = fingerprint(item)
        if fp in self.selected:
            self.selected = self.selected - {fp}
            return False
        if fp not in {fingerprint(i) for i in self.available_items()}:
            return False
        self.selected = self.selected | {fp}
        return True

    def toggle_all(self):
        available = {fingerprint(i) for i in self.available_items()}
        if available and available <= self.selected:
            self.selected = set()
        else:
            self.selected = available

    def select_share(self, parts=3):
        """Select the first ceil(n/parts) unpaid items"""
        if parts <= 0:
            raise ValidationError("Share must be a positive number of parts")
        available = self.available_items()
        count = math.ceil(len(available) / parts)
        self.selected = {fingerprint(i) for i in available[:count]}
        return self.selected_items()

    def summary(self):
        available = self.available_items()
        selected = self.selected_items()
        return {
            "total": line_total(self.items),
            "total_due": line_total(available),
            "total_paid": line_total(self.paid_items()),
            "selected_total": line_total(selected),
            "selected_count": len(selected),
            "available_count": len(available),
            "can_close": not available,
            "settlement_pending": self.needs_settlement(),
        }

    def _unpaid_order_ids(self):
        order_ids = []
        for item in self.items:
            order_id = item.get("orderId")
            if order_id and not item.get("paid") and order_id not in self._marked and order_id not in order_ids:
                order_ids.append(order_id)
        return order_ids

    def needs_settlement(self):
        """Every item is in the ledger but marking paid or closure did not complete"""
        if self.settled or not self.items or self.available_items():
            return False
        return bool(self._unpaid_order_ids()) or bool(self._read_ledger())

    # ============ Payment ============

    @instrument_operation("pay")
    async def pay(self, selection=None, method="card"):
        """Record an externally captured payment for `selection`"""
        if self.is_processing:
            raise ValidationError("A payment is already in progress")
        if self.settled:
            logger.info("[PAYMENT] Bill already settled, nothing to record")
            return PaymentResult(amount_paid=0.0, total_paid=line_total(self.paid_items()), fully_settled=True)

        selection = self.selected_items() if selection is None else list(selection)
        if not selection:
            if self.needs_settlement():
                return await self.settle()
            raise ValidationError("Select at least one item to pay")

        self.is_processing = True
        try:
            ledger = self._read_ledger()
            newly_paid = [i for i in selection if not self._is_paid(i, ledger)]
            amount_paid = line_total(newly_paid)

            ledger |= {fingerprint(i) for i in newly_paid}
            self._write_ledger(ledger)

            remaining = [i for i in self.items if not self._is_paid(i, ledger)]
            self.selected = {fingerprint(i) for i in remaining}
            result = PaymentResult(
                amount_paid=amount_paid,
                newly_paid=newly_paid,
                remaining=remaining,
                remaining_amount=line_total(remaining),
                total_paid=line_total([i for i in self.items if self._is_paid(i, ledger)]),
                fully_settled=not remaining,
            )
            if newly_paid:
                result.receipt = build_receipt(
                    newly_paid, amount_paid, method,
                    restaurant_name=self.restaurant_name,
                    table_number=self.table_number,
                    user_name=self.user_name,
                )
            logger.info(f"[PAYMENT] Paid {amount_paid:.2f}, remaining {result.remaining_amount:.2f}")

            if not remaining:
                await self._settle(result)
            return result
        finally:
            self.is_processing = False

    async def settle(self):
        """Resume a settlement that stopped after every item was recorded"""
        if self.is_processing:
            raise ValidationError("A payment is already in progress")
        if not self.needs_settlement():
            raise ValidationError("Nothing left to settle")

        logger.info(f"[PAYMENT] Resuming settlement for {self.key}")
        result = PaymentResult(amount_paid=0.0, total_paid=line_total(self.paid_items()), fully_settled=True)
        self.is_processing = True
        try:
            await self._settle(result)
        finally:
            self.is_processing = False
        return result

    async def _settle(self, result):
        order_ids = self._unpaid_order_ids()
        if not order_ids and self.order_id and not any(i.get("orderId") for i in self.items):
            order_ids = [self.order_id]

        for order_id in order_ids:
            await self.order_store.mark_as_paid(order_id)
            self._marked.add(order_id)
        self.settled = True
        await self._close(result)

    async def _close(self, result=None):
        if not self.reservation_id:
            self.storage.remove(self.key)
            return True
        if result:
            result.closure_requested = True
        try:
            await self.api.close_reservation(self.reservation_id)
        except TablesideError as e:
            logger.error(f"[PAYMENT] Reservation {self.reservation_id} closure failed: {e}")
            self.closure_pending = True
            if result:
                result.closure_error = e
            return False

        self.closure_pending = False
        self.storage.remove(self.key)
        logger.info(f"[PAYMENT] Reservation {self.reservation_id} closed, ledger cleared")
        return True

    async def retry_closure(self):
        """Re-request closure after a failed attempt on a settled bill"""
        if not self.closure_pending:
            return False
        return await self._close()
