"""Per-user cart: product id -> quantity, persisted on every mutation."""

from __future__ import annotations

import logging

from .errors import ValidationError

logger = logging.getLogger(__name__)


def cart_key(user_name: str) -> str:
    return f"cart_{user_name}"


def _product_id(product: dict):
    return product.get("_id") or product.get("id") or product.get("productId")


class CartStore:
    """Single source of truth for the current ordering intent.

    Every mutation reads ``self._cart`` at call time and writes the whole
    map back, so interleaved taps never work from a stale copy.
    """

    def __init__(self, storage):
        self.storage = storage
        self.user_name: str | None = None
        self._cart: dict[str, int] = {}

    def init(self, user_name: str, clear_previous: bool = False) -> None:
        """Load the cart of `user_name`; a fresh session starts empty."""
        if user_name != self.user_name:
            self._cart = {}
        self.user_name = user_name

        if clear_previous:
            self.storage.remove(cart_key(user_name))
            self._cart = {}
            return

        saved = self.storage.get(cart_key(user_name))
        if not isinstance(saved, dict):
            if saved is not None:
                logger.error(f"[CART] Ignoring unreadable cart for {user_name}")
            self._cart = {}
            return
        self._cart = {
            str(pid): int(qty) for pid, qty in saved.items()
            if isinstance(qty, (int, float)) and int(qty) > 0
        }

    def _save(self) -> None:
        if not self.user_name:
            return
        self.storage.set(cart_key(self.user_name), self._cart)

    @property
    def cart(self) -> dict[str, int]:
        return dict(self._cart)

    def quantity(self, product_id: str) -> int:
        return self._cart.get(product_id, 0)

    def add_item(self, product_id: str, quantity: int = 1) -> int:
        if quantity <= 0:
            raise ValidationError("Quantity to add must be positive")
        new_quantity = self._cart.get(product_id, 0) + quantity
        self._cart = {**self._cart, product_id: new_quantity}
        self._save()
        return new_quantity

    def remove_item(self, product_id: str, quantity: int = 1) -> int:
        current = self._cart.get(product_id, 0)
        return self.update_quantity(product_id, max(0, current - quantity))

    def update_quantity(self, product_id: str, quantity: int) -> int:
        cart = dict(self._cart)
        if quantity <= 0:
            cart.pop(product_id, None)
            quantity = 0
        else:
            cart[product_id] = quantity
        self._cart = cart
        self._save()
        return quantity

    def clear_cart(self) -> None:
        self._cart = {}
        self._save()

    def reset(self) -> None:
        """Forget the in-memory cart and its owner (session teardown)."""
        self._cart = {}
        self.user_name = None

    def lines(self) -> list[dict]:
        return [{"productId": pid, "quantity": qty} for pid, qty in self._cart.items()]

    def get_total_items(self) -> int:
        return sum(self._cart.values())

    def get_total_price(self, catalog) -> float:
        """Total against a catalog snapshot (list of product dicts)."""
        total = 0.0
        for product in catalog:
            qty = self._cart.get(_product_id(product), 0)
            total += float(product.get("price") or 0) * qty
        return round(total, 2)
