"""
REST collaborator for orders and reservations
"""
import asyncio
import logging

import requests
from requests.exceptions import RequestException

from .errors import ApiError, AuthError, NetworkError
from .instrumentation import instrument_operation

logger = logging.getLogger(__name__)


def _error_message(response, default):
    try:
        data = response.json()
    except ValueError:
        return default
    if isinstance(data, dict):
        return data.get("message") or data.get("error") or default
    return default


class RestaurantApi:
    """Thin client over the restaurant backend; blocking requests run off the event loop"""

    def __init__(self, base_url, credentials=None, timeout=10.0, session=None):
        self.base_url = base_url.rstrip("/")
        self.credentials = credentials
        self.timeout = timeout
        self.http = session or requests.Session()

    def _request(self, method, path, json_body=None, auth=True, default_error="Request failed"):
        headers = {"Content-Type": "application/json"}
        if auth and self.credentials:
            headers.update(self.credentials.auth_headers())

        url = f"{self.base_url}{path}"
        try:
            response = self.http.request(method, url, json=json_body, headers=headers, timeout=self.timeout)
        except RequestException as e:
            logger.error(f"[API] {method} {path} failed: {e}")
            raise NetworkError(f"Request exception: {e}") from e

        if response.status_code in (401, 403):
            if self.credentials:
                self.credentials.clear()
            raise AuthError(_error_message(response, "Access denied"), status=response.status_code)

        if not response.ok:
            message = _error_message(response, default_error)
            logger.error(f"[API] {method} {path} -> HTTP {response.status_code}: {message}")
            raise ApiError(response.status_code, message)

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise ApiError(response.status_code, "Unexpected server response") from e

    async def _call(self, method, path, json_body=None, **kwargs):
        return await asyncio.to_thread(self._request, method, path, json_body, **kwargs)

    @instrument_operation("issue_token")
    async def issue_token(self, user_name, table_id, restaurant_id):
        """Get a guest token for a table"""
        data = await self._call(
            "POST", "/client/token",
            {"pseudo": user_name, "tableId": table_id, "restaurantId": restaurant_id},
            auth=False, default_error="Could not join the table",
        )
        return data.get("token")

    @instrument_operation("create_reservation")
    async def create_reservation(self, table_id, restaurant_id, client_id, client_name,
                                 reservation_date, reservation_time, notes=None):
        """Create (or join) the reservation for a table"""
        data = await self._call(
            "POST", "/reservations/client/reservations",
            {
                "clientName": client_name,
                "clientId": client_id,
                "tableId": table_id,
                "restaurantId": restaurant_id,
                "reservationDate": reservation_date,
                "reservationTime": reservation_time,
                "notes": notes,
            },
            default_error="Could not create the reservation",
        )
        reservation = data.get("reservation") if isinstance(data.get("reservation"), dict) else data
        return reservation

    @instrument_operation("get_table_reservation")
    async def get_table_reservation(self, table_id):
        """Active reservation for a table, or None"""
        try:
            data = await self._call("GET", f"/reservations/table/{table_id}/active")
        except ApiError as e:
            if e.status == 404:
                return None
            raise
        return data or None

    @instrument_operation("create_order")
    async def create_order(self, table_id, reservation_id, client_id, items, total,
                           restaurant_id=None, client_name=None):
        """Submit an order; returns the server document including its id"""
        data = await self._call(
            "POST", "/orders/",
            {
                "tableId": table_id,
                "items": items,
                "total": total,
                "restaurantId": restaurant_id,
                "reservationId": reservation_id,
                "clientId": client_id,
                "clientName": client_name,
                "serverId": None,
                "status": "in_progress",
                "origin": "client",
            },
            default_error="Error while creating the order",
        )
        order_id = data.get("orderId") or data.get("_id")
        if not order_id:
            raise ApiError(200, "Order created without an id")
        return {**data, "orderId": order_id}

    @instrument_operation("get_active_order")
    async def get_active_order(self):
        """The unpaid, non-completed order for the current token, or None"""
        orders = await self._call("GET", "/orders/active")
        if isinstance(orders, dict):
            orders = orders.get("orders", [])
        for order in orders or []:
            if not order.get("paid") and order.get("status") != "completed":
                return order
        return None

    @instrument_operation("get_orders_by_reservation")
    async def get_orders_by_reservation(self, reservation_id):
        """All order documents of a reservation"""
        try:
            data = await self._call("GET", f"/client-orders/{reservation_id}")
        except ApiError as e:
            if e.status == 404:
                logger.warning(f"[API] No orders for reservation {reservation_id}")
                return []
            raise
        if isinstance(data, dict):
            return data.get("orders", [])
        return data or []

    @instrument_operation("mark_order_paid")
    async def mark_order_paid(self, order_id):
        return await self._call(
            "POST", f"/orders/{order_id}/mark-as-paid",
            default_error="Payment failed",
        )

    @instrument_operation("close_reservation")
    async def close_reservation(self, reservation_id):
        return await self._call(
            "PUT", f"/reservations/client/{reservation_id}/close", {},
            default_error="Could not close the reservation",
        )

    def close(self):
        self.http.close()
