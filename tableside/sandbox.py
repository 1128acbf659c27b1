"""
In-memory restaurant backend for local development and tests

Serves the REST endpoints the client consumes and a /ws websocket speaking
the transport framing (rooms, acks, broadcasts). Nothing is persisted.
"""
import json
import logging
import uuid
from datetime import datetime, timezone

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from . import config

logger = logging.getLogger(__name__)

CLOSED_STATUS = "terminée"

# In-memory stores
tokens = {}          # token -> {pseudo, tableId, restaurantId}
reservations = {}    # reservation_id -> reservation
orders = {}          # order_id -> order
rooms = {}           # room name -> set of websockets

app = FastAPI(title="Tableside sandbox backend")


def reset():
    """Forget every token, reservation, order and room"""
    tokens.clear()
    reservations.clear()
    orders.clear()
    rooms.clear()


def utcnow():
    return datetime.now(timezone.utc).isoformat()


def _new_id():
    return uuid.uuid4().hex[:24]


def _error(message, status_code):
    return JSONResponse({"message": message}, status_code=status_code)


def _bearer(request):
    header = request.headers.get("authorization", "")
    if not header.lower().startswith("bearer "):
        return None
    return header[7:].strip() or None


def _room_for(event, data):
    if event.endswith("-restaurant"):
        return f"restaurant:{data.get('restaurantId')}"
    if event.endswith("-table"):
        return f"table:{data.get('tableId')}"
    if event.endswith("-reservation"):
        return f"reservation:{data.get('reservationId')}"
    return None


async def broadcast(room, event, data):
    for ws in list(rooms.get(room, ())):
        try:
            await ws.send_text(json.dumps({"event": event, "data": data}))
        except (RuntimeError, WebSocketDisconnect):
            rooms[room].discard(ws)


# ============ REST ============

@app.get("/ping")
async def health_check():
    return JSONResponse({"status": "healthy"})


@app.post("/client/token")
async def issue_token(payload: dict):
    pseudo = str(payload.get("pseudo") or "").strip()
    table_id = payload.get("tableId")
    restaurant_id = payload.get("restaurantId")
    if not pseudo or not table_id or not restaurant_id:
        return _error("pseudo, tableId and restaurantId are required", 400)

    token = uuid.uuid4().hex
    tokens[token] = {"pseudo": pseudo, "tableId": table_id, "restaurantId": restaurant_id}
    return {"token": token}


@app.post("/reservations/client/reservations")
async def create_reservation(payload: dict):
    table_id = payload.get("tableId")
    restaurant_id = payload.get("restaurantId")
    if not table_id or not restaurant_id or not payload.get("clientId"):
        return _error("tableId, restaurantId and clientId are required", 400)

    # Guests joining an occupied table share its open reservation
    for reservation in reservations.values():
        if reservation["tableId"] == table_id and reservation["status"] != CLOSED_STATUS:
            return reservation

    reservation_id = _new_id()
    reservations[reservation_id] = {
        "_id": reservation_id,
        "clientName": payload.get("clientName"),
        "clientId": payload.get("clientId"),
        "tableId": table_id,
        "restaurantId": restaurant_id,
        "reservationDate": payload.get("reservationDate"),
        "reservationTime": payload.get("reservationTime"),
        "notes": payload.get("notes"),
        "status": "ouverte",
        "createdAt": utcnow(),
    }
    return JSONResponse(reservations[reservation_id], status_code=201)


@app.get("/reservations/table/{table_id}/active")
async def get_table_reservation(table_id: str):
    for reservation in reservations.values():
        if reservation["tableId"] == table_id and reservation["status"] != CLOSED_STATUS:
            return reservation
    return _error("No active reservation", 404)


@app.put("/reservations/client/{reservation_id}/close")
async def close_reservation(reservation_id: str, request: Request):
    if not _bearer(request):
        return _error("Access denied", 401)
    reservation = reservations.get(reservation_id)
    if reservation is None:
        return _error("Reservation not found", 404)

    reservation["status"] = CLOSED_STATUS
    reservation["closedAt"] = utcnow()
    await broadcast(f"reservation:{reservation_id}", "reservation-status-changed",
                    {"reservationId": reservation_id, "status": CLOSED_STATUS})
    return {"success": True, "reservation": reservation}


@app.post("/orders/")
async def create_order(payload: dict, request: Request):
    if not _bearer(request):
        return _error("Access denied", 401)
    reservation_id = payload.get("reservationId")
    items = payload.get("items") or []
    if reservation_id not in reservations:
        return _error("Unknown reservation", 400)
    if not items:
        return _error("Order has no items", 400)

    order_id = _new_id()
    orders[order_id] = {
        "_id": order_id,
        "tableId": payload.get("tableId"),
        "restaurantId": payload.get("restaurantId"),
        "reservationId": reservation_id,
        "clientId": payload.get("clientId"),
        "clientName": payload.get("clientName"),
        "items": [{**item, "_id": _new_id()} for item in items],
        "total": payload.get("total"),
        "status": payload.get("status") or "in_progress",
        "origin": payload.get("origin", "client"),
        "paid": False,
        "createdAt": utcnow(),
    }
    await broadcast(f"reservation:{reservation_id}", "order-updated",
                    {"orderId": order_id, "reservationId": reservation_id, "status": "in_progress"})
    return JSONResponse({**orders[order_id], "orderId": order_id}, status_code=201)


@app.get("/orders/active")
async def get_active_orders(request: Request):
    token = _bearer(request)
    if not token:
        return _error("Access denied", 401)
    table_id = (tokens.get(token) or {}).get("tableId")
    return [
        o for o in orders.values()
        if not o["paid"] and o["status"] != "completed" and (table_id is None or o["tableId"] == table_id)
    ]


@app.post("/orders/{order_id}/mark-as-paid")
async def mark_order_paid(order_id: str, request: Request):
    if not _bearer(request):
        return _error("Access denied", 401)
    order = orders.get(order_id)
    if order is None:
        return _error("Order not found", 404)

    order["paid"] = True
    order["paidAt"] = utcnow()
    await broadcast(f"reservation:{order['reservationId']}", "order-updated",
                    {"orderId": order_id, "reservationId": order["reservationId"], "paid": True})
    return {"success": True, "order": order}


@app.get("/client-orders/{reservation_id}")
async def get_orders_by_reservation(reservation_id: str):
    if reservation_id not in reservations:
        return _error("Reservation not found", 404)
    return [o for o in orders.values() if o["reservationId"] == reservation_id]


# ============ Realtime ============

@app.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    await ws.accept()
    joined = set()
    try:
        while True:
            raw = await ws.receive_text()
            try:
                frame = json.loads(raw)
            except ValueError:
                continue
            event = frame.get("event")
            data = frame.get("data") or {}
            ack_id = frame.get("id")

            if event == "client-ping":
                await ws.send_text(json.dumps({"event": "server-pong", "data": {"timestamp": data.get("timestamp")}}))
                continue

            room = _room_for(event or "", data)
            if room and event.startswith("join-"):
                rooms.setdefault(room, set()).add(ws)
                joined.add(room)
                logger.debug(f"[SANDBOX] Joined {room}")
            elif room and event.startswith("leave-"):
                rooms.get(room, set()).discard(ws)
                joined.discard(room)

            if ack_id:
                if room:
                    ack = {"event": "ack", "id": ack_id, "success": True, "data": {"room": room}}
                else:
                    ack = {"event": "ack", "id": ack_id, "success": False, "error": f"Unknown event {event}"}
                await ws.send_text(json.dumps(ack))
    except WebSocketDisconnect:
        for room in joined:
            rooms.get(room, set()).discard(ws)


if __name__ == "__main__":
    import uvicorn

    config.configure_logging()
    uvicorn.run(app, host="0.0.0.0", port=3000)
