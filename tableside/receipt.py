"""Payment receipts"""
from datetime import datetime

PAYMENT_LABELS = {
    "card": "Card payment",
    "apple_pay": "Apple Pay",
    "fake": "Test",
}


def ticket_number(restaurant_name, now=None):
    """INITIALS-YYYYMMDD-HHMM, initials from up to three words of the name"""
    now = now or datetime.now()
    words = (restaurant_name or "").split()[:3]
    initials = "".join(w[0] for w in words).upper() or "R"
    return f"{initials}-{now:%Y%m%d-%H%M}"


def payment_label(method):
    return PAYMENT_LABELS.get(method, method)


def build_receipt(items, amount, method="card", restaurant_name="Restaurant",
                  table_number=None, user_name=None, now=None):
    now = now or datetime.now()
    return {
        "ticketNumber": ticket_number(restaurant_name, now),
        "restaurantName": restaurant_name,
        "tableNumber": table_number,
        "clientName": user_name,
        "date": now.isoformat(timespec="seconds"),
        "items": [
            {
                "name": item.get("name"),
                "quantity": int(item.get("quantity") or 0),
                "unitPrice": float(item.get("price") or 0),
                "total": round(float(item.get("price") or 0) * int(item.get("quantity") or 0), 2),
            }
            for item in items
        ],
        "amount": round(amount, 2),
        "method": method,
        "paymentMethod": payment_label(method),
    }
