"""Session identity: who sits at which table under which reservation"""

from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass

from .credentials import TOKEN_KEY

logger = logging.getLogger(__name__)

CLIENT_ID_KEY = "clientId"

# storage key -> Session field
SESSION_FIELDS = {
    "currentRestaurantId": "restaurant_id",
    "tableId": "table_id",
    "reservationId": "reservation_id",
    "currentClientName": "user_name",
    "currentTableNumber": "table_number",
}


@dataclass
class Session:
    restaurant_id: str
    table_id: str
    reservation_id: str | None = None
    client_id: str | None = None
    user_name: str | None = None
    table_number: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Session":
        return cls(**{k: data.get(k) for k in cls.__dataclass_fields__})


class SessionStore:
    def __init__(self, storage):
        self.storage = storage

    def get_or_create_client_id(self) -> str:
        """Permanent device identity, kept across sessions"""
        client_id = self.storage.get(CLIENT_ID_KEY)
        if not client_id:
            client_id = str(uuid.uuid4())
            self.storage.set(CLIENT_ID_KEY, client_id)
            logger.info(f"[SESSION] New client id {client_id}")
        return client_id

    def save(self, session: Session) -> None:
        for key, attr in SESSION_FIELDS.items():
            value = getattr(session, attr)
            if value is None:
                self.storage.remove(key)
            else:
                self.storage.set(key, value)
        if session.client_id:
            self.storage.set(CLIENT_ID_KEY, session.client_id)

    def load(self) -> Session | None:
        data = {attr: self.storage.get(key) for key, attr in SESSION_FIELDS.items()}
        if not data["restaurant_id"] or not data["table_id"]:
            return None
        data["client_id"] = self.storage.get(CLIENT_ID_KEY)
        return Session.from_dict(data)

    def clear(self) -> None:
        """Remove session-scoped identifiers; the client id survives"""
        self.storage.remove(*SESSION_FIELDS, TOKEN_KEY)
        logger.info("[SESSION] Session identifiers cleared")
