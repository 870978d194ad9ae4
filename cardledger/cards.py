"""Card records: creation, lookup and status changes, with HTTP-style handlers."""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import asdict, dataclass
from typing import Any, Mapping

from cardledger.common import (
    Database,
    ServiceError,
    StatusCode,
    error_response,
    publish_event,
)

logger = logging.getLogger(__name__)

VALID_STATUSES = frozenset({"ACTIVE", "INACTIVE", "FROZEN", "CLOSED"})

_INSERT_CARD = (
    "INSERT INTO cards (card_id, user_id, status, created_at) VALUES ($1, $2, $3, NOW()) "
    "RETURNING card_id, user_id, status, last_four, created_at, updated_at"
)
_SELECT_CARD = "SELECT card_id, user_id, status, last_four FROM cards WHERE card_id = $1"
_UPDATE_STATUS = (
    "UPDATE cards SET status = $1, updated_at = NOW() WHERE card_id = $2 "
    "RETURNING card_id, user_id, status, last_four"
)


@dataclass
class Card:
    """A payment card belonging to a user."""

    id: str
    user_id: str
    status: str
    last_four: str = ""

    @classmethod
    def from_row(cls, row: tuple) -> "Card":
        card_id, user_id, status, last_four = row[:4]
        return cls(card_id, user_id, status, last_four or "")

    def to_dict(self) -> dict[str, str]:
        return asdict(self)


def _parse_body(body: Any) -> dict[str, Any]:
    if isinstance(body, (str, bytes, bytearray)):
        try:
            body = json.loads(body)
        except ValueError as exc:
            raise ValueError("invalid request body") from exc
    if not isinstance(body, Mapping):
        raise ValueError("invalid request body")
    return dict(body)


def _string_field(body: Mapping[str, Any], name: str) -> str:
    value = body.get(name, "")
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError("invalid request body")
    return value


class CardsService:
    """Stores cards in the database and announces changes on Redis streams."""

    def __init__(self, db: Database, redis_client: Any = None) -> None:
        self.db = db
        self.redis_client = redis_client

    def create_card(self, user_id: str) -> Card:
        """Create an active card for ``user_id`` and publish ``card:created``."""
        card_id = str(uuid.uuid4())
        try:
            row = self.db.query_row(_INSERT_CARD, card_id, user_id, "ACTIVE")
        except Exception as exc:
            logger.error("failed to insert card: %s", exc)
            raise ServiceError(StatusCode.INTERNAL, "failed to create card") from exc
        if row is None:
            raise ServiceError(StatusCode.INTERNAL, "failed to create card")
        card = Card.from_row(row)
        payload = json.dumps(
            {"card_id": card.id, "user_id": card.user_id, "status": card.status}
        )
        publish_event(self.redis_client, "card:created", payload)
        return card

    def get_card(self, card_id: str) -> Card:
        """Return the card with ``card_id``."""
        try:
            row = self.db.query_row(_SELECT_CARD, card_id)
        except Exception as exc:
            logger.error("failed to get card: %s", exc)
            raise ServiceError(StatusCode.INTERNAL, "failed to get card") from exc
        if row is None:
            logger.info("card not found: %s", card_id)
            raise ServiceError(StatusCode.NOT_FOUND, "card not found")
        return Card.from_row(row)

    def update_card_status(self, card_id: str, new_status: str) -> Card:
        """Set a card's status and publish ``card:status_changed``."""
        if new_status not in VALID_STATUSES:
            raise ServiceError(
                StatusCode.INVALID_ARGUMENT, f"invalid card status: {new_status}"
            )
        try:
            row = self.db.query_row(_UPDATE_STATUS, new_status, card_id)
        except Exception as exc:
            logger.error("failed to update card status: %s", exc)
            raise ServiceError(
                StatusCode.INTERNAL, "failed to update card status"
            ) from exc
        if row is None:
            logger.info("card not found for update: %s", card_id)
            raise ServiceError(StatusCode.NOT_FOUND, "card not found")
        card = Card.from_row(row)
        payload = json.dumps(
            {"card_id": card.id, "user_id": card.user_id, "new_status": card.status}
        )
        publish_event(self.redis_client, "card:status_changed", payload)
        return card

    def handle_create_card(self, body: Any) -> tuple[int, dict[str, Any]]:
        """Handle ``POST /cards``; return an HTTP status and JSON body."""
        try:
            user_id = _string_field(_parse_body(body), "user_id")
        except ValueError:
            return 400, {"error": "invalid request body"}
        try:
            card = self.create_card(user_id)
        except ServiceError as exc:
            return error_response(
                exc, {StatusCode.INVALID_ARGUMENT, StatusCode.INTERNAL}
            )
        return 201, card.to_dict()

    def handle_get_card(self, card_id: str) -> tuple[int, dict[str, Any]]:
        """Handle ``GET /cards/{id}``."""
        try:
            card = self.get_card(card_id)
        except ServiceError as exc:
            return error_response(exc, {StatusCode.NOT_FOUND, StatusCode.INTERNAL})
        return 200, card.to_dict()

    def handle_update_card_status(
        self, card_id: str, body: Any
    ) -> tuple[int, dict[str, Any]]:
        """Handle ``PATCH /cards/{id}/status``."""
        try:
            new_status = _string_field(_parse_body(body), "status")
        except ValueError:
            return 400, {"error": "invalid request body"}
        try:
            card = self.update_card_status(card_id, new_status)
        except ServiceError as exc:
            return error_response(
                exc,
                {StatusCode.NOT_FOUND, StatusCode.INVALID_ARGUMENT, StatusCode.INTERNAL},
            )
        return 200, card.to_dict()