"""Account activity feed: adding items, listing them and fetching them by id."""

from __future__ import annotations

import logging
import re
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Mapping

from cardledger.common import Database, ServiceError, StatusCode, error_response
from cardledger.transactions import format_timestamp

logger = logging.getLogger(__name__)

_UINT32_MAX = 2**32 - 1
_DIGITS = re.compile(r"[0-9]+")
_RFC3339 = re.compile(
    r"(\d{4})-(\d{2})-(\d{2})T(\d{2}):(\d{2}):(\d{2})(\.\d+)?(Z|[+-]\d{2}:\d{2})"
)

_COLUMNS = "id, account_id, type, content, ref_id, timestamp"
_INSERT_ITEM = (
    f"INSERT INTO feed_items ({_COLUMNS}) VALUES ($1, $2, $3, $4, $5, $6) "
    f"RETURNING {_COLUMNS}"
)
_SELECT_BY_ACCOUNT = f"SELECT {_COLUMNS} FROM feed_items WHERE account_id = $1"
_SELECT_TIMESTAMP = "SELECT timestamp FROM feed_items WHERE id = $1"


@dataclass
class FeedItem:
    """One entry in an account's activity feed."""

    id: str
    account_id: str
    type: str
    content: str = ""
    ref_id: str = ""
    timestamp: str = ""

    @classmethod
    def from_row(cls, row: tuple) -> "FeedItem":
        item_id, account_id, item_type, content, ref_id, stamp = row[:6]
        return cls(
            id=item_id,
            account_id=account_id,
            type=item_type,
            content=content or "",
            ref_id=ref_id or "",
            timestamp=format_timestamp(stamp),
        )

    def to_dict(self) -> dict[str, str]:
        return asdict(self)


def parse_rfc3339(text: str) -> datetime:
    """Parse an RFC 3339 timestamp that carries a zone; raise ValueError otherwise."""
    match = _RFC3339.fullmatch(text)
    if match is None:
        raise ValueError(f"not an RFC 3339 timestamp: {text!r}")
    year, month, day, hour, minute, second = (int(g) for g in match.groups()[:6])
    fraction, zone = match.group(7), match.group(8)
    microsecond = int((fraction[1:] + "000000")[:6]) if fraction else 0
    if zone == "Z":
        tz = timezone.utc
    else:
        sign = 1 if zone[0] == "+" else -1
        hours, minutes = int(zone[1:3]), int(zone[4:6])
        if hours > 23 or minutes > 59:
            raise ValueError(f"bad zone offset in {text!r}")
        tz = timezone(sign * timedelta(hours=hours, minutes=minutes))
    return datetime(year, month, day, hour, minute, second, microsecond, tzinfo=tz)


def _param(params: Mapping[str, Any], name: str) -> str:
    value = params.get(name, "")
    if isinstance(value, (list, tuple)):
        value = value[0] if value else ""
    return "" if value is None else str(value)


class FeedService:
    """Stores feed items in the database."""

    def __init__(self, db: Database, redis_client: Any = None) -> None:
        self.db = db
        self.redis_client = redis_client

    def add_feed_item(
        self,
        account_id: str,
        item_type: str,
        content: str = "",
        ref_id: str = "",
        timestamp: str = "",
    ) -> FeedItem:
        """Add a feed item; an absent or unparsable timestamp means now."""
        item_time = datetime.now().astimezone()
        if timestamp:
            try:
                item_time = parse_rfc3339(timestamp)
            except ValueError as exc:
                logger.warning(
                    "failed to parse timestamp %r, using current time: %s",
                    timestamp,
                    exc,
                )
        try:
            row = self.db.query_row(
                _INSERT_ITEM,
                str(uuid.uuid4()),
                account_id,
                item_type,
                content or None,
                ref_id or None,
                item_time,
            )
        except Exception as exc:
            logger.error("failed to insert feed item: %s", exc)
            raise ServiceError(StatusCode.INTERNAL, "failed to add feed item") from exc
        if row is None:
            raise ServiceError(StatusCode.INTERNAL, "failed to add feed item")
        item = FeedItem.from_row(row)
        logger.info(
            "added feed item %s for account %s (type: %s)",
            item.id,
            item.account_id,
            item.type,
        )
        return item

    def list_feed_items(
        self, account_id: str, limit: int = 0, before_id: str = ""
    ) -> list[FeedItem]:
        """List an account's feed items, newest first.

        With ``before_id``, only items older than that one are listed; an
        unknown ``before_id`` lists from the newest.
        """
        query = _SELECT_BY_ACCOUNT
        args: list[Any] = [account_id]
        if before_id:
            try:
                found = self.db.query_row(_SELECT_TIMESTAMP, before_id)
            except Exception as exc:
                logger.error("failed to get timestamp for before_id: %s", exc)
                raise ServiceError(
                    StatusCode.INTERNAL, "failed to list feed items"
                ) from exc
            if found is None:
                logger.info("before_id feed item not found: %s", before_id)
            else:
                args.append(found[0])
                query += f" AND timestamp < ${len(args)}"
        query += " ORDER BY timestamp DESC"
        if limit and int(limit) > 0:
            args.append(int(limit))
            query += f" LIMIT ${len(args)}"
        try:
            return [FeedItem.from_row(row) for row in self.db.query(query, *args)]
        except Exception as exc:
            logger.error("failed to list feed items: %s", exc)
            raise ServiceError(StatusCode.INTERNAL, "failed to list feed items") from exc

    def get_feed_items_by_id(self, ids: Iterable[str]) -> list[FeedItem]:
        """Return the feed items with the given ids, newest first."""
        ids = list(ids)
        if not ids:
            return []
        placeholders = ",".join(f"${position}" for position in range(1, len(ids) + 1))
        query = (
            f"SELECT {_COLUMNS} FROM feed_items WHERE id IN ({placeholders}) "
            "ORDER BY timestamp DESC"
        )
        try:
            return [FeedItem.from_row(row) for row in self.db.query(query, *ids)]
        except Exception as exc:
            logger.error("failed to get feed items by IDs: %s", exc)
            raise ServiceError(StatusCode.INTERNAL, "failed to get feed items") from exc

    def handle_list_feed_items(
        self, params: Mapping[str, Any]
    ) -> tuple[int, dict[str, Any]]:
        """Handle ``GET /feed``; return an HTTP status and JSON body."""
        account_id = _param(params, "account_id")
        if not account_id:
            return 400, {"error": "account_id query parameter is required"}
        limit = 0
        limit_text = _param(params, "limit")
        if limit_text:
            if not _DIGITS.fullmatch(limit_text) or int(limit_text) > _UINT32_MAX:
                return 400, {"error": "invalid limit parameter"}
            limit = int(limit_text)
        before_id = _param(params, "before_id")
        try:
            items = self.list_feed_items(account_id, limit, before_id)
        except ServiceError as exc:
            return error_response(
                exc, {StatusCode.INVALID_ARGUMENT, StatusCode.INTERNAL}
            )
        return 200, {"items": [item.to_dict() for item in items]}