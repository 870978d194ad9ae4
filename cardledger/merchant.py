"""Merchant records: lookup, find-or-create from raw names, and updates."""

from __future__ import annotations

import json
import logging
import unicodedata
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Mapping

from cardledger.common import (
    Database,
    ServiceError,
    StatusCode,
    error_response,
    publish_event,
)

logger = logging.getLogger(__name__)

_INT32_MIN = -(2**31)
_INT32_MAX = 2**31 - 1

_COLUMNS = "merchant_id, name, category, logo_url, mcc"
_SELECT_MERCHANT = f"SELECT {_COLUMNS} FROM merchants WHERE merchant_id = $1"
_LOOKUP_MERCHANT = (
    f"SELECT {_COLUMNS} FROM merchants "
    "WHERE lower(name) = lower($1) AND coalesce(mcc, 0) = coalesce($2, 0)"
)
_INSERT_MERCHANT = (
    "INSERT INTO merchants (merchant_id, name, category, mcc, created_at, updated_at) "
    "VALUES ($1, $2, $3, $4, NOW(), NOW()) "
    f"RETURNING {_COLUMNS}"
)


@dataclass
class Merchant:
    """A merchant where card transactions take place."""

    merchant_id: str
    name: str
    category: str = ""
    logo_url: str = ""
    mcc: int = 0

    @classmethod
    def from_row(cls, row: tuple) -> "Merchant":
        merchant_id, name, category, logo_url, mcc = row[:5]
        return cls(
            merchant_id=merchant_id,
            name=name,
            category=category or "",
            logo_url=logo_url or "",
            mcc=int(mcc) if mcc is not None else 0,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _is_separator(ch: str) -> bool:
    if ch <= "\x7f":
        return not (ch.isalnum() or ch == "_")
    if ch.isalpha() or unicodedata.category(ch) == "Nd":
        return False
    return ch.isspace()


def clean_merchant_name(raw_name: str) -> str:
    """Lower-case a raw name, then capitalise the first letter of each word.

    Any character other than a letter, digit or underscore starts a new word.
    """
    result = []
    previous_separates = True
    for ch in raw_name.lower():
        if previous_separates:
            titled = ch.title()
            result.append(titled if len(titled) == 1 else ch)
        else:
            result.append(ch)
        previous_separates = _is_separator(ch)
    return "".join(result)


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


def _int32_field(body: Mapping[str, Any], name: str) -> int:
    value = body.get(name, 0)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError("invalid request body")
    if not _INT32_MIN <= value <= _INT32_MAX:
        raise ValueError("invalid request body")
    return value


class MerchantService:
    """Stores merchants and announces updates on a Redis stream."""

    def __init__(self, db: Database, redis_client: Any = None) -> None:
        self.db = db
        self.redis_client = redis_client

    def get_merchant(self, merchant_id: str) -> Merchant:
        """Return the merchant with ``merchant_id``."""
        try:
            row = self.db.query_row(_SELECT_MERCHANT, merchant_id)
        except Exception as exc:
            logger.error("failed to get merchant: %s", exc)
            raise ServiceError(StatusCode.INTERNAL, "failed to get merchant") from exc
        if row is None:
            logger.info("merchant not found: %s", merchant_id)
            raise ServiceError(StatusCode.NOT_FOUND, "merchant not found")
        return Merchant.from_row(row)

    def find_or_create_merchant(self, raw_name: str, mcc: int = 0) -> Merchant:
        """Find a merchant by case-insensitive name and MCC, creating it if absent."""
        mcc_arg = mcc or None
        try:
            row = self.db.query_row(_LOOKUP_MERCHANT, raw_name, mcc_arg)
        except Exception as exc:
            logger.error("failed to lookup merchant: %s", exc)
            raise ServiceError(
                StatusCode.INTERNAL, "failed to find or create merchant"
            ) from exc
        if row is not None:
            merchant = Merchant.from_row(row)
            logger.info("found existing merchant: %s", merchant.merchant_id)
            return merchant

        merchant_id = str(uuid.uuid4())
        default_category = ""
        try:
            row = self.db.query_row(
                _INSERT_MERCHANT,
                merchant_id,
                clean_merchant_name(raw_name),
                default_category or None,
                mcc_arg,
            )
        except Exception as exc:
            if "unique constraint" in str(exc):
                logger.info("merchant created concurrently, retrying lookup")
                return self.find_or_create_merchant(raw_name, mcc)
            logger.error("failed to insert new merchant: %s", exc)
            raise ServiceError(StatusCode.INTERNAL, "failed to create merchant") from exc
        if row is None:
            raise ServiceError(StatusCode.INTERNAL, "failed to create merchant")
        merchant = Merchant.from_row(row)
        logger.info("created new merchant: %s", merchant.merchant_id)
        return merchant

    def update_merchant(
        self,
        merchant_id: str,
        name: str = "",
        category: str = "",
        logo_url: str = "",
        mcc: int = 0,
    ) -> Merchant:
        """Set the given non-empty fields and publish ``merchant:updated``."""
        changes = [
            (column, value)
            for column, value in (
                ("name", name),
                ("category", category),
                ("logo_url", logo_url),
                ("mcc", mcc),
            )
            if value
        ]
        if not changes:
            raise ServiceError(StatusCode.INVALID_ARGUMENT, "no fields to update")
        changes.append(("updated_at", datetime.now().astimezone()))
        assignments = ", ".join(
            f"{column} = ${position}" for position, (column, _) in enumerate(changes, 1)
        )
        args = [value for _, value in changes]
        args.append(merchant_id)
        query = (
            f"UPDATE merchants SET {assignments} WHERE merchant_id = ${len(args)} "
            f"RETURNING {_COLUMNS}"
        )
        try:
            row = self.db.query_row(query, *args)
        except Exception as exc:
            logger.error("failed to update merchant: %s", exc)
            raise ServiceError(StatusCode.INTERNAL, "failed to update merchant") from exc
        if row is None:
            logger.info("merchant not found for update: %s", merchant_id)
            raise ServiceError(StatusCode.NOT_FOUND, "merchant not found")
        merchant = Merchant.from_row(row)
        payload = json.dumps(
            {
                "merchant_id": merchant.merchant_id,
                "name": merchant.name,
                "category": merchant.category,
                "logo_url": merchant.logo_url,
                "mcc": merchant.mcc,
            }
        )
        publish_event(self.redis_client, "merchant:updated", payload)
        return merchant

    def handle_get_merchant(self, merchant_id: str) -> tuple[int, dict[str, Any]]:
        """Handle ``GET /merchants/{id}``; return an HTTP status and JSON body."""
        try:
            merchant = self.get_merchant(merchant_id)
        except ServiceError as exc:
            return error_response(exc, {StatusCode.NOT_FOUND, StatusCode.INTERNAL})
        return 200, merchant.to_dict()

    def handle_update_merchant(
        self, merchant_id: str, body: Any
    ) -> tuple[int, dict[str, Any]]:
        """Handle ``PUT /merchants/{id}``."""
        try:
            fields = _parse_body(body)
            name = _string_field(fields, "name")
            category = _string_field(fields, "category")
            logo_url = _string_field(fields, "logo_url")
            mcc = _int32_field(fields, "mcc")
        except ValueError:
            return 400, {"error": "invalid request body"}
        try:
            merchant = self.update_merchant(merchant_id, name, category, logo_url, mcc)
        except ServiceError as exc:
            return error_response(
                exc,
                {StatusCode.NOT_FOUND, StatusCode.INVALID_ARGUMENT, StatusCode.INTERNAL},
            )
        return 200, merchant.to_dict()