"""Card transactions: recording, lookup, listing and enrichment updates."""

from __future__ import annotations

import json
import logging
import os
import re
import uuid
from dataclasses import asdict, dataclass, fields
from datetime import datetime, timedelta
from typing import Any, Mapping

from cardledger.common import (
    Database,
    ServiceError,
    StatusCode,
    error_response,
    publish_event,
)

logger = logging.getLogger(__name__)

ENV_PREFIX = "TRANSACTIONS_"
_UINT32_MAX = 2**32 - 1
_DIGITS = re.compile(r"[0-9]+")

_COLUMNS = (
    "id, account_id, card_id, amount, currency, merchant_id, merchant_raw, "
    "category, status, created_at"
)
_INSERT_TRANSACTION = (
    "INSERT INTO transactions (id, account_id, card_id, amount, currency, merchant_id, "
    "merchant_raw, status, created_at) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9) "
    "RETURNING id, account_id, card_id, amount, currency, merchant_id, merchant_raw, "
    "status, created_at"
)
_SELECT_TRANSACTION = f"SELECT {_COLUMNS} FROM transactions WHERE id = $1"
_SELECT_BY_ACCOUNT = f"SELECT {_COLUMNS} FROM transactions WHERE account_id = $1"
_SELECT_CREATED_AT = "SELECT created_at FROM transactions WHERE id = $1"


@dataclass
class Config:
    """Settings for the transactions service."""

    db_dsn: str = "user=user dbname=transactions sslmode=disable"
    redis_addr: str = "localhost:6379"
    http_port: str = ":8081"
    grpc_port: str = ":50052"


def load_config(environ: Mapping[str, str] | None = None) -> Config:
    """Build a Config from defaults overridden by ``TRANSACTIONS_*`` variables."""
    if environ is None:
        environ = os.environ
    known = {f.name for f in fields(Config)}
    overrides = {}
    for name, value in environ.items():
        if not name.startswith(ENV_PREFIX):
            continue
        key = name[len(ENV_PREFIX):].lower()
        if key in known:
            overrides[key] = value
    return Config(**overrides)


def format_timestamp(value: Any) -> str:
    """Format a timestamp as RFC 3339 with whole seconds."""
    if value is None:
        return ""
    if isinstance(value, str):
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            value = datetime.fromisoformat(text)
        except ValueError:
            return value
    if not isinstance(value, datetime):
        return str(value)
    if value.tzinfo is None:
        value = value.astimezone()
    value = value.replace(microsecond=0)
    if value.utcoffset() == timedelta(0):
        return value.strftime("%Y-%m-%dT%H:%M:%S") + "Z"
    return value.isoformat()


@dataclass
class TransactionInput:
    """What is needed to record a new transaction."""

    account_id: str
    card_id: str = ""
    amount: int = 0
    currency: str = ""
    merchant_id: str = ""
    merchant_raw: str = ""
    status: str = ""


@dataclass
class Transaction:
    """A recorded card transaction."""

    id: str
    account_id: str
    card_id: str = ""
    amount: int = 0
    currency: str = ""
    merchant_id: str = ""
    merchant_raw: str = ""
    merchant_name: str = ""
    category: str = ""
    status: str = ""
    timestamp: str = ""

    @classmethod
    def from_row(cls, row: tuple) -> "Transaction":
        """Build from a row holding every column including category."""
        (tid, account_id, card_id, amount, currency, merchant_id, merchant_raw,
         category, status, created_at) = row
        return cls(
            id=tid,
            account_id=account_id,
            card_id=card_id or "",
            amount=int(amount),
            currency=currency,
            merchant_id=merchant_id or "",
            merchant_raw=merchant_raw or "",
            category=category or "",
            status=status,
            timestamp=format_timestamp(created_at),
        )

    @classmethod
    def from_insert_row(cls, row: tuple) -> "Transaction":
        """Build from the row returned by an insert, which has no category."""
        (tid, account_id, card_id, amount, currency, merchant_id, merchant_raw,
         status, created_at) = row
        return cls.from_row(
            (tid, account_id, card_id, amount, currency, merchant_id, merchant_raw,
             None, status, created_at)
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _param(params: Mapping[str, Any], name: str) -> str:
    value = params.get(name, "")
    if isinstance(value, (list, tuple)):
        value = value[0] if value else ""
    return "" if value is None else str(value)


class TransactionsService:
    """Stores transactions and announces new ones on a Redis stream."""

    def __init__(self, db: Database, redis_client: Any = None) -> None:
        self.db = db
        self.redis_client = redis_client

    def record_transaction(self, request: TransactionInput) -> Transaction:
        """Insert a transaction and publish ``transaction:created``."""
        transaction_id = str(uuid.uuid4())
        now = datetime.now().astimezone()
        try:
            row = self.db.query_row(
                _INSERT_TRANSACTION,
                transaction_id,
                request.account_id,
                request.card_id or None,
                request.amount,
                request.currency,
                request.merchant_id or None,
                request.merchant_raw or None,
                request.status,
                now,
            )
        except Exception as exc:
            logger.error("failed to insert transaction: %s", exc)
            raise ServiceError(StatusCode.INTERNAL, "failed to record transaction") from exc
        if row is None:
            raise ServiceError(StatusCode.INTERNAL, "failed to record transaction")
        transaction = Transaction.from_insert_row(row)
        payload = json.dumps(
            {
                "id": transaction.id,
                "account_id": transaction.account_id,
                "amount": transaction.amount,
                "currency": transaction.currency,
                "status": transaction.status,
                "timestamp": transaction.timestamp,
            }
        )
        publish_event(self.redis_client, "transaction:created", payload)
        return transaction

    def get_transaction(self, transaction_id: str) -> Transaction:
        """Return the transaction with ``transaction_id``."""
        try:
            row = self.db.query_row(_SELECT_TRANSACTION, transaction_id)
        except Exception as exc:
            logger.error("failed to get transaction: %s", exc)
            raise ServiceError(StatusCode.INTERNAL, "failed to get transaction") from exc
        if row is None:
            logger.info("transaction not found: %s", transaction_id)
            raise ServiceError(StatusCode.NOT_FOUND, "transaction not found")
        return Transaction.from_row(row)

    def list_transactions(
        self, account_id: str, limit: int = 0, before_id: str = ""
    ) -> list[Transaction]:
        """List an account's transactions, newest first.

        With ``before_id``, only transactions older than that one are listed;
        an unknown ``before_id`` lists from the newest.
        """
        query = _SELECT_BY_ACCOUNT
        args: list[Any] = [account_id]
        if before_id:
            try:
                found = self.db.query_row(_SELECT_CREATED_AT, before_id)
            except Exception as exc:
                logger.error("failed to get timestamp for before_id: %s", exc)
                raise ServiceError(
                    StatusCode.INTERNAL, "failed to get transactions"
                ) from exc
            if found is None:
                logger.info("before_id transaction not found: %s", before_id)
            else:
                query += " AND created_at < $2"
                args.append(found[0])
        query += " ORDER BY created_at DESC"
        if limit and int(limit) > 0:
            query += f" LIMIT {int(limit)}"
        try:
            rows = self.db.query(query, *args)
            return [Transaction.from_row(row) for row in rows]
        except Exception as exc:
            logger.error("failed to list transactions: %s", exc)
            raise ServiceError(StatusCode.INTERNAL, "failed to list transactions") from exc

    def update_transaction(
        self,
        transaction_id: str,
        merchant_id: str = "",
        merchant_name: str = "",
        category: str = "",
        status: str = "",
    ) -> Transaction:
        """Set the given non-empty fields on a transaction."""
        changes = [
            (column, value)
            for column, value in (
                ("merchant_id", merchant_id),
                ("merchant_name", merchant_name),
                ("category", category),
                ("status", status),
            )
            if value
        ]
        if not changes:
            raise ServiceError(StatusCode.INVALID_ARGUMENT, "no fields to update")
        assignments = ", ".join(
            f"{column} = ${position}" for position, (column, _) in enumerate(changes, 1)
        )
        args = [value for _, value in changes]
        args.append(transaction_id)
        query = (
            f"UPDATE transactions SET {assignments} WHERE id = ${len(args)} "
            f"RETURNING {_COLUMNS}"
        )
        try:
            row = self.db.query_row(query, *args)
        except Exception as exc:
            logger.error("failed to update transaction: %s", exc)
            raise ServiceError(StatusCode.INTERNAL, "failed to update transaction") from exc
        if row is None:
            logger.info("transaction not found for update: %s", transaction_id)
            raise ServiceError(StatusCode.NOT_FOUND, "transaction not found")
        return Transaction.from_row(row)

    def handle_list_transactions(
        self, params: Mapping[str, Any]
    ) -> tuple[int, dict[str, Any]]:
        """Handle ``GET /transactions``; return an HTTP status and JSON body."""
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
            items = self.list_transactions(account_id, limit, before_id)
        except ServiceError as exc:
            return error_response(
                exc, {StatusCode.INVALID_ARGUMENT, StatusCode.INTERNAL}
            )
        return 200, {"items": [item.to_dict() for item in items]}