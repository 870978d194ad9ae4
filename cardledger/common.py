"""Shared pieces for the services: status codes, errors, database access and events."""

from __future__ import annotations

import enum
import logging
import re
from typing import Any, Collection, Sequence

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\$(\d+)")
_MARKERS = {"qmark": "?", "format": "%s"}


class StatusCode(enum.IntEnum):
    """Outcome codes for service calls, numbered as in gRPC."""

    OK = 0
    UNKNOWN = 2
    INVALID_ARGUMENT = 3
    NOT_FOUND = 5
    INTERNAL = 13


_HTTP_STATUS = {
    StatusCode.INVALID_ARGUMENT: 400,
    StatusCode.NOT_FOUND: 404,
}


class ServiceError(Exception):
    """A service call failed with a status code and a client-facing message."""

    def __init__(self, code: StatusCode, message: str) -> None:
        super().__init__(message)
        self.code = StatusCode(code)
        self.message = message

    def __repr__(self) -> str:
        return f"ServiceError({self.code.name}, {self.message!r})"


class Database:
    """A DB-API connection that accepts ``$1``-style numbered placeholders.

    Each statement is committed as soon as it has run.
    """

    def __init__(self, connection: Any, paramstyle: str = "qmark") -> None:
        if paramstyle not in _MARKERS:
            raise ValueError(f"unsupported paramstyle: {paramstyle}")
        self.connection = connection
        self.paramstyle = paramstyle

    def _prepare(self, query: str, args: Sequence[Any]) -> tuple[str, list[Any]]:
        marker = _MARKERS[self.paramstyle]
        ordered: list[Any] = []

        def substitute(match: re.Match[str]) -> str:
            index = int(match.group(1))
            if not 1 <= index <= len(args):
                raise ValueError(
                    f"placeholder ${index} has no argument ({len(args)} given)"
                )
            ordered.append(args[index - 1])
            return marker

        return _PLACEHOLDER.sub(substitute, query), ordered

    def _run(self, query: str, args: Sequence[Any], fetch_all: bool) -> Any:
        statement, params = self._prepare(query, args)
        cursor = self.connection.cursor()
        try:
            cursor.execute(statement, params)
            result = cursor.fetchall() if fetch_all else cursor.fetchone()
        finally:
            cursor.close()
        self.connection.commit()
        return result

    def query_row(self, query: str, *args: Any) -> tuple | None:
        """Run a statement and return its first row, or None if it gave none."""
        row = self._run(query, args, fetch_all=False)
        return tuple(row) if row is not None else None

    def query(self, query: str, *args: Any) -> list[tuple]:
        """Run a statement and return all of its rows."""
        return [tuple(row) for row in self._run(query, args, fetch_all=True)]


def publish_event(redis_client: Any, stream: str, payload: str) -> str | None:
    """Append ``payload`` to a Redis stream; return the entry id, or None on failure."""
    if redis_client is None:
        logger.warning("no Redis client; %s event not published", stream)
        return None
    try:
        entry_id = redis_client.xadd(stream, {"payload": payload})
    except Exception as exc:  # publishing is best effort
        logger.error("failed to publish %s event: %s", stream, exc)
        return None
    if isinstance(entry_id, bytes):
        entry_id = entry_id.decode()
    logger.info("published %s event %s", stream, entry_id)
    return entry_id


def error_response(
    error: BaseException, handled: Collection[StatusCode]
) -> tuple[int, dict[str, str]]:
    """Turn a failed call into an HTTP status and JSON error body.

    Codes in ``handled`` that map to a client error pass their message through.
    """
    if not isinstance(error, ServiceError):
        return 500, {"error": "internal server error"}
    if error.code in handled and error.code in _HTTP_STATUS:
        return _HTTP_STATUS[error.code], {"error": error.message}
    if error.code is StatusCode.INTERNAL:
        return 500, {"error": "internal server error"}
    return 500, {"error": "unknown gRPC error"}