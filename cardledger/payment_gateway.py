"""Client for an external payment-session API, exposed with service-style errors."""

from __future__ import annotations

import json
import logging
from typing import Any
from urllib.parse import urlencode

import requests

from cardledger.common import ServiceError, StatusCode

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0


class _RequestFailed(Exception):
    """The external API could not be reached or answered with an error."""


def _looks_not_found(error: Exception) -> bool:
    text = str(error)
    return "404" in text or "not found" in text


def _error_detail(content: bytes) -> tuple[str, str] | None:
    """Return the ``error`` and ``message`` fields of an error body, if it has that shape."""
    try:
        parsed = json.loads(content)
    except ValueError:
        return None
    if parsed is None:
        return "", ""
    if not isinstance(parsed, dict):
        return None
    fields = []
    for name in ("error", "message"):
        value = parsed.get(name)
        if value is None:
            value = ""
        if not isinstance(value, str):
            return None
        fields.append(value)
    return fields[0], fields[1]


def _decode_object(content: bytes, what: str) -> dict[str, Any]:
    """Decode a JSON object response; raise an internal ServiceError otherwise."""
    try:
        parsed = json.loads(content)
    except ValueError as exc:
        logger.error("failed to decode %s response: %s", what, exc)
        raise ServiceError(
            StatusCode.INTERNAL, f"failed to parse {what} response"
        ) from exc
    if parsed is None:
        return {}
    if not isinstance(parsed, dict):
        logger.error("%s response is not a JSON object", what)
        raise ServiceError(StatusCode.INTERNAL, f"failed to parse {what} response")
    return parsed


class PaymentGateway:
    """Calls the external payment API and maps its failures to ServiceError."""

    def __init__(
        self,
        base_url: str,
        project_id: str,
        api_key: str = "",
        session: requests.Session | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.base_url = base_url
        self.project_id = project_id
        self.api_key = api_key
        self.session = session if session is not None else requests.Session()
        self.timeout = timeout

    def _request(self, method: str, endpoint: str, body: Any = None) -> bytes:
        url = self.base_url + endpoint
        data = json.dumps(body) if body is not None else None
        headers = {
            "Content-Type": "application/json",
            "X-Glide-Project-ID": self.project_id,
        }
        if self.api_key:
            headers["Authorization"] = "Bearer " + self.api_key
        try:
            response = self.session.request(
                method, url, data=data, headers=headers, timeout=self.timeout
            )
        except requests.RequestException as exc:
            raise _RequestFailed(f"HTTP request failed: {exc}") from exc

        content = response.content
        if response.status_code not in (200, 201):
            detail = _error_detail(content)
            if detail is not None:
                raise _RequestFailed(
                    f"external API returned error status {response.status_code}: "
                    f"{detail[0]} - {detail[1]}"
                )
            raise _RequestFailed(
                f"external API returned unexpected status code: {response.status_code}"
            )
        return content

    def create_session(
        self, user_id: str, currency: str, amount: Any, redirect_url: str = ""
    ) -> dict[str, Any]:
        """Create a payment session and return the API's description of it."""
        body = {
            "userId": user_id,
            "currency": currency,
            "amount": amount,
            "redirectUrl": redirect_url,
        }
        try:
            content = self._request("POST", "/sessions", body)
        except _RequestFailed as exc:
            logger.error("create session request failed: %s", exc)
            raise ServiceError(
                StatusCode.INTERNAL, f"failed to create session: {exc}"
            ) from exc
        return _decode_object(content, "create session")

    def get_session_by_id(self, session_id: str) -> dict[str, Any]:
        """Return the session with ``session_id``."""
        if not session_id:
            raise ServiceError(StatusCode.INVALID_ARGUMENT, "session_id is required")
        try:
            content = self._request("GET", f"/sessions/{session_id}")
        except _RequestFailed as exc:
            logger.error("get session request failed: %s", exc)
            if _looks_not_found(exc):
                raise ServiceError(
                    StatusCode.NOT_FOUND, f"session not found: {session_id}"
                ) from exc
            raise ServiceError(
                StatusCode.INTERNAL, f"failed to get session: {exc}"
            ) from exc
        return _decode_object(content, "get session")

    def list_sessions(
        self,
        user_id: str = "",
        status: str = "",
        limit: int = 0,
        cursor: str = "",
    ) -> dict[str, Any]:
        """List sessions; returns ``{"sessions": [...], "next_cursor": str}``.

        Entries that are not JSON objects are skipped.
        """
        params: dict[str, str] = {}
        if user_id:
            params["user_id"] = user_id
        if status:
            params["status"] = status
        if limit and limit > 0:
            params["limit"] = str(int(limit))
        if cursor:
            params["cursor"] = cursor
        endpoint = "/sessions"
        if params:
            endpoint += "?" + urlencode(sorted(params.items()))

        try:
            content = self._request("GET", endpoint)
        except _RequestFailed as exc:
            logger.error("list sessions request failed: %s", exc)
            raise ServiceError(
                StatusCode.INTERNAL, f"failed to list sessions: {exc}"
            ) from exc

        parsed = _decode_object(content, "list sessions")
        raw_sessions = parsed.get("sessions")
        next_cursor = parsed.get("next_cursor")
        if raw_sessions is None:
            raw_sessions = []
        if next_cursor is None:
            next_cursor = ""
        if not isinstance(raw_sessions, list) or not isinstance(next_cursor, str):
            logger.error("list sessions response has an unexpected shape")
            raise ServiceError(
                StatusCode.INTERNAL, "failed to parse list sessions response"
            )

        sessions = []
        for raw in raw_sessions:
            if raw is None:
                sessions.append({})
            elif isinstance(raw, dict):
                sessions.append(raw)
            else:
                logger.warning("skipping malformed session entry: %r", raw)
        return {"sessions": sessions, "next_cursor": next_cursor}

    def get_session_by_payment_transaction(
        self, payment_transaction_hash: str
    ) -> dict[str, Any]:
        """Return the session paid for by the given transaction hash."""
        if not payment_transaction_hash:
            raise ServiceError(
                StatusCode.INVALID_ARGUMENT, "payment_transaction_hash is required"
            )
        endpoint = "/sessions/get-by-payment-transaction?" + urlencode(
            {"payment_transaction_hash": payment_transaction_hash}
        )
        try:
            content = self._request("GET", endpoint)
        except _RequestFailed as exc:
            logger.error("get session by payment transaction failed: %s", exc)
            if _looks_not_found(exc):
                raise ServiceError(
                    StatusCode.NOT_FOUND,
                    "session not found for payment transaction: "
                    f"{payment_transaction_hash}",
                ) from exc
            raise ServiceError(
                StatusCode.INTERNAL,
                f"failed to get session by payment transaction: {exc}",
            ) from exc
        return _decode_object(content, "get session by payment transaction")

    def create_wallet(self, user_id: str) -> dict[str, Any]:
        """Create a wallet for ``user_id``."""
        try:
            content = self._request("POST", "/wallets", {"userId": user_id})
        except _RequestFailed as exc:
            logger.error("create wallet request failed: %s", exc)
            raise ServiceError(
                StatusCode.INTERNAL, f"failed to create wallet: {exc}"
            ) from exc
        return _decode_object(content, "create wallet")

    def estimate_payment_amount(
        self, target_currency: str, target_amount: Any, source_currency: str
    ) -> dict[str, Any]:
        """Ask how much of ``source_currency`` pays ``target_amount`` of the target."""
        body = {
            "targetCurrency": target_currency,
            "targetAmount": target_amount,
            "sourceCurrency": source_currency,
        }
        try:
            content = self._request("POST", "/estimate-payment-amount", body)
        except _RequestFailed as exc:
            logger.error("estimate payment amount request failed: %s", exc)
            raise ServiceError(
                StatusCode.INTERNAL, f"failed to estimate payment amount: {exc}"
            ) from exc
        return _decode_object(content, "estimate payment amount")