"""Authorisation of card payments across the cards, balance and transactions services."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from cardledger.common import ServiceError, StatusCode
from cardledger.transactions import TransactionInput

logger = logging.getLogger(__name__)


@dataclass
class CardAuthRequest:
    """A request to authorise a payment made with a card."""

    card_id: str
    amount: int = 0
    currency: str = ""
    merchant_id: str = ""
    merchant_name: str = ""


@dataclass
class CardAuthReply:
    """The outcome of an authorisation; a decline carries its reason."""

    approved: bool
    decline_reason: str = ""


@dataclass
class DebitResult:
    """The balance service's answer to a debit request."""

    success: bool
    new_balance: int = 0
    error_message: str = ""


class CardProcessor:
    """Checks the card, debits the balance and records the transaction."""

    def __init__(
        self, cards_client: Any, balance_client: Any, transactions_client: Any
    ) -> None:
        self.cards_client = cards_client
        self.balance_client = balance_client
        self.transactions_client = transactions_client

    def authorize_card_transaction(self, request: CardAuthRequest) -> CardAuthReply:
        """Authorise a card payment.

        Business declines come back as a reply; failures of the services
        raise ServiceError with an internal status.
        """
        try:
            card = self.cards_client.get_card(request.card_id)
        except ServiceError as exc:
            if exc.code is StatusCode.NOT_FOUND:
                logger.info("card not found: %s", request.card_id)
                return CardAuthReply(False, "card not found")
            logger.error("failed to get card %s: %s", request.card_id, exc)
            raise ServiceError(
                StatusCode.INTERNAL, "failed to authorize transaction"
            ) from exc
        except Exception as exc:
            logger.error("failed to get card %s: %s", request.card_id, exc)
            raise ServiceError(
                StatusCode.INTERNAL, "failed to authorize transaction"
            ) from exc

        if card.status != "ACTIVE":
            logger.info("card %s is not active (status: %s)", request.card_id, card.status)
            return CardAuthReply(False, f"card is {card.status.lower()}")

        account_id = card.user_id
        try:
            debit = self.balance_client.authorize_debit(account_id, request.amount)
        except Exception as exc:
            logger.error("failed to authorize debit for account %s: %s", account_id, exc)
            raise ServiceError(
                StatusCode.INTERNAL, "failed to authorize transaction"
            ) from exc

        if not debit.success:
            logger.info(
                "debit not authorized for account %s: %s", account_id, debit.error_message
            )
            return CardAuthReply(False, debit.error_message)

        record = TransactionInput(
            account_id=account_id,
            card_id=request.card_id,
            amount=request.amount,
            currency=request.currency,
            merchant_id=request.merchant_id,
            merchant_raw=request.merchant_name,
            status="AUTHORIZED",
        )
        try:
            self.transactions_client.record_transaction(record)
        except Exception as exc:
            # The debit has already happened; the mismatch is left for monitoring.
            logger.error("failed to record transaction for account %s: %s", account_id, exc)
            raise ServiceError(
                StatusCode.INTERNAL, "failed to record transaction after debit"
            ) from exc

        logger.info(
            "transaction authorized for account %s, card %s, amount %d %s",
            account_id,
            request.card_id,
            request.amount,
            request.currency,
        )
        return CardAuthReply(True)