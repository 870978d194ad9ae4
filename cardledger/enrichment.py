"""Attaches merchant details to newly recorded transactions."""

from __future__ import annotations

import logging
from typing import Any

from cardledger.stream_consumer import StreamConsumer

logger = logging.getLogger(__name__)

TRANSACTION_STREAM = "transaction:created"
CONSUMER_GROUP = "enrichment-consumer-group"
CONSUMER_NAME = "enrichment-instance-1"


class EnrichmentError(Exception):
    """A transaction could not be enriched with merchant details."""


class TransactionEnricher:
    """Looks up or creates the merchant of a transaction and records it."""

    def __init__(
        self, redis_client: Any, transactions_client: Any, merchant_client: Any
    ) -> None:
        self.redis_client = redis_client
        self.transactions_client = transactions_client
        self.merchant_client = merchant_client

    def enrich_transaction(self, transaction_id: str) -> Any:
        """Enrich a transaction; return it, updated, or unchanged if already enriched."""
        try:
            transaction = self.transactions_client.get_transaction(transaction_id)
        except Exception as exc:
            logger.error("failed to get transaction %s: %s", transaction_id, exc)
            raise EnrichmentError(f"failed to get transaction: {exc}") from exc

        if transaction.merchant_id:
            logger.info("transaction %s already enriched, skipping", transaction_id)
            return transaction

        try:
            merchant = self.merchant_client.find_or_create_merchant(transaction.merchant_raw)
        except Exception as exc:
            logger.error(
                "failed to find or create merchant for raw name %r: %s",
                transaction.merchant_raw,
                exc,
            )
            raise EnrichmentError(f"failed to find or create merchant: {exc}") from exc

        try:
            updated = self.transactions_client.update_transaction(
                transaction_id,
                merchant_id=merchant.merchant_id,
                merchant_name=merchant.name,
                category=merchant.category,
            )
        except Exception as exc:
            logger.error("failed to update transaction %s: %s", transaction_id, exc)
            raise EnrichmentError(f"failed to update transaction: {exc}") from exc

        logger.info(
            "enriched transaction %s with merchant %s", transaction_id, merchant.merchant_id
        )
        return updated

    def consumer(self) -> StreamConsumer:
        """Return a consumer that enriches new transactions."""
        return StreamConsumer(
            self.redis_client,
            TRANSACTION_STREAM,
            CONSUMER_GROUP,
            CONSUMER_NAME,
            self.enrich_transaction,
        )