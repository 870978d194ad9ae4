"""Turns newly recorded transactions into items in the account's feed."""

from __future__ import annotations

import json
import logging
from typing import Any

from cardledger.common import publish_event
from cardledger.stream_consumer import StreamConsumer

logger = logging.getLogger(__name__)

TRANSACTION_STREAM = "transaction:created"
CONSUMER_GROUP = "feed-generator-consumer-group"
CONSUMER_NAME = "feed-generator-instance-1"
FEED_ITEM_STREAM = "feed:item.created"


class FeedGenerationError(Exception):
    """A feed item could not be generated for a transaction."""


class FeedGenerator:
    """Builds a feed item for each transaction and announces it."""

    def __init__(
        self, redis_client: Any, transactions_client: Any, feed_client: Any
    ) -> None:
        self.redis_client = redis_client
        self.transactions_client = transactions_client
        self.feed_client = feed_client

    def generate_feed_item_for_transaction(self, transaction_id: str) -> Any:
        """Add a "Spent ..." feed item for a transaction and return it."""
        try:
            transaction = self.transactions_client.get_transaction(transaction_id)
        except Exception as exc:
            logger.error("failed to get transaction %s: %s", transaction_id, exc)
            raise FeedGenerationError(f"failed to get transaction: {exc}") from exc

        merchant_name = (
            transaction.merchant_name or transaction.merchant_raw or "an unknown place"
        )
        amount = transaction.amount / 100.0
        content = f"Spent {amount:.2f} {transaction.currency} at {merchant_name}"

        try:
            item = self.feed_client.add_feed_item(
                account_id=transaction.account_id,
                item_type="TRANSACTION",
                content=content,
                ref_id=transaction_id,
                timestamp=transaction.timestamp,
            )
        except Exception as exc:
            logger.error("failed to add feed item for transaction %s: %s", transaction_id, exc)
            raise FeedGenerationError(f"failed to add feed item: {exc}") from exc

        logger.info("added feed item %s for transaction %s", item.id, transaction_id)
        payload = json.dumps(
            {
                "feed_item_id": item.id,
                "account_id": item.account_id,
                "type": item.type,
                "transaction_id": transaction_id,
            }
        )
        publish_event(self.redis_client, FEED_ITEM_STREAM, payload)
        return item

    def consumer(self) -> StreamConsumer:
        """Return a consumer that generates feed items for new transactions."""
        return StreamConsumer(
            self.redis_client,
            TRANSACTION_STREAM,
            CONSUMER_GROUP,
            CONSUMER_NAME,
            self.generate_feed_item_for_transaction,
        )