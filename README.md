# cardledger

Services for a card-based banking ledger: cards, transactions, merchants and
an account activity feed, the workers that tie them together over Redis
streams, and a client for an external payment-session API.

Failures are raised as `ServiceError`, which carries a `StatusCode`
(`OK`, `UNKNOWN`, `INVALID_ARGUMENT`, `NOT_FOUND`, `INTERNAL`, numbered as in
gRPC) and a message. Each service also has `handle_*` methods that take
request parameters or a JSON body and return a `(status, body)` pair, using
`error_response` to turn a `ServiceError` into an HTTP status and an
`{"error": ...}` body.

## Installation

```
pip install cardledger
```

To run the test suite:

```
pip install "cardledger[test]"
pytest
```

## Modules

| Module | What it does |
| --- | --- |
| `cardledger.common` | `StatusCode`, `ServiceError`, `Database`, `publish_event` and `error_response` |
| `cardledger.cards` | `CardsService`: create cards, look them up, change their status (`ACTIVE`, `INACTIVE`, `FROZEN`, `CLOSED`) |
| `cardledger.transactions` | `TransactionsService`: record, fetch, list (newest first, with `limit` and `before_id`) and update transactions; `Config` and `load_config` |
| `cardledger.merchant` | `MerchantService`: look up, find-or-create and update merchants; `clean_merchant_name` |
| `cardledger.feed` | `FeedService`: add feed items, list them per account, fetch them by id |
| `cardledger.card_processing` | `CardProcessor`: authorises a card payment by checking the card, debiting the balance and recording the transaction |
| `cardledger.stream_consumer` | `StreamConsumer`: reads a Redis stream through a consumer group and acknowledges messages once handled |
| `cardledger.feed_generator` | `FeedGenerator`: turns transactions into feed items such as `Spent 10.00 GBP at Test Merchant` |
| `cardledger.enrichment` | `TransactionEnricher`: attaches a merchant id, cleaned name and category to transactions |
| `cardledger.payment_gateway` | `PaymentGateway`: client for an external payment-session and wallet API |

## Storage and events

`Database` wraps a DB-API connection. Queries are written with numbered
`$1`, `$2`, ... placeholders, which it rewrites to the connection's style
(`paramstyle="qmark"`, the default, or `"format"`). `query_row` returns the
first row or `None`; `query` returns every row. Each statement is committed
once it has run. The SQL uses PostgreSQL features such as `NOW()` and
`RETURNING`.

Events are appended to Redis streams with `publish_event`, which calls
`xadd` on whatever client it is given with a single `payload` field holding
JSON. Publishing is best effort: a failure is logged and `None` is returned.
`StreamConsumer` uses `xgroup_create`, `xreadgroup` and `xack`. Any client
with those methods will do (for example one from the `redis` distribution,
which this package does not install).

| Stream | Published by |
| --- | --- |
| `card:created` | `CardsService.create_card` |
| `card:status_changed` | `CardsService.update_card_status` |
| `transaction:created` | `TransactionsService.record_transaction` |
| `merchant:updated` | `MerchantService.update_merchant` |
| `feed:item.created` | `FeedGenerator.generate_feed_item_for_transaction` |

## Usage

### Cards

```python
from cardledger.cards import CardsService
from cardledger.common import Database, ServiceError, StatusCode

cards = CardsService(Database(connection, paramstyle="format"), redis_client)

card = cards.create_card("user-123")          # status starts as ACTIVE
cards.update_card_status(card.id, "FROZEN")   # publishes card:status_changed

try:
    cards.get_card("card-unknown")
except ServiceError as exc:
    assert exc.code is StatusCode.NOT_FOUND

status, body = cards.handle_get_card("card-unknown")   # (404, {"error": "card not found"})
```

### Authorising a card payment

```python
from cardledger.card_processing import CardAuthRequest, CardProcessor

processor = CardProcessor(cards_client, balance_client, transactions_client)
reply = processor.authorize_card_transaction(
    CardAuthRequest(card_id="card-123", amount=1000, currency="GBP", merchant_name="Test Shop")
)
if not reply.approved:
    print(reply.decline_reason)   # e.g. "card not found", "card is frozen"
```

The clients need `get_card(card_id)`, `authorize_debit(account_id, amount)`
(returning something with `success` and `error_message`, such as
`DebitResult`) and `record_transaction(transaction_input)`. `CardsService`
and `TransactionsService` can serve as the cards and transactions clients.
A declined payment (unknown or inactive card, failed debit) comes back as a
reply with `approved` false; failures of the services it calls are raised as
`ServiceError` with `StatusCode.INTERNAL`.

### Configuration

`load_config` starts from the `Config` defaults and overrides `db_dsn`,
`redis_addr`, `http_port` and `grpc_port` from `TRANSACTIONS_DB_DSN`,
`TRANSACTIONS_REDIS_ADDR`, `TRANSACTIONS_HTTP_PORT` and
`TRANSACTIONS_GRPC_PORT` in the mapping it is given, or in `os.environ` when
given none.

```python
from cardledger.transactions import load_config

config = load_config({"TRANSACTIONS_REDIS_ADDR": "localhost:6380"})
```

### Stream workers

`FeedGenerator` and `TransactionEnricher` each provide a `consumer()` that
returns a `StreamConsumer` on the `transaction:created` stream, in their own
consumer group. A message is acknowledged when it is handled, or when its
payload cannot be read; it is left pending for another delivery when handling
fails.

```python
from cardledger.enrichment import TransactionEnricher

enricher = TransactionEnricher(redis_client, transactions_client, merchant_client)
consumer = enricher.consumer()
consumer.run(should_stop)   # creates the group, then polls until should_stop() is true
```

`poll()` reads and processes a single batch and returns how many messages
were handled.

### Payment gateway

```python
import requests
from cardledger.payment_gateway import PaymentGateway

gateway = PaymentGateway(
    base_url="https://payments.example.com",
    project_id="project-1",
    api_key="placeholder",
    session=requests.Session(),
    timeout=10.0,
)
session = gateway.create_session("user-123", "USD", 1000, "https://shop.example.com/done")
listing = gateway.list_sessions(user_id="user-123", limit=10)   # {"sessions": [...], "next_cursor": ...}
```

Responses are returned as decoded JSON objects. Errors from the API are
raised as `ServiceError`: `NOT_FOUND` for missing sessions, `INVALID_ARGUMENT`
for empty identifiers, `INTERNAL` otherwise.

## What this package does not do

- It runs no servers and has no command-line program. The `handle_*` methods
  return `(status, body)` pairs for a web framework of your choice to serve,
  and the services are plain Python objects rather than network endpoints.
- It creates no database schema and runs no migrations; the `cards`,
  `transactions`, `merchants` and `feed_items` tables must already exist.
- It has no balance service. `CardProcessor` needs a balance client supplied
  by the caller.
- It installs no database driver and no Redis client.