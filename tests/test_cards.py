import json

import pytest

from cardledger.cards import Card, CardsService
from cardledger.common import ServiceError, StatusCode

ANY = object()

INSERT = (
    "INSERT INTO cards (card_id, user_id, status, created_at) VALUES ($1, $2, $3, NOW()) "
    "RETURNING card_id, user_id, status, last_four, created_at, updated_at"
)
SELECT = "SELECT card_id, user_id, status, last_four FROM cards WHERE card_id = $1"
UPDATE = (
    "UPDATE cards SET status = $1, updated_at = NOW() WHERE card_id = $2 "
    "RETURNING card_id, user_id, status, last_four"
)


class ScriptedDatabase:
    """Answers expected statements in order, like a SQL mock."""

    def __init__(self):
        self.expected = []

    def expect(self, query, args, result):
        self.expected.append((query, args, result))

    def query_row(self, query, *args):
        assert self.expected, f"unexpected query: {query}"
        want_query, want_args, result = self.expected.pop(0)
        assert " ".join(query.split()) == " ".join(want_query.split())
        assert len(args) == len(want_args)
        for got, want in zip(args, want_args):
            assert want is ANY or got == want
        if isinstance(result, Exception):
            raise result
        return result

    def query(self, query, *args):
        return [self.query_row(query, *args)]

    def met(self):
        return not self.expected


class FakeRedis:
    def __init__(self):
        self.entries = []

    def xadd(self, stream, fields):
        self.entries.append((stream, fields))
        return "some-stream-id"


@pytest.fixture
def setup():
    db = ScriptedDatabase()
    redis = FakeRedis()
    return CardsService(db, redis), db, redis


def test_create_card(setup):
    service, db, redis = setup
    db.expect(INSERT, (ANY, "user-123", "ACTIVE"),
              ("new-card-id", "user-123", "ACTIVE", None, "2024-01-01", None))
    card = service.create_card("user-123")
    assert card.id == "new-card-id"
    assert card.user_id == "user-123"
    assert card.status == "ACTIVE"
    assert db.met()
    assert [stream for stream, _ in redis.entries] == ["card:created"]
    payload = json.loads(redis.entries[0][1]["payload"])
    assert payload == {"card_id": "new-card-id", "user_id": "user-123", "status": "ACTIVE"}


def test_create_card_db_failure(setup):
    service, db, redis = setup
    db.expect(INSERT, (ANY, "user-123", "ACTIVE"), RuntimeError("db down"))
    with pytest.raises(ServiceError) as info:
        service.create_card("user-123")
    assert info.value.code is StatusCode.INTERNAL
    assert redis.entries == []


def test_get_card_found(setup):
    service, db, _ = setup
    db.expect(SELECT, ("card-abc",), ("card-abc", "user-123", "ACTIVE", "1234"))
    card = service.get_card("card-abc")
    assert card == Card("card-abc", "user-123", "ACTIVE", "1234")
    assert db.met()


def test_get_card_not_found(setup):
    service, db, _ = setup
    db.expect(SELECT, ("card-xyz",), None)
    with pytest.raises(ServiceError) as info:
        service.get_card("card-xyz")
    assert info.value.code is StatusCode.NOT_FOUND
    assert db.met()


def test_update_card_status_success(setup):
    service, db, redis = setup
    db.expect(UPDATE, ("FROZEN", "card-def"), ("card-def", "user-456", "FROZEN", "5678"))
    card = service.update_card_status("card-def", "FROZEN")
    assert card == Card("card-def", "user-456", "FROZEN", "5678")
    assert db.met()
    assert redis.entries[0][0] == "card:status_changed"
    payload = json.loads(redis.entries[0][1]["payload"])
    assert payload["new_status"] == "FROZEN"


def test_update_card_status_invalid_status(setup):
    service, db, redis = setup
    with pytest.raises(ServiceError) as info:
        service.update_card_status("card-ghi", "INVALID_STATUS")
    assert info.value.code is StatusCode.INVALID_ARGUMENT
    assert redis.entries == []


def test_update_card_status_not_found(setup):
    service, db, redis = setup
    db.expect(UPDATE, ("FROZEN", "card-jkl"), None)
    with pytest.raises(ServiceError) as info:
        service.update_card_status("card-jkl", "FROZEN")
    assert info.value.code is StatusCode.NOT_FOUND
    assert db.met()
    assert redis.entries == []


def test_handle_create_card(setup):
    service, db, _ = setup
    db.expect(INSERT, (ANY, "user-123", "ACTIVE"),
              ("new-card-id", "user-123", "ACTIVE", None, None, None))
    status, body = service.handle_create_card('{"user_id": "user-123"}')
    assert status == 201
    assert body["id"] == "new-card-id"


def test_handle_create_card_invalid_body(setup):
    service, _, _ = setup
    assert service.handle_create_card("not json") == (400, {"error": "invalid request body"})


def test_handle_get_card_not_found(setup):
    service, db, _ = setup
    db.expect(SELECT, ("card-xyz",), None)
    assert service.handle_get_card("card-xyz") == (404, {"error": "card not found"})


def test_handle_get_card_internal(setup):
    service, db, _ = setup
    db.expect(SELECT, ("card-xyz",), RuntimeError("boom"))
    assert service.handle_get_card("card-xyz") == (500, {"error": "internal server error"})


def test_handle_update_card_status_invalid(setup):
    service, _, _ = setup
    status, body = service.handle_update_card_status("card-ghi", {"status": "INVALID_STATUS"})
    assert status == 400
    assert body == {"error": "invalid card status: INVALID_STATUS"}


def test_handle_update_card_status_ok(setup):
    service, db, _ = setup
    db.expect(UPDATE, ("FROZEN", "card-def"), ("card-def", "user-456", "FROZEN", "5678"))
    status, body = service.handle_update_card_status("card-def", {"status": "FROZEN"})
    assert status == 200
    assert body["status"] == "FROZEN"