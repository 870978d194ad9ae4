import json
from datetime import datetime

import pytest

from cardledger.common import ServiceError, StatusCode
from cardledger.merchant import Merchant, MerchantService, clean_merchant_name

SELECT_BY_ID = (
    "SELECT merchant_id, name, category, logo_url, mcc FROM merchants "
    "WHERE merchant_id = $1"
)
LOOKUP = (
    "SELECT merchant_id, name, category, logo_url, mcc FROM merchants "
    "WHERE lower(name) = lower($1) AND coalesce(mcc, 0) = coalesce($2, 0)"
)
INSERT = (
    "INSERT INTO merchants (merchant_id, name, category, mcc, created_at, updated_at) "
    "VALUES ($1, $2, $3, $4, NOW(), NOW()) "
    "RETURNING merchant_id, name, category, logo_url, mcc"
)


class FakeDb:
    """Answers query_row calls from a script of expected queries."""

    def __init__(self, *script):
        self.script = list(script)
        self.calls = []

    def query_row(self, query, *args):
        self.calls.append((query, args))
        assert self.script, f"unexpected query: {query}"
        expected_query, result = self.script.pop(0)
        assert query == expected_query
        if isinstance(result, Exception):
            raise result
        return result

    def query(self, query, *args):
        raise AssertionError("query not expected")


class FakeRedis:
    def __init__(self):
        self.added = []

    def xadd(self, stream, fields):
        self.added.append((stream, fields))
        return "some-stream-id"


def make_service(*script):
    db = FakeDb(*script)
    redis = FakeRedis()
    return MerchantService(db, redis), db, redis


def test_get_merchant_found():
    row = ("merch-123", "Test Merchant", "Test Category", "http://example.com/logo.png", 1234)
    service, db, _ = make_service((SELECT_BY_ID, row))
    merchant = service.get_merchant("merch-123")
    assert merchant == Merchant(
        merchant_id="merch-123",
        name="Test Merchant",
        category="Test Category",
        logo_url="http://example.com/logo.png",
        mcc=1234,
    )
    assert db.calls == [(SELECT_BY_ID, ("merch-123",))]
    assert db.script == []


def test_get_merchant_not_found():
    service, db, _ = make_service((SELECT_BY_ID, None))
    with pytest.raises(ServiceError) as info:
        service.get_merchant("merch-unknown")
    assert info.value.code is StatusCode.NOT_FOUND
    assert db.script == []


def test_get_merchant_database_failure():
    service, _, _ = make_service((SELECT_BY_ID, RuntimeError("boom")))
    with pytest.raises(ServiceError) as info:
        service.get_merchant("merch-1")
    assert info.value.code is StatusCode.INTERNAL
    assert info.value.message == "failed to get merchant"


def test_find_or_create_merchant_found():
    row = ("merch-found", "Existing Merchant", "Found Category", None, 5678)
    service, db, _ = make_service((LOOKUP, row))
    merchant = service.find_or_create_merchant("Existing Merchant", 5678)
    assert merchant == Merchant("merch-found", "Existing Merchant", "Found Category", "", 5678)
    assert db.calls == [(LOOKUP, ("Existing Merchant", 5678))]


def test_find_or_create_merchant_create():
    row = ("new-merch-id", "New Merchant", None, None, 9012)
    service, db, _ = make_service((LOOKUP, None), (INSERT, row))
    merchant = service.find_or_create_merchant("New Merchant", 9012)
    assert merchant.merchant_id == "new-merch-id"
    assert merchant.name == "New Merchant"
    assert merchant.mcc == 9012
    assert merchant.category == ""
    insert_query, insert_args = db.calls[1]
    assert insert_query == INSERT
    assert insert_args[1:] == ("New Merchant", None, 9012)
    assert len(insert_args[0]) == 36
    assert db.script == []


def test_find_or_create_cleans_name_and_passes_null_mcc():
    row = ("id-1", "Corner Shop", None, None, None)
    service, db, _ = make_service((LOOKUP, None), (INSERT, row))
    merchant = service.find_or_create_merchant("CORNER SHOP", 0)
    assert db.calls[0][1] == ("CORNER SHOP", None)
    assert db.calls[1][1][1:] == ("Corner Shop", None, None)
    assert merchant.mcc == 0


def test_find_or_create_retries_after_unique_violation():
    row = ("merch-race", "Race Shop", None, None, 42)
    service, db, _ = make_service(
        (LOOKUP, None),
        (INSERT, RuntimeError("duplicate key violates unique constraint")),
        (LOOKUP, row),
    )
    merchant = service.find_or_create_merchant("race shop", 42)
    assert merchant.merchant_id == "merch-race"
    assert db.script == []


def test_find_or_create_insert_failure():
    service, _, _ = make_service((LOOKUP, None), (INSERT, RuntimeError("disk full")))
    with pytest.raises(ServiceError) as info:
        service.find_or_create_merchant("Shop", 1)
    assert info.value.code is StatusCode.INTERNAL
    assert info.value.message == "failed to create merchant"


def test_find_or_create_lookup_failure():
    service, _, _ = make_service((LOOKUP, RuntimeError("down")))
    with pytest.raises(ServiceError) as info:
        service.find_or_create_merchant("Shop", 1)
    assert info.value.message == "failed to find or create merchant"


def test_update_merchant_success():
    query = (
        "UPDATE merchants SET name = $1, category = $2, logo_url = $3, mcc = $4, "
        "updated_at = $5 WHERE merchant_id = $6 "
        "RETURNING merchant_id, name, category, logo_url, mcc"
    )
    row = ("merch-to-update", "Updated Name", "Updated Category", "http://new.logo/url.png", 1111)
    service, db, redis = make_service((query, row))
    merchant = service.update_merchant(
        "merch-to-update", "Updated Name", "Updated Category", "http://new.logo/url.png", 1111
    )
    assert merchant == Merchant(
        "merch-to-update", "Updated Name", "Updated Category", "http://new.logo/url.png", 1111
    )
    args = db.calls[0][1]
    assert args[:4] == ("Updated Name", "Updated Category", "http://new.logo/url.png", 1111)
    assert isinstance(args[4], datetime)
    assert args[5] == "merch-to-update"
    expected_payload = (
        '{"merchant_id": "merch-to-update", "name": "Updated Name", '
        '"category": "Updated Category", "logo_url": "http://new.logo/url.png", "mcc": 1111}'
    )
    assert redis.added == [("merchant:updated", {"payload": expected_payload})]


def test_update_merchant_not_found():
    query = (
        "UPDATE merchants SET name = $1, updated_at = $2 WHERE merchant_id = $3 "
        "RETURNING merchant_id, name, category, logo_url, mcc"
    )
    service, db, redis = make_service((query, None))
    with pytest.raises(ServiceError) as info:
        service.update_merchant("merch-unknown", name="Updated Name")
    assert info.value.code is StatusCode.NOT_FOUND
    assert db.calls[0][1][0] == "Updated Name"
    assert db.calls[0][1][2] == "merch-unknown"
    assert redis.added == []


def test_update_merchant_no_fields():
    service, db, _ = make_service()
    with pytest.raises(ServiceError) as info:
        service.update_merchant("merch-no-fields")
    assert info.value.code is StatusCode.INVALID_ARGUMENT
    assert db.calls == []


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("New Merchant", "New Merchant"),
        ("NEW MERCHANT", "New Merchant"),
        ("o'brien's cafe", "O'Brien'S Cafe"),
        ("7eleven store", "7eleven Store"),
        ("mcdonald_s", "Mcdonald_s"),
        ("tesco-express", "Tesco-Express"),
        ("", ""),
    ],
)
def test_clean_merchant_name(raw, expected):
    assert clean_merchant_name(raw) == expected


def test_handle_get_merchant_ok():
    row = ("m-1", "Shop", None, None, 10)
    service, _, _ = make_service((SELECT_BY_ID, row))
    status, body = service.handle_get_merchant("m-1")
    assert status == 200
    assert body == {"merchant_id": "m-1", "name": "Shop", "category": "", "logo_url": "", "mcc": 10}


def test_handle_get_merchant_not_found():
    service, _, _ = make_service((SELECT_BY_ID, None))
    assert service.handle_get_merchant("m-x") == (404, {"error": "merchant not found"})


def test_handle_get_merchant_internal():
    service, _, _ = make_service((SELECT_BY_ID, RuntimeError("down")))
    assert service.handle_get_merchant("m-x") == (500, {"error": "internal server error"})


def test_handle_update_merchant_ok():
    query = (
        "UPDATE merchants SET category = $1, updated_at = $2 WHERE merchant_id = $3 "
        "RETURNING merchant_id, name, category, logo_url, mcc"
    )
    row = ("m-1", "Shop", "Food", None, None)
    service, _, redis = make_service((query, row))
    status, body = service.handle_update_merchant("m-1", json.dumps({"category": "Food"}))
    assert status == 200
    assert body["category"] == "Food"
    assert len(redis.added) == 1


def test_handle_update_merchant_no_fields():
    service, _, _ = make_service()
    assert service.handle_update_merchant("m-1", {}) == (400, {"error": "no fields to update"})


@pytest.mark.parametrize("body", ["not json", {"mcc": "12"}, {"name": 5}, [1, 2], {"mcc": 2**31}])
def test_handle_update_merchant_invalid_body(body):
    service, db, _ = make_service()
    assert service.handle_update_merchant("m-1", body) == (400, {"error": "invalid request body"})
    assert db.calls == []


def test_handle_update_merchant_not_found():
    query = (
        "UPDATE merchants SET name = $1, updated_at = $2 WHERE merchant_id = $3 "
        "RETURNING merchant_id, name, category, logo_url, mcc"
    )
    service, _, _ = make_service((query, None))
    assert service.handle_update_merchant("m-x", {"name": "X"}) == (
        404,
        {"error": "merchant not found"},
    )