import pytest

from clicsync.app.collections import (
    COLLECTION_FIELDS,
    CollectionResolver,
    DataBagCollection,
    FieldMap,
    SettingsCollection,
    StructuredCollection,
    canonical_name,
    decode_row,
    encode_row,
    encode_value,
)
from clicsync.app.db import get_conn, init_db, transaction
from clicsync.app.errors import SyncValidationError


@pytest.fixture
def conn(db_path):
    init_db(db_path)
    with get_conn(db_path) as c:
        yield c


@pytest.fixture
def resolver(conn):
    return CollectionResolver.from_conn(conn)


def test_introspection_classifies_tables(resolver):
    assert isinstance(resolver.resolve("products"), StructuredCollection)
    assert isinstance(resolver.resolve("suppliers"), DataBagCollection)
    assert isinstance(resolver.resolve("internalSequences"), SettingsCollection)
    assert resolver.resolve("inventoryLedger").table == "inventory_ledger"
    assert "hasActivePromotion" in resolver.resolve("products").columns


@pytest.mark.parametrize("name", ["settings", "sync_tokens", "connected_terminals", "syncMetadata", "pending_transactions", "sync_errors", " "])
def test_reserved_or_blank_names_are_rejected(name):
    with pytest.raises(SyncValidationError):
        canonical_name(name)


def test_field_maps_drive_both_directions():
    fields = COLLECTION_FIELDS["customers"]
    columns = ("id", "tags", "isTaxExempt", "name")
    row = dict(zip(columns, encode_row(columns, {"id": "c1", "tags": ["vip"], "isTaxExempt": True, "name": "Ana"}, fields)))
    assert row["tags"] == '["vip"]'
    assert row["isTaxExempt"] == 1
    assert decode_row("customers", row, fields) == {"id": "c1", "tags": ["vip"], "isTaxExempt": True, "name": "Ana"}


def test_decode_failure_substitutes_empty_list_for_that_field_only():
    fields = FieldMap(json_fields=("tags", "addresses"))
    out = decode_row("customers", {"id": "c1", "tags": "{not json", "addresses": '[{"city": "x"}]'}, fields)
    assert out["tags"] == []
    assert out["addresses"] == [{"city": "x"}]


def test_structured_push_round_trips_json_and_bool_columns(conn, resolver):
    product = {
        "id": "p1",
        "name": "Coffee",
        "price": 2.5,
        "images": ["a.png"],
        "stockBalances": {"W1": 3},
        "hasActivePromotion": False,
        "unknownKey": "ignored",
    }
    with transaction(conn):
        resolver.write(conn, "products", [product])
    [row] = resolver.read(conn, "products")
    assert row["images"] == ["a.png"]
    assert row["stockBalances"] == {"W1": 3}
    assert row["hasActivePromotion"] is False
    assert row["description"] is None
    assert "unknownKey" not in row


def test_structured_write_upserts_without_touching_siblings(conn, resolver):
    with transaction(conn):
        resolver.write(conn, "warehouses", [{"id": "w1", "name": "Main"}, {"id": "w2", "name": "Back"}])
    with transaction(conn):
        resolver.write(conn, "warehouses", [{"id": "w1", "name": "Front", "isMain": True}])
    rows = {r["id"]: r for r in resolver.read(conn, "warehouses")}
    assert rows["w1"]["name"] == "Front"
    assert rows["w1"]["isMain"] is True
    assert rows["w2"]["name"] == "Back"


def test_data_bag_write_replaces_everything(conn, resolver):
    with transaction(conn):
        resolver.write(conn, "suppliers", [{"id": "s1", "name": "A"}, {"id": "s2", "name": "B"}])
    with transaction(conn):
        resolver.write(conn, "suppliers", [{"id": "s3", "name": "C", "nested": {"x": 1}}])
    assert resolver.read(conn, "suppliers") == [{"id": "s3", "name": "C", "nested": {"x": 1}}]
    assert resolver.count(conn, "suppliers") == 1


def test_settings_collection_overwrites_and_defaults_to_empty(conn, resolver):
    assert resolver.read(conn, "internalSequences") == []
    with transaction(conn):
        resolver.write(conn, "internalSequences", [{"id": "a"}, {"id": "b"}])
    with transaction(conn):
        resolver.write(conn, "internalSequences", [{"id": "c"}])
    assert resolver.read(conn, "internalSequences") == [{"id": "c"}]
    assert resolver.count(conn, "internalSequences") == 1


def test_read_filters_by_column(conn, resolver):
    with transaction(conn):
        resolver.write(conn, "z_reports", [{"id": "z1", "terminalId": "T-1"}, {"id": "z2", "terminalId": "T-2"}])
    assert [r["id"] for r in resolver.read(conn, "zReports", filters={"terminalId": "T-2"})] == ["z2"]


def test_read_degrades_to_empty_when_table_is_gone(conn, resolver):
    conn.execute("DROP TABLE receptions")
    assert resolver.read(conn, "receptions") == []
    assert resolver.count(conn, "receptions") == 0


def test_insert_ignore_reports_novelty(conn, resolver):
    with transaction(conn):
        assert resolver.insert_ignore(conn, "cash_movements", {"id": "m1", "amount": 5}) is True
        assert resolver.insert_ignore(conn, "cash_movements", {"id": "m1", "amount": 9}) is False
    [row] = resolver.read(conn, "cashMovements")
    assert row["amount"] == 5


@pytest.mark.parametrize(
    "raw,stored",
    [(True, 1), (False, 0), (1, 1), (0, 0), ("true", 1), ("False", 0), ("0", 0), ("1", 1), (" yes ", 1), ("off", 0)],
)
def test_bool_columns_accept_common_string_forms(raw, stored):
    assert encode_value("hasActivePromotion", raw, COLLECTION_FIELDS["products"]) == stored


@pytest.mark.parametrize("raw", ["maybe", [1], {"on": True}])
def test_bool_columns_reject_other_values(raw):
    with pytest.raises(SyncValidationError):
        encode_value("hasActivePromotion", raw, COLLECTION_FIELDS["products"])


def test_string_false_is_stored_false(conn, resolver):
    with transaction(conn):
        resolver.write(conn, "products", [{"id": "p1", "hasActivePromotion": "false"}])
    [row] = resolver.read(conn, "products")
    assert row["hasActivePromotion"] is False
