"""
Collection resolver.

A collection is a logical dataset that terminals sync by name. It is backed by
one of three storage shapes, resolved once from store introspection:

- StructuredCollection: a table with typed columns. Some columns hold JSON text,
  some hold booleans as 0/1 (see COLLECTION_FIELDS).
- DataBagCollection: a table with an `id` and a single JSON `data` column.
- SettingsCollection: a JSON array stored under a key in the settings store.

COLLECTION_FIELDS is the only place the JSON/boolean columns are declared; both
`decode_row` and `encode_row` read it, so a field can't be decoded on read and
left unencoded on write (or the other way round).
"""

import json
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Union

from .errors import DecodeError, SyncValidationError
from .logs import json_log
from .settings_store import KeyValueStore, SqliteSettingsStore, get_list


@dataclass(frozen=True)
class FieldMap:
    json_fields: tuple[str, ...] = ()
    bool_fields: tuple[str, ...] = ()


COLLECTION_FIELDS: dict[str, FieldMap] = {
    "products": FieldMap(
        json_fields=(
            "images",
            "attributes",
            "variants",
            "tariffs",
            "stockBalances",
            "activeInWarehouses",
            "appliedTaxIds",
            "warehouseSettings",
            "availableModifiers",
            "operationalFlags",
        ),
        bool_fields=("hasActivePromotion",),
    ),
    "roles": FieldMap(json_fields=("permissions", "zReportConfig"), bool_fields=("isSystem",)),
    "customers": FieldMap(
        json_fields=("tags", "addresses"),
        bool_fields=("requiresFiscalInvoice", "prefersEmail", "isTaxExempt", "applyChainedTax"),
    ),
    "transactions": FieldMap(
        json_fields=("items", "payments", "customerSnapshot", "relatedTransactions"),
        bool_fields=("isTaxIncluded",),
    ),
    "receptions": FieldMap(json_fields=("items",)),
    "warehouses": FieldMap(bool_fields=("allowPosSale", "allowNegativeStock", "isMain")),
    "users": FieldMap(),
}

# Terminals address some tables by their camelCase API names.
COLLECTION_ALIASES = {
    "inventoryLedger": "inventory_ledger",
    "productStocks": "product_stocks",
    "cashMovements": "cash_movements",
    "zReports": "z_reports",
    "purchaseOrders": "purchase_orders",
    "stockTransfers": "stock_transfers",
}

# Tables that hold protocol state rather than syncable data.
INTERNAL_TABLES = frozenset({"settings", "sync_tokens", "connected_terminals"})

# Settings keys owned by the protocol itself.
RESERVED_KEYS = frozenset(
    {
        "syncMetadata",
        "pending_transactions",
        "pending_inventory_movements",
        "sync_errors",
        "syncTokens",
        "connectedTerminals",
    }
)


@dataclass(frozen=True)
class StructuredCollection:
    name: str
    table: str
    columns: tuple[str, ...]
    fields: FieldMap = field(default_factory=FieldMap)


@dataclass(frozen=True)
class DataBagCollection:
    name: str
    table: str


@dataclass(frozen=True)
class SettingsCollection:
    name: str
    key: str


Collection = Union[StructuredCollection, DataBagCollection, SettingsCollection]


def canonical_name(name: str) -> str:
    n = (name or "").strip()
    if not n:
        raise SyncValidationError("collection name is required")
    n = COLLECTION_ALIASES.get(n, n)
    if n in INTERNAL_TABLES or n in RESERVED_KEYS:
        raise SyncValidationError(f"collection {n} is not syncable")
    return n


def _quote(ident: str) -> str:
    return '"' + ident.replace('"', '""') + '"'


def decode_row(collection: str, row: dict, fields: FieldMap) -> dict:
    out = dict(row)
    for f in fields.json_fields:
        value = out.get(f)
        if isinstance(value, str):
            try:
                out[f] = json.loads(value)
            except ValueError as ex:
                err = DecodeError(collection, f, out.get("id"), ex)
                json_log(
                    "warning",
                    "collections.decode_failed",
                    collection=collection,
                    field=f,
                    id=out.get("id"),
                    error=str(err),
                )
                out[f] = []
    for f in fields.bool_fields:
        if out.get(f) is not None:
            out[f] = bool(out[f])
    return out


_TRUE_STRINGS = {"1", "true", "yes", "on"}
_FALSE_STRINGS = {"0", "false", "no", "off", ""}


def encode_bool(column: str, value: Any) -> int:
    if isinstance(value, (bool, int, float)):
        return 1 if value else 0
    if isinstance(value, str):
        v = value.strip().lower()
        if v in _TRUE_STRINGS:
            return 1
        if v in _FALSE_STRINGS:
            return 0
    raise SyncValidationError(f"{column} must be a boolean, got {value!r}")


def encode_value(column: str, value: Any, fields: FieldMap) -> Any:
    if value is None:
        return None
    if column in fields.json_fields:
        return json.dumps(value, default=str)
    if column in fields.bool_fields:
        return encode_bool(column, value)
    if isinstance(value, bool):
        return 1 if value else 0
    return value


def encode_row(columns: tuple[str, ...], item: dict, fields: FieldMap) -> tuple:
    return tuple(encode_value(c, item.get(c), fields) for c in columns)


def _table_columns(conn: sqlite3.Connection, table: str) -> tuple[str, ...]:
    rows = conn.execute(f"PRAGMA table_info({_quote(table)})").fetchall()
    return tuple(r["name"] for r in rows)


def resolve_collections(conn: sqlite3.Connection) -> dict[str, Collection]:
    rows = conn.execute(
        "SELECT name FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
    ).fetchall()
    out: dict[str, Collection] = {}
    for r in rows:
        table = r["name"]
        if table in INTERNAL_TABLES:
            continue
        columns = _table_columns(conn, table)
        if "data" in columns:
            out[table] = DataBagCollection(name=table, table=table)
        else:
            out[table] = StructuredCollection(
                name=table,
                table=table,
                columns=columns,
                fields=COLLECTION_FIELDS.get(table, FieldMap()),
            )
    return out


class CollectionResolver:
    def __init__(
        self,
        collections: dict[str, Collection],
        *,
        store_factory: Callable[[sqlite3.Connection], KeyValueStore] = SqliteSettingsStore,
    ):
        self._collections = dict(collections)
        self._store_factory = store_factory

    @classmethod
    def from_conn(cls, conn: sqlite3.Connection, **kwargs) -> "CollectionResolver":
        return cls(resolve_collections(conn), **kwargs)

    def resolve(self, name: str) -> Collection:
        n = canonical_name(name)
        return self._collections.get(n) or SettingsCollection(name=n, key=n)

    def table(self, name: str) -> StructuredCollection:
        coll = self.resolve(name)
        if not isinstance(coll, StructuredCollection):
            raise SyncValidationError(f"collection {coll.name} is not a structured table")
        return coll

    def read(self, conn: sqlite3.Connection, name: str, *, filters: Optional[dict] = None) -> list[dict]:
        coll = self.resolve(name)
        try:
            return self._read(conn, coll, filters or {})
        except sqlite3.Error as ex:
            json_log("error", "collections.read_failed", collection=coll.name, error=str(ex))
            return []

    def _read(self, conn: sqlite3.Connection, coll: Collection, filters: dict) -> list[dict]:
        if isinstance(coll, SettingsCollection):
            items = get_list(self._store_factory(conn), coll.key)
            return [i for i in items if _matches(i, filters)]

        if isinstance(coll, DataBagCollection):
            rows = conn.execute(f"SELECT id, data FROM {_quote(coll.table)} ORDER BY rowid").fetchall()
            items = []
            for r in rows:
                try:
                    item = json.loads(r["data"])
                except (TypeError, ValueError) as ex:
                    json_log(
                        "warning",
                        "collections.decode_failed",
                        collection=coll.name,
                        field="data",
                        id=r["id"],
                        error=str(ex),
                    )
                    continue
                if _matches(item, filters):
                    items.append(item)
            return items

        sql_filters = {k: v for k, v in filters.items() if k in coll.columns}
        where = ""
        params: tuple = ()
        if sql_filters:
            where = " WHERE " + " AND ".join(f"{_quote(k)} = ?" for k in sql_filters)
            params = tuple(sql_filters.values())
        rows = conn.execute(f"SELECT * FROM {_quote(coll.table)}{where} ORDER BY rowid", params).fetchall()
        return [decode_row(coll.name, dict(r), coll.fields) for r in rows]

    def count(self, conn: sqlite3.Connection, name: str) -> int:
        coll = self.resolve(name)
        if isinstance(coll, SettingsCollection):
            return len(get_list(self._store_factory(conn), coll.key))
        try:
            row = conn.execute(f"SELECT COUNT(*) AS n FROM {_quote(coll.table)}").fetchone()
        except sqlite3.Error as ex:
            json_log("error", "collections.count_failed", collection=coll.name, error=str(ex))
            return 0
        return int(row["n"] or 0)

    def write(self, conn: sqlite3.Connection, name: str, items: list[dict]) -> Collection:
        """Store a pushed batch. Caller owns the transaction.

        - settings: the batch replaces the stored array
        - data-bag: delete everything, insert the batch
        - structured: INSERT OR REPLACE by primary key, so rows referenced by
          other tables are updated in place instead of dropped
        """
        coll = self.resolve(name)
        if isinstance(coll, SettingsCollection):
            self._store_factory(conn).put(coll.key, list(items))
        elif isinstance(coll, DataBagCollection):
            conn.execute(f"DELETE FROM {_quote(coll.table)}")
            conn.executemany(
                f"INSERT INTO {_quote(coll.table)} (id, data) VALUES (?, ?)",
                [(item.get("id"), json.dumps(item, default=str)) for item in items],
            )
        else:
            cols = ", ".join(_quote(c) for c in coll.columns)
            placeholders = ", ".join("?" for _ in coll.columns)
            conn.executemany(
                f"INSERT OR REPLACE INTO {_quote(coll.table)} ({cols}) VALUES ({placeholders})",
                [encode_row(coll.columns, item, coll.fields) for item in items],
            )
        return coll

    def insert_ignore(self, conn: sqlite3.Connection, name: str, item: dict) -> bool:
        """Insert one record unless its id already exists. Returns True when a row was added."""
        coll = self.table(name)
        cols = ", ".join(_quote(c) for c in coll.columns)
        placeholders = ", ".join("?" for _ in coll.columns)
        cur = conn.execute(
            f"INSERT OR IGNORE INTO {_quote(coll.table)} ({cols}) VALUES ({placeholders})",
            encode_row(coll.columns, item, coll.fields),
        )
        return cur.rowcount > 0


def _matches(item: Any, filters: dict) -> bool:
    if not filters:
        return True
    if not isinstance(item, dict):
        return False
    return all(item.get(k) == v for k, v in filters.items())
