"""
Sync protocol handlers.

Every public method opens its own connection. Mutations run inside a single
`BEGIN IMMEDIATE` transaction, so a batch that fails halfway leaves the store
exactly as it was.
"""

import sqlite3
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional

from .collections import CollectionResolver, canonical_name
from .config import settings
from .db import get_conn, init_db, transaction
from .errors import AuthError, StoreError, SyncValidationError
from .logs import json_log
from .metadata import MetadataTracker, iso_from_ms, now_ms, parse_timestamp
from .settings_store import KeyValueStore, SqliteSettingsStore, append_list, get_list
from .terminals import TerminalRegistry

PENDING_TRANSACTIONS_KEY = "pending_transactions"
PENDING_MOVEMENTS_KEY = "pending_inventory_movements"
SYNC_ERRORS_KEY = "sync_errors"
CONFIG_KEY = "config"

PENDING_QUEUES = {
    "transactions": PENDING_TRANSACTIONS_KEY,
    "inventory_movements": PENDING_MOVEMENTS_KEY,
}

RESET_TABLES = ("transactions", "inventory_ledger", "z_reports", "cash_movements", "receptions")
RESET_ALL = "ALL"
UNKNOWN_TERMINAL = "Unknown"

_EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)


def _require_items(items: Any, *, required: Iterable[str] = ("id",)) -> list[dict]:
    if not isinstance(items, list):
        raise SyncValidationError("items must be an array")
    for i, item in enumerate(items):
        if not isinstance(item, dict):
            raise SyncValidationError(f"items[{i}] must be an object")
        for f in required:
            v = item.get(f)
            if v is None or (isinstance(v, str) and not v.strip()):
                raise SyncValidationError(f"items[{i}].{f} is required")
    return items


def _qty(value: Any) -> float:
    if value is None or value == "":
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        raise SyncValidationError(f"invalid quantity: {value!r}")


def _later(current: Optional[str], candidate: Any) -> Optional[str]:
    cand = parse_timestamp(candidate)
    if cand is None:
        return current
    cur = parse_timestamp(current)
    if cur is None or cand > cur:
        return candidate if isinstance(candidate, str) else cand.isoformat()
    return current


class SyncService:
    def __init__(
        self,
        db_path: Optional[str],
        resolver: CollectionResolver,
        registry: TerminalRegistry,
        *,
        store_factory: Callable[[sqlite3.Connection], KeyValueStore] = SqliteSettingsStore,
        clock: Callable[[], float] = time.time,
        error_log_max: int = 500,
        status_collections: Optional[list[str]] = None,
    ):
        self.db_path = db_path
        self.resolver = resolver
        self.registry = registry
        self._store_factory = store_factory
        self._clock = clock
        self.error_log_max = error_log_max
        self.status_collections = list(status_collections or settings.status_collections)

    @classmethod
    def open(cls, db_path: Optional[str] = None, *, clock: Callable[[], float] = time.time) -> "SyncService":
        """Create the schema if needed and resolve collection kinds once."""
        path = db_path or settings.db_path
        init_db(path)
        with get_conn(path) as conn:
            resolver = CollectionResolver.from_conn(conn)
        registry = TerminalRegistry(
            liveness_window_seconds=settings.liveness_window_seconds,
            token_expires_in_ms=settings.token_expires_in_ms,
            clock=clock,
        )
        return cls(
            path,
            resolver,
            registry,
            clock=clock,
            error_log_max=settings.error_log_max,
            status_collections=settings.status_collections,
        )

    @contextmanager
    def _conn(self):
        with get_conn(self.db_path) as conn:
            yield conn

    @contextmanager
    def _write(self):
        with self._conn() as conn:
            try:
                with transaction(conn):
                    yield conn
            except sqlite3.Error as ex:
                raise StoreError(str(ex)) from ex

    def _store(self, conn: sqlite3.Connection) -> KeyValueStore:
        return self._store_factory(conn)

    def _tracker(self, conn: sqlite3.Connection) -> MetadataTracker:
        return MetadataTracker(self._store(conn), clock=self._clock)

    def server_time(self) -> str:
        return iso_from_ms(now_ms(self._clock))

    # Terminals

    def authenticate(self, terminal_id: Optional[str], device_token: Optional[str] = None, ip: Optional[str] = None) -> dict:
        with self._write() as conn:
            out = self.registry.authenticate(conn, terminal_id, device_token, ip)
        json_log("info", "sync.auth", terminal_id=out["terminalId"], ip=ip)
        return out

    def authorize(self, token: Optional[str]) -> str:
        """Resolve a sync token and record the heartbeat. Raises AuthError before touching anything."""
        with self._conn() as conn:
            terminal_id = self.registry.resolve(conn, token)
            if not terminal_id:
                raise AuthError("Invalid or missing sync token")
            self.registry.touch(conn, terminal_id)
        return terminal_id

    def list_terminals(self) -> list[dict]:
        with self._conn() as conn:
            return self.registry.list_terminals(conn)

    def logout(self, token: str) -> bool:
        with self._write() as conn:
            invalidated = self.registry.invalidate_token(conn, token)
        json_log("info", "sync.logout", invalidated=invalidated)
        return invalidated

    def forget_terminal(self, terminal_id: str) -> int:
        """Drop a terminal's tokens and liveness record. Its synced data is kept; see `reset`."""
        with self._write() as conn:
            revoked = self.registry.forget_terminal(conn, terminal_id)
        json_log("warning", "sync.forget_terminal", terminal_id=terminal_id, revoked_tokens=revoked)
        return revoked

    # Versioned and delta pulls

    def get_metadata(self, collection: str) -> dict:
        name = canonical_name(collection)
        with self._conn() as conn:
            md = self._tracker(conn).peek(name)
            if md is not None:
                return md
            with transaction(conn):
                return self._tracker(conn).get_metadata(name, lambda: self.resolver.count(conn, name))

    def pull(self, collection: str, since_version: Optional[int] = None) -> dict:
        name = canonical_name(collection)
        with self._conn() as conn:
            items = None
            md = self._tracker(conn).peek(name)
            if md is None:
                items = self.resolver.read(conn, name)
                with transaction(conn):
                    md = self._tracker(conn).get_metadata(name, lambda: len(items))

            if self._tracker(conn).is_up_to_date(name, since_version):
                return {"items": [], "version": md["version"], "upToDate": True}

            if items is None:
                items = self.resolver.read(conn, name)
            return {
                "items": items,
                "version": md["version"],
                "lastUpdated": md.get("lastUpdated"),
                "itemCount": len(items),
                "upToDate": False,
            }

    def delta(self, collection: str, since: Optional[str] = None) -> dict:
        name = canonical_name(collection)
        since_dt = None
        if since:
            since_dt = parse_timestamp(since)
            if since_dt is None:
                raise SyncValidationError(f"invalid since timestamp: {since}")

        with self._conn() as conn:
            items = self.resolver.read(conn, name)

        if since_dt is None:
            return {"items": items, "isFullDownload": True, "serverTime": self.server_time()}

        out = []
        for item in items:
            if not isinstance(item, dict):
                continue
            changed = parse_timestamp(item.get("updatedAt") or item.get("createdAt")) or _EPOCH
            deleted = parse_timestamp(item.get("deletedAt"))
            if changed > since_dt or (deleted is not None and deleted > since_dt):
                out.append(item)
        return {"items": out, "isFullDownload": False, "serverTime": self.server_time()}

    def status(self) -> dict:
        out = {}
        with self._conn() as conn:
            tracker = self._tracker(conn)
            for collection in self.status_collections:
                name = canonical_name(collection)
                md = tracker.peek(name) or {}
                out[collection] = {
                    "version": md.get("version") or 0,
                    "lastUpdated": md.get("lastUpdated"),
                    "itemCount": self.resolver.count(conn, name),
                }
        return out

    # Pushes

    def push(self, collection: str, items: Any) -> dict:
        name = canonical_name(collection)
        if name == "product_stocks":
            raise SyncValidationError("product_stocks is derived from the ledger; send movements to /inventory/movements")
        items = _require_items(items, required=())
        with self._write() as conn:
            tracker = self._tracker(conn)
            if name == "inventory_ledger":
                self._replace_ledger_rows(conn, items)
                tracker.bump("product_stocks", self.resolver.count(conn, "product_stocks"))
            else:
                self.resolver.write(conn, name, items)
            # Reported count is the batch size, not the table size, for upserted tables.
            md = tracker.bump(name, len(items))
        json_log("info", "sync.push", collection=name, count=len(items), version=md["version"])
        return {"version": md["version"], "itemCount": len(items)}

    def _add_stock(self, conn: sqlite3.Connection, product_id: Any, warehouse_id: Any, delta: float, now: str) -> None:
        if product_id is None or warehouse_id is None:
            return
        conn.execute(
            """
            INSERT INTO product_stocks (id, productId, warehouseId, quantity, updatedAt)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(productId, warehouseId) DO UPDATE
            SET quantity = quantity + excluded.quantity,
                updatedAt = excluded.updatedAt
            """,
            (f"{product_id}_{warehouse_id}", product_id, warehouse_id, delta, now),
        )

    def _replace_ledger_rows(self, conn: sqlite3.Connection, items: list[dict]) -> None:
        """Upsert ledger rows, moving each replaced row's delta out of the balances and the new one in."""
        now = self.server_time()
        for item in items:
            old = None
            if item.get("id") is not None:
                old = conn.execute(
                    "SELECT productId, warehouseId, qtyIn, qtyOut FROM inventory_ledger WHERE id = ?",
                    (item["id"],),
                ).fetchone()
            if old is not None:
                old_delta = _qty(old["qtyIn"]) - _qty(old["qtyOut"])
                self._add_stock(conn, old["productId"], old["warehouseId"], -old_delta, now)
            self.resolver.write(conn, "inventory_ledger", [item])
            delta = _qty(item.get("qtyIn")) - _qty(item.get("qtyOut"))
            self._add_stock(conn, item.get("productId"), item.get("warehouseId"), delta, now)

    def _append(self, conn: sqlite3.Connection, table: str, items: list[dict]) -> tuple[int, int]:
        added = 0
        for item in items:
            if self.resolver.insert_ignore(conn, table, item):
                added += 1
        total = self.resolver.count(conn, table)
        self._tracker(conn).bump(table, total)
        return added, total

    def append_transactions(self, items: Any) -> dict:
        items = _require_items(items)
        with self._write() as conn:
            added, total = self._append(conn, "transactions", items)
            # Queue every submitted record, duplicates included.
            append_list(self._store(conn), PENDING_TRANSACTIONS_KEY, items)
        json_log("info", "sync.append", collection="transactions", submitted=len(items), added=added)
        return {"addedCount": added, "totalCount": total}

    def append_cash_movements(self, items: Any) -> dict:
        items = _require_items(items)
        with self._write() as conn:
            added, _ = self._append(conn, "cash_movements", items)
        json_log("info", "sync.append", collection="cash_movements", submitted=len(items), added=added)
        return {"addedCount": added}

    def append_z_reports(self, items: Any) -> dict:
        items = _require_items(items)
        with self._write() as conn:
            added, _ = self._append(conn, "z_reports", items)
        json_log("info", "sync.append", collection="z_reports", submitted=len(items), added=added)
        return {"addedCount": added}

    def append_inventory_movements(self, items: Any) -> dict:
        items = _require_items(items, required=("id", "productId", "warehouseId"))
        deltas = [_qty(m.get("qtyIn")) - _qty(m.get("qtyOut")) for m in items]
        processed: list = []
        added = 0
        with self._write() as conn:
            now = self.server_time()
            for move, delta in zip(items, deltas):
                if self.resolver.insert_ignore(conn, "inventory_ledger", move):
                    added += 1
                    self._add_stock(conn, move["productId"], move["warehouseId"], delta, now)
                processed.append(move["id"])

            append_list(self._store(conn), PENDING_MOVEMENTS_KEY, items)
            tracker = self._tracker(conn)
            total = self.resolver.count(conn, "inventory_ledger")
            tracker.bump("inventory_ledger", total)
            if added:
                tracker.bump("product_stocks", self.resolver.count(conn, "product_stocks"))
        json_log("info", "sync.append", collection="inventory_ledger", submitted=len(items), added=added)
        return {"processedIds": processed, "addedCount": added, "totalCount": total}

    # Queues and error log

    def drain_pending(self, kind: str) -> list:
        key = PENDING_QUEUES.get(kind)
        if key is None:
            raise SyncValidationError(f"unknown pending queue: {kind}")
        # Read-then-clear with no acknowledgement: a consumer that dies after this returns loses the batch.
        with self._write() as conn:
            store = self._store(conn)
            items = get_list(store, key)
            store.put(key, [])
        json_log("info", "sync.drain", queue=kind, count=len(items))
        return items

    def report_error(
        self,
        terminal_id: Optional[str],
        error: Any,
        item_type: Optional[str] = None,
        item_id: Any = None,
    ) -> dict:
        entry = {
            "terminalId": terminal_id,
            "error": error,
            "itemType": item_type,
            "itemId": item_id,
            "timestamp": self.server_time(),
        }
        with self._write() as conn:
            append_list(self._store(conn), SYNC_ERRORS_KEY, [entry], max_len=self.error_log_max)
        json_log("warning", "sync.error_reported", terminal_id=terminal_id, item_type=item_type, item_id=item_id)
        return entry

    # Read-only rollups

    def operational_status(self) -> dict:
        with self._conn() as conn:
            transactions = self.resolver.read(conn, "transactions")
            ledger = self.resolver.read(conn, "inventory_ledger")
            z_reports = self.resolver.read(conn, "z_reports")
            store = self._store(conn)
            pending_txns = get_list(store, PENDING_TRANSACTIONS_KEY)
            pending_moves = get_list(store, PENDING_MOVEMENTS_KEY)
            errors = get_list(store, SYNC_ERRORS_KEY)

        stats: dict[str, dict] = {}

        def stat(rec: Any) -> dict:
            tid = (rec.get("terminalId") if isinstance(rec, dict) else None) or UNKNOWN_TERMINAL
            if tid not in stats:
                stats[tid] = {
                    "terminalId": tid,
                    "transactions": 0,
                    "movements": 0,
                    "zReports": 0,
                    "pending": 0,
                    "errors": 0,
                    "lastActivity": None,
                }
            return stats[tid]

        for txn in transactions:
            s = stat(txn)
            s["transactions"] += 1
            s["lastActivity"] = _later(s["lastActivity"], txn.get("date"))
        for move in ledger:
            s = stat(move)
            s["movements"] += 1
            s["lastActivity"] = _later(s["lastActivity"], move.get("createdAt"))
        for report in z_reports:
            s = stat(report)
            s["zReports"] += 1
            s["lastActivity"] = _later(s["lastActivity"], report.get("closedAt"))
        for txn in pending_txns:
            s = stat(txn)
            s["pending"] += 1
            if isinstance(txn, dict):
                s["lastActivity"] = _later(s["lastActivity"], txn.get("date"))
        for move in pending_moves:
            s = stat(move)
            s["pending"] += 1
            if isinstance(move, dict):
                s["lastActivity"] = _later(s["lastActivity"], move.get("createdAt"))
        for err in errors:
            stat(err)["errors"] += 1

        return {
            "terminals": list(stats.values()),
            "globalPending": {"transactions": len(pending_txns), "movements": len(pending_moves)},
        }

    def history(self, terminal_id: str) -> dict:
        flt = {"terminalId": terminal_id}
        with self._conn() as conn:
            return {
                "transactions": self.resolver.read(conn, "transactions", filters=flt),
                "inventoryLedger": self.resolver.read(conn, "inventory_ledger", filters=flt),
                "zReports": self.resolver.read(conn, "z_reports", filters=flt),
            }

    def get_config(self) -> Any:
        with self._conn() as conn:
            return self._store(conn).get(CONFIG_KEY)

    def stock_balances(self) -> list[dict]:
        with self._conn() as conn:
            products = self.resolver.read(conn, "products")
            stocks = self.resolver.read(conn, "product_stocks")

        by_product: dict[str, dict] = {}
        for s in stocks:
            by_product.setdefault(s["productId"], {})[s["warehouseId"]] = s.get("quantity") or 0

        out = []
        seen = set()
        for p in products:
            pid = p.get("id")
            seen.add(pid)
            ledger_balances = by_product.get(pid)
            if ledger_balances is not None:
                out.append({"id": pid, "stock": sum(ledger_balances.values()), "stockBalances": ledger_balances})
            else:
                out.append({"id": pid, "stock": p.get("stock") or 0, "stockBalances": p.get("stockBalances") or {}})
        for pid, balances in by_product.items():
            if pid not in seen:
                out.append({"id": pid, "stock": sum(balances.values()), "stockBalances": balances})
        return out

    def kardex(self, product_id: str) -> list[dict]:
        with self._conn() as conn:
            return self.resolver.read(conn, "inventory_ledger", filters={"productId": product_id})

    # Destructive

    def reset(self, target: str) -> dict:
        target = (target or "").strip()
        if not target:
            raise SyncValidationError("terminalId required")
        full = target == RESET_ALL
        deleted: dict[str, int] = {}

        with self._write() as conn:
            now = self.server_time()
            # Take the removed ledger rows back out of the running balances.
            if full:
                conn.execute("DELETE FROM product_stocks")
            else:
                rows = conn.execute(
                    """
                    SELECT productId, warehouseId,
                           SUM(COALESCE(qtyIn, 0) - COALESCE(qtyOut, 0)) AS delta
                    FROM inventory_ledger
                    WHERE terminalId = ? AND productId IS NOT NULL AND warehouseId IS NOT NULL
                    GROUP BY productId, warehouseId
                    """,
                    (target,),
                ).fetchall()
                for r in rows:
                    conn.execute(
                        """
                        UPDATE product_stocks
                        SET quantity = quantity - ?, updatedAt = ?
                        WHERE productId = ? AND warehouseId = ?
                        """,
                        (r["delta"] or 0, now, r["productId"], r["warehouseId"]),
                    )

            for name in RESET_TABLES:
                table = self.resolver.table(name).table
                if full:
                    cur = conn.execute(f'DELETE FROM "{table}"')
                else:
                    cur = conn.execute(f'DELETE FROM "{table}" WHERE terminalId = ?', (target,))
                deleted[name] = cur.rowcount

            store = self._store(conn)
            for key in (PENDING_TRANSACTIONS_KEY, PENDING_MOVEMENTS_KEY, SYNC_ERRORS_KEY):
                if full:
                    store.put(key, [])
                else:
                    kept = [i for i in get_list(store, key) if not (isinstance(i, dict) and i.get("terminalId") == target)]
                    store.put(key, kept)

            tracker = self._tracker(conn)
            for name in RESET_TABLES + ("product_stocks",):
                tracker.bump(name, self.resolver.count(conn, name))

        json_log("warning", "sync.reset", target=target, deleted=deleted)
        return {"message": f"Data for terminal {target} reset successfully", "deleted": deleted}


_service: Optional[SyncService] = None


def get_sync_service() -> SyncService:
    global _service
    if _service is None:
        _service = SyncService.open(settings.db_path)
    return _service
