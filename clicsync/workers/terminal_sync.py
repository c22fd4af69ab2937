#!/usr/bin/env python3
"""
Terminal -> sync server worker.

Runs next to a POS terminal. Sales, stock movements, cash movements and Z-reports
are written to a local SQLite outbox first, so the register keeps working while
the sync server is unreachable; this worker drains the outbox to the server and
pulls catalog collections back down.

Notes:
- Every append endpoint is idempotent by record id, so re-sending an item whose
  confirmation was lost is safe.
- Pulls are versioned: a collection is only downloaded again after the server
  bumps its version (see `sync_cursors`).
"""

import argparse
import json
import os
import sqlite3
import sys
import time
import traceback
import urllib.error
import urllib.request
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Optional
from urllib.parse import quote, urlencode

from clicsync.app.logs import json_log

DEFAULT_BASE_URL = "http://localhost:3001"
DEFAULT_OUTBOX_PATH = "terminal_outbox.sqlite"
MAX_ATTEMPTS_DEFAULT = 5

PENDING = "PENDING"
SYNCED = "SYNCED"
ERROR = "ERROR"

OUTBOX_SCHEMA = """
CREATE TABLE IF NOT EXISTS sync_queue (
  id TEXT PRIMARY KEY,
  type TEXT NOT NULL,
  payload TEXT NOT NULL,
  status TEXT NOT NULL DEFAULT 'PENDING',
  retryCount INTEGER NOT NULL DEFAULT 0,
  error TEXT,
  createdAt TEXT NOT NULL,
  syncedAt TEXT
);

CREATE INDEX IF NOT EXISTS idx_sync_queue_status ON sync_queue (status, createdAt);

CREATE TABLE IF NOT EXISTS sync_cursors (
  collection TEXT PRIMARY KEY,
  version INTEGER NOT NULL,
  updatedAt TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS pulled_collections (
  collection TEXT PRIMARY KEY,
  items TEXT NOT NULL,
  version INTEGER NOT NULL,
  updatedAt TEXT NOT NULL
);
"""

# (status, body text). Raises urllib.error.URLError / OSError when the server can't be reached.
Transport = Callable[[str, str, dict, Optional[bytes], float], tuple[int, str]]


class SyncClientError(Exception):
    def __init__(self, status: int, message: str):
        super().__init__(f"http {status}: {message}")
        self.status = status
        self.message = message


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def urllib_transport(method: str, url: str, headers: dict, body: Optional[bytes], timeout: float) -> tuple[int, str]:
    req = urllib.request.Request(url, data=body, headers=headers, method=method)
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            return resp.status, resp.read().decode("utf-8") if resp else ""
    except urllib.error.HTTPError as ex:
        # Server answered with a non-2xx status; keep its JSON error body.
        try:
            text = ex.read().decode("utf-8")
        except OSError:
            text = ""
        return ex.code, text


class TerminalSyncClient:
    RETRY_STATUSES = (503, 504)

    def __init__(
        self,
        base_url: str,
        terminal_id: str,
        device_token: Optional[str] = None,
        *,
        transport: Transport = urllib_transport,
        api_prefix: str = "/api/sync",
        retries: int = 3,
        backoff_s: float = 1.0,
        timeout_s: float = 10.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self.terminal_id = terminal_id
        self.device_token = device_token
        self.token: Optional[str] = None
        self._transport = transport
        self._prefix = "/" + api_prefix.strip("/")
        self._retries = retries
        self._backoff_s = backoff_s
        self._timeout_s = timeout_s
        self._sleep = sleep

    def _url(self, path: str, query: Optional[dict] = None) -> str:
        url = f"{self.base_url}{self._prefix}{path}"
        q = {k: v for k, v in (query or {}).items() if v is not None}
        return f"{url}?{urlencode(q)}" if q else url

    def _send_with_retry(self, method: str, url: str, headers: dict, body: Optional[bytes]) -> tuple[int, str]:
        retries = self._retries
        backoff = self._backoff_s
        while True:
            try:
                status, text = self._transport(method, url, headers, body, self._timeout_s)
            except (urllib.error.URLError, OSError) as ex:
                if retries <= 0:
                    raise
                json_log("warning", "worker.http.retry", url=url, error=str(ex), backoff_s=backoff)
            else:
                if status not in self.RETRY_STATUSES or retries <= 0:
                    return status, text
                json_log("warning", "worker.http.retry", url=url, status=status, backoff_s=backoff)
            self._sleep(backoff)
            retries -= 1
            backoff *= 2

    def _request(
        self,
        method: str,
        path: str,
        payload: Optional[dict] = None,
        *,
        query: Optional[dict] = None,
        auth: bool = True,
    ) -> dict:
        body = json.dumps(payload, default=str).encode("utf-8") if payload is not None else None
        url = self._url(path, query)
        reauthed = False
        while True:
            headers = {"Content-Type": "application/json"}
            if auth:
                headers["X-Sync-Token"] = self._ensure_token()
            status, text = self._send_with_retry(method, url, headers, body)
            if status == 401 and auth and not reauthed:
                # Token was invalidated server-side; get a fresh one and try once more.
                self.token = None
                reauthed = True
                continue
            break

        try:
            data = json.loads(text) if text else {}
        except ValueError:
            data = {"raw": text}
        if status >= 400 or (isinstance(data, dict) and data.get("success") is False):
            message = data.get("message") if isinstance(data, dict) else None
            raise SyncClientError(status, message or text[:1000])
        return data

    def _ensure_token(self) -> str:
        if not self.token:
            self.authenticate()
        return self.token or ""

    def ping(self) -> dict:
        return self._request("GET", "/ping", auth=False)

    def authenticate(self) -> dict:
        res = self._request(
            "POST",
            "/auth",
            {"terminalId": self.terminal_id, "deviceToken": self.device_token},
            auth=False,
        )
        self.token = res.get("token")
        json_log("info", "worker.auth", terminal_id=self.terminal_id)
        return res

    def terminals(self) -> list:
        return self._request("GET", "/terminals").get("terminals") or []

    def metadata(self, collection: str) -> dict:
        return self._request("GET", f"/collections/{quote(collection, safe='')}/metadata").get("metadata") or {}

    def pull(self, collection: str, since_version: Optional[int] = None) -> dict:
        return self._request(
            "GET",
            f"/collections/{quote(collection, safe='')}/data",
            query={"sinceVersion": since_version},
        )

    def delta(self, collection: str, since: Optional[str] = None) -> dict:
        return self._request("GET", f"/delta/{quote(collection, safe='')}", query={"since": since})

    def push(self, collection: str, items: list) -> dict:
        return self._request("POST", f"/collections/{quote(collection, safe='')}/push", {"items": items})

    def push_transactions(self, items: list) -> dict:
        return self._request("POST", "/transactions", {"items": items})

    def push_cash_movements(self, items: list) -> dict:
        return self._request("POST", "/cash/movements", {"items": items})

    def push_z_reports(self, items: list) -> dict:
        return self._request("POST", "/z-reports", {"items": items})

    def push_inventory_movements(self, items: list) -> dict:
        return self._request("POST", "/inventory/movements", {"items": items})

    def drain_pending_transactions(self) -> list:
        return self._request("GET", "/transactions/pending").get("items") or []

    def drain_pending_movements(self) -> list:
        return self._request("GET", "/inventory/movements/pending").get("items") or []

    def report_error(self, error: Any, item_type: Optional[str] = None, item_id: Any = None) -> dict:
        return self._request(
            "POST",
            "/errors",
            {"terminalId": self.terminal_id, "error": error, "itemType": item_type, "itemId": item_id},
        )

    def status(self) -> dict:
        return self._request("GET", "/status").get("status") or {}


class LocalOutbox:
    """Terminal-local queue of records waiting to reach the sync server."""

    def __init__(self, db_path: str = DEFAULT_OUTBOX_PATH):
        self.db_path = db_path
        conn = self._connect()
        try:
            conn.executescript(OUTBOX_SCHEMA)
        finally:
            conn.close()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _execute(self, sql: str, params: tuple = ()) -> None:
        conn = self._connect()
        try:
            with conn:
                conn.execute(sql, params)
        finally:
            conn.close()

    def enqueue(self, item_type: str, payload: dict, item_id: Optional[str] = None) -> str:
        qid = item_id or str((payload or {}).get("id") or uuid.uuid4())
        self._execute(
            """
            INSERT INTO sync_queue (id, type, payload, status, retryCount, createdAt)
            VALUES (?, ?, ?, ?, 0, ?)
            ON CONFLICT(id) DO UPDATE
            SET payload = excluded.payload, status = excluded.status, error = NULL
            """,
            (qid, item_type, json.dumps(payload, default=str), PENDING, _now_iso()),
        )
        return qid

    def due(self, limit: int = 50, max_attempts: int = MAX_ATTEMPTS_DEFAULT) -> list[dict]:
        conn = self._connect()
        try:
            rows = conn.execute(
                """
                SELECT id, type, payload, status, retryCount, error
                FROM sync_queue
                WHERE status = ? OR (status = ? AND retryCount < ?)
                ORDER BY createdAt ASC, rowid ASC
                LIMIT ?
                """,
                (PENDING, ERROR, max_attempts, limit),
            ).fetchall()
        finally:
            conn.close()
        out = []
        for r in rows:
            item = dict(r)
            item["payload"] = json.loads(item["payload"])
            out.append(item)
        return out

    def mark_synced(self, item_id: str) -> None:
        self._execute(
            "UPDATE sync_queue SET status = ?, error = NULL, syncedAt = ? WHERE id = ?",
            (SYNCED, _now_iso(), item_id),
        )

    def mark_failed(self, item_id: str, error: str) -> None:
        self._execute(
            "UPDATE sync_queue SET status = ?, retryCount = retryCount + 1, error = ? WHERE id = ?",
            (ERROR, (error or "")[:1000], item_id),
        )

    def counts(self) -> dict[str, int]:
        conn = self._connect()
        try:
            rows = conn.execute("SELECT status, COUNT(*) AS n FROM sync_queue GROUP BY status").fetchall()
        finally:
            conn.close()
        return {r["status"]: int(r["n"]) for r in rows}

    def get_cursor(self, collection: str) -> Optional[int]:
        conn = self._connect()
        try:
            row = conn.execute("SELECT version FROM sync_cursors WHERE collection = ?", (collection,)).fetchone()
        finally:
            conn.close()
        return int(row["version"]) if row else None

    def set_cursor(self, collection: str, version: int) -> None:
        self._execute(
            """
            INSERT INTO sync_cursors (collection, version, updatedAt) VALUES (?, ?, ?)
            ON CONFLICT(collection) DO UPDATE SET version = excluded.version, updatedAt = excluded.updatedAt
            """,
            (collection, int(version), _now_iso()),
        )

    def save_collection(self, collection: str, items: list, version: int) -> None:
        """Replace the local copy of a collection and advance its cursor in one commit."""
        now = _now_iso()
        conn = self._connect()
        try:
            with conn:
                conn.execute(
                    """
                    INSERT INTO pulled_collections (collection, items, version, updatedAt) VALUES (?, ?, ?, ?)
                    ON CONFLICT(collection) DO UPDATE
                    SET items = excluded.items, version = excluded.version, updatedAt = excluded.updatedAt
                    """,
                    (collection, json.dumps(items, default=str), int(version), now),
                )
                conn.execute(
                    """
                    INSERT INTO sync_cursors (collection, version, updatedAt) VALUES (?, ?, ?)
                    ON CONFLICT(collection) DO UPDATE SET version = excluded.version, updatedAt = excluded.updatedAt
                    """,
                    (collection, int(version), now),
                )
        finally:
            conn.close()

    def get_collection(self, collection: str) -> Optional[list]:
        conn = self._connect()
        try:
            row = conn.execute("SELECT items FROM pulled_collections WHERE collection = ?", (collection,)).fetchone()
        finally:
            conn.close()
        return json.loads(row["items"]) if row else None


def _dispatchers(client: TerminalSyncClient) -> dict[str, Callable[[list], dict]]:
    return {
        "TRANSACTION": client.push_transactions,
        "INVENTORY_MOVEMENT": client.push_inventory_movements,
        "CASH_MOVEMENT": client.push_cash_movements,
        "Z_REPORT": client.push_z_reports,
    }


def process_outbox(
    client: TerminalSyncClient,
    outbox: LocalOutbox,
    *,
    limit: int = 50,
    max_attempts: int = MAX_ATTEMPTS_DEFAULT,
) -> dict[str, int]:
    dispatch = _dispatchers(client)
    summary = {"synced": 0, "failed": 0}
    for item in outbox.due(limit, max_attempts):
        item_id = item["id"]
        item_type = item["type"]
        try:
            send = dispatch.get(item_type)
            if send is None:
                raise ValueError(f"unknown item type: {item_type}")
            send([item["payload"]])
            outbox.mark_synced(item_id)
            summary["synced"] += 1
        except (SyncClientError, urllib.error.URLError, OSError, ValueError) as ex:
            outbox.mark_failed(item_id, str(ex))
            summary["failed"] += 1
            json_log("error", "worker.outbox.item_failed", item_id=item_id, item_type=item_type, error=str(ex))
            try:
                client.report_error(str(ex), item_type, item_id)
            except (SyncClientError, urllib.error.URLError, OSError) as report_ex:
                # The server is the thing that's failing; the outbox row keeps the error.
                json_log("warning", "worker.outbox.report_failed", item_id=item_id, error=str(report_ex))
    return summary


def pull_collections(
    client: TerminalSyncClient,
    outbox: LocalOutbox,
    names: list[str],
    apply: Optional[Callable[[str, list], None]] = None,
) -> dict[str, Any]:
    """Versioned pull of each collection.

    Pulled items are kept in the outbox's `pulled_collections` table. `apply`, when
    given, additionally hands them to the terminal (e.g. to refresh its UI cache);
    the cursor only advances once both have succeeded.
    """
    summary: dict[str, Any] = {}
    for name in names:
        since = outbox.get_cursor(name)
        res = client.pull(name, since)
        if res.get("upToDate"):
            summary[name] = {"upToDate": True, "version": res.get("version")}
            continue
        items = res.get("items") or []
        if apply is not None:
            apply(name, items)
        outbox.save_collection(name, items, int(res.get("version") or 0))
        summary[name] = {"upToDate": False, "version": res.get("version"), "items": len(items)}
    return summary


def main(argv: Optional[list[str]] = None, *, transport: Transport = urllib_transport):
    parser = argparse.ArgumentParser()
    parser.add_argument("--base-url", default=os.getenv("SYNC_SERVER_URL", DEFAULT_BASE_URL))
    parser.add_argument("--terminal-id", default=os.getenv("SYNC_TERMINAL_ID", ""))
    parser.add_argument("--device-token", default=os.getenv("SYNC_DEVICE_TOKEN") or None)
    parser.add_argument("--db", default=os.getenv("SYNC_OUTBOX_DB", DEFAULT_OUTBOX_PATH))
    parser.add_argument("--collections", nargs="*", default=["products", "customers", "users", "roles", "warehouses"])
    parser.add_argument("--limit", type=int, default=50)
    parser.add_argument("--max-attempts", type=int, default=MAX_ATTEMPTS_DEFAULT)
    parser.add_argument("--sleep", type=float, default=5.0)
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    args = parser.parse_args(argv)

    if not args.terminal_id.strip():
        parser.error("--terminal-id (or SYNC_TERMINAL_ID) is required")

    client = TerminalSyncClient(args.base_url, args.terminal_id.strip(), args.device_token, transport=transport)
    outbox = LocalOutbox(args.db)

    while True:
        did_work = False
        try:
            summary = process_outbox(client, outbox, limit=args.limit, max_attempts=args.max_attempts)
            did_work = bool(summary["synced"])
            pulled = pull_collections(client, outbox, args.collections)
            json_log("info", "worker.pass", outbox=summary, pulled=pulled, queue=outbox.counts())
        except Exception as ex:
            # Never crash the worker loop; the next pass retries.
            json_log("error", "worker.pass.error", error=str(ex))
            traceback.print_exc(file=sys.stderr)

        if args.once:
            break

        # If we pushed anything, loop again quickly; otherwise back off.
        time.sleep(0 if did_work else args.sleep)


if __name__ == "__main__":
    main()
