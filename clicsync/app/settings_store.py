"""
Key/value settings store.

Protocol handlers never touch the `settings` table directly; they receive a
`KeyValueStore` so that queues, metadata and settings-backed collections can be
swapped for an in-memory store in tests or in the local peer adapter.
"""

import json
import sqlite3
from typing import Any, Iterable, Optional, Protocol

from .logs import json_log


class KeyValueStore(Protocol):
    def get(self, key: str) -> Any: ...

    def put(self, key: str, value: Any) -> None: ...

    def delete(self, key: str) -> None: ...

    def keys(self, prefix: str = "") -> list[str]: ...


class SqliteSettingsStore:
    """`settings(key, value)` table accessed through the caller's connection.

    Binding to a connection (rather than opening one) keeps queue and metadata
    writes inside whatever transaction the handler already has open.
    """

    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn

    def get(self, key: str) -> Any:
        row = self._conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
        if not row or row["value"] is None:
            return None
        try:
            return json.loads(row["value"])
        except ValueError as ex:
            json_log("warning", "settings.decode_failed", key=key, error=str(ex))
            return None

    def put(self, key: str, value: Any) -> None:
        self._conn.execute(
            """
            INSERT INTO settings (key, value) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """,
            (key, json.dumps(value, default=str)),
        )

    def delete(self, key: str) -> None:
        self._conn.execute("DELETE FROM settings WHERE key = ?", (key,))

    def keys(self, prefix: str = "") -> list[str]:
        rows = self._conn.execute(
            "SELECT key FROM settings WHERE substr(key, 1, ?) = ? ORDER BY key",
            (len(prefix), prefix),
        ).fetchall()
        return [r["key"] for r in rows]


class MemorySettingsStore:
    def __init__(self, initial: Optional[dict] = None):
        self._data: dict[str, str] = {}
        for k, v in (initial or {}).items():
            self.put(k, v)

    def get(self, key: str) -> Any:
        raw = self._data.get(key)
        # Stored as JSON text so callers can't mutate state through returned objects.
        return json.loads(raw) if raw is not None else None

    def put(self, key: str, value: Any) -> None:
        self._data[key] = json.dumps(value, default=str)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self, prefix: str = "") -> list[str]:
        return sorted(k for k in self._data if k.startswith(prefix))


def get_list(store: KeyValueStore, key: str) -> list:
    value = store.get(key)
    return value if isinstance(value, list) else []


def append_list(store: KeyValueStore, key: str, items: Iterable, *, max_len: Optional[int] = None) -> list:
    current = get_list(store, key)
    current.extend(items)
    if max_len is not None and max_len > 0 and len(current) > max_len:
        current = current[len(current) - max_len:]
    store.put(key, current)
    return current
