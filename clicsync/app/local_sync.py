"""
Local (peer) sync adapter.

For terminals that share a key/value store but cannot reach the central server.
Each collection has a single "latest change" slot: a push overwrites whatever
was there, so a peer that misses two pushes in a row only ever sees the second.
Subscribers are notified in-process after every push.
"""

import random
import string
import time
from typing import Callable, Optional

from .logs import json_log
from .metadata import iso_from_ms, now_ms
from .settings_store import KeyValueStore

SYNC_PREFIX = "CLIC_POS_SYNC_"
METADATA_PREFIX = "CLIC_POS_SYNC_META_"
TERMINAL_ID_KEY = "CLIC_POS_TERMINAL_ID"
SYNC_EVENT = "syncDataAvailable"

ACTIONS = ("CREATE", "UPDATE", "DELETE", "BULK_UPDATE")

Listener = Callable[[str, dict], None]


def new_terminal_id(clock: Callable[[], float] = time.time) -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=5))
    return f"TERM-{now_ms(clock)}-{suffix}"


class LocalSyncAdapter:
    def __init__(
        self,
        store: KeyValueStore,
        terminal_id: Optional[str] = None,
        *,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._clock = clock
        self._listeners: list[Listener] = []
        if terminal_id:
            self._store.put(TERMINAL_ID_KEY, terminal_id)

    @property
    def terminal_id(self) -> str:
        tid = self._store.get(TERMINAL_ID_KEY)
        if not tid:
            tid = new_terminal_id(self._clock)
            self._store.put(TERMINAL_ID_KEY, tid)
        return tid

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, detail: dict) -> None:
        for listener in list(self._listeners):
            try:
                listener(SYNC_EVENT, detail)
            except Exception as ex:
                # Keep notifying the remaining listeners.
                json_log("error", "local_sync.listener_failed", sync_event=SYNC_EVENT, error=str(ex))

    def push(self, collection: str, items: list, action: str = "BULK_UPDATE") -> dict:
        if action not in ACTIONS:
            raise ValueError(f"unknown sync action: {action}")
        prev = self.get_metadata(collection) or {}
        version = max(now_ms(self._clock), int(prev.get("version") or 0))
        change = {
            "collection": collection,
            "action": action,
            "items": list(items),
            "timestamp": iso_from_ms(version),
            "sourceTerminalId": self.terminal_id,
            "version": version,
        }
        self._store.put(SYNC_PREFIX + collection, change)
        self._store.put(
            METADATA_PREFIX + collection,
            {
                "collection": collection,
                "lastSyncedAt": change["timestamp"],
                "version": version,
                "itemCount": len(change["items"]),
            },
        )
        json_log("info", "local_sync.push", collection=collection, count=len(change["items"]), version=version)
        self._emit({"collection": collection, "action": action})
        return change

    def pull(self, collection: str, since_version: Optional[int] = None) -> list:
        change = self._store.get(SYNC_PREFIX + collection)
        if not isinstance(change, dict):
            return []
        if since_version is not None and int(change.get("version") or 0) <= since_version:
            return []
        items = change.get("items")
        return items if isinstance(items, list) else []

    def get_metadata(self, collection: str) -> Optional[dict]:
        md = self._store.get(METADATA_PREFIX + collection)
        return md if isinstance(md, dict) else None

    def has_new_data(self, collection: str, local_version: int) -> bool:
        md = self.get_metadata(collection)
        if md is None:
            return False
        return int(md.get("version") or 0) > local_version

    def clear_all_sync_data(self) -> int:
        # METADATA_PREFIX starts with SYNC_PREFIX, so one scan covers both.
        keys = self._store.keys(SYNC_PREFIX)
        for key in keys:
            self._store.delete(key)
        return len(keys)
