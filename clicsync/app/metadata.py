import time
from datetime import datetime, timezone
from typing import Callable, Optional

from .settings_store import KeyValueStore

METADATA_KEY = "syncMetadata"


def now_ms(clock: Callable[[], float] = time.time) -> int:
    return int(clock() * 1000)


def iso_from_ms(ms: int) -> str:
    dt = datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class MetadataTracker:
    """Per-collection `{version, lastUpdated, itemCount}` kept under one settings key.

    Versions are wall-clock milliseconds. A bump never moves a version backwards,
    even if the clock does; two bumps inside the same millisecond share a version.
    """

    def __init__(self, store: KeyValueStore, *, clock: Callable[[], float] = time.time):
        self._store = store
        self._clock = clock

    def snapshot(self) -> dict:
        value = self._store.get(METADATA_KEY)
        return value if isinstance(value, dict) else {}

    def peek(self, collection: str) -> Optional[dict]:
        md = self.snapshot().get(collection)
        return md if isinstance(md, dict) else None

    def _save(self, collection: str, md: dict) -> dict:
        all_md = self.snapshot()
        all_md[collection] = md
        self._store.put(METADATA_KEY, all_md)
        return md

    def get_metadata(self, collection: str, item_count: Callable[[], int]) -> dict:
        md = self.peek(collection)
        if md is not None:
            return md
        ms = now_ms(self._clock)
        return self._save(
            collection,
            {"version": ms, "lastUpdated": iso_from_ms(ms), "itemCount": int(item_count())},
        )

    def bump(self, collection: str, item_count: int) -> dict:
        prev = self.peek(collection) or {}
        ms = max(now_ms(self._clock), int(prev.get("version") or 0))
        return self._save(
            collection,
            {"version": ms, "lastUpdated": iso_from_ms(ms), "itemCount": int(item_count)},
        )

    def is_up_to_date(self, collection: str, client_version: Optional[int]) -> bool:
        md = self.peek(collection)
        if md is None or client_version is None:
            return False
        return int(client_version) >= int(md.get("version") or 0)


def parse_timestamp(value) -> Optional[datetime]:
    """ISO-8601 text or epoch milliseconds to an aware UTC datetime; None if unparseable."""
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    try:
        dt = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt
