"""
Token/session registry.

Tokens and terminal liveness live in the store (`sync_tokens`,
`connected_terminals`), so any number of server processes sharing the database
agree on who is authenticated. Terminal status is derived from `lastSeen` at
read time; nothing sweeps stale terminals.
"""

import sqlite3
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from .errors import AuthError
from .metadata import iso_from_ms, now_ms, parse_timestamp
from .security import generate_sync_token, hash_sync_token

ONLINE = "ONLINE"
OFFLINE = "OFFLINE"


class TerminalRegistry:
    def __init__(
        self,
        *,
        liveness_window_seconds: int = 120,
        token_expires_in_ms: int = 86_400_000,
        clock: Callable[[], float] = time.time,
    ):
        self.liveness_window_seconds = liveness_window_seconds
        self.token_expires_in_ms = token_expires_in_ms
        self._clock = clock

    def _now_iso(self) -> str:
        return iso_from_ms(now_ms(self._clock))

    def authenticate(
        self,
        conn: sqlite3.Connection,
        terminal_id: Optional[str],
        device_token: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> dict:
        tid = (terminal_id or "").strip() if isinstance(terminal_id, str) else ""
        if not tid:
            raise AuthError("terminalId required", status_code=400)

        token = generate_sync_token()
        now = self._now_iso()
        # Earlier tokens for the same terminal stay valid (multi-tab, retry after timeout).
        conn.execute(
            "INSERT INTO sync_tokens (token_hash, terminalId, createdAt) VALUES (?, ?, ?)",
            (hash_sync_token(token), tid, now),
        )
        conn.execute(
            """
            INSERT INTO connected_terminals (terminalId, lastSeen, ip, deviceToken, status, createdAt)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(terminalId) DO UPDATE
            SET lastSeen = excluded.lastSeen,
                ip = COALESCE(excluded.ip, connected_terminals.ip),
                deviceToken = COALESCE(excluded.deviceToken, connected_terminals.deviceToken),
                status = excluded.status
            """,
            (tid, now, ip, device_token, ONLINE, now),
        )
        return {"token": token, "terminalId": tid, "expiresIn": self.token_expires_in_ms}

    def resolve(self, conn: sqlite3.Connection, token: Optional[str]) -> Optional[str]:
        if not token:
            return None
        row = conn.execute(
            "SELECT terminalId FROM sync_tokens WHERE token_hash = ?",
            (hash_sync_token(token),),
        ).fetchone()
        return row["terminalId"] if row else None

    def touch(self, conn: sqlite3.Connection, terminal_id: str) -> None:
        conn.execute(
            "UPDATE connected_terminals SET lastSeen = ? WHERE terminalId = ?",
            (self._now_iso(), terminal_id),
        )

    def derive_status(self, last_seen: Optional[str], now: Optional[datetime] = None) -> str:
        seen = parse_timestamp(last_seen)
        if seen is None:
            return OFFLINE
        now = now or datetime.fromtimestamp(self._clock(), tz=timezone.utc)
        age = (now - seen).total_seconds()
        return ONLINE if age < self.liveness_window_seconds else OFFLINE

    def list_terminals(self, conn: sqlite3.Connection, now: Optional[datetime] = None) -> list[dict]:
        rows = conn.execute(
            "SELECT terminalId, lastSeen, ip, createdAt FROM connected_terminals ORDER BY terminalId"
        ).fetchall()
        out = []
        for r in rows:
            rec = dict(r)
            rec["status"] = self.derive_status(rec.get("lastSeen"), now)
            out.append(rec)
        return out

    def invalidate_token(self, conn: sqlite3.Connection, token: str) -> bool:
        cur = conn.execute("DELETE FROM sync_tokens WHERE token_hash = ?", (hash_sync_token(token),))
        return cur.rowcount > 0

    def forget_terminal(self, conn: sqlite3.Connection, terminal_id: str) -> int:
        cur = conn.execute("DELETE FROM sync_tokens WHERE terminalId = ?", (terminal_id,))
        conn.execute("DELETE FROM connected_terminals WHERE terminalId = ?", (terminal_id,))
        return cur.rowcount
