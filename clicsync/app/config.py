import os
from typing import List


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def __init__(self) -> None:
        self.env = os.getenv("APP_ENV", "local")
        self.db_path = os.getenv("SYNC_DB_PATH", "").strip() or os.path.abspath("clicsync.sqlite")
        self.db_busy_timeout_ms = _env_int("SYNC_DB_BUSY_TIMEOUT_MS", 5000)
        # Terminals are usually browsers on the shop LAN; default to the Vite dev port.
        self.cors_origins = self._split_csv(
            os.getenv("CORS_ORIGINS", "").strip(),
            default=["http://localhost:5173", "http://127.0.0.1:5173"],
        )
        self.api_version = os.getenv("APP_VERSION", "1.1.0").strip() or "1.1.0"
        self.api_prefix = (os.getenv("SYNC_API_PREFIX") or "/api/sync").rstrip("/")
        self.liveness_window_seconds = _env_int("SYNC_LIVENESS_WINDOW_SECONDS", 120)
        # Advertised to terminals only; tokens stay valid until invalidated.
        self.token_expires_in_ms = _env_int("SYNC_TOKEN_EXPIRES_IN_MS", 86_400_000)
        self.error_log_max = _env_int("SYNC_ERROR_LOG_MAX", 500)
        self.status_collections = self._split_csv(
            os.getenv("SYNC_STATUS_COLLECTIONS", "").strip(),
            default=[
                "products",
                "customers",
                "suppliers",
                "internalSequences",
                "transactions",
                "inventory_ledger",
                "cash_movements",
                "z_reports",
            ],
        )
        self.host = os.getenv("HOST", "0.0.0.0")
        self.port = _env_int("PORT", 3001)


settings = Settings()
