import hashlib
import secrets

SYNC_TOKEN_PREFIX = "sync_"


def generate_sync_token() -> str:
    return SYNC_TOKEN_PREFIX + secrets.token_urlsafe(32)


def hash_sync_token(token: str) -> str:
    # Store tokens as a one-way hash so a DB leak doesn't immediately grant access.
    # Lookups go by hash, so there is no stored secret to compare against.
    return hashlib.sha256(token.encode("utf-8")).hexdigest()
