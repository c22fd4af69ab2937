from typing import Optional

from fastapi import Depends, Header

from .sync_service import SyncService, get_sync_service


def require_sync_token(
    x_sync_token: Optional[str] = Header(None, alias="X-Sync-Token"),
    service: SyncService = Depends(get_sync_service),
):
    # Sub-dependencies resolve before body validation, so a bad token never reaches the store.
    token = (x_sync_token or "").strip() or None
    terminal_id = service.authorize(token)
    return {"terminal_id": terminal_id, "token": token}
