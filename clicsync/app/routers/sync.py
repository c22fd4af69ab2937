from typing import Any, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from ..config import settings
from ..deps import require_sync_token
from ..sync_service import SyncService, get_sync_service
from ..validation import ErrorDetail, TerminalId, parse_since_version

router = APIRouter(prefix=settings.api_prefix, tags=["sync"])


class AuthIn(BaseModel):
    # Checked by the registry so a missing id gets the same message as a blank one.
    terminalId: Optional[str] = None
    deviceToken: Optional[str] = None


class ItemsIn(BaseModel):
    # Shape is validated by the service ("items must be an array").
    items: Any = None


class SyncErrorIn(BaseModel):
    terminalId: Optional[TerminalId] = None
    error: ErrorDetail = None
    itemType: Optional[str] = None
    itemId: Optional[Any] = None


@router.get("/ping")
def ping(service: SyncService = Depends(get_sync_service)):
    return {"success": True, "message": "pong", "serverTime": service.server_time()}


@router.post("/auth")
def auth(data: AuthIn, request: Request, service: SyncService = Depends(get_sync_service)):
    ip = request.client.host if request.client else None
    out = service.authenticate(data.terminalId, data.deviceToken, ip)
    return {"success": True, **out}


@router.post("/auth/logout")
def logout(auth=Depends(require_sync_token), service: SyncService = Depends(get_sync_service)):
    return {"success": True, "invalidated": service.logout(auth["token"])}


@router.get("/terminals")
def list_terminals(_auth=Depends(require_sync_token), service: SyncService = Depends(get_sync_service)):
    return {"success": True, "terminals": service.list_terminals()}


@router.delete("/terminals/{terminal_id}")
def forget_terminal(
    terminal_id: TerminalId,
    auth=Depends(require_sync_token),
    service: SyncService = Depends(get_sync_service),
):
    revoked = service.forget_terminal(terminal_id)
    return {"success": True, "terminalId": terminal_id, "revokedTokens": revoked, "requestedBy": auth["terminal_id"]}


@router.get("/collections/{collection}/metadata")
def collection_metadata(
    collection: str,
    _auth=Depends(require_sync_token),
    service: SyncService = Depends(get_sync_service),
):
    return {"success": True, "metadata": service.get_metadata(collection)}


@router.get("/collections/{collection}/data")
def collection_data(
    collection: str,
    sinceVersion: Optional[str] = None,
    _auth=Depends(require_sync_token),
    service: SyncService = Depends(get_sync_service),
):
    out = service.pull(collection, parse_since_version(sinceVersion))
    return {"success": True, **out}


@router.get("/delta/{collection}")
def collection_delta(
    collection: str,
    since: Optional[str] = None,
    _auth=Depends(require_sync_token),
    service: SyncService = Depends(get_sync_service),
):
    out = service.delta(collection, since)
    return {"success": True, **out}


@router.post("/collections/{collection}/push")
def collection_push(
    collection: str,
    data: ItemsIn,
    _auth=Depends(require_sync_token),
    service: SyncService = Depends(get_sync_service),
):
    out = service.push(collection, data.items)
    return {"success": True, **out}


@router.get("/status")
def sync_status(_auth=Depends(require_sync_token), service: SyncService = Depends(get_sync_service)):
    return {"success": True, "status": service.status(), "serverTime": service.server_time()}


@router.post("/transactions")
def push_transactions(
    data: ItemsIn,
    _auth=Depends(require_sync_token),
    service: SyncService = Depends(get_sync_service),
):
    out = service.append_transactions(data.items)
    return {"success": True, **out}


@router.get("/transactions/pending")
def drain_pending_transactions(_auth=Depends(require_sync_token), service: SyncService = Depends(get_sync_service)):
    return {"success": True, "items": service.drain_pending("transactions")}


@router.get("/operational-status")
def operational_status(_auth=Depends(require_sync_token), service: SyncService = Depends(get_sync_service)):
    return {"success": True, **service.operational_status()}


@router.post("/errors")
def report_error(
    data: SyncErrorIn,
    auth=Depends(require_sync_token),
    service: SyncService = Depends(get_sync_service),
):
    service.report_error(data.terminalId or auth["terminal_id"], data.error, data.itemType, data.itemId)
    return {"success": True}


@router.get("/history/{terminal_id}")
def terminal_history(
    terminal_id: str,
    _auth=Depends(require_sync_token),
    service: SyncService = Depends(get_sync_service),
):
    return {"success": True, "terminalId": terminal_id, "data": service.history(terminal_id)}


@router.post("/cash/movements")
def push_cash_movements(
    data: ItemsIn,
    _auth=Depends(require_sync_token),
    service: SyncService = Depends(get_sync_service),
):
    out = service.append_cash_movements(data.items)
    return {"success": True, **out}


@router.post("/z-reports")
def push_z_reports(
    data: ItemsIn,
    _auth=Depends(require_sync_token),
    service: SyncService = Depends(get_sync_service),
):
    out = service.append_z_reports(data.items)
    return {"success": True, **out}


@router.get("/config")
def get_config(_auth=Depends(require_sync_token), service: SyncService = Depends(get_sync_service)):
    return {"success": True, "config": service.get_config()}


@router.get("/inventory/stock-balances")
def stock_balances(_auth=Depends(require_sync_token), service: SyncService = Depends(get_sync_service)):
    return {"success": True, "balances": service.stock_balances(), "serverTime": service.server_time()}


@router.get("/inventory/kardex/{product_id}")
def kardex(
    product_id: str,
    _auth=Depends(require_sync_token),
    service: SyncService = Depends(get_sync_service),
):
    return {"success": True, "items": service.kardex(product_id), "serverTime": service.server_time()}


@router.post("/reset/{terminal_id}")
def reset_terminal(
    terminal_id: TerminalId,
    auth=Depends(require_sync_token),
    service: SyncService = Depends(get_sync_service),
):
    # Destructive; callers gate this behind their own confirmation.
    out = service.reset(terminal_id)
    return {"success": True, "requestedBy": auth["terminal_id"], **out}


@router.get("/inventory/movements/pending")
def drain_pending_movements(_auth=Depends(require_sync_token), service: SyncService = Depends(get_sync_service)):
    return {"success": True, "items": service.drain_pending("inventory_movements")}


@router.post("/inventory/movements")
def push_inventory_movements(
    data: ItemsIn,
    _auth=Depends(require_sync_token),
    service: SyncService = Depends(get_sync_service),
):
    out = service.append_inventory_movements(data.items)
    return {"success": True, **out}
