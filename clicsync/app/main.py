import sqlite3
import time
import uuid
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import settings
from .db import get_conn
from .errors import SyncError
from .logs import json_log
from .routers.sync import router as sync_router
from .sync_service import get_sync_service

app = FastAPI(title="Clic POS Sync API", version=settings.api_version)
STARTED_AT_UTC = datetime.now(timezone.utc)


def _current_request_id(req: Request) -> str:
    return getattr(req.state, "request_id", "") or req.headers.get("x-request-id") or "startup"


def _error_content(message: str, exc: Exception) -> dict:
    content = {"success": False, "message": message}
    if settings.env in {"local", "dev"}:
        content["error"] = str(exc)
    return content


def _validation_message(exc: RequestValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts) or "validation failed"


@app.exception_handler(SyncError)
def _sync_error(req: Request, exc: SyncError):
    if exc.status_code >= 500:
        json_log(
            "error",
            "http.request.sync_error",
            request_id=_current_request_id(req),
            method=req.method,
            path=req.url.path,
            error=exc.message,
        )
    return JSONResponse(status_code=exc.status_code, content={"success": False, "message": exc.message})


# Store failures outside a handler's own wrapping (e.g. token lookup) still get the error shape.
@app.exception_handler(sqlite3.Error)
def _sqlite_error(req: Request, exc: Exception):
    json_log(
        "error",
        "http.request.store_error",
        request_id=_current_request_id(req),
        method=req.method,
        path=req.url.path,
        error=str(exc),
    )
    return JSONResponse(status_code=500, content={"success": False, "message": str(exc)})


@app.exception_handler(StarletteHTTPException)
def _http_exception(_req: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
def _request_validation_error(_req: Request, exc: RequestValidationError):
    content = {"success": False, "message": _validation_message(exc)}
    if settings.env in {"local", "dev"}:
        content["errors"] = jsonable_encoder(exc.errors())
    return JSONResponse(status_code=400, content=content)


@app.exception_handler(Exception)
def _unhandled_exception(req: Request, exc: Exception):
    rid = _current_request_id(req)
    json_log(
        "error",
        "http.request.unhandled",
        request_id=rid,
        method=req.method,
        path=req.url.path,
        error=str(exc),
    )
    content = _error_content("internal error", exc)
    content["request_id"] = rid
    return JSONResponse(status_code=500, content=content)


# Correlation id + basic structured request logging.
@app.middleware("http")
async def _request_logging(request: Request, call_next):
    rid = (request.headers.get("X-Request-Id") or "").strip() or uuid.uuid4().hex
    request.state.request_id = rid
    started = time.time()
    path = request.url.path
    method = request.method
    client_ip = (request.client.host if request.client else None)

    try:
        response = await call_next(request)
    except Exception as exc:
        dur_ms = int((time.time() - started) * 1000)
        json_log(
            "error",
            "http.request.error",
            request_id=rid,
            method=method,
            path=path,
            client_ip=client_ip,
            duration_ms=dur_ms,
            error=str(exc),
        )
        raise

    response.headers["X-Request-Id"] = rid
    response.headers["X-Content-Type-Options"] = "nosniff"
    if path != "/health" and not path.endswith("/ping"):
        dur_ms = int((time.time() - started) * 1000)
        json_log(
            "info",
            "http.request",
            request_id=rid,
            method=method,
            path=path,
            status_code=response.status_code,
            client_ip=client_ip,
            duration_ms=dur_ms,
        )
    return response


# Terminals are browser apps on other origins; they send X-Sync-Token.
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(sync_router)


@app.on_event("startup")
def _startup():
    service = get_sync_service()
    json_log(
        "info",
        "startup.db_ready",
        env=settings.env,
        version=settings.api_version,
        db_path=service.db_path,
    )


def _db_health():
    try:
        with get_conn() as conn:
            conn.execute("SELECT 1 AS ok").fetchone()
        return True, None
    except sqlite3.Error as exc:
        return False, str(exc)


@app.get("/health")
def health(req: Request):
    request_id = _current_request_id(req)
    ok, err = _db_health()
    if not ok:
        content = {
            "status": "degraded",
            "env": settings.env,
            "db": "down",
            "service": "clicsync",
            "version": settings.api_version,
            "started_at": STARTED_AT_UTC.isoformat(),
            "request_id": request_id,
        }
        if settings.env in {"local", "dev"}:
            content["error"] = err
        return JSONResponse(status_code=503, content=content)
    return {
        "status": "ok",
        "env": settings.env,
        "db": "ok",
        "service": "clicsync",
        "version": settings.api_version,
        "started_at": STARTED_AT_UTC.isoformat(),
        "request_id": request_id,
    }


@app.get("/health/live")
def health_live(req: Request):
    return {
        "status": "ok",
        "env": settings.env,
        "service": "clicsync",
        "request_id": _current_request_id(req),
    }


@app.get("/meta")
def meta():
    return {
        "service": "clicsync",
        "version": settings.api_version,
        "env": settings.env,
        "api_prefix": settings.api_prefix,
        "uptime_seconds": int((datetime.now(timezone.utc) - STARTED_AT_UTC).total_seconds()),
        "started_at": STARTED_AT_UTC.isoformat(),
    }


def run():
    import uvicorn

    uvicorn.run("clicsync.app.main:app", host=settings.host, port=settings.port)
