import os
import sys

import pytest


# Allow running pytest from either the repo root or from within `clicsync/`.
# Tests import `clicsync.*`, which requires the repo root on sys.path.
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)


class FakeClock:
    """Settable wall clock (seconds), for version and liveness tests."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "sync.sqlite")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def service(db_path):
    from clicsync.app.sync_service import SyncService

    return SyncService.open(db_path)


@pytest.fixture
def client(service):
    from fastapi.testclient import TestClient

    from clicsync.app.main import app
    from clicsync.app.sync_service import get_sync_service

    app.dependency_overrides[get_sync_service] = lambda: service
    try:
        yield TestClient(app, raise_server_exceptions=False)
    finally:
        app.dependency_overrides.pop(get_sync_service, None)


@pytest.fixture
def auth_headers(client):
    res = client.post("/api/sync/auth", json={"terminalId": "T-1"})
    assert res.status_code == 200
    return {"X-Sync-Token": res.json()["token"]}
