import json
import re

import pytest

from clicsync.app.local_sync import METADATA_PREFIX, SYNC_PREFIX, TERMINAL_ID_KEY, LocalSyncAdapter
from clicsync.app.settings_store import MemorySettingsStore


@pytest.fixture
def store():
    return MemorySettingsStore()


def test_terminal_id_is_generated_once_and_persisted(store, clock):
    adapter = LocalSyncAdapter(store, clock=clock)
    tid = adapter.terminal_id
    assert re.fullmatch(r"TERM-\d+-[a-z0-9]{5}", tid)
    assert LocalSyncAdapter(store).terminal_id == tid
    assert store.get(TERMINAL_ID_KEY) == tid


def test_push_overwrites_latest_change_and_notifies(store, clock):
    adapter = LocalSyncAdapter(store, "T-1", clock=clock)
    events = []
    adapter.subscribe(lambda name, detail: events.append((name, detail)))

    adapter.push("products", [{"id": "p1"}])
    clock.advance(1)
    change = adapter.push("products", [{"id": "p2"}, {"id": "p3"}], action="UPDATE")

    assert change["sourceTerminalId"] == "T-1"
    assert adapter.pull("products") == [{"id": "p2"}, {"id": "p3"}]
    assert adapter.get_metadata("products")["itemCount"] == 2
    assert events == [
        ("syncDataAvailable", {"collection": "products", "action": "BULK_UPDATE"}),
        ("syncDataAvailable", {"collection": "products", "action": "UPDATE"}),
    ]


def test_pull_respects_since_version(store, clock):
    adapter = LocalSyncAdapter(store, "T-1", clock=clock)
    assert adapter.pull("customers") == []
    v = adapter.push("customers", [{"id": "c1"}])["version"]
    assert adapter.pull("customers", since_version=v) == []
    assert adapter.pull("customers", since_version=v - 1) == [{"id": "c1"}]
    assert adapter.has_new_data("customers", v - 1) is True
    assert adapter.has_new_data("customers", v) is False
    assert adapter.has_new_data("suppliers", 0) is False


def test_unsubscribe_and_failing_listener(store, clock, capsys):
    adapter = LocalSyncAdapter(store, "T-1", clock=clock)
    seen = []

    def boom(_name, _detail):
        raise RuntimeError("listener bug")

    adapter.subscribe(boom)
    unsubscribe = adapter.subscribe(lambda _n, d: seen.append(d["collection"]))
    change = adapter.push("roles", [{"id": "r1"}])
    assert change["collection"] == "roles"
    assert adapter.pull("roles") == [{"id": "r1"}]

    unsubscribe()
    adapter.push("roles", [])
    assert seen == ["roles"]

    logs = [json.loads(line) for line in capsys.readouterr().err.splitlines() if line.strip()]
    failures = [rec for rec in logs if rec["event"] == "local_sync.listener_failed"]
    assert len(failures) == 2
    assert failures[0]["sync_event"] == "syncDataAvailable"
    assert failures[0]["error"] == "listener bug"


def test_unknown_action_is_rejected(store):
    with pytest.raises(ValueError):
        LocalSyncAdapter(store, "T-1").push("roles", [], action="MERGE")


def test_clear_all_sync_data_keeps_terminal_id(store, clock):
    adapter = LocalSyncAdapter(store, "T-1", clock=clock)
    adapter.push("products", [{"id": "p1"}])
    adapter.push("users", [{"id": "u1"}])
    store.put("unrelated", 1)

    assert adapter.clear_all_sync_data() == 4
    assert store.keys(SYNC_PREFIX) == []
    assert store.keys(METADATA_PREFIX) == []
    assert store.get("unrelated") == 1
    assert adapter.terminal_id == "T-1"
