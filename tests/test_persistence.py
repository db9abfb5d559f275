import json
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import database
from config import TABLE_STATE_KEY
from core.persistence import (
    DatabaseStateStore,
    JsonFileStateStore,
    MemoryStateStore,
    TableStatePersistence,
)


def test_corrupt_blob_loads_as_empty_state():
    store = MemoryStateStore()
    store.set(TABLE_STATE_KEY, "{not json")

    assert TableStatePersistence(store).load_state() == {}


def test_non_object_blob_loads_as_empty_state():
    store = MemoryStateStore()
    store.set(TABLE_STATE_KEY, json.dumps(["a", "b"]))

    assert TableStatePersistence(store).load_state() == {}


def test_save_state_merges_partials():
    persistence = TableStatePersistence(MemoryStateStore())

    persistence.save_component_state(["label", "ip_address"], "cluj", "station")
    persistence.save_grid_state(sort_model=[{"colId": "label", "sort": "asc"}])

    state = persistence.load_state()
    assert state["selectedColumns"] == ["label", "ip_address"]
    assert state["searchTerm"] == "cluj"
    assert state["expandedGroup"] == "station"
    assert persistence.grid_state() == {
        "columnState": [],
        "filterModel": {},
        "sortModel": [{"colId": "label", "sort": "asc"}],
    }


def test_empty_selection_is_not_saved():
    persistence = TableStatePersistence(MemoryStateStore())
    persistence.save_component_state(["label"], "x")

    persistence.save_component_state([], "")

    assert persistence.load_state()["selectedColumns"] == ["label"]


def test_clear_state_removes_key():
    store = MemoryStateStore()
    persistence = TableStatePersistence(store)
    persistence.save_component_state(["label"])

    persistence.clear_state()

    assert store.get(TABLE_STATE_KEY) is None
    assert persistence.load_state() == {}


def test_json_file_store_survives_new_instances(tmp_path):
    path = tmp_path / "state" / "table.json"
    TableStatePersistence(JsonFileStateStore(path)).save_component_state(["label"], "brasov")

    reloaded = TableStatePersistence(JsonFileStateStore(path)).load_state()

    assert reloaded["searchTerm"] == "brasov"
    assert not path.with_suffix(".json.tmp").exists()


def test_json_file_store_with_garbage_file_loads_empty(tmp_path):
    path = tmp_path / "table.json"
    path.write_text("garbage", encoding="utf-8")

    assert TableStatePersistence(JsonFileStateStore(path)).load_state() == {}


def test_database_store_is_namespaced(tmp_path, monkeypatch):
    monkeypatch.setattr(database, "_database_path", str(tmp_path / "prefs.db"))
    database.init_database()

    alice = TableStatePersistence(DatabaseStateStore("alice@example.com"))
    bob = TableStatePersistence(DatabaseStateStore("bob@example.com"))
    alice.save_component_state(["label"], "alice")

    assert alice.load_state()["searchTerm"] == "alice"
    assert bob.load_state() == {}
    assert database.get_preference(f"alice@example.com:{TABLE_STATE_KEY}") is not None


def test_database_store_failures_are_no_ops(tmp_path, monkeypatch):
    # Schema never created: every preferences query fails
    monkeypatch.setattr(database, "_database_path", str(tmp_path / "empty.db"))
    persistence = TableStatePersistence(DatabaseStateStore("ops@example.com"))

    assert persistence.load_state() == {}
    persistence.save_component_state(["label"], "x")
    persistence.clear_state()
    assert persistence.grid_state() == {}
