# tests/test_kv_store.py

from __future__ import annotations

from pathlib import Path

from taskdesk_sync.storage.kv_store import SqliteKeyValueStore


def test_set_get_and_versions(store: SqliteKeyValueStore) -> None:
    assert store.get("missing") is None
    assert store.get("missing", default=[]) == []
    assert store.get_versioned("missing") == (None, 0)

    assert store.set("k", {"a": 1}) == 1
    assert store.set("k", {"a": 2}) == 2
    assert store.get_versioned("k") == ({"a": 2}, 2)


def test_compare_and_set_rejects_stale_version(store: SqliteKeyValueStore) -> None:
    assert store.compare_and_set("q", ["a"], expected_version=0) is True
    # Key exists now, so a second "create" loses.
    assert store.compare_and_set("q", ["b"], expected_version=0) is False

    assert store.compare_and_set("q", ["a", "c"], expected_version=1) is True
    assert store.compare_and_set("q", ["stale"], expected_version=1) is False
    assert store.get_versioned("q") == (["a", "c"], 2)


def test_delete_and_persistence_across_instances(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "state.sqlite3"
    s1 = SqliteKeyValueStore(path)
    s1.set("client_id", "client_abc")
    s1.set("gone", 1)
    s1.delete("gone")

    s2 = SqliteKeyValueStore(path)
    assert s2.get("client_id") == "client_abc"
    assert s2.get_versioned("gone") == (None, 0)
