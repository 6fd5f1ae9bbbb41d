from __future__ import annotations

import sqlite3

import pytest

from dynamic_charting.errors import PersistenceError
from dynamic_charting.storage import DocumentStore


def test_document_crud(tmp_path):
    store = DocumentStore(tmp_path / "docs.db")
    doc_id = store.create("things", {"name": "alpha", "count": 1})

    document = store.get("things", doc_id)
    assert document == {"id": doc_id, "name": "alpha", "count": 1}

    assert store.update("things", doc_id, {"count": 2, "extra": None})
    assert store.get("things", doc_id)["count"] == 2
    assert store.update("things", "missing", {"count": 3}) is False

    store.upsert("things", doc_id, {"name": "beta"})
    assert store.get("things", doc_id) == {"id": doc_id, "name": "beta"}

    assert store.delete("things", doc_id) is True
    assert store.get("things", doc_id) is None
    assert store.delete("things", doc_id) is False


def test_query_filters_by_equality_and_collection(tmp_path):
    store = DocumentStore(tmp_path / "docs.db")
    store.create("templates", {"scope": "Hockey", "is_active": True}, doc_id="a")
    store.create("templates", {"scope": "Hockey", "is_active": False}, doc_id="b")
    store.create("templates", {"scope": "Soccer", "is_active": True}, doc_id="c")
    store.create("other", {"scope": "Hockey", "is_active": True}, doc_id="d")

    active_hockey = store.query("templates", scope="Hockey", is_active=True)
    assert [doc["id"] for doc in active_hockey] == ["a"]
    assert {doc["id"] for doc in store.query("templates")} == {"a", "b", "c"}
    assert len(store.query("templates", session_id=None)) == 3


def test_increment_is_atomic_and_reports_missing(tmp_path):
    store = DocumentStore(tmp_path / "docs.db")
    store.create("templates", {"usage_count": 0}, doc_id="t1")
    for _ in range(3):
        assert store.increment("templates", "t1", "usage_count")
    assert store.get("templates", "t1")["usage_count"] == 3
    assert store.increment("templates", "nope", "usage_count") is False


def test_default_location_comes_from_env(tmp_path):
    store = DocumentStore()
    store.create("things", {"a": 1}, doc_id="x")
    assert store.db_path == tmp_path / "data" / "charting.db"
    assert store.db_path.exists()


def test_driver_errors_become_persistence_errors(tmp_path):
    store = DocumentStore(tmp_path / "docs.db")
    store.create("things", {"a": 1}, doc_id="x")
    with pytest.raises(PersistenceError) as excinfo:
        store.create("things", {"a": 2}, doc_id="x")
    assert isinstance(excinfo.value.__cause__, sqlite3.IntegrityError)
    assert excinfo.value.operation == "create"
    assert "UNIQUE" not in excinfo.value.user_message


def test_unsafe_query_keys_are_rejected(tmp_path):
    store = DocumentStore(tmp_path / "docs.db")
    with pytest.raises(ValueError):
        store.query("things", **{"a') OR 1=1 --": 1})
