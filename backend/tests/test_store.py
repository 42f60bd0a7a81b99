"""
Tests for the document stores and the fill session store.

The same behaviour is checked against the in-memory and SQLite backends.
"""

import time

import pytest

from backend.core.session import FillSessionStore
from backend.core.store import InMemoryDocumentStore, SQLiteDocumentStore


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryDocumentStore()
    return SQLiteDocumentStore(str(tmp_path / "forms.db"), "forms")


class TestDocumentStore:

    def test_insert_assigns_id_and_timestamps(self, store):
        doc = store.insert({"name": "A"})
        assert doc["id"]
        assert doc["createdAt"]
        assert doc["updatedAt"]
        assert store.get(doc["id"]) == doc

    def test_insert_keeps_given_id(self, store):
        doc = store.insert({"id": "form1", "name": "A"})
        assert doc["id"] == "form1"

    def test_get_missing(self, store):
        assert store.get("nope") is None

    def test_find_by_field(self, store):
        store.insert({"name": "A", "user": "u1", "createdAt": "2026-01-01T00:00:00+00:00"})
        store.insert({"name": "B", "user": "u1", "createdAt": "2026-02-01T00:00:00+00:00"})
        store.insert({"name": "C", "user": "u2"})
        found = store.find(user="u1")
        assert [d["name"] for d in found] == ["B", "A"]
        assert store.find_one(user="u3") is None

    def test_update_merges(self, store):
        doc = store.insert({"name": "A", "token": "t1"})
        updated = store.update(doc["id"], {"token": None})
        assert updated["name"] == "A"
        assert updated["token"] is None
        assert store.get(doc["id"])["token"] is None

    def test_update_missing(self, store):
        assert store.update("nope", {"a": 1}) is None

    def test_delete(self, store):
        doc = store.insert({"name": "A"})
        assert store.delete(doc["id"]) is True
        assert store.delete(doc["id"]) is False
        assert store.count() == 0

    def test_returned_docs_are_copies(self, store):
        doc = store.insert({"name": "A", "fields": [{"fieldId": "x"}]})
        fetched = store.get(doc["id"])
        fetched["fields"].append({"fieldId": "y"})
        assert len(store.get(doc["id"])["fields"]) == 1


class TestSQLitePersistence:

    def test_survives_reopen(self, tmp_path):
        path = str(tmp_path / "nested" / "store.db")
        first = SQLiteDocumentStore(path, "users")
        doc = first.insert({"airtableId": "usr1"})
        second = SQLiteDocumentStore(path, "users")
        assert second.get(doc["id"])["airtableId"] == "usr1"

    def test_collections_are_separate(self, tmp_path):
        path = str(tmp_path / "store.db")
        forms = SQLiteDocumentStore(path, "forms")
        users = SQLiteDocumentStore(path, "users")
        forms.insert({"id": "same"})
        assert users.get("same") is None

    def test_rejects_bad_collection_name(self, tmp_path):
        with pytest.raises(ValueError):
            SQLiteDocumentStore(str(tmp_path / "s.db"), "forms; DROP TABLE x")


class TestFillSessionStore:

    def test_create_and_get(self, student_form):
        store = FillSessionStore()
        session_id, session = store.create_session(student_form)
        assert store.get_session(session_id) is session
        assert store.count() == 1

    def test_sessions_are_independent(self, student_form):
        store = FillSessionStore()
        _, first = store.create_session(student_form)
        _, second = store.create_session(student_form)
        first.collector.set_answer("FullName", "Ada")
        assert second.collector.snapshot() == {}

    def test_expired_session_removed(self, student_form):
        store = FillSessionStore(timeout_seconds=0)
        session_id, _ = store.create_session(student_form)
        time.sleep(0.01)
        assert store.get_session(session_id) is None
        assert store.count() == 0

    def test_cleanup_expired(self, student_form):
        store = FillSessionStore(timeout_seconds=0)
        store.create_session(student_form)
        store.create_session(student_form)
        time.sleep(0.01)
        assert store.cleanup_expired() == 2

    def test_delete_sessions_for_form(self, student_form, event_form):
        store = FillSessionStore()
        student_form.id = "f1"
        event_form.id = "f2"
        store.create_session(student_form)
        store.create_session(student_form)
        keep_id, _ = store.create_session(event_form)
        assert store.delete_sessions_for_form("f1") == 2
        assert store.get_session(keep_id) is not None

    def test_delete_session(self, student_form):
        store = FillSessionStore()
        session_id, _ = store.create_session(student_form)
        assert store.delete_session(session_id) is True
        assert store.delete_session(session_id) is False
