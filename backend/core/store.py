"""
Document stores for saved forms and connected users.

Documents are plain JSON-compatible dicts keyed by an ``id`` string.
Two interchangeable backends:
- InMemoryDocumentStore: for tests and local development
- SQLiteDocumentStore: one table per collection, JSON bodies, survives restarts
"""

import copy
import json
import sqlite3
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


def new_document_id() -> str:
    return uuid.uuid4().hex


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _matches(doc: dict[str, Any], criteria: dict[str, Any]) -> bool:
    return all(doc.get(key) == value for key, value in criteria.items())


class InMemoryDocumentStore:
    """Dict-backed document collection.

    Documents are deep-copied on the way in and out so callers never
    share mutable state with the store.
    """

    def __init__(self):
        self._docs: dict[str, dict[str, Any]] = {}
        self._lock = threading.RLock()

    def insert(self, doc: dict[str, Any]) -> dict[str, Any]:
        """Insert a document, assigning ``id``/``createdAt``/``updatedAt`` if absent."""
        stored = copy.deepcopy(doc)
        stored.setdefault("id", new_document_id())
        now = utc_now_iso()
        stored.setdefault("createdAt", now)
        stored.setdefault("updatedAt", now)
        with self._lock:
            self._docs[stored["id"]] = stored
        return copy.deepcopy(stored)

    def get(self, doc_id: str) -> dict[str, Any] | None:
        with self._lock:
            doc = self._docs.get(doc_id)
            return copy.deepcopy(doc) if doc is not None else None

    def find(self, **criteria: Any) -> list[dict[str, Any]]:
        """Return documents whose top-level keys equal the criteria, newest first."""
        with self._lock:
            found = [copy.deepcopy(d) for d in self._docs.values() if _matches(d, criteria)]
        return sorted(found, key=lambda d: d.get("createdAt", ""), reverse=True)

    def find_one(self, **criteria: Any) -> dict[str, Any] | None:
        found = self.find(**criteria)
        return found[0] if found else None

    def update(self, doc_id: str, changes: dict[str, Any]) -> dict[str, Any] | None:
        """Merge top-level changes into a document. Returns None if it doesn't exist."""
        with self._lock:
            doc = self._docs.get(doc_id)
            if doc is None:
                return None
            doc.update(copy.deepcopy(changes))
            doc["updatedAt"] = utc_now_iso()
            return copy.deepcopy(doc)

    def delete(self, doc_id: str) -> bool:
        """Delete a document. Returns True if it existed."""
        with self._lock:
            return self._docs.pop(doc_id, None) is not None

    def count(self) -> int:
        with self._lock:
            return len(self._docs)


class SQLiteDocumentStore:
    """SQLite-backed document collection.

    Useful when saved forms and connected accounts must survive backend
    restarts without introducing external infrastructure.
    """

    def __init__(self, db_path: str, collection: str):
        if not collection.isidentifier():
            raise ValueError(f"Invalid collection name: '{collection}'")
        self._db_path = db_path
        self._table = collection
        self._lock = threading.RLock()
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_schema(self) -> None:
        Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {self._table} (
                    id TEXT PRIMARY KEY,
                    body TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.commit()

    def insert(self, doc: dict[str, Any]) -> dict[str, Any]:
        stored = dict(doc)
        stored.setdefault("id", new_document_id())
        now = utc_now_iso()
        stored.setdefault("createdAt", now)
        stored.setdefault("updatedAt", now)
        with self._lock, self._connect() as conn:
            conn.execute(
                f"INSERT OR REPLACE INTO {self._table} (id, body, created_at) VALUES (?, ?, ?)",
                (stored["id"], json.dumps(stored, ensure_ascii=False), stored["createdAt"]),
            )
            conn.commit()
        return json.loads(json.dumps(stored))

    def get(self, doc_id: str) -> dict[str, Any] | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                f"SELECT body FROM {self._table} WHERE id = ?",
                (doc_id,),
            ).fetchone()
        return json.loads(row["body"]) if row else None

    def find(self, **criteria: Any) -> list[dict[str, Any]]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                f"SELECT body FROM {self._table} ORDER BY created_at DESC"
            ).fetchall()
        docs = (json.loads(row["body"]) for row in rows)
        return [doc for doc in docs if _matches(doc, criteria)]

    def find_one(self, **criteria: Any) -> dict[str, Any] | None:
        found = self.find(**criteria)
        return found[0] if found else None

    def update(self, doc_id: str, changes: dict[str, Any]) -> dict[str, Any] | None:
        with self._lock:
            doc = self.get(doc_id)
            if doc is None:
                return None
            doc.update(changes)
            doc["updatedAt"] = utc_now_iso()
            with self._connect() as conn:
                conn.execute(
                    f"UPDATE {self._table} SET body = ? WHERE id = ?",
                    (json.dumps(doc, ensure_ascii=False), doc_id),
                )
                conn.commit()
        return doc

    def delete(self, doc_id: str) -> bool:
        with self._lock, self._connect() as conn:
            cursor = conn.execute(f"DELETE FROM {self._table} WHERE id = ?", (doc_id,))
            conn.commit()
            return cursor.rowcount > 0

    def count(self) -> int:
        with self._lock, self._connect() as conn:
            row = conn.execute(f"SELECT COUNT(*) AS c FROM {self._table}").fetchone()
            return int(row["c"]) if row else 0
