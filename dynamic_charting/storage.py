"""
SQLite-backed document store.

Documents are JSON bodies grouped by collection and addressed by id. The
template, entry and analytics stores only rely on the handful of operations
exposed by :class:`DocumentStore`, so any other backend offering create/get/
update/delete, equality queries and an atomic increment can replace it.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Mapping, Optional

from .env import get_env
from .errors import PersistenceError

DEFAULT_DATA_DIR = Path(__file__).resolve().parent.parent / "data"
DEFAULT_DB_FILENAME = "dynamic_charting.db"
LOGGER = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS documents (
    collection TEXT NOT NULL,
    id TEXT NOT NULL,
    body TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (collection, id)
);

CREATE INDEX IF NOT EXISTS idx_documents_collection
    ON documents (collection);
"""


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _data_dir() -> Path:
    override = get_env("DATA_DIR")
    base = Path(override).expanduser() if override else DEFAULT_DATA_DIR
    base.mkdir(parents=True, exist_ok=True)
    return base


def _database_file() -> Path:
    override = get_env("DB_FILE")
    if override:
        path = Path(override).expanduser()
    else:
        path = _data_dir() / DEFAULT_DB_FILENAME
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def _json_path(key: str) -> str:
    if not key.replace("_", "").isalnum():
        raise ValueError(f"Unsupported document key {key!r}")
    return f"$.{key}"


def _dumps(data: Mapping[str, Any]) -> str:
    return json.dumps(dict(data), sort_keys=True, default=str)


class DocumentStore:
    """Collection-scoped JSON documents in a single SQLite file."""

    def __init__(self, db_path: Path | str | None = None) -> None:
        self._db_path = Path(db_path).expanduser() if db_path else None
        self._initialised = False

    @property
    def db_path(self) -> Path:
        if self._db_path is None:
            self._db_path = _database_file()
        return self._db_path

    def _ensure_database(self) -> None:
        if self._initialised:
            return
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path)
        try:
            conn.executescript(_SCHEMA)
        finally:
            conn.close()
        self._initialised = True

    @contextmanager
    def open_database(self, operation: str = "query") -> Iterator[sqlite3.Connection]:
        """Yield a connection with ensured schema; driver errors become PersistenceError."""
        try:
            self._ensure_database()
            conn = sqlite3.connect(self.db_path)
        except sqlite3.Error as exc:
            LOGGER.error("Could not open %s for %s: %s", self.db_path, operation, exc)
            raise PersistenceError(str(exc), operation=operation) from exc
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            LOGGER.error("Storage %s failed: %s", operation, exc)
            raise PersistenceError(str(exc), operation=operation) from exc
        finally:
            conn.close()

    def create(self, collection: str, data: Mapping[str, Any], doc_id: Optional[str] = None) -> str:
        """Insert a document and return its id (generated when not supplied)."""
        identifier = doc_id or uuid.uuid4().hex
        body = {key: value for key, value in data.items() if key != "id"}
        stamp = _now_utc().isoformat()
        with self.open_database("create") as conn:
            conn.execute(
                "INSERT INTO documents (collection, id, body, created_at, updated_at) VALUES (?, ?, ?, ?, ?)",
                (collection, identifier, _dumps(body), stamp, stamp),
            )
        LOGGER.debug("Created %s/%s", collection, identifier)
        return identifier

    def get(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        with self.open_database("get") as conn:
            row = conn.execute(
                "SELECT id, body FROM documents WHERE collection = ? AND id = ?",
                (collection, doc_id),
            ).fetchone()
        if row is None:
            return None
        return self._to_document(row)

    def update(self, collection: str, doc_id: str, changes: Mapping[str, Any]) -> bool:
        """Merge ``changes`` into the stored body. Returns False if the document is missing."""
        with self.open_database("update") as conn:
            row = conn.execute(
                "SELECT body FROM documents WHERE collection = ? AND id = ?",
                (collection, doc_id),
            ).fetchone()
            if row is None:
                return False
            body = json.loads(row[0])
            body.update({key: value for key, value in changes.items() if key != "id"})
            conn.execute(
                "UPDATE documents SET body = ?, updated_at = ? WHERE collection = ? AND id = ?",
                (_dumps(body), _now_utc().isoformat(), collection, doc_id),
            )
        return True

    def upsert(self, collection: str, doc_id: str, data: Mapping[str, Any]) -> None:
        """Replace the whole document body, creating it if needed."""
        body = {key: value for key, value in data.items() if key != "id"}
        stamp = _now_utc().isoformat()
        with self.open_database("upsert") as conn:
            conn.execute(
                """
                INSERT INTO documents (collection, id, body, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (collection, id) DO UPDATE SET body = excluded.body, updated_at = excluded.updated_at
                """,
                (collection, doc_id, _dumps(body), stamp, stamp),
            )

    def delete(self, collection: str, doc_id: str) -> bool:
        with self.open_database("delete") as conn:
            cursor = conn.execute(
                "DELETE FROM documents WHERE collection = ? AND id = ?",
                (collection, doc_id),
            )
            return cursor.rowcount > 0

    def query(self, collection: str, **filters: Any) -> list[dict[str, Any]]:
        """
        Return documents whose top-level keys equal the given values.

        No ordering is applied; callers sort in application logic.
        """
        clauses = ["collection = ?"]
        params: list[Any] = [collection]
        for key, value in filters.items():
            if value is None:
                clauses.append("json_extract(body, ?) IS NULL")
                params.append(_json_path(key))
            else:
                clauses.append("json_extract(body, ?) = ?")
                params.extend([_json_path(key), value])
        sql = f"SELECT id, body FROM documents WHERE {' AND '.join(clauses)}"
        with self.open_database("query") as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._to_document(row) for row in rows]

    def increment(self, collection: str, doc_id: str, key: str, amount: int = 1) -> bool:
        """Atomically add ``amount`` to a numeric top-level key."""
        path = _json_path(key)
        with self.open_database("increment") as conn:
            cursor = conn.execute(
                """
                UPDATE documents
                SET body = json_set(body, ?, COALESCE(json_extract(body, ?), 0) + ?),
                    updated_at = ?
                WHERE collection = ? AND id = ?
                """,
                (path, path, amount, _now_utc().isoformat(), collection, doc_id),
            )
            return cursor.rowcount > 0

    @staticmethod
    def _to_document(row: tuple[str, str]) -> dict[str, Any]:
        document = json.loads(row[1])
        document["id"] = row[0]
        return document
