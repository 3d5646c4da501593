from __future__ import annotations

import contextlib
import json
import os
import re
import sqlite3
from collections.abc import Iterator, Mapping
from typing import Any

from .logging_bridge import error as log_error
from .utils import now_iso

# ---- Collections ------------------------------------------------------------

# collection -> (key field, sort field)
COLLECTIONS: dict[str, tuple[str, str]] = {
    "raw_posts": ("post_key", "scraped_at"),
    "jobs": ("post_url", "scraped_at"),
    "subscribers": ("email", "created_at"),
    "sources": ("url", "url"),
    "runs": ("run_id", "started_at"),
}

_FIELD_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class StoreUnavailableError(RuntimeError):
    """The SQLite file cannot be opened or initialised."""


class DuplicateKeyError(RuntimeError):
    """A write collided with an existing key (unique constraint)."""


# ---- Public API -------------------------------------------------------------


class DocumentStore:
    """
    Keyed JSON-document collections on top of one SQLite file.

    Each collection has a single unique key field; writes are keyed so that
    concurrent writers converge without cross-record transactions.
    """

    def __init__(self, sqlite_path: str):
        self.sqlite_path = sqlite_path
        try:
            _ensure_dir(sqlite_path)
            with self._session() as conn:
                _ensure_schema(conn)
        except (sqlite3.Error, OSError) as e:
            log_error({
                "component": "group_watch.store",
                "op": "open",
                "sqlite_path": sqlite_path,
                "error": repr(e),
            })
            raise StoreUnavailableError(f"Document store unavailable at {sqlite_path}: {e}") from e

    # ---- reads ----
    def find(
        self,
        collection: str,
        where: Mapping[str, Any] | None = None,
        *,
        newest_first: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Equality match on top-level document fields, ordered by the collection's sort field."""
        _key_field(collection)
        clauses, params = _where(collection, where)
        order = "DESC" if newest_first else "ASC"
        sql = f"SELECT doc FROM documents WHERE {clauses} ORDER BY sort_value {order}, seq {order}"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        with self._session() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [json.loads(r[0]) for r in rows]

    def find_one(self, collection: str, key: str) -> dict[str, Any] | None:
        _key_field(collection)
        with self._session() as conn:
            row = conn.execute(
                "SELECT doc FROM documents WHERE collection = ? AND key = ?", (collection, key)
            ).fetchone()
        return json.loads(row[0]) if row else None

    def count(self, collection: str, where: Mapping[str, Any] | None = None) -> int:
        _key_field(collection)
        clauses, params = _where(collection, where)
        with self._session() as conn:
            (n,) = conn.execute(f"SELECT COUNT(*) FROM documents WHERE {clauses}", params).fetchone()
        return int(n or 0)

    # ---- writes ----
    def insert_if_absent(self, collection: str, doc: Mapping[str, Any]) -> bool:
        """Insert unless the key already exists. True when inserted."""
        key, sort_value, payload = _prepare(collection, doc)
        ts = now_iso()
        with self._session() as conn:
            cur = conn.execute(
                """
                INSERT OR IGNORE INTO documents (collection, key, doc, sort_value, created_utc, updated_utc)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (collection, key, payload, sort_value, ts, ts),
            )
            return cur.rowcount == 1

    def upsert(self, collection: str, doc: Mapping[str, Any]) -> str:
        """
        Insert-or-replace by key. Returns "inserted" or "updated".
        Raises DuplicateKeyError if another writer claimed the key mid-write.
        """
        key, sort_value, payload = _prepare(collection, doc)
        ts = now_iso()
        try:
            with self._session() as conn:
                cur = conn.cursor()
                cur.execute("BEGIN IMMEDIATE")
                try:
                    exists = cur.execute(
                        "SELECT 1 FROM documents WHERE collection = ? AND key = ?", (collection, key)
                    ).fetchone()
                    if exists:
                        cur.execute(
                            """
                            UPDATE documents SET doc = ?, sort_value = ?, updated_utc = ?
                            WHERE collection = ? AND key = ?
                            """,
                            (payload, sort_value, ts, collection, key),
                        )
                        outcome = "updated"
                    else:
                        cur.execute(
                            """
                            INSERT INTO documents (collection, key, doc, sort_value, created_utc, updated_utc)
                            VALUES (?, ?, ?, ?, ?, ?)
                            """,
                            (collection, key, payload, sort_value, ts, ts),
                        )
                        outcome = "inserted"
                    conn.commit()
                except BaseException:
                    conn.rollback()
                    raise
        except sqlite3.IntegrityError as e:
            raise DuplicateKeyError(f"{collection}: duplicate key {key!r}") from e
        return outcome

    def delete(self, collection: str, key: str) -> bool:
        """Remove one document by key. True when something was deleted."""
        _key_field(collection)
        with self._session() as conn:
            cur = conn.execute("DELETE FROM documents WHERE collection = ? AND key = ?", (collection, key))
            return cur.rowcount == 1

    def delete_many(self, collection: str, where: Mapping[str, Any] | None = None) -> int:
        _key_field(collection)
        clauses, params = _where(collection, where)
        with self._session() as conn:
            cur = conn.execute(f"DELETE FROM documents WHERE {clauses}", params)
            return int(cur.rowcount or 0)

    # ---- internals ----
    @contextlib.contextmanager
    def _session(self) -> Iterator[sqlite3.Connection]:
        conn = _connect(self.sqlite_path)
        try:
            _apply_pragmas(conn)
            yield conn
        finally:
            conn.close()


# ---- Internal utilities -----------------------------------------------------


def _key_field(collection: str) -> str:
    try:
        return COLLECTIONS[collection][0]
    except KeyError:
        raise ValueError(f"Unknown collection: {collection!r}") from None


def _prepare(collection: str, doc: Mapping[str, Any]) -> tuple[str, str, str]:
    key_field = _key_field(collection)
    key = str(doc.get(key_field) or "").strip()
    if not key:
        raise ValueError(f"{collection}: document is missing its key field {key_field!r}")
    sort_value = str(doc.get(COLLECTIONS[collection][1]) or "")
    return key, sort_value, json.dumps(dict(doc), ensure_ascii=False, default=str)


def _where(collection: str, where: Mapping[str, Any] | None) -> tuple[str, list[Any]]:
    clauses = ["collection = ?"]
    params: list[Any] = [collection]
    for field_name, value in (where or {}).items():
        if not _FIELD_RE.match(field_name):
            raise ValueError(f"Invalid field name in filter: {field_name!r}")
        clauses.append(f"json_extract(doc, '$.{field_name}') = ?")
        params.append(int(value) if isinstance(value, bool) else value)
    return " AND ".join(clauses), params


def _ensure_dir(sqlite_path: str) -> None:
    d = os.path.dirname(os.path.abspath(sqlite_path)) or "."
    os.makedirs(d, exist_ok=True)


def _connect(sqlite_path: str) -> sqlite3.Connection:
    # isolation_level=None gives autocommit mode; transactions are explicit.
    return sqlite3.connect(sqlite_path, timeout=30.0, isolation_level=None)


def _apply_pragmas(conn: sqlite3.Connection) -> None:
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA temp_store=MEMORY;")
    conn.execute("PRAGMA cache_size=-8000;")  # approx 8MB cache


def _ensure_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS documents (
          seq INTEGER PRIMARY KEY AUTOINCREMENT,
          collection TEXT NOT NULL,
          key TEXT NOT NULL,
          doc TEXT NOT NULL,
          sort_value TEXT NOT NULL DEFAULT '',
          created_utc TEXT NOT NULL,
          updated_utc TEXT NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS ux_documents_key
          ON documents (collection, key);
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS ix_documents_sort
          ON documents (collection, sort_value);
        """
    )
