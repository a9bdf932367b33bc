from __future__ import annotations

import asyncio
import json
import os
import sqlite3
from datetime import datetime, timezone
from typing import Any

from db.migrate import apply_sqlite_migrations
from db.migrate import list_schema_migrations_sync
from storage.contract import Document
from storage.contract import DocumentMap


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def default_migrations_dir() -> str:
    repo_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    return os.path.join(repo_root, "migrations")


def _guild_of(doc: Any) -> str | None:
    if not isinstance(doc, dict):
        return None
    gid = doc.get("guild_id")
    if gid is None or str(gid).strip() == "":
        return None
    return str(gid)


def _updated_at_of(doc: Any, fallback: str) -> str:
    if isinstance(doc, dict):
        value = doc.get("updated_at") or doc.get("last_updated")
        if isinstance(value, str) and value.strip():
            return value.strip()
    return fallback


def _decode_rows(collection: str, rows: list[tuple[str, str]]) -> DocumentMap:
    out: DocumentMap = {}
    for doc_key, payload_json in rows:
        try:
            out[str(doc_key)] = json.loads(payload_json)
        except json.JSONDecodeError:
            print(f"[Storage] skipping undecodable row collection={collection} key={doc_key}")
    return out


def open_database_sync(db_path: str, migrations_dir: str | None = None) -> sqlite3.Connection:
    # check_same_thread=False because the event loop hands work to asyncio.to_thread
    conn = sqlite3.connect(db_path, check_same_thread=False)
    try:
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        apply_sqlite_migrations(conn, migrations_dir or default_migrations_dir())
        conn.execute("SELECT 1").fetchone()
    except Exception:
        conn.close()
        raise
    return conn


def fetch_collection_sync(conn: sqlite3.Connection, collection: str) -> DocumentMap:
    cur = conn.execute(
        "SELECT doc_key, payload_json FROM collection_documents WHERE collection = ? ORDER BY doc_key ASC",
        (collection,),
    )
    return _decode_rows(collection, cur.fetchall())


def replace_collection_sync(conn: sqlite3.Connection, collection: str, documents: DocumentMap) -> int:
    now = _utc_now_iso()
    rows = [
        (collection, str(key), _guild_of(doc), json.dumps(doc, ensure_ascii=False), _updated_at_of(doc, now))
        for key, doc in documents.items()
    ]
    with conn:
        conn.execute("DELETE FROM collection_documents WHERE collection = ?", (collection,))
        conn.executemany(
            """
            INSERT INTO collection_documents (collection, doc_key, guild_id, payload_json, updated_at_utc)
            VALUES (?, ?, ?, ?, ?)
            """,
            rows,
        )
    return len(rows)


def get_document_sync(conn: sqlite3.Connection, collection: str, doc_key: str) -> Document | None:
    row = conn.execute(
        "SELECT payload_json FROM collection_documents WHERE collection = ? AND doc_key = ? LIMIT 1",
        (collection, str(doc_key)),
    ).fetchone()
    if row is None:
        return None
    return json.loads(row[0])


def upsert_document_sync(conn: sqlite3.Connection, collection: str, doc_key: str, doc: Document) -> None:
    payload = json.dumps(doc, ensure_ascii=False)
    with conn:
        conn.execute(
            """
            INSERT INTO collection_documents (collection, doc_key, guild_id, payload_json, updated_at_utc)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(collection, doc_key) DO UPDATE SET
                guild_id=excluded.guild_id,
                payload_json=excluded.payload_json,
                updated_at_utc=excluded.updated_at_utc
            """,
            (collection, str(doc_key), _guild_of(doc), payload, _updated_at_of(doc, _utc_now_iso())),
        )


def delete_document_sync(conn: sqlite3.Connection, collection: str, doc_key: str) -> bool:
    with conn:
        cur = conn.execute(
            "DELETE FROM collection_documents WHERE collection = ? AND doc_key = ?",
            (collection, str(doc_key)),
        )
    return cur.rowcount > 0


def delete_collection_sync(conn: sqlite3.Connection, collection: str) -> int:
    with conn:
        cur = conn.execute("DELETE FROM collection_documents WHERE collection = ?", (collection,))
    return int(cur.rowcount)


def fetch_documents_by_guild_sync(
    conn: sqlite3.Connection,
    collection: str,
    guild_id: str,
    *,
    limit: int | None = None,
    offset: int = 0,
) -> list[tuple[str, Document]]:
    sql = (
        "SELECT doc_key, payload_json FROM collection_documents "
        "WHERE collection = ? AND guild_id = ? "
        "ORDER BY updated_at_utc DESC, doc_key DESC"
    )
    params: tuple[Any, ...] = (collection, str(guild_id))
    if limit is not None:
        sql += " LIMIT ? OFFSET ?"
        params = params + (max(1, int(limit)), max(0, int(offset)))
    decoded = _decode_rows(collection, conn.execute(sql, params).fetchall())
    return list(decoded.items())


def count_documents_by_guild_sync(conn: sqlite3.Connection, collection: str, guild_id: str) -> int:
    row = conn.execute(
        "SELECT COUNT(*) FROM collection_documents WHERE collection = ? AND guild_id = ?",
        (collection, str(guild_id)),
    ).fetchone()
    return int(row[0]) if row else 0


def list_collections_sync(conn: sqlite3.Connection) -> list[tuple[str, int]]:
    cur = conn.execute(
        "SELECT collection, COUNT(*) FROM collection_documents GROUP BY collection ORDER BY collection ASC"
    )
    return [(str(name), int(n)) for name, n in cur.fetchall()]


class DatabaseStore:
    """SQLite-backed collections with record-level operations for hot paths."""

    backend_name = "database"

    def __init__(self, conn: sqlite3.Connection, *, db_lock: asyncio.Lock | None = None, db_path: str = "") -> None:
        self.db_conn = conn
        self.db_lock = db_lock or asyncio.Lock()
        self.db_path = db_path
        self._closed = False

    @classmethod
    async def open(cls, db_path: str, *, migrations_dir: str | None = None) -> "DatabaseStore":
        conn = await asyncio.to_thread(open_database_sync, db_path, migrations_dir)
        return cls(conn, db_path=db_path)

    async def ping(self) -> bool:
        try:
            async with self.db_lock:
                await asyncio.to_thread(lambda c: c.execute("SELECT 1").fetchone(), self.db_conn)
            return True
        except Exception as e:
            print(f"[Storage] database ping failed: {e}")
            return False

    async def read_or_none(self, collection: str) -> DocumentMap | None:
        """Like ``read`` but returns ``None`` on failure so callers can tell it from an empty collection."""
        try:
            async with self.db_lock:
                return await asyncio.to_thread(fetch_collection_sync, self.db_conn, collection)
        except Exception as e:
            print(f"[Storage] failed to read collection={collection} from database: {e}")
            return None

    async def read(self, collection: str) -> DocumentMap:
        documents = await self.read_or_none(collection)
        return documents if documents is not None else {}

    async def write(self, collection: str, documents: DocumentMap) -> bool:
        try:
            async with self.db_lock:
                await asyncio.to_thread(replace_collection_sync, self.db_conn, collection, dict(documents or {}))
            return True
        except Exception as e:
            print(f"[Storage] failed to write collection={collection} to database: {e}")
            return False

    async def delete(self, collection: str) -> bool:
        try:
            async with self.db_lock:
                removed = await asyncio.to_thread(delete_collection_sync, self.db_conn, collection)
            return removed > 0
        except Exception as e:
            print(f"[Storage] failed to delete collection={collection} from database: {e}")
            return False

    async def get(self, collection: str, doc_key: str) -> Document | None:
        try:
            async with self.db_lock:
                return await asyncio.to_thread(get_document_sync, self.db_conn, collection, doc_key)
        except Exception as e:
            print(f"[Storage] failed to get collection={collection} key={doc_key}: {e}")
            return None

    async def upsert(self, collection: str, doc_key: str, doc: Document) -> bool:
        try:
            async with self.db_lock:
                await asyncio.to_thread(upsert_document_sync, self.db_conn, collection, doc_key, doc)
            return True
        except Exception as e:
            print(f"[Storage] failed to upsert collection={collection} key={doc_key}: {e}")
            return False

    async def delete_key(self, collection: str, doc_key: str) -> bool:
        try:
            async with self.db_lock:
                return await asyncio.to_thread(delete_document_sync, self.db_conn, collection, doc_key)
        except Exception as e:
            print(f"[Storage] failed to delete collection={collection} key={doc_key}: {e}")
            return False

    async def list_by_guild(
        self,
        collection: str,
        guild_id: str,
        *,
        page: int | None = None,
        limit: int | None = None,
    ) -> tuple[list[tuple[str, Document]], int]:
        """Return ``(rows, total)`` for one guild, newest first; paged when ``limit`` is set."""
        try:
            offset = 0
            if limit is not None:
                offset = (max(1, int(page or 1)) - 1) * max(1, int(limit))
            async with self.db_lock:
                rows = await asyncio.to_thread(
                    fetch_documents_by_guild_sync,
                    self.db_conn,
                    collection,
                    guild_id,
                    limit=limit,
                    offset=offset,
                )
                total = await asyncio.to_thread(count_documents_by_guild_sync, self.db_conn, collection, guild_id)
            return rows, total
        except Exception as e:
            print(f"[Storage] failed to list collection={collection} guild={guild_id}: {e}")
            return [], 0

    async def list_collections(self) -> list[tuple[str, int]]:
        try:
            async with self.db_lock:
                return await asyncio.to_thread(list_collections_sync, self.db_conn)
        except Exception as e:
            print(f"[Storage] failed to list database collections: {e}")
            return []

    async def list_migrations(self, limit: int = 50) -> list[tuple[str, str, str]]:
        async with self.db_lock:
            return await asyncio.to_thread(list_schema_migrations_sync, self.db_conn, limit)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        async with self.db_lock:
            await asyncio.to_thread(self.db_conn.close)
