from __future__ import annotations

import asyncio
import math
import time
from datetime import datetime, timezone
from typing import Any, Callable

from config.defaults import COLLECTION_CORE_CREDIT
from config.defaults import COLLECTION_POLLS
from config.defaults import COLLECTION_ROLE_MAPPINGS
from config.defaults import COLLECTION_TEMPORARY_ROLES
from config.defaults import COLLECTION_USER_EXPERIENCE
from config.defaults import DEFAULT_CACHE_TTL_SECONDS
from config.defaults import DEFAULT_SYNC_INTERVAL_SECONDS
from config.defaults import DUAL_HOMED_COLLECTIONS
from storage.cache import CollectionCache
from storage.contract import CollectionStore
from storage.contract import Document
from storage.contract import DocumentMap
from storage.db_store import DatabaseStore
from storage.file_store import FileStore
from storage.sync import ReconciliationSync


def utc_iso(dt: datetime | None = None) -> str:
    return (dt or datetime.now(timezone.utc)).astimezone(timezone.utc).isoformat()


def parse_utc(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        # epoch millis from older JS-written files, or epoch seconds
        seconds = value / 1000.0 if value > 1e11 else float(value)
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def temporary_role_key(guild_id: Any, user_id: Any, role_id: Any) -> str:
    return f"{guild_id}:{user_id}:{role_id}"


def user_experience_key(guild_id: Any, user_id: Any) -> str:
    return f"{guild_id}_{user_id}"


class StorageManager:
    """Single entry point for collection persistence.

    The backend is chosen once in ``initialize()``: the database when it can
    be opened, otherwise the file store. Until then (and whenever the
    database is unavailable) the file store serves every call. Reads never
    raise and fall back to empty values; writes report success as a bool.
    """

    def __init__(
        self,
        *,
        data_dir: str,
        db_path: str | None = None,
        force_file_mode: bool = False,
        cache_ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        sync_interval_seconds: int = DEFAULT_SYNC_INTERVAL_SECONDS,
        dual_homed_collections: tuple[str, ...] | list[str] = DUAL_HOMED_COLLECTIONS,
        migrations_dir: str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.data_dir = data_dir
        self.db_path = db_path
        self.force_file_mode = bool(force_file_mode)
        self.sync_interval_seconds = int(sync_interval_seconds)
        self.dual_homed_collections = tuple(dual_homed_collections)
        self.migrations_dir = migrations_dir

        self.file_store = FileStore(data_dir)
        self.db_store: DatabaseStore | None = None
        self.backend: CollectionStore = self.file_store
        self.cache = CollectionCache(cache_ttl_seconds, clock=clock)
        self.sync: ReconciliationSync | None = None
        self.initialized = False
        self._locks: dict[str, asyncio.Lock] = {}

    # ---------- lifecycle ----------

    async def initialize(self) -> None:
        if self.initialized:
            return
        print("[Storage] initializing storage manager...")

        if self.force_file_mode or not self.db_path:
            reason = "file mode forced" if self.force_file_mode else "no database path configured"
            print(f"[Storage] using local files only ({reason}) data_dir={self.data_dir}")
        else:
            try:
                self.db_store = await DatabaseStore.open(self.db_path, migrations_dir=self.migrations_dir)
            except Exception as e:
                self.db_store = None
                print(f"[Storage] WARNING database unavailable ({e}); degraded mode, using local files at {self.data_dir}")
            else:
                self.backend = self.db_store
                print(f"[Storage] database storage enabled db_path={self.db_path}")
                self.sync = ReconciliationSync(
                    file_store=self.file_store,
                    db_store=self.db_store,
                    collections=self.dual_homed_collections,
                    interval_seconds=self.sync_interval_seconds,
                    on_collection_changed=self.cache.invalidate,
                    on_tick=self.cache.sweep,
                )
                await self.sync.migrate_files()
                self.sync.start()

        self.initialized = True
        print(f"[Storage] storage manager initialized backend={self.backend.backend_name}")

    async def close(self) -> None:
        if self.sync is not None:
            await self.sync.stop()
        self.cache.clear()
        if self.db_store is not None:
            await self.db_store.close()
        print("[Storage] storage manager closed")

    def status(self) -> dict[str, Any]:
        return {
            "backend": self.backend.backend_name,
            "initialized": self.initialized,
            "cache_entries": self.cache.size,
            "cache_ttl_seconds": self.cache.ttl_seconds,
            "sync_active": bool(self.sync and self.sync.active),
            "sync_interval_seconds": self.sync_interval_seconds if self.sync else 0,
            "data_dir": self.data_dir,
            "db_path": self.db_path if self.db_store is not None else None,
        }

    # ---------- generic ----------

    def _lock(self, collection: str) -> asyncio.Lock:
        lock = self._locks.get(collection)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[collection] = lock
        return lock

    def _mirror(self, collection: str) -> FileStore | None:
        # dual-homed collections keep their file copy in step with the database
        if self.db_store is None or self.backend is not self.db_store:
            return None
        if collection not in self.dual_homed_collections:
            return None
        return self.file_store

    async def read(self, collection: str) -> DocumentMap:
        hit, value = self.cache.get(collection)
        if hit:
            return value
        documents = await self.backend.read(collection)
        self.cache.set(collection, documents)
        return documents

    async def write(self, collection: str, documents: DocumentMap) -> bool:
        ok = await self.backend.write(collection, documents)
        self.cache.invalidate(collection)
        if not ok:
            print(f"[Storage] WARNING write failed collection={collection} backend={self.backend.backend_name}")
            return False
        mirror = self._mirror(collection)
        if mirror is not None and not await mirror.write(collection, documents):
            print(f"[Storage] WARNING file mirror write failed collection={collection}")
        return True

    async def get_document(self, collection: str, doc_key: Any) -> Document | None:
        query = {"key": str(doc_key)}
        hit, value = self.cache.get(collection, query)
        if hit:
            return value
        doc = await self.backend.get(collection, str(doc_key))
        if doc is not None:
            self.cache.set(collection, doc, query)
        return doc

    async def put_document(self, collection: str, doc_key: Any, doc: Document) -> bool:
        ok = await self.backend.upsert(collection, str(doc_key), doc)
        self.cache.invalidate(collection)
        if not ok:
            print(f"[Storage] WARNING upsert failed collection={collection} key={doc_key}")
            return False
        mirror = self._mirror(collection)
        if mirror is not None and not await mirror.upsert(collection, str(doc_key), doc):
            print(f"[Storage] WARNING file mirror upsert failed collection={collection} key={doc_key}")
        return True

    async def remove_document(self, collection: str, doc_key: Any) -> bool:
        removed = await self.backend.delete_key(collection, str(doc_key))
        self.cache.invalidate(collection)
        mirror = self._mirror(collection)
        if mirror is not None:
            # the key may only survive in the mirror; drop it there regardless
            await mirror.delete_key(collection, str(doc_key))
        return removed

    async def list_guild_documents(
        self,
        collection: str,
        guild_id: Any,
        *,
        page: int | None = None,
        limit: int | None = None,
    ) -> tuple[list[tuple[str, Document]], int]:
        query = {"guild_id": str(guild_id), "page": page, "limit": limit}
        hit, value = self.cache.get(collection, query)
        if hit:
            rows, total = value
            return [(k, d) for k, d in rows], int(total)
        rows, total = await self.backend.list_by_guild(collection, str(guild_id), page=page, limit=limit)
        self.cache.set(collection, [rows, total], query)
        return rows, total

    # ---------- role mappings ----------

    async def get_role_mappings(self) -> DocumentMap:
        return await self.read(COLLECTION_ROLE_MAPPINGS)

    async def get_role_mapping(self, message_id: Any) -> Document | None:
        return await self.get_document(COLLECTION_ROLE_MAPPINGS, message_id)

    async def get_role_mappings_paginated(self, guild_id: Any, page: int = 1, limit: int = 4) -> dict[str, Any]:
        page = max(1, int(page or 1))
        limit = max(1, int(limit or 4))
        rows, total = await self.list_guild_documents(COLLECTION_ROLE_MAPPINGS, guild_id, page=page, limit=limit)
        total_pages = math.ceil(total / limit) if total else 0
        return {
            "mappings": {k: d for k, d in rows},
            "pagination": {
                "current_page": page,
                "total_pages": total_pages,
                "total_items": total,
                "items_per_page": limit,
                "has_next_page": page < total_pages,
                "has_prev_page": page > 1,
            },
        }

    async def set_role_mapping(self, message_id: Any, guild_id: Any, channel_id: Any, roles: list[dict[str, Any]]) -> bool:
        doc = {
            "message_id": str(message_id),
            "guild_id": str(guild_id),
            "channel_id": str(channel_id),
            "roles": [dict(r) for r in (roles or [])],
            "updated_at": utc_iso(),
        }
        return await self.put_document(COLLECTION_ROLE_MAPPINGS, message_id, doc)

    async def delete_role_mapping(self, message_id: Any) -> bool:
        return await self.remove_document(COLLECTION_ROLE_MAPPINGS, message_id)

    # ---------- temporary roles ----------

    async def get_temporary_roles(self) -> DocumentMap:
        return await self.read(COLLECTION_TEMPORARY_ROLES)

    async def get_temporary_role(self, guild_id: Any, user_id: Any, role_id: Any) -> Document | None:
        return await self.get_document(COLLECTION_TEMPORARY_ROLES, temporary_role_key(guild_id, user_id, role_id))

    async def get_temporary_roles_by_guild(self, guild_id: Any) -> DocumentMap:
        rows, _total = await self.list_guild_documents(COLLECTION_TEMPORARY_ROLES, guild_id)
        return {k: d for k, d in rows}

    async def add_temporary_role(
        self,
        guild_id: Any,
        user_id: Any,
        role_id: Any,
        expires_at: datetime | str,
        notify_on_expiry: bool = False,
    ) -> bool:
        expires = parse_utc(expires_at)
        if expires is None:
            print(f"[Storage] rejecting temporary role guild={guild_id} user={user_id} role={role_id}: bad expires_at={expires_at!r}")
            return False
        doc = {
            "guild_id": str(guild_id),
            "user_id": str(user_id),
            "role_id": str(role_id),
            "expires_at": utc_iso(expires),
            "notify_on_expiry": bool(notify_on_expiry),
            "created_at": utc_iso(),
        }
        return await self.put_document(COLLECTION_TEMPORARY_ROLES, temporary_role_key(guild_id, user_id, role_id), doc)

    async def remove_temporary_role(self, guild_id: Any, user_id: Any, role_id: Any) -> bool:
        return await self.remove_document(COLLECTION_TEMPORARY_ROLES, temporary_role_key(guild_id, user_id, role_id))

    # ---------- polls ----------

    async def get_all_polls(self) -> DocumentMap:
        return await self.read(COLLECTION_POLLS)

    async def get_poll(self, poll_id: Any) -> Document | None:
        return await self.get_document(COLLECTION_POLLS, poll_id)

    async def get_polls_by_guild(self, guild_id: Any) -> DocumentMap:
        rows, _total = await self.list_guild_documents(COLLECTION_POLLS, guild_id)
        return {k: d for k, d in rows}

    async def get_poll_by_message_id(self, message_id: Any) -> Document | None:
        for poll in (await self.get_all_polls()).values():
            if isinstance(poll, dict) and str(poll.get("message_id")) == str(message_id):
                return poll
        return None

    async def create_poll(self, poll: Document) -> bool:
        poll_id = str(poll.get("id") or "").strip()
        if not poll_id:
            print("[Storage] rejecting poll without id")
            return False
        return await self.put_document(COLLECTION_POLLS, poll_id, dict(poll))

    async def update_poll(
        self,
        poll_id: Any,
        fields: Document | None = None,
        *,
        change: Callable[[Document], Document | None] | None = None,
    ) -> bool:
        """Shallow-merge ``fields`` into a stored poll under the polls lock.

        ``change`` receives a copy of the current poll while the lock is held
        and returns extra fields to merge (or ``None`` for no change); it may
        raise to abort the update. A missing poll returns False without
        calling it.
        """
        async with self._lock(COLLECTION_POLLS):
            current = await self.backend.get(COLLECTION_POLLS, str(poll_id))
            if current is None:
                return False
            updates = dict(fields or {})
            if change is not None:
                updates.update(change(dict(current)) or {})
            if not updates:
                return True
            return await self.put_document(COLLECTION_POLLS, poll_id, {**current, **updates})

    async def delete_poll(self, poll_id: Any) -> bool:
        return await self.remove_document(COLLECTION_POLLS, poll_id)

    # ---------- user experience ----------

    async def get_user_experience(self, guild_id: Any, user_id: Any) -> Document | None:
        return await self.get_document(COLLECTION_USER_EXPERIENCE, user_experience_key(guild_id, user_id))

    async def set_user_experience(self, guild_id: Any, user_id: Any, data: Document) -> bool:
        doc = {**(data or {}), "guild_id": str(guild_id), "user_id": str(user_id)}
        return await self.put_document(COLLECTION_USER_EXPERIENCE, user_experience_key(guild_id, user_id), doc)

    async def get_user_experience_by_guild(self, guild_id: Any) -> list[Document]:
        rows, _total = await self.list_guild_documents(COLLECTION_USER_EXPERIENCE, guild_id)
        return [d for _k, d in rows]

    async def get_user_experience_leaderboard(self, guild_id: Any, limit: int = 10) -> list[Document]:
        docs = await self.get_user_experience_by_guild(guild_id)
        docs.sort(key=lambda d: int(d.get("total_xp") or d.get("xp") or 0), reverse=True)
        return docs[: max(1, int(limit))]

    # ---------- core credits ----------

    async def get_core_credits(self, user_id: Any) -> Document | None:
        return await self.get_document(COLLECTION_CORE_CREDIT, user_id)

    async def set_core_credits(self, user_id: Any, data: Document) -> bool:
        return await self.put_document(COLLECTION_CORE_CREDIT, user_id, dict(data or {}))

    async def update_core_credits(self, user_id: Any, delta: int | float) -> bool:
        async with self._lock(COLLECTION_CORE_CREDIT):
            current = await self.backend.get(COLLECTION_CORE_CREDIT, str(user_id)) or {"credits": 0}
            updated = {
                **current,
                "credits": (current.get("credits") or 0) + delta,
                "last_updated": utc_iso(),
            }
            return await self.put_document(COLLECTION_CORE_CREDIT, user_id, updated)
