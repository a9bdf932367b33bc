from __future__ import annotations

import asyncio
import json
import os
import re
import tempfile
import time
from pathlib import Path
from typing import Any

from storage.contract import Document
from storage.contract import DocumentMap


_OBJECT_SPAN_RE = re.compile(r"\{[\s\S]*\}")


def collection_path(root: Path, collection: str) -> Path:
    name = (collection or "").strip()
    if not name or "/" in name or "\\" in name or name.startswith("."):
        raise ValueError(f"Invalid collection name: {collection!r}")
    return root / f"{name}.json"


def _as_document_map(payload: Any) -> DocumentMap:
    if not isinstance(payload, dict):
        return {}
    return {str(k): v for k, v in payload.items()}


def _recover_corrupted_sync(path: Path, raw: str) -> DocumentMap:
    backup = path.with_name(f"{path.name}.corrupted.{int(time.time())}")
    backup.write_text(raw, encoding="utf-8")
    print(f"[Storage] corrupted JSON in {path.name}; backup written to {backup.name}")

    m = _OBJECT_SPAN_RE.search(raw)
    if m:
        try:
            recovered = _as_document_map(json.loads(m.group(0)))
            write_collection_file_sync(path, recovered)
            print(f"[Storage] recovered {len(recovered)} record(s) from {path.name}")
            return recovered
        except json.JSONDecodeError:
            pass

    print(f"[Storage] could not recover {path.name}; resetting to empty collection")
    write_collection_file_sync(path, {})
    return {}


def read_collection_file_sync(path: Path) -> DocumentMap:
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}
    try:
        return _as_document_map(json.loads(raw))
    except json.JSONDecodeError:
        return _recover_corrupted_sync(path, raw)


def write_collection_file_sync(path: Path, documents: DocumentMap) -> None:
    # serialize first so an unserializable document never touches the file
    payload = json.dumps(documents, ensure_ascii=False, indent=2)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(payload)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def _sort_stamp(doc: Any) -> str:
    if isinstance(doc, dict):
        value = doc.get("updated_at") or doc.get("last_updated") or ""
        return str(value)
    return ""


def guild_rows(
    documents: DocumentMap,
    guild_id: str,
    *,
    page: int | None = None,
    limit: int | None = None,
) -> tuple[list[tuple[str, Any]], int]:
    rows = [
        (key, doc)
        for key, doc in documents.items()
        if isinstance(doc, dict) and str(doc.get("guild_id")) == str(guild_id)
    ]
    # newest first; equal stamps fall back to key, descending
    rows.sort(key=lambda kv: (_sort_stamp(kv[1]), kv[0]), reverse=True)
    total = len(rows)
    if limit is not None:
        size = max(1, int(limit))
        start = (max(1, int(page or 1)) - 1) * size
        rows = rows[start:start + size]
    return rows, total


class FileStore:
    """One JSON file per collection under ``root``; whole-map reads and writes."""

    backend_name = "file"

    def __init__(self, root: str) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, collection: str) -> asyncio.Lock:
        lock = self._locks.get(collection)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[collection] = lock
        return lock

    def path_for(self, collection: str) -> Path:
        return collection_path(self.root, collection)

    async def read(self, collection: str) -> DocumentMap:
        try:
            path = self.path_for(collection)
            async with self._lock(collection):
                return await asyncio.to_thread(read_collection_file_sync, path)
        except Exception as e:
            print(f"[Storage] failed to read collection={collection} from file: {e}")
            return {}

    async def write(self, collection: str, documents: DocumentMap) -> bool:
        try:
            path = self.path_for(collection)
            async with self._lock(collection):
                await asyncio.to_thread(write_collection_file_sync, path, dict(documents or {}))
            return True
        except Exception as e:
            print(f"[Storage] failed to write collection={collection} to file: {e}")
            return False

    async def get(self, collection: str, doc_key: str) -> Document | None:
        return (await self.read(collection)).get(str(doc_key))

    async def upsert(self, collection: str, doc_key: str, doc: Document) -> bool:
        def _apply(docs: DocumentMap) -> bool:
            docs[str(doc_key)] = doc
            return True

        return await self._mutate(collection, _apply, doc_key=doc_key) is True

    async def delete_key(self, collection: str, doc_key: str) -> bool:
        def _apply(docs: DocumentMap) -> bool:
            return docs.pop(str(doc_key), None) is not None

        return await self._mutate(collection, _apply, doc_key=doc_key) is True

    async def _mutate(self, collection: str, apply, *, doc_key: str) -> bool | None:
        """Read-modify-write under the collection lock; ``None`` signals an I/O failure."""

        def _run(path: Path) -> bool:
            docs = read_collection_file_sync(path)
            changed = bool(apply(docs))
            if changed:
                write_collection_file_sync(path, docs)
            return changed

        try:
            path = self.path_for(collection)
            async with self._lock(collection):
                return await asyncio.to_thread(_run, path)
        except Exception as e:
            print(f"[Storage] failed to update collection={collection} key={doc_key} in file: {e}")
            return None

    async def list_by_guild(
        self,
        collection: str,
        guild_id: str,
        *,
        page: int | None = None,
        limit: int | None = None,
    ) -> tuple[list[tuple[str, Document]], int]:
        return guild_rows(await self.read(collection), guild_id, page=page, limit=limit)

    async def delete(self, collection: str) -> bool:
        try:
            path = self.path_for(collection)
            async with self._lock(collection):
                await asyncio.to_thread(path.unlink)
            return True
        except FileNotFoundError:
            return False
        except Exception as e:
            print(f"[Storage] failed to delete collection={collection} file: {e}")
            return False

    async def archive(self, collection: str) -> bool:
        try:
            path = self.path_for(collection)
            target = path.with_name(f"{path.name}.migrated")
            async with self._lock(collection):
                await asyncio.to_thread(os.replace, path, target)
            return True
        except FileNotFoundError:
            return False
        except Exception as e:
            print(f"[Storage] failed to archive collection={collection} file: {e}")
            return False

    async def list_collections(self) -> list[str]:
        def _scan() -> list[str]:
            return sorted(p.stem for p in self.root.glob("*.json") if p.is_file())

        try:
            return await asyncio.to_thread(_scan)
        except OSError as e:
            print(f"[Storage] failed to list collections under {self.root}: {e}")
            return []

    async def close(self) -> None:
        return None
