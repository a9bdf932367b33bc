from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Callable

from storage.contract import DocumentMap
from storage.db_store import DatabaseStore
from storage.file_store import FileStore


@dataclass(frozen=True)
class ReconcileResult:
    collection: str
    merged: int
    file_changed: bool
    db_changed: bool
    ok: bool = True


def merge_documents(file_docs: DocumentMap, db_docs: DocumentMap) -> DocumentMap:
    # database wins on key collision
    merged = dict(file_docs or {})
    merged.update(db_docs or {})
    return merged


class ReconciliationSync:
    """Keeps the file mirror and the database copy of dual-homed collections aligned."""

    def __init__(
        self,
        *,
        file_store: FileStore,
        db_store: DatabaseStore,
        collections: tuple[str, ...] | list[str],
        interval_seconds: int = 300,
        on_collection_changed: Callable[[str], None] | None = None,
        on_tick: Callable[[], None] | None = None,
    ) -> None:
        self.file_store = file_store
        self.db_store = db_store
        self.collections = tuple(collections)
        self.interval_seconds = int(interval_seconds)
        self.on_collection_changed = on_collection_changed
        self.on_tick = on_tick
        self._task: asyncio.Task | None = None
        self.last_run_results: list[ReconcileResult] = []

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    async def reconcile_collection(self, collection: str, *, import_files: bool = False) -> ReconcileResult:
        """Align one collection across both backends.

        With ``import_files`` the file entries are merged into the database
        (database wins on collision) and an imported file is archived as
        ``<collection>.json.migrated`` before the mirror is rewritten.
        Otherwise the database is authoritative and the file side is
        overwritten to match it, so records deleted from the database never
        come back from a stale mirror.
        """
        db_docs = await self.db_store.read_or_none(collection)
        if db_docs is None:
            print(f"[Sync] skipping collection={collection}: database read failed")
            return ReconcileResult(collection, 0, False, False, ok=False)
        file_docs = await self.file_store.read(collection)
        merged = merge_documents(file_docs, db_docs) if import_files else dict(db_docs)

        file_changed = merged != file_docs
        db_changed = merged != db_docs
        ok = True
        if db_changed:
            ok = await self.db_store.write(collection, merged)
            if ok and await self.file_store.archive(collection):
                print(f"[Sync] imported file data collection={collection} keys={len(file_docs)}; archived the file")
                file_changed = True
        if file_changed:
            ok = await self.file_store.write(collection, merged) and ok
        if db_changed and self.on_collection_changed is not None:
            self.on_collection_changed(collection)

        return ReconcileResult(
            collection=collection,
            merged=len(merged),
            file_changed=file_changed,
            db_changed=db_changed,
            ok=ok,
        )

    async def run_once(self, *, import_files: bool = False) -> list[ReconcileResult]:
        results: list[ReconcileResult] = []
        for collection in self.collections:
            try:
                results.append(await self.reconcile_collection(collection, import_files=import_files))
            except Exception as e:
                print(f"[Sync] reconcile failed collection={collection}: {e}")
                results.append(ReconcileResult(collection, 0, False, False, ok=False))

        changed = [r.collection for r in results if r.file_changed or r.db_changed]
        if changed:
            print(f"[Sync] reconciled collections={','.join(changed)}")
        self.last_run_results = results
        return results

    async def migrate_files(self) -> list[ReconcileResult]:
        print(f"[Sync] migrating file data into database for {len(self.collections)} collection(s)")
        return await self.run_once(import_files=True)

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(max(1, self.interval_seconds))
            try:
                await self.run_once()
                if self.on_tick is not None:
                    self.on_tick()
            except Exception as e:
                print(f"[Sync] loop error: {e}")

    def start(self) -> None:
        if self.active or self.interval_seconds <= 0:
            return
        self._task = asyncio.create_task(self._loop())
        print(f"[Sync] periodic reconciliation started (every {self.interval_seconds}s)")

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        print("[Sync] periodic reconciliation stopped")
