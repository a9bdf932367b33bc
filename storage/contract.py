from __future__ import annotations

from typing import Any, Protocol, runtime_checkable


Document = dict[str, Any]
DocumentMap = dict[str, Document]


@runtime_checkable
class CollectionStore(Protocol):
    """Persistence contract shared by the file and database backends.

    ``read`` never raises: a missing or unreadable collection is ``{}``.
    ``write`` replaces the whole collection and reports success as a bool.
    The record-level calls let hot paths touch one key; the database does
    that natively, the file backend rewrites its single file.
    """

    backend_name: str

    async def read(self, collection: str) -> DocumentMap: ...

    async def write(self, collection: str, documents: DocumentMap) -> bool: ...

    async def delete(self, collection: str) -> bool: ...

    async def get(self, collection: str, doc_key: str) -> Document | None: ...

    async def upsert(self, collection: str, doc_key: str, doc: Document) -> bool: ...

    async def delete_key(self, collection: str, doc_key: str) -> bool: ...

    async def list_by_guild(
        self,
        collection: str,
        guild_id: str,
        *,
        page: int | None = None,
        limit: int | None = None,
    ) -> tuple[list[tuple[str, Document]], int]: ...

    async def close(self) -> None: ...
