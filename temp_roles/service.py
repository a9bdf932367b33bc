from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from storage.manager import StorageManager
from storage.manager import parse_utc


class TemporaryRoleService:
    """Manual grant bookkeeping; the expiration scheduler handles the rest."""

    def __init__(
        self,
        storage: StorageManager,
        *,
        on_created: Callable[[], None] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.storage = storage
        self.on_created = on_created
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def grant(
        self,
        guild_id: Any,
        user_id: Any,
        role_id: Any,
        *,
        expires_at: datetime | str | None = None,
        duration: timedelta | None = None,
        notify_on_expiry: bool = False,
    ) -> dict[str, Any]:
        if expires_at is None and duration is None:
            raise ValueError("grant needs expires_at or duration")
        now = self.clock()
        expires = parse_utc(expires_at) if expires_at is not None else now + duration
        if expires is None:
            raise ValueError(f"invalid expires_at: {expires_at!r}")
        if expires <= now:
            raise ValueError("expires_at must be in the future")

        ok = await self.storage.add_temporary_role(guild_id, user_id, role_id, expires, notify_on_expiry)
        if not ok:
            raise RuntimeError(f"failed to store temporary role guild={guild_id} user={user_id} role={role_id}")
        print(f"[TempRoles] granted guild={guild_id} user={user_id} role={role_id} expires_at={expires.isoformat()}")

        if self.on_created is not None:
            self.on_created()
        return await self.storage.get_temporary_role(guild_id, user_id, role_id) or {}

    async def revoke(self, guild_id: Any, user_id: Any, role_id: Any) -> bool:
        removed = await self.storage.remove_temporary_role(guild_id, user_id, role_id)
        if removed:
            print(f"[TempRoles] removed grant guild={guild_id} user={user_id} role={role_id}")
        return removed

    async def list_for_guild(self, guild_id: Any) -> list[dict[str, Any]]:
        grants = await self.storage.get_temporary_roles_by_guild(guild_id)
        return sorted(grants.values(), key=lambda g: str(g.get("expires_at") or ""))

    async def list_for_user(self, guild_id: Any, user_id: Any) -> list[dict[str, Any]]:
        return [g for g in await self.list_for_guild(guild_id) if str(g.get("user_id")) == str(user_id)]
