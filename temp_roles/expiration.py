from __future__ import annotations

from datetime import datetime
from typing import Any

from config.defaults import TEMP_ROLE_EXPIRED_REASON
from jobs.expiration import DeadlineEntry
from storage.manager import StorageManager
from storage.manager import parse_utc


class TemporaryRoleExpirationHandler:
    entity_type = "temporary_role"

    def __init__(self, storage: StorageManager, gateway) -> None:
        self.storage = storage
        self.gateway = gateway

    async def load_deadlines(self) -> list[DeadlineEntry]:
        entries: list[DeadlineEntry] = []
        for key, grant in (await self.storage.get_temporary_roles()).items():
            if not isinstance(grant, dict):
                continue
            deadline = parse_utc(grant.get("expires_at"))
            if deadline is None:
                print(f"[TempRoles] skipping grant {key}: unreadable expires_at={grant.get('expires_at')!r}")
                continue
            entries.append(DeadlineEntry(self.entity_type, key, deadline, payload=grant))
        return entries

    async def expire(self, entry: DeadlineEntry, now: datetime) -> None:
        snapshot: dict[str, Any] = entry.payload
        guild_id = snapshot.get("guild_id")
        user_id = snapshot.get("user_id")
        role_id = snapshot.get("role_id")

        # re-read: the grant may have been removed or extended since the index was built
        grant = await self.storage.get_temporary_role(guild_id, user_id, role_id)
        if grant is None:
            return
        deadline = parse_utc(grant.get("expires_at"))
        if deadline is not None and deadline > now:
            print(f"[TempRoles] grant guild={guild_id} user={user_id} role={role_id} was extended; leaving it")
            return

        try:
            outcome = await self.gateway.revoke_role(guild_id, user_id, role_id, reason=TEMP_ROLE_EXPIRED_REASON)
        except Exception as e:
            print(f"[TempRoles] revoke raised guild={guild_id} user={user_id} role={role_id}: {e}")
            outcome = "error"

        if outcome == "ok" and grant.get("notify_on_expiry"):
            payload = {
                "title": "Temporary role expired",
                "description": f"Your temporary role <@&{role_id}> has expired.",
                "guild_id": guild_id,
                "role_id": role_id,
            }
            try:
                await self.gateway.notify_user(user_id, payload)
            except Exception as e:
                print(f"[TempRoles] notify failed user={user_id} role={role_id}: {e}")
        elif outcome != "ok":
            print(f"[TempRoles] revoke outcome={outcome} guild={guild_id} user={user_id} role={role_id}; removing record")

        await self.storage.remove_temporary_role(guild_id, user_id, role_id)
        print(f"[TempRoles] expired grant guild={guild_id} user={user_id} role={role_id} outcome={outcome}")
