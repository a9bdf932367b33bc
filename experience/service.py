from __future__ import annotations

import math
import random
import time
from typing import Any, Callable

from config.defaults import XP_FLUSH_INTERVAL_SECONDS
from config.defaults import XP_MAX_PENDING_KEYS
from storage.manager import StorageManager
from storage.manager import user_experience_key
from storage.manager import utc_iso
from storage.write_queue import WriteCoalescingQueue


MESSAGE_XP_MIN = 15
MESSAGE_XP_MAX = 25
MESSAGE_XP_COOLDOWN_SECONDS = 60
ROLE_XP = 50

_FIELD_SEP = "|"


def calculate_xp_for_level(level: int) -> int:
    return math.floor(100 * (max(0, level) ** 1.5))


def calculate_level(total_xp: int | float) -> int:
    level = 1
    while calculate_xp_for_level(level) <= total_xp:
        level += 1
    return level - 1


def calculate_progress(total_xp: int | float) -> dict[str, Any]:
    current = calculate_level(total_xp)
    floor_xp = calculate_xp_for_level(current)
    next_xp = calculate_xp_for_level(current + 1)
    needed = next_xp - floor_xp
    progress = (total_xp - floor_xp) / needed * 100 if needed else 100.0
    return {
        "current_level": current,
        "total_xp": total_xp,
        "xp_in_current_level": total_xp - floor_xp,
        "xp_needed_for_next_level": needed,
        "xp_for_next_level": next_xp,
        "progress": min(100.0, max(0.0, progress)),
    }


def _normalize(doc: dict[str, Any] | None, guild_id: Any, user_id: Any) -> dict[str, Any]:
    data = dict(doc or {})
    total = data.get("total_xp")
    if not isinstance(total, (int, float)):
        # older records used "xp"
        total = data.get("xp") if isinstance(data.get("xp"), (int, float)) else 0
    data["guild_id"] = str(guild_id)
    data["user_id"] = str(user_id)
    data["total_xp"] = total
    data["level"] = calculate_level(total)
    data["messages_sent"] = int(data.get("messages_sent") or 0)
    return data


class ExperienceService:
    """Per-user XP. Increments are coalesced and written on the queue's flush."""

    def __init__(
        self,
        storage: StorageManager,
        *,
        flush_interval_seconds: float = XP_FLUSH_INTERVAL_SECONDS,
        max_pending: int = XP_MAX_PENDING_KEYS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.storage = storage
        self.clock = clock
        self.queue = WriteCoalescingQueue(
            self._flush,
            flush_interval_seconds=flush_interval_seconds,
            max_pending=max_pending,
            label="XP",
        )
        self._last_earned: dict[str, float] = {}

    async def get_user_data(self, guild_id: Any, user_id: Any) -> dict[str, Any]:
        doc = await self.storage.get_user_experience(guild_id, user_id)
        return _normalize(doc, guild_id, user_id)

    def add_xp(self, guild_id: Any, user_id: Any, xp: int, *, messages: int = 0) -> None:
        key = user_experience_key(guild_id, user_id)
        self.queue.add(f"{key}{_FIELD_SEP}total_xp", xp)
        if messages:
            self.queue.add(f"{key}{_FIELD_SEP}messages_sent", messages)

    def award_message_xp(self, guild_id: Any, user_id: Any) -> int | None:
        key = user_experience_key(guild_id, user_id)
        now = self.clock()
        last = self._last_earned.get(key)
        if last is not None and now - last < MESSAGE_XP_COOLDOWN_SECONDS:
            return None
        self._last_earned[key] = now
        xp = random.randint(MESSAGE_XP_MIN, MESSAGE_XP_MAX)
        self.add_xp(guild_id, user_id, xp, messages=1)
        return xp

    def award_role_xp(self, guild_id: Any, user_id: Any) -> int:
        self.add_xp(guild_id, user_id, ROLE_XP)
        return ROLE_XP

    async def _flush(self, batch: dict[str, float]) -> None:
        per_user: dict[str, dict[str, float]] = {}
        for queued_key, delta in batch.items():
            user_key, _, field_name = queued_key.partition(_FIELD_SEP)
            per_user.setdefault(user_key, {})[field_name or "total_xp"] = delta

        failed: list[str] = []
        for user_key, deltas in per_user.items():
            guild_id, _, user_id = user_key.partition("_")
            current = await self.get_user_data(guild_id, user_id)
            old_level = current["level"]
            total = current["total_xp"] + deltas.get("total_xp", 0)
            updated = {
                **current,
                "total_xp": total,
                "level": calculate_level(total),
                "messages_sent": current["messages_sent"] + int(deltas.get("messages_sent", 0)),
                "last_updated": utc_iso(),
            }
            if not await self.storage.set_user_experience(guild_id, user_id, updated):
                failed.append(user_key)
                # requeue only this user's deltas; the rest of the batch is already stored
                for field_name, delta in deltas.items():
                    self.queue.add(f"{user_key}{_FIELD_SEP}{field_name}", delta)
                continue
            if updated["level"] > old_level:
                print(f"[XP] user={user_id} reached level {updated['level']} guild={guild_id}")

        if failed:
            print(f"[XP] failed to persist experience for {len(failed)} user(s); retrying next flush")

    async def flush(self) -> int:
        return await self.queue.flush()

    async def leaderboard(self, guild_id: Any, limit: int = 10) -> list[dict[str, Any]]:
        docs = await self.storage.get_user_experience_leaderboard(guild_id, limit)
        return [_normalize(d, guild_id, d.get("user_id")) for d in docs]

    async def stop(self) -> None:
        await self.queue.stop()
