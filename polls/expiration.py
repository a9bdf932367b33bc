from __future__ import annotations

from datetime import datetime

from jobs.expiration import DeadlineEntry
from polls.service import PollService
from polls.service import poll_deadline
from polls.service import poll_is_open
from storage.manager import StorageManager


class PollExpirationHandler:
    entity_type = "poll"

    def __init__(self, storage: StorageManager, gateway, *, polls: PollService | None = None) -> None:
        self.storage = storage
        self.gateway = gateway
        self.polls = polls or PollService(storage)

    async def load_deadlines(self) -> list[DeadlineEntry]:
        entries: list[DeadlineEntry] = []
        for poll_id, poll in (await self.storage.get_all_polls()).items():
            if not isinstance(poll, dict) or not poll_is_open(poll):
                continue
            deadline = poll_deadline(poll)
            if deadline is None:
                print(f"[Polls] skipping poll={poll_id}: no usable created_at/duration_hours")
                continue
            entries.append(DeadlineEntry(self.entity_type, poll_id, deadline))
        return entries

    async def expire(self, entry: DeadlineEntry, now: datetime) -> None:
        # re-read: a manual end may have landed since the index was built
        latest = await self.storage.get_poll(entry.key)
        if latest is None or not poll_is_open(latest):
            return

        ended = await self.polls.end_poll(entry.key, now=now)
        if ended is None:
            return
        try:
            await self.gateway.publish_poll_result(ended.get("channel_id"), ended)
        except Exception as e:
            print(f"[Polls] failed to publish result poll={entry.key}: {e}")
