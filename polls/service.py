from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from storage.manager import StorageManager
from storage.manager import parse_utc
from storage.manager import utc_iso


MAX_POLL_OPTIONS = 10


class PollClosedError(RuntimeError):
    pass


class InvalidVoteError(ValueError):
    pass


def poll_deadline(poll: dict[str, Any]) -> datetime | None:
    created = parse_utc(poll.get("created_at"))
    if created is None:
        return None
    try:
        hours = float(poll.get("duration_hours") or 0)
    except (TypeError, ValueError):
        return None
    if hours <= 0:
        return None
    return created + timedelta(hours=hours)


def poll_is_open(poll: dict[str, Any]) -> bool:
    return bool(poll.get("is_active")) and poll.get("status", "active") != "ended"


def tally_votes(poll: dict[str, Any]) -> dict[str, Any]:
    options = list(poll.get("options") or [])
    counts = [0] * len(options)
    voters = 0
    for picks in (poll.get("votes") or {}).values():
        counted = False
        for idx in picks or []:
            if isinstance(idx, int) and 0 <= idx < len(counts):
                counts[idx] += 1
                counted = True
        voters += 1 if counted else 0
    total = sum(counts)
    return {
        "options": [
            {
                "option": text,
                "votes": counts[i],
                "percent": round(100.0 * counts[i] / total, 1) if total else 0.0,
            }
            for i, text in enumerate(options)
        ],
        "total_votes": total,
        "voters": voters,
    }


class PollService:
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

    async def create_poll(
        self,
        *,
        guild_id: Any,
        channel_id: Any,
        creator_id: Any,
        question: str,
        options: list[str],
        duration_hours: float,
        allow_multiple: bool = False,
        message_id: Any = None,
    ) -> dict[str, Any]:
        question = (question or "").strip()
        options = [str(o).strip() for o in (options or []) if str(o).strip()]
        if not question:
            raise ValueError("poll question is required")
        if len(options) < 2 or len(options) > MAX_POLL_OPTIONS:
            raise ValueError(f"a poll needs between 2 and {MAX_POLL_OPTIONS} options")
        try:
            hours = float(duration_hours)
        except (TypeError, ValueError):
            raise ValueError(f"invalid duration_hours: {duration_hours!r}") from None
        if hours <= 0:
            raise ValueError("duration_hours must be positive")

        poll = {
            "id": uuid.uuid4().hex,
            "guild_id": str(guild_id),
            "channel_id": str(channel_id),
            "message_id": str(message_id) if message_id is not None else None,
            "creator_id": str(creator_id),
            "question": question,
            "options": options,
            "allow_multiple": bool(allow_multiple),
            "votes": {},
            "created_at": utc_iso(self.clock()),
            "duration_hours": hours,
            "is_active": True,
            "status": "active",
        }
        if not await self.storage.create_poll(poll):
            raise RuntimeError(f"failed to store poll guild={guild_id} channel={channel_id}")
        print(f"[Polls] created poll={poll['id']} guild={guild_id} options={len(options)} hours={hours}")
        if self.on_created is not None:
            self.on_created()
        return poll

    async def attach_message(self, poll_id: str, message_id: Any) -> bool:
        return await self.storage.update_poll(poll_id, {"message_id": str(message_id)})

    @staticmethod
    def _ended_fields(now: datetime) -> dict[str, Any]:
        return {
            "is_active": False,
            "status": "ended",
            "ended_at": utc_iso(now),
        }

    async def end_poll(self, poll_id: str, *, now: datetime | None = None) -> dict[str, Any] | None:
        """Flip the poll to its terminal state. Already-ended polls are returned unchanged."""
        seen: dict[str, Any] = {}
        transitioned: list[bool] = []

        def _end(current: dict[str, Any]) -> dict[str, Any] | None:
            seen.update(current)
            if not poll_is_open(current):
                return None
            fields = self._ended_fields(now or self.clock())
            seen.update(fields)
            transitioned.append(True)
            return fields

        ok = await self.storage.update_poll(poll_id, change=_end)
        if not seen:
            return None
        if not ok:
            raise RuntimeError(f"failed to end poll={poll_id}")
        if transitioned:
            print(f"[Polls] ended poll={poll_id}")
        return seen

    async def cast_vote(self, poll_id: str, user_id: Any, option_index: int) -> dict[str, Any]:
        """Toggle ``option_index`` for ``user_id``.

        The open check and the vote merge both run against the stored poll
        under the polls lock, so an end that lands first always wins and
        concurrent voters never drop each other's votes. An active poll whose
        deadline has passed is ended on the spot and the vote is rejected.
        """
        uid = str(user_id)
        now = self.clock()
        outcome: dict[str, Any] = {}

        def _vote(current: dict[str, Any]) -> dict[str, Any]:
            if not poll_is_open(current):
                raise PollClosedError(f"poll {poll_id} has ended")
            deadline = poll_deadline(current)
            if deadline is not None and deadline <= now:
                outcome["expired"] = True
                return self._ended_fields(now)

            options = current.get("options") or []
            if not isinstance(option_index, int) or not 0 <= option_index < len(options):
                raise InvalidVoteError(f"invalid option {option_index!r} for poll {poll_id}")

            votes = {k: list(v or []) for k, v in (current.get("votes") or {}).items()}
            picks = votes.get(uid, [])
            if option_index in picks:
                picks = [i for i in picks if i != option_index]
            elif current.get("allow_multiple"):
                picks = picks + [option_index]
            else:
                picks = [option_index]

            if picks:
                votes[uid] = sorted(set(picks))
            else:
                votes.pop(uid, None)
            outcome["poll"] = {**current, "votes": votes}
            return {"votes": votes}

        ok = await self.storage.update_poll(poll_id, change=_vote)
        if not outcome:
            raise InvalidVoteError(f"unknown poll: {poll_id}")
        if not ok:
            raise RuntimeError(f"failed to record vote poll={poll_id} user={uid}")
        if outcome.get("expired"):
            print(f"[Polls] ended poll={poll_id} (vote arrived after its deadline)")
            raise PollClosedError(f"poll {poll_id} has ended")
        return outcome["poll"]

    async def delete_poll(self, poll_id: str) -> bool:
        removed = await self.storage.delete_poll(poll_id)
        if removed:
            print(f"[Polls] deleted poll={poll_id}")
        return removed

    async def tally(self, poll_id: str) -> dict[str, Any] | None:
        poll = await self.storage.get_poll(poll_id)
        if poll is None:
            return None
        return tally_votes(poll)
