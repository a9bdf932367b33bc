from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Protocol

from config.defaults import REARM_TIERS
from config.defaults import SCHEDULER_BATCH_DELAY_SECONDS
from config.defaults import SCHEDULER_CEILING_SECONDS
from config.defaults import SCHEDULER_CONCURRENCY
from config.defaults import SCHEDULER_FLOOR_SECONDS
from config.defaults import SCHEDULER_IDLE_SECONDS


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class DeadlineEntry:
    entity_type: str
    key: str
    deadline: datetime
    payload: dict[str, Any] = field(default_factory=dict, compare=False)

    def remaining_seconds(self, now: datetime) -> float:
        return (self.deadline - now).total_seconds()


class ExpirationHandler(Protocol):
    entity_type: str

    async def load_deadlines(self) -> list[DeadlineEntry]: ...

    async def expire(self, entry: DeadlineEntry, now: datetime) -> None: ...


class DeadlineIndex:
    """Deadlines for one pass. Rebuilt from persisted state each time."""

    def __init__(self, entries: list[DeadlineEntry] | None = None) -> None:
        self.entries = sorted(entries or [], key=lambda e: (e.deadline, e.entity_type, e.key))

    def __len__(self) -> int:
        return len(self.entries)

    def due(self, now: datetime) -> list[DeadlineEntry]:
        return [e for e in self.entries if e.deadline <= now]

    def min_remaining(self, now: datetime, *, exclude: set[tuple[str, str]] | None = None) -> float | None:
        skip = exclude or set()
        remaining = [
            max(0.0, e.remaining_seconds(now))
            for e in self.entries
            if (e.entity_type, e.key) not in skip
        ]
        return min(remaining) if remaining else None


def compute_rearm_seconds(
    min_remaining: float | None,
    *,
    floor: int = SCHEDULER_FLOOR_SECONDS,
    ceiling: int = SCHEDULER_CEILING_SECONDS,
    idle: int = SCHEDULER_IDLE_SECONDS,
) -> int:
    if min_remaining is None:
        interval = idle
    else:
        interval = ceiling
        for i, (bound, seconds) in enumerate(REARM_TIERS):
            # first tier is exclusive: exactly 2 minutes left is not "under 2 minutes"
            hit = min_remaining < bound if i == 0 else min_remaining <= bound
            if hit:
                interval = seconds
                break
    return int(max(floor, min(ceiling, interval)))


@dataclass
class PassResult:
    processed: int
    failed: int
    next_delay_seconds: int
    tracked: int = 0


class ExpirationScheduler:
    """Fires terminal transitions for every handler's overdue entities.

    One task owns the single outstanding sleep. ``poke()`` wakes it early so
    a freshly created entity re-arms the timer; ``stop()`` cancels it.
    """

    def __init__(
        self,
        handlers: list[ExpirationHandler],
        *,
        concurrency: int = SCHEDULER_CONCURRENCY,
        batch_delay_seconds: float = SCHEDULER_BATCH_DELAY_SECONDS,
        floor: int = SCHEDULER_FLOOR_SECONDS,
        ceiling: int = SCHEDULER_CEILING_SECONDS,
        idle: int = SCHEDULER_IDLE_SECONDS,
        clock: Callable[[], datetime] = utc_now,
        name: str = "expiration",
    ) -> None:
        self.handlers = list(handlers)
        self.concurrency = max(1, int(concurrency))
        self.batch_delay_seconds = max(0.0, float(batch_delay_seconds))
        self.floor = int(floor)
        self.ceiling = max(self.floor, int(ceiling))
        self.idle = int(idle)
        self.clock = clock
        self.name = name

        self.state = "stopped"
        self.next_delay_seconds = compute_rearm_seconds(None, floor=self.floor, ceiling=self.ceiling, idle=self.idle)
        self.last_pass_at: datetime | None = None
        self.last_result: PassResult | None = None
        self._task: asyncio.Task | None = None
        self._wake = asyncio.Event()
        self._pass_lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self.state == "running"

    async def _load_index(self) -> DeadlineIndex:
        entries: list[DeadlineEntry] = []
        for handler in self.handlers:
            try:
                entries.extend(await handler.load_deadlines())
            except Exception as e:
                print(f"[Scheduler] {self.name}: failed to load {handler.entity_type} deadlines: {e}")
        return DeadlineIndex(entries)

    def _handler_for(self, entity_type: str) -> ExpirationHandler | None:
        for handler in self.handlers:
            if handler.entity_type == entity_type:
                return handler
        return None

    async def _expire_one(self, entry: DeadlineEntry, now: datetime) -> None:
        handler = self._handler_for(entry.entity_type)
        if handler is None:
            raise RuntimeError(f"no handler for entity_type={entry.entity_type}")
        await handler.expire(entry, now)

    async def run_pass(self, now: datetime | None = None) -> PassResult:
        async with self._pass_lock:
            now = now or self.clock()
            index = await self._load_index()
            due = index.due(now)

            processed = 0
            failed = 0
            done: set[tuple[str, str]] = set()
            for start in range(0, len(due), self.concurrency):
                batch = due[start:start + self.concurrency]
                results = await asyncio.gather(
                    *(self._expire_one(entry, now) for entry in batch),
                    return_exceptions=True,
                )
                for entry, result in zip(batch, results):
                    if isinstance(result, BaseException):
                        failed += 1
                        print(f"[Scheduler] {self.name}: expire failed {entry.entity_type}={entry.key}: {result}")
                    else:
                        processed += 1
                        done.add((entry.entity_type, entry.key))
                if start + self.concurrency < len(due) and self.batch_delay_seconds:
                    await asyncio.sleep(self.batch_delay_seconds)

            delay = compute_rearm_seconds(
                index.min_remaining(now, exclude=done),
                floor=self.floor,
                ceiling=self.ceiling,
                idle=self.idle,
            )
            result = PassResult(
                processed=processed,
                failed=failed,
                next_delay_seconds=delay,
                tracked=len(index) - len(done),
            )
            self.next_delay_seconds = delay
            self.last_pass_at = now
            self.last_result = result
            if processed or failed:
                print(
                    f"[Scheduler] {self.name}: pass processed={processed} failed={failed} "
                    f"next_check={delay}s"
                )
            return result

    async def _loop(self) -> None:
        while True:
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.next_delay_seconds)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()
            try:
                await self.run_pass()
            except Exception as e:
                print(f"[Scheduler] {self.name}: loop error: {e}")

    async def start(self) -> PassResult | None:
        if self.running:
            return None
        self.state = "running"
        print(f"[Scheduler] {self.name}: starting; catch-up pass for overdue entities")
        try:
            result = await self.run_pass()
        except Exception as e:
            print(f"[Scheduler] {self.name}: catch-up pass failed: {e}")
            result = None
        self._wake.clear()
        self._task = asyncio.create_task(self._loop())
        return result

    def poke(self) -> None:
        if self.running:
            self._wake.set()

    async def stop(self) -> None:
        self.state = "stopped"
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        print(f"[Scheduler] {self.name}: stopped")

    def status(self) -> dict[str, Any]:
        last = self.last_result
        return {
            "name": self.name,
            "state": self.state,
            "handlers": [h.entity_type for h in self.handlers],
            "last_pass_at": self.last_pass_at.isoformat() if self.last_pass_at else None,
            "last_processed": last.processed if last else 0,
            "last_failed": last.failed if last else 0,
            "tracked": last.tracked if last else 0,
            "next_delay_seconds": self.next_delay_seconds,
        }
