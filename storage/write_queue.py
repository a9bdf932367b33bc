from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

from config.defaults import XP_FLUSH_INTERVAL_SECONDS
from config.defaults import XP_MAX_PENDING_KEYS


FlushFunc = Callable[[dict[str, float]], Awaitable[None]]


class WriteCoalescingQueue:
    """Accumulates per-key numeric deltas and flushes them in batches.

    ``add`` only enqueues; a single worker task folds queued deltas into the
    pending map and hands the map to ``flush_func`` every
    ``flush_interval_seconds`` or as soon as ``max_pending`` distinct keys
    are waiting. A failed flush puts its deltas back so they are retried on
    the next window.
    """

    def __init__(
        self,
        flush_func: FlushFunc,
        *,
        flush_interval_seconds: float = XP_FLUSH_INTERVAL_SECONDS,
        max_pending: int = XP_MAX_PENDING_KEYS,
        label: str = "XP",
    ) -> None:
        self.flush_func = flush_func
        self.flush_interval_seconds = max(0.01, float(flush_interval_seconds))
        self.max_pending = max(1, int(max_pending))
        self.label = label
        self._queue: asyncio.Queue[tuple[str, float]] = asyncio.Queue()
        self._pending: dict[str, float] = {}
        self._flush_lock = asyncio.Lock()
        self._task: asyncio.Task | None = None
        self._closing = False
        self.flush_count = 0

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def pending_keys(self) -> int:
        return len(self._pending) + self._queue.qsize()

    def start(self) -> None:
        if self.active:
            return
        self._task = asyncio.create_task(self._worker())

    def add(self, key: str, delta: float) -> None:
        self._queue.put_nowait((str(key), delta))
        if not self.active and not self._closing:
            self.start()

    def _drain_queue(self) -> None:
        while True:
            try:
                key, delta = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            self._pending[key] = self._pending.get(key, 0) + delta

    async def flush(self) -> int:
        async with self._flush_lock:
            self._drain_queue()
            if not self._pending:
                return 0
            batch = self._pending
            self._pending = {}
            try:
                await self.flush_func(batch)
            except Exception as e:
                print(f"[{self.label}] flush failed keys={len(batch)}: {e}")
                for key, delta in batch.items():
                    self._pending[key] = self._pending.get(key, 0) + delta
                return 0
            self.flush_count += 1
            return len(batch)

    async def _worker(self) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.flush_interval_seconds
        while True:
            timeout = max(0.0, deadline - loop.time())
            try:
                key, delta = await asyncio.wait_for(self._queue.get(), timeout=timeout)
                self._pending[key] = self._pending.get(key, 0) + delta
            except asyncio.TimeoutError:
                pass

            if len(self._pending) >= self.max_pending or loop.time() >= deadline:
                try:
                    await self.flush()
                except Exception as e:
                    print(f"[{self.label}] worker error: {e}")
                deadline = loop.time() + self.flush_interval_seconds

    async def stop(self) -> None:
        self._closing = True
        task = self._task
        self._task = None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self.flush()
