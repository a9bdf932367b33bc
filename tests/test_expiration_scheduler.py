from __future__ import annotations

import asyncio
import unittest
from datetime import datetime, timedelta, timezone

from jobs.expiration import DeadlineEntry
from jobs.expiration import DeadlineIndex
from jobs.expiration import ExpirationScheduler
from jobs.expiration import compute_rearm_seconds


NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class _FakeHandler:
    entity_type = "thing"

    def __init__(self, deadlines: dict[str, datetime] | None = None, *, fail_keys=(), hold: float = 0.0):
        self.deadlines = dict(deadlines or {})
        self.fail_keys = set(fail_keys)
        self.hold = hold
        self.expired: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def load_deadlines(self):
        return [DeadlineEntry(self.entity_type, k, d) for k, d in self.deadlines.items()]

    async def expire(self, entry, now):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.hold:
                await asyncio.sleep(self.hold)
            if entry.key in self.fail_keys:
                raise RuntimeError(f"boom {entry.key}")
            self.expired.append(entry.key)
            self.deadlines.pop(entry.key, None)
        finally:
            self.in_flight -= 1


class RearmTests(unittest.TestCase):
    def test_tiers(self):
        self.assertEqual(compute_rearm_seconds(5), 10)
        self.assertEqual(compute_rearm_seconds(119), 10)
        self.assertEqual(compute_rearm_seconds(120), 30)
        self.assertEqual(compute_rearm_seconds(600), 30)
        self.assertEqual(compute_rearm_seconds(601), 120)
        self.assertEqual(compute_rearm_seconds(3600), 120)
        self.assertEqual(compute_rearm_seconds(7200), 300)

    def test_nothing_active_uses_idle(self):
        self.assertEqual(compute_rearm_seconds(None), 60)

    def test_clamped_to_bounds(self):
        self.assertEqual(compute_rearm_seconds(0, floor=20, ceiling=100), 20)
        self.assertEqual(compute_rearm_seconds(7200, floor=20, ceiling=100), 100)
        self.assertEqual(compute_rearm_seconds(None, floor=20, ceiling=100, idle=500), 100)

    def test_far_deadlines_use_configured_ceiling(self):
        self.assertEqual(compute_rearm_seconds(7200, ceiling=900), 900)
        self.assertEqual(compute_rearm_seconds(3000, ceiling=900), 120)


class DeadlineIndexTests(unittest.TestCase):
    def test_due_and_min_remaining(self):
        index = DeadlineIndex(
            [
                DeadlineEntry("t", "late", NOW + timedelta(hours=2)),
                DeadlineEntry("t", "past", NOW - timedelta(seconds=1)),
                DeadlineEntry("t", "soon", NOW + timedelta(minutes=5)),
            ]
        )
        self.assertEqual(len(index), 3)
        self.assertEqual([e.key for e in index.due(NOW)], ["past"])
        self.assertEqual(index.min_remaining(NOW), 0.0)
        self.assertEqual(index.min_remaining(NOW, exclude={("t", "past")}), 300.0)
        self.assertIsNone(DeadlineIndex().min_remaining(NOW))


class ExpirationSchedulerTests(unittest.IsolatedAsyncioTestCase):
    async def test_pass_processes_due_and_rearms_on_next_deadline(self):
        handler = _FakeHandler(
            {
                "a": NOW - timedelta(minutes=1),
                "b": NOW - timedelta(seconds=1),
                "c": NOW + timedelta(hours=1),
            }
        )
        scheduler = ExpirationScheduler([handler], batch_delay_seconds=0, clock=lambda: NOW)

        result = await scheduler.run_pass()

        self.assertEqual(result.processed, 2)
        self.assertEqual(result.failed, 0)
        self.assertEqual(result.next_delay_seconds, 120)
        self.assertEqual(sorted(handler.expired), ["a", "b"])

    async def test_rearm_matches_remaining_time(self):
        for remaining, expected in ((5, 10), (120, 30), (3600, 120), (7200, 300)):
            with self.subTest(remaining=remaining):
                handler = _FakeHandler({"x": NOW + timedelta(seconds=remaining)})
                scheduler = ExpirationScheduler([handler], clock=lambda: NOW)
                result = await scheduler.run_pass()
                self.assertEqual(result.processed, 0)
                self.assertEqual(result.next_delay_seconds, expected)

    async def test_idle_when_nothing_tracked(self):
        scheduler = ExpirationScheduler([_FakeHandler()], clock=lambda: NOW)
        result = await scheduler.run_pass()
        self.assertEqual(result.next_delay_seconds, 60)
        self.assertEqual(result.tracked, 0)

    async def test_concurrency_is_bounded(self):
        handler = _FakeHandler({f"k{i}": NOW - timedelta(seconds=i + 1) for i in range(12)}, hold=0.01)
        scheduler = ExpirationScheduler([handler], concurrency=5, batch_delay_seconds=0, clock=lambda: NOW)

        result = await scheduler.run_pass()

        self.assertEqual(result.processed, 12)
        self.assertLessEqual(handler.max_in_flight, 5)
        self.assertGreater(handler.max_in_flight, 1)

    async def test_handler_errors_are_isolated(self):
        handler = _FakeHandler(
            {"ok1": NOW - timedelta(seconds=3), "bad": NOW - timedelta(seconds=2), "ok2": NOW - timedelta(seconds=1)},
            fail_keys={"bad"},
        )
        scheduler = ExpirationScheduler([handler], batch_delay_seconds=0, clock=lambda: NOW)

        result = await scheduler.run_pass()

        self.assertEqual(result.processed, 2)
        self.assertEqual(result.failed, 1)
        self.assertEqual(sorted(handler.expired), ["ok1", "ok2"])
        # the failed entity is still due, so the next check comes at the floor
        self.assertEqual(result.next_delay_seconds, 10)

    async def test_failing_loader_does_not_block_other_handlers(self):
        class _BrokenLoader(_FakeHandler):
            entity_type = "broken"

            async def load_deadlines(self):
                raise RuntimeError("storage down")

        good = _FakeHandler({"a": NOW - timedelta(seconds=1)})
        scheduler = ExpirationScheduler([_BrokenLoader(), good], clock=lambda: NOW)
        result = await scheduler.run_pass()
        self.assertEqual(result.processed, 1)

    async def test_start_runs_catch_up_then_stop(self):
        handler = _FakeHandler({"overdue": datetime.now(timezone.utc) - timedelta(seconds=1)})
        scheduler = ExpirationScheduler([handler])

        result = await scheduler.start()
        try:
            self.assertEqual(result.processed, 1)
            self.assertEqual(handler.expired, ["overdue"])
            self.assertEqual(scheduler.status()["state"], "running")
            self.assertIsNone(await scheduler.start())
        finally:
            await scheduler.stop()
        self.assertEqual(scheduler.status()["state"], "stopped")

    async def test_poke_wakes_loop(self):
        handler = _FakeHandler()
        scheduler = ExpirationScheduler([handler], floor=10, ceiling=300, idle=300)
        await scheduler.start()
        try:
            handler.deadlines["new"] = datetime.now(timezone.utc) - timedelta(seconds=1)
            scheduler.poke()
            for _ in range(100):
                if handler.expired:
                    break
                await asyncio.sleep(0.01)
            self.assertEqual(handler.expired, ["new"])
        finally:
            await scheduler.stop()

    async def test_poke_is_ignored_when_stopped(self):
        scheduler = ExpirationScheduler([_FakeHandler()])
        scheduler.poke()
        self.assertFalse(scheduler._wake.is_set())

    async def test_status_reports_last_pass(self):
        handler = _FakeHandler({"a": NOW - timedelta(seconds=1), "b": NOW + timedelta(minutes=30)})
        scheduler = ExpirationScheduler([handler], clock=lambda: NOW, name="test")
        await scheduler.run_pass()

        status = scheduler.status()
        self.assertEqual(status["name"], "test")
        self.assertEqual(status["handlers"], ["thing"])
        self.assertEqual(status["last_processed"], 1)
        self.assertEqual(status["tracked"], 1)
        self.assertEqual(status["next_delay_seconds"], 120)
        self.assertEqual(status["last_pass_at"], NOW.isoformat())


if __name__ == "__main__":
    unittest.main()
