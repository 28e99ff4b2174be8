#!/usr/bin/env python3
"""Tests for the TOTP scheduler, driven by a fake clock."""

import asyncio

import pytest

from bw_cli import ProcessError
from totp import TotpScheduler, epoch_of, seconds_remaining

START = 1_699_999_985  # 5 seconds into a window


class FakeTime:
    """Clock that advances one step per sleep and parks after `ticks` sleeps."""

    def __init__(self, now: float, ticks: int):
        self.now = now
        self.remaining = ticks
        self.done = asyncio.Event()

    def clock(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        if self.remaining == 0:
            self.done.set()
            await asyncio.Event().wait()
        self.remaining -= 1
        self.now += seconds


class FakeFetch:
    def __init__(self, fake_time=None, fail=False):
        self.fake_time = fake_time
        self.fail = fail
        self.calls = []

    async def __call__(self, item_id: str) -> str:
        self.calls.append((item_id, self.fake_time.now if self.fake_time else None))
        if self.fail:
            raise ProcessError("Not logged in", returncode=1)
        return f"{item_id}-{len(self.calls)}"


class TestWindowMath:
    @pytest.mark.parametrize(
        "now,expected",
        [(START, 25), (1_700_000_010, 30), (1_700_000_039, 1), (1_700_000_039.9, 1)],
    )
    def test_seconds_remaining(self, now, expected):
        assert seconds_remaining(now) == expected

    def test_epoch_changes_on_boundary(self):
        assert epoch_of(1_700_000_009) + 1 == epoch_of(1_700_000_010)


class TestScheduler:
    def test_one_fetch_per_window(self):
        async def scenario():
            fake = FakeTime(START, ticks=60)
            fetch = FakeFetch(fake)
            updates = []
            scheduler = TotpScheduler(fetch, clock=fake.clock, sleep=fake.sleep)
            scheduler.subscribe("a", lambda i, c, s: updates.append((c, s)))
            await asyncio.wait_for(fake.done.wait(), 5)
            await scheduler.close()
            return fetch.calls, updates

        calls, updates = asyncio.run(scenario())

        assert calls == [("a", START), ("a", 1_700_000_010), ("a", 1_700_000_040)]
        assert len(updates) == 61
        assert updates[0] == ("a-1", 25)
        assert updates[24] == ("a-1", 1)
        assert updates[25] == ("a-2", 30)
        assert all(1 <= countdown <= 30 for _, countdown in updates)

    def test_single_task_per_item(self):
        async def scenario():
            fake = FakeTime(START, ticks=0)
            fetch = FakeFetch(fake)
            first, second = [], []
            scheduler = TotpScheduler(fetch, clock=fake.clock, sleep=fake.sleep)
            task_one = scheduler.subscribe("a", lambda *args: first.append(args))
            task_two = scheduler.subscribe("a", lambda *args: second.append(args))
            await asyncio.wait_for(fake.done.wait(), 5)
            watched = scheduler.watched
            await scheduler.close()
            return task_one is task_two, watched, fetch.calls, first, second

        same_task, watched, calls, first, second = asyncio.run(scenario())

        assert same_task
        assert watched == {"a"}
        assert len(calls) == 1
        assert first == []
        assert second == [("a", "a-1", 25)]

    def test_independent_timers_per_item(self):
        async def scenario():
            fake = FakeTime(START, ticks=0)
            fetch = FakeFetch(fake)
            scheduler = TotpScheduler(fetch, clock=fake.clock, sleep=fake.sleep)
            scheduler.subscribe("a", lambda *args: None)
            scheduler.subscribe("b", lambda *args: None)
            await asyncio.sleep(0.05)
            watched = scheduler.watched
            await scheduler.close()
            return watched, sorted(item for item, _ in fetch.calls)

        watched, fetched = asyncio.run(scenario())

        assert watched == {"a", "b"}
        assert fetched == ["a", "b"]

    def test_retain_only_stops_hidden_items(self):
        async def scenario():
            fake = FakeTime(START, ticks=0)
            fetch = FakeFetch(fake)
            scheduler = TotpScheduler(fetch, clock=fake.clock, sleep=fake.sleep)
            scheduler.subscribe("a", lambda *args: None)
            task_b = scheduler.subscribe("b", lambda *args: None)
            await asyncio.sleep(0.05)
            scheduler.retain_only({"a"})
            await asyncio.gather(task_b, return_exceptions=True)
            result = (scheduler.watched, task_b.cancelled(), scheduler.cached("b"))
            await scheduler.close()
            return result

        watched, b_cancelled, b_code = asyncio.run(scenario())

        assert watched == {"a"}
        assert b_cancelled
        assert b_code is None

    def test_close_stops_everything(self):
        async def scenario():
            fake = FakeTime(START, ticks=0)
            scheduler = TotpScheduler(
                FakeFetch(fake), clock=fake.clock, sleep=fake.sleep
            )
            scheduler.subscribe("a", lambda *args: None)
            await scheduler.close()
            return scheduler.watched

        assert asyncio.run(scenario()) == set()

    def test_failed_fetch_waits_for_next_window(self):
        async def scenario():
            fake = FakeTime(START, ticks=3)
            fetch = FakeFetch(fake, fail=True)
            updates = []
            scheduler = TotpScheduler(fetch, clock=fake.clock, sleep=fake.sleep)
            scheduler.subscribe("a", lambda i, c, s: updates.append(c))
            await asyncio.wait_for(fake.done.wait(), 5)
            await scheduler.close()
            return fetch.calls, updates

        calls, updates = asyncio.run(scenario())

        assert len(calls) == 1
        assert updates == ["", "", "", ""]

    def test_async_listener(self):
        async def scenario():
            fake = FakeTime(START, ticks=0)
            updates = []

            async def listener(item_id, code, countdown):
                updates.append(code)

            scheduler = TotpScheduler(
                FakeFetch(fake), clock=fake.clock, sleep=fake.sleep
            )
            scheduler.subscribe("a", listener)
            await asyncio.wait_for(fake.done.wait(), 5)
            await scheduler.close()
            return updates

        assert asyncio.run(scenario()) == ["a-1"]


class TestCached:
    """cached() serves the copy path without another bw call."""

    def test_code_cached_within_window(self):
        async def scenario():
            fake = FakeTime(START, ticks=0)
            fetch = FakeFetch(fake)
            scheduler = TotpScheduler(fetch, clock=fake.clock, sleep=fake.sleep)
            scheduler.subscribe("a", lambda *args: None)
            await asyncio.wait_for(fake.done.wait(), 5)
            fake.now += 10
            code = scheduler.cached("a")
            await scheduler.close()
            return code, len(fetch.calls)

        assert asyncio.run(scenario()) == ("a-1", 1)

    def test_code_stale_in_next_window(self):
        async def scenario():
            fake = FakeTime(START, ticks=0)
            scheduler = TotpScheduler(
                FakeFetch(fake), clock=fake.clock, sleep=fake.sleep
            )
            scheduler.subscribe("a", lambda *args: None)
            await asyncio.wait_for(fake.done.wait(), 5)
            fake.now += 30
            code = scheduler.cached("a")
            await scheduler.close()
            return code

        assert asyncio.run(scenario()) is None

    def test_failed_fetch_is_not_cached(self):
        async def scenario():
            fake = FakeTime(START, ticks=0)
            scheduler = TotpScheduler(
                FakeFetch(fake, fail=True), clock=fake.clock, sleep=fake.sleep
            )
            scheduler.subscribe("a", lambda *args: None)
            await asyncio.wait_for(fake.done.wait(), 5)
            code = scheduler.cached("a")
            await scheduler.close()
            return code

        assert asyncio.run(scenario()) is None

    def test_unknown_item(self):
        assert TotpScheduler(FakeFetch(), clock=lambda: START).cached("x") is None
