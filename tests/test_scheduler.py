import asyncio

import pytest

from scheduler import PeriodicTask, Scheduler


def test_tick_counts_runs_and_keeps_result():
    calls = []

    async def work():
        calls.append(1)
        return len(calls)

    task = PeriodicTask("work", 1.0, work)
    assert asyncio.run(task.tick()) == 1
    assert asyncio.run(task.tick()) == 2
    assert task.runs == 2
    assert task.failures == 0
    assert task.last_run is not None


def test_failing_tick_is_contained_and_reported():
    errors = []

    async def broken():
        raise RuntimeError("rpc down")

    task = PeriodicTask("broken", 1.0, broken, on_error=lambda name, exc: errors.append((name, str(exc))))
    assert asyncio.run(task.tick()) is None
    assert task.failures == 1
    assert task.runs == 1
    assert errors == [("broken", "rpc down")]


def test_duplicate_names_are_rejected():
    async def noop():
        return None

    scheduler = Scheduler()
    scheduler.add("scan", 1.0, noop)
    with pytest.raises(ValueError):
        scheduler.add("scan", 2.0, noop)


def test_tick_all_runs_every_task_once():
    async def one():
        return 1

    async def fail():
        raise ValueError("bad")

    seen = []
    scheduler = Scheduler(on_error=lambda name, exc: seen.append(name))
    scheduler.add("one", 1.0, one)
    scheduler.add("fail", 1.0, fail)

    assert asyncio.run(scheduler.tick_all()) == {"one": 1, "fail": None}
    assert seen == ["fail"]
    stats = scheduler.stats()
    assert stats["one"]["runs"] == 1
    assert stats["fail"]["failures"] == 1


def test_loop_repeats_until_stopped():
    count = {"n": 0}

    async def work():
        count["n"] += 1

    async def run():
        scheduler = Scheduler()
        scheduler.add("fast", 0.01, work)
        scheduler.start()
        await asyncio.sleep(0.1)
        assert scheduler.tasks["fast"].running
        await scheduler.stop()
        assert not scheduler.tasks["fast"].running

    asyncio.run(run())
    assert count["n"] >= 2
