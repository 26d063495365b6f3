"""Unit tests for the keyed asyncio task scheduler."""

import asyncio

import pytest

from grouppolicy.services.scheduler import TaskScheduler


def run(coro_fn):
    return asyncio.run(coro_fn())


@pytest.mark.unit
class TestTaskScheduler:
    """Test single-flight semantics per key."""

    def test_runs_submitted_work(self):
        calls = []

        async def scenario():
            scheduler = TaskScheduler()

            async def work():
                calls.append("ran")

            scheduler.submit("add:ns/web", work)
            await scheduler.wait_idle()
            return scheduler

        scheduler = run(scenario)

        assert calls == ["ran"]
        assert scheduler.pending() == {}

    def test_submit_returns_immediately(self):
        started = []

        async def scenario():
            scheduler = TaskScheduler()
            release = asyncio.Event()

            async def work():
                started.append(True)
                await release.wait()

            scheduler.submit("add:ns/web", work)
            assert started == []
            assert list(scheduler.pending()) == ["add:ns/web"]
            release.set()
            await scheduler.wait_idle()

        run(scenario)
        assert started == [True]

    def test_same_key_supersedes_running_task(self):
        events = []

        async def scenario():
            scheduler = TaskScheduler()
            started = asyncio.Event()

            async def slow():
                events.append("slow started")
                started.set()
                await asyncio.sleep(60)
                events.append("slow finished")

            async def fast():
                events.append("fast ran")

            scheduler.submit("update:ns/web", slow)
            await started.wait()
            scheduler.submit("update:ns/web", fast)
            await scheduler.wait_idle()

        run(scenario)
        assert events == ["slow started", "fast ran"]

    def test_same_key_supersedes_pending_task(self):
        events = []

        async def scenario():
            scheduler = TaskScheduler()

            async def first():
                events.append("first")

            async def second():
                events.append("second")

            scheduler.submit("add:ns/web", first)
            scheduler.submit("add:ns/web", second)
            await scheduler.wait_idle()

        run(scenario)
        assert events == ["second"]

    def test_different_keys_run_concurrently(self):
        async def scenario():
            scheduler = TaskScheduler()
            both_running = asyncio.Barrier(2) if hasattr(asyncio, "Barrier") else None
            seen = []

            async def work(name):
                seen.append(name)
                if both_running is not None:
                    await both_running.wait()
                else:
                    while len(seen) < 2:
                        await asyncio.sleep(0)

            scheduler.submit("add:ns/web", lambda: work("add"))
            scheduler.submit("update:ns/web", lambda: work("update"))
            await asyncio.wait_for(scheduler.wait_idle(), timeout=5)
            return seen

        assert sorted(run(scenario)) == ["add", "update"]

    def test_failing_work_is_logged_not_raised(self, caplog):
        async def scenario():
            scheduler = TaskScheduler()

            async def work():
                raise RuntimeError("store unavailable")

            scheduler.submit("delete:ns/web", work)
            await scheduler.wait_idle()

        with caplog.at_level("ERROR"):
            run(scenario)

        assert any("delete:ns/web failed" in r.message for r in caplog.records)

    def test_shutdown_cancels_pending(self):
        events = []

        async def scenario():
            scheduler = TaskScheduler()

            async def work():
                await asyncio.sleep(60)
                events.append("finished")

            scheduler.submit("add:ns/web", work)
            await asyncio.sleep(0)
            await scheduler.shutdown()
            return scheduler

        scheduler = run(scenario)
        assert events == []
        assert scheduler.pending() == {}

    def test_cancel_returns_running_task(self):
        events = []

        async def scenario():
            scheduler = TaskScheduler()

            async def work():
                await asyncio.sleep(60)
                events.append("finished")

            scheduler.submit("add:ns/web", work)
            await asyncio.sleep(0)
            task = scheduler.cancel("add:ns/web")
            await asyncio.wait({task})
            return task, scheduler.cancel("add:ns/web"), scheduler.cancel("update:ns/web")

        task, again, unknown = run(scenario)

        assert task.cancelled()
        assert again is None
        assert unknown is None
        assert events == []
