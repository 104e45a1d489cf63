"""
Unit tests for the keyed work queue and the controller worker loop.
Async cases run under asyncio.run().
"""

import asyncio
import threading
import time

import pytest

from jitaccess.services.lifecycle.controller import Controller, ReconcileContext, Result
from jitaccess.services.lifecycle.workqueue import ExponentialBackoff, WorkQueue
from jitaccess.services.shared.errors import DeadlineExceeded, TransientCloudError

from conftest import seed_active_access


async def wait_for(predicate, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


class TestWorkQueue:
    def test_duplicate_adds_collapse(self):
        q = WorkQueue("test")
        q.add("a")
        q.add("a")
        q.add("b")
        assert len(q) == 2

    def test_key_readded_while_processing_waits_for_done(self):
        async def scenario():
            q = WorkQueue("test")
            q.add("a")
            key = await q.get()
            q.add("a")
            queued_during = len(q)
            q.done(key)
            return key, queued_during, len(q)

        key, queued_during, queued_after = asyncio.run(scenario())
        assert key == "a"
        assert queued_during == 0
        assert queued_after == 1

    def test_add_after_delays(self):
        async def scenario():
            q = WorkQueue("test")
            start = time.monotonic()
            q.add_after("a", 0.05)
            assert len(q) == 0
            key = await q.get()
            return key, time.monotonic() - start

        key, waited = asyncio.run(scenario())
        assert key == "a"
        assert waited >= 0.05

    def test_shut_down_releases_getters(self):
        async def scenario():
            q = WorkQueue("test")
            getter = asyncio.create_task(q.get())
            await asyncio.sleep(0.01)
            q.shut_down()
            return await asyncio.wait_for(getter, 1.0)

        assert asyncio.run(scenario()) is None

    def test_adds_after_shut_down_are_dropped(self):
        q = WorkQueue("test")
        q.shut_down()
        q.add("a")
        assert len(q) == 0

    def test_add_from_another_thread_wakes_getter(self):
        async def scenario():
            q = WorkQueue("test")
            getter = asyncio.create_task(q.get())
            await asyncio.sleep(0.01)
            threading.Thread(target=q.add, args=("a",)).start()
            return await asyncio.wait_for(getter, 1.0)

        assert asyncio.run(scenario()) == "a"


class TestBackoff:
    def test_exponential_with_cap(self):
        b = ExponentialBackoff(base=1.0, cap=4.0)
        assert [b.when("k") for _ in range(4)] == [1.0, 2.0, 4.0, 4.0]
        assert b.retries("k") == 4

    def test_forget_resets(self):
        b = ExponentialBackoff(base=1.0)
        b.when("k")
        b.when("k")
        b.forget("k")
        assert b.when("k") == 1.0

    def test_keys_are_independent(self):
        b = ExponentialBackoff(base=1.0)
        b.when("a")
        assert b.when("b") == 1.0


class TestReconcileContext:
    def test_deadline(self):
        ctx = ReconcileContext(0)
        with pytest.raises(DeadlineExceeded):
            ctx.check("mint")

    def test_cancelled(self):
        cancelled = threading.Event()
        ctx = ReconcileContext(30, cancelled)
        ctx.check("mint")
        cancelled.set()
        with pytest.raises(DeadlineExceeded):
            ctx.check("bind")


class TestController:
    def run_controller(self, reconcile, keys, until, workers=1):
        async def scenario():
            c = Controller("test", reconcile, workers=workers, timeout=5)
            c.queue.backoff = ExponentialBackoff(base=0.01)
            c.start()
            for key in keys:
                c.enqueue(key)
            await wait_for(until)
            await c.stop()
            return c

        return asyncio.run(scenario())

    def test_transient_error_is_retried(self):
        calls = []

        def reconcile(ctx, key):
            calls.append(key)
            if len(calls) == 1:
                raise TransientCloudError("throttled")
            return Result()

        c = self.run_controller(reconcile, ["k"], lambda: len(calls) >= 2)
        assert calls == ["k", "k"]
        assert c.queue.num_requeues("k") == 0

    def test_unexpected_error_is_retried(self):
        calls = []

        def reconcile(ctx, key):
            calls.append(key)
            if len(calls) == 1:
                raise RuntimeError("bug")
            return Result()

        self.run_controller(reconcile, ["k"], lambda: len(calls) >= 2)
        assert calls == ["k", "k"]

    def test_requeue_after(self):
        calls = []

        def reconcile(ctx, key):
            calls.append(time.monotonic())
            return Result(requeue_after=0.05) if len(calls) == 1 else Result()

        self.run_controller(reconcile, ["k"], lambda: len(calls) >= 2)
        assert calls[1] - calls[0] >= 0.05

    def test_one_worker_per_key(self):
        active, peak, calls = [0], [0], []
        lock = threading.Lock()

        def reconcile(ctx, key):
            with lock:
                active[0] += 1
                peak[0] = max(peak[0], active[0])
                calls.append(key)
            time.sleep(0.05)
            with lock:
                active[0] -= 1
            return Result(requeue=len(calls) < 3)

        self.run_controller(reconcile, ["k", "k", "k"], lambda: len(calls) >= 3 and active[0] == 0, workers=3)
        assert peak[0] == 1
        assert calls == ["k", "k", "k"]

    def test_stop_without_start(self):
        c = Controller("test", lambda ctx, key: Result())
        asyncio.run(c.stop())
        c.enqueue("k")
        assert len(c.queue) == 0


class TestManagerResync:
    def test_live_records_enqueued(self, plane):
        seed_active_access(plane.session_factory)
        assert plane.manager.resync() == 2
        assert len(plane.manager.requests.queue) == 1
        assert len(plane.manager.jobs.queue) == 1
