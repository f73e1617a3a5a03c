"""Tests for the worker pool draining the render queue."""

from __future__ import annotations

import threading
import time

import pytest


def _wait_until(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


class TestWorkerPool:

    def test_rejects_zero_workers(self, make_executor):
        from vidcompose.render.worker_pool import WorkerPool
        executor, queue, _ = make_executor()
        with pytest.raises(ValueError):
            WorkerPool(0, queue, executor)

    def test_drains_queue(self, make_executor, local_timeline):
        from vidcompose.render.worker_pool import WorkerPool
        executor, queue, _ = make_executor()
        ids = [queue.enqueue({"timeline": local_timeline}) for _ in range(3)]
        pool = WorkerPool(2, queue, executor, poll_interval=0.05)
        pool.start()
        try:
            assert _wait_until(lambda: queue.stats()["completed"] == 3)
        finally:
            pool.stop(wait=True, timeout=5)
        assert all(queue.get(i).state.value == "completed" for i in ids)
        assert not pool.running

    def test_concurrency_bounded(self, make_executor, local_timeline, fake_renderer):
        from vidcompose.render.worker_pool import WorkerPool
        lock = threading.Lock()
        active = [0]
        peak = [0]

        def slow(cancel):
            with lock:
                active[0] += 1
                peak[0] = max(peak[0], active[0])
            time.sleep(0.05)
            with lock:
                active[0] -= 1

        fake_renderer.on_render = slow
        executor, queue, _ = make_executor(renderer=fake_renderer)
        for _ in range(6):
            queue.enqueue({"timeline": local_timeline})
        pool = WorkerPool(2, queue, executor, poll_interval=0.05)
        pool.start()
        try:
            assert _wait_until(lambda: queue.stats()["completed"] == 6)
        finally:
            pool.stop(wait=True, timeout=5)
        assert peak[0] <= 2

    def test_worker_survives_executor_crash(self, make_executor, local_timeline):
        from vidcompose.render.worker_pool import WorkerPool
        executor, queue, _ = make_executor()
        real_execute = executor.execute
        calls = []

        def flaky(job):
            calls.append(job.id)
            if len(calls) == 1:
                raise RuntimeError("executor bug")
            return real_execute(job)

        executor.execute = flaky
        queue.enqueue({"timeline": local_timeline})
        second = queue.enqueue({"timeline": local_timeline})
        pool = WorkerPool(1, queue, executor, poll_interval=0.05)
        pool.start()
        try:
            assert _wait_until(lambda: queue.get(second).state.value == "completed")
            assert pool.running
        finally:
            pool.stop(wait=True, timeout=5)

    def test_stats_and_restart(self, make_executor):
        from vidcompose.render.worker_pool import WorkerPool
        executor, queue, _ = make_executor()
        pool = WorkerPool(3, queue, executor, poll_interval=0.05)
        pool.start()
        pool.start()
        assert pool.stats() == {"workers": 3, "alive": 3, "busy": 0}
        pool.stop(wait=True, timeout=5)
        assert pool.stats()["alive"] == 0
        pool.start()
        assert pool.running
        pool.stop(wait=True, timeout=5)
