"""Fixed pool of worker threads draining a ``RenderQueue``."""

from __future__ import annotations

import threading

from vidcompose.render.executor import RenderExecutor
from vidcompose.render.queue import RenderQueue
from vidcompose.utils.logging import error, info


class WorkerPool:
    """N threads; each runs one job to completion before taking the next."""

    def __init__(self, n: int, queue: RenderQueue, executor: RenderExecutor, poll_interval: float = 1.0):
        if n < 1:
            raise ValueError("WorkerPool needs at least one worker")
        self.n = n
        self.queue = queue
        self.executor = executor
        self.poll_interval = poll_interval
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._busy = 0
        self._busy_lock = threading.Lock()

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    @property
    def busy(self) -> int:
        return self._busy

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._threads = [
            threading.Thread(target=self._loop, name=f"render-worker-{i}", daemon=True)
            for i in range(self.n)
        ]
        for t in self._threads:
            t.start()
        info(f"[workers] Started {self.n} render worker(s)")

    def stop(self, wait: bool = True, timeout: float | None = None) -> None:
        """Stop taking jobs. With ``wait`` the call blocks until in-flight jobs finish."""
        self._stop.set()
        self.queue.wake_all()
        if wait:
            for t in self._threads:
                t.join(timeout)
        info(f"[workers] Stopped ({'drained' if wait else 'not waiting'})")

    def _loop(self) -> None:
        while not self._stop.is_set():
            job = self.queue.take(timeout=self.poll_interval)
            if job is None:
                continue
            with self._busy_lock:
                self._busy += 1
            try:
                self.executor.execute(job)
            except Exception as e:  # logged; the thread keeps running
                error(f"[workers] {threading.current_thread().name} crashed on {job.id}: {e}")
            finally:
                with self._busy_lock:
                    self._busy -= 1

    def stats(self) -> dict[str, int]:
        return {"workers": self.n, "alive": sum(t.is_alive() for t in self._threads), "busy": self._busy}
