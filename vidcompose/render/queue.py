"""In-process priority job queue — enqueue, status, cancel, blocking take."""

from __future__ import annotations

import heapq
import itertools
import threading
import time
from typing import Any, Callable

from vidcompose.render.jobs import Job, JobError, JobState, Priority
from vidcompose.render.webhooks import WebhookNotifier, dispatch_terminal
from vidcompose.utils.logging import debug, info, warn

Listener = Callable[[Job, str], None]


class RenderQueue:
    """Higher priority first, FIFO within a priority.

    Listeners are called as ``fn(job, event)`` with event ``created``,
    ``progress`` or ``terminal``; they run on the thread that changed the job.
    """

    def __init__(self, default_attempts: int = 5, notifier: WebhookNotifier | None = None):
        self.default_attempts = default_attempts
        self.notifier = notifier
        self._heap: list[tuple[int, int, str]] = []
        self._seq = itertools.count()
        self._jobs: dict[str, Job] = {}
        self._cond = threading.Condition()
        self._listeners: list[Listener] = []

    # ── listeners ──

    def subscribe(self, fn: Listener) -> None:
        self._listeners.append(fn)

    def unsubscribe(self, fn: Listener) -> None:
        if fn in self._listeners:
            self._listeners.remove(fn)

    def publish(self, job: Job, event: str = "progress") -> None:
        for fn in list(self._listeners):
            try:
                fn(job, event)
            except Exception as e:  # logged, not propagated
                warn(f"[queue] listener failed on {event} for {job.id}: {e}")

    # ── producer side ──

    def enqueue(
        self,
        payload: dict[str, Any],
        priority: int | str = Priority.NORMAL,
        attempts: int | None = None,
        backoff: float | None = None,
    ) -> str:
        job = Job(
            payload=payload,
            priority=Priority.parse(priority),
            max_attempts=attempts or self.default_attempts,
            backoff_base=backoff,
        )
        with self._cond:
            self._jobs[job.id] = job
            heapq.heappush(self._heap, (-job.priority, next(self._seq), job.id))
            self._cond.notify()
        info(f"[queue] Job {job.id} queued (priority={job.priority}, attempts={job.max_attempts})")
        self.publish(job, "created")
        return job.id

    def get(self, job_id: str) -> Job | None:
        return self._jobs.get(job_id)

    def get_status(self, job_id: str) -> dict[str, Any] | None:
        job = self._jobs.get(job_id)
        return job.to_status() if job else None

    def list_jobs(self, state: JobState | None = None) -> list[Job]:
        with self._cond:
            jobs = list(self._jobs.values())
        if state is not None:
            jobs = [j for j in jobs if j.state is state]
        return sorted(jobs, key=lambda j: j.created_at, reverse=True)

    def cancel(self, job_id: str) -> bool:
        """Cancel a queued or processing job. Terminal or unknown jobs return False."""
        with self._cond:
            job = self._jobs.get(job_id)
            if job is None or job.state.terminal:
                return False
            job.cancel_event.set()
            was_queued = job.state is JobState.queued
            if was_queued:
                job.fail(JobError("JOB_CANCELLED", "Job cancelled before it started"))
        if was_queued:
            info(f"[queue] Job {job_id} cancelled while queued")
            dispatch_terminal(job, self.notifier)
            self.publish(job, "terminal")
        else:
            info(f"[queue] Cancellation requested for running job {job_id}")
        return True

    # ── consumer side ──

    def take(self, timeout: float | None = None) -> Job | None:
        """Pop the next queued job and mark it processing; ``None`` on timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                while self._heap:
                    _, _, job_id = heapq.heappop(self._heap)
                    job = self._jobs.get(job_id)
                    if job is None or job.state is not JobState.queued:
                        continue
                    job.start()
                    debug(f"[queue] Job {job_id} taken")
                    return job
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return None
                self._cond.wait(remaining)

    def wake_all(self) -> None:
        with self._cond:
            self._cond.notify_all()

    # ── housekeeping ──

    def stats(self) -> dict[str, int]:
        counts = {s.value: 0 for s in JobState}
        with self._cond:
            for job in self._jobs.values():
                counts[job.state.value] += 1
        return counts

    def prune(self, max_age_seconds: float = 24 * 3600) -> int:
        """Forget terminal jobs finished more than ``max_age_seconds`` ago."""
        cutoff = time.time() - max_age_seconds
        with self._cond:
            stale = [jid for jid, j in self._jobs.items()
                     if j.state.terminal and (j.finished_at or 0) < cutoff]
            for jid in stale:
                del self._jobs[jid]
        return len(stale)
