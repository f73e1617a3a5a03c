"""Render job record and its state machine.

queued → processing → completed | failed. Retries happen inside ``processing``.
Terminal jobs are frozen and progress never moves backwards.
"""

from __future__ import annotations

import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any

from vidcompose.errors import InvalidJobTransition, VidcomposeError


class JobState(str, Enum):
    queued = "queued"
    processing = "processing"
    completed = "completed"
    failed = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobState.completed, JobState.failed)


class Priority(IntEnum):
    LOW = 1
    NORMAL = 5
    HIGH = 10
    URGENT = 20

    @classmethod
    def parse(cls, value: Any) -> int:
        if isinstance(value, str):
            try:
                return int(cls[value.upper()])
            except KeyError:
                pass
        try:
            return int(value)
        except (TypeError, ValueError):
            return int(cls.NORMAL)


_ALLOWED: dict[JobState, set[JobState]] = {
    JobState.queued: {JobState.processing, JobState.failed},
    JobState.processing: {JobState.completed, JobState.failed},
    JobState.completed: set(),
    JobState.failed: set(),
}


@dataclass
class JobError:
    code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_exception(cls, exc: BaseException) -> JobError:
        if isinstance(exc, VidcomposeError):
            return cls(exc.code, exc.message, dict(exc.details))
        return cls("INTERNAL_ERROR", f"{type(exc).__name__}: {exc}")

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            d["details"] = self.details
        return d


def new_job_id() -> str:
    return uuid.uuid4().hex[:12]


@dataclass
class Job:
    payload: dict[str, Any]
    id: str = field(default_factory=new_job_id)
    state: JobState = JobState.queued
    progress: float = 0.0
    stage: str = "queued"
    attempts_made: int = 0
    max_attempts: int = 5
    backoff_base: float | None = None
    priority: int = Priority.NORMAL
    result: dict[str, Any] | None = None
    error: JobError | None = None
    created_at: float = field(default_factory=time.time)
    started_at: float | None = None
    finished_at: float | None = None
    cancel_event: threading.Event = field(default_factory=threading.Event, repr=False)
    webhook_sent: bool = False

    def _transition(self, new: JobState) -> None:
        if new not in _ALLOWED[self.state]:
            raise InvalidJobTransition(f"Job {self.id}: {self.state.value} → {new.value} not allowed")
        self.state = new

    def advance(self, pct: float, stage: str | None = None) -> float:
        """Move progress forward to ``pct`` (0-100); lower values are ignored."""
        if self.state.terminal:
            raise InvalidJobTransition(f"Job {self.id} is {self.state.value}")
        self.progress = max(self.progress, min(100.0, float(pct)))
        if stage:
            self.stage = stage
        return self.progress

    def start(self) -> None:
        self._transition(JobState.processing)
        self.started_at = time.time()

    def begin_attempt(self) -> int:
        self.attempts_made += 1
        return self.attempts_made

    def complete(self, result: dict[str, Any]) -> None:
        self._transition(JobState.completed)
        self.progress = 100.0
        self.stage = "completed"
        self.result = result
        self.finished_at = time.time()

    def fail(self, error: JobError) -> None:
        self._transition(JobState.failed)
        self.stage = "failed"
        self.error = error
        self.finished_at = time.time()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def eta_seconds(self, now: float | None = None) -> float | None:
        """Remaining time extrapolated from elapsed time and progress."""
        if self.state is not JobState.processing or not self.started_at or self.progress <= 0:
            return None
        elapsed = (now or time.time()) - self.started_at
        return max(0.0, elapsed * (100.0 - self.progress) / self.progress)

    def to_status(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "state": self.state.value,
            "progress": round(self.progress, 1),
            "stage": self.stage,
            "attemptsMade": self.attempts_made,
            "maxAttempts": self.max_attempts,
            "priority": self.priority,
            "createdAt": self.created_at,
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
            "etaSeconds": self.eta_seconds(),
        }
        if self.result is not None:
            d["result"] = self.result
        if self.error is not None:
            d["error"] = self.error.to_dict()
        return d
