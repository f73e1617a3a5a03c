"""Process-wide render services and the SSE event bus — thread-safe."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any

from vidcompose.render.assets import AssetCache
from vidcompose.render.executor import RenderExecutor
from vidcompose.render.jobs import Job
from vidcompose.render.queue import RenderQueue
from vidcompose.render.webhooks import WebhookNotifier
from vidcompose.render.worker_pool import WorkerPool
from vidcompose.utils.config import AppConfig, load_config
from vidcompose.utils.logging import debug, info

_config: AppConfig | None = None
_queue: RenderQueue | None = None
_executor: RenderExecutor | None = None
_pool: WorkerPool | None = None

# SSE event bus, safe to feed from worker threads
_sse_subscribers: list[asyncio.Queue] = []
_loop: asyncio.AbstractEventLoop | None = None  # captured on first SSE subscribe


def init_services(
    config: AppConfig | None = None,
    start_workers: bool = True,
    **executor_kwargs: Any,
) -> RenderQueue:
    """Build queue, executor and worker pool. Extra kwargs go to ``RenderExecutor``."""
    global _config, _queue, _executor, _pool
    shutdown_services(wait=False)
    _config = config or load_config()
    notifier = executor_kwargs.pop("notifier", None) or WebhookNotifier.from_config(_config.webhook)
    _queue = RenderQueue(default_attempts=_config.worker.max_attempts, notifier=notifier)
    _queue.subscribe(_on_job_event)
    _executor = RenderExecutor(_config, notifier=notifier, queue=_queue, **executor_kwargs)
    _pool = WorkerPool(_config.worker.concurrency, _queue, _executor, _config.worker.poll_interval)
    if start_workers:
        _pool.start()
    info(f"[tasks] Render services ready ({_config.worker.concurrency} worker(s))")
    return _queue


def shutdown_services(wait: bool = True) -> None:
    global _queue, _executor, _pool
    if _pool is not None:
        _pool.stop(wait=wait)
    if _queue is not None:
        _queue.unsubscribe(_on_job_event)
    if _executor is not None:
        _executor.cache.close()
    _queue = _executor = _pool = None


def get_config() -> AppConfig:
    if _config is None:
        init_services()
    return _config


def get_queue() -> RenderQueue:
    if _queue is None:
        init_services()
    return _queue


def get_executor() -> RenderExecutor:
    if _executor is None:
        init_services()
    return _executor


def get_pool() -> WorkerPool:
    if _pool is None:
        init_services()
    return _pool


def get_cache() -> AssetCache:
    return get_executor().cache


# ── SSE (thread-safe) ────────────────────────────────────────────────────────

def subscribe_sse() -> asyncio.Queue:
    global _loop
    _loop = asyncio.get_running_loop()
    q: asyncio.Queue = asyncio.Queue(maxsize=100)
    _sse_subscribers.append(q)
    return q


def unsubscribe_sse(q: asyncio.Queue) -> None:
    if q in _sse_subscribers:
        _sse_subscribers.remove(q)


def _emit_sse(event: dict) -> None:
    """Thread-safe SSE emission — safe to call from worker threads."""
    event["timestamp"] = datetime.now(timezone.utc).isoformat()
    if _loop is None or not _sse_subscribers:
        return
    for q in list(_sse_subscribers):
        try:
            _loop.call_soon_threadsafe(q.put_nowait, event)
        except RuntimeError:
            debug("[tasks] SSE loop closed, event dropped")


def _on_job_event(job: Job, event: str) -> None:
    payload: dict[str, Any] = {
        "type": f"job_{event}",
        "job_id": job.id,
        "state": job.state.value,
        "progress": round(job.progress, 1),
        "stage": job.stage,
    }
    if job.error is not None:
        payload["error"] = job.error.to_dict()
    if job.result is not None:
        payload["url"] = job.result.get("url")
    _emit_sse(payload)
