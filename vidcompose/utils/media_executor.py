"""Process-wide limits for ffmpeg subprocesses: concurrency, CPU/IO priority, threads.

Every renderer invocation goes through ``run_media_popen`` so the number of
simultaneously running ffmpeg processes never exceeds MAX_MEDIA_JOBS, no matter
how many workers the pool runs.

ENV configuration:
    MAX_MEDIA_JOBS      — max concurrent ffmpeg processes (default 2)
    FFMPEG_THREADS      — -threads flag for ffmpeg (default 2)
    MEDIA_NICE          — nice value for subprocesses (default 10, Linux only)
    MEDIA_IONICE_CLASS  — ionice class (default 2 = best-effort, Linux only)
    MEDIA_IONICE_LEVEL  — ionice level (default 7, Linux only)
"""

from __future__ import annotations

import os
import platform
import shutil
import subprocess
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from vidcompose.utils.logging import debug, info, render_log

MAX_MEDIA_JOBS: int = int(os.environ.get("MAX_MEDIA_JOBS", "2"))
FFMPEG_THREADS: int = int(os.environ.get("FFMPEG_THREADS", "2"))
MEDIA_NICE: int = int(os.environ.get("MEDIA_NICE", "10"))
MEDIA_IONICE_CLASS: int = int(os.environ.get("MEDIA_IONICE_CLASS", "2"))
MEDIA_IONICE_LEVEL: int = int(os.environ.get("MEDIA_IONICE_LEVEL", "7"))

IS_LINUX: bool = platform.system() == "Linux"

_semaphore: threading.Semaphore = threading.Semaphore(MAX_MEDIA_JOBS)
_stats_lock = threading.Lock()


def configure_media_executor(
    ffmpeg_threads: int = 0,
    nice: int | None = None,
    max_concurrent: int | None = None,
) -> None:
    """Apply config.yaml rendering settings. Environment variables win when set."""
    global FFMPEG_THREADS, MEDIA_NICE, MAX_MEDIA_JOBS, _semaphore
    if ffmpeg_threads and "FFMPEG_THREADS" not in os.environ:
        FFMPEG_THREADS = ffmpeg_threads
    elif not ffmpeg_threads and "FFMPEG_THREADS" not in os.environ:
        FFMPEG_THREADS = max(2, (os.cpu_count() or 4) // 2)
    if nice is not None and "MEDIA_NICE" not in os.environ:
        MEDIA_NICE = nice
    if max_concurrent and "MAX_MEDIA_JOBS" not in os.environ and max_concurrent != MAX_MEDIA_JOBS:
        MAX_MEDIA_JOBS = max_concurrent
        _semaphore = threading.Semaphore(MAX_MEDIA_JOBS)
    info(f"[media-exec] threads={FFMPEG_THREADS} nice={MEDIA_NICE} max_concurrent={MAX_MEDIA_JOBS}")


# ── Process tracking ──────────────────────────────────────────────────────────

class MediaProcStatus(str, Enum):
    queued = "queued"
    running = "running"
    done = "done"
    failed = "failed"


@dataclass
class MediaProcInfo:
    id: str
    description: str
    status: MediaProcStatus = MediaProcStatus.queued
    started_at: float = 0.0
    finished_at: float = 0.0
    pid: int = 0
    error: str = ""


_active: dict[str, MediaProcInfo] = {}
_counter: int = 0


def _next_id() -> str:
    global _counter
    with _stats_lock:
        _counter += 1
        return f"ffmpeg-{_counter}"


def get_media_queue_status() -> dict[str, Any]:
    with _stats_lock:
        procs = list(_active.values())
    return {
        "max_concurrent": MAX_MEDIA_JOBS,
        "ffmpeg_threads": FFMPEG_THREADS,
        "nice": MEDIA_NICE,
        "queued": sum(1 for p in procs if p.status == MediaProcStatus.queued),
        "running": sum(1 for p in procs if p.status == MediaProcStatus.running),
        "processes": [
            {"id": p.id, "description": p.description, "status": p.status.value, "pid": p.pid}
            for p in procs if p.status in (MediaProcStatus.queued, MediaProcStatus.running)
        ],
    }


# ── Command decoration ────────────────────────────────────────────────────────

def _build_nice_prefix() -> list[str]:
    """nice + ionice prefix on Linux, empty list elsewhere."""
    if not IS_LINUX:
        return []
    prefix: list[str] = []
    if MEDIA_NICE > 0 and shutil.which("nice"):
        prefix.extend(["nice", "-n", str(MEDIA_NICE)])
    if shutil.which("ionice"):
        prefix.extend(["ionice", "-c", str(MEDIA_IONICE_CLASS), "-n", str(MEDIA_IONICE_LEVEL)])
    return prefix


def _is_ffmpeg(cmd: list[str]) -> bool:
    return bool(cmd) and Path(cmd[0]).name in ("ffmpeg", "ffmpeg.exe")


def inject_ffmpeg_thread_flags(cmd: list[str]) -> list[str]:
    """Insert ``-threads`` (and ``-filter_complex_threads``) right after the binary.

    Commands that already carry ``-threads`` and non-ffmpeg commands are returned
    unchanged (as a copy).
    """
    cmd = list(cmd)
    if not _is_ffmpeg(cmd) or "-threads" in cmd:
        return cmd
    t = str(FFMPEG_THREADS)
    extra = ["-threads", t]
    if "-filter_complex" in cmd:
        extra += ["-filter_complex_threads", t]
    return cmd[:1] + extra + cmd[1:]


# ── Runners ───────────────────────────────────────────────────────────────────

def run_media_subprocess(
    cmd: list[str],
    *,
    description: str = "",
    timeout: int | None = None,
    heavy: bool = True,
    **subprocess_kwargs: Any,
) -> subprocess.CompletedProcess:
    """Run a short media command to completion.

    ``heavy=False`` (ffprobe and friends) skips the slot semaphore and the nice
    prefix.
    """
    cmd = inject_ffmpeg_thread_flags(cmd)
    full_cmd = (_build_nice_prefix() if heavy else []) + cmd
    desc = description or " ".join(cmd[:3])

    acquired = False
    try:
        if heavy:
            _semaphore.acquire()
            acquired = True
        started = time.monotonic()
        result = subprocess.run(full_cmd, capture_output=True, text=True, timeout=timeout, **subprocess_kwargs)
        elapsed = time.monotonic() - started
        if result.returncode == 0:
            debug(f"[media-exec] {desc} — done ({elapsed:.1f}s)")
        else:
            render_log(f"Failed: {desc} (exit={result.returncode}, {elapsed:.1f}s)", level="error")
        return result
    except subprocess.TimeoutExpired:
        render_log(f"Timeout: {desc} ({timeout}s)", level="error")
        raise
    finally:
        if acquired:
            _semaphore.release()


# ── Popen wrapper ─────────────────────────────────────────────────────────────

def run_media_popen(
    cmd: list[str],
    *,
    description: str = "",
    env: dict[str, str] | None = None,
    **popen_kwargs: Any,
) -> tuple[subprocess.Popen, str]:
    """Start an ffmpeg process once a media slot is free.

    The caller must call ``release_media_popen(proc_id, ...)`` exactly once
    after the process has exited (or failed to start).
    """
    cmd = inject_ffmpeg_thread_flags(cmd)
    full_cmd = _build_nice_prefix() + cmd
    desc = description or " ".join(cmd[:3])

    proc_id = _next_id()
    pinfo = MediaProcInfo(id=proc_id, description=desc)
    with _stats_lock:
        _active[proc_id] = pinfo

    debug(f"[media-exec] {desc} — waiting for slot (max {MAX_MEDIA_JOBS})")
    render_log(f"Queued: {desc}")
    _semaphore.acquire()

    pinfo.status = MediaProcStatus.running
    pinfo.started_at = time.monotonic()
    try:
        proc = subprocess.Popen(full_cmd, env=env, **popen_kwargs)
    except OSError as e:
        release_media_popen(proc_id, returncode=-1, error_msg=str(e))
        raise
    pinfo.pid = proc.pid
    render_log(f"Running: {desc} (pid={proc.pid})")
    render_log(" ".join(full_cmd), level="debug")
    return proc, proc_id


def release_media_popen(proc_id: str, returncode: int = 0, error_msg: str = "") -> None:
    """Free the media slot and record the outcome."""
    with _stats_lock:
        pinfo = _active.get(proc_id)
        if pinfo:
            pinfo.finished_at = time.monotonic()
            elapsed = pinfo.finished_at - pinfo.started_at
            if returncode == 0:
                pinfo.status = MediaProcStatus.done
                render_log(f"Done: {pinfo.description} ({elapsed:.1f}s)")
            else:
                pinfo.status = MediaProcStatus.failed
                pinfo.error = error_msg[:500]
                render_log(f"Failed: {pinfo.description} (exit={returncode}, {elapsed:.1f}s)", level="error")
    _semaphore.release()
    _cleanup_finished()


def _cleanup_finished(max_keep: int = 50) -> None:
    with _stats_lock:
        finished = [
            (pid, p) for pid, p in _active.items()
            if p.status in (MediaProcStatus.done, MediaProcStatus.failed)
        ]
        if len(finished) > max_keep:
            finished.sort(key=lambda x: x[1].finished_at)
            for pid, _ in finished[:-max_keep]:
                del _active[pid]
