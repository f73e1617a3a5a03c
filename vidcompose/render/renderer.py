"""ffmpeg subprocess runner with streamed progress, cancellation and timeout."""

from __future__ import annotations

import re
import subprocess
import threading
import time
from pathlib import Path
from typing import Callable

from vidcompose.errors import JobCancelledError, RenderError, RenderTimeoutError
from vidcompose.utils.logging import debug, error, info, render_log
from vidcompose.utils.media_executor import release_media_popen, run_media_popen

_TIME_RE = re.compile(r"time=\s*(-?)(\d+):(\d+):(\d+(?:\.\d+)?)")

_BANNER_MARKERS = (
    "--enable-", "--disable-", "configuration:", "built with",
    "ffmpeg version", "Copyright",
)


def parse_ffmpeg_time(line: str) -> float | None:
    """Extract elapsed seconds from an ffmpeg stderr line (time=HH:MM:SS.cs)."""
    m = _TIME_RE.search(line)
    if not m:
        return None
    sign, h, mi, s = m.group(1), int(m.group(2)), int(m.group(3)), float(m.group(4))
    t = h * 3600 + mi * 60 + s
    return -t if sign == "-" else t


def extract_ffmpeg_error(stderr_text: str, max_lines: int = 15) -> str:
    """Last meaningful ffmpeg stderr lines, banner and build configuration stripped."""
    useful: list[str] = []
    skip_banner = True
    for line in stderr_text.strip().split("\n"):
        if skip_banner:
            if any(x in line for x in _BANNER_MARKERS):
                continue
            if line.strip().startswith("lib") and "/" in line:
                continue
            skip_banner = False
        useful.append(line)
    return "\n".join(useful[-max_lines:]) if useful else stderr_text[-500:]


class FFmpegRenderer:
    """Runs one ffmpeg command through the media executor.

    ``render`` blocks until ffmpeg exits. A watchdog thread hard-kills the
    process when ``cancel`` is set or ``timeout`` seconds elapse.
    """

    def __init__(self, timeout: float = 3600, poll_interval: float = 0.2):
        self.timeout = timeout
        self.poll_interval = poll_interval

    def _watch(self, proc: subprocess.Popen, cancel: threading.Event | None,
               deadline: float, outcome: dict[str, str]) -> None:
        while proc.poll() is None:
            if cancel is not None and cancel.is_set():
                outcome["killed"] = "cancelled"
            elif time.monotonic() >= deadline:
                outcome["killed"] = "timeout"
            if "killed" in outcome:
                debug(f"[renderer] killing pid={proc.pid} ({outcome['killed']})")
                proc.kill()
                return
            time.sleep(self.poll_interval)

    def render(
        self,
        cmd: list[str],
        duration: float,
        progress_cb: Callable[[float], None] | None = None,
        cancel: threading.Event | None = None,
        output_path: Path | None = None,
        description: str = "render",
    ) -> None:
        """Run ``cmd``; ``progress_cb`` receives a monotonic fraction in [0, 1]."""
        if cancel is not None and cancel.is_set():
            raise JobCancelledError("Render cancelled before start")

        t0 = time.monotonic()
        try:
            proc, proc_id = run_media_popen(
                cmd, description=description,
                stderr=subprocess.PIPE, stdout=subprocess.DEVNULL,
                text=True, bufsize=1,
            )
        except OSError as e:
            raise RenderError(f"Could not start ffmpeg: {e}") from e

        outcome: dict[str, str] = {}
        watchdog = threading.Thread(
            target=self._watch, args=(proc, cancel, t0 + self.timeout, outcome),
            name=f"ffmpeg-watch-{proc_id}", daemon=True,
        )
        watchdog.start()

        last = 0.0
        stderr_lines: list[str] = []
        try:
            for line in proc.stderr:
                stderr_lines.append(line)
                if not progress_cb or duration <= 0:
                    continue
                elapsed = parse_ffmpeg_time(line)
                if elapsed is not None and elapsed >= 0:
                    frac = min(elapsed / duration, 1.0)
                    if frac > last:
                        last = frac
                        progress_cb(frac)
            proc.wait()
        finally:
            watchdog.join(timeout=1)
            release_media_popen(
                proc_id, returncode=proc.returncode if proc.returncode is not None else -1,
                error_msg="".join(stderr_lines[-5:]) if proc.returncode else "",
            )

        killed = outcome.get("killed")
        if killed == "cancelled":
            render_log(f"Render CANCELLED: {description}", level="warning")
            raise JobCancelledError("Render cancelled")
        if killed == "timeout":
            error(f"[renderer] Render timed out after {self.timeout:.0f}s")
            render_log(f"Render TIMED OUT: {description}", level="error")
            raise RenderTimeoutError(f"Render exceeded {self.timeout:.0f}s timeout")

        if proc.returncode != 0:
            diagnostic = extract_ffmpeg_error("".join(stderr_lines))
            error(f"[renderer] Render failed:\n{diagnostic}")
            render_log(f"Render FAILED (exit={proc.returncode}): {diagnostic}", level="error")
            raise RenderError(diagnostic or f"ffmpeg exited with {proc.returncode}",
                              returncode=proc.returncode, stderr=diagnostic)

        if output_path is not None and not output_path.exists():
            render_log("Output file not created", level="error")
            raise RenderError("Output file not created", returncode=0)

        elapsed = time.monotonic() - t0
        if output_path is not None:
            mb = output_path.stat().st_size / (1024 * 1024)
            info(f"[renderer] Rendered: {output_path.name} ({mb:.1f} MB, {elapsed:.1f}s)")
        if progress_cb and last < 1.0:
            progress_cb(1.0)
