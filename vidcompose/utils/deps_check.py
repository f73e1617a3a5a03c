"""Dependency self-check with helpful installation hints.

Playwright is optional and only probed with importlib.util.find_spec(); the
browser itself is checked lazily at first rasterization.
"""

from __future__ import annotations

import importlib.util
import shutil
import subprocess
from dataclasses import dataclass

from vidcompose.utils.logging import error, info, warn


@dataclass
class DepStatus:
    name: str
    available: bool
    version: str = ""
    hint: str = ""


def _first_line(binary: str) -> str:
    r = subprocess.run([binary, "-version"], capture_output=True, text=True, timeout=5)
    return r.stdout.split("\n")[0] if r.stdout else "unknown"


def check_ffmpeg(binary: str = "ffmpeg") -> DepStatus:
    path = shutil.which(binary)
    if not path:
        return DepStatus(
            "ffmpeg", False,
            hint="Install: sudo apt-get install ffmpeg  (or https://ffmpeg.org/download.html)"
        )
    try:
        return DepStatus("ffmpeg", True, version=_first_line(path))
    except (OSError, subprocess.SubprocessError):
        return DepStatus("ffmpeg", False, hint="ffmpeg found but failed to run")


def check_ffprobe(binary: str = "ffprobe") -> DepStatus:
    path = shutil.which(binary)
    if not path:
        return DepStatus("ffprobe", False, hint="Usually bundled with ffmpeg")
    return DepStatus("ffprobe", True)


def check_playwright() -> DepStatus:
    if importlib.util.find_spec("playwright") is not None:
        return DepStatus("playwright", True)
    return DepStatus(
        "playwright", False,
        hint="Install: pip install 'vidcompose[html]' && playwright install chromium  (html clips)"
    )


def check_all(ffmpeg_bin: str = "ffmpeg", html: bool = True) -> list[DepStatus]:
    ffprobe_bin = ffmpeg_bin[: -len("ffmpeg")] + "ffprobe" if ffmpeg_bin.endswith("ffmpeg") else "ffprobe"
    results = [check_ffmpeg(ffmpeg_bin), check_ffprobe(ffprobe_bin)]
    if html:
        results.append(check_playwright())
    return results


def print_dep_status(deps: list[DepStatus], strict: bool = False) -> bool:
    all_ok = True
    for d in deps:
        if d.available:
            info(f"[green]✓[/green] {d.name}: {d.version or 'OK'}")
        elif strict:
            error(f"{d.name}: NOT FOUND — {d.hint}")
            all_ok = False
        else:
            warn(f"{d.name}: not found — {d.hint}")
    return all_ok
