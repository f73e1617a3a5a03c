"""ffprobe helpers — which streams an asset actually carries."""

from __future__ import annotations

import json
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from vidcompose.utils.logging import warn
from vidcompose.utils.media_executor import run_media_subprocess


@dataclass
class MediaInfo:
    has_video: bool = False
    has_audio: bool = False
    duration: float = 0.0
    width: int = 0
    height: int = 0


def probe_json(path: Path, ffprobe_bin: str = "ffprobe") -> dict[str, Any]:
    cmd = [
        ffprobe_bin, "-v", "quiet",
        "-print_format", "json",
        "-show_format", "-show_streams",
        str(path),
    ]
    try:
        r = run_media_subprocess(cmd, description=f"probe {path.name}", timeout=30, heavy=False)
    except (OSError, subprocess.TimeoutExpired) as e:
        warn(f"[probe] ffprobe failed for {path.name}: {e}")
        return {}
    if r.returncode != 0:
        warn(f"[probe] ffprobe exit {r.returncode} for {path.name}")
        return {}
    try:
        return json.loads(r.stdout or "{}")
    except json.JSONDecodeError:
        return {}


def probe_media(path: Path, ffprobe_bin: str = "ffprobe") -> MediaInfo:
    """Stream summary for ``path``. Unprobeable files report no streams."""
    data = probe_json(path, ffprobe_bin)
    mi = MediaInfo()
    for s in data.get("streams", []):
        if s.get("codec_type") == "video":
            mi.has_video = True
            mi.width = int(s.get("width") or 0)
            mi.height = int(s.get("height") or 0)
        elif s.get("codec_type") == "audio":
            mi.has_audio = True
    try:
        mi.duration = float(data.get("format", {}).get("duration", 0.0))
    except (TypeError, ValueError):
        mi.duration = 0.0
    return mi
