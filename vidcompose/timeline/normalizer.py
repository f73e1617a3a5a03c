"""Timeline normalizer — validate raw timeline JSON, fill defaults, infer clip types.

The normalizer is all-or-nothing: every structural problem found anywhere in the
document is collected and raised together as one ``TimelineValidationError``.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any
from urllib.parse import urlparse

from vidcompose.errors import TimelineValidationError
from vidcompose.timeline.models import (
    ANIMATION_TYPES, CLIP_TYPES, TRANSITION_DIRECTIONS, TRANSITION_TYPES,
    Animation, AudioClip, Background, BackgroundClip, Clip, Easing, Effect,
    HtmlClip, ImageClip, Position, Resolution, ShapeClip, Soundtrack, TextClip,
    Timeline, Track, TrackType, Transition, Trim, VideoClip,
)
from vidcompose.timeline.placeholders import has_placeholder
from vidcompose.utils.config import TimelineConfig
from vidcompose.utils.logging import debug, info, warn

VIDEO_EXTENSIONS = {".mp4", ".mov", ".avi", ".webm", ".mkv", ".m4v"}
IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".webp", ".bmp"}
AUDIO_EXTENSIONS = {".mp3", ".wav", ".aac", ".ogg", ".m4a", ".flac"}

NAMED_COLORS: dict[str, str] = {
    "white": "#ffffff",
    "black": "#000000",
    "red": "#ff0000",
    "green": "#00ff00",
    "blue": "#0000ff",
    "yellow": "#ffff00",
    "cyan": "#00ffff",
    "magenta": "#ff00ff",
    "gray": "#808080",
    "grey": "#808080",
    "transparent": "#00000000",
}

_HEX6 = re.compile(r"^[0-9a-fA-F]{6}([0-9a-fA-F]{2})?$")
_HEX3 = re.compile(r"^[0-9a-fA-F]{3}$")

# track type -> clip kind used when nothing else identifies the clip
_TRACK_DEFAULT_KIND = {
    TrackType.video: "video",
    TrackType.audio: "audio",
    TrackType.text: "text",
    TrackType.background: "background",
    TrackType.overlay: "image",
}


@dataclass
class NormalizeResult:
    timeline: Timeline
    warnings: list[str] = field(default_factory=list)
    clips_removed: int = 0


# ── Scalar helpers ────────────────────────────────────────────────────────────

def normalize_color(value: Any, fallback: str = "#ffffff") -> str:
    """Return ``#rrggbb`` (``#00000000`` for transparent). Placeholders pass through."""
    if not isinstance(value, str) or not value.strip():
        return fallback
    v = value.strip()
    if has_placeholder(v):
        return v
    lower = v.lower()
    if lower in NAMED_COLORS:
        return NAMED_COLORS[lower]
    if lower.startswith("0x"):
        lower = lower[2:]
    if lower.startswith("#"):
        lower = lower[1:]
    if _HEX6.match(lower):
        return f"#{lower}"
    if _HEX3.match(lower):
        return "#" + "".join(ch * 2 for ch in lower)
    return fallback


def _clamp(v: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, v))


def _is_number(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return math.isfinite(value)
    if isinstance(value, str):
        try:
            return math.isfinite(float(value))
        except ValueError:
            return False
    return False


class _Collector:
    """Accumulates validation errors with a JSON-path style location."""

    def __init__(self) -> None:
        self.errors: list[str] = []
        self.warnings: list[str] = []

    def add(self, path: str, msg: str) -> None:
        self.errors.append(f"{path}: {msg}")

    def number(self, raw: dict, keys: tuple[str, ...], default: float, path: str) -> float:
        for key in keys:
            if key in raw and raw[key] is not None:
                val = raw[key]
                if not _is_number(val):
                    self.add(f"{path}.{key}", f"must be a number, got {val!r}")
                    return default
                return float(val)
        return default


def infer_clip_type(raw: dict, track_type: TrackType = TrackType.video) -> str:
    """Guess the clip kind from the fields present when ``type`` is absent."""
    if raw.get("text") is not None:
        return "text"
    if raw.get("html") is not None:
        return "html"
    src = raw.get("src")
    if raw.get("color") is not None and not src:
        return "background"
    if isinstance(src, str) and src:
        suffix = PurePosixPath(urlparse(src).path).suffix.lower()
        if suffix in VIDEO_EXTENSIONS:
            return "video"
        if suffix in IMAGE_EXTENSIONS:
            return "image"
        if suffix in AUDIO_EXTENSIONS:
            return "audio"
    return _TRACK_DEFAULT_KIND.get(track_type, "video")


# ── Nested value parsers ──────────────────────────────────────────────────────

def _parse_effect(raw: Any, path: str, col: _Collector) -> Effect | None:
    if isinstance(raw, str):
        raw = {"type": raw}
    if not isinstance(raw, dict):
        col.add(path, "effect must be an object")
        return None
    etype = raw.get("type") or raw.get("name")
    if not isinstance(etype, str) or not etype:
        col.add(path, "effect requires a type")
        return None

    # strength is unit-scale [0,1]; intensity is percent-scale [0,100]
    scale = str(raw.get("scale", "")).lower()
    percent = False
    value: Any = None
    if raw.get("intensity") is not None:
        value, percent = raw["intensity"], True
    elif raw.get("strength") is not None:
        value = raw["strength"]
    elif raw.get("value") is not None:
        value = raw["value"]
    if scale == "percent":
        percent = True
    elif scale == "unit":
        percent = False
    strength = 0.5
    if value is not None:
        if not _is_number(value):
            col.add(f"{path}.strength", f"must be a number, got {value!r}")
        else:
            strength = float(value) / (100.0 if percent else 1.0)
    strength = _clamp(strength, 0.0, 1.0)

    similarity = col.number(raw, ("similarity",), -1.0, path)
    if similarity < 0:
        similarity = col.number(raw, ("threshold",), 10.0, path) / 100.0
    blend = col.number(raw, ("blend",), -1.0, path)
    if blend < 0:
        blend = col.number(raw, ("smoothing",), 5.0, path) / 100.0

    known = {"type", "name", "scale", "intensity", "strength", "value", "color",
             "similarity", "threshold", "blend", "smoothing", "params"}
    params = dict(raw["params"]) if isinstance(raw.get("params"), dict) else {}
    params.update({k: v for k, v in raw.items() if k not in known})
    color = raw.get("color")
    return Effect(
        type=etype,
        strength=strength,
        color=normalize_color(color, "#00ff00") if color else None,
        similarity=_clamp(similarity, 0.0, 1.0),
        blend=_clamp(blend, 0.0, 1.0),
        params=params,
    )


def _parse_animation(raw: Any, path: str, col: _Collector) -> Animation | None:
    if isinstance(raw, str):
        raw = {"type": raw}
    if not isinstance(raw, dict):
        col.add(path, "animation must be an object")
        return None
    atype = raw.get("type") or "fadeIn"
    if atype not in ANIMATION_TYPES:
        col.add(f"{path}.type", f"unknown animation type {atype!r}")
        return None
    iterations = raw.get("iterations", 1)
    return Animation(
        type=atype,
        duration=max(0.1, col.number(raw, ("duration",), 1.0, path)),
        delay=max(0.0, col.number(raw, ("delay",), 0.0, path)),
        easing=Easing.parse(raw.get("easing")),
        direction=raw.get("direction"),
        iterations=int(iterations) if _is_number(iterations) else 1,
    )


def _parse_transition(raw: Any, path: str, col: _Collector) -> Transition | None:
    if isinstance(raw, str):
        raw = {"type": raw}
    if not isinstance(raw, dict):
        col.add(path, "transition must be an object")
        return None
    ttype = raw.get("type")
    if ttype not in TRANSITION_TYPES:
        col.add(f"{path}.type", f"unknown transition type {ttype!r}")
        return None
    direction = raw.get("direction")
    if direction is not None and direction not in TRANSITION_DIRECTIONS:
        col.warnings.append(f"{path}.direction: unknown direction {direction!r} ignored")
        direction = None
    start = raw.get("start")
    return Transition(
        type=ttype,
        duration=col.number(raw, ("duration",), 0.5, path),
        direction=direction,
        easing=Easing.parse(raw.get("easing")),
        start=float(start) if _is_number(start) else None,
        from_clip=raw.get("fromClip") or raw.get("from"),
        to_clip=raw.get("toClip") or raw.get("to"),
        track=raw.get("track") or raw.get("trackId"),
    )


def _parse_position(raw: dict) -> Position:
    pos = raw.get("position")
    if isinstance(pos, dict):
        x, y = pos.get("x"), pos.get("y")
    else:
        x, y = raw.get("x"), raw.get("y")
    return Position(
        x=float(x) if _is_number(x) else None,
        y=float(y) if _is_number(y) else None,
    )


def _parse_trim(raw: Any, path: str, col: _Collector) -> Trim | None:
    if raw is None:
        return None
    if _is_number(raw):
        return Trim(start=max(0.0, float(raw)))
    if not isinstance(raw, dict):
        col.add(path, "trim must be an object or a number")
        return None
    start = max(0.0, col.number(raw, ("start",), 0.0, path))
    end = raw.get("end")
    end_val = float(end) if _is_number(end) else None
    if end_val is not None and end_val <= start:
        col.add(path, f"trim end ({end_val}) must be after trim start ({start})")
        return None
    return Trim(start=start, end=end_val)


def _parse_list(raw: dict, keys: tuple[str, ...]) -> list:
    for key in keys:
        val = raw.get(key)
        if val is None:
            continue
        return val if isinstance(val, list) else [val]
    return []


# ── Clip / track builders ─────────────────────────────────────────────────────

def _build_clip(raw: dict, ti: int, ci: int, track_type: TrackType, path: str,
                col: _Collector, settings: TimelineConfig) -> Clip | None:
    """Build a typed clip, or record errors and return ``None``."""
    kind = raw.get("type") or infer_clip_type(raw, track_type)
    cls = CLIP_TYPES.get(kind)
    if cls is None:
        col.add(f"{path}.type", f"unknown clip type {kind!r}")
        return None

    start = col.number(raw, ("start",), 0.0, path)
    duration = col.number(raw, ("duration", "length"), 1.0, path)

    effects = [e for i, r in enumerate(_parse_list(raw, ("effects", "filters")))
               if (e := _parse_effect(r, f"{path}.effects[{i}]", col)) is not None]
    animations = [a for i, r in enumerate(_parse_list(raw, ("animations", "animation")))
                  if (a := _parse_animation(r, f"{path}.animations[{i}]", col)) is not None]
    transition = None
    if raw.get("transition") is not None:
        transition = _parse_transition(raw["transition"], f"{path}.transition", col)

    common: dict[str, Any] = dict(
        id=str(raw.get("id") or f"clip-{ti}-{ci}"),
        name=str(raw.get("name") or f"Clip {ci + 1}"),
        start=max(0.0, start),
        duration=max(settings.min_clip_duration, duration),
        position=_parse_position(raw),
        scale=max(0.1, col.number(raw, ("scale",), 1.0, path)),
        opacity=_clamp(col.number(raw, ("opacity",), 1.0, path), 0.0, 1.0),
        rotation=col.number(raw, ("rotation", "rotate"), 0.0, path),
        z_index=int(col.number(raw, ("zIndex", "z_index"), 0.0, path)),
        effects=effects,
        animations=animations,
        transition=transition,
        trim=_parse_trim(raw.get("trim"), f"{path}.trim", col),
        volume=_clamp(col.number(raw, ("volume",), 1.0, path), 0.0, 1.0),
    )

    src = raw.get("src")
    if src is not None and not isinstance(src, str):
        col.add(f"{path}.src", "must be a string")
        src = None

    if cls in (VideoClip, ImageClip, AudioClip):
        if not src:
            col.add(f"{path}.src", f"{kind} clip requires src")
        extra: dict[str, Any] = {"src": src or ""}
        if cls is VideoClip:
            extra["muted"] = bool(raw.get("muted", False))
        clip = cls(**common, **extra)
    elif cls is TextClip:
        text = raw.get("text")
        clip = TextClip(
            **common,
            text=str(text) if text is not None else "Default Text",
            font_family=str(raw.get("fontFamily") or raw.get("font") or "Arial"),
            font_size=max(1, int(col.number(raw, ("fontSize", "size"), 48, path))),
            color=normalize_color(raw.get("color") or raw.get("fontColor"), "#ffffff"),
            background_color=(normalize_color(raw["backgroundColor"], "#000000")
                              if raw.get("backgroundColor") else None),
            font_file=raw.get("fontFile"),
        )
    elif cls is HtmlClip:
        width = raw.get("width")
        height = raw.get("height")
        clip = HtmlClip(
            **common,
            html=str(raw.get("html") or "<div></div>"),
            css=str(raw.get("css") or ""),
            width=int(width) if _is_number(width) else None,
            height=int(height) if _is_number(height) else None,
            transparent=bool(raw.get("transparent", True)),
            rendered_src=raw.get("renderedSrc"),
        )
    elif cls is BackgroundClip:
        clip = BackgroundClip(**common, color=normalize_color(raw.get("color"), "#000000"), src=src or None)
    elif cls is ShapeClip:
        clip = ShapeClip(
            **common,
            shape=str(raw.get("shape") or "rectangle"),
            color=normalize_color(raw.get("color"), "#ffffff"),
            width=max(1, int(col.number(raw, ("width",), 100, path))),
            height=max(1, int(col.number(raw, ("height",), 100, path))),
        )
    else:  # pragma: no cover - CLIP_TYPES and this chain are kept in sync
        col.add(f"{path}.type", f"no builder for clip type {kind!r}")
        return None

    for anim in clip.animations:
        if anim.end > clip.duration + 1e-9:
            msg = (f"{path}: animation {anim.type} ends at {anim.end:.2f}s, "
                   f"after the clip's {clip.duration:.2f}s duration")
            col.warnings.append(msg)
            warn(f"[normalizer] {msg}")

    return clip


def _parse_resolution(raw: Any, settings: TimelineConfig, col: _Collector) -> Resolution:
    default = Resolution(settings.default_width, settings.default_height)
    if raw is None:
        return default
    if isinstance(raw, str):
        m = re.match(r"^\s*(\d+)\s*[xX:]\s*(\d+)\s*$", raw)
        if not m:
            col.add("resolution", f"cannot parse {raw!r}")
            return default
        w, h = int(m.group(1)), int(m.group(2))
    elif isinstance(raw, dict):
        w = int(col.number(raw, ("width",), default.width, "resolution"))
        h = int(col.number(raw, ("height",), default.height, "resolution"))
    else:
        col.add("resolution", "must be an object or 'WxH'")
        return default
    if w <= 0 or h <= 0:
        col.add("resolution", f"must be positive, got {w}x{h}")
        return default
    # yuv420p needs even dimensions
    return Resolution(width=w - w % 2, height=h - h % 2)


def _parse_soundtrack(raw: Any, col: _Collector) -> Soundtrack | None:
    if raw is None:
        return None
    if isinstance(raw, str):
        raw = {"src": raw}
    if not isinstance(raw, dict):
        col.add("soundtrack", "must be an object")
        return None
    src = raw.get("src")
    if not isinstance(src, str) or not src:
        col.add("soundtrack.src", "soundtrack requires src")
        return None
    duration = raw.get("duration")
    return Soundtrack(
        src=src,
        volume=_clamp(col.number(raw, ("volume",), 1.0, "soundtrack"), 0.0, 1.0),
        fade_in=max(0.0, col.number(raw, ("fadeIn",), 0.0, "soundtrack")),
        fade_out=max(0.0, col.number(raw, ("fadeOut",), 0.0, "soundtrack")),
        start=max(0.0, col.number(raw, ("start",), 0.0, "soundtrack")),
        duration=float(duration) if _is_number(duration) and float(duration) > 0 else None,
    )


def compute_duration(tracks: list[Track], soundtrack: Soundtrack | None = None,
                     minimum: float = 1.0) -> float:
    """Timeline length: latest clip or soundtrack end, never below ``minimum``."""
    end = max((t.end for t in tracks), default=0.0)
    if soundtrack is not None:
        end = max(end, soundtrack.end)
    return max(minimum, round(end, 6))


def _remove_redundant(clips: list[Clip]) -> tuple[list[Clip], int]:
    """Drop clips whose window lies fully inside an earlier clip of the same track."""
    kept: list[Clip] = []
    removed = 0
    for clip in clips:
        if any(clip.start >= k.start and clip.end <= k.end for k in kept):
            removed += 1
            debug(f"[normalizer] redundant clip {clip.id} ({clip.start:.2f}-{clip.end:.2f}s) removed")
            continue
        kept.append(clip)
    return kept, removed


# ── Entry point ───────────────────────────────────────────────────────────────

def normalize_timeline(raw: Any, settings: TimelineConfig | None = None,
                       optimize: bool = True) -> NormalizeResult:
    """Validate ``raw`` and return a fully typed, sorted, defaulted timeline.

    Raises:
        TimelineValidationError: with one message per violated rule.
    """
    settings = settings or TimelineConfig()
    col = _Collector()

    if not isinstance(raw, dict):
        raise TimelineValidationError(["timeline: must be an object"])

    raw_tracks = raw.get("tracks")
    if not isinstance(raw_tracks, list) or not raw_tracks:
        col.add("tracks", "must be a non-empty array")
        raw_tracks = []

    tracks: list[Track] = []
    dropped = 0
    for ti, rt in enumerate(raw_tracks):
        tpath = f"tracks[{ti}]"
        if not isinstance(rt, dict):
            col.add(tpath, "track must be an object")
            continue
        ttype_raw = rt.get("type") or "video"
        try:
            ttype = TrackType(ttype_raw)
        except ValueError:
            col.add(f"{tpath}.type", f"unknown track type {ttype_raw!r}")
            ttype = TrackType.video
        raw_clips = rt.get("clips")
        if not isinstance(raw_clips, list):
            col.add(f"{tpath}.clips", "must be an array")
            raw_clips = []

        clips: list[Clip] = []
        for ci, rc in enumerate(raw_clips):
            cpath = f"{tpath}.clips[{ci}]"
            if not isinstance(rc, dict):
                col.add(cpath, "clip must be an object")
                continue
            declared = rc.get("duration", rc.get("length"))
            if _is_number(declared) and float(declared) <= 0:
                dropped += 1
                debug(f"[normalizer] {cpath} dropped: non-positive duration {declared}")
                continue
            clip = _build_clip(rc, ti, ci, ttype, cpath, col, settings)
            if clip is not None:
                clips.append(clip)

        track_transitions = [t for i, r in enumerate(_parse_list(rt, ("transitions",)))
                             if (t := _parse_transition(r, f"{tpath}.transitions[{i}]", col)) is not None]
        clips.sort(key=lambda c: (c.start, c.z_index))
        tracks.append(Track(
            id=str(rt.get("id") or f"track-{ti}"),
            name=str(rt.get("name") or f"Track {ti + 1}"),
            type=ttype,
            enabled=bool(rt.get("enabled", True)),
            clips=clips,
            transitions=track_transitions,
            index=ti,
        ))

    soundtrack = _parse_soundtrack(raw.get("soundtrack"), col)
    timeline_transitions = [t for i, r in enumerate(_parse_list(raw, ("transitions",)))
                            if (t := _parse_transition(r, f"transitions[{i}]", col)) is not None]
    resolution = _parse_resolution(raw.get("resolution"), settings, col)

    bg_raw = raw.get("background")
    if isinstance(bg_raw, str):
        bg_raw = {"color": bg_raw}
    elif not isinstance(bg_raw, dict):
        bg_raw = {}
    background = Background(
        color=normalize_color(bg_raw.get("color"), settings.default_background),
        image=bg_raw.get("image") or None,
    )

    fps_raw = raw.get("frameRate", raw.get("fps"))
    frame_rate = settings.default_frame_rate
    if fps_raw is not None:
        if _is_number(fps_raw):
            frame_rate = int(_clamp(float(fps_raw), 1, 120))
        else:
            col.add("frameRate", f"must be a number, got {fps_raw!r}")

    if col.errors:
        raise TimelineValidationError(col.errors)

    duration = compute_duration(tracks, soundtrack, settings.min_duration)

    removed = dropped
    if optimize:
        for track in tracks:
            before = len(track.clips)
            track.clips = [c for c in track.clips if c.start < duration]
            removed += before - len(track.clips)
            if settings.remove_redundant_clips:
                track.clips, n = _remove_redundant(track.clips)
                removed += n
        duration = compute_duration(tracks, soundtrack, settings.min_duration)

    metadata = dict(raw.get("metadata") or {})
    declared = raw.get("durationSeconds", raw.get("duration"))
    if _is_number(declared) and abs(float(declared) - duration) > 1e-6:
        col.warnings.append(f"declared duration {float(declared):.2f}s ignored; computed {duration:.2f}s")
        metadata["declaredDuration"] = float(declared)
    if optimize:
        metadata["clipsRemoved"] = removed

    timeline = Timeline(
        duration=duration,
        frame_rate=frame_rate,
        resolution=resolution,
        background=background,
        soundtrack=soundtrack,
        tracks=tracks,
        transitions=timeline_transitions,
        metadata=metadata,
    )
    if optimize:
        info(f"[normalizer] {len(tracks)} track(s), {timeline.clip_count} clip(s), "
             f"{duration:.2f}s, {removed} clip(s) removed")
    return NormalizeResult(timeline=timeline, warnings=col.warnings, clips_removed=removed)
