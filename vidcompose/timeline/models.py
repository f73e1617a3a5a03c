"""Typed timeline model: Timeline → Track → Clip (tagged union by ``kind``)."""

from __future__ import annotations

import re
from dataclasses import dataclass, field, fields, is_dataclass
from enum import Enum
from typing import Any, ClassVar


class TrackType(str, Enum):
    background = "background"
    video = "video"
    audio = "audio"
    text = "text"
    overlay = "overlay"


class Easing(str, Enum):
    linear = "linear"
    ease_in = "easeIn"
    ease_out = "easeOut"
    ease_in_out = "easeInOut"
    bounce = "bounce"
    elastic = "elastic"

    @classmethod
    def parse(cls, value: Any, default: Easing | None = None) -> Easing:
        """Accept ``easeInOut``, ``ease-in-out`` and ``ease_in_out`` spellings."""
        if isinstance(value, Easing):
            return value
        if not value:
            return default or cls.ease_in_out
        key = re.sub(r"[-_\s]", "", str(value)).lower()
        for member in cls:
            if member.value.lower() == key:
                return member
        return default or cls.ease_in_out


ANIMATION_TYPES = frozenset({
    "fadeIn", "fadeOut", "slideIn", "slideOut", "scaleIn", "scaleOut",
    "zoom", "rotateIn", "rotateOut",
})

TRANSITION_TYPES = frozenset({
    "fade", "crossfade", "slide", "wipe", "dissolve", "zoom", "rotate", "push",
})

TRANSITION_DIRECTIONS = frozenset({"left", "right", "up", "down", "in", "out"})


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(p.capitalize() for p in rest)


def _dump(value: Any) -> Any:
    if is_dataclass(value) and not isinstance(value, type):
        return value.to_dict()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, list):
        return [_dump(v) for v in value]
    if isinstance(value, dict):
        return {k: _dump(v) for k, v in value.items()}
    return value


class _Serializable:
    """camelCase ``to_dict`` for all timeline dataclasses; ``None`` fields are omitted."""

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for f in fields(self):  # type: ignore[arg-type]
            val = getattr(self, f.name)
            if val is None:
                continue
            out[_camel(f.name)] = _dump(val)
        return out


# ── Value types ───────────────────────────────────────────────────────────────

@dataclass
class Resolution(_Serializable):
    width: int = 1920
    height: int = 1080


@dataclass
class Position(_Serializable):
    """Top-left offset in output pixels. ``None`` on an axis means centered."""
    x: float | None = None
    y: float | None = None


@dataclass
class Trim(_Serializable):
    start: float = 0.0
    end: float | None = None


@dataclass
class Background(_Serializable):
    color: str = "#000000"
    image: str | None = None


@dataclass
class Soundtrack(_Serializable):
    src: str = ""
    volume: float = 1.0
    fade_in: float = 0.0
    fade_out: float = 0.0
    start: float = 0.0
    duration: float | None = None

    @property
    def end(self) -> float:
        return self.start + (self.duration or 0.0)


@dataclass
class Effect(_Serializable):
    """A per-clip filter. ``strength`` is always stored on the unit scale [0, 1]."""
    type: str
    strength: float = 0.5
    color: str | None = None
    similarity: float = 0.1
    blend: float = 0.05
    params: dict[str, Any] = field(default_factory=dict)


@dataclass
class Animation(_Serializable):
    type: str
    duration: float = 1.0
    delay: float = 0.0
    easing: Easing = Easing.ease_in_out
    direction: str | None = None
    iterations: int = 1

    @property
    def end(self) -> float:
        return self.delay + self.duration


@dataclass
class Transition(_Serializable):
    type: str
    duration: float = 0.5
    direction: str | None = None
    easing: Easing = Easing.ease_in_out
    start: float | None = None
    from_clip: str | None = None
    to_clip: str | None = None
    track: str | None = None


# ── Clips (tagged union) ──────────────────────────────────────────────────────

@dataclass
class Clip(_Serializable):
    kind: ClassVar[str] = ""
    visual: ClassVar[bool] = True
    audible: ClassVar[bool] = False

    id: str = ""
    name: str = ""
    start: float = 0.0
    duration: float = 1.0
    position: Position = field(default_factory=Position)
    scale: float = 1.0
    opacity: float = 1.0
    rotation: float = 0.0
    z_index: int = 0
    effects: list[Effect] = field(default_factory=list)
    animations: list[Animation] = field(default_factory=list)
    transition: Transition | None = None
    trim: Trim | None = None
    volume: float = 1.0

    @property
    def end(self) -> float:
        return self.start + self.duration

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        return {"type": self.kind, **d}


@dataclass
class VideoClip(Clip):
    kind: ClassVar[str] = "video"
    audible: ClassVar[bool] = True
    src: str = ""
    muted: bool = False


@dataclass
class ImageClip(Clip):
    kind: ClassVar[str] = "image"
    src: str = ""


@dataclass
class AudioClip(Clip):
    kind: ClassVar[str] = "audio"
    visual: ClassVar[bool] = False
    audible: ClassVar[bool] = True
    src: str = ""


@dataclass
class TextClip(Clip):
    kind: ClassVar[str] = "text"
    text: str = "Default Text"
    font_family: str = "Arial"
    font_size: int = 48
    color: str = "#ffffff"
    background_color: str | None = None
    font_file: str | None = None


@dataclass
class HtmlClip(Clip):
    kind: ClassVar[str] = "html"
    html: str = "<div></div>"
    css: str = ""
    width: int | None = None
    height: int | None = None
    transparent: bool = True
    rendered_src: str | None = None


@dataclass
class BackgroundClip(Clip):
    kind: ClassVar[str] = "background"
    color: str = "#000000"
    src: str | None = None


@dataclass
class ShapeClip(Clip):
    kind: ClassVar[str] = "shape"
    shape: str = "rectangle"
    color: str = "#ffffff"
    width: int = 100
    height: int = 100


CLIP_TYPES: dict[str, type[Clip]] = {
    cls.kind: cls
    for cls in (VideoClip, ImageClip, AudioClip, TextClip, HtmlClip, BackgroundClip, ShapeClip)
}


def clip_source(clip: Clip) -> str | None:
    """External asset referenced by a clip, if any."""
    if isinstance(clip, HtmlClip):
        return clip.rendered_src
    return getattr(clip, "src", None) or None


def html_asset_key(clip: HtmlClip) -> str:
    """Asset-map key under which a rasterized html clip is stored."""
    return f"html:{clip.id}"


# ── Containers ────────────────────────────────────────────────────────────────

@dataclass
class Track(_Serializable):
    id: str
    name: str = ""
    type: TrackType = TrackType.video
    enabled: bool = True
    clips: list[Clip] = field(default_factory=list)
    transitions: list[Transition] = field(default_factory=list)
    index: int = 0

    @property
    def end(self) -> float:
        return max((c.end for c in self.clips), default=0.0)


@dataclass
class Timeline(_Serializable):
    duration: float = 1.0
    frame_rate: int = 30
    resolution: Resolution = field(default_factory=Resolution)
    background: Background = field(default_factory=Background)
    soundtrack: Soundtrack | None = None
    tracks: list[Track] = field(default_factory=list)
    transitions: list[Transition] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    def iter_clips(self):
        for track in self.tracks:
            for clip in track.clips:
                yield track, clip

    @property
    def clip_count(self) -> int:
        return sum(len(t.clips) for t in self.tracks)

    def find_clip(self, clip_id: str) -> Clip | None:
        for _, clip in self.iter_clips():
            if clip.id == clip_id:
                return clip
        return None
