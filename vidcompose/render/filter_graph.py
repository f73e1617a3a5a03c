"""Filter graph builder — compiles a composed timeline into one ffmpeg filter_complex.

Graph structure:
  - Input 0: background color canvas (lavfi)
  - Input 1: silent stereo bed (lavfi anullsrc)
  - Input 2..N: one input per distinct asset path
  - Video chain: canvas → overlay(clip1) → overlay(clip2) → ... → [final_video]
  - Audio chain: per clip atrim/volume/afade/adelay → per-track amix → amix with silence → [final_audio]

All clip streams are shifted onto absolute timeline time with
``setpts=PTS-STARTPTS+start/TB``, so every time expression in the graph
(fade ``st``, overlay ``enable``, transition ramps) uses timeline seconds.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

from vidcompose.errors import CompilationError, GraphInvariantError
from vidcompose.render.probe import MediaInfo
from vidcompose.timeline.composer import AUDIO_SAMPLE_RATE, Composition
from vidcompose.timeline.models import (
    CLIP_TYPES,
    Animation,
    AudioClip,
    BackgroundClip,
    Clip,
    Effect,
    HtmlClip,
    ImageClip,
    ShapeClip,
    TextClip,
    Track,
    VideoClip,
    clip_source,
    html_asset_key,
)
from vidcompose.timeline.normalizer import AUDIO_EXTENSIONS, IMAGE_EXTENSIONS
from vidcompose.timeline.transitions import TransitionWindow, easing_expression
from vidcompose.utils.logging import debug, render_log

if TYPE_CHECKING:
    from vidcompose.render.command import OutputSettings

VIDEO_LABEL = "final_video"
AUDIO_LABEL = "final_audio"

_EPS = 1e-6
_STREAM_REF = re.compile(r"^(\d+):([va])$")
_MULTI_INPUT_OPS = frozenset({"overlay", "blend"})
# ops whose output keeps the pixel format of their first input
_FORMAT_KEEPING_OPS = frozenset({"setpts", "trim", "drawtext", "scale", "crop", "fade", "rotate"})

SEPIA_MATRIX = ".393:.769:.189:0:.349:.686:.168:0:.272:.534:.131"


# ── Graph primitives ──────────────────────────────────────────────────────────

def _num(v: float) -> str:
    s = f"{v:.3f}".rstrip("0").rstrip(".")
    return "0" if s in ("", "-0") else s


def _q(expr: str) -> str:
    """Single-quote an option value that contains filtergraph separators."""
    return f"'{expr}'" if any(ch in expr for ch in ",;[]") else expr


def _fmt_value(v: Any) -> str:
    if isinstance(v, bool):
        return "1" if v else "0"
    if isinstance(v, float):
        return _num(v)
    return str(v)


def _fmt_params(params: Any) -> str:
    if params is None or params == {} or params == [] or params == "":
        return ""
    if isinstance(params, str):
        return f"={params}"
    if isinstance(params, dict):
        parts = [f"{k}={_fmt_value(v)}" for k, v in params.items() if v is not None]
    else:
        parts = [_fmt_value(v) for v in params]
    return "=" + ":".join(parts) if parts else ""


@dataclass
class FilterNode:
    """One ffmpeg filter: ``[in1][in2]op=k=v:k=v[out]``."""
    inputs: list[str]
    op: str
    params: dict[str, Any] | list[Any] | str | None = None
    output: str = ""
    role: str = ""
    extra_outputs: list[str] = field(default_factory=list)

    @property
    def outputs(self) -> list[str]:
        return ([self.output] if self.output else []) + list(self.extra_outputs)

    def render(self) -> str:
        ins = "".join(f"[{label}]" for label in self.inputs)
        out = "".join(f"[{label}]" for label in self.outputs)
        return f"{ins}{self.op}{_fmt_params(self.params)}{out}"

    def __str__(self) -> str:
        return self.render()


@dataclass
class GraphInput:
    path: str
    options: list[str] = field(default_factory=list)
    kind: str = "file"

    def to_args(self) -> list[str]:
        return [*self.options, "-i", self.path]


@dataclass
class FilterGraph:
    inputs: list[GraphInput]
    nodes: list[FilterNode]
    video_label: str = VIDEO_LABEL
    audio_label: str = AUDIO_LABEL
    duration: float = 0.0
    width: int = 1920
    height: int = 1080
    fps: int = 30

    def to_filter_complex(self) -> str:
        return ";".join(n.render() for n in self.nodes)

    def input_args(self) -> list[str]:
        args: list[str] = []
        for inp in self.inputs:
            args.extend(inp.to_args())
        return args

    def nodes_with_role(self, prefix: str) -> list[FilterNode]:
        return [n for n in self.nodes if n.role.startswith(prefix)]

    def validate(self) -> None:
        """Check label wiring: every label produced once and consumed exactly once.

        The two final labels must be produced and left unconsumed (they are
        mapped to the output). Raises ``GraphInvariantError``.
        """
        produced: dict[str, int] = {}
        for i, node in enumerate(self.nodes):
            if node.op in _MULTI_INPUT_OPS and len(node.inputs) != 2:
                raise GraphInvariantError(
                    f"Node {i} ({node.op}) takes {len(node.inputs)} inputs, expected 2",
                )
            if not node.outputs:
                raise GraphInvariantError(f"Node {i} ({node.op}) has no output label")
            for label in node.outputs:
                if label in produced:
                    raise GraphInvariantError(f"Label [{label}] produced more than once")
                produced[label] = i

        consumed: dict[str, int] = {}
        for i, node in enumerate(self.nodes):
            for label in node.inputs:
                m = _STREAM_REF.match(label)
                if m:
                    if int(m.group(1)) >= len(self.inputs):
                        raise GraphInvariantError(f"Node {i} references missing input [{label}]")
                elif label not in produced:
                    raise GraphInvariantError(f"Node {i} consumes unknown label [{label}]")
                elif produced[label] >= i:
                    raise GraphInvariantError(f"Label [{label}] consumed before it is produced")
                consumed[label] = consumed.get(label, 0) + 1

        for label, count in consumed.items():
            if count > 1:
                raise GraphInvariantError(f"Label [{label}] consumed {count} times")
        for final in (self.video_label, self.audio_label):
            if final not in produced:
                raise GraphInvariantError(f"Final label [{final}] is never produced")
            if final in consumed:
                raise GraphInvariantError(f"Final label [{final}] must not be consumed")
        dangling = [lbl for lbl in produced if lbl not in consumed and lbl not in (self.video_label, self.audio_label)]
        if dangling:
            raise GraphInvariantError(f"Dangling labels: {', '.join(dangling)}")

    def optimize(self) -> FilterGraph:
        """Drop duplicate and no-op nodes, preserving order, then split shared labels.

        Duplicates are nodes with the same inputs, op and params; their
        consumers are rewired to the first node's output. ``null``/``anull``
        passthroughs and a ``format`` whose input already has that pixel
        format are removed the same way. The final nodes are never dropped.
        """
        finals = (self.video_label, self.audio_label)
        seen: dict[tuple[Any, ...], str] = {}
        rename: dict[str, str] = {}
        pix_fmts: dict[str, str] = {}
        kept: list[FilterNode] = []
        for node in self.nodes:
            node = replace(node, inputs=[rename.get(lbl, lbl) for lbl in node.inputs])
            droppable = node.output not in finals and not node.extra_outputs
            fmt = _pix_fmt(node)
            if droppable and len(node.inputs) == 1:
                if node.op in ("null", "anull") and not node.params:
                    rename[node.output] = node.inputs[0]
                    continue
                if fmt and pix_fmts.get(node.inputs[0]) == fmt:
                    rename[node.output] = node.inputs[0]
                    continue
            key = (tuple(node.inputs), node.op, _fmt_params(node.params))
            if droppable and key in seen:
                rename[node.output] = seen[key]
                continue
            if droppable:
                seen[key] = node.output
            if fmt:
                pix_fmts[node.output] = fmt
            elif node.op in _FORMAT_KEEPING_OPS and node.inputs and node.inputs[0] in pix_fmts:
                pix_fmts[node.output] = pix_fmts[node.inputs[0]]
            kept.append(node)
        if len(kept) != len(self.nodes):
            debug(f"[graph] optimize: {len(self.nodes)} → {len(kept)} nodes")
        return replace(self, nodes=kept).split_shared()

    def split_shared(self) -> FilterGraph:
        """Insert ``split``/``asplit`` for every label consumed by more than one node.

        Input streams are split ahead of all nodes, node outputs right after
        their producer.
        """
        uses: dict[str, int] = {}
        for node in self.nodes:
            for lbl in node.inputs:
                uses[lbl] = uses.get(lbl, 0) + 1
        shared = {lbl: n for lbl, n in uses.items() if n > 1}
        if not shared:
            return self

        kinds = self._label_kinds()
        pending: dict[str, list[str]] = {}
        splits: dict[str, FilterNode] = {}
        for lbl, n in shared.items():
            m = _STREAM_REF.match(lbl)
            outs = [f"s{m.group(1)}{m.group(2)}{i}" for i in range(n)] if m else [f"{lbl}_s{i}" for i in range(n)]
            pending[lbl] = list(outs)
            op = "asplit" if kinds.get(lbl) == "a" else "split"
            splits[lbl] = FilterNode([lbl], op, str(n), outs[0], role="split", extra_outputs=outs[1:])

        nodes = [s for lbl, s in splits.items() if _STREAM_REF.match(lbl)]
        for node in self.nodes:
            nodes.append(replace(node, inputs=[pending[lbl].pop(0) if lbl in pending else lbl
                                               for lbl in node.inputs]))
            nodes.extend(splits[out] for out in node.outputs if out in splits)
        return replace(self, nodes=nodes)

    def _label_kinds(self) -> dict[str, str]:
        """``v`` or ``a`` for every input stream and node output."""
        kinds: dict[str, str] = {}
        for node in self.nodes:
            for lbl in node.inputs:
                m = _STREAM_REF.match(lbl)
                if m:
                    kinds[lbl] = m.group(2)
            if node.inputs:
                kind = kinds.get(node.inputs[0], "v")
            else:
                kind = "a" if node.op.startswith("a") else "v"
            for out in node.outputs:
                kinds[out] = kind
        return kinds


def _pix_fmt(node: FilterNode) -> str:
    if node.op != "format":
        return ""
    if isinstance(node.params, dict):
        return str(node.params.get("pix_fmts") or "")
    return node.params if isinstance(node.params, str) else ""


# ── Colors / text ─────────────────────────────────────────────────────────────

def ffmpeg_color(value: str) -> str:
    """``#rrggbb`` / ``#rrggbbaa`` → ffmpeg color syntax (``0xrrggbb[@alpha]``)."""
    v = (value or "").strip().lower()
    if v.startswith("#"):
        v = v[1:]
    if re.fullmatch(r"[0-9a-f]{6}", v):
        return f"0x{v}"
    if re.fullmatch(r"[0-9a-f]{8}", v):
        alpha = int(v[6:], 16) / 255
        return f"0x{v[:6]}@{_num(alpha)}"
    raise CompilationError(f"Invalid color {value!r}", code="INVALID_COLOR")


def escape_drawtext(text: str) -> str:
    """Escape text for a single-quoted drawtext ``text=`` value."""
    return (
        text.replace("\\", "\\\\")
        .replace("'", "’")
        .replace(":", "\\:")
        .replace("%", "\\%")
        .replace("[", "\\[")
        .replace("]", "\\]")
    )


# ── Effects ───────────────────────────────────────────────────────────────────

def _blur(e: Effect) -> tuple[str, Any]:
    return "gblur", {"sigma": e.params.get("sigma", e.strength * 10)}


def _brightness(e: Effect) -> tuple[str, Any]:
    return "eq", {"brightness": e.strength - 0.5}


def _contrast(e: Effect) -> tuple[str, Any]:
    return "eq", {"contrast": 0.5 + e.strength * 1.5}


def _saturation(e: Effect) -> tuple[str, Any]:
    return "eq", {"saturation": e.strength * 2}


def _hue(e: Effect) -> tuple[str, Any]:
    return "hue", {"h": (e.strength - 0.5) * 360}


def _chromakey(e: Effect) -> tuple[str, Any]:
    if not e.color:
        raise CompilationError("chromakey effect requires a color", code="INVALID_EFFECT")
    return "chromakey", {"color": ffmpeg_color(e.color), "similarity": e.similarity, "blend": e.blend}


def _grayscale(e: Effect) -> tuple[str, Any]:
    return "hue", {"s": 0}


def _sepia(e: Effect) -> tuple[str, Any]:
    return "colorchannelmixer", SEPIA_MATRIX


def _sharpen(e: Effect) -> tuple[str, Any]:
    return "unsharp", [5, 5, e.strength * 3]


def _vignette(e: Effect) -> tuple[str, Any]:
    return "vignette", {"angle": e.strength * math.pi / 2}


EFFECT_FILTERS: dict[str, Callable[[Effect], tuple[str, Any]]] = {
    "blur": _blur,
    "brightness": _brightness,
    "contrast": _contrast,
    "saturation": _saturation,
    "hue": _hue,
    "chromakey": _chromakey,
    "grayscale": _grayscale,
    "sepia": _sepia,
    "sharpen": _sharpen,
    "vignette": _vignette,
}


def effect_filter(effect: Effect) -> tuple[str, Any]:
    fn = EFFECT_FILTERS.get(effect.type)
    if fn is None:
        raise CompilationError(f"Unknown effect type '{effect.type}'", code="UNKNOWN_EFFECT")
    return fn(effect)


# ── Motion (animations + transitions as time ramps) ───────────────────────────

@dataclass(frozen=True)
class _Ramp:
    """Presence level over [start, start + duration]: 0→1 (``out=False``) or 1→0."""
    start: float
    duration: float
    easing: Any
    out: bool = False

    def level(self, var: str) -> str:
        p = f"clip(({var}-{_num(self.start)})/{_num(max(self.duration, 0.001))},0,1)"
        e = easing_expression(self.easing, p)
        return f"(1-{e})" if self.out else e


@dataclass
class _Motion:
    alpha: list[_Ramp] = field(default_factory=list)
    slides: list[tuple[_Ramp, str]] = field(default_factory=list)   # (ramp, off-screen side)
    zooms: list[tuple[_Ramp, str]] = field(default_factory=list)    # (ramp, grow|shrink|drift)
    spins: list[_Ramp] = field(default_factory=list)
    wipes: list[tuple[_Ramp, str]] = field(default_factory=list)    # (ramp, direction)
    fades: list[_Ramp] = field(default_factory=list)
    transition_in: str = ""

    @property
    def geometric(self) -> bool:
        return bool(self.slides or self.zooms or self.spins or self.wipes)


_OPPOSITE = {"left": "right", "right": "left", "up": "down", "down": "up"}


def _animation_ramp(anim: Animation, clip: Clip) -> _Ramp:
    if anim.type.endswith("Out"):
        start = max(clip.start, clip.end - anim.delay - anim.duration)
        return _Ramp(start, anim.duration, anim.easing, out=True)
    return _Ramp(clip.start + anim.delay, anim.duration, anim.easing)


def _apply_animation(motion: _Motion, anim: Animation, clip: Clip) -> None:
    ramp = _animation_ramp(anim, clip)
    t = anim.type
    if t in ("fadeIn", "fadeOut"):
        motion.fades.append(ramp)
    elif t == "slideIn":
        motion.slides.append((ramp, anim.direction or "left"))
    elif t == "slideOut":
        motion.slides.append((ramp, anim.direction or "right"))
    elif t in ("scaleIn", "scaleOut"):
        motion.zooms.append((ramp, "grow"))
    elif t == "zoom":
        motion.zooms.append((ramp, "drift"))
    elif t in ("rotateIn", "rotateOut"):
        motion.spins.append(ramp)
    else:
        raise CompilationError(f"Unknown animation type '{t}'", code="UNKNOWN_ANIMATION")


def _apply_transition(motions: dict[str, _Motion], w: TransitionWindow,
                      a: Clip | None, b: Clip | None) -> None:
    """Materialize one transition window as ramps on the incoming and/or outgoing clip."""
    incoming = b is not None and w.end > b.start + _EPS
    a_visible = a is not None and a.start < w.end and a.end > w.start + _EPS
    ramp_in = _Ramp(w.start, w.duration, w.easing)
    ramp_out = _Ramp(w.start, w.duration, w.easing, out=True)
    direction = w.direction or ("in" if w.type == "zoom" else "left")

    def m(clip: Clip) -> _Motion:
        return motions.setdefault(clip.id, _Motion())

    if w.type in ("fade", "crossfade", "dissolve"):
        if incoming:
            m(b).alpha.append(ramp_in)
            m(b).transition_in = w.type
        if a_visible and (w.type == "fade" or not incoming):
            m(a).alpha.append(ramp_out)
    elif w.type in ("slide", "push"):
        if incoming:
            m(b).slides.append((ramp_in, _OPPOSITE.get(direction, "right")))
            m(b).transition_in = w.type
        if a_visible and (w.type == "push" or not incoming):
            m(a).slides.append((ramp_out, direction if direction in _OPPOSITE else "left"))
    elif w.type == "wipe":
        if incoming:
            m(b).wipes.append((ramp_in, direction))
            m(b).transition_in = w.type
        elif a_visible:
            m(a).wipes.append((ramp_out, direction))
    elif w.type == "zoom":
        if incoming:
            m(b).zooms.append((ramp_in, "shrink" if direction == "out" else "grow"))
            m(b).transition_in = w.type
        elif a_visible:
            m(a).zooms.append((ramp_out, "grow"))
    elif w.type == "rotate":
        if incoming:
            m(b).spins.append(ramp_in)
            m(b).transition_in = w.type
        elif a_visible:
            m(a).spins.append(ramp_out)
    else:
        raise CompilationError(f"Unknown transition type '{w.type}'", code="UNKNOWN_TRANSITION")


def _zoom_factor(ramp: _Ramp, mode: str, var: str) -> str:
    lvl = ramp.level(var)
    if mode == "shrink":
        return f"(2-{lvl})"
    if mode == "drift":
        return f"(1+0.2*{lvl})"
    return f"max(0.01,{lvl})"


def _wipe_mask(ramp: _Ramp, direction: str) -> str:
    lvl = ramp.level("T")
    if direction == "right":
        return f"lte(X,W*{lvl})"
    if direction == "up":
        return f"gte(Y,H*(1-{lvl}))"
    if direction == "down":
        return f"lte(Y,H*{lvl})"
    return f"gte(X,W*(1-{lvl}))"


_SIDE_FROM = {"left": ("x", "-w"), "right": ("x", "W"), "up": ("y", "-h"), "down": ("y", "H")}


# ── Builder ───────────────────────────────────────────────────────────────────

class _GraphBuilder:
    def __init__(
        self,
        composition: Composition,
        assets: dict[str, str | Path] | None,
        width: int,
        height: int,
        fps: int,
        media_info: dict[str, MediaInfo] | None,
    ):
        self.comp = composition
        self.timeline = composition.timeline
        self.assets = assets
        self.media_info = media_info or {}
        self.w, self.h, self.fps = width, height, fps
        self.duration = composition.sync_duration
        self.inputs: list[GraphInput] = []
        self._input_index: dict[str, int] = {}
        self.nodes: list[FilterNode] = []
        self._counter = 0
        self.motions: dict[str, _Motion] = {}

    # ── labels / inputs ──

    def _label(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}{self._counter}"

    def _add(self, inputs: list[str], op: str, params: Any = None, prefix: str = "n",
             role: str = "", output: str = "") -> str:
        out = output or self._label(prefix)
        self.nodes.append(FilterNode(list(inputs), op, params, out, role))
        return out

    def _chain(self, label: str, op: str, params: Any = None, role: str = "", prefix: str = "v") -> str:
        return self._add([label], op, params, prefix=prefix, role=role)

    def _lavfi(self, source: str) -> int:
        self.inputs.append(GraphInput(source, ["-f", "lavfi", "-t", _num(self.duration)], kind="lavfi"))
        return len(self.inputs) - 1

    def _file_input(self, path: str, kind: str) -> int:
        if path in self._input_index:
            return self._input_index[path]
        if kind == "image":
            opts = ["-loop", "1", "-framerate", str(self.fps), "-t", _num(self.duration)]
        else:
            opts = []
        self.inputs.append(GraphInput(path, opts, kind=kind))
        self._input_index[path] = len(self.inputs) - 1
        return self._input_index[path]

    def _asset_path(self, key: str) -> str:
        if self.assets is None:
            return key
        p = self.assets.get(key)
        if p is None:
            raise CompilationError(f"Asset not available: {key}", code="MISSING_ASSET", details={"source": key})
        return str(p)

    # ── top level ──

    def build(self) -> FilterGraph:
        bg = self.timeline.background
        base_idx = self._lavfi(
            f"color=c={ffmpeg_color(bg.color)}:s={self.w}x{self.h}:r={self.fps}:d={_num(self.duration)}"
        )
        silence_idx = self._lavfi(f"anullsrc=channel_layout=stereo:sample_rate={AUDIO_SAMPLE_RATE}")

        self._collect_motion()

        running = f"{base_idx}:v"
        if bg.image:
            running = self._background_image(running, bg.image)

        for track in self.comp.layers:
            for clip in track.clips:
                handler = _CLIP_HANDLERS[type(clip)]
                running = handler(self, track, clip, running)

        self._add([running], "format", {"pix_fmts": "yuv420p"}, output=VIDEO_LABEL, role="final")
        self._build_audio(f"{silence_idx}:a")

        graph = FilterGraph(
            inputs=self.inputs, nodes=self.nodes, duration=self.duration,
            width=self.w, height=self.h, fps=self.fps,
        ).optimize()
        graph.validate()
        return graph

    def _collect_motion(self) -> None:
        for track in self.comp.layers:
            by_id = {c.id: c for c in track.clips}
            for clip in track.clips:
                motion = self.motions.setdefault(clip.id, _Motion())
                for anim in clip.animations:
                    _apply_animation(motion, anim, clip)
            for w in self.comp.transitions.get(track.id, []):
                _apply_transition(self.motions, w, by_id.get(w.from_clip), by_id.get(w.to_clip))

    def _background_image(self, running: str, src: str) -> str:
        idx = self._file_input(self._asset_path(src), "image")
        lbl = self._chain(f"{idx}:v", "scale", {"w": self.w, "h": self.h, "force_original_aspect_ratio": "increase"},
                          role="fit")
        lbl = self._chain(lbl, "crop", {"w": self.w, "h": self.h})
        return self._add([running, lbl], "overlay", {"x": 0, "y": 0}, prefix="bg", role="overlay")

    # ── visual clip handlers ──

    def _timed(self, label: str, clip: Clip, looped: bool) -> str:
        """Trim to the clip window and shift onto timeline time."""
        if looped:
            label = self._chain(label, "trim", {"duration": clip.duration})
        else:
            src_start = clip.trim.start if clip.trim else 0.0
            dur = clip.duration
            if clip.trim and clip.trim.end is not None:
                dur = min(dur, max(0.001, clip.trim.end - src_start))
            label = self._chain(label, "trim", {"start": src_start, "duration": dur})
        return self._chain(label, "setpts", f"PTS-STARTPTS+{_num(clip.start)}/TB")

    def _fit(self, label: str, cover: bool = False) -> str:
        mode = "increase" if cover else "decrease"
        label = self._chain(label, "scale", {"w": self.w, "h": self.h, "force_original_aspect_ratio": mode},
                            role="fit")
        if cover:
            label = self._chain(label, "crop", {"w": self.w, "h": self.h}, role="fit")
        return label

    def _video(self, track: Track, clip: VideoClip, running: str) -> str:
        idx = self._file_input(self._asset_path(clip.src), "video")
        label = self._timed(f"{idx}:v", clip, looped=False)
        return self._layer(clip, self._fit(label), running)

    def _image(self, track: Track, clip: ImageClip, running: str) -> str:
        idx = self._file_input(self._asset_path(clip.src), "image")
        label = self._timed(f"{idx}:v", clip, looped=True)
        return self._layer(clip, self._fit(label), running)

    def _html(self, track: Track, clip: HtmlClip, running: str) -> str:
        path = clip.rendered_src
        if not path and self.assets is not None:
            path = self.assets.get(html_asset_key(clip))
        if not path:
            raise CompilationError(
                f"HTML clip '{clip.id}' has no rendered image", code="MISSING_ASSET",
                details={"clip": clip.id},
            )
        idx = self._file_input(str(path), "image")
        label = self._timed(f"{idx}:v", clip, looped=True)
        return self._layer(clip, label, running)

    def _color_source(self, color: str, width: int, height: int, clip: Clip) -> str:
        src = self._add(
            [], "color",
            {"c": ffmpeg_color(color), "s": f"{width}x{height}", "r": self.fps, "d": clip.duration},
            prefix="src", role="source",
        )
        return self._chain(src, "setpts", f"PTS-STARTPTS+{_num(clip.start)}/TB")

    def _background(self, track: Track, clip: BackgroundClip, running: str) -> str:
        if clip.src:
            idx = self._file_input(self._asset_path(clip.src), _source_kind(clip.src))
            label = self._timed(f"{idx}:v", clip, looped=_source_kind(clip.src) == "image")
            label = self._fit(label, cover=True)
        else:
            label = self._color_source(clip.color, self.w, self.h, clip)
        return self._layer(clip, label, running)

    def _shape(self, track: Track, clip: ShapeClip, running: str) -> str:
        w = max(2, clip.width + clip.width % 2)
        h = max(2, clip.height + clip.height % 2)
        label = self._color_source(clip.color, w, h, clip)
        return self._layer(clip, label, running)

    def _audio_only(self, track: Track, clip: AudioClip, running: str) -> str:
        return running

    def _text(self, track: Track, clip: TextClip, running: str) -> str:
        motion = self.motions.get(clip.id, _Motion())
        direct = not (clip.effects or clip.rotation or abs(clip.scale - 1) > _EPS or motion.geometric)
        if direct:
            params = self._drawtext_params(clip)
            alpha_terms = [_num(clip.opacity)] if clip.opacity < 1 else []
            alpha_terms += [r.level("t") for r in motion.alpha + motion.fades]
            if alpha_terms:
                params["alpha"] = _q("*".join(alpha_terms))
            params["enable"] = f"'between(t,{_num(clip.start)},{_num(clip.end)})'"
            role = f"transition:{motion.transition_in}" if motion.transition_in else "text"
            return self._chain(running, "drawtext", params, role=role)

        canvas = self._add(
            [], "color",
            {"c": "black@0", "s": f"{self.w}x{self.h}", "r": self.fps, "d": clip.duration},
            prefix="src", role="source",
        )
        label = self._chain(canvas, "setpts", f"PTS-STARTPTS+{_num(clip.start)}/TB")
        label = self._chain(label, "format", {"pix_fmts": "rgba"})
        # drawn at the canvas origin; _layer applies the clip position
        params = self._drawtext_params(clip, on_canvas=True)
        label = self._chain(label, "drawtext", params, role="text")
        return self._layer(clip, label, running)

    def _drawtext_params(self, clip: TextClip, on_canvas: bool = False) -> dict[str, Any]:
        params: dict[str, Any] = {"text": f"'{escape_drawtext(clip.text)}'"}
        if clip.font_file:
            font_path = clip.font_file.replace("\\", "/").replace(":", "\\:")
            params["fontfile"] = f"'{font_path}'"
        else:
            params["font"] = f"'{clip.font_family}'"
        params["fontsize"] = clip.font_size
        params["fontcolor"] = ffmpeg_color(clip.color)
        x, y = clip.position.x, clip.position.y
        params["x"] = _q("(w-text_w)/2" if x is None else "0" if on_canvas else _num(x))
        params["y"] = _q("(h-text_h)/2" if y is None else "0" if on_canvas else _num(y))
        if clip.background_color:
            params["box"] = 1
            params["boxcolor"] = ffmpeg_color(clip.background_color)
            params["boxborderw"] = 8
        return params

    # ── shared layer pipeline ──

    def _layer(self, clip: Clip, label: str, running: str) -> str:
        """Scale, effects, rotation, animation and transition nodes, then overlay."""
        motion = self.motions.get(clip.id, _Motion())
        if abs(clip.scale - 1) > _EPS:
            s = _num(clip.scale)
            label = self._chain(label, "scale", {"w": f"trunc(iw*{s}/2)*2", "h": f"trunc(ih*{s}/2)*2"},
                                role="scale")
        for effect in clip.effects:
            op, params = effect_filter(effect)
            label = self._chain(label, op, params, role=f"effect:{effect.type}")
        label = self._chain(label, "format", {"pix_fmts": "rgba"})
        if clip.rotation:
            rad = _num(math.radians(clip.rotation))
            label = self._chain(
                label, "rotate", {"a": rad, "ow": _q(f"rotw({rad})"), "oh": _q(f"roth({rad})"), "c": "none"},
                role="rotate",
            )
        for r in motion.fades:
            label = self._chain(
                label, "fade", {"t": "out" if r.out else "in", "st": r.start, "d": r.duration, "alpha": 1},
                role="animation",
            )
        if motion.zooms:
            f = "*".join(_zoom_factor(r, mode, "t") for r, mode in motion.zooms)
            label = self._chain(
                label, "scale",
                {"w": _q(f"max(2,trunc(iw*{f}/2)*2)"), "h": _q(f"max(2,trunc(ih*{f}/2)*2)"), "eval": "frame"},
                role="animation",
            )
        if motion.spins:
            angle = "+".join(f"2*PI*(1-{r.level('t')})" for r in motion.spins)
            label = self._chain(
                label, "rotate", {"a": _q(angle), "ow": _q("hypot(iw,ih)"), "oh": "ow", "c": "none"},
                role="animation",
            )
        masks = [r.level("T") for r in motion.alpha] + [_wipe_mask(r, d) for r, d in motion.wipes]
        if masks:
            a = "*".join(["alpha(X,Y)"] + masks)
            label = self._chain(
                label, "geq",
                {"r": "'r(X,Y)'", "g": "'g(X,Y)'", "b": "'b(X,Y)'", "a": f"'{a}'"},
                role="transition" if motion.transition_in else "animation",
            )
        if clip.opacity < 1:
            label = self._chain(label, "colorchannelmixer", {"aa": clip.opacity}, role="opacity")

        x0 = "(W-w)/2" if clip.position.x is None else _num(clip.position.x)
        y0 = "(H-h)/2" if clip.position.y is None else _num(clip.position.y)
        x, y = x0, y0
        for ramp, side in motion.slides:
            axis, start = _SIDE_FROM.get(side, _SIDE_FROM["left"])
            term = f"+(({start})-({x0 if axis == 'x' else y0}))*(1-{ramp.level('t')})"
            if axis == "x":
                x += term
            else:
                y += term
        role = f"transition:{motion.transition_in}" if motion.transition_in else "overlay"
        return self._add(
            [running, label], "overlay",
            {"x": _q(x), "y": _q(y), "enable": f"'between(t,{_num(clip.start)},{_num(clip.end)})'",
             "eof_action": "pass"},
            prefix="ov", role=role,
        )

    # ── audio ──

    def _audio_chain(self, stream: str, start: float, duration: float, src_start: float,
                     volume: float, fade_in: float, fade_out: float,
                     fade_in_delay: float = 0.0, fade_out_delay: float = 0.0) -> str:
        label = self._chain(stream, "atrim", {"start": src_start, "duration": duration}, prefix="a")
        label = self._chain(label, "asetpts", "PTS-STARTPTS", prefix="a")
        label = self._chain(
            label, "aformat",
            {"sample_rates": AUDIO_SAMPLE_RATE, "channel_layouts": "stereo"}, prefix="a",
        )
        if abs(volume - 1) > _EPS:
            label = self._chain(label, "volume", {"volume": volume}, prefix="a", role="volume")
        if fade_in > 0:
            label = self._chain(label, "afade", {"t": "in", "st": fade_in_delay, "d": fade_in}, prefix="a")
        if fade_out > 0:
            st = max(0.0, duration - fade_out_delay - fade_out)
            label = self._chain(label, "afade", {"t": "out", "st": st, "d": fade_out}, prefix="a")
        delay_ms = int(round(start * 1000))
        if delay_ms > 0:
            label = self._chain(label, "adelay", f"{delay_ms}|{delay_ms}", prefix="a")
        return label

    def _clip_has_audio(self, clip: Clip) -> bool:
        if isinstance(clip, AudioClip):
            return True
        info = self.media_info.get(clip_source(clip) or "")
        return bool(info and info.has_audio)

    def _clip_audio(self, clip: Clip) -> str:
        idx = self._file_input(self._asset_path(clip_source(clip) or ""), _source_kind(clip_source(clip) or ""))
        src_start = clip.trim.start if clip.trim else 0.0
        dur = clip.duration
        if clip.trim and clip.trim.end is not None:
            dur = min(dur, max(0.001, clip.trim.end - src_start))
        fades = {"fadeIn": (0.0, 0.0), "fadeOut": (0.0, 0.0)}
        for anim in clip.animations:
            if anim.type in fades:
                fades[anim.type] = (anim.duration, anim.delay)
        (fade_in, in_delay), (fade_out, out_delay) = fades["fadeIn"], fades["fadeOut"]
        return self._audio_chain(f"{idx}:a", clip.start, dur, src_start, clip.volume,
                                 fade_in, fade_out, in_delay, out_delay)

    def _build_audio(self, silence: str) -> None:
        lanes: list[str] = []
        per_track: dict[str, list[str]] = {}
        for track, clip in self.comp.audio_mix.inputs:
            if not self._clip_has_audio(clip):
                continue
            per_track.setdefault(track.id, []).append(self._clip_audio(clip))
        for track_id, labels in per_track.items():
            if len(labels) == 1:
                lanes.append(labels[0])
            else:
                lanes.append(self._add(
                    labels, "amix",
                    {"inputs": len(labels), "duration": "longest", "normalize": 0},
                    prefix="mix", role=f"mix:{track_id}",
                ))

        st = self.timeline.soundtrack
        if st is not None and st.src:
            idx = self._file_input(self._asset_path(st.src), "audio")
            avail = max(0.001, self.duration - st.start)
            dur = min(st.duration, avail) if st.duration else avail
            lanes.append(self._audio_chain(f"{idx}:a", st.start, dur, 0.0, st.volume, st.fade_in, st.fade_out))

        silence = self._chain(silence, "atrim", {"duration": self.duration}, prefix="a")
        self._add(
            [silence, *lanes], "amix",
            {"inputs": len(lanes) + 1, "duration": "first", "normalize": 0},
            output=AUDIO_LABEL, role="final",
        )


def _source_kind(src: str) -> str:
    ext = Path(src.split("?", 1)[0]).suffix.lower()
    if ext in IMAGE_EXTENSIONS:
        return "image"
    if ext in AUDIO_EXTENSIONS:
        return "audio"
    return "video"


_CLIP_HANDLERS: dict[type[Clip], Callable[..., str]] = {
    VideoClip: _GraphBuilder._video,
    ImageClip: _GraphBuilder._image,
    AudioClip: _GraphBuilder._audio_only,
    TextClip: _GraphBuilder._text,
    HtmlClip: _GraphBuilder._html,
    BackgroundClip: _GraphBuilder._background,
    ShapeClip: _GraphBuilder._shape,
}

_unhandled = sorted(kind for kind, cls in CLIP_TYPES.items() if cls not in _CLIP_HANDLERS)
if _unhandled:
    raise RuntimeError(f"filter graph has no handler for clip kinds: {_unhandled}")


def build_filter_graph(
    composition: Composition,
    assets: dict[str, str | Path] | None = None,
    output: OutputSettings | None = None,
    media_info: dict[str, MediaInfo] | None = None,
) -> FilterGraph:
    """Compile a composition into a validated ``FilterGraph``.

    ``assets`` maps clip sources (and ``html:<clip id>`` keys) to local files;
    ``None`` uses the sources verbatim. ``media_info`` tells which video
    sources carry an audio stream; video audio is mixed only when it does.
    Raises ``CompilationError`` for anything the renderer could not execute.
    """
    res = composition.timeline.resolution
    width = (output.width if output and output.width else res.width)
    height = (output.height if output and output.height else res.height)
    fps = (output.fps if output and output.fps else composition.timeline.frame_rate)
    width += width % 2
    height += height % 2

    builder = _GraphBuilder(composition, assets, width, height, fps, media_info)
    graph = builder.build()
    render_log(f"Filter graph: {len(graph.inputs)} inputs, {len(graph.nodes)} nodes, "
               f"{graph.duration:.2f}s @ {width}x{height}/{fps}fps")
    debug(f"[graph] filter_complex:\n{graph.to_filter_complex()}")
    return graph
