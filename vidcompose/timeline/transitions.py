"""Transition resolution and easing curves.

Turns a track's sorted clip list plus any explicitly declared transitions into
non-overlapping, time-windowed blend instructions.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from typing import Iterable

from vidcompose.errors import CompilationError
from vidcompose.timeline.models import TRANSITION_TYPES, Clip, Easing, Transition
from vidcompose.utils.config import TimelineConfig
from vidcompose.utils.logging import debug, warn

MIN_TRANSITION_DURATION = 0.1

IMPLICIT_TYPES: dict[tuple[str, str], str] = {
    ("text", "text"): "fade",
    ("image", "image"): "dissolve",
    ("video", "video"): "crossfade",
}


@dataclass(frozen=True)
class TransitionWindow:
    type: str
    start: float
    duration: float
    from_clip: str = ""
    to_clip: str = ""
    easing: Easing = Easing.ease_in_out
    direction: str | None = None
    explicit: bool = False
    track_id: str = ""

    @property
    def end(self) -> float:
        return self.start + self.duration

    def overlaps(self, other: TransitionWindow) -> bool:
        return self.start < other.end and other.start < self.end

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "start": round(self.start, 6),
            "duration": round(self.duration, 6),
            "fromClip": self.from_clip,
            "toClip": self.to_clip,
            "easing": self.easing.value,
            "direction": self.direction,
            "explicit": self.explicit,
            "trackId": self.track_id,
        }


# ── Easing ────────────────────────────────────────────────────────────────────

def _bounce(t: float) -> float:
    n1, d1 = 7.5625, 2.75
    if t < 1 / d1:
        return n1 * t * t
    if t < 2 / d1:
        t -= 1.5 / d1
        return n1 * t * t + 0.75
    if t < 2.5 / d1:
        t -= 2.25 / d1
        return n1 * t * t + 0.9375
    t -= 2.625 / d1
    return n1 * t * t + 0.984375


def ease(easing: Easing | str, t: float) -> float:
    """Blend weight for normalized progress ``t`` (clamped to [0, 1])."""
    e = Easing.parse(easing, Easing.linear)
    t = max(0.0, min(1.0, t))
    if e is Easing.linear:
        return t
    if e is Easing.ease_in:
        return t * t
    if e is Easing.ease_out:
        return 1 - (1 - t) ** 2
    if e is Easing.ease_in_out:
        return 2 * t * t if t < 0.5 else 1 - 2 * (1 - t) ** 2
    if e is Easing.bounce:
        return _bounce(t)
    # elastic
    if t in (0.0, 1.0):
        return t
    return 2 ** (-10 * t) * math.sin((t - 0.075) * 2 * math.pi / 0.3) + 1


def sample_easing(easing: Easing | str, steps: int = 10) -> list[float]:
    return [ease(easing, i / steps) for i in range(steps + 1)]


def easing_expression(easing: Easing | str, p: str) -> str:
    """FFmpeg expression of the curve, ``p`` being an expression for progress in [0, 1]."""
    e = Easing.parse(easing, Easing.linear)
    if e is Easing.linear:
        return f"({p})"
    if e is Easing.ease_in:
        return f"pow({p},2)"
    if e is Easing.ease_out:
        return f"(1-pow(1-{p},2))"
    if e is Easing.ease_in_out:
        return f"if(lt({p},0.5),2*pow({p},2),1-2*pow(1-{p},2))"
    if e is Easing.bounce:
        def seg(off: float, add: float) -> str:
            return f"7.5625*({p}-{off:.6f})*({p}-{off:.6f})+{add}"
        return (f"if(lt({p},{1 / 2.75:.6f}),7.5625*{p}*{p},"
                f"if(lt({p},{2 / 2.75:.6f}),{seg(1.5 / 2.75, 0.75)},"
                f"if(lt({p},{2.5 / 2.75:.6f}),{seg(2.25 / 2.75, 0.9375)},"
                f"{seg(2.625 / 2.75, 0.984375)})))")
    return f"if(lte({p},0),0,if(gte({p},1),1,pow(2,-10*{p})*sin(({p}-0.075)*2*PI/0.3)+1))"


# ── Validation / optimization ─────────────────────────────────────────────────

def validate_transition(t: Transition, settings: TimelineConfig | None = None) -> None:
    settings = settings or TimelineConfig()
    if t.type not in TRANSITION_TYPES:
        raise CompilationError(f"Unknown transition type '{t.type}'", code="UNKNOWN_TRANSITION")
    if t.duration <= 0 or t.duration > settings.max_explicit_transition:
        raise CompilationError(
            f"Transition duration must be in (0, {settings.max_explicit_transition:g}], got {t.duration:g}",
            code="INVALID_TRANSITION",
        )


def optimize_transitions(windows: Iterable[TransitionWindow]) -> list[TransitionWindow]:
    """Sort by start and shorten any window that runs into the next one.

    A window that would shrink below ``MIN_TRANSITION_DURATION`` is dropped.
    """
    ordered = sorted(windows, key=lambda w: (w.start, w.end))
    result: list[TransitionWindow] = []
    for i, cur in enumerate(ordered):
        nxt = ordered[i + 1] if i + 1 < len(ordered) else None
        if nxt is not None and cur.end > nxt.start + 1e-9:
            new_dur = nxt.start - cur.start
            if new_dur < MIN_TRANSITION_DURATION:
                warn(f"[transitions] {cur.type} {cur.from_clip}→{cur.to_clip} at {cur.start:.2f}s "
                     f"dropped: collides with transition at {nxt.start:.2f}s")
                continue
            warn(f"[transitions] {cur.type} {cur.from_clip}→{cur.to_clip} shortened "
                 f"{cur.duration:.2f}s → {new_dur:.2f}s to avoid overlap")
            cur = replace(cur, duration=new_dur)
        result.append(cur)
    return result


def implicit_transition_type(a: Clip, b: Clip) -> str:
    return IMPLICIT_TYPES.get((a.kind, b.kind), "crossfade")


# ── Resolution ────────────────────────────────────────────────────────────────

def _explicit_window(t: Transition, a: Clip | None, b: Clip | None, track_id: str) -> TransitionWindow:
    if t.start is not None:
        start = max(0.0, t.start)
    elif a is not None and b is not None and a.end > b.start:
        start = b.start
    elif b is not None:
        start = max(0.0, b.start - t.duration)
    else:
        start = 0.0
    duration = t.duration
    if t.start is None and b is not None and a is not None and a.end <= b.start:
        duration = min(t.duration, b.start - start) or t.duration
    return TransitionWindow(
        type=t.type, start=start, duration=duration,
        from_clip=a.id if a else (t.from_clip or ""),
        to_clip=b.id if b else (t.to_clip or ""),
        easing=t.easing, direction=t.direction, explicit=True, track_id=track_id,
    )


def resolve_track_transitions(
    clips: list[Clip],
    explicit: Iterable[Transition] = (),
    settings: TimelineConfig | None = None,
    track_id: str = "",
) -> list[TransitionWindow]:
    """Blend windows for one track.

    ``clips`` must already be sorted by ``(start, z_index)``. Explicit
    transitions (track/timeline declarations and each clip's own ``transition``,
    meaning "into this clip") override implicit ones on the same pair or window.
    """
    settings = settings or TimelineConfig()
    index = {c.id: i for i, c in enumerate(clips)}

    declared: list[Transition] = list(explicit)
    for i, clip in enumerate(clips):
        if clip.transition is not None and i > 0:
            declared.append(replace(clip.transition, from_clip=clips[i - 1].id, to_clip=clip.id))

    explicit_windows: list[TransitionWindow] = []
    for t in declared:
        validate_transition(t, settings)
        for ref in (t.from_clip, t.to_clip):
            if ref and ref not in index:
                raise CompilationError(
                    f"Transition {t.type} references unknown clip '{ref}' on track '{track_id}'",
                    code="UNKNOWN_CLIP",
                )
        b = clips[index[t.to_clip]] if t.to_clip else None
        a = clips[index[t.from_clip]] if t.from_clip else None
        if a is None and b is not None and index[b.id] > 0:
            a = clips[index[b.id] - 1]
        if b is None and a is not None and index[a.id] + 1 < len(clips):
            b = clips[index[a.id] + 1]
        explicit_windows.append(_explicit_window(t, a, b, track_id))

    claimed = {(w.from_clip, w.to_clip) for w in explicit_windows}
    windows = list(explicit_windows)

    if settings.auto_transitions:
        for a, b in zip(clips, clips[1:]):
            if b.start > a.end + settings.adjacency_tolerance:
                continue
            if (a.id, b.id) in claimed:
                continue
            overlap = max(0.0, a.end - b.start)
            if overlap > 0:
                duration = min(overlap, settings.max_transition_duration)
                start = b.start
            else:
                duration = settings.default_transition_duration
                start = max(0.0, b.start - duration)
                duration = b.start - start
            if duration <= 1e-6:
                continue
            w = TransitionWindow(
                type=implicit_transition_type(a, b), start=start, duration=duration,
                from_clip=a.id, to_clip=b.id, easing=Easing.ease_in_out, track_id=track_id,
            )
            if any(w.overlaps(e) for e in explicit_windows):
                debug(f"[transitions] implicit {w.type} {a.id}→{b.id} suppressed by explicit transition")
                continue
            windows.append(w)

    return optimize_transitions(windows)
