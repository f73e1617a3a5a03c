"""Track composer — priority ordering, blend rules, transitions and the audio mix plan."""

from __future__ import annotations

from dataclasses import dataclass, field

from vidcompose.errors import CompilationError
from vidcompose.timeline.models import Clip, Timeline, Track, TrackType, Transition
from vidcompose.timeline.transitions import TransitionWindow, resolve_track_transitions
from vidcompose.utils.config import TimelineConfig
from vidcompose.utils.logging import debug

TRACK_PRIORITY: dict[TrackType, int] = {
    TrackType.background: 0,
    TrackType.video: 1,
    TrackType.audio: 2,
    TrackType.text: 3,
    TrackType.overlay: 4,
}

AUDIO_SAMPLE_RATE = 48000
AUDIO_CHANNELS = 2


@dataclass(frozen=True)
class BlendRule:
    clip_a: str
    clip_b: str
    overlap_seconds: float
    blend_type: str = "crossfade"
    track_id: str = ""

    def to_dict(self) -> dict:
        return {
            "clipA": self.clip_a,
            "clipB": self.clip_b,
            "overlapSeconds": round(self.overlap_seconds, 6),
            "blendType": self.blend_type,
            "trackId": self.track_id,
        }


@dataclass
class AudioMix:
    """N audio inputs mixed into one stereo stream."""
    inputs: list[tuple[Track, Clip]] = field(default_factory=list)
    sample_rate: int = AUDIO_SAMPLE_RATE
    channels: int = AUDIO_CHANNELS


@dataclass
class Composition:
    timeline: Timeline
    layers: list[Track]                     # visual tracks, bottom to top
    audio_tracks: list[Track]               # tracks contributing audio, in priority order
    blending_rules: list[BlendRule]
    transitions: dict[str, list[TransitionWindow]]  # track id -> windows
    sync_duration: float
    audio_mix: AudioMix

    def transitions_into(self, clip_id: str) -> list[TransitionWindow]:
        return [w for ws in self.transitions.values() for w in ws if w.to_clip == clip_id]

    def transitions_out_of(self, clip_id: str) -> list[TransitionWindow]:
        return [w for ws in self.transitions.values() for w in ws if w.from_clip == clip_id]

    def all_transitions(self) -> list[TransitionWindow]:
        return sorted((w for ws in self.transitions.values() for w in ws), key=lambda w: w.start)

    def to_dict(self) -> dict:
        return {
            "order": [t.id for t in self.layers],
            "audioTracks": [t.id for t in self.audio_tracks],
            "blendingRules": [r.to_dict() for r in self.blending_rules],
            "transitions": [w.to_dict() for w in self.all_transitions()],
            "syncDuration": self.sync_duration,
        }


def order_tracks(tracks: list[Track]) -> list[Track]:
    """Enabled tracks sorted by semantic priority, ties in declaration order."""
    enabled = [t for t in tracks if t.enabled]
    return sorted(enabled, key=lambda t: (TRACK_PRIORITY[t.type], t.index))


def detect_blending(track: Track) -> list[BlendRule]:
    """One rule for every pair of clips in ``track`` whose windows overlap."""
    rules: list[BlendRule] = []
    clips = track.clips
    for i, a in enumerate(clips):
        for b in clips[i + 1:]:
            if b.start >= a.end:
                # sorted by start: no later clip can overlap a either
                break
            overlap = min(a.end, b.end) - b.start
            if overlap > 0:
                rules.append(BlendRule(a.id, b.id, overlap, "crossfade", track.id))
    return rules


def synchronization_envelope(tracks: list[Track], timeline_duration: float) -> float:
    return max([timeline_duration] + [t.end for t in tracks])


def _route_timeline_transitions(timeline: Timeline, ordered: list[Track]) -> dict[str, list[Transition]]:
    """Assign timeline-level transitions to a track, by ``track`` or by the clips they name."""
    routed: dict[str, list[Transition]] = {}
    track_ids = {t.id for t in ordered}
    for t in timeline.transitions:
        if t.track:
            if t.track not in track_ids:
                raise CompilationError(f"Transition references unknown track '{t.track}'", code="UNKNOWN_TRACK")
            routed.setdefault(t.track, []).append(t)
            continue
        ref = t.to_clip or t.from_clip
        owner = next((tr for tr in ordered if any(c.id == ref for c in tr.clips)), None)
        if owner is None:
            raise CompilationError(f"Transition references unknown clip '{ref}'", code="UNKNOWN_CLIP")
        routed.setdefault(owner.id, []).append(t)
    return routed


def compose_timeline(timeline: Timeline, settings: TimelineConfig | None = None) -> Composition:
    settings = settings or TimelineConfig()
    ordered = order_tracks(timeline.tracks)

    routed = _route_timeline_transitions(timeline, ordered)

    transitions: dict[str, list[TransitionWindow]] = {}
    blending: list[BlendRule] = []
    for track in ordered:
        explicit = list(track.transitions) + routed.get(track.id, [])
        if track.type is not TrackType.audio:
            transitions[track.id] = resolve_track_transitions(track.clips, explicit, settings, track.id)
        elif explicit:
            debug(f"[composer] transitions on audio track {track.id} ignored")
        blending.extend(detect_blending(track))

    layers = [t for t in ordered if t.type is not TrackType.audio]
    audio_tracks = [t for t in ordered if any(c.audible for c in t.clips)]
    mix = AudioMix(inputs=[
        (t, c) for t in audio_tracks for c in t.clips
        if c.audible and c.volume > 0 and not getattr(c, "muted", False)
    ])

    sync = synchronization_envelope(ordered, timeline.duration)
    debug(f"[composer] order={[t.id for t in layers]} audio={[t.id for t in audio_tracks]} "
          f"blends={len(blending)} sync={sync:.2f}s")
    return Composition(
        timeline=timeline,
        layers=layers,
        audio_tracks=audio_tracks,
        blending_rules=blending,
        transitions=transitions,
        sync_duration=sync,
        audio_mix=mix,
    )
