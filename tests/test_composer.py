"""Tests for track composition: ordering, blending rules, audio routing, sync."""

from __future__ import annotations

import pytest


def _compose(raw: dict):
    from vidcompose.timeline.composer import compose_timeline
    from vidcompose.timeline.normalizer import normalize_timeline
    return compose_timeline(normalize_timeline(raw).timeline)


class TestTrackOrder:
    """Background < video < audio < text < overlay; ties keep declaration order."""

    def test_semantic_priority(self):
        comp = _compose({"tracks": [
            {"id": "ov", "type": "overlay", "clips": [{"type": "image", "src": "logo.png", "duration": 2}]},
            {"id": "txt", "type": "text", "clips": [{"text": "hi", "duration": 2}]},
            {"id": "vid", "type": "video", "clips": [{"src": "a.mp4", "duration": 2}]},
            {"id": "bg", "type": "background", "clips": [{"color": "blue", "duration": 2}]},
        ]})
        assert comp.to_dict()["order"] == ["bg", "vid", "txt", "ov"]

    def test_disabled_tracks_skipped(self):
        comp = _compose({"tracks": [
            {"id": "on", "clips": [{"text": "a", "duration": 2}]},
            {"id": "off", "enabled": False, "clips": [{"text": "b", "duration": 2}]},
        ]})
        assert [t.id for t in comp.layers] == ["on"]

    def test_ties_in_declaration_order(self):
        comp = _compose({"tracks": [
            {"id": "v1", "type": "video", "clips": [{"src": "a.mp4", "duration": 2}]},
            {"id": "v2", "type": "video", "clips": [{"src": "b.mp4", "duration": 2}]},
        ]})
        assert [t.id for t in comp.layers] == ["v1", "v2"]


class TestBlending:
    """Overlapping clips on a track always yield a blending rule."""

    def test_overlap_rule(self):
        comp = _compose({"tracks": [{"id": "main", "clips": [
            {"id": "A", "src": "a.mp4", "start": 0, "duration": 10},
            {"id": "B", "src": "b.mp4", "start": 9, "duration": 10},
        ]}]})
        (rule,) = comp.blending_rules
        assert (rule.clip_a, rule.clip_b) == ("A", "B")
        assert rule.overlap_seconds == pytest.approx(1.0)
        assert comp.transitions_into("B")[0].type == "crossfade"

    def test_no_rule_for_touching_clips(self):
        comp = _compose({"tracks": [{"clips": [
            {"src": "a.mp4", "start": 0, "duration": 5},
            {"src": "b.mp4", "start": 5, "duration": 5},
        ]}]})
        assert comp.blending_rules == []

    def test_every_overlap_covered(self):
        comp = _compose({"tracks": [{"id": "t", "type": "text", "clips": [
            {"id": "a", "text": "a", "start": 0, "duration": 4},
            {"id": "b", "text": "b", "start": 3, "duration": 4},
            {"id": "c", "text": "c", "start": 6.5, "duration": 4},
        ]}]})
        covered = {(r.clip_a, r.clip_b) for r in comp.blending_rules}
        covered |= {(w.from_clip, w.to_clip) for w in comp.all_transitions()}
        assert {("a", "b"), ("b", "c")} <= covered


class TestAudio:
    """Audible clips are routed into the mix; muted and silent ones are not."""

    def test_audio_routing(self):
        comp = _compose({"tracks": [
            {"id": "vid", "type": "video", "clips": [
                {"id": "v1", "src": "a.mp4", "start": 0, "duration": 3},
                {"id": "v2", "src": "b.mp4", "start": 3, "duration": 3, "muted": True},
            ]},
            {"id": "music", "type": "audio", "clips": [
                {"id": "m1", "src": "song.mp3", "start": 0, "duration": 6},
                {"id": "m2", "src": "quiet.mp3", "start": 1, "duration": 6, "volume": 0},
            ]},
        ]})
        assert comp.to_dict()["audioTracks"] == ["vid", "music"]
        assert [c.id for _, c in comp.audio_mix.inputs] == ["v1", "m1"]
        assert "music" not in [t.id for t in comp.layers]

    def test_audio_track_transitions_ignored(self):
        comp = _compose({"tracks": [{"id": "music", "type": "audio", "clips": [
            {"src": "a.mp3", "start": 0, "duration": 5},
            {"src": "b.mp3", "start": 4, "duration": 5},
        ]}]})
        assert comp.transitions == {}
        assert len(comp.blending_rules) == 1


class TestTimelineTransitions:

    def test_routed_to_owning_track(self):
        comp = _compose({
            "tracks": [{"id": "main", "clips": [
                {"id": "A", "src": "a.mp4", "start": 0, "duration": 5},
                {"id": "B", "src": "b.mp4", "start": 5, "duration": 5},
            ]}],
            "transitions": [{"type": "zoom", "duration": 1, "fromClip": "A", "toClip": "B"}],
        })
        (w,) = comp.transitions["main"]
        assert w.type == "zoom"
        assert w.explicit

    def test_unknown_track(self):
        from vidcompose.errors import CompilationError
        with pytest.raises(CompilationError) as exc:
            _compose({
                "tracks": [{"id": "main", "clips": [{"text": "a", "duration": 2}]}],
                "transitions": [{"type": "fade", "track": "nowhere"}],
            })
        assert exc.value.code == "UNKNOWN_TRACK"


class TestSync:

    def test_sync_duration_and_dict(self):
        comp = _compose({"tracks": [
            {"clips": [{"text": "a", "start": 0, "duration": 4}]},
            {"clips": [{"text": "b", "start": 2, "duration": 5}]},
        ]})
        d = comp.to_dict()
        assert d["syncDuration"] == pytest.approx(7.0)
        assert set(d) == {"order", "audioTracks", "blendingRules", "transitions", "syncDuration"}
