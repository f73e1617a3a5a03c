"""Tests for filter-graph compilation: labels, inputs, clip kinds, audio, invariants."""

from __future__ import annotations

import pytest


# ── Helper factories ──────────────────────────────────────────────────────────

def _graph(raw: dict, assets=None, output=None, media_info=None):
    from vidcompose.render.filter_graph import build_filter_graph
    from vidcompose.timeline.composer import compose_timeline
    from vidcompose.timeline.normalizer import normalize_timeline
    comp = compose_timeline(normalize_timeline(raw).timeline)
    return build_filter_graph(comp, assets, output, media_info)


def _one_track(*clips, **extra) -> dict:
    return {"resolution": {"width": 640, "height": 360}, "tracks": [{"id": "main", "clips": list(clips)}], **extra}


# ── Skeleton ──────────────────────────────────────────────────────────────────

class TestGraphSkeleton:
    """Every graph has a base canvas, a silence source and two final labels."""

    def test_base_inputs_and_finals(self):
        from vidcompose.render.filter_graph import AUDIO_LABEL, VIDEO_LABEL
        g = _graph(_one_track({"text": "Hi", "duration": 3}, background="#202020"))
        assert g.inputs[0].kind == "lavfi"
        assert g.inputs[0].path.startswith("color=c=0x202020:s=640x360:r=30:d=3")
        assert g.inputs[1].path.startswith("anullsrc")
        fc = g.to_filter_complex()
        assert f"[{VIDEO_LABEL}]" in fc
        assert f"[{AUDIO_LABEL}]" in fc
        finals = g.nodes_with_role("final")
        assert {n.output for n in finals} == {VIDEO_LABEL, AUDIO_LABEL}

    def test_output_overrides_size_and_fps(self):
        from vidcompose.render.command import OutputSettings
        g = _graph(_one_track({"text": "Hi", "duration": 2}), output=OutputSettings(width=321, height=240, fps=24))
        assert (g.width, g.height, g.fps) == (322, 240, 24)
        assert "s=322x240:r=24" in g.inputs[0].path

    def test_duration_matches_timeline(self):
        g = _graph(_one_track({"text": "a", "start": 1, "duration": 6.5}))
        assert g.duration == pytest.approx(7.5)

    def test_graph_validates(self):
        g = _graph(_one_track(
            {"id": "A", "type": "image", "src": "a.png", "start": 0, "duration": 4},
            {"id": "B", "type": "image", "src": "b.png", "start": 3, "duration": 4},
        ))
        g.validate()


# ── Clip kinds ────────────────────────────────────────────────────────────────

class TestClipKinds:

    def test_direct_text_is_drawtext_on_running_label(self):
        g = _graph(_one_track({"text": "Hello: world", "duration": 3, "color": "yellow"}))
        (node,) = g.nodes_with_role("text")
        assert node.op == "drawtext"
        assert node.inputs == ["0:v"]
        rendered = node.render()
        assert "Hello\\: world" in rendered
        assert "fontcolor=0xffff00" in rendered
        assert "between(t,0,3)" in rendered

    def test_rotated_text_gets_own_layer(self):
        g = _graph(_one_track({"text": "Tilt", "duration": 3, "rotation": 15}))
        assert g.nodes_with_role("source")
        assert g.nodes_with_role("rotate")
        assert g.nodes_with_role("overlay")

    def test_layered_text_position_applied_once(self):
        g = _graph(_one_track({
            "text": "Hi", "duration": 3, "position": {"x": 100, "y": 50},
            "effects": [{"type": "blur"}],
        }))
        (text,) = g.nodes_with_role("text")
        assert (text.params["x"], text.params["y"]) == ("0", "0")
        (ov,) = g.nodes_with_role("overlay")
        assert (ov.params["x"], ov.params["y"]) == ("100", "50")
        assert g.to_filter_complex().count("x=100") == 1

    def test_layered_text_without_position_is_centred(self):
        g = _graph(_one_track({"text": "Hi", "duration": 3, "scale": 2}))
        (text,) = g.nodes_with_role("text")
        assert text.params["x"] == "(w-text_w)/2"
        (ov,) = g.nodes_with_role("overlay")
        assert ov.params["x"] == "(W-w)/2"

    def test_image_clip_is_looped_input(self):
        g = _graph(_one_track({"type": "image", "src": "photo.jpg", "start": 2, "duration": 3}))
        img = g.inputs[2]
        assert img.path == "photo.jpg"
        assert img.options[:2] == ["-loop", "1"]
        assert any(n.op == "setpts" and "+2/TB" in n.render() for n in g.nodes)
        (ov,) = g.nodes_with_role("overlay")
        assert "between(t,2,5)" in ov.render()

    def test_video_clip_trim(self):
        g = _graph(_one_track({"src": "clip.mp4", "duration": 4, "trim": {"start": 1.5, "end": 3.5}}))
        trim = next(n for n in g.nodes if n.op == "trim")
        assert trim.params == {"start": 1.5, "duration": 2.0}

    def test_shape_and_background_use_color_sources(self):
        g = _graph({"tracks": [
            {"type": "background", "clips": [{"color": "navy", "duration": 2}]},
            {"type": "overlay", "clips": [{"type": "shape", "color": "red", "width": 101, "height": 50, "duration": 2}]},
        ]})
        sources = [n.render() for n in g.nodes_with_role("source")]
        assert any("s=102x50" in s and "0xff0000" in s for s in sources)

    def test_position_and_opacity(self):
        g = _graph(_one_track({
            "type": "image", "src": "a.png", "duration": 2,
            "position": {"x": 10, "y": 20}, "opacity": 0.5, "scale": 0.5,
        }))
        (ov,) = g.nodes_with_role("overlay")
        assert "x=10:y=20" in ov.render()
        assert g.nodes_with_role("opacity")[0].params == {"aa": 0.5}
        assert g.nodes_with_role("scale")

    def test_effects_in_order(self):
        g = _graph(_one_track({
            "type": "image", "src": "a.png", "duration": 2,
            "effects": [{"type": "blur", "strength": 0.5}, {"type": "grayscale"}],
        }))
        assert [n.role for n in g.nodes_with_role("effect:")] == ["effect:blur", "effect:grayscale"]
        assert g.nodes_with_role("effect:blur")[0].op == "gblur"

    def test_layer_chain_order(self):
        g = _graph(_one_track({
            "type": "image", "src": "a.png", "duration": 2, "scale": 0.5, "rotation": 30,
            "opacity": 0.5, "effects": [{"type": "blur"}],
        }))
        wanted = ("scale", "effect:blur", "rotate", "opacity", "overlay")
        assert [n.role for n in g.nodes if n.role in wanted] == list(wanted)

    def test_unknown_effect(self):
        from vidcompose.errors import CompilationError
        with pytest.raises(CompilationError) as exc:
            _graph(_one_track({"type": "image", "src": "a.png", "duration": 2, "effects": ["melt"]}))
        assert exc.value.code == "UNKNOWN_EFFECT"

    def test_html_clip_without_raster_is_missing_asset(self):
        from vidcompose.errors import CompilationError
        with pytest.raises(CompilationError) as exc:
            _graph(_one_track({"id": "h", "type": "html", "html": "<b>x</b>", "duration": 2}), assets={})
        assert exc.value.code == "MISSING_ASSET"
        assert exc.value.details == {"clip": "h"}

    def test_html_clip_uses_rasterized_asset(self):
        g = _graph(
            _one_track({"id": "h", "type": "html", "html": "<b>x</b>", "duration": 2}),
            assets={"html:h": "/tmp/h.png"},
        )
        assert g.inputs[2].path == "/tmp/h.png"


# ── Assets / inputs ───────────────────────────────────────────────────────────

class TestInputs:

    def test_assets_map_sources_to_local_files(self):
        g = _graph(
            _one_track({"type": "image", "src": "https://cdn.example.com/a.png", "duration": 2}),
            assets={"https://cdn.example.com/a.png": "/cache/abc.png"},
        )
        assert g.inputs[2].path == "/cache/abc.png"

    def test_missing_asset(self):
        from vidcompose.errors import CompilationError
        with pytest.raises(CompilationError) as exc:
            _graph(_one_track({"type": "image", "src": "https://x/a.png", "duration": 2}), assets={})
        assert exc.value.code == "MISSING_ASSET"
        assert exc.value.details["source"] == "https://x/a.png"

    def test_shared_input_is_split(self):
        g = _graph(_one_track(
            {"type": "image", "src": "same.png", "start": 0, "duration": 2},
            {"type": "image", "src": "same.png", "start": 5, "duration": 3},
        ))
        assert len(g.inputs) == 3
        (split,) = g.nodes_with_role("split")
        assert split.op == "split"
        assert split.inputs == ["2:v"]
        assert split.outputs == ["s2v0", "s2v1"]
        g.validate()

    def test_identical_chains_built_once(self):
        g = _graph(_one_track(
            {"type": "image", "src": "same.png", "start": 0, "duration": 2},
            {"type": "image", "src": "same.png", "start": 5, "duration": 2},
        ))
        (trim,) = [n for n in g.nodes if n.op == "trim"]
        assert trim.inputs == ["2:v"]
        (split,) = g.nodes_with_role("split")
        assert split.inputs == [trim.output]
        assert len(split.outputs) == 2
        assert len([n for n in g.nodes if n.op == "setpts"]) == 2
        g.validate()


# ── Transitions ───────────────────────────────────────────────────────────────

class TestTransitions:

    def test_dissolve_overlay_role(self):
        g = _graph(_one_track(
            {"id": "A", "type": "image", "src": "a.png", "start": 0, "duration": 10},
            {"id": "B", "type": "image", "src": "b.png", "start": 9, "duration": 10},
        ))
        overlays = g.nodes_with_role("transition:")
        assert [n.role for n in overlays] == ["transition:dissolve"]
        geq = next(n for n in g.nodes if n.op == "geq")
        assert "clip((T-9)/1,0,1)" in geq.params["a"]

    def test_text_fade_on_drawtext(self):
        g = _graph({"tracks": [{"type": "text", "clips": [
            {"id": "a", "text": "one", "start": 0, "duration": 3},
            {"id": "b", "text": "two", "start": 2.5, "duration": 3},
        ]}]})
        (node,) = g.nodes_with_role("transition:fade")
        assert node.op == "drawtext"
        assert "alpha=" in node.render()

    def test_slide_animation_moves_overlay(self):
        g = _graph(_one_track({
            "type": "image", "src": "a.png", "duration": 3,
            "animations": [{"type": "slideIn", "duration": 1, "direction": "left"}],
        }))
        (ov,) = g.nodes_with_role("overlay")
        assert "-w" in ov.params["x"]

    def test_fade_out_counts_back_from_end(self):
        g = _graph(_one_track({
            "type": "image", "src": "a.png", "start": 2, "duration": 4,
            "animations": [{"type": "fadeOut", "duration": 1}],
        }))
        (fade,) = g.nodes_with_role("animation")
        assert fade.params == {"t": "out", "st": 5.0, "d": 1.0, "alpha": 1}


# ── Audio ─────────────────────────────────────────────────────────────────────

class TestAudio:

    def test_audio_clip_mixed(self):
        g = _graph({"tracks": [{"id": "music", "type": "audio", "clips": [
            {"src": "song.mp3", "start": 1.5, "duration": 4, "volume": 0.5},
        ]}]})
        adelay = next(n for n in g.nodes if n.op == "adelay")
        assert adelay.params == "1500|1500"
        assert g.nodes_with_role("volume")[0].params == {"volume": 0.5}
        final = next(n for n in g.nodes_with_role("final") if n.op == "amix")
        assert final.params["inputs"] == 2

    def test_video_audio_only_when_probed(self):
        from vidcompose.render.probe import MediaInfo
        raw = _one_track({"src": "clip.mp4", "duration": 3})
        silent = _graph(raw)
        assert not any(n.inputs == ["2:a"] for n in silent.nodes)
        with_audio = _graph(raw, media_info={"clip.mp4": MediaInfo(has_video=True, has_audio=True)})
        assert any("2:a" in n.inputs or any(i.startswith("s2a") for i in n.inputs) for n in with_audio.nodes)

    def test_soundtrack(self):
        g = _graph(_one_track({"text": "a", "duration": 10}, soundtrack={"src": "bed.mp3", "fadeOut": 2}))
        assert g.inputs[2].path == "bed.mp3"
        fades = [n.params for n in g.nodes if n.op == "afade"]
        assert {"t": "out", "st": 8.0, "d": 2.0} in fades

    def test_tracks_with_several_clips_get_submix(self):
        g = _graph({"tracks": [{"id": "vo", "type": "audio", "clips": [
            {"src": "a.mp3", "start": 0, "duration": 2},
            {"src": "b.mp3", "start": 3, "duration": 2},
        ]}]})
        (mix,) = g.nodes_with_role("mix:vo")
        assert mix.params["inputs"] == 2

    def test_identical_audio_chains_share_one_asplit(self):
        g = _graph({"tracks": [{"id": "vo", "type": "audio", "clips": [
            {"src": "a.mp3", "start": 0, "duration": 2},
            {"src": "a.mp3", "start": 3, "duration": 2},
        ]}]})
        assert len([n for n in g.nodes if n.op == "atrim" and n.inputs == ["2:a"]]) == 1
        (split,) = g.nodes_with_role("split")
        assert split.op == "asplit"
        g.validate()

    def test_fades_honour_delay_and_trim_end(self):
        g = _graph({"tracks": [{"id": "music", "type": "audio", "clips": [
            {"src": "song.mp3", "duration": 6, "trim": {"start": 1, "end": 5}, "animations": [
                {"type": "fadeIn", "duration": 1, "delay": 0.5},
                {"type": "fadeOut", "duration": 1, "delay": 0.5},
            ]},
        ]}]})
        atrim = next(n for n in g.nodes if n.op == "atrim" and n.inputs == ["2:a"])
        assert atrim.params == {"start": 1.0, "duration": 4.0}
        fades = [n.params for n in g.nodes if n.op == "afade"]
        assert {"t": "in", "st": 0.5, "d": 1.0} in fades
        assert {"t": "out", "st": 2.5, "d": 1.0} in fades


# ── Invariants / optimize ─────────────────────────────────────────────────────

class TestGraphInvariants:

    def _graph_obj(self, nodes, n_inputs=2):
        from vidcompose.render.filter_graph import FilterGraph, GraphInput
        return FilterGraph(inputs=[GraphInput(f"in{i}") for i in range(n_inputs)], nodes=nodes)

    def test_double_consumption_rejected(self):
        from vidcompose.errors import GraphInvariantError
        from vidcompose.render.filter_graph import FilterNode
        g = self._graph_obj([
            FilterNode(["0:v"], "null", None, "a"),
            FilterNode(["a"], "format", "yuv420p", "final_video"),
            FilterNode(["a"], "null", None, "x"),
            FilterNode(["1:a"], "anull", None, "final_audio"),
        ])
        with pytest.raises(GraphInvariantError):
            g.validate()

    def test_missing_input_rejected(self):
        from vidcompose.errors import GraphInvariantError
        from vidcompose.render.filter_graph import FilterNode
        g = self._graph_obj([
            FilterNode(["5:v"], "format", "yuv420p", "final_video"),
            FilterNode(["1:a"], "anull", None, "final_audio"),
        ])
        with pytest.raises(GraphInvariantError, match="missing input"):
            g.validate()

    def test_dangling_label_rejected(self):
        from vidcompose.errors import GraphInvariantError
        from vidcompose.render.filter_graph import FilterNode
        g = self._graph_obj([
            FilterNode(["0:v"], "format", "yuv420p", "final_video"),
            FilterNode(["1:a"], "anull", None, "final_audio"),
            FilterNode([], "color", "c=red", "orphan"),
        ])
        with pytest.raises(GraphInvariantError, match="Dangling"):
            g.validate()

    def test_optimize_drops_passthrough(self):
        from vidcompose.render.filter_graph import FilterNode
        g = self._graph_obj([
            FilterNode(["0:v"], "null", None, "a"),
            FilterNode(["a"], "format", "yuv420p", "final_video"),
            FilterNode(["1:a"], "anull", None, "final_audio"),
        ]).optimize()
        assert [n.op for n in g.nodes] == ["format", "anull"]
        assert g.nodes[0].inputs == ["0:v"]
        g.validate()

    def test_optimize_drops_redundant_format_in_built_graph(self):
        g = _graph(_one_track({"text": "Big", "duration": 3, "scale": 2}))
        rgba = [n for n in g.nodes if n.op == "format" and n.params == {"pix_fmts": "rgba"}]
        assert len(rgba) == 1
        scale = g.nodes_with_role("scale")[0]
        (ov,) = g.nodes_with_role("overlay")
        assert ov.inputs[1] == scale.output

    def test_optimize_rewires_duplicates_through_split(self):
        from vidcompose.render.filter_graph import FilterNode
        g = self._graph_obj([
            FilterNode(["0:v"], "scale", {"w": 2, "h": 2}, "a"),
            FilterNode(["a"], "hflip", None, "b"),
            FilterNode([], "color", "c=red", "c1"),
            FilterNode([], "color", "c=red", "c2"),
            FilterNode(["c1"], "setpts", "PTS", "d"),
            FilterNode(["c2"], "setpts", "PTS+1/TB", "e"),
            FilterNode(["b", "d"], "overlay", None, "f"),
            FilterNode(["f", "e"], "overlay", None, "g"),
            FilterNode(["g"], "format", "yuv420p", "final_video"),
            FilterNode(["1:a"], "anull", None, "final_audio"),
        ]).optimize()
        assert [n.op for n in g.nodes].count("color") == 1
        (split,) = g.nodes_with_role("split")
        assert split.inputs == ["c1"]
        assert split.outputs == ["c1_s0", "c1_s1"]
        assert g.nodes[g.nodes.index(split) - 1].output == "c1"
        g.validate()


# ── Helpers ───────────────────────────────────────────────────────────────────

class TestHelpers:

    def test_ffmpeg_color(self):
        from vidcompose.render.filter_graph import ffmpeg_color
        assert ffmpeg_color("#FF0000") == "0xff0000"
        assert ffmpeg_color("#00000000") == "0x000000@0"

    def test_invalid_color(self):
        from vidcompose.errors import CompilationError
        from vidcompose.render.filter_graph import ffmpeg_color
        with pytest.raises(CompilationError):
            ffmpeg_color("not-a-color")

    def test_escape_drawtext(self):
        from vidcompose.render.filter_graph import escape_drawtext
        assert escape_drawtext("50% [off]: it's") == "50\\% \\[off\\]\\: it’s"
