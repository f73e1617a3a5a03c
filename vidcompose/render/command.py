"""Output settings and the final ffmpeg command line for a compiled graph."""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from vidcompose.render.filter_graph import FilterGraph, FilterNode
from vidcompose.utils.config import OutputConfig

OutputFormat = Literal["mp4", "webm", "mov", "gif"]
Quality = Literal["low", "medium", "high", "ultra"]

CRF_BY_QUALITY: dict[str, int] = {"low": 28, "medium": 23, "high": 18, "ultra": 15}
# libvpx-vp9 uses a 0-63 scale
VP9_CRF_BY_QUALITY: dict[str, int] = {"low": 40, "medium": 33, "high": 24, "ultra": 18}

GIF_LABEL = "gif_out"


class OutputSettings(BaseModel):
    """Encoder settings for one render. Width/height/fps default to the timeline's."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    format: OutputFormat = "mp4"
    width: int | None = Field(default=None, ge=16, le=7680)
    height: int | None = Field(default=None, ge=16, le=4320)
    fps: int | None = Field(default=None, ge=1, le=120)
    bitrate: str | None = None
    codec: str = "libx264"
    quality: Quality = "high"
    audio_codec: str = Field(default="aac", alias="audioCodec")
    audio_bitrate: str = Field(default="192k", alias="audioBitrate")

    @classmethod
    def from_config(cls, cfg: OutputConfig, **overrides) -> OutputSettings:
        data = {
            "format": cfg.format, "width": cfg.width, "height": cfg.height, "fps": cfg.fps,
            "bitrate": cfg.bitrate, "codec": cfg.codec, "quality": cfg.quality,
            "audio_codec": cfg.audio_codec, "audio_bitrate": cfg.audio_bitrate,
        }
        data.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**data)

    @property
    def crf(self) -> int:
        table = VP9_CRF_BY_QUALITY if self.format == "webm" else CRF_BY_QUALITY
        return table[self.quality]

    @property
    def has_audio(self) -> bool:
        return self.format != "gif"

    @property
    def extension(self) -> str:
        return self.format


def _gif_tail(graph: FilterGraph) -> list[FilterNode]:
    return [
        FilterNode([graph.video_label], "split", None, "gif_a", role="gif", extra_outputs=["gif_b"]),
        FilterNode(["gif_a"], "palettegen", None, "gif_pal", role="gif"),
        FilterNode(["gif_b", "gif_pal"], "paletteuse", None, GIF_LABEL, role="gif"),
        FilterNode([graph.audio_label], "anullsink", None, "", role="gif"),
    ]


def _video_codec_args(output: OutputSettings, preset: str) -> list[str]:
    if output.format == "webm":
        args = ["-c:v", "libvpx-vp9", "-crf", str(output.crf), "-b:v", output.bitrate or "0",
                "-row-mt", "1", "-pix_fmt", "yuv420p"]
        return args
    args = ["-c:v", output.codec, "-preset", preset, "-crf", str(output.crf), "-pix_fmt", "yuv420p"]
    if output.bitrate:
        args += ["-maxrate", output.bitrate, "-bufsize", _double_rate(output.bitrate)]
    return args


def _double_rate(rate: str) -> str:
    r = rate.strip()
    unit = r[-1] if r and r[-1].isalpha() else ""
    number = r[:-1] if unit else r
    try:
        return f"{float(number) * 2:g}{unit}"
    except ValueError:
        return r


def _audio_codec_args(output: OutputSettings) -> list[str]:
    codec = "libopus" if output.format == "webm" else output.audio_codec
    return ["-c:a", codec, "-b:a", output.audio_bitrate, "-ar", "48000", "-ac", "2"]


def build_ffmpeg_command(
    graph: FilterGraph,
    output: OutputSettings,
    out_path: Path,
    ffmpeg_bin: str = "ffmpeg",
    preset: str = "medium",
) -> list[str]:
    """Complete ffmpeg argv for one render: inputs, filter_complex, maps, codecs."""
    nodes = list(graph.nodes)
    if output.format == "gif":
        nodes += _gif_tail(graph)
        fc_graph = replace(graph, nodes=nodes)
        maps = ["-map", f"[{GIF_LABEL}]"]
    else:
        fc_graph = graph
        maps = ["-map", f"[{graph.video_label}]", "-map", f"[{graph.audio_label}]"]

    cmd = [ffmpeg_bin, "-y", "-hide_banner"]
    cmd.extend(graph.input_args())
    cmd.extend(["-filter_complex", fc_graph.to_filter_complex()])
    cmd.extend(maps)

    if output.format == "gif":
        cmd.extend(["-loop", "0", "-an"])
    else:
        cmd.extend(_video_codec_args(output, preset))
        cmd.extend(_audio_codec_args(output))
        if output.format in ("mp4", "mov"):
            cmd.extend(["-movflags", "+faststart"])

    cmd.extend(["-r", str(graph.fps), "-t", f"{graph.duration:.3f}"])
    cmd.append(str(out_path))
    return cmd
