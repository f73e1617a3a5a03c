"""Render job executor — one job from raw payload to published output.

Phases and their progress ranges:

    validate       0-10   normalize the raw timeline
    merge         10-20   check merge-field contracts, substitute placeholders
    assets        20-40   download / rasterize / probe in parallel
    render        40-90   compile the filter graph, run ffmpeg
    publish       90-100  upload the output, build the result

Structural, contract and compilation errors fail the job at once. Renderer
failures are retried with exponential backoff; every attempt renders into
its own temp directory, removed on every exit path.
"""

from __future__ import annotations

import shutil
import tempfile
import time
import traceback
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from vidcompose.errors import (
    CompilationError,
    JobCancelledError,
    RenderError,
    RenderTimeoutError,
    VidcomposeError,
)
from vidcompose.render.assets import AssetCache, AssetReport, prepare_assets
from vidcompose.render.command import OutputSettings, build_ffmpeg_command
from vidcompose.render.filter_graph import FilterGraph, build_filter_graph
from vidcompose.render.html_raster import HtmlRasterizer
from vidcompose.render.jobs import Job, JobError
from vidcompose.render.queue import RenderQueue
from vidcompose.render.renderer import FFmpegRenderer
from vidcompose.render.storage import LocalOutputStore, OutputStore
from vidcompose.render.webhooks import WebhookNotifier, dispatch_terminal
from vidcompose.timeline.composer import Composition, compose_timeline
from vidcompose.timeline.merge_fields import MergeReport, resolve_merge_fields, validate_merge_fields
from vidcompose.timeline.models import Timeline
from vidcompose.timeline.normalizer import normalize_timeline
from vidcompose.utils.config import AppConfig
from vidcompose.utils.logging import debug, error, info, job_context, render_log, success, warn

PHASES: dict[str, tuple[float, float]] = {
    "validate": (0.0, 10.0),
    "merge": (10.0, 20.0),
    "assets": (20.0, 40.0),
    "render": (40.0, 90.0),
    "publish": (90.0, 100.0),
}


def backoff_delay(attempt: int, base: float = 2.0, cap: float = 32.0) -> float:
    """Delay before retry number ``attempt`` (1-based): ``min(base * 2^(n-1), cap)``."""
    return min(base * 2 ** (attempt - 1), cap)


def _pick(payload: dict[str, Any], *keys: str, default: Any = None) -> Any:
    for k in keys:
        if payload.get(k) is not None:
            return payload[k]
    return default


def output_settings_from_payload(raw: Any, cfg: AppConfig) -> OutputSettings:
    """Config defaults overlaid with the submission's ``output`` block.

    Accepts ``resolution: {width, height}`` as well as flat width/height.
    """
    if isinstance(raw, OutputSettings):
        return raw
    raw = dict(raw or {})
    res = raw.pop("resolution", None)
    if isinstance(res, dict):
        raw.setdefault("width", res.get("width"))
        raw.setdefault("height", res.get("height"))
    return OutputSettings.from_config(cfg.output, **raw)


class RenderExecutor:
    """Runs jobs taken from a ``RenderQueue``; safe to share between worker threads.

    The wait between retries ends early when the job is cancelled. ``sleep``
    replaces that wait.
    """

    def __init__(
        self,
        config: AppConfig | None = None,
        cache: AssetCache | None = None,
        renderer: FFmpegRenderer | None = None,
        store: OutputStore | None = None,
        notifier: WebhookNotifier | None = None,
        rasterizer: HtmlRasterizer | None = None,
        queue: RenderQueue | None = None,
        sleep: Callable[[float], None] | None = None,
        temp_root: str | Path | None = None,
    ):
        self.config = config or AppConfig()
        cfg = self.config
        self.cache = cache or AssetCache.from_config(cfg.assets)
        self.renderer = renderer or FFmpegRenderer(timeout=cfg.rendering.timeout_seconds)
        self.store = store or LocalOutputStore.from_config(cfg.storage)
        self.notifier = notifier
        if rasterizer is None and cfg.assets.html_rasterize:
            rasterizer = HtmlRasterizer(Path(cfg.assets.cache_dir) / "html",
                                        cfg.timeline.default_width, cfg.timeline.default_height)
        self.rasterizer = rasterizer
        self.queue = queue
        self._sleep = sleep
        self.temp_root = str(temp_root) if temp_root else None

    # ── progress ──

    def _advance(self, job: Job, phase: str, frac: float = 0.0) -> None:
        lo, hi = PHASES[phase]
        job.advance(lo + (hi - lo) * max(0.0, min(1.0, frac)), phase)
        if self.queue is not None:
            self.queue.publish(job, "progress")

    def _check_cancel(self, job: Job) -> None:
        if job.cancelled:
            raise JobCancelledError("Job cancelled")

    # ── entry point ──

    def execute(self, job: Job) -> Job:
        """Run ``job`` (already ``processing``) to a terminal state and return it."""
        with job_context(job.id):
            t0 = time.monotonic()
            info(f"[executor] Job {job.id} started (max_attempts={job.max_attempts})")
            try:
                result = self._run(job)
            except JobCancelledError as e:
                warn(f"[executor] Job {job.id} cancelled")
                job.fail(JobError.from_exception(e))
            except VidcomposeError as e:
                error(f"[executor] Job {job.id} failed [{e.code}]: {e.message}")
                job.fail(JobError.from_exception(e))
            except Exception as e:
                error(f"[executor] Job {job.id} crashed: {e}\n{traceback.format_exc()}")
                job.fail(JobError.from_exception(e))
            else:
                job.complete(result)
                success(f"[executor] Job {job.id} completed in {time.monotonic() - t0:.1f}s "
                        f"→ {result.get('url')}")
            dispatch_terminal(job, self.notifier)
            if self.queue is not None:
                self.queue.publish(job, "terminal")
        return job

    def _run(self, job: Job) -> dict[str, Any]:
        payload = job.payload
        cfg = self.config

        # validate
        self._advance(job, "validate")
        normalized = normalize_timeline(payload.get("timeline"), cfg.timeline)
        timeline = normalized.timeline
        for w in normalized.warnings:
            debug(f"[executor] {w}")
        self._advance(job, "validate", 1.0)

        # merge
        values = _pick(payload, "merge_fields", "mergeFields", default={})
        specs = _pick(payload, "merge_field_specs", "mergeFieldSpecs")
        validate_merge_fields(values, specs)
        merged = resolve_merge_fields(timeline, values, specs, cfg.timeline)
        timeline = merged.timeline
        if merged.report.unresolved:
            warn(f"[executor] Unresolved merge fields left verbatim: {merged.report.unresolved}")
        self._advance(job, "merge", 1.0)
        self._check_cancel(job)

        output = output_settings_from_payload(payload.get("output"), cfg)
        composition = compose_timeline(timeline, cfg.timeline)

        # assets
        self._advance(job, "assets")
        report = prepare_assets(timeline, self.cache, self.rasterizer, ffprobe_bin=self._ffprobe_bin())
        self._advance(job, "assets", 1.0)
        self._check_cancel(job)

        try:
            graph = build_filter_graph(composition, report.paths, output, report.media)
        except CompilationError as e:
            _with_asset_reason(e, report)
            raise

        return self._render_with_retries(job, timeline, graph, output)

    def _ffprobe_bin(self) -> str:
        ffmpeg = self.config.rendering.ffmpeg_bin
        return ffmpeg[: -len("ffmpeg")] + "ffprobe" if ffmpeg.endswith("ffmpeg") else "ffprobe"

    # ── render + publish ──

    def _render_with_retries(self, job: Job, timeline: Timeline, graph: FilterGraph,
                             output: OutputSettings) -> dict[str, Any]:
        wcfg = self.config.worker
        base = job.backoff_base if job.backoff_base is not None else wcfg.backoff_base
        while True:
            attempt = job.begin_attempt()
            try:
                return self._attempt(job, attempt, timeline, graph, output)
            except RenderTimeoutError:
                raise
            except RenderError as e:
                if attempt >= job.max_attempts:
                    error(f"[executor] Render failed after {attempt} attempt(s)")
                    raise
                delay = backoff_delay(attempt, base, wcfg.backoff_cap)
                warn(f"[executor] Attempt {attempt}/{job.max_attempts} failed: {e.message}; "
                     f"retrying in {delay:g}s")
                if self._sleep is None:
                    job.cancel_event.wait(delay)
                else:
                    self._sleep(delay)
                self._check_cancel(job)

    def _attempt(self, job: Job, attempt: int, timeline: Timeline, graph: FilterGraph,
                 output: OutputSettings) -> dict[str, Any]:
        rcfg = self.config.rendering
        tmp = Path(tempfile.mkdtemp(prefix=f"render-{job.id}-a{attempt}-", dir=self.temp_root))
        try:
            out_path = tmp / f"{job.id}.{output.extension}"
            cmd = build_ffmpeg_command(graph, output, out_path, rcfg.ffmpeg_bin, rcfg.preset)
            render_log(f"Job {job.id} attempt {attempt}: {' '.join(cmd[:3])} ... → {out_path.name}")
            self._advance(job, "render")
            self.renderer.render(
                cmd, graph.duration,
                progress_cb=lambda frac: self._advance(job, "render", frac),
                cancel=job.cancel_event,
                output_path=out_path,
                description=f"render {job.id}",
            )
            self._check_cancel(job)
            return self._publish(job, out_path, timeline, graph, output)
        finally:
            shutil.rmtree(tmp, ignore_errors=True)

    def _publish(self, job: Job, out_path: Path, timeline: Timeline, graph: FilterGraph,
                 output: OutputSettings) -> dict[str, Any]:
        self._advance(job, "publish")
        client_id = str(_pick(job.payload, "client_id", "clientId", default="default"))
        key = LocalOutputStore.make_key(client_id, job.id, output.extension)
        size = out_path.stat().st_size
        metadata = {
            "jobId": job.id,
            "clientId": client_id,
            "format": output.format,
            "width": graph.width,
            "height": graph.height,
            "fps": graph.fps,
            "duration": graph.duration,
            "sizeBytes": size,
            "clips": timeline.clip_count,
            "attempts": job.attempts_made,
        }
        url = self.store.upload(out_path, key, metadata)
        self._advance(job, "publish", 1.0)
        return {"url": url, "key": key, **{k: v for k, v in metadata.items() if k != "jobId"}}


def _with_asset_reason(exc: CompilationError, report: AssetReport) -> None:
    """Attach the recorded fetch failure to a ``MISSING_ASSET`` error."""
    if exc.code != "MISSING_ASSET":
        return
    key = exc.details.get("source") or (f"html:{exc.details['clip']}" if "clip" in exc.details else "")
    reason = report.failures.get(key)
    if reason:
        exc.details["reason"] = reason
        exc.message = f"{exc.message} ({reason})"


@dataclass
class CompiledRender:
    timeline: Timeline
    composition: Composition
    graph: FilterGraph
    output: OutputSettings
    command: list[str]
    merge_report: MergeReport


def compile_render(
    raw_timeline: Any,
    merge_values: dict[str, Any] | None = None,
    merge_specs: Any = None,
    output: Any = None,
    config: AppConfig | None = None,
    assets: dict[str, str | Path] | None = None,
    out_path: str | Path | None = None,
) -> CompiledRender:
    """Validate, merge, compose and compile without fetching or rendering.

    Sources are used verbatim unless ``assets`` is given; video audio is left
    out because nothing is probed.
    """
    cfg = config or AppConfig()
    timeline = normalize_timeline(raw_timeline, cfg.timeline).timeline
    values = merge_values or {}
    validate_merge_fields(values, merge_specs)
    merged = resolve_merge_fields(timeline, values, merge_specs, cfg.timeline)
    settings = output_settings_from_payload(output, cfg)
    composition = compose_timeline(merged.timeline, cfg.timeline)
    graph = build_filter_graph(composition, assets, settings)
    target = Path(out_path) if out_path else Path(f"output.{settings.extension}")
    cmd = build_ffmpeg_command(graph, settings, target, cfg.rendering.ffmpeg_bin, cfg.rendering.preset)
    return CompiledRender(merged.timeline, composition, graph, settings, cmd, merged.report)
