"""Main CLI application with typer subcommands."""

from __future__ import annotations

import json
import shutil
from enum import Enum
from pathlib import Path
from typing import Annotated, Any, Optional

import typer
from dotenv import load_dotenv
from rich.prompt import Confirm

from vidcompose.errors import VidcomposeError
from vidcompose.utils.config import DEFAULT_CONFIG_YAML, AppConfig, load_config, merge_cli_overrides
from vidcompose.utils.deps_check import check_all, print_dep_status
from vidcompose.utils.logging import (
    Verbosity,
    console,
    error,
    info,
    make_progress,
    setup_logging,
    success,
    warn,
)

load_dotenv()

app = typer.Typer(
    name="vidcompose",
    help="Compile JSON video timelines into FFmpeg filter graphs and render them.",
    rich_markup_mode="rich",
    no_args_is_help=True,
)


class Format(str, Enum):
    mp4 = "mp4"
    webm = "webm"
    mov = "mov"
    gif = "gif"


class Quality(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"
    ultra = "ultra"


# ── Helper functions ──────────────────────────────────────────────────────────

def _setup(verbose: bool = False, silent: bool = False) -> None:
    verbosity = Verbosity.SILENT if silent else (Verbosity.VERBOSE if verbose else Verbosity.NORMAL)
    setup_logging(verbosity)


def _load_timeline(path: Path) -> dict[str, Any]:
    from vidcompose.timeline.importer import JsonProjectImporter
    try:
        return JsonProjectImporter().import_project(path)
    except VidcomposeError as e:
        error(f"[{e.code}] {e.message}")
        raise typer.Exit(1)


def _load_json_option(path: Optional[Path]) -> Any:
    if path is None:
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        error(f"Cannot read {path}: {e}")
        raise typer.Exit(1)


def _report_error(e: VidcomposeError) -> None:
    error(f"[{e.code}] {e.message}")
    for item in e.details.get("errors", [])[:20]:
        console.print(f"  • {item['message'] if isinstance(item, dict) else item}")


class _FileStore:
    """Publishes the render to one fixed path instead of the storage tree."""

    def __init__(self, target: Path):
        self.target = target

    def upload(self, path: Path, key: str, metadata: dict[str, Any] | None = None) -> str:
        self.target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(path, self.target)
        return str(self.target)


# ── VALIDATE ──────────────────────────────────────────────────────────────────

@app.command()
def validate(
    timeline: Annotated[Path, typer.Argument(help="Timeline JSON file")],
    config: Annotated[Optional[Path], typer.Option("--config")] = None,
    verbose: Annotated[bool, typer.Option("--verbose", "-v")] = False,
):
    """Validate and normalize a timeline; print a summary."""
    _setup(verbose)
    from vidcompose.timeline.normalizer import normalize_timeline
    from vidcompose.timeline.placeholders import find_placeholders

    cfg = load_config(config)
    raw = _load_timeline(timeline)
    try:
        result = normalize_timeline(raw, cfg.timeline)
    except VidcomposeError as e:
        _report_error(e)
        raise typer.Exit(1)

    tl = result.timeline
    for w in result.warnings:
        warn(w)
    placeholders = sorted(find_placeholders(raw))
    success(f"Valid: {tl.duration:.2f}s, {tl.resolution.width}x{tl.resolution.height} @ {tl.frame_rate}fps, "
            f"{len(tl.tracks)} track(s), {tl.clip_count} clip(s)")
    if result.clips_removed:
        info(f"{result.clips_removed} redundant clip(s) removed")
    if placeholders:
        info(f"Merge fields referenced: {', '.join(placeholders)}")


# ── COMPILE ───────────────────────────────────────────────────────────────────

@app.command()
def compile(
    timeline: Annotated[Path, typer.Argument(help="Timeline JSON file")],
    merge: Annotated[Optional[Path], typer.Option("--merge", "-m", help="Merge field values (JSON)")] = None,
    specs: Annotated[Optional[Path], typer.Option("--specs", help="Merge field specs (JSON)")] = None,
    format: Annotated[Format, typer.Option("--format", "-f")] = Format.mp4,
    output: Annotated[Path, typer.Option("--output", "-o", help="Output path used in the command")] = Path("output.mp4"),
    as_json: Annotated[bool, typer.Option("--json", help="Print a JSON document")] = False,
    config: Annotated[Optional[Path], typer.Option("--config")] = None,
    verbose: Annotated[bool, typer.Option("--verbose", "-v")] = False,
):
    """Print the filter graph and ffmpeg command for a timeline (nothing is fetched)."""
    _setup(verbose, silent=as_json)
    from vidcompose.render.executor import compile_render

    cfg = load_config(config)
    raw = _load_timeline(timeline)
    try:
        compiled = compile_render(raw, _load_json_option(merge), _load_json_option(specs),
                                  {"format": format.value}, cfg, out_path=output)
    except VidcomposeError as e:
        _report_error(e)
        raise typer.Exit(1)

    graph = compiled.graph
    if as_json:
        console.print_json(json.dumps({
            "filterComplex": graph.to_filter_complex(),
            "command": compiled.command,
            "composition": compiled.composition.to_dict(),
            "mergeReport": compiled.merge_report.to_dict(),
        }))
        return
    console.print("[highlight]filter_complex[/highlight]")
    for node in graph.nodes:
        console.print(f"  {node.render()}", markup=False)
    console.print("[highlight]command[/highlight]")
    console.print(" ".join(compiled.command), markup=False, soft_wrap=True)
    success(f"{len(graph.inputs)} input(s), {len(graph.nodes)} filter(s), {graph.duration:.2f}s")


# ── RENDER ────────────────────────────────────────────────────────────────────

@app.command()
def render(
    timeline: Annotated[Path, typer.Argument(help="Timeline JSON file")],
    output: Annotated[Path, typer.Option("--output", "-o")] = Path("output.mp4"),
    merge: Annotated[Optional[Path], typer.Option("--merge", "-m", help="Merge field values (JSON)")] = None,
    specs: Annotated[Optional[Path], typer.Option("--specs", help="Merge field specs (JSON)")] = None,
    format: Annotated[Optional[Format], typer.Option("--format", "-f", help="Default: output suffix")] = None,
    quality: Annotated[Quality, typer.Option()] = Quality.high,
    attempts: Annotated[int, typer.Option(min=1, help="Render attempts")] = 1,
    config: Annotated[Optional[Path], typer.Option("--config")] = None,
    verbose: Annotated[bool, typer.Option("--verbose", "-v")] = False,
):
    """Render a timeline to a file with a progress bar."""
    _setup(verbose)
    from vidcompose.render.executor import RenderExecutor
    from vidcompose.render.jobs import JobState
    from vidcompose.render.queue import RenderQueue
    from vidcompose.utils.media_executor import configure_media_executor

    cfg = load_config(config)
    if not print_dep_status(check_all(cfg.rendering.ffmpeg_bin, html=cfg.assets.html_rasterize)):
        warn("Some dependencies missing — continuing with available features")
    configure_media_executor(cfg.rendering.ffmpeg_threads, cfg.rendering.nice, cfg.rendering.max_concurrent)

    fmt = format.value if format else (output.suffix.lstrip(".").lower() or "mp4")
    if fmt not in Format.__members__:
        error(f"Unsupported output format: {fmt}")
        raise typer.Exit(1)

    payload = {
        "timeline": _load_timeline(timeline),
        "output": {"format": fmt, "quality": quality.value},
        "merge_fields": _load_json_option(merge) or {},
        "merge_field_specs": _load_json_option(specs),
    }
    queue = RenderQueue(default_attempts=attempts)
    executor = RenderExecutor(cfg, store=_FileStore(output), queue=queue)

    with make_progress() as progress:
        task = progress.add_task("Rendering", total=100)

        def on_event(job, event):
            progress.update(task, completed=job.progress, description=job.stage.capitalize())

        queue.subscribe(on_event)
        queue.enqueue(payload)
        job = executor.execute(queue.take(timeout=0))

    executor.cache.close()
    if job.state is JobState.completed:
        success(f"Rendered {output} ({job.result['sizeBytes'] / (1024 * 1024):.1f} MB, "
                f"{job.attempts_made} attempt(s))")
        return
    error(f"[{job.error.code}] {job.error.message}")
    raise typer.Exit(1)


# ── CHECK ─────────────────────────────────────────────────────────────────────

@app.command()
def check(
    config: Annotated[Optional[Path], typer.Option("--config")] = None,
):
    """Check external dependencies (ffmpeg, ffprobe, playwright)."""
    setup_logging(Verbosity.NORMAL)
    cfg = load_config(config)
    if not print_dep_status(check_all(cfg.rendering.ffmpeg_bin), strict=True):
        raise typer.Exit(1)


# ── CACHE ─────────────────────────────────────────────────────────────────────

@app.command(name="cache-clean")
def cache_clean(
    max_age_hours: Annotated[Optional[float], typer.Option("--max-age", help="Hours; default from config")] = None,
    config: Annotated[Optional[Path], typer.Option("--config")] = None,
):
    """Delete cached assets older than the configured age."""
    setup_logging(Verbosity.NORMAL)
    from vidcompose.render.assets import AssetCache

    cfg: AppConfig = load_config(config)
    if max_age_hours is not None:
        cfg = merge_cli_overrides(cfg, {"assets.max_age_hours": max_age_hours})
    cache = AssetCache.from_config(cfg.assets)
    removed = cache.cleanup()
    stats = cache.stats()
    success(f"Removed {removed} file(s); {stats['files']} left ({stats['bytes'] / (1024 * 1024):.1f} MB)")


# ── INIT CONFIG ───────────────────────────────────────────────────────────────

@app.command(name="init-config")
def init_config(
    path: Annotated[Path, typer.Option("--path", "-p")] = Path("config.yaml"),
    force: Annotated[bool, typer.Option("--force")] = False,
):
    """Generate a default config.yaml."""
    setup_logging(Verbosity.NORMAL)
    if path.exists() and not force:
        if not Confirm.ask(f"{path} exists. Overwrite?", default=False):
            raise typer.Exit(0)
    path.write_text(DEFAULT_CONFIG_YAML)
    success(f"Created {path}")


# ── ENTRY POINT ───────────────────────────────────────────────────────────────

def app_entry():
    app()


if __name__ == "__main__":
    app_entry()
