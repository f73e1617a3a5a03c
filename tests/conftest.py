"""Shared test fixtures.

Provides:
- Sample timeline dicts with local image assets
- Isolated AppConfig (cache, outputs and temp dirs under tmp_path)
- A fake renderer that writes the output file instead of running ffmpeg
- FastAPI TestClient wired to that renderer
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from fastapi.testclient import TestClient


# ── Seed data ────────────────────────────────────────────────────────────────

SAMPLE_TIMELINE = {
    "resolution": {"width": 1280, "height": 720},
    "frameRate": 30,
    "background": "#101010",
    "tracks": [
        {
            "id": "main",
            "type": "video",
            "clips": [
                {"id": "intro", "type": "image", "src": "intro.png", "start": 0, "duration": 4},
                {"id": "body", "type": "image", "src": "body.png", "start": 3.5, "duration": 4},
            ],
        },
        {
            "id": "titles",
            "type": "text",
            "clips": [
                {"id": "title", "type": "text", "text": "{{title}}", "start": 0, "duration": 5},
            ],
        },
    ],
}


@pytest.fixture
def sample_timeline():
    """Return a deep copy of the sample timeline (relative asset paths)."""
    return json.loads(json.dumps(SAMPLE_TIMELINE))


@pytest.fixture
def asset_dir(tmp_path):
    """Directory with small placeholder image files referenced by ``local_timeline``."""
    d = tmp_path / "assets"
    d.mkdir()
    for name in ("intro.png", "body.png"):
        (d / name).write_bytes(b"\x89PNG\r\n\x1a\n" + b"\x00" * 64)
    return d


@pytest.fixture
def local_timeline(sample_timeline, asset_dir):
    """Sample timeline whose image sources point at real files."""
    for clip in sample_timeline["tracks"][0]["clips"]:
        clip["src"] = str(asset_dir / clip["src"])
    return sample_timeline


# ── Config isolation ─────────────────────────────────────────────────────────

@pytest.fixture
def app_config(tmp_path):
    """AppConfig with every writable directory under tmp_path."""
    from vidcompose.utils.config import AppConfig

    return AppConfig(
        assets={"cache_dir": str(tmp_path / "cache"), "html_rasterize": False},
        storage={"output_dir": str(tmp_path / "outputs"), "public_base_url": "/data/outputs"},
        worker={"concurrency": 1, "max_attempts": 5, "poll_interval": 0.05},
    )


@pytest.fixture
def temp_root(tmp_path):
    d = tmp_path / "tmp"
    d.mkdir()
    return d


# ── Fake renderer ────────────────────────────────────────────────────────────

class FakeRenderer:
    """Stands in for ``FFmpegRenderer``: records commands, writes the output file.

    The first ``fail_times`` calls raise ``error`` (default: a RenderError).
    """

    def __init__(self, fail_times: int = 0, error: Exception | None = None, payload: bytes = b"\x00" * 2048):
        self.fail_times = fail_times
        self.error = error
        self.payload = payload
        self.calls: list[list[str]] = []
        self.work_dirs: list[Path] = []
        self.on_render = None

    def render(self, cmd, duration, progress_cb=None, cancel=None, output_path=None, description="render"):
        from vidcompose.errors import RenderError

        self.calls.append(list(cmd))
        self.work_dirs.append(Path(output_path).parent)
        if self.on_render is not None:
            self.on_render(cancel)
        if len(self.calls) <= self.fail_times:
            raise self.error or RenderError("ffmpeg exited with 1", returncode=1, stderr="boom")
        if progress_cb:
            progress_cb(0.5)
            progress_cb(1.0)
        Path(output_path).write_bytes(self.payload)


@pytest.fixture
def fake_renderer():
    return FakeRenderer()


@pytest.fixture
def renderer_factory():
    """``FakeRenderer`` itself, for tests that need failing renders."""
    return FakeRenderer


@pytest.fixture
def make_executor(app_config, temp_root):
    """Factory for a RenderExecutor wired to a fake renderer and a recording sleep.

    ``real_sleep=True`` keeps the executor's own cancellable wait.
    Returns ``(executor, queue, sleeps)``.
    """
    from vidcompose.render.executor import RenderExecutor
    from vidcompose.render.queue import RenderQueue

    def _make(renderer=None, notifier=None, config=None, real_sleep=False):
        sleeps: list[float] = []
        queue = RenderQueue(default_attempts=(config or app_config).worker.max_attempts, notifier=notifier)
        executor = RenderExecutor(
            config or app_config,
            renderer=renderer or FakeRenderer(),
            notifier=notifier,
            queue=queue,
            sleep=None if real_sleep else sleeps.append,
            temp_root=temp_root,
        )
        return executor, queue, sleeps

    return _make


# ── TestClient ───────────────────────────────────────────────────────────────

@pytest.fixture
def client(app_config, fake_renderer, temp_root):
    """FastAPI TestClient whose services use the fake renderer; workers not started."""
    from main import app
    from vidcompose.api import tasks

    with TestClient(app, raise_server_exceptions=False) as c:
        tasks.init_services(app_config, start_workers=False, renderer=fake_renderer, temp_root=temp_root)
        yield c
