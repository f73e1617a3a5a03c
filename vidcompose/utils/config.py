"""Configuration management with YAML support and pydantic models."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


class TimelineConfig(BaseModel):
    default_frame_rate: int = Field(default=30, ge=1, le=120)
    default_width: int = 1920
    default_height: int = 1080
    default_background: str = "#000000"
    min_duration: float = 1.0
    min_clip_duration: float = 0.1
    adjacency_tolerance: float = Field(default=0.5, ge=0.0)   # auto-transition gap in seconds
    max_transition_duration: float = Field(default=2.0, gt=0.0)
    default_transition_duration: float = Field(default=0.5, gt=0.0)
    max_explicit_transition: float = 10.0
    auto_transitions: bool = True
    remove_redundant_clips: bool = True


class OutputConfig(BaseModel):
    format: str = "mp4"
    width: int | None = None       # None = timeline resolution
    height: int | None = None
    fps: int | None = None         # None = timeline frame rate
    bitrate: str = "5M"
    codec: str = "libx264"
    quality: str = "high"          # low | medium | high | ultra
    audio_codec: str = "aac"
    audio_bitrate: str = "192k"


class RenderingConfig(BaseModel):
    ffmpeg_bin: str = "ffmpeg"
    ffmpeg_threads: int = 0  # 0 = auto. Env: FFMPEG_THREADS
    nice: int = 10           # Linux only, 0-19. Env: MEDIA_NICE
    max_concurrent: int = 2  # Env: MAX_MEDIA_JOBS
    timeout_seconds: int = 3600
    preset: str = "medium"


class WorkerConfig(BaseModel):
    concurrency: int = Field(default=2, ge=1)
    max_attempts: int = Field(default=5, ge=1)
    backoff_base: float = 2.0
    backoff_cap: float = 32.0
    poll_interval: float = 1.0


class AssetsConfig(BaseModel):
    cache_dir: str = "data/cache/assets"
    max_age_hours: float = 24.0
    download_timeout: float = 120.0
    max_bytes: int = 500 * 1024 * 1024
    html_rasterize: bool = True


class WebhookConfig(BaseModel):
    secret: str = ""
    max_retries: int = 3
    timeout: float = 10.0
    user_agent: str = "vidcompose-webhooks/1.0"


class StorageConfig(BaseModel):
    output_dir: str = "data/outputs"
    public_base_url: str = "/data/outputs"


class AppConfig(BaseModel):
    timeline: TimelineConfig = TimelineConfig()
    output: OutputConfig = OutputConfig()
    rendering: RenderingConfig = RenderingConfig()
    worker: WorkerConfig = WorkerConfig()
    assets: AssetsConfig = AssetsConfig()
    webhook: WebhookConfig = WebhookConfig()
    storage: StorageConfig = StorageConfig()


# env var -> dotted config key
ENV_OVERRIDES: dict[str, str] = {
    "WORKER_CONCURRENCY": "worker.concurrency",
    "WEBHOOK_SECRET": "webhook.secret",
    "FFMPEG_BIN": "rendering.ffmpeg_bin",
    "ASSET_CACHE_DIR": "assets.cache_dir",
    "OUTPUT_DIR": "storage.output_dir",
    "PUBLIC_BASE_URL": "storage.public_base_url",
}


def load_config(path: str | Path | None = None, use_env: bool = True) -> AppConfig:
    if path is None:
        candidates = [Path("config.yaml"), Path("config.yml"), Path("vidcompose.yaml")]
        for c in candidates:
            if c.exists():
                path = c
                break
    cfg = AppConfig()
    if path is not None:
        p = Path(path)
        if p.exists():
            with open(p) as f:
                data = yaml.safe_load(f) or {}
            cfg = AppConfig(**data)
    if use_env:
        cfg = merge_cli_overrides(cfg, {key: os.environ.get(env) for env, key in ENV_OVERRIDES.items()})
    return cfg


def merge_cli_overrides(cfg: AppConfig, overrides: dict[str, Any]) -> AppConfig:
    data = cfg.model_dump()
    for key, val in overrides.items():
        if val is None:
            continue
        parts = key.split(".")
        d = data
        for p in parts[:-1]:
            d = d.setdefault(p, {})
        d[parts[-1]] = val
    return AppConfig(**data)


DEFAULT_CONFIG_YAML = """\
# vidcompose configuration

timeline:
  default_frame_rate: 30
  default_width: 1920
  default_height: 1080
  default_background: "#000000"
  min_duration: 1.0            # shortest timeline ever rendered (seconds)
  adjacency_tolerance: 0.5     # gap that still triggers an implicit transition
  max_transition_duration: 2.0 # cap for implicit transitions
  default_transition_duration: 0.5
  max_explicit_transition: 10.0
  auto_transitions: true
  remove_redundant_clips: true

output:
  format: mp4                  # mp4 | webm | mov | gif
  width: null                  # null = timeline resolution
  height: null
  fps: null                    # null = timeline frameRate
  bitrate: 5M
  codec: libx264
  quality: high                # low | medium | high | ultra
  audio_codec: aac
  audio_bitrate: 192k

rendering:
  ffmpeg_bin: ffmpeg           # Env: FFMPEG_BIN
  ffmpeg_threads: 0            # 0 = auto. Env: FFMPEG_THREADS
  nice: 10                     # 0-19 (Linux only). Env: MEDIA_NICE
  max_concurrent: 2            # parallel ffmpeg processes. Env: MAX_MEDIA_JOBS
  timeout_seconds: 3600
  preset: medium

worker:
  concurrency: 2               # Env: WORKER_CONCURRENCY
  max_attempts: 5
  backoff_base: 2.0            # seconds; doubles per attempt
  backoff_cap: 32.0
  poll_interval: 1.0

assets:
  cache_dir: data/cache/assets
  max_age_hours: 24
  download_timeout: 120
  max_bytes: 524288000
  html_rasterize: true         # requires playwright + chromium

webhook:
  secret: ""                   # Env: WEBHOOK_SECRET
  max_retries: 3
  timeout: 10
  user_agent: vidcompose-webhooks/1.0

storage:
  output_dir: data/outputs
  public_base_url: /data/outputs
"""
