"""Asset cache and per-job asset preparation.

Remote sources are downloaded once into ``assets.cache_dir`` under
``md5(url) + extension``; local paths and ``file://`` URLs are used in place.
Concurrent requests for the same URL share one download (single flight).
"""

from __future__ import annotations

import hashlib
import mimetypes
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any
from urllib.parse import unquote, urlparse

import httpx

from vidcompose.errors import AssetError
from vidcompose.render.html_raster import HtmlRasterizer
from vidcompose.render.probe import MediaInfo, probe_media
from vidcompose.timeline.models import HtmlClip, Timeline, VideoClip, clip_source, html_asset_key
from vidcompose.utils.logging import debug, info, warn

CHUNK_SIZE = 64 * 1024


def _is_remote(src: str) -> bool:
    return urlparse(src).scheme in ("http", "https")


class AssetCache:
    """URL → local file, shared by every job in the process."""

    def __init__(
        self,
        cache_dir: str | Path = "data/cache/assets",
        max_age_hours: float = 24.0,
        timeout: float = 120.0,
        max_bytes: int = 500 * 1024 * 1024,
        client: httpx.Client | None = None,
        user_agent: str = "vidcompose/1.0",
    ):
        self.cache_dir = Path(cache_dir)
        self.max_age_hours = max_age_hours
        self.timeout = timeout
        self.max_bytes = max_bytes
        self._client = client
        self._user_agent = user_agent
        self._inflight: dict[str, Future] = {}
        self._lock = threading.Lock()
        self.downloads = 0

    @classmethod
    def from_config(cls, cfg: Any, client: httpx.Client | None = None) -> AssetCache:
        return cls(cfg.cache_dir, cfg.max_age_hours, cfg.download_timeout, cfg.max_bytes, client=client)

    # ── lookup ──

    def resolve_local(self, src: str) -> Path | None:
        """Local path for non-remote sources (plain paths and ``file://``)."""
        parsed = urlparse(src)
        if parsed.scheme == "file":
            return Path(unquote(parsed.path))
        if not parsed.scheme or (len(parsed.scheme) == 1 and src[1:3] in (":\\", ":/")):
            return Path(src)
        return None

    def _digest(self, url: str) -> str:
        return hashlib.md5(url.encode("utf-8")).hexdigest()

    def cached_path(self, url: str) -> Path | None:
        """Fresh cache entry for ``url``, or ``None``."""
        if not self.cache_dir.exists():
            return None
        for p in self.cache_dir.glob(f"{self._digest(url)}.*"):
            if p.suffix == ".part":
                continue
            age_h = (time.time() - p.stat().st_mtime) / 3600
            if age_h <= self.max_age_hours and p.stat().st_size > 0:
                return p
        return None

    def _extension(self, url: str, content_type: str | None) -> str:
        suffix = PurePosixPath(urlparse(url).path).suffix.lower()
        if suffix and len(suffix) <= 6:
            return suffix
        if content_type:
            guessed = mimetypes.guess_extension(content_type.split(";")[0].strip())
            if guessed:
                return guessed
        return ".bin"

    # ── fetching ──

    def _http(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(
                timeout=self.timeout, follow_redirects=True,
                headers={"User-Agent": self._user_agent},
            )
        return self._client

    def fetch(self, url: str) -> Path:
        """Resolve ``url`` to a local file, downloading it when not cached."""
        local = self.resolve_local(url)
        if local is not None:
            if not local.exists():
                raise AssetError(f"Local asset not found: {local}", url=url, code="ASSET_NOT_FOUND")
            if local.stat().st_size == 0:
                raise AssetError(f"Local asset is empty: {local}", url=url, code="ASSET_EMPTY")
            return local
        if not _is_remote(url):
            raise AssetError(f"Unsupported asset URL: {url}", url=url, code="ASSET_UNSUPPORTED")

        cached = self.cached_path(url)
        if cached is not None:
            debug(f"[assets] cache hit {url} → {cached.name}")
            return cached
        return self._download(url)

    def _download(self, url: str) -> Path:
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        digest = self._digest(url)
        part = self.cache_dir / f"{digest}.part"
        t0 = time.monotonic()
        size = 0
        try:
            with self._http().stream("GET", url, timeout=self.timeout) as r:
                r.raise_for_status()
                ext = self._extension(url, r.headers.get("content-type"))
                declared = int(r.headers.get("content-length") or 0)
                if declared > self.max_bytes:
                    raise AssetError(
                        f"Asset too large ({declared} bytes > {self.max_bytes})", url=url, code="ASSET_TOO_LARGE",
                    )
                with open(part, "wb") as f:
                    for chunk in r.iter_bytes(CHUNK_SIZE):
                        size += len(chunk)
                        if size > self.max_bytes:
                            raise AssetError(
                                f"Asset exceeds {self.max_bytes} bytes", url=url, code="ASSET_TOO_LARGE",
                            )
                        f.write(chunk)
        except httpx.HTTPStatusError as e:
            part.unlink(missing_ok=True)
            raise AssetError(f"Download failed: HTTP {e.response.status_code} for {url}", url=url) from e
        except httpx.HTTPError as e:
            part.unlink(missing_ok=True)
            raise AssetError(f"Download failed for {url}: {e}", url=url) from e
        except AssetError:
            part.unlink(missing_ok=True)
            raise

        if size == 0:
            part.unlink(missing_ok=True)
            raise AssetError(f"Downloaded asset is empty: {url}", url=url, code="ASSET_EMPTY")

        dest = self.cache_dir / f"{digest}{ext}"
        part.replace(dest)
        self.downloads += 1
        info(f"[assets] Downloaded {url} → {dest.name} ({size / 1024:.0f} KB, {time.monotonic() - t0:.1f}s)")
        return dest

    def get_or_fetch(self, url: str) -> Path:
        """``fetch`` with single flight: concurrent callers for one URL share a download."""
        with self._lock:
            fut = self._inflight.get(url)
            owner = fut is None
            if owner:
                fut = Future()
                self._inflight[url] = fut
        if not owner:
            debug(f"[assets] waiting on in-flight download of {url}")
            return fut.result()
        try:
            path = self.fetch(url)
        except BaseException as e:
            fut.set_exception(e)
            raise
        else:
            fut.set_result(path)
            return path
        finally:
            with self._lock:
                self._inflight.pop(url, None)

    # ── maintenance ──

    def cleanup(self, max_age_hours: float | None = None) -> int:
        """Delete cache files older than ``max_age_hours``; returns the count removed."""
        limit = self.max_age_hours if max_age_hours is None else max_age_hours
        if not self.cache_dir.exists():
            return 0
        cutoff = time.time() - limit * 3600
        removed = 0
        for p in self.cache_dir.iterdir():
            if p.is_file() and p.stat().st_mtime < cutoff:
                p.unlink(missing_ok=True)
                removed += 1
        if removed:
            info(f"[assets] Cleanup removed {removed} file(s) older than {limit:g}h")
        return removed

    def stats(self) -> dict[str, Any]:
        files = [p for p in self.cache_dir.iterdir() if p.is_file()] if self.cache_dir.exists() else []
        return {
            "dir": str(self.cache_dir),
            "files": len(files),
            "bytes": sum(p.stat().st_size for p in files),
            "downloads": self.downloads,
            "maxAgeHours": self.max_age_hours,
        }

    def close(self) -> None:
        if self._client is not None:
            self._client.close()


# ── Per-job preparation ───────────────────────────────────────────────────────

@dataclass
class AssetReport:
    paths: dict[str, Path] = field(default_factory=dict)
    failures: dict[str, str] = field(default_factory=dict)
    media: dict[str, MediaInfo] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures


def collect_sources(timeline: Timeline) -> list[str]:
    """Distinct external sources referenced by the timeline, in first-use order."""
    seen: dict[str, None] = {}
    if timeline.background.image:
        seen[timeline.background.image] = None
    for _, clip in timeline.iter_clips():
        if isinstance(clip, HtmlClip):
            continue
        src = clip_source(clip)
        if src:
            seen[src] = None
    if timeline.soundtrack and timeline.soundtrack.src:
        seen[timeline.soundtrack.src] = None
    return list(seen)


def prepare_assets(
    timeline: Timeline,
    cache: AssetCache,
    rasterizer: HtmlRasterizer | None = None,
    ffprobe_bin: str | None = "ffprobe",
    max_workers: int | None = None,
) -> AssetReport:
    """Fetch every source in parallel, rasterize html clips and probe videos.

    Failures are recorded per source instead of raised; the graph builder
    rejects any clip whose asset is missing.
    """
    report = AssetReport()
    sources = collect_sources(timeline)
    if sources:
        # one download thread per distinct source unless capped
        workers = len(sources) if max_workers is None else max(1, min(len(sources), max_workers))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="asset") as pool:
            futures = {src: pool.submit(cache.get_or_fetch, src) for src in sources}
            for src, fut in futures.items():
                try:
                    report.paths[src] = fut.result()
                except AssetError as e:
                    warn(f"[assets] {e.message}")
                    report.failures[src] = e.message

    for _, clip in timeline.iter_clips():
        if not isinstance(clip, HtmlClip) or clip.rendered_src:
            continue
        key = html_asset_key(clip)
        if rasterizer is None:
            report.failures[key] = "HTML rasterization disabled"
            continue
        try:
            report.paths[key] = rasterizer.render(clip)
        except AssetError as e:
            warn(f"[assets] {e.message}")
            report.failures[key] = e.message

    if ffprobe_bin:
        video_srcs = {c.src for _, c in timeline.iter_clips() if isinstance(c, VideoClip) and not c.muted}
        for src in video_srcs:
            if src in report.paths:
                report.media[src] = probe_media(report.paths[src], ffprobe_bin)

    debug(f"[assets] prepared {len(report.paths)} asset(s), {len(report.failures)} failure(s)")
    return report
