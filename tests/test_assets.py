"""Tests for the asset cache and per-job asset preparation."""

from __future__ import annotations

import os
import threading
import time

import httpx
import pytest


PNG = b"\x89PNG\r\n\x1a\n" + b"\x01" * 256


def _cache(tmp_path, handler, **kwargs):
    from vidcompose.render.assets import AssetCache
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return AssetCache(tmp_path / "cache", client=client, **kwargs)


def _serve(body: bytes = PNG, status: int = 200, content_type: str = "image/png", calls: list | None = None):
    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(str(request.url))
        return httpx.Response(status, content=body, headers={"content-type": content_type})
    return handler


def _timeline(raw: dict):
    from vidcompose.timeline.normalizer import normalize_timeline
    return normalize_timeline(raw).timeline


# ── Local sources ─────────────────────────────────────────────────────────────

class TestLocalSources:

    def test_plain_path_used_in_place(self, tmp_path):
        f = tmp_path / "a.png"
        f.write_bytes(PNG)
        cache = _cache(tmp_path, _serve())
        assert cache.fetch(str(f)) == f
        assert cache.downloads == 0

    def test_file_url(self, tmp_path):
        f = tmp_path / "my clip.png"
        f.write_bytes(PNG)
        cache = _cache(tmp_path, _serve())
        assert cache.fetch("file://" + str(f).replace(" ", "%20")) == f

    def test_missing_local_file(self, tmp_path):
        from vidcompose.errors import AssetError
        cache = _cache(tmp_path, _serve())
        with pytest.raises(AssetError) as exc:
            cache.fetch(str(tmp_path / "nope.png"))
        assert exc.value.code == "ASSET_NOT_FOUND"

    def test_empty_local_file(self, tmp_path):
        from vidcompose.errors import AssetError
        f = tmp_path / "empty.png"
        f.write_bytes(b"")
        with pytest.raises(AssetError) as exc:
            _cache(tmp_path, _serve()).fetch(str(f))
        assert exc.value.code == "ASSET_EMPTY"

    def test_unsupported_scheme(self, tmp_path):
        from vidcompose.errors import AssetError
        with pytest.raises(AssetError) as exc:
            _cache(tmp_path, _serve()).fetch("ftp://example.com/a.png")
        assert exc.value.code == "ASSET_UNSUPPORTED"


# ── Remote sources ────────────────────────────────────────────────────────────

class TestDownload:

    def test_download_named_by_digest(self, tmp_path):
        import hashlib
        url = "https://cdn.test/img/logo.png"
        cache = _cache(tmp_path, _serve())
        path = cache.fetch(url)
        assert path.name == hashlib.md5(url.encode()).hexdigest() + ".png"
        assert path.read_bytes() == PNG
        assert cache.downloads == 1

    def test_extension_from_content_type(self, tmp_path):
        cache = _cache(tmp_path, _serve(content_type="image/png"))
        assert cache.fetch("https://cdn.test/render?id=3").suffix == ".png"

    def test_cache_hit_skips_download(self, tmp_path):
        calls: list[str] = []
        cache = _cache(tmp_path, _serve(calls=calls))
        first = cache.fetch("https://cdn.test/a.png")
        second = cache.fetch("https://cdn.test/a.png")
        assert first == second
        assert len(calls) == 1
        assert cache.downloads == 1

    def test_stale_entry_refetched(self, tmp_path):
        calls: list[str] = []
        cache = _cache(tmp_path, _serve(calls=calls), max_age_hours=1)
        path = cache.fetch("https://cdn.test/a.png")
        old = time.time() - 2 * 3600
        os.utime(path, (old, old))
        cache.fetch("https://cdn.test/a.png")
        assert len(calls) == 2

    def test_http_error(self, tmp_path):
        from vidcompose.errors import AssetError
        cache = _cache(tmp_path, _serve(status=404, body=b"not found"))
        with pytest.raises(AssetError) as exc:
            cache.fetch("https://cdn.test/missing.png")
        assert exc.value.code == "ASSET_UNAVAILABLE"
        assert "HTTP 404" in exc.value.message
        assert exc.value.details["url"] == "https://cdn.test/missing.png"
        assert not list((tmp_path / "cache").glob("*.part"))

    def test_transport_error(self, tmp_path):
        from vidcompose.errors import AssetError

        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(AssetError) as exc:
            _cache(tmp_path, handler).fetch("https://cdn.test/a.png")
        assert exc.value.code == "ASSET_UNAVAILABLE"

    def test_too_large(self, tmp_path):
        from vidcompose.errors import AssetError
        cache = _cache(tmp_path, _serve(body=b"x" * 100), max_bytes=10)
        with pytest.raises(AssetError) as exc:
            cache.fetch("https://cdn.test/big.png")
        assert exc.value.code == "ASSET_TOO_LARGE"
        assert cache.cached_path("https://cdn.test/big.png") is None

    def test_empty_body(self, tmp_path):
        from vidcompose.errors import AssetError
        with pytest.raises(AssetError) as exc:
            _cache(tmp_path, _serve(body=b"")).fetch("https://cdn.test/empty.png")
        assert exc.value.code == "ASSET_EMPTY"

    def test_concurrent_requests_share_one_download(self, tmp_path):
        started = threading.Event()
        release = threading.Event()
        calls: list[str] = []

        def handler(request):
            calls.append(str(request.url))
            started.set()
            release.wait(5)
            return httpx.Response(200, content=PNG, headers={"content-type": "image/png"})

        cache = _cache(tmp_path, handler)
        results: list = []
        t1 = threading.Thread(target=lambda: results.append(cache.get_or_fetch("https://cdn.test/a.png")))
        t1.start()
        started.wait(5)
        t2 = threading.Thread(target=lambda: results.append(cache.get_or_fetch("https://cdn.test/a.png")))
        t2.start()
        time.sleep(0.05)
        release.set()
        t1.join(5)
        t2.join(5)
        assert len(results) == 2
        assert results[0] == results[1]
        assert len(calls) == 1
        assert cache.downloads == 1


# ── Maintenance ───────────────────────────────────────────────────────────────

class TestMaintenance:

    def test_cleanup_removes_old_files(self, tmp_path):
        cache = _cache(tmp_path, _serve())
        fresh = cache.fetch("https://cdn.test/fresh.png")
        stale = cache.fetch("https://cdn.test/stale.png")
        old = time.time() - 48 * 3600
        os.utime(stale, (old, old))
        assert cache.cleanup(24) == 1
        assert fresh.exists()
        assert not stale.exists()

    def test_cleanup_without_dir(self, tmp_path):
        assert _cache(tmp_path, _serve()).cleanup() == 0

    def test_stats(self, tmp_path):
        cache = _cache(tmp_path, _serve())
        cache.fetch("https://cdn.test/a.png")
        s = cache.stats()
        assert s["files"] == 1
        assert s["bytes"] == len(PNG)
        assert s["downloads"] == 1
        assert s["maxAgeHours"] == 24.0

    def test_from_config(self, app_config):
        from vidcompose.render.assets import AssetCache
        cache = AssetCache.from_config(app_config.assets)
        assert str(cache.cache_dir) == app_config.assets.cache_dir
        assert cache.max_bytes == app_config.assets.max_bytes


# ── Per-job preparation ───────────────────────────────────────────────────────

class TestPrepareAssets:

    def test_collect_sources_distinct_in_order(self):
        from vidcompose.render.assets import collect_sources
        tl = _timeline({"tracks": [{"clips": [
            {"type": "image", "src": "b.png", "start": 0, "duration": 2},
            {"type": "image", "src": "a.png", "start": 5, "duration": 2},
            {"type": "image", "src": "b.png", "start": 10, "duration": 2},
            {"type": "html", "html": "<b>x</b>", "start": 12, "duration": 2},
        ]}]})
        assert collect_sources(tl) == ["b.png", "a.png"]

    def test_all_local_assets_resolved(self, tmp_path, local_timeline):
        from vidcompose.render.assets import prepare_assets
        report = prepare_assets(_timeline(local_timeline), _cache(tmp_path, _serve()), ffprobe_bin=None)
        assert report.ok
        assert len(report.paths) == 2

    def test_every_distinct_source_downloads_at_once(self, tmp_path):
        from vidcompose.render.assets import prepare_assets
        urls = [f"https://cdn.test/{i}.png" for i in range(12)]
        barrier = threading.Barrier(len(urls), timeout=5)

        def handler(request):
            barrier.wait()
            return httpx.Response(200, content=PNG, headers={"content-type": "image/png"})

        tl = _timeline({"tracks": [{"clips": [
            {"type": "image", "src": u, "start": i * 2, "duration": 2} for i, u in enumerate(urls)
        ]}]})
        report = prepare_assets(tl, _cache(tmp_path, handler), ffprobe_bin=None)
        assert report.ok
        assert len(report.paths) == len(urls)

    def test_fan_out_can_be_capped(self, tmp_path):
        from vidcompose.render.assets import prepare_assets
        lock = threading.Lock()
        active = [0]
        peak = [0]

        def handler(request):
            with lock:
                active[0] += 1
                peak[0] = max(peak[0], active[0])
            time.sleep(0.02)
            with lock:
                active[0] -= 1
            return httpx.Response(200, content=PNG, headers={"content-type": "image/png"})

        tl = _timeline({"tracks": [{"clips": [
            {"type": "image", "src": f"https://cdn.test/{i}.png", "start": i * 2, "duration": 2}
            for i in range(6)
        ]}]})
        report = prepare_assets(tl, _cache(tmp_path, handler), ffprobe_bin=None, max_workers=2)
        assert report.ok
        assert peak[0] <= 2

    def test_failures_recorded_per_source(self, tmp_path, asset_dir):
        from vidcompose.render.assets import prepare_assets
        good = str(asset_dir / "intro.png")
        tl = _timeline({"tracks": [{"clips": [
            {"type": "image", "src": good, "start": 0, "duration": 2},
            {"type": "image", "src": "https://cdn.test/gone.png", "start": 5, "duration": 2},
        ]}]})
        cache = _cache(tmp_path, _serve(status=404))
        report = prepare_assets(tl, cache, ffprobe_bin=None)
        assert not report.ok
        assert good in report.paths
        assert "HTTP 404" in report.failures["https://cdn.test/gone.png"]

    def test_html_without_rasterizer(self, tmp_path):
        from vidcompose.render.assets import prepare_assets
        tl = _timeline({"tracks": [{"clips": [
            {"id": "card", "type": "html", "html": "<b>x</b>", "start": 0, "duration": 2},
        ]}]})
        report = prepare_assets(tl, _cache(tmp_path, _serve()), rasterizer=None, ffprobe_bin=None)
        assert report.failures == {"html:card": "HTML rasterization disabled"}

    def test_html_with_rasterizer(self, tmp_path):
        from vidcompose.render.assets import prepare_assets
        png = tmp_path / "card.png"
        png.write_bytes(PNG)

        class _Raster:
            def render(self, clip):
                return png

        tl = _timeline({"tracks": [{"clips": [
            {"id": "card", "type": "html", "html": "<b>x</b>", "start": 0, "duration": 2},
        ]}]})
        report = prepare_assets(tl, _cache(tmp_path, _serve()), rasterizer=_Raster(), ffprobe_bin=None)
        assert report.ok
        assert report.paths["html:card"] == png

    def test_only_audible_videos_probed(self, tmp_path, monkeypatch):
        from vidcompose.render import assets
        from vidcompose.render.probe import MediaInfo
        for name in ("loud.mp4", "muted.mp4"):
            (tmp_path / name).write_bytes(b"\x00" * 32)
        probed: list[str] = []

        def fake_probe(path, ffprobe_bin="ffprobe"):
            probed.append(path.name)
            return MediaInfo(duration=5.0, has_audio=True)

        monkeypatch.setattr(assets, "probe_media", fake_probe)
        tl = _timeline({"tracks": [{"clips": [
            {"type": "video", "src": str(tmp_path / "loud.mp4"), "start": 0, "duration": 5},
            {"type": "video", "src": str(tmp_path / "muted.mp4"), "start": 10, "duration": 5, "muted": True},
        ]}]})
        report = assets.prepare_assets(tl, _cache(tmp_path, _serve()))
        assert probed == ["loud.mp4"]
        assert report.media[str(tmp_path / "loud.mp4")].has_audio
