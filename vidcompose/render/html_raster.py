"""Rasterize html clips to transparent PNGs with a headless Chromium (Playwright)."""

from __future__ import annotations

import hashlib
from pathlib import Path

from vidcompose.errors import AssetError
from vidcompose.timeline.models import HtmlClip
from vidcompose.utils.logging import debug, info

PAGE_TEMPLATE = """<!DOCTYPE html>
<html><head><meta charset="utf-8"><style>
html, body {{ margin: 0; padding: 0; background: {background}; }}
{css}
</style></head><body>{html}</body></html>
"""


def build_page(clip: HtmlClip) -> str:
    background = "transparent" if clip.transparent else "#ffffff"
    return PAGE_TEMPLATE.format(background=background, css=clip.css or "", html=clip.html)


class HtmlRasterizer:
    """One PNG per html clip, sized to the clip (or the output frame)."""

    def __init__(self, out_dir: Path, width: int = 1920, height: int = 1080, timeout_ms: int = 30000):
        self.out_dir = Path(out_dir)
        self.width = width
        self.height = height
        self.timeout_ms = timeout_ms

    def output_path(self, clip: HtmlClip) -> Path:
        page = build_page(clip)
        size = f"{clip.width or self.width}x{clip.height or self.height}"
        digest = hashlib.md5(f"{size}\n{page}".encode()).hexdigest()
        return self.out_dir / f"html_{digest}.png"

    def render(self, clip: HtmlClip) -> Path:
        out = self.output_path(clip)
        if out.exists() and out.stat().st_size > 0:
            debug(f"[html] cache hit for clip {clip.id}: {out.name}")
            return out
        try:
            from playwright.sync_api import Error as PlaywrightError
            from playwright.sync_api import sync_playwright
        except ImportError as e:
            raise AssetError(
                "Playwright not installed. Run: pip install playwright && playwright install chromium",
                code="RASTERIZER_UNAVAILABLE",
            ) from e

        self.out_dir.mkdir(parents=True, exist_ok=True)
        width, height = clip.width or self.width, clip.height or self.height
        try:
            with sync_playwright() as p:
                browser = p.chromium.launch(headless=True)
                try:
                    page = browser.new_page(viewport={"width": width, "height": height})
                    page.set_content(build_page(clip), wait_until="load", timeout=self.timeout_ms)
                    page.screenshot(path=str(out), omit_background=clip.transparent, full_page=False)
                finally:
                    browser.close()
        except PlaywrightError as e:
            raise AssetError(f"HTML rasterization failed for clip '{clip.id}': {e}", code="RASTERIZE_FAILED") from e

        info(f"[html] Rendered clip {clip.id} → {out.name} ({width}x{height})")
        return out
