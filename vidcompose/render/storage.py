"""Output store — where finished renders are published."""

from __future__ import annotations

import json
import shutil
from pathlib import Path
from typing import Any, Protocol

from vidcompose.utils.logging import info


class OutputStore(Protocol):
    def upload(self, path: Path, key: str, metadata: dict[str, Any] | None = None) -> str:
        """Publish ``path`` under ``key`` and return its public URL."""
        ...


def _safe_segment(value: str) -> str:
    cleaned = "".join(c if c.isalnum() or c in "-_." else "_" for c in value).strip("._")
    return cleaned[:80] or "default"


class LocalOutputStore:
    """Copies renders into ``output_dir/{client}/{job}.{ext}`` with a JSON sidecar."""

    def __init__(self, output_dir: str | Path = "data/outputs", public_base_url: str = "/data/outputs"):
        self.output_dir = Path(output_dir)
        self.public_base_url = public_base_url.rstrip("/")

    @classmethod
    def from_config(cls, cfg: Any) -> LocalOutputStore:
        return cls(cfg.output_dir, cfg.public_base_url)

    @staticmethod
    def make_key(client_id: str, job_id: str, ext: str) -> str:
        return f"{_safe_segment(client_id)}/{_safe_segment(job_id)}.{ext.lstrip('.')}"

    def path_for(self, key: str) -> Path:
        dest = (self.output_dir / key).resolve()
        if not dest.is_relative_to(self.output_dir.resolve()):
            raise ValueError(f"Output key escapes the output directory: {key}")
        return dest

    def upload(self, path: Path, key: str, metadata: dict[str, Any] | None = None) -> str:
        dest = self.path_for(key)
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(path, dest)
        if metadata:
            dest.with_suffix(dest.suffix + ".json").write_text(
                json.dumps(metadata, indent=2, ensure_ascii=False, default=str), encoding="utf-8",
            )
        url = f"{self.public_base_url}/{key}"
        info(f"[storage] Published {dest.name} ({dest.stat().st_size / (1024 * 1024):.1f} MB) → {url}")
        return url
