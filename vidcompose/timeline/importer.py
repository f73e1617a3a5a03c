"""Project importers — turn an on-disk project into a raw timeline dict."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Protocol

from vidcompose.errors import ProjectImportError
from vidcompose.utils.logging import debug


class ProjectImporter(Protocol):
    def import_project(self, path: str | Path) -> dict[str, Any]:
        """Return the raw (not yet normalized) timeline stored at ``path``."""
        ...


class JsonProjectImporter:
    """Timeline JSON, bare or wrapped as ``{"timeline": {...}}``."""

    def import_project(self, path: str | Path) -> dict[str, Any]:
        p = Path(path)
        try:
            text = p.read_text(encoding="utf-8")
        except OSError as e:
            raise ProjectImportError(f"Cannot read project {p}: {e}", details={"path": str(p)}) from e
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ProjectImportError(
                f"Invalid JSON in {p.name} (line {e.lineno}): {e.msg}", details={"path": str(p)},
            ) from e
        if isinstance(data, dict) and isinstance(data.get("timeline"), dict):
            data = data["timeline"]
        if not isinstance(data, dict) or "tracks" not in data:
            raise ProjectImportError(f"{p.name} does not contain a timeline", details={"path": str(p)})
        debug(f"[importer] loaded {p.name} ({len(data.get('tracks') or [])} track(s))")
        return data
