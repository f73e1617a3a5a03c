"""Error taxonomy — every surfaced failure carries a machine-readable code."""

from __future__ import annotations

from typing import Any


class VidcomposeError(Exception):
    """Base error with a stable code and a human-readable message."""

    code: str = "INTERNAL_ERROR"
    retryable: bool = False

    def __init__(self, message: str, code: str | None = None, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            d["details"] = self.details
        return d


# ── Structural ────────────────────────────────────────────────────────────────

class TimelineValidationError(VidcomposeError):
    """Malformed timeline — carries every violated rule, not just the first."""

    code = "INVALID_TIMELINE"

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        summary = f"Timeline validation failed ({len(self.errors)} error(s)): " + "; ".join(self.errors[:5])
        super().__init__(summary, details={"errors": self.errors})


class ProjectImportError(VidcomposeError):
    code = "IMPORT_FAILED"


# ── Contract ──────────────────────────────────────────────────────────────────

class MergeFieldError(VidcomposeError):
    """Merge-field contract violation (required / type / length / allowed values)."""

    code = "MISSING_REQUIRED_FIELD"

    def __init__(self, errors: list[tuple[str, str, str]]):
        # errors: (code, field, message)
        self.errors = list(errors)
        code = self.errors[0][0] if self.errors else self.code
        message = "; ".join(m for _, _, m in self.errors) or "Merge field validation failed"
        super().__init__(
            message, code=code,
            details={"errors": [{"code": c, "field": f, "message": m} for c, f, m in self.errors]},
        )

    @property
    def fields(self) -> list[str]:
        return [f for _, f, _ in self.errors]


# ── Resource ──────────────────────────────────────────────────────────────────

class AssetError(VidcomposeError):
    code = "ASSET_UNAVAILABLE"

    def __init__(self, message: str, url: str = "", code: str | None = None):
        super().__init__(message, code=code, details={"url": url} if url else None)
        self.url = url


# ── Compilation ───────────────────────────────────────────────────────────────

class CompilationError(VidcomposeError):
    """Unknown clip/effect/transition type or unusable asset — fatal, never retried."""

    code = "COMPILATION_ERROR"


class GraphInvariantError(CompilationError):
    code = "GRAPH_INVARIANT"


# ── Execution ─────────────────────────────────────────────────────────────────

class RenderError(VidcomposeError):
    """External renderer failed (non-zero exit or process error)."""

    code = "RENDER_FAILED"
    retryable = True

    def __init__(self, message: str, returncode: int | None = None, stderr: str = ""):
        details: dict[str, Any] = {}
        if returncode is not None:
            details["returncode"] = returncode
        if stderr:
            details["stderr"] = stderr
        super().__init__(message, details=details)
        self.returncode = returncode
        self.stderr = stderr


class RenderTimeoutError(RenderError):
    code = "RENDER_TIMEOUT"
    retryable = False


class JobCancelledError(VidcomposeError):
    code = "JOB_CANCELLED"


class InvalidJobTransition(VidcomposeError):
    code = "INVALID_JOB_TRANSITION"
