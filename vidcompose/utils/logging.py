"""Console and file logging for the server, the CLI and the render workers.

Console output goes through rich; every message is also written to
``app.log``, and ffmpeg commands, progress and stderr tails to
``render.log``. Records written inside ``request_context`` / ``job_context``
carry the request and job ids so one render can be traced across threads.
"""

from __future__ import annotations

import logging
import os
import uuid
from contextlib import AbstractContextManager, contextmanager
from contextvars import ContextVar
from enum import Enum
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Iterator

from rich.console import Console
from rich.logging import RichHandler
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.theme import Theme

theme = Theme({
    "info": "cyan",
    "warning": "yellow bold",
    "error": "red bold",
    "success": "green bold",
    "dim": "dim white",
})
console = Console(theme=theme)
err_console = Console(stderr=True, theme=theme)

APP_LOGGER = "vidcompose.app"
RENDER_LOGGER = "vidcompose.render"
LOG_DIR = Path("data/logs")
LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)-18s %(message)s"


class Verbosity(str, Enum):
    SILENT = "silent"
    NORMAL = "normal"
    VERBOSE = "verbose"


_verbosity = Verbosity.NORMAL
_channels: dict[str, logging.Logger] = {}

# ── Correlation ───────────────────────────────────────────────────────────────

_correlation: ContextVar[tuple[tuple[str, str], ...]] = ContextVar("correlation", default=())


@contextmanager
def _correlated(key: str, value: str) -> Iterator[str]:
    ids = dict(_correlation.get())
    ids[key] = value
    token = _correlation.set(tuple(ids.items()))
    try:
        yield value
    finally:
        _correlation.reset(token)


def request_context(rid: str = "") -> AbstractContextManager[str]:
    """Tag records with ``req=<rid>``; an empty id gets a generated one (yielded)."""
    return _correlated("req", rid or uuid.uuid4().hex[:12])


def job_context(jid: str) -> AbstractContextManager[str]:
    """Tag every record emitted inside the block with ``job=<jid>``."""
    return _correlated("job", jid)


def correlation_prefix() -> str:
    ids = _correlation.get()
    return "[" + " ".join(f"{k}={v}" for k, v in ids) + "] " if ids else ""


class _CorrelatedFormatter(logging.Formatter):

    def format(self, record: logging.LogRecord) -> str:
        record.msg = f"{correlation_prefix()}{record.msg}"
        return super().format(record)


# ── Setup ─────────────────────────────────────────────────────────────────────

def _file_channel(name: str, path: Path, max_bytes: int = 20 * 1024 * 1024, backups: int = 5) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(path, maxBytes=max_bytes, backupCount=backups, encoding="utf-8")
    handler.setFormatter(_CorrelatedFormatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    logger.addHandler(handler)
    return logger


def setup_logging(verbosity: Verbosity = Verbosity.NORMAL, log_dir: Path | None = None) -> None:
    """Configure the rich root handler and the app/render log files.

    ``LOG_LEVEL`` in the environment overrides the level implied by
    ``verbosity`` for the root logger.
    """
    global _verbosity
    _verbosity = verbosity

    level = logging.getLevelName(os.environ.get("LOG_LEVEL", "").upper())
    if not isinstance(level, int):
        level = {Verbosity.SILENT: logging.ERROR, Verbosity.NORMAL: logging.INFO,
                 Verbosity.VERBOSE: logging.DEBUG}[verbosity]
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False, markup=True)],
        force=True,
    )

    target = log_dir or LOG_DIR
    _channels["app"] = _file_channel(APP_LOGGER, target / "app.log")
    _channels["render"] = _file_channel(RENDER_LOGGER, target / "render.log")


# ── Emitters ──────────────────────────────────────────────────────────────────

def _emit(level: int, markup: str, msg: str, to_console: bool, stream: Console = console, **kwargs: Any) -> None:
    if to_console:
        stream.print(markup.format(msg=msg), **kwargs)
    app = _channels.get("app")
    if app is not None:
        app.log(level, msg)


def info(msg: str, **kwargs: Any) -> None:
    _emit(logging.INFO, "[info]ℹ {msg}[/info]", msg, _verbosity != Verbosity.SILENT, **kwargs)


def success(msg: str, **kwargs: Any) -> None:
    _emit(logging.INFO, "[success]✓ {msg}[/success]", msg, _verbosity != Verbosity.SILENT, **kwargs)


def warn(msg: str, **kwargs: Any) -> None:
    _emit(logging.WARNING, "[warning]⚠ {msg}[/warning]", msg, _verbosity != Verbosity.SILENT, **kwargs)


def error(msg: str, **kwargs: Any) -> None:
    _emit(logging.ERROR, "[error]✗ {msg}[/error]", msg, True, stream=err_console, **kwargs)


def debug(msg: str, **kwargs: Any) -> None:
    _emit(logging.DEBUG, "[dim]  {msg}[/dim]", msg, _verbosity == Verbosity.VERBOSE, **kwargs)


def render_log(msg: str, level: str = "info") -> None:
    """Write to render.log regardless of console verbosity."""
    rl = _channels.get("render") or logging.getLogger(RENDER_LOGGER)
    getattr(rl, level, rl.info)(msg)


def make_progress(**kwargs: Any) -> Progress:
    return Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        TimeElapsedColumn(),
        console=console,
        **kwargs,
    )
