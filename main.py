"""vidcompose — FastAPI render server.

Start with:
    python main.py
    python main.py --host 0.0.0.0 --port 8000
    python main.py --reload
"""

from __future__ import annotations

import argparse
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from vidcompose.errors import VidcomposeError

load_dotenv()


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Assign a unique request_id to every incoming request for log correlation."""

    async def dispatch(self, request: Request, call_next):
        from vidcompose.utils.logging import request_context
        with request_context(request.headers.get("x-request-id", "")) as rid:
            response = await call_next(request)
        response.headers["x-request-id"] = rid
        return response


@asynccontextmanager
async def lifespan(application: FastAPI):
    # Startup
    from vidcompose.api import tasks
    from vidcompose.utils.config import load_config
    from vidcompose.utils.deps_check import check_all, print_dep_status
    from vidcompose.utils.logging import Verbosity, info, setup_logging, success
    from vidcompose.utils.media_executor import configure_media_executor

    setup_logging(Verbosity.NORMAL)
    info("vidcompose v1.0 starting...")

    cfg = load_config()
    print_dep_status(check_all(cfg.rendering.ffmpeg_bin, html=cfg.assets.html_rasterize))
    configure_media_executor(
        ffmpeg_threads=cfg.rendering.ffmpeg_threads,
        nice=cfg.rendering.nice,
        max_concurrent=cfg.rendering.max_concurrent,
    )
    tasks.init_services(cfg)

    success("Server ready — API: http://localhost:8000/api")

    yield  # app runs here

    # Shutdown
    tasks.shutdown_services(wait=True)


app = FastAPI(
    title="vidcompose",
    description="JSON timeline → FFmpeg filter graph compiler and render queue",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestIdMiddleware)

# ── API Routes ────────────────────────────────────────────────────────────────

from vidcompose.api.routes import router as api_router, vidcompose_error_handler  # noqa: E402
app.include_router(api_router)
app.add_exception_handler(VidcomposeError, vidcompose_error_handler)

# ── Published renders ─────────────────────────────────────────────────────────

OUTPUT_DIR = Path("data/outputs")
OUTPUT_DIR.mkdir(parents=True, exist_ok=True)
app.mount("/data/outputs", StaticFiles(directory=str(OUTPUT_DIR)), name="output_files")


# ── CLI Entry Point ───────────────────────────────────────────────────────────

def main():
    parser = argparse.ArgumentParser(description="vidcompose render server")
    parser.add_argument("--host", default="127.0.0.1", help="Bind host (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8000, help="Port (default: 8000)")
    parser.add_argument("--reload", action="store_true", help="Auto-reload on code changes")
    args = parser.parse_args()

    import uvicorn
    uvicorn.run(
        "main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        workers=1,  # jobs live in process memory
        log_level="info",
    )


if __name__ == "__main__":
    main()
