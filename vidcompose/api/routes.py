"""FastAPI routes: timeline validation/compilation, render jobs, SSE, cache."""

from __future__ import annotations

import asyncio
import json

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse

from vidcompose.api import tasks
from vidcompose.api.models import (
    CancelResponse,
    CompileResponse,
    HealthResponse,
    RenderRequest,
    RenderResponse,
    TimelineRequest,
    ValidateResponse,
)
from vidcompose.errors import (
    AssetError,
    CompilationError,
    MergeFieldError,
    ProjectImportError,
    TimelineValidationError,
    VidcomposeError,
)
from vidcompose.render.executor import compile_render
from vidcompose.render.jobs import JobState
from vidcompose.timeline.normalizer import normalize_timeline
from vidcompose.timeline.placeholders import find_placeholders
from vidcompose.utils.logging import warn
from vidcompose.utils.media_executor import get_media_queue_status

VERSION = "1.0.0"

router = APIRouter(prefix="/api", tags=["api"])

_STATUS_BY_ERROR: list[tuple[type[VidcomposeError], int]] = [
    (TimelineValidationError, 422),
    (MergeFieldError, 422),
    (CompilationError, 422),
    (ProjectImportError, 400),
    (AssetError, 424),
]


def error_status(exc: VidcomposeError) -> int:
    for cls, status in _STATUS_BY_ERROR:
        if isinstance(exc, cls):
            return status
    return 500


async def vidcompose_error_handler(request: Request, exc: VidcomposeError) -> JSONResponse:
    status = error_status(exc)
    if status >= 500:
        warn(f"[api] {request.method} {request.url.path} → {status} {exc.code}: {exc.message}")
    body = {"code": exc.code, "message": exc.message, "details": exc.details}
    return JSONResponse(status_code=status, content=body)


# ── Health ────────────────────────────────────────────────────────────────────

@router.get("/health", response_model=HealthResponse)
async def health():
    from vidcompose.utils.deps_check import check_ffmpeg, check_playwright
    cfg = tasks.get_config()
    return HealthResponse(
        status="ok",
        version=VERSION,
        ffmpeg=check_ffmpeg(cfg.rendering.ffmpeg_bin).available,
        playwright=check_playwright().available,
        jobs=tasks.get_queue().stats(),
        workers=tasks.get_pool().stats(),
        media=get_media_queue_status(),
    )


# ── Timeline ──────────────────────────────────────────────────────────────────

@router.post("/timeline/validate", response_model=ValidateResponse)
async def validate_timeline(req: TimelineRequest):
    result = normalize_timeline(req.timeline, tasks.get_config().timeline)
    tl = result.timeline
    return ValidateResponse(
        duration=tl.duration,
        frame_rate=tl.frame_rate,
        width=tl.resolution.width,
        height=tl.resolution.height,
        clip_count=tl.clip_count,
        clips_removed=result.clips_removed,
        warnings=result.warnings,
        placeholders=sorted(find_placeholders(req.timeline)),
    )


@router.post("/timeline/compile", response_model=CompileResponse)
async def compile_timeline(req: TimelineRequest):
    compiled = compile_render(
        req.timeline, req.merge_fields, req.merge_field_specs, req.output, tasks.get_config(),
    )
    graph = compiled.graph
    return CompileResponse(
        filter_complex=graph.to_filter_complex(),
        command=compiled.command,
        inputs=len(graph.inputs),
        nodes=len(graph.nodes),
        duration=graph.duration,
        width=graph.width,
        height=graph.height,
        fps=graph.fps,
        composition=compiled.composition.to_dict(),
        merge_report=compiled.merge_report.to_dict(),
    )


# ── Render jobs ───────────────────────────────────────────────────────────────

@router.post("/render", response_model=RenderResponse, status_code=202)
async def submit_render(req: RenderRequest):
    job_id = tasks.get_queue().enqueue(req.to_payload(), req.priority, req.attempts, req.backoff)
    return RenderResponse(job_id=job_id)


@router.get("/jobs")
async def list_jobs(state: JobState | None = Query(None), limit: int = Query(100, ge=1, le=1000)):
    jobs = tasks.get_queue().list_jobs(state)
    return [j.to_status() for j in jobs[:limit]]


@router.get("/jobs/{job_id}")
async def get_job(job_id: str):
    status = tasks.get_queue().get_status(job_id)
    if status is None:
        raise HTTPException(404, "Job not found")
    return status


@router.delete("/jobs/{job_id}", response_model=CancelResponse)
async def cancel_job(job_id: str):
    queue = tasks.get_queue()
    if queue.get(job_id) is None:
        raise HTTPException(404, "Job not found")
    return CancelResponse(job_id=job_id, cancelled=queue.cancel(job_id))


# ── SSE ───────────────────────────────────────────────────────────────────────

@router.get("/events")
async def sse_events():
    q = tasks.subscribe_sse()
    async def gen():
        try:
            while True:
                try:
                    ev = await asyncio.wait_for(q.get(), timeout=30)
                    yield f"data: {json.dumps(ev)}\n\n"
                except asyncio.TimeoutError:
                    yield f"data: {json.dumps({'type': 'heartbeat'})}\n\n"
        finally:
            tasks.unsubscribe_sse(q)
    return StreamingResponse(gen(), media_type="text/event-stream",
                             headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"})


# ── Asset cache ───────────────────────────────────────────────────────────────

@router.get("/cache/stats")
async def cache_stats():
    return tasks.get_cache().stats()


@router.post("/cache/cleanup")
async def cache_cleanup(max_age_hours: float | None = Query(None, ge=0)):
    removed = tasks.get_cache().cleanup(max_age_hours)
    return {"removed": removed, **tasks.get_cache().stats()}
