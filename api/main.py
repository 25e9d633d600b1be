#!/usr/bin/env python3
import json
import logging
import os
from typing import Any, Optional

import anyio
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, StreamingResponse
from pydantic import BaseModel
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from config.settings import DEFAULT_SPLIT_SECONDS, PipelineSettings, load_settings
from engine.errors import InvalidJobRequest
from engine.job_store import JobStore
from engine.logging_utils import setup_logging
from engine.paths import build_service_paths
from engine.pipeline import Pipeline
from engine.progress import ProgressBus
from engine.runtime import get_runtime_info

APP_NAME = "Video Splitter API"
RECLAIM_JOB_ID = "reclaim_jobs"
_TRUST_PROXY = os.environ.get("VIDEOSPLITTER_TRUST_PROXY", "").strip().lower() in {"1", "true", "yes", "on"}


def _env_or_default(name, default):
    value = os.environ.get(name)
    return value if value not in (None, "") else default


def _cors_origins():
    raw = _env_or_default("VIDEOSPLITTER_CORS_ORIGINS", "*")
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


class ConvertRequest(BaseModel):
    url: Optional[str] = None
    prefix: Optional[str] = None
    split_seconds: Optional[Any] = DEFAULT_SPLIT_SECONDS


class SafeJSONResponse(JSONResponse):
    def render(self, content):
        return json.dumps(
            content,
            ensure_ascii=False,
            allow_nan=False,
            separators=(",", ":"),
            default=str,
        ).encode("utf-8")


app = FastAPI(
    title=APP_NAME,
    description="Download a video and split it into fixed-length parts without re-encoding.",
    default_response_class=SafeJSONResponse,
)

if _TRUST_PROXY:
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_methods=["*"],
    allow_headers=["*"],
)


def init_state(settings: PipelineSettings, jobs_dir, *, bus: Optional[ProgressBus] = None):
    """Build the job store, progress bus and pipeline on ``app.state``."""
    app.state.settings = settings
    app.state.bus = bus or ProgressBus()
    app.state.job_store = JobStore(jobs_dir, container_ext=settings.container_ext)
    app.state.pipeline = Pipeline(settings, job_store=app.state.job_store, bus=app.state.bus)
    return app.state.pipeline


def _reclaim_tick():
    store = getattr(app.state, "job_store", None)
    settings = getattr(app.state, "settings", None)
    if store is None or settings is None:
        return
    try:
        store.reclaim(settings.retention_hours)
    except Exception:
        logging.exception("Scheduled reclaim failed")


@app.on_event("startup")
async def startup():
    override = os.environ.get("VIDEOSPLITTER_CONFIG")
    try:
        paths = build_service_paths(override)
    except ValueError as exc:
        paths = build_service_paths(None)
        logging.error("Invalid config override %s: %s", override, exc)
    app.state.paths = paths
    app.state.log_path = setup_logging(paths.log_dir)
    settings = load_settings(paths.config_path)
    init_state(settings, paths.jobs_dir)
    logging.info(
        "Startup: jobs_dir=%s mirrors=%d fallback=%s retention_hours=%s",
        paths.jobs_dir,
        len(settings.mirrors),
        settings.enable_mirror_fallback,
        settings.retention_hours,
    )

    app.state.scheduler = BackgroundScheduler(timezone="UTC")
    app.state.scheduler.add_job(
        _reclaim_tick,
        trigger=IntervalTrigger(minutes=settings.reclaim_interval_minutes),
        id=RECLAIM_JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        misfire_grace_time=30,
    )
    app.state.scheduler.start()
    _reclaim_tick()


@app.on_event("shutdown")
async def shutdown():
    scheduler = getattr(app.state, "scheduler", None)
    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)


def _failure(status_code, error, **extra):
    payload = {"success": False, "error": error}
    payload.update({k: v for k, v in extra.items() if v is not None})
    return SafeJSONResponse(payload, status_code=status_code)


@app.post("/api/convert")
async def api_convert(payload: ConvertRequest):
    pipeline = app.state.pipeline
    try:
        request = pipeline.validate(payload.url, payload.prefix, payload.split_seconds)
    except InvalidJobRequest as exc:
        logging.info("Convert rejected: %s", exc.detail)
        return _failure(400, exc.detail)
    job = app.state.job_store.create(request.split_seconds, request.prefix)
    logging.info("Convert accepted job_id=%s url=%s split=%ss", job.id, request.url, request.split_seconds)
    result = await anyio.to_thread.run_sync(pipeline.run, job, request.url)
    if not result.success:
        return SafeJSONResponse(result.to_payload(), status_code=500)
    return result.to_payload()


async def _event_stream(request: Request, bus: ProgressBus, job_id: Optional[str]):
    stream = bus.subscribe(job_id=job_id)
    try:
        yield b": connected\n\n"
        async for event in stream:
            if await request.is_disconnected():
                break
            data = json.dumps(event.to_payload(), separators=(",", ":"))
            yield f"event: {event.channel}\ndata: {data}\n\n".encode("utf-8")
    finally:
        await stream.aclose()


@app.get("/api/events")
async def api_events(
    request: Request,
    job_id: Optional[str] = Query(None, description="Only stream events for this job"),
):
    generator = _event_stream(request, app.state.bus, job_id)
    return StreamingResponse(
        generator,
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.get("/api/jobs/{job_id}")
async def api_job(job_id: str):
    job = app.state.job_store.get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job.to_dict()


@app.get("/output/{job_id}/{name}")
async def api_output(job_id: str, name: str):
    try:
        path = app.state.job_store.resolve_output(job_id, name)
    except ValueError:
        raise HTTPException(status_code=404, detail="File not found") from None
    if not path.is_file():
        raise HTTPException(status_code=404, detail="File not found")
    return FileResponse(str(path), filename=name)


@app.post("/api/cleanup")
async def api_cleanup(max_age_hours: Optional[float] = Query(None, gt=0)):
    settings = app.state.settings
    age = max_age_hours if max_age_hours is not None else settings.retention_hours
    removed = await anyio.to_thread.run_sync(app.state.job_store.reclaim, age)
    return {"removed": removed, "max_age_hours": age}


@app.get("/api/version")
async def api_version():
    return get_runtime_info(getattr(app.state, "settings", None))


if __name__ == "__main__":
    import uvicorn

    host = _env_or_default("VIDEOSPLITTER_HOST", "127.0.0.1")
    port = int(_env_or_default("VIDEOSPLITTER_PORT", "5000"))
    uvicorn.run("api.main:app", host=host, port=port, reload=False)
