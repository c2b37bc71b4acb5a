"""Structural web extraction micro-service.

This FastAPI app exposes:
- POST   /jobs                   to enqueue a crawl job
- GET    /jobs/{job_id}          to poll status
- GET    /jobs/{job_id}/records  to read the kept records of a finished job
- POST   /jobs/{job_id}/package  to package a finished job's records on demand
- GET    /queue, DELETE /queue   to inspect or clear not-yet-started jobs
- POST   /detect                 to propose list-item regions for a page
- POST   /preview/selector       to check what a selector matches
- WS     /ws/tasks               for live progress events
- /metrics for Prometheus and /healthz for liveness

Jobs run one at a time on a single worker with their own browser session.
"""

from __future__ import annotations

import asyncio
import datetime
import logging
import pathlib
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, Field

from .config import get_config
from .errors import CrawlError, PackagingError, SessionError, classify_exception
from .extraction.detector import DetectorConstraints, detect
from .extraction.selectors import preview_selector
from .jobs import JobQueue, RunStatus
from .metrics import REQUEST_COUNT, REQUEST_LATENCY
from .models import JobDefinition, PackageConfig
from .notifier import ProgressNotifier
from .runtime import BrowserRuntime
from .store import InMemoryRunStore, SafeRunStore
from .workers import CrawlWorker

config = get_config()

# ----------------------------------------------------------------------------
# Logging
# ----------------------------------------------------------------------------

def init_service_logger() -> logging.Logger:
    """Service logger: dated file under LOG_ROOT plus console."""
    today = datetime.date.today().isoformat()
    base_dir = pathlib.Path(config.system.log_root) / "base" / "crawler"
    base_dir.mkdir(parents=True, exist_ok=True)

    handlers: list[logging.Handler] = [
        logging.FileHandler(base_dir / f"{today}.log"),
        logging.StreamHandler(),
    ]

    logger = logging.getLogger("crawler.service")
    if not logger.handlers:
        logger.setLevel(config.system.log_level)
        formatter = logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s")
        for h in handlers:
            h.setFormatter(formatter)
            logger.addHandler(h)

    return logger


service_logger = init_service_logger()

# ----------------------------------------------------------------------------
# Request models
# ----------------------------------------------------------------------------

class JobSubmitRequest(JobDefinition):
    task_id: Optional[str] = Field(None, alias="taskId")


class DetectRequest(BaseModel):
    url: str
    target_ratio: Optional[float] = Field(None, gt=0)
    tolerance: Optional[float] = Field(None, ge=0)
    min_area: Optional[float] = Field(None, ge=0)
    max_area: Optional[float] = Field(None, gt=0)
    max_candidates: Optional[int] = Field(None, gt=0, le=20)

    def constraints(self) -> DetectorConstraints:
        constraints = DetectorConstraints()
        for name in ("target_ratio", "tolerance", "min_area", "max_area", "max_candidates"):
            value = getattr(self, name)
            if value is not None:
                setattr(constraints, name, value)
        return constraints


class SelectorPreviewRequest(BaseModel):
    url: str
    selector: str = Field(min_length=1)
    limit: int = Field(5, gt=0, le=50)

# ----------------------------------------------------------------------------
# App + global runtime
# ----------------------------------------------------------------------------

app = FastAPI(title="Structural Web Extraction Service", version="1.0.0")

if config.security.cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.security.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

browser_runtime: BrowserRuntime | None = None
notifier: ProgressNotifier | None = None
worker: CrawlWorker | None = None
job_queue: JobQueue | None = None
startup_time: datetime.datetime | None = None


def _require_api_key(request: Request) -> None:
    if config.security.api_key_required:
        api_key_header = request.headers.get("x-api-key")
        if not api_key_header or api_key_header != config.security.api_key:
            raise HTTPException(status_code=401, detail="Invalid or missing API key")


def _require_queue() -> JobQueue:
    if not job_queue:
        raise HTTPException(status_code=503, detail="Job queue not initialized")
    return job_queue


@app.middleware("http")
async def prometheus_middleware(request: Request, call_next):
    """Collect Prometheus metrics for each request."""
    endpoint = request.url.path
    method = request.method
    with REQUEST_LATENCY.labels(endpoint).time():
        response = await call_next(request)
    REQUEST_COUNT.labels(endpoint, method, response.status_code).inc()
    return response


@app.get("/healthz")
async def healthz() -> Dict[str, Any]:
    """Liveness check with component status."""
    components = {
        "browser": "ok" if browser_runtime and browser_runtime.started else "error",
        "queue": "ok" if job_queue else "error",
        "worker": "ok" if worker else "error",
    }
    all_healthy = all(status == "ok" for status in components.values())
    return {
        "status": "ok" if all_healthy else "degraded",
        "components": components,
        "uptime_seconds": (
            int((datetime.datetime.utcnow() - startup_time).total_seconds()) if startup_time else 0
        ),
    }


@app.get("/metrics")
async def metrics() -> Response:
    """Prometheus metrics endpoint."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

# ----------------------------------------------------------------------------
# Jobs
# ----------------------------------------------------------------------------

@app.post("/jobs")
async def submit_job(body: JobSubmitRequest, request: Request):
    """Validate and enqueue a crawl job; returns immediately."""
    _require_api_key(request)
    queue = _require_queue()

    errors = body.configuration_errors()
    if errors:
        raise HTTPException(status_code=422, detail=errors)

    definition = JobDefinition.model_validate(body.model_dump(exclude={"task_id"}))
    job_id = queue.new_job_id()
    await worker.store.create_run(job_id, {"task_id": body.task_id, "urls": definition.urls})
    run = queue.submit(definition, task_id=body.task_id, job_id=job_id)

    service_logger.info(f"Submitted job {run.job_id} ({len(definition.urls)} targets, task {body.task_id})")
    return {"job_id": run.job_id, "status": run.status.value}


@app.get("/jobs/{job_id}")
async def get_job(job_id: str):
    run = _require_queue().get(job_id)
    if not run:
        raise HTTPException(status_code=404, detail="Job not found")
    return run.snapshot()


@app.get("/jobs/{job_id}/records")
async def get_job_records(job_id: str):
    run = _require_queue().get(job_id)
    if not run:
        raise HTTPException(status_code=404, detail="Job not found")
    if run.status != RunStatus.SUCCESS:
        raise HTTPException(status_code=409, detail=f"Job is {run.status.value}")
    return {"job_id": job_id, "count": len(run.records), "records": run.records}


@app.post("/jobs/{job_id}/package")
async def package_job(job_id: str, body: PackageConfig, request: Request):
    """Package a finished job's records with the given templates."""
    _require_api_key(request)
    run = _require_queue().get(job_id)
    if not run:
        raise HTTPException(status_code=404, detail="Job not found")
    if run.status != RunStatus.SUCCESS:
        raise HTTPException(status_code=409, detail=f"Job is {run.status.value}")

    try:
        archive_path = await worker.package_run(run, body)
    except PackagingError as e:
        service_logger.error(f"Packaging job {job_id} failed: {e.message}")
        raise HTTPException(status_code=500, detail=e.message)
    return {"job_id": job_id, "archive_path": archive_path}


@app.get("/queue")
async def get_queue():
    return _require_queue().get_queue_status()


@app.delete("/queue")
async def clear_queue(request: Request):
    """Remove jobs that have not started; a running job is not interrupted."""
    _require_api_key(request)
    removed = await _require_queue().clear_queue()
    return {"removed": removed, "count": len(removed)}

# ----------------------------------------------------------------------------
# Operator previews
# ----------------------------------------------------------------------------

async def _open_preview_page(page, url: str) -> None:
    crawler = config.crawler
    try:
        await page.goto(url, timeout=crawler.navigation_timeout_ms, wait_until="domcontentloaded")
    except Exception as e:
        error = classify_exception(e, url)
        raise HTTPException(status_code=502, detail=f"Could not load {url}: {error.message}")
    try:
        await page.wait_for_load_state("networkidle", timeout=crawler.preview_timeout_ms)
    except Exception:
        service_logger.info(f"Network not idle for {url}, previewing anyway")


@app.post("/detect")
async def detect_regions(body: DetectRequest):
    """Propose list-item regions for a page, with base64 PNG previews."""
    if not browser_runtime:
        raise HTTPException(status_code=503, detail="Browser runtime not initialized")
    try:
        async with browser_runtime.session(logger=service_logger) as session:
            await _open_preview_page(session.page, body.url)
            candidates = await detect(session.page, body.constraints(), logger=service_logger)
    except SessionError as e:
        raise HTTPException(status_code=503, detail=e.message)
    return {"url": body.url, "candidates": [c.to_dict() for c in candidates]}


@app.post("/preview/selector")
async def preview_selector_endpoint(body: SelectorPreviewRequest):
    """Count and sample what a selector matches on a page."""
    if not browser_runtime:
        raise HTTPException(status_code=503, detail="Browser runtime not initialized")
    try:
        async with browser_runtime.session(logger=service_logger) as session:
            await _open_preview_page(session.page, body.url)
            result = await preview_selector(session.page, body.selector, limit=body.limit)
    except SessionError as e:
        raise HTTPException(status_code=503, detail=e.message)
    except CrawlError as e:
        raise HTTPException(status_code=502, detail=e.message)
    return {"url": body.url, **result}

# ----------------------------------------------------------------------------
# Progress stream
# ----------------------------------------------------------------------------

@app.websocket("/ws/tasks")
async def task_updates(websocket: WebSocket):
    """Push every progress event as a TASK_STATUS_UPDATE message."""
    if not notifier:
        await websocket.close(code=1013)
        return

    await websocket.accept()
    queue = notifier.open_stream()
    service_logger.info(f"Progress client connected ({notifier.stream_count} open)")
    await websocket.send_json({
        "type": "CONNECTED",
        "payload": {"message": "Connected to task updates"},
        "timestamp": datetime.datetime.utcnow().isoformat() + "Z",
    })

    async def forward() -> None:
        while True:
            await websocket.send_json(await queue.get())

    async def drain() -> None:
        # Client messages are ignored; receiving notices the disconnect.
        while True:
            await websocket.receive_text()

    tasks = [asyncio.create_task(forward()), asyncio.create_task(drain())]
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for task in done:
            error = task.exception()
            if error and not isinstance(error, WebSocketDisconnect):
                service_logger.warning(f"Progress stream closed: {error}")
    finally:
        notifier.close_stream(queue)
        service_logger.info("Progress client disconnected")

# ----------------------------------------------------------------------------
# Lifecycle
# ----------------------------------------------------------------------------

@app.on_event("startup")
async def on_startup() -> None:
    """Start browser runtime, worker and queue consumer."""
    global browser_runtime, notifier, worker, job_queue, startup_time

    startup_time = datetime.datetime.utcnow()
    service_logger.info("Starting structural extraction service...")
    service_logger.info(f"Configuration: {config.get_configuration_summary()}")

    browser_runtime = BrowserRuntime(config.browser, logger=service_logger)
    await browser_runtime.start()
    service_logger.info("✅ Browser runtime started")

    notifier = ProgressNotifier(logger=service_logger)
    worker = CrawlWorker(
        runtime=browser_runtime,
        store=SafeRunStore(InMemoryRunStore(), logger=service_logger),
        notifier=notifier,
        config=config,
        logger=service_logger,
    )
    job_queue = JobQueue(worker.run, on_removed=worker.announce_removed, logger=service_logger)
    await job_queue.start()
    service_logger.info("✅ Job queue started")


@app.on_event("shutdown")
async def on_shutdown() -> None:
    """Stop the consumer, then the browser runtime."""
    service_logger.info("Shutting down structural extraction service...")

    if job_queue:
        await job_queue.stop()
        service_logger.info("✅ Job queue stopped")

    if browser_runtime:
        await browser_runtime.stop()
        service_logger.info("✅ Browser runtime stopped")


def run() -> None:
    import uvicorn

    uvicorn.run("lowcode_crawler.main:app", host="0.0.0.0", port=config.system.service_port)
