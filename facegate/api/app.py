"""FastAPI application for FaceGate.

Endpoints:
  GET    /health                        - Health check with pipeline stats
  POST   /frames                        - Submit a camera frame for recognition
  POST   /gallery/enroll                - Enroll a face image for a person
  GET    /gallery/people                - List enrolled people
  DELETE /gallery/people/{person_id}    - Remove a person from the gallery
  POST   /gallery/refresh               - Reload the gallery snapshot from storage
  GET    /gallery/count                 - Stored faces and loaded identities
  GET    /captures                      - Recent recognition captures
  GET    /captures/stream               - SSE stream of recognition events
  GET    /captures/{capture_id}/thumbnail - JPEG face thumbnail of a capture
"""

from __future__ import annotations

import asyncio
import io
import json
import logging
import time
from contextlib import asynccontextmanager
from typing import Any
from uuid import uuid4

import numpy as np
from fastapi import FastAPI, Form, HTTPException, Query, Request, Response, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from PIL import Image, UnidentifiedImageError
from starlette.responses import StreamingResponse

import facegate
from facegate.api.sse import EventBroadcaster
from facegate.config import Settings, settings
from facegate.exceptions import FaceGateError, NotFoundError
from facegate.logging_config import log_startup_info, setup_logging
from facegate.recognition.enrollment import enroll_image
from facegate.recognition.factory import backend_summary, build_orchestrator
from facegate.recognition.mapping import CoordinateMapper
from facegate.recognition.orchestrator import RecognitionOrchestrator, frame_from_array
from facegate.storage.captures import DatabaseCaptureSink
from facegate.storage.database import Database, SqliteGalleryStore

logger = logging.getLogger("facegate")

_STARTUP_TIME: float = 0.0

# Process-wide instances, created in startup()
_db: Database | None = None
_store: SqliteGalleryStore | None = None
_orchestrator: RecognitionOrchestrator | None = None
_broadcaster = EventBroadcaster()


async def startup(cfg: Settings | None = None) -> RecognitionOrchestrator:
    """Connect storage, build the pipeline and load the gallery."""
    global _STARTUP_TIME, _db, _store, _orchestrator, _broadcaster
    cfg = cfg or settings
    _STARTUP_TIME = time.monotonic()

    _db = Database(cfg.db_path)
    await _db.connect()
    _store = SqliteGalleryStore(_db)
    _broadcaster = EventBroadcaster()
    _orchestrator = build_orchestrator(cfg, _store, DatabaseCaptureSink(_db, _broadcaster))

    result = await _orchestrator.gallery.refresh()
    if not result.ok:
        logger.warning("Starting with an empty gallery: %s", result.error)

    log_startup_info(backend_summary(_orchestrator), cfg)
    return _orchestrator


async def shutdown() -> None:
    global _db, _store, _orchestrator
    if _orchestrator is not None:
        await _orchestrator.aclose()
    logger.info("Shutting down: draining SSE subscribers")
    _broadcaster.shutdown()
    if _db is not None:
        logger.info("Closing database connection")
        await _db.close()
    _db = _store = _orchestrator = None
    logger.info("Shutdown complete")


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    await startup()
    yield
    await shutdown()


_OPENAPI_TAGS = [
    {"name": "Health", "description": "Health checks and pipeline status"},
    {"name": "Recognition", "description": "Frame submission and recognition decisions"},
    {"name": "Gallery", "description": "Enrollment and gallery management"},
    {"name": "Captures", "description": "Stored recognition events and live stream"},
]

app = FastAPI(
    title="FaceGate",
    description="Real-time face recognition with liveness gating and event debouncing.",
    version=facegate.__version__,
    lifespan=lifespan,
    openapi_tags=_OPENAPI_TAGS,
)


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------
@app.exception_handler(FaceGateError)
async def facegate_error_handler(request: Request, exc: FaceGateError) -> JSONResponse:
    """Centralized handler for FaceGate exceptions."""
    request_id = getattr(request.state, "request_id", "unknown")
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.error_type,
            "message": exc.message,
            "request_id": request_id,
        },
    )


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next) -> Response:
    request_id = str(uuid4())[:8]
    request.state.request_id = request_id
    start = time.monotonic()
    response: Response = await call_next(request)
    elapsed_ms = round((time.monotonic() - start) * 1000, 1)
    logger.info(
        "%s %s %s %.1fms [%s]",
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
        request_id,
        extra={
            "request_id": request_id,
            "path": request.url.path,
            "method": request.method,
            "status_code": response.status_code,
            "duration_ms": elapsed_ms,
        },
    )
    response.headers["X-Request-ID"] = request_id
    return response


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _pipeline() -> RecognitionOrchestrator:
    if _orchestrator is None:
        raise HTTPException(status_code=503, detail="Recognition pipeline not initialized")
    return _orchestrator


def _gallery_store() -> SqliteGalleryStore:
    if _store is None:
        raise HTTPException(status_code=503, detail="Gallery store not initialized")
    return _store


def _database() -> Database:
    if _db is None:
        raise HTTPException(status_code=503, detail="Database not initialized")
    return _db


async def _read_image(image: UploadFile) -> np.ndarray:
    image_bytes = await image.read()
    if not image_bytes:
        raise HTTPException(status_code=400, detail="Empty image upload")
    try:
        pil_img = Image.open(io.BytesIO(image_bytes)).convert("RGB")
    except (UnidentifiedImageError, OSError) as exc:
        raise HTTPException(status_code=400, detail=f"Unreadable image: {exc}") from exc
    return np.asarray(pil_img, dtype=np.uint8)


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


@app.get("/health", tags=["Health"], summary="Health check")
async def health():
    uptime_s = time.monotonic() - _STARTUP_TIME if _STARTUP_TIME > 0 else 0
    if _orchestrator is None:
        return {"status": "starting", "version": facegate.__version__}
    return {
        "status": "ok",
        "version": facegate.__version__,
        "uptime_seconds": round(uptime_s, 1),
        "backends": backend_summary(_orchestrator),
        "similarity_metric": _orchestrator.matcher.metric,
        "accept_threshold": _orchestrator.matcher.accept_threshold,
        "gallery_size": len(_orchestrator.gallery),
        "gallery_version": _orchestrator.gallery.snapshot().version,
        "pipeline": _orchestrator.stats,
        "sse_subscribers": _broadcaster.subscriber_count,
    }


# ---------------------------------------------------------------------------
# Recognition
# ---------------------------------------------------------------------------


@app.post("/frames", tags=["Recognition"], summary="Submit a camera frame")
async def submit_frame(
    image: UploadFile,
    timestamp_ms: int | None = Form(default=None),
    view_width: float | None = Form(default=None),
    view_height: float | None = Form(default=None),
    front_facing: bool = Form(default=False),
):
    """Run one recognition cycle on an uploaded frame.

    Returns 429 when the frame is dropped because a cycle is already in
    flight or the frame arrived inside the throttle interval.
    """
    orchestrator = _pipeline()
    pixels = await _read_image(image)
    frame = frame_from_array(pixels, timestamp_ms)

    decision = await orchestrator.process_frame(frame)
    if decision is None:
        return JSONResponse(
            status_code=429,
            content={
                "error": "frame_dropped",
                "message": "Frame dropped: recognition cycle busy or throttled",
                "frame_timestamp_ms": frame.timestamp_ms,
            },
        )

    body: dict[str, Any] = decision.to_dict()
    body["display_bbox"] = None
    if decision.observation is not None and view_width is not None and view_height is not None:
        mapper = CoordinateMapper()
        mapper.configure(frame.width, frame.height, view_width, view_height, front_facing)
        body["display_bbox"] = mapper.map(decision.observation.bbox, strict=True).to_dict()
    return body


# ---------------------------------------------------------------------------
# Gallery
# ---------------------------------------------------------------------------


@app.post("/gallery/enroll", status_code=201, tags=["Gallery"], summary="Enroll a face")
async def gallery_enroll(
    image: UploadFile,
    person_id: str = Form(...),
    display_name: str | None = Form(default=None),
    require_liveness: bool = Form(default=True),
):
    """Detect a face, embed it, store it and refresh the gallery."""
    orchestrator = _pipeline()
    store = _gallery_store()
    pixels = await _read_image(image)

    entry = await enroll_image(
        pixels,
        person_id,
        display_name or person_id,
        detector=orchestrator.detector,
        gate=orchestrator.gate if require_liveness else None,
        extractor=orchestrator.extractor,
        store=store,
        timeout_s=orchestrator.backend_timeout_s,
    )
    refresh = await orchestrator.gallery.refresh()
    entry["gallery_size"] = refresh.loaded
    return entry


@app.get("/gallery/people", tags=["Gallery"], summary="List enrolled people")
async def gallery_people():
    people = await _gallery_store().list_people()
    return {"people": people, "total": len(people)}


@app.delete("/gallery/people/{person_id}", tags=["Gallery"], summary="Delete a person")
async def gallery_delete_person(person_id: str):
    orchestrator = _pipeline()
    deleted = await _gallery_store().delete_person(person_id)
    if deleted == 0:
        raise NotFoundError(f"Person {person_id} not found")
    refresh = await orchestrator.gallery.refresh()
    return {"person_id": person_id, "faces_deleted": deleted, "gallery_size": refresh.loaded}


@app.post("/gallery/refresh", tags=["Gallery"], summary="Reload the gallery")
async def gallery_refresh():
    result = await _pipeline().gallery.refresh()
    if not result.ok and result.error is not None:
        raise result.error
    return {
        "loaded": result.loaded,
        "conflicts": result.conflicts,
        "skipped": result.skipped,
        "version": _pipeline().gallery.snapshot().version,
    }


@app.get("/gallery/count", tags=["Gallery"], summary="Gallery size")
async def gallery_count():
    faces = await _gallery_store().count()
    return {"faces": faces, "identities": len(_pipeline().gallery)}


# ---------------------------------------------------------------------------
# Captures
# ---------------------------------------------------------------------------

_HEARTBEAT_INTERVAL: float = 15.0  # seconds


@app.get("/captures", tags=["Captures"], summary="Recent captures")
async def list_captures(
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
):
    captures = await _database().list_captures(limit=limit, offset=offset)
    return {"captures": captures, "limit": limit, "offset": offset}


@app.get("/captures/stream", tags=["Captures"], summary="SSE recognition event stream")
async def capture_stream(
    person_id: str | None = Query(default=None, description="Only events for this person"),
):
    """Server-Sent Events endpoint for emitted recognition decisions."""
    broadcaster = _broadcaster

    async def _generate():
        queue = broadcaster.subscribe()
        try:
            # Immediate heartbeat so the client receives headers right away
            yield "event: heartbeat\ndata: {}\n\n"
            while True:
                try:
                    event_data = await asyncio.wait_for(queue.get(), timeout=_HEARTBEAT_INTERVAL)
                except asyncio.TimeoutError:
                    yield "event: heartbeat\ndata: {}\n\n"
                    continue
                if event_data is None:
                    break
                if person_id is not None and event_data["capture"]["person_id"] != person_id:
                    continue
                yield f"event: recognition\ndata: {json.dumps(event_data)}\n\n"
        finally:
            broadcaster.unsubscribe(queue)

    return StreamingResponse(
        _generate(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@app.get(
    "/captures/{capture_id}/thumbnail",
    tags=["Captures"],
    summary="Face thumbnail of a capture",
)
async def capture_thumbnail(capture_id: str):
    data = await _database().get_capture_thumbnail(capture_id)
    if data is None:
        raise NotFoundError(f"No thumbnail for capture {capture_id}")
    return Response(content=data, media_type="image/jpeg")
