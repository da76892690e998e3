"""CrossShot collector HTTP/WebSocket server."""
from __future__ import annotations

import asyncio
import json
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator

from fastapi import APIRouter, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from .bridge import NotificationBridge, QueueListener
from .config import Settings, load_settings
from .device_info import build_device_info
from .framing import parse_frame
from .ingest import Ingestor, MissingFile, PayloadTooLarge
from .sessions import SessionRegistry
from .store import MetadataStore
from .types import DeviceInfo, UnsupportedPlatform, now_iso, validate_platform

logger = logging.getLogger(__name__)

PROXY_STREAM_PATH = "/ws/proxy"

MIME_MAP = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".heic": "image/heic",
    ".heif": "image/heif",
    ".webp": "image/webp",
}

_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


# ─── Wiring ───────────────────────────────────────────────────────────────────

@dataclass
class Collector:
    settings: Settings
    bridge: NotificationBridge
    store: MetadataStore
    sessions: SessionRegistry
    ingestor: Ingestor
    token: str = field(default_factory=lambda: uuid.uuid4().hex)


def build_collector(settings: Settings) -> Collector:
    bridge = NotificationBridge()
    store = MetadataStore(settings.snapshot_path, bridge)
    sessions = SessionRegistry(bridge, heartbeat_timeout=settings.heartbeat_timeout)
    ingestor = Ingestor(
        settings.storage_dir,
        store,
        max_bytes=settings.max_upload_bytes,
        service_marker=settings.service_name,
    )
    return Collector(
        settings=settings,
        bridge=bridge,
        store=store,
        sessions=sessions,
        ingestor=ingestor,
    )


def _collector(request: Request) -> Collector:
    return request.app.state.collector


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


router = APIRouter()


# ─── Health ───────────────────────────────────────────────────────────────────

@router.get("/health")
def health(request: Request):
    collector = _collector(request)
    return {
        "status": "ok",
        "service": collector.settings.service_name,
        "version": __version__,
        "timestamp": now_iso(),
        "storageDir": str(collector.settings.storage_dir),
        "token": collector.token,
    }


# ─── Screenshots ──────────────────────────────────────────────────────────────

@router.post("/api/upload")
async def upload_screenshot(request: Request):
    collector = _collector(request)
    async with request.form() as form:
        shot = form.get("screenshot")
        if not isinstance(shot, UploadFile):
            return _error(400, str(MissingFile()))
        fields = {k: v for k, v in form.multi_items() if isinstance(v, str)}
        try:
            if shot.size is not None:
                collector.ingestor.check_size(shot.size)
            data = await shot.read()
            record = await run_in_threadpool(
                collector.ingestor.ingest_upload, data, shot.filename, fields
            )
        except PayloadTooLarge as exc:
            return _error(413, str(exc))
        except Exception as exc:
            logger.exception("Failed to handle upload")
            return _error(500, str(exc))
    return {"success": True, "data": record.to_json()}


@router.get("/api/screenshots")
def list_screenshots(request: Request):
    return {"success": True, "data": _collector(request).store.to_json()}


@router.delete("/api/screenshots")
def clear_screenshots(request: Request):
    if not _collector(request).store.clear_all():
        return JSONResponse({"success": False, "error": "failed to clear screenshots"}, status_code=500)
    return {"success": True}


@router.delete("/api/screenshots/{screenshot_id}")
def delete_screenshot(screenshot_id: str, request: Request):
    if not _collector(request).store.remove(screenshot_id):
        return _error(404, "Screenshot not found")
    return {"success": True}


@router.get("/api/screenshots/{screenshot_id}/file")
def get_screenshot_file(screenshot_id: str, request: Request):
    record = _collector(request).store.get(screenshot_id)
    if record is None:
        return _error(404, "Screenshot not found")
    path = Path(record.storagePath)
    if not path.is_file():
        return _error(410, "Screenshot file missing")
    media_type = MIME_MAP.get(path.suffix.lower(), "application/octet-stream")
    return FileResponse(path, media_type=media_type, filename=record.filename)


# ─── Device sessions ──────────────────────────────────────────────────────────

class DeviceAnnouncement(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    platform: str | None = None
    device_id: str | None = Field(default=None, alias="deviceId")
    device_info: dict[str, Any] | str | None = Field(default=None, alias="deviceInfo")


def _require_device(body: DeviceAnnouncement) -> tuple[str, str]:
    device_id = (body.device_id or "").strip()
    if not body.platform or not device_id:
        raise HTTPException(status_code=400, detail="platform and deviceId are required")
    try:
        return validate_platform(body.platform), device_id
    except UnsupportedPlatform as exc:
        raise HTTPException(status_code=400, detail=str(exc))


def _announced_device_info(collector: Collector, body: DeviceAnnouncement, platform: str) -> DeviceInfo:
    explicit = body.device_info if isinstance(body.device_info, dict) else None
    info = build_device_info(body.device_info, explicit, marker=collector.settings.service_name)
    if info.platform is None:
        info.platform = platform
    return info


@router.post("/api/announce")
def announce(body: DeviceAnnouncement, request: Request):
    collector = _collector(request)
    platform, device_id = _require_device(body)
    try:
        info = _announced_device_info(collector, body, platform)
        collector.sessions.announce(platform, device_id, info)
    except Exception as exc:
        logger.exception("announce failed platform=%s device_id=%s", platform, device_id)
        return _error(500, str(exc))
    return {"success": True}


@router.post("/api/heartbeat")
def heartbeat(body: DeviceAnnouncement, request: Request):
    collector = _collector(request)
    platform, device_id = _require_device(body)
    try:
        info = _announced_device_info(collector, body, platform)
        collector.sessions.heartbeat(platform, device_id, info)
    except Exception as exc:
        logger.exception("heartbeat failed platform=%s device_id=%s", platform, device_id)
        return _error(500, str(exc))
    return {"success": True}


@router.post("/api/announce/stop")
def announce_stop(body: DeviceAnnouncement, request: Request):
    collector = _collector(request)
    platform, device_id = _require_device(body)
    try:
        result = collector.sessions.stop(platform, device_id)
    except Exception as exc:
        logger.exception("announce stop failed platform=%s device_id=%s", platform, device_id)
        return _error(500, str(exc))
    return result.to_json()


@router.post("/api/sessions/claim")
def claim_session(body: DeviceAnnouncement, request: Request):
    collector = _collector(request)
    platform, device_id = _require_device(body)
    result = collector.sessions.claim(platform, device_id)
    if not result.success:
        return JSONResponse(result.to_json(), status_code=409)
    return result.to_json()


@router.get("/api/sessions")
def get_sessions(request: Request):
    return {"success": True, "data": _collector(request).sessions.snapshot()}


# ─── Presentation events (SSE) ────────────────────────────────────────────────

SSE_KEEPALIVE_SECONDS = 25.0


def _sse_event(event: str, payload: Any) -> str:
    return f"event: {event}\ndata: {json.dumps(payload, ensure_ascii=False)}\n\n"


async def event_stream(
    collector: Collector,
    listener: QueueListener,
    keepalive: float = SSE_KEEPALIVE_SECONDS,
) -> AsyncIterator[str]:
    """Current sessions and screenshots, then every bridge event as it arrives.

    ``listener`` must already be registered on the bridge; it is removed when
    the stream ends.
    """
    try:
        yield ": connected\n\n"
        yield _sse_event("sessions", collector.sessions.snapshot())
        yield _sse_event("screenshots", collector.store.to_json())
        while True:
            try:
                event, payload = await asyncio.wait_for(listener.queue.get(), timeout=keepalive)
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
                continue
            yield _sse_event(event, payload)
    finally:
        collector.bridge.remove_listener(listener)


@router.get("/api/events")
async def events(request: Request):
    collector = _collector(request)
    listener = QueueListener(asyncio.get_running_loop())
    collector.bridge.add_listener(listener)
    return StreamingResponse(
        event_stream(collector, listener),
        media_type="text/event-stream",
        headers=_SSE_HEADERS,
    )


# ─── Proxy stream ─────────────────────────────────────────────────────────────

def handle_proxy_message(collector: Collector, data: bytes) -> dict[str, Any]:
    """Ingest one proxy frame and build the reply sent back on the stream."""
    try:
        collector.ingestor.check_size(len(data))
        record = collector.ingestor.ingest_proxy(parse_frame(data))
    except Exception as exc:
        logger.exception("Proxy upload failed")
        return {"success": False, "error": str(exc)}
    return {"success": True, "saved": True, "data": record.to_json()}


async def _receive(websocket: WebSocket, idle_timeout: float) -> dict[str, Any]:
    if idle_timeout > 0:
        return await asyncio.wait_for(websocket.receive(), timeout=idle_timeout)
    return await websocket.receive()


@router.websocket(PROXY_STREAM_PATH)
async def proxy_stream(websocket: WebSocket):
    collector: Collector = websocket.app.state.collector
    idle_timeout = collector.settings.proxy_idle_timeout
    await websocket.accept()
    peer = websocket.client
    logger.info("Proxy stream connected: %s", peer)
    try:
        while True:
            message = await _receive(websocket, idle_timeout)
            if message["type"] == "websocket.disconnect":
                break
            data = message.get("bytes")
            if data is None:
                data = (message.get("text") or "").encode("utf-8")
            reply = await run_in_threadpool(handle_proxy_message, collector, data)
            await websocket.send_json(reply)
    except asyncio.TimeoutError:
        logger.info("Proxy stream idle for %.0fs, closing: %s", idle_timeout, peer)
        await websocket.close(code=1000)
    except WebSocketDisconnect:
        pass
    logger.info("Proxy stream disconnected: %s", peer)


# ─── App factory ──────────────────────────────────────────────────────────────

async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        {"error": exc.detail},
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )


async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        {"error": "invalid request", "details": jsonable_encoder(exc.errors())},
        status_code=400,
    )


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or load_settings()
    collector = build_collector(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        collector.store.load()
        sweeper = asyncio.create_task(
            collector.sessions.run_sweeper(settings.sweep_interval)
        )
        logger.info("Collector ready, storing screenshots in %s", settings.storage_dir)
        try:
            yield
        finally:
            sweeper.cancel()
            try:
                await sweeper
            except asyncio.CancelledError:
                pass
            logger.info("Collector stopped")

    app = FastAPI(title="CrossShot Collector", version=__version__, lifespan=lifespan)
    app.state.collector = collector
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(StarletteHTTPException, _http_error)
    app.add_exception_handler(RequestValidationError, _validation_error)
    app.include_router(router)
    return app
