"""FastAPI application exposing capture sessions over HTTP."""
from __future__ import annotations

import asyncio
import logging
import subprocess
import threading
import uuid
from typing import AsyncGenerator, Callable, Literal

from fastapi import FastAPI, HTTPException, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from .config import CaptureSettings
from .engine import EngineNotFoundError
from .event_log import CaptureEventLog
from .frames import FrameFormat
from .operations import ImageStream
from .registry import OperationKind, ProcessRegistry
from .supervisor import SupervisorError
from .version import APP_VERSION

MJPEG_BOUNDARY = "frame"
NO_CACHE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, max-age=0",
    "Pragma": "no-cache",
}


class CapturePayload(BaseModel):
    source: str = Field(min_length=1)
    format: Literal["png", "jpeg"] = "jpeg"
    timeout_ms: int | None = Field(default=None, gt=0)
    quality: int | None = Field(default=None, ge=0, le=8)
    framerate: int | None = Field(default=None, ge=1, le=120)
    label: str | None = None


SessionFactory = Callable[[CapturePayload], ImageStream]


def render_mjpeg_chunk(payload: bytes, boundary: str = MJPEG_BOUNDARY) -> bytes:
    header = (
        f"--{boundary}\r\n"
        "Content-Type: image/jpeg\r\n"
        f"Content-Length: {len(payload)}\r\n"
        "\r\n"
    ).encode("ascii")
    return header + payload + b"\r\n"


async def stream_frames(
    session: ImageStream,
    *,
    poll_interval: float = 0.05,
) -> AsyncGenerator[bytes, None]:
    """Yield each new frame of ``session`` as a multipart chunk until it stops."""

    seen = -1
    while True:
        count = session.frame_count
        frame = session.last_frame
        if frame is not None and count != seen:
            seen = count
            yield render_mjpeg_chunk(frame)
        if not session.is_running:
            return
        await asyncio.sleep(poll_interval)


def create_app(
    *,
    settings: CaptureSettings | None = None,
    registry: ProcessRegistry | None = None,
    event_log: CaptureEventLog | None = None,
    session_factory: SessionFactory | None = None,
    popen: Callable[..., subprocess.Popen] = subprocess.Popen,
) -> FastAPI:
    app = FastAPI(title="RTSP Capture", version=APP_VERSION)

    logger = logging.getLogger(__name__)

    base_settings = settings or CaptureSettings.from_env()
    events = event_log if event_log is not None else CaptureEventLog()
    process_registry = registry if registry is not None else ProcessRegistry(
        base_settings.supervisor.engine_name, event_log=events
    )
    sessions: dict[str, ImageStream] = {}
    sessions_lock = threading.Lock()

    def _default_factory(payload: CapturePayload) -> ImageStream:
        session_settings = base_settings.with_overrides(
            timeout_ms=payload.timeout_ms,
            quality=payload.quality,
            framerate=payload.framerate,
        )

        def _on_stream_fail(message: str) -> None:
            # Dispose off the reporting thread.
            logger.warning("Capture of %s failed: %s", payload.source, message)
            threading.Thread(target=session.dispose, name="capture-dispose", daemon=True).start()

        session = ImageStream(
            payload.source,
            fmt=FrameFormat.from_name(payload.format),
            on_stream_fail=_on_stream_fail,
            settings=session_settings,
            registry=process_registry,
            event_log=events,
            label=payload.label,
            popen=popen,
        )
        return session

    factory = session_factory or _default_factory

    def _get_session(capture_id: str) -> ImageStream:
        with sessions_lock:
            session = sessions.get(capture_id)
        if session is None:
            raise HTTPException(status_code=404, detail="Capture not found")
        return session

    def _describe(capture_id: str, session: ImageStream) -> dict[str, object]:
        return {"id": capture_id, **session.status()}

    @app.on_event("shutdown")
    async def shutdown() -> None:
        with sessions_lock:
            active = list(sessions.values())
            sessions.clear()
        for session in active:
            try:
                await run_in_threadpool(session.dispose)
            except Exception:  # pragma: no cover - defensive logging
                logger.exception("Failed to dispose capture during shutdown")

    @app.get("/api/health")
    async def health() -> dict[str, object]:
        with sessions_lock:
            count = len(sessions)
        return {"status": "ok", "version": APP_VERSION, "captures": count}

    @app.get("/api/captures")
    async def list_captures() -> dict[str, object]:
        with sessions_lock:
            items = list(sessions.items())
        return {"captures": [_describe(capture_id, session) for capture_id, session in items]}

    @app.post("/api/captures", status_code=201)
    async def create_capture(payload: CapturePayload) -> dict[str, object]:
        try:
            session = factory(payload)
            await run_in_threadpool(session.start)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except (EngineNotFoundError, SupervisorError) as exc:
            logger.warning("Unable to start capture for %s: %s", payload.source, exc)
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        capture_id = uuid.uuid4().hex[:12]
        with sessions_lock:
            sessions[capture_id] = session
        return _describe(capture_id, session)

    @app.get("/api/captures/{capture_id}")
    async def get_capture(capture_id: str) -> dict[str, object]:
        return _describe(capture_id, _get_session(capture_id))

    @app.delete("/api/captures/{capture_id}")
    async def delete_capture(capture_id: str) -> dict[str, object]:
        with sessions_lock:
            session = sessions.pop(capture_id, None)
        if session is None:
            raise HTTPException(status_code=404, detail="Capture not found")
        await run_in_threadpool(session.dispose)
        return {"id": capture_id, "disposed": True, "error": session.error_message}

    @app.get("/api/captures/{capture_id}/frame")
    async def latest_frame(capture_id: str) -> Response:
        session = _get_session(capture_id)
        frame = session.last_frame
        if frame is None:
            raise HTTPException(status_code=404, detail="No frame captured yet")
        return Response(content=frame, media_type=session.format.media_type, headers=NO_CACHE_HEADERS)

    @app.get("/api/captures/{capture_id}/stream")
    async def mjpeg_stream(capture_id: str):
        session = _get_session(capture_id)
        if session.format is not FrameFormat.JPEG:
            raise HTTPException(status_code=400, detail="MJPEG streaming requires a JPEG capture")
        return StreamingResponse(
            stream_frames(session),
            media_type=f"multipart/x-mixed-replace; boundary={MJPEG_BOUNDARY}",
            headers=NO_CACHE_HEADERS,
        )

    @app.get("/api/processes")
    async def list_processes() -> dict[str, object]:
        return {"processes": [record.to_dict() for record in process_registry.active()]}

    @app.post("/api/processes/{kind}/kill")
    async def kill_processes(kind: str) -> dict[str, object]:
        try:
            operation = OperationKind(kind)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown operation kind: {kind}") from None
        killed = await run_in_threadpool(process_registry.kill_all, operation)
        return {"kind": operation.value, "killed": killed}

    @app.get("/api/events")
    async def list_events(limit: int = 100, kind: str | None = None) -> dict[str, object]:
        entries = events.tail(limit, kind=kind)
        return {"events": [entry.to_dict() for entry in entries]}

    app.state.sessions = sessions
    app.state.registry = process_registry
    app.state.event_log = events
    return app


__all__ = ["CapturePayload", "create_app", "render_mjpeg_chunk", "stream_frames"]
