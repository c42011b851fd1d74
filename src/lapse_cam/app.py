"""FastAPI application wiring together the LapseCam services."""
from __future__ import annotations

import logging
import os
from pathlib import Path

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from .config import CaptureConfig, ConfigManager, InvalidConfig, StoragePaths
from .engine import EngineUnavailable, MediaEngine, SourceUnreachable
from .events import CaptureEventLog
from .session import AlreadyRunning, NoActiveSession, SessionManager
from .streaming import PreviewStream, PreviewStreamer
from .version import APP_VERSION

SHUTDOWN_TIMEOUT_S = 30.0


class StartPayload(BaseModel):
    rtspUrl: str | None = None
    interval: int | None = None
    fps: int | None = None
    quality: str | None = None
    cleanupFrames: bool | None = None


class PreviewResponse(StreamingResponse):
    """Multipart response that releases its preview process on every exit."""

    def __init__(self, stream: PreviewStream, **kwargs) -> None:
        super().__init__(stream, **kwargs)
        self.preview = stream

    async def __call__(self, scope, receive, send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self.preview.aclose()


def _no_cache(response: StreamingResponse) -> StreamingResponse:
    response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate, max-age=0"
    response.headers["Pragma"] = "no-cache"
    return response


def create_app(
    config_path: Path | str = Path("data/config.json"),
    *,
    engine: MediaEngine | None = None,
    paths: StoragePaths | None = None,
    event_log: CaptureEventLog | None = None,
) -> FastAPI:
    app = FastAPI(title="LapseCam", version=APP_VERSION)

    logger = logging.getLogger(__name__)

    config_manager = ConfigManager(Path(config_path))
    storage = paths or StoragePaths.from_env()
    media_engine = engine or MediaEngine(os.environ.get("LAPSECAM_FFMPEG", "ffmpeg"))
    events = event_log or CaptureEventLog(storage.data_dir / "capture_events.jsonl")
    manager = SessionManager(media_engine, storage, event_log=events)

    app.state.config_manager = config_manager
    app.state.session_manager = manager
    app.state.media_engine = media_engine

    @app.on_event("startup")
    async def startup() -> None:
        storage.ensure()
        available = await run_in_threadpool(media_engine.available)
        if not available:
            logger.warning("ffmpeg not found; captures will fail until it is installed")
        logger.info("LapseCam %s ready; frames in %s, videos in %s", APP_VERSION, storage.frames_dir, storage.output_dir)

    @app.on_event("shutdown")
    async def shutdown() -> None:
        await run_in_threadpool(manager.shutdown, SHUTDOWN_TIMEOUT_S)

    @app.post("/api/start")
    async def start_capture(payload: StartPayload) -> dict[str, object]:
        defaults = config_manager.get_capture_defaults()
        try:
            config = CaptureConfig.from_dict(payload.model_dump(exclude_none=True), defaults=defaults)
        except InvalidConfig as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        try:
            session = await run_in_threadpool(manager.start, config)
        except AlreadyRunning as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except EngineUnavailable as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        except SourceUnreachable as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        try:
            config_manager.set_capture_defaults(config)
        except OSError as exc:
            logger.warning("Unable to persist capture defaults: %s", exc)
        return {"status": "started", "session": session.session_id, "config": config.to_dict()}

    @app.post("/api/stop")
    async def stop_capture() -> dict[str, object]:
        try:
            session = await run_in_threadpool(manager.stop)
        except NoActiveSession as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return {"status": "stopped", "session": session.session_id, "frameCount": session.frames()}

    @app.get("/api/status")
    async def capture_status() -> dict[str, object]:
        return manager.status()

    @app.get("/api/stream")
    async def preview_stream(request: Request, url: str | None = None) -> StreamingResponse:
        source_url = (url or "").strip() or config_manager.get_stream_url()
        streamer = PreviewStreamer(media_engine, config_manager.get_preview_settings())
        try:
            process = await run_in_threadpool(streamer.open, source_url)
        except EngineUnavailable as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        response = PreviewResponse(
            streamer.stream(source_url, is_disconnected=request.is_disconnected, process=process),
            media_type=streamer.media_type,
        )
        return _no_cache(response)

    @app.post("/api/engine/kill")
    async def kill_engine() -> dict[str, int]:
        killed = await run_in_threadpool(manager.kill_all)
        return {"killed": killed}

    @app.get("/api/events")
    async def capture_events(
        limit: int = Query(100, ge=1, le=1000),
        session: str | None = None,
    ) -> dict[str, object]:
        entries = events.tail(limit, session=session)
        return {"events": [entry.to_dict() for entry in entries]}

    @app.get("/api/config")
    async def get_config() -> dict[str, object]:
        capture = config_manager.get_capture_defaults()
        return {
            "capture": capture.to_dict() if capture is not None else None,
            "preview": config_manager.get_preview_settings().to_dict(),
            "streamUrl": config_manager.get_stream_url(),
            "version": APP_VERSION,
        }

    return app


__all__ = ["PreviewResponse", "StartPayload", "create_app"]
