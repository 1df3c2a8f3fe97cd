"""FastAPI application wiring together the ReplayCam camera services."""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Callable

from fastapi import APIRouter, FastAPI, HTTPException, Response
from fastapi.responses import FileResponse
from pydantic import BaseModel

from .buffer import RollingSegmentBuffer, SegmentOrderError
from .capture import CaptureService, format_saved
from .config import ConfigManager, SegmentConfigurationError
from .events import EventChannel
from .extractor import (
    ClipExtractor,
    ExtractionError,
    InvalidCaptureError,
    NoDataError,
    SegmentExtractor,
)
from .highlights import HighlightLedger, HighlightStorage
from .protocol import Role, wall_clock_ms
from .session import Session, SessionError, SessionState
from .session_log import SessionLog
from .transport import DuplexTransport, PollingTransport, Transport, create_transport
from .version import APP_VERSION

DEFAULT_CONFIG_PATH = Path(os.environ.get("REPLAYCAM_CONFIG", "data/config.json"))


class SegmentPayload(BaseModel):
    """A finished segment reported by the capture pipeline.

    ``start_ms`` is on the recording clock. A pipeline that counts from its
    own session epoch sends ``epoch_ms``, the camera wall-clock time of its
    time zero; without it ``start_ms`` must be camera wall-clock time
    (Unix epoch milliseconds).
    """

    start_ms: int
    path: str
    duration_s: int | None = None
    keyframe_interval_s: int | None = None
    frame_rate: int | None = None
    epoch_ms: int | None = None


class CapturePayload(BaseModel):
    duration_s: int | None = None


class BufferSettingsPayload(BaseModel):
    segment_duration_s: int | None = None
    keyframe_interval_s: int | None = None
    retention_window_s: int | None = None
    frame_rate: int | None = None
    contiguity_tolerance_ms: int | None = None


class CaptureSettingsPayload(BaseModel):
    default_duration_s: int | None = None
    duration_presets: list[int] | None = None
    coalesce_window_ms: int | None = None
    pending_grace_s: float | None = None


def _extraction_status(error: ExtractionError) -> int:
    if isinstance(error, NoDataError):
        return 409
    if isinstance(error, InvalidCaptureError):
        return 400
    return 500


def create_app(
    config_path: Path | str = DEFAULT_CONFIG_PATH,
    *,
    data_dir: Path | str | None = None,
    transport: Transport | None = None,
    segment_extractor: SegmentExtractor | None = None,
    clock: Callable[[], int] | None = None,
) -> FastAPI:
    app = FastAPI(title="ReplayCam", version=APP_VERSION)

    logger = logging.getLogger(__name__)

    config_path = Path(config_path)
    config_manager = ConfigManager(config_path)
    if data_dir is None:
        data_dir = os.environ.get("REPLAYCAM_DATA_DIR") or config_path.parent
    data_dir = Path(data_dir)
    data_dir.mkdir(parents=True, exist_ok=True)

    wall_clock = clock or wall_clock_ms
    session_log = SessionLog(data_dir / "session_log.jsonl")
    events = EventChannel()
    if transport is None:
        transport = create_transport(config_manager.get_transport_settings())

    capture_settings = config_manager.get_capture_settings()
    buffer = RollingSegmentBuffer(config_manager.get_buffer_settings())
    ledger = HighlightLedger(HighlightStorage(data_dir / "highlights", persist=True))
    extractor = ClipExtractor(buffer, ledger, primitive=segment_extractor)
    session = Session(
        transport,
        Role.CAMERA,
        timings=config_manager.get_session_timings(),
        coalesce_window_ms=capture_settings.coalesce_window_ms,
        events=events,
        session_log=session_log,
        wall_clock=wall_clock,
    )
    capture_service = CaptureService(
        buffer,
        extractor,
        events=events,
        session=session,
        settings=capture_settings,
        session_log=session_log,
        wall_clock=wall_clock,
    )

    app.state.config_manager = config_manager
    app.state.session = session
    app.state.buffer = buffer
    app.state.ledger = ledger
    app.state.capture_service = capture_service
    app.state.session_log = session_log
    app.state.events = events

    if isinstance(transport, (PollingTransport, DuplexTransport)):
        app.include_router(transport.build_router())

    async def _start_session() -> None:
        try:
            address = await session.start()
        except SessionError as exc:
            logger.error("Unable to start camera session: %s", exc)
            session_log.record("system", "session_error", str(exc))
            return
        logger.info("Camera session %s advertising at %s", session.session_id, address)

    @app.on_event("startup")
    async def startup() -> None:  # pragma: no cover - framework hook
        session_log.record("system", "startup", "ReplayCam starting up.")
        capture_service.start()
        await _start_session()

    @app.on_event("shutdown")
    async def shutdown() -> None:  # pragma: no cover - framework hook
        session_log.record("system", "shutdown", "ReplayCam shutting down.")
        await capture_service.aclose()
        await session.aclose()
        await events.drain()
        buffer.clear()

    # ------------------------------- session -------------------------------
    session_router = APIRouter(prefix="/api/session", tags=["session"])

    @session_router.get("")
    async def get_session() -> dict[str, object]:
        return session.to_dict()

    @session_router.post("/start")
    async def start_session() -> dict[str, object]:
        if session.state is not SessionState.IDLE:
            raise HTTPException(status_code=409, detail="Session already active")
        try:
            await session.start()
        except SessionError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return session.to_dict()

    @session_router.post("/disconnect")
    async def disconnect_session() -> dict[str, object]:
        await session.disconnect()
        return session.to_dict()

    app.include_router(session_router)

    # ------------------------------- buffer --------------------------------
    @app.post("/api/segments", status_code=201)
    async def ingest_segment(payload: SegmentPayload) -> dict[str, object]:
        try:
            segment = capture_service.segment_finished(
                payload.start_ms,
                payload.path,
                duration_s=payload.duration_s,
                keyframe_interval_s=payload.keyframe_interval_s,
                frame_rate=payload.frame_rate,
                epoch_ms=payload.epoch_ms,
            )
        except SegmentOrderError as exc:
            session_log.record("buffer", "order_violation", str(exc))
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except SegmentConfigurationError as exc:
            session_log.record("buffer", "configuration_mismatch", str(exc))
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return segment.to_dict()

    @app.get("/api/buffer")
    async def get_buffer() -> dict[str, object]:
        return buffer.to_dict()

    # ------------------------------- capture -------------------------------
    @app.post("/api/capture")
    async def capture(payload: CapturePayload | None = None) -> dict[str, object]:
        duration = payload.duration_s if payload is not None else None
        try:
            result = await capture_service.capture_now(duration)
        except ExtractionError as exc:
            raise HTTPException(status_code=_extraction_status(exc), detail=exc.to_dict()) from exc
        return {"status": format_saved(result), "highlight": result.to_dict()}

    @app.get("/api/capture/presets")
    async def capture_presets() -> dict[str, object]:
        settings = capture_service.settings
        return {
            "default_duration_s": settings.default_duration_s,
            "presets": list(settings.duration_presets),
        }

    # ------------------------------ highlights -----------------------------
    @app.get("/api/highlights")
    async def list_highlights(limit: int | None = None) -> dict[str, object]:
        return {"highlights": [item.to_dict() for item in ledger.list(limit)]}

    @app.get("/api/highlights/{highlight_id}/media")
    async def highlight_media(highlight_id: str) -> FileResponse:
        highlight = ledger.get(highlight_id)
        if highlight is None:
            raise HTTPException(status_code=404, detail="Highlight not found")
        path = Path(highlight.storage)
        if not path.exists():
            raise HTTPException(status_code=404, detail="Highlight file missing")
        return FileResponse(path, media_type="video/mp4", filename=path.name)

    @app.delete("/api/highlights/{highlight_id}", status_code=204)
    async def delete_highlight(highlight_id: str) -> Response:
        if ledger.delete(highlight_id):
            session_log.record("capture", "highlight_deleted", f"Deleted {highlight_id}")
        return Response(status_code=204)

    # ------------------------------- settings ------------------------------
    @app.get("/api/settings")
    async def get_settings() -> dict[str, object]:
        return config_manager.to_dict()

    @app.post("/api/settings/buffer")
    async def update_buffer_settings(payload: BufferSettingsPayload) -> dict[str, object]:
        try:
            settings = config_manager.set_buffer_settings(payload.model_dump(exclude_none=True))
        except SegmentConfigurationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {
            **settings.to_dict(),
            "restart_required": settings != buffer.settings,
        }

    @app.post("/api/settings/capture")
    async def update_capture_settings(payload: CaptureSettingsPayload) -> dict[str, object]:
        try:
            settings = config_manager.set_capture_settings(payload.model_dump(exclude_none=True))
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        capture_service.settings = settings
        session.coalesce_window_ms = settings.coalesce_window_ms
        return settings.to_dict()

    # --------------------------------- log ---------------------------------
    @app.get("/api/log")
    async def get_log(limit: int | None = 100, category: str | None = None) -> dict[str, object]:
        entries = session_log.tail(limit, category=category)
        return {"entries": [entry.to_dict() for entry in entries]}

    return app


__all__ = ["create_app"]
