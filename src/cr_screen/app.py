"""FastAPI application wiring together the host coordination services."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

from fastapi import FastAPI, HTTPException
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel

from .event_log import EventLog
from .handoff import DeleteFailed, HandoffPipeline, RecordingConsumer
from .recording import (
    Recording,
    RecordingError,
    RecordingLocator,
    RecordingTooSmall,
)
from .session import (
    SessionActiveError,
    SessionCoordinator,
    SessionPoller,
    SessionSnapshot,
    SessionState,
)
from .settings import HostSettingsStore, StreamQuality
from .shared_state import SharedState, StoreUnavailable, open_shared_state
from .upload import HttpUploadConsumer
from .version import APP_VERSION


class QualityPayload(BaseModel):
    quality: StreamQuality


def _recording_http_error(exc: RecordingError) -> HTTPException:
    if isinstance(exc, RecordingTooSmall):
        return HTTPException(status_code=422, detail=str(exc))
    return HTTPException(status_code=404, detail=str(exc))


def create_app(
    settings_path: Path | str = Path("data/settings.json"),
    *,
    shared_state: SharedState | None = None,
    consumer: RecordingConsumer | None = None,
    event_log: EventLog | None = None,
) -> FastAPI:
    logger = logging.getLogger(__name__)

    settings_store = HostSettingsStore(settings_path)
    settings = settings_store.load().with_environment()

    if shared_state is None:
        shared_state = open_shared_state(settings.shared_state_dir)
    if event_log is None:
        event_log = EventLog(settings.event_log_path)

    coordinator = SessionCoordinator(
        shared_state,
        default_quality=settings.stream_quality,
        event_log=event_log,
    )
    locator = RecordingLocator(
        shared_state,
        min_size_bytes=settings.min_recording_bytes,
        event_log=event_log,
    )

    def _current_code() -> str | None:
        try:
            return shared_state.pairing_code()
        except StoreUnavailable:
            return None

    uploader: HttpUploadConsumer | None = None
    if consumer is None and settings.upload_url:
        uploader = HttpUploadConsumer(
            settings.upload_url,
            timeout=settings.upload_timeout_s,
            code_provider=_current_code,
        )
        consumer = uploader
    pipeline = HandoffPipeline(shared_state, consumer, event_log=event_log)

    async def _handle_transition(previous: SessionState, snapshot: SessionSnapshot) -> None:
        if snapshot.active:
            return
        # The recorder may publish its file after clearing the start marker,
        # so this is only a first look; callers re-resolve before acting.
        try:
            recording = await run_in_threadpool(locator.resolve_last_recording)
        except RecordingError as exc:
            logger.info("No usable recording after session ended: %s", exc)
            return
        logger.info("Recording ready after session: %s", recording.path)

    poller = SessionPoller(
        coordinator,
        interval=settings.poll_interval_s,
        on_transition=_handle_transition,
    )

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        event_log.record("system", "startup", "Host service starting up.")
        poller.start()
        try:
            yield
        finally:
            await poller.aclose()
            locator.close()
            if uploader is not None:
                await uploader.aclose()
            event_log.record("system", "shutdown", "Host service shut down.")

    app = FastAPI(title="CRScreen host", version=APP_VERSION, lifespan=lifespan)
    app.state.settings = settings
    app.state.coordinator = coordinator
    app.state.locator = locator
    app.state.pipeline = pipeline
    app.state.poller = poller
    app.state.event_log = event_log

    async def _resolve() -> Recording:
        try:
            return await run_in_threadpool(locator.resolve_last_recording)
        except RecordingError as exc:
            raise _recording_http_error(exc) from exc

    @app.get("/api/session")
    async def get_session() -> dict[str, object]:
        snapshot = await run_in_threadpool(coordinator.observe_state)
        return snapshot.to_dict()

    @app.post("/api/session/prepare")
    async def prepare_session() -> dict[str, object]:
        try:
            snapshot = await run_in_threadpool(coordinator.prepare_broadcast)
        except StoreUnavailable as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return snapshot.to_dict()

    @app.post("/api/session/code")
    async def issue_code() -> dict[str, str]:
        try:
            code = await run_in_threadpool(coordinator.issue_pairing_code)
        except SessionActiveError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except StoreUnavailable as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return {"code": code}

    @app.get("/api/session/quality")
    async def get_quality() -> dict[str, object]:
        current = await run_in_threadpool(coordinator.stream_quality)
        return {
            "quality": current.value,
            "options": [quality.to_dict() for quality in StreamQuality],
        }

    @app.post("/api/session/quality")
    async def update_quality(payload: QualityPayload) -> dict[str, object]:
        try:
            quality = await run_in_threadpool(coordinator.set_stream_quality, payload.quality)
        except StoreUnavailable as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return {"quality": quality.value}

    @app.get("/api/recording")
    async def get_recording() -> dict[str, object]:
        recording = await _resolve()
        return recording.to_dict()

    @app.delete("/api/recording")
    async def delete_recording() -> dict[str, object]:
        recording = await _resolve()
        try:
            await run_in_threadpool(pipeline.delete, recording)
        except DeleteFailed as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        return {"deleted": True, "recording": recording.to_dict()}

    @app.post("/api/recording/send")
    async def send_recording() -> dict[str, object]:
        if pipeline.consumer is None:
            raise HTTPException(status_code=503, detail="No upload destination configured")
        recording = await _resolve()
        sent = await pipeline.send(recording)
        if not sent:
            raise HTTPException(status_code=502, detail="Recording could not be sent")
        return {"sent": True, "recording": recording.to_dict()}

    @app.get("/api/events")
    async def get_events(limit: int = 50, category: str | None = None) -> dict[str, object]:
        entries = event_log.tail(limit, category=category)
        return {"events": [entry.to_dict() for entry in entries]}

    return app


__all__ = ["QualityPayload", "create_app"]
