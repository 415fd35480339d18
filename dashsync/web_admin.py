from __future__ import annotations

import os
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from dashsync.change_detection import detect_time_change
from dashsync.config_manager import ConfigManager
from dashsync.conflicts import detect_conflicts, hard_overlap_event_count, meeting_stats
from dashsync.models import CalendarEvent, normalize_source, parse_iso_datetime, utc_now
from dashsync.orchestrator import Services
from dashsync.session import SyncSession
from dashsync.state_store import StateStore
from dashsync.sync_queue import EnqueueResult


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class CalendarEventsRequest(BaseModel):
    events: list[dict[str, Any]] = Field(default_factory=list)


class TimeChangeRequest(BaseModel):
    events: list[dict[str, Any]] = Field(default_factory=list)
    last_synced_at: str | None = None
    now: str | None = None
    inserted: int = Field(default=0, ge=0)
    updated: int = Field(default=0, ge=0)
    deleted: int = Field(default=0, ge=0)


class AppContext:
    def __init__(self, config_path: str, state_path: str, services: Services | None = None) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.session = SyncSession(
            self.config_manager.load(),
            state_store=self.state_store,
            services=services,
        )


def _parse_events(raw_events: list[dict[str, Any]]) -> list[CalendarEvent]:
    try:
        return [CalendarEvent.from_dict(item) for item in raw_events]
    except (TypeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=f"Invalid event payload: {exc}") from exc


def _source_or_404(source: str) -> str:
    try:
        return normalize_source(source)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


def _enqueue_response(result: EnqueueResult) -> dict[str, Any]:
    return {
        "status": result.status,
        "request": result.request.to_dict() if result.request else None,
    }


def create_app(services: Services | None = None) -> FastAPI:
    config_path = os.getenv("DASHSYNC_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("DASHSYNC_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path, services=services)

    app = FastAPI(title="dashsync", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    async def _startup() -> None:
        await app.state.context.session.start()

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await app.state.context.session.stop()

    def orchestrator():
        return app.state.context.session.orchestrator

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        updated = app.state.context.config_manager.update(request.payload)
        masked = app.state.context.config_manager.masked()
        return {
            "message": "config updated, applies on next start",
            "config": masked,
            "sync": updated.sync.__dict__,
        }

    @app.get("/api/sync/state")
    async def sync_state() -> dict[str, Any]:
        return orchestrator().snapshot()

    @app.post("/api/sync/run")
    async def run_sync(force: bool = False) -> dict[str, Any]:
        return _enqueue_response(orchestrator().sync_all(force=force))

    @app.post("/api/sync/run/{source}")
    async def run_source_sync(source: str, force: bool = False) -> dict[str, Any]:
        return _enqueue_response(orchestrator().sync_source(_source_or_404(source), force=force))

    @app.post("/api/sources/{source}/connect")
    async def source_connected(source: str) -> dict[str, Any]:
        result = await orchestrator().on_source_connected(_source_or_404(source))
        return _enqueue_response(result)

    @app.post("/api/sources/{source}/disconnect")
    async def source_disconnected(source: str) -> dict[str, Any]:
        regenerated = await orchestrator().on_source_disconnected(_source_or_404(source))
        return {"status": "disconnected", "regenerated": regenerated}

    @app.post("/api/sources/refresh")
    async def refresh_sources() -> dict[str, Any]:
        try:
            await orchestrator().refresh_connections()
        except Exception as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return orchestrator().snapshot()

    @app.get("/api/sync/status")
    def sync_status(limit: int = 20) -> dict[str, Any]:
        return {"runs": app.state.context.state_store.recent_sync_runs(limit=limit)}

    @app.get("/api/audit/events")
    def audit_events(limit: int = 100, run_id: int | None = None, action: str | None = None) -> dict[str, Any]:
        events = app.state.context.state_store.recent_audit_events(limit=limit, run_id=run_id, action=action)
        return {"events": events}

    @app.get("/api/notifications")
    def notifications(limit: int = 50) -> dict[str, Any]:
        history = app.state.context.session.notifier.history[-max(1, limit):]
        return {"notifications": [item.to_dict() for item in reversed(history)]}

    @app.post("/api/calendar/conflicts")
    def calendar_conflicts(request: CalendarEventsRequest) -> dict[str, Any]:
        events = _parse_events(request.events)
        conflict_map, records = detect_conflicts(events)
        return {
            "conflict_map": conflict_map,
            "conflicts": [record.to_dict() for record in records],
            "conflicts_count": hard_overlap_event_count(records),
            "stats": meeting_stats(events),
        }

    @app.post("/api/calendar/time-change")
    def calendar_time_change(request: TimeChangeRequest) -> dict[str, Any]:
        try:
            now = parse_iso_datetime(request.now) or utc_now()
            last_synced_at = parse_iso_datetime(request.last_synced_at)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=f"Invalid datetime: {exc}") from exc
        detection = detect_time_change(
            now=now,
            last_synced_at=last_synced_at,
            events=_parse_events(request.events),
            inserted=request.inserted,
            updated=request.updated,
            deleted=request.deleted,
        )
        return detection.__dict__

    return app


app = create_app()
