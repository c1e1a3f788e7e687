from __future__ import annotations

import os
import sqlite3
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from eventsync.config_manager import MASK, ConfigManager
from eventsync.errors import ConfigurationError
from eventsync.models import TRIGGER_MANUAL
from eventsync.reconciler import link_unlinked_people
from eventsync.scheduler import SyncScheduler
from eventsync.state_store import StateStore
from eventsync.sync_engine import SyncEngine


class ConfigPatch(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class CalendarCreateRequest(BaseModel):
    external_id: str = Field(min_length=1, max_length=255)
    slug: str = Field(min_length=1, max_length=255)
    name: str = Field(min_length=1, max_length=255)
    is_active: bool = True
    sync_frequency: str = "daily"


class CalendarUpdateRequest(BaseModel):
    is_active: bool


class AdminContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.scheduler = SyncScheduler(self.build_engine, self.config_manager)

    def build_engine(self) -> SyncEngine:
        return SyncEngine.from_config(self.config_manager.load(), self.state_store)


def _keep_stored_api_key(payload: dict[str, Any], stored_key: str) -> dict[str, Any]:
    # A blank or masked key coming back from the UI means "unchanged".
    platform = payload.get("platform")
    if not isinstance(platform, dict) or "api_key" not in platform:
        return payload
    submitted = str(platform.get("api_key") or "").strip()
    if submitted not in {"", MASK}:
        return payload

    platform = {key: value for key, value in platform.items() if key != "api_key"}
    if not stored_key:
        platform["api_key"] = ""
    cleaned = {key: value for key, value in payload.items() if key != "platform"}
    if platform:
        cleaned["platform"] = platform
    return cleaned


def create_app() -> FastAPI:
    context = AdminContext(
        config_path=os.getenv("EVENTSYNC_CONFIG_PATH", "config.yaml"),
        state_path=os.getenv("EVENTSYNC_STATE_PATH", "data/state.db"),
    )

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        context.scheduler.start()
        try:
            yield
        finally:
            context.scheduler.stop()

    app = FastAPI(title="Eventsync Admin", version="0.1.0", lifespan=lifespan)
    app.state.context = context

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def read_config() -> dict[str, Any]:
        return context.config_manager.masked()

    @app.put("/api/config")
    def write_config(request: ConfigPatch) -> dict[str, Any]:
        stored_key = context.config_manager.load_file().platform.api_key
        context.config_manager.update(_keep_stored_api_key(request.payload, stored_key))
        return {"message": "config updated", "config": context.config_manager.masked()}

    @app.get("/api/calendars")
    def list_calendars() -> dict[str, Any]:
        return {"calendars": [calendar.to_dict() for calendar in context.state_store.list_calendars()]}

    @app.post("/api/calendars", status_code=201)
    def register_calendar(request: CalendarCreateRequest) -> dict[str, Any]:
        try:
            calendar = context.state_store.create_calendar(
                external_id=request.external_id.strip(),
                slug=request.slug.strip(),
                name=request.name.strip(),
                is_active=request.is_active,
                sync_frequency=request.sync_frequency,
            )
        except sqlite3.IntegrityError as exc:
            raise HTTPException(status_code=409, detail="calendar already registered") from exc
        return {"calendar": calendar.to_dict()}

    @app.patch("/api/calendars/{calendar_id}")
    def update_calendar(calendar_id: str, request: CalendarUpdateRequest) -> dict[str, Any]:
        updated = context.state_store.set_calendar_active(calendar_id, request.is_active)
        calendar = context.state_store.get_calendar(calendar_id) if updated else None
        if calendar is None:
            raise HTTPException(status_code=404, detail="calendar not found")
        return {"calendar": calendar.to_dict()}

    @app.post("/api/calendars/{calendar_id}/sync")
    def sync_calendar(calendar_id: str) -> dict[str, Any]:
        if context.state_store.get_calendar(calendar_id) is None:
            raise HTTPException(status_code=404, detail="calendar not found")
        try:
            engine = context.build_engine()
        except ConfigurationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"result": engine.sync_calendar(calendar_id, triggered_by=TRIGGER_MANUAL).to_dict()}

    @app.post("/api/sync/run", status_code=202)
    def queue_fleet_sync() -> dict[str, str]:
        context.scheduler.trigger_manual()
        return {"message": "fleet sync queued"}

    @app.get("/api/sync/runs")
    def list_sync_runs(limit: int = 20, calendar_id: str | None = None) -> dict[str, Any]:
        runs = context.state_store.recent_sync_runs(limit=limit, calendar_id=calendar_id)
        return {"runs": [run.to_dict() for run in runs]}

    @app.get("/api/sync/runs/{run_id}")
    def get_sync_run(run_id: str) -> dict[str, Any]:
        run = context.state_store.get_sync_run(run_id)
        if run is None:
            raise HTTPException(status_code=404, detail="sync run not found")
        return {"run": run.to_dict()}

    @app.post("/api/users/link")
    def link_users() -> dict[str, int]:
        return {"linked": link_unlinked_people(context.state_store)}

    return app
