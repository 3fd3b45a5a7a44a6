from __future__ import annotations

import os
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from cadence.config_manager import ConfigManager
from cadence.deadline_calculator import DeadlineCalculator
from cadence.errors import CalendarNotFound, DefinitionMissing, ProviderError, TaskNotFound
from cadence.event_link import EventLinkAdvancer
from cadence.models import LINK_KINDS, AppConfig
from cadence.occurrence_resolver import OccurrenceResolver
from cadence.provider_client import GoogleCalendarClient
from cadence.scheduler import SyncScheduler
from cadence.state_store import StateStore
from cadence.sync_engine import SyncEngine


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class SyncRunRequest(BaseModel):
    user_id: str = Field(min_length=1)
    calendar_id: str = Field(min_length=1)


class CalendarSyncRequest(BaseModel):
    user_id: str = Field(min_length=1)
    sync_enabled: bool


class LinkTaskRequest(BaseModel):
    kind: str
    definition_id: str = Field(min_length=1)
    offset: str


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        config = self.config_manager.load()
        self.client = GoogleCalendarClient(
            config.provider,
            lookback_days=config.sync.lookback_days,
            lookahead_days=config.sync.lookahead_days,
        )
        self.resolver = OccurrenceResolver()
        self.advancer = EventLinkAdvancer(
            self.state_store, self.resolver, DeadlineCalculator(config.deadlines.timezone)
        )
        self.sync_engine = SyncEngine(self.state_store, self.client, advancer=self.advancer)
        self.scheduler = SyncScheduler(self.sync_engine, self.config_manager)

    def apply_config(self, config: AppConfig) -> None:
        self.client.config = config.provider
        self.client.lookback_days = config.sync.lookback_days
        self.client.lookahead_days = config.sync.lookahead_days
        self.advancer.calculator = DeadlineCalculator(config.deadlines.timezone)


def create_app() -> FastAPI:
    config_path = os.getenv("CADENCE_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("CADENCE_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="Cadence", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
        app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        try:
            updated = app.state.context.config_manager.update(request.payload)
        except (TypeError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        app.state.context.apply_config(updated)
        return {
            "message": "config updated",
            "config": app.state.context.config_manager.masked(),
        }

    @app.get("/api/calendars")
    def list_calendars(user_id: str) -> dict[str, Any]:
        try:
            calendars = app.state.context.sync_engine.list_calendars(user_id)
        except ProviderError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return {"calendars": calendars}

    @app.put("/api/calendars/{calendar_id}")
    def put_calendar(calendar_id: str, request: CalendarSyncRequest) -> dict[str, Any]:
        try:
            calendar = app.state.context.sync_engine.set_calendar_sync(
                request.user_id, calendar_id, request.sync_enabled
            )
        except CalendarNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except ProviderError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return {"calendar": calendar.to_dict()}

    @app.post("/api/sync/run")
    def trigger_sync(request: SyncRunRequest | None = None) -> dict[str, Any]:
        if request is None:
            app.state.context.scheduler.trigger_manual()
            return {"message": "sync triggered"}
        result = app.state.context.sync_engine.sync_calendar(
            request.user_id, request.calendar_id, trigger="manual"
        )
        return {"message": result.message, "result": result.to_dict()}

    @app.get("/api/sync/runs")
    def sync_runs(limit: int = 20) -> dict[str, Any]:
        return {"runs": app.state.context.state_store.recent_sync_runs(limit=limit)}

    @app.post("/api/tasks/{task_id}/link")
    def link_task(task_id: str, request: LinkTaskRequest) -> dict[str, Any]:
        try:
            task = app.state.context.advancer.link_task(
                task_id, request.kind, request.definition_id, request.offset
            )
        except (TaskNotFound, DefinitionMissing) as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"task": task.to_dict()}

    @app.post("/api/tasks/{task_id}/advance")
    def advance_task(task_id: str) -> dict[str, Any]:
        try:
            result = app.state.context.advancer.advance(task_id)
        except TaskNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return result.to_dict()

    @app.post("/api/tasks/{task_id}/undo-advance")
    def undo_advance(task_id: str) -> dict[str, Any]:
        try:
            task = app.state.context.advancer.undo_advance(task_id)
        except TaskNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return {"task": task.to_dict()}

    @app.post("/api/definitions/{kind}/{definition_id}/recalculate")
    def recalculate(kind: str, definition_id: str) -> dict[str, Any]:
        if kind not in LINK_KINDS:
            raise HTTPException(status_code=400, detail=f"Unknown link kind: {kind}")
        return app.state.context.advancer.recalculate(kind, definition_id).to_dict()

    return app


app = create_app()
