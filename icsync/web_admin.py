from __future__ import annotations

import os
from datetime import datetime
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from icsync.config_manager import MASK, SECRET_FIELDS, ConfigManager
from icsync.errors import StoreUnavailableError
from icsync.models import parse_iso_datetime
from icsync.scheduler import SyncScheduler
from icsync.sync_engine import SyncEngine


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class WindowRequest(BaseModel):
    start: str | None = None
    end: str | None = None


class PurgeRequest(WindowRequest):
    dry_run: bool = True


class AppContext:
    def __init__(self, config_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.sync_engine = SyncEngine(self.config_manager)
        self.scheduler = SyncScheduler(self.sync_engine, self.config_manager)


def _sanitize_config_payload(payload: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    sanitized = dict(payload)
    for section_name, field_name in SECRET_FIELDS:
        section = sanitized.get(section_name)
        if not isinstance(section, dict):
            continue
        section = dict(section)
        secret = section.get(field_name)
        if secret is not None and str(secret).strip() in {"", MASK}:
            if str(current.get(section_name, {}).get(field_name, "")):
                section.pop(field_name, None)
            else:
                section[field_name] = ""
        if section:
            sanitized[section_name] = section
        else:
            sanitized.pop(section_name, None)
    return sanitized


def _parse_window(request: WindowRequest) -> tuple[datetime | None, datetime | None]:
    try:
        start = parse_iso_datetime(request.start)
        end = parse_iso_datetime(request.end)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid start/end datetime") from exc
    if start is not None and end is not None and end < start:
        raise HTTPException(status_code=400, detail="end must be later than start")
    return start, end


def create_app() -> FastAPI:
    config_path = os.getenv("ICSYNC_CONFIG_PATH", "config.yaml")
    context = AppContext(config_path=config_path)

    app = FastAPI(title="icsync", version="0.1.0")
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
        config_manager = app.state.context.config_manager
        current = config_manager.load().to_dict()
        try:
            config_manager.update(_sanitize_config_payload(request.payload, current))
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"message": "config updated", "config": config_manager.masked()}

    @app.post("/api/sync/run")
    def trigger_sync() -> dict[str, str]:
        app.state.context.scheduler.trigger_manual()
        return {"message": "sync triggered"}

    @app.post("/api/sync/preview")
    def preview_sync() -> dict[str, Any]:
        result = app.state.context.sync_engine.run_once(trigger="preview", dry_run=True)
        return {"message": result.message, "result": result.to_dict()}

    @app.get("/api/sync/status")
    def sync_status() -> dict[str, Any]:
        engine = app.state.context.sync_engine
        last_result = engine.last_result
        return {
            "running": engine.is_running,
            "scheduler_alive": app.state.context.scheduler.is_alive,
            "last_result": last_result.to_dict() if last_result else None,
        }

    @app.post("/api/owned-events")
    def owned_events(request: WindowRequest) -> dict[str, Any]:
        start, end = _parse_window(request)
        try:
            events = app.state.context.sync_engine.list_owned_events(start, end)
        except StoreUnavailableError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return {"count": len(events), "events": [event.to_dict() for event in events]}

    @app.post("/api/owned-events/purge")
    def purge_owned_events(request: PurgeRequest) -> dict[str, Any]:
        start, end = _parse_window(request)
        try:
            result = app.state.context.sync_engine.purge_owned_events(start, end, dry_run=request.dry_run)
        except StoreUnavailableError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return {"message": result.message, "result": result.to_dict()}

    return app

