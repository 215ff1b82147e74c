from __future__ import annotations

import os
import uuid
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from feedsync.config_manager import ConfigManager
from feedsync.errors import SyncAborted
from feedsync.event_store import EventStore, SqliteEventStore
from feedsync.manual_events import ScheduleTemplate, apply_schedule_template, write_manual_event
from feedsync.models import (
    CalendarRecord,
    CalendarSource,
    StoredEvent,
    SyncRequest,
    parse_iso_datetime,
)
from feedsync.scheduler import SyncScheduler
from feedsync.sync_engine import SyncEngine


class CalendarSyncItem(BaseModel):
    calendar_id: str = ""
    name: str = ""
    calendar_address: str = ""
    calendar_type: str = ""


class SyncRequestBody(BaseModel):
    calendar_id: str = ""
    name: str = ""
    calendar_address: str = ""
    calendar_type: str = ""
    calendars: list[CalendarSyncItem] | None = None
    months_back: int | None = Field(default=None, ge=0, le=24)
    months_forward: int | None = Field(default=None, ge=0, le=24)


class CalendarCreateRequest(BaseModel):
    calendar_id: str = Field(min_length=1)
    name: str = ""
    source_type: str = "ical"
    url: str = ""
    external_id: str = ""
    subscribers: list[str] = Field(default_factory=list)


class ManualEventRequest(BaseModel):
    base_id: str = ""
    title: str = Field(min_length=1)
    start_time: str
    end_time: str = ""
    description: str = ""
    location: str = ""
    is_all_day: bool = False
    activities: list[Any] = Field(default_factory=list)
    reminder_minutes: int | None = None


class TemplateApplyRequest(BaseModel):
    template: dict[str, Any]


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class PushTokenRequest(BaseModel):
    push_token: str = Field(min_length=1)


class AppContext:
    def __init__(self, config_path: str, state_path: str, store: EventStore | None = None) -> None:
        self.config_manager = ConfigManager(config_path)
        self.store = store or SqliteEventStore(state_path)
        self.sync_engine = SyncEngine(self.config_manager, self.store)
        self.scheduler = SyncScheduler(self.sync_engine, self.config_manager)


def _sync_request(
    context: AppContext,
    item: CalendarSyncItem | SyncRequestBody,
    months_back: int | None,
    months_forward: int | None,
) -> SyncRequest:
    config = context.config_manager.load()
    stored = context.store.get_calendar(item.calendar_id) if item.calendar_id else None
    data: dict[str, Any] = {
        "calendar_id": item.calendar_id,
        "name": item.name or (stored.name if stored else ""),
        "calendar_type": item.calendar_type,
        "calendar_address": item.calendar_address,
    }
    if not item.calendar_address and stored is not None:
        data["source"] = stored.source.to_dict()
    return SyncRequest.from_dict(
        data,
        months_back=config.sync.months_back if months_back is None else months_back,
        months_forward=config.sync.months_forward if months_forward is None else months_forward,
    )


def create_app(store: EventStore | None = None) -> FastAPI:
    config_path = os.getenv("FEEDSYNC_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("FEEDSYNC_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path, store=store)

    app = FastAPI(title="Feedsync Admin", version="0.1.0")
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
            app.state.context.config_manager.update(request.payload)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"message": "config updated", "config": app.state.context.config_manager.masked()}

    @app.get("/api/calendars")
    def list_calendars() -> dict[str, Any]:
        return {"calendars": [calendar.to_dict() for calendar in app.state.context.store.list_calendars()]}

    @app.post("/api/calendars")
    def create_calendar(request: CalendarCreateRequest) -> dict[str, Any]:
        try:
            source = CalendarSource(type=request.source_type, url=request.url, external_id=request.external_id)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        existing = app.state.context.store.get_calendar(request.calendar_id)
        calendar = existing or CalendarRecord(calendar_id=request.calendar_id)
        calendar.name = request.name or calendar.name
        calendar.source = source
        calendar.subscribers = request.subscribers or calendar.subscribers
        app.state.context.store.save_calendar(calendar)
        return {"calendar": calendar.to_dict()}

    @app.get("/api/calendars/{calendar_id}/months/{month_key}")
    def get_month(calendar_id: str, month_key: str) -> dict[str, Any]:
        bucket = app.state.context.store.get_month(calendar_id, month_key)
        if bucket is None:
            raise HTTPException(status_code=404, detail="month not found")
        return {"calendar_id": calendar_id, "month_key": month_key, **bucket.to_dict()}

    @app.post("/api/calendars/{calendar_id}/events")
    def create_event(calendar_id: str, request: ManualEventRequest) -> dict[str, Any]:
        if app.state.context.store.get_calendar(calendar_id) is None:
            raise HTTPException(status_code=404, detail="calendar not found")
        try:
            event = StoredEvent(
                title=request.title,
                description=request.description,
                location=request.location,
                start_time=parse_iso_datetime(request.start_time),
                end_time=parse_iso_datetime(request.end_time),
                is_all_day=request.is_all_day,
                activities=list(request.activities),
                reminder_minutes=request.reminder_minutes,
            )
            base_id = request.base_id or f"manual-{uuid.uuid4().hex}"
            event_id = write_manual_event(app.state.context.store, calendar_id, base_id, event)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"event_id": event_id}

    @app.post("/api/templates/apply")
    def apply_template(request: TemplateApplyRequest) -> dict[str, Any]:
        config = app.state.context.config_manager.load()
        template = ScheduleTemplate.from_dict(request.template)
        return apply_schedule_template(app.state.context.store, template, config.sync.home_timezone)

    @app.post("/api/sync")
    def sync(request: SyncRequestBody) -> dict[str, Any]:
        context = app.state.context
        try:
            if request.calendars is not None:
                sync_requests = [
                    _sync_request(context, item, request.months_back, request.months_forward)
                    for item in request.calendars
                ]
            else:
                sync_requests = [_sync_request(context, request, request.months_back, request.months_forward)]
        except ValueError as exc:
            return {"success": False, "error": str(exc)}

        try:
            if request.calendars is not None:
                batch = context.sync_engine.sync_calendars(sync_requests)
                return {"success": True, "batch": True, **batch.to_dict()}
            result = context.sync_engine.sync_calendar(sync_requests[0])
        except SyncAborted as exc:
            return {"success": False, "batch": request.calendars is not None, "error": str(exc)}
        return {"batch": False, **result.to_dict()}

    @app.post("/api/sync/scheduled")
    def trigger_scheduled_sync() -> dict[str, str]:
        app.state.context.scheduler.trigger_manual()
        return {"message": "scheduled sync triggered"}

    @app.get("/api/sync/status")
    def sync_status(limit: int = 20) -> dict[str, Any]:
        return {"runs": app.state.context.store.recent_sync_runs(limit=limit)}

    @app.get("/api/admin/messages")
    def admin_messages(limit: int = 50) -> dict[str, Any]:
        return {"messages": app.state.context.store.list_admin_messages(limit=limit)}

    @app.put("/api/users/{user_id}/push-token")
    def put_push_token(user_id: str, request: PushTokenRequest) -> dict[str, Any]:
        user = app.state.context.store.get_user(user_id) or {}
        user["push_token"] = request.push_token.strip()
        app.state.context.store.save_user(user_id, user)
        return {"user_id": user_id, "message": "push token saved"}

    return app
