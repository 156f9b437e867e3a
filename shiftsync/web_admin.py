from __future__ import annotations

import logging
import os
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from shiftsync.config_manager import ConfigManager
from shiftsync.errors import SyncError, ValidationError
from shiftsync.feed_fetcher import detect_source_kind, validate_feed_url
from shiftsync.models import (
    DEFAULT_FEED_COLOR,
    DISPLAY_MODES,
    SHIFT_COLLECTION_CHANGED,
    SOURCE_KINDS,
    validate_interval,
)
from shiftsync.notifier import ChangeEvent, ChangeNotifier
from shiftsync.scheduler import AutoSyncScheduler
from shiftsync.state_store import StateStore
from shiftsync.sync_engine import SyncEngine


logger = logging.getLogger(__name__)

ONE_TIME_IMPORT_FIELDS = {"name", "color", "display_mode", "is_hidden", "hide_from_stats"}


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class CalendarCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    color: str = DEFAULT_FEED_COLOR


class FeedCreateRequest(BaseModel):
    calendar_id: str = Field(min_length=1)
    name: str = Field(min_length=1, max_length=200)
    source_url: str = Field(min_length=1, max_length=2000)
    source_kind: str | None = None
    color: str = DEFAULT_FEED_COLOR
    display_mode: str = "normal"
    auto_sync_interval_minutes: int = 0


class FeedUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    source_url: str | None = Field(default=None, min_length=1, max_length=2000)
    color: str | None = None
    display_mode: str | None = None
    auto_sync_interval_minutes: int | None = None
    is_hidden: bool | None = None
    hide_from_stats: bool | None = None


class ImportRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    content: str = Field(min_length=1)
    color: str = DEFAULT_FEED_COLOR
    display_mode: str = "normal"


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.notifier = ChangeNotifier()
        self.sync_engine = SyncEngine(self.config_manager, self.state_store, self.notifier)
        config = self.config_manager.load()
        self.scheduler = AutoSyncScheduler(
            self.sync_engine,
            self.state_store,
            reload_interval_seconds=config.sync.reload_interval_seconds,
        )
        self.notifier.subscribe(_log_change)


def _log_change(event: ChangeEvent) -> None:
    logger.debug("Change event %s for calendar %s: %s", event.kind, event.calendar_id, event.payload)


def _validate_display_mode(value: str) -> str:
    mode = str(value or "").strip().lower()
    if mode not in DISPLAY_MODES:
        raise ValidationError(f"display_mode must be one of: {', '.join(DISPLAY_MODES)}")
    return mode


def _validate_source_kind(value: str | None, source_url: str) -> str:
    if value is None or not str(value).strip():
        return detect_source_kind(source_url)
    kind = str(value).strip().lower()
    if kind not in SOURCE_KINDS:
        raise ValidationError(f"source_kind must be one of: {', '.join(SOURCE_KINDS)}")
    return kind


def create_app() -> FastAPI:
    config_path = os.getenv("SHIFTSYNC_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("SHIFTSYNC_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="Shiftsync Admin", version="0.1.0")
    app.state.context = context

    @app.exception_handler(SyncError)
    async def _sync_error_handler(_request: Request, exc: SyncError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "kind": exc.kind})

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
        return app.state.context.config_manager.load().to_dict()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        updated = app.state.context.config_manager.update(request.payload)
        return {"message": "config updated", "config": updated.to_dict()}

    @app.get("/api/calendars")
    def list_calendars() -> dict[str, Any]:
        calendars = app.state.context.state_store.list_calendars()
        return {"calendars": [calendar.to_dict() for calendar in calendars]}

    @app.post("/api/calendars", status_code=201)
    def create_calendar(request: CalendarCreateRequest) -> dict[str, Any]:
        calendar = app.state.context.state_store.create_calendar(name=request.name.strip(), color=request.color)
        return calendar.to_dict()

    @app.delete("/api/calendars/{calendar_id}")
    def delete_calendar(calendar_id: str) -> dict[str, Any]:
        if not app.state.context.state_store.delete_calendar(calendar_id):
            raise HTTPException(status_code=404, detail="Calendar not found")
        app.state.context.scheduler.reload()
        return {"success": True}

    @app.get("/api/calendars/{calendar_id}/feeds")
    def list_feeds(calendar_id: str) -> dict[str, Any]:
        app.state.context.state_store.get_calendar(calendar_id)
        feeds = app.state.context.state_store.list_feeds(calendar_id)
        return {"feeds": [feed.to_dict() for feed in feeds]}

    @app.post("/api/feeds", status_code=201)
    def create_feed(request: FeedCreateRequest) -> dict[str, Any]:
        source_url = request.source_url.strip()
        source_kind = _validate_source_kind(request.source_kind, source_url)
        validate_feed_url(source_url, source_kind)
        feed = app.state.context.state_store.create_feed(
            calendar_id=request.calendar_id,
            name=request.name.strip(),
            source_kind=source_kind,
            source_url=source_url,
            color=request.color or DEFAULT_FEED_COLOR,
            display_mode=_validate_display_mode(request.display_mode),
            auto_sync_interval_minutes=validate_interval(request.auto_sync_interval_minutes),
        )
        app.state.context.scheduler.reload()
        return feed.to_dict()

    @app.get("/api/feeds/{feed_id}")
    def get_feed(feed_id: str) -> dict[str, Any]:
        return app.state.context.state_store.get_feed(feed_id).to_dict()

    @app.patch("/api/feeds/{feed_id}")
    def update_feed(feed_id: str, request: FeedUpdateRequest) -> dict[str, Any]:
        store = app.state.context.state_store
        feed = store.get_feed(feed_id)
        changes = {key: value for key, value in request.model_dump(exclude_unset=True).items() if value is not None}
        if feed.is_one_time_import:
            blocked = sorted(set(changes) - ONE_TIME_IMPORT_FIELDS)
            if blocked:
                raise ValidationError(f"One-time imports cannot change: {', '.join(blocked)}")
        if "source_url" in changes:
            changes["source_url"] = changes["source_url"].strip()
            validate_feed_url(changes["source_url"], feed.source_kind)
        if "display_mode" in changes:
            changes["display_mode"] = _validate_display_mode(changes["display_mode"])
        if "auto_sync_interval_minutes" in changes:
            changes["auto_sync_interval_minutes"] = validate_interval(changes["auto_sync_interval_minutes"])

        updated = store.update_feed(feed_id, changes)
        if "color" in changes:
            app.state.context.notifier.publish(
                SHIFT_COLLECTION_CHANGED,
                updated.calendar_id,
                {"feed_id": feed_id, "color_updated": True},
            )
        if "is_hidden" in changes or "hide_from_stats" in changes:
            app.state.context.notifier.publish(
                SHIFT_COLLECTION_CHANGED,
                updated.calendar_id,
                {"feed_id": feed_id, "visibility_updated": True},
            )
        app.state.context.scheduler.reload()
        return updated.to_dict()

    @app.delete("/api/feeds/{feed_id}")
    def delete_feed(feed_id: str) -> dict[str, Any]:
        feed = app.state.context.state_store.get_feed(feed_id)
        app.state.context.state_store.delete_feed(feed_id)
        app.state.context.scheduler.reload()
        app.state.context.notifier.publish(
            SHIFT_COLLECTION_CHANGED,
            feed.calendar_id,
            {"feed_id": feed_id, "feed_deleted": True},
        )
        return {"success": True}

    @app.post("/api/feeds/{feed_id}/sync")
    def trigger_sync(feed_id: str) -> dict[str, Any]:
        stats = app.state.context.scheduler.trigger_manual(feed_id)
        return {"success": True, "stats": stats.to_dict()}

    @app.post("/api/calendars/{calendar_id}/imports", status_code=201)
    def import_calendar(calendar_id: str, request: ImportRequest) -> dict[str, Any]:
        feed, stats = app.state.context.sync_engine.create_import(
            calendar_id=calendar_id,
            name=request.name.strip(),
            raw_data=request.content,
            color=request.color or DEFAULT_FEED_COLOR,
            display_mode=_validate_display_mode(request.display_mode),
        )
        return {"feed": feed.to_dict(), "stats": stats.to_dict()}

    @app.get("/api/calendars/{calendar_id}/entries")
    def list_entries(calendar_id: str, start: str | None = None, end: str | None = None) -> dict[str, Any]:
        entries = app.state.context.state_store.list_entries(calendar_id, start=start, end=end)
        return {"entries": [entry.to_dict() for entry in entries]}

    @app.delete("/api/entries/{entry_id}")
    def delete_entry(entry_id: str) -> dict[str, Any]:
        entry = app.state.context.state_store.get_entry(entry_id)
        app.state.context.state_store.delete_entry(entry_id)
        app.state.context.notifier.publish(
            SHIFT_COLLECTION_CHANGED,
            entry.calendar_id,
            {"entry_id": entry_id, "entry_deleted": True},
        )
        return {"success": True}

    @app.get("/api/sync-logs")
    def sync_logs(calendar_id: str | None = None, feed_id: str | None = None, limit: int = 50) -> dict[str, Any]:
        runs = app.state.context.state_store.recent_sync_runs(calendar_id=calendar_id, feed_id=feed_id, limit=limit)
        return {"runs": [run.to_dict() for run in runs]}

    @app.get("/api/sync-logs/unread-count")
    def unread_sync_logs(calendar_id: str | None = None) -> dict[str, int]:
        return {"unread": app.state.context.state_store.unread_sync_run_count(calendar_id)}

    @app.post("/api/sync-logs/read-all")
    def mark_all_sync_logs_read(calendar_id: str | None = None) -> dict[str, int]:
        return {"marked": app.state.context.state_store.mark_all_sync_runs_read(calendar_id)}

    @app.post("/api/sync-logs/{run_id}/read")
    def mark_sync_log_read(run_id: str) -> dict[str, bool]:
        if not app.state.context.state_store.mark_sync_run_read(run_id):
            raise HTTPException(status_code=404, detail="sync log not found")
        return {"success": True}

    @app.get("/api/scheduler/jobs")
    def scheduler_jobs() -> dict[str, Any]:
        jobs = app.state.context.scheduler.jobs()
        return {
            "running": app.state.context.scheduler.is_running,
            "jobs": [job.to_dict() for job in jobs.values()],
        }

    return app
