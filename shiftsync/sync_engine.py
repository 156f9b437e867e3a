from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone, tzinfo
from typing import Any, Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from shiftsync.config_manager import ConfigManager
from shiftsync.day_splitter import split_occurrence
from shiftsync.errors import SyncError, ValidationError
from shiftsync.expander import expand_occurrences
from shiftsync.feed_fetcher import FeedFetcher
from shiftsync.ics_parser import (
    component_text,
    component_uid,
    decoded_value,
    extract_todo,
    is_valid_ics_content,
    parse_calendar,
    top_level_components,
)
from shiftsync.identity import build_event_id
from shiftsync.models import (
    DEFAULT_FEED_COLOR,
    SHIFT_COLLECTION_CHANGED,
    AppConfig,
    FeedConfig,
    MirroredEntry,
    SyncStats,
    sync_window,
    utc_now,
)
from shiftsync.notifier import ChangeNotifier
from shiftsync.reconciler import ReconcilePlan, plan_reconciliation
from shiftsync.state_store import StateStore


logger = logging.getLogger(__name__)

UNTITLED_EVENT = "Untitled Event"


def _resolve_timezone(name: str) -> tzinfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r in config, falling back to UTC", name)
        return timezone.utc


def _override_ids(events: list[Any]) -> dict[str, list[Any]]:
    overrides: dict[str, list[Any]] = {}
    for component in events:
        recurrence_id = decoded_value(component, "RECURRENCE-ID")
        if recurrence_id is None:
            continue
        overrides.setdefault(component_uid(component), []).append(recurrence_id)
    return overrides


def build_candidates(
    feed: FeedConfig,
    calendar_obj: Any,
    *,
    window_start: datetime,
    window_end: datetime,
    tz: tzinfo,
) -> tuple[list[MirroredEntry], int]:
    events = top_level_components(calendar_obj, "VEVENT")
    todos = top_level_components(calendar_obj, "VTODO")
    overrides = _override_ids(events)
    color = feed.color or DEFAULT_FEED_COLOR

    candidates: list[MirroredEntry] = []
    seen: set[str] = set()

    def _add(entry: MirroredEntry) -> None:
        event_id = entry.external_event_id or ""
        if event_id in seen:
            logger.warning("Feed %s produced duplicate entry id %s; keeping the first", feed.feed_id, event_id)
            return
        seen.add(event_id)
        candidates.append(entry)

    for component in events:
        uid = component_uid(component)
        title = component_text(component, "SUMMARY") or UNTITLED_EVENT
        notes = component_text(component, "DESCRIPTION")
        occurrences = expand_occurrences(
            component,
            window_start,
            window_end,
            tz,
            overridden=overrides.get(uid, ()),
        )
        for occurrence in occurrences:
            slices = split_occurrence(occurrence.start, occurrence.end, occurrence.all_day, tz)
            for day_slice in slices:
                _add(
                    MirroredEntry(
                        calendar_id=feed.calendar_id,
                        date=day_slice.day,
                        start_time=day_slice.start_time,
                        end_time=day_slice.end_time,
                        title=title,
                        color=color,
                        notes=notes,
                        all_day=occurrence.all_day,
                        external_feed_id=feed.feed_id,
                        external_event_id=build_event_id(uid, occurrence.marker, day_slice.day_index, len(slices)),
                        mirrored_from_external=True,
                    )
                )

    for component in todos:
        item = extract_todo(component, tz)
        if item is None:
            continue
        if item.instant < window_start or item.instant > window_end:
            continue
        _add(
            MirroredEntry(
                calendar_id=feed.calendar_id,
                date=item.day,
                start_time=item.start_time,
                end_time=item.end_time,
                title=item.title,
                color=color,
                notes=item.notes,
                all_day=item.all_day,
                external_feed_id=feed.feed_id,
                external_event_id=item.uid,
                mirrored_from_external=True,
            )
        )

    return candidates, len(events) + len(todos)


class SyncEngine:
    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: StateStore,
        notifier: ChangeNotifier | None = None,
        fetcher: FeedFetcher | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self.notifier = notifier or ChangeNotifier()
        self.fetcher = fetcher
        self.clock = clock or utc_now
        self._locks_guard = threading.Lock()
        self._feed_locks: dict[str, threading.Lock] = {}

    def _feed_lock(self, feed_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._feed_locks.get(feed_id)
            if lock is None:
                lock = threading.Lock()
                self._feed_locks[feed_id] = lock
            return lock

    def reconcile(self, feed_id: str, trigger: str = "manual") -> SyncStats:
        with self._feed_lock(feed_id):
            feed = self.state_store.get_feed(feed_id)
            if feed.is_one_time_import or not feed.source_url:
                raise ValidationError("One-time imports have no source URL and cannot be re-synced")
            config = self.config_manager.load()

            def _load_document() -> str:
                fetcher = self.fetcher or FeedFetcher(config.fetch)
                return fetcher.fetch(feed.source_url, feed.source_kind)

            return self._run(feed, trigger, config, _load_document)

    def import_document(self, feed_id: str, raw_data: str | bytes, trigger: str = "manual") -> SyncStats:
        with self._feed_lock(feed_id):
            feed = self.state_store.get_feed(feed_id)
            config = self.config_manager.load()
            return self._run(feed, trigger, config, lambda: raw_data)

    def create_import(
        self,
        *,
        calendar_id: str,
        name: str,
        raw_data: str | bytes,
        color: str = DEFAULT_FEED_COLOR,
        display_mode: str = "normal",
    ) -> tuple[FeedConfig, SyncStats]:
        if not is_valid_ics_content(raw_data):
            raise ValidationError("Invalid ICS file. It must contain at least one event or task.")
        feed = self.state_store.create_feed(
            calendar_id=calendar_id,
            name=name,
            source_kind="custom",
            source_url=None,
            color=color,
            display_mode=display_mode,
            auto_sync_interval_minutes=0,
            is_one_time_import=True,
        )
        try:
            stats = self.import_document(feed.feed_id, raw_data)
        except Exception:
            self.state_store.delete_feed(feed.feed_id)
            raise
        return self.state_store.get_feed(feed.feed_id), stats

    def _run(
        self,
        feed: FeedConfig,
        trigger: str,
        config: AppConfig,
        load_document: Callable[[], str | bytes],
    ) -> SyncStats:
        logger.info("Reconciling feed %s (%s, trigger=%s)", feed.feed_id, feed.name, trigger)
        try:
            raw_data = load_document()
            calendar_obj = parse_calendar(raw_data)
            now = self.clock()
            window_start, window_end = sync_window(
                now,
                config.sync.window_past_months,
                config.sync.window_future_months,
            )
            candidates, total_events = build_candidates(
                feed,
                calendar_obj,
                window_start=window_start,
                window_end=window_end,
                tz=_resolve_timezone(config.sync.timezone),
            )
            existing = self.state_store.list_mirrored(feed.feed_id)
            plan = plan_reconciliation(candidates=candidates, existing=existing)
            self._apply(feed, plan, now)
        except SyncError as exc:
            logger.warning("Reconciliation of feed %s failed: %s", feed.feed_id, exc.message)
            self._record_failure(feed, trigger, exc.message)
            raise
        except Exception as exc:
            logger.exception("Unexpected error reconciling feed %s", feed.feed_id)
            self._record_failure(feed, trigger, f"{type(exc).__name__}: {exc}")
            raise

        stats = SyncStats(
            created=len(plan.to_create),
            updated=len(plan.to_update),
            deleted=len(plan.to_delete),
            total_occurrences=len(plan.to_create) + len(plan.to_update),
            total_events=total_events,
            calendar_id=feed.calendar_id,
        )
        self.notifier.publish(
            SHIFT_COLLECTION_CHANGED,
            feed.calendar_id,
            {"feed_id": feed.feed_id, "trigger": trigger, "stats": stats.to_dict()},
        )
        try:
            self.state_store.record_sync_run(
                feed=feed,
                trigger=trigger,
                status="success",
                created=stats.created,
                updated=stats.updated,
                deleted=stats.deleted,
            )
        except SyncError:
            logger.exception("Could not record sync run for feed %s", feed.feed_id)
        logger.info(
            "Feed %s reconciled: created=%d updated=%d deleted=%d",
            feed.feed_id,
            stats.created,
            stats.updated,
            stats.deleted,
        )
        return stats

    def _apply(self, feed: FeedConfig, plan: ReconcilePlan, now: datetime) -> None:
        with self.state_store.transaction() as tx:
            tx.delete_many(plan.to_delete)
            tx.insert_many(plan.to_create)
            for entry_id, candidate in plan.to_update:
                tx.update_one(entry_id, candidate.content_fields())
            tx.set_last_synced(feed.feed_id, now)

    def _record_failure(self, feed: FeedConfig, trigger: str, message: str) -> None:
        try:
            self.state_store.record_sync_run(
                feed=feed,
                trigger=trigger,
                status="error",
                error_message=message,
            )
        except SyncError:
            logger.exception("Could not record failed sync run for feed %s", feed.feed_id)
