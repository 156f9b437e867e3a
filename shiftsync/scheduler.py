from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Protocol

from shiftsync.models import FeedConfig, SyncStats, serialize_datetime, utc_now
from shiftsync.state_store import StateStore
from shiftsync.sync_engine import SyncEngine


logger = logging.getLogger(__name__)


class TimerHandle(Protocol):
    def start(self) -> None: ...

    def cancel(self) -> None: ...


TimerFactory = Callable[[float, Callable[[], None]], TimerHandle]


def _thread_timer(delay: float, callback: Callable[[], None]) -> TimerHandle:
    timer = threading.Timer(delay, callback)
    timer.daemon = True
    return timer


@dataclass(frozen=True)
class ScheduledJob:
    feed_id: str
    interval_minutes: int
    next_run_at: datetime
    running: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "feed_id": self.feed_id,
            "interval_minutes": self.interval_minutes,
            "next_run_at": serialize_datetime(self.next_run_at),
            "running": self.running,
        }


def eligible_for_auto_sync(feed: FeedConfig) -> bool:
    return feed.effective_interval_minutes > 0 and bool(feed.source_url)


def next_run_at(now: datetime, interval_minutes: int, last_synced_at: datetime | None) -> datetime:
    if last_synced_at is None:
        return now
    due = last_synced_at + timedelta(minutes=interval_minutes)
    if due <= now:
        return now
    return due


class AutoSyncScheduler:
    def __init__(
        self,
        sync_engine: SyncEngine,
        state_store: StateStore,
        *,
        reload_interval_seconds: float = 300,
        clock: Callable[[], datetime] | None = None,
        timer_factory: TimerFactory | None = None,
    ) -> None:
        self.sync_engine = sync_engine
        self.state_store = state_store
        self.reload_interval_seconds = max(1.0, float(reload_interval_seconds))
        self.clock = clock or utc_now
        self.timer_factory = timer_factory or _thread_timer
        self._lock = threading.RLock()
        self._jobs: dict[str, ScheduledJob] = {}
        self._timers: dict[str, TimerHandle] = {}
        self._reload_timer: Optional[TimerHandle] = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
        logger.info("Starting auto-sync scheduler")
        self.reload()
        self._arm_reload_timer()

    def stop(self) -> None:
        logger.info("Stopping auto-sync scheduler")
        with self._lock:
            self._running = False
            if self._reload_timer is not None:
                self._reload_timer.cancel()
                self._reload_timer = None
            for timer in self._timers.values():
                timer.cancel()
            self._timers.clear()
            self._jobs.clear()

    def jobs(self) -> dict[str, ScheduledJob]:
        with self._lock:
            return dict(self._jobs)

    def reload(self) -> None:
        with self._lock:
            if not self._running:
                return
            try:
                feeds = self.state_store.list_auto_sync_feeds()
            except Exception:
                logger.exception("Failed to load auto-sync feeds")
                return
            eligible = {feed.feed_id: feed for feed in feeds if eligible_for_auto_sync(feed)}

            for feed_id in list(self._jobs):
                if feed_id not in eligible:
                    self._remove_job(feed_id)

            for feed_id, feed in eligible.items():
                existing = self._jobs.get(feed_id)
                interval = feed.effective_interval_minutes
                if existing is None:
                    self._schedule(feed_id, interval, feed.last_synced_at)
                elif existing.interval_minutes != interval:
                    self._remove_job(feed_id)
                    self._schedule(feed_id, interval, feed.last_synced_at)

    def trigger_manual(self, feed_id: str) -> SyncStats:
        stats = self.sync_engine.reconcile(feed_id, trigger="manual")
        with self._lock:
            job = self._jobs.get(feed_id)
            if self._running and job is not None:
                self._remove_job(feed_id)
                self._schedule(feed_id, job.interval_minutes, self.clock())
        return stats

    def _arm_reload_timer(self) -> None:
        with self._lock:
            if not self._running:
                return
            timer = self.timer_factory(self.reload_interval_seconds, self._on_reload_tick)
            self._reload_timer = timer
            timer.start()

    def _on_reload_tick(self) -> None:
        self.reload()
        self._arm_reload_timer()

    def _schedule(self, feed_id: str, interval_minutes: int, last_synced_at: datetime | None) -> None:
        now = self.clock()
        run_at = next_run_at(now, interval_minutes, last_synced_at)
        delay = max(0.0, (run_at - now).total_seconds())
        job = ScheduledJob(feed_id=feed_id, interval_minutes=interval_minutes, next_run_at=run_at)
        timer = self.timer_factory(delay, lambda: self._execute(job))
        self._jobs[feed_id] = job
        self._timers[feed_id] = timer
        logger.info("Scheduling sync %s in %ds (interval: %dmin)", feed_id, round(delay), interval_minutes)
        timer.start()

    def _remove_job(self, feed_id: str) -> None:
        timer = self._timers.pop(feed_id, None)
        if timer is not None:
            timer.cancel()
        if self._jobs.pop(feed_id, None) is not None:
            logger.info("Removed sync job %s", feed_id)

    def _execute(self, job: ScheduledJob) -> None:
        with self._lock:
            if not self._running or self._jobs.get(job.feed_id) is not job:
                return
            running_job = replace(job, running=True)
            self._jobs[job.feed_id] = running_job
            self._timers.pop(job.feed_id, None)

        logger.info("Executing auto-sync for %s", job.feed_id)
        try:
            stats = self.sync_engine.reconcile(job.feed_id, trigger="automatic")
            logger.info("Auto-sync completed for %s: %s", job.feed_id, stats.to_dict())
        except Exception as exc:
            logger.warning("Auto-sync error for %s: %s", job.feed_id, exc)

        with self._lock:
            if not self._running or self._jobs.get(job.feed_id) is not running_job:
                return
            self._jobs.pop(job.feed_id, None)
            self._schedule(job.feed_id, job.interval_minutes, self.clock())
