from __future__ import annotations

import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Iterator

from shiftsync.errors import NotFound, PersistenceError
from shiftsync.models import (
    DEFAULT_FEED_COLOR,
    Calendar,
    FeedConfig,
    MirroredEntry,
    SyncRun,
    serialize_datetime,
    utc_now,
)


FEED_UPDATABLE_FIELDS = (
    "name",
    "source_url",
    "color",
    "display_mode",
    "auto_sync_interval_minutes",
    "is_hidden",
    "hide_from_stats",
)
ENTRY_UPDATABLE_FIELDS = ("date", "start_time", "end_time", "title", "color", "notes", "all_day")


def _utc_now() -> str:
    return serialize_datetime(utc_now()) or ""


def _new_id() -> str:
    return str(uuid.uuid4())


def _entry_values(entry: MirroredEntry, entry_id: str, now: str) -> tuple[Any, ...]:
    return (
        entry_id,
        entry.calendar_id,
        entry.date.isoformat(),
        entry.start_time,
        entry.end_time,
        entry.title,
        entry.color,
        entry.notes,
        int(bool(entry.all_day)),
        entry.external_feed_id,
        entry.external_event_id,
        int(bool(entry.mirrored_from_external)),
        now,
        now,
    )


class StoreTransaction:
    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def insert_many(self, entries: Iterable[MirroredEntry]) -> int:
        now = _utc_now()
        rows = [_entry_values(entry, entry.entry_id or _new_id(), now) for entry in entries]
        if rows:
            self._conn.executemany(
                """
                INSERT INTO entries(
                    id, calendar_id, date, start_time, end_time, title, color, notes, all_day,
                    external_feed_id, external_event_id, mirrored_from_external, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )
        return len(rows)

    def update_one(self, entry_id: str, fields: dict[str, Any]) -> None:
        assignments: list[str] = []
        values: list[Any] = []
        for name in ENTRY_UPDATABLE_FIELDS:
            if name not in fields:
                continue
            value = fields[name]
            if name == "all_day":
                value = int(bool(value))
            elif name == "date" and hasattr(value, "isoformat"):
                value = value.isoformat()
            assignments.append(f"{name} = ?")
            values.append(value)
        if not assignments:
            return
        assignments.append("updated_at = ?")
        values.extend([_utc_now(), str(entry_id)])
        self._conn.execute(f"UPDATE entries SET {', '.join(assignments)} WHERE id = ?", values)  # nosec B608

    def delete_many(self, entry_ids: Iterable[str]) -> int:
        ids = [(str(entry_id),) for entry_id in entry_ids]
        if ids:
            self._conn.executemany("DELETE FROM entries WHERE id = ?", ids)
        return len(ids)

    def set_last_synced(self, feed_id: str, instant: datetime) -> None:
        self._conn.execute(
            "UPDATE feeds SET last_synced_at = ?, updated_at = ? WHERE id = ?",
            (serialize_datetime(instant), _utc_now(), str(feed_id)),
        )


class StateStore:
    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _session(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = self._connect()
            try:
                with conn:
                    yield conn
            except sqlite3.Error as exc:
                raise PersistenceError(f"Database operation failed: {exc}") from exc
            finally:
                conn.close()

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS calendars (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            color TEXT NOT NULL,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS feeds (
            id TEXT PRIMARY KEY,
            calendar_id TEXT NOT NULL REFERENCES calendars(id) ON DELETE CASCADE,
            name TEXT NOT NULL,
            source_kind TEXT NOT NULL,
            source_url TEXT,
            color TEXT NOT NULL,
            display_mode TEXT NOT NULL DEFAULT 'normal',
            auto_sync_interval_minutes INTEGER NOT NULL DEFAULT 0,
            last_synced_at TEXT,
            is_one_time_import INTEGER NOT NULL DEFAULT 0,
            is_hidden INTEGER NOT NULL DEFAULT 0,
            hide_from_stats INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS entries (
            id TEXT PRIMARY KEY,
            calendar_id TEXT NOT NULL REFERENCES calendars(id) ON DELETE CASCADE,
            date TEXT NOT NULL,
            start_time TEXT NOT NULL,
            end_time TEXT NOT NULL,
            title TEXT NOT NULL,
            color TEXT NOT NULL,
            notes TEXT,
            all_day INTEGER NOT NULL DEFAULT 0,
            external_feed_id TEXT REFERENCES feeds(id) ON DELETE CASCADE,
            external_event_id TEXT,
            mirrored_from_external INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE UNIQUE INDEX IF NOT EXISTS idx_entries_feed_event
            ON entries(external_feed_id, external_event_id)
            WHERE external_feed_id IS NOT NULL;

        CREATE INDEX IF NOT EXISTS idx_entries_calendar_date ON entries(calendar_id, date);

        CREATE TABLE IF NOT EXISTS sync_runs (
            id TEXT PRIMARY KEY,
            feed_id TEXT NOT NULL,
            feed_name TEXT NOT NULL,
            calendar_id TEXT NOT NULL REFERENCES calendars(id) ON DELETE CASCADE,
            trigger TEXT NOT NULL,
            status TEXT NOT NULL,
            created INTEGER NOT NULL DEFAULT 0,
            updated INTEGER NOT NULL DEFAULT 0,
            deleted INTEGER NOT NULL DEFAULT 0,
            error_message TEXT,
            is_read INTEGER NOT NULL DEFAULT 0,
            synced_at TEXT NOT NULL
        );
        """
        with self._lock:
            conn = self._connect()
            try:
                conn.executescript(schema_sql)
            finally:
                conn.close()

    @contextmanager
    def transaction(self) -> Iterator[StoreTransaction]:
        with self._lock:
            conn = self._connect()
            try:
                conn.execute("BEGIN IMMEDIATE")
                yield StoreTransaction(conn)
                conn.commit()
            except sqlite3.Error as exc:
                conn.rollback()
                raise PersistenceError(f"Failed to apply changes: {exc}") from exc
            except BaseException:
                conn.rollback()
                raise
            finally:
                conn.close()

    # calendars

    def create_calendar(self, *, name: str, color: str = DEFAULT_FEED_COLOR) -> Calendar:
        calendar_id = _new_id()
        with self._session() as conn:
            conn.execute(
                "INSERT INTO calendars(id, name, color, created_at) VALUES (?, ?, ?, ?)",
                (calendar_id, name, color or DEFAULT_FEED_COLOR, _utc_now()),
            )
        return self.get_calendar(calendar_id)

    def get_calendar(self, calendar_id: str) -> Calendar:
        with self._session() as conn:
            row = conn.execute(
                "SELECT id, name, color, created_at FROM calendars WHERE id = ?",
                (str(calendar_id),),
            ).fetchone()
        if row is None:
            raise NotFound("Calendar not found")
        return Calendar.from_row(dict(row))

    def list_calendars(self) -> list[Calendar]:
        with self._session() as conn:
            rows = conn.execute("SELECT id, name, color, created_at FROM calendars ORDER BY created_at").fetchall()
        return [Calendar.from_row(dict(row)) for row in rows]

    def delete_calendar(self, calendar_id: str) -> bool:
        with self._session() as conn:
            cursor = conn.execute("DELETE FROM calendars WHERE id = ?", (str(calendar_id),))
        return cursor.rowcount > 0

    # feeds

    def create_feed(
        self,
        *,
        calendar_id: str,
        name: str,
        source_kind: str,
        source_url: str | None,
        color: str = DEFAULT_FEED_COLOR,
        display_mode: str = "normal",
        auto_sync_interval_minutes: int = 0,
        is_one_time_import: bool = False,
    ) -> FeedConfig:
        self.get_calendar(calendar_id)
        feed_id = _new_id()
        now = _utc_now()
        with self._session() as conn:
            conn.execute(
                """
                INSERT INTO feeds(
                    id, calendar_id, name, source_kind, source_url, color, display_mode,
                    auto_sync_interval_minutes, is_one_time_import, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    feed_id,
                    str(calendar_id),
                    name,
                    source_kind,
                    source_url,
                    color or DEFAULT_FEED_COLOR,
                    display_mode or "normal",
                    0 if is_one_time_import else int(auto_sync_interval_minutes),
                    int(bool(is_one_time_import)),
                    now,
                    now,
                ),
            )
        return self.get_feed(feed_id)

    def find_feed(self, feed_id: str) -> FeedConfig | None:
        with self._session() as conn:
            row = conn.execute("SELECT * FROM feeds WHERE id = ?", (str(feed_id),)).fetchone()
        return FeedConfig.from_row(dict(row)) if row else None

    def get_feed(self, feed_id: str) -> FeedConfig:
        feed = self.find_feed(feed_id)
        if feed is None:
            raise NotFound("External sync configuration not found")
        return feed

    def list_feeds(self, calendar_id: str | None = None) -> list[FeedConfig]:
        with self._session() as conn:
            if calendar_id is None:
                rows = conn.execute("SELECT * FROM feeds ORDER BY created_at").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM feeds WHERE calendar_id = ? ORDER BY created_at",
                    (str(calendar_id),),
                ).fetchall()
        return [FeedConfig.from_row(dict(row)) for row in rows]

    def list_auto_sync_feeds(self) -> list[FeedConfig]:
        with self._session() as conn:
            rows = conn.execute(
                """
                SELECT * FROM feeds
                WHERE auto_sync_interval_minutes > 0
                  AND is_one_time_import = 0
                  AND source_url IS NOT NULL
                ORDER BY created_at
                """
            ).fetchall()
        return [FeedConfig.from_row(dict(row)) for row in rows]

    def update_feed(self, feed_id: str, fields: dict[str, Any]) -> FeedConfig:
        assignments: list[str] = []
        values: list[Any] = []
        for name in FEED_UPDATABLE_FIELDS:
            if name not in fields:
                continue
            value = fields[name]
            if name in {"is_hidden", "hide_from_stats"}:
                value = int(bool(value))
            assignments.append(f"{name} = ?")
            values.append(value)
        if not assignments:
            return self.get_feed(feed_id)
        now = _utc_now()
        assignments.append("updated_at = ?")
        values.extend([now, str(feed_id)])
        with self._session() as conn:
            cursor = conn.execute(f"UPDATE feeds SET {', '.join(assignments)} WHERE id = ?", values)  # nosec B608
            if cursor.rowcount == 0:
                raise NotFound("External sync configuration not found")
            if "color" in fields:
                conn.execute(
                    "UPDATE entries SET color = ?, updated_at = ? WHERE external_feed_id = ?",
                    (fields["color"], now, str(feed_id)),
                )
        return self.get_feed(feed_id)

    def delete_feed(self, feed_id: str) -> bool:
        with self._session() as conn:
            cursor = conn.execute("DELETE FROM feeds WHERE id = ?", (str(feed_id),))
        return cursor.rowcount > 0

    # entries

    def list_mirrored(self, feed_id: str) -> list[MirroredEntry]:
        with self._session() as conn:
            rows = conn.execute(
                "SELECT * FROM entries WHERE external_feed_id = ? ORDER BY date, start_time",
                (str(feed_id),),
            ).fetchall()
        return [MirroredEntry.from_row(dict(row)) for row in rows]

    def list_entries(self, calendar_id: str, start: str | None = None, end: str | None = None) -> list[MirroredEntry]:
        query = "SELECT * FROM entries WHERE calendar_id = ?"
        params: list[Any] = [str(calendar_id)]
        if start:
            query += " AND date >= ?"
            params.append(start)
        if end:
            query += " AND date <= ?"
            params.append(end)
        query += " ORDER BY date, start_time"
        with self._session() as conn:
            rows = conn.execute(query, params).fetchall()
        return [MirroredEntry.from_row(dict(row)) for row in rows]

    def get_entry(self, entry_id: str) -> MirroredEntry:
        with self._session() as conn:
            row = conn.execute("SELECT * FROM entries WHERE id = ?", (str(entry_id),)).fetchone()
        if row is None:
            raise NotFound("Entry not found")
        return MirroredEntry.from_row(dict(row))

    def delete_entry(self, entry_id: str) -> bool:
        with self._session() as conn:
            cursor = conn.execute("DELETE FROM entries WHERE id = ?", (str(entry_id),))
        return cursor.rowcount > 0

    # sync runs

    def record_sync_run(
        self,
        *,
        feed: FeedConfig,
        trigger: str,
        status: str,
        created: int = 0,
        updated: int = 0,
        deleted: int = 0,
        error_message: str | None = None,
    ) -> SyncRun:
        run_id = _new_id()
        with self._session() as conn:
            conn.execute(
                """
                INSERT INTO sync_runs(
                    id, feed_id, feed_name, calendar_id, trigger, status,
                    created, updated, deleted, error_message, is_read, synced_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?)
                """,
                (
                    run_id,
                    feed.feed_id,
                    feed.name,
                    feed.calendar_id,
                    trigger,
                    status,
                    int(created),
                    int(updated),
                    int(deleted),
                    error_message,
                    _utc_now(),
                ),
            )
            row = conn.execute("SELECT * FROM sync_runs WHERE id = ?", (run_id,)).fetchone()
        return SyncRun.from_row(dict(row))

    def recent_sync_runs(
        self,
        *,
        calendar_id: str | None = None,
        feed_id: str | None = None,
        limit: int = 50,
    ) -> list[SyncRun]:
        query = "SELECT * FROM sync_runs WHERE 1 = 1"
        params: list[Any] = []
        if calendar_id:
            query += " AND calendar_id = ?"
            params.append(str(calendar_id))
        if feed_id:
            query += " AND feed_id = ?"
            params.append(str(feed_id))
        query += " ORDER BY synced_at DESC, rowid DESC LIMIT ?"
        params.append(max(1, int(limit)))
        with self._session() as conn:
            rows = conn.execute(query, params).fetchall()
        return [SyncRun.from_row(dict(row)) for row in rows]

    def mark_sync_run_read(self, run_id: str) -> bool:
        with self._session() as conn:
            cursor = conn.execute("UPDATE sync_runs SET is_read = 1 WHERE id = ?", (str(run_id),))
        return cursor.rowcount > 0

    def mark_all_sync_runs_read(self, calendar_id: str | None = None) -> int:
        with self._session() as conn:
            if calendar_id:
                cursor = conn.execute(
                    "UPDATE sync_runs SET is_read = 1 WHERE is_read = 0 AND calendar_id = ?",
                    (str(calendar_id),),
                )
            else:
                cursor = conn.execute("UPDATE sync_runs SET is_read = 1 WHERE is_read = 0")
        return cursor.rowcount

    def unread_sync_run_count(self, calendar_id: str | None = None) -> int:
        with self._session() as conn:
            if calendar_id:
                row = conn.execute(
                    "SELECT COUNT(*) AS total FROM sync_runs WHERE is_read = 0 AND calendar_id = ?",
                    (str(calendar_id),),
                ).fetchone()
            else:
                row = conn.execute("SELECT COUNT(*) AS total FROM sync_runs WHERE is_read = 0").fetchone()
        return int(row["total"])
