from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from typing import Any

from dateutil.relativedelta import relativedelta

from shiftsync.errors import ValidationError


ALLOWED_SYNC_INTERVALS = (0, 5, 15, 30, 60, 120, 360, 720, 1440)
SOURCE_KINDS = ("icloud", "google", "custom")
DISPLAY_MODES = ("normal", "minimal")
SYNC_TRIGGERS = ("manual", "automatic")
DEFAULT_FEED_COLOR = "#3b82f6"
SHIFT_COLLECTION_CHANGED = "shift-collection-changed"


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).astimezone(timezone.utc).isoformat()


def parse_iso_date(value: str | date) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value).strip()[:10])


def validate_interval(value: Any) -> int:
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise ValidationError(f"Invalid auto-sync interval: {value!r}")
    try:
        interval = int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid auto-sync interval: {value!r}") from exc
    if interval not in ALLOWED_SYNC_INTERVALS:
        allowed = ", ".join(str(x) for x in ALLOWED_SYNC_INTERVALS)
        raise ValidationError(f"Invalid auto-sync interval. Must be one of: {allowed} minutes")
    return interval


def sync_window(now: datetime, past_months: int = 3, future_months: int = 12) -> tuple[datetime, datetime]:
    now_utc = _ensure_tz(now)
    start = now_utc - relativedelta(months=max(0, past_months))
    end = now_utc + relativedelta(months=max(1, future_months))
    return start, end


@dataclass
class SyncConfig:
    timezone: str = "UTC"
    window_past_months: int = 3
    window_future_months: int = 12
    reload_interval_seconds: int = 300

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            timezone=str(data.get("timezone", "UTC")).strip() or "UTC",
            window_past_months=max(0, int(data.get("window_past_months", 3))),
            window_future_months=max(1, int(data.get("window_future_months", 12))),
            reload_interval_seconds=max(30, int(data.get("reload_interval_seconds", 300))),
        )


@dataclass
class FetchConfig:
    timeout_seconds: float = 10.0
    max_bytes: int = 10 * 1024 * 1024
    user_agent: str = "shiftsync/0.1"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "FetchConfig":
        data = data or {}
        return cls(
            timeout_seconds=max(1.0, float(data.get("timeout_seconds", 10))),
            max_bytes=max(1024, int(data.get("max_bytes", 10 * 1024 * 1024))),
            user_agent=str(data.get("user_agent", "shiftsync/0.1")).strip() or "shiftsync/0.1",
        )


@dataclass
class LoggingConfig:
    level: str = "INFO"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LoggingConfig":
        data = data or {}
        level = str(data.get("level", "INFO")).strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            level = "INFO"
        return cls(level=level)


@dataclass
class AppConfig:
    sync: SyncConfig = field(default_factory=SyncConfig)
    fetch: FetchConfig = field(default_factory=FetchConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            sync=SyncConfig.from_dict(data.get("sync")),
            fetch=FetchConfig.from_dict(data.get("fetch")),
            logging=LoggingConfig.from_dict(data.get("logging")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass
class Calendar:
    calendar_id: str
    name: str
    color: str = DEFAULT_FEED_COLOR
    created_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Calendar":
        return cls(
            calendar_id=str(row["id"]),
            name=str(row["name"]),
            color=str(row.get("color") or DEFAULT_FEED_COLOR),
            created_at=parse_iso_datetime(row.get("created_at")),
        )

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["created_at"] = serialize_datetime(self.created_at)
        return payload


@dataclass
class FeedConfig:
    feed_id: str
    calendar_id: str
    name: str
    source_kind: str = "custom"
    source_url: str | None = None
    color: str = DEFAULT_FEED_COLOR
    display_mode: str = "normal"
    auto_sync_interval_minutes: int = 0
    last_synced_at: datetime | None = None
    is_one_time_import: bool = False
    is_hidden: bool = False
    hide_from_stats: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def effective_interval_minutes(self) -> int:
        if self.is_one_time_import:
            return 0
        return int(self.auto_sync_interval_minutes or 0)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "FeedConfig":
        return cls(
            feed_id=str(row["id"]),
            calendar_id=str(row["calendar_id"]),
            name=str(row["name"]),
            source_kind=str(row.get("source_kind") or "custom"),
            source_url=row.get("source_url") or None,
            color=str(row.get("color") or DEFAULT_FEED_COLOR),
            display_mode=str(row.get("display_mode") or "normal"),
            auto_sync_interval_minutes=int(row.get("auto_sync_interval_minutes") or 0),
            last_synced_at=parse_iso_datetime(row.get("last_synced_at")),
            is_one_time_import=bool(row.get("is_one_time_import")),
            is_hidden=bool(row.get("is_hidden")),
            hide_from_stats=bool(row.get("hide_from_stats")),
            created_at=parse_iso_datetime(row.get("created_at")),
            updated_at=parse_iso_datetime(row.get("updated_at")),
        )

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["last_synced_at"] = serialize_datetime(self.last_synced_at)
        payload["created_at"] = serialize_datetime(self.created_at)
        payload["updated_at"] = serialize_datetime(self.updated_at)
        payload["effective_interval_minutes"] = self.effective_interval_minutes
        return payload


@dataclass
class MirroredEntry:
    calendar_id: str
    date: date
    start_time: str
    end_time: str
    title: str
    color: str = DEFAULT_FEED_COLOR
    notes: str | None = None
    all_day: bool = False
    external_feed_id: str | None = None
    external_event_id: str | None = None
    mirrored_from_external: bool = True
    entry_id: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "MirroredEntry":
        return cls(
            entry_id=str(row["id"]),
            calendar_id=str(row["calendar_id"]),
            date=parse_iso_date(row["date"]),
            start_time=str(row["start_time"]),
            end_time=str(row["end_time"]),
            title=str(row["title"]),
            color=str(row.get("color") or DEFAULT_FEED_COLOR),
            notes=row.get("notes"),
            all_day=bool(row.get("all_day")),
            external_feed_id=row.get("external_feed_id"),
            external_event_id=row.get("external_event_id"),
            mirrored_from_external=bool(row.get("mirrored_from_external")),
            created_at=parse_iso_datetime(row.get("created_at")),
            updated_at=parse_iso_datetime(row.get("updated_at")),
        )

    def content_fields(self) -> dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            "start_time": self.start_time,
            "end_time": self.end_time,
            "title": self.title,
            "color": self.color,
            "notes": self.notes,
            "all_day": self.all_day,
        }

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["date"] = self.date.isoformat()
        payload["created_at"] = serialize_datetime(self.created_at)
        payload["updated_at"] = serialize_datetime(self.updated_at)
        return payload


@dataclass
class SyncStats:
    created: int
    updated: int
    deleted: int
    total_occurrences: int
    total_events: int = 0
    calendar_id: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SyncRun:
    run_id: str
    feed_id: str
    feed_name: str
    calendar_id: str
    trigger: str
    status: str
    created: int = 0
    updated: int = 0
    deleted: int = 0
    error_message: str | None = None
    is_read: bool = False
    synced_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "SyncRun":
        return cls(
            run_id=str(row["id"]),
            feed_id=str(row["feed_id"]),
            feed_name=str(row.get("feed_name") or ""),
            calendar_id=str(row["calendar_id"]),
            trigger=str(row["trigger"]),
            status=str(row["status"]),
            created=int(row.get("created") or 0),
            updated=int(row.get("updated") or 0),
            deleted=int(row.get("deleted") or 0),
            error_message=row.get("error_message"),
            is_read=bool(row.get("is_read")),
            synced_at=parse_iso_datetime(row.get("synced_at")),
        )

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["synced_at"] = serialize_datetime(self.synced_at)
        return payload
