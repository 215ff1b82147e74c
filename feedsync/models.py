from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


FEED_SOURCE_TAG = "ical_feed"
MANUAL_SOURCE_TAG = "manual"
TEMPLATE_SOURCE_TAG = "template"

SOURCE_TYPE_GOOGLE = "google"
SOURCE_TYPE_ICAL = "ical"
SOURCE_TYPES = (SOURCE_TYPE_GOOGLE, SOURCE_TYPE_ICAL)

SYNC_STATUS_NEVER = "never"
SYNC_STATUS_SUCCESS = "success"
SYNC_STATUS_ERROR = "error"

DEFAULT_HOME_TIMEZONE = "America/New_York"
DEFAULT_MONTHS_BACK = 1
DEFAULT_MONTHS_FORWARD = 3

_TIMESTAMP_SUFFIX = re.compile(r"^(?P<base>.*)-(?P<millis>\d+)$")


def validate_timezone(name: str) -> str:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown timezone: {name!r}") from exc
    return name


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).astimezone(timezone.utc).isoformat()


def to_millis(value: datetime) -> int:
    return int(round(_ensure_tz(value).timestamp() * 1000))


def month_key(value: datetime) -> str:
    return _ensure_tz(value).astimezone(timezone.utc).strftime("%Y-%m")


def full_event_id(base_id: str, start: datetime) -> str:
    return f"{base_id}-{to_millis(start)}"


def base_id_of(full_id: str) -> str:
    match = _TIMESTAMP_SUFFIX.match(full_id)
    if match is None:
        return full_id
    return match.group("base")


def start_millis_of(full_id: str) -> int | None:
    match = _TIMESTAMP_SUFFIX.match(full_id)
    if match is None:
        return None
    return int(match.group("millis"))


def _shift_month(year: int, month: int, delta: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def sync_window(now: datetime, months_back: int, months_forward: int) -> tuple[datetime, datetime]:
    now_utc = _ensure_tz(now).astimezone(timezone.utc)
    start_year, start_month = _shift_month(now_utc.year, now_utc.month, -max(0, months_back))
    end_year, end_month = _shift_month(now_utc.year, now_utc.month, max(0, months_forward) + 1)
    start = datetime(start_year, start_month, 1, tzinfo=timezone.utc)
    end = datetime(end_year, end_month, 1, tzinfo=timezone.utc) - timedelta(microseconds=1)
    return start, end


def month_keys_between(start: datetime, end: datetime) -> list[str]:
    start_utc = _ensure_tz(start).astimezone(timezone.utc)
    end_utc = _ensure_tz(end).astimezone(timezone.utc)
    keys: list[str] = []
    year, month = start_utc.year, start_utc.month
    while (year, month) <= (end_utc.year, end_utc.month):
        keys.append(f"{year:04d}-{month:02d}")
        year, month = _shift_month(year, month, 1)
    return keys


def date_to_datetime(value: datetime | date | None) -> datetime | None:
    """Promote an all-day date to a floating midnight datetime."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.combine(value, time.min)


@dataclass
class SyncConfig:
    months_back: int = DEFAULT_MONTHS_BACK
    months_forward: int = DEFAULT_MONTHS_FORWARD
    home_timezone: str = DEFAULT_HOME_TIMEZONE
    timeout_seconds: int = 540
    max_occurrences: int = 1000

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            months_back=max(0, int(data.get("months_back", DEFAULT_MONTHS_BACK))),
            months_forward=max(0, int(data.get("months_forward", DEFAULT_MONTHS_FORWARD))),
            home_timezone=str(data.get("home_timezone", DEFAULT_HOME_TIMEZONE)).strip()
            or DEFAULT_HOME_TIMEZONE,
            timeout_seconds=max(1, int(data.get("timeout_seconds", 540))),
            max_occurrences=max(1, int(data.get("max_occurrences", 1000))),
        )


@dataclass
class FeedConfig:
    timeout_seconds: int = 30
    user_agent: str = "feedsync/0.1"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "FeedConfig":
        data = data or {}
        return cls(
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30))),
            user_agent=str(data.get("user_agent", "feedsync/0.1")).strip() or "feedsync/0.1",
        )


@dataclass
class ScheduleConfig:
    enabled: bool = True
    times: list[str] = field(default_factory=lambda: ["06:00", "12:00", "18:00"])
    timezone: str = DEFAULT_HOME_TIMEZONE

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ScheduleConfig":
        data = data or {}
        times: list[str] = []
        for raw in data.get("times", ["06:00", "12:00", "18:00"]) or []:
            text = str(raw).strip()
            if re.fullmatch(r"\d{1,2}:\d{2}", text):
                hours, minutes = (int(part) for part in text.split(":"))
                if hours < 24 and minutes < 60:
                    times.append(f"{hours:02d}:{minutes:02d}")
        return cls(
            enabled=bool(data.get("enabled", True)),
            times=sorted(set(times)) or ["06:00", "12:00", "18:00"],
            timezone=validate_timezone(
                str(data.get("timezone", DEFAULT_HOME_TIMEZONE)).strip() or DEFAULT_HOME_TIMEZONE
            ),
        )


@dataclass
class AlertConfig:
    admin_user_id: str = ""
    push_url: str = "https://exp.host/--/api/v2/push/send"
    access_token: str = ""
    timeout_seconds: int = 15

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AlertConfig":
        data = data or {}
        return cls(
            admin_user_id=str(data.get("admin_user_id", "")).strip(),
            push_url=str(data.get("push_url", "https://exp.host/--/api/v2/push/send")).strip()
            or "https://exp.host/--/api/v2/push/send",
            access_token=str(data.get("access_token", "")).strip(),
            timeout_seconds=max(1, int(data.get("timeout_seconds", 15))),
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
    feed: FeedConfig = field(default_factory=FeedConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    alerts: AlertConfig = field(default_factory=AlertConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            sync=SyncConfig.from_dict(data.get("sync")),
            feed=FeedConfig.from_dict(data.get("feed")),
            schedule=ScheduleConfig.from_dict(data.get("schedule")),
            alerts=AlertConfig.from_dict(data.get("alerts")),
            logging=LoggingConfig.from_dict(data.get("logging")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass
class CalendarSource:
    type: str = SOURCE_TYPE_ICAL
    url: str = ""
    external_id: str = ""

    def __post_init__(self) -> None:
        self.type = str(self.type or "").strip().lower()
        if self.type not in SOURCE_TYPES:
            raise ValueError(f"Unsupported calendar source type: {self.type!r}")

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CalendarSource":
        data = data or {}
        return cls(
            type=str(data.get("type") or data.get("calendar_type") or SOURCE_TYPE_ICAL),
            url=str(data.get("url") or data.get("calendar_address") or "").strip(),
            external_id=str(data.get("external_id") or data.get("calendar_id") or "").strip(),
        )

    @property
    def is_sync_eligible(self) -> bool:
        return bool(self.url)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SyncStatus:
    sync_status: str = SYNC_STATUS_NEVER
    last_synced_at: datetime | None = None
    last_error: str = ""
    last_error_at: datetime | None = None
    event_count: int = 0
    months_covered: int = 0
    preserved_activities_count: int = 0
    deleted_events_count: int = 0
    updated_event_ids_count: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncStatus":
        data = data or {}
        return cls(
            sync_status=str(data.get("sync_status", SYNC_STATUS_NEVER) or SYNC_STATUS_NEVER),
            last_synced_at=parse_iso_datetime(data.get("last_synced_at")),
            last_error=str(data.get("last_error", "") or ""),
            last_error_at=parse_iso_datetime(data.get("last_error_at")),
            event_count=int(data.get("event_count", 0) or 0),
            months_covered=int(data.get("months_covered", 0) or 0),
            preserved_activities_count=int(data.get("preserved_activities_count", 0) or 0),
            deleted_events_count=int(data.get("deleted_events_count", 0) or 0),
            updated_event_ids_count=int(data.get("updated_event_ids_count", 0) or 0),
        )

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["last_synced_at"] = serialize_datetime(self.last_synced_at)
        payload["last_error_at"] = serialize_datetime(self.last_error_at)
        return payload


@dataclass
class CalendarRecord:
    calendar_id: str
    name: str = ""
    source: CalendarSource = field(default_factory=CalendarSource)
    subscribers: list[str] = field(default_factory=list)
    sync: SyncStatus = field(default_factory=SyncStatus)
    updated_at: datetime | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CalendarRecord":
        return cls(
            calendar_id=str(data.get("calendar_id", "")).strip(),
            name=str(data.get("name", "") or ""),
            source=CalendarSource.from_dict(data.get("source")),
            subscribers=[str(x).strip() for x in data.get("subscribers", []) or [] if str(x).strip()],
            sync=SyncStatus.from_dict(data.get("sync")),
            updated_at=parse_iso_datetime(data.get("updated_at")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "calendar_id": self.calendar_id,
            "name": self.name,
            "source": self.source.to_dict(),
            "subscribers": list(self.subscribers),
            "sync": self.sync.to_dict(),
            "updated_at": serialize_datetime(self.updated_at),
        }


@dataclass
class RawEvent:
    uid: str = ""
    summary: str = ""
    start: datetime | date | None = None
    end: datetime | date | None = None
    duration: timedelta | None = None
    location: str = ""
    description: str = ""
    rrule: str = ""
    exdates: list[datetime | date] = field(default_factory=list)
    date_only: bool = False

    @property
    def is_recurring(self) -> bool:
        return bool(self.rrule)


@dataclass
class Occurrence:
    raw: RawEvent
    start: datetime


APP_OWNED_FIELDS = ("activities", "reminder_minutes", "reminder")
_CALENDAR_FIELDS = (
    "title",
    "description",
    "location",
    "start_time",
    "end_time",
    "is_all_day",
    "source",
    "calendar_id",
    "is_recurring",
    "recurring_event_id",
)


@dataclass
class StoredEvent:
    title: str = ""
    description: str = ""
    location: str = ""
    start_time: datetime | None = None
    end_time: datetime | None = None
    is_all_day: bool = False
    source: str = FEED_SOURCE_TAG
    calendar_id: str = ""
    is_recurring: bool = False
    recurring_event_id: str = ""
    activities: list[Any] | None = None
    reminder_minutes: int | None = None
    reminder: dict[str, Any] | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def is_feed_sourced(self) -> bool:
        return self.source == FEED_SOURCE_TAG

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StoredEvent":
        known = set(_CALENDAR_FIELDS) | set(APP_OWNED_FIELDS)
        activities = data.get("activities")
        reminder_minutes = data.get("reminder_minutes")
        reminder = data.get("reminder")
        return cls(
            title=str(data.get("title", "") or ""),
            description=str(data.get("description", "") or ""),
            location=str(data.get("location", "") or ""),
            start_time=parse_iso_datetime(data.get("start_time")),
            end_time=parse_iso_datetime(data.get("end_time")),
            is_all_day=bool(data.get("is_all_day", False)),
            source=str(data.get("source", "") or ""),
            calendar_id=str(data.get("calendar_id", "") or ""),
            is_recurring=bool(data.get("is_recurring", False)),
            recurring_event_id=str(data.get("recurring_event_id", "") or ""),
            activities=list(activities) if isinstance(activities, list) else None,
            reminder_minutes=int(reminder_minutes) if reminder_minutes is not None else None,
            reminder=dict(reminder) if isinstance(reminder, dict) else None,
            extra={key: value for key, value in data.items() if key not in known},
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = dict(self.extra)
        payload.update(
            {
                "title": self.title,
                "description": self.description,
                "location": self.location,
                "start_time": serialize_datetime(self.start_time),
                "end_time": serialize_datetime(self.end_time),
                "is_all_day": self.is_all_day,
                "source": self.source,
                "calendar_id": self.calendar_id,
                "is_recurring": self.is_recurring,
                "recurring_event_id": self.recurring_event_id,
            }
        )
        if self.activities is not None:
            payload["activities"] = list(self.activities)
        if self.reminder_minutes is not None:
            payload["reminder_minutes"] = self.reminder_minutes
        if self.reminder is not None:
            payload["reminder"] = dict(self.reminder)
        return payload

    def clone(self) -> "StoredEvent":
        return StoredEvent.from_dict(self.to_dict())

    def with_app_owned_from(self, other: "StoredEvent") -> "StoredEvent":
        merged = self.clone()
        if other.activities is not None:
            merged.activities = list(other.activities)
        if other.reminder_minutes is not None:
            merged.reminder_minutes = other.reminder_minutes
        if other.reminder is not None:
            merged.reminder = dict(other.reminder)
        return merged


@dataclass
class MonthBucket:
    calendar_id: str
    month_key: str
    events: dict[str, StoredEvent] = field(default_factory=dict)
    updated_at: datetime | None = None

    @classmethod
    def from_dict(cls, calendar_id: str, month: str, data: dict[str, Any] | None) -> "MonthBucket":
        data = data or {}
        raw_events = data.get("events", {}) or {}
        return cls(
            calendar_id=calendar_id,
            month_key=month,
            events={
                str(event_id): StoredEvent.from_dict(payload)
                for event_id, payload in raw_events.items()
                if isinstance(payload, dict)
            },
            updated_at=parse_iso_datetime(data.get("updated_at")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "events": {event_id: event.to_dict() for event_id, event in self.events.items()},
            "updated_at": serialize_datetime(self.updated_at),
        }


@dataclass
class SyncRequest:
    calendar_id: str
    source: CalendarSource
    name: str = ""
    months_back: int = DEFAULT_MONTHS_BACK
    months_forward: int = DEFAULT_MONTHS_FORWARD

    @classmethod
    def from_dict(
        cls,
        data: dict[str, Any],
        months_back: int | None = None,
        months_forward: int | None = None,
    ) -> "SyncRequest":
        source_data = data.get("source")
        if not isinstance(source_data, dict):
            source_data = {
                "type": data.get("calendar_type") or data.get("type"),
                "url": data.get("calendar_address") or data.get("url"),
            }
        back = data.get("months_back", months_back)
        forward = data.get("months_forward", months_forward)
        return cls(
            calendar_id=str(data.get("calendar_id", "") or "").strip(),
            source=CalendarSource.from_dict(source_data),
            name=str(data.get("name", "") or ""),
            months_back=DEFAULT_MONTHS_BACK if back is None else max(0, int(back)),
            months_forward=DEFAULT_MONTHS_FORWARD if forward is None else max(0, int(forward)),
        )


@dataclass
class SyncResult:
    calendar_id: str
    success: bool
    name: str = ""
    event_count: int = 0
    months_covered: int = 0
    created_count: int = 0
    preserved_activities_count: int = 0
    deleted_events_count: int = 0
    updated_event_ids_count: int = 0
    synced_at: datetime | None = None
    error: str = ""
    stage: str = ""

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["synced_at"] = serialize_datetime(self.synced_at)
        return payload


@dataclass
class BatchSyncResult:
    results: list[SyncResult] = field(default_factory=list)

    @property
    def total_count(self) -> int:
        return len(self.results)

    @property
    def success_count(self) -> int:
        return sum(1 for result in self.results if result.success)

    @property
    def error_count(self) -> int:
        return sum(1 for result in self.results if not result.success)

    @property
    def failures(self) -> list[SyncResult]:
        return [result for result in self.results if not result.success]

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_count": self.total_count,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "results": [result.to_dict() for result in self.results],
        }
