from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable
from zoneinfo import ZoneInfo

from feedsync.event_store import EventStore, WriteBatch
from feedsync.models import (
    FEED_SOURCE_TAG,
    MANUAL_SOURCE_TAG,
    TEMPLATE_SOURCE_TAG,
    MonthBucket,
    StoredEvent,
    full_event_id,
    month_key,
    serialize_datetime,
    utc_now,
)


logger = logging.getLogger(__name__)

CLOCK_PATTERN = re.compile(r"^(?P<hours>\d{1,2}):(?P<minutes>\d{2})$")
FREQUENCY_SECONDS = {
    "minutely": 60,
    "hourly": 3600,
    "daily": 86400,
    "weekly": 604800,
    "monthly": 2592000,
}


def _parse_clock(value: str) -> tuple[int, int]:
    match = CLOCK_PATTERN.match(str(value or "").strip())
    if match is None:
        raise ValueError(f"Invalid time of day: {value!r}")
    hours, minutes = int(match.group("hours")), int(match.group("minutes"))
    if hours > 23 or minutes > 59:
        raise ValueError(f"Invalid time of day: {value!r}")
    return hours, minutes


def write_manual_event(
    store: EventStore,
    calendar_id: str,
    base_id: str,
    event: StoredEvent,
    source: str = MANUAL_SOURCE_TAG,
) -> str:
    """Store an app-created event under the same full-ID convention the sync uses.

    The record is tagged with a non-feed source so later syncs never prune it.
    """
    if not calendar_id or not base_id:
        raise ValueError("calendar_id and base_id are required")
    if source == FEED_SOURCE_TAG:
        raise ValueError("App-created events cannot carry the feed source tag")
    if event.start_time is None:
        raise ValueError("Event start_time is required")

    stored = event.clone()
    stored.source = source
    stored.calendar_id = calendar_id
    if stored.end_time is None:
        stored.end_time = stored.start_time + timedelta(hours=1)

    event_id = full_event_id(base_id, stored.start_time)
    month = month_key(stored.start_time)
    bucket = store.get_month(calendar_id, month) or MonthBucket(calendar_id=calendar_id, month_key=month)
    bucket.events[event_id] = stored
    bucket.updated_at = utc_now()

    batch = WriteBatch()
    batch.set_month(bucket)
    store.commit(batch)
    logger.info("Stored %s event %s in %s/%s", source, event_id, calendar_id, month)
    return event_id


@dataclass
class TemplateEvent:
    title: str
    calendar_id: str
    day_of_week: int
    start_time: str
    end_time: str
    description: str = ""
    location: str = ""
    activities: list[Any] = field(default_factory=list)
    reminder: dict[str, Any] | None = None
    external_event_id: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TemplateEvent":
        reminder = data.get("reminder")
        return cls(
            title=str(data.get("title", "") or "").strip(),
            calendar_id=str(data.get("calendar_id", "") or "").strip(),
            day_of_week=int(data.get("day_of_week", 0)) % 7,
            start_time=str(data.get("start_time", "") or ""),
            end_time=str(data.get("end_time", "") or ""),
            description=str(data.get("description", "") or ""),
            location=str(data.get("location", "") or ""),
            activities=list(data.get("activities") or []),
            reminder=dict(reminder) if isinstance(reminder, dict) else None,
            external_event_id=str(data.get("external_event_id", "") or "").strip(),
        )


@dataclass
class ScheduleTemplate:
    template_id: str
    name: str = ""
    events: list[TemplateEvent] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ScheduleTemplate":
        return cls(
            template_id=str(data.get("template_id", "") or "").strip(),
            name=str(data.get("name", "") or ""),
            events=[TemplateEvent.from_dict(item) for item in data.get("events", []) or [] if isinstance(item, dict)],
        )


def next_week_start(now: datetime, tz: ZoneInfo) -> datetime:
    """Midnight of the coming Sunday in ``tz``; today when today is Sunday."""
    local_now = now.astimezone(tz)
    days_until_sunday = (6 - local_now.weekday()) % 7
    start = local_now + timedelta(days=days_until_sunday)
    return start.replace(hour=0, minute=0, second=0, microsecond=0)


def convert_template_reminder(reminder: dict[str, Any] | None, event_start: datetime) -> dict[str, Any] | None:
    if not reminder or not reminder.get("time"):
        return None
    hours, minutes = _parse_clock(str(reminder["time"]))
    scheduled_for = serialize_datetime(event_start.replace(hour=hours, minute=minutes, second=0, microsecond=0))
    runtime: dict[str, Any] = {
        "scheduled_for": scheduled_for,
        "is_recurring": bool(reminder.get("is_recurring", False)),
    }
    config = reminder.get("recurring_config")
    if runtime["is_recurring"] and isinstance(config, dict):
        interval = max(1, int(config.get("interval", 1) or 1))
        frequency = str(config.get("frequency", "")).strip().lower()
        recurring: dict[str, Any] = {
            "interval_seconds": interval * FREQUENCY_SECONDS[frequency] if frequency in FREQUENCY_SECONDS else 3600,
            "current_occurrence": 1,
            "next_scheduled_for": scheduled_for,
            "last_sent_at": None,
        }
        if config.get("total_occurrences"):
            recurring["total_occurrences"] = int(config["total_occurrences"])
        if config.get("completed_cancels_recurring") is not None:
            recurring["completed_cancels_recurring"] = bool(config["completed_cancels_recurring"])
        runtime["recurring_config"] = recurring
    return runtime


def apply_schedule_template(
    store: EventStore,
    template: ScheduleTemplate,
    home_timezone: str,
    now: datetime | None = None,
    id_factory: Callable[[], str] | None = None,
) -> dict[str, Any]:
    """Create the template's events in the week starting next Sunday."""
    if not template.events:
        return {"success": False, "message": "No events in template", "results": []}

    tz = ZoneInfo(home_timezone)
    week_start = next_week_start(now or utc_now(), tz)
    new_id = id_factory or (lambda: uuid.uuid4().hex)
    results: list[dict[str, Any]] = []

    for item in template.events:
        try:
            if store.get_calendar(item.calendar_id) is None:
                raise ValueError(f"No calendar found for: {item.calendar_id}")
            day = (week_start + timedelta(days=item.day_of_week)).date()
            start_hours, start_minutes = _parse_clock(item.start_time)
            end_hours, end_minutes = _parse_clock(item.end_time)
            start = datetime(day.year, day.month, day.day, start_hours, start_minutes, tzinfo=tz)
            end = datetime(day.year, day.month, day.day, end_hours, end_minutes, tzinfo=tz)
            if end <= start:
                end += timedelta(days=1)
            event = StoredEvent(
                title=item.title,
                description=item.description,
                location=item.location,
                start_time=start,
                end_time=end,
                activities=list(item.activities),
                reminder=convert_template_reminder(item.reminder, start),
            )
            base_id = item.external_event_id or f"template-{new_id()}"
            event_id = write_manual_event(store, item.calendar_id, base_id, event, source=TEMPLATE_SOURCE_TAG)
            results.append({"success": True, "title": item.title, "event_id": event_id})
        except ValueError as exc:
            logger.warning("Failed to create template event %r: %s", item.title, exc)
            results.append({"success": False, "title": item.title, "error": str(exc)})

    created = sum(1 for result in results if result["success"])
    return {
        "success": True,
        "message": f"Created {created} of {len(template.events)} events",
        "results": results,
    }
