from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable

from feedsync.errors import EventNormalizationError, RecurrenceError
from feedsync.models import FEED_SOURCE_TAG, Occurrence, RawEvent, StoredEvent, full_event_id, month_key
from feedsync.recurrence import expand_occurrences
from feedsync.timezones import TimezoneStrategy


logger = logging.getLogger(__name__)

UNTITLED_EVENT = "Untitled Event"


@dataclass
class NormalizedEvent:
    base_id: str
    full_id: str
    month_key: str
    event: StoredEvent


def event_base_id(raw: RawEvent) -> str:
    if raw.uid:
        return raw.uid
    # Without a UID the identity follows the title, so a renamed event becomes a new one.
    return f"event-{raw.summary}"


def event_duration(raw: RawEvent, strategy: TimezoneStrategy) -> timedelta:
    if raw.start is not None and raw.end is not None:
        duration = strategy.normalize_to_utc(raw.end) - strategy.normalize_to_utc(raw.start)
        if duration >= timedelta(0):
            return duration
        logger.warning("Event %r ends before it starts; using default duration", raw.uid or raw.summary)
    if raw.duration is not None and raw.duration >= timedelta(0):
        return raw.duration
    if raw.date_only:
        return timedelta(days=1)
    return timedelta(hours=1)


def normalize_occurrence(
    occurrence: Occurrence,
    strategy: TimezoneStrategy,
    calendar_id: str,
) -> NormalizedEvent:
    raw, start_utc = occurrence.raw, occurrence.start
    if start_utc.tzinfo is None:
        raise EventNormalizationError(f"Occurrence start for {raw.uid or raw.summary!r} is not anchored.")
    base_id = event_base_id(raw)
    end_utc = start_utc + event_duration(raw, strategy)
    event = StoredEvent(
        title=raw.summary or UNTITLED_EVENT,
        description=raw.description,
        location=raw.location,
        start_time=start_utc,
        end_time=end_utc,
        is_all_day=raw.date_only,
        source=FEED_SOURCE_TAG,
        calendar_id=calendar_id,
        is_recurring=raw.is_recurring,
        recurring_event_id=raw.uid or base_id,
    )
    return NormalizedEvent(
        base_id=base_id,
        full_id=full_event_id(base_id, start_utc),
        month_key=month_key(start_utc),
        event=event,
    )


def bucket_events(
    raw_events: Iterable[RawEvent],
    window_start: datetime,
    window_end: datetime,
    strategy: TimezoneStrategy,
    calendar_id: str,
    max_occurrences: int = 1000,
) -> dict[str, dict[str, StoredEvent]]:
    """Expand, normalize and group feed events into ``{month_key: {full_id: event}}``."""
    buckets: dict[str, dict[str, StoredEvent]] = {}
    for raw in raw_events:
        try:
            starts = expand_occurrences(raw, window_start, window_end, strategy, max_occurrences)
            normalized = [
                normalize_occurrence(Occurrence(raw=raw, start=start), strategy, calendar_id) for start in starts
            ]
        except (RecurrenceError, EventNormalizationError, ValueError, TypeError, OverflowError) as exc:
            logger.warning("Skipping event %r (%s): %s", raw.summary, raw.uid or "no uid", exc)
            continue
        if raw.is_recurring:
            logger.debug("Expanded recurring event %r to %d occurrences", raw.summary, len(normalized))
        for item in normalized:
            buckets.setdefault(item.month_key, {})[item.full_id] = item.event
    return buckets
