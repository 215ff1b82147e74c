from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import Any

from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent

from feedsync.errors import FeedParseError
from feedsync.models import RawEvent


logger = logging.getLogger(__name__)


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _text(vevent: ICEvent, name: str) -> str:
    value = vevent.get(name)
    if value is None:
        return ""
    return str(value).strip()


def _decoded_moment(vevent: ICEvent, name: str) -> datetime | date | None:
    if vevent.get(name) is None:
        return None
    value = vevent.decoded(name)
    if isinstance(value, (datetime, date)):
        return value
    return None


def _rrule_text(vevent: ICEvent) -> str:
    lines: list[str] = []
    for rule in _as_list(vevent.get("RRULE")):
        body = rule.to_ical().decode("utf-8").strip()
        if body:
            lines.append(f"RRULE:{body}")
    return "\n".join(lines)


def _exdates(vevent: ICEvent) -> list[datetime | date]:
    values: list[datetime | date] = []
    for prop in _as_list(vevent.get("EXDATE")):
        for item in getattr(prop, "dts", []) or []:
            moment = getattr(item, "dt", None)
            if isinstance(moment, (datetime, date)):
                values.append(moment)
    return values


def parse_vevent(vevent: ICEvent) -> RawEvent | None:
    start = _decoded_moment(vevent, "DTSTART")
    if start is None:
        return None
    end = _decoded_moment(vevent, "DTEND")
    duration: timedelta | None = None
    if end is None and vevent.get("DURATION") is not None:
        decoded = vevent.decoded("DURATION")
        if isinstance(decoded, timedelta):
            duration = decoded
    return RawEvent(
        uid=_text(vevent, "UID"),
        summary=_text(vevent, "SUMMARY"),
        start=start,
        end=end,
        duration=duration,
        location=_text(vevent, "LOCATION"),
        description=_text(vevent, "DESCRIPTION"),
        rrule=_rrule_text(vevent),
        exdates=_exdates(vevent),
        date_only=isinstance(start, date) and not isinstance(start, datetime),
    )


def parse_feed(text: str | bytes) -> list[RawEvent]:
    try:
        calendar_obj = ICalendar.from_ical(text)
    except Exception as exc:
        raise FeedParseError(f"Calendar feed could not be parsed: {type(exc).__name__}: {exc}") from exc

    events: list[RawEvent] = []
    for component in calendar_obj.walk("VEVENT"):
        if component.get("RECURRENCE-ID") is not None:
            logger.debug("Skipping recurrence override for %s", _text(component, "UID"))
            continue
        try:
            event = parse_vevent(component)
        except Exception as exc:
            logger.warning(
                "Skipping unparseable event %r (%s): %s",
                _text(component, "SUMMARY"),
                _text(component, "UID"),
                exc,
            )
            continue
        if event is None:
            logger.warning("Skipping event without DTSTART: %r", _text(component, "SUMMARY"))
            continue
        events.append(event)
    logger.info("Parsed %d events from calendar feed", len(events))
    return events
