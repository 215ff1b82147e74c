from __future__ import annotations

import logging
import re
from datetime import datetime, time, timezone

from dateutil.rrule import rrulestr

from feedsync.errors import RecurrenceError
from feedsync.models import RawEvent, date_to_datetime
from feedsync.timezones import TimezoneStrategy


logger = logging.getLogger(__name__)

UNTIL_PATTERN = re.compile(r"UNTIL=(?P<date>\d{8})(?:T(?P<time>\d{6})(?P<utc>Z)?)?", re.IGNORECASE)
_UNTIL_FORMAT = "%Y%m%dT%H%M%S"


def _align_until(rule_text: str, anchor: datetime, strategy: TimezoneStrategy) -> str:
    # dateutil rejects rules whose UNTIL and DTSTART disagree on carrying a zone.
    def replace(match: re.Match[str]) -> str:
        clock = match.group("time")
        is_utc = bool(match.group("utc"))
        if anchor.tzinfo is None:
            if not is_utc:
                return match.group(0)
            until_utc = datetime.strptime(match.group("date") + clock, "%Y%m%d%H%M%S")
            floating = strategy.to_frame(until_utc.replace(tzinfo=timezone.utc))
            return f"UNTIL={floating.strftime(_UNTIL_FORMAT)}"
        if is_utc:
            return match.group(0)
        day = datetime.strptime(match.group("date"), "%Y%m%d")
        if clock:
            until = day.replace(hour=int(clock[0:2]), minute=int(clock[2:4]), second=int(clock[4:6]))
        else:
            until = datetime.combine(day.date(), time(23, 59, 59))
        anchored = until.replace(tzinfo=anchor.tzinfo).astimezone(timezone.utc)
        return f"UNTIL={anchored.strftime(_UNTIL_FORMAT)}Z"

    return UNTIL_PATTERN.sub(replace, rule_text)


def _in_window(value: datetime, window_start: datetime, window_end: datetime) -> bool:
    return window_start <= value <= window_end


def expand_occurrences(
    raw: RawEvent,
    window_start: datetime,
    window_end: datetime,
    strategy: TimezoneStrategy,
    max_occurrences: int = 1000,
) -> list[datetime]:
    """Return the UTC start instants of ``raw`` that fall inside the inclusive window.

    Recurring events are evaluated in the frame their DTSTART was written in, so a
    weekly 09:00 meeting stays at 09:00 local time across DST changes. EXDATE
    entries are removed. Non-recurring events yield at most their own start.

    Raises:
        RecurrenceError: the event has no start or its rule cannot be evaluated.
    """
    if raw.start is None:
        raise RecurrenceError(f"Event {raw.uid or raw.summary!r} has no start time.")

    if not raw.is_recurring:
        start_utc = strategy.normalize_to_utc(raw.start)
        return [start_utc] if _in_window(start_utc, window_start, window_end) else []

    anchor = date_to_datetime(raw.start)
    if anchor.tzinfo is None:
        lower = strategy.to_frame(window_start)
        upper = strategy.to_frame(window_end)
    else:
        lower = window_start
        upper = window_end

    candidates: list[datetime] = []
    try:
        rule_text = _align_until(raw.rrule, anchor, strategy)
        ruleset = rrulestr(rule_text, dtstart=anchor, forceset=True)
        for moment in ruleset.xafter(lower, count=max_occurrences, inc=True):
            if moment > upper:
                break
            candidates.append(moment)
    except (ValueError, TypeError, KeyError, OverflowError) as exc:
        raise RecurrenceError(
            f"Invalid recurrence rule for {raw.uid or raw.summary!r}: {raw.rrule!r} ({exc})"
        ) from exc

    if len(candidates) >= max_occurrences:
        logger.warning(
            "Recurrence expansion for %r truncated at %d occurrences",
            raw.uid or raw.summary,
            max_occurrences,
        )

    excluded = {strategy.normalize_to_utc(value) for value in raw.exdates}
    occurrences = {strategy.normalize_to_utc(moment) for moment in candidates}
    return sorted(
        value for value in occurrences - excluded if _in_window(value, window_start, window_end)
    )
