"""Per-source timezone normalization.

Feeds disagree about what an unanchored ("floating") time means. Provider
exports already carry correct instants, while generic iCalendar feeds write
wall-clock times that belong to the household's home timezone. Each source
type maps to exactly one strategy; callers never branch on the type.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timezone, tzinfo
from zoneinfo import ZoneInfo

from feedsync.models import SOURCE_TYPE_GOOGLE, SOURCE_TYPE_ICAL, CalendarSource


@dataclass(frozen=True)
class TimezoneStrategy:
    frame: tzinfo

    def localize(self, value: datetime | date) -> datetime:
        """Attach the strategy's frame to floating values; anchored values pass through."""
        if not isinstance(value, datetime):
            value = datetime.combine(value, time.min)
        if value.tzinfo is None:
            return value.replace(tzinfo=self.frame)
        return value

    def normalize_to_utc(self, value: datetime | date) -> datetime:
        return self.localize(value).astimezone(timezone.utc)

    def to_frame(self, instant: datetime) -> datetime:
        """Express an absolute instant as a floating wall-clock time in the frame."""
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=timezone.utc)
        return instant.astimezone(self.frame).replace(tzinfo=None)


class UtcPassthroughStrategy(TimezoneStrategy):
    def __init__(self) -> None:
        super().__init__(frame=timezone.utc)


class HomeTimezoneStrategy(TimezoneStrategy):
    def __init__(self, home_timezone: str) -> None:
        super().__init__(frame=ZoneInfo(home_timezone))


def strategy_for(source: CalendarSource | str, home_timezone: str) -> TimezoneStrategy:
    source_type = source.type if isinstance(source, CalendarSource) else str(source).strip().lower()
    if source_type == SOURCE_TYPE_GOOGLE:
        return UtcPassthroughStrategy()
    if source_type == SOURCE_TYPE_ICAL:
        return HomeTimezoneStrategy(home_timezone)
    raise ValueError(f"Unsupported calendar source type: {source_type!r}")
