from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from feedsync.config_manager import ConfigManager
from feedsync.models import ScheduleConfig
from feedsync.sync_engine import SyncEngine


logger = logging.getLogger(__name__)

MAX_SLEEP_SECONDS = 300


def next_run_at(now: datetime, schedule: ScheduleConfig) -> datetime:
    tz = ZoneInfo(schedule.timezone)
    local_now = now.astimezone(tz)
    for day_offset in range(2):
        day = (local_now + timedelta(days=day_offset)).date()
        for slot in schedule.times:
            hours, minutes = (int(part) for part in slot.split(":"))
            candidate = datetime(day.year, day.month, day.day, hours, minutes, tzinfo=tz)
            if candidate > local_now:
                return candidate
    raise ValueError("Schedule has no run times")


class SyncScheduler:
    def __init__(self, sync_engine: SyncEngine, config_manager: ConfigManager) -> None:
        self.sync_engine = sync_engine
        self.config_manager = config_manager
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._manual_trigger_event = threading.Event()
        self.next_run: Optional[datetime] = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="feedsync-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        self._manual_trigger_event.set()
        if self._thread:
            self._thread.join(timeout=5)

    def trigger_manual(self) -> None:
        self._manual_trigger_event.set()

    def _loop(self) -> None:
        last_error = ""
        while not self._stop_event.is_set():
            try:
                self._tick()
            except Exception as exc:
                logger.exception("Scheduler iteration failed, retrying in %ss", MAX_SLEEP_SECONDS)
                self.next_run = None
                # One alert per distinct failure, not one per retry.
                error = f"{type(exc).__name__}: {exc}"
                if error != last_error:
                    self.sync_engine.raise_critical(exc, trigger="scheduler")
                last_error = error
                self._stop_event.wait(MAX_SLEEP_SECONDS)
            else:
                last_error = ""

    def _tick(self) -> None:
        schedule = self.config_manager.load().schedule
        now = datetime.now(timezone.utc)
        if schedule.enabled:
            if self.next_run is None:
                self.next_run = next_run_at(now, schedule)
                logger.info("Next scheduled calendar sync at %s", self.next_run.isoformat())
            wait_seconds = (self.next_run - now).total_seconds()
        else:
            self.next_run = None
            wait_seconds = MAX_SLEEP_SECONDS
        manual = self._manual_trigger_event.wait(timeout=max(0.0, min(wait_seconds, MAX_SLEEP_SECONDS)))
        self._manual_trigger_event.clear()
        if self._stop_event.is_set():
            return
        due = self.next_run is not None and datetime.now(timezone.utc) >= self.next_run
        if manual or due:
            self.sync_engine.run_scheduled()
        if due:
            self.next_run = None
