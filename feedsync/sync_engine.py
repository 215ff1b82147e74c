from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable

from feedsync.alerts import AdminAlerter
from feedsync.batch_writer import BatchWriter
from feedsync.config_manager import ConfigManager
from feedsync.errors import SyncAborted, SyncDeadlineExceeded
from feedsync.event_store import EventStore
from feedsync.feed_fetcher import FeedFetcher
from feedsync.feed_parser import parse_feed
from feedsync.models import (
    AppConfig,
    BatchSyncResult,
    StoredEvent,
    SyncRequest,
    SyncResult,
    month_keys_between,
    sync_window,
)
from feedsync.normalizer import bucket_events
from feedsync.notifications import ExpoPushDispatcher
from feedsync.reconciler import ReconcileTotals, reconcile_month
from feedsync.timezones import strategy_for


logger = logging.getLogger(__name__)


class SyncStage(str, Enum):
    STARTED = "started"
    FETCHING = "fetching"
    PARSING = "parsing"
    EXPANDING = "expanding"
    RECONCILING = "reconciling"
    WRITING = "writing"
    SUCCEEDED = "succeeded"
    FAILED_PER_CALENDAR = "failed_per_calendar"
    CRITICAL_FAILURE = "critical_failure"


class Deadline:
    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._expires_at = clock() + max(0.0, float(seconds))

    def remaining(self) -> float:
        return max(0.0, self._expires_at - self._clock())

    def check(self) -> None:
        if self.remaining() <= 0:
            raise SyncDeadlineExceeded("Sync deadline exceeded")


@dataclass
class _Progress:
    stage: SyncStage = SyncStage.STARTED


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class SyncEngine:
    def __init__(
        self,
        config_manager: ConfigManager,
        store: EventStore,
        fetcher: FeedFetcher | None = None,
        alerter: AdminAlerter | None = None,
    ) -> None:
        self.config_manager = config_manager
        self.store = store
        self.writer = BatchWriter(store)
        self._fetcher = fetcher
        self._alerter = alerter

    def _fetcher_for(self, config: AppConfig) -> FeedFetcher:
        return self._fetcher or FeedFetcher(config.feed)

    def _alerter_for(self, config: AppConfig) -> AdminAlerter:
        if self._alerter is not None:
            return self._alerter
        dispatcher = ExpoPushDispatcher(config.alerts, self.store)
        return AdminAlerter(self.store, dispatcher, config.alerts.admin_user_id)

    def _sync_one(
        self,
        request: SyncRequest,
        config: AppConfig,
        fetcher: FeedFetcher,
        deadline: Deadline,
        now: datetime,
        progress: _Progress,
    ) -> SyncResult:
        deadline.check()
        if not request.calendar_id or not request.source.url:
            raise ValueError("Missing required parameters: calendar_id and calendar address")
        strategy = strategy_for(request.source, config.sync.home_timezone)
        window_start, window_end = sync_window(now, request.months_back, request.months_forward)
        logger.info(
            "Syncing calendar %s (%s) from %s to %s",
            request.calendar_id,
            request.source.type,
            window_start.date(),
            window_end.date(),
        )

        progress.stage = SyncStage.FETCHING
        feed_text = fetcher.fetch(request.source.url, timeout=deadline.remaining())

        progress.stage = SyncStage.PARSING
        raw_events = parse_feed(feed_text)

        progress.stage = SyncStage.EXPANDING
        incoming = bucket_events(
            raw_events,
            window_start,
            window_end,
            strategy,
            request.calendar_id,
            config.sync.max_occurrences,
        )
        logger.info("Events grouped into %d months for %s", len(incoming), request.calendar_id)

        progress.stage = SyncStage.RECONCILING
        window_months = set(month_keys_between(window_start, window_end))
        stored_months = {
            month for month in self.store.list_month_keys(request.calendar_id) if month in window_months
        }
        totals = ReconcileTotals()
        merged: dict[str, dict[str, StoredEvent]] = {}
        for month in sorted(set(incoming) | stored_months):
            deadline.check()
            bucket = self.store.get_month(request.calendar_id, month)
            existing = bucket.events if bucket is not None else {}
            outcome = reconcile_month(existing, incoming.get(month, {}))
            if month not in incoming and not outcome.deleted:
                continue
            if outcome.deleted:
                logger.info("Removing %d events from %s/%s", outcome.deleted, request.calendar_id, month)
            totals.add(outcome)
            merged[month] = outcome.events

        progress.stage = SyncStage.WRITING
        deadline.check()
        synced_at = datetime.now(timezone.utc)
        self.writer.write_calendar(request.calendar_id, merged, totals, synced_at, source=request.source)

        progress.stage = SyncStage.SUCCEEDED
        logger.info(
            "Synced %s: %d events across %d months, %d created, %d re-keyed, "
            "%d with preserved activities, %d deleted",
            request.calendar_id,
            totals.event_count,
            totals.months_covered,
            totals.created,
            totals.updated_identity,
            totals.preserved_activities,
            totals.deleted,
        )
        return SyncResult(
            calendar_id=request.calendar_id,
            name=request.name,
            success=True,
            event_count=totals.event_count,
            months_covered=totals.months_covered,
            created_count=totals.created,
            preserved_activities_count=totals.preserved_activities,
            deleted_events_count=totals.deleted,
            updated_event_ids_count=totals.updated_identity,
            synced_at=synced_at,
            stage=progress.stage.value,
        )

    def _sync_isolated(
        self,
        request: SyncRequest,
        config: AppConfig,
        fetcher: FeedFetcher,
        deadline: Deadline,
        now: datetime,
    ) -> SyncResult:
        progress = _Progress()
        try:
            return self._sync_one(request, config, fetcher, deadline, now, progress)
        except Exception as exc:
            failed_stage = progress.stage
            message = f"{type(exc).__name__} while {failed_stage.value}: {exc}"
            logger.exception("Failed to sync calendar %s (%s)", request.calendar_id, request.name)
            if request.calendar_id:
                try:
                    self.writer.write_error(request.calendar_id, message)
                except Exception:
                    logger.exception("Failed to record error status for %s", request.calendar_id)
            return SyncResult(
                calendar_id=request.calendar_id,
                name=request.name,
                success=False,
                error=message,
                stage=SyncStage.FAILED_PER_CALENDAR.value,
            )

    def _sync_batch(
        self,
        requests: list[SyncRequest],
        config: AppConfig,
        now: datetime,
    ) -> BatchSyncResult:
        deadline = Deadline(config.sync.timeout_seconds)
        fetcher = self._fetcher_for(config)
        batch = BatchSyncResult()
        for request in requests:
            batch.results.append(self._sync_isolated(request, config, fetcher, deadline, now))
        logger.info(
            "Batch sync complete: %d success, %d failed",
            batch.success_count,
            batch.error_count,
        )
        return batch

    def raise_critical(self, exc: BaseException, trigger: str, config: AppConfig | None = None) -> None:
        try:
            self._alerter_for(config or AppConfig()).critical(exc, trigger=trigger)
        except Exception:
            logger.exception("Failed to raise critical alert")

    def _abort(
        self,
        exc: Exception,
        trigger: str,
        config: AppConfig | None,
        run_id: int | None,
        started: float,
    ) -> str:
        message = f"{type(exc).__name__}: {exc}"
        logger.exception("Calendar sync (%s) aborted", trigger)
        self.raise_critical(exc, trigger, config)
        if run_id is not None:
            try:
                self.store.finish_sync_run(
                    run_id=run_id,
                    status=SyncStage.CRITICAL_FAILURE.value,
                    message=message,
                    duration_ms=_elapsed_ms(started),
                    calendars_total=0,
                    calendars_failed=0,
                )
            except Exception:
                logger.exception("Failed to record %s sync run %s", trigger, run_id)
        return message

    def sync_calendar(self, request: SyncRequest, now: datetime | None = None) -> SyncResult:
        started = time.monotonic()
        run_id: int | None = None
        config: AppConfig | None = None
        try:
            run_id = self.store.start_sync_run(trigger="request")
            config = self.config_manager.load()
            deadline = Deadline(config.sync.timeout_seconds)
            result = self._sync_isolated(
                request,
                config,
                self._fetcher_for(config),
                deadline,
                now or datetime.now(timezone.utc),
            )
            self.store.finish_sync_run(
                run_id=run_id,
                status="success" if result.success else "error",
                message=result.error or f"synced {result.event_count} events",
                duration_ms=_elapsed_ms(started),
                calendars_total=1,
                calendars_failed=0 if result.success else 1,
            )
        except Exception as exc:
            message = self._abort(exc, "request", config, run_id, started)
            raise SyncAborted(message) from exc
        return result

    def sync_calendars(self, requests: list[SyncRequest], now: datetime | None = None) -> BatchSyncResult:
        started = time.monotonic()
        run_id: int | None = None
        config: AppConfig | None = None
        try:
            run_id = self.store.start_sync_run(trigger="batch")
            config = self.config_manager.load()
            batch = self._sync_batch(requests, config, now or datetime.now(timezone.utc))
            if batch.failures:
                self._alerter_for(config).sync_failures(batch, trigger="batch")
            self._finish_batch_run(run_id, batch, started)
        except Exception as exc:
            message = self._abort(exc, "batch", config, run_id, started)
            raise SyncAborted(message) from exc
        return batch

    def run_scheduled(self, now: datetime | None = None) -> BatchSyncResult | None:
        started = time.monotonic()
        run_id: int | None = None
        config: AppConfig | None = None
        try:
            run_id = self.store.start_sync_run(trigger="scheduled")
            config = self.config_manager.load()
            requests = [
                SyncRequest(
                    calendar_id=calendar.calendar_id,
                    source=calendar.source,
                    name=calendar.name,
                    months_back=config.sync.months_back,
                    months_forward=config.sync.months_forward,
                )
                for calendar in self.store.list_calendars()
                if calendar.source.is_sync_eligible
            ]
            logger.info("Scheduled sync of %d calendars", len(requests))
            batch = self._sync_batch(requests, config, now or datetime.now(timezone.utc))
            if batch.failures:
                self._alerter_for(config).sync_failures(batch, trigger="scheduled")
            self._finish_batch_run(run_id, batch, started)
        except Exception as exc:
            self._abort(exc, "scheduled", config, run_id, started)
            return None
        return batch

    def _finish_batch_run(self, run_id: int, batch: BatchSyncResult, started: float) -> None:
        self.store.finish_sync_run(
            run_id=run_id,
            status="success" if not batch.failures else "partial_failure",
            message=f"{batch.success_count} success, {batch.error_count} failed",
            duration_ms=_elapsed_ms(started),
            calendars_total=batch.total_count,
            calendars_failed=batch.error_count,
        )
