from __future__ import annotations

import logging
from datetime import datetime

from feedsync.event_store import EventStore, WriteBatch
from feedsync.models import (
    SYNC_STATUS_ERROR,
    SYNC_STATUS_SUCCESS,
    CalendarSource,
    MonthBucket,
    StoredEvent,
    utc_now,
)
from feedsync.reconciler import ReconcileTotals


logger = logging.getLogger(__name__)


class BatchWriter:
    def __init__(self, store: EventStore) -> None:
        self.store = store

    def write_calendar(
        self,
        calendar_id: str,
        buckets: dict[str, dict[str, StoredEvent]],
        totals: ReconcileTotals,
        synced_at: datetime,
        source: CalendarSource | None = None,
    ) -> WriteBatch:
        """Replace every touched month bucket and record success in one commit."""
        batch = WriteBatch()
        for month, events in sorted(buckets.items()):
            batch.set_month(
                MonthBucket(
                    calendar_id=calendar_id,
                    month_key=month,
                    events=events,
                    updated_at=synced_at,
                )
            )
        batch.update_status(
            calendar_id,
            {
                "sync_status": SYNC_STATUS_SUCCESS,
                "last_synced_at": synced_at,
                "last_error": "",
                "event_count": totals.event_count,
                "months_covered": totals.months_covered,
                "preserved_activities_count": totals.preserved_activities,
                "deleted_events_count": totals.deleted,
                "updated_event_ids_count": totals.updated_identity,
            },
            synced_at,
            source=source,
        )
        self.store.commit(batch)
        logger.info(
            "Committed %d month buckets for calendar %s (%d events)",
            len(batch.months),
            calendar_id,
            totals.event_count,
        )
        return batch

    def write_error(self, calendar_id: str, message: str, failed_at: datetime | None = None) -> None:
        failed_at = failed_at or utc_now()
        self.store.update_calendar_status(
            calendar_id,
            {
                "sync_status": SYNC_STATUS_ERROR,
                "last_error": message,
                "last_error_at": failed_at,
            },
            failed_at,
        )
