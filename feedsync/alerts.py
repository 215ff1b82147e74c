from __future__ import annotations

import logging
from typing import Any, Protocol

from feedsync.errors import NotificationError
from feedsync.event_store import EventStore
from feedsync.models import BatchSyncResult, serialize_datetime, utc_now
from feedsync.notifications import PushNotification


logger = logging.getLogger(__name__)

SEVERITY_ERROR = "error"
SEVERITY_CRITICAL = "critical"
MAX_LISTED_FAILURES = 5


class PushDispatcher(Protocol):
    def send(self, notification: PushNotification) -> dict[str, Any]: ...


class AdminAlerter:
    def __init__(self, store: EventStore, dispatcher: PushDispatcher, admin_user_id: str) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.admin_user_id = admin_user_id

    def _raise_alert(self, *, severity: str, title: str, body: str, data: dict[str, Any]) -> int:
        message = {
            "severity": severity,
            "title": title,
            "body": body,
            "user_id": self.admin_user_id,
            "data": data,
            "created_at": serialize_datetime(utc_now()),
        }
        message_id = self.store.add_admin_message(message)
        if not self.admin_user_id:
            logger.warning("No admin user configured; alert %r stored without push", title)
            return message_id
        try:
            self.dispatcher.send(
                PushNotification(
                    user_id=self.admin_user_id,
                    title=title,
                    body=body,
                    data={**data, "screen": "Messages", "severity": severity, "message_id": message_id},
                )
            )
        except NotificationError:
            logger.exception("Failed to deliver admin alert %r", title)
        return message_id

    def sync_failures(self, batch: BatchSyncResult, trigger: str = "scheduled") -> int | None:
        failures = batch.failures
        if not failures:
            return None
        lines = [
            f"{failure.name or failure.calendar_id}: {failure.error}"
            for failure in failures[:MAX_LISTED_FAILURES]
        ]
        if len(failures) > MAX_LISTED_FAILURES:
            lines.append(f"...and {len(failures) - MAX_LISTED_FAILURES} more")
        body = f"{len(failures)} of {batch.total_count} calendars failed to sync.\n" + "\n".join(lines)
        logger.error("Calendar sync failures (%s): %s", trigger, body)
        return self._raise_alert(
            severity=SEVERITY_ERROR,
            title="Calendar sync failures",
            body=body,
            data={
                "type": "calendar_sync_failure",
                "trigger": trigger,
                "failed_calendar_ids": [failure.calendar_id for failure in failures],
            },
        )

    def critical(self, exc: BaseException, trigger: str = "scheduled") -> int:
        body = f"Calendar sync aborted: {type(exc).__name__}: {exc}"
        logger.critical("Critical calendar sync failure (%s): %s", trigger, body)
        return self._raise_alert(
            severity=SEVERITY_CRITICAL,
            title="CRITICAL: calendar sync failed",
            body=body,
            data={"type": "calendar_sync_critical", "trigger": trigger},
        )
