from __future__ import annotations

import copy
import json
import sqlite3
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from feedsync.models import (
    CalendarRecord,
    CalendarSource,
    MonthBucket,
    SyncStatus,
    serialize_datetime,
    utc_now,
)


@dataclass
class CalendarStatusUpdate:
    calendar_id: str
    sync_patch: dict[str, Any]
    updated_at: datetime
    source: CalendarSource | None = None


@dataclass
class WriteBatch:
    """Writes that must land together or not at all."""

    months: list[MonthBucket] = field(default_factory=list)
    status_updates: list[CalendarStatusUpdate] = field(default_factory=list)

    def set_month(self, bucket: MonthBucket) -> None:
        self.months.append(bucket)

    def update_status(
        self,
        calendar_id: str,
        sync_patch: dict[str, Any],
        updated_at: datetime,
        source: CalendarSource | None = None,
    ) -> None:
        self.status_updates.append(
            CalendarStatusUpdate(
                calendar_id=calendar_id,
                sync_patch=dict(sync_patch),
                updated_at=updated_at,
                source=source,
            )
        )

    def __len__(self) -> int:
        return len(self.months) + len(self.status_updates)


def _apply_status_patch(
    current: dict[str, Any] | None,
    update: CalendarStatusUpdate,
) -> dict[str, Any]:
    if current is None:
        record = CalendarRecord(
            calendar_id=update.calendar_id,
            source=update.source or CalendarSource(),
        )
        current = record.to_dict()
    payload = copy.deepcopy(current)
    sync = SyncStatus.from_dict(payload.get("sync")).to_dict()
    sync.update(update.sync_patch)
    payload["sync"] = SyncStatus.from_dict(sync).to_dict()
    payload["updated_at"] = serialize_datetime(update.updated_at)
    return payload


class EventStore(ABC):
    """Storage port for calendars, month buckets and engine bookkeeping."""

    @abstractmethod
    def get_calendar(self, calendar_id: str) -> CalendarRecord | None: ...

    @abstractmethod
    def list_calendars(self) -> list[CalendarRecord]: ...

    @abstractmethod
    def save_calendar(self, calendar: CalendarRecord) -> None: ...

    @abstractmethod
    def get_month(self, calendar_id: str, month_key: str) -> MonthBucket | None: ...

    @abstractmethod
    def list_month_keys(self, calendar_id: str) -> list[str]: ...

    @abstractmethod
    def commit(self, batch: WriteBatch) -> None: ...

    def update_calendar_status(
        self,
        calendar_id: str,
        sync_patch: dict[str, Any],
        updated_at: datetime | None = None,
    ) -> None:
        batch = WriteBatch()
        batch.update_status(calendar_id, sync_patch, updated_at or utc_now())
        self.commit(batch)

    @abstractmethod
    def get_user(self, user_id: str) -> dict[str, Any] | None: ...

    @abstractmethod
    def save_user(self, user_id: str, payload: dict[str, Any]) -> None: ...

    @abstractmethod
    def add_admin_message(self, message: dict[str, Any]) -> int: ...

    @abstractmethod
    def list_admin_messages(self, limit: int = 50) -> list[dict[str, Any]]: ...

    @abstractmethod
    def start_sync_run(self, *, trigger: str) -> int: ...

    @abstractmethod
    def finish_sync_run(
        self,
        *,
        run_id: int,
        status: str,
        message: str,
        duration_ms: int,
        calendars_total: int,
        calendars_failed: int,
    ) -> None: ...

    @abstractmethod
    def recent_sync_runs(self, limit: int = 20) -> list[dict[str, Any]]: ...


class InMemoryEventStore(EventStore):
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._calendars: dict[str, dict[str, Any]] = {}
        self._months: dict[tuple[str, str], dict[str, Any]] = {}
        self._users: dict[str, dict[str, Any]] = {}
        self._messages: list[dict[str, Any]] = []
        self._runs: list[dict[str, Any]] = []
        self.commit_count = 0

    def get_calendar(self, calendar_id: str) -> CalendarRecord | None:
        with self._lock:
            payload = self._calendars.get(calendar_id)
            return CalendarRecord.from_dict(copy.deepcopy(payload)) if payload else None

    def list_calendars(self) -> list[CalendarRecord]:
        with self._lock:
            return [
                CalendarRecord.from_dict(copy.deepcopy(payload))
                for _, payload in sorted(self._calendars.items())
            ]

    def save_calendar(self, calendar: CalendarRecord) -> None:
        with self._lock:
            self._calendars[calendar.calendar_id] = calendar.to_dict()

    def get_month(self, calendar_id: str, month_key: str) -> MonthBucket | None:
        with self._lock:
            payload = self._months.get((calendar_id, month_key))
            if payload is None:
                return None
            return MonthBucket.from_dict(calendar_id, month_key, copy.deepcopy(payload))

    def list_month_keys(self, calendar_id: str) -> list[str]:
        with self._lock:
            return sorted(month for cid, month in self._months if cid == calendar_id)

    def commit(self, batch: WriteBatch) -> None:
        with self._lock:
            calendars = copy.deepcopy(self._calendars)
            months = dict(self._months)
            for bucket in batch.months:
                months[(bucket.calendar_id, bucket.month_key)] = bucket.to_dict()
            for update in batch.status_updates:
                calendars[update.calendar_id] = _apply_status_patch(calendars.get(update.calendar_id), update)
            self._calendars = calendars
            self._months = months
            self.commit_count += 1

    def get_user(self, user_id: str) -> dict[str, Any] | None:
        with self._lock:
            payload = self._users.get(user_id)
            return copy.deepcopy(payload) if payload is not None else None

    def save_user(self, user_id: str, payload: dict[str, Any]) -> None:
        with self._lock:
            self._users[user_id] = copy.deepcopy(payload)

    def add_admin_message(self, message: dict[str, Any]) -> int:
        with self._lock:
            message_id = len(self._messages) + 1
            item = copy.deepcopy(message)
            item["id"] = message_id
            item.setdefault("created_at", serialize_datetime(utc_now()))
            self._messages.append(item)
            return message_id

    def list_admin_messages(self, limit: int = 50) -> list[dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(list(reversed(self._messages))[: max(1, limit)])

    def start_sync_run(self, *, trigger: str) -> int:
        with self._lock:
            run_id = len(self._runs) + 1
            self._runs.append(
                {
                    "id": run_id,
                    "run_at": serialize_datetime(utc_now()),
                    "trigger": trigger,
                    "status": "running",
                    "message": "running",
                    "duration_ms": 0,
                    "calendars_total": 0,
                    "calendars_failed": 0,
                }
            )
            return run_id

    def finish_sync_run(
        self,
        *,
        run_id: int,
        status: str,
        message: str,
        duration_ms: int,
        calendars_total: int,
        calendars_failed: int,
    ) -> None:
        with self._lock:
            for run in self._runs:
                if run["id"] == run_id:
                    run.update(
                        status=status,
                        message=message,
                        duration_ms=int(duration_ms),
                        calendars_total=int(calendars_total),
                        calendars_failed=int(calendars_failed),
                    )

    def recent_sync_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(list(reversed(self._runs))[: max(1, limit)])


class SqliteEventStore(EventStore):
    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS calendars (
            calendar_id TEXT PRIMARY KEY,
            payload_json TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS month_buckets (
            calendar_id TEXT NOT NULL,
            month_key TEXT NOT NULL,
            payload_json TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (calendar_id, month_key)
        );

        CREATE TABLE IF NOT EXISTS users (
            user_id TEXT PRIMARY KEY,
            payload_json TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS admin_messages (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            created_at TEXT NOT NULL,
            payload_json TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_at TEXT NOT NULL,
            trigger TEXT NOT NULL,
            status TEXT NOT NULL,
            message TEXT,
            duration_ms INTEGER NOT NULL,
            calendars_total INTEGER NOT NULL,
            calendars_failed INTEGER NOT NULL
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    def get_calendar(self, calendar_id: str) -> CalendarRecord | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT payload_json FROM calendars WHERE calendar_id = ?",
                    (calendar_id,),
                ).fetchone()
        if row is None:
            return None
        return CalendarRecord.from_dict(json.loads(row["payload_json"]))

    def list_calendars(self) -> list[CalendarRecord]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT payload_json FROM calendars ORDER BY calendar_id"
                ).fetchall()
        return [CalendarRecord.from_dict(json.loads(row["payload_json"])) for row in rows]

    def save_calendar(self, calendar: CalendarRecord) -> None:
        with self._lock:
            with self._connect() as conn:
                self._upsert_calendar(conn, calendar.calendar_id, calendar.to_dict())
                conn.commit()

    @staticmethod
    def _upsert_calendar(conn: sqlite3.Connection, calendar_id: str, payload: dict[str, Any]) -> None:
        conn.execute(
            """
            INSERT INTO calendars(calendar_id, payload_json, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(calendar_id) DO UPDATE SET
                payload_json = excluded.payload_json,
                updated_at = excluded.updated_at
            """,
            (
                calendar_id,
                json.dumps(payload, ensure_ascii=False),
                payload.get("updated_at") or serialize_datetime(utc_now()),
            ),
        )

    def get_month(self, calendar_id: str, month_key: str) -> MonthBucket | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT payload_json
                    FROM month_buckets
                    WHERE calendar_id = ? AND month_key = ?
                    """,
                    (calendar_id, month_key),
                ).fetchone()
        if row is None:
            return None
        return MonthBucket.from_dict(calendar_id, month_key, json.loads(row["payload_json"]))

    def list_month_keys(self, calendar_id: str) -> list[str]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT month_key FROM month_buckets WHERE calendar_id = ? ORDER BY month_key",
                    (calendar_id,),
                ).fetchall()
        return [str(row["month_key"]) for row in rows]

    def commit(self, batch: WriteBatch) -> None:
        with self._lock:
            conn = self._connect()
            try:
                with conn:
                    for bucket in batch.months:
                        payload = bucket.to_dict()
                        conn.execute(
                            """
                            INSERT INTO month_buckets(calendar_id, month_key, payload_json, updated_at)
                            VALUES (?, ?, ?, ?)
                            ON CONFLICT(calendar_id, month_key) DO UPDATE SET
                                payload_json = excluded.payload_json,
                                updated_at = excluded.updated_at
                            """,
                            (
                                bucket.calendar_id,
                                bucket.month_key,
                                json.dumps(payload, ensure_ascii=False),
                                payload.get("updated_at") or serialize_datetime(utc_now()),
                            ),
                        )
                    for update in batch.status_updates:
                        row = conn.execute(
                            "SELECT payload_json FROM calendars WHERE calendar_id = ?",
                            (update.calendar_id,),
                        ).fetchone()
                        current = json.loads(row["payload_json"]) if row is not None else None
                        self._upsert_calendar(conn, update.calendar_id, _apply_status_patch(current, update))
            finally:
                conn.close()

    def get_user(self, user_id: str) -> dict[str, Any] | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT payload_json FROM users WHERE user_id = ?",
                    (user_id,),
                ).fetchone()
        return json.loads(row["payload_json"]) if row is not None else None

    def save_user(self, user_id: str, payload: dict[str, Any]) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO users(user_id, payload_json)
                    VALUES (?, ?)
                    ON CONFLICT(user_id) DO UPDATE SET payload_json = excluded.payload_json
                    """,
                    (user_id, json.dumps(payload, ensure_ascii=False)),
                )
                conn.commit()

    def add_admin_message(self, message: dict[str, Any]) -> int:
        created_at = str(message.get("created_at") or serialize_datetime(utc_now()))
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    "INSERT INTO admin_messages(created_at, payload_json) VALUES (?, ?)",
                    (created_at, json.dumps(message, ensure_ascii=False)),
                )
                conn.commit()
                return int(cursor.lastrowid)

    def list_admin_messages(self, limit: int = 50) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT id, created_at, payload_json
                    FROM admin_messages
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (max(1, limit),),
                ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = json.loads(row["payload_json"] or "{}")
            item["id"] = int(row["id"])
            item.setdefault("created_at", row["created_at"])
            output.append(item)
        return output

    def start_sync_run(self, *, trigger: str) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO sync_runs(run_at, trigger, status, message, duration_ms, calendars_total, calendars_failed)
                    VALUES (?, ?, 'running', 'running', 0, 0, 0)
                    """,
                    (serialize_datetime(utc_now()), trigger),
                )
                conn.commit()
                return int(cursor.lastrowid)

    def finish_sync_run(
        self,
        *,
        run_id: int,
        status: str,
        message: str,
        duration_ms: int,
        calendars_total: int,
        calendars_failed: int,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    UPDATE sync_runs
                    SET status = ?, message = ?, duration_ms = ?, calendars_total = ?, calendars_failed = ?
                    WHERE id = ?
                    """,
                    (
                        str(status),
                        str(message),
                        int(duration_ms),
                        int(calendars_total),
                        int(calendars_failed),
                        int(run_id),
                    ),
                )
                conn.commit()

    def recent_sync_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT id, run_at, trigger, status, message, duration_ms, calendars_total, calendars_failed
                    FROM sync_runs
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (max(1, limit),),
                ).fetchall()
        return [dict(row) for row in rows]
