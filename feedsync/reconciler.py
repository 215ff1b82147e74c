from __future__ import annotations

import logging
from dataclasses import dataclass, field

from feedsync.models import StoredEvent, base_id_of, start_millis_of


logger = logging.getLogger(__name__)


@dataclass
class MonthReconciliation:
    events: dict[str, StoredEvent]
    created: int = 0
    updated_identity: int = 0
    preserved_activities: int = 0
    replaced_ids: list[str] = field(default_factory=list)
    removed_ids: list[str] = field(default_factory=list)

    @property
    def deleted(self) -> int:
        return len(self.replaced_ids) + len(self.removed_ids)


@dataclass
class ReconcileTotals:
    created: int = 0
    updated_identity: int = 0
    preserved_activities: int = 0
    deleted: int = 0
    event_count: int = 0
    months_covered: int = 0

    def add(self, outcome: MonthReconciliation) -> None:
        self.created += outcome.created
        self.updated_identity += outcome.updated_identity
        self.preserved_activities += outcome.preserved_activities
        self.deleted += outcome.deleted
        self.event_count += len(outcome.events)
        self.months_covered += 1


def _index_by_base_id(existing: dict[str, StoredEvent]) -> dict[str, list[str]]:
    index: dict[str, list[str]] = {}
    for full_id in existing:
        index.setdefault(base_id_of(full_id), []).append(full_id)
    return index


def _closest(candidates: list[str], new_full_id: str) -> str:
    target = start_millis_of(new_full_id)
    if target is None:
        return sorted(candidates)[0]

    def distance(full_id: str) -> tuple[int, str]:
        millis = start_millis_of(full_id)
        return (abs(millis - target) if millis is not None else 0, full_id)

    return min(candidates, key=distance)


def _match_existing(
    existing_index: dict[str, list[str]],
    incoming_ids: list[str],
) -> dict[str, str]:
    """Pair incoming full IDs with existing full IDs sharing the same base ID.

    Exact full-ID matches are claimed first; remaining incoming occurrences take
    the unclaimed existing occurrence of the same series closest in time. Each
    existing record is claimed at most once.
    """
    matches: dict[str, str] = {}
    claimed: set[str] = set()
    for new_full_id in incoming_ids:
        if new_full_id in existing_index.get(base_id_of(new_full_id), []):
            matches[new_full_id] = new_full_id
            claimed.add(new_full_id)
    for new_full_id in sorted(incoming_ids):
        if new_full_id in matches:
            continue
        available = [
            full_id
            for full_id in existing_index.get(base_id_of(new_full_id), [])
            if full_id not in claimed
        ]
        if not available:
            continue
        chosen = _closest(available, new_full_id)
        matches[new_full_id] = chosen
        claimed.add(chosen)
    return matches


def reconcile_month(
    existing: dict[str, StoredEvent],
    incoming: dict[str, StoredEvent],
) -> MonthReconciliation:
    """Merge freshly synced events for one month bucket with what is stored.

    The feed decides what an occurrence is and when it happens; activities and
    reminders attached in the app are carried over from the matched stored
    record, following the occurrence to its new ID when its start time moved.
    The returned event map replaces the bucket in full.
    """
    existing_index = _index_by_base_id(existing)
    matches = _match_existing(existing_index, list(incoming))
    outcome = MonthReconciliation(events={})
    replaced: set[str] = set()

    for new_full_id, new_event in incoming.items():
        old_full_id = matches.get(new_full_id)
        merged = new_event.clone()
        if old_full_id is None:
            outcome.created += 1
        else:
            previous = existing[old_full_id]
            if old_full_id != new_full_id:
                logger.info("Updating event ID from %s to %s", old_full_id, new_full_id)
                replaced.add(old_full_id)
                outcome.updated_identity += 1
            if previous.activities is not None:
                outcome.preserved_activities += 1
                logger.debug(
                    "Preserved %d activities for event %r",
                    len(previous.activities),
                    new_event.title,
                )
            merged = merged.with_app_owned_from(previous)
        outcome.events[new_full_id] = merged

    synced_base_ids = {base_id_of(full_id) for full_id in incoming}
    for full_id, stored in existing.items():
        if full_id in replaced:
            outcome.replaced_ids.append(full_id)
            continue
        if stored.is_feed_sourced and base_id_of(full_id) not in synced_base_ids:
            outcome.removed_ids.append(full_id)
            if stored.activities:
                logger.info(
                    "Deleting %r (%s) with %d attached activities",
                    stored.title,
                    full_id,
                    len(stored.activities),
                )
            else:
                logger.info("Deleting %r (%s)", stored.title, full_id)
            continue
        outcome.events.setdefault(full_id, stored.clone())

    return outcome
