import unittest
from datetime import datetime, timedelta, timezone

from feedsync.models import StoredEvent, full_event_id
from feedsync.reconciler import ReconcileTotals, reconcile_month


T1 = datetime(2024, 3, 5, 14, 0, tzinfo=timezone.utc)
T2 = datetime(2024, 3, 5, 16, 0, tzinfo=timezone.utc)


def _feed_event(title: str, start: datetime, **kwargs) -> StoredEvent:
    return StoredEvent(
        title=title,
        start_time=start,
        end_time=start + timedelta(hours=1),
        calendar_id="cal-1",
        **kwargs,
    )


class ReconcilerTests(unittest.TestCase):
    def test_identity_shift_moves_activities_to_new_id(self) -> None:
        old_id = full_event_id("B", T1)
        new_id = full_event_id("B", T2)
        existing = {old_id: _feed_event("Game", T1, activities=["pack snacks"], reminder_minutes=30)}
        incoming = {new_id: _feed_event("Game", T2)}

        outcome = reconcile_month(existing, incoming)

        self.assertEqual(list(outcome.events), [new_id])
        self.assertEqual(outcome.events[new_id].activities, ["pack snacks"])
        self.assertEqual(outcome.events[new_id].reminder_minutes, 30)
        self.assertEqual(outcome.events[new_id].start_time, T2)
        self.assertEqual(outcome.updated_identity, 1)
        self.assertEqual(outcome.preserved_activities, 1)
        self.assertEqual(outcome.replaced_ids, [old_id])
        self.assertEqual(outcome.deleted, 1)
        self.assertEqual(outcome.created, 0)

    def test_field_changes_keep_app_owned_data(self) -> None:
        event_id = full_event_id("W", T1)
        existing = {event_id: _feed_event("Practice", T1, location="Gym A", activities=["w1"])}
        incoming = {event_id: _feed_event("Practice (indoor)", T1, location="Gym B")}

        outcome = reconcile_month(existing, incoming)

        merged = outcome.events[event_id]
        self.assertEqual(merged.title, "Practice (indoor)")
        self.assertEqual(merged.location, "Gym B")
        self.assertEqual(merged.activities, ["w1"])
        self.assertEqual(outcome.updated_identity, 0)
        self.assertEqual(outcome.deleted, 0)

    def test_feed_event_missing_from_feed_is_deleted(self) -> None:
        kept_id = full_event_id("keep", T1)
        gone_id = full_event_id("gone", T2)
        existing = {
            kept_id: _feed_event("Keep", T1),
            gone_id: _feed_event("Gone", T2, activities=["lost"]),
        }
        outcome = reconcile_month(existing, {kept_id: _feed_event("Keep", T1)})

        self.assertEqual(list(outcome.events), [kept_id])
        self.assertEqual(outcome.removed_ids, [gone_id])
        self.assertEqual(outcome.deleted, 1)

    def test_app_created_events_survive(self) -> None:
        manual_id = full_event_id("manual-1", T1)
        template_id = full_event_id("template-1", T2)
        existing = {
            manual_id: _feed_event("Dentist", T1, source="manual"),
            template_id: _feed_event("Chores", T2, source="template"),
        }
        outcome = reconcile_month(existing, {})

        self.assertEqual(sorted(outcome.events), sorted([manual_id, template_id]))
        self.assertEqual(outcome.events[manual_id].source, "manual")
        self.assertEqual(outcome.deleted, 0)

    def test_new_events_are_created(self) -> None:
        new_id = full_event_id("fresh", T1)
        outcome = reconcile_month({}, {new_id: _feed_event("Fresh", T1)})
        self.assertEqual(outcome.created, 1)
        self.assertIsNone(outcome.events[new_id].activities)

    def test_reconcile_is_idempotent_for_recurring_series(self) -> None:
        starts = [T1 + timedelta(days=7 * week) for week in range(4)]
        incoming = {full_event_id("series", start): _feed_event("Weekly", start) for start in starts}
        first = reconcile_month({}, incoming)
        first.events[full_event_id("series", starts[2])].activities = ["note"]

        second = reconcile_month(first.events, incoming)

        self.assertEqual(sorted(second.events), sorted(incoming))
        self.assertEqual((second.created, second.updated_identity, second.deleted), (0, 0, 0))
        self.assertEqual(second.events[full_event_id("series", starts[2])].activities, ["note"])
        self.assertIsNone(second.events[full_event_id("series", starts[1])].activities)

    def test_series_shift_pairs_each_occurrence_with_nearest(self) -> None:
        old_starts = [T1 + timedelta(days=7 * week) for week in range(3)]
        new_starts = [start + timedelta(hours=1) for start in old_starts]
        existing = {
            full_event_id("series", start): _feed_event("Weekly", start, activities=[f"week-{index}"])
            for index, start in enumerate(old_starts)
        }
        incoming = {full_event_id("series", start): _feed_event("Weekly", start) for start in new_starts}

        outcome = reconcile_month(existing, incoming)

        self.assertEqual(sorted(outcome.events), sorted(incoming))
        for index, start in enumerate(new_starts):
            self.assertEqual(outcome.events[full_event_id("series", start)].activities, [f"week-{index}"])
        self.assertEqual(outcome.updated_identity, 3)
        self.assertEqual(outcome.deleted, 3)

    def test_totals_accumulate(self) -> None:
        totals = ReconcileTotals()
        totals.add(reconcile_month({}, {full_event_id("a", T1): _feed_event("A", T1)}))
        totals.add(reconcile_month({full_event_id("b", T1): _feed_event("B", T1)}, {}))
        self.assertEqual(totals.created, 1)
        self.assertEqual(totals.deleted, 1)
        self.assertEqual(totals.event_count, 1)
        self.assertEqual(totals.months_covered, 2)


if __name__ == "__main__":
    unittest.main()
