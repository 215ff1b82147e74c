import unittest
from datetime import date, datetime, timedelta

from feedsync.errors import FeedParseError
from feedsync.feed_parser import parse_feed


SAMPLE_FEED = """BEGIN:VCALENDAR
VERSION:2.0
PRODID:-//Example//Team//EN
BEGIN:VEVENT
UID:abc123
SUMMARY:Practice
LOCATION:Field 3
DTSTART:20240305T140000Z
DTEND:20240305T153000Z
RRULE:FREQ=WEEKLY;BYDAY=TU
EXDATE:20240312T140000Z
END:VEVENT
BEGIN:VEVENT
UID:abc123
RECURRENCE-ID:20240319T140000Z
SUMMARY:Practice (moved)
DTSTART:20240319T160000Z
DTEND:20240319T173000Z
END:VEVENT
BEGIN:VEVENT
UID:holiday-1
SUMMARY:Spring Break
DTSTART;VALUE=DATE:20240325
DTEND;VALUE=DATE:20240330
END:VEVENT
BEGIN:VEVENT
SUMMARY:Bake sale
DTSTART:20240310T150000
DURATION:PT2H
END:VEVENT
BEGIN:VEVENT
UID:broken
SUMMARY:No start
END:VEVENT
END:VCALENDAR
"""


class FeedParserTests(unittest.TestCase):
    def test_parses_events_and_skips_overrides_and_startless(self) -> None:
        events = parse_feed(SAMPLE_FEED)
        self.assertEqual([event.summary for event in events], ["Practice", "Spring Break", "Bake sale"])

    def test_recurring_event_fields(self) -> None:
        practice = parse_feed(SAMPLE_FEED)[0]
        self.assertEqual(practice.uid, "abc123")
        self.assertEqual(practice.location, "Field 3")
        self.assertTrue(practice.is_recurring)
        self.assertTrue(practice.rrule.startswith("RRULE:"))
        self.assertIn("FREQ=WEEKLY", practice.rrule)
        self.assertEqual(len(practice.exdates), 1)
        self.assertEqual(practice.exdates[0].replace(tzinfo=None), datetime(2024, 3, 12, 14, 0))
        self.assertFalse(practice.date_only)

    def test_all_day_event(self) -> None:
        holiday = parse_feed(SAMPLE_FEED)[1]
        self.assertTrue(holiday.date_only)
        self.assertEqual(holiday.start, date(2024, 3, 25))
        self.assertEqual(holiday.end, date(2024, 3, 30))
        self.assertFalse(holiday.is_recurring)

    def test_floating_event_with_duration_and_no_uid(self) -> None:
        bake_sale = parse_feed(SAMPLE_FEED)[2]
        self.assertEqual(bake_sale.uid, "")
        self.assertEqual(bake_sale.start, datetime(2024, 3, 10, 15, 0))
        self.assertIsNone(bake_sale.start.tzinfo)
        self.assertIsNone(bake_sale.end)
        self.assertEqual(bake_sale.duration, timedelta(hours=2))

    def test_garbage_raises_parse_error(self) -> None:
        with self.assertRaises(FeedParseError):
            parse_feed("this is not a calendar")


if __name__ == "__main__":
    unittest.main()
