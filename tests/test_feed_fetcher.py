import unittest
from unittest import mock

import requests

from feedsync.errors import FeedFetchError
from feedsync.feed_fetcher import FeedFetcher, normalize_feed_url
from feedsync.models import FeedConfig


class NormalizeFeedUrlTests(unittest.TestCase):
    def test_webcal_is_rewritten_to_https(self) -> None:
        self.assertEqual(
            normalize_feed_url("webcal://calendar.example.com/team.ics"),
            "https://calendar.example.com/team.ics",
        )
        self.assertEqual(normalize_feed_url("WEBCAL://x.example.com/a.ics"), "https://x.example.com/a.ics")

    def test_other_schemes_pass_through(self) -> None:
        self.assertEqual(normalize_feed_url(" https://x.example.com/a.ics "), "https://x.example.com/a.ics")
        self.assertEqual(normalize_feed_url("http://x.example.com/a.ics"), "http://x.example.com/a.ics")


class FeedFetcherTests(unittest.TestCase):
    def setUp(self) -> None:
        self.session = mock.Mock()
        self.fetcher = FeedFetcher(FeedConfig(timeout_seconds=30, user_agent="test-agent"), session=self.session)

    def test_fetch_returns_body_text(self) -> None:
        response = mock.Mock(ok=True, status_code=200, encoding="utf-8", text="BEGIN:VCALENDAR")
        self.session.get.return_value = response

        text = self.fetcher.fetch("webcal://calendar.example.com/team.ics", timeout=12.5)

        self.assertEqual(text, "BEGIN:VCALENDAR")
        args, kwargs = self.session.get.call_args
        self.assertEqual(args[0], "https://calendar.example.com/team.ics")
        self.assertEqual(kwargs["timeout"], 12.5)
        self.assertEqual(kwargs["headers"]["User-Agent"], "test-agent")

    def test_timeout_never_exceeds_configured_limit(self) -> None:
        self.session.get.return_value = mock.Mock(ok=True, status_code=200, encoding="utf-8", text="")
        self.fetcher.fetch("https://x.example.com/a.ics", timeout=500)
        self.assertEqual(self.session.get.call_args.kwargs["timeout"], 30.0)

    def test_http_error_raises(self) -> None:
        self.session.get.return_value = mock.Mock(ok=False, status_code=404, encoding="utf-8", text="")
        with self.assertRaises(FeedFetchError) as ctx:
            self.fetcher.fetch("https://x.example.com/missing.ics")
        self.assertIn("HTTP 404", str(ctx.exception))

    def test_network_error_raises(self) -> None:
        self.session.get.side_effect = requests.ConnectionError("connection refused")
        with self.assertRaises(FeedFetchError) as ctx:
            self.fetcher.fetch("https://x.example.com/a.ics")
        self.assertIn("ConnectionError", str(ctx.exception))

    def test_empty_url_raises(self) -> None:
        with self.assertRaises(FeedFetchError):
            self.fetcher.fetch("   ")
        self.session.get.assert_not_called()


if __name__ == "__main__":
    unittest.main()
