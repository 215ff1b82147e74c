import os
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path
from unittest import mock

from fastapi.testclient import TestClient

from feedsync.errors import FeedFetchError
from feedsync.event_store import InMemoryEventStore
from feedsync.web_admin import create_app


TODAY = datetime.now(timezone.utc)
MONTH_KEY = TODAY.strftime("%Y-%m")
FEED = f"""BEGIN:VCALENDAR
VERSION:2.0
PRODID:-//Example//Team//EN
BEGIN:VEVENT
UID:standup
SUMMARY:Standup
DTSTART:{TODAY:%Y%m%d}T140000Z
DTEND:{TODAY:%Y%m%d}T143000Z
END:VEVENT
END:VCALENDAR
"""


class WebAdminTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.config_path = str(Path(self.temp_dir.name) / "config.yaml")
        self.state_path = str(Path(self.temp_dir.name) / "state.db")
        self.env = mock.patch.dict(
            os.environ,
            {"FEEDSYNC_CONFIG_PATH": self.config_path, "FEEDSYNC_STATE_PATH": self.state_path},
        )
        self.env.start()
        self.store = InMemoryEventStore()
        self.app = create_app(store=self.store)
        self.client = TestClient(self.app)

        fetcher_patch = mock.patch("feedsync.sync_engine.FeedFetcher")
        self.fetcher_cls = fetcher_patch.start()
        self.fetcher_cls.return_value.fetch.return_value = FEED
        self.addCleanup(fetcher_patch.stop)

    def tearDown(self) -> None:
        self.env.stop()
        self.temp_dir.cleanup()

    def test_healthz(self) -> None:
        resp = self.client.get("/healthz")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"status": "ok"})

    def test_config_masks_access_token(self) -> None:
        resp = self.client.put("/api/config", json={"payload": {"alerts": {"access_token": "secret"}}})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["config"]["alerts"]["access_token"], "***")

        resp = self.client.put("/api/config", json={"payload": {"alerts": {"access_token": "***"}}})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(self.app.state.context.config_manager.load().alerts.access_token, "secret")

    def test_create_calendar_validates_source_type(self) -> None:
        resp = self.client.post("/api/calendars", json={"calendar_id": "cal-1", "source_type": "outlook"})
        self.assertEqual(resp.status_code, 400)

        resp = self.client.post(
            "/api/calendars",
            json={"calendar_id": "cal-1", "name": "Team", "source_type": "ical", "url": "webcal://x/team.ics"},
        )
        self.assertEqual(resp.status_code, 200)
        calendars = self.client.get("/api/calendars").json()["calendars"]
        self.assertEqual([calendar["calendar_id"] for calendar in calendars], ["cal-1"])

    def test_single_sync_request(self) -> None:
        resp = self.client.post(
            "/api/sync",
            json={"calendar_id": "cal-1", "calendar_address": "webcal://x/team.ics", "calendar_type": "google"},
        )

        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertFalse(data["batch"])
        self.assertTrue(data["success"], data.get("error"))
        self.assertEqual(data["event_count"], 1)
        self.fetcher_cls.return_value.fetch.assert_called_once()

        month = self.client.get(f"/api/calendars/cal-1/months/{MONTH_KEY}")
        self.assertEqual(month.status_code, 200)
        self.assertEqual(len(month.json()["events"]), 1)
        self.assertEqual(self.client.get("/api/calendars/cal-1/months/1999-01").status_code, 404)

    def test_batch_sync_reports_per_calendar_results(self) -> None:
        def fetch(url, timeout=None):
            if "broken" in url:
                raise FeedFetchError("HTTP 500")
            return FEED

        self.fetcher_cls.return_value.fetch.side_effect = fetch
        resp = self.client.post(
            "/api/sync",
            json={
                "calendars": [
                    {"calendar_id": "cal-1", "calendar_address": "https://x/ok.ics"},
                    {"calendar_id": "cal-2", "calendar_address": "https://broken/feed.ics"},
                ]
            },
        )

        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertTrue(data["batch"])
        self.assertEqual((data["total_count"], data["success_count"], data["error_count"]), (2, 1, 1))
        messages = self.client.get("/api/admin/messages").json()["messages"]
        self.assertEqual(messages[0]["severity"], "error")
        runs = self.client.get("/api/sync/status").json()["runs"]
        self.assertEqual(runs[0]["trigger"], "batch")

    def test_sync_rejects_unknown_source_type(self) -> None:
        resp = self.client.post(
            "/api/sync",
            json={"calendar_id": "cal-1", "calendar_address": "https://x/a.ics", "calendar_type": "exchange"},
        )
        self.assertEqual(resp.status_code, 200)
        self.assertFalse(resp.json()["success"])
        self.fetcher_cls.return_value.fetch.assert_not_called()

    def test_sync_reports_aborted_run_as_failure(self) -> None:
        with mock.patch.object(self.store, "start_sync_run", side_effect=RuntimeError("store down")):
            single = self.client.post(
                "/api/sync",
                json={"calendar_id": "cal-1", "calendar_address": "https://x/a.ics"},
            )
            batch = self.client.post(
                "/api/sync",
                json={"calendars": [{"calendar_id": "cal-1", "calendar_address": "https://x/a.ics"}]},
            )

        for resp in (single, batch):
            self.assertEqual(resp.status_code, 200)
            self.assertFalse(resp.json()["success"])
            self.assertIn("store down", resp.json()["error"])
        critical = [m for m in self.store.list_admin_messages() if m["severity"] == "critical"]
        self.assertEqual(len(critical), 2)

    def test_sync_uses_stored_calendar_source(self) -> None:
        self.client.post(
            "/api/calendars",
            json={"calendar_id": "cal-1", "name": "Team", "source_type": "google", "url": "https://x/team.ics"},
        )

        resp = self.client.post("/api/sync", json={"calendar_id": "cal-1"})

        self.assertTrue(resp.json()["success"], resp.json().get("error"))
        self.assertEqual(resp.json()["name"], "Team")
        self.assertEqual(self.fetcher_cls.return_value.fetch.call_args.args[0], "https://x/team.ics")

    def test_config_rejects_unknown_schedule_timezone(self) -> None:
        resp = self.client.put("/api/config", json={"payload": {"schedule": {"timezone": "Mars/Olympus"}}})
        self.assertEqual(resp.status_code, 400)

    def test_manual_event_endpoint(self) -> None:
        resp = self.client.post(
            "/api/calendars/missing/events",
            json={"title": "Dentist", "start_time": "2024-03-07T14:00:00Z"},
        )
        self.assertEqual(resp.status_code, 404)

        self.client.post("/api/calendars", json={"calendar_id": "cal-1", "source_type": "ical"})
        resp = self.client.post(
            "/api/calendars/cal-1/events",
            json={"base_id": "dentist", "title": "Dentist", "start_time": "2024-03-07T14:00:00Z"},
        )
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["event_id"], "dentist-1709820000000")

    def test_apply_template_endpoint(self) -> None:
        resp = self.client.post("/api/templates/apply", json={"template": {"template_id": "empty", "events": []}})
        self.assertEqual(resp.status_code, 200)
        self.assertFalse(resp.json()["success"])

    def test_push_token_and_scheduled_trigger(self) -> None:
        resp = self.client.put("/api/users/admin-1/push-token", json={"push_token": "ExponentPushToken[x]"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(self.store.get_user("admin-1")["push_token"], "ExponentPushToken[x]")

        with mock.patch.object(self.app.state.context.scheduler, "trigger_manual") as trigger:
            resp = self.client.post("/api/sync/scheduled")
        self.assertEqual(resp.status_code, 200)
        trigger.assert_called_once_with()


if __name__ == "__main__":
    unittest.main()
