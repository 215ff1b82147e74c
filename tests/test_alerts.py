import unittest
from unittest import mock

import requests

from feedsync.alerts import AdminAlerter
from feedsync.errors import NotificationError
from feedsync.event_store import InMemoryEventStore
from feedsync.models import AlertConfig, BatchSyncResult, SyncResult
from feedsync.notifications import ExpoPushDispatcher, PushNotification


def _batch(failures: int, successes: int = 1) -> BatchSyncResult:
    results = [SyncResult(calendar_id=f"ok-{index}", success=True) for index in range(successes)]
    results += [
        SyncResult(calendar_id=f"cal-{index}", name=f"Calendar {index}", success=False, error="HTTP 500")
        for index in range(failures)
    ]
    return BatchSyncResult(results=results)


class AdminAlerterTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = InMemoryEventStore()
        self.dispatcher = mock.Mock()
        self.alerter = AdminAlerter(self.store, self.dispatcher, "admin-1")

    def test_no_failures_no_alert(self) -> None:
        self.assertIsNone(self.alerter.sync_failures(_batch(0)))
        self.dispatcher.send.assert_not_called()
        self.assertEqual(self.store.list_admin_messages(), [])

    def test_failures_are_stored_and_pushed(self) -> None:
        message_id = self.alerter.sync_failures(_batch(7), trigger="batch")

        message = self.store.list_admin_messages()[0]
        self.assertEqual(message["id"], message_id)
        self.assertEqual(message["severity"], "error")
        self.assertIn("7 of 8 calendars failed", message["body"])
        self.assertIn("Calendar 0: HTTP 500", message["body"])
        self.assertIn("...and 2 more", message["body"])
        self.assertEqual(len(message["data"]["failed_calendar_ids"]), 7)

        notification = self.dispatcher.send.call_args.args[0]
        self.assertEqual(notification.user_id, "admin-1")
        self.assertEqual(notification.data["screen"], "Messages")
        self.assertEqual(notification.data["trigger"], "batch")

    def test_critical_alert_is_distinct(self) -> None:
        self.alerter.critical(RuntimeError("store offline"))
        message = self.store.list_admin_messages()[0]
        self.assertEqual(message["severity"], "critical")
        self.assertTrue(message["title"].startswith("CRITICAL"))
        self.assertIn("RuntimeError: store offline", message["body"])

    def test_delivery_failure_is_logged_not_raised(self) -> None:
        self.dispatcher.send.side_effect = NotificationError("no token")
        with self.assertLogs("feedsync.alerts", level="ERROR"):
            message_id = self.alerter.critical(RuntimeError("down"))
        self.assertEqual(self.store.list_admin_messages()[0]["id"], message_id)

    def test_missing_admin_stores_without_push(self) -> None:
        alerter = AdminAlerter(self.store, self.dispatcher, "")
        alerter.sync_failures(_batch(1))
        self.dispatcher.send.assert_not_called()
        self.assertEqual(len(self.store.list_admin_messages()), 1)


class ExpoPushDispatcherTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = InMemoryEventStore()
        self.store.save_user("admin-1", {"push_token": "ExponentPushToken[abc]"})
        self.dispatcher = ExpoPushDispatcher(AlertConfig(access_token="tok"), self.store)

    @mock.patch("feedsync.notifications.requests.post")
    def test_send_posts_to_push_api(self, post: mock.Mock) -> None:
        post.return_value = mock.Mock(ok=True, status_code=200)
        post.return_value.json.return_value = {"data": {"status": "ok", "id": "ticket-1"}}

        result = self.dispatcher.send(PushNotification(user_id="admin-1", title="", body="hello"))

        self.assertEqual(result, {"status": "ok", "message_id": "ticket-1"})
        args, kwargs = post.call_args
        self.assertEqual(args[0], "https://exp.host/--/api/v2/push/send")
        self.assertEqual(kwargs["json"]["to"], "ExponentPushToken[abc]")
        self.assertEqual(kwargs["json"]["title"], "MyOrganizer")
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer tok")

    @mock.patch("feedsync.notifications.requests.post")
    def test_ticket_error_raises(self, post: mock.Mock) -> None:
        post.return_value = mock.Mock(ok=True, status_code=200)
        post.return_value.json.return_value = {"data": [{"status": "error", "message": "DeviceNotRegistered"}]}
        with self.assertRaises(NotificationError) as ctx:
            self.dispatcher.send(PushNotification(user_id="admin-1", body="x"))
        self.assertIn("DeviceNotRegistered", str(ctx.exception))

    @mock.patch("feedsync.notifications.requests.post")
    def test_transport_error_raises(self, post: mock.Mock) -> None:
        post.side_effect = requests.Timeout("slow")
        with self.assertRaises(NotificationError):
            self.dispatcher.send(PushNotification(user_id="admin-1", body="x"))

    def test_user_without_token_raises(self) -> None:
        self.store.save_user("u2", {})
        with self.assertRaises(NotificationError):
            self.dispatcher.send(PushNotification(user_id="u2"))
        with self.assertRaises(NotificationError):
            self.dispatcher.send(PushNotification(user_id="missing"))


if __name__ == "__main__":
    unittest.main()
