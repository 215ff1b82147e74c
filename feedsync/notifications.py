from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

import requests

from feedsync.errors import NotificationError
from feedsync.event_store import EventStore
from feedsync.models import AlertConfig


logger = logging.getLogger(__name__)

DEFAULT_TITLE = "MyOrganizer"


@dataclass
class PushNotification:
    user_id: str
    title: str = DEFAULT_TITLE
    body: str = ""
    data: dict[str, Any] = field(default_factory=dict)


class ExpoPushDispatcher:
    def __init__(self, config: AlertConfig, store: EventStore) -> None:
        self.config = config
        self.store = store

    def _push_token(self, user_id: str) -> str:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotificationError(f"User not found: {user_id}")
        token = str(user.get("push_token", "") or "").strip()
        if not token:
            raise NotificationError(f"User {user_id} does not have a push token")
        return token

    def send(self, notification: PushNotification) -> dict[str, Any]:
        token = self._push_token(notification.user_id)
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        if self.config.access_token:
            headers["Authorization"] = f"Bearer {self.config.access_token}"
        try:
            response = requests.post(
                self.config.push_url,
                headers=headers,
                json={
                    "to": token,
                    "sound": "default",
                    "title": notification.title or DEFAULT_TITLE,
                    "body": notification.body or "",
                    "data": notification.data or {},
                },
                timeout=self.config.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise NotificationError(f"Push request failed: {type(exc).__name__}: {exc}") from exc
        if not response.ok:
            raise NotificationError(f"Push API HTTP {response.status_code}: {response.text[:300]}")
        payload = response.json()

        tickets = payload.get("data") if isinstance(payload, dict) else None
        if isinstance(tickets, dict):
            tickets = [tickets]
        if tickets:
            ticket = tickets[0] or {}
            if ticket.get("status") == "error":
                raise NotificationError(f"Push error: {ticket.get('message', 'unknown')}")
            logger.info("Push notification sent to %s", notification.user_id)
            return {"status": ticket.get("status", "sent"), "message_id": ticket.get("id", "unknown")}
        if isinstance(payload, dict) and payload.get("errors"):
            raise NotificationError(f"Push API error: {json.dumps(payload['errors'])}")
        logger.info("Push notification sent to %s (unrecognized response format)", notification.user_id)
        return {"status": "sent", "message_id": "unknown"}
