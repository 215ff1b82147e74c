from __future__ import annotations

import logging
import re

import requests

from feedsync.errors import FeedFetchError
from feedsync.models import FeedConfig


logger = logging.getLogger(__name__)

WEBCAL_PATTERN = re.compile(r"^webcal://", re.IGNORECASE)


def normalize_feed_url(url: str) -> str:
    return WEBCAL_PATTERN.sub("https://", str(url or "").strip())


class FeedFetcher:
    def __init__(self, config: FeedConfig, session: requests.Session | None = None) -> None:
        self.config = config
        self._session = session or requests.Session()

    def fetch(self, url: str, timeout: float | None = None) -> str:
        fetch_url = normalize_feed_url(url)
        if not fetch_url:
            raise FeedFetchError("Calendar feed URL is empty.")
        effective_timeout = float(self.config.timeout_seconds)
        if timeout is not None:
            effective_timeout = max(1.0, min(effective_timeout, timeout))
        logger.info("Fetching calendar feed from %s", fetch_url)
        try:
            response = self._session.get(
                fetch_url,
                headers={
                    "Accept": "text/calendar, text/plain;q=0.9, */*;q=0.5",
                    "User-Agent": self.config.user_agent,
                },
                timeout=effective_timeout,
            )
        except requests.RequestException as exc:
            raise FeedFetchError(f"Failed to fetch {fetch_url}: {type(exc).__name__}: {exc}") from exc
        if not response.ok:
            raise FeedFetchError(f"Failed to fetch {fetch_url}: HTTP {response.status_code}")
        if not response.encoding:
            response.encoding = "utf-8"
        text = response.text
        logger.debug("Fetched %d characters from %s", len(text), fetch_url)
        return text
