from __future__ import annotations

import logging
import os

import uvicorn

from feedsync.config_manager import ConfigManager


def configure_logging(config_path: str) -> None:
    level = ConfigManager(config_path).load().logging.level
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def main() -> None:
    host = os.getenv("FEEDSYNC_HOST", "0.0.0.0")
    port = int(os.getenv("FEEDSYNC_PORT", "8080"))
    configure_logging(os.getenv("FEEDSYNC_CONFIG_PATH", "config.yaml"))
    uvicorn.run("feedsync.web_admin:create_app", factory=True, host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
