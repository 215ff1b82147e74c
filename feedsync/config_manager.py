from __future__ import annotations

import copy
import errno
import logging
import os
import threading
from pathlib import Path
from typing import Any, Mapping

import yaml

from feedsync.models import AppConfig, default_app_config


logger = logging.getLogger(__name__)

SECRET_PATHS = (("alerts", "access_token"),)
MASK = "***"

# Environment values win over the file and are never written back to it.
ENV_OVERRIDES = {
    "FEEDSYNC_PUSH_ACCESS_TOKEN": ("alerts", "access_token"),
    "FEEDSYNC_ADMIN_USER_ID": ("alerts", "admin_user_id"),
    "FEEDSYNC_HOME_TIMEZONE": ("sync", "home_timezone"),
    "FEEDSYNC_LOG_LEVEL": ("logging", "level"),
}


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for name, (section, key) in ENV_OVERRIDES.items():
        value = environ.get(name, "").strip()
        if value:
            overrides.setdefault(section, {})[key] = value
    return overrides


def _drop_masked_secrets(payload: dict[str, Any]) -> dict[str, Any]:
    sanitized = copy.deepcopy(payload)
    for section, key in SECRET_PATHS:
        block = sanitized.get(section)
        if not isinstance(block, dict) or key not in block:
            continue
        if str(block.get(key) or "").strip() in {"", MASK}:
            block.pop(key, None)
        if not block:
            sanitized.pop(section, None)
    return sanitized


class ConfigManager:
    """YAML-backed settings for the sync service.

    Reads layer environment overrides on top of the file; writes only ever
    touch what the file holds, so secrets supplied through the environment
    stay out of it.
    """

    def __init__(self, config_path: str | os.PathLike[str], environ: Mapping[str, str] | None = None) -> None:
        self.config_path = Path(config_path)
        self._environ = os.environ if environ is None else environ
        self._lock = threading.RLock()
        if not self.config_path.exists():
            logger.info("Writing default configuration to %s", self.config_path)
            self._write(default_app_config().to_dict())

    def _read_file(self) -> dict[str, Any]:
        with self.config_path.open("r", encoding="utf-8") as handle:
            return yaml.safe_load(handle) or {}

    def _write(self, data: dict[str, Any]) -> None:
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        text = yaml.safe_dump(data, sort_keys=False, allow_unicode=True, default_flow_style=False)
        tmp_path = self.config_path.with_name(self.config_path.name + ".tmp")
        tmp_path.write_text(text, encoding="utf-8")
        try:
            tmp_path.replace(self.config_path)
        except OSError as exc:
            # Bind-mounted single files in containers cannot be atomically replaced.
            if exc.errno != errno.EBUSY:
                raise
            self.config_path.write_text(text, encoding="utf-8")
            tmp_path.unlink(missing_ok=True)

    def load(self) -> AppConfig:
        with self._lock:
            data = _deep_merge(self._read_file(), _env_overrides(self._environ))
        return AppConfig.from_dict(data)

    def save(self, config: AppConfig) -> None:
        with self._lock:
            self._write(config.to_dict())

    def update(self, payload: dict[str, Any]) -> AppConfig:
        with self._lock:
            merged = AppConfig.from_dict(_deep_merge(self._read_file(), _drop_masked_secrets(payload)))
            self._write(merged.to_dict())
        return self.load()

    def masked(self) -> dict[str, Any]:
        config = self.load().to_dict()
        for section, key in SECRET_PATHS:
            block = config.get(section) or {}
            if block.get(key):
                block[key] = MASK
        return config
