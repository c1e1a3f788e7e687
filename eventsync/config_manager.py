from __future__ import annotations

import copy
import errno
import os
import threading
from pathlib import Path
from typing import Any, Mapping

import yaml

from eventsync.models import AppConfig, default_app_config


API_KEY_ENV = "LUMA_API_KEY"
LOG_LEVEL_ENV = "EVENTSYNC_LOG_LEVEL"
MASK = "***"


def merge_sections(current: dict[str, Any], overrides: Mapping[str, Any]) -> dict[str, Any]:
    result = copy.deepcopy(current)
    for section, value in overrides.items():
        existing = result.get(section)
        if isinstance(existing, dict) and isinstance(value, Mapping):
            result[section] = merge_sections(existing, value)
        else:
            result[section] = copy.deepcopy(value)
    return result


def apply_env_overrides(config: AppConfig, environ: Mapping[str, str] | None = None) -> AppConfig:
    environ = os.environ if environ is None else environ
    api_key = str(environ.get(API_KEY_ENV, "")).strip()
    if api_key:
        config.platform.api_key = api_key
    log_level = str(environ.get(LOG_LEVEL_ENV, "")).strip()
    if log_level:
        config.logging.level = log_level.upper()
    return config


class ConfigManager:
    """YAML-backed settings for the platform client, the scheduler and logging."""

    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        if not self.config_path.is_file():
            self.save(default_app_config())

    def load_file(self) -> AppConfig:
        with self._lock:
            raw = yaml.safe_load(self.config_path.read_text(encoding="utf-8"))
        return AppConfig.from_dict(raw if isinstance(raw, dict) else {})

    def load(self) -> AppConfig:
        # Environment values win at runtime but are never persisted.
        return apply_env_overrides(self.load_file())

    def _write(self, target: Path, data: dict[str, Any]) -> None:
        target.write_text(
            yaml.safe_dump(data, sort_keys=False, allow_unicode=True, default_flow_style=False),
            encoding="utf-8",
        )

    def save(self, config: AppConfig) -> None:
        data = config.to_dict()
        staging = self.config_path.with_name(self.config_path.name + ".tmp")
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            self._write(staging, data)
            try:
                os.replace(staging, self.config_path)
            except OSError as exc:
                # A bind-mounted config file can refuse rename; write it in place instead.
                if exc.errno != errno.EBUSY:
                    raise
                self._write(self.config_path, data)
                staging.unlink(missing_ok=True)

    def update(self, payload: Mapping[str, Any]) -> AppConfig:
        with self._lock:
            config = AppConfig.from_dict(merge_sections(self.load_file().to_dict(), payload))
            self.save(config)
        return config

    def masked(self) -> dict[str, Any]:
        data = self.load().to_dict()
        platform = data.get("platform") or {}
        if platform.get("api_key"):
            platform["api_key"] = MASK
        return data
