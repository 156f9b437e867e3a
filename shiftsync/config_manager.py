from __future__ import annotations

import copy
import errno
import logging
import os
import threading
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from shiftsync.errors import ValidationError
from shiftsync.models import AppConfig, default_app_config


logger = logging.getLogger(__name__)

CONFIG_SECTIONS = ("sync", "fetch", "logging")


def merge_sections(current: dict[str, Any], changes: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(current)
    for key, value in changes.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_sections(merged[key], value)
        else:
            merged[key] = value
    return merged


def build_config(data: dict[str, Any]) -> AppConfig:
    """Turn a merged mapping into an AppConfig, raising ValidationError on bad input.

    Unknown top-level keys are ignored. Known sections must be mappings, numeric
    settings must parse, and the sync timezone must name a zone zoneinfo knows.
    """
    for section in CONFIG_SECTIONS:
        value = data.get(section)
        if value is not None and not isinstance(value, dict):
            raise ValidationError(f"Config section '{section}' must be a mapping")
    try:
        config = AppConfig.from_dict(data)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid configuration value: {exc}") from exc
    try:
        ZoneInfo(config.sync.timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValidationError(f"Unknown timezone: {config.sync.timezone}") from exc
    return config


class ConfigManager:
    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        if not self.config_path.exists():
            logger.info("Writing default configuration to %s", self.config_path)
            self.save(default_app_config())

    def load(self) -> AppConfig:
        with self._lock:
            data = yaml.safe_load(self.config_path.read_text(encoding="utf-8")) or {}
        if not isinstance(data, dict):
            logger.warning("Ignoring %s: top level is not a mapping", self.config_path)
            data = {}
        return AppConfig.from_dict(data)

    def save(self, config: AppConfig) -> None:
        text = yaml.safe_dump(config.to_dict(), sort_keys=False, allow_unicode=True, default_flow_style=False)
        with self._lock:
            self._write(text)

    def update(self, changes: dict[str, Any]) -> AppConfig:
        with self._lock:
            config = build_config(merge_sections(self.load().to_dict(), changes))
            self.save(config)
        logger.info("Configuration updated (sections: %s)", ", ".join(sorted(changes)) or "none")
        return config

    def _write(self, text: str) -> None:
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        staged = self.config_path.with_name(self.config_path.name + ".tmp")
        staged.write_text(text, encoding="utf-8")
        try:
            staged.replace(self.config_path)
        except OSError as exc:
            # A bind-mounted config file cannot be swapped by rename.
            if exc.errno != errno.EBUSY:
                staged.unlink(missing_ok=True)
                raise
            self.config_path.write_text(text, encoding="utf-8")
            staged.unlink(missing_ok=True)
