"""
Automation defaults configuration loader.

Loads the settings new tenants start with, and the retry worker limits,
from config/automation_defaults.yml.

Consumers:
  - AutomationSettingsService: seeds the settings row on first read
  - ExecutionRetryWorker: batch size and attempt ceiling

Usage:
    from autopilot.config.automation_defaults import get_automation_defaults_loader

    loader = get_automation_defaults_loader()
    defaults = loader.get_settings_defaults()
    defaults.autonomous_credit_limit  # 100
"""

import logging
import os
from dataclasses import dataclass
from datetime import time
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

_FALLBACK_TIMEZONE = "UTC"


@dataclass(frozen=True)
class SettingsDefaults:
    """Values written to a tenant's settings row when it is first created."""
    global_autopilot_enabled: bool = True
    autonomous_credit_limit: int = 100
    max_daily_actions: int = 10
    max_catalog_change_percent: int = 5
    quiet_hours_start: time = time(21, 0)
    quiet_hours_end: time = time(9, 0)
    timezone: str = _FALLBACK_TIMEZONE


def parse_clock(value: Any) -> time:
    """Parse 'HH:MM' (or a time) into a time. Raises ValueError if malformed."""
    if isinstance(value, time):
        return value
    hours, _, minutes = str(value).partition(":")
    return time(int(hours), int(minutes or 0))


class AutomationDefaultsLoader:
    """
    Thread-safe singleton loader for config/automation_defaults.yml.

    Falls back to built-in defaults when the file is missing.
    """

    _instance: Optional["AutomationDefaultsLoader"] = None
    _lock = Lock()

    def __new__(cls, config_path: Optional[str] = None):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self, config_path: Optional[str] = None):
        if self._initialized:
            return

        self._config_path = config_path
        self._raw: Dict[str, Any] = {}
        self._load_lock = Lock()

        self._load()
        self._initialized = True

    def _resolve_path(self) -> Path:
        if self._config_path:
            return Path(self._config_path)

        candidates = [
            Path(__file__).parent.parent.parent.parent / "config" / "automation_defaults.yml",
            Path(os.getcwd()) / "config" / "automation_defaults.yml",
            Path(os.getcwd()) / ".." / "config" / "automation_defaults.yml",
        ]

        for p in candidates:
            resolved = p.resolve()
            if resolved.exists():
                return resolved

        raise FileNotFoundError(
            f"automation_defaults.yml not found in: {[str(p) for p in candidates]}"
        )

    def _load(self) -> None:
        with self._load_lock:
            try:
                path = self._resolve_path()
                logger.info("Loading automation defaults from %s", path)

                with open(path, "r") as f:
                    self._raw = yaml.safe_load(f) or {}
            except FileNotFoundError:
                logger.warning(
                    "automation_defaults.yml not found, using built-in defaults"
                )
                self._raw = {}

    def reload(self) -> None:
        """Re-read the YAML from disk."""
        self._load()

    def get_settings_defaults(self) -> SettingsDefaults:
        raw = self._raw.get("settings", {})
        builtin = SettingsDefaults()
        quiet = raw.get("quiet_hours", {})

        return SettingsDefaults(
            global_autopilot_enabled=bool(
                raw.get("global_autopilot_enabled", builtin.global_autopilot_enabled)
            ),
            autonomous_credit_limit=int(
                raw.get("autonomous_credit_limit", builtin.autonomous_credit_limit)
            ),
            max_daily_actions=int(raw.get("max_daily_actions", builtin.max_daily_actions)),
            max_catalog_change_percent=int(
                raw.get("max_catalog_change_percent", builtin.max_catalog_change_percent)
            ),
            quiet_hours_start=parse_clock(quiet.get("start", builtin.quiet_hours_start)),
            quiet_hours_end=parse_clock(quiet.get("end", builtin.quiet_hours_end)),
            timezone=raw.get("timezone", builtin.timezone),
        )

    def get_retry_batch_size(self) -> int:
        env_value = os.getenv("EXECUTION_RETRY_BATCH_SIZE")
        if env_value:
            return int(env_value)
        return int(self._raw.get("execution_retry", {}).get("batch_size", 50))

    def get_retry_max_attempts(self) -> int:
        env_value = os.getenv("EXECUTION_RETRY_MAX_ATTEMPTS")
        if env_value:
            return int(env_value)
        return int(self._raw.get("execution_retry", {}).get("max_attempts", 5))


def get_automation_defaults_loader(
    config_path: Optional[str] = None,
) -> AutomationDefaultsLoader:
    """Return the singleton AutomationDefaultsLoader."""
    return AutomationDefaultsLoader(config_path)


def reset_automation_defaults_loader() -> None:
    """Reset singleton (for tests only)."""
    AutomationDefaultsLoader._instance = None
