"""
Configuration management and loading.

Handles the device configuration file and payment provider secrets.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml
from dotenv import load_dotenv

from screen_guard.core.apps import DEFAULT_TRACKED_APPS, TrackedApp, TrackedAppTable
from screen_guard.storage.db import DEFAULT_DB_PATH
from screen_guard.storage.models import (
    DEFAULT_DAILY_LIMIT_MINUTES,
    DEFAULT_UNLOCK_AMOUNT,
    LimitConfig,
)


@dataclass(frozen=True)
class DefaultsConfig:
    """Settings applied to users who have not saved their own."""
    daily_limit_minutes: int = DEFAULT_DAILY_LIMIT_MINUTES
    emergency_unlock_amount: int = DEFAULT_UNLOCK_AMOUNT

    def __post_init__(self):
        if self.daily_limit_minutes <= 0:
            raise ValueError("daily_limit_minutes must be > 0")
        if self.emergency_unlock_amount <= 0:
            raise ValueError("emergency_unlock_amount must be > 0")


@dataclass(frozen=True)
class EnforcementConfig:
    """Cadence of the background evaluation loop."""
    evaluation_interval_seconds: int = 15 * 60

    def __post_init__(self):
        if self.evaluation_interval_seconds <= 0:
            raise ValueError("evaluation_interval_seconds must be > 0")


@dataclass(frozen=True)
class RefundConfig:
    """Refund scheduler cadence and retry policy."""
    tick_interval_seconds: int = 24 * 60 * 60
    backoff_base_seconds: int = 5 * 60
    backoff_max_seconds: int = 24 * 60 * 60
    max_attempts: int = 10  # 0 disables dead-lettering

    def __post_init__(self):
        if self.tick_interval_seconds <= 0:
            raise ValueError("tick_interval_seconds must be > 0")
        if self.tick_interval_seconds > 7 * 24 * 60 * 60:
            raise ValueError("tick_interval_seconds must not exceed the 7 day refund window")
        if self.backoff_base_seconds <= 0:
            raise ValueError("backoff_base_seconds must be > 0")
        if self.backoff_max_seconds < self.backoff_base_seconds:
            raise ValueError("backoff_max_seconds must be >= backoff_base_seconds")
        if self.max_attempts < 0:
            raise ValueError("max_attempts must be >= 0")


@dataclass(frozen=True)
class ScreenGuardConfig:
    """Complete device configuration."""
    database: str = DEFAULT_DB_PATH
    tracked_apps: TrackedAppTable = field(default_factory=lambda: TrackedAppTable(DEFAULT_TRACKED_APPS))
    defaults: DefaultsConfig = field(default_factory=DefaultsConfig)
    enforcement: EnforcementConfig = field(default_factory=EnforcementConfig)
    refunds: RefundConfig = field(default_factory=RefundConfig)

    def default_limits(self) -> LimitConfig:
        """LimitConfig used for users without saved settings."""
        return LimitConfig(
            daily_limits={
                app.id: self.defaults.daily_limit_minutes for app in self.tracked_apps
            },
            emergency_unlock_amount=self.defaults.emergency_unlock_amount
        )


@dataclass(frozen=True)
class StripeSettings:
    """Payment provider secrets, read from the environment."""
    secret_key: Optional[str]
    webhook_secret: Optional[str]
    payment_method: Optional[str] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.secret_key)


_SECTIONS: Dict[str, Tuple[type, set]] = {
    "defaults": (DefaultsConfig, {"daily_limit_minutes", "emergency_unlock_amount"}),
    "enforcement": (EnforcementConfig, {"evaluation_interval_seconds"}),
    "refunds": (RefundConfig, {
        "tick_interval_seconds", "backoff_base_seconds", "backoff_max_seconds", "max_attempts"
    }),
}


def load_config(path: Optional[str] = None) -> ScreenGuardConfig:
    """Load and validate the device configuration from a YAML file.

    Every section is optional. Unknown keys are rejected so a typo can
    never silently fall back to a default limit.

    Args:
        path: Path to YAML configuration file, or None for defaults

    Returns:
        Validated ScreenGuardConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    if path is None:
        return ScreenGuardConfig()

    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return ScreenGuardConfig()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    allowed_top_keys = {"database", "tracked_apps"} | set(_SECTIONS)
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    database = raw_config.get("database", DEFAULT_DB_PATH)
    if not isinstance(database, str) or not database.strip():
        raise ValueError("'database' must be a non-empty string")

    kwargs: Dict[str, Any] = {"database": database}
    if "tracked_apps" in raw_config:
        kwargs["tracked_apps"] = TrackedAppTable(_parse_tracked_apps(raw_config["tracked_apps"]))

    for section, (cls, allowed) in _SECTIONS.items():
        if section in raw_config:
            kwargs[section] = _parse_section(raw_config[section], section, cls, allowed)

    return ScreenGuardConfig(**kwargs)


def _parse_section(data: Any, path: str, cls: type, allowed: set):
    """Parse a flat section of positive integers into its dataclass."""
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")

    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    values = {}
    for key, value in data.items():
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"'{key}' in {path} must be an integer")
        values[key] = value
    return cls(**values)


def _parse_tracked_apps(data: Any) -> List[TrackedApp]:
    """Parse the tracked-apps table.

    Raises:
        ValueError: If an entry is malformed or an id/package is repeated
    """
    if not isinstance(data, list) or not data:
        raise ValueError("'tracked_apps' must be a non-empty list")

    required = {"id", "name", "package"}
    allowed = required | {"icon"}
    apps = []
    for index, entry in enumerate(data):
        path = f"tracked_apps[{index}]"
        if not isinstance(entry, dict):
            raise ValueError(f"{path} must be a dictionary")
        unknown_keys = set(entry.keys()) - allowed
        if unknown_keys:
            raise ValueError(f"Unknown keys in {path}: {unknown_keys}")
        missing = required - set(entry.keys())
        if missing:
            raise ValueError(f"Missing required keys in {path}: {missing}")
        for key in entry:
            if not isinstance(entry[key], str) or not entry[key].strip():
                raise ValueError(f"'{key}' in {path} must be a non-empty string")
        apps.append(TrackedApp(
            id=entry["id"],
            name=entry["name"],
            package_name=entry["package"],
            icon_name=entry.get("icon", entry["id"])
        ))
    return apps


def load_stripe_settings(env_file: Optional[str] = None) -> StripeSettings:
    """Read Stripe secrets from the environment (and an optional .env file)."""
    load_dotenv(env_file)
    return StripeSettings(
        secret_key=os.environ.get("STRIPE_SECRET_KEY"),
        webhook_secret=os.environ.get("STRIPE_WEBHOOK_SECRET"),
        payment_method=os.environ.get("STRIPE_PAYMENT_METHOD")
    )
