"""
Configuration loader for the check-in outreach engine.
Reads settings from a YAML file with environment variable substitution,
then applies environment overrides for the deployment-level switches.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class ChannelConfig:
    enabled: bool = False
    credentials: dict[str, Any] = field(default_factory=dict)


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./checkins.db"        # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                # "sql" | "memory"


@dataclass
class CheckinConfig:
    enabled: bool = False
    token_secret: str = ""
    send_timezone: str = "America/New_York"
    send_window: str = ""                        # "HH:MM-HH:MM", empty = always
    start_at: str = ""                           # ISO date/time, empty = no start gate
    sandbox: bool = False
    days: list[int] = field(default_factory=lambda: [3, 7, 14])
    template_key_format: str = "day{day}.same"
    campaign_timezone: str = "America/New_York"
    schedule_hour: int = 10
    schedule_minute: int = 0
    app_url: str = "http://localhost:8000"
    link_ttl_seconds: int = 7 * 24 * 60 * 60
    preview_ttl_seconds: int = 60 * 60


@dataclass
class DispatchConfig:
    concurrency: int = 10               # max in-flight items per batch
    default_limit: int = 100
    max_limit: int = 1000
    send_timeout_seconds: float = 15.0
    store_timeout_seconds: float = 10.0
    deadline_seconds: float = 0.0       # 0 = no batch deadline
    poll_interval_seconds: int = 0      # 0 = rely on an external trigger
    dispatch_token: str = ""


@dataclass
class AlertConfig:
    webhook_url: str = ""
    webhook_timeout_seconds: float = 2.0
    red_flags_path: str = ""            # empty = config/red_flags.yml


@dataclass
class Settings:
    app_name: str = "CheckinEngine"
    debug: bool = False
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    checkins: CheckinConfig = field(default_factory=CheckinConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    alerts: AlertConfig = field(default_factory=AlertConfig)
    channels: dict[str, ChannelConfig] = field(default_factory=dict)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, "")
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def is_enabled(value: Any) -> bool:
    """Interpret '1' / 'true' (any case) as enabled."""
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in ("1", "true")


def _merge(target: Any, raw: dict[str, Any]) -> None:
    """Copy known keys from a YAML section onto a config dataclass."""
    for key, value in raw.items():
        if not hasattr(target, key):
            continue
        current = getattr(target, key)
        if isinstance(current, bool):
            value = is_enabled(value)
        elif isinstance(current, int) and not isinstance(current, bool) and value != "":
            value = int(value)
        elif isinstance(current, float) and value != "":
            value = float(value)
        setattr(target, key, value)


_ENV_OVERRIDES: list[tuple[str, str, str]] = [
    # env var                  section      attribute
    ("CHECKINS_ENABLED",        "checkins",  "enabled"),
    ("CHECKINS_TOKEN_SECRET",   "checkins",  "token_secret"),
    ("CHECKINS_SEND_TZ",        "checkins",  "send_timezone"),
    ("CHECKINS_SEND_WINDOW",    "checkins",  "send_window"),
    ("CHECKINS_START_AT",       "checkins",  "start_at"),
    ("CHECKINS_SANDBOX",        "checkins",  "sandbox"),
    ("APP_URL",                 "checkins",  "app_url"),
    ("CHECKINS_DISPATCH_TOKEN", "dispatch",  "dispatch_token"),
    ("CHECKINS_CONCURRENCY",    "dispatch",  "concurrency"),
    ("ALERT_WEBHOOK",           "alerts",    "webhook_url"),
    ("DATABASE_URL",            "database",  "url"),
    ("STORE_BACKEND",           "database",  "store_backend"),
]


def _apply_env_overrides(settings: Settings) -> None:
    for env_var, section, attr in _ENV_OVERRIDES:
        value = os.environ.get(env_var)
        if value is None:
            continue
        _merge(getattr(settings, section), {attr: value})


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file, then apply environment overrides."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "CHECKINS_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = is_enabled(raw.get("debug", settings.debug))

        for section in ("database", "checkins", "dispatch", "alerts"):
            if section in raw:
                _merge(getattr(settings, section), raw[section] or {})

        if "channels" in raw:
            for ch_name, ch_data in raw["channels"].items():
                settings.channels[ch_name] = ChannelConfig(
                    enabled=is_enabled(ch_data.get("enabled", False)),
                    credentials=ch_data.get("credentials", {}),
                )

    _apply_env_overrides(settings)

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop cached settings (for testing)."""
    global _settings
    _settings = None
