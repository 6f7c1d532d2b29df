"""
Configuration loader for the notification pipeline.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from models.schemas import ActivityPattern, BusinessHoursWindow, TypingSpeed


@dataclass
class QueueConfig:
    backend: str = "memory"             # "memory" for dev, "redis" for production
    redis_url: str = "redis://localhost:6379"
    fallback_enabled: bool = True       # swap to the in-process store when redis is unreachable
    poll_interval_seconds: float = 60.0   # coarse wait while every queued envelope is deferred
    retry_backoff_base_seconds: float = 60.0
    dispatch_timeout_seconds: float = 30.0
    status_ttl_seconds: int = 7 * 24 * 3600
    burst_history_size: int = 50
    default_max_attempts: int = 3


@dataclass
class ServiceTimeConfig:
    inherit_business_hours: bool = True
    custom_business_hours: Optional[BusinessHoursWindow] = None


@dataclass
class TimeConfig:
    timezone: str = "UTC"
    business_hours: BusinessHoursWindow = field(default_factory=BusinessHoursWindow)
    rate_limiting: ServiceTimeConfig = field(default_factory=ServiceTimeConfig)
    human_behavior: ServiceTimeConfig = field(default_factory=ServiceTimeConfig)
    automation_rules: ServiceTimeConfig = field(default_factory=ServiceTimeConfig)


@dataclass
class RateLimitConfig:
    hourly_limit: int = 50
    daily_limit: int = 500
    min_spacing_seconds: float = 2.0


@dataclass
class DuplicateConfig:
    window_seconds: int = 24 * 3600
    daily_cap: int = 2
    check_content: bool = True
    check_daily_cap: bool = True


@dataclass
class BehaviorSettings:
    pattern: ActivityPattern = ActivityPattern.MODERATE
    typing_speed: TypingSpeed = TypingSpeed.NORMAL
    enable_typing_indicator: bool = True
    enable_jitter: bool = True
    batch_size: int = 10


@dataclass
class AutomationConfig:
    grace_period_minutes: int = 2
    sweep_interval_seconds: int = 60


@dataclass
class ChannelConfig:
    type: str = "mock"                  # "mock" | "wppconnect"
    base_url: str = "http://localhost:8080"
    session_prefix: str = ""            # session name = prefix + tenant id
    token: str = ""
    timeout_seconds: float = 15.0
    success_rate: float = 1.0           # mock gateway only


@dataclass
class EntityStoreConfig:
    backend: str = "memory"             # "memory" | "rest"
    base_url: str = ""
    token: str = ""


@dataclass
class Settings:
    app_name: str = "NotifyPace"
    debug: bool = False
    queue: QueueConfig = field(default_factory=QueueConfig)
    time: TimeConfig = field(default_factory=TimeConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    duplicates: DuplicateConfig = field(default_factory=DuplicateConfig)
    behavior: BehaviorSettings = field(default_factory=BehaviorSettings)
    automation: AutomationConfig = field(default_factory=AutomationConfig)
    channel: ChannelConfig = field(default_factory=ChannelConfig)
    entities: EntityStoreConfig = field(default_factory=EntityStoreConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
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


def _window(raw: Optional[dict[str, Any]], timezone: str) -> Optional[BusinessHoursWindow]:
    if not raw:
        return None
    data = dict(raw)
    data.setdefault("timezone", timezone)
    return BusinessHoursWindow(**data)


def _service_time(raw: Optional[dict[str, Any]], timezone: str) -> ServiceTimeConfig:
    raw = raw or {}
    return ServiceTimeConfig(
        inherit_business_hours=raw.get("inherit_business_hours", True),
        custom_business_hours=_window(raw.get("custom_business_hours"), timezone),
    )


def _pick(cls, raw: dict[str, Any]):
    """Build a flat dataclass from the keys it knows, ignoring the rest."""
    known = cls.__dataclass_fields__
    return cls(**{k: v for k, v in raw.items() if k in known})


def settings_from_dict(raw: dict[str, Any]) -> Settings:
    """Build Settings from an already-parsed config mapping."""
    raw = _process_values(raw or {})
    settings = Settings()

    settings.app_name = raw.get("app_name", settings.app_name)
    settings.debug = raw.get("debug", settings.debug)

    if "queue" in raw:
        settings.queue = _pick(QueueConfig, raw["queue"])

    if "time" in raw:
        t = raw["time"]
        tz = t.get("timezone", "UTC")
        settings.time = TimeConfig(
            timezone=tz,
            business_hours=_window(t.get("business_hours"), tz) or BusinessHoursWindow(timezone=tz),
            rate_limiting=_service_time(t.get("rate_limiting"), tz),
            human_behavior=_service_time(t.get("human_behavior"), tz),
            automation_rules=_service_time(t.get("automation_rules"), tz),
        )

    if "rate_limit" in raw:
        settings.rate_limit = _pick(RateLimitConfig, raw["rate_limit"])

    if "duplicates" in raw:
        settings.duplicates = _pick(DuplicateConfig, raw["duplicates"])

    if "behavior" in raw:
        b = raw["behavior"]
        settings.behavior = BehaviorSettings(
            pattern=ActivityPattern(b.get("pattern", "moderate")),
            typing_speed=TypingSpeed(b.get("typing_speed", "normal")),
            enable_typing_indicator=b.get("enable_typing_indicator", True),
            enable_jitter=b.get("enable_jitter", True),
            batch_size=b.get("batch_size", 10),
        )

    if "automation" in raw:
        settings.automation = _pick(AutomationConfig, raw["automation"])

    if "channel" in raw:
        settings.channel = _pick(ChannelConfig, raw["channel"])

    if "entities" in raw:
        settings.entities = _pick(EntityStoreConfig, raw["entities"])

    return settings


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "NOTIFYPACE_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    raw: dict[str, Any] = {}
    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}

    _settings = settings_from_dict(raw)
    return _settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
