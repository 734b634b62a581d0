"""
Configuration loader for the cadence engine.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


DEFAULT_STEP_ENDPOINTS: dict[str, str] = {
    "linkedin_message": "/functions/v1/linkedin-send-message",
    "linkedin_connect": "/functions/v1/linkedin-send-connection",
    "linkedin_like": "/functions/v1/linkedin-like-post",
    "linkedin_comment": "/functions/v1/linkedin-comment",
    "send_email": "/functions/v1/send-email",
}


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./cadence_engine.db"        # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory"
    pool_size: int = 5                                 # runs are sequential; claims are single UPDATEs
    sqlite_busy_timeout: float = 30.0                  # seconds a claim waits for the SQLite write lock


@dataclass
class RunnerConfig:
    min_delay_ms: int = 5000
    max_delay_ms: int = 10000
    default_limit: int = 50


@dataclass
class ContentConfig:
    provider: str = "mock"              # "http" | "mock"
    base_url: str = ""
    endpoint: str = "/functions/v1/ai-research-generate"
    default_tone: str = "professional"
    default_language: str = "es"
    max_attempts: int = 2
    retry_backoff_seconds: float = 3.0
    timeout: float = 60.0


@dataclass
class ChannelsConfig:
    adapter: str = "mock"               # "http" | "mock"
    base_url: str = ""
    timeout: float = 30.0
    endpoints: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_STEP_ENDPOINTS))
    post_lookup_endpoint: str = "/functions/v1/linkedin-get-user-posts"


@dataclass
class SchedulingConfig:
    default_timezone: str = "America/New_York"
    first_step_time: str = "09:00"
    lead_stagger_seconds: int = 10


@dataclass
class Settings:
    app_name: str = "CadenceEngine"
    debug: bool = False
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    runner: RunnerConfig = field(default_factory=RunnerConfig)
    content: ContentConfig = field(default_factory=ContentConfig)
    channels: ChannelsConfig = field(default_factory=ChannelsConfig)
    scheduling: SchedulingConfig = field(default_factory=SchedulingConfig)


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


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "CADENCE_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)

        if "database" in raw:
            db = raw["database"]
            settings.database = DatabaseConfig(
                url=db.get("url", settings.database.url),
                store_backend=db.get("store_backend", settings.database.store_backend),
                pool_size=int(db.get("pool_size", settings.database.pool_size)),
                sqlite_busy_timeout=float(db.get("sqlite_busy_timeout", settings.database.sqlite_busy_timeout)),
            )

        if "runner" in raw:
            rn = raw["runner"]
            settings.runner = RunnerConfig(
                min_delay_ms=int(rn.get("min_delay_ms", 5000)),
                max_delay_ms=int(rn.get("max_delay_ms", 10000)),
                default_limit=int(rn.get("default_limit", 50)),
            )

        if "content" in raw:
            ct = raw["content"]
            settings.content = ContentConfig(
                provider=ct.get("provider", "mock"),
                base_url=ct.get("base_url", ""),
                endpoint=ct.get("endpoint", settings.content.endpoint),
                default_tone=ct.get("default_tone", "professional"),
                default_language=ct.get("default_language", "es"),
                max_attempts=int(ct.get("max_attempts", 2)),
                retry_backoff_seconds=float(ct.get("retry_backoff_seconds", 3.0)),
                timeout=float(ct.get("timeout", 60.0)),
            )

        if "channels" in raw:
            ch = raw["channels"]
            endpoints = dict(DEFAULT_STEP_ENDPOINTS)
            endpoints.update(ch.get("endpoints") or {})
            settings.channels = ChannelsConfig(
                adapter=ch.get("adapter", "mock"),
                base_url=ch.get("base_url", ""),
                timeout=float(ch.get("timeout", 30.0)),
                endpoints=endpoints,
                post_lookup_endpoint=ch.get(
                    "post_lookup_endpoint", settings.channels.post_lookup_endpoint),
            )

        if "scheduling" in raw:
            sc = raw["scheduling"]
            settings.scheduling = SchedulingConfig(
                default_timezone=sc.get("default_timezone", "America/New_York"),
                first_step_time=sc.get("first_step_time", "09:00"),
                lead_stagger_seconds=int(sc.get("lead_stagger_seconds", 10)),
            )

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
