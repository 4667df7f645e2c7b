"""
Configuration loader for the BotRelay system.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class CacheConfig:
    enabled: bool = False                 # use Redis; local TTL store otherwise
    redis_url: str = ""
    prefix: str = "botrelay"
    ttl_seconds: int = 3600
    local_max_size: int = 10000


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./botrelay.db"  # postgresql:// | sqlite://
    store_backend: str = "memory"         # "sql" | "memory"


@dataclass
class SessionConfig:
    debounce_seconds: float = 0.0         # 0 disables coalescing
    inbound_key_ttl_seconds: float = 60.0
    inbound_key_refresh_seconds: float = 20.0
    inbound_key_max_size: int = 10000
    history_limit: int = 20


@dataclass
class SchedulerConfig:
    enabled: bool = True
    interval_seconds: int = 60
    concurrency: int = 5
    provider_kinds: list[str] = field(default_factory=lambda: ["agno", "n8n"])


@dataclass
class N8nConfig:
    enabled: bool = True
    timeout_seconds: float = 120.0
    followup_timeout_seconds: float = 60.0


@dataclass
class AgnoConfig:
    enabled: bool = True
    base_url: str = ""
    default_port: int = 0
    default_agent_id: str = ""
    timeout_ms: int = 120000


@dataclass
class ProvidersConfig:
    n8n: N8nConfig = field(default_factory=N8nConfig)
    agno: AgnoConfig = field(default_factory=AgnoConfig)


@dataclass
class Settings:
    app_name: str = "BotRelay"
    debug: bool = False
    server_url: str = "http://localhost:8000"
    cache: CacheConfig = field(default_factory=CacheConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    providers: ProvidersConfig = field(default_factory=ProvidersConfig)


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


def settings_from_dict(raw: dict[str, Any]) -> Settings:
    """Build a Settings object from an already-parsed mapping."""
    settings = Settings()
    raw = _process_values(raw or {})

    settings.app_name = raw.get("app_name", settings.app_name)
    settings.debug = raw.get("debug", settings.debug)
    settings.server_url = raw.get("server_url", settings.server_url)

    if "cache" in raw:
        c = raw["cache"]
        settings.cache = CacheConfig(
            enabled=c.get("enabled", False),
            redis_url=c.get("redis_url", ""),
            prefix=c.get("prefix", "botrelay"),
            ttl_seconds=c.get("ttl_seconds", 3600),
            local_max_size=c.get("local_max_size", 10000),
        )

    if "database" in raw:
        db = raw["database"]
        settings.database = DatabaseConfig(
            url=db.get("url", settings.database.url),
            store_backend=db.get("store_backend", settings.database.store_backend),
        )

    if "session" in raw:
        s = raw["session"]
        settings.session = SessionConfig(
            debounce_seconds=s.get("debounce_seconds", 0.0),
            inbound_key_ttl_seconds=s.get("inbound_key_ttl_seconds", 60.0),
            inbound_key_refresh_seconds=s.get("inbound_key_refresh_seconds", 20.0),
            inbound_key_max_size=s.get("inbound_key_max_size", 10000),
            history_limit=s.get("history_limit", 20),
        )

    if "scheduler" in raw:
        sc = raw["scheduler"]
        settings.scheduler = SchedulerConfig(
            enabled=sc.get("enabled", True),
            interval_seconds=sc.get("interval_seconds", 60),
            concurrency=sc.get("concurrency", 5),
            provider_kinds=sc.get("provider_kinds", ["agno", "n8n"]),
        )

    if "providers" in raw:
        p = raw["providers"]
        n8n = p.get("n8n", {})
        agno = p.get("agno", {})
        settings.providers = ProvidersConfig(
            n8n=N8nConfig(
                enabled=n8n.get("enabled", True),
                timeout_seconds=n8n.get("timeout_seconds", 120.0),
                followup_timeout_seconds=n8n.get("followup_timeout_seconds", 60.0),
            ),
            agno=AgnoConfig(
                enabled=agno.get("enabled", True),
                base_url=agno.get("base_url", ""),
                default_port=int(agno.get("default_port", 0) or 0),
                default_agent_id=agno.get("default_agent_id", ""),
                timeout_ms=int(agno.get("timeout_ms", 120000) or 120000),
            ),
        )

    return settings


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "BOTRELAY_CONFIG",
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


def reset_settings() -> None:
    """Drop the cached settings (for testing)."""
    global _settings
    _settings = None
