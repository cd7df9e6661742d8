"""
Unified Configuration Module for Leadrunner

All configuration settings are centralized here.
Import from this module: from leadrunner.api.config import config
"""

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from leadrunner.core.error_handler import ConfigError


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def _env_range(name: str, default: str) -> Tuple[float, float]:
    low, _, high = os.getenv(name, default).partition("-")
    return float(low), float(high or low)


@dataclass
class DiscoveryConfig:
    """Keyword-driven discovery navigator settings."""
    platform: str = "instagram"
    home_url: str = "https://www.instagram.com/"
    search_url_template: str = "https://www.instagram.com/explore/tags/{keyword}/"
    preferred_result_marker: str = "/explore/tags/"
    posts_per_keyword: int = 10
    delay: Tuple[float, float] = (3.0, 8.0)
    long_delay: Tuple[float, float] = (10.0, 20.0)
    long_delay_every: int = 5
    post_load_wait: Tuple[float, float] = (2.0, 4.0)
    search_load_wait: float = 4.0
    fallback_load_wait: float = 5.0
    collect_retry_wait: float = 5.0
    max_profiles_per_hour: int = 40
    min_score: Optional[int] = None


@dataclass
class EnricherConfig:
    """Profile enricher settings; one surface per lead and a strict hourly ceiling."""
    platform: str = "instagram"
    profile_url_template: str = "https://www.instagram.com/{username}/"
    min_gap_seconds: float = 10.0
    max_profiles_per_hour: int = 30
    page_load_wait: float = 5.0
    agent_init_wait: float = 1.0


@dataclass
class DeepNavigatorConfig:
    """Per-platform deep profile navigator settings."""
    platform: str
    max_profiles_per_hour: int = 40
    delay_between_profiles: Tuple[float, float] = (8.0, 15.0)
    long_break_every: int = 10
    long_break: Tuple[float, float] = (30.0, 60.0)
    page_load_wait: Tuple[float, float] = (5.0, 10.0)
    only_qualified: bool = True
    min_score: Optional[int] = 60  # None defers to the service verdict
    deep_scan: bool = False
    behavioral_analysis: bool = False
    rate_limit_buffer_seconds: float = 60.0
    source: str = "extension"


DEEP_NAVIGATOR_PRESETS: Dict[str, DeepNavigatorConfig] = {
    # Instagram is more aggressive with anti-automation
    "instagram": DeepNavigatorConfig(platform="instagram"),
    "linkedin": DeepNavigatorConfig(
        platform="linkedin",
        delay_between_profiles=(3.0, 6.0),
        long_break_every=10,
        page_load_wait=(8.0, 13.0),
        only_qualified=False,
        behavioral_analysis=True,
    ),
}


@dataclass
class AppConfig:
    """Unified application configuration."""

    # === Upstream API ===
    API_URL: str = os.getenv("LEADRUNNER_API_URL", "http://localhost:3001")
    REQUEST_TIMEOUT_SECONDS: float = float(os.getenv("REQUEST_TIMEOUT_SECONDS", "30"))
    HEALTH_TIMEOUT_SECONDS: float = float(os.getenv("HEALTH_TIMEOUT_SECONDS", "5"))
    HTTP_MAX_ATTEMPTS: int = int(os.getenv("HTTP_MAX_ATTEMPTS", "3"))
    HTTP_BASE_RETRY_DELAY_SECONDS: float = float(os.getenv("HTTP_BASE_RETRY_DELAY_SECONDS", "1.0"))
    HTTP_MAX_RETRY_DELAY_SECONDS: float = float(os.getenv("HTTP_MAX_RETRY_DELAY_SECONDS", "30.0"))

    # === Control server ===
    HOST: str = os.getenv("HOST", "127.0.0.1")
    PORT: int = int(os.getenv("PORT", "8765"))

    # === Job polling ===
    POLL_INTERVAL_SECONDS: float = float(os.getenv("POLL_INTERVAL_SECONDS", "12"))
    POLL_INITIAL_DELAY_SECONDS: float = float(os.getenv("POLL_INITIAL_DELAY_SECONDS", "6"))
    WAKE_POLL_DELAY_SECONDS: float = float(os.getenv("WAKE_POLL_DELAY_SECONDS", "1"))

    # === Session tokens ===
    TOKEN_CHECK_INTERVAL_SECONDS: float = float(os.getenv("TOKEN_CHECK_INTERVAL_SECONDS", "1800"))  # 30m
    TOKEN_CHECK_INITIAL_DELAY_SECONDS: float = float(os.getenv("TOKEN_CHECK_INITIAL_DELAY_SECONDS", "60"))
    TOKEN_RENEW_THRESHOLD_SECONDS: float = float(os.getenv("TOKEN_RENEW_THRESHOLD_SECONDS", "86400"))  # 24h

    # === Automation executor ===
    DEFAULT_JOB_INTERVAL: Tuple[float, float] = field(
        default_factory=lambda: _env_range("DEFAULT_JOB_INTERVAL", "60-90")
    )
    SETTLE_DELAY_SECONDS: float = float(os.getenv("SETTLE_DELAY_SECONDS", "2"))
    ACTION_DELAY_SECONDS: float = float(os.getenv("ACTION_DELAY_SECONDS", "2"))
    SURFACE_RETRY_DELAY_SECONDS: float = float(os.getenv("SURFACE_RETRY_DELAY_SECONDS", "2"))
    FINISHED_JOBS_LIMIT: int = int(os.getenv("FINISHED_JOBS_LIMIT", "100"))
    EXCLUSIVE_DRIVER: bool = _env_bool("EXCLUSIVE_DRIVER", "true")

    # === Browser ===
    BROWSER_CDP_URL: Optional[str] = os.getenv("BROWSER_CDP_URL")
    BROWSER_HEADLESS: bool = _env_bool("BROWSER_HEADLESS", "false")
    BROWSER_TIMEOUT_MS: int = int(os.getenv("BROWSER_TIMEOUT_MS", "60000"))
    BROWSER_STORAGE_STATE: Optional[str] = os.getenv("BROWSER_STORAGE_STATE")  # logged-in cookies for new containers
    WINDOW_WIDTH: int = int(os.getenv("WINDOW_WIDTH", "1200"))
    WINDOW_HEIGHT: int = int(os.getenv("WINDOW_HEIGHT", "800"))
    AGENT_SCRIPT_PATH: Optional[str] = os.getenv("AGENT_SCRIPT_PATH")
    AGENT_GLOBAL: str = os.getenv("AGENT_GLOBAL", "__leadrunnerAgent")

    # === Notifications ===
    SLACK_WEBHOOK_URL: str = os.getenv("SLACK_WEBHOOK_URL", "")
    DISCORD_WEBHOOK_URL: str = os.getenv("DISCORD_WEBHOOK_URL", "")
    PROGRESS_HISTORY: int = int(os.getenv("PROGRESS_HISTORY", "500"))

    # === Paths ===
    DATABASE_PATH: str = os.getenv("DATABASE_PATH", "./data/leadrunner.db")
    LOG_DIR: str = os.getenv("LOG_DIR", "./logs")

    # === Navigators ===
    DISCOVERY: DiscoveryConfig = field(default_factory=DiscoveryConfig)
    ENRICHER: EnricherConfig = field(default_factory=EnricherConfig)
    DEEP_NAVIGATORS: Dict[str, DeepNavigatorConfig] = field(
        default_factory=lambda: {k: replace(v) for k, v in DEEP_NAVIGATOR_PRESETS.items()}
    )

    def deep_navigator(self, platform: str) -> DeepNavigatorConfig:
        """Preset for a platform, falling back to the Instagram-style defaults."""
        preset = self.DEEP_NAVIGATORS.get(platform)
        if preset is None:
            return DeepNavigatorConfig(platform=platform)
        return replace(preset)

    def validate(self) -> List[str]:
        """Validate configuration and return list of problems."""
        problems = []

        if not self.API_URL or self.API_URL in ("undefined", "null"):
            problems.append("LEADRUNNER_API_URL")
        low, high = self.DEFAULT_JOB_INTERVAL
        if low < 0 or high < low:
            problems.append("DEFAULT_JOB_INTERVAL (expected 'min-max' with min <= max)")
        if self.POLL_INTERVAL_SECONDS <= 0:
            problems.append("POLL_INTERVAL_SECONDS")
        if self.ENRICHER.max_profiles_per_hour <= 0:
            problems.append("enricher.max_profiles_per_hour (must be positive)")
        if self.DISCOVERY.long_delay_every <= 0:
            problems.append("discovery.long_delay_every (must be positive)")
        for platform, deep in self.DEEP_NAVIGATORS.items():
            if deep.long_break_every <= 0:
                problems.append(f"deep_navigators.{platform}.long_break_every (must be positive)")
        if self.AGENT_SCRIPT_PATH and not Path(self.AGENT_SCRIPT_PATH).exists():
            problems.append(f"AGENT_SCRIPT_PATH ({self.AGENT_SCRIPT_PATH} not found)")

        return problems


def _coerce(current: Any, value: Any) -> Any:
    if isinstance(current, tuple) and isinstance(value, (list, tuple)):
        return tuple(float(v) for v in value)
    return value


def _overlay(target: Any, overrides: Dict[str, Any]) -> Any:
    known = {f.name for f in fields(target)}
    changes = {}
    for key, value in overrides.items():
        if key not in known:
            raise ConfigError(f"Unknown config key: {key}")
        changes[key] = _coerce(getattr(target, key), value)
    return replace(target, **changes)


def load_config(path: Optional[str] = None) -> AppConfig:
    """
    Build the configuration from environment defaults plus an optional YAML file.

    The YAML file may hold top-level AppConfig keys, ``discovery`` and ``enricher``
    mappings and a ``deep_navigators`` mapping keyed by platform.
    """
    cfg = AppConfig()
    if not path:
        return cfg

    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must hold a mapping of config keys")

    discovery = data.pop("discovery", None)
    enricher = data.pop("enricher", None)
    deep = data.pop("deep_navigators", None) or {}

    cfg = _overlay(cfg, {k.upper(): v for k, v in data.items()})
    if discovery:
        cfg.DISCOVERY = _overlay(cfg.DISCOVERY, discovery)
    if enricher:
        cfg.ENRICHER = _overlay(cfg.ENRICHER, enricher)
    for platform, overrides in deep.items():
        base = cfg.deep_navigator(platform)
        cfg.DEEP_NAVIGATORS[platform] = _overlay(base, overrides or {})
    return cfg


# Global config instance
config = AppConfig()


def get_config() -> AppConfig:
    """Get the application configuration."""
    return config
