"""Configuration models and loaders."""

from __future__ import annotations

from .config import (
    Config,
    DebugConfig,
    HttpConfig,
    MonitoringConfig,
    ProxyConfig,
    RateLimiterConfig,
    ReputationConfig,
    RobotsConfig,
    SchedulerConfig,
    StrategyConfig,
    find_config_file,
    settings,
)

__all__ = [
    "Config",
    "DebugConfig",
    "HttpConfig",
    "MonitoringConfig",
    "ProxyConfig",
    "RateLimiterConfig",
    "ReputationConfig",
    "RobotsConfig",
    "SchedulerConfig",
    "StrategyConfig",
    "find_config_file",
    "settings",
]
