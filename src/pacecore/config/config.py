"""
Configuration management for PaceCore using Pydantic.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, ClassVar, Dict, List, cast

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Setup Logging ---
log = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; PaceCoreBot/1.0; +https://github.com/pacecore/pacecore)"

# --- Nested Configuration Models ---


class RateLimiterConfig(BaseModel):
    """Per-domain pacing and rate-limit backoff."""

    default_delay_ms: int = Field(default=1000, ge=0, description="Minimum spacing between requests to one domain.")
    domain_delays_ms: Dict[str, int] = Field(
        default_factory=dict, description="Per-domain spacing overrides in milliseconds."
    )
    max_retries: int = Field(default=3, ge=0, description="Internal retries for rate-limited requests.")
    initial_backoff_ms: int = Field(default=1000, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    max_backoff_ms: int = Field(default=60_000, ge=0)
    jitter_ratio: float = Field(default=0.1, ge=0.0, lt=1.0, description="Relative jitter applied to spacing waits.")
    default_retry_after_seconds: float = Field(
        default=60.0, ge=0.0, description="Wait applied after a rate-limit response without Retry-After."
    )

    @field_validator("domain_delays_ms")
    @classmethod
    def validate_domain_delays(cls, v: Dict[str, int]) -> Dict[str, int]:
        for domain, delay in v.items():
            if delay < 0:
                raise ValueError(f"delay for {domain} must be non-negative")
        return {domain.lower(): delay for domain, delay in v.items()}

    @model_validator(mode="after")
    def check_backoff_bounds(self) -> "RateLimiterConfig":
        if self.max_backoff_ms < self.initial_backoff_ms:
            raise ValueError("max_backoff_ms must be >= initial_backoff_ms")
        return self


class RobotsConfig(BaseModel):
    """robots.txt handling."""

    respect_robots_txt: bool = Field(default=True, description="Whether to honour robots.txt at all.")
    cache_ttl_ms: int = Field(default=3_600_000, ge=0, description="How long a fetched rule set stays valid.")
    user_agent: str = Field(default=DEFAULT_USER_AGENT, description="Agent used to fetch and match robots.txt.")
    fetch_timeout_ms: int = Field(default=10_000, gt=0)
    max_size_bytes: int = Field(default=1_000_000, gt=0, description="Larger robots.txt bodies are ignored.")
    scheme: str = Field(default="https")

    @field_validator("scheme")
    @classmethod
    def validate_scheme(cls, v: str) -> str:
        v = v.lower()
        if v not in ("http", "https"):
            raise ValueError("scheme must be http or https")
        return v


class ReputationConfig(BaseModel):
    max_tracked_sites: int = Field(default=100, gt=0, description="LRU cap on tracked domains.")


class StrategyConfig(BaseModel):
    """Default request strategy used before any reputation is known."""

    retries: int = Field(default=3, ge=0)
    timeout_ms: int = Field(default=30_000, gt=0)
    headers: Dict[str, str] = Field(
        default_factory=lambda: {
            "User-Agent": (
                "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
                "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
            ),
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
        }
    )
    initial_backoff_ms: int = Field(default=1000, ge=0)
    backoff_multiplier: float = Field(default=1.5, ge=1.0)
    max_backoff_ms: int = Field(default=10_000, ge=0)
    use_random_user_agent: bool = False
    rotate_proxies_on_retry: bool = True
    validate_proxies: bool = True


class SchedulerConfig(BaseModel):
    max_concurrent_tasks: int = Field(default=5, gt=0, description="Global bound on in-flight tasks.")


class ProxyConfig(BaseModel):
    urls: List[str] = Field(default_factory=list, description="Egress proxies, e.g. http://10.0.0.1:8080.")

    @field_validator("urls", mode="before")
    @classmethod
    def split_urls(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [proxy.strip() for proxy in v.split(",") if proxy.strip()]
        return v


class HttpConfig(BaseModel):
    """Settings for the bundled aiohttp fetch primitive."""

    connection_limit: int = Field(default=100, ge=0)
    connections_per_host: int = Field(default=10, ge=0)
    dns_cache_ttl: int = Field(default=30, ge=0)
    keepalive_timeout: float = Field(default=30.0, ge=0)
    verify_ssl: bool = True
    max_body_bytes: int = Field(default=10_000_000, gt=0)


class MonitoringConfig(BaseModel):
    """Configuration for logging and metrics."""

    log_level: str = Field(default="INFO", description="Logging level (e.g., DEBUG, INFO, WARNING).")
    log_file: str | None = Field(default=None, description="Path to log file. If None, logs to console.")
    prometheus_port: int | None = Field(default=None, description="Port for Prometheus metrics exporter.")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        v = v.upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level: {v}")
        return v

    @field_validator("log_file", mode="before")
    @classmethod
    def create_parent_dir(cls, v: str | Path | None) -> str | None:
        if v is None:
            return None
        path = Path(v)
        path.parent.mkdir(parents=True, exist_ok=True)
        return str(path)


class DebugConfig(BaseModel):
    test_mode: bool = False


# --- Main Configuration Class ---


class Config(BaseSettings):
    project_name: str = "PaceCore"
    version: str = "0.1.0"
    rate_limiter: RateLimiterConfig = Field(default_factory=RateLimiterConfig)
    robots: RobotsConfig = Field(default_factory=RobotsConfig)
    reputation: ReputationConfig = Field(default_factory=ReputationConfig)
    strategy: StrategyConfig = Field(default_factory=StrategyConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    proxy: ProxyConfig = Field(default_factory=ProxyConfig)
    http: HttpConfig = Field(default_factory=HttpConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    debug: DebugConfig = Field(default_factory=DebugConfig)

    model_config = SettingsConfigDict(env_prefix="PACECORE_", env_nested_delimiter="__", case_sensitive=False)

    @classmethod
    def from_yaml(cls, path: Path) -> Config:
        log.debug("Loading configuration from YAML file: %s", path)
        if not path.is_file():
            raise FileNotFoundError(f"Configuration file not found or is not a file: {path}")
        with open(path, "r", encoding="utf-8") as f:
            yaml_data = yaml.safe_load(f)
        if not yaml_data:
            log.warning("Configuration file is empty: %s. Using default settings.", path)
            return cls.model_validate({})
        return cls.model_validate(yaml_data)

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.model_dump(mode="json"), sort_keys=False)


def find_config_file() -> Path | None:
    current_dir = Path.cwd()
    paths_to_check = [
        current_dir / "pacecore.yaml",
        current_dir / "pacecore.yml",
        current_dir / "config.yaml",
        current_dir / "config.yml",
    ]
    for path in paths_to_check:
        if path.exists():
            return path
    return None


# --- Lazy Configuration Loader ---


class LazyConfig:
    """
    A proxy for the Config object that delays its loading and validation
    until an attribute is first accessed. This prevents configuration errors
    from crashing the application on import.
    """

    _config: ClassVar[Config | None] = None
    _lock: ClassVar[threading.Lock] = threading.Lock()

    def __getattr__(self, name: str) -> Any:
        if self.__class__._config is None:
            with self.__class__._lock:
                if self.__class__._config is None:
                    self.__class__._config = self._load_config_with_fallback()
        return getattr(self.__class__._config, name)

    @classmethod
    def reset(cls) -> None:
        with cls._lock:
            cls._config = None

    def _load_config_with_fallback(self) -> Config:
        """Load configuration from file or fall back to defaults."""
        config_path = find_config_file()
        if config_path:
            try:
                log.info("Lazy loading configuration from: %s", config_path)
                return Config.from_yaml(config_path)
            except (ValidationError, FileNotFoundError, yaml.YAMLError) as e:
                log.error(
                    "Failed to load or validate configuration from '%s': %s. "
                    "Falling back to default settings. Please check your config file.",
                    config_path,
                    e,
                    exc_info=log.getEffectiveLevel() <= logging.DEBUG,
                )
        else:
            log.info("No config file found. Using default settings for lazy load.")

        try:
            return Config()
        except ValidationError as e:
            log.critical("FATAL: Default configuration is invalid: %s", e, exc_info=True)
            raise RuntimeError(f"Default configuration is invalid, cannot start: {e}") from e


# --- Global Settings Instance ---
settings: "Config" = cast("Config", LazyConfig())
