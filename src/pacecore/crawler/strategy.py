"""
Adaptive per-request strategy selection.

A strategy is recomputed for every request from the configured defaults and
the current reputation snapshot of the target domain, so that the policy
follows the site's behaviour without any cached state to invalidate.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Optional, Sequence
from urllib.parse import urlsplit

import structlog

from pacecore.config.config import StrategyConfig
from pacecore.crawler.reputation import SEC_FETCH_HEADERS, SiteReputationTracker
from pacecore.crawler.user_agents import UserAgentRotator

logger = structlog.get_logger(__name__)

_CONNECTION_ERRORS = ("connection closed", "connection reset", "timeout")
_SSL_ERRORS = ("ssl", "certificate")


@dataclass(frozen=True)
class ScrapeStrategy:
    """Immutable request policy for one fetch."""

    retries: int = 3
    timeout_ms: int = 30_000
    headers: Mapping[str, str] = field(default_factory=dict)
    initial_backoff_ms: int = 1000
    backoff_multiplier: float = 1.5
    max_backoff_ms: int = 10_000
    use_random_user_agent: bool = False
    rotate_proxies_on_retry: bool = True
    validate_proxies: bool = True

    def __post_init__(self) -> None:
        object.__setattr__(self, "headers", MappingProxyType(dict(self.headers)))

    @classmethod
    def from_config(cls, config: StrategyConfig) -> ScrapeStrategy:
        return cls(
            retries=config.retries,
            timeout_ms=config.timeout_ms,
            headers=config.headers,
            initial_backoff_ms=config.initial_backoff_ms,
            backoff_multiplier=config.backoff_multiplier,
            max_backoff_ms=config.max_backoff_ms,
            use_random_user_agent=config.use_random_user_agent,
            rotate_proxies_on_retry=config.rotate_proxies_on_retry,
            validate_proxies=config.validate_proxies,
        )

    def copy_with(self, **changes: Any) -> ScrapeStrategy:
        return dataclasses.replace(self, **changes)

    def backoff_ms(self, attempt: int) -> int:
        """Delay before outer retry number ``attempt`` (0-based), capped at ``max_backoff_ms``."""
        delay = self.initial_backoff_ms * (self.backoff_multiplier ** max(0, attempt))
        return int(min(self.max_backoff_ms, delay))


@dataclass(frozen=True)
class Proxy:
    """An egress proxy endpoint."""

    host: str
    port: int
    scheme: str = "http"
    username: Optional[str] = None
    password: Optional[str] = None

    @classmethod
    def from_url(cls, url: str) -> Proxy:
        if "://" not in url:
            url = f"http://{url}"
        parts = urlsplit(url)
        if not parts.hostname:
            raise ValueError(f"invalid proxy url: {url}")
        default_port = 443 if parts.scheme == "https" else 1080 if parts.scheme.startswith("socks") else 8080
        return cls(
            host=parts.hostname,
            port=parts.port or default_port,
            scheme=parts.scheme,
            username=parts.username,
            password=parts.password,
        )

    @property
    def url(self) -> str:
        auth = ""
        if self.username:
            auth = self.username if self.password is None else f"{self.username}:{self.password}"
            auth += "@"
        return f"{self.scheme}://{auth}{self.host}:{self.port}"

    @property
    def first_octet(self) -> str:
        return self.host.split(".", 1)[0]


def _first_octet(proxy: str) -> str:
    try:
        return Proxy.from_url(proxy).first_octet
    except ValueError:
        return proxy


class AdaptiveStrategyEngine:
    """Derives a :class:`ScrapeStrategy` per URL from the site's reputation."""

    def __init__(
        self,
        tracker: Optional[SiteReputationTracker] = None,
        default_strategy: Optional[ScrapeStrategy] = None,
        user_agents: Optional[UserAgentRotator] = None,
    ):
        self.tracker = tracker or SiteReputationTracker()
        self.default_strategy = default_strategy or ScrapeStrategy.from_config(StrategyConfig())
        self.user_agents = user_agents or UserAgentRotator()

    def get_strategy_for_url(self, url: str) -> ScrapeStrategy:
        strategy = self.default_strategy
        reputation = self.tracker.get_reputation(url)

        if self.tracker.is_problematic(url):
            logger.debug("Escalating strategy for problematic site", url=url)
            strategy = strategy.copy_with(
                retries=strategy.retries * 2,
                timeout_ms=strategy.timeout_ms * 2,
                initial_backoff_ms=int(strategy.initial_backoff_ms * 0.5),
                use_random_user_agent=True,
                rotate_proxies_on_retry=True,
                validate_proxies=True,
            )

        if reputation is not None:
            strategy = strategy.copy_with(
                headers=self.tracker.get_optimal_headers(url, strategy.headers),
                timeout_ms=self.tracker.get_optimal_timeout(url, strategy.timeout_ms),
                retries=self.tracker.get_optimal_retries(url, strategy.retries),
            )

            if reputation.has_error_pattern("timeout"):
                strategy = strategy.copy_with(timeout_ms=strategy.timeout_ms * 2, backoff_multiplier=2.0)

            if reputation.has_error_pattern("connection closed") or reputation.has_error_pattern("connection reset"):
                strategy = strategy.copy_with(
                    initial_backoff_ms=int(strategy.initial_backoff_ms * 0.3),
                    rotate_proxies_on_retry=True,
                )

            if reputation.has_error_pattern("ssl") or reputation.has_error_pattern("certificate"):
                strategy = strategy.copy_with(headers={**strategy.headers, **SEC_FETCH_HEADERS})

        if strategy.use_random_user_agent:
            strategy = strategy.copy_with(
                headers={**strategy.headers, "User-Agent": self.user_agents.get_random_user_agent()}
            )

        return strategy

    def record_success(self, url: str) -> None:
        self.tracker.record_success(url)

    def record_failure(self, url: str, message: str) -> None:
        self.tracker.record_failure(url, message)

    def select_optimal_proxy(
        self,
        url: str,
        candidates: Sequence[str],
        last_error_message: Optional[str],
        last_used: Optional[str] = None,
    ) -> Optional[str]:
        """
        Pick a proxy for the next attempt at ``url``.

        After connection-type errors a proxy from a different first IPv4
        octet than the reference proxy is preferred; after TLS errors the
        second candidate is used. The reference proxy is ``last_used`` when
        given, else the last candidate.
        """
        if not candidates:
            return None

        if last_error_message:
            lowered = last_error_message.lower()

            if any(marker in lowered for marker in _CONNECTION_ERRORS):
                reference = _first_octet(last_used if last_used is not None else candidates[-1])
                for candidate in candidates:
                    if _first_octet(candidate) != reference:
                        return candidate

            if any(marker in lowered for marker in _SSL_ERRORS) and len(candidates) > 1:
                return candidates[1]

        return candidates[0]
