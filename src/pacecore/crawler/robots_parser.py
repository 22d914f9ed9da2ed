"""
Fetching, parsing and caching of robots.txt policies.

Rules are kept per domain and re-fetched lazily once they are older than the
configured TTL. A missing or unreachable robots.txt is treated as "everything
allowed" so that a flaky policy endpoint never blocks a crawl.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional

import httpx
import structlog

from pacecore.config.config import RobotsConfig
from pacecore.crawler.urls import extract_domain, extract_path
from pacecore.exceptions import HttpStatusError, PaceCoreError
from pacecore.observability import increment
from pacecore.protocols import FetchFn, FetchResponse

logger = structlog.get_logger(__name__)

WILDCARD_AGENT = "*"


def _path_matches(path: str, pattern: str) -> bool:
    if pattern == path:
        return True
    if pattern.endswith("*"):
        return path.startswith(pattern[:-1])
    if pattern.endswith("/"):
        return path.startswith(pattern)
    return False


@dataclass
class RobotsRuleSet:
    """Parsed robots.txt rules for one domain."""

    allow: Dict[str, List[str]] = field(default_factory=dict)
    disallow: Dict[str, List[str]] = field(default_factory=dict)
    crawl_delays: Dict[str, float] = field(default_factory=dict)
    fetched_at: float = 0.0

    @classmethod
    def empty(cls, fetched_at: float = 0.0) -> RobotsRuleSet:
        return cls(fetched_at=fetched_at)

    @classmethod
    def parse(cls, text: str, fetched_at: float = 0.0) -> RobotsRuleSet:
        rules = cls(fetched_at=fetched_at)
        group: List[str] = []
        # True once a rule line follows the current run of User-agent lines.
        group_has_rules = False

        for raw_line in text.splitlines():
            line = raw_line.split("#", 1)[0].strip()
            if not line or ":" not in line:
                continue
            key, _, value = line.partition(":")
            key = key.strip().lower()
            value = value.strip()

            if key == "user-agent":
                if not value:
                    continue
                if group_has_rules:
                    group = []
                    group_has_rules = False
                label = value.lower()
                if label not in group:
                    group.append(label)
                continue

            if key not in ("allow", "disallow", "crawl-delay"):
                continue
            group_has_rules = True
            if not group or not value:
                continue

            if key == "crawl-delay":
                try:
                    seconds = float(value)
                except ValueError:
                    continue
                if seconds < 0:
                    continue
                for label in group:
                    rules.crawl_delays[label] = seconds
            else:
                target = rules.allow if key == "allow" else rules.disallow
                for label in group:
                    target.setdefault(label, []).append(value)

        return rules

    @property
    def labels(self) -> List[str]:
        seen: Dict[str, None] = {}
        for mapping in (self.disallow, self.allow, self.crawl_delays):
            for label in mapping:
                seen.setdefault(label, None)
        return list(seen)

    def resolve_agent(self, agent: str) -> Optional[str]:
        """Pick the block that governs ``agent``: exact label, then substring, then ``*``."""
        agent = agent.lower()
        labels = self.labels
        if agent in labels:
            return agent
        for label in labels:
            if label != WILDCARD_AGENT and label in agent:
                return label
        if WILDCARD_AGENT in labels:
            return WILDCARD_AGENT
        return None

    def is_allowed(self, path: str, agent: str) -> bool:
        if not path.startswith("/"):
            path = f"/{path}"
        label = self.resolve_agent(agent)
        if label is None:
            return True
        # Allow patterns take precedence over Disallow patterns.
        if any(_path_matches(path, pattern) for pattern in self.allow.get(label, ())):
            return True
        if any(_path_matches(path, pattern) for pattern in self.disallow.get(label, ())):
            return False
        return True

    def crawl_delay(self, agent: str) -> Optional[int]:
        """Crawl delay for ``agent`` in milliseconds, or None."""
        label = self.resolve_agent(agent)
        seconds = self.crawl_delays.get(label) if label is not None else None
        if seconds is None:
            seconds = self.crawl_delays.get(WILDCARD_AGENT)
        if seconds is None:
            return None
        return int(round(seconds * 1000))

    def is_expired(self, now: float, ttl_ms: int) -> bool:
        return (now - self.fetched_at) * 1000 > ttl_ms


class RobotsPolicyEngine:
    """
    Manages fetching, parsing, and caching of robots.txt files.

    The engine fetches through the injected fetch primitive. When none is
    given, it owns an ``httpx.AsyncClient`` and closes it in :meth:`close`.
    Concurrent first lookups for one domain share a single fetch.
    """

    def __init__(
        self,
        config: Optional[RobotsConfig] = None,
        fetch: Optional[FetchFn] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or RobotsConfig()
        self._clock = clock
        self._cache: Dict[str, RobotsRuleSet] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._client: Optional[httpx.AsyncClient] = None
        if fetch is None:
            self._client = httpx.AsyncClient(follow_redirects=True)
            fetch = self._httpx_fetch
        self._fetch = fetch

    @property
    def enabled(self) -> bool:
        return self.config.respect_robots_txt

    async def _httpx_fetch(
        self, url: str, headers: Mapping[str, str], timeout_ms: int, proxy: Optional[str]
    ) -> FetchResponse:
        if self._client is None:
            raise RuntimeError("robots.txt HTTP client not initialized")
        started = time.monotonic()
        try:
            response = await self._client.get(url, headers=dict(headers), timeout=timeout_ms / 1000)
        except httpx.HTTPError as e:
            raise PaceCoreError(f"robots.txt request failed: {e}", url=url) from e
        return FetchResponse(
            status=response.status_code,
            headers=dict(response.headers),
            body=response.content,
            url=url,
            final_url=str(response.url),
            elapsed_ms=(time.monotonic() - started) * 1000,
        )

    async def _fetch_rules(self, domain: str, scheme: str) -> RobotsRuleSet:
        url = f"{scheme}://{domain}/robots.txt"
        now = self._clock()
        headers = {"User-Agent": self.config.user_agent}
        logger.debug("Fetching robots.txt", domain=domain, url=url)
        try:
            response = await self._fetch(url, headers, self.config.fetch_timeout_ms, None)
        except HttpStatusError as e:
            if e.status == 404:
                logger.debug("No robots.txt found", domain=domain, status=404)
                increment("robots_fetch", labels={"outcome": "absent"})
            else:
                logger.warning("Failed to fetch robots.txt", domain=domain, status=e.status)
                increment("robots_fetch", labels={"outcome": "error"})
            return RobotsRuleSet.empty(fetched_at=now)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Failed to fetch robots.txt", domain=domain, error=str(e))
            increment("robots_fetch", labels={"outcome": "error"})
            return RobotsRuleSet.empty(fetched_at=now)

        if response.status == 404:
            logger.debug("No robots.txt found", domain=domain, status=404)
            increment("robots_fetch", labels={"outcome": "absent"})
            return RobotsRuleSet.empty(fetched_at=now)
        if response.status != 200:
            logger.warning("Failed to fetch robots.txt", domain=domain, status=response.status)
            increment("robots_fetch", labels={"outcome": "error"})
            return RobotsRuleSet.empty(fetched_at=now)
        if len(response.body) > self.config.max_size_bytes:
            logger.warning("robots.txt too large, ignoring", domain=domain, size=len(response.body))
            increment("robots_fetch", labels={"outcome": "oversized"})
            return RobotsRuleSet.empty(fetched_at=now)

        rules = RobotsRuleSet.parse(response.text, fetched_at=now)
        logger.debug("Parsed robots.txt", domain=domain, agents=rules.labels)
        increment("robots_fetch", labels={"outcome": "parsed"})
        return rules

    async def get_rules(self, domain: str, scheme: Optional[str] = None) -> RobotsRuleSet:
        """Return the cached rules for ``domain``, fetching them when missing or expired."""
        if not self.enabled:
            return RobotsRuleSet.empty()
        domain = domain.lower()
        scheme = scheme or self.config.scheme

        cached = self._cache.get(domain)
        if cached is not None and not cached.is_expired(self._clock(), self.config.cache_ttl_ms):
            return cached

        lock = self._locks.setdefault(domain, asyncio.Lock())
        async with lock:
            # Another coroutine may have refreshed the entry while we waited.
            cached = self._cache.get(domain)
            if cached is not None and not cached.is_expired(self._clock(), self.config.cache_ttl_ms):
                return cached
            rules = await self._fetch_rules(domain, scheme)
            self._cache[domain] = rules
            return rules

    async def is_allowed(self, url: str, agent: Optional[str] = None) -> bool:
        if not self.enabled:
            return True
        domain = extract_domain(url)
        if domain is None:
            logger.warning("Could not parse URL for robots.txt check", url=url)
            return True
        rules = await self.get_rules(domain)
        return rules.is_allowed(extract_path(url), agent or self.config.user_agent)

    async def crawl_delay(self, url_or_domain: str, agent: Optional[str] = None) -> Optional[int]:
        """Crawl delay in milliseconds declared for ``agent``, or None."""
        if not self.enabled:
            return None
        domain = extract_domain(url_or_domain)
        if domain is None:
            return None
        rules = await self.get_rules(domain)
        return rules.crawl_delay(agent or self.config.user_agent)

    def is_cached(self, domain: str) -> bool:
        return domain.lower() in self._cache

    def clear_cache(self) -> None:
        self._cache.clear()

    async def close(self) -> None:
        """Closes the underlying HTTP client if it was created internally."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None
