"""
Composition of the crawler components into a single fetch entry point.

A request passes through, in order: the robots.txt check, a scheduler slot,
and then one or more attempts, each paced by the domain rate limiter. Every
attempt recomputes the strategy so that failures recorded by earlier attempts
immediately shape the next one.
"""

from __future__ import annotations

import asyncio
import uuid
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Set, Union

import structlog

from pacecore.config.config import Config, settings
from pacecore.crawler.http_client import HttpFetcher, StaticProxySource, robots_fetch_adapter
from pacecore.crawler.rate_limiter import DomainRateLimiter
from pacecore.crawler.reputation import SiteReputationTracker
from pacecore.crawler.robots_parser import RobotsPolicyEngine
from pacecore.crawler.scheduler import TaskScheduler
from pacecore.crawler.strategy import AdaptiveStrategyEngine, ScrapeStrategy
from pacecore.crawler.urls import extract_domain
from pacecore.exceptions import (
    NetworkError,
    PaceCoreError,
    RateLimitError,
    RobotsDisallowedError,
    error_message,
)
from pacecore.protocols import FetchFn, FetchResponse, ProxySource

logger = structlog.get_logger(__name__)


class RequestOrchestrator:
    """Runs fetches under robots, concurrency, pacing and adaptive retry policy."""

    def __init__(
        self,
        fetch: FetchFn,
        *,
        robots: RobotsPolicyEngine,
        strategy_engine: AdaptiveStrategyEngine,
        rate_limiter: DomainRateLimiter,
        scheduler: TaskScheduler,
        proxy_source: Optional[ProxySource] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        owned_fetcher: Optional[HttpFetcher] = None,
    ):
        self._fetch = fetch
        self.robots = robots
        self.strategy_engine = strategy_engine
        self.rate_limiter = rate_limiter
        self.scheduler = scheduler
        self.proxy_source = proxy_source
        self._sleep = sleep
        self._owned_fetcher = owned_fetcher

    @property
    def tracker(self) -> SiteReputationTracker:
        return self.strategy_engine.tracker

    @classmethod
    def from_config(
        cls,
        config: Optional[Config] = None,
        fetch: Optional[FetchFn] = None,
        *,
        proxy_source: Optional[ProxySource] = None,
    ) -> RequestOrchestrator:
        """Build every component from ``config``, using aiohttp when no fetch primitive is given."""
        config = config if config is not None else settings

        owned_fetcher: Optional[HttpFetcher] = None
        if fetch is None:
            owned_fetcher = HttpFetcher(config.http)
            fetch = owned_fetcher
            robots_fetch: FetchFn = robots_fetch_adapter(owned_fetcher)
        else:
            robots_fetch = fetch

        robots = RobotsPolicyEngine(config.robots, robots_fetch)
        tracker = SiteReputationTracker(config.reputation.max_tracked_sites)
        strategy_engine = AdaptiveStrategyEngine(tracker, ScrapeStrategy.from_config(config.strategy))
        rate_limiter = DomainRateLimiter(
            config.rate_limiter,
            robots if config.robots.respect_robots_txt else None,
        )
        scheduler = TaskScheduler(config=config.scheduler)

        if proxy_source is None and config.proxy.urls:
            proxy_source = StaticProxySource.from_config(config.proxy, test_mode=config.debug.test_mode)

        logger.debug(
            "Orchestrator configured",
            max_concurrency=scheduler.max_concurrency,
            default_delay_ms=config.rate_limiter.default_delay_ms,
            respect_robots_txt=config.robots.respect_robots_txt,
            proxies=len(proxy_source.candidates()) if proxy_source is not None else 0,
        )
        return cls(
            fetch,
            robots=robots,
            strategy_engine=strategy_engine,
            rate_limiter=rate_limiter,
            scheduler=scheduler,
            proxy_source=proxy_source,
            owned_fetcher=owned_fetcher,
        )

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    async def fetch(self, url: str, priority: int = 0, agent: Optional[str] = None) -> FetchResponse:
        """
        Fetch ``url`` and return its response.

        Raises :class:`RobotsDisallowedError` before taking a scheduler slot,
        a rate-limit slot or a proxy when robots.txt forbids the URL.
        """
        with structlog.contextvars.bound_contextvars(request_id=uuid.uuid4().hex[:12]):
            if not await self.robots.is_allowed(url, agent):
                error = RobotsDisallowedError(url, agent=agent, domain=extract_domain(url))
                self.strategy_engine.record_failure(url, error.message)
                logger.info("Blocked by robots.txt", url=url, agent=agent)
                raise error

            future = self.scheduler.add_task(
                partial(self._attempt_loop, url, agent, priority),
                priority,
                name=url,
                url=url,
            )
            return await future

    async def fetch_many(
        self, urls: Sequence[str], priority: int = 0, agent: Optional[str] = None
    ) -> List[Union[FetchResponse, BaseException]]:
        """Fetch all ``urls`` concurrently; failures are returned in place of responses."""
        return await asyncio.gather(
            *(self.fetch(url, priority=priority, agent=agent) for url in urls),
            return_exceptions=True,
        )

    async def _attempt_loop(self, url: str, agent: Optional[str], priority: int) -> FetchResponse:
        attempt = 0
        last_message: Optional[str] = None
        last_proxy: Optional[str] = None

        while True:
            strategy = self.strategy_engine.get_strategy_for_url(url)
            proxy = await self._choose_proxy(url, strategy, attempt, last_message, last_proxy)
            try:
                return await self.rate_limiter.execute(
                    url,
                    partial(self._fetch_once, url, strategy.headers, strategy.timeout_ms, proxy),
                    agent=agent,
                    priority=priority,
                )
            except PaceCoreError as exc:
                exc.attach_context(url=url, domain=extract_domain(url), retry_count=attempt)
                if isinstance(exc, RateLimitError) or not exc.retryable or attempt >= strategy.retries:
                    logger.warning(
                        "Request failed",
                        url=url,
                        kind=exc.kind.value,
                        retry_count=attempt,
                        error=exc.last_error,
                    )
                    raise
                delay_ms = strategy.backoff_ms(attempt)
                last_message = error_message(exc)
                last_proxy = proxy
                attempt += 1
                logger.info(
                    "Retrying request",
                    url=url,
                    retry_count=attempt,
                    max_retries=strategy.retries,
                    wait_ms=delay_ms,
                    error=last_message,
                )
                await self._sleep(delay_ms / 1000)

    async def _fetch_once(
        self, url: str, headers: Mapping[str, str], timeout_ms: int, proxy: Optional[str]
    ) -> FetchResponse:
        try:
            response = await self._fetch(url, headers, timeout_ms, proxy)
        except Exception as exc:
            self.strategy_engine.record_failure(url, error_message(exc))
            raise
        self.strategy_engine.record_success(url)
        return response

    async def _choose_proxy(
        self,
        url: str,
        strategy: ScrapeStrategy,
        attempt: int,
        last_message: Optional[str],
        last_proxy: Optional[str],
    ) -> Optional[str]:
        source = self.proxy_source
        if source is None:
            return None

        if attempt == 0:
            proxy = source.next_proxy()
        elif not strategy.rotate_proxies_on_retry and last_proxy is not None:
            proxy = last_proxy
        else:
            candidates = [candidate for candidate in source.candidates() if candidate != last_proxy]
            proxy = self.strategy_engine.select_optimal_proxy(
                url, candidates or source.candidates(), last_message, last_used=last_proxy
            )

        if not strategy.validate_proxies:
            return proxy

        rejected: Set[str] = set()
        while proxy is not None and not await source.revalidate(proxy):
            logger.info("Proxy failed validation", proxy=proxy, url=url)
            rejected.add(proxy)
            remaining = [candidate for candidate in source.candidates() if candidate not in rejected]
            proxy = remaining[0] if remaining else None
        if proxy is None and rejected:
            logger.warning("No valid proxy available", url=url, rejected=len(rejected))
            raise NetworkError("no valid proxy available", url=url, domain=extract_domain(url))
        return proxy

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def get_stats(self) -> Dict[str, Any]:
        return {
            "scheduler": self.scheduler.get_stats(),
            "rate_limiter": self.rate_limiter.get_stats(),
            "reputation": self.tracker.get_stats(),
        }

    async def close(self) -> None:
        await self.scheduler.close()
        await self.rate_limiter.close()
        await self.robots.close()
        if self._owned_fetcher is not None:
            await self._owned_fetcher.close()

    async def __aenter__(self) -> RequestOrchestrator:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
