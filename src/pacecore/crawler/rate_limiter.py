"""
Per-domain request pacing with priority queues and rate-limit backoff.

Each domain owns a priority queue drained by at most one asyncio task. The
drain task spaces consecutive requests by the largest applicable delay
(robots.txt crawl-delay, per-domain override, global default) and holds the
whole domain back after a rate-limit response until its retry-after passes.
Rate-limited requests are re-queued with their original position so they run
again ahead of later submissions.
"""

from __future__ import annotations

import asyncio
import bisect
import dataclasses
import itertools
import random
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Tuple

import structlog

from pacecore.config.config import RateLimiterConfig
from pacecore.crawler.urls import extract_domain
from pacecore.exceptions import (
    CancellationError,
    ErrorClassification,
    ParsingError,
    RateLimitError,
    classify_error,
    wrap_error,
)
from pacecore.observability import gauge, increment

if TYPE_CHECKING:
    from pacecore.crawler.robots_parser import RobotsPolicyEngine

logger = structlog.get_logger(__name__)

RequestFn = Callable[[], Awaitable[Any]]


@dataclass
class RateLimitStatus:
    """Backoff state of a domain after a rate-limit response."""

    domain: str
    retry_after: float
    retry_count: int = 0
    current_backoff_ms: int = 0

    def remaining_ms(self, now: float) -> float:
        return max(0.0, (self.retry_after - now) * 1000)


@dataclass
class QueuedRequest:
    """A unit of work waiting in a domain queue."""

    fn: RequestFn
    priority: int
    enqueued_at: float
    sequence: int
    url: str
    domain: str
    future: asyncio.Future
    agent: Optional[str] = None
    retry_count: int = 0

    @property
    def sort_key(self) -> Tuple[int, float, int]:
        return (-self.priority, self.enqueued_at, self.sequence)


def _sort_key(request: QueuedRequest) -> Tuple[int, float, int]:
    return request.sort_key


class DomainRateLimiter:
    """
    Serialises and paces requests per domain.

    ``clock`` must be monotonic and return seconds; ``sleep`` must be an
    awaitable taking seconds. Both are injectable so tests can run on a
    virtual clock.
    """

    def __init__(
        self,
        config: Optional[RateLimiterConfig] = None,
        robots: Optional[RobotsPolicyEngine] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.config = config or RateLimiterConfig()
        self.robots = robots
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()

        self._domain_delays: Dict[str, int] = dict(self.config.domain_delays_ms)
        self._queues: Dict[str, List[QueuedRequest]] = {}
        self._drainers: Dict[str, asyncio.Task] = {}
        self._last_request: Dict[str, float] = {}
        self._statuses: Dict[str, RateLimitStatus] = {}
        self._sequence = itertools.count()
        self._closed = False

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit(
        self,
        url: str,
        fn: RequestFn,
        agent: Optional[str] = None,
        priority: int = 0,
    ) -> asyncio.Future:
        """
        Enqueue ``fn`` for the domain of ``url`` and return a future for its result.

        The future may be cancelled by the caller until ``fn`` starts; the
        drain task then skips the request.
        """
        if self._closed:
            raise CancellationError("Rate limiter is closed", url=url)
        domain = extract_domain(url)
        if domain is None:
            raise ParsingError(f"Cannot resolve domain from URL: {url}", url=url)

        loop = asyncio.get_running_loop()
        request = QueuedRequest(
            fn=fn,
            priority=priority,
            enqueued_at=self._clock(),
            sequence=next(self._sequence),
            url=url,
            domain=domain,
            future=loop.create_future(),
            agent=agent,
        )
        queue = self._queues.setdefault(domain, [])
        bisect.insort(queue, request, key=_sort_key)
        gauge("ratelimit_queue_depth", len(queue), labels={"domain": domain})

        if domain not in self._drainers:
            self._drainers[domain] = loop.create_task(self._drain(domain), name=f"pacecore-drain-{domain}")
        return request.future

    async def execute(
        self,
        url: str,
        fn: RequestFn,
        agent: Optional[str] = None,
        priority: int = 0,
    ) -> Any:
        """Run ``fn`` under the pacing rules of the domain of ``url``."""
        return await self.submit(url, fn, agent=agent, priority=priority)

    # ------------------------------------------------------------------
    # Drain loop
    # ------------------------------------------------------------------

    async def _drain(self, domain: str) -> None:
        queue = self._queues[domain]
        try:
            while queue:
                head = queue[0]
                if head.future.done():
                    queue.pop(0)
                    continue

                wait_ms = await self._compute_wait_ms(domain, head)
                if wait_ms > 0:
                    increment("ratelimit_waits")
                    logger.debug("Waiting before next request", domain=domain, wait_ms=round(wait_ms))
                    await self._sleep(wait_ms / 1000)

                request = self._pop_ready(queue)
                if request is None:
                    break
                gauge("ratelimit_queue_depth", len(queue), labels={"domain": domain})
                self._last_request[domain] = self._clock()
                await self._run(domain, request, queue)
        finally:
            # No await between the empty-queue check above and this removal,
            # so a concurrent submit either sees this drainer or starts a new one.
            self._drainers.pop(domain, None)
            if not queue and self._queues.get(domain) is queue:
                del self._queues[domain]

    @staticmethod
    def _pop_ready(queue: List[QueuedRequest]) -> Optional[QueuedRequest]:
        while queue:
            request = queue.pop(0)
            if not request.future.done():
                return request
        return None

    def _base_delay_ms(self, domain: str) -> int:
        return max(self.config.default_delay_ms, self._domain_delays.get(domain, 0))

    async def _compute_wait_ms(self, domain: str, request: QueuedRequest) -> float:
        base_ms: float = self._base_delay_ms(domain)
        if self.robots is not None:
            robots_delay = await self.robots.crawl_delay(domain, request.agent)
            if robots_delay is not None:
                base_ms = max(base_ms, robots_delay)

        now = self._clock()
        backoff_ms = 0.0
        status = self._statuses.get(domain)
        if status is not None:
            backoff_ms = status.remaining_ms(now)

        spacing_ms = 0.0
        last = self._last_request.get(domain)
        if last is not None:
            remaining = base_ms - (now - last) * 1000
            if remaining > 0:
                spacing_ms = self._jitter(remaining)
        return max(backoff_ms, spacing_ms)

    def _jitter(self, wait_ms: float) -> float:
        ratio = self.config.jitter_ratio
        return max(0.0, wait_ms + wait_ms * ratio * (self._rng.random() * 2 - 1))

    async def _run(self, domain: str, request: QueuedRequest, queue: List[QueuedRequest]) -> None:
        try:
            result = await request.fn()
        except asyncio.CancelledError:
            task = asyncio.current_task()
            if task is not None and task.cancelling():
                self._reject(
                    request,
                    CancellationError("Request cancelled while running", url=request.url, domain=domain),
                )
                raise
            self._reject(
                request,
                CancellationError("Request was cancelled", url=request.url, domain=domain),
            )
        except Exception as exc:
            self._handle_failure(domain, request, queue, exc)
        else:
            if self._statuses.pop(domain, None) is not None:
                logger.info("Rate limit cleared after success", domain=domain)
            if not request.future.done():
                request.future.set_result(result)

    def _handle_failure(
        self,
        domain: str,
        request: QueuedRequest,
        queue: List[QueuedRequest],
        exc: Exception,
    ) -> None:
        classification = classify_error(exc)
        if not classification.is_rate_limit:
            error = wrap_error(exc, classification)
            error.attach_context(url=request.url, domain=domain, retry_count=request.retry_count)
            self._reject(request, error)
            return

        status = self._register_rate_limit(domain, classification)
        increment("ratelimit_hits", labels={"domain": domain})

        if request.retry_count < self.config.max_retries and not request.future.done():
            request.retry_count += 1
            status.retry_count = request.retry_count
            bisect.insort(queue, request, key=_sort_key)
            gauge("ratelimit_queue_depth", len(queue), labels={"domain": domain})
            logger.warning(
                "Rate limited, request re-queued",
                domain=domain,
                url=request.url,
                retry_count=request.retry_count,
                max_retries=self.config.max_retries,
                wait_ms=round(status.remaining_ms(self._clock())),
            )
            return

        error = RateLimitError(
            f"Rate limit retries exhausted for {domain}",
            retry_after_seconds=classification.retry_after_seconds,
            url=request.url,
            domain=domain,
            retry_count=request.retry_count,
        )
        error.__cause__ = exc
        logger.warning("Rate limit retries exhausted", domain=domain, url=request.url, retry_count=request.retry_count)
        self._reject(request, error)

    def _register_rate_limit(self, domain: str, classification: ErrorClassification) -> RateLimitStatus:
        now = self._clock()
        status = self._statuses.get(domain)
        if status is None:
            status = RateLimitStatus(domain=domain, retry_after=now, current_backoff_ms=self.config.initial_backoff_ms)
            self._statuses[domain] = status
        else:
            status.current_backoff_ms = min(
                self.config.max_backoff_ms,
                int(status.current_backoff_ms * self.config.backoff_multiplier),
            )

        retry_after_s = classification.retry_after_seconds
        if retry_after_s is None:
            retry_after_s = self.config.default_retry_after_seconds
        status.retry_after = now + max(retry_after_s, status.current_backoff_ms / 1000)
        return status

    @staticmethod
    def _reject(request: QueuedRequest, error: BaseException) -> None:
        if not request.future.done():
            request.future.set_exception(error)

    # ------------------------------------------------------------------
    # Configuration and introspection
    # ------------------------------------------------------------------

    def set_domain_delay(self, domain: str, delay_ms: int) -> None:
        if delay_ms < 0:
            raise ValueError("delay_ms must be non-negative")
        self._domain_delays[domain.lower()] = delay_ms
        logger.info("Set custom domain delay", domain=domain, delay_ms=delay_ms)

    def get_domain_delay(self, domain: str) -> int:
        return self._domain_delays.get(domain.lower(), self.config.default_delay_ms)

    def get_rate_limit_status(self, domain: str) -> Optional[RateLimitStatus]:
        """Return a snapshot of the domain's backoff, or None once it has expired."""
        status = self._statuses.get(domain.lower())
        if status is None or status.retry_after <= self._clock():
            return None
        return dataclasses.replace(status)

    def clear_rate_limit(self, domain: str) -> None:
        self._statuses.pop(domain.lower(), None)
        logger.info("Cleared rate limit status", domain=domain)

    def clear_all_rate_limits(self) -> None:
        self._statuses.clear()
        logger.info("Cleared all rate limit statuses")

    def queue_length(self, domain: str) -> int:
        return len(self._queues.get(domain.lower(), ()))

    def is_draining(self, domain: str) -> bool:
        return domain.lower() in self._drainers

    def get_stats(self) -> Dict[str, Any]:
        now = self._clock()
        domains: Dict[str, Any] = {}
        for domain in set(self._queues) | set(self._statuses) | set(self._domain_delays):
            status = self._statuses.get(domain)
            domains[domain] = {
                "queue_length": self.queue_length(domain),
                "draining": self.is_draining(domain),
                "delay_ms": self._base_delay_ms(domain),
                "rate_limited": status is not None and status.retry_after > now,
                "backoff_remaining_ms": round(status.remaining_ms(now)) if status else 0,
            }
        return {
            "default_delay_ms": self.config.default_delay_ms,
            "total_queued": sum(len(queue) for queue in self._queues.values()),
            "domains": domains,
        }

    async def close(self) -> None:
        """Reject everything still queued and stop all drain tasks."""
        self._closed = True
        for domain, queue in list(self._queues.items()):
            while queue:
                request = queue.pop(0)
                self._reject(request, CancellationError("Rate limiter closed", url=request.url, domain=domain))
        drainers = list(self._drainers.values())
        for task in drainers:
            task.cancel()
        if drainers:
            await asyncio.gather(*drainers, return_exceptions=True)
        self._drainers.clear()
        self._queues.clear()
