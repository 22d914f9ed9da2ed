"""
PaceCore Crawler Module - Request Orchestration for Hostile Targets

Decides when each outbound request may run, how it is retried and which
policy applies to it.

Key Features:
- robots.txt rules with TTL caching and crawl-delay support
- Per-domain success/failure reputation with LRU eviction
- Adaptive per-request strategy (headers, timeout, backoff, proxy rotation)
- Per-domain priority queues with spacing, jitter and 429 backoff
- Global concurrency bound over all in-flight work
"""

from .http_client import HttpFetcher, StaticProxySource, robots_fetch_adapter
from .orchestrator import RequestOrchestrator
from .rate_limiter import DomainRateLimiter, QueuedRequest, RateLimitStatus
from .reputation import SiteReputation, SiteReputationTracker
from .robots_parser import RobotsPolicyEngine, RobotsRuleSet
from .scheduler import ScrapingTask, TaskScheduler
from .strategy import AdaptiveStrategyEngine, Proxy, ScrapeStrategy
from .user_agents import UserAgentRotator

__all__ = [
    "AdaptiveStrategyEngine",
    "DomainRateLimiter",
    "HttpFetcher",
    "Proxy",
    "QueuedRequest",
    "RateLimitStatus",
    "RequestOrchestrator",
    "RobotsPolicyEngine",
    "RobotsRuleSet",
    "ScrapeStrategy",
    "ScrapingTask",
    "SiteReputation",
    "SiteReputationTracker",
    "StaticProxySource",
    "TaskScheduler",
    "UserAgentRotator",
    "robots_fetch_adapter",
]
