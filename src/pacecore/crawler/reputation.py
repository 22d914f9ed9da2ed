"""
Per-domain success/failure history used to adapt request strategies.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional

import structlog

from pacecore.crawler.urls import explicit_port, extract_domain
from pacecore.observability import increment

logger = structlog.get_logger(__name__)

# Substrings counted in a domain's error histogram.
ERROR_BUCKETS = (
    "connection closed",
    "connection reset",
    "timeout",
    "ssl",
    "certificate",
    "proxy",
    "redirect",
    "refused",
)

PROBLEMATIC_BUCKETS = ("connection closed", "connection reset", "timeout", "ssl", "certificate")

KNOWN_ERROR_PATTERNS = (
    "connection closed before full header was received",
    "connection reset by peer",
    "failed to connect",
    "timeout",
    "ssl handshake",
    "certificate verify failed",
    "too many redirects",
    "proxy connection failed",
)

BROWSER_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
    "Connection": "keep-alive",
    "Upgrade-Insecure-Requests": "1",
    "Cache-Control": "max-age=0",
}

SEC_FETCH_HEADERS = {
    "Sec-Fetch-Dest": "document",
    "Sec-Fetch-Mode": "navigate",
    "Sec-Fetch-Site": "none",
    "Sec-Fetch-User": "?1",
}


@dataclass
class SiteReputation:
    """Outcome history for one domain."""

    domain: str
    success_count: int = 0
    failure_count: int = 0
    error_patterns: Dict[str, int] = field(default_factory=dict)
    last_access_time: float = 0.0

    @property
    def total_attempts(self) -> int:
        return self.success_count + self.failure_count

    @property
    def success_rate(self) -> float:
        total = self.total_attempts
        if total == 0:
            return 0.0
        return self.success_count / total

    def has_error_pattern(self, pattern: str) -> bool:
        return self.error_patterns.get(pattern, 0) > 0

    @property
    def has_problematic_errors(self) -> bool:
        return any(self.has_error_pattern(pattern) for pattern in PROBLEMATIC_BUCKETS)

    @property
    def most_common_error_pattern(self) -> Optional[str]:
        if not self.error_patterns:
            return None
        # max() keeps the first bucket on ties.
        return max(self.error_patterns, key=lambda pattern: self.error_patterns[pattern])

    def record_success(self, now: float) -> None:
        self.success_count += 1
        self.last_access_time = now

    def record_failure(self, message: str, now: float) -> List[str]:
        self.failure_count += 1
        self.last_access_time = now
        lowered = message.lower()
        matched = [bucket for bucket in ERROR_BUCKETS if bucket in lowered]
        for bucket in matched:
            self.error_patterns[bucket] = self.error_patterns.get(bucket, 0) + 1
        return matched

    def to_dict(self) -> Dict[str, Any]:
        return {
            "domain": self.domain,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "success_rate": round(self.success_rate, 3),
            "error_patterns": dict(self.error_patterns),
        }


class SiteReputationTracker:
    """
    Tracks per-domain reputations with a least-recently-accessed cap.

    Recording an outcome counts as an access; lookups do not.
    """

    def __init__(self, max_sites: int = 100, *, clock: Callable[[], float] = time.time):
        if max_sites <= 0:
            raise ValueError("max_sites must be positive")
        self.max_sites = max_sites
        self._clock = clock
        self._sites: "OrderedDict[str, SiteReputation]" = OrderedDict()

    def _touch(self, domain: str) -> SiteReputation:
        reputation = self._sites.get(domain)
        if reputation is None:
            reputation = SiteReputation(domain=domain)
            self._sites[domain] = reputation
        else:
            self._sites.move_to_end(domain)
        return reputation

    def _prune(self) -> None:
        while len(self._sites) > self.max_sites:
            evicted, _ = self._sites.popitem(last=False)
            logger.debug("Evicted site reputation", domain=evicted)

    def record_success(self, url: str) -> None:
        domain = extract_domain(url)
        if domain is None:
            return
        self._touch(domain).record_success(self._clock())
        increment("reputation_records", labels={"outcome": "success"})
        self._prune()

    def record_failure(self, url: str, message: str) -> None:
        domain = extract_domain(url)
        if domain is None:
            return
        matched = self._touch(domain).record_failure(message, self._clock())
        increment("reputation_records", labels={"outcome": "failure"})
        logger.debug("Recorded failure", domain=domain, buckets=matched)
        self._prune()

    def get_reputation(self, url: str) -> Optional[SiteReputation]:
        domain = extract_domain(url)
        if domain is None:
            return None
        return self._sites.get(domain)

    def is_problematic(self, url: str) -> bool:
        reputation = self.get_reputation(url)
        if reputation is not None:
            if reputation.success_rate < 0.5 and reputation.total_attempts >= 3:
                return True
            if reputation.has_problematic_errors:
                return True
        return explicit_port(url) == 443

    def get_optimal_headers(self, url: str, defaults: Mapping[str, str]) -> Dict[str, str]:
        headers = dict(defaults)
        reputation = self.get_reputation(url)
        if reputation is None or reputation.success_rate >= 0.7:
            return headers
        headers.update(BROWSER_HEADERS)
        if reputation.has_error_pattern("timeout"):
            headers["Keep-Alive"] = "timeout=15, max=100"
        if reputation.has_error_pattern("ssl") or reputation.has_error_pattern("certificate"):
            headers.update(SEC_FETCH_HEADERS)
        return headers

    def get_optimal_timeout(self, url: str, default: int) -> int:
        reputation = self.get_reputation(url)
        if reputation is None:
            return default
        if any(reputation.has_error_pattern(p) for p in ("timeout", "connection closed", "connection reset")):
            return default * 2
        return default

    def get_optimal_retries(self, url: str, default: int) -> int:
        reputation = self.get_reputation(url)
        if reputation is None:
            return default
        if reputation.total_attempts > 0 and reputation.success_rate < 0.5:
            return default * 2
        if reputation.has_problematic_errors:
            return default * 2
        return default

    @staticmethod
    def has_problematic_error_pattern(message: str) -> bool:
        lowered = message.lower()
        return any(pattern in lowered for pattern in KNOWN_ERROR_PATTERNS)

    @property
    def tracked_domains(self) -> List[str]:
        return list(self._sites)

    def __len__(self) -> int:
        return len(self._sites)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "tracked_sites": len(self._sites),
            "max_sites": self.max_sites,
            "sites": {domain: reputation.to_dict() for domain, reputation in self._sites.items()},
        }
