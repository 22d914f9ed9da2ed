"""
Unit tests for adaptive strategy selection and proxy choice.
"""

import random

import pytest

from pacecore.config.config import StrategyConfig
from pacecore.crawler.reputation import SiteReputationTracker
from pacecore.crawler.strategy import AdaptiveStrategyEngine, Proxy, ScrapeStrategy
from pacecore.crawler.user_agents import DEFAULT_USER_AGENTS, UserAgentRotator

URL = "https://example.com/page"


@pytest.fixture
def engine():
    return AdaptiveStrategyEngine(
        SiteReputationTracker(),
        ScrapeStrategy.from_config(StrategyConfig()),
        UserAgentRotator(rng=random.Random(7)),
    )


@pytest.mark.unit
class TestScrapeStrategy:
    """Value semantics of a strategy."""

    def test_defaults_from_config(self):
        """The default strategy mirrors StrategyConfig."""
        strategy = ScrapeStrategy.from_config(StrategyConfig())

        assert strategy.retries == 3
        assert strategy.timeout_ms == 30_000
        assert strategy.initial_backoff_ms == 1000
        assert strategy.backoff_multiplier == 1.5
        assert strategy.max_backoff_ms == 10_000
        assert strategy.use_random_user_agent is False
        assert "User-Agent" in strategy.headers

    def test_headers_are_read_only(self):
        """Headers cannot be mutated in place."""
        strategy = ScrapeStrategy(headers={"A": "1"})

        with pytest.raises(TypeError):
            strategy.headers["A"] = "2"  # type: ignore[index]

    def test_copy_with_returns_new_value(self):
        """copy_with leaves the original untouched."""
        strategy = ScrapeStrategy(retries=1)
        changed = strategy.copy_with(retries=5)

        assert strategy.retries == 1
        assert changed.retries == 5

    def test_backoff_is_capped(self):
        """Outer retry backoff grows geometrically up to the cap."""
        strategy = ScrapeStrategy(initial_backoff_ms=1000, backoff_multiplier=2.0, max_backoff_ms=5000)

        assert [strategy.backoff_ms(i) for i in range(5)] == [1000, 2000, 4000, 5000, 5000]


@pytest.mark.unit
class TestAdaptiveStrategyEngine:
    """Strategy derivation from reputation."""

    def test_unknown_site_gets_defaults(self, engine):
        """Without history the default strategy is returned."""
        assert engine.get_strategy_for_url(URL) == engine.default_strategy

    def test_problematic_site_escalates(self, engine):
        """Low success rate doubles retries and timeout and halves initial backoff."""
        for _ in range(3):
            engine.record_failure(URL, "HTTP 500")

        strategy = engine.get_strategy_for_url(URL)

        # x2 for being problematic, x2 again from the tracker's retry refinement.
        assert strategy.retries == 12
        assert strategy.timeout_ms == 60_000
        assert strategy.initial_backoff_ms == 500
        assert strategy.use_random_user_agent is True
        assert strategy.rotate_proxies_on_retry is True
        assert strategy.validate_proxies is True
        assert strategy.headers["User-Agent"] in DEFAULT_USER_AGENTS

    def test_timeout_history(self, engine):
        """Timeouts lengthen the timeout and steepen backoff."""
        engine.record_success(URL)
        engine.record_success(URL)
        engine.record_failure(URL, "request timeout")

        strategy = engine.get_strategy_for_url(URL)

        # problematic x2, tracker x2, timeout bucket x2
        assert strategy.timeout_ms == 30_000 * 8
        assert strategy.backoff_multiplier == 2.0
        assert strategy.headers["Keep-Alive"] == "timeout=15, max=100"

    def test_connection_reset_shortens_backoff(self, engine):
        """Dropped connections shorten the initial backoff."""
        engine.record_success(URL)
        engine.record_success(URL)
        engine.record_failure(URL, "connection reset by peer")

        strategy = engine.get_strategy_for_url(URL)

        assert strategy.initial_backoff_ms == int(int(1000 * 0.5) * 0.3)
        assert strategy.rotate_proxies_on_retry is True

    def test_tls_history_adds_sec_fetch_headers(self, engine):
        """TLS failures add Sec-Fetch headers."""
        engine.record_failure(URL, "certificate verify failed")

        strategy = engine.get_strategy_for_url(URL)

        assert strategy.headers["Sec-Fetch-Mode"] == "navigate"

    def test_strategy_is_recomputed(self, engine):
        """Recording outcomes changes the next strategy immediately."""
        before = engine.get_strategy_for_url(URL)
        engine.record_failure(URL, "timeout")
        after = engine.get_strategy_for_url(URL)

        assert after.timeout_ms > before.timeout_ms


@pytest.mark.unit
class TestProxySelection:
    """select_optimal_proxy heuristics."""

    CANDIDATES = ["http://10.0.0.1:8080", "http://10.0.0.2:8080", "http://192.168.1.1:8080"]

    def test_empty_candidates(self, engine):
        """No candidates yields None."""
        assert engine.select_optimal_proxy(URL, [], "timeout") is None

    def test_default_is_first(self, engine):
        """Without an error the first candidate is used."""
        assert engine.select_optimal_proxy(URL, self.CANDIDATES, None) == self.CANDIDATES[0]

    def test_connection_error_uses_last_candidate_as_reference(self, engine):
        """Without last_used the last candidate is the reference proxy."""
        choice = engine.select_optimal_proxy(URL, self.CANDIDATES, "Connection reset by peer")

        assert choice == "http://10.0.0.1:8080"

    def test_connection_error_avoids_last_used_network(self, engine):
        """A proxy from a different first octet than last_used is preferred."""
        choice = engine.select_optimal_proxy(
            URL, self.CANDIDATES, "timeout", last_used="http://10.0.0.9:8080"
        )

        assert choice == "http://192.168.1.1:8080"

    def test_ssl_error_takes_second(self, engine):
        """TLS errors move to the second candidate."""
        assert engine.select_optimal_proxy(URL, self.CANDIDATES, "SSL handshake failed") == self.CANDIDATES[1]
        assert engine.select_optimal_proxy(URL, self.CANDIDATES[:1], "ssl") == self.CANDIDATES[0]

    def test_proxy_parsing(self):
        """Proxy URLs round-trip through the Proxy value."""
        proxy = Proxy.from_url("user:pw@172.16.0.5:3128")

        assert proxy.host == "172.16.0.5"
        assert proxy.port == 3128
        assert proxy.first_octet == "172"
        assert proxy.url == "http://user:pw@172.16.0.5:3128"
