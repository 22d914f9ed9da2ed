"""
Unit tests for robots.txt parsing, matching and caching.
"""

import asyncio

import pytest

from pacecore.config.config import RobotsConfig
from pacecore.crawler.robots_parser import RobotsPolicyEngine, RobotsRuleSet
from pacecore.exceptions import HttpStatusError, NetworkError
from tests.helpers import FakeFetch, make_response

ROBOTS_URL = "https://example.com/robots.txt"


@pytest.mark.unit
class TestRobotsRuleSet:
    """Parsing and matching without any network."""

    def test_wildcard_disallow_and_allow_override(self):
        """Allow patterns win over Disallow patterns in the same group."""
        rules = RobotsRuleSet.parse("User-agent: *\nDisallow: /admin\nAllow: /admin/public\n")

        assert rules.is_allowed("/admin", "Bot") is False
        assert rules.is_allowed("/admin/public", "Bot") is True
        assert rules.is_allowed("/", "Bot") is True

    def test_pattern_kinds(self):
        """Exact, trailing-wildcard and directory patterns."""
        rules = RobotsRuleSet.parse(
            "User-agent: *\n"
            "Disallow: /exact\n"
            "Disallow: /tmp*\n"
            "Disallow: /private/\n"
        )

        assert rules.is_allowed("/exact", "bot") is False
        assert rules.is_allowed("/exact/child", "bot") is True
        assert rules.is_allowed("/tmpfile", "bot") is False
        assert rules.is_allowed("/private/data", "bot") is False
        assert rules.is_allowed("/private", "bot") is True

    def test_comments_and_case_insensitive_keys(self):
        """Comments are stripped and directive keys ignore case."""
        rules = RobotsRuleSet.parse("# header\nUSER-AGENT: *  # everyone\nDISALLOW: /secret/ # hidden\n")

        assert rules.is_allowed("/secret/file", "bot") is False

    def test_empty_disallow_is_ignored(self):
        """An empty Disallow value adds no rule."""
        rules = RobotsRuleSet.parse("User-agent: *\nDisallow:\n")

        assert rules.disallow == {}
        assert rules.is_allowed("/anything", "bot") is True

    def test_specific_agent_block_replaces_wildcard(self):
        """The most specific matching block is used on its own."""
        rules = RobotsRuleSet.parse(
            "User-agent: *\nDisallow: /\n\nUser-agent: GoodBot\nDisallow: /nogood/\n"
        )

        assert rules.is_allowed("/page", "GoodBot") is True
        assert rules.is_allowed("/nogood/page", "goodbot") is False
        assert rules.is_allowed("/page", "OtherBot") is False

    def test_substring_agent_match(self):
        """A label contained in the agent string selects its block."""
        rules = RobotsRuleSet.parse("User-agent: pacecorebot\nDisallow: /x/\n")

        assert rules.resolve_agent("Mozilla/5.0 (compatible; PaceCoreBot/1.0)") == "pacecorebot"
        assert rules.is_allowed("/x/1", "Mozilla/5.0 (compatible; PaceCoreBot/1.0)") is False

    def test_consecutive_user_agents_share_rules(self):
        """Consecutive User-agent lines form one group."""
        rules = RobotsRuleSet.parse("User-agent: a\nUser-agent: b\nDisallow: /shared/\n")

        assert rules.is_allowed("/shared/1", "a") is False
        assert rules.is_allowed("/shared/1", "b") is False

    def test_no_matching_block_allows(self):
        """Without a matching block or wildcard, everything is allowed."""
        rules = RobotsRuleSet.parse("User-agent: special\nDisallow: /\n")

        assert rules.is_allowed("/", "ordinary") is True

    def test_path_normalised(self):
        """Paths without a leading slash are normalised."""
        rules = RobotsRuleSet.parse("User-agent: *\nDisallow: /admin\n")

        assert rules.is_allowed("admin", "bot") is False

    def test_crawl_delay(self):
        """Crawl delays convert to milliseconds and fall back to the wildcard."""
        rules = RobotsRuleSet.parse(
            "User-agent: *\nCrawl-delay: 2\n\nUser-agent: fastbot\nCrawl-delay: 0.5\n\n"
            "User-agent: quietbot\nDisallow: /q/\n"
        )

        assert rules.crawl_delay("fastbot") == 500
        assert rules.crawl_delay("anybot") == 2000
        assert rules.crawl_delay("quietbot") == 2000

    def test_invalid_crawl_delay_ignored(self):
        """Non-numeric crawl delays are ignored."""
        rules = RobotsRuleSet.parse("User-agent: *\nCrawl-delay: soon\n")

        assert rules.crawl_delay("bot") is None

    def test_expiry(self):
        """Rule sets expire after the TTL."""
        rules = RobotsRuleSet.empty(fetched_at=100.0)

        assert rules.is_expired(100.5, ttl_ms=1000) is False
        assert rules.is_expired(101.5, ttl_ms=1000) is True


@pytest.mark.unit
class TestRobotsPolicyEngine:
    """Fetching and caching through an injected fetch primitive."""

    @pytest.mark.asyncio
    async def test_fetches_and_caches(self, fake_clock):
        """robots.txt is fetched once and served from cache afterwards."""
        fetch = FakeFetch({ROBOTS_URL: make_response(ROBOTS_URL, body=b"User-agent: *\nDisallow: /private/\n")})
        engine = RobotsPolicyEngine(RobotsConfig(), fetch, clock=fake_clock)

        assert await engine.is_allowed("https://example.com/private/a", "bot") is False
        assert await engine.is_allowed("https://example.com/public", "bot") is True
        assert len(fetch.calls) == 1
        assert engine.is_cached("example.com")

    @pytest.mark.asyncio
    async def test_refetches_after_ttl(self, fake_clock):
        """Expired rules trigger a new fetch."""
        fetch = FakeFetch({ROBOTS_URL: make_response(ROBOTS_URL, body=b"User-agent: *\nDisallow: /\n")})
        engine = RobotsPolicyEngine(RobotsConfig(cache_ttl_ms=1000), fetch, clock=fake_clock)

        await engine.get_rules("example.com")
        fake_clock.advance(2)
        await engine.get_rules("example.com")

        assert len(fetch.calls) == 2

    @pytest.mark.asyncio
    async def test_not_found_allows_everything(self, fake_clock):
        """A 404 is an intentional absence of rules."""
        engine = RobotsPolicyEngine(RobotsConfig(), FakeFetch(), clock=fake_clock)

        assert await engine.is_allowed("https://example.com/anything") is True
        assert await engine.crawl_delay("example.com") is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "outcome",
        [
            make_response(ROBOTS_URL, status=500, body=b"User-agent: *\nDisallow: /\n"),
            NetworkError("connection refused"),
            HttpStatusError("HTTP 503", status=503),
            HttpStatusError("HTTP 404", status=404),
        ],
    )
    async def test_failures_are_permissive(self, fake_clock, outcome):
        """Errors and unexpected statuses yield an empty, permissive rule set."""
        engine = RobotsPolicyEngine(RobotsConfig(), FakeFetch({ROBOTS_URL: outcome}), clock=fake_clock)

        assert await engine.is_allowed("https://example.com/") is True
        assert engine.is_cached("example.com")

    @pytest.mark.asyncio
    async def test_oversized_body_ignored(self, fake_clock):
        """Bodies above the size limit are treated as absent."""
        body = b"User-agent: *\nDisallow: /\n" + b"#" * 100
        fetch = FakeFetch({ROBOTS_URL: make_response(ROBOTS_URL, body=body)})
        engine = RobotsPolicyEngine(RobotsConfig(max_size_bytes=50), fetch, clock=fake_clock)

        assert await engine.is_allowed("https://example.com/") is True

    @pytest.mark.asyncio
    async def test_concurrent_lookups_share_one_fetch(self, fake_clock):
        """Concurrent first lookups for one domain are coalesced."""
        fetch = FakeFetch({ROBOTS_URL: make_response(ROBOTS_URL, body=b"User-agent: *\nDisallow: /x/\n")})
        engine = RobotsPolicyEngine(RobotsConfig(), fetch, clock=fake_clock)

        results = await asyncio.gather(*(engine.is_allowed(f"https://example.com/x/{i}") for i in range(5)))

        assert results == [False] * 5
        assert len(fetch.calls) == 1

    @pytest.mark.asyncio
    async def test_disabled_never_fetches(self, fake_clock):
        """With robots handling disabled nothing is fetched."""
        fetch = FakeFetch()
        engine = RobotsPolicyEngine(RobotsConfig(respect_robots_txt=False), fetch, clock=fake_clock)

        assert await engine.is_allowed("https://example.com/admin") is True
        assert await engine.crawl_delay("https://example.com/") is None
        assert fetch.calls == []

    @pytest.mark.asyncio
    async def test_uses_configured_agent_and_scheme(self, fake_clock):
        """The fetch uses the configured scheme and sends the configured agent."""
        fetch = FakeFetch()
        engine = RobotsPolicyEngine(RobotsConfig(scheme="http", user_agent="TestBot/1.0"), fetch, clock=fake_clock)

        await engine.get_rules("Example.COM")

        url, headers, _, proxy = fetch.calls[0]
        assert url == "http://example.com/robots.txt"
        assert headers["User-Agent"] == "TestBot/1.0"
        assert proxy is None

    @pytest.mark.asyncio
    async def test_crawl_delay_for_agent(self, fake_clock):
        """Crawl delay is resolved for the requested agent."""
        fetch = FakeFetch({ROBOTS_URL: make_response(ROBOTS_URL, body=b"User-agent: *\nCrawl-delay: 3\n")})
        engine = RobotsPolicyEngine(RobotsConfig(), fetch, clock=fake_clock)

        assert await engine.crawl_delay("https://example.com/page", "AnyBot") == 3000

    @pytest.mark.asyncio
    async def test_clear_cache(self, fake_clock):
        """Clearing the cache forces a refetch."""
        fetch = FakeFetch()
        engine = RobotsPolicyEngine(RobotsConfig(), fetch, clock=fake_clock)

        await engine.get_rules("example.com")
        engine.clear_cache()
        assert not engine.is_cached("example.com")
        await engine.get_rules("example.com")

        assert len(fetch.calls) == 2

    @pytest.mark.asyncio
    async def test_default_client_unusable_after_close(self):
        """The built-in httpx fetch refuses to run once the engine is closed."""
        engine = RobotsPolicyEngine(RobotsConfig())
        await engine.close()

        with pytest.raises(RuntimeError, match="not initialized"):
            await engine._fetch(ROBOTS_URL, {}, 1000, None)
