"""
aiohttp-backed fetch primitive and a static proxy pool.

:class:`HttpFetcher` is callable with the ``FetchFn`` signature, so it can be
handed to the orchestrator and the robots engine directly.
"""

from __future__ import annotations

import asyncio
import random
import time
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence

import aiohttp
import structlog

from pacecore.config.config import HttpConfig, ProxyConfig
from pacecore.exceptions import HttpStatusError, NetworkError, RateLimitError, parse_retry_after
from pacecore.observability import histogram
from pacecore.protocols import FetchFn, FetchResponse

logger = structlog.get_logger(__name__)


class HttpFetcher:
    """Pooled aiohttp session that maps transport and status failures onto PaceCore errors."""

    def __init__(self, config: Optional[HttpConfig] = None, session: Optional[aiohttp.ClientSession] = None):
        self.config = config or HttpConfig()
        self.session = session
        self._owns_session = session is None

    async def initialize(self) -> None:
        """Initialize the HTTP client session."""
        if self.session is None:
            connector = aiohttp.TCPConnector(
                limit=self.config.connection_limit,
                limit_per_host=self.config.connections_per_host,
                ttl_dns_cache=self.config.dns_cache_ttl,
                use_dns_cache=True,
                keepalive_timeout=self.config.keepalive_timeout,
                ssl=self.config.verify_ssl,
            )
            self.session = aiohttp.ClientSession(connector=connector)
            self._owns_session = True
            logger.debug("HTTP session initialized", limit=self.config.connection_limit)

    async def close(self) -> None:
        """Close the HTTP client and clean up resources."""
        if self.session is not None and self._owns_session:
            await self.session.close()
        self.session = None

    async def __aenter__(self) -> HttpFetcher:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def __call__(
        self, url: str, headers: Mapping[str, str], timeout_ms: int, proxy: Optional[str] = None
    ) -> FetchResponse:
        return await self.fetch(url, headers, timeout_ms, proxy)

    async def fetch(
        self,
        url: str,
        headers: Mapping[str, str],
        timeout_ms: int,
        proxy: Optional[str] = None,
        *,
        raise_for_status: bool = True,
    ) -> FetchResponse:
        """
        GET ``url`` and return the response.

        With ``raise_for_status`` a 429 raises :class:`RateLimitError` carrying
        the parsed ``Retry-After``, and any other status of 400 or above except
        404 raises :class:`HttpStatusError`. Transport failures always raise
        :class:`NetworkError`.
        """
        await self.initialize()
        if self.session is None:
            raise RuntimeError("HTTP client not initialized")

        started = time.monotonic()
        try:
            async with self.session.get(
                url,
                headers=dict(headers),
                proxy=proxy,
                timeout=aiohttp.ClientTimeout(total=timeout_ms / 1000),
            ) as response:
                body = await response.read()
                status = response.status
                response_headers = {key: value for key, value in response.headers.items()}
                final_url = str(response.url)
        except asyncio.TimeoutError as e:
            raise NetworkError(f"timeout after {timeout_ms}ms", url=url) from e
        except aiohttp.TooManyRedirects as e:
            raise NetworkError(f"too many redirects: {e}", url=url) from e
        except aiohttp.ClientProxyConnectionError as e:
            raise NetworkError(f"proxy connection failed: {e}", url=url, details={"proxy": proxy}) from e
        except aiohttp.ClientSSLError as e:
            raise NetworkError(f"ssl handshake failed: {e}", url=url) from e
        except aiohttp.ServerDisconnectedError as e:
            raise NetworkError(f"connection closed by server: {e}", url=url) from e
        except aiohttp.ClientConnectorError as e:
            raise NetworkError(f"failed to connect: {e}", url=url) from e
        except aiohttp.ClientError as e:
            raise NetworkError(f"connection error: {e}", url=url) from e
        finally:
            elapsed = time.monotonic() - started
            histogram("fetch_latency_seconds", elapsed)

        if len(body) > self.config.max_body_bytes:
            logger.warning("Response body truncated", url=url, size=len(body), limit=self.config.max_body_bytes)
            body = body[: self.config.max_body_bytes]

        logger.debug("Fetched", url=url, status=status, size=len(body), elapsed_ms=round(elapsed * 1000), proxy=proxy)

        if raise_for_status:
            if status == 429:
                retry_after = parse_retry_after(response_headers.get("Retry-After"))
                raise RateLimitError(
                    f"HTTP 429 Too Many Requests from {url}",
                    retry_after_seconds=retry_after,
                    url=url,
                    details={"retry_after": response_headers.get("Retry-After")},
                )
            if status >= 400 and status != 404:
                raise HttpStatusError(f"HTTP {status} from {url}", status=status, url=url)

        return FetchResponse(
            status=status,
            headers=response_headers,
            body=body,
            url=url,
            final_url=final_url,
            elapsed_ms=elapsed * 1000,
            proxy=proxy,
        )


def robots_fetch_adapter(fetcher: HttpFetcher) -> FetchFn:
    """Wrap ``fetcher`` so robots.txt lookups see raw statuses instead of exceptions."""

    async def _fetch(url: str, headers: Mapping[str, str], timeout_ms: int, proxy: Optional[str]) -> FetchResponse:
        return await fetcher.fetch(url, headers, timeout_ms, proxy, raise_for_status=False)

    return _fetch


ProxyValidator = Callable[[str], Awaitable[bool]]


class StaticProxySource:
    """
    Round-robin rotation over a fixed list of proxies.

    The initial order is shuffled unless ``shuffle`` is False, which keeps
    selection deterministic for tests.
    """

    def __init__(
        self,
        proxies: Sequence[str],
        *,
        shuffle: bool = True,
        validator: Optional[ProxyValidator] = None,
        rng: Optional[random.Random] = None,
    ):
        self._proxies: List[str] = [proxy.strip() for proxy in proxies if proxy.strip()]
        if shuffle:
            (rng or random.Random()).shuffle(self._proxies)
        self._index = 0
        self._validator = validator
        self._removed: Dict[str, int] = {}

    @classmethod
    def from_config(cls, config: ProxyConfig, *, test_mode: bool = False) -> StaticProxySource:
        source = cls(config.urls, shuffle=not test_mode)
        if source._proxies:
            logger.info("Proxy rotation enabled", proxy_count=len(source._proxies))
        return source

    def __len__(self) -> int:
        return len(self._proxies)

    def candidates(self) -> List[str]:
        if not self._proxies:
            return []
        start = self._index % len(self._proxies)
        return self._proxies[start:] + self._proxies[:start]

    def next_proxy(self) -> Optional[str]:
        if not self._proxies:
            return None
        proxy = self._proxies[self._index % len(self._proxies)]
        self._index += 1
        return proxy

    def remove(self, proxy: str) -> None:
        if proxy in self._proxies:
            self._proxies.remove(proxy)
            self._removed[proxy] = self._removed.get(proxy, 0) + 1
            logger.warning("Proxy removed from rotation", proxy=proxy, remaining=len(self._proxies))

    async def revalidate(self, proxy: str) -> bool:
        if self._validator is None:
            return proxy in self._proxies
        ok = await self._validator(proxy)
        if not ok:
            self.remove(proxy)
        return ok

    def get_stats(self) -> Dict[str, Any]:
        return {"active": len(self._proxies), "removed": dict(self._removed)}
