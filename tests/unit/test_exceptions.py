"""
Unit tests for the error taxonomy and classification helpers.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime

import pytest

from pacecore.exceptions import (
    HttpStatusError,
    NetworkError,
    PaceCoreError,
    RateLimitError,
    RequestFailedError,
    RobotsDisallowedError,
    classify_error,
    error_message,
    parse_retry_after,
    wrap_error,
)
from pacecore.protocols import ErrorKind


@pytest.mark.unit
class TestErrorTypes:
    """Structured error attributes."""

    def test_http_status_retryable(self):
        """Server errors and 429 are retryable, other client errors are not."""
        assert HttpStatusError("x", status=503).retryable is True
        assert HttpStatusError("x", status=429).retryable is True
        assert HttpStatusError("x", status=403).retryable is False

    def test_attach_context_keeps_known_values(self):
        """attach_context fills gaps and keeps the highest retry count."""
        error = NetworkError("down", url="https://a.com/x", retry_count=2)
        error.attach_context(url="https://b.com/", domain="a.com", retry_count=1)

        assert error.url == "https://a.com/x"
        assert error.domain == "a.com"
        assert error.retry_count == 2

    def test_last_error_prefers_cause(self):
        """last_error reports the wrapped exception."""
        error = RequestFailedError("wrapped")
        error.__cause__ = ValueError("root cause")

        assert error.last_error == "root cause"

    def test_to_error_info(self):
        """Errors convert to ErrorInfo for logging."""
        info = RobotsDisallowedError("https://a.com/admin", agent="bot", domain="a.com").to_error_info()

        assert info.kind is ErrorKind.ROBOTS_DISALLOWED
        assert info.error_type == "RobotsDisallowedError"
        assert info.error_message == "Blocked by robots.txt: https://a.com/admin"
        assert info.domain == "a.com"
        assert info.is_retryable is False

    def test_str_includes_context(self):
        """The string form carries URL and retries."""
        error = PaceCoreError("failed", url="https://a.com/", retry_count=3)

        assert str(error) == "failed | url=https://a.com/ | retries=3"


@pytest.mark.unit
class TestClassifyError:
    """Mapping exceptions onto error kinds."""

    def test_structured_rate_limit(self):
        """RateLimitError keeps its retry-after."""
        result = classify_error(RateLimitError("slow down", retry_after_seconds=12))

        assert result.is_rate_limit
        assert result.retry_after_seconds == 12
        assert result.status == 429

    def test_http_429(self):
        """An HttpStatusError with 429 is a rate limit."""
        assert classify_error(HttpStatusError("HTTP 429", status=429)).kind is ErrorKind.RATE_LIMIT

    @pytest.mark.parametrize(
        "message",
        ["Rate limit exceeded", "429 returned", "Too Many Requests"],
    )
    def test_text_rate_limit(self, message):
        """Opaque errors are matched on their text."""
        assert classify_error(Exception(message)).is_rate_limit

    def test_text_retry_after(self):
        """A retry-after value embedded in the text is parsed."""
        result = classify_error(Exception("429: Retry-After: 30"))

        assert result.retry_after_seconds == 30

    def test_network(self):
        """Timeouts and connection failures are network errors."""
        assert classify_error(asyncio.TimeoutError()).kind is ErrorKind.NETWORK
        assert classify_error(ConnectionResetError("reset")).kind is ErrorKind.NETWORK
        assert classify_error(Exception("SSL handshake failed")).kind is ErrorKind.NETWORK

    def test_structured_kind_wins(self):
        """Structured errors are classified by type, not text."""
        assert classify_error(HttpStatusError("proxy said 500", status=500)).kind is ErrorKind.HTTP

    def test_unexpected(self):
        """Anything else is unexpected."""
        assert classify_error(ValueError("bad value")).kind is ErrorKind.UNEXPECTED


@pytest.mark.unit
class TestHelpers:
    """parse_retry_after and error_message."""

    def test_parse_seconds(self):
        """Delta-seconds are parsed."""
        assert parse_retry_after("120") == 120.0
        assert parse_retry_after(" 5 ") == 5.0

    def test_parse_http_date(self):
        """HTTP-dates become a delay from now."""
        when = datetime.now(timezone.utc) + timedelta(seconds=90)

        delay = parse_retry_after(format_datetime(when, usegmt=True))

        assert delay is not None
        assert 80 <= delay <= 91

    @pytest.mark.parametrize("value", [None, "", "soon"])
    def test_parse_invalid(self, value):
        """Missing or malformed values yield None."""
        assert parse_retry_after(value) is None

    def test_error_message(self):
        """Messages fall back to the type name and tag timeouts."""
        assert error_message(asyncio.TimeoutError()) == "timeout: TimeoutError"
        assert error_message(ValueError("x")) == "x"
        assert error_message(NetworkError("connection reset", url="https://ssl.example.com/")) == "connection reset"
        assert error_message(TimeoutError("read timed out")) == "timeout: read timed out"
        assert error_message(TimeoutError("Timeout after 5s")) == "Timeout after 5s"

    @pytest.mark.parametrize(
        "cause, expected",
        [
            (ConnectionResetError("connection reset by peer"), NetworkError),
            (asyncio.TimeoutError(), NetworkError),
            (OSError("ssl handshake failed"), NetworkError),
            (ValueError("bad payload"), RequestFailedError),
        ],
    )
    def test_wrap_error_follows_classification(self, cause, expected):
        """Opaque errors are wrapped by classified kind with the cause chained."""
        wrapped = wrap_error(cause)

        assert type(wrapped) is expected
        assert wrapped.__cause__ is cause
        assert wrapped.retryable is (expected is NetworkError)

    def test_wrap_error_keeps_structured_errors(self):
        """PaceCore errors are returned as they are."""
        error = HttpStatusError("HTTP 503", status=503)

        assert wrap_error(error) is error
