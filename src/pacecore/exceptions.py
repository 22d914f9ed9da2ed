"""
Error taxonomy for PaceCore.

Every failure raised by the core carries the URL and domain it concerns, the
number of retries already attempted and the text of the last underlying error,
so callers can decide whether to resubmit. ``classify_error`` maps any
exception, structured or opaque, onto an :class:`ErrorKind`.
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Optional

from pacecore.protocols import ErrorInfo, ErrorKind, ErrorSeverity

_RETRY_AFTER_RE = re.compile(r"retry[- ]after:?\s*(\d+)", re.IGNORECASE)

_RATE_LIMIT_MARKERS = ("rate limit", "too many requests", "429")
_NETWORK_MARKERS = (
    "timeout",
    "timed out",
    "connection",
    "refused",
    "ssl",
    "certificate",
    "proxy",
    "network",
)

DEFAULT_RETRY_AFTER_SECONDS = 60.0


class PaceCoreError(Exception):
    """Base exception for all PaceCore errors."""

    kind: ErrorKind = ErrorKind.UNEXPECTED
    severity: ErrorSeverity = ErrorSeverity.MEDIUM
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        url: Optional[str] = None,
        domain: Optional[str] = None,
        status: Optional[int] = None,
        retry_count: int = 0,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.url = url
        self.domain = domain
        self.status = status
        self.retry_count = retry_count
        self.details = details or {}
        super().__init__(message)

    @property
    def last_error(self) -> str:
        """Text of the underlying error that ended the last attempt."""
        if self.__cause__ is not None:
            return str(self.__cause__)
        return self.message

    def attach_context(
        self,
        *,
        url: Optional[str] = None,
        domain: Optional[str] = None,
        retry_count: Optional[int] = None,
    ) -> PaceCoreError:
        """Fill in request context that the raiser did not know about."""
        if self.url is None:
            self.url = url
        if self.domain is None:
            self.domain = domain
        if retry_count is not None:
            self.retry_count = max(self.retry_count, retry_count)
        return self

    def to_error_info(self) -> ErrorInfo:
        return ErrorInfo(
            kind=self.kind,
            error_type=type(self).__name__,
            error_message=self.last_error,
            severity=self.severity,
            url=self.url,
            domain=self.domain,
            status=self.status,
            context=dict(self.details),
            retry_count=self.retry_count,
            is_retryable=self.retryable,
        )

    def __str__(self) -> str:
        parts = [self.message]
        if self.url:
            parts.append(f"url={self.url}")
        if self.retry_count:
            parts.append(f"retries={self.retry_count}")
        return " | ".join(parts)


class NetworkError(PaceCoreError):
    """Transport-level failure (DNS, connect, TLS, timeout, proxy)."""

    kind = ErrorKind.NETWORK
    retryable = True


class HttpStatusError(PaceCoreError):
    """Raised when the server answers with an error status."""

    kind = ErrorKind.HTTP

    def __init__(self, message: str, *, status: int, **kwargs: Any):
        super().__init__(message, status=status, **kwargs)

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.status is not None and (self.status >= 500 or self.status == 429)


class RateLimitError(PaceCoreError):
    """Raised when the target signals rate limiting (429 or equivalent text)."""

    kind = ErrorKind.RATE_LIMIT
    severity = ErrorSeverity.LOW
    retryable = True

    def __init__(self, message: str, *, retry_after_seconds: Optional[float] = None, **kwargs: Any):
        kwargs.setdefault("status", 429)
        super().__init__(message, **kwargs)
        self.retry_after_seconds = retry_after_seconds


class RobotsDisallowedError(PaceCoreError):
    """Raised when robots.txt forbids fetching a URL."""

    kind = ErrorKind.ROBOTS_DISALLOWED
    severity = ErrorSeverity.LOW

    def __init__(self, url: str, *, agent: Optional[str] = None, **kwargs: Any):
        self.agent = agent
        super().__init__(f"Blocked by robots.txt: {url}", url=url, details={"agent": agent}, **kwargs)


class ParsingError(PaceCoreError):
    """Raised when a response or policy document cannot be interpreted."""

    kind = ErrorKind.PARSING


class CancellationError(PaceCoreError):
    """Raised into queued work that was cancelled before it started."""

    kind = ErrorKind.CANCELLED
    severity = ErrorSeverity.LOW


class RequestFailedError(PaceCoreError):
    """Wraps an opaque exception raised by caller-supplied work."""

    kind = ErrorKind.UNEXPECTED
    severity = ErrorSeverity.HIGH


@dataclass(frozen=True)
class ErrorClassification:
    """Outcome of classifying an exception."""

    kind: ErrorKind
    message: str
    status: Optional[int] = None
    retry_after_seconds: Optional[float] = None

    @property
    def is_rate_limit(self) -> bool:
        return self.kind is ErrorKind.RATE_LIMIT


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """
    Parse a ``Retry-After`` header value.

    Accepts delta-seconds or an HTTP-date. Returns the delay in seconds, or
    None when the value is missing or malformed.
    """
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def _retry_after_from_text(text: str) -> Optional[float]:
    match = _RETRY_AFTER_RE.search(text)
    if match:
        return float(match.group(1))
    return None


def classify_error(error: BaseException) -> ErrorClassification:
    """
    Map an exception onto an :class:`ErrorKind`.

    Structured PaceCore errors are classified by type. Opaque exceptions fall
    back to substring matching on their text.
    """
    message = str(error)

    if isinstance(error, RateLimitError):
        retry_after = error.retry_after_seconds
        if retry_after is None:
            retry_after = _retry_after_from_text(error.message)
        return ErrorClassification(ErrorKind.RATE_LIMIT, error.message, error.status, retry_after)

    if isinstance(error, HttpStatusError) and error.status == 429:
        return ErrorClassification(
            ErrorKind.RATE_LIMIT, error.message, 429, _retry_after_from_text(error.message)
        )

    if isinstance(error, PaceCoreError):
        return ErrorClassification(error.kind, error.message, error.status)

    lowered = message.lower()
    if any(marker in lowered for marker in _RATE_LIMIT_MARKERS):
        return ErrorClassification(ErrorKind.RATE_LIMIT, message, 429, _retry_after_from_text(message))

    if isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return ErrorClassification(ErrorKind.NETWORK, message or type(error).__name__)

    if any(marker in lowered for marker in _NETWORK_MARKERS):
        return ErrorClassification(ErrorKind.NETWORK, message)

    return ErrorClassification(ErrorKind.UNEXPECTED, message)


def error_message(error: BaseException) -> str:
    """Best-effort human-readable text for reputation classification."""
    original = error.last_error if isinstance(error, PaceCoreError) else str(error)
    text = original or type(error).__name__
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)) and "timeout" not in original.lower():
        text = f"timeout: {text}"
    return text


def wrap_error(error: Exception, classification: Optional[ErrorClassification] = None) -> PaceCoreError:
    """
    Return ``error`` as a PaceCore error.

    Structured errors are returned unchanged. Opaque ones are wrapped in the
    class matching their classified kind, with the original chained as
    ``__cause__``.
    """
    if isinstance(error, PaceCoreError):
        return error
    classification = classification or classify_error(error)
    message = error_message(error)
    wrapped: PaceCoreError
    if classification.kind is ErrorKind.NETWORK:
        wrapped = NetworkError(message)
    elif classification.kind is ErrorKind.HTTP and classification.status is not None:
        wrapped = HttpStatusError(message, status=classification.status)
    else:
        wrapped = RequestFailedError(message)
    wrapped.__cause__ = error
    return wrapped
