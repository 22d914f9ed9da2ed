"""
Shared types and protocol definitions for PaceCore.

The orchestration core talks to its collaborators (HTTP transport, proxy pool)
only through the structural protocols defined here, so any implementation that
matches the shape can be plugged in without inheritance.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Protocol, runtime_checkable
from uuid import UUID, uuid4


class ErrorKind(Enum):
    """Structured failure kinds used for retry and reputation decisions."""

    NETWORK = "network"
    HTTP = "http"
    RATE_LIMIT = "rate_limit"
    ROBOTS_DISALLOWED = "robots_disallowed"
    PARSING = "parsing"
    CANCELLED = "cancelled"
    UNEXPECTED = "unexpected"


class ErrorSeverity(Enum):
    """Error severity levels for structured error handling."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class TaskStatus(Enum):
    """Lifecycle states of a scheduled task."""

    CREATED = "created"
    QUEUED = "queued"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)


@dataclass
class ErrorInfo:
    """Detailed error information for debugging and monitoring."""

    error_id: UUID = field(default_factory=uuid4)
    kind: ErrorKind = ErrorKind.UNEXPECTED
    error_type: str = ""
    error_message: str = ""
    severity: ErrorSeverity = ErrorSeverity.MEDIUM
    url: Optional[str] = None
    domain: Optional[str] = None
    status: Optional[int] = None
    context: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    # Recovery information
    retry_count: int = 0
    is_retryable: bool = True


@dataclass
class FetchResponse:
    """Response returned by a fetch primitive."""

    status: int
    headers: Dict[str, str]
    body: bytes
    url: str
    final_url: str = ""
    elapsed_ms: float = 0.0
    proxy: Optional[str] = None

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 400


FetchFn = Callable[[str, Mapping[str, str], int, Optional[str]], Awaitable[FetchResponse]]
"""Signature of the HTTP fetch primitive: ``(url, headers, timeout_ms, proxy) -> FetchResponse``.

Implementations raise :class:`pacecore.exceptions.NetworkError` for transport
failures and may raise :class:`pacecore.exceptions.HttpStatusError` or
:class:`pacecore.exceptions.RateLimitError` for error statuses.
"""


@runtime_checkable
class ProxySource(Protocol):
    """Source of validated egress proxies."""

    def candidates(self) -> List[str]:
        """Return the currently usable proxies, best first."""
        ...

    def next_proxy(self) -> Optional[str]:
        """Return the next proxy in rotation, or None when the pool is empty."""
        ...

    async def revalidate(self, proxy: str) -> bool:
        """Check a proxy before use; False removes it from rotation."""
        ...

