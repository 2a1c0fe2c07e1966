"""
Core contracts and dataclasses for the Vortex crawl engine.

This module defines the data that flows between the engine components:

- Request: a unit of crawl work, owned by the Scheduler until dispatch
- Response / Outcome: what the Downloader hands back for a dispatched request
- Record: structured data extracted by the Parser and delivered to a sink
- Admission / CrawlEvent: non-fatal results surfaced instead of exceptions
"""

from __future__ import annotations

import codecs
import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Protocol, Union, runtime_checkable
from urllib.parse import urlsplit
from uuid import UUID, uuid4

# ============================================================================
# Enums and Constants
# ============================================================================


class FetchStatus(Enum):
    """Classification of a single fetch attempt."""

    OK = "ok"
    CLIENT_ERROR = "client_error"
    SERVER_ERROR = "server_error"
    TIMEOUT = "timeout"
    NETWORK_ERROR = "network_error"

    @property
    def retryable(self) -> bool:
        return self in (FetchStatus.SERVER_ERROR, FetchStatus.TIMEOUT, FetchStatus.NETWORK_ERROR)

    @property
    def is_failure(self) -> bool:
        """Failures that count against a host's health."""
        return self.retryable


class OutcomeKind(Enum):
    """Final disposition of a dispatched request."""

    SUCCESS = "success"
    REDIRECT = "redirect"
    SOFT_FAILURE = "soft_failure"
    TERMINAL_FAILURE = "terminal_failure"
    CANCELLED = "cancelled"


class RejectReason(Enum):
    """Why the Scheduler refused to admit a request."""

    DUPLICATE_FINGERPRINT = "duplicate_fingerprint"
    DEPTH_EXCEEDED = "depth_exceeded"
    FILTERED_BY_RULE = "filtered_by_rule"


class ErrorSeverity(Enum):
    """Error severity levels for structured error handling."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class EventKind(Enum):
    """Crawl-level events surfaced to observers."""

    FETCH_TERMINAL_FAILURE = "fetch_terminal_failure"
    FETCH_SOFT_FAILURE = "fetch_soft_failure"
    EXTRACTION_FAILURE = "extraction_failure"
    SINK_FAILURE = "sink_failure"
    HOST_DEGRADED = "host_degraded"
    HOST_RECOVERED = "host_recovered"


def classify_status(status: int) -> FetchStatus:
    """Map an HTTP status code to a fetch classification.

    3xx codes are reported as OK here; redirects are resolved by the Downloader
    before classification matters.
    """
    if status >= 500:
        return FetchStatus.SERVER_ERROR
    if status >= 400:
        return FetchStatus.CLIENT_ERROR
    return FetchStatus.OK


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Requests and responses
# ============================================================================


@dataclass(frozen=True)
class Request:
    """A unit of crawl work.

    Requests are immutable once admitted; the Scheduler hands out copies with a
    revised ``priority`` through :meth:`replace`.
    """

    url: str
    method: str = "GET"
    headers: Mapping[str, str] = field(default_factory=dict)
    body: Optional[bytes] = None
    priority: float = 0.0
    depth: int = 0
    meta: Mapping[str, Any] = field(default_factory=dict)

    @property
    def host(self) -> str:
        return (urlsplit(self.url).hostname or "").lower()

    @property
    def scheme(self) -> str:
        return urlsplit(self.url).scheme.lower()

    def replace(self, **changes: Any) -> Request:
        return dataclasses.replace(self, **changes)


@dataclass
class Response:
    """A received HTTP response, paired with the request that produced it."""

    request: Request
    status: int
    headers: Dict[str, str]
    body: bytes
    url: str = ""
    elapsed: float = 0.0
    classification: Optional[FetchStatus] = None

    def __post_init__(self) -> None:
        if not self.url:
            self.url = self.request.url

    @property
    def meta(self) -> Mapping[str, Any]:
        return self.request.meta

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        """Case-insensitive header lookup."""
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return default

    @property
    def encoding(self) -> str:
        content_type = self.header("Content-Type") or ""
        for part in content_type.split(";")[1:]:
            key, _, value = part.strip().partition("=")
            if key.lower() == "charset" and value:
                charset = value.strip().strip("\"'")
                try:
                    return codecs.lookup(charset).name
                except LookupError:
                    break
        return "utf-8"

    def text(self) -> str:
        """Decode the body strictly; raises UnicodeDecodeError on bad bytes."""
        return self.body.decode(self.encoding, errors="strict")


@dataclass
class ErrorInfo:
    """Detailed error information for debugging and monitoring."""

    error_id: UUID = field(default_factory=uuid4)
    error_type: str = ""
    error_message: str = ""
    severity: ErrorSeverity = ErrorSeverity.MEDIUM
    context: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=_utcnow)
    retry_count: int = 0
    is_retryable: bool = False

    @classmethod
    def from_exception(
        cls, exc: BaseException, *, severity: ErrorSeverity = ErrorSeverity.MEDIUM, **context: Any
    ) -> ErrorInfo:
        return cls(
            error_type=type(exc).__name__,
            error_message=str(exc),
            severity=severity,
            context=dict(context),
        )


@dataclass
class Outcome:
    """Result of a dispatched request, reported back to the Scheduler exactly once."""

    request: Request
    kind: OutcomeKind
    status: Optional[FetchStatus] = None
    response: Optional[Response] = None
    redirect: Optional[Request] = None
    error: Optional[ErrorInfo] = None
    attempts: int = 1
    elapsed: float = 0.0

    @property
    def ok(self) -> bool:
        return self.kind is OutcomeKind.SUCCESS

    @property
    def is_failure(self) -> bool:
        return self.kind in (OutcomeKind.SOFT_FAILURE, OutcomeKind.TERMINAL_FAILURE)

    @property
    def retries(self) -> int:
        return max(self.attempts - 1, 0)

    @classmethod
    def cancelled(cls, request: Request, elapsed: float = 0.0, reason: str = "cancelled") -> Outcome:
        return cls(
            request=request,
            kind=OutcomeKind.CANCELLED,
            status=FetchStatus.TIMEOUT,
            error=ErrorInfo(error_type="Cancelled", error_message=reason, severity=ErrorSeverity.LOW),
            attempts=0,
            elapsed=elapsed,
        )


# ============================================================================
# Extraction and delivery
# ============================================================================

FieldValue = Union[str, List[str], Dict[str, Any], List[Dict[str, Any]], None]


@dataclass
class Record:
    """Structured data extracted from one response by one parse rule."""

    fields: Dict[str, FieldValue]
    url: str
    fetched_at: datetime = field(default_factory=_utcnow)
    rule: Optional[str] = None

    def __getitem__(self, name: str) -> FieldValue:
        return self.fields[name]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "fetched_at": self.fetched_at.isoformat(),
            "rule": self.rule,
            "fields": dict(self.fields),
        }


@dataclass(frozen=True)
class Admission:
    """Result of :meth:`Scheduler.admit`; truthy when the request was admitted."""

    admitted: bool
    fingerprint: str
    reason: Optional[RejectReason] = None
    forced: bool = False

    def __bool__(self) -> bool:
        return self.admitted


@dataclass
class CrawlEvent:
    """A non-fatal crawl-level event (failure, host health change)."""

    kind: EventKind
    url: str
    host: str = ""
    error: Optional[ErrorInfo] = None
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=_utcnow)


@runtime_checkable
class PipelineSink(Protocol):
    """Consumer of extracted records.

    Sinks with ``critical = True`` abort the crawl when ``accept`` raises;
    failures of other sinks are logged and counted.
    """

    critical: bool

    async def accept(self, record: Record) -> None: ...
