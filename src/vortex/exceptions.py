"""
Exception hierarchy for Vortex.

Per-request failures travel as values (Outcome, CrawlEvent); only the errors
below are raised across component boundaries.
"""

from __future__ import annotations

from typing import Optional


class VortexError(Exception):
    """Base class for all Vortex errors."""


class ConfigurationError(VortexError):
    """Invalid spider, rule set or settings detected at startup."""


class EngineStateError(VortexError):
    """Operation not allowed in the engine's current lifecycle state."""


class SchedulerError(VortexError):
    """Scheduler accounting was violated (e.g. an outcome reported twice)."""


class MiddlewareRejection(VortexError):
    """Raised by a downloader middleware stage to short-circuit a request."""

    def __init__(self, message: str, *, stage: Optional[str] = None):
        super().__init__(message)
        self.stage = stage


class ProxyUnavailableError(MiddlewareRejection):
    """Proxying is enabled but no proxy is configured for the URL scheme."""


class ExtractionError(VortexError):
    """A parse rule failed to extract data from a response."""

    def __init__(self, message: str, *, url: str = "", rule: Optional[str] = None):
        super().__init__(message)
        self.url = url
        self.rule = rule


class SinkError(VortexError):
    """A pipeline sink failed to accept a record."""


class CriticalSinkError(SinkError):
    """A sink marked critical failed; the crawl is aborted."""
