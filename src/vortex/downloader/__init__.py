"""HTTP fetching with middleware, retries and adaptive throttling."""

from .autothrottle import AutoThrottle, HostThrottle
from .downloader import AttemptResult, Downloader
from .middleware import (
    AutoThrottleMiddleware,
    DownloaderMiddleware,
    HeadersMiddleware,
    MiddlewareChain,
    OutgoingRequest,
    ProxyMiddleware,
    StatusAssessmentMiddleware,
    UserAgentMiddleware,
)
from .robots import RobotsDelayCache
from .user_agents import UserAgentRotator

__all__ = [
    "AttemptResult",
    "AutoThrottle",
    "AutoThrottleMiddleware",
    "Downloader",
    "DownloaderMiddleware",
    "HeadersMiddleware",
    "HostThrottle",
    "MiddlewareChain",
    "OutgoingRequest",
    "ProxyMiddleware",
    "RobotsDelayCache",
    "StatusAssessmentMiddleware",
    "UserAgentMiddleware",
    "UserAgentRotator",
]
