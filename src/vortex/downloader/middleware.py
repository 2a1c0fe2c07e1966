"""
Downloader middleware chain.

Request hooks run in chain order before every attempt; response and failure
hooks run in reverse order after it. A stage short-circuits a request by
raising :class:`~vortex.exceptions.MiddlewareRejection`.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, Iterator, List, Optional, Sequence

import structlog

from vortex.exceptions import ProxyUnavailableError
from vortex.protocols import FetchStatus, Request, Response, classify_status

from .autothrottle import AutoThrottle
from .user_agents import UserAgentRotator

if TYPE_CHECKING:
    from vortex.config.config import DownloaderConfig

    from .robots import RobotsDelayCache

logger = structlog.get_logger(__name__)


@dataclass
class OutgoingRequest:
    """Mutable per-attempt view of a request as it passes through the chain."""

    request: Request
    headers: Dict[str, str] = field(default_factory=dict)
    proxy: Optional[str] = None
    attempt: int = 1

    @property
    def url(self) -> str:
        return self.request.url

    @property
    def host(self) -> str:
        return self.request.host


class DownloaderMiddleware:
    """Base stage; every hook is optional."""

    name = "middleware"

    async def process_request(self, outgoing: OutgoingRequest) -> None:
        return None

    async def process_response(self, outgoing: OutgoingRequest, response: Response) -> None:
        return None

    async def process_failure(
        self, outgoing: OutgoingRequest, status: FetchStatus, error: Optional[BaseException], elapsed: float
    ) -> None:
        return None


class HeadersMiddleware(DownloaderMiddleware):
    """Applies configured default headers, then the request's own headers."""

    name = "headers"

    def __init__(self, default_headers: Optional[Dict[str, str]] = None):
        self.default_headers = dict(default_headers or {})

    async def process_request(self, outgoing: OutgoingRequest) -> None:
        outgoing.headers.update(self.default_headers)
        outgoing.headers.update(outgoing.request.headers)


class UserAgentMiddleware(DownloaderMiddleware):
    """Sets User-Agent unless the request already carries one."""

    name = "user_agent"

    def __init__(self, user_agent: str, rotator: Optional[UserAgentRotator] = None):
        self.user_agent = user_agent
        self.rotator = rotator

    async def process_request(self, outgoing: OutgoingRequest) -> None:
        if any(key.lower() == "user-agent" for key in outgoing.headers):
            return
        outgoing.headers["User-Agent"] = self.rotator.next() if self.rotator else self.user_agent


class ProxyMiddleware(DownloaderMiddleware):
    """Round-robin proxy selection per URL scheme."""

    name = "proxy"

    def __init__(self, proxies: Dict[str, Sequence[str]], enabled: bool = True):
        self.enabled = enabled
        self.proxies = {scheme: list(urls) for scheme, urls in proxies.items()}
        self._cycles: Dict[str, Iterator[str]] = {
            scheme: itertools.cycle(urls) for scheme, urls in self.proxies.items() if urls
        }

    async def process_request(self, outgoing: OutgoingRequest) -> None:
        if not self.enabled:
            return
        scheme = outgoing.request.scheme
        cycle = self._cycles.get(scheme)
        if cycle is None:
            raise ProxyUnavailableError(f"no proxy configured for scheme {scheme!r}", stage=self.name)
        outgoing.proxy = next(cycle)


class AutoThrottleMiddleware(DownloaderMiddleware):
    """Spaces dispatches per host and feeds every attempt back to the controller."""

    name = "autothrottle"

    def __init__(self, throttle: AutoThrottle, robots: Optional[RobotsDelayCache] = None):
        self.throttle = throttle
        self.robots = robots
        self._floors_checked: set[str] = set()

    async def process_request(self, outgoing: OutgoingRequest) -> None:
        host = outgoing.host
        if self.robots is not None and host not in self._floors_checked:
            self._floors_checked.add(host)
            netloc = outgoing.request.url.split("/")[2]
            delay = await self.robots.crawl_delay(outgoing.request.scheme, netloc)
            if delay:
                self.throttle.set_floor(host, delay)
        await self.throttle.wait(host)

    async def process_response(self, outgoing: OutgoingRequest, response: Response) -> None:
        self.throttle.record(
            outgoing.host,
            response.classification or classify_status(response.status),
            response.elapsed,
            http_status=response.status,
            headers=response.headers,
        )

    async def process_failure(
        self, outgoing: OutgoingRequest, status: FetchStatus, error: Optional[BaseException], elapsed: float
    ) -> None:
        self.throttle.record(outgoing.host, status, elapsed)


class StatusAssessmentMiddleware(DownloaderMiddleware):
    """Classifies each response before the other stages see it."""

    name = "status"

    async def process_response(self, outgoing: OutgoingRequest, response: Response) -> None:
        response.classification = classify_status(response.status)
        if response.classification is FetchStatus.CLIENT_ERROR:
            logger.info("Client error response", url=outgoing.url, status=response.status)
        elif response.classification is FetchStatus.SERVER_ERROR:
            logger.warning(
                "Server error response", url=outgoing.url, status=response.status, attempt=outgoing.attempt
            )


class MiddlewareChain:
    """Ordered collection of downloader stages."""

    def __init__(self, middlewares: Sequence[DownloaderMiddleware]):
        self.middlewares: List[DownloaderMiddleware] = list(middlewares)

    def __iter__(self) -> Iterator[DownloaderMiddleware]:
        return iter(self.middlewares)

    def __len__(self) -> int:
        return len(self.middlewares)

    async def process_request(self, outgoing: OutgoingRequest) -> None:
        for middleware in self.middlewares:
            await middleware.process_request(outgoing)

    async def process_response(self, outgoing: OutgoingRequest, response: Response) -> None:
        for middleware in reversed(self.middlewares):
            await middleware.process_response(outgoing, response)

    async def process_failure(
        self, outgoing: OutgoingRequest, status: FetchStatus, error: Optional[BaseException], elapsed: float
    ) -> None:
        for middleware in reversed(self.middlewares):
            await middleware.process_failure(outgoing, status, error, elapsed)

    @classmethod
    def from_config(
        cls,
        config: DownloaderConfig,
        throttle: AutoThrottle,
        robots: Optional[RobotsDelayCache] = None,
    ) -> MiddlewareChain:
        rotator = None
        if config.user_agents or config.rotate_user_agent:
            rotator = UserAgentRotator(config.user_agents or None)

        return cls(
            [
                HeadersMiddleware(config.default_headers),
                UserAgentMiddleware(config.user_agent, rotator),
                ProxyMiddleware(
                    {"http": config.proxy.http, "https": config.proxy.https}, enabled=config.proxy.enabled
                ),
                AutoThrottleMiddleware(throttle, robots),
                StatusAssessmentMiddleware(),
            ]
        )
