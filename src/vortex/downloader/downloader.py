"""
Asynchronous downloader: middleware, bounded retries and outcome classification.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import urljoin

import aiohttp
import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_result, stop_after_attempt, wait_exponential

from vortex.config.config import DownloaderConfig
from vortex.exceptions import MiddlewareRejection
from vortex.observability.metrics import METRICS
from vortex.protocols import ErrorInfo, ErrorSeverity, FetchStatus, Outcome, OutcomeKind, Request, Response

from .autothrottle import AutoThrottle
from .middleware import MiddlewareChain, OutgoingRequest
from .robots import RobotsDelayCache

logger = structlog.get_logger(__name__)

# Redirects that switch to GET and drop the body, as browsers do.
_METHOD_CHANGING_REDIRECTS = {301, 302, 303}
_BODY_HEADERS = {"content-type", "content-length", "content-encoding"}


@dataclass
class AttemptResult:
    """Result of one network attempt."""

    status: FetchStatus
    response: Optional[Response] = None
    error: Optional[BaseException] = None
    elapsed: float = 0.0

    @property
    def retryable(self) -> bool:
        return self.status.retryable


def _is_retryable(result: AttemptResult) -> bool:
    return result.retryable


def _last_result(retry_state: RetryCallState) -> AttemptResult:
    # Retry budget exhausted: hand back the final attempt instead of raising.
    assert retry_state.outcome is not None
    return retry_state.outcome.result()


class Downloader:
    """Fetches requests through the middleware chain with bounded retries.

    ``fetch`` never raises for per-request failures; every call returns an
    :class:`~vortex.protocols.Outcome`. Cancellation propagates.
    """

    def __init__(
        self,
        config: Optional[DownloaderConfig] = None,
        *,
        session: Optional[aiohttp.ClientSession] = None,
        middlewares: Optional[MiddlewareChain] = None,
        throttle: Optional[AutoThrottle] = None,
    ):
        self.config = config or DownloaderConfig()
        self.throttle = throttle or AutoThrottle(self.config.autothrottle)
        self.session = session
        self.middlewares = middlewares
        self._owns_session = session is None
        self._is_initialized = False

    async def initialize(self) -> None:
        """Create the HTTP session and the middleware chain."""
        if self._is_initialized:
            return

        if self.session is None:
            connector = aiohttp.TCPConnector(
                limit=self.config.concurrency,
                limit_per_host=self.config.per_host_concurrency,
                ttl_dns_cache=30,
                enable_cleanup_closed=True,
            )
            self.session = aiohttp.ClientSession(
                connector=connector,
                timeout=aiohttp.ClientTimeout(total=self.config.timeout),
            )

        if self.middlewares is None:
            robots = None
            if self.config.autothrottle.respect_robots_crawl_delay:
                robots = RobotsDelayCache(self.session, user_agent=self.config.user_agent)
            self.middlewares = MiddlewareChain.from_config(self.config, self.throttle, robots)

        self._is_initialized = True
        logger.info(
            "Downloader initialized",
            concurrency=self.config.concurrency,
            per_host_concurrency=self.config.per_host_concurrency,
            retry_cap=self.config.retry_cap,
            middlewares=[middleware.name for middleware in self.middlewares],
        )

    async def close(self) -> None:
        if self.session is not None and self._owns_session:
            await self.session.close()
            self.session = None
        self._is_initialized = False
        logger.info("Downloader closed")

    async def __aenter__(self) -> "Downloader":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def fetch(self, request: Request) -> Outcome:
        """
        Fetch a request and classify the result.

        Args:
            request: Request handed out by the Scheduler.

        Returns:
            Outcome with kind SUCCESS, REDIRECT, SOFT_FAILURE or TERMINAL_FAILURE.
        """
        if not self._is_initialized:
            await self.initialize()

        started = time.perf_counter()
        outgoing = OutgoingRequest(request, attempt=0)
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.config.retry_cap + 1),
            wait=wait_exponential(multiplier=self.config.backoff_base, max=self.config.backoff_max),
            retry=retry_if_result(_is_retryable),
            retry_error_callback=_last_result,
            before_sleep=self._log_retry,
        )

        try:
            result: AttemptResult = await retrying(self._attempt, outgoing)
        except MiddlewareRejection as exc:
            elapsed = time.perf_counter() - started
            logger.info("Request short-circuited", url=request.url, stage=exc.stage, reason=str(exc))
            return Outcome(
                request=request,
                kind=OutcomeKind.SOFT_FAILURE,
                error=ErrorInfo.from_exception(exc, severity=ErrorSeverity.LOW, stage=exc.stage),
                attempts=outgoing.attempt,
                elapsed=elapsed,
            )

        elapsed = time.perf_counter() - started
        if outgoing.attempt > 1:
            METRICS["fetch_retries"].inc(outgoing.attempt - 1)
        METRICS["fetch_latency_seconds"].observe(elapsed)
        return self._to_outcome(request, result, outgoing.attempt, elapsed)

    async def _attempt(self, outgoing: OutgoingRequest) -> AttemptResult:
        outgoing.attempt += 1
        outgoing.headers = {}
        outgoing.proxy = None
        assert self.middlewares is not None and self.session is not None
        await self.middlewares.process_request(outgoing)

        request = outgoing.request
        kwargs: Dict[str, Any] = {"headers": outgoing.headers, "allow_redirects": False}
        if request.body is not None:
            kwargs["data"] = request.body
        if outgoing.proxy:
            kwargs["proxy"] = outgoing.proxy

        start = time.perf_counter()
        try:
            async with self.session.request(request.method, request.url, **kwargs) as resp:
                body = await resp.read()
                response = Response(
                    request=request,
                    status=resp.status,
                    headers=dict(resp.headers),
                    body=body,
                    url=str(resp.url),
                    elapsed=time.perf_counter() - start,
                )
        except asyncio.TimeoutError as exc:
            return await self._failed(outgoing, FetchStatus.TIMEOUT, exc, time.perf_counter() - start)
        except aiohttp.ClientError as exc:
            return await self._failed(outgoing, FetchStatus.NETWORK_ERROR, exc, time.perf_counter() - start)

        await self.middlewares.process_response(outgoing, response)
        status = response.classification or FetchStatus.OK
        return AttemptResult(status=status, response=response, elapsed=response.elapsed)

    async def _failed(
        self, outgoing: OutgoingRequest, status: FetchStatus, exc: BaseException, elapsed: float
    ) -> AttemptResult:
        logger.warning(
            "Fetch attempt failed",
            url=outgoing.url,
            status=status.value,
            error=str(exc) or type(exc).__name__,
            attempt=outgoing.attempt,
        )
        assert self.middlewares is not None
        await self.middlewares.process_failure(outgoing, status, exc, elapsed)
        return AttemptResult(status=status, error=exc, elapsed=elapsed)

    def _log_retry(self, retry_state: RetryCallState) -> None:
        outgoing: OutgoingRequest = retry_state.args[0]
        sleep = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.info(
            "Retrying request",
            url=outgoing.url,
            attempt=retry_state.attempt_number,
            max_attempts=self.config.retry_cap + 1,
            backoff=round(sleep, 3),
        )

    def _to_outcome(self, request: Request, result: AttemptResult, attempts: int, elapsed: float) -> Outcome:
        response = result.response
        if response is None:
            return Outcome(
                request=request,
                kind=OutcomeKind.TERMINAL_FAILURE,
                status=result.status,
                error=ErrorInfo.from_exception(
                    result.error or RuntimeError(result.status.value), severity=ErrorSeverity.HIGH
                ),
                attempts=attempts,
                elapsed=elapsed,
            )

        if 300 <= response.status < 400:
            return self._redirect_outcome(request, response, attempts, elapsed)

        if result.status is FetchStatus.OK:
            kind = OutcomeKind.SUCCESS
        elif result.status is FetchStatus.CLIENT_ERROR:
            kind = OutcomeKind.SOFT_FAILURE
        else:
            kind = OutcomeKind.TERMINAL_FAILURE

        error = None
        if kind is not OutcomeKind.SUCCESS:
            error = ErrorInfo(
                error_type="HTTPStatus",
                error_message=f"HTTP {response.status}",
                severity=ErrorSeverity.HIGH if kind is OutcomeKind.TERMINAL_FAILURE else ErrorSeverity.LOW,
                context={"status": response.status},
                retry_count=attempts - 1,
                is_retryable=result.status.retryable,
            )
        return Outcome(
            request=request,
            kind=kind,
            status=result.status,
            response=response,
            error=error,
            attempts=attempts,
            elapsed=elapsed,
        )

    def _redirect_outcome(self, request: Request, response: Response, attempts: int, elapsed: float) -> Outcome:
        location = response.header("Location")
        redirect_times = int(request.meta.get("redirect_times", 0)) + 1

        problem = None
        if not location:
            problem = f"HTTP {response.status} without Location header"
        elif redirect_times > self.config.max_redirects:
            problem = f"more than {self.config.max_redirects} redirects"
        if problem is not None:
            return Outcome(
                request=request,
                kind=OutcomeKind.SOFT_FAILURE,
                status=FetchStatus.CLIENT_ERROR,
                response=response,
                error=ErrorInfo(
                    error_type="RedirectError",
                    error_message=problem,
                    severity=ErrorSeverity.LOW,
                    context={"status": response.status},
                ),
                attempts=attempts,
                elapsed=elapsed,
            )

        assert location is not None
        method, body, headers = request.method, request.body, dict(request.headers)
        if response.status in _METHOD_CHANGING_REDIRECTS and request.method != "HEAD":
            method, body = "GET", None
            headers = {key: value for key, value in headers.items() if key.lower() not in _BODY_HEADERS}

        meta = dict(request.meta)
        meta["redirect_times"] = redirect_times
        meta["redirect_urls"] = [*request.meta.get("redirect_urls", ()), request.url]
        redirect = Request(
            url=urljoin(response.url, location),
            method=method,
            headers=headers,
            body=body,
            depth=request.depth,
            meta=meta,
        )
        logger.debug("Redirect", url=request.url, location=redirect.url, status=response.status)
        return Outcome(
            request=request,
            kind=OutcomeKind.REDIRECT,
            status=FetchStatus.OK,
            response=response,
            redirect=redirect,
            attempts=attempts,
            elapsed=elapsed,
        )
