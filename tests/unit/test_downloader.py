"""
Tests for the Downloader: retry behavior, outcome classification and
redirect handling, observed through the public ``fetch`` API.
"""

import asyncio

import aiohttp
import pytest
import pytest_asyncio
from aioresponses import aioresponses
from tests.helpers.metric_delta import histogram_observes, metric_delta
from vortex.config import DownloaderConfig
from vortex.downloader.autothrottle import AutoThrottle
from vortex.downloader.downloader import Downloader
from vortex.downloader.middleware import DownloaderMiddleware, MiddlewareChain
from vortex.observability.metrics import METRICS
from vortex.protocols import FetchStatus, OutcomeKind, Request

URL = "https://example.com/page"


def _config(**overrides):
    settings = {
        "retry_cap": 2,
        "backoff_base": 0.0,
        "backoff_max": 0.0,
        "timeout": 5.0,
        "autothrottle": {"enabled": False},
    }
    settings.update(overrides)
    return DownloaderConfig.model_validate(settings)


@pytest_asyncio.fixture
async def downloader():
    """Downloader with zero backoff and throttling disabled."""
    client = Downloader(_config())
    await client.initialize()
    yield client
    await client.close()


@pytest.mark.unit
class TestDownloaderOutcomes:
    """Status codes map onto outcome kinds."""

    @pytest.mark.asyncio
    async def test_success(self, downloader):
        with aioresponses() as m:
            m.get(URL, status=200, body="<html><title>ok</title></html>", content_type="text/html")

            outcome = await downloader.fetch(Request(url=URL))

        assert outcome.kind is OutcomeKind.SUCCESS
        assert outcome.status is FetchStatus.OK
        assert outcome.attempts == 1
        assert outcome.response.status == 200
        assert outcome.response.body == b"<html><title>ok</title></html>"
        assert outcome.response.classification is FetchStatus.OK
        assert outcome.error is None

    @pytest.mark.asyncio
    async def test_client_error_is_soft_failure_without_retry(self, downloader):
        with aioresponses() as m:
            m.get(URL, status=404, body="Not Found")

            outcome = await downloader.fetch(Request(url=URL))

        assert outcome.kind is OutcomeKind.SOFT_FAILURE
        assert outcome.status is FetchStatus.CLIENT_ERROR
        assert outcome.attempts == 1
        assert outcome.error.context["status"] == 404
        assert not outcome.error.is_retryable

    @pytest.mark.asyncio
    async def test_server_error_retried_to_cap(self, downloader):
        with aioresponses() as m:
            m.get(URL, status=503, repeat=True)

            with metric_delta(METRICS["fetch_retries"], 2):
                outcome = await downloader.fetch(Request(url=URL))

        assert outcome.kind is OutcomeKind.TERMINAL_FAILURE
        assert outcome.status is FetchStatus.SERVER_ERROR
        assert outcome.attempts == 3
        assert outcome.retries == 2
        assert outcome.response.status == 503

    @pytest.mark.asyncio
    async def test_retry_then_success(self, downloader):
        with aioresponses() as m:
            m.get(URL, status=500)
            m.get(URL, status=200, body="recovered")

            outcome = await downloader.fetch(Request(url=URL))

        assert outcome.kind is OutcomeKind.SUCCESS
        assert outcome.attempts == 2
        assert outcome.response.body == b"recovered"

    @pytest.mark.asyncio
    async def test_no_retries_when_cap_is_zero(self):
        async with Downloader(_config(retry_cap=0)) as client:
            with aioresponses() as m:
                m.get(URL, status=502, repeat=True)
                outcome = await client.fetch(Request(url=URL))

        assert outcome.kind is OutcomeKind.TERMINAL_FAILURE
        assert outcome.attempts == 1

    @pytest.mark.asyncio
    async def test_timeout(self, downloader):
        with aioresponses() as m:
            m.get(URL, exception=asyncio.TimeoutError(), repeat=True)

            outcome = await downloader.fetch(Request(url=URL))

        assert outcome.kind is OutcomeKind.TERMINAL_FAILURE
        assert outcome.status is FetchStatus.TIMEOUT
        assert outcome.attempts == 3
        assert outcome.response is None
        assert outcome.error.error_type == "TimeoutError"

    @pytest.mark.asyncio
    async def test_connection_error(self, downloader):
        with aioresponses():
            # Unregistered URLs raise a connection error
            outcome = await downloader.fetch(Request(url="https://unreachable.test/"))

        assert outcome.kind is OutcomeKind.TERMINAL_FAILURE
        assert outcome.status is FetchStatus.NETWORK_ERROR
        assert outcome.attempts == 3

    @pytest.mark.asyncio
    async def test_latency_observed(self, downloader):
        with aioresponses() as m:
            m.get(URL, status=200, body="ok")
            with histogram_observes(METRICS["fetch_latency_seconds"]):
                await downloader.fetch(Request(url=URL))


@pytest.mark.unit
class TestDownloaderRedirects:
    """3xx responses become REDIRECT outcomes carrying the next request."""

    @pytest.mark.asyncio
    async def test_redirect_outcome(self, downloader):
        with aioresponses() as m:
            m.get(URL, status=301, headers={"Location": "/moved?x=1"})

            request = Request(url=URL, depth=2, meta={"referer": "https://example.com/"})
            outcome = await downloader.fetch(request)

        assert outcome.kind is OutcomeKind.REDIRECT
        redirect = outcome.redirect
        assert redirect.url == "https://example.com/moved?x=1"
        assert redirect.depth == 2
        assert redirect.meta["redirect_times"] == 1
        assert redirect.meta["redirect_urls"] == [URL]
        assert redirect.meta["referer"] == "https://example.com/"

    @pytest.mark.asyncio
    async def test_see_other_switches_to_get(self, downloader):
        with aioresponses() as m:
            m.post(URL, status=303, headers={"Location": "https://example.com/result"})

            request = Request(
                url=URL, method="POST", body=b"q=1", headers={"Content-Type": "application/x-www-form-urlencoded"}
            )
            outcome = await downloader.fetch(request)

        assert outcome.redirect.method == "GET"
        assert outcome.redirect.body is None
        assert "Content-Type" not in outcome.redirect.headers

    @pytest.mark.asyncio
    async def test_temporary_redirect_keeps_method(self, downloader):
        with aioresponses() as m:
            m.post(URL, status=307, headers={"Location": "/again"})

            outcome = await downloader.fetch(Request(url=URL, method="POST", body=b"q=1"))

        assert outcome.redirect.method == "POST"
        assert outcome.redirect.body == b"q=1"

    @pytest.mark.asyncio
    async def test_too_many_redirects(self):
        async with Downloader(_config(max_redirects=1)) as client:
            with aioresponses() as m:
                m.get(URL, status=302, headers={"Location": "/loop"})
                request = Request(url=URL, meta={"redirect_times": 1})
                outcome = await client.fetch(request)

        assert outcome.kind is OutcomeKind.SOFT_FAILURE
        assert outcome.status is FetchStatus.CLIENT_ERROR
        assert outcome.redirect is None
        assert "redirects" in outcome.error.error_message

    @pytest.mark.asyncio
    async def test_redirect_without_location(self, downloader):
        with aioresponses() as m:
            m.get(URL, status=302)

            outcome = await downloader.fetch(Request(url=URL))

        assert outcome.kind is OutcomeKind.SOFT_FAILURE
        assert "Location" in outcome.error.error_message


@pytest.mark.unit
class TestDownloaderMiddlewareIntegration:
    """The chain sees every attempt and can short-circuit."""

    @pytest.mark.asyncio
    async def test_headers_applied_on_every_attempt(self):
        seen = []

        class Recorder(DownloaderMiddleware):
            async def process_request(self, outgoing):
                seen.append((outgoing.attempt, dict(outgoing.headers)))

        config = _config(user_agent="TestBot/1.0")
        chain = MiddlewareChain.from_config(config, AutoThrottle(config.autothrottle))
        chain.middlewares.append(Recorder())

        async with Downloader(config, middlewares=chain) as client:
            with aioresponses() as m:
                m.get(URL, status=500)
                m.get(URL, status=200, body="ok")
                outcome = await client.fetch(Request(url=URL))

        assert outcome.ok
        assert [attempt for attempt, _ in seen] == [1, 2]
        for _, headers in seen:
            assert headers["User-Agent"] == "TestBot/1.0"
            assert "Accept" in headers

    @pytest.mark.asyncio
    async def test_proxy_short_circuit_is_soft_failure(self):
        config = _config(proxy={"enabled": True, "https": [], "http": ["http://proxy:3128"]})
        async with Downloader(config) as client:
            with aioresponses() as m:
                m.get(URL, status=200, body="should not be fetched")
                outcome = await client.fetch(Request(url=URL))

        assert outcome.kind is OutcomeKind.SOFT_FAILURE
        assert outcome.status is None
        assert outcome.response is None
        assert outcome.error.error_type == "ProxyUnavailableError"

    @pytest.mark.asyncio
    async def test_throttle_records_failures(self):
        config = _config(autothrottle={"enabled": True, "start_delay": 0.0, "increase_step": 0.01})
        async with Downloader(config) as client:
            with aioresponses() as m:
                m.get(URL, status=503, repeat=True)
                await client.fetch(Request(url=URL))

        # Three congested attempts, each adding one step.
        assert client.throttle.delay("example.com") == pytest.approx(3 * config.autothrottle.increase_step)


@pytest.mark.unit
class TestDownloaderLifecycle:
    """Session ownership."""

    @pytest.mark.asyncio
    async def test_external_session_not_closed(self):
        session = aiohttp.ClientSession()
        try:
            client = Downloader(_config(), session=session)
            await client.initialize()
            await client.close()
            assert not session.closed
        finally:
            await session.close()

    @pytest.mark.asyncio
    async def test_fetch_initializes_lazily(self):
        client = Downloader(_config())
        try:
            with aioresponses() as m:
                m.get(URL, status=200, body="ok")
                outcome = await client.fetch(Request(url=URL))
            assert outcome.ok
            assert client.session is not None
        finally:
            await client.close()
        assert client.session is None
