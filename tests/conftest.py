"""
Test configuration for Vortex.

Provides fixtures for fast, deterministic configs, sample pages and a
controllable clock so scheduler and throttle timing can be asserted without
sleeping.
"""

# Standard library imports
import asyncio
from typing import AsyncGenerator, Callable, Dict, Optional

# Third-party imports
import pytest
import pytest_asyncio

# Local imports
from tests.helpers.crawl import FakeClock
from vortex.config import Config
from vortex.protocols import Request, Response

# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests for individual components")
    config.addinivalue_line("markers", "integration: Integration tests across modules")
    config.addinivalue_line("markers", "slow: Tests that take >10 seconds")


# ============================================================================
# Core Test Fixtures
# ============================================================================


@pytest_asyncio.fixture(autouse=True)
async def cleanup_tasks() -> AsyncGenerator[None, None]:
    """
    Cancel any asyncio task a test leaves behind, so a failing crawl test
    cannot hang the rest of the session.
    """
    tasks_before = asyncio.all_tasks()
    yield
    tasks_after = asyncio.all_tasks()
    new_tasks = tasks_after - tasks_before

    for task in new_tasks:
        if not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                print(f"Unexpected error during task cleanup: {e}")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def fast_config() -> Config:
    """Config with no throttling and zero retry backoff."""
    return Config().with_overrides(
        downloader={
            "concurrency": 4,
            "per_host_concurrency": 2,
            "retry_cap": 2,
            "backoff_base": 0.0,
            "backoff_max": 0.0,
            "timeout": 5.0,
            "autothrottle": {"enabled": False},
        },
        scheduler={"backoff_base": 0.01, "backoff_max": 0.05},
        engine={"drain_timeout": 1.0},
        monitoring={"enabled": False},
    )


# ============================================================================
# Page and Response Fixtures
# ============================================================================


@pytest.fixture
def sample_html() -> str:
    """A small article page with links and repeated items."""
    return """
    <!DOCTYPE html>
    <html>
    <head>
        <title>Test Article</title>
        <meta name="description" content="Sample article for testing">
    </head>
    <body>
        <article>
            <h1>Test Article Title</h1>
            <p class="byline">By <span class="author">Ada</span> on 2024-05-01</p>
            <a href="/b">Next</a>
            <a href="/c#comments">Comments</a>
            <a href="/b#top">Next again</a>
            <a href="mailto:ada@example.com">Mail</a>
            <a href="https://other.org/x">Elsewhere</a>
            <ul class="items">
                <li class="item"><span class="name">One</span><a href="/item/1">1</a></li>
                <li class="item"><span class="name">Two</span><a href="/item/2">2</a></li>
            </ul>
        </article>
    </body>
    </html>
    """


@pytest.fixture
def make_response() -> Callable[..., Response]:
    """Factory for Response objects wrapping a request."""

    def _make(
        url: str = "https://example.com/a",
        body: str | bytes = "",
        *,
        status: int = 200,
        headers: Optional[Dict[str, str]] = None,
        depth: int = 0,
    ) -> Response:
        raw = body.encode("utf-8") if isinstance(body, str) else body
        return Response(
            request=Request(url=url, depth=depth),
            status=status,
            headers=headers or {"Content-Type": "text/html; charset=utf-8"},
            body=raw,
        )

    return _make
