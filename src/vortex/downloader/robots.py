"""
Fetches robots.txt once per host to read its Crawl-delay.

Only the delay is used, as an input to the autothrottle; allow/deny rules are
not enforced.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional
from urllib.robotparser import RobotFileParser

import aiohttp

logger = logging.getLogger(__name__)

MAX_ROBOTS_BYTES = 1_000_000


class RobotsDelayCache:
    """Caches the Crawl-delay advertised by each origin."""

    def __init__(self, session: aiohttp.ClientSession, user_agent: str = "*", timeout: float = 10.0):
        self._session = session
        self.user_agent = user_agent
        self.timeout = timeout
        self._delays: Dict[str, Optional[float]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    async def crawl_delay(self, scheme: str, host: str) -> Optional[float]:
        """
        Returns the Crawl-delay for the origin, fetching robots.txt on first use.

        Args:
            scheme: URL scheme of the origin (http or https).
            host: Host name, optionally with port.

        Returns:
            Delay in seconds, or None when robots.txt is missing or silent.
        """
        origin = f"{scheme}://{host}"
        if origin in self._delays:
            return self._delays[origin]

        if origin not in self._locks:
            self._locks[origin] = asyncio.Lock()

        async with self._locks[origin]:
            if origin not in self._delays:
                content = await self._fetch(origin)
                self._delays[origin] = self._parse_delay(content) if content else None
            return self._delays[origin]

    async def _fetch(self, origin: str) -> Optional[str]:
        url = f"{origin}/robots.txt"
        try:
            async with self._session.get(url, timeout=aiohttp.ClientTimeout(total=self.timeout)) as response:
                if response.status != 200:
                    logger.debug("No robots.txt for %s (status %s)", origin, response.status)
                    return None
                body = await response.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("Failed to fetch robots.txt for %s: %s", origin, e)
            return None

        if len(body) > MAX_ROBOTS_BYTES:
            logger.warning("robots.txt for %s is larger than 1MB, skipping", origin)
            return None
        return body.decode("utf-8", errors="replace")

    def _parse_delay(self, content: str) -> Optional[float]:
        parser = RobotFileParser()
        parser.parse(content.splitlines())
        delay = parser.crawl_delay(self.user_agent)
        if delay is None and self.user_agent != "*":
            delay = parser.crawl_delay("*")
        return float(delay) if delay is not None else None
