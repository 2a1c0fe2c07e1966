"""
Per-host adaptive throttling.

An AIMD controller over the delay between dispatches to the same host:

- congestion (server error, timeout, network error, HTTP 429, or a success
  slower than ``target_latency``) adds ``increase_step`` seconds;
- a fast success while the smoothed error rate is at or below
  ``target_error_rate`` multiplies the delay by ``decrease_factor``;
- any other outcome (most 4xx) leaves the delay unchanged.

The delay is clamped to ``[max(min_delay, robots crawl-delay), max_delay]``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional

from vortex.config.config import AutoThrottleConfig
from vortex.observability.metrics import METRICS
from vortex.protocols import FetchStatus

logger = logging.getLogger(__name__)


@dataclass
class HostThrottle:
    """Throttle state for a single host."""

    delay: float
    floor: float = 0.0
    avg_latency: float = 0.0
    error_rate: float = 0.0
    last_dispatch: float = 0.0
    forced_until: float = 0.0
    samples: int = 0


class AutoThrottle:
    """Computes and enforces the per-host dispatch delay."""

    def __init__(
        self,
        config: Optional[AutoThrottleConfig] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self.config = config or AutoThrottleConfig()
        self._clock = clock
        self._sleep = sleep
        self._hosts: Dict[str, HostThrottle] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

        logger.info(
            "Autothrottle initialized: enabled=%s start=%.2fs bounds=[%.2fs, %.2fs]",
            self.config.enabled,
            self.config.start_delay,
            self.config.min_delay,
            self.config.max_delay,
        )

    def _get_host_lock(self, host: str) -> asyncio.Lock:
        if host not in self._locks:
            self._locks[host] = asyncio.Lock()
        return self._locks[host]

    def state(self, host: str) -> HostThrottle:
        if host not in self._hosts:
            start = min(max(self.config.start_delay, self.config.min_delay), self.config.max_delay)
            self._hosts[host] = HostThrottle(delay=start)
        return self._hosts[host]

    def delay(self, host: str) -> float:
        return self.state(host).delay

    def set_floor(self, host: str, seconds: float) -> None:
        """Lower bound from an external source such as robots.txt Crawl-delay."""
        state = self.state(host)
        state.floor = min(max(seconds, 0.0), self.config.max_delay)
        state.delay = self._clamp(state, state.delay)
        logger.debug("Crawl-delay floor for %s set to %.2fs", host, state.floor)

    async def wait(self, host: str) -> float:
        """Sleep until ``host`` may be contacted again; returns the time waited.

        Holding the host lock across the sleep keeps dispatches to one host
        strictly spaced by the delay in effect.
        """
        if not self.config.enabled:
            return 0.0

        async with self._get_host_lock(host):
            state = self.state(host)
            now = self._clock()
            ready_at = max(state.last_dispatch + state.delay, state.forced_until)
            waited = max(ready_at - now, 0.0)
            if waited > 0:
                logger.debug("Throttling %s for %.2fs", host, waited)
                await self._sleep(waited)
            state.last_dispatch = self._clock()
            return waited

    def record(
        self,
        host: str,
        status: FetchStatus,
        latency: float,
        *,
        http_status: Optional[int] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> float:
        """Fold one attempt's result into the host's delay; returns the new delay."""
        state = self.state(host)
        alpha = self.config.smoothing
        failed = status.is_failure or http_status == 429

        state.samples += 1
        state.error_rate = alpha * (1.0 if failed else 0.0) + (1 - alpha) * state.error_rate
        if state.samples == 1:
            state.avg_latency = latency
        else:
            state.avg_latency = alpha * latency + (1 - alpha) * state.avg_latency

        if headers and self.config.respect_retry_after and http_status in (429, 503):
            self._apply_retry_after(host, state, headers)

        if not self.config.enabled:
            return state.delay

        previous = state.delay
        if failed or (status is FetchStatus.OK and latency > self.config.target_latency):
            state.delay = self._clamp(state, state.delay + self.config.increase_step)
        elif status is FetchStatus.OK and state.error_rate <= self.config.target_error_rate:
            state.delay = self._clamp(state, state.delay * self.config.decrease_factor)

        if state.delay != previous:
            logger.debug("Autothrottle delay for %s: %.3fs -> %.3fs", host, previous, state.delay)
        METRICS["autothrottle_delay_seconds"].labels(host=host).set(state.delay)
        return state.delay

    def _apply_retry_after(self, host: str, state: HostThrottle, headers: Mapping[str, str]) -> None:
        retry_after = None
        for key, value in headers.items():
            if key.lower() == "retry-after":
                retry_after = value
                break
        if not retry_after:
            return
        try:
            seconds = float(retry_after)
        except ValueError:
            # HTTP-date form is not supported
            return
        seconds = min(max(seconds, 0.0), self.config.max_delay)
        state.forced_until = max(state.forced_until, self._clock() + seconds)
        logger.info("Server requested %.1fs delay for %s", seconds, host)

    def _clamp(self, state: HostThrottle, value: float) -> float:
        lower = max(self.config.min_delay, state.floor)
        return min(max(value, lower), self.config.max_delay)

    def get_stats(self) -> Dict[str, Dict[str, float]]:
        return {
            host: {
                "delay": state.delay,
                "avg_latency": state.avg_latency,
                "error_rate": state.error_rate,
            }
            for host, state in self._hosts.items()
        }
