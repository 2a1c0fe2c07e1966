"""
Per-host health tracking used for backoff and feedback-driven ordering.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import structlog

from vortex.config.config import SchedulerConfig
from vortex.protocols import EventKind, Outcome, OutcomeKind

logger = structlog.get_logger(__name__)


@dataclass
class HostState:
    """Observed health of one host."""

    host: str
    latency_ema: Optional[float] = None
    consecutive_failures: int = 0
    failures: int = 0
    successes: int = 0
    penalty: float = 0.0
    penalty_updated: float = 0.0
    degraded: bool = False
    backoff_until: float = 0.0
    in_flight: int = 0


class HostFeedback:
    """Tracks per-host latency, failures and the decaying feedback penalty.

    A host is degraded after ``degraded_failure_threshold`` consecutive
    failures; its backoff window doubles with every further failure, capped at
    ``backoff_max``. The next healthy response clears both.
    """

    def __init__(self, config: SchedulerConfig, clock: Callable[[], float] = time.monotonic):
        self.config = config
        self._clock = clock
        self._hosts: Dict[str, HostState] = {}

    def state(self, host: str) -> HostState:
        if host not in self._hosts:
            self._hosts[host] = HostState(host=host, penalty_updated=self._clock())
        return self._hosts[host]

    def penalty(self, host: str, now: Optional[float] = None) -> float:
        """Current penalty with time decay applied."""
        state = self._hosts.get(host)
        if state is None or state.penalty == 0.0:
            return 0.0
        now = self._clock() if now is None else now
        elapsed = max(now - state.penalty_updated, 0.0)
        return state.penalty * 0.5 ** (elapsed / self.config.penalty_half_life)

    def is_degraded(self, host: str) -> bool:
        state = self._hosts.get(host)
        return state is not None and state.degraded

    def is_backed_off(self, host: str, now: Optional[float] = None) -> bool:
        state = self._hosts.get(host)
        if state is None or not state.backoff_until:
            return False
        now = self._clock() if now is None else now
        return state.backoff_until > now

    def next_eligible_in(self, hosts: Optional[set[str]] = None) -> Optional[float]:
        """Seconds until the earliest backed-off host (optionally within ``hosts``) reopens."""
        now = self._clock()
        waits = [
            state.backoff_until - now
            for state in self._hosts.values()
            if state.backoff_until > now and (hosts is None or state.host in hosts)
        ]
        return min(waits) if waits else None

    def degraded_hosts(self) -> list[str]:
        return [state.host for state in self._hosts.values() if state.degraded]

    def record(self, host: str, outcome: Outcome) -> Optional[EventKind]:
        """Fold one outcome into the host's state.

        Returns HOST_DEGRADED or HOST_RECOVERED when the host changes state.
        """
        if outcome.kind is OutcomeKind.CANCELLED:
            return None

        state = self.state(host)
        now = self._clock()
        state.penalty = self.penalty(host, now)
        state.penalty_updated = now

        host_failure = outcome.status is not None and outcome.status.is_failure
        if host_failure:
            return self._record_failure(state, now)
        if outcome.status is None:
            # Short-circuited before reaching the network; says nothing about the host.
            return None
        return self._record_success(state, outcome)

    def _record_failure(self, state: HostState, now: float) -> Optional[EventKind]:
        state.failures += 1
        state.consecutive_failures += 1
        state.penalty += self.config.failure_penalty

        threshold = self.config.degraded_failure_threshold
        if state.consecutive_failures < threshold:
            return None

        exponent = state.consecutive_failures - threshold
        backoff = min(self.config.backoff_base * (2**exponent), self.config.backoff_max)
        state.backoff_until = now + backoff
        was_degraded = state.degraded
        state.degraded = True
        logger.warning(
            "Host degraded",
            host=state.host,
            consecutive_failures=state.consecutive_failures,
            backoff_seconds=backoff,
        )
        return None if was_degraded else EventKind.HOST_DEGRADED

    def _record_success(self, state: HostState, outcome: Outcome) -> Optional[EventKind]:
        state.successes += 1
        state.consecutive_failures = 0

        latency = outcome.response.elapsed if outcome.response is not None else outcome.elapsed
        alpha = self.config.latency_smoothing
        if state.latency_ema is None:
            state.latency_ema = latency
        else:
            state.latency_ema = alpha * latency + (1 - alpha) * state.latency_ema

        state.penalty *= self.config.penalty_decay
        if latency > self.config.slow_response_seconds:
            state.penalty += self.config.slow_penalty

        if not state.degraded:
            return None
        state.degraded = False
        state.backoff_until = 0.0
        logger.info("Host recovered", host=state.host)
        return EventKind.HOST_RECOVERED

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        return {
            host: {
                "latency_ema": state.latency_ema,
                "consecutive_failures": state.consecutive_failures,
                "penalty": round(self.penalty(host), 4),
                "degraded": state.degraded,
                "in_flight": state.in_flight,
            }
            for host, state in self._hosts.items()
        }
