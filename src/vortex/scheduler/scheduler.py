"""
Scheduler: the single point of admission, ordering and dispatch.

All mutation of the fingerprint store and the frontier happens here, under one
lock, so that check-and-insert is atomic even if workers call in from threads.
"""

from __future__ import annotations

import threading
import time
from collections import Counter
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

import structlog

from vortex.config.config import Config, CrawlStrategy, SchedulerConfig
from vortex.exceptions import SchedulerError
from vortex.observability.metrics import METRICS
from vortex.protocols import Admission, EventKind, Outcome, RejectReason, Request

from .feedback import HostFeedback
from .fingerprint import FingerprintStore, request_fingerprint
from .frontier import Frontier, FrontierEntry

logger = structlog.get_logger(__name__)

# Subtracted from a degraded host's priority so its work sinks below healthy hosts.
DEGRADED_PRIORITY_OFFSET = 1_000_000.0

AdmissionFilter = Callable[[Request], bool]


class Scheduler:
    """Owns the frontier and the fingerprint store for one crawl."""

    def __init__(
        self,
        config: Optional[SchedulerConfig] = None,
        *,
        per_host_concurrency: int = 2,
        filters: Sequence[AdmissionFilter] = (),
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or SchedulerConfig()
        self.per_host_concurrency = per_host_concurrency
        self.filters = list(filters)
        self.frontier = Frontier()
        self.fingerprints = FingerprintStore()
        self.feedback = HostFeedback(self.config, clock=clock)
        self._clock = clock
        self._lock = threading.RLock()
        self._in_flight: Counter[str] = Counter()
        self._in_flight_total = 0

        self.admitted = 0
        self.forced_admissions = 0
        self.dispatched = 0
        self.completed = 0
        self.rejected: Counter[str] = Counter()

    @classmethod
    def from_config(cls, config: Config, **kwargs: Any) -> Scheduler:
        return cls(config.scheduler, per_host_concurrency=config.downloader.per_host_concurrency, **kwargs)

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def admit(self, request: Request, *, force: bool = False) -> Admission:
        """Admit a request to the frontier or report why it was rejected.

        ``force`` skips the already-seen check only; it is the explicit revisit
        path and is counted separately.
        """
        fingerprint = request_fingerprint(request)
        with self._lock:
            if not self._passes_filters(request):
                return self._reject(request, fingerprint, RejectReason.FILTERED_BY_RULE)

            max_depth = self.config.max_depth
            if max_depth is not None and request.depth > max_depth:
                return self._reject(request, fingerprint, RejectReason.DEPTH_EXCEEDED)

            is_new = self.fingerprints.add(fingerprint)
            if not is_new and (not force or fingerprint in self.frontier):
                return self._reject(request, fingerprint, RejectReason.DUPLICATE_FINGERPRINT)

            priority = self._priority_for(request)
            self.frontier.push(request.replace(priority=priority), priority, fingerprint)
            self.admitted += 1
            if not is_new:
                self.forced_admissions += 1
                logger.debug("Forced re-admission", url=request.url, fingerprint=fingerprint)

            METRICS["requests_admitted"].inc()
            METRICS["frontier_size"].set(len(self.frontier))
            return Admission(admitted=True, fingerprint=fingerprint, forced=not is_new)

    def admit_many(self, requests: Iterable[Request]) -> List[Admission]:
        return [self.admit(request) for request in requests]

    def _passes_filters(self, request: Request) -> bool:
        if request.scheme not in ("http", "https") or not request.host:
            return False
        allowed = self.config.allowed_domains
        if allowed:
            host = request.host
            if not any(host == domain or host.endswith("." + domain) for domain in allowed):
                return False
        return all(accept(request) for accept in self.filters)

    def _reject(self, request: Request, fingerprint: str, reason: RejectReason) -> Admission:
        self.rejected[reason.value] += 1
        METRICS["requests_rejected"].labels(reason=reason.value).inc()
        logger.debug("Request rejected", url=request.url, reason=reason.value, depth=request.depth)
        return Admission(admitted=False, fingerprint=fingerprint, reason=reason)

    # ------------------------------------------------------------------
    # Ordering
    # ------------------------------------------------------------------

    def _priority_for(self, request: Request, now: Optional[float] = None) -> float:
        strategy = self.config.strategy
        depth = float(request.depth)
        if strategy is CrawlStrategy.BFO:
            priority = -depth
        elif strategy is CrawlStrategy.DFO:
            priority = depth
        elif strategy is CrawlStrategy.FEEDBACK:
            priority = -depth - self.feedback.penalty(request.host, now)
        else:
            priority = 0.0

        if self.feedback.is_degraded(request.host):
            priority -= DEGRADED_PRIORITY_OFFSET
        return priority

    def _reprioritize_host(self, host: str) -> None:
        now = self._clock()

        def recompute(entry: FrontierEntry) -> float:
            return self._priority_for(entry.request, now)

        changed = self.frontier.reprioritize(host, recompute)
        if changed:
            logger.debug("Host entries reprioritized", host=host, changed=changed)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def next(self) -> Optional[Request]:
        """Pop the highest-priority request whose host is currently eligible."""
        with self._lock:
            now = self._clock()
            entry = self.frontier.pop(skip_host=lambda host: not self._host_eligible(host, now))
            if entry is None:
                return None

            self._in_flight[entry.fingerprint] += 1
            self._in_flight_total += 1
            self.feedback.state(entry.request.host).in_flight += 1
            self.dispatched += 1

            METRICS["frontier_size"].set(len(self.frontier))
            METRICS["in_flight_requests"].set(self._in_flight_total)
            return entry.request

    def _host_eligible(self, host: str, now: float) -> bool:
        if self.feedback.is_backed_off(host, now):
            return False
        return self.feedback.state(host).in_flight < self.per_host_concurrency

    def next_eligible_in(self) -> Optional[float]:
        """Seconds until a backed-off host with pending work reopens, if any."""
        with self._lock:
            pending_hosts = set(self.frontier.hosts())
            if not pending_hosts:
                return None
            return self.feedback.next_eligible_in(pending_hosts)

    def report_outcome(self, request: Request, outcome: Outcome) -> Optional[EventKind]:
        """Record the final outcome of a dispatched request.

        Must be called exactly once per request returned by :meth:`next`.
        Returns a host health transition, if this outcome caused one.
        """
        fingerprint = request_fingerprint(request)
        with self._lock:
            if self._in_flight[fingerprint] <= 0:
                raise SchedulerError(f"outcome reported for a request that is not in flight: {request.url}")
            self._in_flight[fingerprint] -= 1
            if not self._in_flight[fingerprint]:
                del self._in_flight[fingerprint]
            self._in_flight_total -= 1
            self.completed += 1

            host = request.host
            state = self.feedback.state(host)
            state.in_flight = max(state.in_flight - 1, 0)

            transition = self.feedback.record(host, outcome)
            if transition is not None or self.config.strategy is CrawlStrategy.FEEDBACK:
                self._reprioritize_host(host)

            METRICS["in_flight_requests"].set(self._in_flight_total)
            METRICS["degraded_hosts"].set(len(self.feedback.degraded_hosts()))
            return transition

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def in_flight(self) -> int:
        return self._in_flight_total

    @property
    def pending(self) -> int:
        return len(self.frontier)

    def is_quiescent(self) -> bool:
        with self._lock:
            return not self.frontier and self._in_flight_total == 0

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "admitted": self.admitted,
                "forced_admissions": self.forced_admissions,
                "rejected": dict(self.rejected),
                "dispatched": self.dispatched,
                "completed": self.completed,
                "frontier_size": len(self.frontier),
                "in_flight": self._in_flight_total,
                "fingerprints": len(self.fingerprints),
                "degraded_hosts": self.feedback.degraded_hosts(),
            }

    def close(self) -> None:
        with self._lock:
            self.frontier.clear()
            self.fingerprints.clear()
            self._in_flight.clear()
            self._in_flight_total = 0
            METRICS["frontier_size"].set(0)
            METRICS["in_flight_requests"].set(0)
