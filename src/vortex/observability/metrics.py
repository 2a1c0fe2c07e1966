"""
Defines and manages Prometheus metrics for the crawl engine.
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Any, Dict

from prometheus_client import REGISTRY as _PROM_REGISTRY
from prometheus_client import Counter as _OrigCounter
from prometheus_client import Gauge as _OrigGauge
from prometheus_client import Histogram as _OrigHistogram
from prometheus_client import start_http_server

if TYPE_CHECKING:
    from vortex.config.config import MonitoringConfig

# ---------------------------------------------------------------------------
# Duplicate-safe Prometheus metric wrappers
# ---------------------------------------------------------------------------
# Defined before any metric creation so that re-importing this module (tests
# reload it) reuses the registered collectors instead of failing registration.


def _duplicate_safe_factory(metric_cls):
    """Return a factory that reuses an existing collector if already present."""

    def _factory(name: str, documentation: str, *args, **kwargs):  # type: ignore[override]
        existing = _PROM_REGISTRY._names_to_collectors.get(name)
        if existing is not None:
            return existing  # type: ignore[return-value]

        try:
            return metric_cls(name, documentation, *args, **kwargs)  # type: ignore[call-arg]
        except ValueError:
            # Registration lost the race: fall back to the now-existing collector.
            return _PROM_REGISTRY._names_to_collectors[name]  # type: ignore[return-value]

    return _factory


Counter = _duplicate_safe_factory(_OrigCounter)  # type: ignore[assignment]
Gauge = _duplicate_safe_factory(_OrigGauge)  # type: ignore[assignment]
Histogram = _duplicate_safe_factory(_OrigHistogram)  # type: ignore[assignment]


def _create_metrics() -> Dict[str, Any]:
    """Create (or reuse) every collector, prefixed with ``vortex_``."""
    return {
        # Scheduler
        "requests_admitted": Counter(
            "vortex_requests_admitted_total",
            "Requests admitted to the frontier",
        ),
        "requests_rejected": Counter(
            "vortex_requests_rejected_total",
            "Requests rejected at admission",
            ["reason"],
        ),
        "frontier_size": Gauge(
            "vortex_frontier_size",
            "Requests waiting in the frontier",
        ),
        "degraded_hosts": Gauge(
            "vortex_degraded_hosts",
            "Hosts currently marked degraded",
        ),
        # Downloader
        "requests_dispatched": Counter(
            "vortex_requests_dispatched_total",
            "Requests handed to the downloader",
        ),
        "in_flight_requests": Gauge(
            "vortex_in_flight_requests",
            "Requests currently being fetched",
        ),
        "fetch_outcomes": Counter(
            "vortex_fetch_outcomes_total",
            "Final fetch outcomes by kind and classification",
            ["kind", "status"],
        ),
        "fetch_retries": Counter(
            "vortex_fetch_retries_total",
            "Retry attempts made for retryable failures",
        ),
        "fetch_latency_seconds": Histogram(
            "vortex_fetch_latency_seconds",
            "Time taken to fetch a request including retries",
            buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0],
        ),
        "autothrottle_delay_seconds": Gauge(
            "vortex_autothrottle_delay_seconds",
            "Current autothrottle delay per host",
            ["host"],
        ),
        # Parser and pipeline
        "records_emitted": Counter(
            "vortex_records_emitted_total",
            "Records delivered to the pipeline sink",
        ),
        "extraction_failures": Counter(
            "vortex_extraction_failures_total",
            "Responses or rules that failed extraction",
        ),
        "sink_failures": Counter(
            "vortex_sink_failures_total",
            "Records the pipeline sink failed to accept",
        ),
    }


METRICS: Dict[str, Any] = _create_metrics()


class MetricsManager:
    """Manages the lifecycle of the Prometheus exporter."""

    _started_ports: set[int] = set()
    _lock = threading.Lock()

    def __init__(self, config: MonitoringConfig) -> None:
        self.config = config

    def start(self) -> None:
        """Starts the Prometheus HTTP exporter once per port."""
        port = self.config.prometheus_port
        if not port:
            return
        with self._lock:
            if port in self._started_ports:
                return
            start_http_server(port)
            self._started_ports.add(port)

    def stop(self) -> None:
        """The exporter thread is a daemon and exits with the process."""
