"""
Crawl statistics.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict

from vortex.observability.metrics import METRICS
from vortex.protocols import Outcome, OutcomeKind


@dataclass
class CrawlStats:
    """Counters for one crawl, mirrored into Prometheus as they change."""

    dispatched: int = 0
    outcomes: Counter = field(default_factory=Counter)
    statuses: Counter = field(default_factory=Counter)
    retries: int = 0
    redirects: int = 0
    records: int = 0
    extraction_failures: int = 0
    sink_failures: int = 0
    discovered: int = 0

    def record_dispatch(self) -> None:
        self.dispatched += 1
        METRICS["requests_dispatched"].inc()

    def record_outcome(self, outcome: Outcome) -> None:
        status = outcome.status.value if outcome.status else "none"
        self.outcomes[outcome.kind.value] += 1
        self.statuses[status] += 1
        self.retries += outcome.retries
        if outcome.kind is OutcomeKind.REDIRECT:
            self.redirects += 1
        METRICS["fetch_outcomes"].labels(kind=outcome.kind.value, status=status).inc()

    def record_emitted(self) -> None:
        self.records += 1
        METRICS["records_emitted"].inc()

    def record_extraction_failure(self) -> None:
        self.extraction_failures += 1
        METRICS["extraction_failures"].inc()

    def record_sink_failure(self) -> None:
        self.sink_failures += 1
        METRICS["sink_failures"].inc()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dispatched": self.dispatched,
            "outcomes": dict(self.outcomes),
            "statuses": dict(self.statuses),
            "retries": self.retries,
            "redirects": self.redirects,
            "records": self.records,
            "discovered": self.discovered,
            "extraction_failures": self.extraction_failures,
            "sink_failures": self.sink_failures,
        }
