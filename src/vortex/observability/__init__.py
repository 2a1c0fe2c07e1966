"""Logging and metrics for the crawl engine."""

from __future__ import annotations

from .logging import configure_logging
from .manager import ObservabilityManager
from .metrics import METRICS, MetricsManager

__all__ = ["ObservabilityManager", "configure_logging", "MetricsManager", "METRICS"]
