"""
Central manager for logging and metrics.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog

from .logging import configure_logging
from .metrics import MetricsManager

if TYPE_CHECKING:
    from vortex.config.config import MonitoringConfig


class ObservabilityManager:
    """
    Configures logging and the metrics exporter once, and hands a bound logger
    to the engine.
    """

    def __init__(self, config: MonitoringConfig) -> None:
        self.config = config
        self.logger = structlog.get_logger("vortex")
        self.metrics_manager = MetricsManager(config)
        self._is_running = False

    async def __aenter__(self) -> "ObservabilityManager":
        self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.shutdown()

    def start(self) -> None:
        if not self.config.enabled or self._is_running:
            return
        configure_logging(self.config)
        self.metrics_manager.start()
        self._is_running = True
        self.logger.info("Observability manager started", prometheus_port=self.config.prometheus_port)

    def shutdown(self) -> None:
        if not self._is_running:
            return
        self.metrics_manager.stop()
        self.logger.info("Observability manager shut down")
        self._is_running = False

    def bind_logger(self, **context: Any) -> Any:
        return self.logger.bind(**context)
