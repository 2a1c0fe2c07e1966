"""
Configuration for the Vortex crawl engine.
"""

from .config import (
    AutoThrottleConfig,
    Config,
    CrawlStrategy,
    DownloaderConfig,
    EngineConfig,
    MonitoringConfig,
    PipelineConfig,
    ProxyConfig,
    SchedulerConfig,
    find_config_file,
    load_config,
)

__all__ = [
    "AutoThrottleConfig",
    "Config",
    "CrawlStrategy",
    "DownloaderConfig",
    "EngineConfig",
    "MonitoringConfig",
    "PipelineConfig",
    "ProxyConfig",
    "SchedulerConfig",
    "find_config_file",
    "load_config",
]
