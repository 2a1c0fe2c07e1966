"""
Configuration management for Vortex using Pydantic.

Every model is frozen: a crawl runs against an immutable snapshot of its
settings.
"""

from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from vortex import __version__
from vortex.exceptions import ConfigurationError

# --- Setup Logging ---
log = logging.getLogger(__name__)

DEFAULT_USER_AGENT = f"VortexBot/{__version__}"


class CrawlStrategy(str, Enum):
    """Frontier ordering strategies."""

    BFO = "bfo"
    DFO = "dfo"
    BASIC = "basic"
    FEEDBACK = "feedback"


# --- Nested Configuration Models ---


class SchedulerConfig(BaseModel):
    """Admission, ordering and host-health settings."""

    model_config = ConfigDict(frozen=True)

    strategy: CrawlStrategy = Field(default=CrawlStrategy.BFO, description="Frontier ordering strategy.")
    max_depth: Optional[int] = Field(default=None, ge=0, description="Reject requests deeper than this.")
    allowed_domains: List[str] = Field(
        default_factory=list, description="Only admit hosts equal to or below these domains. Empty allows all."
    )
    degraded_failure_threshold: int = Field(
        default=3, ge=1, description="Consecutive failures before a host is marked degraded."
    )
    backoff_base: float = Field(default=1.0, ge=0.0, description="Base backoff for a degraded host, in seconds.")
    backoff_max: float = Field(default=120.0, ge=0.0, description="Upper bound on a degraded host's backoff.")
    slow_response_seconds: float = Field(default=2.0, gt=0.0, description="Latency counted as a slow response.")
    failure_penalty: float = Field(default=1.0, ge=0.0, description="Feedback penalty added per failure.")
    slow_penalty: float = Field(default=0.5, ge=0.0, description="Feedback penalty added per slow response.")
    penalty_decay: float = Field(
        default=0.5, gt=0.0, le=1.0, description="Penalty multiplier applied on each healthy response."
    )
    penalty_half_life: float = Field(default=30.0, gt=0.0, description="Time-based penalty half-life in seconds.")
    latency_smoothing: float = Field(default=0.3, gt=0.0, le=1.0, description="EMA alpha for host latency.")

    @field_validator("allowed_domains")
    @classmethod
    def normalize_domains(cls, v: List[str]) -> List[str]:
        return [domain.strip().lower().lstrip(".") for domain in v if domain.strip()]


class AutoThrottleConfig(BaseModel):
    """Per-host AIMD delay controller settings."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    start_delay: float = Field(default=0.25, ge=0.0, description="Initial per-host delay in seconds.")
    min_delay: float = Field(default=0.0, ge=0.0, description="Lower bound on the per-host delay.")
    max_delay: float = Field(default=30.0, ge=0.0, description="Upper bound on the per-host delay.")
    target_latency: float = Field(default=1.0, gt=0.0, description="Responses slower than this count as congestion.")
    target_error_rate: float = Field(
        default=0.1, ge=0.0, le=1.0, description="Error-rate EMA above which the delay is not relaxed."
    )
    increase_step: float = Field(default=0.5, ge=0.0, description="Additive increase on congestion, in seconds.")
    decrease_factor: float = Field(default=0.5, gt=0.0, le=1.0, description="Multiplicative decrease when healthy.")
    smoothing: float = Field(default=0.2, gt=0.0, le=1.0, description="EMA alpha for latency and error rate.")
    respect_retry_after: bool = Field(default=True, description="Honour Retry-After on 429 and 503 responses.")
    respect_robots_crawl_delay: bool = Field(
        default=False, description="Use robots.txt Crawl-delay as a lower bound on the delay."
    )

    @model_validator(mode="after")
    def check_bounds(self) -> AutoThrottleConfig:
        if self.min_delay > self.max_delay:
            raise ValueError("autothrottle min_delay must not exceed max_delay")
        return self


class ProxyConfig(BaseModel):
    """Proxy toggle and per-scheme proxy lists."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    http: List[str] = Field(default_factory=list, description="Proxies used for http:// URLs.")
    https: List[str] = Field(default_factory=list, description="Proxies used for https:// URLs.")


class DownloaderConfig(BaseModel):
    """Fetch, retry and middleware settings."""

    model_config = ConfigDict(frozen=True)

    concurrency: int = Field(default=16, ge=1, description="Global limit on in-flight requests.")
    per_host_concurrency: int = Field(default=2, ge=1, description="Limit on in-flight requests per host.")
    timeout: float = Field(default=30.0, gt=0.0, description="HTTP request timeout in seconds.")
    retry_cap: int = Field(default=2, ge=0, description="Retries after the first attempt for retryable failures.")
    backoff_base: float = Field(default=0.5, ge=0.0, description="Multiplier of the exponential retry backoff.")
    backoff_max: float = Field(default=30.0, ge=0.0, description="Upper bound on a single retry backoff.")
    max_redirects: int = Field(default=5, ge=0, description="Redirect hops followed per request chain.")
    user_agent: str = Field(default=DEFAULT_USER_AGENT, description="User-Agent when rotation is disabled.")
    user_agents: List[str] = Field(default_factory=list, description="Explicit User-Agent rotation list.")
    rotate_user_agent: bool = Field(default=False, description="Rotate through the built-in User-Agent pool.")
    default_headers: Dict[str, str] = Field(
        default_factory=lambda: {
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            "Accept-Language": "en",
        }
    )
    proxy: ProxyConfig = Field(default_factory=ProxyConfig)
    autothrottle: AutoThrottleConfig = Field(default_factory=AutoThrottleConfig)


class PipelineConfig(BaseModel):
    """Record delivery settings."""

    model_config = ConfigDict(frozen=True)

    sink_critical: bool = Field(default=False, description="Abort the crawl when the sink raises.")


class EngineConfig(BaseModel):
    """Engine lifecycle settings."""

    model_config = ConfigDict(frozen=True)

    drain_timeout: float = Field(default=30.0, ge=0.0, description="Grace period for in-flight work on stop.")


class MonitoringConfig(BaseModel):
    """Configuration for logging and metrics."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    log_level: str = Field(default="INFO", description="Logging level (e.g., DEBUG, INFO, WARNING).")
    log_file: Optional[str] = Field(default=None, description="Path to log file. If None, logs to console.")
    json_logs: bool = Field(default=False, description="Render console logs as JSON.")
    prometheus_port: Optional[int] = Field(default=None, description="Port for the Prometheus exporter.")

    @field_validator("log_level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level: {v}")
        return level

    @field_validator("log_file", mode="before")
    @classmethod
    def create_parent_dir(cls, v: str | Path | None) -> str | None:
        if v is None:
            return None
        path = Path(v)
        path.parent.mkdir(parents=True, exist_ok=True)
        return str(path)


# --- Main Configuration Class ---


class Config(BaseSettings):
    project_name: str = "vortex"
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    downloader: DownloaderConfig = Field(default_factory=DownloaderConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    model_config = SettingsConfigDict(
        env_prefix="VORTEX_", env_nested_delimiter="__", case_sensitive=False, frozen=True
    )

    @classmethod
    def from_yaml(cls, path: Path) -> Config:
        log.debug("Loading configuration from YAML file: %s", path)
        if not path.is_file():
            raise FileNotFoundError(f"Configuration file not found or is not a file: {path}")
        with open(path, "r", encoding="utf-8") as f:
            yaml_data = yaml.safe_load(f)
        if not yaml_data:
            log.warning("Configuration file is empty: %s. Using default settings.", path)
            return cls.model_validate({})
        try:
            return cls.model_validate(yaml_data)
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid configuration in {path}: {exc}") from exc

    def with_overrides(self, **sections: Dict[str, object]) -> Config:
        """Return a new snapshot with the given section fields replaced."""
        data = self.model_dump()
        for section, values in sections.items():
            data.setdefault(section, {}).update(values)
        try:
            return type(self).model_validate(data)
        except ValidationError as exc:
            raise ConfigurationError(str(exc)) from exc


def find_config_file() -> Path | None:
    current_dir = Path.cwd()
    for path in (current_dir / "vortex.yaml", current_dir / "vortex.yml"):
        if path.exists():
            return path
    return None


def load_config(path: Optional[Path] = None) -> Config:
    """Load configuration from an explicit path, a discovered file, or defaults."""
    config_path = path or find_config_file()
    if config_path is None:
        log.info("No config file found. Using default settings.")
        return Config()
    log.info("Loading configuration from: %s", config_path)
    return Config.from_yaml(config_path)
