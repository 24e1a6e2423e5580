"""
Configuration management for HybridCrawl using Pydantic.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Setup Logging ---
log = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "HybridCrawl/0.1 (+https://github.com/hybridcrawl/hybridcrawl)"

# --- Nested Configuration Models ---


class CrawlerConfig(BaseModel):
    """HTTP fetch configuration."""

    timeout: float = Field(default=30.0, gt=0, description="Per-request timeout in seconds.")
    user_agent: str = Field(default=DEFAULT_USER_AGENT, description="User-Agent string for HTTP requests.")
    proxy: Optional[str] = Field(default=None, description="Proxy URL applied to every request.")
    proxies: List[str] = Field(default_factory=list, description="Proxy URLs rotated round-robin.")
    proxy_cooldown_seconds: float = Field(default=300.0, description="How long a failed proxy is skipped.")
    max_connections: int = Field(default=100, description="Total keep-alive connections in the HTTP pool.")
    max_connections_per_host: int = Field(default=10, description="Keep-alive connections per host.")


class RateLimitConfig(BaseModel):
    """Per-domain token bucket settings for each fetch path."""

    static_rps: float = Field(default=5.0, gt=0)
    static_burst: int = Field(default=10, ge=1)
    dynamic_rps: float = Field(default=3.0, gt=0)
    dynamic_burst: int = Field(default=5, ge=1)
    download_rps: float = Field(default=5.0, gt=0)
    download_burst: int = Field(default=10, ge=1)


class BrowserConfig(BaseModel):
    """Headless browser pool configuration."""

    pool_size: int = Field(default=3, description="Number of pre-warmed browser contexts (clamped to 1-10).")
    headless: bool = True
    chrome_path: Optional[str] = Field(default=None, description="Explicit Chrome/Chromium executable.")
    acquire_timeout: float = Field(default=10.0, description="Seconds to wait for an idle context.")

    @field_validator("pool_size")
    @classmethod
    def clamp_pool_size(cls, v: int) -> int:
        if v < 1:
            return 1
        return min(v, 10)


class CacheConfig(BaseModel):
    """Response cache configuration."""

    enabled: bool = True
    ttl_seconds: float = Field(default=300.0, description="Entry lifetime; values <= 0 mean 5 minutes.")
    max_size_bytes: int = Field(default=100 * 1024 * 1024, gt=0, description="Upper bound on accounted bytes.")
    sweep_interval: float = Field(default=60.0, gt=0, description="Background expiry sweep period.")


class RetrySettings(BaseModel):
    max_attempts: int = Field(default=3, ge=1)
    initial_backoff: float = Field(default=1.0, ge=0)
    max_backoff: float = Field(default=30.0, ge=0)
    multiplier: float = Field(default=2.0, ge=1.0)
    retryable_status_codes: List[int] = Field(default_factory=lambda: [429, 500, 502, 503, 504])


class BatchConfig(BaseModel):
    concurrency: int = Field(default=0, description="Fetch workers; 0 picks a value from CPU and memory.")
    per_domain_concurrency: int = Field(default=0, description="Cap on in-flight jobs per domain; 0 disables.")
    download_concurrency: int = Field(default=5, description="Download workers (clamped to 1-50).")
    download_dir: Path = Field(default=Path("downloads"), description="Output directory for download batches given no options.")


class MonitoringConfig(BaseModel):
    """Configuration for logging and metrics."""

    log_level: str = Field(default="INFO", description="Logging level (e.g., DEBUG, INFO, WARNING).")
    json_logs: bool = Field(default=False, description="Render log lines as JSON.")
    log_file: Optional[str] = Field(default=None, description="Path to log file. If None, logs to stderr.")
    prometheus_port: Optional[int] = Field(default=None, description="Port for the metrics exporter.")

    @field_validator("log_level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        if v.upper() not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level: {v}")
        return v.upper()


# --- Main Configuration Class ---


class Config(BaseSettings):
    project_name: str = "HybridCrawl"
    crawler: CrawlerConfig = Field(default_factory=CrawlerConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    browser: BrowserConfig = Field(default_factory=BrowserConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    batch: BatchConfig = Field(default_factory=BatchConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    model_config = SettingsConfigDict(env_prefix="HYBRIDCRAWL_", env_nested_delimiter="__", case_sensitive=False)

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
        return cls.model_validate(yaml_data)


def find_config_file() -> Optional[Path]:
    current_dir = Path.cwd()
    for path in (current_dir / "hybridcrawl.yaml", current_dir / "hybridcrawl.yml"):
        if path.exists():
            return path
    return None


def load_config(path: Optional[Path] = None) -> Config:
    """Load from ``path``, else a discovered file, else environment and defaults."""
    config_path = path or find_config_file()
    if config_path is None:
        return Config()
    return Config.from_yaml(config_path)
