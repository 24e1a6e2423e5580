from .config import (
    BatchConfig,
    BrowserConfig,
    CacheConfig,
    Config,
    CrawlerConfig,
    MonitoringConfig,
    RateLimitConfig,
    RetrySettings,
    load_config,
)

__all__ = [
    "BatchConfig",
    "BrowserConfig",
    "CacheConfig",
    "Config",
    "CrawlerConfig",
    "MonitoringConfig",
    "RateLimitConfig",
    "RetrySettings",
    "load_config",
]
