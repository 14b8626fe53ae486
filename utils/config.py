"""
Configuration management.
"""

import os
from dataclasses import dataclass, field
from typing import Optional


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


@dataclass
class Config:
    """
    Application configuration.

    Loads from environment variables with sensible defaults.
    """

    # Server
    host: str = field(default_factory=lambda: os.getenv("HOST", "127.0.0.1"))
    port: int = field(default_factory=lambda: int(os.getenv("PORT", "8000")))
    debug: bool = field(default_factory=lambda: _env_bool("DEBUG"))

    # Data
    data_dir: str = field(default_factory=lambda: os.getenv("DATA_DIR", "./data"))
    # None = <data_dir>/ingestion.json; empty string = keep everything in memory
    store_path: Optional[str] = field(default_factory=lambda: os.getenv("INGESTION_STORE_PATH"))

    # Fetching
    request_timeout: int = field(default_factory=lambda: int(os.getenv("REQUEST_TIMEOUT", "30")))
    user_agent: str = field(
        default_factory=lambda: os.getenv(
            "USER_AGENT", "RentalIngestBot/1.0 (+listing aggregation; polite crawling)"
        )
    )

    # Crawl limits (direct triggers)
    crawl_max_pages: int = field(default_factory=lambda: int(os.getenv("CRAWL_MAX_PAGES", "5")))
    crawl_max_listings: int = field(default_factory=lambda: int(os.getenv("CRAWL_MAX_LISTINGS", "500")))

    # Crawl limits (background jobs)
    job_max_pages: int = field(default_factory=lambda: int(os.getenv("JOB_MAX_PAGES", "3")))
    job_max_listings: int = field(default_factory=lambda: int(os.getenv("JOB_MAX_LISTINGS", "200")))

    # Scheduler
    crawl_workers: int = field(default_factory=lambda: int(os.getenv("CRAWL_WORKERS", "2")))
    crawl_queue_size: int = field(default_factory=lambda: int(os.getenv("CRAWL_QUEUE_SIZE", "100")))
    rate_limit_cooldown_seconds: int = field(
        default_factory=lambda: int(os.getenv("RATE_LIMIT_COOLDOWN_SECONDS", "900"))
    )
    enable_periodic_crawls: bool = field(default_factory=lambda: _env_bool("ENABLE_PERIODIC_CRAWLS"))
    periodic_tick_minutes: int = field(default_factory=lambda: int(os.getenv("PERIODIC_TICK_MINUTES", "5")))

    # Dedup
    dedup_price_tolerance: float = field(
        default_factory=lambda: float(os.getenv("DEDUP_PRICE_TOLERANCE", "100"))
    )

    # Auth
    cron_secret: Optional[str] = field(default_factory=lambda: os.getenv("CRON_SECRET") or None)

    # Logging
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO").upper())

    @classmethod
    def load(cls) -> "Config":
        """Load configuration from environment."""
        return cls()

    @property
    def resolved_store_path(self) -> Optional[str]:
        """Path for the JSON listing store, or None for memory only."""
        if self.store_path is None:
            return os.path.join(self.data_dir, "ingestion.json")
        return self.store_path or None

    def to_dict(self) -> dict:
        """Convert config to dictionary. Secrets are redacted."""
        return {
            "host": self.host,
            "port": self.port,
            "debug": self.debug,
            "data_dir": self.data_dir,
            "store_path": self.resolved_store_path,
            "request_timeout": self.request_timeout,
            "user_agent": self.user_agent,
            "crawl_max_pages": self.crawl_max_pages,
            "crawl_max_listings": self.crawl_max_listings,
            "job_max_pages": self.job_max_pages,
            "job_max_listings": self.job_max_listings,
            "crawl_workers": self.crawl_workers,
            "crawl_queue_size": self.crawl_queue_size,
            "rate_limit_cooldown_seconds": self.rate_limit_cooldown_seconds,
            "enable_periodic_crawls": self.enable_periodic_crawls,
            "periodic_tick_minutes": self.periodic_tick_minutes,
            "dedup_price_tolerance": self.dedup_price_tolerance,
            "cron_secret": "***" if self.cron_secret else None,
            "log_level": self.log_level,
        }
