# ============================================================================
# URL Finder - Application Configuration
# ============================================================================
"""
Application configuration module using Pydantic Settings.

This module defines all configuration parameters for URL Finder, including:
- Database connection and pool settings
- Upstream endpoints (Lotus RPC, cid.contact, BMS)
- Retrievability probing thresholds
- Discovery and bandwidth-test scheduling cadence

Environment Variables:
    Every field maps to an upper-case environment variable of the same name
    (e.g. MIN_CONTENT_LENGTH_BYTES, GLIF_URL). A local .env file is read too.

Usage:
    from url_finder.config import settings
    cap = settings.max_concurrent_probes
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # =========================================================================
    # GENERAL
    # =========================================================================
    app_name: str = "url-finder"
    debug: bool = Field(default=False, description="Enable SQL echo and verbose logging")
    log_level: str = Field(default="INFO", description="Root log level for url_finder loggers")

    # =========================================================================
    # DATABASE
    # =========================================================================
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/url_finder.db",
        description="SQLAlchemy async URL (postgresql+asyncpg://... in production)",
    )
    db_pool_size: int = Field(default=20, description="PostgreSQL connection pool size")
    db_max_overflow: int = Field(default=40, description="PostgreSQL pool overflow")
    db_pool_recycle: int = Field(default=3600, description="Seconds before pooled connections are recycled")

    # =========================================================================
    # UPSTREAM SERVICES
    # =========================================================================
    glif_url: str = Field(default="https://api.node.glif.io/rpc/v1", description="Lotus JSON-RPC endpoint")
    cid_contact_url: str = Field(default="https://cid.contact", description="Multiaddress directory base URL")
    bms_url: Optional[str] = Field(default=None, description="Bandwidth measurement service; unset disables BMS jobs")
    bms_default_worker_count: int = Field(default=10, description="Workers requested per BMS job")
    bms_routing_key: str = Field(default="us_east", description="Region routing key sent to BMS")
    upstream_timeout_seconds: float = Field(default=30.0, description="Timeout (s) for upstream API calls")
    upstream_max_retries: int = Field(default=3, description="Retry count for transient upstream failures")

    # =========================================================================
    # RETRIEVABILITY PROBING
    # =========================================================================
    min_content_length_bytes: int = Field(
        default=8 * 1024 * 1024 * 1024,
        description="Minimum Content-Length for a piece response to count as valid (8 GiB)",
    )
    max_concurrent_probes: int = Field(default=20, description="Max HEAD probes in flight per run")
    deal_sample_cap: int = Field(default=100, description="Max pieces sampled per run")
    probe_timeout_seconds: float = Field(default=15.0, description="Timeout (s) for a single HEAD probe")
    reliability_timeout_threshold: float = Field(
        default=0.30,
        description="Timeout ratio above which a provider is marked unreliable",
    )

    # =========================================================================
    # CACHING
    # =========================================================================
    peer_id_max_age_hours: int = Field(default=168, description="Reuse a cached peer id up to this age")
    endpoints_max_age_hours: int = Field(default=24, description="Reuse cached HTTP endpoints up to this age")

    # =========================================================================
    # SCHEDULING
    # =========================================================================
    discovery_interval_hours: int = Field(default=24, description="Hours between URL discoveries per provider")
    discovery_retry_delay_minutes: int = Field(default=15, description="Delay before retrying after an error")
    discovery_batch_size: int = Field(default=100, description="Providers processed per discovery sweep")
    discovery_sweep_interval_seconds: int = Field(default=300, description="Celery beat interval for discovery")
    bms_test_interval_days: int = Field(default=7, description="Days between bandwidth tests per provider")
    bms_batch_size: int = Field(default=50, description="Providers scheduled per BMS sweep")
    bms_poll_interval_seconds: int = Field(default=300, description="Celery beat interval for BMS polling")
    bms_job_timeout_hours: int = Field(default=48, description="Pending BMS jobs older than this time out")

    # =========================================================================
    # CELERY
    # =========================================================================
    celery_broker_url: str = Field(default="redis://redis:6379/0", description="Celery broker URL")
    celery_result_backend: str = Field(default="redis://redis:6379/1", description="Celery result backend")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"


settings = Settings()
