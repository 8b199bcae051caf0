import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()

# ===================== exchange ==============================================
EXCHANGE_TZ = "America/New_York"
EXCHANGE_CALENDAR = "XNYS"

# ===================== defaults ==============================================
POLYGON_BASE_URL = "https://api.polygon.io"
REFERENCE_PARQUET = os.path.join("data", "reference", "tickers.parquet")


def _env(name: str, default, cast=str):
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return cast(value)


class Settings(BaseModel):
    """Operational tuning values. Every field can be overridden from the environment."""

    # store
    redis_url: str = "redis://localhost:6379/0"
    redis_socket_timeout: float = Field(5.0, gt=0)

    # upstream
    polygon_api_key: Optional[str] = None
    polygon_base_url: str = POLYGON_BASE_URL
    upstream_timeout: float = Field(10.0, gt=0)

    # ingestion
    batch_size: int = Field(70, gt=0)
    inter_batch_delay: float = Field(17.0, ge=0)
    rate_limit_cooldown: float = Field(15.0, ge=0)
    rate_limit_max_cooldowns: int = Field(3, ge=0)
    inline_retries: int = Field(0, ge=0)
    retry_backoff: float = Field(0.5, ge=0)
    poll_interval: float = Field(60.0, gt=0)

    # ranking
    rank_ttl_live: int = Field(86400, gt=0)
    rank_ttl_pre_after: int = Field(86400, gt=0)

    # dlq
    dlq_max_attempts: int = Field(5, gt=0)
    dlq_max_age_hours: float = Field(48.0, gt=0)
    dlq_max_size: int = Field(10000, gt=0)

    # lock
    lock_ttl_seconds: int = Field(1800, gt=0)
    lock_stale_minutes: float = Field(45.0, gt=0)

    # freshness (minutes)
    fresh_minutes: float = 2.0
    recent_minutes: float = 5.0
    stale_minutes: float = 15.0
    freshness_alert_p99_minutes: float = 15.0
    freshness_ttl_seconds: int = 86400

    # health
    health_threshold_hours: float = 26.0
    health_ttl_seconds: int = 7 * 24 * 3600
    worker_stale_minutes: float = 5.0
    dlq_backlog_degraded: int = 100

    # reference data
    reference_parquet: str = REFERENCE_PARQUET

    # operator surface
    admin_api_key: Optional[str] = None

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            redis_url=_env("REDIS_URL", "redis://localhost:6379/0"),
            redis_socket_timeout=_env("REDIS_SOCKET_TIMEOUT", 5.0, float),
            polygon_api_key=_env("POLYGON_API_KEY", None),
            polygon_base_url=_env("POLYGON_BASE_URL", POLYGON_BASE_URL),
            upstream_timeout=_env("UPSTREAM_TIMEOUT", 10.0, float),
            batch_size=_env("INGEST_BATCH_SIZE", 70, int),
            inter_batch_delay=_env("INGEST_BATCH_DELAY", 17.0, float),
            rate_limit_cooldown=_env("RATE_LIMIT_COOLDOWN", 15.0, float),
            rate_limit_max_cooldowns=_env("RATE_LIMIT_MAX_COOLDOWNS", 3, int),
            inline_retries=_env("INGEST_INLINE_RETRIES", 0, int),
            poll_interval=_env("INGEST_POLL_INTERVAL", 60.0, float),
            dlq_max_attempts=_env("DLQ_MAX_ATTEMPTS", 5, int),
            dlq_max_age_hours=_env("DLQ_MAX_AGE_HOURS", 48.0, float),
            dlq_max_size=_env("DLQ_MAX_SIZE", 10000, int),
            lock_ttl_seconds=_env("STATIC_LOCK_TTL", 1800, int),
            lock_stale_minutes=_env("STATIC_LOCK_STALE_MINUTES", 45.0, float),
            freshness_alert_p99_minutes=_env("FRESHNESS_ALERT_P99_MINUTES", 15.0, float),
            health_threshold_hours=_env("HEALTH_THRESHOLD_HOURS", 26.0, float),
            reference_parquet=_env("REFERENCE_PARQUET", REFERENCE_PARQUET),
            admin_api_key=_env("ADMIN_API_KEY", None),
        )
