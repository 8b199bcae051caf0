import logging
from datetime import datetime, timezone
from typing import Dict, Optional

from live_monitor.market_rank_monitor.core.config import Settings
from live_monitor.market_rank_monitor.core.data.schema import HealthStatus
from live_monitor.market_rank_monitor.core.storage import keys
from live_monitor.market_rank_monitor.core.storage.redis_client import RedisStore

logger = logging.getLogger(__name__)

SAVE_REGULAR_CLOSE = "saveRegularClose"
BOOTSTRAP_PREVIOUS_CLOSES = "bootstrapPreviousCloses"
INGEST_LOOP = "ingestLoop"

OPERATIONS = (SAVE_REGULAR_CLOSE, BOOTSTRAP_PREVIOUS_CLOSES, INGEST_LOOP)

ERROR_MAX_CHARS = 500


def _as_utc(value: Optional[datetime]) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if value is None:
        return datetime.now(timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _parse_ts(value) -> Optional[datetime]:
    if not value:
        return None
    try:
        return _as_utc(datetime.fromisoformat(value))
    except ValueError:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


class HealthMonitor:
    """Success/failure bookkeeping for scheduled worker operations."""

    def __init__(self, store: RedisStore, settings: Settings = None):
        self.store = store
        self.settings = settings or Settings()

    def _write(self, operation: str, mapping: Dict[str, str]) -> None:
        key = keys.worker_health(operation)
        with self.store.guard(f"health {operation}"):
            pipe = self.store.pipeline(transaction=True)
            pipe.hset(key, mapping=mapping)
            pipe.expire(key, self.settings.health_ttl_seconds)
            pipe.execute()

    def record_success(self, operation: str, count: int = 0, now: datetime = None) -> None:
        now = _as_utc(now)
        self._write(
            operation,
            {"lastSuccessAt": now.isoformat(), "lastSuccessCount": str(count)},
        )
        logger.debug(f"{operation} succeeded ({count})")

    def record_failure(self, operation: str, error, now: datetime = None) -> None:
        now = _as_utc(now)
        self._write(
            operation,
            {"lastFailureAt": now.isoformat(), "lastError": str(error)[:ERROR_MAX_CHARS]},
        )
        logger.warning(f"{operation} failed: {error}")

    def status(self, operation: str, now: datetime = None) -> HealthStatus:
        now = _as_utc(now)
        raw = self.store.hgetall(keys.worker_health(operation))

        last_success = _parse_ts(raw.get("lastSuccessAt"))
        hours = None
        healthy = False
        if last_success is not None:
            hours = round((now - last_success).total_seconds() / 3600, 2)
            healthy = hours < self.settings.health_threshold_hours

        return HealthStatus(
            operation=operation,
            last_success_at=last_success,
            last_success_count=int(raw.get("lastSuccessCount") or 0),
            last_failure_at=_parse_ts(raw.get("lastFailureAt")),
            last_error=raw.get("lastError"),
            is_healthy=healthy,
            hours_since_last_success=hours,
        )

    def all_statuses(self, now: datetime = None) -> Dict[str, HealthStatus]:
        return {op: self.status(op, now) for op in OPERATIONS}
