import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

from live_monitor.market_rank_monitor.core.config import Settings
from live_monitor.market_rank_monitor.core.dlq.dead_letter_queue import DeadLetterQueue
from live_monitor.market_rank_monitor.core.exceptions import StoreUnavailableError
from live_monitor.market_rank_monitor.core.lock.static_data_lock import StaticDataLock
from live_monitor.market_rank_monitor.core.monitoring.freshness import FreshnessTracker
from live_monitor.market_rank_monitor.core.monitoring.health_monitor import HealthMonitor
from live_monitor.market_rank_monitor.core.storage import keys
from live_monitor.market_rank_monitor.core.storage.redis_client import RedisStore

logger = logging.getLogger(__name__)

HEALTHY = "healthy"
DEGRADED = "degraded"
UNHEALTHY = "unhealthy"


class HealthCheck:
    """
    One-shot system report for the operator surface.

    `unhealthy` means the store is unreachable. Any other failing check
    (worker heartbeat, maintenance window, operations, DLQ backlog, lock,
    live-session freshness) only degrades the report.
    """

    def __init__(
        self,
        store: RedisStore,
        settings: Settings = None,
        health: HealthMonitor = None,
        dlq: DeadLetterQueue = None,
        freshness: FreshnessTracker = None,
        lock: StaticDataLock = None,
        universe_loader: Callable[[], List[str]] = None,
    ):
        self.store = store
        self.settings = settings or Settings()
        self.health = health or HealthMonitor(store, self.settings)
        self.dlq = dlq or DeadLetterQueue(store, self.settings)
        self.freshness = freshness or FreshnessTracker(store, self.settings)
        self.lock = lock or StaticDataLock(store, self.settings)
        self.universe_loader = universe_loader or (lambda: [])

    def worker_check(self, now_ms: int = None) -> Dict[str, Any]:
        now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
        raw = self.store.get_marker(keys.WORKER_LAST_SUCCESS_TS)
        if raw is None:
            return {"ok": False, "last_success_ts": None, "age_minutes": None}

        age = round((now_ms - int(raw)) / 60000, 2)
        return {
            "ok": age < self.settings.worker_stale_minutes,
            "last_success_ts": int(raw),
            "age_minutes": age,
        }

    def bulk_check(self, now_ms: int = None) -> Dict[str, Any]:
        """Outcome of the last static data maintenance window."""
        now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
        raw_success = self.store.get_marker(keys.BULK_LAST_SUCCESS_TS)
        raw_duration = self.store.get_marker(keys.BULK_LAST_DURATION_MS)
        last_error = self.store.get_marker(keys.BULK_LAST_ERROR)

        age_hours = None
        if raw_success is not None:
            age_hours = round((now_ms - int(raw_success)) / 3_600_000, 2)

        # a window that never ran counts as ok
        ok = last_error is None and (age_hours is None or age_hours < self.settings.health_threshold_hours)
        return {
            "ok": ok,
            "last_success_ts": int(raw_success) if raw_success is not None else None,
            "age_hours": age_hours,
            "last_duration_ms": int(raw_duration) if raw_duration is not None else None,
            "last_error": last_error,
        }

    def report(self, now_ms: int = None) -> Dict[str, Any]:
        if not self.store.ping():
            return {"status": UNHEALTHY, "checks": {"store": {"ok": False}}, "freshness": None}

        instant = datetime.fromtimestamp(now_ms / 1000, tz=timezone.utc) if now_ms is not None else None
        try:
            checks = {"store": {"ok": True}, "worker": self.worker_check(now_ms), "bulk": self.bulk_check(now_ms)}

            operations = {}
            for op, status in self.health.all_statuses().items():
                # operations that never ran are reported, not counted against health
                never_ran = status.last_success_at is None and status.last_failure_at is None
                operations[op] = {"ok": status.is_healthy or never_ran, **status.model_dump(mode="json")}
            checks["operations"] = operations

            dlq_stats = self.dlq.stats()
            checks["dlq"] = {"ok": dlq_stats["total"] < self.settings.dlq_backlog_degraded, **dlq_stats}

            lock_state = self.lock.inspect(now_ms)
            checks["lock"] = {
                "ok": not self.lock.is_stale(now=now_ms),
                "held": lock_state is not None,
                "owner_id": lock_state.record.owner_id if lock_state else None,
                "age_minutes": lock_state.age_minutes if lock_state else None,
            }

            freshness = self.freshness.metrics(self.universe_loader(), now=now_ms)
            alert = self.freshness.should_alert(freshness, instant)
            checks["freshness"] = {
                "ok": not alert,
                "p99_minutes": freshness.age_percentiles.p99 if freshness.age_percentiles else None,
            }
        except StoreUnavailableError as e:
            logger.error(f"Health report aborted, store went away: {e}")
            return {"status": UNHEALTHY, "checks": {"store": {"ok": False}}, "freshness": None}

        failing = [
            name
            for name, check in checks.items()
            if name != "operations" and not check["ok"]
        ] + [op for op, check in operations.items() if not check["ok"]]

        if failing:
            logger.warning(f"Health degraded: {failing}")
        return {
            "status": DEGRADED if failing else HEALTHY,
            "checks": checks,
            "freshness": freshness.model_dump(mode="json"),
        }
