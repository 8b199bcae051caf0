import logging
import math
import time
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from live_monitor.market_rank_monitor.core.clock.session_clock import SessionClock
from live_monitor.market_rank_monitor.core.config import Settings
from live_monitor.market_rank_monitor.core.data.schema import AgePercentiles, FreshnessMetrics
from live_monitor.market_rank_monitor.core.storage import keys
from live_monitor.market_rank_monitor.core.storage.redis_client import RedisStore

logger = logging.getLogger(__name__)

BUCKETS = ("fresh", "recent", "stale", "very_stale", "missing")


def percentile(sorted_values: List[float], p: float) -> float:
    index = min(math.floor(len(sorted_values) * p), len(sorted_values) - 1)
    return round(sorted_values[index], 2)


class FreshnessTracker:
    """Per-symbol last update time, bucketed by age."""

    def __init__(self, store: RedisStore, settings: Settings = None, clock: SessionClock = None):
        self.store = store
        self.settings = settings or Settings()
        self.clock = clock or SessionClock()

    def record(self, updates: Dict[str, int]) -> None:
        """Set last-update epoch millis for many symbols at once."""
        if not updates:
            return
        with self.store.guard("freshness record"):
            pipe = self.store.pipeline(transaction=True)
            pipe.hset(keys.FRESHNESS_LAST_UPDATE, mapping={s: str(ts) for s, ts in updates.items()})
            pipe.expire(keys.FRESHNESS_LAST_UPDATE, self.settings.freshness_ttl_seconds)
            pipe.execute()

    def last_update(self, symbol: str) -> Optional[int]:
        value = self.store.hmget(keys.FRESHNESS_LAST_UPDATE, [symbol])[0]
        try:
            return int(value) if value is not None else None
        except ValueError:
            return None

    def _bucket(self, age_minutes: float) -> str:
        if age_minutes < self.settings.fresh_minutes:
            return "fresh"
        if age_minutes < self.settings.recent_minutes:
            return "recent"
        if age_minutes < self.settings.stale_minutes:
            return "stale"
        return "very_stale"

    def metrics(self, universe: Iterable[str], now: int = None) -> FreshnessMetrics:
        symbols = list(dict.fromkeys(universe))
        now = now if now is not None else int(time.time() * 1000)
        values = self.store.hmget(keys.FRESHNESS_LAST_UPDATE, symbols)

        counts = dict.fromkeys(BUCKETS, 0)
        ages = []
        for symbol, value in zip(symbols, values):
            if value is None:
                counts["missing"] += 1
                continue
            try:
                age = max(now - int(value), 0) / 60000
            except ValueError:
                logger.warning(f"Unparseable freshness timestamp for {symbol}: {value!r}")
                counts["very_stale"] += 1
                continue
            ages.append(age)
            counts[self._bucket(age)] += 1

        total = len(symbols)
        percentage = {b: round(counts[b] / total * 100, 2) if total else 0.0 for b in BUCKETS}

        age_percentiles = None
        if ages:
            ages.sort()
            age_percentiles = AgePercentiles(
                p50=percentile(ages, 0.5), p90=percentile(ages, 0.9), p99=percentile(ages, 0.99)
            )

        return FreshnessMetrics(**counts, total=total, percentage=percentage, age_percentiles=age_percentiles)

    def should_alert(self, metrics: FreshnessMetrics, instant: datetime = None) -> bool:
        # staleness outside the live session is expected
        if not self.clock.is_live(instant):
            return False
        if metrics.age_percentiles is None:
            return False
        return metrics.age_percentiles.p99 > self.settings.freshness_alert_p99_minutes
