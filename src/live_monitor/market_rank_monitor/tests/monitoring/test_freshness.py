from datetime import datetime

import pytest

from live_monitor.market_rank_monitor.core.data.schema import AgePercentiles, FreshnessMetrics
from live_monitor.market_rank_monitor.core.monitoring.freshness import FreshnessTracker, percentile
from live_monitor.market_rank_monitor.core.storage import keys
from live_monitor.market_rank_monitor.tests.fakes import LIVE_INSTANT, NY

NOW = 1_704_207_600_000
MINUTE_MS = 60 * 1000


@pytest.fixture
def tracker(store, settings, clock):
    return FreshnessTracker(store, settings, clock)


def test_bucket_counts_and_percentiles(tracker, redis_client):
    tracker.record(
        {
            "FRESH": NOW - 1 * MINUTE_MS,
            "RECENT": NOW - 3 * MINUTE_MS,
            "STALE": NOW - 10 * MINUTE_MS,
            "OLD": NOW - 20 * MINUTE_MS,
        }
    )
    redis_client.hset(keys.FRESHNESS_LAST_UPDATE, "GARBLED", "not-a-number")

    metrics = tracker.metrics(["FRESH", "RECENT", "STALE", "OLD", "GARBLED", "NEVER"], now=NOW)

    assert (metrics.fresh, metrics.recent, metrics.stale, metrics.very_stale, metrics.missing) == (1, 1, 1, 2, 1)
    assert metrics.total == 6
    assert metrics.percentage["very_stale"] == pytest.approx(33.33)
    assert metrics.age_percentiles == AgePercentiles(p50=10.0, p90=20.0, p99=20.0)


def test_bucket_edges_are_exclusive(tracker):
    tracker.record({"TWO": NOW - 2 * MINUTE_MS, "FIVE": NOW - 5 * MINUTE_MS, "FIFTEEN": NOW - 15 * MINUTE_MS})

    metrics = tracker.metrics(["TWO", "FIVE", "FIFTEEN"], now=NOW)
    assert (metrics.fresh, metrics.recent, metrics.stale, metrics.very_stale) == (0, 1, 1, 1)


def test_empty_universe(tracker):
    metrics = tracker.metrics([], now=NOW)
    assert metrics.total == 0
    assert metrics.age_percentiles is None


def test_percentile_index_clamps():
    values = [1.0, 2.0, 3.0]
    assert percentile(values, 0.5) == 2.0
    assert percentile(values, 0.99) == 3.0
    assert percentile([4.567], 0.9) == 4.57


def test_record_sets_ttl_and_last_update(tracker, redis_client):
    tracker.record({"AAA": NOW})
    assert tracker.last_update("AAA") == NOW
    assert tracker.last_update("BBB") is None
    assert redis_client.ttl(keys.FRESHNESS_LAST_UPDATE) > 0


def test_alert_only_during_live_session(tracker):
    stale = FreshnessMetrics(age_percentiles=AgePercentiles(p50=1, p90=10, p99=30))
    healthy = FreshnessMetrics(age_percentiles=AgePercentiles(p50=1, p90=2, p99=3))

    assert tracker.should_alert(stale, LIVE_INSTANT) is True
    assert tracker.should_alert(healthy, LIVE_INSTANT) is False
    assert tracker.should_alert(stale, datetime(2024, 1, 2, 17, 0, tzinfo=NY)) is False
    assert tracker.should_alert(FreshnessMetrics(), LIVE_INSTANT) is False
