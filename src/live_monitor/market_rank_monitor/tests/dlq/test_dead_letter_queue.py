import time

import pytest

from live_monitor.market_rank_monitor.core.config import Settings
from live_monitor.market_rank_monitor.core.data.schema import DLQJob
from live_monitor.market_rank_monitor.core.dlq.dead_letter_queue import DeadLetterQueue
from live_monitor.market_rank_monitor.core.exceptions import (
    ConfigurationError,
    DLQJobNotFoundError,
    UpstreamTransientError,
)
from live_monitor.market_rank_monitor.core.storage import keys
from live_monitor.market_rank_monitor.tests.fakes import make_snapshot

HOUR_MS = 3600 * 1000


def job(attempt_count=1, age_ms=0, now=None):
    now = now or int(time.time() * 1000)
    return DLQJob(id="j", type="ingest_symbol", attempt_count=attempt_count, created_at=now - age_ms)


@pytest.fixture
def dlq(store, settings):
    return DeadLetterQueue(store, settings)


def test_should_retry_attempt_boundary(dlq):
    now = int(time.time() * 1000)
    assert dlq.should_retry(job(attempt_count=4, now=now), now)
    assert not dlq.should_retry(job(attempt_count=5, now=now), now)
    assert not dlq.should_retry(job(attempt_count=6, now=now), now)


def test_should_retry_age_boundary(dlq):
    now = int(time.time() * 1000)
    assert dlq.should_retry(job(age_ms=48 * HOUR_MS - 1, now=now), now)
    assert not dlq.should_retry(job(age_ms=48 * HOUR_MS + 1, now=now), now)
    # age wins regardless of attempts
    assert not dlq.should_retry(job(attempt_count=1, age_ms=72 * HOUR_MS, now=now), now)


def test_enqueue_list_get_in_insertion_order(dlq):
    first = dlq.enqueue("ingest_symbol", {"symbol": "AAA"}, "boom")
    second = dlq.enqueue("ingest_batch", {"symbols": ["BBB", "CCC"]}, "503", priority="normal")
    third = dlq.enqueue("ingest_symbol", {"symbol": "ZZZ"}, "404", priority="low")

    assert [j.id for j in dlq.list()] == [first.id, second.id, third.id]
    assert [j.id for j in dlq.list(type_filter="ingest_symbol")] == [first.id, third.id]
    assert dlq.list(limit=1)[0].id == first.id

    fetched = dlq.get(second.id)
    assert fetched.symbols() == ["BBB", "CCC"]
    assert fetched.attempt_count == 1
    assert fetched.last_error == "503"
    assert dlq.get("missing") is None


def test_stats_by_type(dlq):
    dlq.enqueue("ingest_symbol", {"symbol": "AAA"}, "x")
    dlq.enqueue("ingest_symbol", {"symbol": "BBB"}, "x")
    dlq.enqueue("ingest_batch", {"symbols": ["CCC"]}, "x")

    assert dlq.stats() == {"total": 3, "by_type": {"ingest_symbol": 2, "ingest_batch": 1}}


def test_size_cap_drops_oldest(store, redis_client):
    dlq = DeadLetterQueue(store, Settings(dlq_max_size=3))
    jobs = [dlq.enqueue("ingest_symbol", {"symbol": f"S{i}"}, "x") for i in range(5)]

    assert [j.id for j in dlq.list()] == [j.id for j in jobs[2:]]
    assert not redis_client.exists(keys.dlq_job(jobs[0].id))


def test_requeue_without_handler(dlq):
    queued = dlq.enqueue("ingest_symbol", {"symbol": "AAA"}, "x")
    with pytest.raises(ConfigurationError):
        dlq.requeue_one(queued.id)


def test_requeue_one_failure_bumps_attempts(dlq):
    def failing(job):
        raise UpstreamTransientError("still down")

    dlq.handler = failing
    queued = dlq.enqueue("ingest_symbol", {"symbol": "AAA"}, "first")

    assert dlq.requeue_one(queued.id) is False

    updated = dlq.get(queued.id)
    assert updated.attempt_count == 2
    assert updated.last_error == "still down"
    assert updated.last_attempt_at is not None


def test_requeue_one_unknown_job(dlq):
    dlq.handler = lambda job: None
    with pytest.raises(DLQJobNotFoundError):
        dlq.requeue_one("nope")


def test_requeue_all_only_touches_eligible_jobs(worker, quote_client, redis_client):
    dlq = worker.dlq
    for symbol in ["AAA", "BBB", "CCC"]:
        dlq.enqueue("ingest_symbol", {"symbol": symbol}, "404", priority="low")

    aged = []
    for symbol in ["OLD1", "OLD2"]:
        quote_client.quotes[symbol] = make_snapshot(symbol, 1.0, 1.0)
        aged_job = dlq.enqueue("ingest_symbol", {"symbol": symbol}, "404")
        redis_client.hset(keys.dlq_job(aged_job.id), "created_at", str(aged_job.created_at - 49 * HOUR_MS))
        aged.append(aged_job.id)

    result = dlq.requeue_all()

    assert result == {"requeued": 3, "failed": 0, "total": 3}
    remaining = dlq.list()
    assert [j.id for j in remaining] == aged
    assert all(j.attempt_count == 1 for j in remaining)


def test_requeue_all_continues_past_failures(dlq):
    def handler(job):
        if job.payload["symbol"] == "BAD":
            raise UpstreamTransientError("nope")

    dlq.handler = handler
    for symbol in ["AAA", "BAD", "CCC"]:
        dlq.enqueue("ingest_symbol", {"symbol": symbol}, "x")

    assert dlq.requeue_all() == {"requeued": 2, "failed": 1, "total": 3}
    assert [j.payload["symbol"] for j in dlq.list()] == ["BAD"]


def test_purge(dlq, redis_client):
    dlq.enqueue("ingest_symbol", {"symbol": "AAA"}, "x")
    dlq.enqueue("ingest_symbol", {"symbol": "BBB"}, "x")

    assert dlq.purge() == 2
    assert dlq.list() == []
    assert redis_client.keys("dlq:*") == []


def test_failed_retry_does_not_resurrect_a_removed_job(dlq, redis_client):
    queued = dlq.enqueue("ingest_symbol", {"symbol": "AAA"}, UpstreamTransientError("first"))

    def purged_meanwhile(job):
        dlq.purge()
        raise UpstreamTransientError("still down")

    dlq.handler = purged_meanwhile

    assert dlq.requeue_one(queued.id) is False
    assert redis_client.exists(keys.dlq_job(queued.id)) == 0
    assert dlq.stats()["total"] == 0
