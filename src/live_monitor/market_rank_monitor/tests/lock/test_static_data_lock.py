import json
import logging
import time

import pytest

from live_monitor.market_rank_monitor.core.data.schema import decode_lock_value
from live_monitor.market_rank_monitor.core.exceptions import LockHeldError
from live_monitor.market_rank_monitor.core.lock.static_data_lock import StaticDataLock
from live_monitor.market_rank_monitor.core.storage import keys

MINUTE_MS = 60 * 1000


@pytest.fixture
def lock(store, settings):
    return StaticDataLock(store, settings)


def test_only_one_acquire_wins(store, settings):
    first, second = StaticDataLock(store, settings), StaticDataLock(store, settings)

    a = first.acquire()
    b = second.acquire()

    assert a.acquired and not b.acquired
    assert b.holder == a.owner_id


def test_loser_cannot_renew_or_release(lock):
    winner = lock.acquire("worker-a")
    assert winner.acquired

    assert lock.renew("worker-b") is False
    assert lock.release("worker-b") is False
    assert lock.current().owner_id == "worker-a"


def test_owner_renews_and_releases(lock, redis_client):
    lock.acquire("worker-a")
    redis_client.expire(keys.STATIC_DATA_LOCK, 10)

    assert lock.renew("worker-a") is True
    assert redis_client.ttl(keys.STATIC_DATA_LOCK) > 10
    assert lock.release("worker-a") is True
    assert lock.current() is None


def test_expired_lock_can_be_reclaimed(lock, redis_client):
    lock.acquire("crashed-worker")
    redis_client.pexpire(keys.STATIC_DATA_LOCK, 1)
    time.sleep(0.01)

    reclaimed = lock.acquire("worker-b")

    assert reclaimed.acquired
    assert lock.release("crashed-worker") is False
    assert lock.current().owner_id == "worker-b"


def test_legacy_bare_owner_value(lock, redis_client):
    redis_client.set(keys.STATIC_DATA_LOCK, "legacy-owner", ex=60)

    record = lock.current()
    assert record.owner_id == "legacy-owner"
    assert record.created_at is None
    assert lock.is_stale() is False
    assert lock.release("legacy-owner") is True


def test_decode_lock_value_prefers_json():
    record = decode_lock_value(json.dumps({"ownerId": "abc", "createdAt": 123}))
    assert record.owner_id == "abc"
    assert record.created_at == 123
    assert decode_lock_value(None) is None


def test_staleness_and_clock_skew(lock, redis_client):
    now = int(time.time() * 1000)

    redis_client.set(keys.STATIC_DATA_LOCK, json.dumps({"ownerId": "old", "createdAt": now - 46 * MINUTE_MS}))
    assert lock.is_stale(now=now) is True
    assert lock.inspect(now=now).age_minutes == pytest.approx(46.0)

    redis_client.set(keys.STATIC_DATA_LOCK, json.dumps({"ownerId": "fresh", "createdAt": now - 10 * MINUTE_MS}))
    assert lock.is_stale(now=now) is False

    redis_client.set(keys.STATIC_DATA_LOCK, json.dumps({"ownerId": "skewed", "createdAt": now + 5 * MINUTE_MS}))
    assert lock.is_stale(now=now) is False
    assert lock.inspect(now=now).age_minutes is None


def test_hold_records_success_markers(lock, store):
    with lock.hold("maint") as owner_id:
        assert owner_id == "maint"
        assert lock.current().owner_id == "maint"

    assert lock.current() is None
    assert store.get_marker(keys.BULK_LAST_SUCCESS_TS) is not None
    assert int(store.get_marker(keys.BULK_LAST_DURATION_MS)) >= 0
    assert store.get_marker(keys.BULK_LAST_ERROR) is None


def test_hold_records_error_and_releases(lock, store):
    with pytest.raises(RuntimeError):
        with lock.hold("maint"):
            raise RuntimeError("rewrite failed")

    assert lock.current() is None
    assert store.get_marker(keys.BULK_LAST_ERROR) == "rewrite failed"


def test_hold_refuses_when_busy(lock):
    lock.acquire("someone-else")

    with pytest.raises(LockHeldError):
        with lock.hold("maint"):
            pass


def test_stale_check_does_not_log_errors(lock, redis_client, caplog):
    now = int(time.time() * 1000)
    redis_client.set(keys.STATIC_DATA_LOCK, json.dumps({"ownerId": "old", "createdAt": now - 60 * MINUTE_MS}))

    with caplog.at_level(logging.DEBUG):
        for _ in range(3):
            assert lock.is_stale(now=now) is True

    assert not [r for r in caplog.records if r.levelno >= logging.WARNING]
