"""
Distributed lock around maintenance windows that rewrite static data.

The value is JSON {ownerId, createdAt}. Renew and release compare the stored
value byte-for-byte inside a Lua script, so a holder whose lease expired can
never touch a lock that was reclaimed by someone else.
"""

import logging
import time
import uuid
from contextlib import contextmanager
from typing import Optional

from pydantic import BaseModel

from live_monitor.market_rank_monitor.core.config import Settings
from live_monitor.market_rank_monitor.core.data.schema import LockRecord, decode_lock_value
from live_monitor.market_rank_monitor.core.exceptions import LockHeldError
from live_monitor.market_rank_monitor.core.storage import keys
from live_monitor.market_rank_monitor.core.storage.redis_client import RedisStore

logger = logging.getLogger(__name__)

ERROR_MAX_CHARS = 500

RENEW_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('EXPIRE', KEYS[1], ARGV[2])
end
return 0
"""

RELEASE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""


class LockAcquisition(BaseModel):
    acquired: bool
    owner_id: Optional[str] = None
    holder: Optional[str] = None


class LockState(BaseModel):
    record: LockRecord
    age_minutes: Optional[float] = None
    ttl_seconds: Optional[int] = None


def _now_ms() -> int:
    return int(time.time() * 1000)


class StaticDataLock:
    def __init__(self, store: RedisStore, settings: Settings = None, key: str = keys.STATIC_DATA_LOCK):
        self.store = store
        self.settings = settings or Settings()
        self.key = key
        self._renew = store.client.register_script(RENEW_SCRIPT)
        self._release = store.client.register_script(RELEASE_SCRIPT)

    def acquire(self, owner_id: str = None) -> LockAcquisition:
        owner_id = owner_id or uuid.uuid4().hex
        record = LockRecord(owner_id=owner_id, created_at=_now_ms())

        with self.store.guard(f"SET NX {self.key}"):
            ok = self.store.client.set(self.key, record.encode(), nx=True, ex=self.settings.lock_ttl_seconds)

        if ok:
            logger.info(f"Lock {self.key} acquired by {owner_id}")
            return LockAcquisition(acquired=True, owner_id=owner_id)

        current = self.current()
        holder = current.owner_id if current else None
        logger.info(f"Lock {self.key} busy, held by {holder}")
        return LockAcquisition(acquired=False, holder=holder)

    def _owned_raw(self, owner_id: str, action: str) -> Optional[str]:
        """Stored value when `owner_id` holds the lock, else None."""
        raw = self.store.get_marker(self.key)
        record = decode_lock_value(raw)
        if record is None:
            logger.warning(f"{action} of {self.key} by {owner_id}: lock not held")
            return None
        if record.owner_id != owner_id:
            logger.warning(f"{action} of {self.key} by {owner_id} refused, held by {record.owner_id}")
            return None
        return raw

    def renew(self, owner_id: str) -> bool:
        raw = self._owned_raw(owner_id, "Renew")
        if raw is None:
            return False
        with self.store.guard(f"renew {self.key}"):
            return bool(self._renew(keys=[self.key], args=[raw, self.settings.lock_ttl_seconds]))

    def release(self, owner_id: str) -> bool:
        raw = self._owned_raw(owner_id, "Release")
        if raw is None:
            return False
        with self.store.guard(f"release {self.key}"):
            released = bool(self._release(keys=[self.key], args=[raw]))
        if released:
            logger.info(f"Lock {self.key} released by {owner_id}")
        return released

    # ------------------------------ observers --------------------------------
    def current(self) -> Optional[LockRecord]:
        return decode_lock_value(self.store.get_marker(self.key))

    def inspect(self, now: int = None) -> Optional[LockState]:
        record = self.current()
        if record is None:
            return None

        now = now if now is not None else _now_ms()
        age = None
        if record.created_at is not None and record.created_at <= now:
            age = (now - record.created_at) / 60000

        with self.store.guard(f"TTL {self.key}"):
            ttl = self.store.client.ttl(self.key)
        return LockState(record=record, age_minutes=age, ttl_seconds=ttl if ttl >= 0 else None)

    def is_stale(self, threshold_minutes: float = None, now: int = None) -> bool:
        threshold = threshold_minutes if threshold_minutes is not None else self.settings.lock_stale_minutes
        now = now if now is not None else _now_ms()

        record = self.current()
        if record is None or record.created_at is None:
            return False
        if record.created_at > now:
            logger.warning(f"Lock {self.key} createdAt is in the future, clock skew between hosts?")
            return False

        age_minutes = (now - record.created_at) / 60000
        logger.debug(f"Lock {self.key} held by {record.owner_id} for {age_minutes:.1f} min")
        return age_minutes > threshold

    # --------------------------- maintenance window --------------------------
    @contextmanager
    def hold(self, owner_id: str = None):
        """
        Run a maintenance window under the lock and record its outcome in the
        bulk:* markers.

        Usage:
            with lock.hold() as owner_id:
                rewrite_static_data()
        """
        acquisition = self.acquire(owner_id)
        if not acquisition.acquired:
            raise LockHeldError(acquisition.holder)

        started = _now_ms()
        try:
            yield acquisition.owner_id
        except Exception as e:
            self.store.set_marker(keys.BULK_LAST_ERROR, str(e)[:ERROR_MAX_CHARS])
            raise
        else:
            finished = _now_ms()
            self.store.set_marker(keys.BULK_LAST_SUCCESS_TS, finished)
            self.store.set_marker(keys.BULK_LAST_DURATION_MS, finished - started)
            self.store.delete(keys.BULK_LAST_ERROR)
        finally:
            self.release(acquisition.owner_id)
