import logging
from contextlib import contextmanager
from typing import Dict, Iterable, List, Optional, Tuple

import redis

from live_monitor.market_rank_monitor.core.config import Settings
from live_monitor.market_rank_monitor.core.exceptions import StoreUnavailableError

logger = logging.getLogger(__name__)

STORE_DOWN_ERRORS = (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError)


class RedisStore:
    """
    Thin wrapper around a Redis connection.

    Everything above this layer talks sorted sets, hashes and pipelines through
    here, and sees StoreUnavailableError instead of redis connection errors.
    """

    def __init__(self, client: redis.Redis):
        self.client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> "RedisStore":
        client = redis.Redis.from_url(
            settings.redis_url,
            socket_timeout=settings.redis_socket_timeout,
            socket_connect_timeout=settings.redis_socket_timeout,
            decode_responses=True,
        )
        return cls(client)

    @contextmanager
    def guard(self, action: str):
        """Translate store outages into StoreUnavailableError."""
        try:
            yield
        except STORE_DOWN_ERRORS as e:
            logger.error(f"Store unavailable during {action}: {e}")
            raise StoreUnavailableError(f"{action}: {e}") from e

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except STORE_DOWN_ERRORS as e:
            logger.warning(f"Store ping failed: {e}")
            return False

    def pipeline(self, transaction: bool = True):
        return self.client.pipeline(transaction=transaction)

    # ---------------------------- sorted sets ---------------------------------
    def zrange_by_rank(
        self, key: str, start: int, end: int, withscores: bool = False
    ) -> List:
        with self.guard(f"ZRANGE {key}"):
            return self.client.zrange(key, start, end, withscores=withscores)

    def zcard(self, key: str) -> int:
        with self.guard(f"ZCARD {key}"):
            return int(self.client.zcard(key))

    def zextremes(self, key: str) -> Tuple[Optional[Tuple[str, float]], Optional[Tuple[str, float]]]:
        """Lowest and highest (member, score) of a sorted set, in one round trip."""
        with self.guard(f"ZRANGE extremes {key}"):
            pipe = self.client.pipeline(transaction=False)
            pipe.zrange(key, 0, 0, withscores=True)
            pipe.zrange(key, -1, -1, withscores=True)
            low, high = pipe.execute()
        return (tuple(low[0]) if low else None, tuple(high[0]) if high else None)

    # ------------------------------ hashes ------------------------------------
    def hgetall(self, key: str) -> Dict[str, str]:
        with self.guard(f"HGETALL {key}"):
            return self.client.hgetall(key)

    def hgetall_many(self, keys: Iterable[str]) -> List[Dict[str, str]]:
        keys = list(keys)
        if not keys:
            return []
        with self.guard(f"HGETALL x{len(keys)}"):
            pipe = self.client.pipeline(transaction=False)
            for key in keys:
                pipe.hgetall(key)
            return pipe.execute()

    def hmget(self, key: str, fields: List[str]) -> List[Optional[str]]:
        if not fields:
            return []
        with self.guard(f"HMGET {key}"):
            return self.client.hmget(key, fields)

    # ------------------------- scalar markers ---------------------------------
    def get_marker(self, key: str) -> Optional[str]:
        with self.guard(f"GET {key}"):
            return self.client.get(key)

    def set_marker(self, key: str, value, ttl: int = None) -> None:
        with self.guard(f"SET {key}"):
            self.client.set(key, str(value), ex=ttl)

    def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        with self.guard("DEL"):
            return int(self.client.delete(*keys))
