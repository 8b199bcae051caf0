"""
Rank indexes - server-side sorting with Redis ZSET.

Per (date, session, field) there is one canonical sorted set
`rank:{date}:{session}:{field}` (member = symbol, score = field value) and a
companion `...:desc` set holding negated scores. Ascending ZRANGE over the
companion yields descending order with ties still broken by ascending symbol,
so pagination is deterministic in both directions.
"""

import logging
import time
from typing import Dict, Iterable, List, Literal, Optional, Tuple

from redis.exceptions import WatchError

from live_monitor.market_rank_monitor.core.config import Settings
from live_monitor.market_rank_monitor.core.data.schema import (
    FieldStats,
    LastRecord,
    RankExtreme,
    decode_last_record,
)
from live_monitor.market_rank_monitor.core.exceptions import MarketRankError
from live_monitor.market_rank_monitor.core.storage import keys
from live_monitor.market_rank_monitor.core.storage.keys import CHG_SCALE, RANK_FIELDS
from live_monitor.market_rank_monitor.core.storage.redis_client import RedisStore

logger = logging.getLogger(__name__)

Order = Literal["asc", "desc"]

UPSERT_MAX_ATTEMPTS = 5


def field_scores(fields: LastRecord) -> Dict[str, float]:
    """Score per rank field for one record. chg is int(change_pct * 10000)."""
    return {
        "price": fields.price,
        "cap": fields.market_cap,
        "capdiff": fields.market_cap_diff,
        "chg": round(fields.change_pct * CHG_SCALE),
    }


def score_to_value(field: str, score: float) -> float:
    if field == "chg":
        return score / CHG_SCALE
    return score


def _check_session(session: str) -> None:
    if session not in ("pre", "live", "after"):
        raise ValueError(f"Rank index has no '{session}' session, map it to a storage session first")


def _merge_extremes(
    symbol: str, score: float, lows: List[Tuple[str, float]], highs: List[Tuple[str, float]]
) -> Tuple[Tuple[str, float], Tuple[str, float]]:
    """
    Extremes after `symbol` moves to `score`.

    `lows`/`highs` are the two lowest / two highest current entries; at least
    one of each belongs to another symbol whenever another symbol exists.
    """
    candidate = (symbol, score)
    others_low = [e for e in lows if e[0] != symbol]
    others_high = [e for e in highs if e[0] != symbol]

    low = min([candidate] + others_low[:1], key=lambda e: (e[1], e[0]))
    high = max([candidate] + others_high[-1:], key=lambda e: (e[1], e[0]))
    return low, high


class RankIndex:
    def __init__(self, store: RedisStore, settings: Settings = None):
        self.store = store
        self.settings = settings or Settings()

    def _ttl(self, session: str) -> int:
        if session == "live":
            return self.settings.rank_ttl_live
        return self.settings.rank_ttl_pre_after

    # ================================ writes =================================
    def upsert(self, date: str, session: str, symbol: str, fields: LastRecord, now_ms: int = None) -> None:
        """
        Write every rank entry, the last record, the stats hash and the
        freshness entry for one symbol in a single MULTI/EXEC.

        The four canonical sets are WATCHed while current extremes are read,
        so the stats hash can never lag behind the sets it summarises.
        """
        _check_session(session)
        scores = field_scores(fields)
        ttl = self._ttl(session)
        now_ms = now_ms if now_ms is not None else int(time.time() * 1000)

        rank_keys = {f: keys.rank(date, session, f) for f in RANK_FIELDS}
        last_key = keys.last(date, session, symbol)
        stats_key = keys.stats(date, session)

        with self.store.guard(f"upsert {symbol}"):
            with self.store.client.pipeline(transaction=True) as pipe:
                for attempt in range(1, UPSERT_MAX_ATTEMPTS + 1):
                    try:
                        pipe.watch(*rank_keys.values())

                        stats_update = {}
                        for field, key in rank_keys.items():
                            lows = [tuple(e) for e in pipe.zrange(key, 0, 1, withscores=True)]
                            highs = [tuple(e) for e in pipe.zrange(key, -2, -1, withscores=True)]
                            low, high = _merge_extremes(symbol, scores[field], lows, highs)
                            stats_update[f"{field}_min_sym"] = low[0]
                            stats_update[f"{field}_min_v"] = str(low[1])
                            stats_update[f"{field}_max_sym"] = high[0]
                            stats_update[f"{field}_max_v"] = str(high[1])

                        pipe.multi()
                        for field, key in rank_keys.items():
                            pipe.zadd(key, {symbol: scores[field]})
                            pipe.zadd(f"{key}:desc", {symbol: -scores[field]})
                            pipe.expire(key, ttl)
                            pipe.expire(f"{key}:desc", ttl)
                            pipe.incr(keys.rank_version(date, session, field))
                            pipe.expire(keys.rank_version(date, session, field), ttl)

                        # the record is replaced whole, never merged
                        pipe.delete(last_key)
                        pipe.hset(last_key, mapping=fields.to_hash())
                        pipe.expire(last_key, ttl)

                        pipe.hset(stats_key, mapping=stats_update)
                        pipe.expire(stats_key, ttl)

                        pipe.hset(keys.FRESHNESS_LAST_UPDATE, symbol, str(now_ms))
                        pipe.expire(keys.FRESHNESS_LAST_UPDATE, self.settings.freshness_ttl_seconds)

                        pipe.execute()
                        return
                    except WatchError:
                        logger.info(f"Rank sets for {date}:{session} changed during upsert of {symbol}, retry {attempt}")
                        continue

        raise MarketRankError(
            f"Upsert of {symbol} lost {UPSERT_MAX_ATTEMPTS} races on {date}:{session}"
        )

    # ================================= reads =================================
    def ranked_range(
        self,
        date: str,
        session: str,
        field: str,
        order: Order = "desc",
        offset: int = 0,
        limit: int = 100,
    ) -> List[str]:
        _check_session(session)
        if order not in ("asc", "desc"):
            raise ValueError(f"Unknown order: {order}")
        if limit <= 0 or offset < 0:
            return []

        key = keys.rank(date, session, field)
        if order == "desc":
            key = f"{key}:desc"
        return self.store.zrange_by_rank(key, offset, offset + limit - 1)

    def count(self, date: str, session: str, field: str) -> int:
        _check_session(session)
        return self.store.zcard(keys.rank(date, session, field))

    def min_max(self, date: str, session: str, field: str) -> FieldStats:
        _check_session(session)
        low, high = self.store.zextremes(keys.rank(date, session, field))
        return FieldStats(
            min=RankExtreme(symbol=low[0], value=score_to_value(field, low[1])) if low else None,
            max=RankExtreme(symbol=high[0], value=score_to_value(field, high[1])) if high else None,
        )

    def stats_snapshot(self, date: str, session: str) -> Dict[str, FieldStats]:
        """Min/max of all four fields from the stats hash, one round trip when cached."""
        _check_session(session)
        raw = self.store.hgetall(keys.stats(date, session))

        result = {}
        for field in RANK_FIELDS:
            parsed = self._parse_cached_stats(raw, field)
            if parsed is None:
                logger.info(f"Stats cache miss for {date}:{session}, computing from rank sets")
                return {f: self.min_max(date, session, f) for f in RANK_FIELDS}
            result[field] = parsed
        return result

    @staticmethod
    def _parse_cached_stats(raw: Dict[str, str], field: str) -> Optional[FieldStats]:
        try:
            min_sym, min_v = raw[f"{field}_min_sym"], float(raw[f"{field}_min_v"])
            max_sym, max_v = raw[f"{field}_max_sym"], float(raw[f"{field}_max_v"])
        except (KeyError, ValueError):
            return None
        return FieldStats(
            min=RankExtreme(symbol=min_sym, value=score_to_value(field, min_v)),
            max=RankExtreme(symbol=max_sym, value=score_to_value(field, max_v)),
        )

    def many_last(self, date: str, session: str, symbols: Iterable[str]) -> Dict[str, LastRecord]:
        _check_session(session)
        symbols = list(dict.fromkeys(symbols))
        replies = self.store.hgetall_many(keys.last(date, session, s) for s in symbols)

        result = {}
        for symbol, raw in zip(symbols, replies):
            record = decode_last_record(raw)
            if record is not None:
                result[symbol] = record
        return result

    def version(self, date: str, session: str, field: str) -> int:
        _check_session(session)
        value = self.store.get_marker(keys.rank_version(date, session, field))
        return int(value) if value else 0
