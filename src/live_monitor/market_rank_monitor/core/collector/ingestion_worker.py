"""
Ingestion worker: fetch quotes for the universe in sub-batches and write each
symbol into the rank index.

Failure handling by class:
    UpstreamAuthError       abort the run, no DLQ jobs, re-raise
    RateLimitedError        cool down and retry the sub-batch, DLQ once the
                            cooldown budget is spent
    UpstreamTransientError  DLQ the sub-batch (after optional inline retries)
    SymbolNotFoundError     DLQ the symbol at low priority
    store write failure     DLQ the symbol
"""

import logging
import time
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from polygon.rest.models import TickerSnapshot
from prometheus_client import Counter, Histogram
from pydantic import BaseModel, Field

from live_monitor.market_rank_monitor.core.clock.session_clock import SessionClock
from live_monitor.market_rank_monitor.core.collector.quote_client import PolygonQuoteClient
from live_monitor.market_rank_monitor.core.config import Settings
from live_monitor.market_rank_monitor.core.data.providers.reference import (
    TickerReference,
    TickerReferenceProvider,
)
from live_monitor.market_rank_monitor.core.data.schema import DLQJob, LastRecord
from live_monitor.market_rank_monitor.core.data.transforms import resolve_quote
from live_monitor.market_rank_monitor.core.dlq.dead_letter_queue import DeadLetterQueue
from live_monitor.market_rank_monitor.core.exceptions import (
    ConfigurationError,
    MarketRankError,
    RateLimitedError,
    StoreUnavailableError,
    SymbolNotFoundError,
    UpstreamAuthError,
    UpstreamError,
    UpstreamTransientError,
)
from live_monitor.market_rank_monitor.core.lock.static_data_lock import StaticDataLock
from live_monitor.market_rank_monitor.core.monitoring.health_monitor import INGEST_LOOP, HealthMonitor
from live_monitor.market_rank_monitor.core.ranking.rank_index import RankIndex
from live_monitor.market_rank_monitor.core.storage import keys
from live_monitor.market_rank_monitor.core.storage.redis_client import RedisStore

logger = logging.getLogger(__name__)

# -----------------------------
# Prometheus Metrics
# -----------------------------
INGEST_SYMBOLS_TOTAL = Counter(
    "market_rank_ingest_symbols_total", "Symbols processed by the ingestion worker", ["outcome"]
)
INGEST_DLQ_TOTAL = Counter(
    "market_rank_ingest_dlq_total", "DLQ jobs created by the ingestion worker", ["reason"]
)
INGEST_RATE_LIMITED_TOTAL = Counter(
    "market_rank_ingest_rate_limited_total", "429 responses from the quote provider"
)
INGEST_BATCH_DURATION_SECONDS = Histogram(
    "market_rank_ingest_batch_duration_seconds", "Wall time of one ingest_batch run"
)

WORKER_SUCCESS_TTL = 3600

DLQ_BATCH = "ingest_batch"
DLQ_SYMBOL = "ingest_symbol"


class IngestReport(BaseModel):
    succeeded: List[str] = Field(default_factory=list)
    failed: List[str] = Field(default_factory=list)
    dlq_job_ids: List[str] = Field(default_factory=list)
    aborted: bool = False


def chunked(items: List[str], size: int) -> Iterable[List[str]]:
    for i in range(0, len(items), size):
        yield items[i : i + size]


class IngestionWorker:
    def __init__(
        self,
        store: RedisStore,
        settings: Settings = None,
        clock: SessionClock = None,
        quote_client: PolygonQuoteClient = None,
        reference: TickerReferenceProvider = None,
        rank_index: RankIndex = None,
        dlq: DeadLetterQueue = None,
        health: HealthMonitor = None,
        lock: StaticDataLock = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.settings = settings or Settings()
        self.clock = clock or SessionClock()
        self.quote_client = quote_client
        self.reference = reference or TickerReferenceProvider(path=self.settings.reference_parquet)
        self.rank_index = rank_index or RankIndex(store, self.settings)
        self.dlq = dlq or DeadLetterQueue(store, self.settings)
        self.health = health or HealthMonitor(store, self.settings)
        self.lock = lock or StaticDataLock(store, self.settings)
        self.sleep = sleep

        if self.dlq.handler is None:
            self.dlq.handler = self.retry_unit

    def _client(self, api_key: Optional[str]) -> PolygonQuoteClient:
        if self.quote_client is not None:
            return self.quote_client
        if not api_key:
            raise ConfigurationError("POLYGON_API_KEY is not set")
        self.quote_client = PolygonQuoteClient(
            api_key,
            base_url=self.settings.polygon_base_url,
            timeout=self.settings.upstream_timeout,
        )
        return self.quote_client

    # ============================== batch run ================================
    def ingest_batch(self, symbols: List[str], api_key: str = None, instant: datetime = None) -> IngestReport:
        api_key = api_key or self.settings.polygon_api_key
        if not api_key:
            raise ConfigurationError("POLYGON_API_KEY is not set")
        client = self._client(api_key)

        symbols = list(dict.fromkeys(s.upper() for s in symbols))
        date = self.clock.date_key(instant)
        session = self.clock.storage_session(self.clock.detect_session(instant), instant)
        references = self.reference.lookup(symbols)

        report = IngestReport()
        started = time.perf_counter()
        logger.info(f"Ingesting {len(symbols)} symbols into {date}:{session}")

        try:
            for i, chunk in enumerate(chunked(symbols, self.settings.batch_size)):
                if i > 0 and self.settings.inter_batch_delay:
                    self.sleep(self.settings.inter_batch_delay)
                self._ingest_chunk(client, chunk, references, date, session, report)
        except UpstreamAuthError as e:
            report.aborted = True
            logger.error(f"Quote provider rejected credentials, aborting run: {e}")
            self.health.record_failure(INGEST_LOOP, e)
            raise
        finally:
            INGEST_BATCH_DURATION_SECONDS.observe(time.perf_counter() - started)

        self._record_outcome(report)
        logger.info(
            f"Ingest done: {len(report.succeeded)} ok, {len(report.failed)} failed, "
            f"{len(report.dlq_job_ids)} DLQ jobs"
        )
        return report

    def _record_outcome(self, report: IngestReport) -> None:
        if report.succeeded:
            self.store.set_marker(
                keys.WORKER_LAST_SUCCESS_TS, int(time.time() * 1000), ttl=WORKER_SUCCESS_TTL
            )
            self.health.record_success(INGEST_LOOP, len(report.succeeded))
        elif report.failed:
            self.health.record_failure(INGEST_LOOP, f"all {len(report.failed)} symbols failed")

    def _fetch(self, client: PolygonQuoteClient, chunk: List[str]) -> Dict[str, TickerSnapshot]:
        """Fetch one sub-batch, spending the cooldown and inline retry budgets."""
        cooldowns = retries = 0
        while True:
            try:
                return client.fetch_snapshots(chunk)
            except RateLimitedError as e:
                INGEST_RATE_LIMITED_TOTAL.inc()
                if cooldowns >= self.settings.rate_limit_max_cooldowns:
                    raise
                cooldowns += 1
                wait = e.retry_after or self.settings.rate_limit_cooldown
                logger.info(f"Rate limited, cooling down {wait}s ({cooldowns}/{self.settings.rate_limit_max_cooldowns})")
                self.sleep(wait)
            except UpstreamTransientError as e:
                if retries >= self.settings.inline_retries:
                    raise
                retries += 1
                logger.info(f"Transient upstream error, retry {retries}: {e}")
                self.sleep(self.settings.retry_backoff * retries)

    def _ingest_chunk(
        self,
        client: PolygonQuoteClient,
        chunk: List[str],
        references: Dict[str, TickerReference],
        date: str,
        session: str,
        report: IngestReport,
    ) -> None:
        try:
            snapshots = self._fetch(client, chunk)
        except UpstreamAuthError:
            raise
        except SymbolNotFoundError as e:
            # a 404 for the whole request is still a per-symbol condition
            for symbol in chunk:
                self._dead_letter_symbol(symbol, date, session, e, "not_found", "low", report)
            return
        except UpstreamError as e:
            reason = "rate_limited" if isinstance(e, RateLimitedError) else "transient"
            job = self.dlq.enqueue(DLQ_BATCH, {"symbols": chunk, "date": date, "session": session}, e)
            INGEST_DLQ_TOTAL.labels(reason=reason).inc()
            INGEST_SYMBOLS_TOTAL.labels(outcome="failed").inc(len(chunk))
            report.failed.extend(chunk)
            report.dlq_job_ids.append(job.id)
            return

        now_ms = int(time.time() * 1000)
        for symbol in chunk:
            try:
                snapshot = snapshots.get(symbol)
                if snapshot is None:
                    raise SymbolNotFoundError(f"No snapshot for {symbol}", symbols=[symbol])
                self._write_symbol(symbol, snapshot, references.get(symbol), date, session, now_ms)
            except SymbolNotFoundError as e:
                self._dead_letter_symbol(symbol, date, session, e, "not_found", "low", report)
            except (MarketRankError, ValueError) as e:
                self._dead_letter_symbol(symbol, date, session, e, "write_failed", "normal", report)
            else:
                INGEST_SYMBOLS_TOTAL.labels(outcome="ok").inc()
                report.succeeded.append(symbol)

    def _dead_letter_symbol(self, symbol, date, session, error, reason, priority, report: IngestReport) -> None:
        logger.warning(f"{symbol}: {error}")
        job = self.dlq.enqueue(
            DLQ_SYMBOL, {"symbol": symbol, "date": date, "session": session}, error, priority=priority
        )
        INGEST_DLQ_TOTAL.labels(reason=reason).inc()
        INGEST_SYMBOLS_TOTAL.labels(outcome="failed").inc()
        report.failed.append(symbol)
        report.dlq_job_ids.append(job.id)

    def _write_symbol(
        self,
        symbol: str,
        snapshot: TickerSnapshot,
        reference: Optional[TickerReference],
        date: str,
        session: str,
        now_ms: int,
    ) -> None:
        reference = reference or TickerReference(symbol=symbol)
        quote = resolve_quote(snapshot, reference.shares_outstanding, reference.prev_close)
        if quote is None:
            raise SymbolNotFoundError(f"No usable price for {symbol}", symbols=[symbol])

        record = LastRecord(
            price=quote.price,
            change_pct=quote.change_pct,
            market_cap=quote.market_cap,
            market_cap_diff=quote.market_cap_diff,
            name=reference.name,
            sector=reference.sector,
            industry=reference.industry,
        )
        self.rank_index.upsert(date, session, symbol, record, now_ms=now_ms)

    # =============================== DLQ retry ===============================
    def retry_unit(self, job: DLQJob, instant: datetime = None) -> None:
        """
        Re-run a dead-lettered unit against the current session.

        Raises on any failure so the queue keeps the job; never creates new jobs.
        """
        symbols = job.symbols()
        if not symbols:
            raise MarketRankError(f"DLQ job {job.id} carries no symbols")

        client = self._client(self.settings.polygon_api_key)
        date = self.clock.date_key(instant)
        session = self.clock.storage_session(self.clock.detect_session(instant), instant)
        references = self.reference.lookup(symbols)

        snapshots = self._fetch(client, symbols)
        now_ms = int(time.time() * 1000)
        for symbol in symbols:
            snapshot = snapshots.get(symbol)
            if snapshot is None:
                raise SymbolNotFoundError(f"No snapshot for {symbol}", symbols=[symbol])
            self._write_symbol(symbol, snapshot, references.get(symbol), date, session, now_ms)

    # ================================ loop ===================================
    def run_once(self, universe: List[str], instant: datetime = None) -> Optional[IngestReport]:
        if not self.clock.is_trading_day(instant):
            logger.info("Weekend or holiday, skipping ingestion")
            return None

        if self.lock.is_stale():
            logger.error("Static data lock looks stuck, maintenance may have crashed")

        return self.ingest_batch(universe, instant=instant)

    def run_forever(self, universe_loader: Callable[[], List[str]] = None) -> None:
        universe_loader = universe_loader or self.reference.universe
        loaded_for = None
        while True:
            today = self.clock.date_key()
            if today != loaded_for:
                # the maintenance job rewrites the reference file between trading days
                self.reference.reload()
                loaded_for = today
            try:
                self.run_once(universe_loader())
            except (UpstreamAuthError, ConfigurationError):
                raise
            except StoreUnavailableError as e:
                # nowhere to record it, the store is the thing that failed
                logger.error(f"Ingest iteration failed, store unavailable: {e}")
            except MarketRankError as e:
                logger.error(f"Ingest iteration failed: {e}")
                self.health.record_failure(INGEST_LOOP, e)
            self.sleep(self.settings.poll_interval)
