import fakeredis
import polars as pl
import pytest

from live_monitor.market_rank_monitor.core.clock.session_clock import SessionClock
from live_monitor.market_rank_monitor.core.collector.ingestion_worker import IngestionWorker
from live_monitor.market_rank_monitor.core.config import Settings
from live_monitor.market_rank_monitor.core.data.providers.reference import TickerReferenceProvider
from live_monitor.market_rank_monitor.core.storage.redis_client import RedisStore
from live_monitor.market_rank_monitor.tests.fakes import FakeQuoteClient, make_snapshot


@pytest.fixture
def redis_server():
    return fakeredis.FakeServer()


@pytest.fixture
def redis_client(redis_server):
    return fakeredis.FakeRedis(server=redis_server, decode_responses=True)


@pytest.fixture
def store(redis_client):
    return RedisStore(redis_client)


@pytest.fixture
def down_store(redis_server):
    """A store whose server refuses every connection."""
    redis_server.connected = False
    return RedisStore(fakeredis.FakeRedis(server=redis_server, decode_responses=True))


@pytest.fixture
def settings():
    return Settings(polygon_api_key="test-key", inter_batch_delay=0, rate_limit_cooldown=0)


@pytest.fixture
def clock():
    return SessionClock()


@pytest.fixture
def reference():
    frame = pl.DataFrame(
        {
            "symbol": ["AAA", "BBB", "CCC"],
            "name": ["Alpha Corp", "Beta Inc", "Gamma Ltd"],
            "sector": ["Technology", "Energy", "Health Care"],
            "industry": ["Software", "Oil & Gas", "Biotech"],
            "shares_outstanding": [1e9, 1e9, 1e9],
            "prev_close": [9.0, 30.0, 25.0],
        }
    )
    return TickerReferenceProvider(frame=frame)


@pytest.fixture
def quote_client():
    return FakeQuoteClient(
        {
            "AAA": make_snapshot("AAA", 10.0, 9.0),
            "BBB": make_snapshot("BBB", 30.0, 30.0),
            "CCC": make_snapshot("CCC", 20.0, 25.0),
        }
    )


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def worker(store, settings, clock, quote_client, reference, sleeps):
    return IngestionWorker(
        store,
        settings,
        clock,
        quote_client=quote_client,
        reference=reference,
        sleep=sleeps.append,
    )
