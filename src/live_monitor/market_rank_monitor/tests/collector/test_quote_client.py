import httpx
import pytest

from live_monitor.market_rank_monitor.core.collector.quote_client import SNAPSHOT_PATH, PolygonQuoteClient
from live_monitor.market_rank_monitor.core.exceptions import (
    ConfigurationError,
    RateLimitedError,
    SymbolNotFoundError,
    UpstreamAuthError,
    UpstreamTransientError,
)


def client_for(handler) -> PolygonQuoteClient:
    return PolygonQuoteClient("test-key", base_url="https://api.test", transport=httpx.MockTransport(handler))


def test_fetch_snapshots_decodes_tickers():
    seen = {}

    def handler(request: httpx.Request):
        seen["path"] = request.url.path
        seen["params"] = dict(request.url.params)
        return httpx.Response(
            200,
            json={
                "status": "OK",
                "tickers": [
                    {"ticker": "AAA", "lastTrade": {"p": 10.5}, "prevDay": {"c": 10.0}},
                    {"ticker": "BBB", "min": {"c": 3.2}, "day": {"c": 3.1}},
                ],
            },
        )

    snapshots = client_for(handler).fetch_snapshots(["AAA", "BBB", "ZZZ"])

    assert seen["path"] == SNAPSHOT_PATH
    assert seen["params"] == {"tickers": "AAA,BBB,ZZZ", "apiKey": "test-key"}
    assert set(snapshots) == {"AAA", "BBB"}
    assert snapshots["AAA"].last_trade.price == 10.5
    assert snapshots["AAA"].prev_day.close == 10.0
    assert snapshots["BBB"].min.close == 3.2


@pytest.mark.parametrize(
    "status, error",
    [
        (401, UpstreamAuthError),
        (403, UpstreamAuthError),
        (404, SymbolNotFoundError),
        (500, UpstreamTransientError),
        (503, UpstreamTransientError),
    ],
)
def test_status_codes_map_to_error_classes(status, error):
    client = client_for(lambda request: httpx.Response(status))

    with pytest.raises(error) as exc:
        client.fetch_snapshots(["AAA"])
    assert exc.value.symbols == ["AAA"]


def test_rate_limit_carries_retry_after():
    client = client_for(lambda request: httpx.Response(429, headers={"Retry-After": "3"}))

    with pytest.raises(RateLimitedError) as exc:
        client.fetch_snapshots(["AAA"])
    assert exc.value.retry_after == 3.0
    assert exc.value.status_code == 429


def test_timeout_is_transient():
    def handler(request):
        raise httpx.ReadTimeout("upstream too slow", request=request)

    with pytest.raises(UpstreamTransientError):
        client_for(handler).fetch_snapshots(["AAA"])


def test_connection_failure_is_transient():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(UpstreamTransientError):
        client_for(handler).fetch_snapshots(["AAA"])


def test_missing_key_is_configuration_error():
    with pytest.raises(ConfigurationError):
        PolygonQuoteClient("")


def test_empty_batch_makes_no_request():
    def handler(request):
        raise AssertionError("no request expected")

    assert client_for(handler).fetch_snapshots([]) == {}
