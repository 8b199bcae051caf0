import logging
from typing import Dict, List, Optional

import httpx
from polygon.rest.models import TickerSnapshot

from live_monitor.market_rank_monitor.core.config import POLYGON_BASE_URL
from live_monitor.market_rank_monitor.core.exceptions import (
    ConfigurationError,
    RateLimitedError,
    SymbolNotFoundError,
    UpstreamAuthError,
    UpstreamError,
    UpstreamTransientError,
)

logger = logging.getLogger(__name__)

SNAPSHOT_PATH = "/v2/snapshot/locale/us/markets/stocks/tickers"


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    try:
        return float(value) if value is not None else None
    except ValueError:
        return None


class PolygonQuoteClient:
    """
    Batched snapshot fetches against the Polygon REST API.

    HTTP goes through httpx so each failure can be classified by status code;
    payloads are decoded with the polygon client's TickerSnapshot model.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = POLYGON_BASE_URL,
        timeout: float = 10.0,
        transport: httpx.BaseTransport = None,
        client: httpx.Client = None,
    ):
        if not api_key:
            raise ConfigurationError("POLYGON_API_KEY is not set")
        self.api_key = api_key
        self.client = client or httpx.Client(base_url=base_url, timeout=timeout, transport=transport)

    def close(self):
        self.client.close()

    def fetch_snapshots(self, symbols: List[str]) -> Dict[str, TickerSnapshot]:
        """
        One request for the whole batch.

        Symbols the provider has no data for are simply absent from the result.
        """
        if not symbols:
            return {}

        params = {"tickers": ",".join(symbols), "apiKey": self.api_key}
        try:
            response = self.client.get(SNAPSHOT_PATH, params=params)
        except httpx.TimeoutException as e:
            raise UpstreamTransientError(f"Snapshot request timed out: {e}", symbols=symbols) from e
        except httpx.TransportError as e:
            raise UpstreamTransientError(f"Snapshot request failed: {e}", symbols=symbols) from e

        self._raise_for_status(response, symbols)

        try:
            payload = response.json()
        except ValueError as e:
            raise UpstreamTransientError(f"Unreadable snapshot payload: {e}", symbols=symbols) from e

        result = {}
        for item in payload.get("tickers") or []:
            snapshot = TickerSnapshot.from_dict(item)
            if snapshot.ticker:
                result[snapshot.ticker.upper()] = snapshot
        logger.debug(f"Fetched {len(result)}/{len(symbols)} snapshots")
        return result

    @staticmethod
    def _raise_for_status(response: httpx.Response, symbols: List[str]) -> None:
        status = response.status_code
        if status < 400:
            return

        message = f"Snapshot request returned {status}"
        if status in (401, 403):
            raise UpstreamAuthError(message, status_code=status, symbols=symbols)
        if status == 404:
            raise SymbolNotFoundError(message, symbols=symbols)
        if status == 429:
            raise RateLimitedError(message, retry_after=_retry_after(response), symbols=symbols)
        if status >= 500:
            raise UpstreamTransientError(message, status_code=status, symbols=symbols)
        raise UpstreamError(message, status_code=status, symbols=symbols)
