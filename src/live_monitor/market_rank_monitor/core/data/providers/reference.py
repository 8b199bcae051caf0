import logging
import os
from typing import Dict, Iterable, Optional

import polars as pl
from pydantic import BaseModel

from live_monitor.market_rank_monitor.core.config import REFERENCE_PARQUET

logger = logging.getLogger(__name__)

REFERENCE_SCHEMA = {
    "symbol": pl.Utf8,
    "name": pl.Utf8,
    "sector": pl.Utf8,
    "industry": pl.Utf8,
    "shares_outstanding": pl.Float64,
    "prev_close": pl.Float64,
}


class TickerReference(BaseModel):
    symbol: str
    name: Optional[str] = None
    sector: Optional[str] = None
    industry: Optional[str] = None
    shares_outstanding: Optional[float] = None
    prev_close: Optional[float] = None


class TickerReferenceProvider:
    """Descriptive fields, shares outstanding and previous close per ticker."""

    def __init__(self, frame: pl.DataFrame = None, path: str = REFERENCE_PARQUET):
        self.path = path
        self._frame = frame
        self._from_file = frame is None

    @property
    def frame(self) -> pl.DataFrame:
        if self._frame is None:
            self._frame = self._load()
        return self._frame

    def _load(self) -> pl.DataFrame:
        if not os.path.exists(self.path):
            logger.warning(f"Reference file {self.path} not found, derived fields will be empty")
            return pl.DataFrame(schema=REFERENCE_SCHEMA)

        df = pl.read_parquet(self.path)
        missing = [c for c in REFERENCE_SCHEMA if c not in df.columns]
        if missing:
            logger.warning(f"Reference file {self.path} missing columns {missing}")
            df = df.with_columns([pl.lit(None, dtype=REFERENCE_SCHEMA[c]).alias(c) for c in missing])

        return (
            df.select(list(REFERENCE_SCHEMA))
            .with_columns(pl.col("symbol").str.to_uppercase())
            .unique(subset="symbol", keep="last")
        )

    def reload(self) -> None:
        """Re-read the parquet file on next access. A frame passed in directly is kept."""
        if self._from_file:
            self._frame = None

    def lookup(self, symbols: Iterable[str]) -> Dict[str, TickerReference]:
        wanted = [s.upper() for s in symbols]
        if not wanted:
            return {}

        rows = self.frame.filter(pl.col("symbol").is_in(wanted)).to_dicts()
        return {row["symbol"]: TickerReference(**row) for row in rows}

    def universe(self) -> list:
        return self.frame.get_column("symbol").sort().to_list()
