from typing import Optional

from polygon.rest.models import TickerSnapshot
from pydantic import BaseModel

BILLION = 1e9


def _positive(value) -> Optional[float]:
    if isinstance(value, (int, float)) and value > 0:
        return float(value)
    return None


def resolve_price(snapshot: TickerSnapshot) -> Optional[float]:
    """
    Effective price of a snapshot.

    last trade -> minute bar close -> day close -> previous day close,
    first positive value wins.
    """
    candidates = (
        getattr(snapshot.last_trade, "price", None),
        getattr(snapshot.min, "close", None),
        getattr(snapshot.day, "close", None),
        getattr(snapshot.prev_day, "close", None),
    )
    for value in candidates:
        price = _positive(value)
        if price is not None:
            return price
    return None


def resolve_prev_close(snapshot: TickerSnapshot, reference_close: Optional[float] = None) -> Optional[float]:
    return _positive(reference_close) or _positive(getattr(snapshot.prev_day, "close", None))


def compute_percent_change(price: float, reference: Optional[float]) -> float:
    if not reference:
        return 0.0
    return (price / reference - 1) * 100


def compute_market_cap(price: float, shares: Optional[float]) -> float:
    # billions, 2 dp
    if not shares:
        return 0.0
    return round(price * shares / BILLION, 2)


def compute_market_cap_diff(price: float, prev_close: Optional[float], shares: Optional[float]) -> float:
    if not shares or not prev_close:
        return 0.0
    return round((price - prev_close) * shares / BILLION, 2)


class ResolvedQuote(BaseModel):
    price: float
    prev_close: Optional[float] = None
    change_pct: float
    market_cap: float
    market_cap_diff: float


def resolve_quote(
    snapshot: TickerSnapshot,
    shares: Optional[float] = None,
    reference_close: Optional[float] = None,
) -> Optional[ResolvedQuote]:
    """Derived rank fields for one snapshot, None when no usable price exists."""
    price = resolve_price(snapshot)
    if price is None:
        return None

    prev_close = resolve_prev_close(snapshot, reference_close)
    return ResolvedQuote(
        price=price,
        prev_close=prev_close,
        change_pct=compute_percent_change(price, prev_close),
        market_cap=compute_market_cap(price, shares),
        market_cap_diff=compute_market_cap_diff(price, prev_close, shares),
    )
