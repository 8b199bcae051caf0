from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from live_monitor.market_rank_monitor.core.clock.session_clock import SessionClock

NY = ZoneInfo("America/New_York")


@pytest.fixture(scope="module")
def clock():
    return SessionClock()


@pytest.mark.parametrize(
    "hour, minute, expected",
    [
        (3, 59, "closed"),
        (4, 0, "pre"),
        (9, 29, "pre"),
        (9, 30, "live"),
        (15, 59, "live"),
        (16, 0, "after"),
        (19, 59, "after"),
        (20, 0, "closed"),
    ],
)
def test_detect_session_boundaries_are_inclusive_starts(clock, hour, minute, expected):
    assert clock.detect_session(datetime(2024, 1, 2, hour, minute, tzinfo=NY)) == expected


def test_detect_session_closed_on_weekend_and_holiday(clock):
    saturday = datetime(2024, 1, 6, 11, 0, tzinfo=NY)
    independence_day = datetime(2024, 7, 4, 11, 0, tzinfo=NY)

    assert clock.detect_session(saturday) == "closed"
    assert clock.detect_session(independence_day) == "closed"
    assert not clock.is_trading_day(independence_day)


def test_naive_instant_is_treated_as_utc(clock):
    # 14:30 UTC is 09:30 in New York in January
    assert clock.detect_session(datetime(2024, 1, 2, 14, 30)) == "live"


def test_date_key_uses_exchange_local_date(clock):
    # 02:00 UTC on Jan 3 is still Jan 2 in New York
    instant = datetime(2024, 1, 3, 2, 0, tzinfo=timezone.utc)
    assert clock.date_key(instant) == "2024-01-02"
    assert clock.minutes_since_midnight(instant) == 21 * 60


def test_storage_session_for_closed(clock):
    early = datetime(2024, 1, 2, 2, 0, tzinfo=NY)
    late = datetime(2024, 1, 2, 22, 0, tzinfo=NY)

    assert clock.storage_session("closed", early) == "pre"
    assert clock.storage_session("closed", late) == "after"
    assert clock.storage_session("live", late) == "live"
    assert clock.storage_session("closed", datetime(2024, 1, 2, 3, 59, tzinfo=NY)) == "pre"
    assert clock.storage_session("closed", datetime(2024, 1, 2, 4, 0, tzinfo=NY)) == "after"

    with pytest.raises(ValueError):
        clock.storage_session("overnight", late)


def test_last_trading_day_skips_holiday_and_weekend(clock):
    # Jan 1 2024 was a holiday, Dec 30-31 2023 a weekend
    assert clock.last_trading_day(datetime(2024, 1, 2, 12, 0, tzinfo=NY)) == "2023-12-29"
