"""
Exchange-local clock: session detection and trading-date keys.

Every call recomputes from the instant it is given, so a date rollover at
local midnight is visible immediately. Nothing here caches a date.
"""

import logging
from datetime import date, datetime, time, timedelta
from typing import Literal, Optional
from zoneinfo import ZoneInfo

import exchange_calendars as xcals
from exchange_calendars.errors import DateOutOfBounds

from live_monitor.market_rank_monitor.core.config import EXCHANGE_CALENDAR, EXCHANGE_TZ

logger = logging.getLogger(__name__)

Session = Literal["pre", "live", "after", "closed"]
StorageSession = Literal["pre", "live", "after"]

SESSIONS = ("pre", "live", "after", "closed")
STORAGE_SESSIONS = ("pre", "live", "after")

# session start boundaries, inclusive
PRE_MARKET_START = time(4, 0)
MARKET_OPEN = time(9, 30)
MARKET_CLOSE = time(16, 0)
AFTER_HOURS_END = time(20, 0)


class SessionClock:
    def __init__(self, tz: str = EXCHANGE_TZ, calendar_name: Optional[str] = EXCHANGE_CALENDAR):
        self.tz = ZoneInfo(tz)
        self.calendar_name = calendar_name
        self._calendar = None

    @property
    def calendar(self):
        # building the XNYS schedule takes a moment, only do it on first use
        if self._calendar is None and self.calendar_name:
            self._calendar = xcals.get_calendar(self.calendar_name)
        return self._calendar

    def now(self) -> datetime:
        return datetime.now(self.tz)

    def to_local(self, instant: datetime = None) -> datetime:
        if instant is None:
            return self.now()
        if instant.tzinfo is None:
            # naive instants are treated as UTC, never as exchange-local
            instant = instant.replace(tzinfo=ZoneInfo("UTC"))
        return instant.astimezone(self.tz)

    def date_key(self, instant: datetime = None) -> str:
        """YYYY-MM-DD of the exchange-local calendar date."""
        return self.to_local(instant).strftime("%Y-%m-%d")

    def minutes_since_midnight(self, instant: datetime = None) -> int:
        local = self.to_local(instant)
        return local.hour * 60 + local.minute

    def is_trading_day(self, instant: datetime = None) -> bool:
        local_date = self.to_local(instant).date()
        return self._is_session_date(local_date)

    def _is_session_date(self, local_date: date) -> bool:
        if local_date.weekday() >= 5:
            return False
        if self.calendar is None:
            return True
        try:
            return bool(self.calendar.is_session(local_date.isoformat()))
        except DateOutOfBounds:
            logger.warning(
                f"{local_date} outside {self.calendar_name} calendar bounds, "
                f"treating weekday as trading day"
            )
            return True

    def detect_session(self, instant: datetime = None) -> Session:
        local = self.to_local(instant)

        if not self._is_session_date(local.date()):
            return "closed"

        t = local.time()
        if PRE_MARKET_START <= t < MARKET_OPEN:
            return "pre"
        if MARKET_OPEN <= t < MARKET_CLOSE:
            return "live"
        if MARKET_CLOSE <= t < AFTER_HOURS_END:
            return "after"
        return "closed"

    def storage_session(self, session: Session, instant: datetime = None) -> StorageSession:
        """
        Collapse a wall-clock session to the session the rank index is keyed by.

        `closed` reads the latest snapshot of the day: `after` once the
        pre-market start has passed, `pre` before any session has occurred.
        """
        if session not in SESSIONS:
            raise ValueError(f"Unknown session: {session}")
        if session != "closed":
            return session
        if self.minutes_since_midnight(instant) < PRE_MARKET_START.hour * 60 + PRE_MARKET_START.minute:
            return "pre"
        return "after"

    def last_trading_day(self, instant: datetime = None) -> str:
        """Most recent trading date strictly before the local date of `instant`."""
        cursor = self.to_local(instant).date()
        for _ in range(15):
            cursor -= timedelta(days=1)
            if self._is_session_date(cursor):
                return cursor.isoformat()
        raise ValueError(f"No trading day found before {self.date_key(instant)}")

    def is_live(self, instant: datetime = None) -> bool:
        return self.detect_session(instant) == "live"
