from __future__ import annotations

from datetime import datetime, date, timezone
from dateutil import tz


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock:
    """Clock pinned to a given instant; `advance` moves it forward."""

    def __init__(self, at: datetime):
        if at.tzinfo is None:
            at = at.replace(tzinfo=timezone.utc)
        self._at = at

    def now(self) -> datetime:
        return self._at

    def advance(self, delta):
        self._at = self._at + delta
        return self._at


def now_utc_iso(clock=None) -> str:
    return (clock or SystemClock()).now().astimezone(timezone.utc).isoformat()

def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt

def parse_date(value) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])

def to_local_date(dt_utc: datetime, local_tz: str) -> date:
    tzinfo = tz.gettz(local_tz) or timezone.utc
    return dt_utc.astimezone(tzinfo).date()

def hours_between(earlier: datetime, later: datetime) -> float:
    return (later - earlier).total_seconds() / 3600.0
