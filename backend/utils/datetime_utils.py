import re
from datetime import datetime, date, time, timedelta, timezone, tzinfo
from typing import Iterator
from zoneinfo import ZoneInfo

_ISO_DATE_RE = re.compile(r"^([0-9]{4})-([0-9]{2})-([0-9]{2})$")
_HHMM_RE = re.compile(r"^([0-9]{1,2}):([0-9]{2})$")
_HHMM_12H_RE = re.compile(r"^([0-9]{1,2}):([0-9]{2})\s*(AM|PM)$", re.IGNORECASE)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _zone(tz_name):
    if isinstance(tz_name, tzinfo):
        return tz_name
    if tz_name:
        try:
            return ZoneInfo(tz_name)
        except Exception:
            pass
    return timezone.utc


def now_for_tz(tz_name: str | None) -> datetime:
    """Return the current aware datetime in the given timezone (UTC fallback)."""
    return datetime.now(_zone(tz_name))


def parse_iso_date(value) -> date | None:
    """Parse a strict YYYY-MM-DD string; anything else yields None."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    match = _ISO_DATE_RE.match(str(value or "").strip())
    if not match:
        return None
    try:
        return date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
    except ValueError:
        return None


def require_iso_date(value, field_name: str) -> str:
    s = str(value or "").strip()
    if not _ISO_DATE_RE.match(s):
        raise ValueError(f"{field_name} must be YYYY-MM-DD")
    parsed = parse_iso_date(s)
    if parsed is None:
        raise ValueError(f"{field_name} must be a valid date")
    return parsed.isoformat()


def add_days_iso(iso: str, days: int) -> str:
    parsed = parse_iso_date(iso)
    if parsed is None:
        return ""
    return (parsed + timedelta(days=int(days))).isoformat()


def is_weekday(d: date) -> bool:
    """Serving days are Monday through Friday."""
    return d.isoweekday() <= 5


def is_weekday_iso(iso: str) -> bool:
    parsed = parse_iso_date(iso)
    return bool(parsed and is_weekday(parsed))


def iso_between(iso: str, start: str, end: str) -> bool:
    d, s, e = str(iso or "").strip(), str(start or "").strip(), str(end or "").strip()
    if not d or not s or not e:
        return False
    return s <= d <= e


def iter_dates_iso(start_iso: str, end_iso: str) -> Iterator[str]:
    """Yield every ISO date from start to end inclusive."""
    start = parse_iso_date(start_iso)
    end = parse_iso_date(end_iso)
    if start is None or end is None:
        return
    cursor = start
    while cursor <= end:
        yield cursor.isoformat()
        cursor += timedelta(days=1)


def parse_time_of_day(value) -> time | None:
    """Accept 24h ``HH:mm`` and 12h ``h:mm AM/PM``."""
    s = str(value or "").strip()
    if not s:
        return None
    match = _HHMM_RE.match(s)
    if match:
        hh, mm = int(match.group(1)), int(match.group(2))
        if 0 <= hh <= 23 and 0 <= mm <= 59:
            return time(hh, mm)
        return None
    match = _HHMM_12H_RE.match(s)
    if match:
        hh, mm = int(match.group(1)), int(match.group(2))
        meridiem = match.group(3).upper()
        if not (1 <= hh <= 12 and 0 <= mm <= 59):
            return None
        if meridiem == "AM":
            hh = 0 if hh == 12 else hh
        else:
            hh = 12 if hh == 12 else hh + 12
        return time(hh, mm)
    return None


def normalize_hhmm(value, default: str | None = None) -> str | None:
    parsed = parse_time_of_day(value)
    if parsed is None:
        return default
    return f"{parsed.hour:02d}:{parsed.minute:02d}"


def scheduled_datetime(date_iso: str, time_value, tz_name) -> datetime | None:
    """Combine a local delivery date and time into an aware datetime."""
    d = parse_iso_date(date_iso)
    t = parse_time_of_day(time_value)
    if d is None or t is None:
        return None
    return datetime.combine(d, t, tzinfo=_zone(tz_name))


def is_within_cutoff(now: datetime, scheduled: datetime, cutoff_minutes: int) -> bool:
    """True when ``now`` is already inside the lead-time window before ``scheduled``."""
    return now >= scheduled - timedelta(minutes=max(int(cutoff_minutes), 0))


def format_cutoff(minutes) -> str:
    m = max(1, int(minutes or 0))
    if m % 60 == 0:
        h = m // 60
        return f"{h} hour{'' if h == 1 else 's'}"
    return f"{m} minute{'' if m == 1 else 's'}"


def to_utc_naive(value: datetime) -> datetime:
    """Aware datetime to the naive UTC form the DateTime columns store."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
