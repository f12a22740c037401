from datetime import datetime, timezone, timedelta
from typing import Optional

# Fixed width so that string order == time order (SQL and Python comparisons).
ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def now_iso() -> str:
    """UTC timestamp like '2025-11-06T09:12:34.123456Z'."""
    return to_iso(datetime.now(timezone.utc))


def to_iso(dt: datetime) -> str:
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc)
    return dt.strftime(ISO_FORMAT)


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.strptime(value, ISO_FORMAT).replace(tzinfo=timezone.utc)


def iso_after(seconds: float, now: Optional[str] = None) -> str:
    """Return the UTC ISO time `seconds` after `now` (default: current time)."""
    base = parse_iso(now) if now else datetime.now(timezone.utc)
    try:
        return to_iso(base + timedelta(seconds=seconds))
    except OverflowError:
        # clamp to the end of the calendar
        return to_iso(datetime.max.replace(tzinfo=timezone.utc))

