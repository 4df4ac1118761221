from datetime import date, datetime, timedelta, timezone
import logging
import urllib.parse
import zoneinfo

from dateutil.parser import isoparse

logger = logging.getLogger(__name__)

# Smallest step between two distinct instants.
TICK = timedelta(microseconds=1)
ONE_DAY = timedelta(days=1)


def now_utc() -> datetime:
    """Return timezone-aware current UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_aware(dt: datetime) -> datetime:
    """Return `dt` as an aware UTC datetime; naive values are assumed UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_instant(value) -> datetime | None:
    """Parse a datetime-like value into an aware UTC datetime.

    Accepts datetimes, dates (midnight UTC) and ISO-8601 strings. Returns
    None for empty or unparseable input instead of raising; callers that
    need to reject bad input check for None themselves.
    """
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return ensure_aware(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if not isinstance(value, str):
        return None
    try:
        return ensure_aware(isoparse(value.strip()))
    except (ValueError, OverflowError):
        return None


def to_iso_z(dt: datetime | None) -> str | None:
    """Return canonical ISO string with a trailing Z for an instant."""
    if dt is None:
        return None
    return ensure_aware(dt).isoformat().replace('+00:00', 'Z')


def resolve_timezone(tz_name: str | None) -> tuple[zoneinfo.ZoneInfo, str]:
    """Resolve an IANA timezone name, falling back to UTC.

    Returns the zone together with the name actually used so responses can
    echo it back. Unknown or malformed names are logged and never fatal.
    """
    if not tz_name:
        return zoneinfo.ZoneInfo('UTC'), 'UTC'
    # tolerate URL-encoded tz names (e.g. America%2FNew_York)
    name = urllib.parse.unquote(str(tz_name)).strip()
    try:
        return zoneinfo.ZoneInfo(name), name
    except (zoneinfo.ZoneInfoNotFoundError, ValueError):
        logger.warning('unknown timezone %r; falling back to UTC', tz_name)
        return zoneinfo.ZoneInfo('UTC'), 'UTC'


def format_in_timezone(dt, tz_name: str | None, fmt: str = '%Y-%m-%d %H:%M:%S') -> str:
    """Format a datetime into the named timezone (UTC when unknown)."""
    if dt is None:
        return ''
    if isinstance(dt, str):
        return dt
    tz, _ = resolve_timezone(tz_name)
    return ensure_aware(dt).astimezone(tz).strftime(fmt)


def format_date_key(dt: datetime, tz: zoneinfo.ZoneInfo) -> str:
    """Return the YYYY-MM-DD local date of an instant in `tz`."""
    return ensure_aware(dt).astimezone(tz).date().isoformat()


def local_day_start(day: date, tz: zoneinfo.ZoneInfo) -> datetime:
    """Return the UTC instant of local midnight starting `day` in `tz`."""
    return datetime(day.year, day.month, day.day, tzinfo=tz).astimezone(timezone.utc)


def start_of_local_day(dt: datetime, tz: zoneinfo.ZoneInfo) -> datetime:
    """Return the UTC instant at which the local day containing `dt` begins."""
    return local_day_start(ensure_aware(dt).astimezone(tz).date(), tz)


def end_of_local_day(dt: datetime, tz: zoneinfo.ZoneInfo) -> datetime:
    """Return the UTC instant at which the next local day begins."""
    local_date = ensure_aware(dt).astimezone(tz).date()
    return local_day_start(local_date + ONE_DAY, tz)


def field_value(record, name: str, default=None):
    """Read `name` from a mapping or an ORM/attribute object."""
    if record is None:
        return default
    if isinstance(record, dict):
        return record.get(name, default)
    return getattr(record, name, default)
