"""Simple runtime configuration for the Zen Calendar service.

Control flags are read from environment variables to allow toggling in
development or production without code changes.
"""
import os


def _trueish(v: str | None) -> bool:
    if not v:
        return False
    return v.lower() in ('1', 'true', 'yes', 'on')


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


# Database URL for the async engine. Tests point this at a temporary file.
DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite+aiosqlite:///./zen_calendar.db')

# SECRET_KEY must be set in production. The fallback only exists so that
# local tooling can import the package; the app lifespan refuses to start
# with it unless DEV_MODE is on.
SECRET_KEY = os.getenv('SECRET_KEY', 'CHANGE_ME_IN_ENV_FOR_TESTS')
ACCESS_TOKEN_EXPIRE_MINUTES = _int_env('ACCESS_TOKEN_EXPIRE_MINUTES', 60 * 24)

# Default IANA timezone used to bucket calendar days when the caller does
# not send one.
DEFAULT_TIMEZONE = os.getenv('DEFAULT_TIMEZONE', 'UTC')

# Size of the aggregation window when no explicit end is given, and the
# maximum span a caller may request (longer ranges have their end truncated).
CALENDAR_DEFAULT_WINDOW_DAYS = _int_env('CALENDAR_DEFAULT_WINDOW_DAYS', 30)
CALENDAR_MAX_SPAN_DAYS = _int_env('CALENDAR_MAX_SPAN_DAYS', 120)

# Number of reminder occurrences expanded per task for each calendar request.
REMINDER_OCCURRENCE_LIMIT = _int_env('REMINDER_OCCURRENCE_LIMIT', 12)

# Ceiling on recurrence advancement steps when searching for the next
# occurrence. Schedules that need more steps are treated as exhausted.
REMINDER_MAX_ITERATIONS = _int_env('REMINDER_MAX_ITERATIONS', 512)

# Display duration for point-in-time calendar entries (due dates, reminders).
EVENT_DISPLAY_MINUTES = _int_env('EVENT_DISPLAY_MINUTES', 30)

# When true, the app is considered to be running in development mode and
# the insecure SECRET_KEY fallback is tolerated.
DEV_MODE = _trueish(os.getenv('DEV_MODE', '0'))

# Optional local overrides: define variables in zen_calendar/local_config.py
# to extend or override the defaults above without changing versioned config.
try:
    from .local_config import *  # type: ignore  # noqa: F401,F403
except ImportError:
    # No local overrides present; proceed with defaults.
    pass
