"""Reminder recurrence engine.

Computes reminder occurrence instants from a task's due date, lead time,
cached next trigger, snooze marker and optional recurrence rule. Nothing in
here performs I/O; results are deterministic for a given reference instant.

Malformed reminder data never raises. A rule that cannot be understood is
treated as absent and the schedule simply produces no further occurrences.
"""
from __future__ import annotations

import calendar as _calendar
import dataclasses
import json
import logging
import math
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, ClassVar, Optional

from dateutil.relativedelta import relativedelta

from . import config
from .utils import TICK, ensure_aware, field_value, format_in_timezone, now_utc, parse_instant, to_iso_z

logger = logging.getLogger(__name__)

FREQUENCIES = ('once', 'daily', 'weekly', 'monthly')
WEEKDAY_NAMES = ('Sun', 'Mon', 'Tue', 'Wed', 'Thu', 'Fri', 'Sat')


@dataclass(frozen=True)
class RecurrenceRule:
    """Base of the normalized rule union. Use one of the subclasses."""
    frequency: ClassVar[str] = 'once'

    interval: int = 1
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        out: dict[str, Any] = {'frequency': self.frequency, 'interval': self.interval}
        if self.start_at is not None:
            out['start_at'] = to_iso_z(self.start_at)
        if self.end_at is not None:
            out['end_at'] = to_iso_z(self.end_at)
        return out


@dataclass(frozen=True)
class OnceRule(RecurrenceRule):
    frequency: ClassVar[str] = 'once'


@dataclass(frozen=True)
class DailyRule(RecurrenceRule):
    frequency: ClassVar[str] = 'daily'


@dataclass(frozen=True)
class WeeklyRule(RecurrenceRule):
    frequency: ClassVar[str] = 'weekly'
    # 0=Sunday .. 6=Saturday, sorted and unique
    weekdays: tuple[int, ...] = ()

    def to_dict(self) -> dict:
        out = super().to_dict()
        out['weekdays'] = list(self.weekdays)
        return out


@dataclass(frozen=True)
class MonthlyRule(RecurrenceRule):
    frequency: ClassVar[str] = 'monthly'
    # 1..31, sorted and unique
    monthdays: tuple[int, ...] = ()

    def to_dict(self) -> dict:
        out = super().to_dict()
        out['monthdays'] = list(self.monthdays)
        return out


_RULE_TYPES = {cls.frequency: cls for cls in (OnceRule, DailyRule, WeeklyRule, MonthlyRule)}


def _coerce_interval(value) -> int:
    if value is None or isinstance(value, bool):
        return 1
    if isinstance(value, str):
        try:
            value = float(value)
        except ValueError:
            return 1
    if not isinstance(value, (int, float)) or not math.isfinite(value):
        return 1
    return max(1, int(math.floor(value)))


def _unique_sorted(values, low: int, high: int) -> tuple[int, ...]:
    if not isinstance(values, (list, tuple, set, frozenset)):
        return ()
    out: set[int] = set()
    for v in values:
        if isinstance(v, bool):
            continue
        if isinstance(v, float) and v.is_integer():
            v = int(v)
        if isinstance(v, int) and low <= v <= high:
            out.add(v)
    return tuple(sorted(out))


def normalize_recurrence_rule(raw) -> RecurrenceRule | None:
    """Validate a loosely-shaped recurrence descriptor into a rule.

    `raw` may be None, a mapping, a JSON string (as stored in the database)
    or an already-normalized rule. Returns None when the descriptor is
    missing or its frequency is not one of FREQUENCIES.
    """
    if raw is None or raw == '':
        return None
    if isinstance(raw, RecurrenceRule):
        return raw
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            logger.debug('ignoring unparseable recurrence %r', raw)
            return None
    if not isinstance(raw, Mapping):
        return None

    frequency = raw.get('frequency')
    if frequency is None:
        frequency = 'once'
    if not isinstance(frequency, str) or frequency.strip().lower() not in _RULE_TYPES:
        logger.debug('ignoring recurrence with unsupported frequency %r', frequency)
        return None
    frequency = frequency.strip().lower()

    kwargs: dict[str, Any] = {
        'interval': _coerce_interval(raw.get('interval')),
        'start_at': parse_instant(raw.get('start_at')),
        'end_at': parse_instant(raw.get('end_at')),
    }
    if frequency == 'weekly':
        kwargs['weekdays'] = _unique_sorted(raw.get('weekdays'), 0, 6)
    elif frequency == 'monthly':
        kwargs['monthdays'] = _unique_sorted(raw.get('monthdays'), 1, 31)
    return _RULE_TYPES[frequency](**kwargs)


def _coerce_minutes(value) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, int) and value >= 0:
        return value
    return None


@dataclass(frozen=True)
class ReminderSchedule:
    """Reminder-related view over a task record."""
    due_date: Optional[datetime] = None
    reminder_minutes_before: Optional[int] = None
    reminder_recurrence: Optional[RecurrenceRule] = None
    reminder_next_trigger_at: Optional[datetime] = None
    reminder_last_trigger_at: Optional[datetime] = None
    reminder_snoozed_until: Optional[datetime] = None
    reminder_timezone: Optional[str] = None
    completed: bool = False

    @classmethod
    def from_record(cls, record) -> 'ReminderSchedule':
        """Build a schedule from a Task row or a plain mapping.

        Unparseable instants and malformed rules are dropped here, once, so
        the rest of the engine only sees valid values.
        """
        if isinstance(record, cls):
            return record
        tz_name = field_value(record, 'reminder_timezone')
        return cls(
            due_date=parse_instant(field_value(record, 'due_date')),
            reminder_minutes_before=_coerce_minutes(field_value(record, 'reminder_minutes_before')),
            reminder_recurrence=normalize_recurrence_rule(field_value(record, 'reminder_recurrence')),
            reminder_next_trigger_at=parse_instant(field_value(record, 'reminder_next_trigger_at')),
            reminder_last_trigger_at=parse_instant(field_value(record, 'reminder_last_trigger_at')),
            reminder_snoozed_until=parse_instant(field_value(record, 'reminder_snoozed_until')),
            reminder_timezone=tz_name if isinstance(tz_name, str) and tz_name else None,
            completed=bool(field_value(record, 'completed', False)),
        )


# --- anchor resolution ---
# Ordered fallback chain; the first resolver returning an instant wins.

def _anchor_from_recurrence_start(schedule: ReminderSchedule) -> datetime | None:
    rule = schedule.reminder_recurrence
    return rule.start_at if rule is not None else None


def _anchor_from_next_trigger(schedule: ReminderSchedule) -> datetime | None:
    return schedule.reminder_next_trigger_at


def _anchor_from_lead_time(schedule: ReminderSchedule) -> datetime | None:
    if schedule.reminder_minutes_before is None or schedule.due_date is None:
        return None
    try:
        return schedule.due_date - timedelta(minutes=schedule.reminder_minutes_before)
    except OverflowError:
        logger.debug('lead time of %d minutes is out of range', schedule.reminder_minutes_before)
        return None


ANCHOR_RESOLVERS = (
    _anchor_from_recurrence_start,
    _anchor_from_next_trigger,
    _anchor_from_lead_time,
)


def resolve_anchor(schedule) -> datetime | None:
    """Return the first occurrence a schedule is oriented on, or None."""
    schedule = ReminderSchedule.from_record(schedule)
    for resolver in ANCHOR_RESOLVERS:
        anchor = resolver(schedule)
        if anchor is not None:
            return anchor
    return None


# --- advancement ---

def _weekday(dt: datetime) -> int:
    """Weekday with Sunday=0, as used by stored rules."""
    return (dt.weekday() + 1) % 7


def advance_occurrence(current: datetime, rule) -> datetime | None:
    """Return the next candidate occurrence strictly after `current`.

    Weekday and day-of-month are read from the UTC calendar fields of
    `current`. The `interval` only spaces out wraparounds: every N weeks
    (or months) on the listed days. A step that lands outside the
    representable date range ends the schedule.
    """
    rule = normalize_recurrence_rule(rule)
    if rule is None or isinstance(rule, OnceRule):
        return None
    try:
        return _advance(ensure_aware(current), rule)
    except (OverflowError, ValueError):
        logger.debug('cannot advance %s by %s rule with interval %d', to_iso_z(current), rule.frequency, rule.interval)
        return None


def _advance(current: datetime, rule: RecurrenceRule) -> datetime | None:
    if isinstance(rule, DailyRule):
        return current + timedelta(days=rule.interval)

    if isinstance(rule, WeeklyRule):
        current_day = _weekday(current)
        weekdays = rule.weekdays or (current_day,)
        for day in weekdays:
            if day > current_day:
                return current + timedelta(days=day - current_day)
        days_to_add = (7 - current_day + weekdays[0]) + 7 * (rule.interval - 1)
        return current + timedelta(days=days_to_add)

    if isinstance(rule, MonthlyRule):
        monthdays = rule.monthdays or (current.day,)
        last_day = _calendar.monthrange(current.year, current.month)[1]
        for day in monthdays:
            candidate = min(day, last_day)
            if candidate > current.day:
                return current.replace(day=candidate)
        # relativedelta clamps the day to the target month's length
        return current + relativedelta(months=rule.interval, day=monthdays[0])

    return None


def _bind_default_days(rule: RecurrenceRule | None, anchor: datetime) -> RecurrenceRule | None:
    """Fill an empty weekday/monthday set from the anchor."""
    if isinstance(rule, WeeklyRule) and not rule.weekdays:
        return dataclasses.replace(rule, weekdays=(_weekday(anchor),))
    if isinstance(rule, MonthlyRule) and not rule.monthdays:
        return dataclasses.replace(rule, monthdays=(anchor.day,))
    return rule


def get_next_occurrence(schedule, reference: datetime | None = None, include_equal: bool = False,
                        max_iterations: int | None = None) -> datetime | None:
    """Return the first occurrence at or after `reference`.

    The snooze marker raises the effective reference, so an occurrence
    earlier than `reminder_snoozed_until` is never reported. An occurrence
    equal to the effective reference is only returned when `include_equal`
    is set. Returns None when the schedule has no anchor, passes its
    `end_at`, or needs more than `max_iterations` advancement steps.
    """
    schedule = ReminderSchedule.from_record(schedule)
    anchor = resolve_anchor(schedule)
    if anchor is None:
        return None
    rule = _bind_default_days(schedule.reminder_recurrence, anchor)
    end_at = rule.end_at if rule is not None else None
    if max_iterations is None:
        max_iterations = config.REMINDER_MAX_ITERATIONS

    effective = ensure_aware(reference) if reference is not None else now_utc()
    snoozed = schedule.reminder_snoozed_until
    if snoozed is not None and snoozed > effective:
        effective = snoozed

    def _behind(dt: datetime) -> bool:
        return dt < effective or (dt == effective and not include_equal)

    occurrence = anchor
    iterations = 0
    while _behind(occurrence):
        iterations += 1
        if iterations > max_iterations:
            logger.debug('recurrence search exhausted after %d steps (anchor=%s)', max_iterations, to_iso_z(anchor))
            return None
        advanced = advance_occurrence(occurrence, rule)
        if advanced is None:
            return None
        occurrence = advanced
        if end_at is not None and occurrence > end_at:
            return None

    if end_at is not None and occurrence > end_at:
        return None
    return occurrence


def get_upcoming_occurrences(schedule, reference: datetime | None = None, limit: int = 3) -> list[datetime]:
    """Return up to `limit` ascending occurrences starting at `reference`.

    An occurrence exactly at `reference` is included once.
    """
    schedule = ReminderSchedule.from_record(schedule)
    limit = max(1, int(limit))
    current = ensure_aware(reference) if reference is not None else now_utc()
    occurrences: list[datetime] = []
    for i in range(limit):
        nxt = get_next_occurrence(schedule, current, include_equal=(i == 0))
        if nxt is None:
            break
        occurrences.append(nxt)
        current = nxt + TICK
    return occurrences


def should_schedule_reminder(schedule) -> bool:
    """True when an incomplete task carries any reminder configuration."""
    schedule = ReminderSchedule.from_record(schedule)
    if schedule.completed:
        return False
    return (
        schedule.reminder_minutes_before is not None
        or schedule.reminder_recurrence is not None
        or schedule.reminder_next_trigger_at is not None
    )


def describe_recurrence(rule) -> str | None:
    """Human readable label for a repeating rule; None for one-off rules."""
    rule = normalize_recurrence_rule(rule)
    if rule is None or isinstance(rule, OnceRule):
        return None
    interval = rule.interval
    if isinstance(rule, DailyRule):
        return 'Daily' if interval == 1 else f'Every {interval} days'
    if isinstance(rule, WeeklyRule):
        suffix = ''
        if rule.weekdays:
            suffix = ' on ' + ', '.join(WEEKDAY_NAMES[d] for d in rule.weekdays)
        return f'Weekly{suffix}' if interval == 1 else f'Every {interval} weeks{suffix}'
    if isinstance(rule, MonthlyRule):
        suffix = ''
        if rule.monthdays:
            suffix = ' on day ' + ', '.join(str(d) for d in rule.monthdays)
        return f'Monthly{suffix}' if interval == 1 else f'Every {interval} months{suffix}'
    return rule.frequency.capitalize()


def format_reminder_date(dt: datetime, tz_name: str | None = None) -> str:
    """Format an occurrence for display in the reminder's own timezone."""
    return format_in_timezone(dt, tz_name or config.DEFAULT_TIMEZONE, '%Y-%m-%d %H:%M %Z')
