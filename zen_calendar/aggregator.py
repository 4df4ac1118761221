"""Calendar aggregation.

Merges owned and shared tasks, expands reminder recurrences inside a date
range, adds notes, manual events and standalone reminders, and buckets the
result into local calendar days for a requested timezone.

Everything here is a pure computation over records fetched elsewhere; the
HTTP layer in `main.py` does the fetching through `db.Database`.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Iterable, Optional
import zoneinfo

from . import config
from .recurrence import (
    ReminderSchedule,
    describe_recurrence,
    get_upcoming_occurrences,
    should_schedule_reminder,
)
from .schemas import (
    CalendarAggregationDay,
    CalendarAggregationResponse,
    CalendarEventRecord,
    CalendarRangeModel,
    CalendarResponsePayload,
)
from .utils import (
    ONE_DAY,
    TICK,
    end_of_local_day,
    ensure_aware,
    field_value,
    format_date_key,
    local_day_start,
    now_utc,
    parse_instant,
    resolve_timezone,
    start_of_local_day,
    to_iso_z,
)

logger = logging.getLogger(__name__)

SCOPES = ('all', 'personal', 'shared')
ACCESS_ROLES = ('owner', 'editor', 'viewer')
EDIT_ROLES = ('owner', 'editor')

_DATE_ONLY = re.compile(r'^\d{4}-\d{2}-\d{2}$')
_LATEST = datetime.max.replace(tzinfo=timezone.utc)

# event type -> day bucket field
_BUCKETS = {
    'task_due': 'tasks',
    'task_reminder': 'reminders',
    'zen_reminder': 'reminders',
    'note': 'notes',
    'event': 'events',
}


class InvalidRangeError(ValueError):
    """Raised for unparseable bounds or an end before the start."""


@dataclass(frozen=True)
class CalendarRange:
    start: datetime
    end: datetime

    def contains(self, dt: datetime) -> bool:
        return self.start <= dt <= self.end


def _zone(tz) -> tuple[zoneinfo.ZoneInfo, str]:
    if isinstance(tz, zoneinfo.ZoneInfo):
        return tz, tz.key
    return resolve_timezone(tz)


def _parse_bound(value, label: str, tz: zoneinfo.ZoneInfo, *, is_end: bool) -> tuple[datetime, date] | None:
    """Parse one range bound into (instant, local day).

    Date-only values are whole local days in `tz`: a start is the local
    midnight, an end is the last tick before the following midnight.
    Datetimes keep their instant and fall on the local day containing it.
    """
    if value is None or value == '':
        return None
    day = None
    if isinstance(value, datetime):
        instant = ensure_aware(value)
    elif isinstance(value, date):
        day = value
    elif isinstance(value, str) and _DATE_ONLY.match(value.strip()):
        try:
            day = date.fromisoformat(value.strip())
        except ValueError:
            raise InvalidRangeError(f'{label} must be a valid ISO date string.')
    else:
        instant = parse_instant(value)
        if instant is None:
            raise InvalidRangeError(f'{label} must be a valid ISO date string.')
    if day is None:
        return instant, instant.astimezone(tz).date()
    if is_end:
        return local_day_start(day + ONE_DAY, tz) - TICK, day
    return local_day_start(day, tz), day


def resolve_range(start=None, end=None, tz=None, *, now: datetime | None = None,
                  default_days: int | None = None, max_span_days: int | None = None,
                  labels: tuple[str, str] = ('from', 'to')) -> CalendarRange:
    """Resolve caller supplied bounds into an inclusive UTC range of whole local days.

    Both bounds are widened to the local days in `tz` that contain them, so
    an all-day event on a boundary day still starts inside the range. A
    missing start defaults to the reference day; a missing end gives a
    `default_days` window. Spans longer than `max_span_days` have their end
    truncated. An end before the start is an error, never clamped.
    """
    zone, _ = _zone(tz)
    if default_days is None:
        default_days = config.CALENDAR_DEFAULT_WINDOW_DAYS
    if max_span_days is None:
        max_span_days = config.CALENDAR_MAX_SPAN_DAYS

    try:
        first = _parse_bound(start, labels[0], zone, is_end=False)
        last = _parse_bound(end, labels[1], zone, is_end=True)
        if first is not None and last is not None and last[0] < first[0]:
            raise InvalidRangeError('End date must be on or after the start date.')

        first_day = first[1] if first is not None else ensure_aware(now or now_utc()).astimezone(zone).date()
        if last is not None:
            last_day = last[1]
        else:
            last_day = first_day + timedelta(days=max(1, default_days) - 1)
        if last_day < first_day:
            raise InvalidRangeError('End date must be on or after the start date.')

        max_last_day = first_day + timedelta(days=max(1, max_span_days) - 1)
        if last_day > max_last_day:
            logger.info('calendar range truncated from %s to %s', last_day.isoformat(), max_last_day.isoformat())
            last_day = max_last_day
        range_start = local_day_start(first_day, zone)
        range_end = local_day_start(last_day + ONE_DAY, zone) - TICK
    except OverflowError:
        raise InvalidRangeError('Date range is out of bounds.')
    return CalendarRange(range_start, range_end)


def month_range(now: datetime | None = None, tz=None) -> CalendarRange:
    """Return the whole local month containing `now`."""
    zone, _ = _zone(tz)
    local = ensure_aware(now or now_utc()).astimezone(zone)
    first = local.date().replace(day=1)
    next_first = (first.replace(day=28) + timedelta(days=4)).replace(day=1)
    return CalendarRange(local_day_start(first, zone), local_day_start(next_first, zone) - TICK)


# --- task merging ---

@dataclass(frozen=True)
class AccessibleTask:
    """A task record together with the current user's access to it."""
    record: Any
    access_role: str
    scope: str

    @property
    def id(self):
        return field_value(self.record, 'id')

    @property
    def can_edit(self) -> bool:
        return self.access_role in EDIT_ROLES


def merge_tasks(owned_tasks: Iterable, shared_task_rows: Iterable, user_id=None) -> list[AccessibleTask]:
    """Merge owned tasks and collaborator rows into one list keyed by task id.

    Shared rows are `{'role': ..., 'task': ...}` mappings or objects with
    those attributes. An owned copy of a task always wins over a shared one.
    """
    merged: dict[Any, AccessibleTask] = {}
    for task in owned_tasks or ():
        task_id = field_value(task, 'id')
        if task_id is None:
            continue
        merged[task_id] = AccessibleTask(task, 'owner', 'personal')

    for row in shared_task_rows or ():
        task = field_value(row, 'task')
        task_id = field_value(task, 'id')
        if task_id is None:
            continue
        current = merged.get(task_id)
        if current is not None and current.access_role == 'owner':
            continue
        if user_id is not None and field_value(task, 'user_id') == user_id:
            merged[task_id] = AccessibleTask(task, 'owner', 'personal')
            continue
        role = field_value(row, 'role')
        if role not in ACCESS_ROLES:
            role = 'viewer'
        merged[task_id] = AccessibleTask(task, role, 'shared')
    return list(merged.values())


def filter_scope(tasks: Iterable[AccessibleTask], scope: str = 'all') -> list[AccessibleTask]:
    if scope not in SCOPES:
        raise ValueError('Scope must be all, personal, or shared.')
    if scope == 'all':
        return list(tasks)
    return [t for t in tasks if t.scope == scope]


# --- event builders ---

def _display_end(start: datetime, duration: timedelta | None = None) -> datetime:
    try:
        return start + (duration or timedelta(minutes=config.EVENT_DISPLAY_MINUTES))
    except OverflowError:
        # instants at the very end of the calendar keep a zero-length span
        return start


def reminder_metadata(schedule: ReminderSchedule) -> dict | None:
    has_reminder = (
        schedule.reminder_minutes_before is not None
        or schedule.reminder_recurrence is not None
        or schedule.reminder_next_trigger_at is not None
        or schedule.reminder_snoozed_until is not None
    )
    if not has_reminder:
        return None
    rule = schedule.reminder_recurrence
    return {
        'minutesBefore': schedule.reminder_minutes_before,
        'recurrence': rule.to_dict() if rule is not None else None,
        'recurrenceLabel': describe_recurrence(rule),
        'nextTriggerAt': to_iso_z(schedule.reminder_next_trigger_at),
        'lastTriggerAt': to_iso_z(schedule.reminder_last_trigger_at),
        'snoozedUntil': to_iso_z(schedule.reminder_snoozed_until),
        'timezone': schedule.reminder_timezone,
    }


def _task_metadata(task: AccessibleTask, schedule: ReminderSchedule) -> dict:
    meta = {
        'taskId': task.id,
        'accessRole': task.access_role,
        'canEdit': task.can_edit,
        'category': field_value(task.record, 'category'),
        'categoryColor': field_value(task.record, 'category_color'),
        'dueDate': to_iso_z(schedule.due_date),
        'completed': schedule.completed,
    }
    reminder = reminder_metadata(schedule)
    if reminder is not None:
        meta['reminder'] = reminder
    return meta


def task_events(tasks: Iterable[AccessibleTask], rng: CalendarRange,
                reminder_limit: int | None = None) -> list[CalendarEventRecord]:
    """Due-date and reminder events for tasks inside `rng`."""
    if reminder_limit is None:
        reminder_limit = config.REMINDER_OCCURRENCE_LIMIT
    events: list[CalendarEventRecord] = []
    for task in tasks:
        schedule = ReminderSchedule.from_record(task.record)
        title = field_value(task.record, 'title') or ''
        description = field_value(task.record, 'description')
        metadata = _task_metadata(task, schedule)

        due = schedule.due_date
        if due is not None and rng.contains(due):
            events.append(CalendarEventRecord(
                id=f'task-due:{task.id}:{to_iso_z(due)}',
                entity_id=str(task.id),
                type='task_due',
                title=title,
                description=description,
                start=due,
                end=_display_end(due),
                all_day=False,
                scope=task.scope,
                metadata=metadata,
            ))

        if not should_schedule_reminder(schedule):
            continue
        # the occurrence cap may reach past rng.end; those are dropped here
        for occurrence in get_upcoming_occurrences(schedule, rng.start, limit=reminder_limit):
            if not rng.contains(occurrence):
                continue
            events.append(CalendarEventRecord(
                id=f'task-reminder:{task.id}:{to_iso_z(occurrence)}',
                entity_id=str(task.id),
                type='task_reminder',
                title=f'{title} reminder',
                description=description,
                start=occurrence,
                end=_display_end(occurrence),
                all_day=False,
                scope=task.scope,
                metadata=metadata,
            ))
    return events


def note_events(notes: Iterable, rng: CalendarRange, tz: zoneinfo.ZoneInfo) -> list[CalendarEventRecord]:
    """All-day events on the local day each note was last touched."""
    events: list[CalendarEventRecord] = []
    for note in notes or ():
        updated_at = parse_instant(field_value(note, 'updated_at'))
        created_at = parse_instant(field_value(note, 'created_at'))
        touched = updated_at or created_at
        if touched is None or not rng.contains(touched):
            continue
        day_start = start_of_local_day(touched, tz)
        note_id = field_value(note, 'id')
        events.append(CalendarEventRecord(
            id=f'note:{note_id}:{to_iso_z(day_start)}',
            entity_id=str(note_id),
            type='note',
            title=field_value(note, 'title') or '',
            description=field_value(note, 'summary'),
            start=day_start,
            end=end_of_local_day(touched, tz),
            all_day=True,
            scope='personal',
            metadata={
                'noteId': note_id,
                'updatedAt': to_iso_z(updated_at),
                'createdAt': to_iso_z(created_at),
            },
        ))
    return events


def manual_events(calendar_events: Iterable, rng: CalendarRange) -> list[CalendarEventRecord]:
    """Pass through user-created events, repairing a missing or inverted end."""
    events: list[CalendarEventRecord] = []
    for ev in calendar_events or ():
        start = parse_instant(field_value(ev, 'start_time'))
        if start is None or not rng.contains(start):
            continue
        all_day = bool(field_value(ev, 'all_day', False))
        end = parse_instant(field_value(ev, 'end_time'))
        if end is None or end <= start:
            end = _display_end(start, ONE_DAY if all_day else None)
        event_id = field_value(ev, 'id')
        events.append(CalendarEventRecord(
            id=f'event:{event_id}:{to_iso_z(start)}',
            entity_id=str(event_id),
            type='event',
            title=field_value(ev, 'title') or '',
            description=field_value(ev, 'description'),
            start=start,
            end=end,
            all_day=all_day,
            scope='personal',
            metadata={
                'eventId': event_id,
                'location': field_value(ev, 'location'),
            },
        ))
    return events


def zen_reminder_events(zen_reminders: Iterable, rng: CalendarRange) -> list[CalendarEventRecord]:
    """Standalone reminders that fire once at `remind_at`."""
    events: list[CalendarEventRecord] = []
    for reminder in zen_reminders or ():
        remind_at = parse_instant(field_value(reminder, 'remind_at'))
        if remind_at is None or not rng.contains(remind_at):
            continue
        reminder_id = field_value(reminder, 'id')
        events.append(CalendarEventRecord(
            id=f'zen-reminder:{reminder_id}:{to_iso_z(remind_at)}',
            entity_id=str(reminder_id),
            type='zen_reminder',
            title=field_value(reminder, 'title') or '',
            description=field_value(reminder, 'description'),
            start=remind_at,
            end=_display_end(remind_at),
            all_day=False,
            scope='personal',
            metadata={
                'reminderId': reminder_id,
                'timezone': field_value(reminder, 'timezone'),
                'createdAt': to_iso_z(parse_instant(field_value(reminder, 'created_at'))),
                'updatedAt': to_iso_z(parse_instant(field_value(reminder, 'updated_at'))),
            },
        ))
    return events


def _chronological_key(ev: CalendarEventRecord):
    return (ev.start is None, ev.start or _LATEST, ev.title, ev.id)


def _note_touched(ev: CalendarEventRecord) -> datetime:
    meta = ev.metadata or {}
    return parse_instant(meta.get('updatedAt')) or parse_instant(meta.get('createdAt')) or ev.start


def _note_key(ev: CalendarEventRecord):
    # most recently touched first, then by title
    return (-_note_touched(ev).timestamp(), ev.title, ev.id)


def build_calendar_events(tasks: Iterable[AccessibleTask], notes: Iterable, rng: CalendarRange, tz, *,
                          calendar_events: Iterable = (), zen_reminders: Iterable = (),
                          reminder_limit: int | None = None) -> list[CalendarEventRecord]:
    """Collect every event inside `rng`, sorted by start."""
    zone, _ = _zone(tz)
    events = task_events(tasks, rng, reminder_limit=reminder_limit)
    events.extend(note_events(notes, rng, zone))
    events.extend(manual_events(calendar_events, rng))
    events.extend(zen_reminder_events(zen_reminders, rng))
    events.sort(key=_chronological_key)
    return events


def group_events_by_day(events: Iterable[CalendarEventRecord], tz) -> list[CalendarAggregationDay]:
    """Bucket events by local date; days without events are not emitted."""
    zone, _ = _zone(tz)
    buckets: dict[str, dict[str, list[CalendarEventRecord]]] = {}
    for ev in events:
        key = format_date_key(ev.start, zone)
        bucket = buckets.setdefault(key, {'tasks': [], 'reminders': [], 'notes': [], 'events': []})
        bucket[_BUCKETS[ev.type]].append(ev)

    days: list[CalendarAggregationDay] = []
    for key in sorted(buckets):
        bucket = buckets[key]
        days.append(CalendarAggregationDay(
            date=key,
            tasks=sorted(bucket['tasks'], key=_chronological_key),
            reminders=sorted(bucket['reminders'], key=_chronological_key),
            notes=sorted(bucket['notes'], key=_note_key),
            events=sorted(bucket['events'], key=_chronological_key),
        ))
    return days


def aggregate(owned_tasks: Iterable, shared_task_rows: Iterable, notes: Iterable,
              range_start=None, range_end=None, timezone_name: Optional[str] = None, *,
              user_id=None, calendar_events: Iterable = (), zen_reminders: Iterable = (),
              scope: str = 'all', now: datetime | None = None,
              reminder_limit: int | None = None) -> CalendarAggregationResponse:
    """Build the per-day calendar for a range in `timezone_name`.

    Range bounds may be ISO dates (whole local days), ISO datetimes or
    datetime objects. Raises InvalidRangeError for bad bounds and
    ValueError for an unknown scope.
    """
    zone, zone_name = resolve_timezone(timezone_name or config.DEFAULT_TIMEZONE)
    rng = resolve_range(range_start, range_end, zone, now=now)
    tasks = filter_scope(merge_tasks(owned_tasks, shared_task_rows, user_id), scope)
    events = build_calendar_events(
        tasks, notes, rng, zone,
        calendar_events=calendar_events,
        zen_reminders=zen_reminders,
        reminder_limit=reminder_limit,
    )
    days = group_events_by_day(events, zone)
    logger.debug('aggregated %d events into %d days for %s..%s (%s)',
                 len(events), len(days), to_iso_z(rng.start), to_iso_z(rng.end), zone_name)
    return CalendarAggregationResponse(from_=rng.start, to=rng.end, timezone=zone_name, days=days)


def build_payload(owned_tasks: Iterable, shared_task_rows: Iterable, notes: Iterable,
                  start=None, end=None, *, timezone_name: Optional[str] = None, user_id=None,
                  calendar_events: Iterable = (), zen_reminders: Iterable = (),
                  scope: str = 'all', now: datetime | None = None) -> CalendarResponsePayload:
    """Flat single-range event list; defaults to the current local month."""
    now = now or now_utc()
    zone, _ = resolve_timezone(timezone_name or config.DEFAULT_TIMEZONE)
    if start is None and end is None:
        rng = month_range(now, zone)
    else:
        rng = resolve_range(start, end, zone, now=now, labels=('start', 'end'))
    tasks = filter_scope(merge_tasks(owned_tasks, shared_task_rows, user_id), scope)
    events = build_calendar_events(
        tasks, notes, rng, zone,
        calendar_events=calendar_events,
        zen_reminders=zen_reminders,
    )
    return CalendarResponsePayload(
        range=CalendarRangeModel(start=rng.start, end=rng.end),
        events=events,
        generated_at=now,
    )
