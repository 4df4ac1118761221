from fastapi import FastAPI, HTTPException, Depends, Query, status
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional
import logging
import sys

from . import config
from .aggregator import SCOPES, aggregate, build_payload, resolve_range
from .auth import authenticate_user, create_access_token, get_database, require_login
from .db import CalendarDataError, CalendarSources, Database
from .models import CalendarEvent, User
from .recurrence import ReminderSchedule, describe_recurrence, get_upcoming_occurrences, should_schedule_reminder
from .schemas import (
    CalendarAggregationResponse,
    CalendarEventCreate,
    CalendarResponsePayload,
    TokenRequest,
    UpcomingRemindersResponse,
)
from .utils import now_utc, parse_instant, resolve_timezone, to_iso_z

logger = logging.getLogger(__name__)
# Ensure INFO-level messages from this module appear on the server console when
# no handlers are configured (safe fallback for development/testing).
if not logger.handlers:
    handler = logging.StreamHandler(sys.stdout)
    formatter = logging.Formatter('%(asctime)s %(levelname)s:%(name)s: %(message)s')
    handler.setFormatter(formatter)
    logger.addHandler(handler)
logger.setLevel(logging.INFO)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # The application should not start without a proper secret outside dev mode.
    if config.SECRET_KEY == "CHANGE_ME_IN_ENV_FOR_TESTS" and not config.DEV_MODE:
        raise RuntimeError("SECRET_KEY not set or insecure fallback in use; set the SECRET_KEY environment variable before starting the server")
    db = getattr(app.state, 'db', None)
    if db is None:
        db = Database()
        app.state.db = db
    await db.init()
    logger.info('starting server using DATABASE_URL=%s', db.url)
    try:
        yield
    finally:
        await db.dispose()


app = FastAPI(title='Zen Calendar', lifespan=lifespan)


async def _load_sources(db: Database, user: User) -> CalendarSources:
    try:
        return await db.fetch_calendar_sources(user.id)
    except CalendarDataError as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))


def _check_scope(scope: str) -> None:
    if scope not in SCOPES:
        raise HTTPException(status_code=400, detail='Scope must be all, personal, or shared.')


@app.post('/auth/token')
async def login_for_access_token(payload: TokenRequest, db: Database = Depends(get_database)):
    user = await authenticate_user(db, payload.username, payload.password)
    if not user:
        raise HTTPException(status_code=401, detail="Incorrect username or password")
    token = create_access_token({"sub": user.username})
    return {"access_token": token, "token_type": "bearer"}


@app.get('/api/calendar/aggregate', response_model=CalendarAggregationResponse)
async def calendar_aggregate(from_: Optional[str] = Query(default=None, alias='from'),
                             to: Optional[str] = None,
                             timezone: Optional[str] = None,
                             scope: str = 'all',
                             current_user: User = Depends(require_login),
                             db: Database = Depends(get_database)):
    """Return calendar events grouped into local days.

    Query params:
    - from, to: ISO dates or datetimes, widened to whole days in `timezone`.
      Defaults to a 30 day window starting today.
    - timezone: IANA name used for day bucketing; unknown names fall back to UTC.
    - scope: all | personal | shared.
    """
    _check_scope(scope)
    zone, zone_name = resolve_timezone(timezone or config.DEFAULT_TIMEZONE)
    try:
        rng = resolve_range(from_, to, zone)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    logger.info('calendar_aggregate user_id=%s from=%s to=%s tz=%s scope=%s',
                current_user.id, rng.start.isoformat(), rng.end.isoformat(), zone_name, scope)

    sources = await _load_sources(db, current_user)
    return aggregate(
        sources.owned_tasks,
        sources.shared_task_rows,
        sources.notes,
        rng.start,
        rng.end,
        zone_name,
        user_id=current_user.id,
        calendar_events=sources.calendar_events,
        zen_reminders=sources.zen_reminders,
        scope=scope,
    )


@app.get('/api/calendar', response_model=CalendarResponsePayload)
async def calendar_events(start: Optional[str] = None,
                          end: Optional[str] = None,
                          scope: str = 'all',
                          timezone: Optional[str] = None,
                          current_user: User = Depends(require_login),
                          db: Database = Depends(get_database)):
    """Return a flat, start-sorted event list for one range (default: this month)."""
    _check_scope(scope)
    now = now_utc()
    # validate the range before touching the database
    if start is not None or end is not None:
        try:
            resolve_range(start, end, timezone or config.DEFAULT_TIMEZONE, now=now, labels=('start', 'end'))
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

    sources = await _load_sources(db, current_user)
    return build_payload(
        sources.owned_tasks,
        sources.shared_task_rows,
        sources.notes,
        start,
        end,
        timezone_name=timezone,
        user_id=current_user.id,
        calendar_events=sources.calendar_events,
        zen_reminders=sources.zen_reminders,
        scope=scope,
        now=now,
    )


@app.post('/api/calendar/events', status_code=201)
async def create_calendar_event(payload: CalendarEventCreate,
                                current_user: User = Depends(require_login),
                                db: Database = Depends(get_database)):
    title = (payload.title or '').strip()
    if not title:
        raise HTTPException(status_code=400, detail='Event title is required.')
    start = parse_instant(payload.start)
    end = parse_instant(payload.end)
    if end < start:
        raise HTTPException(status_code=400, detail='End time must be on or after the start time.')
    event = CalendarEvent(
        user_id=current_user.id,
        title=title,
        description=(payload.description or '').strip() or None,
        location=(payload.location or '').strip() or None,
        start_time=start,
        end_time=end,
        all_day=payload.all_day,
    )
    await db.add(event)
    logger.info('created calendar event id=%s user_id=%s', event.id, current_user.id)
    return {'event': _event_json(event)}


def _event_json(event: CalendarEvent) -> dict:
    # SQLite hands back naive datetimes; emit them as UTC like the other endpoints
    data = event.model_dump()
    for key in ('start_time', 'end_time', 'created_at', 'updated_at'):
        data[key] = to_iso_z(parse_instant(data.get(key)))
    return data


def _payload_instant(value, label: str) -> datetime:
    instant = parse_instant(value) if isinstance(value, str) else None
    if instant is None:
        raise HTTPException(status_code=400, detail=f'{label} must be an ISO date string.')
    return instant


def _optional_text(payload: dict, key: str, label: str, updates: dict) -> None:
    if key not in payload:
        return
    value = payload.get(key)
    if value is None:
        updates[key] = None
    elif isinstance(value, str):
        updates[key] = value.strip() or None
    else:
        raise HTTPException(status_code=400, detail=f'{label} must be a string or null.')


@app.patch('/api/calendar/events/{event_id}')
async def patch_calendar_event(event_id: int, payload: dict,
                               current_user: User = Depends(require_login),
                               db: Database = Depends(get_database)):
    """Partially update one of the caller's events.

    Accepts any of: title, description, location, start + end (always
    together), allDay. Only keys present in the body are changed.
    """
    updates: dict = {}
    if 'title' in payload:
        title = payload.get('title')
        if not isinstance(title, str) or not title.strip():
            raise HTTPException(status_code=400, detail='Title must be a non-empty string.')
        updates['title'] = title.strip()
    _optional_text(payload, 'description', 'Description', updates)
    _optional_text(payload, 'location', 'Location', updates)

    if ('start' in payload) != ('end' in payload):
        raise HTTPException(status_code=400, detail='Both start and end times are required when updating the schedule.')
    if 'start' in payload:
        start = _payload_instant(payload.get('start'), 'start')
        end = _payload_instant(payload.get('end'), 'end')
        if end < start:
            raise HTTPException(status_code=400, detail='End time must be on or after the start time.')
        updates['start_time'] = start
        updates['end_time'] = end

    if 'allDay' in payload:
        all_day = payload.get('allDay')
        if not isinstance(all_day, bool):
            raise HTTPException(status_code=400, detail='allDay must be a boolean.')
        updates['all_day'] = all_day

    if not updates:
        raise HTTPException(status_code=400, detail='Provide at least one field to update.')

    event = await db.update_calendar_event(current_user.id, event_id, updates)
    if event is None:
        raise HTTPException(status_code=404, detail='Event not found.')
    logger.info('updated calendar event id=%s user_id=%s fields=%s', event_id, current_user.id, sorted(updates))
    return {'event': _event_json(event)}


@app.delete('/api/calendar/events/{event_id}')
async def delete_calendar_event(event_id: int,
                                current_user: User = Depends(require_login),
                                db: Database = Depends(get_database)):
    if not await db.delete_calendar_event(current_user.id, event_id):
        raise HTTPException(status_code=404, detail='Event not found.')
    logger.info('deleted calendar event id=%s user_id=%s', event_id, current_user.id)
    return {"ok": True}


@app.get('/api/tasks/{task_id}/reminders/upcoming', response_model=UpcomingRemindersResponse)
async def upcoming_task_reminders(task_id: int,
                                  limit: int = Query(default=3, ge=1, le=50),
                                  from_: Optional[str] = Query(default=None, alias='from'),
                                  current_user: User = Depends(require_login),
                                  db: Database = Depends(get_database)):
    """Next reminder firings for one task, with a readable recurrence label."""
    reference: Optional[datetime] = None
    if from_:
        reference = parse_instant(from_)
        if reference is None:
            raise HTTPException(status_code=400, detail='from must be a valid ISO date string.')
    task, _role = await db.get_task_for_user(current_user.id, task_id)
    if task is None:
        raise HTTPException(status_code=404, detail='task not found')

    schedule = ReminderSchedule.from_record(task)
    occurrences = []
    if should_schedule_reminder(schedule):
        occurrences = get_upcoming_occurrences(schedule, reference or now_utc(), limit=limit)
    return UpcomingRemindersResponse(
        task_id=task_id,
        timezone=schedule.reminder_timezone,
        description=describe_recurrence(schedule.reminder_recurrence),
        occurrences=occurrences,
    )
