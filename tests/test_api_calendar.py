import json
from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import OperationalError

from zen_calendar.models import CalendarEvent, Note, Task, TaskCollaborator, ZenReminder
from zen_calendar.utils import parse_instant

pytestmark = pytest.mark.asyncio


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


async def test_calendar_requires_login(anon_client):
    resp = await anon_client.get('/api/calendar/aggregate')
    assert resp.status_code == 401
    resp = await anon_client.get('/api/calendar')
    assert resp.status_code == 401


async def test_bad_token_and_bad_password_are_rejected(anon_client, user):
    resp = await anon_client.post('/auth/token', json={'username': 'testuser', 'password': 'nope'})
    assert resp.status_code == 401
    resp = await anon_client.get('/api/calendar', headers={'Authorization': 'Bearer not-a-jwt'})
    assert resp.status_code == 401


async def test_aggregate_groups_events_by_local_day(client, db, user):
    task = Task(user_id=user.id, title='File taxes', due_date=utc(2024, 6, 2, 2),
                reminder_minutes_before=60, reminder_timezone='America/New_York')
    note = Note(user_id=user.id, title='Ideas', summary='short', updated_at=utc(2024, 6, 1, 23, 50))
    event = CalendarEvent(user_id=user.id, title='Picnic', start_time=utc(2024, 6, 2, 16), all_day=False)
    zen = ZenReminder(user_id=user.id, title='Breathe', remind_at=utc(2024, 6, 2, 13))
    await db.add(task, note, event, zen)

    resp = await client.get('/api/calendar/aggregate',
                            params={'from': '2024-06-01', 'to': '2024-06-02', 'timezone': 'America/New_York'})
    assert resp.status_code == 200
    body = resp.json()
    assert body['timezone'] == 'America/New_York'
    assert parse_instant(body['from']) == utc(2024, 6, 1, 4)
    days = {d['date']: d for d in body['days']}
    assert sorted(days) == ['2024-06-01', '2024-06-02']

    # 02:00Z on June 2 is still the evening of June 1 in New York
    june1 = days['2024-06-01']
    assert [ev['title'] for ev in june1['tasks']] == ['File taxes']
    assert [ev['title'] for ev in june1['reminders']] == ['File taxes reminder']
    assert [ev['title'] for ev in june1['notes']] == ['Ideas']
    due = june1['tasks'][0]
    assert due['entityId'] == str(task.id)
    assert due['allDay'] is False
    assert due['metadata']['accessRole'] == 'owner'
    assert due['metadata']['reminder']['minutesBefore'] == 60
    assert parse_instant(june1['reminders'][0]['start']) == utc(2024, 6, 2, 1)

    june2 = days['2024-06-02']
    assert [ev['title'] for ev in june2['events']] == ['Picnic']
    assert [ev['type'] for ev in june2['reminders']] == ['zen_reminder']
    assert parse_instant(june2['events'][0]['end']) == utc(2024, 6, 2, 16, 30)


async def test_aggregate_includes_shared_tasks_with_scope(client, db, user, other_user):
    mine = Task(user_id=user.id, title='mine', due_date=utc(2024, 1, 2, 10))
    theirs = Task(user_id=other_user.id, title='theirs', due_date=utc(2024, 1, 2, 11))
    hidden = Task(user_id=other_user.id, title='hidden', due_date=utc(2024, 1, 2, 12))
    await db.add(mine, theirs, hidden)
    await db.add(TaskCollaborator(task_id=theirs.id, user_id=user.id, role='editor'))

    params = {'from': '2024-01-02', 'to': '2024-01-02'}
    resp = await client.get('/api/calendar/aggregate', params=params)
    assert resp.status_code == 200
    tasks = resp.json()['days'][0]['tasks']
    assert [t['title'] for t in tasks] == ['mine', 'theirs']
    assert tasks[1]['scope'] == 'shared'
    assert tasks[1]['metadata']['canEdit'] is True

    resp = await client.get('/api/calendar/aggregate', params={**params, 'scope': 'personal'})
    assert [t['title'] for t in resp.json()['days'][0]['tasks']] == ['mine']


async def test_recurring_reminders_over_api(client, db, user):
    task = Task(user_id=user.id, title='Standup',
                reminder_next_trigger_at=utc(2024, 1, 1, 8),
                reminder_recurrence=json.dumps({'frequency': 'weekly', 'weekdays': [1, 3]}))
    await db.add(task)

    resp = await client.get('/api/calendar/aggregate', params={'from': '2024-01-01', 'to': '2024-01-10'})
    assert resp.status_code == 200
    starts = [parse_instant(ev['start']) for d in resp.json()['days'] for ev in d['reminders']]
    assert starts == [utc(2024, 1, 1, 8), utc(2024, 1, 3, 8), utc(2024, 1, 8, 8), utc(2024, 1, 10, 8)]


@pytest.mark.parametrize('params', [
    {'from': 'yesterday'},
    {'from': '2024-01-10', 'to': '2024-01-01'},
    {'scope': 'everyone'},
])
async def test_aggregate_rejects_bad_input(client, params):
    resp = await client.get('/api/calendar/aggregate', params=params)
    assert resp.status_code == 400
    assert resp.json()['detail']


async def test_aggregate_unknown_timezone_falls_back(client):
    resp = await client.get('/api/calendar/aggregate',
                            params={'from': '2024-01-01', 'to': '2024-01-01', 'timezone': 'Not/AZone'})
    assert resp.status_code == 200
    assert resp.json()['timezone'] == 'UTC'


async def test_aggregate_reports_storage_failure(client, db, monkeypatch):
    async def _broken(user_id):
        raise OperationalError('SELECT 1', {}, Exception('disk I/O error'))

    monkeypatch.setattr(db, 'fetch_notes', _broken)
    resp = await client.get('/api/calendar/aggregate', params={'from': '2024-01-01', 'to': '2024-01-02'})
    assert resp.status_code == 500
    assert resp.json()['detail'] == 'Unable to load calendar data.'


async def test_flat_calendar_payload(client, db, user):
    await db.add(
        Task(user_id=user.id, title='late', due_date=utc(2024, 1, 20, 9)),
        Task(user_id=user.id, title='early', due_date=utc(2024, 1, 5, 9)),
        Task(user_id=user.id, title='outside', due_date=utc(2024, 2, 5, 9)),
    )
    resp = await client.get('/api/calendar', params={'start': '2024-01-01', 'end': '2024-01-31'})
    assert resp.status_code == 200
    body = resp.json()
    assert parse_instant(body['range']['start']) == utc(2024, 1, 1)
    assert 'generatedAt' in body
    assert [ev['title'] for ev in body['events']] == ['early', 'late']


async def test_flat_calendar_rejects_inverted_range(client):
    resp = await client.get('/api/calendar', params={'start': '2024-02-01', 'end': '2024-01-01'})
    assert resp.status_code == 400
    resp = await client.get('/api/calendar', params={'start': 'garbage'})
    assert resp.status_code == 400
    assert 'start' in resp.json()['detail']


async def test_create_calendar_event(client):
    resp = await client.post('/api/calendar/events', json={
        'title': '  Dentist ',
        'location': 'Main St',
        'start': '2024-03-04T15:00:00Z',
        'end': '2024-03-04T16:00:00Z',
    })
    assert resp.status_code == 201
    event = resp.json()['event']
    assert event['title'] == 'Dentist'
    assert event['id']
    assert event['start_time'] == '2024-03-04T15:00:00Z'
    assert event['end_time'] == '2024-03-04T16:00:00Z'
    assert event['created_at'].endswith('Z')

    resp = await client.get('/api/calendar/aggregate', params={'from': '2024-03-04', 'to': '2024-03-04'})
    events = resp.json()['days'][0]['events']
    assert [ev['title'] for ev in events] == ['Dentist']
    assert events[0]['metadata']['location'] == 'Main St'
    assert parse_instant(events[0]['end']) == utc(2024, 3, 4, 16)


@pytest.mark.parametrize('payload', [
    {'title': '   ', 'start': '2024-03-04T15:00:00Z', 'end': '2024-03-04T16:00:00Z'},
    {'title': 'Backwards', 'start': '2024-03-04T15:00:00Z', 'end': '2024-03-04T14:00:00Z'},
])
async def test_create_calendar_event_rejects_bad_payload(client, payload):
    resp = await client.post('/api/calendar/events', json=payload)
    assert resp.status_code == 400


async def test_upcoming_task_reminders(client, db, user):
    task = Task(user_id=user.id, title='Water plants',
                reminder_next_trigger_at=utc(2024, 1, 1, 8),
                reminder_recurrence=json.dumps({'frequency': 'weekly', 'weekdays': [1, 3]}),
                reminder_timezone='Europe/Paris')
    await db.add(task)

    resp = await client.get(f'/api/tasks/{task.id}/reminders/upcoming',
                            params={'limit': 4, 'from': '2024-01-01T08:00:00Z'})
    assert resp.status_code == 200
    body = resp.json()
    assert body['task_id'] == task.id
    assert body['timezone'] == 'Europe/Paris'
    assert body['description'] == 'Weekly on Mon, Wed'
    assert [parse_instant(o) for o in body['occurrences']] == [
        utc(2024, 1, 1, 8), utc(2024, 1, 3, 8), utc(2024, 1, 8, 8), utc(2024, 1, 10, 8),
    ]


async def test_upcoming_task_reminders_access(client, db, user, other_user):
    private = Task(user_id=other_user.id, title='private', reminder_next_trigger_at=utc(2024, 1, 1, 8))
    shared = Task(user_id=other_user.id, title='shared', reminder_next_trigger_at=utc(2024, 1, 1, 8))
    await db.add(private, shared)
    await db.add(TaskCollaborator(task_id=shared.id, user_id=user.id, role='viewer'))

    resp = await client.get(f'/api/tasks/{private.id}/reminders/upcoming')
    assert resp.status_code == 404
    resp = await client.get('/api/tasks/99999/reminders/upcoming')
    assert resp.status_code == 404

    resp = await client.get(f'/api/tasks/{shared.id}/reminders/upcoming', params={'from': '2023-12-31'})
    assert resp.status_code == 200
    assert [parse_instant(o) for o in resp.json()['occurrences']] == [utc(2024, 1, 1, 8)]

    resp = await client.get(f'/api/tasks/{shared.id}/reminders/upcoming', params={'from': 'whenever'})
    assert resp.status_code == 400
    resp = await client.get(f'/api/tasks/{shared.id}/reminders/upcoming', params={'limit': 0})
    assert resp.status_code == 422


async def test_aggregate_datetime_bounds_cover_whole_days(client, db, user):
    await db.add(Note(user_id=user.id, title='Midday note', updated_at=utc(2024, 6, 1, 15)))

    resp = await client.get('/api/calendar/aggregate',
                            params={'from': '2024-06-01T12:00:00Z', 'to': '2024-06-01T20:00:00Z'})
    assert resp.status_code == 200
    body = resp.json()
    assert parse_instant(body['from']) == utc(2024, 6, 1)
    (day,) = body['days']
    note = day['notes'][0]
    assert parse_instant(body['from']) <= parse_instant(note['start']) <= parse_instant(body['to'])


async def _create_event(client, **fields):
    payload = {'title': 'Review', 'start': '2024-04-02T09:00:00Z', 'end': '2024-04-02T10:00:00Z'}
    payload.update(fields)
    resp = await client.post('/api/calendar/events', json=payload)
    assert resp.status_code == 201
    return resp.json()['event']


async def test_patch_calendar_event(client):
    event = await _create_event(client, location='Room 1', description='quarterly')

    resp = await client.patch(f"/api/calendar/events/{event['id']}", json={
        'title': ' Planning ',
        'location': '   ',
        'start': '2024-04-03T09:00:00Z',
        'end': '2024-04-03T11:00:00Z',
        'allDay': True,
    })
    assert resp.status_code == 200
    updated = resp.json()['event']
    assert updated['title'] == 'Planning'
    assert updated['location'] is None
    assert updated['description'] == 'quarterly'
    assert updated['all_day'] is True
    assert updated['start_time'] == '2024-04-03T09:00:00Z'
    assert updated['end_time'] == '2024-04-03T11:00:00Z'

    resp = await client.patch(f"/api/calendar/events/{event['id']}", json={'description': None})
    assert resp.status_code == 200
    assert resp.json()['event']['description'] is None
    assert resp.json()['event']['title'] == 'Planning'


@pytest.mark.parametrize('payload, message', [
    ({}, 'Provide at least one field to update.'),
    ({'title': '  '}, 'Title must be a non-empty string.'),
    ({'title': 5}, 'Title must be a non-empty string.'),
    ({'location': 12}, 'Location must be a string or null.'),
    ({'start': '2024-04-03T09:00:00Z'}, 'Both start and end times are required when updating the schedule.'),
    ({'start': 'soon', 'end': '2024-04-03T09:00:00Z'}, 'start must be an ISO date string.'),
    ({'start': '2024-04-03T09:00:00Z', 'end': '2024-04-03T08:00:00Z'}, 'End time must be on or after the start time.'),
    ({'allDay': 'yes'}, 'allDay must be a boolean.'),
])
async def test_patch_calendar_event_validation(client, payload, message):
    event = await _create_event(client)
    resp = await client.patch(f"/api/calendar/events/{event['id']}", json=payload)
    assert resp.status_code == 400
    assert resp.json()['detail'] == message


async def test_patch_and_delete_are_owner_scoped(client, db, other_user):
    theirs = CalendarEvent(user_id=other_user.id, title='Private', start_time=utc(2024, 4, 2, 9))
    await db.add(theirs)

    resp = await client.patch(f'/api/calendar/events/{theirs.id}', json={'title': 'Mine now'})
    assert resp.status_code == 404
    assert resp.json()['detail'] == 'Event not found.'
    resp = await client.delete(f'/api/calendar/events/{theirs.id}')
    assert resp.status_code == 404
    assert (await db.get_calendar_event(other_user.id, theirs.id)).title == 'Private'


async def test_delete_calendar_event(client):
    event = await _create_event(client)

    resp = await client.delete(f"/api/calendar/events/{event['id']}")
    assert resp.status_code == 200
    assert resp.json() == {'ok': True}

    resp = await client.get('/api/calendar/aggregate', params={'from': '2024-04-02', 'to': '2024-04-02'})
    assert resp.json()['days'] == []
    resp = await client.delete(f"/api/calendar/events/{event['id']}")
    assert resp.status_code == 404
