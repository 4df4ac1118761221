import os
import warnings

import pytest
import pytest_asyncio

# Ensure a secure SECRET_KEY is available during tests so importing the
# package never picks up the insecure fallback. Must be set before any
# zen_calendar import.
os.environ.setdefault('SECRET_KEY', 'test-secret-key-for-unit-tests')

from sqlalchemy.exc import SAWarning
warnings.filterwarnings('ignore', category=SAWarning)

# Reduce SQLAlchemy logger verbosity during tests
import logging as _logging
for _name in ('sqlalchemy', 'sqlalchemy.engine', 'sqlalchemy.pool', 'sqlmodel'):
    _logging.getLogger(_name).setLevel(_logging.ERROR)

from httpx import AsyncClient, ASGITransport

from zen_calendar.main import app
from zen_calendar.db import Database
from zen_calendar.auth import hash_password
from zen_calendar.models import User


@pytest_asyncio.fixture
async def db(tmp_path):
    """A fresh SQLite database per test, installed on the app."""
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'calendar.db'}")
    await database.init()
    app.state.db = database
    yield database
    await database.dispose()


@pytest_asyncio.fixture
async def user(db):
    u = User(username='testuser', password_hash=hash_password('testpass'))
    await db.add(u)
    return u


@pytest_asyncio.fixture
async def other_user(db):
    u = User(username='friend', password_hash=hash_password('friendpass'))
    await db.add(u)
    return u


@pytest_asyncio.fixture
async def anon_client(db):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture
async def client(anon_client, user):
    """Client authenticated as `user` via a bearer token."""
    resp = await anon_client.post("/auth/token", json={"username": "testuser", "password": "testpass"})
    assert resp.status_code == 200
    token = resp.json()["access_token"]
    anon_client.headers.update({"Authorization": f"Bearer {token}"})
    yield anon_client


@pytest.fixture
def make_task():
    """Build plain task mappings for the pure aggregation tests."""
    def _make(task_id, title='Task', **fields):
        record = {
            'id': task_id,
            'title': title,
            'user_id': fields.pop('user_id', 1),
            'completed': False,
            'due_date': None,
            'reminder_minutes_before': None,
            'reminder_recurrence': None,
            'reminder_next_trigger_at': None,
            'reminder_snoozed_until': None,
            'reminder_timezone': None,
        }
        record.update(fields)
        return record
    return _make
