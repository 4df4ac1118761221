from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession
from sqlmodel import select
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy import text
from sqlalchemy.pool import NullPool

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from . import config
from .models import CalendarEvent, Note, Task, TaskCollaborator, User, ZenReminder
from .utils import now_utc

logger = logging.getLogger(__name__)

# Columns added to the task table after the first release. SQLite's CREATE
# TABLE won't alter existing tables, so init() adds any that are missing.
_TASK_REMINDER_COLUMNS = {
    'reminder_recurrence': 'TEXT',
    'reminder_next_trigger_at': 'DATETIME',
    'reminder_last_trigger_at': 'DATETIME',
    'reminder_snoozed_until': 'DATETIME',
    'reminder_timezone': 'TEXT',
}


def _owned_event(user_id: int, event_id: int):
    return select(CalendarEvent).where(CalendarEvent.id == event_id).where(CalendarEvent.user_id == user_id)


class CalendarDataError(RuntimeError):
    """A fetch needed for a calendar response failed."""


@dataclass
class CalendarSources:
    """Raw records one calendar request is computed from."""
    owned_tasks: list = field(default_factory=list)
    shared_task_rows: list = field(default_factory=list)
    notes: list = field(default_factory=list)
    calendar_events: list = field(default_factory=list)
    zen_reminders: list = field(default_factory=list)


class Database:
    """Async persistence client.

    Built once by the application lifespan and handed to request handlers
    through the `get_database` dependency in main.py; nothing in the
    package keeps a module-level engine.
    """

    def __init__(self, url: Optional[str] = None, echo: bool = False):
        self.url = url or config.DATABASE_URL
        self.engine = create_async_engine(self.url, echo=echo, future=True, poolclass=NullPool)
        self._sessionmaker = sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)

    def session(self) -> AsyncSession:
        """Return a new session; use as "async with db.session() as sess"."""
        return self._sessionmaker()

    async def init(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
            if not self.url.startswith('sqlite'):
                return
            res = await conn.execute(text("PRAGMA table_info('task')"))
            cols = [r[1] for r in res.fetchall()]
            for name, sql_type in _TASK_REMINDER_COLUMNS.items():
                if name in cols:
                    continue
                stmt = f"ALTER TABLE task ADD COLUMN {name} {sql_type}"
                try:
                    await conn.execute(text(stmt))
                except SQLAlchemyError:
                    logger.exception('failed to add column during init: %s', stmt)

    async def dispose(self) -> None:
        await self.engine.dispose()

    async def add(self, *rows: SQLModel) -> None:
        async with self.session() as sess:
            sess.add_all(rows)
            await sess.commit()
            for row in rows:
                await sess.refresh(row)

    # --- users ---

    async def get_user_by_username(self, username: str) -> Optional[User]:
        async with self.session() as sess:
            q = await sess.exec(select(User).where(User.username == username))
            return q.first()

    # --- calendar record store ---

    async def fetch_owned_tasks(self, user_id: int) -> list[Task]:
        async with self.session() as sess:
            q = await sess.exec(select(Task).where(Task.user_id == user_id).order_by(Task.id))
            return list(q.all())

    async def fetch_shared_task_rows(self, user_id: int) -> list[dict[str, Any]]:
        """Tasks shared with `user_id` as {'role', 'task'} rows."""
        async with self.session() as sess:
            q = await sess.exec(
                select(TaskCollaborator.role, Task)
                .join(Task, Task.id == TaskCollaborator.task_id)
                .where(TaskCollaborator.user_id == user_id)
                .order_by(Task.id)
            )
            return [{'role': role, 'task': task} for role, task in q.all()]

    async def fetch_notes(self, user_id: int) -> list[Note]:
        async with self.session() as sess:
            q = await sess.exec(select(Note).where(Note.user_id == user_id).order_by(Note.id))
            return list(q.all())

    async def fetch_calendar_events(self, user_id: int) -> list[CalendarEvent]:
        async with self.session() as sess:
            q = await sess.exec(
                select(CalendarEvent).where(CalendarEvent.user_id == user_id).order_by(CalendarEvent.start_time)
            )
            return list(q.all())

    async def fetch_zen_reminders(self, user_id: int) -> list[ZenReminder]:
        async with self.session() as sess:
            q = await sess.exec(
                select(ZenReminder).where(ZenReminder.user_id == user_id).order_by(ZenReminder.remind_at)
            )
            return list(q.all())

    async def fetch_calendar_sources(self, user_id: int) -> CalendarSources:
        """Run every calendar fetch concurrently.

        Any single failure aborts the whole load; callers never see a
        partially populated CalendarSources.
        """
        try:
            owned, shared, notes, events, zen = await asyncio.gather(
                self.fetch_owned_tasks(user_id),
                self.fetch_shared_task_rows(user_id),
                self.fetch_notes(user_id),
                self.fetch_calendar_events(user_id),
                self.fetch_zen_reminders(user_id),
            )
        except SQLAlchemyError as exc:
            logger.exception('failed to load calendar data for user_id=%s', user_id)
            raise CalendarDataError('Unable to load calendar data.') from exc
        logger.info('calendar sources user_id=%s owned=%d shared=%d notes=%d events=%d zen=%d',
                    user_id, len(owned), len(shared), len(notes), len(events), len(zen))
        return CalendarSources(owned, shared, notes, events, zen)

    # --- manual calendar events ---

    async def get_calendar_event(self, user_id: int, event_id: int) -> Optional[CalendarEvent]:
        async with self.session() as sess:
            q = await sess.exec(_owned_event(user_id, event_id))
            return q.first()

    async def update_calendar_event(self, user_id: int, event_id: int, updates: dict[str, Any]) -> Optional[CalendarEvent]:
        """Apply column updates to one of the user's events; None when it is not theirs."""
        async with self.session() as sess:
            q = await sess.exec(_owned_event(user_id, event_id))
            event = q.first()
            if event is None:
                return None
            for name, value in updates.items():
                setattr(event, name, value)
            event.updated_at = now_utc()
            sess.add(event)
            await sess.commit()
            await sess.refresh(event)
            return event

    async def delete_calendar_event(self, user_id: int, event_id: int) -> bool:
        async with self.session() as sess:
            q = await sess.exec(_owned_event(user_id, event_id))
            event = q.first()
            if event is None:
                return False
            await sess.delete(event)
            await sess.commit()
            return True

    async def get_task_for_user(self, user_id: int, task_id: int) -> tuple[Optional[Task], Optional[str]]:
        """Return (task, access_role) when the user owns or collaborates on it."""
        async with self.session() as sess:
            task = await sess.get(Task, task_id)
            if task is None:
                return None, None
            if task.user_id == user_id:
                return task, 'owner'
            q = await sess.exec(
                select(TaskCollaborator.role)
                .where(TaskCollaborator.task_id == task_id)
                .where(TaskCollaborator.user_id == user_id)
            )
            role = q.first()
            if role is None:
                return None, None
            return task, role
