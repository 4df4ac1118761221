from typing import Optional
from datetime import datetime
from .utils import now_utc
from sqlmodel import SQLModel, Field
from sqlalchemy import CheckConstraint, UniqueConstraint


class User(SQLModel, table=True):
    """Account used to own tasks, notes and calendar entries."""
    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(index=True, sa_column_kwargs={"unique": True})
    password_hash: str
    created_at: datetime | None = Field(default_factory=now_utc)


class Task(SQLModel, table=True):
    __table_args__ = (
        CheckConstraint(
            'reminder_minutes_before IS NULL OR due_date IS NOT NULL',
            name='tasks_reminder_requires_due_date',
        ),
        CheckConstraint(
            'reminder_minutes_before IS NULL OR reminder_minutes_before >= 0',
            name='tasks_reminder_minutes_non_negative',
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    title: str
    description: Optional[str] = None
    completed: bool = Field(default=False, index=True)
    category: Optional[str] = None
    category_color: Optional[str] = None
    due_date: Optional[datetime] = Field(default=None, index=True)
    reminder_minutes_before: Optional[int] = None
    # JSON-encoded recurrence descriptor, normalized when read
    reminder_recurrence: Optional[str] = None
    reminder_next_trigger_at: Optional[datetime] = Field(default=None, index=True)
    reminder_last_trigger_at: Optional[datetime] = None
    reminder_snoozed_until: Optional[datetime] = None
    # IANA zone for display only; occurrence math is done on UTC instants
    reminder_timezone: Optional[str] = None
    created_at: datetime | None = Field(default_factory=now_utc)
    updated_at: datetime | None = Field(default_factory=now_utc)


class TaskCollaborator(SQLModel, table=True):
    """Grants another user access to a task. role is 'editor' or 'viewer'."""
    __table_args__ = (UniqueConstraint('task_id', 'user_id'),)

    id: Optional[int] = Field(default=None, primary_key=True)
    task_id: int = Field(foreign_key="task.id", index=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    role: str = Field(default='viewer')
    created_at: datetime | None = Field(default_factory=now_utc)


class Note(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    title: str
    summary: Optional[str] = None
    content: Optional[str] = None
    created_at: datetime | None = Field(default_factory=now_utc)
    updated_at: datetime | None = Field(default_factory=now_utc)


class CalendarEvent(SQLModel, table=True):
    """Manually created calendar entry."""
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    title: str
    description: Optional[str] = None
    location: Optional[str] = None
    start_time: datetime = Field(index=True)
    end_time: Optional[datetime] = None
    all_day: bool = Field(default=False)
    created_at: datetime | None = Field(default_factory=now_utc)
    updated_at: datetime | None = Field(default_factory=now_utc)


class ZenReminder(SQLModel, table=True):
    """Standalone one-off reminder not attached to a task."""
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    title: str
    description: Optional[str] = None
    remind_at: datetime = Field(index=True)
    timezone: Optional[str] = None
    created_at: datetime | None = Field(default_factory=now_utc)
    updated_at: datetime | None = Field(default_factory=now_utc)
