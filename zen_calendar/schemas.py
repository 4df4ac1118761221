"""Wire shapes for the calendar API.

Field names are snake_case in Python and camelCase on the wire where the
web client expects it (`entityId`, `allDay`, `generatedAt`).
"""
from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

CalendarEventType = Literal['task_due', 'task_reminder', 'note', 'zen_reminder', 'event']
CalendarAccessScope = Literal['personal', 'shared']
CalendarAccessRole = Literal['owner', 'editor', 'viewer']
CalendarScope = Literal['all', 'personal', 'shared']


class CalendarEventRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str
    entity_id: str = Field(alias='entityId')
    type: CalendarEventType
    title: str
    description: Optional[str] = None
    start: datetime
    end: datetime
    all_day: bool = Field(default=False, alias='allDay')
    scope: CalendarAccessScope = 'personal'
    metadata: dict[str, Any] = Field(default_factory=dict)


class CalendarAggregationDay(BaseModel):
    date: str
    tasks: list[CalendarEventRecord] = Field(default_factory=list)
    reminders: list[CalendarEventRecord] = Field(default_factory=list)
    notes: list[CalendarEventRecord] = Field(default_factory=list)
    events: list[CalendarEventRecord] = Field(default_factory=list)


class CalendarAggregationResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_: datetime = Field(alias='from')
    to: datetime
    timezone: str
    days: list[CalendarAggregationDay] = Field(default_factory=list)


class CalendarRangeModel(BaseModel):
    start: datetime
    end: datetime


class CalendarResponsePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    range: CalendarRangeModel
    events: list[CalendarEventRecord] = Field(default_factory=list)
    generated_at: datetime = Field(alias='generatedAt')


class CalendarEventCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str
    description: Optional[str] = None
    location: Optional[str] = None
    start: datetime
    end: datetime
    all_day: bool = Field(default=False, alias='allDay')


class UpcomingRemindersResponse(BaseModel):
    task_id: int
    timezone: Optional[str] = None
    description: Optional[str] = None
    occurrences: list[datetime] = Field(default_factory=list)


class TokenRequest(BaseModel):
    username: str
    password: str
