from datetime import datetime

from pydantic import BaseModel, Field

HEX_COLOR = r'^#[0-9a-fA-F]{6}$'


class EventCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=500)
    description: str | None = Field(default=None, max_length=5000)
    start: datetime
    end: datetime
    allDay: bool = False
    color: str | None = Field(default=None, pattern=HEX_COLOR)


class EventUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=500)
    description: str | None = Field(default=None, max_length=5000)
    start: datetime | None = None
    end: datetime | None = None
    allDay: bool | None = None
    color: str | None = Field(default=None, pattern=HEX_COLOR)
    version: int = Field(..., ge=1)


class Event(BaseModel):
    id: str | None
    title: str
    description: str | None = None
    start: str
    end: str
    allDay: bool
    color: str
    externalId: str | None = None
    calendarId: str | None = None
    ownerId: str | None = None
    version: int | None = None
    syncPending: bool = False
    createdAt: str | None = None
    updatedAt: str | None = None
    htmlLink: str | None = None


class EventMutationResponse(Event):
    synced: bool
    syncError: str | None = None


class EventsResponse(BaseModel):
    events: list[Event]
    source: str
    degraded: bool
    errors: list[str] = []


class SyncRequest(BaseModel):
    timeMin: datetime | None = None
    timeMax: datetime | None = None


class SyncReportResponse(BaseModel):
    created: int = 0
    updated: int = 0
    deleted: int = 0
    unchanged: int = 0
    skipped: int = 0
    pushed: int = 0
    failures: list[dict] = []


class CalendarsResponse(BaseModel):
    calendars: list[dict]
