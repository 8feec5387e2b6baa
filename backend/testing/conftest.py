"""Shared test fixtures and utilities."""
import copy
import itertools
import os
import sys
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient
from postgrest.exceptions import APIError

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

os.environ.setdefault("SUPABASE_URL", "http://localhost:54321")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "test-service-role-key")
os.environ.setdefault("FRONTEND_URL", "http://localhost:5173")

from app.calendar.errors import ExternalNotFound
from app.calendar.helpers import from_google_event, to_google_event, to_utc_iso
from app.calendar.sync import EventSync
from app.core.dependencies import get_calendar_adapter, get_current_user
from app.core.supabase import get_supabase_client
from app.main import app
from app.routers import calendar as calendar_router
from app.routers import events as events_router

MOCK_USER = {
    "id": "test-user-123",
    "email": "registrar@example.edu",
    "name": "Test Registrar",
    "role": "HEAD",
}

CALENDAR_ID = "school@group.calendar.google.com"


@dataclass
class FakeResponse:
    data: Any


class FakeQuery:
    """Enough of the postgrest builder for the events store."""

    def __init__(self, db: "InMemorySupabase", table: str):
        self._db = db
        self._table = table
        self._op = "select"
        self._payload: Any = None
        self._filters: list = []
        self._order: list[tuple[str, bool]] = []
        self._range: tuple[int, int] | None = None
        self._limit: int | None = None
        self._single = False

    def select(self, *columns):
        self._op = "select"
        return self

    def insert(self, data):
        self._op = "insert"
        self._payload = data
        return self

    def update(self, data):
        self._op = "update"
        self._payload = data
        return self

    def delete(self):
        self._op = "delete"
        return self

    def eq(self, column, value):
        self._filters.append(lambda r: r.get(column) == value)
        return self

    def neq(self, column, value):
        self._filters.append(lambda r: r.get(column) != value)
        return self

    def in_(self, column, values):
        values = list(values)
        self._filters.append(lambda r: r.get(column) in values)
        return self

    def is_(self, column, value):
        expected = None if value in (None, "null") else value
        self._filters.append(lambda r: r.get(column) is expected or r.get(column) == expected)
        return self

    def lt(self, column, value):
        self._filters.append(lambda r: r.get(column) is not None and r[column] < value)
        return self

    def lte(self, column, value):
        self._filters.append(lambda r: r.get(column) is not None and r[column] <= value)
        return self

    def gt(self, column, value):
        self._filters.append(lambda r: r.get(column) is not None and r[column] > value)
        return self

    def gte(self, column, value):
        self._filters.append(lambda r: r.get(column) is not None and r[column] >= value)
        return self

    def order(self, column, desc=False):
        self._order.append((column, desc))
        return self

    def range(self, start, end):
        self._range = (start, end)
        return self

    def limit(self, count):
        self._limit = count
        return self

    def single(self):
        self._single = True
        return self

    def _matching(self) -> list[dict]:
        rows = self._db.tables.setdefault(self._table, [])
        return [r for r in rows if all(f(r) for f in self._filters)]

    def execute(self) -> FakeResponse:
        self._db.operations.append((self._table, self._op))
        if self._op == "insert":
            records = self._payload if isinstance(self._payload, list) else [self._payload]
            inserted = []
            for record in records:
                self._db.check_unique(self._table, record)
                self._db.tables.setdefault(self._table, []).append(copy.deepcopy(record))
                inserted.append(copy.deepcopy(record))
            return FakeResponse(inserted)

        if self._op == "update":
            updated = []
            for row in self._matching():
                self._db.check_unique(self._table, {**row, **self._payload}, exclude=row)
                row.update(copy.deepcopy(self._payload))
                updated.append(copy.deepcopy(row))
            return FakeResponse(updated)

        if self._op == "delete":
            doomed = self._matching()
            table = self._db.tables[self._table]
            self._db.tables[self._table] = [r for r in table if not any(r is d for d in doomed)]
            return FakeResponse([copy.deepcopy(r) for r in doomed])

        rows = self._matching()
        for column, desc in reversed(self._order):
            rows.sort(key=lambda r: (r.get(column) is None, r.get(column) or ""), reverse=desc)
        if self._range is not None:
            start, end = self._range
            rows = rows[start:end + 1]
        if self._limit is not None:
            rows = rows[:self._limit]
        rows = [copy.deepcopy(r) for r in rows]

        if self._single:
            if len(rows) != 1:
                raise APIError({
                    "message": "JSON object requested, multiple (or no) rows returned",
                    "code": "PGRST116",
                    "hint": None,
                    "details": None,
                })
            return FakeResponse(rows[0])
        return FakeResponse(rows)


class InMemorySupabase:
    """Stands in for the supabase Client in store and controller tests."""

    UNIQUE_KEYS = {"events": ("user_id", "external_id")}

    def __init__(self):
        self.tables: dict[str, list[dict]] = {"events": [], "users": [dict(MOCK_USER)]}
        self.operations: list[tuple[str, str]] = []

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def check_unique(self, table: str, record: dict, exclude: dict | None = None):
        columns = self.UNIQUE_KEYS.get(table)
        if not columns or any(record.get(c) is None for c in columns):
            return
        for row in self.tables.get(table, []):
            if row is exclude:
                continue
            if all(row.get(c) == record.get(c) for c in columns):
                raise APIError({
                    "message": "duplicate key value violates unique constraint",
                    "code": "23505",
                    "hint": None,
                    "details": f"Key ({', '.join(columns)}) already exists.",
                })

    def rows(self, table: str = "events") -> list[dict]:
        return [copy.deepcopy(r) for r in self.tables.get(table, [])]

    def row(self, event_id: str) -> dict | None:
        return next((copy.deepcopy(r) for r in self.tables["events"] if r["id"] == event_id), None)

    def patch_row(self, event_id: str, **values):
        for row in self.tables["events"]:
            if row["id"] == event_id:
                row.update(values)


class FakeAdapter:
    """In-memory Google calendar with switchable failures per operation."""

    def __init__(self, calendar_id: str = CALENDAR_ID, default_time_zone: str = "Asia/Manila"):
        self.calendar_id = calendar_id
        self.default_time_zone = default_time_zone
        self.events: dict[str, dict] = {}
        self.calls: list[str] = []
        self.failures: dict[str, Exception] = {}
        self.queued_ids: list[str] = []
        self._ids = itertools.count(1)

    def fail(self, operation: str, error: Exception):
        self.failures[operation] = error

    def recover(self, operation: str | None = None):
        if operation is None:
            self.failures.clear()
        else:
            self.failures.pop(operation, None)

    def _check(self, operation: str):
        self.calls.append(operation)
        if operation in self.failures:
            raise self.failures[operation]

    def _store(self, body: dict, external_id: str | None = None) -> dict:
        if external_id is None:
            external_id = self.queued_ids.pop(0) if self.queued_ids else f"g-{next(self._ids)}"
        item = {
            **body,
            "id": external_id,
            "status": "confirmed",
            "htmlLink": f"https://calendar.google.com/event?eid={external_id}",
        }
        self.events[external_id] = item
        return copy.deepcopy(item)

    def add_google_event(self, summary: str, start: dict, end: dict, description: str | None = None) -> dict:
        body: dict = {"summary": summary, "start": start, "end": end}
        if description:
            body["description"] = description
        return self._store(body)

    async def list_events(self, time_min: datetime, time_max: datetime, calendar_id: str | None = None) -> list[dict]:
        self._check("list")
        lower, upper = to_utc_iso(time_min), to_utc_iso(time_max)
        items = []
        for item in self.events.values():
            projected = from_google_event(item, self.default_time_zone)
            if projected["start_at"] < upper and projected["end_at"] > lower:
                items.append(copy.deepcopy(item))
        return items

    async def create_event(self, fields: dict, calendar_id: str | None = None) -> dict:
        self._check("create")
        return self._store(to_google_event(fields, self.default_time_zone))

    async def update_event(self, external_id: str, fields: dict, calendar_id: str | None = None) -> dict:
        self._check("update")
        if external_id not in self.events:
            raise ExternalNotFound(404, "Event not found")
        return self._store(to_google_event(fields, self.default_time_zone), external_id)

    async def delete_event(self, external_id: str, calendar_id: str | None = None) -> None:
        self._check("delete")
        self.events.pop(external_id, None)

    async def list_calendars(self) -> list[dict]:
        self._check("calendars")
        return [{
            "id": self.calendar_id,
            "name": "School Calendar",
            "color": "#8a1d35",
            "isPrimary": True,
            "accessRole": "owner",
            "timeZone": self.default_time_zone,
        }]

    async def refresh_calendar_id(self, configured: str | None = None) -> str:
        self._check("refresh")
        return self.calendar_id

    async def check_access(self) -> bool:
        self._check("check")
        return True


@pytest.fixture
def supabase():
    return InMemorySupabase()


@pytest.fixture
def adapter():
    return FakeAdapter()


@pytest.fixture
def event_sync(supabase, adapter):
    return EventSync(supabase, adapter)


@pytest.fixture(autouse=True)
def _reset_rate_limits():
    events_router.limiter.reset()
    calendar_router._sync_rate_limits.clear()
    yield


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture
def authenticated_client(supabase, adapter):
    app.dependency_overrides[get_current_user] = lambda: MOCK_USER
    app.dependency_overrides[get_supabase_client] = lambda: supabase
    app.dependency_overrides[get_calendar_adapter] = lambda: adapter
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
