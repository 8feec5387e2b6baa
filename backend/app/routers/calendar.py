import logging
from datetime import datetime, timedelta, timezone

from cachetools import TTLCache
from fastapi import APIRouter, HTTPException

from app.calendar.errors import GoogleAPIError
from app.calendar.helpers import ensure_aware
from app.config import get_settings
from app.core.dependencies import CalendarAdapter, CurrentUser, EventSyncDep
from app.models.event import CalendarsResponse, SyncReportResponse, SyncRequest

settings = get_settings()

logger = logging.getLogger(__name__)
router = APIRouter()

_sync_rate_limits: TTLCache = TTLCache(maxsize=1024, ttl=settings.SYNC_RATE_LIMIT_SECONDS)


def _check_sync_rate_limit(user_id: str, direction: str) -> None:
    key = (user_id, direction)
    if key in _sync_rate_limits:
        raise HTTPException(status_code=429, detail="Sync already requested, please wait")
    _sync_rate_limits[key] = True


def _release_sync_rate_limit(user_id: str, direction: str) -> None:
    _sync_rate_limits.pop((user_id, direction), None)


def _sync_window(body: SyncRequest | None) -> tuple[datetime, datetime]:
    now = datetime.now(timezone.utc)
    time_min = body.timeMin if body and body.timeMin else now - timedelta(days=settings.SYNC_WINDOW_DAYS_PAST)
    time_max = body.timeMax if body and body.timeMax else now + timedelta(days=settings.SYNC_WINDOW_DAYS_AHEAD)
    time_min = ensure_aware(time_min, settings.DEFAULT_TIME_ZONE)
    time_max = ensure_aware(time_max, settings.DEFAULT_TIME_ZONE)
    if time_max <= time_min:
        raise HTTPException(status_code=400, detail="timeMax must be after timeMin")
    return time_min, time_max


@router.post("/sync", response_model=SyncReportResponse)
async def pull_sync(current_user: CurrentUser, event_sync: EventSyncDep, body: SyncRequest | None = None):
    user_id = current_user["id"]
    time_min, time_max = _sync_window(body)
    _check_sync_rate_limit(user_id, "pull")
    logger.info("Pull sync requested by %s for %s..%s", user_id, time_min.isoformat(), time_max.isoformat())
    try:
        report = await event_sync.pull_sync(user_id, time_min, time_max)
    except GoogleAPIError:
        _release_sync_rate_limit(user_id, "pull")
        raise
    return report.as_dict()


@router.post("/push", response_model=SyncReportResponse)
async def push_sync(current_user: CurrentUser, event_sync: EventSyncDep):
    user_id = current_user["id"]
    _check_sync_rate_limit(user_id, "push")
    report = await event_sync.push_sync(user_id)
    return report.as_dict()


@router.get("/calendars", response_model=CalendarsResponse)
async def list_calendars(current_user: CurrentUser, adapter: CalendarAdapter):
    calendars = await adapter.list_calendars()
    return {"calendars": calendars}


@router.post("/refresh-calendar-id")
async def refresh_calendar_id(current_user: CurrentUser, adapter: CalendarAdapter):
    calendar_id = await adapter.refresh_calendar_id(settings.GOOGLE_CALENDAR_ID)
    return {"calendarId": calendar_id}


@router.get("/test")
async def test_connection(current_user: CurrentUser, adapter: CalendarAdapter):
    try:
        await adapter.check_access()
    except GoogleAPIError as e:
        logger.warning("Calendar connection test failed: %s", e.message)
        return {"ok": False, "calendarId": adapter.calendar_id, "error": e.message}
    return {"ok": True, "calendarId": adapter.calendar_id}
