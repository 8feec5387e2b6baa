import logging
from datetime import datetime

from fastapi import APIRouter, HTTPException, Query, Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from app.calendar.helpers import ensure_aware, event_fields_from_input, map_event_row
from app.calendar.sync import SyncOutcome
from app.config import get_settings
from app.core.dependencies import CurrentUser, EventSyncDep
from app.models.event import (
    Event,
    EventCreate,
    EventMutationResponse,
    EventsResponse,
    EventUpdate,
)

limiter = Limiter(key_func=get_remote_address)
settings = get_settings()
logger = logging.getLogger(__name__)
router = APIRouter()


def _mutation_response(outcome: SyncOutcome) -> dict:
    return {**map_event_row(outcome.event), "synced": outcome.synced, "syncError": outcome.error}


@router.get("", response_model=EventsResponse)
@limiter.limit(settings.RATE_LIMIT_API)
async def list_events(
    request: Request,
    current_user: CurrentUser,
    event_sync: EventSyncDep,
    start: datetime = Query(...),
    end: datetime = Query(...),
):
    start = ensure_aware(start, settings.DEFAULT_TIME_ZONE)
    end = ensure_aware(end, settings.DEFAULT_TIME_ZONE)
    if end < start:
        raise HTTPException(status_code=400, detail="end must not be before start")

    listing = await event_sync.list_events(current_user["id"], start, end)
    return {
        "events": listing.events,
        "source": listing.source,
        "degraded": listing.degraded,
        "errors": listing.errors,
    }


@router.get("/{event_id}", response_model=Event)
@limiter.limit(settings.RATE_LIMIT_API)
async def get_event(request: Request, event_id: str, current_user: CurrentUser, event_sync: EventSyncDep):
    row = await event_sync.get(current_user["id"], event_id)
    return map_event_row(row)


@router.post("", response_model=EventMutationResponse, status_code=201)
@limiter.limit(settings.RATE_LIMIT_API)
async def create_event(request: Request, event: EventCreate, current_user: CurrentUser, event_sync: EventSyncDep):
    fields = event_fields_from_input(event.model_dump(), settings.DEFAULT_TIME_ZONE)
    outcome = await event_sync.create(current_user["id"], fields)
    if not outcome.synced:
        logger.info("Event %s saved locally only: %s", outcome.event["id"], outcome.error)
    return _mutation_response(outcome)


@router.put("/{event_id}", response_model=EventMutationResponse)
@limiter.limit(settings.RATE_LIMIT_API)
async def update_event(
    request: Request,
    event_id: str,
    event: EventUpdate,
    current_user: CurrentUser,
    event_sync: EventSyncDep,
):
    user_id = current_user["id"]
    data = event.model_dump(exclude_unset=True)
    version = data.pop("version")

    all_day = data.get("allDay")
    if all_day is None and ("start" in data or "end" in data):
        current = await event_sync.get(user_id, event_id)
        all_day = bool(current.get("all_day"))

    patch = event_fields_from_input(data, settings.DEFAULT_TIME_ZONE, all_day_default=bool(all_day))
    outcome = await event_sync.update(user_id, event_id, patch, version)
    return _mutation_response(outcome)


@router.delete("/{event_id}")
@limiter.limit(settings.RATE_LIMIT_API)
async def delete_event(request: Request, event_id: str, current_user: CurrentUser, event_sync: EventSyncDep):
    await event_sync.delete(current_user["id"], event_id)
    return {"message": "Event deleted"}
