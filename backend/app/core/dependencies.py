import asyncio
import logging
from typing import Annotated

import httpx
from fastapi import Depends, HTTPException, Request
from postgrest.exceptions import APIError
from supabase import Client
from supabase_auth.errors import AuthApiError

from app.calendar.constants import GoogleCalendarConfig
from app.calendar.gcal import GoogleCalendarAdapter, ServiceAccountTokenSource
from app.calendar.sync import EventSync
from app.config import Settings, get_settings
from app.core.supabase import get_supabase_client

logger = logging.getLogger(__name__)

_http_client: httpx.AsyncClient | None = None
_http_client_lock: asyncio.Lock = asyncio.Lock()


async def get_http_client() -> httpx.AsyncClient:
    global _http_client
    async with _http_client_lock:
        if _http_client is None or _http_client.is_closed:
            _http_client = httpx.AsyncClient(
                timeout=GoogleCalendarConfig.REQUEST_TIMEOUT,
                limits=httpx.Limits(max_connections=50, max_keepalive_connections=10),
                headers={"Accept-Encoding": "gzip"}
            )
        return _http_client


async def close_http_client():
    global _http_client
    async with _http_client_lock:
        if _http_client is not None and not _http_client.is_closed:
            await _http_client.aclose()
            _http_client = None


def build_calendar_adapter(http: httpx.AsyncClient, settings: Settings) -> GoogleCalendarAdapter:
    if not settings.calendar_enabled:
        logger.warning("GOOGLE_SERVICE_ACCOUNT_JSON not set; events will stay local until configured")
    return GoogleCalendarAdapter(
        http,
        ServiceAccountTokenSource(settings.GOOGLE_SERVICE_ACCOUNT_JSON),
        calendar_id=settings.GOOGLE_CALENDAR_ID,
        default_time_zone=settings.DEFAULT_TIME_ZONE,
    )


def get_user(supabase, user_id: str) -> dict | None:
    try:
        result = (
            supabase.table("users")
            .select("id, email, name, role")
            .eq("id", user_id)
            .single()
            .execute()
        )
        return result.data
    except APIError as e:
        logger.debug("User lookup failed for %s: %s", user_id, e)
        return None


def _access_token(request: Request) -> str | None:
    auth_header = request.headers.get("authorization", "")
    if auth_header.lower().startswith("bearer "):
        return auth_header[7:].strip() or None
    return request.cookies.get(get_settings().SESSION_COOKIE_NAME)


async def get_current_user(request: Request) -> dict:
    access_token = _access_token(request)
    if not access_token:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        supabase = get_supabase_client()
        user_response = supabase.auth.get_user(access_token)

        if not user_response or not user_response.user:
            raise HTTPException(status_code=401, detail="Invalid session")

        user = get_user(supabase, user_response.user.id)
        if not user:
            raise HTTPException(status_code=401, detail="User not found")

        return user

    except AuthApiError as e:
        logger.warning("Auth error: %s (code=%s)", e.message, e.code)
        raise HTTPException(status_code=401, detail="Authentication failed")


def get_calendar_adapter(request: Request) -> GoogleCalendarAdapter:
    return request.app.state.calendar_adapter


def get_event_sync(
    supabase: Client = Depends(get_supabase_client),
    adapter: GoogleCalendarAdapter = Depends(get_calendar_adapter),
) -> EventSync:
    return EventSync(supabase, adapter)


CurrentUser = Annotated[dict, Depends(get_current_user)]
CalendarAdapter = Annotated[GoogleCalendarAdapter, Depends(get_calendar_adapter)]
EventSyncDep = Annotated[EventSync, Depends(get_event_sync)]
