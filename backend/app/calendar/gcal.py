import asyncio
import json
import logging
from datetime import datetime
from typing import Any
from urllib.parse import quote

import httpx
from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request as GoogleAuthRequest
from google.oauth2 import service_account

from app.calendar.constants import AUTO_CALENDAR_ID, GoogleCalendarConfig
from app.calendar.errors import (
    ExternalNotFound,
    ExternalRejected,
    ExternalUnavailable,
    GoogleAPIError,
)
from app.calendar.helpers import (
    extract_error_reason,
    to_google_event,
    token_needs_refresh,
    with_retry,
)

logger = logging.getLogger(__name__)


def handle_google_response(response: httpx.Response) -> dict:
    status = response.status_code
    if 200 <= status < 300:
        if status == 204:
            return {}
        try:
            return response.json()
        except ValueError:
            raise ExternalUnavailable(status, "Malformed Google response")

    if status == 401:
        raise ExternalUnavailable(401, "Service account token rejected")

    if status == 403:
        error_reason = extract_error_reason(response)
        if error_reason in GoogleCalendarConfig.QUOTA_ERROR_REASONS:
            raise ExternalUnavailable(403, f"Quota exceeded: {error_reason}", retryable=True)
        raise ExternalUnavailable(403, "Access forbidden")

    if status in (404, 410):
        raise ExternalNotFound(status, "Event not found")

    if status == 429:
        raise ExternalUnavailable(429, "Rate limited", retryable=True)

    if status >= 500:
        raise ExternalUnavailable(status, "Google server error", retryable=True)

    reason = extract_error_reason(response) or "Request rejected"
    raise ExternalRejected(status, reason)


class ServiceAccountTokenSource:
    """
    Access tokens for the school's Google service account.

    Credentials are parsed on first use so the app can boot without them;
    every call then fails with ExternalUnavailable and the local store keeps
    working on its own.
    """

    def __init__(self, credentials_json: str | None, scopes: tuple[str, ...] = GoogleCalendarConfig.SCOPES):
        self._credentials_json = credentials_json
        self._scopes = scopes
        self._credentials: service_account.Credentials | None = None
        self._lock = asyncio.Lock()

    def _load(self) -> service_account.Credentials:
        if self._credentials is None:
            if not self._credentials_json:
                raise ExternalUnavailable(401, "Calendar credentials not configured")
            try:
                info = json.loads(self._credentials_json)
                self._credentials = service_account.Credentials.from_service_account_info(
                    info, scopes=list(self._scopes)
                )
            except (ValueError, KeyError) as e:
                logger.error("Invalid service account credentials: %s", e)
                raise ExternalUnavailable(401, "Calendar credentials are invalid")
        return self._credentials

    def _expiry(self) -> datetime | None:
        return self._credentials.expiry if self._credentials else None

    async def get_token(self, force_refresh: bool = False) -> str:
        async with self._lock:
            credentials = self._load()
            if force_refresh or not credentials.token or token_needs_refresh(self._expiry()):
                try:
                    await asyncio.to_thread(credentials.refresh, GoogleAuthRequest())
                except GoogleAuthError as e:
                    logger.warning("Service account token refresh failed: %s", e)
                    raise ExternalUnavailable(401, "Failed to refresh calendar token")
            return credentials.token


class GoogleCalendarAdapter:
    """Translates local events to Google Calendar v3 calls for one calendar."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        token_source: ServiceAccountTokenSource,
        calendar_id: str,
        default_time_zone: str,
    ):
        self.http = http
        self.token_source = token_source
        self.calendar_id = calendar_id
        self.default_time_zone = default_time_zone
        self._semaphore = asyncio.Semaphore(GoogleCalendarConfig.MAX_CONCURRENT_REQUESTS)

    def _calendar_url(self, calendar_id: str | None) -> str:
        target = calendar_id or self.calendar_id
        if target == AUTO_CALENDAR_ID:
            raise ExternalUnavailable(400, "Calendar id not resolved; refresh it first")
        return f"{GoogleCalendarConfig.API_BASE_URL}/calendars/{quote(target, safe='')}/events"

    async def _authed_request(self, method: str, url: str, **kwargs) -> dict:
        async def _send(token: str) -> dict:
            response = await self.http.request(
                method,
                url,
                headers={"Authorization": f"Bearer {token}"},
                **kwargs,
            )
            return handle_google_response(response)

        token = await self.token_source.get_token()
        try:
            return await _send(token)
        except ExternalUnavailable as e:
            if e.status_code != 401:
                raise
            token = await self.token_source.get_token(force_refresh=True)
            return await _send(token)

    async def _call(self, method: str, url: str, **kwargs) -> dict:
        return await with_retry(
            lambda: self._authed_request(method, url, **kwargs),
            self._semaphore,
            self.calendar_id,
        )

    async def list_events(self, time_min: datetime, time_max: datetime, calendar_id: str | None = None) -> list[dict]:
        try:
            url = self._calendar_url(calendar_id)
            items: list[dict] = []
            page_token = None
            while True:
                params: dict[str, Any] = {
                    "singleEvents": "true",
                    "orderBy": "startTime",
                    "maxResults": GoogleCalendarConfig.PAGE_SIZE,
                    "timeMin": time_min.isoformat(),
                    "timeMax": time_max.isoformat(),
                }
                if page_token:
                    params["pageToken"] = page_token
                response = await self._call("GET", url, params=params)
                items.extend(i for i in response.get("items", []) if i.get("status") != "cancelled")
                page_token = response.get("nextPageToken")
                if not page_token:
                    return items
        except ExternalUnavailable:
            raise
        except GoogleAPIError as e:
            raise ExternalUnavailable(e.status_code, e.message)

    async def create_event(self, fields: dict, calendar_id: str | None = None) -> dict:
        body = to_google_event(fields, self.default_time_zone)
        created = await self._call("POST", self._calendar_url(calendar_id), json=body)
        logger.info("Created Google event %s for event %s", created.get("id"), fields.get("id"))
        return created

    async def update_event(self, external_id: str, fields: dict, calendar_id: str | None = None) -> dict:
        body = to_google_event(fields, self.default_time_zone)
        url = f"{self._calendar_url(calendar_id)}/{quote(external_id, safe='')}"
        return await self._call("PATCH", url, json=body)

    async def delete_event(self, external_id: str, calendar_id: str | None = None) -> None:
        url = f"{self._calendar_url(calendar_id)}/{quote(external_id, safe='')}"
        try:
            await self._call("DELETE", url)
        except ExternalNotFound:
            logger.info("Google event %s already absent", external_id)
        except ExternalUnavailable:
            raise
        except GoogleAPIError as e:
            raise ExternalUnavailable(e.status_code, e.message)

    async def list_calendars(self) -> list[dict]:
        response = await self._call("GET", f"{GoogleCalendarConfig.API_BASE_URL}/users/me/calendarList")
        return [
            {
                "id": cal["id"],
                "name": cal.get("summary", ""),
                "color": cal.get("backgroundColor"),
                "isPrimary": cal.get("primary", False),
                "accessRole": cal.get("accessRole", "reader"),
                "timeZone": cal.get("timeZone"),
            }
            for cal in response.get("items", [])
        ]

    async def refresh_calendar_id(self, configured: str | None = None) -> str:
        """Re-resolve which calendar events go to.

        A concrete configured id is kept as is. ``auto`` picks the primary
        calendar the service account can write to, else the first writable one.
        """
        target = configured or self.calendar_id
        if target != AUTO_CALENDAR_ID:
            self.calendar_id = target
            return target

        calendars = await self.list_calendars()
        writable = [c for c in calendars if c["accessRole"] in GoogleCalendarConfig.WRITABLE_ACCESS_ROLES]
        if not writable:
            raise ExternalUnavailable(404, "No writable calendar shared with the service account")
        chosen = next((c for c in writable if c["isPrimary"]), writable[0])
        logger.info("Resolved calendar id %s (%s)", chosen["id"], chosen["name"])
        self.calendar_id = chosen["id"]
        return chosen["id"]

    async def check_access(self) -> bool:
        url = self._calendar_url(None)
        await self._call("GET", url, params={"maxResults": 1})
        return True
