import asyncio
import logging
import random
from datetime import date, datetime, time, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo

import httpx

from app.calendar.constants import DEFAULT_EVENT_COLOR, NO_TITLE, GoogleCalendarConfig
from app.calendar.errors import ExternalUnavailable, GoogleAPIError

logger = logging.getLogger(__name__)

SYNCED_FIELDS = ("title", "description", "start_at", "end_at", "all_day")


def extract_error_reason(response: httpx.Response) -> str:
    try:
        return response.json().get("error", {}).get("errors", [{}])[0].get("reason", "")
    except (ValueError, KeyError, IndexError, AttributeError):
        return ""


def token_needs_refresh(expires_at: datetime | None) -> bool:
    if expires_at is None:
        return True
    if expires_at.tzinfo is None:
        # google-auth reports expiry as naive UTC
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return expires_at < datetime.now(timezone.utc) + GoogleCalendarConfig.TOKEN_REFRESH_BUFFER


async def with_retry(coro_func, semaphore: asyncio.Semaphore, label: str = "google"):
    last_error: GoogleAPIError = ExternalUnavailable(500, "No retries configured")

    async with semaphore:
        for attempt in range(GoogleCalendarConfig.MAX_RETRIES):
            try:
                return await coro_func()
            except GoogleAPIError as e:
                if not e.retryable:
                    raise
                last_error = e
            except httpx.TimeoutException:
                last_error = ExternalUnavailable(504, "Request timed out", retryable=True)
            except httpx.TransportError:
                last_error = ExternalUnavailable(503, "Network error", retryable=True)

            if attempt + 1 == GoogleCalendarConfig.MAX_RETRIES:
                break
            delay = GoogleCalendarConfig.BASE_DELAY_SECONDS * (2 ** attempt) * random.uniform(0.5, 1.5)
            logger.warning(
                "Retry attempt=%d/%d target=%s error=%s delay=%.1fs",
                attempt + 1, GoogleCalendarConfig.MAX_RETRIES,
                label, last_error.message, delay,
            )
            await asyncio.sleep(delay)

    if not isinstance(last_error, ExternalUnavailable):
        raise ExternalUnavailable(last_error.status_code, last_error.message, retryable=True)
    raise last_error


def parse_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def ensure_aware(value: datetime, time_zone: str) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=ZoneInfo(time_zone))
    return value


def to_utc_iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="seconds")


def all_day_instant(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def event_fields_from_input(data: dict, time_zone: str, all_day_default: bool = False) -> dict:
    """Turn API-shaped input (camelCase, datetimes) into store columns.

    All-day events keep the calendar date the caller meant, so the date is
    read before any UTC conversion. Naive datetimes are wall-clock time in
    ``time_zone``.
    """
    fields: dict[str, Any] = {}
    if "title" in data:
        fields["title"] = data["title"].strip() if data["title"] else data["title"]
    if "description" in data:
        fields["description"] = data["description"] or None
    if "color" in data and data["color"]:
        fields["color"] = data["color"]
    if "allDay" in data and data["allDay"] is not None:
        fields["all_day"] = bool(data["allDay"])

    all_day = fields.get("all_day", all_day_default)
    for key, column in (("start", "start_at"), ("end", "end_at")):
        value = data.get(key)
        if value is None:
            continue
        if all_day:
            fields[column] = to_utc_iso(all_day_instant(value.date()))
        else:
            fields[column] = to_utc_iso(ensure_aware(value, time_zone))
    return fields


def _google_time(value: str | datetime, all_day: bool, time_zone: str) -> dict[str, str]:
    moment = parse_timestamp(value) if isinstance(value, str) else value
    if all_day:
        return {"date": moment.date().isoformat()}
    if moment.tzinfo is None:
        # Google reads an offset-less dateTime in the calendar's zone unless told otherwise
        return {"dateTime": moment.isoformat(timespec="seconds"), "timeZone": time_zone}
    return {"dateTime": moment.isoformat(timespec="seconds")}


def to_google_event(fields: dict, time_zone: str) -> dict:
    all_day = bool(fields.get("all_day"))
    start = _google_time(fields["start_at"], all_day, time_zone)
    end = _google_time(fields["end_at"], all_day, time_zone)
    if all_day and end["date"] <= start["date"]:
        end = {"date": (date.fromisoformat(start["date"]) + timedelta(days=1)).isoformat()}

    body: dict[str, Any] = {
        "summary": fields.get("title") or NO_TITLE,
        "start": start,
        "end": end,
    }
    if fields.get("description"):
        body["description"] = fields["description"]
    return body


def _local_time(part: dict, fallback_zone: str | None) -> tuple[str, bool]:
    if "date" in part:
        return to_utc_iso(all_day_instant(date.fromisoformat(part["date"]))), True
    moment = parse_timestamp(part["dateTime"])
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=ZoneInfo(part.get("timeZone") or fallback_zone or "UTC"))
    return to_utc_iso(moment), False


def from_google_event(item: dict, time_zone: str | None = None) -> dict:
    start_at, all_day = _local_time(item.get("start") or {}, time_zone)
    end_part = item.get("end") or item.get("start") or {}
    end_at, _ = _local_time(end_part, time_zone)
    return {
        "external_id": item["id"],
        "title": (item.get("summary") or "").strip() or NO_TITLE,
        "description": item.get("description") or None,
        "start_at": start_at,
        "end_at": end_at,
        "all_day": all_day,
    }


def changed_fields(row: dict, projected: dict) -> dict:
    changes = {}
    for field in SYNCED_FIELDS:
        current = row.get(field)
        incoming = projected.get(field)
        if field == "description":
            current, incoming = current or None, incoming or None
        elif field in ("start_at", "end_at") and current and incoming:
            current = to_utc_iso(parse_timestamp(str(current)))
        if current != incoming:
            changes[field] = projected.get(field)
    return changes


def _render_time(value: str | None, all_day: bool) -> str | None:
    if not value:
        return None
    moment = parse_timestamp(str(value))
    if all_day:
        return moment.astimezone(timezone.utc).date().isoformat()
    return to_utc_iso(moment)


def map_event_row(row: dict) -> dict:
    all_day = bool(row.get("all_day"))
    return {
        "id": row.get("id"),
        "title": row.get("title"),
        "description": row.get("description"),
        "start": _render_time(row.get("start_at"), all_day),
        "end": _render_time(row.get("end_at"), all_day),
        "allDay": all_day,
        "color": row.get("color") or DEFAULT_EVENT_COLOR,
        "externalId": row.get("external_id"),
        "calendarId": row.get("calendar_id"),
        "ownerId": row.get("user_id"),
        "version": row.get("version"),
        "syncPending": bool(row.get("sync_pending")),
        "createdAt": row.get("created_at"),
        "updatedAt": row.get("updated_at"),
    }


def project_google_event(item: dict, calendar_id: str, local: dict | None = None) -> dict:
    projected = from_google_event(item)
    if local:
        row = {**local, **projected, "calendar_id": calendar_id}
    else:
        row = {**projected, "calendar_id": calendar_id, "version": None, "sync_pending": False}
    result = map_event_row(row)
    result["htmlLink"] = item.get("htmlLink")
    return result
