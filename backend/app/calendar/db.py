import logging
import uuid
from datetime import date, datetime, time, timezone
from typing import Any, Iterator
from zoneinfo import ZoneInfo

from postgrest.exceptions import APIError
from supabase import Client

from app.calendar.constants import DEFAULT_EVENT_COLOR, STORE_PAGE_SIZE
from app.calendar.errors import EventConflict, EventNotFound, EventValidationError
from app.calendar.helpers import all_day_instant, parse_timestamp, to_utc_iso
from app.config import get_settings

logger = logging.getLogger(__name__)

EVENTS_TABLE = "events"
UNIQUE_VIOLATION = "23505"

EDITABLE_COLUMNS = frozenset({
    "title",
    "description",
    "start_at",
    "end_at",
    "all_day",
    "color",
    "external_id",
    "calendar_id",
    "sync_pending",
})
SYNC_STATE_COLUMNS = frozenset({"external_id", "calendar_id", "sync_pending"})

Row = dict[str, Any]


def _event_row(data: Any) -> Row | None:
    # .single() hands back the row itself, everything else a list
    if isinstance(data, dict):
        return data
    if isinstance(data, list) and data and isinstance(data[0], dict):
        return data[0]
    return None


def _event_rows(data: Any) -> list[Row]:
    if not isinstance(data, list):
        return []
    return [row for row in data if isinstance(row, dict) and row.get("id")]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _coerce_timestamp(value: Any, column: str) -> datetime:
    if isinstance(value, datetime):
        moment = value
    elif isinstance(value, str) and value:
        try:
            moment = parse_timestamp(value)
        except ValueError:
            raise EventValidationError(f"{column} is not a valid timestamp")
    else:
        raise EventValidationError(f"{column} is required")
    if moment.tzinfo is None:
        raise EventValidationError(f"{column} must carry a UTC offset")
    return moment


def _calendar_date(moment: datetime) -> date:
    """The day a timestamp falls on for the school, keeping stored all-day dates as they are."""
    utc = moment.astimezone(timezone.utc)
    if utc.time() == time.min:
        return utc.date()
    return moment.astimezone(ZoneInfo(get_settings().DEFAULT_TIME_ZONE)).date()


def validate_event_fields(fields: dict) -> dict:
    """Check a complete event record and normalise its timestamps to UTC."""
    title = fields.get("title")
    if not isinstance(title, str) or not title.strip():
        raise EventValidationError("title is required")

    start = _coerce_timestamp(fields.get("start_at"), "start_at")
    end = _coerce_timestamp(fields.get("end_at"), "end_at")
    if end < start:
        raise EventValidationError("end must not be before start")

    normalized = dict(fields)
    normalized["title"] = title.strip()
    if normalized.get("all_day"):
        normalized["start_at"] = to_utc_iso(all_day_instant(_calendar_date(start)))
        normalized["end_at"] = to_utc_iso(all_day_instant(_calendar_date(end)))
    else:
        normalized["start_at"] = to_utc_iso(start)
        normalized["end_at"] = to_utc_iso(end)
    return normalized


def _raise_for_unique_violation(e: APIError, event_id: str | None):
    if e.code == UNIQUE_VIOLATION:
        raise EventConflict(event_id, "Another event is already linked to this external event")
    raise e


def create_event(supabase: Client, user_id: str, fields: dict) -> Row:
    unknown = set(fields) - EDITABLE_COLUMNS
    if unknown:
        raise EventValidationError(f"Unknown fields: {', '.join(sorted(unknown))}")

    record = validate_event_fields(fields)
    now = _now()
    record.update({
        "id": str(uuid.uuid4()),
        "user_id": user_id,
        "all_day": bool(record.get("all_day", False)),
        "color": record.get("color") or DEFAULT_EVENT_COLOR,
        "sync_pending": bool(record.get("sync_pending", False)),
        "version": 1,
        "created_at": now,
        "updated_at": now,
    })

    try:
        result = supabase.table(EVENTS_TABLE).insert(record).execute()
    except APIError as e:
        _raise_for_unique_violation(e, None)

    row = _event_row(result.data)
    if row is None:
        raise RuntimeError("Event insert returned no row")
    logger.info("Created event %s for user %s", row["id"], user_id)
    return row


def get_event(supabase: Client, user_id: str, event_id: str) -> Row:
    result = (
        supabase
        .table(EVENTS_TABLE)
        .select("*")
        .eq("id", event_id)
        .eq("user_id", user_id)
        .limit(1)
        .execute()
    )
    row = _event_row(result.data)
    if row is None:
        raise EventNotFound(event_id)
    return row


def get_event_by_external_id(supabase: Client, user_id: str, external_id: str) -> Row | None:
    result = (
        supabase
        .table(EVENTS_TABLE)
        .select("*")
        .eq("user_id", user_id)
        .eq("external_id", external_id)
        .limit(1)
        .execute()
    )
    return _event_row(result.data)


def get_events_by_external_ids(supabase: Client, user_id: str, external_ids: list[str]) -> dict[str, Row]:
    if not external_ids:
        return {}
    result = (
        supabase
        .table(EVENTS_TABLE)
        .select("*")
        .eq("user_id", user_id)
        .in_("external_id", external_ids)
        .execute()
    )
    return {row["external_id"]: row for row in _event_rows(result.data)}


def update_event(
    supabase: Client,
    user_id: str,
    event_id: str,
    patch: dict,
    expected_version: int,
) -> Row:
    unknown = set(patch) - EDITABLE_COLUMNS
    if unknown:
        raise EventValidationError(f"Unknown fields: {', '.join(sorted(unknown))}")

    current = get_event(supabase, user_id, event_id)
    if current.get("version") != expected_version:
        raise EventConflict(event_id)

    merged = validate_event_fields({**current, **patch})
    data = {key: merged[key] for key in patch}
    for column in ("start_at", "end_at"):
        # all_day toggles re-normalise both timestamps
        if column in patch or "all_day" in patch:
            data[column] = merged[column]
    data["version"] = expected_version + 1
    data["updated_at"] = _now()

    try:
        result = (
            supabase
            .table(EVENTS_TABLE)
            .update(data)
            .eq("id", event_id)
            .eq("user_id", user_id)
            .eq("version", expected_version)
            .execute()
        )
    except APIError as e:
        _raise_for_unique_violation(e, event_id)

    row = _event_row(result.data)
    if row is None:
        # Lost the compare-and-set race to a concurrent writer
        raise EventConflict(event_id)
    return row


def set_sync_state(supabase: Client, user_id: str, event_id: str, **fields) -> Row | None:
    unknown = set(fields) - SYNC_STATE_COLUMNS
    if unknown:
        raise ValueError(f"Not sync state columns: {', '.join(sorted(unknown))}")
    try:
        result = (
            supabase
            .table(EVENTS_TABLE)
            .update(fields)
            .eq("id", event_id)
            .eq("user_id", user_id)
            .execute()
        )
    except APIError as e:
        _raise_for_unique_violation(e, event_id)
    return _event_row(result.data)


def delete_event(supabase: Client, user_id: str, event_id: str) -> bool:
    result = (
        supabase
        .table(EVENTS_TABLE)
        .delete()
        .eq("id", event_id)
        .eq("user_id", user_id)
        .execute()
    )
    return bool(_event_rows(result.data))


def iter_events_in_range(
    supabase: Client,
    user_id: str,
    start: datetime,
    end: datetime,
    page_size: int = STORE_PAGE_SIZE,
) -> Iterator[Row]:
    range_start = to_utc_iso(start)
    range_end = to_utc_iso(end)

    def overlapping():
        return (
            supabase
            .table(EVENTS_TABLE)
            .select("*")
            .eq("user_id", user_id)
            .lt("start_at", range_end)
            .gt("end_at", range_start)
            .order("start_at")
            .order("id")
        )

    return _paged(overlapping, page_size)


def _paged(query_fn, page_size: int) -> Iterator[Row]:
    offset = 0
    while True:
        rows = _event_rows(query_fn().range(offset, offset + page_size - 1).execute().data)
        yield from rows
        if len(rows) < page_size:
            return
        offset += page_size


def iter_unsynced_events(supabase: Client, user_id: str, page_size: int = STORE_PAGE_SIZE) -> Iterator[Row]:
    """Rows never pushed to Google or holding edits Google has not seen.

    Offsets shift as rows get synced, so callers that write back while
    iterating should materialise the sequence first.
    """
    def never_synced():
        return (
            supabase.table(EVENTS_TABLE).select("*")
            .eq("user_id", user_id)
            .is_("external_id", "null")
            .order("start_at").order("id")
        )

    def pending_changes():
        return (
            supabase.table(EVENTS_TABLE).select("*")
            .eq("user_id", user_id)
            .eq("sync_pending", True)
            .order("start_at").order("id")
        )

    seen: set[str] = set()
    for query_fn in (never_synced, pending_changes):
        for row in _paged(query_fn, page_size):
            if row["id"] not in seen:
                seen.add(row["id"])
                yield row
