import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta

from supabase import Client

from app.calendar import db
from app.calendar.db import Row
from app.calendar.errors import ExternalNotFound, ExternalUnavailable, GoogleAPIError
from app.calendar.gcal import GoogleCalendarAdapter
from app.calendar.helpers import (
    changed_fields,
    from_google_event,
    map_event_row,
    parse_timestamp,
    project_google_event,
)

logger = logging.getLogger(__name__)

# Google and the store disagree on where an all-day event starts, so pruning
# stays clear of the window edges.
PRUNE_MARGIN = timedelta(days=1)


@dataclass
class SyncOutcome:
    event: Row
    synced: bool
    error: str | None = None


@dataclass
class EventListing:
    events: list[dict]
    source: str
    degraded: bool = False
    errors: list[str] = field(default_factory=list)


@dataclass
class SyncReport:
    created: int = 0
    updated: int = 0
    deleted: int = 0
    unchanged: int = 0
    skipped: int = 0
    pushed: int = 0
    failures: list[dict] = field(default_factory=list)

    def fail(self, event_id: str | None, external_id: str | None, error: str):
        self.failures.append({"eventId": event_id, "externalId": external_id, "error": error})

    def as_dict(self) -> dict:
        return asdict(self)


def _start_key(event: dict) -> str:
    start = event.get("start") or ""
    return start if "T" in start else f"{start}T00:00:00+00:00"


class EventSync:
    """Dual-write policy between the events table and Google Calendar.

    The local store is the source of truth. Google writes are best-effort for
    create and update, required for delete, and repaired in bulk by
    ``pull_sync`` and ``push_sync``.
    """

    def __init__(self, supabase: Client, adapter: GoogleCalendarAdapter):
        self.supabase = supabase
        self.adapter = adapter

    async def _store(self, fn, *args, **kwargs):
        return await asyncio.to_thread(fn, self.supabase, *args, **kwargs)

    async def _store_list(self, fn, *args) -> list[Row]:
        return await asyncio.to_thread(lambda: list(fn(self.supabase, *args)))

    async def _discard_google_copy(self, external_id: str) -> None:
        try:
            await self.adapter.delete_event(external_id, self.adapter.calendar_id)
        except GoogleAPIError as e:
            logger.error("Google event %s is orphaned and must be removed by hand: %s", external_id, e.message)

    async def _push(self, user_id: str, row: Row) -> SyncOutcome:
        external_id = row.get("external_id")
        created: dict | None = None
        error: GoogleAPIError | None = None
        try:
            if external_id:
                await self.adapter.update_event(external_id, row, row.get("calendar_id"))
                state: dict = {"sync_pending": False}
            else:
                created = await self.adapter.create_event(row)
                state = {
                    "external_id": created["id"],
                    "calendar_id": self.adapter.calendar_id,
                    "sync_pending": False,
                }
        except ExternalNotFound as e:
            logger.warning(
                "Google event %s for event %s is gone, detaching so it can be recreated",
                external_id, row["id"],
            )
            state = {"external_id": None, "calendar_id": None, "sync_pending": True}
            error = e
        except GoogleAPIError as e:
            logger.warning("Google sync failed for event %s: %s", row["id"], e.message)
            state = {"sync_pending": True}
            error = e

        if any(row.get(key) != value for key, value in state.items()):
            try:
                stored = await self._store(db.set_sync_state, user_id, row["id"], **state)
            except Exception:
                logger.exception("Could not record sync state %s for event %s", state, row["id"])
                if created is not None:
                    # The row still looks unsynced, so the next push would create a duplicate
                    await self._discard_google_copy(created["id"])
                return SyncOutcome(row, synced=False, error="Could not record sync state")
            row = stored or {**row, **state}

        return SyncOutcome(row, synced=error is None, error=error.message if error else None)

    async def create(self, user_id: str, fields: dict) -> SyncOutcome:
        row = await self._store(db.create_event, user_id, {**fields, "sync_pending": True})
        return await self._push(user_id, row)

    async def get(self, user_id: str, event_id: str) -> Row:
        return await self._store(db.get_event, user_id, event_id)

    async def update(self, user_id: str, event_id: str, patch: dict, expected_version: int) -> SyncOutcome:
        row = await self._store(
            db.update_event, user_id, event_id, {**patch, "sync_pending": True}, expected_version
        )
        if not row.get("external_id"):
            return SyncOutcome(row, synced=False, error="Event has not reached Google yet")
        return await self._push(user_id, row)

    async def delete(self, user_id: str, event_id: str) -> None:
        row = await self._store(db.get_event, user_id, event_id)
        external_id = row.get("external_id")
        if external_id:
            # Raises ExternalUnavailable and keeps the local row so a retry can finish the job
            await self.adapter.delete_event(external_id, row.get("calendar_id"))
        await self._store(db.delete_event, user_id, event_id)
        logger.info("Deleted event %s (external=%s) for user %s", event_id, external_id, user_id)

    async def _list_from_google(self, user_id: str, start: datetime, end: datetime) -> list[dict]:
        items = await self.adapter.list_events(start, end)
        linked = await self._store(db.get_events_by_external_ids, user_id, [i["id"] for i in items])
        events = []
        for item in items:
            local = linked.get(item["id"])
            if local and local.get("sync_pending"):
                # Google holds a stale copy; the local row decides whether it is in range
                continue
            events.append(project_google_event(item, self.adapter.calendar_id, local))

        local_rows = await self._store_list(db.iter_events_in_range, user_id, start, end)
        events.extend(
            map_event_row(row) for row in local_rows
            if not row.get("external_id") or row.get("sync_pending")
        )
        return sorted(events, key=_start_key)

    async def _list_from_store(self, user_id: str, start: datetime, end: datetime) -> list[dict]:
        rows = await self._store_list(db.iter_events_in_range, user_id, start, end)
        return [map_event_row(row) for row in rows]

    async def list_events(self, user_id: str, start: datetime, end: datetime) -> EventListing:
        providers = (
            ("google", self._list_from_google),
            ("local", self._list_from_store),
        )
        errors: list[str] = []
        for source, provider in providers:
            try:
                events = await provider(user_id, start, end)
            except ExternalUnavailable as e:
                logger.warning("Event source %s unavailable for user %s: %s", source, user_id, e.message)
                errors.append(f"{source}: {e.message}")
                continue
            return EventListing(events=events, source=source, degraded=bool(errors), errors=errors)
        raise ExternalUnavailable(503, "; ".join(errors))

    async def pull_sync(self, user_id: str, time_min: datetime, time_max: datetime) -> SyncReport:
        items = await self.adapter.list_events(time_min, time_max)
        calendar_id = self.adapter.calendar_id
        linked = await self._store(db.get_events_by_external_ids, user_id, [i["id"] for i in items])
        report = SyncReport()

        for item in items:
            local = linked.get(item["id"])
            try:
                projected = from_google_event(item, self.adapter.default_time_zone)
                if local is None:
                    await self._store(
                        db.create_event, user_id,
                        {**projected, "calendar_id": calendar_id, "sync_pending": False},
                    )
                    report.created += 1
                elif local.get("sync_pending"):
                    # Unpushed local edits win until push_sync delivers them
                    report.skipped += 1
                else:
                    changes = changed_fields(local, projected)
                    if not changes:
                        report.unchanged += 1
                        continue
                    await self._store(db.update_event, user_id, local["id"], changes, local["version"])
                    report.updated += 1
            except Exception as e:
                logger.exception("Pull sync failed for Google event %s", item.get("id"))
                report.fail(local["id"] if local else None, item.get("id"), str(e))

        seen = {item["id"] for item in items}
        local_rows = await self._store_list(db.iter_events_in_range, user_id, time_min, time_max)
        for row in local_rows:
            external_id = row.get("external_id")
            if not external_id or external_id in seen or row.get("sync_pending"):
                continue
            if row.get("calendar_id") not in (None, calendar_id):
                continue
            if parse_timestamp(row["start_at"]) < time_min + PRUNE_MARGIN:
                continue
            if parse_timestamp(row["end_at"]) > time_max - PRUNE_MARGIN:
                continue
            try:
                await self._store(db.delete_event, user_id, row["id"])
                report.deleted += 1
            except Exception as e:
                logger.exception("Pull sync could not prune event %s", row["id"])
                report.fail(row["id"], external_id, str(e))

        logger.info(
            "Pull sync user=%s created=%d updated=%d deleted=%d unchanged=%d skipped=%d failed=%d",
            user_id, report.created, report.updated, report.deleted,
            report.unchanged, report.skipped, len(report.failures),
        )
        return report

    async def push_sync(self, user_id: str) -> SyncReport:
        rows = await self._store_list(db.iter_unsynced_events, user_id)
        report = SyncReport()
        for row in rows:
            try:
                outcome = await self._push(user_id, row)
            except Exception as e:
                logger.exception("Push sync could not record state for event %s", row["id"])
                report.fail(row["id"], row.get("external_id"), str(e))
                continue
            if outcome.synced:
                report.pushed += 1
            else:
                report.fail(row["id"], row.get("external_id"), outcome.error or "Sync failed")

        logger.info("Push sync user=%s pushed=%d failed=%d", user_id, report.pushed, len(report.failures))
        return report
