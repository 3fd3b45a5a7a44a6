from __future__ import annotations

import logging
import threading
import traceback
from datetime import datetime
from typing import Any, Callable

from cadence.errors import CalendarNotFound, CursorExpired, PerEventApplyError
from cadence.event_link import EventLinkAdvancer
from cadence.event_mapper import MappedEvent, map_provider_event
from cadence.models import LINK_KIND_CALENDAR, CalendarSync, SyncCursor, SyncResult, serialize_datetime, utc_now
from cadence.provider_client import GoogleCalendarClient
from cadence.state_store import StateStore

logger = logging.getLogger(__name__)

MODE_FULL = "full"
MODE_INCREMENTAL = "incremental"

ACTION_CREATED = "created"
ACTION_UPDATED = "updated"
ACTION_DELETED = "deleted"
ACTION_NOOP = "noop"


class SyncEngine:
    """Reconciles one provider calendar into the local event store.

    ``perform_sync`` is the core operation: it pages through the provider,
    applies each event in isolation and only then moves the stored cursor.
    ``sync_calendar`` wraps it with run bookkeeping and never raises.
    """

    def __init__(
        self,
        store: StateStore,
        client: GoogleCalendarClient,
        advancer: EventLinkAdvancer | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.client = client
        self.advancer = advancer
        self._clock = clock or utc_now
        self._locks: dict[tuple[str, str], threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, user_id: str, calendar_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault((user_id, calendar_id), threading.Lock())

    def _fetch_all(self, calendar_id: str, cursor: str | None) -> tuple[list[dict[str, Any]], str | None]:
        events: list[dict[str, Any]] = []
        page_token: str | None = None
        next_cursor: str | None = None
        while True:
            page = self.client.list_events(calendar_id, cursor=cursor, page_token=page_token)
            events.extend(page.events)
            next_cursor = page.next_cursor
            page_token = page.next_page_token
            if not page_token:
                return events, next_cursor

    def _apply_event(self, user_id: str, mapped: MappedEvent) -> tuple[str, str | None]:
        """Apply one mapped event; returns the action taken and the affected local id."""
        if mapped.is_cancelled:
            removed = self.store.delete_event(user_id, mapped.calendar_id, mapped.external_id)
            if removed is None:
                return ACTION_NOOP, None
            return ACTION_DELETED, removed.id
        local = mapped.to_local_event(user_id, synced_at=self._clock())
        stored, created = self.store.upsert_event(local)
        return (ACTION_CREATED if created else ACTION_UPDATED), stored.id

    def _recalculate_links(self, event_id: str, errors: list[str]) -> None:
        if self.advancer is None or not self.store.has_linked_tasks(LINK_KIND_CALENDAR, event_id):
            return
        result = self.advancer.recalculate(LINK_KIND_CALENDAR, event_id)
        errors.extend(result.errors)

    def perform_sync(self, user_id: str, calendar_id: str, cursor: str | None = None) -> SyncResult:
        started_at = self._clock()
        mode = MODE_INCREMENTAL if cursor else MODE_FULL
        fell_back = False
        try:
            raw_events, next_cursor = self._fetch_all(calendar_id, cursor)
        except CursorExpired:
            if not cursor:
                raise
            logger.info("Cursor expired for %s/%s, falling back to full sync", user_id, calendar_id)
            mode = MODE_FULL
            fell_back = True
            raw_events, next_cursor = self._fetch_all(calendar_id, None)

        result = SyncResult(status="success", mode=mode, fell_back_to_full=fell_back, run_at=started_at)
        for payload in raw_events:
            try:
                mapped = map_provider_event(payload, calendar_id)
                if mapped is None:
                    logger.debug("Skipping unmappable event %r in %s", payload.get("id"), calendar_id)
                    continue
                action, local_id = self._apply_event(user_id, mapped)
            except Exception as exc:
                failure = PerEventApplyError(str(payload.get("id") or "<unknown>"), str(exc))
                logger.warning("%s", failure, exc_info=True)
                result.errors.append(str(failure))
                continue

            if action == ACTION_CREATED:
                result.created += 1
            elif action == ACTION_UPDATED:
                result.updated += 1
            elif action == ACTION_DELETED:
                result.deleted += 1
            if local_id and action in (ACTION_UPDATED, ACTION_DELETED):
                self._recalculate_links(local_id, result.errors)

        self.store.persist_cursor(user_id, calendar_id, SyncCursor(token=next_cursor) if next_cursor else None)
        result.next_cursor = next_cursor
        if result.errors:
            result.status = "partial"
        result.duration_ms = int((self._clock() - started_at).total_seconds() * 1000)
        result.message = (
            f"{mode} sync: {result.created} created, {result.updated} updated, "
            f"{result.deleted} deleted, {len(result.errors)} errors"
        )
        logger.info("Calendar %s/%s %s", user_id, calendar_id, result.message)
        return result

    def sync_calendar(self, user_id: str, calendar_id: str, trigger: str = "manual") -> SyncResult:
        with self._lock_for(user_id, calendar_id):
            started_at = self._clock()
            run_id = self.store.start_sync_run(trigger=trigger, user_id=user_id, calendar_id=calendar_id)
            stored = self.store.read_cursor(user_id, calendar_id)
            try:
                result = self.perform_sync(user_id, calendar_id, stored.token if stored else None)
            except Exception as exc:
                duration_ms = int((self._clock() - started_at).total_seconds() * 1000)
                error_message = f"{type(exc).__name__}: {exc}"
                logger.error("Sync failed for %s/%s: %s", user_id, calendar_id, error_message)
                self.store.mark_calendar_failed(user_id, calendar_id, error_message)
                self.store.finish_sync_run(
                    run_id=run_id,
                    mode=MODE_INCREMENTAL if stored else MODE_FULL,
                    status="error",
                    message=error_message,
                    duration_ms=duration_ms,
                )
                self.store.record_audit_event(
                    calendar_id=calendar_id,
                    uid="sync",
                    action="run_error",
                    run_id=run_id,
                    details={
                        "trigger": trigger,
                        "user_id": user_id,
                        "error": error_message,
                        "traceback": traceback.format_exc(limit=5),
                    },
                )
                return SyncResult(
                    status="error",
                    mode=MODE_INCREMENTAL if stored else MODE_FULL,
                    message=error_message,
                    duration_ms=duration_ms,
                    run_at=started_at,
                )

            self.store.mark_calendar_synced(user_id, calendar_id, result.errors)
            self.store.finish_sync_run(
                run_id=run_id,
                mode=result.mode,
                status=result.status,
                message=result.message,
                duration_ms=result.duration_ms,
                created=result.created,
                updated=result.updated,
                deleted=result.deleted,
                error_count=len(result.errors),
            )
            if result.fell_back_to_full:
                self.store.record_audit_event(
                    calendar_id=calendar_id,
                    uid="sync",
                    action="cursor_expired",
                    run_id=run_id,
                    details={"trigger": trigger, "user_id": user_id},
                )
            return result

    def sync_enabled_calendars(self, trigger: str = "scheduled") -> list[SyncResult]:
        results: list[SyncResult] = []
        for calendar in self.store.list_calendar_syncs(enabled_only=True):
            results.append(self.sync_calendar(calendar.user_id, calendar.calendar_id, trigger=trigger))
        return results

    def list_calendars(self, user_id: str) -> list[dict[str, Any]]:
        """Provider calendars for ``user_id``, annotated with the stored sync flag."""
        stored = {
            item.calendar_id: item for item in self.store.list_calendar_syncs(user_id=user_id, enabled_only=False)
        }
        output: list[dict[str, Any]] = []
        for calendar in self.client.list_calendars():
            row = stored.get(calendar.calendar_id)
            payload = calendar.to_dict()
            payload["sync_enabled"] = bool(row and row.sync_enabled)
            payload["last_sync_at"] = serialize_datetime(row.last_sync_at) if row else None
            output.append(payload)
        return output

    def set_calendar_sync(self, user_id: str, calendar_id: str, enabled: bool) -> CalendarSync:
        """Enable a provider calendar for syncing, or disable a stored one."""
        existing = self.store.get_calendar_sync(user_id, calendar_id)
        if enabled:
            info = next((item for item in self.client.list_calendars() if item.calendar_id == calendar_id), None)
            if info is None:
                raise CalendarNotFound(calendar_id)
            name, color = info.name, info.color
        else:
            if existing is None:
                raise CalendarNotFound(calendar_id)
            name, color = existing.name, existing.color
        self.store.upsert_calendar_sync(
            user_id=user_id, calendar_id=calendar_id, name=name, color=color, sync_enabled=enabled
        )
        logger.info("Calendar %s/%s sync %s", user_id, calendar_id, "enabled" if enabled else "disabled")
        return self.store.get_calendar_sync(user_id, calendar_id)
