from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from cadence.models import (
    CalendarSync,
    EventLink,
    LinkedTask,
    LocalEvent,
    SyncCursor,
    TaskPriorState,
    TimeBlock,
    TimetableConfig,
    parse_iso_datetime,
    serialize_datetime,
    utc_now,
)


def _utc_now() -> str:
    return utc_now().isoformat()


def _json_list(value: str | None) -> list[Any]:
    try:
        loaded = json.loads(value or "[]")
    except ValueError:
        return []
    return loaded if isinstance(loaded, list) else []


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS sync_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_at TEXT NOT NULL,
    trigger TEXT NOT NULL,
    user_id TEXT NOT NULL,
    calendar_id TEXT NOT NULL,
    mode TEXT NOT NULL,
    status TEXT NOT NULL,
    message TEXT,
    duration_ms INTEGER NOT NULL,
    created INTEGER NOT NULL,
    updated INTEGER NOT NULL,
    deleted INTEGER NOT NULL,
    error_count INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS audit_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id INTEGER,
    created_at TEXT NOT NULL,
    calendar_id TEXT NOT NULL,
    uid TEXT NOT NULL,
    action TEXT NOT NULL,
    details_json TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS calendar_syncs (
    user_id TEXT NOT NULL,
    calendar_id TEXT NOT NULL,
    name TEXT NOT NULL DEFAULT '',
    color TEXT NOT NULL DEFAULT '',
    sync_enabled INTEGER NOT NULL DEFAULT 1,
    cursor TEXT,
    page_token TEXT,
    last_sync_at TEXT,
    last_error TEXT NOT NULL DEFAULT '',
    error_count INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (user_id, calendar_id)
);

CREATE TABLE IF NOT EXISTS events (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    calendar_id TEXT NOT NULL,
    external_id TEXT NOT NULL,
    title TEXT NOT NULL,
    start_at TEXT,
    end_at TEXT,
    all_day INTEGER NOT NULL DEFAULT 0,
    tzid TEXT NOT NULL DEFAULT '',
    recurrence_rule TEXT NOT NULL DEFAULT '',
    ical_data TEXT NOT NULL DEFAULT '',
    description TEXT NOT NULL DEFAULT '',
    location TEXT NOT NULL DEFAULT '',
    color TEXT NOT NULL DEFAULT '',
    etag TEXT NOT NULL DEFAULT '',
    sync_status TEXT NOT NULL DEFAULT 'synced',
    last_synced_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (user_id, calendar_id, external_id)
);

CREATE TABLE IF NOT EXISTS timetable_configs (
    user_id TEXT PRIMARY KEY,
    config_json TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS time_blocks (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    day_of_week INTEGER NOT NULL,
    slot_index INTEGER NOT NULL,
    title TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    title TEXT NOT NULL DEFAULT '',
    task_type TEXT NOT NULL,
    deadline TEXT,
    completion_state TEXT NOT NULL,
    link_kind TEXT,
    link_definition_id TEXT,
    link_offset TEXT,
    tracked_occurrence_start TEXT,
    suggestion_available_from TEXT,
    accepted_slots_json TEXT NOT NULL DEFAULT '[]',
    rejected_today INTEGER NOT NULL DEFAULT 0,
    last_completed_day TEXT NOT NULL DEFAULT '',
    actual_durations_json TEXT NOT NULL DEFAULT '[]',
    prior_state_json TEXT,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_tasks_link ON tasks(link_kind, link_definition_id);
"""


class StateStore:
    """SQLite-backed local store keyed by (user, calendar, external id)."""

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.executescript(SCHEMA_SQL)

    # -- sync runs and audit -------------------------------------------------

    def start_sync_run(self, *, trigger: str, user_id: str, calendar_id: str) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO sync_runs(run_at, trigger, user_id, calendar_id, mode, status, message,
                                          duration_ms, created, updated, deleted, error_count)
                    VALUES (?, ?, ?, ?, '', 'running', 'running', 0, 0, 0, 0, 0)
                    """,
                    (_utc_now(), trigger, user_id, calendar_id),
                )
                return int(cursor.lastrowid)

    def finish_sync_run(
        self,
        *,
        run_id: int,
        mode: str,
        status: str,
        message: str,
        duration_ms: int,
        created: int = 0,
        updated: int = 0,
        deleted: int = 0,
        error_count: int = 0,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    UPDATE sync_runs
                    SET mode = ?, status = ?, message = ?, duration_ms = ?,
                        created = ?, updated = ?, deleted = ?, error_count = ?
                    WHERE id = ?
                    """,
                    (
                        str(mode),
                        str(status),
                        str(message),
                        int(duration_ms),
                        int(created),
                        int(updated),
                        int(deleted),
                        int(error_count),
                        int(run_id),
                    ),
                )

    def recent_sync_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT id, run_at, trigger, user_id, calendar_id, mode, status, message,
                           duration_ms, created, updated, deleted, error_count
                    FROM sync_runs
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (max(1, limit),),
                ).fetchall()
        return [dict(row) for row in rows]

    def record_audit_event(
        self,
        *,
        calendar_id: str,
        uid: str,
        action: str,
        details: dict[str, Any],
        run_id: int | None = None,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO audit_events(run_id, created_at, calendar_id, uid, action, details_json)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (run_id, _utc_now(), calendar_id, uid, action, json.dumps(details, ensure_ascii=False)),
                )

    def recent_audit_events(self, limit: int = 100) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT id, run_id, created_at, calendar_id, uid, action, details_json
                    FROM audit_events
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (max(1, limit),),
                ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["details"] = json.loads(item.pop("details_json") or "{}")
            output.append(item)
        return output

    # -- calendar sync bookkeeping and cursors -------------------------------

    def upsert_calendar_sync(
        self,
        *,
        user_id: str,
        calendar_id: str,
        name: str = "",
        color: str = "",
        sync_enabled: bool = True,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO calendar_syncs(user_id, calendar_id, name, color, sync_enabled)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(user_id, calendar_id) DO UPDATE SET
                        name = excluded.name,
                        color = excluded.color,
                        sync_enabled = excluded.sync_enabled
                    """,
                    (user_id, calendar_id, name, color, 1 if sync_enabled else 0),
                )

    @staticmethod
    def _row_to_calendar_sync(row: sqlite3.Row) -> CalendarSync:
        cursor = SyncCursor(token=row["cursor"], page_token=row["page_token"] or "") if row["cursor"] else None
        return CalendarSync(
            user_id=row["user_id"],
            calendar_id=row["calendar_id"],
            name=row["name"],
            color=row["color"],
            sync_enabled=bool(row["sync_enabled"]),
            cursor=cursor,
            last_sync_at=parse_iso_datetime(row["last_sync_at"]),
            last_error=row["last_error"] or "",
            error_count=int(row["error_count"]),
        )

    def get_calendar_sync(self, user_id: str, calendar_id: str) -> CalendarSync | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM calendar_syncs WHERE user_id = ? AND calendar_id = ?",
                    (user_id, calendar_id),
                ).fetchone()
        return self._row_to_calendar_sync(row) if row else None

    def list_calendar_syncs(self, *, user_id: str | None = None, enabled_only: bool = True) -> list[CalendarSync]:
        clauses: list[str] = []
        params: list[Any] = []
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if enabled_only:
            clauses.append("sync_enabled = 1")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    f"SELECT * FROM calendar_syncs {where} ORDER BY user_id, name, calendar_id",
                    params,
                ).fetchall()
        return [self._row_to_calendar_sync(row) for row in rows]

    def read_cursor(self, user_id: str, calendar_id: str) -> SyncCursor | None:
        sync = self.get_calendar_sync(user_id, calendar_id)
        return sync.cursor if sync else None

    def persist_cursor(self, user_id: str, calendar_id: str, cursor: SyncCursor | None) -> None:
        token = cursor.token if cursor else None
        page_token = (cursor.page_token or None) if cursor else None
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO calendar_syncs(user_id, calendar_id, cursor, page_token)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(user_id, calendar_id) DO UPDATE SET
                        cursor = excluded.cursor,
                        page_token = excluded.page_token
                    """,
                    (user_id, calendar_id, token, page_token),
                )

    def mark_calendar_synced(self, user_id: str, calendar_id: str, errors: list[str]) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO calendar_syncs(user_id, calendar_id, last_sync_at, last_error, error_count)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(user_id, calendar_id) DO UPDATE SET
                        last_sync_at = excluded.last_sync_at,
                        last_error = excluded.last_error,
                        error_count = CASE WHEN excluded.error_count > 0
                                           THEN calendar_syncs.error_count + 1 ELSE 0 END
                    """,
                    (user_id, calendar_id, _utc_now(), "; ".join(errors), 1 if errors else 0),
                )

    def mark_calendar_failed(self, user_id: str, calendar_id: str, message: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO calendar_syncs(user_id, calendar_id, last_error, error_count)
                    VALUES (?, ?, ?, 1)
                    ON CONFLICT(user_id, calendar_id) DO UPDATE SET
                        last_error = excluded.last_error,
                        error_count = calendar_syncs.error_count + 1
                    """,
                    (user_id, calendar_id, message),
                )

    # -- events -------------------------------------------------------------

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> LocalEvent:
        return LocalEvent(
            id=row["id"],
            user_id=row["user_id"],
            calendar_id=row["calendar_id"],
            external_id=row["external_id"],
            title=row["title"],
            start=parse_iso_datetime(row["start_at"]),
            end=parse_iso_datetime(row["end_at"]),
            all_day=bool(row["all_day"]),
            tzid=row["tzid"],
            recurrence_rule=row["recurrence_rule"],
            ical_data=row["ical_data"],
            description=row["description"],
            location=row["location"],
            color=row["color"],
            etag=row["etag"],
            sync_status=row["sync_status"],
            last_synced_at=parse_iso_datetime(row["last_synced_at"]),
        )

    def find_event(self, user_id: str, calendar_id: str, external_id: str) -> LocalEvent | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM events WHERE user_id = ? AND calendar_id = ? AND external_id = ?",
                    (user_id, calendar_id, external_id),
                ).fetchone()
        return self._row_to_event(row) if row else None

    def get_event_by_id(self, event_id: str) -> LocalEvent | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM events WHERE id = ?", (event_id,)).fetchone()
        return self._row_to_event(row) if row else None

    def list_events(self, user_id: str, calendar_id: str | None = None) -> list[LocalEvent]:
        with self._lock:
            with self._connect() as conn:
                if calendar_id is None:
                    rows = conn.execute(
                        "SELECT * FROM events WHERE user_id = ? ORDER BY start_at, id", (user_id,)
                    ).fetchall()
                else:
                    rows = conn.execute(
                        "SELECT * FROM events WHERE user_id = ? AND calendar_id = ? ORDER BY start_at, id",
                        (user_id, calendar_id),
                    ).fetchall()
        return [self._row_to_event(row) for row in rows]

    def upsert_event(self, event: LocalEvent) -> tuple[LocalEvent, bool]:
        """Insert or update by identity. Returns the stored event and whether it was created."""
        now = _utc_now()
        values = (
            event.title,
            serialize_datetime(event.start),
            serialize_datetime(event.end),
            1 if event.all_day else 0,
            event.tzid,
            event.recurrence_rule,
            event.ical_data,
            event.description,
            event.location,
            event.color,
            event.etag,
            event.sync_status,
            serialize_datetime(event.last_synced_at),
            now,
        )
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT id FROM events WHERE user_id = ? AND calendar_id = ? AND external_id = ?",
                    (event.user_id, event.calendar_id, event.external_id),
                ).fetchone()
                if row is not None:
                    event_id = row["id"]
                    conn.execute(
                        """
                        UPDATE events
                        SET title = ?, start_at = ?, end_at = ?, all_day = ?, tzid = ?, recurrence_rule = ?,
                            ical_data = ?, description = ?, location = ?, color = ?, etag = ?,
                            sync_status = ?, last_synced_at = ?, updated_at = ?
                        WHERE id = ?
                        """,
                        values + (event_id,),
                    )
                    created = False
                else:
                    event_id = event.id or uuid.uuid4().hex
                    conn.execute(
                        """
                        INSERT INTO events(title, start_at, end_at, all_day, tzid, recurrence_rule, ical_data,
                                           description, location, color, etag, sync_status, last_synced_at,
                                           updated_at, id, user_id, calendar_id, external_id, created_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        values + (event_id, event.user_id, event.calendar_id, event.external_id, now),
                    )
                    created = True
        return event.with_updates(id=event_id), created

    def delete_event(self, user_id: str, calendar_id: str, external_id: str) -> LocalEvent | None:
        """Delete by identity and return the removed event; a missing target is a no-op."""
        with self._lock:
            existing = self.find_event(user_id, calendar_id, external_id)
            if existing is None:
                return None
            with self._connect() as conn:
                conn.execute("DELETE FROM events WHERE id = ?", (existing.id,))
        return existing

    # -- timetable ----------------------------------------------------------

    def set_timetable_config(self, user_id: str, config: TimetableConfig) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO timetable_configs(user_id, config_json, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(user_id) DO UPDATE SET
                        config_json = excluded.config_json,
                        updated_at = excluded.updated_at
                    """,
                    (user_id, json.dumps(config.to_dict(), ensure_ascii=False), _utc_now()),
                )

    def get_timetable_config(self, user_id: str) -> TimetableConfig:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT config_json FROM timetable_configs WHERE user_id = ?", (user_id,)
                ).fetchone()
        if row is None:
            return TimetableConfig()
        return TimetableConfig.from_dict(json.loads(row["config_json"] or "{}"))

    def upsert_time_block(self, block: TimeBlock) -> TimeBlock:
        block_id = block.id or uuid.uuid4().hex
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO time_blocks(id, user_id, day_of_week, slot_index, title)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        day_of_week = excluded.day_of_week,
                        slot_index = excluded.slot_index,
                        title = excluded.title
                    """,
                    (block_id, block.user_id, int(block.day_of_week), int(block.slot_index), block.title),
                )
        return TimeBlock(
            id=block_id,
            user_id=block.user_id,
            day_of_week=block.day_of_week,
            slot_index=block.slot_index,
            title=block.title,
            config=self.get_timetable_config(block.user_id),
        )

    def get_time_block(self, block_id: str) -> TimeBlock | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM time_blocks WHERE id = ?", (block_id,)).fetchone()
        if row is None:
            return None
        return TimeBlock(
            id=row["id"],
            user_id=row["user_id"],
            day_of_week=int(row["day_of_week"]),
            slot_index=int(row["slot_index"]),
            title=row["title"],
            config=self.get_timetable_config(row["user_id"]),
        )

    def delete_time_block(self, block_id: str) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute("DELETE FROM time_blocks WHERE id = ?", (block_id,))
                return cursor.rowcount > 0

    # -- tasks --------------------------------------------------------------

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> LinkedTask:
        link = None
        if row["link_kind"] and row["link_definition_id"]:
            link = EventLink(
                kind=row["link_kind"],
                definition_id=row["link_definition_id"],
                offset=row["link_offset"] or "",
                tracked_occurrence_start=parse_iso_datetime(row["tracked_occurrence_start"]),
            )
        prior_state = None
        if row["prior_state_json"]:
            prior_state = TaskPriorState.from_dict(json.loads(row["prior_state_json"]))
        return LinkedTask(
            id=row["id"],
            user_id=row["user_id"],
            title=row["title"],
            task_type=row["task_type"],
            deadline=parse_iso_datetime(row["deadline"]),
            completion_state=row["completion_state"],
            link=link,
            suggestion_available_from=parse_iso_datetime(row["suggestion_available_from"]),
            accepted_slots=[str(x) for x in _json_list(row["accepted_slots_json"])],
            rejected_today=bool(row["rejected_today"]),
            last_completed_day=row["last_completed_day"] or "",
            actual_durations=[int(x) for x in _json_list(row["actual_durations_json"])],
            prior_state=prior_state,
        )

    def save_task(self, task: LinkedTask) -> LinkedTask:
        """Write every column of the task in a single statement."""
        task_id = task.id or uuid.uuid4().hex
        link = task.link
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO tasks(id, user_id, title, task_type, deadline, completion_state, link_kind,
                                      link_definition_id, link_offset, tracked_occurrence_start,
                                      suggestion_available_from, accepted_slots_json, rejected_today,
                                      last_completed_day, actual_durations_json, prior_state_json, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        title = excluded.title,
                        task_type = excluded.task_type,
                        deadline = excluded.deadline,
                        completion_state = excluded.completion_state,
                        link_kind = excluded.link_kind,
                        link_definition_id = excluded.link_definition_id,
                        link_offset = excluded.link_offset,
                        tracked_occurrence_start = excluded.tracked_occurrence_start,
                        suggestion_available_from = excluded.suggestion_available_from,
                        accepted_slots_json = excluded.accepted_slots_json,
                        rejected_today = excluded.rejected_today,
                        last_completed_day = excluded.last_completed_day,
                        actual_durations_json = excluded.actual_durations_json,
                        prior_state_json = excluded.prior_state_json,
                        updated_at = excluded.updated_at
                    """,
                    (
                        task_id,
                        task.user_id,
                        task.title,
                        task.task_type,
                        serialize_datetime(task.deadline),
                        task.completion_state,
                        link.kind if link else None,
                        link.definition_id if link else None,
                        link.offset if link else None,
                        serialize_datetime(link.tracked_occurrence_start) if link else None,
                        serialize_datetime(task.suggestion_available_from),
                        json.dumps(list(task.accepted_slots)),
                        1 if task.rejected_today else 0,
                        task.last_completed_day,
                        json.dumps(list(task.actual_durations)),
                        json.dumps(task.prior_state.to_dict()) if task.prior_state else None,
                        _utc_now(),
                    ),
                )
        return task.with_updates(id=task_id)

    def get_task(self, task_id: str) -> LinkedTask | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return self._row_to_task(row) if row else None

    def list_linked_tasks(
        self,
        kind: str,
        definition_id: str,
        *,
        include_completed: bool = False,
    ) -> list[LinkedTask]:
        query = "SELECT * FROM tasks WHERE link_kind = ? AND link_definition_id = ?"
        if not include_completed:
            query += " AND completion_state != 'completed'"
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(query + " ORDER BY id", (kind, definition_id)).fetchall()
        return [self._row_to_task(row) for row in rows]

    def has_linked_tasks(self, kind: str, definition_id: str) -> bool:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT 1 FROM tasks WHERE link_kind = ? AND link_definition_id = ? LIMIT 1",
                    (kind, definition_id),
                ).fetchone()
        return row is not None
