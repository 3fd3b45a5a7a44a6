from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from datetime import date, datetime, time, timedelta, timezone
from typing import Any


GOOGLE_CALENDAR_BASE_URL = "https://www.googleapis.com/calendar/v3"

OFFSET_SAME_DAY_AFTER = "same_day_after"
OFFSET_ONE_DAY_BEFORE = "1_day_before"
OFFSET_ONE_DAY_AFTER = "1_day_after"
OFFSET_POLICIES = (OFFSET_SAME_DAY_AFTER, OFFSET_ONE_DAY_BEFORE, OFFSET_ONE_DAY_AFTER)
_OFFSET_ALIASES = {
    "same-day-after": OFFSET_SAME_DAY_AFTER,
    "one-day-before": OFFSET_ONE_DAY_BEFORE,
    "1-day-before": OFFSET_ONE_DAY_BEFORE,
    "one_day_before": OFFSET_ONE_DAY_BEFORE,
    "one-day-after": OFFSET_ONE_DAY_AFTER,
    "1-day-after": OFFSET_ONE_DAY_AFTER,
    "one_day_after": OFFSET_ONE_DAY_AFTER,
}

LINK_KIND_CALENDAR = "calendar"
LINK_KIND_TIMETABLE = "timetable"
LINK_KINDS = (LINK_KIND_CALENDAR, LINK_KIND_TIMETABLE)

TASK_TYPE_DEADLINE = "deadline"

STATE_NOT_STARTED = "not_started"
STATE_IN_PROGRESS = "in_progress"
STATE_COMPLETED = "completed"


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def parse_iso_date(value: str | date | None) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    return date.fromisoformat(text[:10])


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def normalize_offset_policy(value: str | None) -> str:
    text = str(value or "").strip().lower()
    text = _OFFSET_ALIASES.get(text, text)
    if text not in OFFSET_POLICIES:
        raise ValueError(f"Unknown offset policy: {value!r}")
    return text


def _parse_clock(value: Any, default: str) -> str:
    text = str(value or default).strip()
    try:
        hours, minutes = (int(part) for part in text.split(":", 1))
    except ValueError:
        return default
    if not (0 <= hours < 24 and 0 <= minutes < 60):
        return default
    return f"{hours:02d}:{minutes:02d}"


@dataclass
class ProviderConfig:
    base_url: str = GOOGLE_CALENDAR_BASE_URL
    access_token: str = ""
    timeout_seconds: int = 60
    page_size: int = 250

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ProviderConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", GOOGLE_CALENDAR_BASE_URL)).strip().rstrip("/")
            or GOOGLE_CALENDAR_BASE_URL,
            access_token=str(data.get("access_token", "")).strip(),
            timeout_seconds=max(1, int(data.get("timeout_seconds", 60))),
            page_size=min(2500, max(1, int(data.get("page_size", 250)))),
        )


@dataclass
class SyncConfig:
    lookback_days: int = 365
    lookahead_days: int = 730
    interval_seconds: int = 300

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            lookback_days=max(1, int(data.get("lookback_days", 365))),
            lookahead_days=max(1, int(data.get("lookahead_days", 730))),
            interval_seconds=max(30, int(data.get("interval_seconds", 300))),
        )


@dataclass
class DeadlineConfig:
    timezone: str = "UTC"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "DeadlineConfig":
        data = data or {}
        return cls(timezone=str(data.get("timezone", "UTC")).strip() or "UTC")


@dataclass
class LoggingConfig:
    level: str = "INFO"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LoggingConfig":
        data = data or {}
        level = str(data.get("level", "INFO")).strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            level = "INFO"
        return cls(level=level)


@dataclass
class AppConfig:
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    deadlines: DeadlineConfig = field(default_factory=DeadlineConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            provider=ProviderConfig.from_dict(data.get("provider")),
            sync=SyncConfig.from_dict(data.get("sync")),
            deadlines=DeadlineConfig.from_dict(data.get("deadlines")),
            logging=LoggingConfig.from_dict(data.get("logging")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass
class CalendarInfo:
    calendar_id: str
    name: str
    color: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class LocalEvent:
    user_id: str
    calendar_id: str
    external_id: str
    title: str = ""
    start: datetime | None = None
    end: datetime | None = None
    all_day: bool = False
    tzid: str = ""
    recurrence_rule: str = ""
    ical_data: str = ""
    description: str = ""
    location: str = ""
    color: str = ""
    etag: str = ""
    sync_status: str = "synced"
    last_synced_at: datetime | None = None
    id: str = ""

    @property
    def uid(self) -> str:
        return f"{self.external_id}@google.com"

    @property
    def identity(self) -> tuple[str, str, str]:
        return (self.user_id, self.calendar_id, self.external_id)

    def with_updates(self, **kwargs: Any) -> "LocalEvent":
        return replace(self, **kwargs)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["uid"] = self.uid
        payload["start"] = serialize_datetime(self.start)
        payload["end"] = serialize_datetime(self.end)
        payload["last_synced_at"] = serialize_datetime(self.last_synced_at)
        return payload


@dataclass
class SyncCursor:
    token: str
    page_token: str = ""


@dataclass
class CalendarSync:
    user_id: str
    calendar_id: str
    name: str = ""
    color: str = ""
    sync_enabled: bool = True
    cursor: SyncCursor | None = None
    last_sync_at: datetime | None = None
    last_error: str = ""
    error_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "calendar_id": self.calendar_id,
            "name": self.name,
            "color": self.color,
            "sync_enabled": self.sync_enabled,
            "has_cursor": self.cursor is not None,
            "last_sync_at": serialize_datetime(self.last_sync_at),
            "last_error": self.last_error,
            "error_count": self.error_count,
        }


@dataclass
class ExceptionRange:
    start: date
    end: date

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end

    def to_dict(self) -> dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


@dataclass
class TimetableConfig:
    day_start_time: str = "09:00"
    lunch_start_time: str = "12:00"
    lunch_end_time: str = "13:00"
    break_minutes: int = 10
    cell_minutes: int = 50
    timezone: str = "UTC"
    exception_ranges: list[ExceptionRange] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "TimetableConfig":
        data = data or {}
        ranges: list[ExceptionRange] = []
        for item in data.get("exception_ranges", []) or []:
            if not isinstance(item, dict):
                continue
            start = parse_iso_date(item.get("start"))
            end = parse_iso_date(item.get("end")) or start
            if start is None or end is None:
                continue
            if end < start:
                start, end = end, start
            ranges.append(ExceptionRange(start=start, end=end))
        ranges.sort(key=lambda item: (item.start, item.end))
        return cls(
            day_start_time=_parse_clock(data.get("day_start_time"), "09:00"),
            lunch_start_time=_parse_clock(data.get("lunch_start_time"), "12:00"),
            lunch_end_time=_parse_clock(data.get("lunch_end_time"), "13:00"),
            break_minutes=max(0, int(data.get("break_minutes", 10))),
            cell_minutes=max(1, int(data.get("cell_minutes", 50))),
            timezone=str(data.get("timezone", "UTC")).strip() or "UTC",
            exception_ranges=ranges,
        )

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["exception_ranges"] = [item.to_dict() for item in self.exception_ranges]
        return payload

    def in_exception_range(self, day: date) -> bool:
        return any(item.contains(day) for item in self.exception_ranges)


@dataclass
class TimeBlock:
    id: str
    user_id: str
    day_of_week: int
    slot_index: int
    title: str = ""
    config: TimetableConfig = field(default_factory=TimetableConfig)


@dataclass
class Occurrence:
    start: datetime
    end: datetime
    all_day: bool = False
    skipped: list[datetime] = field(default_factory=list)


@dataclass
class EventLink:
    kind: str
    definition_id: str
    offset: str
    tracked_occurrence_start: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "definition_id": self.definition_id,
            "offset": self.offset,
            "tracked_occurrence_start": serialize_datetime(self.tracked_occurrence_start),
        }


@dataclass
class TaskPriorState:
    """Snapshot of the task fields an advance rewrites, used to undo it."""

    deadline: datetime | None = None
    tracked_occurrence_start: datetime | None = None
    suggestion_available_from: datetime | None = None
    completion_state: str = STATE_NOT_STARTED
    accepted_slots: list[str] = field(default_factory=list)
    rejected_today: bool = False
    last_completed_day: str = ""
    actual_durations: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["deadline"] = serialize_datetime(self.deadline)
        payload["tracked_occurrence_start"] = serialize_datetime(self.tracked_occurrence_start)
        payload["suggestion_available_from"] = serialize_datetime(self.suggestion_available_from)
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "TaskPriorState":
        data = data or {}
        return cls(
            deadline=parse_iso_datetime(data.get("deadline")),
            tracked_occurrence_start=parse_iso_datetime(data.get("tracked_occurrence_start")),
            suggestion_available_from=parse_iso_datetime(data.get("suggestion_available_from")),
            completion_state=str(data.get("completion_state") or STATE_NOT_STARTED),
            accepted_slots=[str(x) for x in data.get("accepted_slots", []) or []],
            rejected_today=bool(data.get("rejected_today", False)),
            last_completed_day=str(data.get("last_completed_day") or ""),
            actual_durations=[int(x) for x in data.get("actual_durations", []) or []],
        )


@dataclass
class LinkedTask:
    id: str
    user_id: str
    title: str = ""
    task_type: str = TASK_TYPE_DEADLINE
    deadline: datetime | None = None
    completion_state: str = STATE_NOT_STARTED
    link: EventLink | None = None
    suggestion_available_from: datetime | None = None
    accepted_slots: list[str] = field(default_factory=list)
    rejected_today: bool = False
    last_completed_day: str = ""
    actual_durations: list[int] = field(default_factory=list)
    prior_state: TaskPriorState | None = None

    @property
    def is_completed(self) -> bool:
        return self.completion_state == STATE_COMPLETED

    def snapshot(self) -> TaskPriorState:
        return TaskPriorState(
            deadline=self.deadline,
            tracked_occurrence_start=self.link.tracked_occurrence_start if self.link else None,
            suggestion_available_from=self.suggestion_available_from,
            completion_state=self.completion_state,
            accepted_slots=list(self.accepted_slots),
            rejected_today=self.rejected_today,
            last_completed_day=self.last_completed_day,
            actual_durations=list(self.actual_durations),
        )

    def with_updates(self, **kwargs: Any) -> "LinkedTask":
        return replace(self, **kwargs)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "task_type": self.task_type,
            "deadline": serialize_datetime(self.deadline),
            "completion_state": self.completion_state,
            "link": self.link.to_dict() if self.link else None,
            "suggestion_available_from": serialize_datetime(self.suggestion_available_from),
            "accepted_slots": list(self.accepted_slots),
            "rejected_today": self.rejected_today,
            "last_completed_day": self.last_completed_day,
            "actual_durations": list(self.actual_durations),
            "has_prior_state": self.prior_state is not None,
        }


@dataclass
class SyncResult:
    status: str
    mode: str
    created: int = 0
    updated: int = 0
    deleted: int = 0
    errors: list[str] = field(default_factory=list)
    next_cursor: str | None = None
    fell_back_to_full: bool = False
    duration_ms: int = 0
    message: str = ""
    run_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "mode": self.mode,
            "created": self.created,
            "updated": self.updated,
            "deleted": self.deleted,
            "errors": list(self.errors),
            "has_next_cursor": self.next_cursor is not None,
            "fell_back_to_full": self.fell_back_to_full,
            "duration_ms": self.duration_ms,
            "message": self.message,
            "run_at": serialize_datetime(self.run_at),
        }


@dataclass
class AdvanceResult:
    task_id: str
    advanced: bool
    new_deadline: datetime | None = None
    new_tracked_occurrence: datetime | None = None
    new_suggestion_available_from: datetime | None = None
    orphaned: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "advanced": self.advanced,
            "new_deadline": serialize_datetime(self.new_deadline),
            "new_tracked_occurrence": serialize_datetime(self.new_tracked_occurrence),
            "new_suggestion_available_from": serialize_datetime(self.new_suggestion_available_from),
            "orphaned": self.orphaned,
        }


@dataclass
class RecalculateResult:
    kind: str
    definition_id: str
    updated: int = 0
    orphaned_task_ids: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def orphaned(self) -> bool:
        return bool(self.orphaned_task_ids)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "definition_id": self.definition_id,
            "updated": self.updated,
            "orphaned": self.orphaned,
            "orphaned_task_ids": list(self.orphaned_task_ids),
            "errors": list(self.errors),
        }


def day_bounds(day: date, tz: Any) -> tuple[datetime, datetime]:
    start = datetime.combine(day, time.min, tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz) - timedelta(microseconds=1)
    return start, end
