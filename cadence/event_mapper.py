"""Translate provider event payloads into local events.

The provider shape (a loosely typed dict with many optional fields) is
resolved exactly once here into a :class:`MappedEvent` whose ``kind`` is one of
``timed``, ``all_day`` or ``cancelled``. Nothing downstream reads the raw
payload.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from cadence.models import LocalEvent, utc_now

logger = logging.getLogger(__name__)

KIND_TIMED = "timed"
KIND_ALL_DAY = "all_day"
KIND_CANCELLED = "cancelled"

# Google Calendar event palette (colorId 1..11).
EVENT_COLORS = {
    "1": "#a4bdfc",
    "2": "#7ae7bf",
    "3": "#dbadff",
    "4": "#ff887c",
    "5": "#fbd75b",
    "6": "#ffb878",
    "7": "#46d6db",
    "8": "#e1e1e1",
    "9": "#5484ed",
    "10": "#51b749",
    "11": "#dc2127",
}


@dataclass
class MappedEvent:
    kind: str
    external_id: str
    calendar_id: str
    etag: str = ""
    title: str = ""
    start: datetime | None = None
    end: datetime | None = None
    tzid: str = ""
    recurrence_rule: str = ""
    ical_data: str = ""
    description: str = ""
    location: str = ""
    color: str = ""

    @property
    def is_cancelled(self) -> bool:
        return self.kind == KIND_CANCELLED

    @property
    def is_all_day(self) -> bool:
        return self.kind == KIND_ALL_DAY

    def to_local_event(self, user_id: str, synced_at: datetime | None = None) -> LocalEvent:
        if self.is_cancelled:
            raise ValueError("Cancelled events have no local representation.")
        return LocalEvent(
            user_id=user_id,
            calendar_id=self.calendar_id,
            external_id=self.external_id,
            title=self.title,
            start=self.start,
            end=self.end,
            all_day=self.is_all_day,
            tzid=self.tzid,
            recurrence_rule=self.recurrence_rule,
            ical_data=self.ical_data,
            description=self.description,
            location=self.location,
            color=self.color,
            etag=self.etag,
            sync_status="synced",
            last_synced_at=synced_at or utc_now(),
        )


def color_for_id(color_id: Any) -> str:
    return EVENT_COLORS.get(str(color_id or "").strip(), "")


def escape_ical_text(text: str) -> str:
    return (
        text.replace("\\", "\\\\")
        .replace(";", "\\;")
        .replace(",", "\\,")
        .replace("\r\n", "\\n")
        .replace("\n", "\\n")
    )


def format_ical_datetime(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def _zone(tzid: str) -> Any:
    try:
        return ZoneInfo(tzid)
    except (ZoneInfoNotFoundError, ValueError):
        return timezone.utc


def _parse_timed(value: str, tzid: str) -> datetime:
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=_zone(tzid) if tzid else timezone.utc)
    return parsed.astimezone(timezone.utc)


def _parse_date_only(value: str) -> datetime:
    day = date.fromisoformat(str(value).strip()[:10])
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def _parse_times(payload: dict[str, Any]) -> tuple[str, datetime, datetime, str] | None:
    start_data = payload.get("start") or {}
    end_data = payload.get("end") or {}
    if not isinstance(start_data, dict):
        return None
    if not isinstance(end_data, dict):
        end_data = {}

    if start_data.get("date"):
        start = _parse_date_only(start_data["date"])
        end = start
        if end_data.get("date"):
            # Provider all-day end dates are exclusive; the local model is inclusive.
            end = _parse_date_only(end_data["date"]) - timedelta(days=1)
        return KIND_ALL_DAY, start, max(start, end), ""

    if start_data.get("dateTime"):
        tzid = str(start_data.get("timeZone") or "").strip()
        start = _parse_timed(start_data["dateTime"], tzid)
        end = start
        if end_data.get("dateTime"):
            end_tzid = str(end_data.get("timeZone") or tzid).strip()
            end = _parse_timed(end_data["dateTime"], end_tzid)
        return KIND_TIMED, start, max(start, end), tzid

    return None


def extract_recurrence_rule(payload: dict[str, Any]) -> str:
    for line in payload.get("recurrence") or []:
        text = str(line).strip()
        if text.upper().startswith("RRULE:"):
            return text[len("RRULE:") :]
    return ""


def build_ical_fragment(payload: dict[str, Any], kind: str, start: datetime, end: datetime) -> str:
    """Deterministic VEVENT text used for recurrence expansion and round trips.

    ``start`` and ``end`` are the already-parsed instants; the raw payload is
    only consulted for which DTEND form the provider sent.
    """
    event_id = str(payload.get("id") or "")
    end_data = payload.get("end") or {}
    if not isinstance(end_data, dict):
        end_data = {}
    lines = ["BEGIN:VEVENT", f"UID:{event_id}@google.com"]

    summary = payload.get("summary")
    if summary:
        lines.append(f"SUMMARY:{escape_ical_text(str(summary))}")

    if kind == KIND_ALL_DAY:
        lines.append(f"DTSTART;VALUE=DATE:{start.strftime('%Y%m%d')}")
        if end_data.get("date"):
            # Provider end dates are exclusive; the stored end is inclusive.
            lines.append(f"DTEND;VALUE=DATE:{(end + timedelta(days=1)).strftime('%Y%m%d')}")
    else:
        lines.append(f"DTSTART:{format_ical_datetime(start)}")
        if end_data.get("dateTime"):
            lines.append(f"DTEND:{format_ical_datetime(end)}")

    for line in payload.get("recurrence") or []:
        text = str(line).strip()
        if text.upper().startswith(("RRULE", "EXDATE")):
            lines.append(text)

    description = payload.get("description")
    if description:
        lines.append(f"DESCRIPTION:{escape_ical_text(str(description))}")
    location = payload.get("location")
    if location:
        lines.append(f"LOCATION:{escape_ical_text(str(location))}")

    lines.append("END:VEVENT")
    return "\r\n".join(lines)


def map_provider_event(payload: dict[str, Any], calendar_id: str) -> MappedEvent | None:
    """Map one provider event, or return ``None`` when it cannot be identified."""
    external_id = str(payload.get("id") or "").strip()
    if not external_id:
        return None
    etag = str(payload.get("etag") or "")

    if str(payload.get("status") or "").lower() == "cancelled":
        return MappedEvent(
            kind=KIND_CANCELLED,
            external_id=external_id,
            calendar_id=calendar_id,
            etag=etag,
        )

    title = str(payload.get("summary") or "").strip()
    if not title:
        return None

    try:
        times = _parse_times(payload)
    except ValueError as exc:
        logger.warning("Skipping event %s with unparseable times: %s", external_id, exc)
        return None
    if times is None:
        return None
    kind, start, end, tzid = times

    return MappedEvent(
        kind=kind,
        external_id=external_id,
        calendar_id=calendar_id,
        etag=etag,
        title=title,
        start=start,
        end=end,
        tzid=tzid,
        recurrence_rule=extract_recurrence_rule(payload),
        ical_data=build_ical_fragment(payload, kind, start, end),
        description=str(payload.get("description") or ""),
        location=str(payload.get("location") or ""),
        color=color_for_id(payload.get("colorId")),
    )
