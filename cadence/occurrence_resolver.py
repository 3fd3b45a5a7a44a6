"""Resolve the next concrete occurrence of a recurring definition.

Two definition kinds are supported: a synced :class:`LocalEvent` (optionally
carrying an RRULE and EXDATE lines in its round-trip fragment) and a weekly
:class:`TimeBlock` from the user's timetable. Results depend only on the
definition and the ``after`` instant, so re-resolving is always safe.
"""
from __future__ import annotations

import logging
import re
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil.rrule import rrulestr
from icalendar import Calendar as ICalendar

from cadence.models import LocalEvent, Occurrence, TimeBlock, TimetableConfig, utc_now

logger = logging.getLogger(__name__)

WEEKS_LOOKAHEAD = 52

UNTIL_PATTERN = re.compile(r"UNTIL=(\d{8})(T\d{6})?(Z)?", re.IGNORECASE)


def parse_clock_minutes(value: str) -> int:
    hours, minutes = (int(part) for part in value.split(":", 1))
    return hours * 60 + minutes


def slot_times(config: TimetableConfig, slot_index: int) -> tuple[int, int]:
    """Start and end of a timetable slot, in minutes from local midnight.

    Every earlier slot consumes one cell plus one break; a slot that would
    begin inside the lunch window starts at lunch end instead.
    """
    if slot_index < 0:
        raise ValueError(f"slot_index must be >= 0, got {slot_index}")
    lunch_start = parse_clock_minutes(config.lunch_start_time)
    lunch_end = parse_clock_minutes(config.lunch_end_time)
    current = parse_clock_minutes(config.day_start_time)
    for _ in range(slot_index):
        current += config.cell_minutes + config.break_minutes
        if lunch_start <= current < lunch_end:
            current = lunch_end
    if lunch_start <= current < lunch_end:
        current = lunch_end
    return current, current + config.cell_minutes


def _zone(name: str) -> Any:
    if not name:
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r, falling back to UTC", name)
        return timezone.utc


def _at_minutes(day: date, minutes: int, zone: Any) -> datetime:
    return datetime.combine(day, time.min, tzinfo=zone) + timedelta(minutes=minutes)


def _normalize_until(rule: str, aware: bool) -> str:
    # dateutil requires UNTIL to be aware exactly when DTSTART is.
    def _replace(match: re.Match[str]) -> str:
        day, clock = match.group(1), match.group(2)
        if aware:
            return f"UNTIL={day}{clock or 'T235959'}Z"
        return f"UNTIL={day}{clock or ''}"

    return UNTIL_PATTERN.sub(_replace, rule)


def _first_vevent(calendar_obj: ICalendar) -> Any:
    for component in calendar_obj.walk():
        if component.name == "VEVENT":
            return component
    return None


def exdates_from_fragment(ical_data: str) -> list[date | datetime]:
    if not ical_data or "EXDATE" not in ical_data.upper():
        return []
    text = ical_data
    if "BEGIN:VCALENDAR" not in text:
        text = f"BEGIN:VCALENDAR\r\nVERSION:2.0\r\n{ical_data}\r\nEND:VCALENDAR"
    try:
        vevent = _first_vevent(ICalendar.from_ical(text))
    except ValueError as exc:
        logger.warning("Ignoring unparseable round-trip fragment: %s", exc)
        return []
    if vevent is None:
        return []
    raw = vevent.get("EXDATE")
    if raw is None:
        return []
    values: list[date | datetime] = []
    for item in raw if isinstance(raw, list) else [raw]:
        for entry in getattr(item, "dts", []):
            values.append(entry.dt)
    return values


def _exdate_for_all_day(value: date | datetime) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return datetime.combine(value.date(), time.min)
    return datetime.combine(value, time.min)


def _exdate_for_timed(value: date | datetime, dtstart: datetime) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    return datetime.combine(value, dtstart.time(), tzinfo=dtstart.tzinfo)


class OccurrenceResolver:
    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or utc_now

    def next_occurrence(
        self,
        definition: LocalEvent | TimeBlock,
        after: datetime | None = None,
    ) -> Occurrence | None:
        """Return the first occurrence starting strictly after ``after`` (default: now)."""
        pivot = after or self._clock()
        if pivot.tzinfo is None:
            pivot = pivot.replace(tzinfo=timezone.utc)
        if isinstance(definition, TimeBlock):
            return self._next_time_block(definition, pivot)
        if isinstance(definition, LocalEvent):
            return self._next_event(definition, pivot)
        raise TypeError(f"Unsupported definition type: {type(definition).__name__}")

    def _next_event(self, event: LocalEvent, after: datetime) -> Occurrence | None:
        if event.start is None:
            return None
        end = event.end or event.start
        duration = max(timedelta(0), end - event.start)

        if not event.recurrence_rule:
            if event.start > after:
                return Occurrence(start=event.start, end=end, all_day=event.all_day)
            return None

        if event.all_day:
            # All-day instants are UTC midnights; expand on naive dates.
            dtstart = event.start.astimezone(timezone.utc).replace(tzinfo=None)
            pivot: datetime = after.astimezone(timezone.utc).replace(tzinfo=None)
            exdates = [_exdate_for_all_day(value) for value in exdates_from_fragment(event.ical_data)]
        else:
            dtstart = event.start.astimezone(_zone(event.tzid))
            pivot = after
            exdates = [_exdate_for_timed(value, dtstart) for value in exdates_from_fragment(event.ical_data)]

        try:
            rules = rrulestr(
                f"RRULE:{_normalize_until(event.recurrence_rule, aware=not event.all_day)}",
                dtstart=dtstart,
                forceset=True,
            )
        except (ValueError, TypeError) as exc:
            logger.warning("Cannot expand recurrence for event %s: %s", event.external_id or event.id, exc)
            return None
        for value in exdates:
            rules.exdate(value)

        found = rules.after(pivot, inc=False)
        if found is None:
            return None
        skipped = sorted(value for value in exdates if pivot < value < found)

        if event.all_day:
            start = found.replace(tzinfo=timezone.utc)
            return Occurrence(
                start=start,
                end=start + duration,
                all_day=True,
                skipped=[value.replace(tzinfo=timezone.utc) for value in skipped],
            )
        start = found.astimezone(timezone.utc)
        return Occurrence(
            start=start,
            end=start + duration,
            skipped=[value.astimezone(timezone.utc) for value in skipped],
        )

    def _next_time_block(self, block: TimeBlock, after: datetime) -> Occurrence | None:
        if not 0 <= block.day_of_week <= 6:
            raise ValueError(f"day_of_week must be within 0..6, got {block.day_of_week}")
        config = block.config
        zone = _zone(config.timezone)
        start_minutes, end_minutes = slot_times(config, block.slot_index)

        local_day = after.astimezone(zone).date()
        candidate = local_day + timedelta(days=(block.day_of_week - local_day.weekday()) % 7)
        if _at_minutes(candidate, start_minutes, zone) <= after:
            candidate += timedelta(days=7)

        skipped: list[datetime] = []
        for _ in range(WEEKS_LOOKAHEAD):
            slot_start = _at_minutes(candidate, start_minutes, zone).astimezone(timezone.utc)
            if not config.in_exception_range(candidate):
                slot_end = _at_minutes(candidate, end_minutes, zone).astimezone(timezone.utc)
                return Occurrence(start=slot_start, end=slot_end, skipped=skipped)
            skipped.append(slot_start)
            candidate += timedelta(days=7)
        logger.info("No time-block occurrence for %s within %d weeks", block.id, WEEKS_LOOKAHEAD)
        return None
