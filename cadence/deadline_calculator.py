from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from cadence.models import (
    OFFSET_ONE_DAY_AFTER,
    OFFSET_ONE_DAY_BEFORE,
    OFFSET_SAME_DAY_AFTER,
    day_bounds,
    normalize_offset_policy,
)


class DeadlineCalculator:
    """Map an occurrence window to a deadline and a suggestion-eligibility instant.

    "End of day D" always means the last microsecond of D in the calculator's
    timezone. All-day occurrences are stored as UTC midnights, so their
    calendar day is read in UTC regardless of the configured zone.
    """

    def __init__(self, timezone_name: str = "UTC") -> None:
        try:
            self.zone: Any = ZoneInfo(timezone_name) if timezone_name else timezone.utc
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown deadline timezone: {timezone_name!r}") from exc

    def _day_of(self, instant: datetime, all_day: bool) -> tuple[date, Any]:
        if all_day:
            return instant.astimezone(timezone.utc).date(), timezone.utc
        return instant.astimezone(self.zone).date(), self.zone

    def _end_of_day(self, day: date, zone: Any) -> datetime:
        return day_bounds(day, zone)[1].astimezone(timezone.utc)

    def _start_of_day(self, day: date, zone: Any) -> datetime:
        return day_bounds(day, zone)[0].astimezone(timezone.utc)

    def deadline(
        self,
        occ_start: datetime,
        occ_end: datetime,
        policy: str,
        *,
        all_day: bool = False,
    ) -> datetime:
        policy = normalize_offset_policy(policy)
        if policy == OFFSET_SAME_DAY_AFTER:
            day, zone = self._day_of(occ_end, all_day)
            return self._end_of_day(day, zone)
        if policy == OFFSET_ONE_DAY_BEFORE:
            day, zone = self._day_of(occ_start, all_day)
            return self._end_of_day(day - timedelta(days=1), zone)
        day, zone = self._day_of(occ_end, all_day)
        return self._end_of_day(day + timedelta(days=1), zone)

    def suggestion_available_from(
        self,
        occ_end: datetime,
        policy: str,
        *,
        all_day: bool = False,
    ) -> datetime | None:
        """``None`` means the suggestion is eligible immediately."""
        policy = normalize_offset_policy(policy)
        if policy == OFFSET_ONE_DAY_BEFORE:
            return None
        if policy == OFFSET_SAME_DAY_AFTER:
            return occ_end.astimezone(timezone.utc)
        if policy == OFFSET_ONE_DAY_AFTER:
            day, zone = self._day_of(occ_end, all_day)
            return self._start_of_day(day + timedelta(days=1), zone)
        raise ValueError(f"Unknown offset policy: {policy!r}")
