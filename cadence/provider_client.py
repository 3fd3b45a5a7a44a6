from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from urllib.parse import quote

import requests

from cadence.errors import CursorExpired, ProviderError
from cadence.models import CalendarInfo, ProviderConfig, utc_now

logger = logging.getLogger(__name__)


def _rfc3339(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _error_message(response: Any) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return f"HTTP {response.status_code}: {error['message']}"
    text = str(getattr(response, "text", "") or "")
    return f"HTTP {response.status_code}: {text[:300]}"


@dataclass
class EventPage:
    events: list[dict[str, Any]] = field(default_factory=list)
    next_cursor: str | None = None
    next_page_token: str | None = None


class GoogleCalendarClient:
    """Thin, stateless wrapper over the Google Calendar v3 events endpoints.

    The client never retries and never stores cursors; callers own both. A
    provider ``410 Gone`` on a list call becomes :class:`CursorExpired`, a
    ``404`` on a single-event lookup becomes ``None`` and every other non-2xx
    status becomes :class:`ProviderError`.
    """

    def __init__(
        self,
        config: ProviderConfig,
        *,
        lookback_days: int = 365,
        lookahead_days: int = 730,
        session: requests.Session | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config
        self.lookback_days = lookback_days
        self.lookahead_days = lookahead_days
        self._session = session or requests.Session()
        self._clock = clock or utc_now

    def is_configured(self) -> bool:
        return bool(self.config.base_url and self.config.access_token)

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.config.access_token}",
            "Accept": "application/json",
        }

    def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        url = f"{self.config.base_url.rstrip('/')}{path}"
        try:
            return self._session.get(
                url,
                headers=self._headers(),
                params=params,
                timeout=self.config.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise ProviderError(f"Calendar request failed: {type(exc).__name__}: {exc}") from exc

    @staticmethod
    def _json_payload(response: Any) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderError(
                "Calendar API returned invalid JSON", status_code=response.status_code
            ) from exc
        if not isinstance(payload, dict):
            raise ProviderError(
                "Calendar API returned an unexpected payload shape", status_code=response.status_code
            )
        return payload

    def list_events(
        self,
        calendar_id: str,
        cursor: str | None = None,
        page_token: str | None = None,
    ) -> EventPage:
        params: dict[str, Any] = {
            "maxResults": self.config.page_size,
            "singleEvents": "false",
            "showDeleted": "true",
        }
        if cursor:
            params["syncToken"] = cursor
        else:
            now = self._clock()
            params["timeMin"] = _rfc3339(now - timedelta(days=self.lookback_days))
            params["timeMax"] = _rfc3339(now + timedelta(days=self.lookahead_days))
        if page_token:
            params["pageToken"] = page_token

        response = self._get(f"/calendars/{quote(calendar_id, safe='')}/events", params)
        if response.status_code == 410:
            logger.info("Sync cursor rejected for calendar %s", calendar_id)
            raise CursorExpired()
        if not 200 <= response.status_code < 300:
            raise ProviderError(_error_message(response), status_code=response.status_code)

        payload = self._json_payload(response)
        items = payload.get("items") or []
        return EventPage(
            events=[item for item in items if isinstance(item, dict)],
            next_cursor=payload.get("nextSyncToken") or None,
            next_page_token=payload.get("nextPageToken") or None,
        )

    def get_event(self, calendar_id: str, event_id: str) -> dict[str, Any] | None:
        path = f"/calendars/{quote(calendar_id, safe='')}/events/{quote(event_id, safe='')}"
        response = self._get(path)
        if response.status_code == 404:
            return None
        if not 200 <= response.status_code < 300:
            raise ProviderError(_error_message(response), status_code=response.status_code)
        return self._json_payload(response)

    def list_calendars(self) -> list[CalendarInfo]:
        calendars: list[CalendarInfo] = []
        page_token: str | None = None
        while True:
            params: dict[str, Any] = {"minAccessRole": "reader"}
            if page_token:
                params["pageToken"] = page_token
            response = self._get("/users/me/calendarList", params)
            if not 200 <= response.status_code < 300:
                raise ProviderError(_error_message(response), status_code=response.status_code)
            payload = self._json_payload(response)
            for item in payload.get("items") or []:
                if not isinstance(item, dict):
                    continue
                calendar_id = str(item.get("id") or "").strip()
                name = str(item.get("summary") or "").strip()
                if not calendar_id or not name:
                    continue
                calendars.append(
                    CalendarInfo(
                        calendar_id=calendar_id,
                        name=name,
                        color=str(item.get("backgroundColor") or ""),
                    )
                )
            page_token = payload.get("nextPageToken") or None
            if not page_token:
                return calendars
