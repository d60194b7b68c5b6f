"""HTTP collaborators: the integration status probe and the event fetcher.

Both talk to the host application's calendar endpoints with a shared
``httpx.AsyncClient``:

- ``GET {status_url}``  -> ``{"hasIntegration": bool}``
- ``GET {events_url}``  -> ``{"success": true, "events": [...]}`` or
  ``{"error": str}`` with a non-2xx status
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from calsync.sync.errors import (
    CalendarRequestError,
    CalendarResponseError,
    CalendarTransportError,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_RESULTS = 50
# Status payload keys, newest first.
_INTEGRATION_KEYS = ("hasIntegration", "hasGoogleAuth")


class EventTime(BaseModel):
    """Start or end boundary of an event as reported by the provider."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    date_time: str | None = Field(default=None, alias="dateTime")
    date: str | None = None
    time_zone: str | None = Field(default=None, alias="timeZone")

    def day(self) -> str | None:
        """ISO day (``YYYY-MM-DD``) this boundary falls on, if known."""
        if self.date_time:
            return self.date_time.split("T", 1)[0]
        return self.date


class CalendarEvent(BaseModel):
    """Canonical event shape returned by the events endpoint."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    summary: str = ""
    description: str | None = None
    start: EventTime
    end: EventTime
    location: str | None = None

    def to_payload(self) -> dict[str, Any]:
        """Serialize with the provider's field names."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


@dataclass(frozen=True)
class DateRange:
    start: date | datetime | str | None = None
    end: date | datetime | str | None = None

    @classmethod
    def for_days(cls, first: date, last: date) -> DateRange:
        """Whole days *first* through *last*.

        The provider treats ``end`` as an exclusive instant, so a bare date
        would drop the last day. The end is the last day at 23:59:59.
        """
        return cls(
            start=datetime.combine(first, time.min),
            end=datetime.combine(last, time(23, 59, 59)),
        )

    def query_params(self) -> dict[str, str]:
        params: dict[str, str] = {}
        if self.start is not None:
            params["start"] = _isoformat(self.start)
        if self.end is not None:
            params["end"] = _isoformat(self.end)
        return params


def _isoformat(value: date | datetime | str) -> str:
    if isinstance(value, str):
        return value
    return value.isoformat()


def _safe_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:200]
        if isinstance(error_payload, str) and error_payload.strip():
            return " ".join(error_payload.split())[:200]

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:200]
    return "Request failed without an error payload"


def _response_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


class ConnectionProbe:
    """Checks whether the calendar integration is authorized. Fails closed."""

    def __init__(self, http_client: httpx.AsyncClient, status_url: str) -> None:
        self._http_client = http_client
        self._status_url = status_url

    async def check(self) -> bool:
        try:
            response = await self._http_client.get(self._status_url)
        except httpx.HTTPError as exc:
            logger.warning("Calendar integration status check failed: %s", exc)
            return False
        except Exception:
            # A closed client or malformed URL still means "not connected".
            logger.exception("Calendar integration status check raised unexpectedly")
            return False

        if response.status_code < 200 or response.status_code >= 300:
            logger.warning(
                "Calendar integration status check returned %d: %s",
                response.status_code,
                _safe_error_message(response),
            )
            return False

        try:
            payload = response.json()
        except ValueError:
            logger.warning("Calendar integration status endpoint returned invalid JSON")
            return False

        if not isinstance(payload, dict):
            return False
        for key in _INTEGRATION_KEYS:
            if key in payload:
                return payload[key] is True
        return False


class EventFetcher:
    """Requests a window of events and normalizes them to ``CalendarEvent``."""

    def __init__(self, http_client: httpx.AsyncClient, events_url: str) -> None:
        self._http_client = http_client
        self._events_url = events_url

    @staticmethod
    def build_params(
        date_range: DateRange | None = None,
        today_only: bool = False,
        max_results: int = DEFAULT_MAX_RESULTS,
    ) -> dict[str, str]:
        if max_results < 1:
            raise ValueError("max_results must be at least 1")
        params: dict[str, str] = {}
        if today_only:
            params["todayOnly"] = "true"
        if date_range is not None:
            params.update(date_range.query_params())
        params["maxResults"] = str(max_results)
        return params

    async def fetch(
        self,
        date_range: DateRange | None = None,
        today_only: bool = False,
        max_results: int = DEFAULT_MAX_RESULTS,
    ) -> list[CalendarEvent]:
        params = self.build_params(date_range, today_only, max_results)
        try:
            response = await self._http_client.get(self._events_url, params=params)
        except httpx.TransportError as exc:
            raise CalendarTransportError(f"Calendar events request failed: {exc}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarRequestError(
                status_code=response.status_code,
                message=_safe_error_message(response),
                body=_response_body(response),
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarResponseError(
                "Calendar events endpoint returned invalid JSON for a successful response"
            ) from exc

        if not isinstance(payload, dict) or payload.get("success") is not True:
            raise CalendarResponseError("Calendar events endpoint did not report success")

        items = payload.get("events")
        if not isinstance(items, list):
            raise CalendarResponseError("Calendar events payload is missing an events list")

        events: list[CalendarEvent] = []
        for item in items:
            try:
                events.append(CalendarEvent.model_validate(item))
            except ValidationError as exc:
                logger.warning("Skipping malformed calendar event: %s", exc.errors()[:1])
        logger.debug("Fetched %d calendar event(s) (params=%s)", len(events), params)
        return events
