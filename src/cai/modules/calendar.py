"""Calendar provider contract and the Google Calendar implementation.

This module defines:
- ``CalendarConfig``: validated provider config with sensible defaults
- ``CalendarProvider``: the capability the scheduler depends on
  (list, create, delete)
- ``GoogleCalendarProvider``: Google Calendar v3 over ``httpx``
"""

from __future__ import annotations

import abc
import asyncio
import logging
import re
from datetime import UTC, date, datetime
from typing import TYPE_CHECKING, Any
from urllib.parse import quote
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx
from pydantic import BaseModel, ValidationInfo, field_validator

from cai.core.events import (
    MANAGED_PRIVATE_KEY,
    AllDayEvent,
    AttendeeInfo,
    ManagedEventCreate,
    TimedEvent,
)

if TYPE_CHECKING:
    from cai.google_credentials import TokenSource

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"

# Retry on 429 Too Many Requests and 503 Service Unavailable with exponential backoff.
RATE_LIMIT_RETRY_STATUS_CODES = {429, 503}
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0

GOOGLE_MAX_PAGE_SIZE = 2500


class CalendarError(RuntimeError):
    """Base error raised by calendar provider helpers."""


class CalendarAuthError(CalendarError):
    """Raised when no usable credential is available for the provider."""


class CalendarCredentialError(CalendarAuthError):
    """Raised when Google credential JSON is missing or invalid."""


class CalendarTokenRefreshError(CalendarAuthError):
    """Raised when refresh-token exchange fails."""


class CalendarRequestError(CalendarError):
    """Raised when a Google Calendar API request fails."""

    def __init__(self, *, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Google Calendar API request failed ({status_code}): {message}")


def _safe_google_error_message(response: httpx.Response) -> str:
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


def redact_credential_values(message: str) -> str:
    """Redact token and secret values from an error message before logging it."""
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|token)\s*=\s*([^\s,;]+)",
        r"\1=[REDACTED]",
        message,
    )
    redacted = re.sub(
        r"""(?i)(['"]?(?:client_secret|refresh_token|access_token|token)['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    redacted = re.sub(r"(?i)\bBearer\s+[A-Za-z0-9._~+/=-]+", "Bearer [REDACTED]", redacted)
    return redacted


def _google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _parse_google_datetime(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"Google Calendar returned an invalid dateTime: {value}") from exc
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def _coerce_zoneinfo(timezone: str) -> ZoneInfo | None:
    try:
        return ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        return None


def _normalize_optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def _extract_google_attendees(payload: Any) -> list[AttendeeInfo]:
    if not isinstance(payload, list):
        return []

    attendees: list[AttendeeInfo] = []
    for entry in payload:
        if not isinstance(entry, dict):
            continue
        email = _normalize_optional_text(entry.get("email"))
        if email is None:
            continue
        attendees.append(
            AttendeeInfo(
                email=email,
                response_status=_normalize_optional_text(entry.get("responseStatus")),
                self_=entry.get("self") is True,
            )
        )
    return attendees


def _extract_google_recurrence(payload: Any) -> list[str]:
    if not isinstance(payload, list):
        return []
    return [entry.strip() for entry in payload if isinstance(entry, str) and entry.strip()]


def _extract_managed_flag(payload: Any) -> bool:
    if not isinstance(payload, dict):
        return False
    private_payload = payload.get("private")
    if not isinstance(private_payload, dict):
        return False
    raw = private_payload.get(MANAGED_PRIVATE_KEY)
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, str):
        return raw.strip().lower() == "true"
    return False


def _google_event_to_provider_event(payload: dict[str, Any]) -> TimedEvent | AllDayEvent | None:
    """Parse one Google event payload into the tagged event union.

    Cancelled events return ``None``.  Events whose ``start`` carries a
    ``dateTime`` become :class:`TimedEvent`; date-only events become
    :class:`AllDayEvent`.
    """
    status_raw = payload.get("status")
    if isinstance(status_raw, str) and status_raw.lower() == "cancelled":
        return None

    event_id = _normalize_optional_text(payload.get("id"))
    if event_id is None:
        raise ValueError("Google Calendar event payload is missing a non-empty id")

    start_payload = payload.get("start")
    end_payload = payload.get("end")
    if not isinstance(start_payload, dict) or not isinstance(end_payload, dict):
        raise ValueError(f"Google Calendar event '{event_id}' is missing start/end payloads")

    title = _normalize_optional_text(payload.get("summary")) or "Busy"

    start_raw = _normalize_optional_text(start_payload.get("dateTime"))
    if start_raw is None:
        start_date = _normalize_optional_text(start_payload.get("date"))
        end_date = _normalize_optional_text(end_payload.get("date")) or start_date
        if start_date is None or end_date is None:
            raise ValueError(f"Google Calendar event '{event_id}' has no start dateTime or date")
        return AllDayEvent(
            event_id=event_id,
            title=title,
            start_date=date.fromisoformat(start_date),
            end_date=date.fromisoformat(end_date),
        )

    end_raw = _normalize_optional_text(end_payload.get("dateTime"))
    if end_raw is None:
        raise ValueError(f"Google Calendar event '{event_id}' has a timed start but no end")

    return TimedEvent(
        event_id=event_id,
        title=title,
        start_at=_parse_google_datetime(start_raw),
        end_at=_parse_google_datetime(end_raw),
        attendees=_extract_google_attendees(payload.get("attendees")),
        recurrence=_extract_google_recurrence(payload.get("recurrence")),
        recurring_event_id=_normalize_optional_text(payload.get("recurringEventId")),
        color_id=_normalize_optional_text(payload.get("colorId")),
        managed_flag=_extract_managed_flag(payload.get("extendedProperties")),
    )


def _build_google_event_body(payload: ManagedEventCreate) -> dict[str, Any]:
    """Translate a managed-event payload into a Google Calendar API event body."""
    start: dict[str, str] = {"dateTime": _google_rfc3339(payload.start_at)}
    end: dict[str, str] = {"dateTime": _google_rfc3339(payload.end_at)}
    tz = _coerce_zoneinfo(payload.timezone) if payload.timezone else None
    if tz is not None:
        start = {"dateTime": payload.start_at.astimezone(tz).isoformat(), "timeZone": tz.key}
        end = {"dateTime": payload.end_at.astimezone(tz).isoformat(), "timeZone": tz.key}

    return {
        "summary": payload.summary,
        "start": start,
        "end": end,
        "colorId": payload.color_id,
        "transparency": "opaque",
        "extendedProperties": {"private": {MANAGED_PRIVATE_KEY: "true"}},
    }


class CalendarConfig(BaseModel):
    """Provider settings: which calendar, which zone, how many events per page."""

    provider: str = "google"
    calendar_id: str = "primary"
    timezone: str = "UTC"
    page_size: int = 250

    @field_validator("provider")
    @classmethod
    def _normalize_provider(cls, value: str) -> str:
        normalized = value.strip().lower()
        if not normalized:
            raise ValueError("provider must be a non-empty string")
        return normalized

    @field_validator("calendar_id", "timezone")
    @classmethod
    def _normalize_non_empty(cls, value: str, info: ValidationInfo) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{info.field_name} must be a non-empty string")
        return normalized

    @field_validator("page_size")
    @classmethod
    def _clamp_page_size(cls, value: int) -> int:
        if value < 1:
            raise ValueError("page_size must be at least 1")
        return min(value, GOOGLE_MAX_PAGE_SIZE)


class CalendarProvider(abc.ABC):
    """Calendar capability the scheduler depends on."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Provider identifier (e.g., ``google``)."""
        ...

    @abc.abstractmethod
    async def list_events(
        self,
        *,
        time_min: datetime,
        time_max: datetime,
    ) -> list[TimedEvent | AllDayEvent]:
        """Return every non-cancelled event overlapping ``[time_min, time_max)``."""
        ...

    @abc.abstractmethod
    async def create_event(self, payload: ManagedEventCreate) -> TimedEvent:
        """Create a managed event and return the provider's view of it."""
        ...

    @abc.abstractmethod
    async def delete_event(self, event_id: str) -> None:
        """Delete an event; deleting an already-deleted event is not an error."""
        ...

    async def shutdown(self) -> None:
        """Release provider resources (HTTP clients, etc.)."""
        return None


class GoogleCalendarProvider(CalendarProvider):
    """Google provider with bearer-token auth, pagination and rate-limit retry."""

    def __init__(
        self,
        config: CalendarConfig,
        token_source: TokenSource,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config
        self._token_source = token_source
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)

    @property
    def name(self) -> str:
        return "google"

    @property
    def _events_path(self) -> str:
        return f"/calendars/{quote(self._config.calendar_id, safe='')}/events"

    async def _request_google_json(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        response = await self._request_with_bearer(
            method=method,
            path=path,
            params=params,
            json_body=json_body,
        )

        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarRequestError(
                status_code=response.status_code,
                message=_safe_google_error_message(response),
            )

        if response.status_code == 204:
            return {}

        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarError(
                "Google Calendar API returned invalid JSON for a successful response"
            ) from exc

        if not isinstance(payload, dict):
            raise CalendarError("Google Calendar API returned an unexpected JSON payload shape")
        return payload

    async def _request_with_bearer(
        self,
        *,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        url = f"{GOOGLE_CALENDAR_API_BASE_URL}{path}"

        response = await self._request_once(
            method=method, url=url, params=params, json_body=json_body, force_refresh=False
        )

        if response.status_code == 401 and self._token_source.refreshable:
            response = await self._request_once(
                method=method, url=url, params=params, json_body=json_body, force_refresh=True
            )

        if response.status_code == 401:
            raise CalendarAuthError(
                "Google Calendar rejected the access token: "
                f"{_safe_google_error_message(response)}"
            )

        retry = 0
        while (
            response.status_code in RATE_LIMIT_RETRY_STATUS_CODES and retry < RATE_LIMIT_MAX_RETRIES
        ):
            backoff = RATE_LIMIT_BASE_BACKOFF_SECONDS * (2**retry)
            if response.status_code == 429:
                retry_after_header = response.headers.get("Retry-After")
                if retry_after_header is not None:
                    try:
                        backoff = float(retry_after_header)
                    except ValueError:
                        pass
            logger.warning(
                "Calendar API rate-limited (status=%d), retrying in %.1fs (attempt %d/%d)",
                response.status_code,
                backoff,
                retry + 1,
                RATE_LIMIT_MAX_RETRIES,
            )
            await asyncio.sleep(backoff)
            response = await self._request_once(
                method=method, url=url, params=params, json_body=json_body, force_refresh=False
            )
            retry += 1

        return response

    async def _request_once(
        self,
        *,
        method: str,
        url: str,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
        force_refresh: bool,
    ) -> httpx.Response:
        access_token = await self._token_source.get_access_token(force_refresh=force_refresh)
        headers = {"Authorization": f"Bearer {access_token}"}
        try:
            return await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=headers,
            )
        except httpx.HTTPError as exc:
            raise CalendarError(
                f"Google Calendar request failed: {redact_credential_values(str(exc))}"
            ) from exc

    async def list_events(
        self,
        *,
        time_min: datetime,
        time_max: datetime,
    ) -> list[TimedEvent | AllDayEvent]:
        params: dict[str, Any] = {
            "singleEvents": True,
            "showDeleted": False,
            "orderBy": "startTime",
            "maxResults": self._config.page_size,
            "timeMin": _google_rfc3339(time_min),
            "timeMax": _google_rfc3339(time_max),
        }

        events: list[TimedEvent | AllDayEvent] = []
        page_token: str | None = None
        while True:
            page_params = dict(params)
            if page_token is not None:
                page_params["pageToken"] = page_token
            payload = await self._request_google_json("GET", self._events_path, params=page_params)

            items = payload.get("items")
            if not isinstance(items, list):
                raise CalendarError("Google Calendar list_events response missing items array")
            for item in items:
                if not isinstance(item, dict):
                    continue
                try:
                    event = _google_event_to_provider_event(item)
                except ValueError as exc:
                    logger.warning("Skipping malformed calendar event: %s", exc)
                    continue
                if event is not None:
                    events.append(event)

            page_token = _normalize_optional_text(payload.get("nextPageToken"))
            if page_token is None:
                return events

    async def create_event(self, payload: ManagedEventCreate) -> TimedEvent:
        response_payload = await self._request_google_json(
            "POST",
            self._events_path,
            json_body=_build_google_event_body(payload),
        )
        event = _google_event_to_provider_event(response_payload)
        if not isinstance(event, TimedEvent):
            raise CalendarRequestError(
                status_code=200,
                message="Google Calendar did not return a timed event after create",
            )
        return event

    async def delete_event(self, event_id: str) -> None:
        normalized_event_id = event_id.strip()
        if not normalized_event_id:
            raise ValueError("event_id must be a non-empty string")

        response = await self._request_with_bearer(
            method="DELETE",
            path=f"{self._events_path}/{quote(normalized_event_id, safe='')}",
        )

        # 404/410 means the event is already gone.
        if response.status_code in (404, 410):
            logger.debug("delete_event: event '%s' already deleted", normalized_event_id)
            return

        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarRequestError(
                status_code=response.status_code,
                message=_safe_google_error_message(response),
            )

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
