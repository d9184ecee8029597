"""Unit tests for the Google Calendar provider (cai.modules.calendar).

Covers:
- CalendarConfig validation
- list_events pagination and payload parsing (cancelled, malformed, all-day)
- create_event request body shape (color, time zone, managed marker)
- delete_event treating 404/410 as success
- 401 forced token refresh, and a final 401 surfacing as CalendarAuthError
- 429/503 retry with exponential backoff and Retry-After
- credential redaction in transport errors
"""

from __future__ import annotations

from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from pydantic import ValidationError

from cai.core.events import MANAGED_PRIVATE_KEY, AllDayEvent, ManagedEventCreate, TimedEvent
from cai.core.intervals import EventCategory, TimeInterval
from cai.google_credentials import StaticTokenSource
from cai.modules.calendar import (
    GOOGLE_CALENDAR_API_BASE_URL,
    CalendarAuthError,
    CalendarConfig,
    CalendarError,
    CalendarRequestError,
    GoogleCalendarProvider,
    redact_credential_values,
)
from tests._test_helpers import utc

pytestmark = pytest.mark.unit


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_http_response(
    status_code: int = 200,
    json_body: Any = None,
    headers: dict[str, str] | None = None,
) -> MagicMock:
    response = MagicMock(spec=httpx.Response)
    response.status_code = status_code
    response.json.return_value = json_body if json_body is not None else {}
    response.text = ""
    response.headers = headers or {}
    return response


def _google_event(event_id: str, start: str, end: str, **extra: Any) -> dict[str, Any]:
    return {
        "id": event_id,
        "summary": extra.pop("summary", "Busy"),
        "start": {"dateTime": start},
        "end": {"dateTime": end},
        **extra,
    }


class _RefreshableTokenSource:
    refreshable = True

    def __init__(self, *tokens: str) -> None:
        self.get_access_token = AsyncMock(side_effect=list(tokens))


@pytest.fixture
def mock_http_client() -> MagicMock:
    return MagicMock(spec=httpx.AsyncClient)


@pytest.fixture
def provider(mock_http_client: MagicMock) -> GoogleCalendarProvider:
    return GoogleCalendarProvider(
        CalendarConfig(calendar_id="team@example.com", timezone="Europe/Berlin"),
        StaticTokenSource("token-123"),
        http_client=mock_http_client,
    )


# ---------------------------------------------------------------------------
# CalendarConfig
# ---------------------------------------------------------------------------


class TestCalendarConfig:
    def test_defaults(self) -> None:
        config = CalendarConfig()
        assert config.provider == "google"
        assert config.calendar_id == "primary"
        assert config.timezone == "UTC"
        assert config.page_size == 250

    def test_normalizes_provider(self) -> None:
        assert CalendarConfig(provider="  Google ").provider == "google"

    def test_blank_calendar_id_rejected(self) -> None:
        with pytest.raises(ValidationError, match="calendar_id"):
            CalendarConfig(calendar_id="   ")

    def test_page_size_is_clamped(self) -> None:
        assert CalendarConfig(page_size=10_000).page_size == 2500

    def test_page_size_must_be_positive(self) -> None:
        with pytest.raises(ValidationError, match="page_size"):
            CalendarConfig(page_size=0)


# ---------------------------------------------------------------------------
# list_events
# ---------------------------------------------------------------------------


class TestListEvents:
    async def test_follows_pagination(
        self, provider: GoogleCalendarProvider, mock_http_client: MagicMock
    ) -> None:
        mock_http_client.request = AsyncMock(
            side_effect=[
                _make_http_response(
                    json_body={
                        "items": [
                            _google_event("a", "2026-10-19T09:00:00Z", "2026-10-19T10:00:00Z")
                        ],
                        "nextPageToken": "page-2",
                    }
                ),
                _make_http_response(
                    json_body={
                        "items": [
                            _google_event("b", "2026-10-20T09:00:00Z", "2026-10-20T10:00:00Z")
                        ]
                    }
                ),
            ]
        )

        events = await provider.list_events(
            time_min=utc(2026, 10, 19), time_max=utc(2026, 10, 26)
        )

        assert [event.event_id for event in events] == ["a", "b"]
        first_call, second_call = mock_http_client.request.call_args_list
        assert first_call.args == (
            "GET",
            f"{GOOGLE_CALENDAR_API_BASE_URL}/calendars/team%40example.com/events",
        )
        first_params = first_call.kwargs["params"]
        assert first_params["singleEvents"] is True
        assert first_params["orderBy"] == "startTime"
        assert first_params["timeMin"] == "2026-10-19T00:00:00Z"
        assert first_params["timeMax"] == "2026-10-26T00:00:00Z"
        assert "pageToken" not in first_params
        assert second_call.kwargs["params"]["pageToken"] == "page-2"
        assert first_call.kwargs["headers"] == {"Authorization": "Bearer token-123"}

    async def test_parses_timed_event_details(
        self, provider: GoogleCalendarProvider, mock_http_client: MagicMock
    ) -> None:
        item = _google_event(
            "evt-1",
            "2026-10-19T11:00:00+02:00",
            "2026-10-19T12:00:00+02:00",
            summary="Design review",
            attendees=[
                {"email": "me@example.com", "self": True, "responseStatus": "accepted"},
                {"email": "you@example.com"},
                {"displayName": "no email"},
            ],
            recurringEventId="series-1",
            extendedProperties={"private": {MANAGED_PRIVATE_KEY: "true"}},
        )
        mock_http_client.request = AsyncMock(
            return_value=_make_http_response(json_body={"items": [item]})
        )

        (event,) = await provider.list_events(
            time_min=utc(2026, 10, 19), time_max=utc(2026, 10, 20)
        )

        assert isinstance(event, TimedEvent)
        assert event.title == "Design review"
        assert event.start_at == utc(2026, 10, 19, 9)
        assert event.attendee_count == 2
        assert event.attendees[0].self_ is True
        assert event.is_recurring
        assert event.managed_flag is True

    async def test_skips_cancelled_and_malformed_events(
        self, provider: GoogleCalendarProvider, mock_http_client: MagicMock
    ) -> None:
        items = [
            _google_event(
                "x", "2026-10-19T09:00:00Z", "2026-10-19T10:00:00Z", status="cancelled"
            ),
            {"summary": "no id", "start": {"dateTime": "2026-10-19T09:00:00Z"}},
            {"id": "no-end", "start": {"dateTime": "2026-10-19T09:00:00Z"}, "end": {}},
            "not-a-dict",
            _google_event("ok", "2026-10-19T13:00:00Z", "2026-10-19T14:00:00Z"),
        ]
        mock_http_client.request = AsyncMock(
            return_value=_make_http_response(json_body={"items": items})
        )

        events = await provider.list_events(
            time_min=utc(2026, 10, 19), time_max=utc(2026, 10, 20)
        )

        assert [event.event_id for event in events] == ["ok"]

    async def test_all_day_events_are_tagged(
        self, provider: GoogleCalendarProvider, mock_http_client: MagicMock
    ) -> None:
        item = {
            "id": "holiday",
            "summary": "Holiday",
            "start": {"date": "2026-10-19"},
            "end": {"date": "2026-10-20"},
        }
        mock_http_client.request = AsyncMock(
            return_value=_make_http_response(json_body={"items": [item]})
        )

        (event,) = await provider.list_events(
            time_min=utc(2026, 10, 19), time_max=utc(2026, 10, 20)
        )

        assert isinstance(event, AllDayEvent)
        assert event.kind == "all_day"

    async def test_missing_items_array_raises(
        self, provider: GoogleCalendarProvider, mock_http_client: MagicMock
    ) -> None:
        mock_http_client.request = AsyncMock(return_value=_make_http_response(json_body={}))

        with pytest.raises(CalendarError, match="missing items"):
            await provider.list_events(time_min=utc(2026, 10, 19), time_max=utc(2026, 10, 20))

    async def test_error_status_raises_request_error(
        self, provider: GoogleCalendarProvider, mock_http_client: MagicMock
    ) -> None:
        mock_http_client.request = AsyncMock(
            return_value=_make_http_response(
                403, {"error": {"message": "Calendar usage limits exceeded."}}
            )
        )

        with pytest.raises(CalendarRequestError) as exc_info:
            await provider.list_events(time_min=utc(2026, 10, 19), time_max=utc(2026, 10, 20))

        assert exc_info.value.status_code == 403
        assert exc_info.value.message == "Calendar usage limits exceeded."


# ---------------------------------------------------------------------------
# create_event / delete_event
# ---------------------------------------------------------------------------


class TestCreateEvent:
    async def test_request_body_shape(
        self, provider: GoogleCalendarProvider, mock_http_client: MagicMock
    ) -> None:
        interval = TimeInterval(utc(2026, 10, 19, 9), utc(2026, 10, 19, 11))
        payload = ManagedEventCreate.for_category(
            EventCategory.focus, interval, timezone="Europe/Berlin"
        )
        mock_http_client.request = AsyncMock(
            return_value=_make_http_response(
                json_body=_google_event(
                    "new-1",
                    "2026-10-19T11:00:00+02:00",
                    "2026-10-19T13:00:00+02:00",
                    summary=payload.summary,
                    extendedProperties={"private": {MANAGED_PRIVATE_KEY: "true"}},
                )
            )
        )

        event = await provider.create_event(payload)

        assert event.event_id == "new-1"
        assert event.is_managed
        call = mock_http_client.request.call_args
        assert call.args[0] == "POST"
        assert call.kwargs["json"] == {
            "summary": "⚡ Focus Time [Cai]",
            "start": {"dateTime": "2026-10-19T11:00:00+02:00", "timeZone": "Europe/Berlin"},
            "end": {"dateTime": "2026-10-19T13:00:00+02:00", "timeZone": "Europe/Berlin"},
            "colorId": "1",
            "transparency": "opaque",
            "extendedProperties": {"private": {MANAGED_PRIVATE_KEY: "true"}},
        }

    async def test_without_timezone_uses_utc_timestamps(
        self, provider: GoogleCalendarProvider, mock_http_client: MagicMock
    ) -> None:
        interval = TimeInterval(utc(2026, 10, 19, 12), utc(2026, 10, 19, 13))
        payload = ManagedEventCreate.for_category(EventCategory.lunch, interval)
        mock_http_client.request = AsyncMock(
            return_value=_make_http_response(
                json_body=_google_event("new-2", "2026-10-19T12:00:00Z", "2026-10-19T13:00:00Z")
            )
        )

        await provider.create_event(payload)

        body = mock_http_client.request.call_args.kwargs["json"]
        assert body["start"] == {"dateTime": "2026-10-19T12:00:00Z"}
        assert body["colorId"] == "5"


class TestDeleteEvent:
    @pytest.mark.parametrize("status_code", [204, 404, 410])
    async def test_success_and_already_gone(
        self,
        provider: GoogleCalendarProvider,
        mock_http_client: MagicMock,
        status_code: int,
    ) -> None:
        mock_http_client.request = AsyncMock(return_value=_make_http_response(status_code))

        await provider.delete_event("evt/1")

        call = mock_http_client.request.call_args
        assert call.args[0] == "DELETE"
        assert call.args[1].endswith("/events/evt%2F1")

    async def test_server_error_raises(
        self, provider: GoogleCalendarProvider, mock_http_client: MagicMock
    ) -> None:
        mock_http_client.request = AsyncMock(
            return_value=_make_http_response(500, {"error": "backendError"})
        )

        with pytest.raises(CalendarRequestError, match="500"):
            await provider.delete_event("evt-1")

    async def test_blank_event_id_rejected(self, provider: GoogleCalendarProvider) -> None:
        with pytest.raises(ValueError, match="event_id"):
            await provider.delete_event("  ")


# ---------------------------------------------------------------------------
# Auth refresh, retries, redaction
# ---------------------------------------------------------------------------


class TestRequestResilience:
    async def test_401_forces_token_refresh_once(self, mock_http_client: MagicMock) -> None:
        tokens = _RefreshableTokenSource("stale", "fresh")
        provider = GoogleCalendarProvider(CalendarConfig(), tokens, http_client=mock_http_client)
        mock_http_client.request = AsyncMock(
            side_effect=[
                _make_http_response(401),
                _make_http_response(json_body={"items": []}),
            ]
        )

        assert await provider.list_events(
            time_min=utc(2026, 10, 19), time_max=utc(2026, 10, 20)
        ) == []

        assert tokens.get_access_token.await_args_list[1].kwargs == {"force_refresh": True}
        second_headers = mock_http_client.request.call_args_list[1].kwargs["headers"]
        assert second_headers == {"Authorization": "Bearer fresh"}

    async def test_401_with_static_token_raises_auth_error(
        self, provider: GoogleCalendarProvider, mock_http_client: MagicMock
    ) -> None:
        mock_http_client.request = AsyncMock(
            return_value=_make_http_response(
                401, json_body={"error": {"message": "Invalid Credentials"}}
            )
        )

        with pytest.raises(CalendarAuthError, match="Invalid Credentials"):
            await provider.list_events(time_min=utc(2026, 10, 19), time_max=utc(2026, 10, 20))

        assert mock_http_client.request.await_count == 1

    async def test_401_after_forced_refresh_raises_auth_error(
        self, mock_http_client: MagicMock
    ) -> None:
        tokens = _RefreshableTokenSource("stale", "still-stale")
        provider = GoogleCalendarProvider(CalendarConfig(), tokens, http_client=mock_http_client)
        mock_http_client.request = AsyncMock(return_value=_make_http_response(401))

        with pytest.raises(CalendarAuthError, match="rejected the access token"):
            await provider.list_events(time_min=utc(2026, 10, 19), time_max=utc(2026, 10, 20))

        assert mock_http_client.request.await_count == 2

    async def test_401_on_delete_raises_auth_error(
        self, provider: GoogleCalendarProvider, mock_http_client: MagicMock
    ) -> None:
        mock_http_client.request = AsyncMock(return_value=_make_http_response(401))

        with pytest.raises(CalendarAuthError):
            await provider.delete_event("evt-1")

    async def test_rate_limit_retries_with_backoff(
        self, provider: GoogleCalendarProvider, mock_http_client: MagicMock
    ) -> None:
        mock_http_client.request = AsyncMock(
            side_effect=[
                _make_http_response(429, headers={"Retry-After": "5"}),
                _make_http_response(503),
                _make_http_response(json_body={"items": []}),
            ]
        )

        with patch("cai.modules.calendar.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            await provider.list_events(time_min=utc(2026, 10, 19), time_max=utc(2026, 10, 20))

        assert [call.args[0] for call in mock_sleep.await_args_list] == [5.0, 2.0]
        assert mock_http_client.request.await_count == 3

    async def test_rate_limit_gives_up_after_max_retries(
        self, provider: GoogleCalendarProvider, mock_http_client: MagicMock
    ) -> None:
        mock_http_client.request = AsyncMock(return_value=_make_http_response(429))

        with patch("cai.modules.calendar.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            with pytest.raises(CalendarRequestError) as exc_info:
                await provider.list_events(
                    time_min=utc(2026, 10, 19), time_max=utc(2026, 10, 20)
                )

        assert exc_info.value.status_code == 429
        assert [call.args[0] for call in mock_sleep.await_args_list] == [1.0, 2.0, 4.0]
        assert mock_http_client.request.await_count == 4

    async def test_transport_error_is_redacted(
        self, provider: GoogleCalendarProvider, mock_http_client: MagicMock
    ) -> None:
        mock_http_client.request = AsyncMock(
            side_effect=httpx.ConnectError("connect failed access_token=abc123")
        )

        with pytest.raises(CalendarError) as exc_info:
            await provider.list_events(time_min=utc(2026, 10, 19), time_max=utc(2026, 10, 20))

        assert "abc123" not in str(exc_info.value)
        assert "access_token=[REDACTED]" in str(exc_info.value)

    async def test_shutdown_leaves_injected_client_open(
        self, provider: GoogleCalendarProvider, mock_http_client: MagicMock
    ) -> None:
        mock_http_client.aclose = AsyncMock()
        await provider.shutdown()
        mock_http_client.aclose.assert_not_awaited()


class TestRedactCredentialValues:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("refresh_token=1//abc", "refresh_token=[REDACTED]"),
            ('{"client_secret": "shh"}', '{"client_secret": "[REDACTED]"}'),
            ("Authorization: Bearer ya29.xyz", "Authorization: Bearer [REDACTED]"),
            ("nothing secret here", "nothing secret here"),
        ],
    )
    def test_redacts(self, raw: str, expected: str) -> None:
        assert redact_credential_values(raw) == expected
