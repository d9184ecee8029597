"""Google OAuth credentials and access-token sources.

A :class:`TokenSource` hands the calendar provider a bearer token.  Two
implementations exist:

- :class:`StaticTokenSource` wraps a token obtained elsewhere (the caller of
  ``run_scheduler`` already holds one).
- :class:`GoogleOAuthClient` exchanges a stored refresh token for short-lived
  access tokens and caches them until shortly before expiry.

Secret material (client_secret, refresh_token, access tokens) is never logged.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from cai.modules.calendar import (
    CalendarAuthError,
    CalendarCredentialError,
    CalendarTokenRefreshError,
    _safe_google_error_message,
)

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
DEFAULT_CREDENTIALS_ENV = "CAI_GOOGLE_CREDENTIALS"


class TokenSource(Protocol):
    """Supplies bearer tokens to the calendar provider."""

    @property
    def refreshable(self) -> bool:
        """True when ``force_refresh`` can yield a different token."""
        ...

    async def get_access_token(self, *, force_refresh: bool = False) -> str: ...


class StaticTokenSource:
    """A fixed bearer token; cannot be refreshed."""

    refreshable = False

    def __init__(self, token: str | None) -> None:
        normalized = token.strip() if isinstance(token, str) else ""
        if not normalized:
            raise CalendarAuthError("No calendar access token available")
        self._token = normalized

    async def get_access_token(self, *, force_refresh: bool = False) -> str:  # noqa: ARG002
        return self._token


class GoogleOAuthCredentials(BaseModel):
    """OAuth client credentials required for refresh-token exchange."""

    model_config = ConfigDict(extra="forbid")

    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)

    @field_validator("client_id", "client_secret", "refresh_token")
    @classmethod
    def _normalize_non_empty(cls, value: str, info: ValidationInfo) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{info.field_name} must be a non-empty string")
        return normalized

    def __repr__(self) -> str:
        return (
            f"GoogleOAuthCredentials(client_id={self.client_id!r}, "
            "client_secret=***, refresh_token=***)"
        )

    @classmethod
    def from_json(cls, raw_value: str) -> GoogleOAuthCredentials:
        try:
            payload = json.loads(raw_value)
        except json.JSONDecodeError as exc:
            raise CalendarCredentialError(f"Credential JSON must be valid JSON: {exc.msg}") from exc

        if not isinstance(payload, dict):
            raise CalendarCredentialError("Credential JSON must decode to a JSON object")

        credential_data = {
            key: _extract_google_credential_value(payload, key)
            for key in ("client_id", "client_secret", "refresh_token")
        }

        missing = sorted(key for key, value in credential_data.items() if value is None)
        if missing:
            raise CalendarCredentialError(
                f"Credential JSON is missing required field(s): {', '.join(missing)}"
            )

        invalid = sorted(
            key
            for key, value in credential_data.items()
            if not isinstance(value, str) or not value.strip()
        )
        if invalid:
            raise CalendarCredentialError(
                f"Credential JSON must contain non-empty string field(s): {', '.join(invalid)}"
            )

        return cls(
            client_id=str(credential_data["client_id"]),
            client_secret=str(credential_data["client_secret"]),
            refresh_token=str(credential_data["refresh_token"]),
        )


def _extract_google_credential_value(payload: dict[str, Any], key: str) -> Any:
    if key in payload:
        return payload[key]

    for nested_key in ("installed", "web"):
        nested = payload.get(nested_key)
        if isinstance(nested, dict) and key in nested:
            return nested[key]
    return None


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return 3600
    if isinstance(value, int | float):
        return int(value) if value > 0 else 3600
    return 3600


def load_google_credentials(
    env_var: str = DEFAULT_CREDENTIALS_ENV,
    *,
    environ: Mapping[str, str] | None = None,
) -> GoogleOAuthCredentials:
    """Load OAuth credentials from the JSON held in *env_var*."""
    env = os.environ if environ is None else environ
    raw_value = env.get(env_var)
    if raw_value is None or not raw_value.strip():
        raise CalendarCredentialError(f"Google credentials are not set (expected ${env_var})")
    return GoogleOAuthCredentials.from_json(raw_value)


class GoogleOAuthClient:
    """Refresh-token OAuth helper with lightweight access-token caching."""

    refreshable = True

    def __init__(
        self,
        credentials: GoogleOAuthCredentials,
        http_client: httpx.AsyncClient,
    ) -> None:
        self._credentials = credentials
        self._http_client = http_client
        self._access_token: str | None = None
        self._access_token_expires_at: datetime | None = None
        self._refresh_lock = asyncio.Lock()

    async def get_access_token(self, *, force_refresh: bool = False) -> str:
        if not force_refresh and self._token_is_fresh():
            assert self._access_token is not None
            return self._access_token

        async with self._refresh_lock:
            if not force_refresh and self._token_is_fresh():
                assert self._access_token is not None
                return self._access_token

            await self._refresh_access_token()
            assert self._access_token is not None
            return self._access_token

    def _token_is_fresh(self) -> bool:
        if self._access_token is None or self._access_token_expires_at is None:
            return False
        return datetime.now(UTC) < self._access_token_expires_at

    async def _refresh_access_token(self) -> None:
        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_TOKEN_URL,
                data={
                    "client_id": self._credentials.client_id,
                    "client_secret": self._credentials.client_secret,
                    "refresh_token": self._credentials.refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise CalendarTokenRefreshError(
                f"Google OAuth token refresh request failed: {type(exc).__name__}"
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarTokenRefreshError(
                "Google OAuth token refresh failed "
                f"({response.status_code}): {_safe_google_error_message(response)}"
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarTokenRefreshError(
                "Google OAuth token endpoint returned invalid JSON"
            ) from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise CalendarTokenRefreshError(
                "Google OAuth token response is missing a non-empty access_token"
            )

        expires_in_raw = payload.get("expires_in") if isinstance(payload, dict) else None
        expires_in_seconds = _coerce_expires_in_seconds(expires_in_raw)
        # Refresh early to avoid edge-of-expiration failures.
        refresh_ttl_seconds = max(expires_in_seconds - 60, 30)

        self._access_token = access_token.strip()
        self._access_token_expires_at = datetime.now(UTC) + timedelta(seconds=refresh_ttl_seconds)
        logger.debug("Refreshed Google access token (ttl=%ds)", refresh_ttl_seconds)
