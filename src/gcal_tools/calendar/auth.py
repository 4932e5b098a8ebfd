"""Access-token providers consumed by the API client and the batch codec.

The OAuth consent flow lives outside this package; here we only turn stored
credentials into bearer tokens.
"""

from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from gcal_tools.calendar.errors import CalendarAuthError, safe_google_error_message

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"


class TokenProvider(Protocol):
    """Anything that can yield a bearer token for Google Calendar requests."""

    async def get_access_token(self, *, force_refresh: bool = False) -> str: ...


class StaticTokenProvider:
    """Token provider that always returns the same token."""

    def __init__(self, token: str) -> None:
        if not token.strip():
            raise CalendarAuthError("static access token must be a non-empty string")
        self._token = token.strip()

    async def get_access_token(self, *, force_refresh: bool = False) -> str:
        return self._token


class OAuthCredentials(BaseModel):
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

    @classmethod
    def from_json(cls, raw_value: str) -> OAuthCredentials:
        """Parse credentials from a JSON document.

        Accepts the flat shape as well as Google's ``installed``/``web``
        client-secret wrappers.
        """
        try:
            payload = json.loads(raw_value)
        except json.JSONDecodeError as exc:
            raise CalendarAuthError(f"Credential JSON must be valid JSON: {exc.msg}") from exc

        if not isinstance(payload, dict):
            raise CalendarAuthError("Credential JSON must decode to a JSON object")

        credential_data = {
            key: _extract_credential_value(payload, key)
            for key in ("client_id", "client_secret", "refresh_token")
        }
        missing = sorted(key for key, value in credential_data.items() if value is None)
        if missing:
            raise CalendarAuthError(
                f"Credential JSON is missing required field(s): {', '.join(missing)}"
            )

        invalid = sorted(
            key
            for key, value in credential_data.items()
            if not isinstance(value, str) or not value.strip()
        )
        if invalid:
            raise CalendarAuthError(
                f"Credential JSON must contain non-empty string field(s): {', '.join(invalid)}"
            )

        return cls(**{key: str(value) for key, value in credential_data.items()})


class RefreshTokenProvider:
    """Refresh-token OAuth helper with lightweight access-token caching."""

    def __init__(
        self,
        credentials: OAuthCredentials,
        http_client: httpx.AsyncClient,
        *,
        token_url: str = GOOGLE_OAUTH_TOKEN_URL,
    ) -> None:
        self._credentials = credentials
        self._http_client = http_client
        self._token_url = token_url
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
                self._token_url,
                data={
                    "client_id": self._credentials.client_id,
                    "client_secret": self._credentials.client_secret,
                    "refresh_token": self._credentials.refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise CalendarAuthError(f"OAuth token refresh request failed: {exc}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarAuthError(
                "OAuth token refresh failed "
                f"({response.status_code}): {safe_google_error_message(response)}"
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarAuthError("OAuth token endpoint returned invalid JSON") from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise CalendarAuthError("OAuth token response is missing a non-empty access_token")

        expires_in_raw = payload.get("expires_in")
        # Refresh a minute early to avoid edge-of-expiration failures.
        refresh_ttl_seconds = max(_coerce_expires_in_seconds(expires_in_raw) - 60, 30)

        self._access_token = access_token.strip()
        self._access_token_expires_at = datetime.now(UTC) + timedelta(seconds=refresh_ttl_seconds)


def _extract_credential_value(payload: dict[str, Any], key: str) -> Any:
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


async def acquire_token(provider: TokenProvider, *, force_refresh: bool = False) -> str:
    """Fetch a token, normalizing any provider failure to :class:`CalendarAuthError`."""
    try:
        token = await provider.get_access_token(force_refresh=force_refresh)
    except CalendarAuthError:
        raise
    except Exception as exc:
        raise CalendarAuthError(f"Access token acquisition failed: {exc}") from exc
    if not isinstance(token, str) or not token.strip():
        raise CalendarAuthError("Token provider returned an empty access token")
    return token.strip()
