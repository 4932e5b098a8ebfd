"""Authenticated single-call client for the Google Calendar v3 API.

Single calls and batch sub-requests share :func:`build_events_path`, so a
list query looks the same on the wire whichever way it is sent.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from typing import Any
from urllib.parse import quote, urlencode

import httpx

from gcal_tools.calendar.auth import TokenProvider, acquire_token
from gcal_tools.calendar.batch import (
    DEFAULT_BATCH_BASE_BACKOFF_SECONDS,
    DEFAULT_BATCH_MAX_RETRIES,
    GOOGLE_CALENDAR_BATCH_ENDPOINT,
    BatchRequestHandler,
    SleepFn,
)
from gcal_tools.calendar.errors import (
    CalendarError,
    CalendarRequestError,
    CalendarTransportError,
    safe_google_error_message,
)
from gcal_tools.calendar.models import BatchItemError, BatchSubRequest, EventRecord

logger = logging.getLogger(__name__)

GOOGLE_API_ROOT_URL = "https://www.googleapis.com"
CALENDAR_API_PREFIX = "/calendar/v3"

# Retry on 429 Too Many Requests and 503 Service Unavailable with exponential backoff.
RATE_LIMIT_RETRY_STATUS_CODES = {429, 503}

ALLOWED_EVENT_FIELDS = (
    "id",
    "summary",
    "description",
    "start",
    "end",
    "location",
    "attendees",
    "colorId",
    "transparency",
    "extendedProperties",
    "reminders",
    "conferenceData",
    "attachments",
    "status",
    "htmlLink",
    "created",
    "updated",
    "creator",
    "organizer",
    "recurrence",
    "recurringEventId",
    "originalStartTime",
    "visibility",
    "iCalUID",
    "sequence",
    "hangoutLink",
    "anyoneCanAddSelf",
    "guestsCanInviteOthers",
    "guestsCanModify",
    "guestsCanSeeOtherGuests",
    "privateCopy",
    "locked",
    "source",
    "eventType",
)
DEFAULT_EVENT_FIELDS = (
    "id",
    "summary",
    "start",
    "end",
    "status",
    "htmlLink",
    "location",
    "attendees",
)
_LIST_METADATA_FIELDS = (
    "nextPageToken,nextSyncToken,kind,etag,summary,updated,timeZone,accessRole,defaultReminders"
)


def build_list_field_mask(fields: Sequence[str] | None) -> str | None:
    """Build the ``fields`` partial-response mask for ``events.list``.

    Returns None when no extra fields were requested, leaving the provider's
    default field set in place. Default fields are always included.
    """
    if not fields:
        return None

    invalid = [field for field in fields if field not in ALLOWED_EVENT_FIELDS]
    if invalid:
        raise ValueError(
            f"Invalid fields requested: {', '.join(invalid)}. "
            f"Allowed fields: {', '.join(ALLOWED_EVENT_FIELDS)}"
        )

    combined = list(dict.fromkeys([*DEFAULT_EVENT_FIELDS, *fields]))
    return f"items({','.join(combined)}),{_LIST_METADATA_FIELDS}"


def build_events_list_params(
    *,
    time_min: str | None = None,
    time_max: str | None = None,
    time_zone: str | None = None,
    fields: Sequence[str] | None = None,
    private_extended_property: Sequence[str] | None = None,
    shared_extended_property: Sequence[str] | None = None,
    max_results: int | None = None,
) -> list[tuple[str, str]]:
    params: list[tuple[str, str]] = [("singleEvents", "true"), ("orderBy", "startTime")]
    if time_min:
        params.append(("timeMin", time_min))
    if time_max:
        params.append(("timeMax", time_max))
    if time_zone:
        params.append(("timeZone", time_zone))
    if max_results is not None:
        params.append(("maxResults", str(max_results)))
    field_mask = build_list_field_mask(fields)
    if field_mask:
        params.append(("fields", field_mask))
    for value in private_extended_property or ():
        params.append(("privateExtendedProperty", value))
    for value in shared_extended_property or ():
        params.append(("sharedExtendedProperty", value))
    return params


def build_events_path(calendar_id: str, **filters: Any) -> str:
    """Return ``/calendar/v3/calendars/{id}/events?...`` with *calendar_id* percent-encoded.

    *filters* are the keyword arguments of :func:`build_events_list_params`.
    """
    query = urlencode(build_events_list_params(**filters))
    return f"{CALENDAR_API_PREFIX}/calendars/{quote(calendar_id, safe='')}/events?{query}"


def _event_sort_key(event: EventRecord) -> str:
    if event.start is None:
        return ""
    return event.start.value


class GoogleCalendarClient:
    """Google Calendar client with bearer auth, 401 refresh, and rate-limit retries."""

    def __init__(
        self,
        token_provider: TokenProvider,
        http_client: httpx.AsyncClient | None = None,
        *,
        api_base_url: str = GOOGLE_API_ROOT_URL,
        batch_endpoint: str = GOOGLE_CALENDAR_BATCH_ENDPOINT,
        max_retries: int = DEFAULT_BATCH_MAX_RETRIES,
        base_backoff_seconds: float = DEFAULT_BATCH_BASE_BACKOFF_SECONDS,
        sleep: SleepFn = asyncio.sleep,
        batch_handler: BatchRequestHandler | None = None,
    ) -> None:
        self._token_provider = token_provider
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)
        self._api_base_url = api_base_url.rstrip("/")
        self._max_retries = max_retries
        self._base_backoff_seconds = base_backoff_seconds
        self._sleep = sleep
        self._batch = batch_handler or BatchRequestHandler(
            token_provider,
            self._http_client,
            endpoint=batch_endpoint,
            max_retries=max_retries,
            base_backoff_seconds=base_backoff_seconds,
            sleep=sleep,
        )

    @property
    def batch(self) -> BatchRequestHandler:
        return self._batch

    async def list_events(self, calendar_id: str, **filters: Any) -> list[EventRecord]:
        """List expanded event instances from one calendar, tagged with *calendar_id*."""
        payload = await self._request_google_json("GET", build_events_path(calendar_id, **filters))
        items = payload.get("items", [])
        if not isinstance(items, list):
            raise CalendarError("Google Calendar list_events response has a non-list items field")
        return [
            EventRecord.from_google(item, calendar_id=calendar_id)
            for item in items
            if isinstance(item, dict)
        ]

    async def list_events_multi(
        self,
        calendar_ids: Sequence[str],
        **filters: Any,
    ) -> tuple[list[EventRecord], list[BatchItemError]]:
        """List events from several calendars in one batch exchange.

        Returns events sorted by start plus one :class:`BatchItemError` per
        calendar whose sub-response failed. A failing calendar never
        discards its siblings' events.
        """
        requests = [
            BatchSubRequest(method="GET", path=build_events_path(calendar_id, **filters))
            for calendar_id in calendar_ids
        ]
        responses = await self._batch.execute_batch(requests)

        events: list[EventRecord] = []
        errors: list[BatchItemError] = []
        for index, calendar_id in enumerate(calendar_ids):
            if index >= len(responses):
                errors.append(
                    BatchItemError(
                        calendar_id=calendar_id,
                        status_code=0,
                        message="No response part for this calendar",
                    )
                )
                continue

            response = responses[index]
            items = response.body.get("items") if isinstance(response.body, dict) else None
            if response.ok and isinstance(items, list):
                events.extend(
                    EventRecord.from_google(item, calendar_id=calendar_id)
                    for item in items
                    if isinstance(item, dict)
                )
                continue

            errors.append(
                BatchItemError(
                    calendar_id=calendar_id,
                    status_code=response.status_code,
                    message=response.error_message,
                )
            )

        if errors:
            logger.warning(
                "Some calendars had errors: %s",
                ", ".join(f"{error.calendar_id}: {error.message}" for error in errors),
            )
        events.sort(key=_event_sort_key)
        return events, errors

    async def get_event(self, calendar_id: str, event_id: str) -> EventRecord | None:
        normalized_event_id = event_id.strip()
        if not normalized_event_id:
            raise ValueError("event_id must be a non-empty string")

        response = await self._request_with_bearer(
            method="GET",
            path=self._event_path(calendar_id, normalized_event_id),
        )
        if response.status_code == 404:
            return None
        payload = self._decode_json_object(response)
        return EventRecord.from_google(payload, calendar_id=calendar_id)

    async def insert_event(
        self, calendar_id: str, event: EventRecord | dict[str, Any]
    ) -> EventRecord:
        body = event.to_google() if isinstance(event, EventRecord) else dict(event)
        payload = await self._request_google_json(
            "POST",
            f"{CALENDAR_API_PREFIX}/calendars/{quote(calendar_id, safe='')}/events",
            json_body=body,
            params=_write_params(body),
        )
        return EventRecord.from_google(payload, calendar_id=calendar_id)

    async def patch_event(
        self,
        calendar_id: str,
        event_id: str,
        patch: dict[str, Any],
    ) -> EventRecord:
        payload = await self._request_google_json(
            "PATCH",
            self._event_path(calendar_id, event_id),
            json_body=patch,
            params=_write_params(patch),
        )
        return EventRecord.from_google(payload, calendar_id=calendar_id)

    async def delete_event(
        self,
        calendar_id: str,
        event_id: str,
        *,
        send_updates: str | None = None,
    ) -> bool:
        """Delete an event. Returns False when it was already gone (404/410)."""
        params = {"sendUpdates": send_updates} if send_updates else None
        response = await self._request_with_bearer(
            method="DELETE",
            path=self._event_path(calendar_id, event_id),
            params=params,
        )
        if response.status_code in {404, 410}:
            return False
        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarRequestError(
                status_code=response.status_code,
                message=safe_google_error_message(response),
            )
        return True

    async def get_calendar_timezone(self, calendar_id: str) -> str:
        """Return the calendar's default timezone, or ``UTC`` when it cannot be read."""
        try:
            payload = await self._request_google_json(
                "GET",
                f"{CALENDAR_API_PREFIX}/calendars/{quote(calendar_id, safe='')}",
            )
        except CalendarRequestError as exc:
            logger.debug("Cannot read timezone for calendar %s: %s", calendar_id, exc)
            return "UTC"
        time_zone = payload.get("timeZone")
        return time_zone if isinstance(time_zone, str) and time_zone else "UTC"

    async def query_free_busy(
        self,
        calendar_ids: Sequence[str],
        *,
        time_min: str,
        time_max: str,
        time_zone: str | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "timeMin": time_min,
            "timeMax": time_max,
            "items": [{"id": calendar_id} for calendar_id in calendar_ids],
        }
        if time_zone:
            body["timeZone"] = time_zone
        return await self._request_google_json(
            "POST",
            f"{CALENDAR_API_PREFIX}/freeBusy",
            json_body=body,
        )

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    @staticmethod
    def _event_path(calendar_id: str, event_id: str) -> str:
        return (
            f"{CALENDAR_API_PREFIX}/calendars/{quote(calendar_id, safe='')}"
            f"/events/{quote(event_id, safe='')}"
        )

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
        if response.status_code == 204:
            return {}
        return self._decode_json_object(response)

    @staticmethod
    def _decode_json_object(response: httpx.Response) -> dict[str, Any]:
        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarRequestError(
                status_code=response.status_code,
                message=safe_google_error_message(response),
            )
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
        normalized_path = path if path.startswith("/") else f"/{path}"
        url = f"{self._api_base_url}{normalized_path}"

        response = await self._request_once(
            method=method, url=url, params=params, json_body=json_body, force_refresh=False
        )
        if response.status_code == 401:
            response = await self._request_once(
                method=method, url=url, params=params, json_body=json_body, force_refresh=True
            )

        retry = 0
        while response.status_code in RATE_LIMIT_RETRY_STATUS_CODES and retry < self._max_retries:
            backoff = self._base_backoff_seconds * (2**retry)
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
                self._max_retries,
            )
            await self._sleep(backoff)
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
        access_token = await acquire_token(self._token_provider, force_refresh=force_refresh)
        try:
            return await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as exc:
            raise CalendarTransportError(f"Google Calendar request failed: {exc}") from exc


def _write_params(body: dict[str, Any]) -> dict[str, Any] | None:
    params: dict[str, Any] = {}
    if body.get("conferenceData") is not None:
        params["conferenceDataVersion"] = 1
    if body.get("attachments") is not None:
        params["supportsAttachments"] = "true"
    return params or None
