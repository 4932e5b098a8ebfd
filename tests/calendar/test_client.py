"""Unit tests for GoogleCalendarClient and the list-query builders.

Covers:
- Percent-encoding of calendar ids and query parameters
- Partial-response field masks
- Single-calendar listing and multi-calendar batch listing with partial failures
- get/insert/patch/delete request shapes and status handling
- 401 refresh and 429 retry on single calls
- Calendar timezone lookup and free/busy queries
"""

from __future__ import annotations

import json

import httpx
import pytest

from gcal_tools.calendar.auth import StaticTokenProvider
from gcal_tools.calendar.batch import GOOGLE_CALENDAR_BATCH_ENDPOINT
from gcal_tools.calendar.client import (
    GoogleCalendarClient,
    build_events_path,
    build_list_field_mask,
)
from gcal_tools.calendar.errors import (
    CalendarError,
    CalendarRequestError,
    CalendarTransportError,
)
from gcal_tools.calendar.models import EventRecord, TimeSpec

pytestmark = pytest.mark.unit

RESPONSE_BOUNDARY = "batch_resp"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _RecordingTokenProvider:
    def __init__(self) -> None:
        self.calls: list[bool] = []

    async def get_access_token(self, *, force_refresh: bool = False) -> str:
        self.calls.append(force_refresh)
        return "fresh-token" if force_refresh else "stale-token"


def _google_event(event_id: str, summary: str, start: str, end: str) -> dict:
    return {
        "id": event_id,
        "summary": summary,
        "status": "confirmed",
        "start": {"dateTime": start},
        "end": {"dateTime": end},
    }


def _batch_reply(*parts: tuple[int, dict]) -> httpx.Response:
    chunks = [
        (
            f"--{RESPONSE_BOUNDARY}\r\n"
            "Content-Type: application/http\r\n"
            f"Content-ID: <response-item{index}>\r\n"
            "\r\n"
            f"HTTP/1.1 {status} Status\r\n"
            "Content-Type: application/json; charset=UTF-8\r\n"
            "\r\n"
            f"{json.dumps(body)}\r\n"
        )
        for index, (status, body) in enumerate(parts, start=1)
    ]
    return httpx.Response(
        200,
        headers={"Content-Type": f"multipart/mixed; boundary={RESPONSE_BOUNDARY}"},
        text="".join(chunks) + f"--{RESPONSE_BOUNDARY}--\r\n",
    )


def _make_client(responder, sleep_recorder, *, token_provider=None):
    seen: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return responder(request)

    client = GoogleCalendarClient(
        token_provider or StaticTokenProvider("tok"),
        httpx.AsyncClient(transport=httpx.MockTransport(_handler)),
        base_backoff_seconds=1.0,
        sleep=sleep_recorder,
    )
    return client, seen


# ---------------------------------------------------------------------------
# Query builders
# ---------------------------------------------------------------------------


class TestBuildEventsPath:
    def test_default_query(self):
        assert build_events_path("primary") == (
            "/calendar/v3/calendars/primary/events?singleEvents=true&orderBy=startTime"
        )

    def test_calendar_id_and_time_bounds_percent_encoded(self):
        path = build_events_path(
            "user@example.com",
            time_min="2024-06-15T00:00:00Z",
            time_max="2024-06-16T00:00:00Z",
        )

        assert path == (
            "/calendar/v3/calendars/user%40example.com/events"
            "?singleEvents=true&orderBy=startTime"
            "&timeMin=2024-06-15T00%3A00%3A00Z&timeMax=2024-06-16T00%3A00%3A00Z"
        )

    def test_group_calendar_id_encodes_hash(self):
        path = build_events_path("en.usa#holiday@group.v.calendar.google.com")
        assert path.startswith(
            "/calendar/v3/calendars/en.usa%23holiday%40group.v.calendar.google.com/events?"
        )

    def test_repeated_extended_property_filters(self):
        path = build_events_path(
            "primary",
            time_zone="Europe/Berlin",
            private_extended_property=["source=crm", "kind=sync"],
            shared_extended_property=["team=ops"],
        )

        assert path.endswith(
            "&timeZone=Europe%2FBerlin"
            "&privateExtendedProperty=source%3Dcrm&privateExtendedProperty=kind%3Dsync"
            "&sharedExtendedProperty=team%3Dops"
        )

    def test_empty_filters_omitted(self):
        assert "timeMin" not in build_events_path("primary", time_min=None, time_max="")


class TestBuildListFieldMask:
    def test_no_fields_means_no_mask(self):
        assert build_list_field_mask(None) is None
        assert build_list_field_mask([]) is None

    def test_extra_fields_appended_to_defaults(self):
        assert build_list_field_mask(["colorId", "summary"]) == (
            "items(id,summary,start,end,status,htmlLink,location,attendees,colorId),"
            "nextPageToken,nextSyncToken,kind,etag,summary,updated,timeZone,accessRole,"
            "defaultReminders"
        )

    def test_invalid_field_rejected(self):
        with pytest.raises(ValueError, match="Invalid fields requested: bogus"):
            build_list_field_mask(["bogus"])

    def test_mask_added_to_query(self):
        path = build_events_path("primary", fields=["colorId"])
        assert "&fields=items%28" in path


# ---------------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------------


class TestListEvents:
    async def test_single_calendar_events_tagged(self, sleep_recorder):
        def responder(request: httpx.Request) -> httpx.Response:
            assert request.method == "GET"
            assert request.url.raw_path.startswith(
                b"/calendar/v3/calendars/team%40example.com/events?singleEvents=true"
            )
            assert request.url.params["timeMin"] == "2024-06-15T00:00:00Z"
            assert request.headers["Authorization"] == "Bearer tok"
            return httpx.Response(
                200,
                json={
                    "items": [
                        _google_event(
                            "evt-1", "Standup", "2024-06-15T09:00:00Z", "2024-06-15T09:15:00Z"
                        )
                    ]
                },
            )

        client, _ = _make_client(responder, sleep_recorder)

        events = await client.list_events("team@example.com", time_min="2024-06-15T00:00:00Z")

        assert [event.id for event in events] == ["evt-1"]
        assert events[0].calendar_id == "team@example.com"
        assert events[0].title == "Standup"

    async def test_non_list_items_rejected(self, sleep_recorder):
        client, _ = _make_client(
            lambda request: httpx.Response(200, json={"items": {"oops": True}}), sleep_recorder
        )

        with pytest.raises(CalendarError, match="non-list items"):
            await client.list_events("primary")

    async def test_http_error_raises_request_error(self, sleep_recorder):
        client, _ = _make_client(
            lambda request: httpx.Response(
                403, json={"error": {"message": "Insufficient Permission"}}
            ),
            sleep_recorder,
        )

        with pytest.raises(CalendarRequestError) as exc_info:
            await client.list_events("primary")

        assert exc_info.value.status_code == 403
        assert exc_info.value.message == "Insufficient Permission"


class TestListEventsMulti:
    async def test_failing_calendar_reported_without_hiding_siblings(self, sleep_recorder):
        def responder(request: httpx.Request) -> httpx.Response:
            assert str(request.url) == GOOGLE_CALENDAR_BATCH_ENDPOINT
            return _batch_reply(
                (
                    200,
                    {
                        "items": [
                            _google_event(
                                "a-1", "Lunch", "2024-06-15T12:00:00Z", "2024-06-15T13:00:00Z"
                            )
                        ]
                    },
                ),
                (404, {"error": {"code": 404, "message": "Not Found"}}),
                (
                    200,
                    {
                        "items": [
                            _google_event(
                                "c-1", "Standup", "2024-06-15T09:00:00Z", "2024-06-15T09:15:00Z"
                            )
                        ]
                    },
                ),
            )

        client, seen = _make_client(responder, sleep_recorder)

        events, errors = await client.list_events_multi(
            ["cal-a", "cal-b", "cal-c"],
            time_min="2024-06-15T00:00:00Z",
            time_max="2024-06-16T00:00:00Z",
        )

        assert [(event.id, event.calendar_id) for event in events] == [
            ("c-1", "cal-c"),
            ("a-1", "cal-a"),
        ]
        assert len(errors) == 1
        assert errors[0].calendar_id == "cal-b"
        assert errors[0].status_code == 404
        assert errors[0].message == "Not Found"

        [request] = seen
        body = request.content.decode()
        assert body.count("Content-Type: application/http") == 3
        assert (
            "GET /calendar/v3/calendars/cal-b/events?singleEvents=true&orderBy=startTime"
            "&timeMin=2024-06-15T00%3A00%3A00Z&timeMax=2024-06-16T00%3A00%3A00Z"
        ) in body

    async def test_missing_response_part_recorded(self, sleep_recorder):
        client, _ = _make_client(
            lambda request: _batch_reply((200, {"items": []})), sleep_recorder
        )

        events, errors = await client.list_events_multi(["cal-a", "cal-b"])

        assert events == []
        assert len(errors) == 1
        assert errors[0].calendar_id == "cal-b"
        assert errors[0].status_code == 0
        assert errors[0].message == "No response part for this calendar"

    async def test_ok_part_without_items_is_an_error(self, sleep_recorder):
        client, _ = _make_client(
            lambda request: _batch_reply((200, {"kind": "calendar#events"})), sleep_recorder
        )

        events, errors = await client.list_events_multi(["cal-a"])

        assert events == []
        assert errors[0].status_code == 200


# ---------------------------------------------------------------------------
# Single-event operations
# ---------------------------------------------------------------------------


class TestGetEvent:
    async def test_returns_event(self, sleep_recorder):
        def responder(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/calendar/v3/calendars/primary/events/evt-1"
            return httpx.Response(
                200,
                json=_google_event(
                    "evt-1", "Review", "2024-06-15T10:00:00Z", "2024-06-15T11:00:00Z"
                ),
            )

        client, _ = _make_client(responder, sleep_recorder)

        event = await client.get_event("primary", "evt-1")

        assert event is not None
        assert event.title == "Review"
        assert event.calendar_id == "primary"

    async def test_missing_event_returns_none(self, sleep_recorder):
        client, _ = _make_client(
            lambda request: httpx.Response(404, json={"error": {"message": "Not Found"}}),
            sleep_recorder,
        )

        assert await client.get_event("primary", "gone") is None

    async def test_blank_event_id_rejected(self, sleep_recorder):
        client, seen = _make_client(lambda request: httpx.Response(200, json={}), sleep_recorder)

        with pytest.raises(ValueError, match="event_id"):
            await client.get_event("primary", "   ")
        assert seen == []


class TestInsertAndPatch:
    async def test_insert_sends_wire_body_without_calendar_tag(self, sleep_recorder):
        def responder(request: httpx.Request) -> httpx.Response:
            assert request.method == "POST"
            assert request.url.path == "/calendar/v3/calendars/primary/events"
            body = json.loads(request.content)
            assert body == {
                "summary": "Planning",
                "start": {"dateTime": "2024-06-15T10:00:00", "timeZone": "Europe/Berlin"},
                "end": {"dateTime": "2024-06-15T11:00:00", "timeZone": "Europe/Berlin"},
            }
            assert "conferenceDataVersion" not in request.url.params
            return httpx.Response(200, json={"id": "new-1", **body})

        client, _ = _make_client(responder, sleep_recorder)
        event = EventRecord(
            title="Planning",
            start=TimeSpec(date_time="2024-06-15T10:00:00", time_zone="Europe/Berlin"),
            end=TimeSpec(date_time="2024-06-15T11:00:00", time_zone="Europe/Berlin"),
            calendar_id="should-not-be-sent",
        )

        created = await client.insert_event("primary", event)

        assert created.id == "new-1"
        assert created.calendar_id == "primary"

    async def test_conference_data_and_attachments_set_query_flags(self, sleep_recorder):
        def responder(request: httpx.Request) -> httpx.Response:
            assert request.url.params["conferenceDataVersion"] == "1"
            assert request.url.params["supportsAttachments"] == "true"
            return httpx.Response(200, json={"id": "new-2"})

        client, _ = _make_client(responder, sleep_recorder)

        await client.insert_event(
            "primary",
            {
                "summary": "Call",
                "conferenceData": {"createRequest": {"requestId": "r-1"}},
                "attachments": [{"fileUrl": "https://example.com/doc"}],
            },
        )

    async def test_patch_sends_partial_body(self, sleep_recorder):
        def responder(request: httpx.Request) -> httpx.Response:
            assert request.method == "PATCH"
            assert request.url.path == (
                "/calendar/v3/calendars/primary/events/evt-1_20240615T170000Z"
            )
            assert json.loads(request.content) == {"summary": "Renamed"}
            return httpx.Response(200, json={"id": "evt-1_20240615T170000Z", "summary": "Renamed"})

        client, _ = _make_client(responder, sleep_recorder)

        patched = await client.patch_event(
            "primary", "evt-1_20240615T170000Z", {"summary": "Renamed"}
        )

        assert patched.title == "Renamed"


class TestDeleteEvent:
    async def test_deleted(self, sleep_recorder):
        def responder(request: httpx.Request) -> httpx.Response:
            assert request.method == "DELETE"
            assert request.url.params["sendUpdates"] == "all"
            return httpx.Response(204)

        client, _ = _make_client(responder, sleep_recorder)

        assert await client.delete_event("primary", "evt-1", send_updates="all") is True

    @pytest.mark.parametrize("status_code", [404, 410])
    async def test_already_gone(self, sleep_recorder, status_code):
        client, _ = _make_client(lambda request: httpx.Response(status_code), sleep_recorder)

        assert await client.delete_event("primary", "evt-1") is False

    async def test_other_failure_raises(self, sleep_recorder):
        client, _ = _make_client(
            lambda request: httpx.Response(500, text="backend error"), sleep_recorder
        )

        with pytest.raises(CalendarRequestError) as exc_info:
            await client.delete_event("primary", "evt-1")

        assert exc_info.value.status_code == 500
        assert exc_info.value.message == "backend error"


# ---------------------------------------------------------------------------
# Auth and retry behaviour
# ---------------------------------------------------------------------------


class TestRequestRetries:
    async def test_401_refreshes_token_once(self, sleep_recorder):
        provider = _RecordingTokenProvider()

        def responder(request: httpx.Request) -> httpx.Response:
            if request.headers["Authorization"] == "Bearer stale-token":
                return httpx.Response(401, json={"error": {"message": "Invalid Credentials"}})
            return httpx.Response(200, json={"items": []})

        client, seen = _make_client(responder, sleep_recorder, token_provider=provider)

        assert await client.list_events("primary") == []
        assert provider.calls == [False, True]
        assert len(seen) == 2

    async def test_429_retried_after_retry_after(self, sleep_recorder):
        attempts = iter(
            [
                httpx.Response(429, headers={"Retry-After": "2"}),
                httpx.Response(200, json={"items": []}),
            ]
        )
        client, seen = _make_client(lambda request: next(attempts), sleep_recorder)

        await client.list_events("primary")

        assert len(seen) == 2
        assert sleep_recorder.delays == [2.0]

    async def test_transport_error_wrapped(self, sleep_recorder):
        def responder(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client, _ = _make_client(responder, sleep_recorder)

        with pytest.raises(CalendarTransportError, match="connection refused"):
            await client.get_event("primary", "evt-1")

    async def test_invalid_json_on_success_raises(self, sleep_recorder):
        client, _ = _make_client(
            lambda request: httpx.Response(200, text="<html>oops</html>"), sleep_recorder
        )

        with pytest.raises(CalendarError, match="invalid JSON"):
            await client.list_events("primary")


# ---------------------------------------------------------------------------
# Calendar metadata and free/busy
# ---------------------------------------------------------------------------


class TestCalendarTimezone:
    async def test_reads_calendar_timezone(self, sleep_recorder):
        def responder(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/calendar/v3/calendars/primary"
            return httpx.Response(200, json={"id": "primary", "timeZone": "Europe/Berlin"})

        client, _ = _make_client(responder, sleep_recorder)

        assert await client.get_calendar_timezone("primary") == "Europe/Berlin"

    async def test_falls_back_to_utc(self, sleep_recorder):
        client, _ = _make_client(lambda request: httpx.Response(404), sleep_recorder)

        assert await client.get_calendar_timezone("missing") == "UTC"


class TestQueryFreeBusy:
    async def test_posts_window_and_calendars(self, sleep_recorder):
        def responder(request: httpx.Request) -> httpx.Response:
            assert request.method == "POST"
            assert request.url.path == "/calendar/v3/freeBusy"
            assert json.loads(request.content) == {
                "timeMin": "2024-06-15T00:00:00Z",
                "timeMax": "2024-06-16T00:00:00Z",
                "items": [{"id": "primary"}, {"id": "team@example.com"}],
                "timeZone": "Europe/Berlin",
            }
            return httpx.Response(200, json={"calendars": {"primary": {"busy": []}}})

        client, _ = _make_client(responder, sleep_recorder)

        payload = await client.query_free_busy(
            ["primary", "team@example.com"],
            time_min="2024-06-15T00:00:00Z",
            time_max="2024-06-16T00:00:00Z",
            time_zone="Europe/Berlin",
        )

        assert payload == {"calendars": {"primary": {"busy": []}}}
