"""Unit tests for RecurringEventUpdater.update_event().

Covers:
- Scope validation and defaults
- Single-event updates ("all" scope only)
- thisEventOnly instance patches
- thisAndFollowing series split (UNTIL patch plus new series insert)
- Calendar timezone fallback for the default zone
"""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import AsyncMock

import pytest

from gcal_tools.calendar.client import GoogleCalendarClient
from gcal_tools.calendar.errors import (
    CalendarError,
    CalendarRequestError,
    RecurringErrorCode,
    RecurringEventError,
)
from gcal_tools.calendar.models import EventRecord
from gcal_tools.calendar.recurring import EventPatchArgs
from gcal_tools.calendar.updates import RecurringEventUpdater

pytestmark = pytest.mark.unit

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)


def _series() -> EventRecord:
    return EventRecord.model_validate(
        {
            "id": "series-1",
            "etag": '"42"',
            "iCalUID": "series-1@google.com",
            "htmlLink": "https://calendar.google.com/event?eid=series-1",
            "summary": "Weekly 1:1",
            "location": "Room 4",
            "start": {"dateTime": "2024-06-03T10:00:00", "timeZone": "America/Los_Angeles"},
            "end": {"dateTime": "2024-06-03T10:30:00", "timeZone": "America/Los_Angeles"},
            "recurrence": ["RRULE:FREQ=WEEKLY;BYDAY=MO;COUNT=20", "EXDATE:20240610T170000Z"],
        },
    )


def _single() -> EventRecord:
    return EventRecord.model_validate(
        {
            "id": "evt-1",
            "summary": "Dentist",
            "start": {"dateTime": "2024-06-20T09:00:00Z"},
            "end": {"dateTime": "2024-06-20T10:00:00Z"},
        }
    )


def _make_updater(existing: EventRecord | None, *, default_time_zone: str | None = None):
    client = AsyncMock(spec=GoogleCalendarClient)
    client.get_event.return_value = existing
    client.get_calendar_timezone.return_value = "America/Los_Angeles"
    client.patch_event.side_effect = lambda calendar_id, event_id, body: EventRecord(
        id=event_id, calendar_id=calendar_id
    )
    client.insert_event.side_effect = lambda calendar_id, body: EventRecord(
        id="series-2", calendar_id=calendar_id
    )
    updater = RecurringEventUpdater(
        client, default_time_zone=default_time_zone, now=lambda: NOW
    )
    return updater, client


class TestScopeValidation:
    async def test_invalid_scope_rejected_before_any_call(self):
        updater, client = _make_updater(_series())

        with pytest.raises(RecurringEventError) as exc_info:
            await updater.update_event("primary", "series-1", EventPatchArgs(), scope="nextOnly")

        assert exc_info.value.code is RecurringErrorCode.INVALID_SCOPE
        client.get_event.assert_not_awaited()

    async def test_missing_event_raises_not_found(self):
        updater, client = _make_updater(None)

        with pytest.raises(CalendarRequestError) as exc_info:
            await updater.update_event("primary", "gone", EventPatchArgs(summary="x"))

        assert exc_info.value.status_code == 404
        client.patch_event.assert_not_awaited()

    @pytest.mark.parametrize("scope", ["thisEventOnly", "thisAndFollowing"])
    async def test_partial_scope_on_single_event_rejected(self, scope):
        updater, client = _make_updater(_single())

        with pytest.raises(RecurringEventError) as exc_info:
            await updater.update_event(
                "primary",
                "evt-1",
                EventPatchArgs(summary="x"),
                scope=scope,
                original_start_time="2024-06-20T09:00:00Z",
                future_start_date="2024-06-20T09:00:00Z",
            )

        assert exc_info.value.code is RecurringErrorCode.NON_RECURRING_SCOPE
        client.patch_event.assert_not_awaited()


class TestAllScope:
    async def test_single_event_patched_in_place(self):
        updater, client = _make_updater(_single())

        updated = await updater.update_event("primary", "evt-1", EventPatchArgs(summary="Dentist!"))

        assert updated.id == "evt-1"
        client.patch_event.assert_awaited_once_with("primary", "evt-1", {"summary": "Dentist!"})

    async def test_time_change_uses_calendar_timezone(self):
        updater, client = _make_updater(_series())

        await updater.update_event(
            "primary", "series-1", EventPatchArgs(start="2024-06-03T11:00:00"), scope="all"
        )

        client.get_calendar_timezone.assert_awaited_once_with("primary")
        client.patch_event.assert_awaited_once_with(
            "primary",
            "series-1",
            {
                "start": {"dateTime": "2024-06-03T11:00:00", "timeZone": "America/Los_Angeles"},
                "end": {"timeZone": "America/Los_Angeles"},
            },
        )

    async def test_configured_default_zone_skips_lookup(self):
        updater, client = _make_updater(_series(), default_time_zone="Europe/Berlin")

        await updater.update_event(
            "primary", "series-1", EventPatchArgs(end="2024-06-03T11:00:00")
        )

        client.get_calendar_timezone.assert_not_awaited()
        body = client.patch_event.await_args.args[2]
        assert body["end"] == {"dateTime": "2024-06-03T11:00:00", "timeZone": "Europe/Berlin"}


class TestThisEventOnly:
    async def test_patches_instance_id(self):
        updater, client = _make_updater(_series())

        updated = await updater.update_event(
            "primary",
            "series-1",
            EventPatchArgs(location="Room 9"),
            scope="thisEventOnly",
            original_start_time="2024-06-17T10:00:00-07:00",
        )

        assert updated.id == "series-1_20240617T170000Z"
        client.patch_event.assert_awaited_once_with(
            "primary", "series-1_20240617T170000Z", {"location": "Room 9"}
        )

    async def test_requires_original_start_time(self):
        updater, client = _make_updater(_series())

        with pytest.raises(RecurringEventError) as exc_info:
            await updater.update_event(
                "primary", "series-1", EventPatchArgs(location="Room 9"), scope="thisEventOnly"
            )

        assert exc_info.value.code is RecurringErrorCode.MISSING_ORIGINAL_TIME
        client.patch_event.assert_not_awaited()

    async def test_unparseable_original_start_time_is_structured(self):
        updater, client = _make_updater(_series())

        with pytest.raises(RecurringEventError) as exc_info:
            await updater.update_event(
                "primary",
                "series-1",
                EventPatchArgs(location="Room 9"),
                scope="thisEventOnly",
                original_start_time="not-a-date",
            )

        assert exc_info.value.code is RecurringErrorCode.MISSING_ORIGINAL_TIME
        assert isinstance(exc_info.value.__cause__, ValueError)
        client.patch_event.assert_not_awaited()


class TestThisAndFollowing:
    async def test_splits_series(self):
        updater, client = _make_updater(_series())

        created = await updater.update_event(
            "primary",
            "series-1",
            EventPatchArgs(summary="Weekly 1:1 (new slot)"),
            scope="thisAndFollowing",
            future_start_date="2024-07-01T10:00:00-07:00",
        )

        assert created.id == "series-2"
        client.patch_event.assert_awaited_once_with(
            "primary",
            "series-1",
            {
                "recurrence": [
                    "RRULE:FREQ=WEEKLY;BYDAY=MO;UNTIL=20240630T170000Z",
                    "EXDATE:20240610T170000Z",
                ]
            },
        )

        calendar_id, new_event = client.insert_event.await_args.args
        assert calendar_id == "primary"
        assert new_event["summary"] == "Weekly 1:1 (new slot)"
        assert new_event["location"] == "Room 4"
        assert new_event["recurrence"] == [
            "RRULE:FREQ=WEEKLY;BYDAY=MO;COUNT=20",
            "EXDATE:20240610T170000Z",
        ]
        assert new_event["start"] == {
            "dateTime": "2024-07-01T10:00:00-07:00",
            "timeZone": "America/Los_Angeles",
        }
        assert new_event["end"] == {
            "dateTime": "2024-07-01T10:30:00-07:00",
            "timeZone": "America/Los_Angeles",
        }
        for field in ("id", "etag", "iCalUID", "htmlLink"):
            assert field not in new_event

    async def test_explicit_new_times_win(self):
        updater, client = _make_updater(_series())

        await updater.update_event(
            "primary",
            "series-1",
            EventPatchArgs(
                start="2024-07-01T14:00:00",
                end="2024-07-01T15:00:00",
                time_zone="Europe/Berlin",
            ),
            scope="thisAndFollowing",
            future_start_date="2024-07-01T10:00:00",
        )

        new_event = client.insert_event.await_args.args[1]
        assert new_event["start"] == {
            "dateTime": "2024-07-01T14:00:00",
            "timeZone": "Europe/Berlin",
        }
        assert new_event["end"] == {"dateTime": "2024-07-01T15:00:00", "timeZone": "Europe/Berlin"}
        # Naive future date resolved in the explicit zone: 10:00 CEST is 08:00Z.
        patch_body = client.patch_event.await_args.args[2]
        assert patch_body["recurrence"][0].endswith("UNTIL=20240630T080000Z")

    async def test_requires_future_start_date(self):
        updater, client = _make_updater(_series())

        with pytest.raises(RecurringEventError) as exc_info:
            await updater.update_event(
                "primary", "series-1", EventPatchArgs(summary="x"), scope="thisAndFollowing"
            )

        assert exc_info.value.code is RecurringErrorCode.MISSING_FUTURE_DATE

    async def test_past_future_date_rejected(self):
        updater, client = _make_updater(_series())

        with pytest.raises(RecurringEventError) as exc_info:
            await updater.update_event(
                "primary",
                "series-1",
                EventPatchArgs(summary="x"),
                scope="thisAndFollowing",
                future_start_date="2024-05-01T10:00:00Z",
            )

        assert exc_info.value.code is RecurringErrorCode.PAST_FUTURE_DATE
        client.patch_event.assert_not_awaited()
        client.insert_event.assert_not_awaited()

    async def test_unparseable_future_start_date_is_structured(self):
        updater, client = _make_updater(_series())

        with pytest.raises(RecurringEventError) as exc_info:
            await updater.update_event(
                "primary",
                "series-1",
                EventPatchArgs(summary="x"),
                scope="thisAndFollowing",
                future_start_date="next monday",
            )

        assert exc_info.value.code is RecurringErrorCode.MISSING_FUTURE_DATE
        client.patch_event.assert_not_awaited()

    async def test_series_without_id_raises_calendar_error(self):
        series = _series()
        series.id = None
        updater, client = _make_updater(series)

        with pytest.raises(CalendarError, match="without an event id"):
            await updater.update_event(
                "primary",
                "series-1",
                EventPatchArgs(summary="x"),
                scope="thisAndFollowing",
                future_start_date="2024-07-01T10:00:00-07:00",
            )

        client.patch_event.assert_not_awaited()
        client.insert_event.assert_not_awaited()
