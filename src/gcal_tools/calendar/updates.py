"""Scoped updates for single and recurring events."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from gcal_tools.calendar.client import GoogleCalendarClient
from gcal_tools.calendar.datetime_utils import parse_instant
from gcal_tools.calendar.errors import (
    CalendarError,
    CalendarRequestError,
    RecurringErrorCode,
    RecurringEventError,
)
from gcal_tools.calendar.models import EventRecord
from gcal_tools.calendar.recurring import (
    EventPatchArgs,
    ModificationScope,
    build_update_request_body,
    calculate_end_time,
    calculate_until_date,
    classify_event,
    clean_event_for_duplication,
    format_instance_id,
    update_recurrence_with_until,
)

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


class RecurringEventUpdater:
    """Applies an update to one occurrence, a whole series, or a series tail."""

    def __init__(
        self,
        client: GoogleCalendarClient,
        *,
        default_time_zone: str | None = None,
        now: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._client = client
        self._default_time_zone = default_time_zone
        self._now = now

    async def update_event(
        self,
        calendar_id: str,
        event_id: str,
        args: EventPatchArgs,
        *,
        scope: ModificationScope | str | None = None,
        original_start_time: str | None = None,
        future_start_date: str | None = None,
    ) -> EventRecord:
        resolved_scope = _resolve_scope(scope)
        default_time_zone = self._default_time_zone or await self._client.get_calendar_timezone(
            calendar_id
        )

        existing = await self._client.get_event(calendar_id, event_id)
        if existing is None:
            raise CalendarRequestError(status_code=404, message=f"Event {event_id} not found")

        if resolved_scope is not ModificationScope.all and classify_event(existing) != "recurring":
            raise RecurringEventError(
                'Scope other than "all" only applies to recurring events',
                RecurringErrorCode.NON_RECURRING_SCOPE,
            )

        if resolved_scope is ModificationScope.this_event_only:
            return await self._update_single_instance(
                calendar_id, event_id, args, default_time_zone, original_start_time
            )
        if resolved_scope is ModificationScope.this_and_following:
            return await self._update_future_instances(
                calendar_id, existing, args, default_time_zone, future_start_date
            )
        return await self._client.patch_event(
            calendar_id, event_id, build_update_request_body(args, default_time_zone)
        )

    async def _update_single_instance(
        self,
        calendar_id: str,
        event_id: str,
        args: EventPatchArgs,
        default_time_zone: str,
        original_start_time: str | None,
    ) -> EventRecord:
        if not original_start_time:
            raise RecurringEventError(
                "original_start_time is required for single instance updates",
                RecurringErrorCode.MISSING_ORIGINAL_TIME,
            )
        try:
            instance_id = format_instance_id(event_id, original_start_time)
        except ValueError as exc:
            raise RecurringEventError(
                f"original_start_time is not a valid ISO 8601 datetime: {original_start_time!r}",
                RecurringErrorCode.MISSING_ORIGINAL_TIME,
            ) from exc
        return await self._client.patch_event(
            calendar_id, instance_id, build_update_request_body(args, default_time_zone)
        )

    async def _update_future_instances(
        self,
        calendar_id: str,
        original: EventRecord,
        args: EventPatchArgs,
        default_time_zone: str,
        future_start_date: str | None,
    ) -> EventRecord:
        if not future_start_date:
            raise RecurringEventError(
                "future_start_date is required for future instance updates",
                RecurringErrorCode.MISSING_FUTURE_DATE,
            )

        effective_time_zone = args.time_zone or default_time_zone
        try:
            future_start = parse_instant(future_start_date, timezone=effective_time_zone)
        except ValueError as exc:
            raise RecurringEventError(
                f"future_start_date is not a valid ISO 8601 datetime: {future_start_date!r}",
                RecurringErrorCode.MISSING_FUTURE_DATE,
            ) from exc
        if future_start < self._now():
            raise RecurringEventError(
                "future_start_date must be in the future",
                RecurringErrorCode.PAST_FUTURE_DATE,
            )

        if original.id is None:
            raise CalendarError("Provider returned the series without an event id")
        until_date = calculate_until_date(future_start_date, timezone=effective_time_zone)
        bounded_recurrence = update_recurrence_with_until(original.recurrence, until_date)
        await self._client.patch_event(
            calendar_id, original.id, {"recurrence": bounded_recurrence}
        )
        logger.info(
            "Ended series %s at %s before splitting off following instances",
            original.id,
            until_date,
        )

        new_start = args.start or future_start_date
        new_end = args.end or calculate_end_time(new_start, original)
        new_event = {
            **clean_event_for_duplication(original),
            **build_update_request_body(args, default_time_zone),
            "start": {"dateTime": new_start, "timeZone": effective_time_zone},
            "end": {"dateTime": new_end, "timeZone": effective_time_zone},
        }
        return await self._client.insert_event(calendar_id, new_event)


def _resolve_scope(scope: ModificationScope | str | None) -> ModificationScope:
    if scope is None:
        return ModificationScope.all
    try:
        return ModificationScope(scope)
    except ValueError as exc:
        raise RecurringEventError(
            f"Invalid modification scope: {scope}",
            RecurringErrorCode.INVALID_SCOPE,
        ) from exc
