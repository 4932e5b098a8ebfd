"""MCP tool surface for calendar operations.

Read tools fail open: provider errors come back as a structured error dict
with an empty result. Write tools fail closed: the mutation is not retried
or faked, and the structured error is returned instead.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from gcal_tools.calendar.client import GoogleCalendarClient
from gcal_tools.calendar.conflicts import ConflictDetectionService
from gcal_tools.calendar.datetime_utils import (
    build_time_spec,
    parse_instant,
    to_absolute_instant,
)
from gcal_tools.calendar.errors import CalendarError, RecurringEventError, build_structured_error
from gcal_tools.calendar.formatting import (
    create_event_response,
    format_conflict_warnings,
    format_event_with_details,
)
from gcal_tools.calendar.models import (
    Attendee,
    ConflictCheckOptions,
    ConflictResult,
    ConflictThresholds,
    EventRecord,
)
from gcal_tools.calendar.recurring import EventPatchArgs
from gcal_tools.calendar.updates import RecurringEventUpdater

logger = logging.getLogger(__name__)

# Google rejects free/busy windows longer than roughly three months.
MAX_FREE_BUSY_WINDOW = timedelta(days=90)


def _event_to_payload(event: EventRecord) -> dict[str, Any]:
    payload = event.to_google()
    if event.calendar_id:
        payload["calendarId"] = event.calendar_id
    return payload


def _conflicts_to_payload(result: ConflictResult) -> dict[str, Any]:
    return result.model_dump(mode="json", by_alias=True, exclude_none=True)


class CalendarToolset:
    """Registers ``calendar_*`` tools on an MCP server."""

    def __init__(
        self,
        client: GoogleCalendarClient,
        *,
        calendar_id: str = "primary",
        timezone: str = "UTC",
        thresholds: ConflictThresholds | None = None,
    ) -> None:
        self._client = client
        self._calendar_id = calendar_id
        self._timezone = timezone
        self._conflicts = ConflictDetectionService(client, thresholds=thresholds)
        self._updater = RecurringEventUpdater(client)

    @property
    def conflicts(self) -> ConflictDetectionService:
        return self._conflicts

    def _resolve_calendar_id(self, calendar_id: str | None) -> str:
        if calendar_id is None:
            return self._calendar_id
        normalized = calendar_id.strip()
        if not normalized:
            raise ValueError("calendar_id must be a non-empty string")
        return normalized

    async def _resolve_time_zone(self, time_zone: str | None, calendar_id: str) -> str:
        if time_zone:
            return time_zone
        return await self._client.get_calendar_timezone(calendar_id)

    def register_tools(self, mcp: Any) -> None:
        toolset = self

        @mcp.tool()
        async def calendar_list_events(
            calendar_id: str | list[str] | None = None,
            time_min: str | None = None,
            time_max: str | None = None,
            time_zone: str | None = None,
            fields: list[str] | None = None,
            private_extended_property: list[str] | None = None,
            shared_extended_property: list[str] | None = None,
        ) -> dict[str, Any]:
            """List events from one or more calendars.

            Several calendars are fetched in a single batch request; a calendar
            that fails is reported under ``errors`` without hiding the others.
            """
            if isinstance(calendar_id, list):
                calendar_ids = [toolset._resolve_calendar_id(value) for value in calendar_id]
            else:
                calendar_ids = [toolset._resolve_calendar_id(calendar_id)]
            if not calendar_ids:
                raise ValueError("calendar_id must name at least one calendar")

            try:
                if (time_min or time_max) and len(calendar_ids) == 1:
                    zone = await toolset._resolve_time_zone(time_zone, calendar_ids[0])
                else:
                    zone = time_zone or toolset._timezone
                filters: dict[str, Any] = {
                    "time_min": to_absolute_instant(time_min, zone) if time_min else None,
                    "time_max": to_absolute_instant(time_max, zone) if time_max else None,
                    "fields": fields,
                    "private_extended_property": private_extended_property,
                    "shared_extended_property": shared_extended_property,
                }
                if len(calendar_ids) == 1:
                    events = await toolset._client.list_events(calendar_ids[0], **filters)
                    errors = []
                else:
                    events, errors = await toolset._client.list_events_multi(
                        calendar_ids, **filters
                    )
            except CalendarError as exc:
                logger.warning(
                    "calendar_list_events failed (calendar_ids=%s): %s",
                    calendar_ids,
                    exc,
                    exc_info=True,
                )
                error_dict = build_structured_error(exc, calendar_id=",".join(calendar_ids))
                error_dict["events"] = []
                return error_dict

            return {
                "calendar_ids": calendar_ids,
                "events": [_event_to_payload(event) for event in events],
                "errors": [error.model_dump() for error in errors],
                "text": "\n\n".join(
                    f"{index}. {format_event_with_details(event, event.calendar_id)}"
                    for index, event in enumerate(events, start=1)
                ),
            }

        @mcp.tool()
        async def calendar_check_conflicts(
            start: str,
            end: str,
            summary: str | None = None,
            calendar_id: str | None = None,
            calendars_to_check: list[str] | None = None,
            time_zone: str | None = None,
            event_id: str | None = None,
            duplicate_threshold: float | None = None,
            include_declined_events: bool = False,
            requester_email: str | None = None,
        ) -> dict[str, Any]:
            """Report duplicates and overlapping events for a proposed time slot."""
            resolved_calendar_id = toolset._resolve_calendar_id(calendar_id)
            try:
                zone = await toolset._resolve_time_zone(time_zone, resolved_calendar_id)
                candidate = EventRecord(
                    id=event_id,
                    title=summary,
                    start=build_time_spec(start, zone),
                    end=build_time_spec(end, zone),
                )
                result = await toolset._conflicts.check_conflicts(
                    candidate,
                    resolved_calendar_id,
                    ConflictCheckOptions(
                        calendars_to_check=calendars_to_check,
                        duplicate_threshold=duplicate_threshold,
                        include_declined_events=include_declined_events,
                        requester_email=requester_email,
                    ),
                )
            except CalendarError as exc:
                logger.warning(
                    "calendar_check_conflicts failed (calendar_id=%s): %s",
                    resolved_calendar_id,
                    exc,
                    exc_info=True,
                )
                return build_structured_error(exc, calendar_id=resolved_calendar_id)

            return {
                "calendar_id": resolved_calendar_id,
                **_conflicts_to_payload(result),
                "text": format_conflict_warnings(result).strip(),
            }

        @mcp.tool()
        async def calendar_create_event(
            summary: str,
            start: str,
            end: str,
            calendar_id: str | None = None,
            time_zone: str | None = None,
            description: str | None = None,
            location: str | None = None,
            attendees: list[str] | None = None,
            recurrence: list[str] | None = None,
            calendars_to_check: list[str] | None = None,
            check_conflicts: bool = True,
            allow_duplicates: bool = False,
        ) -> dict[str, Any]:
            """Create an event after checking for duplicates and conflicts.

            Creation is refused when an existing event scores at or above the
            blocking duplicate threshold, unless ``allow_duplicates`` is set.
            Overlaps never block creation; they are returned as warnings.
            """
            normalized_summary = summary.strip()
            if not normalized_summary:
                raise ValueError("summary must be a non-empty string")
            resolved_calendar_id = toolset._resolve_calendar_id(calendar_id)

            try:
                zone = await toolset._resolve_time_zone(time_zone, resolved_calendar_id)
                candidate = EventRecord(
                    title=normalized_summary,
                    description=description,
                    location=location,
                    start=build_time_spec(start, zone),
                    end=build_time_spec(end, zone),
                    attendees=[Attendee(email=email) for email in attendees or []],
                    recurrence=recurrence,
                )

                conflicts: ConflictResult | None = None
                if check_conflicts:
                    conflicts = await toolset._conflicts.check_conflicts(
                        candidate,
                        resolved_calendar_id,
                        ConflictCheckOptions(calendars_to_check=calendars_to_check),
                    )
                    blocking = toolset._conflicts.thresholds.blocking
                    blockers = [
                        duplicate
                        for duplicate in conflicts.duplicates
                        if duplicate.similarity >= blocking
                    ]
                    if blockers and not allow_duplicates:
                        return {
                            "status": "blocked",
                            "calendar_id": resolved_calendar_id,
                            **_conflicts_to_payload(conflicts),
                            "text": (
                                "Duplicate event detected; the event was not created. "
                                "Pass allow_duplicates=true to create it anyway."
                                f"{format_conflict_warnings(conflicts)}"
                            ),
                        }

                created = await toolset._client.insert_event(resolved_calendar_id, candidate)
            except CalendarError as exc:
                logger.warning(
                    "calendar_create_event failed (calendar_id=%s): %s",
                    resolved_calendar_id,
                    exc,
                    exc_info=True,
                )
                return build_structured_error(exc, calendar_id=resolved_calendar_id)

            response: dict[str, Any] = {
                "status": "created",
                "calendar_id": resolved_calendar_id,
                "event": _event_to_payload(created),
                "text": create_event_response(created, resolved_calendar_id, conflicts),
            }
            if conflicts is not None:
                response.update(_conflicts_to_payload(conflicts))
            return response

        @mcp.tool()
        async def calendar_update_event(
            event_id: str,
            calendar_id: str | None = None,
            summary: str | None = None,
            description: str | None = None,
            location: str | None = None,
            start: str | None = None,
            end: str | None = None,
            time_zone: str | None = None,
            attendees: list[str] | None = None,
            recurrence: list[str] | None = None,
            modification_scope: str | None = None,
            original_start_time: str | None = None,
            future_start_date: str | None = None,
            calendars_to_check: list[str] | None = None,
            check_conflicts: bool = True,
        ) -> dict[str, Any]:
            """Update an event, optionally scoped to part of a recurring series.

            ``modification_scope`` is ``thisEventOnly``, ``all`` (default), or
            ``thisAndFollowing``. Time changes are checked for overlaps first;
            duplicates are not checked on update.
            """
            normalized_event_id = event_id.strip()
            if not normalized_event_id:
                raise ValueError("event_id must be a non-empty string")
            resolved_calendar_id = toolset._resolve_calendar_id(calendar_id)

            args = EventPatchArgs(
                summary=summary,
                description=description,
                location=location,
                start=start,
                end=end,
                time_zone=time_zone,
                attendees=[{"email": email} for email in attendees] if attendees else None,
                recurrence=recurrence,
            )

            try:
                conflicts: ConflictResult | None = None
                if check_conflicts and (start or end):
                    conflicts = await toolset._check_update_conflicts(
                        resolved_calendar_id,
                        normalized_event_id,
                        args,
                        calendars_to_check,
                    )
                updated = await toolset._updater.update_event(
                    resolved_calendar_id,
                    normalized_event_id,
                    args,
                    scope=modification_scope,
                    original_start_time=original_start_time,
                    future_start_date=future_start_date,
                )
            except (CalendarError, RecurringEventError) as exc:
                logger.warning(
                    "calendar_update_event failed (event_id=%s, calendar_id=%s): %s",
                    normalized_event_id,
                    resolved_calendar_id,
                    exc,
                    exc_info=True,
                )
                return build_structured_error(exc, calendar_id=resolved_calendar_id)

            response: dict[str, Any] = {
                "status": "updated",
                "calendar_id": resolved_calendar_id,
                "event": _event_to_payload(updated),
                "text": create_event_response(
                    updated, resolved_calendar_id, conflicts, action_verb="updated"
                ),
            }
            if conflicts is not None:
                response.update(_conflicts_to_payload(conflicts))
            return response

        @mcp.tool()
        async def calendar_delete_event(
            event_id: str,
            calendar_id: str | None = None,
            send_updates: str | None = None,
        ) -> dict[str, Any]:
            """Delete an event. Deleting an already-deleted event reports ``not_found``."""
            normalized_event_id = event_id.strip()
            if not normalized_event_id:
                raise ValueError("event_id must be a non-empty string")
            resolved_calendar_id = toolset._resolve_calendar_id(calendar_id)

            try:
                deleted = await toolset._client.delete_event(
                    resolved_calendar_id,
                    normalized_event_id,
                    send_updates=send_updates,
                )
            except CalendarError as exc:
                logger.warning(
                    "calendar_delete_event failed (event_id=%s, calendar_id=%s): %s",
                    normalized_event_id,
                    resolved_calendar_id,
                    exc,
                    exc_info=True,
                )
                return build_structured_error(exc, calendar_id=resolved_calendar_id)

            return {
                "status": "deleted" if deleted else "not_found",
                "calendar_id": resolved_calendar_id,
                "event_id": normalized_event_id,
            }

        @mcp.tool()
        async def calendar_free_busy(
            time_min: str,
            time_max: str,
            calendars: list[str] | None = None,
            time_zone: str | None = None,
        ) -> dict[str, Any]:
            """Report busy windows for the given calendars."""
            calendar_ids = [toolset._resolve_calendar_id(value) for value in calendars or [None]]
            zone = time_zone or toolset._timezone
            window_start = to_absolute_instant(time_min, zone)
            window_end = to_absolute_instant(time_max, zone)
            if parse_instant(window_end) - parse_instant(window_start) > MAX_FREE_BUSY_WINDOW:
                raise ValueError(
                    "The time gap between time_min and time_max must be at most 3 months"
                )

            try:
                payload = await toolset._client.query_free_busy(
                    calendar_ids,
                    time_min=window_start,
                    time_max=window_end,
                    time_zone=time_zone,
                )
            except CalendarError as exc:
                logger.warning(
                    "calendar_free_busy failed (calendars=%s): %s",
                    calendar_ids,
                    exc,
                    exc_info=True,
                )
                error_dict = build_structured_error(exc, calendar_id=",".join(calendar_ids))
                error_dict["calendars"] = {}
                return error_dict

            calendars_payload = payload.get("calendars")
            return {
                "time_min": window_start,
                "time_max": window_end,
                "calendars": calendars_payload if isinstance(calendars_payload, dict) else {},
            }

    async def _check_update_conflicts(
        self,
        calendar_id: str,
        event_id: str,
        args: EventPatchArgs,
        calendars_to_check: list[str] | None,
    ) -> ConflictResult | None:
        existing = await self._client.get_event(calendar_id, event_id)
        if existing is None:
            return None

        zone = await self._resolve_time_zone(args.time_zone, calendar_id)
        candidate = existing.model_copy(
            update={
                "id": event_id,
                "title": args.summary or existing.title,
                "start": build_time_spec(args.start, zone) if args.start else existing.start,
                "end": build_time_spec(args.end, zone) if args.end else existing.end,
            }
        )
        return await self._conflicts.check_conflicts(
            candidate,
            calendar_id,
            ConflictCheckOptions(check_duplicates=False, calendars_to_check=calendars_to_check),
        )
