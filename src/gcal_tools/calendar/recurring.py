"""Pure helpers for editing recurring events.

Covers series/instance classification, RFC 5545 instance identifiers,
``UNTIL`` rewriting of recurrence rules, duration-preserving end times, and
patch-body construction. Nothing here performs I/O.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from gcal_tools.calendar.datetime_utils import (
    format_basic_utc,
    parse_instant,
    time_spec_to_datetime,
)
from gcal_tools.calendar.errors import RecurringErrorCode, RecurringEventError
from gcal_tools.calendar.models import EventRecord

RRULE_PREFIX = "RRULE:"
# Server-assigned fields that must not be copied onto a re-inserted event.
IDENTITY_FIELDS = ("id", "etag", "iCalUID", "created", "updated", "htmlLink", "hangoutLink")
_RULE_LIMIT_KEYS = {"UNTIL", "COUNT"}


class ModificationScope(StrEnum):
    """Which occurrences of a recurring series an update applies to."""

    this_event_only = "thisEventOnly"
    all = "all"
    this_and_following = "thisAndFollowing"


class EventPatchArgs(BaseModel):
    """User-supplied update fields. Unset (None) fields are left untouched."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    summary: str | None = None
    description: str | None = None
    location: str | None = None
    color_id: str | None = None
    attendees: list[dict[str, Any]] | None = None
    reminders: dict[str, Any] | None = None
    recurrence: list[str] | None = None
    conference_data: dict[str, Any] | None = None
    transparency: str | None = None
    visibility: str | None = None
    guests_can_invite_others: bool | None = None
    guests_can_modify: bool | None = None
    guests_can_see_other_guests: bool | None = None
    anyone_can_add_self: bool | None = None
    extended_properties: dict[str, Any] | None = None
    attachments: list[dict[str, Any]] | None = None
    start: str | None = None
    end: str | None = None
    time_zone: str | None = None


def classify_event(event: EventRecord) -> Literal["recurring", "single"]:
    return "recurring" if event.recurrence else "single"


def format_instance_id(event_id: str, original_start_time: str) -> str:
    """Build the id of one occurrence: ``<seriesId>_<YYYYMMDDTHHMMSSZ>``.

    Raises ``ValueError`` when *original_start_time* is not an ISO 8601 value.
    """
    return f"{event_id}_{format_basic_utc(parse_instant(original_start_time))}"


def calculate_until_date(future_start_date: str, *, timezone: str | None = None) -> str:
    """Return the ``UNTIL`` value ending a series before *future_start_date*.

    This is a fixed 24-hour subtraction, not a calendar-day step.
    """
    future = parse_instant(future_start_date, timezone=timezone)
    return format_basic_utc(future - timedelta(hours=24))


def update_recurrence_with_until(recurrence: list[str] | None, until_date: str) -> list[str]:
    """Bound the ``RRULE`` line with ``UNTIL=until_date``.

    Any existing ``UNTIL``/``COUNT`` limiter is dropped from the rule; all
    other rule parameters and every non-RRULE line (EXDATE, RDATE, ...) are
    kept byte-identical and in their original order.
    """
    if not recurrence:
        raise RecurringEventError("No recurrence rule found", RecurringErrorCode.INVALID_RECURRENCE)

    rrule_count = sum(1 for line in recurrence if line.upper().startswith(RRULE_PREFIX))
    if rrule_count == 0:
        raise RecurringEventError(
            "No RRULE found in recurrence rules", RecurringErrorCode.INVALID_RECURRENCE
        )
    if rrule_count > 1:
        raise RecurringEventError(
            f"Expected exactly one RRULE line, found {rrule_count}",
            RecurringErrorCode.INVALID_RECURRENCE,
        )

    updated: list[str] = []
    for line in recurrence:
        if not line.upper().startswith(RRULE_PREFIX):
            updated.append(line)
            continue
        prefix, body = line[: len(RRULE_PREFIX)], line[len(RRULE_PREFIX) :]
        params = [
            param
            for param in body.split(";")
            if param and param.split("=", 1)[0].strip().upper() not in _RULE_LIMIT_KEYS
        ]
        params.append(f"UNTIL={until_date}")
        updated.append(f"{prefix}{';'.join(params)}")
    return updated


def calculate_end_time(new_start_time: str, original_event: EventRecord) -> str:
    """Return ``new_start_time`` plus the original event's duration.

    The duration is an absolute-instant delta. Naive input gives naive
    output; offset-qualified input keeps its offset.
    """
    if original_event.start is None or original_event.end is None:
        raise ValueError("Original event has no start/end to derive a duration from")

    duration = time_spec_to_datetime(original_event.end) - time_spec_to_datetime(
        original_event.start
    )

    normalized = new_start_time.strip()
    uses_zulu = normalized.endswith("Z")
    if uses_zulu:
        normalized = f"{normalized[:-1]}+00:00"
    new_start = datetime.fromisoformat(normalized)

    rendered = (new_start + duration).isoformat()
    if uses_zulu:
        rendered = rendered.replace("+00:00", "Z")
    return rendered


def clean_event_for_duplication(event: EventRecord | dict[str, Any]) -> dict[str, Any]:
    """Return a shallow wire-dict copy of *event* without server-assigned identity fields."""
    cleaned = event.to_google() if isinstance(event, EventRecord) else dict(event)
    for field in IDENTITY_FIELDS:
        cleaned.pop(field, None)
    return cleaned


def build_update_request_body(
    args: EventPatchArgs | dict[str, Any],
    default_time_zone: str | None = None,
) -> dict[str, Any]:
    """Build a PATCH body from the explicitly provided fields of *args*.

    When start or end changes, both boundaries carry the effective zone
    (explicit ``time_zone``, else *default_time_zone*). When neither
    changes, an explicit ``time_zone`` alone still produces zone-only
    boundaries so the display zone can be changed in isolation.
    """
    if not isinstance(args, EventPatchArgs):
        args = EventPatchArgs.model_validate(args)

    body = args.model_dump(
        by_alias=True,
        exclude_none=True,
        exclude={"start", "end", "time_zone"},
    )

    effective_time_zone = args.time_zone or default_time_zone
    time_changed = False
    if args.start is not None:
        body["start"] = _boundary(args.start, effective_time_zone)
        time_changed = True
    if args.end is not None:
        body["end"] = _boundary(args.end, effective_time_zone)
        time_changed = True

    zone_only = not time_changed and args.time_zone is not None
    if (time_changed or zone_only) and effective_time_zone:
        body.setdefault("start", {}).setdefault("timeZone", effective_time_zone)
        body.setdefault("end", {}).setdefault("timeZone", effective_time_zone)
    return body


def _boundary(date_time: str, time_zone: str | None) -> dict[str, str]:
    boundary = {"dateTime": date_time}
    if time_zone:
        boundary["timeZone"] = time_zone
    return boundary
