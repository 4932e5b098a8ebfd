"""Plain-text rendering of events and conflict results for tool responses."""

from __future__ import annotations

import math
from datetime import date, datetime
from urllib.parse import quote
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from gcal_tools.calendar.datetime_utils import inclusive_end_date, parse_instant
from gcal_tools.calendar.models import Attendee, ConflictResult, EventRecord, TimeSpec

GOOGLE_CALENDAR_EVENT_URL = "https://calendar.google.com/calendar/event"

_RESPONSE_STATUS_LABELS = {
    "accepted": "accepted",
    "declined": "declined",
    "tentative": "tentative",
    "needsAction": "pending",
}


def event_url(event: EventRecord, calendar_id: str | None = None) -> str | None:
    """Return the provider link for *event*, building one from ids when absent."""
    if event.html_link:
        return event.html_link
    if calendar_id and event.id:
        return (
            f"{GOOGLE_CALENDAR_EVENT_URL}?eid={quote(event.id, safe='')}"
            f"&cid={quote(calendar_id, safe='')}"
        )
    return None


def _format_date(value: date) -> str:
    return f"{value:%a, %b} {value.day}, {value.year}"


def _format_time_spec(spec: TimeSpec | None) -> str:
    if spec is None or not spec.value:
        return "unspecified"
    if spec.is_all_day:
        try:
            return _format_date(date.fromisoformat(spec.value))
        except ValueError:
            return spec.value
    try:
        instant = parse_instant(spec.value, timezone=spec.time_zone)
    except ValueError:
        return spec.value
    if spec.time_zone:
        try:
            instant = instant.astimezone(ZoneInfo(spec.time_zone))
        except (ValueError, ZoneInfoNotFoundError):
            pass
    return _format_datetime(instant)


def _format_datetime(value: datetime) -> str:
    hour = value.hour % 12 or 12
    zone = value.strftime("%Z") or value.strftime("%z")
    return f"{_format_date(value.date())}, {hour}:{value:%M %p} {zone}".rstrip()


def _format_attendees(attendees: list[Attendee]) -> str:
    if not attendees:
        return ""
    formatted = []
    for attendee in attendees:
        name = attendee.display_name or attendee.email or "unknown"
        status = _RESPONSE_STATUS_LABELS.get(attendee.response_status or "", "unknown")
        formatted.append(f"{name} ({status})")
    return f"\nGuests: {', '.join(formatted)}"


def format_event_with_details(event: EventRecord, calendar_id: str | None = None) -> str:
    lines = [f"Event: {event.title}" if event.title else "Untitled Event"]
    if event.id:
        lines.append(f"Event ID: {event.id}")
    if event.description:
        lines.append(f"Description: {event.description}")

    start_text = _format_time_spec(event.start)
    if event.is_all_day:
        end_date = event.end.date if event.end is not None else None
        if end_date is None:
            lines.append(f"Start Date: {start_text}")
        elif event.start is not None and end_date == event.start.date:
            lines.append(f"Date: {start_text}")
        else:
            try:
                # All-day end dates are exclusive.
                end_text = _format_date(inclusive_end_date(end_date))
            except ValueError:
                end_text = end_date
            if event.start is not None and end_text == start_text:
                lines.append(f"Date: {start_text}")
            else:
                lines.append(f"Start Date: {start_text}")
                lines.append(f"End Date: {end_text}")
    else:
        lines.append(f"Start: {start_text}")
        lines.append(f"End: {_format_time_spec(event.end)}")

    if event.location:
        lines.append(f"Location: {event.location}")
    color_id = (event.model_extra or {}).get("colorId")
    if color_id:
        lines.append(f"Color ID: {color_id}")

    text = "\n".join(lines) + _format_attendees(event.attendees)
    url = event_url(event, calendar_id)
    if url:
        text += f"\nView: {url}"
    return text


def format_conflict_warnings(result: ConflictResult) -> str:
    if not result.has_conflicts:
        return ""

    sections: list[str] = []
    if result.duplicates:
        sections.append("POTENTIAL DUPLICATES DETECTED:")
        for duplicate in result.duplicates:
            percent = math.floor(duplicate.similarity * 100 + 0.5)
            sections.append(
                f"--- Duplicate Event ({percent}% similar) ---\n"
                f"{duplicate.suggestion}\n\n"
                "Existing event details:\n"
                f"{format_event_with_details(duplicate.event, duplicate.calendar_id)}"
            )

    if result.conflicts:
        sections.append("SCHEDULING CONFLICTS DETECTED:")
        by_calendar: dict[str, list] = {}
        for conflict in result.conflicts:
            by_calendar.setdefault(conflict.calendar_id, []).append(conflict)

        for calendar_id, conflicts in by_calendar.items():
            sections.append(f"Calendar: {calendar_id}")
            for conflict in conflicts:
                sections.append(
                    "--- Conflicting Event ---\n"
                    f"Overlap: {conflict.duration} ({conflict.percentage}% of your event)\n\n"
                    "Conflicting event details:\n"
                    f"{format_event_with_details(conflict.event, calendar_id)}"
                )

    return "\n\n" + "\n\n".join(sections)


def create_event_response(
    event: EventRecord,
    calendar_id: str,
    conflicts: ConflictResult | None = None,
    action_verb: str = "created",
) -> str:
    details = format_event_with_details(event, calendar_id)
    warnings = format_conflict_warnings(conflicts) if conflicts is not None else ""
    if conflicts is not None and conflicts.has_conflicts:
        headline = f"Event {action_verb} with warnings!"
    else:
        headline = f"Event {action_verb} successfully!"
    return f"{headline}\n\n{details}{warnings}"
