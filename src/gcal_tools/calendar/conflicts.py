"""Duplicate and overlap detection for a candidate event.

Google Calendar's list API is eventually consistent: an event created a
moment ago may not show up yet, so duplicates created in quick succession
can slip through.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence

from gcal_tools.calendar.client import GoogleCalendarClient
from gcal_tools.calendar.datetime_utils import resolve_window_bound
from gcal_tools.calendar.errors import CalendarError, CalendarRequestError
from gcal_tools.calendar.formatting import event_url
from gcal_tools.calendar.models import (
    AttendeeResponseStatus,
    ConflictCheckOptions,
    ConflictResult,
    ConflictThresholds,
    DuplicateMatch,
    EventRecord,
    OverlapMatch,
    TimeSpec,
)
from gcal_tools.calendar.overlap import (
    analyze_overlap,
    check_busy_conflict,
    find_overlapping_events,
    format_window,
)
from gcal_tools.calendar.similarity import similarity_score

logger = logging.getLogger(__name__)

BUSY_EVENT_ID = "busy-time"
BUSY_EVENT_TITLE = "Busy (details unavailable)"
DUPLICATE_REPLACE_SUGGESTION = (
    "This appears to be a duplicate. Consider updating the existing event instead."
)
DUPLICATE_CONFIRM_SUGGESTION = "This event is very similar to an existing one. Is this intentional?"


class ConflictDetectionService:
    """Reports duplicates and overlapping events for a candidate event.

    Thresholds are passed in explicitly so callers can tune them per
    deployment; nothing here reads process-wide configuration.
    """

    def __init__(
        self,
        client: GoogleCalendarClient,
        *,
        thresholds: ConflictThresholds | None = None,
    ) -> None:
        self._client = client
        self._thresholds = thresholds or ConflictThresholds()

    @property
    def thresholds(self) -> ConflictThresholds:
        return self._thresholds

    async def check_conflicts(
        self,
        candidate: EventRecord,
        calendar_id: str,
        options: ConflictCheckOptions | None = None,
    ) -> ConflictResult:
        """Check *candidate* against existing events in the configured calendars.

        The search window is exactly the candidate's own span. A calendar
        that answers with an HTTP error is skipped; transport and auth
        failures propagate.
        """
        options = options or ConflictCheckOptions()
        result = ConflictResult()
        if candidate.start is None or candidate.end is None:
            return result

        timezone = candidate.start.time_zone or candidate.end.time_zone
        time_min = resolve_window_bound(candidate.start.value, timezone)
        time_max = resolve_window_bound(candidate.end.value, timezone)
        calendars = list(options.calendars_to_check or [calendar_id])
        threshold = (
            options.duplicate_threshold
            if options.duplicate_threshold is not None
            else self._thresholds.warning
        )

        events_by_calendar = await self._fetch_events(
            calendars,
            time_min=time_min,
            time_max=time_max,
            time_zone=timezone,
        )

        for check_calendar_id in calendars:
            events = events_by_calendar.get(check_calendar_id, [])
            if options.check_duplicates:
                result.duplicates.extend(
                    self._find_duplicates(candidate, events, check_calendar_id, threshold)
                )
            if options.check_conflicts:
                result.conflicts.extend(
                    self._find_conflicts(
                        candidate,
                        events,
                        check_calendar_id,
                        include_declined=options.include_declined_events,
                        requester_email=options.requester_email,
                    )
                )

        result.has_conflicts = bool(result.duplicates or result.conflicts)
        return result

    async def check_conflicts_with_free_busy(
        self,
        candidate: EventRecord,
        calendars_to_check: Sequence[str],
    ) -> list[OverlapMatch]:
        """Check *candidate* against busy windows; provider errors yield an empty list."""
        if candidate.start is None or candidate.end is None or not calendars_to_check:
            return []

        timezone = candidate.start.time_zone or candidate.end.time_zone
        try:
            payload = await self._client.query_free_busy(
                calendars_to_check,
                time_min=resolve_window_bound(candidate.start.value, timezone),
                time_max=resolve_window_bound(candidate.end.value, timezone),
            )
        except CalendarError as exc:
            logger.error("Failed to check free/busy: %s", exc)
            return []

        conflicts: list[OverlapMatch] = []
        calendars = payload.get("calendars")
        if not isinstance(calendars, dict):
            return conflicts

        for busy_calendar_id, calendar_info in calendars.items():
            busy_slots = calendar_info.get("busy") if isinstance(calendar_info, dict) else None
            for slot in busy_slots or []:
                if not isinstance(slot, dict):
                    continue
                busy_start, busy_end = slot.get("start"), slot.get("end")
                if not check_busy_conflict(candidate, busy_start, busy_end):
                    continue
                busy_event = EventRecord(
                    id=BUSY_EVENT_ID,
                    title=BUSY_EVENT_TITLE,
                    start=TimeSpec(date_time=busy_start),
                    end=TimeSpec(date_time=busy_end),
                )
                match = _overlap_match(candidate, busy_event, busy_calendar_id, url=None)
                if match is not None:
                    conflicts.append(match)
        return conflicts

    async def _fetch_events(
        self,
        calendars: list[str],
        *,
        time_min: str,
        time_max: str,
        time_zone: str | None,
    ) -> dict[str, list[EventRecord]]:
        filters = {"time_min": time_min, "time_max": time_max, "time_zone": time_zone}
        if len(calendars) == 1:
            only = calendars[0]
            try:
                return {only: await self._client.list_events(only, **filters)}
            except CalendarRequestError as exc:
                logger.warning("Skipping calendar %s during conflict check: %s", only, exc)
                return {}

        events, errors = await self._client.list_events_multi(calendars, **filters)
        for error in errors:
            logger.warning(
                "Skipping calendar %s during conflict check (status=%d): %s",
                error.calendar_id,
                error.status_code,
                error.message,
            )
        grouped: dict[str, list[EventRecord]] = {}
        for event in events:
            grouped.setdefault(event.calendar_id or "", []).append(event)
        return grouped

    def _find_duplicates(
        self,
        candidate: EventRecord,
        events: Iterable[EventRecord],
        calendar_id: str,
        threshold: float,
    ) -> list[DuplicateMatch]:
        duplicates: list[DuplicateMatch] = []
        for existing in events:
            if candidate.id is not None and existing.id == candidate.id:
                continue
            if existing.is_cancelled:
                continue

            similarity = similarity_score(candidate, existing)
            if similarity < threshold:
                continue
            duplicates.append(
                DuplicateMatch(
                    event=existing,
                    similarity=round(similarity, 2),
                    suggestion=(
                        DUPLICATE_REPLACE_SUGGESTION
                        if similarity >= self._thresholds.blocking
                        else DUPLICATE_CONFIRM_SUGGESTION
                    ),
                    calendar_id=calendar_id,
                    url=event_url(existing, calendar_id),
                )
            )
        return duplicates

    def _find_conflicts(
        self,
        candidate: EventRecord,
        events: Iterable[EventRecord],
        calendar_id: str,
        *,
        include_declined: bool,
        requester_email: str | None,
    ) -> list[OverlapMatch]:
        conflicts: list[OverlapMatch] = []
        for existing in find_overlapping_events(events, candidate):
            if not include_declined and is_declined_by(existing, requester_email):
                continue
            match = _overlap_match(
                candidate, existing, calendar_id, url=event_url(existing, calendar_id)
            )
            if match is not None:
                conflicts.append(match)
        return conflicts


def is_declined_by(event: EventRecord, requester_email: str | None) -> bool:
    """Return True when *requester_email* has declined *event*.

    Without a requester identity there is nobody to match, so nothing counts
    as declined.
    """
    if not requester_email:
        return False
    wanted = requester_email.strip().lower()
    for attendee in event.attendees:
        if attendee.email and attendee.email.strip().lower() == wanted:
            return attendee.response_status == AttendeeResponseStatus.declined
    return False


def _overlap_match(
    candidate: EventRecord,
    existing: EventRecord,
    calendar_id: str,
    *,
    url: str | None,
) -> OverlapMatch | None:
    analysis = analyze_overlap(candidate, existing)
    if analysis is None:
        return None
    start_time, end_time = format_window(analysis)
    return OverlapMatch(
        event=existing,
        calendar_id=calendar_id,
        duration=analysis.duration_text,
        percentage=analysis.percentage,
        start_time=start_time,
        end_time=end_time,
        url=url,
    )
